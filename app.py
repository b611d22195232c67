import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, jsonify, session
from flask_migrate import Migrate
from flask_wtf.csrf import CSRFProtect, generate_csrf

from database import db

load_dotenv()

# Initialize Flask app
app = Flask(__name__)
app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get(
    "DATABASE_URL", "sqlite:///trackerlink.db"
)
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")
app.config["APP_BASE_URL"] = os.environ.get("APP_BASE_URL", "http://localhost:5000")

# Jira OAuth 2.0 (3LO). The feature reports "not configured" until the
# client id and secret are provided.
for key, default in (
    ("JIRA_CLIENT_ID", None),
    ("JIRA_CLIENT_SECRET", None),
    ("JIRA_REDIRECT_URI", None),
    ("JIRA_AUTHORIZE_URL", None),
    ("JIRA_TOKEN_URL", None),
    ("JIRA_RESOURCES_URL", None),
    ("JIRA_API_BASE", None),
    ("JIRA_SCOPES", None),
    ("JIRA_TOKEN_STORE", "cookie"),
    ("JIRA_RATE_LIMIT_MAX", "100"),
    ("JIRA_RATE_LIMIT_WINDOW", "1h"),
    ("JIRA_DEFAULT_RETURN_TO", "/jira"),
):
    app.config.setdefault(key, os.environ.get(key, default))

if not app.config.get("JIRA_CLIENT_ID") or not app.config.get("JIRA_CLIENT_SECRET"):
    logging.warning("JIRA_CLIENT_ID/JIRA_CLIENT_SECRET are not set; Jira integration is disabled.")

db.init_app(app)
csrf = CSRFProtect(app)

# Models import should be after initializing db
from models.user import User
from models.pending_authorization import PendingAuthorizationRecord  # noqa: F401

from routes.jira import jira_bp

# Create flask command lines to update the db based on the model
# Useage:
# Create a migration script in ./migrations/versions
# > flask db migrate -m "Update comments"
# Run the update
# > flask db upgrade
migrate = Migrate(app, db)

# JSON routes validate their own CSRF token (header or body field)
csrf.exempt(jira_bp)
app.register_blueprint(jira_bp)


# User resolution
# ------------------------------
@app.before_request
def load_user():
    """Resolve the host application's signed-in user into ``g.user``.

    Sign-in itself is owned by the host application; it only has to store
    ``user_id`` in the session. Requests without one leave ``g.user`` unset
    and the Jira API answers 401.
    """
    user_id = session.get("user_id")
    g.user = db.session.get(User, user_id) if user_id else None


@app.route("/api/csrf-token", methods=["GET"])
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


if __name__ == "__main__":
    app.run(debug=True)
    # app.run(host='0.0.0.0',port=5000)
