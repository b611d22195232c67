""" Represents a user of the host application.

Only the identity and the Jira OAuth columns live here; everything else about
the user is owned by the host application. The token columns are encrypted
with the application's SECRET_KEY (see utils.token_crypto).
"""

from database import db


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    name = db.Column(db.String(80), nullable=False)
    email = db.Column(db.String(80), unique=True, nullable=False)
    jira_access_token_encrypted = db.Column(db.LargeBinary, nullable=True)
    jira_refresh_token_encrypted = db.Column(db.LargeBinary, nullable=True)
    jira_cloud_id = db.Column(db.String(120), nullable=True)
    jira_site_url = db.Column(db.String(255), nullable=True)
    jira_token_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    pending_jira_authorization = db.relationship(
        "PendingAuthorizationRecord",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def set_jira_tokens(self, access_token: str | None, refresh_token: str | None):
        from utils.token_crypto import encrypt_token

        self.jira_access_token_encrypted = encrypt_token(access_token) if access_token else None
        self.jira_refresh_token_encrypted = encrypt_token(refresh_token) if refresh_token else None

    def get_jira_access_token(self) -> str | None:
        from utils.token_crypto import decrypt_token

        return decrypt_token(self.jira_access_token_encrypted)

    def get_jira_refresh_token(self) -> str | None:
        from utils.token_crypto import decrypt_token

        return decrypt_token(self.jira_refresh_token_encrypted)

    def clear_jira_credentials(self):
        self.jira_access_token_encrypted = None
        self.jira_refresh_token_encrypted = None
        self.jira_cloud_id = None
        self.jira_site_url = None
        self.jira_token_expires_at = None

    def __repr__(self):
        return f"<User {self.id}>"
