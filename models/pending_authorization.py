"""Persistence for in-flight Jira OAuth handshakes."""

from datetime import datetime, timezone

from database import db


def _utcnow():
    return datetime.now(timezone.utc)


class PendingAuthorizationRecord(db.Model):
    __tablename__ = "jira_pending_authorization"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, unique=True)
    state = db.Column(db.String(128), nullable=False)
    return_to = db.Column(db.String(512), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    user = db.relationship("User", back_populates="pending_jira_authorization")

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"<PendingAuthorizationRecord user={self.user_id}>"
