"""Add Jira OAuth credential columns and pending authorizations (SQLite-safe, idempotent)."""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "202610180001_jira_oauth_credentials"
down_revision = None
branch_labels = None
depends_on = None


USER_TABLE = "user"
PENDING_TABLE = "jira_pending_authorization"
JIRA_USER_COLUMNS = (
    ("jira_access_token_encrypted", sa.LargeBinary()),
    ("jira_refresh_token_encrypted", sa.LargeBinary()),
    ("jira_cloud_id", sa.String(length=120)),
    ("jira_site_url", sa.String(length=255)),
    ("jira_token_expires_at", sa.DateTime(timezone=True)),
)


def upgrade():
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = inspector.get_table_names()

    # --- Host user table, for fresh databases ---
    if USER_TABLE not in tables:
        op.create_table(
            USER_TABLE,
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("username", sa.String(length=80), nullable=False),
            sa.Column("name", sa.String(length=80), nullable=False),
            sa.Column("email", sa.String(length=80), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("username"),
            sa.UniqueConstraint("email"),
        )
        existing_columns = set()
    else:
        existing_columns = {column["name"] for column in inspector.get_columns(USER_TABLE)}

    # --- Encrypted credential columns on the user row ---
    missing = [(name, type_) for name, type_ in JIRA_USER_COLUMNS if name not in existing_columns]
    if missing:
        with op.batch_alter_table(USER_TABLE) as batch_op:
            for name, type_ in missing:
                batch_op.add_column(sa.Column(name, type_, nullable=True))

    # --- One in-flight OAuth handshake per user ---
    if PENDING_TABLE not in tables:
        op.create_table(
            PENDING_TABLE,
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("state", sa.String(length=128), nullable=False),
            sa.Column("return_to", sa.String(length=512), nullable=True),
            sa.Column(
                "created_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            ),
            sa.ForeignKeyConstraint(["user_id"], [f"{USER_TABLE}.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", name="uq_jira_pending_authorization_user"),
        )


def downgrade():
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = inspector.get_table_names()

    if PENDING_TABLE in tables:
        op.drop_table(PENDING_TABLE)

    if USER_TABLE in tables:
        existing_columns = {column["name"] for column in inspector.get_columns(USER_TABLE)}
        present = [name for name, _ in JIRA_USER_COLUMNS if name in existing_columns]
        if present:
            with op.batch_alter_table(USER_TABLE) as batch_op:
                for name in present:
                    batch_op.drop_column(name)
