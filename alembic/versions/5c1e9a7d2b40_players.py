"""players

Revision ID: 5c1e9a7d2b40
Revises:
Create Date: 2026-10-17 09:12:31.408112

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e9a7d2b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "players",
        sa.Column("lowercase_nickname", sa.String(16), primary_key=True),
        sa.Column("nickname", sa.String(16), nullable=False),
        # NULL only for accounts confirmed remotely and never registered locally
        sa.Column("credential_hash", sa.String(512), nullable=True),
        sa.Column("identity_id", sa.String(64), nullable=False),
        sa.Column("remote_identity_id", sa.String(64), nullable=True),
        sa.Column("conflict_mode", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("conflict_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("original_nickname", sa.String(16), nullable=True),
        sa.Column("registration_ip", sa.String(64), nullable=True),
        sa.Column("login_ip", sa.String(64), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "credential_hash IS NOT NULL OR remote_identity_id IS NOT NULL",
            name="ck_players_credential_or_remote",
        ),
    )
    op.create_index("idx_players_identity_id", "players", ["identity_id"])
    op.create_index("idx_players_remote_identity_id", "players", ["remote_identity_id"])
    op.create_index("idx_players_login_ip", "players", ["login_ip"])
    op.create_index("idx_players_conflict_mode", "players", ["conflict_mode"])


def downgrade() -> None:
    op.drop_table("players")
