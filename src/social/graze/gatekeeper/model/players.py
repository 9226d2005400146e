"""Player record data models.

`PlayerRecord` is the immutable value passed between the coordinator, the
conflict resolver and the admission service. `Player` is the SQLAlchemy table
that persists it.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, String
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Mapped, mapped_column

from social.graze.gatekeeper.model.base import Base, nicknamepk, str16, str64


class PlayerRecord(BaseModel):
    """A registered account, keyed by its lowercase nickname.

    An account is CLEAN while `conflict_mode` is false. When a premium player
    collides with an existing local account, the record is marked CONFLICTED and
    from then on it always goes through the local credential path.

    `credential_hash` is None for accounts that were only ever confirmed
    remotely; such accounts must carry a `remote_identity_id`.
    """

    model_config = ConfigDict(frozen=True)

    nickname: str
    lowercase_nickname: str
    credential_hash: Optional[str] = None
    identity_id: uuid.UUID
    remote_identity_id: Optional[str] = None
    conflict_mode: bool = False
    conflict_timestamp: Optional[datetime] = None
    original_nickname: Optional[str] = None
    registration_ip: Optional[str] = None
    login_ip: Optional[str] = None
    last_login_at: Optional[datetime] = None
    registered_at: datetime

    @staticmethod
    def create(
        nickname: str,
        identity_id: uuid.UUID,
        credential_hash: Optional[str] = None,
        remote_identity_id: Optional[str] = None,
        registration_ip: Optional[str] = None,
        registered_at: Optional[datetime] = None,
    ) -> "PlayerRecord":
        return PlayerRecord(
            nickname=nickname,
            lowercase_nickname=nickname.lower(),
            credential_hash=credential_hash,
            identity_id=identity_id,
            remote_identity_id=remote_identity_id,
            registration_ip=registration_ip,
            registered_at=registered_at or datetime.now(timezone.utc),
        )

    def is_valid(self) -> bool:
        if self.lowercase_nickname != self.nickname.lower():
            return False
        return self.credential_hash is not None or self.remote_identity_id is not None

    @property
    def is_conflicted(self) -> bool:
        return self.conflict_mode


class Player(Base):
    """Persistent form of a PlayerRecord."""

    __tablename__ = "players"

    lowercase_nickname: Mapped[nicknamepk]
    nickname: Mapped[str16]
    credential_hash: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    identity_id: Mapped[str64]
    remote_identity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    conflict_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    conflict_timestamp: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    original_nickname: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    registration_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    login_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "credential_hash IS NOT NULL OR remote_identity_id IS NOT NULL",
            name="ck_players_credential_or_remote",
        ),
        Index("idx_players_identity_id", "identity_id"),
        Index("idx_players_remote_identity_id", "remote_identity_id"),
        Index("idx_players_login_ip", "login_ip"),
        Index("idx_players_conflict_mode", "conflict_mode"),
    )

    def to_record(self) -> PlayerRecord:
        return PlayerRecord(
            nickname=self.nickname,
            lowercase_nickname=self.lowercase_nickname,
            credential_hash=self.credential_hash,
            identity_id=uuid.UUID(self.identity_id),
            remote_identity_id=self.remote_identity_id,
            conflict_mode=self.conflict_mode,
            conflict_timestamp=self.conflict_timestamp,
            original_nickname=self.original_nickname,
            registration_ip=self.registration_ip,
            login_ip=self.login_ip,
            last_login_at=self.last_login_at,
            registered_at=self.registered_at,
        )


def player_values(record: PlayerRecord) -> Dict[str, Any]:
    return {
        "lowercase_nickname": record.lowercase_nickname,
        "nickname": record.nickname,
        "credential_hash": record.credential_hash,
        "identity_id": str(record.identity_id),
        "remote_identity_id": record.remote_identity_id,
        "conflict_mode": record.conflict_mode,
        "conflict_timestamp": record.conflict_timestamp,
        "original_nickname": record.original_nickname,
        "registration_ip": record.registration_ip,
        "login_ip": record.login_ip,
        "last_login_at": record.last_login_at,
        "registered_at": record.registered_at,
    }


def upsert_player_stmt(record: PlayerRecord):
    """Create PostgreSQL upsert statement for a player record.

    Every column except the key and the registration timestamp is overwritten
    when the nickname already exists.
    """
    values = player_values(record)
    return (
        insert(Player)
        .values([values])
        .on_conflict_do_update(
            index_elements=["lowercase_nickname"],
            set_={
                key: value
                for key, value in values.items()
                if key not in ("lowercase_nickname", "registered_at")
            },
        )
        .returning(Player.lowercase_nickname)
    )
