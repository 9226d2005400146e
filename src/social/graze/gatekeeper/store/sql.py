"""SQLAlchemy-backed player store."""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from social.graze.gatekeeper.model.base import Base
from social.graze.gatekeeper.model.players import Player, PlayerRecord, upsert_player_stmt
from social.graze.gatekeeper.store.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


class PlayerStore(ABC):
    """Backend interface used by the record coordinator."""

    @abstractmethod
    async def is_connected(self) -> bool: ...

    @abstractmethod
    async def get(self, lowercase_nickname: str) -> Optional[PlayerRecord]: ...

    @abstractmethod
    async def upsert(self, record: PlayerRecord) -> None: ...

    @abstractmethod
    async def delete(self, lowercase_nickname: str) -> bool: ...

    @abstractmethod
    async def count(self) -> int: ...

    @abstractmethod
    async def list_all(self) -> List[PlayerRecord]: ...

    @abstractmethod
    async def list_conflicted(self) -> List[PlayerRecord]: ...


class SqlPlayerStore(PlayerStore):
    """
    Player store on PostgreSQL through SQLAlchemy's async engine.

    Every database failure is surfaced as `StoreUnavailableError` so that callers
    can tell an outage apart from a missing record.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_maker = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_schema(self) -> None:
        """Create the player table and indexes if they do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Player schema verified")

    async def is_connected(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Player store connectivity check failed: %s", e)
            return False

    async def get(self, lowercase_nickname: str) -> Optional[PlayerRecord]:
        try:
            async with self.session_maker() as database_session:
                player = (
                    await database_session.scalars(
                        select(Player).where(
                            Player.lowercase_nickname == lowercase_nickname
                        )
                    )
                ).one_or_none()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError.operation_failed("get") from e
        if player is None:
            return None
        return player.to_record()

    async def upsert(self, record: PlayerRecord) -> None:
        try:
            async with self.session_maker() as database_session:
                async with database_session.begin():
                    await database_session.execute(upsert_player_stmt(record))
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError.operation_failed("upsert") from e

    async def delete(self, lowercase_nickname: str) -> bool:
        try:
            async with self.session_maker() as database_session:
                async with database_session.begin():
                    result = await database_session.execute(
                        delete(Player).where(
                            Player.lowercase_nickname == lowercase_nickname
                        )
                    )
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError.operation_failed("delete") from e
        return result.rowcount > 0

    async def count(self) -> int:
        try:
            async with self.session_maker() as database_session:
                return (
                    await database_session.scalar(select(func.count()).select_from(Player))
                ) or 0
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError.operation_failed("count") from e

    async def list_all(self) -> List[PlayerRecord]:
        return await self._list(select(Player).order_by(Player.lowercase_nickname), "list")

    async def list_conflicted(self) -> List[PlayerRecord]:
        return await self._list(
            select(Player)
            .where(Player.conflict_mode.is_(True))
            .order_by(Player.conflict_timestamp),
            "list_conflicted",
        )

    async def _list(self, stmt, operation: str) -> List[PlayerRecord]:
        try:
            async with self.session_maker() as database_session:
                players = (await database_session.scalars(stmt)).all()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError.operation_failed(operation) from e
        return [player.to_record() for player in players]

    async def close(self) -> None:
        await self.engine.dispose()
