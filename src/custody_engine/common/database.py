"""Async database manager for Custody-Engine.

The manager is constructed by the process bootstrap (``deps``, the CLI or a
test fixture) and handed to whoever needs a session. Services never open
connections on their own.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Awaitable, Callable, TypeVar

from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm.exc import StaleDataError

from custody_engine.common.config import CustodySettings, get_settings
from custody_engine.common.exceptions import ConcurrentModificationError
from custody_engine.common.logging import get_logger
from custody_engine.common.models import Base

# Import all model modules so Base.metadata is complete for create_all().
import custody_engine.vaults.models  # noqa: F401
import custody_engine.policies.models  # noqa: F401
import custody_engine.escrows.models  # noqa: F401
import custody_engine.audit.models  # noqa: F401

T = TypeVar("T")

logger = get_logger("database")


class DatabaseManager:
    """Manages a single async database engine."""

    def __init__(self, settings: CustodySettings | None = None):
        self._settings = settings or get_settings()
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        url = make_url(self._settings.db_url)
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_async_engine(
            self._settings.db_url, echo=self._settings.db_echo
        )
        self._session_factory = async_sessionmaker(
            self.engine, expire_on_commit=False
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session whose work commits on exit and rolls back on error."""
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not initialized, call init() first")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def run_in_transaction(
        self,
        operation: Callable[[AsyncSession], Awaitable[T]],
        attempts: int | None = None,
    ) -> T:
        """Run ``operation`` in a fresh transaction, retrying write conflicts.

        Only pass operations that are idempotent or monotonic (approvals,
        payments, expiry): a retry re-runs the whole operation against the
        state left by the winning writer.
        """
        attempts = attempts or self._settings.approval_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                async with self.get_session() as session:
                    return await operation(session)
            except (StaleDataError, IntegrityError) as exc:
                if attempt == attempts:
                    raise ConcurrentModificationError() from exc
                logger.warning(
                    "write conflict on attempt %d/%d, retrying: %s",
                    attempt, attempts, exc.__class__.__name__,
                )
        raise ConcurrentModificationError()

    async def create_all(self) -> None:
        if self.engine is None:
            raise RuntimeError("DatabaseManager not initialized, call init() first")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self._session_factory = None
