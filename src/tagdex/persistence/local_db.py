import logging
from pathlib import Path
from typing import TypeVar, cast

import aiosqlite
from aiosqlitepool import SQLiteConnectionPool
from aiosqlitepool.protocols import Connection as SQLitePoolConnection

from tagdex.settings import PACKAGE_DIR, settings

from tagdex.app.db.base import run_in_transaction
from tagdex.app.db.events import RepositoryEventBus
from tagdex.app.db.failed_batches import FailedBatchesRepository
from tagdex.app.db.records import RecordsRepository
from tagdex.app.db.sync_state import SyncStateRepository
from tagdex.app.db.tags import TagsRepository
from tagdex.app.query.ranking import HotRankStrategy, ScoringStrategy

logger = logging.getLogger(__name__)

RepositoryT = TypeVar("RepositoryT")

SCHEMA_PATH = PACKAGE_DIR / "sql" / "schema.sql"


class LocalDB:
    """Facade around SQLite repositories with shared connection pooling."""

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        scoring: ScoringStrategy | None = None,
        event_bus: RepositoryEventBus | None = None,
    ):
        raw_path = Path(db_path or settings.DATABASE.path)
        self.db_path = raw_path.expanduser().resolve(strict=False)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.pool: SQLiteConnectionPool | None = None
        self.scoring: ScoringStrategy = scoring or HotRankStrategy()
        self._events = event_bus or RepositoryEventBus()
        self._tags: TagsRepository | None = None
        self._records: RecordsRepository | None = None
        self._failed_batches: FailedBatchesRepository | None = None
        self._sync_state: SyncStateRepository | None = None

    async def __aenter__(self) -> "LocalDB":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def init(self) -> None:
        if self.pool is not None:
            return

        is_new = not self.db_path.exists()

        async def _connection_factory() -> SQLitePoolConnection:
            return cast(SQLitePoolConnection, await self._create_connection())

        pool = SQLiteConnectionPool(
            _connection_factory,
            pool_size=int(settings.DATABASE.pool_size),
            acquisition_timeout=int(settings.DATABASE.pool_acquire_timeout),
        )
        self.pool = pool
        try:
            await self._ensure_schema(is_new)
            self._configure_repositories()
        except Exception:
            await pool.close()
            self.pool = None
            self._reset_repositories()
            raise

    async def close(self) -> None:
        if self.pool is not None:
            try:
                await self.pool.close()
            finally:
                self.pool = None
        self._reset_repositories()

    def _reset_repositories(self) -> None:
        self._tags = None
        self._records = None
        self._failed_batches = None
        self._sync_state = None

    async def _create_connection(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(
            self.db_path, timeout=float(settings.DATABASE.timeout)
        )
        await conn.execute(
            f"PRAGMA busy_timeout = {int(settings.DATABASE.busy_timeout)}"
        )
        await conn.execute(f"PRAGMA mmap_size = {int(settings.DATABASE.mmap_size)}")
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.execute("PRAGMA journal_mode = WAL")
        await conn.execute("PRAGMA synchronous = NORMAL")
        await conn.execute("PRAGMA temp_store = MEMORY")
        await conn.create_function(
            self.scoring.name, 2, self.scoring.score, deterministic=True
        )
        conn.row_factory = aiosqlite.Row
        return conn

    async def _ensure_schema(self, is_new: bool) -> None:
        if is_new:
            logger.info("Creating new index database at %s", self.db_path)
        if not self.pool:
            raise RuntimeError("Connection pool not initialized")
        schema_sql = SCHEMA_PATH.read_text()
        async with self.pool.connection() as conn:
            await run_in_transaction(conn, conn.executescript, schema_sql)

    def _configure_repositories(self) -> None:
        if not self.pool:
            raise RuntimeError("Connection pool not initialized")
        self._tags = TagsRepository(self.pool, self._events)
        self._records = RecordsRepository(self.pool)
        self._failed_batches = FailedBatchesRepository(self.pool)
        self._sync_state = SyncStateRepository(self.pool)

    def _require_repository(
        self, repository: RepositoryT | None, name: str
    ) -> RepositoryT:
        if repository is None:
            raise RuntimeError(
                f"{name} repository is not initialised; call init() before accessing it."
            )
        return repository

    @property
    def events(self) -> RepositoryEventBus:
        return self._events

    @property
    def tags(self) -> TagsRepository:
        """Return the taxonomy repository.

        Raises a :class:`RuntimeError` when accessed before the database has been
        initialised so configuration errors are caught early.
        """

        return self._require_repository(self._tags, "Tags")

    @property
    def records(self) -> RecordsRepository:
        return self._require_repository(self._records, "Records")

    @property
    def failed_batches(self) -> FailedBatchesRepository:
        return self._require_repository(self._failed_batches, "Failed batches")

    @property
    def sync_state(self) -> SyncStateRepository:
        return self._require_repository(self._sync_state, "Sync state")


__all__ = ["LocalDB", "SCHEMA_PATH"]
