"""
Label Store Abstraction

This module defines the LabelStore interface and provides two implementations:
- InMemoryLabelStore: For development and testing
- AsyncPostgresLabelStore: For production with full durability

The LabelStore is responsible for:
- Atomic append with sequence id assignment
- Ordered, filtered scans by id
- The one-time signature backfill of legacy rows

The LabelerService retains responsibility for:
- Signing
- Fan-out to live subscribers

ORDERING CONTRACT:
Ids are strictly increasing in insertion order and never reused.
A scan with cursor N returns only rows with id > N, ascending.
Once a reader has seen id N, no row with id <= N may appear later.
"""

from abc import ABC, abstractmethod
from threading import Lock
from typing import Optional, Sequence

import asyncpg

from ..errors import SigningFailure, WriteFailure
from ..observability import get_logger
from ..schemas.label import Label
from .config import DatabaseConfig, LabelStoreDriver, get_database_url, get_labelstore_driver
from .patterns import UriPattern

logger = get_logger(__name__)


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LabelStore(ABC):
    """
    Abstract base class for label storage.

    The LabelStore is the single source of truth for:
    - Sequence ids (strictly increasing)
    - Row contents (immutable except the sig backfill)

    Implementations must ensure:
    1. Atomic append: id assigned together with the insert
    2. No duplicate ids, ids reflect total insertion order
    3. A committed row never becomes visible after a higher id
    """

    @abstractmethod
    async def append(self, label: Label) -> Label:
        """
        Insert a label and assign its id.

        Returns:
            The stored label, with id set

        Raises:
            WriteFailure: If the durable write did not succeed
        """
        pass

    @abstractmethod
    async def scan_from(self, cursor: int, limit: Optional[int] = None) -> list[Label]:
        """
        Rows with id > cursor, ascending, at most `limit` (None = no cap).

        Not restartable: re-issue with the last returned id to continue.
        """
        pass

    @abstractmethod
    async def scan_filtered(
        self,
        patterns: Sequence[UriPattern],
        sources: Sequence[str],
        cursor: int,
        limit: int,
    ) -> list[Label]:
        """
        As scan_from, restricted to rows whose uri matches any pattern
        (empty = all) and whose src is in sources (empty = all).
        """
        pass

    @abstractmethod
    async def max_id(self) -> int:
        """Highest assigned id, 0 if the store is empty."""
        pass

    @abstractmethod
    async def set_signature(self, label_id: int, sig: bytes) -> None:
        """
        Persist a computed signature against a stored row.

        Idempotent: writing the same signature twice is a no-op success.
        An existing, different signature is never overwritten.

        Raises:
            SigningFailure: If no row was changed (row missing, or signed
                with a different signature)
        """
        pass

    async def close(self) -> None:
        """Release resources held by the store."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLabelStore(LabelStore):
    """
    In-memory implementation of LabelStore.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)

    Critical sections never await, so a plain thread lock is enough
    for both the event loop and test threads.
    """

    def __init__(self):
        self._rows: list[Label] = []
        self._last_id = 0
        self._lock = Lock()

    async def append(self, label: Label) -> Label:
        with self._lock:
            stored = label.with_id(self._last_id + 1)
            self._rows.append(stored)
            self._last_id = stored.id
        return stored

    async def scan_from(self, cursor: int, limit: Optional[int] = None) -> list[Label]:
        with self._lock:
            rows = [row for row in self._rows if row.id > cursor]
        return rows if limit is None else rows[:limit]

    async def scan_filtered(
        self,
        patterns: Sequence[UriPattern],
        sources: Sequence[str],
        cursor: int,
        limit: int,
    ) -> list[Label]:
        source_set = set(sources)
        with self._lock:
            rows = [
                row for row in self._rows
                if row.id > cursor
                and (not patterns or any(p.matches(row.uri) for p in patterns))
                and (not source_set or row.src in source_set)
            ]
        return rows[:limit]

    async def max_id(self) -> int:
        return self._last_id

    async def set_signature(self, label_id: int, sig: bytes) -> None:
        with self._lock:
            # Rows are stored in id order with no gaps
            index = label_id - 1
            if index < 0 or index >= len(self._rows):
                raise SigningFailure(f"Failed to update label {label_id} with signature")
            row = self._rows[index]
            if row.sig is not None and row.sig != sig:
                raise SigningFailure(f"Label {label_id} already carries a different signature")
            self._rows[index] = row.model_copy(update={"sig": sig})

    def insert_unsigned(self, label: Label) -> Label:
        """Append a row without a signature (legacy data, for testing only)."""
        with self._lock:
            stored = label.model_copy(update={"id": self._last_id + 1, "sig": None})
            self._rows.append(stored)
            self._last_id = stored.id
        return stored

    def get(self, label_id: int) -> Optional[Label]:
        """Fetch a row by id (for testing only)."""
        with self._lock:
            index = label_id - 1
            return self._rows[index] if 0 <= index < len(self._rows) else None

    def clear(self) -> None:
        """Clear all rows (for testing only)."""
        with self._lock:
            self._rows.clear()
            self._last_id = 0


# ============================================================
# POSTGRESQL IMPLEMENTATION (ASYNC)
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS labels (
    id BIGSERIAL PRIMARY KEY,
    ver SMALLINT NOT NULL DEFAULT 1,
    src TEXT NOT NULL,
    uri TEXT NOT NULL,
    cid TEXT,
    val TEXT NOT NULL,
    neg BOOLEAN NOT NULL DEFAULT FALSE,
    cts TEXT NOT NULL,
    exp TEXT,
    sig BYTEA
);
CREATE INDEX IF NOT EXISTS labels_uri_idx ON labels (uri text_pattern_ops);
CREATE INDEX IF NOT EXISTS labels_src_idx ON labels (src);
"""

_LABEL_COLUMNS = "id, ver, src, uri, cid, val, neg, cts, exp, sig"


class AsyncPostgresLabelStore(LabelStore):
    """
    Async PostgreSQL implementation using asyncpg.

    Provides:
    - Full ACID guarantees
    - Ordered id visibility via a transaction-scoped advisory lock
    - Durability (labels survive restarts)
    - Lock/statement timeouts to prevent hanging

    BIGSERIAL alone hands out ids before commit, so two concurrent
    inserts could commit out of id order and a reader could skip the
    lower id. Holding the advisory lock until commit closes that gap.

    Usage:
        pool = await asyncpg.create_pool(dsn)
        store = AsyncPostgresLabelStore(pool)
        await store.init_schema()
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    # Arbitrary application-wide key for pg_advisory_xact_lock
    APPEND_LOCK_KEY = 0x6C6162656C  # "label"

    # asyncpg error codes
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'

    def __init__(
        self,
        pool,
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize async store with connection pool.

        Args:
            pool: asyncpg connection pool
            lock_timeout_ms: How long to wait for the append lock (ms)
            statement_timeout_ms: Max statement execution time (ms)
        """
        self._pool = pool
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    async def init_schema(self) -> None:
        """Create the labels table and indexes if missing."""
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def append(self, label: Label) -> Label:
        async with self._pool.acquire() as conn:
            try:
                async with conn.transaction():
                    # SET LOCAL keeps timeouts transaction-scoped
                    await conn.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
                    await conn.execute(
                        f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'"
                    )
                    await conn.execute("SELECT pg_advisory_xact_lock($1)", self.APPEND_LOCK_KEY)
                    label_id = await conn.fetchval(
                        """
                        INSERT INTO labels (ver, src, uri, cid, val, neg, cts, exp, sig)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                        RETURNING id
                        """,
                        label.ver, label.src, label.uri, label.cid, label.val,
                        label.neg, label.cts, label.exp, label.sig,
                    )
            except Exception as e:
                kind = self._timeout_kind(e)
                if kind is not None:
                    logger.warning("Label append timed out", timeout_kind=kind, error=str(e))
                if kind == "lock":
                    raise WriteFailure("Label store busy - could not acquire append lock") from e
                if kind is not None:
                    raise WriteFailure("Append timed out") from e
                logger.error("Label append failed", error=str(e))
                raise WriteFailure("Failed to insert label") from e

        if label_id is None:
            raise WriteFailure("Failed to insert label")
        return label.with_id(label_id)

    async def scan_from(self, cursor: int, limit: Optional[int] = None) -> list[Label]:
        query = f"SELECT {_LABEL_COLUMNS} FROM labels WHERE id > $1 ORDER BY id ASC"
        params: list = [cursor]
        if limit is not None:
            query += " LIMIT $2"
            params.append(limit)
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_label(row) for row in rows]

    async def scan_filtered(
        self,
        patterns: Sequence[UriPattern],
        sources: Sequence[str],
        cursor: int,
        limit: int,
    ) -> list[Label]:
        clauses = ["id > $1"]
        params: list = [cursor]

        if patterns:
            likes = []
            for pattern in patterns:
                params.append(pattern.to_like())
                likes.append(f"uri LIKE ${len(params)} ESCAPE '\\'")
            clauses.append("(" + " OR ".join(likes) + ")")

        if sources:
            params.append(list(sources))
            clauses.append(f"src = ANY(${len(params)}::text[])")

        params.append(limit)
        query = (
            f"SELECT {_LABEL_COLUMNS} FROM labels "
            f"WHERE {' AND '.join(clauses)} "
            f"ORDER BY id ASC LIMIT ${len(params)}"
        )

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_label(row) for row in rows]

    async def max_id(self) -> int:
        async with self._pool.acquire() as conn:
            return await conn.fetchval("SELECT COALESCE(MAX(id), 0) FROM labels")

    async def set_signature(self, label_id: int, sig: bytes) -> None:
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE labels
                SET sig = $1
                WHERE id = $2 AND (sig IS NULL OR sig = $1)
                """,
                sig, label_id,
            )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        if status.split()[-1] == "0":
            raise SigningFailure(f"Failed to update label {label_id} with signature")

    async def close(self) -> None:
        await self._pool.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL timeout.

        Returns:
            "lock" - Lock-related failure
            "statement" - Statement timeout
            "timeout" - Some timeout but unclear which
            None - Not a timeout error

        NOTE: PostgreSQL uses 57014 (query_canceled) for BOTH lock_timeout and
        statement_timeout. We distinguish by checking the error message.
        """
        sqlstate = getattr(e, 'sqlstate', None)
        err_msg = str(e).lower()

        if sqlstate == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if sqlstate == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return "lock"
            if 'statement timeout' in err_msg or 'statement_timeout' in err_msg:
                return "statement"
            return "timeout"

        return None

    @staticmethod
    def _row_to_label(row) -> Label:
        """Convert an asyncpg record to a Label."""
        sig = row['sig']
        return Label(
            id=row['id'],
            ver=row['ver'],
            src=row['src'],
            uri=row['uri'],
            cid=row['cid'],
            val=row['val'],
            neg=row['neg'],
            cts=row['cts'],
            exp=row['exp'],
            sig=bytes(sig) if sig is not None else None,
        )


# ============================================================
# FACTORY
# ============================================================

async def open_label_store() -> LabelStore:
    """
    Create the LabelStore selected by the environment.

    Raises:
        RuntimeError: If asyncpg is selected but no database is configured
    """
    driver = get_labelstore_driver()

    if driver == LabelStoreDriver.MEMORY:
        logger.info("Using in-memory label store (development mode)")
        return InMemoryLabelStore()

    url = get_database_url()
    if url is None:
        raise RuntimeError(
            "LABELSTORE_DRIVER=asyncpg requires DATABASE_URL or DATABASE_HOST"
        )
    db_config = DatabaseConfig.from_env()
    pool = await asyncpg.create_pool(
        dsn=url,
        min_size=db_config.pool_min_size,
        max_size=db_config.pool_max_size,
        timeout=db_config.pool_timeout,
    )
    store = AsyncPostgresLabelStore(pool)
    await store.init_schema()
    logger.info(
        "Using PostgreSQL label store",
        database=DatabaseConfig.from_url(url).to_url(include_password=False),
    )
    return store
