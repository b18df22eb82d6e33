"""
Tests for the label log and URI pattern filters.
"""

from contextlib import asynccontextmanager

import asyncpg
import pytest

from conftest import make_label
from labeler.db import AsyncPostgresLabelStore, UriPattern, compile_uri_patterns
from labeler.errors import InvalidRequest, SigningFailure, WriteFailure


class TestUriPatterns:
    """Pattern compilation and matching."""

    def test_trailing_wildcard_is_prefix(self):
        [pattern] = compile_uri_patterns(["at://did:plc:abc/*"])
        assert pattern.is_prefix
        assert pattern.matches("at://did:plc:abc/app.bsky.feed.post/1")
        assert not pattern.matches("at://did:plc:xyz/1")

    def test_no_wildcard_is_exact(self):
        [pattern] = compile_uri_patterns(["did:plc:abc"])
        assert not pattern.is_prefix
        assert pattern.matches("did:plc:abc")
        assert not pattern.matches("did:plc:abcd")

    def test_inner_wildcard_rejected(self):
        with pytest.raises(InvalidRequest):
            compile_uri_patterns(["a*b"])

    def test_double_wildcard_rejected(self):
        with pytest.raises(InvalidRequest):
            compile_uri_patterns(["at://*/*"])

    def test_lone_wildcard_matches_everything(self):
        """"*" overrides every other pattern."""
        assert compile_uri_patterns(["at://did:plc:abc/*", "*"]) == []

    def test_empty_patterns(self):
        assert compile_uri_patterns(None) == []
        assert compile_uri_patterns([]) == []

    def test_like_escapes_metacharacters(self):
        pattern = UriPattern(text="at://did:plc:a_b/100%", is_prefix=True)
        assert pattern.to_like() == "at://did:plc:a\\_b/100\\%%"

    def test_like_escapes_backslash(self):
        pattern = UriPattern(text="a\\b", is_prefix=False)
        assert pattern.to_like() == "a\\\\b"


class TestInMemoryLabelStore:
    """Append, scans and signature backfill."""

    @pytest.mark.asyncio
    async def test_ids_strictly_increasing(self, store):
        ids = []
        for i in range(10):
            stored = await store.append(make_label(val=f"v{i}"))
            ids.append(stored.id)
        assert ids == sorted(ids)
        assert len(set(ids)) == len(ids)
        assert ids[0] == 1

    @pytest.mark.asyncio
    async def test_max_id(self, store):
        assert await store.max_id() == 0
        await store.append(make_label())
        await store.append(make_label())
        assert await store.max_id() == 2

    @pytest.mark.asyncio
    async def test_scan_from_cursor_and_limit(self, store):
        for i in range(5):
            await store.append(make_label(val=f"v{i}"))

        rows = await store.scan_from(2)
        assert [r.id for r in rows] == [3, 4, 5]

        rows = await store.scan_from(0, limit=2)
        assert [r.id for r in rows] == [1, 2]

        assert await store.scan_from(5) == []

    @pytest.mark.asyncio
    async def test_scan_filtered_patterns_any(self, store):
        await store.append(make_label(uri="at://did:plc:abc/post/1"))
        await store.append(make_label(uri="at://did:plc:xyz/post/1"))
        await store.append(make_label(uri="did:plc:def"))

        patterns = compile_uri_patterns(["at://did:plc:abc/*", "did:plc:def"])
        rows = await store.scan_filtered(patterns, [], 0, 50)
        assert [r.id for r in rows] == [1, 3]

    @pytest.mark.asyncio
    async def test_scan_filtered_sources_and_patterns(self, store):
        """Sources restrict every pattern, not just the last one."""
        await store.append(make_label(src="did:plc:one", uri="at://did:plc:abc/1"))
        await store.append(make_label(src="did:plc:two", uri="at://did:plc:abc/2"))
        await store.append(make_label(src="did:plc:two", uri="did:plc:def"))

        patterns = compile_uri_patterns(["at://did:plc:abc/*", "did:plc:def"])
        rows = await store.scan_filtered(patterns, ["did:plc:one"], 0, 50)
        assert [r.id for r in rows] == [1]

    @pytest.mark.asyncio
    async def test_scan_filtered_respects_cursor(self, store):
        for _ in range(4):
            await store.append(make_label())
        rows = await store.scan_filtered([], [], 2, 50)
        assert [r.id for r in rows] == [3, 4]

    @pytest.mark.asyncio
    async def test_set_signature_idempotent(self, store):
        stored = store.insert_unsigned(make_label())
        await store.set_signature(stored.id, b"sig")
        await store.set_signature(stored.id, b"sig")
        assert store.get(stored.id).sig == b"sig"

    @pytest.mark.asyncio
    async def test_set_signature_never_overwrites(self, store):
        stored = store.insert_unsigned(make_label())
        await store.set_signature(stored.id, b"sig")
        with pytest.raises(SigningFailure):
            await store.set_signature(stored.id, b"other")
        assert store.get(stored.id).sig == b"sig"

    @pytest.mark.asyncio
    async def test_set_signature_missing_row(self, store):
        with pytest.raises(SigningFailure):
            await store.set_signature(42, b"sig")

    @pytest.mark.asyncio
    async def test_rows_are_immutable(self, store):
        """Negation is a new row; the original is untouched."""
        original = await store.append(make_label(sig=b"s1"))
        negation = await store.append(make_label(neg=True, sig=b"s2"))
        assert negation.id > original.id
        assert store.get(original.id) == original
        assert store.get(original.id).neg is False

    def test_clear(self, store):
        store.insert_unsigned(make_label())
        store.clear()
        assert store.get(1) is None


class TestPostgresTimeouts:
    """Timeout classification (no database needed)."""

    class FakePgError(Exception):
        def __init__(self, sqlstate, message):
            super().__init__(message)
            self.sqlstate = sqlstate

    @pytest.fixture
    def pg_store(self):
        return AsyncPostgresLabelStore(pool=None)

    def test_lock_not_available(self, pg_store):
        assert pg_store._timeout_kind(self.FakePgError("55P03", "could not obtain lock")) == "lock"

    def test_lock_timeout_message(self, pg_store):
        err = self.FakePgError("57014", "canceling statement due to lock timeout")
        assert pg_store._timeout_kind(err) == "lock"

    def test_statement_timeout(self, pg_store):
        err = self.FakePgError("57014", "canceling statement due to statement timeout")
        assert pg_store._timeout_kind(err) == "statement"

    def test_other_errors(self, pg_store):
        assert pg_store._timeout_kind(ValueError("boom")) is None


class FakeConnection:
    """Connection whose INSERT fails with the given error."""

    def __init__(self, error):
        self.error = error

    @asynccontextmanager
    async def transaction(self):
        yield

    async def execute(self, query, *args):
        return "SET"

    async def fetchval(self, query, *args):
        raise self.error


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


class TestPostgresAppendFailures:
    """Every failed insert surfaces as WriteFailure."""

    @pytest.mark.asyncio
    async def test_connection_error_is_write_failure(self):
        error = asyncpg.PostgresConnectionError("connection was closed in the middle of operation")
        store = AsyncPostgresLabelStore(pool=FakePool(FakeConnection(error)))
        with pytest.raises(WriteFailure, match="Failed to insert label") as info:
            await store.append(make_label())
        assert info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_lock_timeout_is_write_failure(self):
        error = TestPostgresTimeouts.FakePgError("55P03", "could not obtain lock")
        store = AsyncPostgresLabelStore(pool=FakePool(FakeConnection(error)))
        with pytest.raises(WriteFailure, match="busy"):
            await store.append(make_label())
