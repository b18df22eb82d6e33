"""
Tests for the query engine: validation, filtering and pagination.
"""

import pytest

from conftest import make_label
from labeler.core import QueryEngine, SigningBridge, parse_cursor, parse_limit
from labeler.errors import InvalidRequest


class TestParameterParsing:
    """Cursor and limit validation."""

    def test_cursor_absent_is_zero(self):
        assert parse_cursor(None) == 0
        assert parse_cursor("") == 0

    def test_cursor_integer_string(self):
        assert parse_cursor("42") == 42
        assert parse_cursor(7) == 7

    @pytest.mark.parametrize("value", ["abc", "-1", "1.5", "١٢", "0x10", "+5", " 5 ", "1_0"])
    def test_cursor_malformed(self, value):
        with pytest.raises(InvalidRequest):
            parse_cursor(value)

    def test_limit_default(self):
        assert parse_limit(None) == 50

    @pytest.mark.parametrize("value", ["1", "250", 1, 250])
    def test_limit_bounds_accepted(self, value):
        assert parse_limit(value) == int(value)

    @pytest.mark.parametrize("value", ["0", "251", 0, 251, "-5", "ten", "+5", " 5 ", "1_0", True])
    def test_limit_bounds_rejected(self, value):
        with pytest.raises(InvalidRequest):
            parse_limit(value)


class TestQueryEngine:
    """Filtered, paginated snapshots."""

    @pytest.fixture
    def engine(self, store, signer):
        return QueryEngine(store, SigningBridge(store, signer))

    async def _seed(self, store, uris):
        for i, uri in enumerate(uris):
            await store.append(make_label(uri=uri, val=f"v{i}", sig=b"s" * 64))

    @pytest.mark.asyncio
    async def test_no_filters_returns_all(self, engine, store):
        await self._seed(store, ["at://a/1", "at://b/1", "at://c/1"])
        result = await engine.query()
        assert [l.uri for l in result.labels] == ["at://a/1", "at://b/1", "at://c/1"]
        assert result.cursor == 3

    @pytest.mark.asyncio
    async def test_pattern_filter(self, engine, store):
        await self._seed(store, [
            "at://did:plc:abc/app.bsky.feed.post/1",
            "at://did:plc:xyz/1",
        ])
        result = await engine.query(patterns=["at://did:plc:abc/*"])
        assert [l.uri for l in result.labels] == ["at://did:plc:abc/app.bsky.feed.post/1"]

    @pytest.mark.asyncio
    async def test_invalid_pattern(self, engine):
        with pytest.raises(InvalidRequest):
            await engine.query(patterns=["a*b"])

    @pytest.mark.asyncio
    async def test_source_filter(self, engine, store):
        await store.append(make_label(src="did:plc:one", sig=b"s"))
        await store.append(make_label(src="did:plc:two", sig=b"s"))
        result = await engine.query(sources=["did:plc:two"])
        assert [l.src for l in result.labels] == ["did:plc:two"]
        assert result.cursor == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", ["0", "251"])
    async def test_limit_out_of_range(self, engine, limit):
        with pytest.raises(InvalidRequest):
            await engine.query(limit=limit)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", ["1", "250"])
    async def test_limit_in_range(self, engine, store, limit):
        await self._seed(store, ["at://a/1", "at://a/2"])
        result = await engine.query(limit=limit)
        assert len(result.labels) == min(int(limit), 2)

    @pytest.mark.asyncio
    async def test_deterministic(self, engine, store):
        await self._seed(store, [f"at://a/{i}" for i in range(10)])
        first = await engine.query(patterns=["at://a/*"], cursor="2", limit="5")
        second = await engine.query(patterns=["at://a/*"], cursor="2", limit="5")
        assert first == second
        assert first.to_json() == second.to_json()

    @pytest.mark.asyncio
    async def test_pagination_completeness(self, engine, store):
        uris = [f"at://did:plc:abc/{i}" if i % 3 else f"at://did:plc:xyz/{i}" for i in range(23)]
        await self._seed(store, uris)
        expected = [u for u in uris if u.startswith("at://did:plc:abc/")]

        seen = []
        cursor = None
        while True:
            page = await engine.query(patterns=["at://did:plc:abc/*"], cursor=cursor, limit="4")
            if not page.labels:
                break
            seen.extend(label.uri for label in page.labels)
            cursor = str(page.cursor)

        assert seen == expected

    @pytest.mark.asyncio
    async def test_empty_page_keeps_cursor(self, engine, store):
        """A polling client never regresses."""
        await self._seed(store, ["at://a/1", "at://a/2"])
        result = await engine.query(cursor="2")
        assert result.labels == []
        assert result.cursor == 2
        assert result.to_json()["cursor"] == "2"

    @pytest.mark.asyncio
    async def test_backfills_unsigned_rows(self, engine, store):
        stored = store.insert_unsigned(make_label())
        result = await engine.query()
        assert result.labels[0].sig
        assert store.get(stored.id).sig == result.labels[0].sig

    @pytest.mark.asyncio
    async def test_json_shape(self, engine, store):
        await store.append(make_label(sig=b"\x01\x02"))
        data = (await engine.query()).to_json()
        assert data["cursor"] == "1"
        [label] = data["labels"]
        assert label["val"] == "spam"
        assert label["sig"] == {"$bytes": "AQI"}
        assert "id" not in label
