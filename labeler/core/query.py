"""
Query Engine - filtered, paginated snapshots of the label log.

Backs com.atproto.label.queryLabels. A query never regresses a
polling client: an empty page hands back the cursor it was given.
"""

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

from ..db.patterns import compile_uri_patterns
from ..errors import InvalidRequest
from ..observability import get_metrics
from ..schemas.label import SignedLabel
from .bridge import SigningBridge

if TYPE_CHECKING:
    from ..db.store import LabelStore


_DIGITS = re.compile(r"[0-9]+")

DEFAULT_LIMIT = 50
MAX_LIMIT = 250


def parse_cursor(value: Optional[str | int]) -> int:
    """
    Parse a cursor parameter.

    Absent or empty means 0 (from the beginning).

    Raises:
        InvalidRequest: If the cursor is not a non-negative integer
    """
    if value is None or value == "":
        return 0
    if isinstance(value, int) and not isinstance(value, bool):
        cursor = value
    elif isinstance(value, str) and _DIGITS.fullmatch(value):
        cursor = int(value)
    else:
        raise InvalidRequest("Cursor must be an integer")
    if cursor < 0:
        raise InvalidRequest("Cursor must be an integer")
    return cursor


def parse_limit(value: Optional[str | int], default: int = DEFAULT_LIMIT) -> int:
    """
    Parse a limit parameter.

    Raises:
        InvalidRequest: Unless the limit is an integer in [1, 250]
    """
    if value is None or value == "":
        return default
    if isinstance(value, int) and not isinstance(value, bool):
        limit = value
    elif isinstance(value, str) and _DIGITS.fullmatch(value):
        limit = int(value)
    else:
        raise InvalidRequest("Limit must be an integer between 1 and 250")
    if limit < 1 or limit > MAX_LIMIT:
        raise InvalidRequest("Limit must be an integer between 1 and 250")
    return limit


@dataclass(frozen=True)
class QueryResult:
    """One page of labels."""
    cursor: int
    labels: list[SignedLabel]

    def to_json(self) -> dict:
        return {
            "cursor": str(self.cursor),
            "labels": [label.to_json() for label in self.labels],
        }


class QueryEngine:
    """Builds filtered, paginated views of the label log."""

    def __init__(self, store: "LabelStore", bridge: SigningBridge):
        self._store = store
        self._bridge = bridge

    async def query(
        self,
        patterns: Optional[Iterable[str]] = None,
        sources: Optional[Iterable[str]] = None,
        cursor: Optional[str | int] = None,
        limit: Optional[str | int] = None,
    ) -> QueryResult:
        """
        Return one page of labels after `cursor`, ascending by id.

        May backfill signatures for unsigned rows encountered on the page.

        Raises:
            InvalidRequest: For a malformed cursor, limit or pattern
        """
        start = parse_cursor(cursor)
        page_size = parse_limit(limit)
        compiled = compile_uri_patterns(patterns)
        source_list = [s for s in (sources or []) if s]

        rows = await self._store.scan_filtered(compiled, source_list, start, page_size)

        labels = []
        for row in rows:
            labels.append(await self._bridge.ensure_signed(row))

        get_metrics().queries_total += 1
        next_cursor = rows[-1].id if rows else start
        return QueryResult(cursor=next_cursor, labels=labels)
