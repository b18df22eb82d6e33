"""
URI pattern filters for label queries.

A pattern is either an exact URI or a prefix ending in a single
trailing "*". The lone pattern "*" disables URI filtering entirely,
whatever other patterns are given.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from ..errors import InvalidRequest

WILDCARD = "*"
LIKE_ESCAPE = "\\"


@dataclass(frozen=True)
class UriPattern:
    """One compiled uriPatterns entry."""
    text: str
    is_prefix: bool

    def matches(self, uri: str) -> bool:
        if self.is_prefix:
            return uri.startswith(self.text)
        return uri == self.text

    def to_like(self) -> str:
        """
        SQL LIKE pattern (use with ESCAPE '\\').

        The pattern text is escaped so that "%" and "_" in a URI
        match themselves.
        """
        escaped = (
            self.text
            .replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
            .replace("%", LIKE_ESCAPE + "%")
            .replace("_", LIKE_ESCAPE + "_")
        )
        return escaped + "%" if self.is_prefix else escaped


def compile_uri_patterns(patterns: Optional[Iterable[str]]) -> list[UriPattern]:
    """
    Validate and compile uriPatterns.

    Returns an empty list when every URI matches (no patterns given,
    or "*" among them).

    Raises:
        InvalidRequest: If a "*" appears anywhere but the final character
    """
    patterns = list(patterns or [])
    if WILDCARD in patterns:
        return []

    compiled = []
    for pattern in patterns:
        star = pattern.find(WILDCARD)
        if star == -1:
            compiled.append(UriPattern(text=pattern, is_prefix=False))
        elif star == len(pattern) - 1:
            compiled.append(UriPattern(text=pattern[:-1], is_prefix=True))
        else:
            raise InvalidRequest("Only trailing wildcards are supported in uriPatterns")
    return compiled
