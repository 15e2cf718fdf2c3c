"""
Record filters for Time Machine queries.

A filter maps field names to expected values. A value containing ``*`` is
a wildcard: literal segments are escaped, each ``*`` matches any substring,
matching is case-insensitive and unanchored. Any other value must be equal
to the field value. A record matches only if every key matches.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

WILDCARD = "*"


def compile_wildcard(value: str) -> re.Pattern:
    """Compile a wildcard value to a case-insensitive search pattern."""
    pattern = ".*".join(re.escape(segment) for segment in value.split(WILDCARD))
    return re.compile(pattern, re.IGNORECASE)


class CompiledFilter:
    """A filter compiled once and applied to many records.

    Example:
        >>> f = CompiledFilter({"Title": "*demo*", "Status": "Open"})
        >>> f.matches({"Title": "Q3 Demo deck", "Status": "Open"})
        True
    """

    def __init__(self, filters: Mapping[str, Any] | None = None) -> None:
        self.filters = dict(filters or {})
        self._patterns: dict[str, re.Pattern] = {}
        self._exact: dict[str, Any] = {}
        for key, value in self.filters.items():
            if isinstance(value, str) and WILDCARD in value:
                self._patterns[key] = compile_wildcard(value)
            else:
                self._exact[key] = value

    def __bool__(self) -> bool:
        return bool(self.filters)

    def matches(self, record: Mapping[str, Any]) -> bool:
        for key, expected in self._exact.items():
            if key not in record or record[key] != expected:
                return False
        for key, pattern in self._patterns.items():
            if key not in record or record[key] is None:
                return False
            if not pattern.search(str(record[key])):
                return False
        return True

    def apply(self, records: Iterable[Mapping[str, Any]]) -> list:
        """Matching records in their original order."""
        if not self.filters:
            return list(records)
        return [r for r in records if self.matches(r)]
