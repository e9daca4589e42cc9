"""Composable multi-key ordering.

``sort_by(items, [(key, 'asc'), (other_key, 'desc')])`` sorts by the first key,
breaking ties with each following key. Keys are attribute/dict-key names or
callables. ``None`` values always sort last, whatever the direction, and equal
items keep their input order.
"""

from functools import cmp_to_key
from typing import Any, Callable, Iterable, Sequence

from fixturecache.services.freshness_policy import priority_rank

ASC = 'asc'
DESC = 'desc'


def _resolve(item: Any, key) -> Any:
    if callable(key):
        return key(item)
    if isinstance(item, dict):
        return item.get(key)
    return getattr(item, key, None)


def _compare(a: Any, b: Any) -> int:
    if a is None and b is None:
        return 0
    if a is None:
        return 1
    if b is None:
        return -1
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def chain(criteria: Sequence[tuple[Any, str]]) -> Callable[[Any, Any], int]:
    """Build a comparator from ``(key, direction)`` pairs."""
    for _, direction in criteria:
        if direction not in (ASC, DESC):
            raise ValueError(f"Unknown sort direction: {direction!r}")

    def comparator(left, right) -> int:
        for key, direction in criteria:
            a, b = _resolve(left, key), _resolve(right, key)
            result = _compare(a, b)
            if result == 0:
                continue
            # None stays last in both directions
            if direction == DESC and a is not None and b is not None:
                result = -result
            return result
        return 0

    return comparator


def sort_by(items: Iterable, criteria: Sequence[tuple[Any, str]]) -> list:
    return sorted(items, key=cmp_to_key(chain(criteria)))


def by_priority(record) -> int:
    """Sort key: numeric rank of a record's priority (critical highest)."""
    return priority_rank(_resolve(record, 'priority'))


def sort_by_priority(records: Iterable) -> list:
    """Highest priority first, then earliest kickoff."""
    return sort_by(records, [(by_priority, DESC), ('match_date', ASC)])
