"""Subscription matching: event-type patterns and filter criteria over event data."""

from typing import Any, Iterable

from eventbus.models import Event, Subscription

WILDCARD = "*"

_MISSING = object()


def matches_event_type(event_type: str, patterns: Iterable[str]) -> bool:
    """
    Check if an event type matches any subscribed pattern.

    Supports exact matches, "*" for every type, and prefix wildcards
    (e.g., "order.*" matches "order.created" and "order.item.added").
    """
    for pattern in patterns:
        if pattern == event_type or pattern == WILDCARD:
            return True
        if pattern.endswith(".*"):
            prefix = pattern[:-2]
            if event_type.startswith(f"{prefix}."):
                return True
    return False


def _lookup(data: Any, path: str) -> Any:
    """Resolve a dotted path ("customer.tier") inside nested mappings."""
    if isinstance(data, dict) and path in data:
        return data[path]
    current = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def matches_filter(data: dict, filter_criteria: dict | None) -> bool:
    """Every criterion must hold. A list value means membership, anything else equality."""
    if not filter_criteria:
        return True
    for key, expected in filter_criteria.items():
        actual = _lookup(data, key)
        if actual is _MISSING:
            return False
        if isinstance(expected, list):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def subscription_matches(subscription: Subscription, event: Event) -> bool:
    return (
        subscription.active
        and matches_event_type(event.event_type, subscription.event_types)
        and matches_filter(event.data, subscription.filter_criteria)
    )
