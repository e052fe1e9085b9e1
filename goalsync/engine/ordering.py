"""Position ordering for task lists.

Order values form a dense sequence 0, 1, 2, ... over the displayed list.
Every reorder recomputes the whole sequence and reports only the items
whose value changed, so untouched items are never rewritten.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderUpdate:
    """A single persisted field change produced by a reorder."""

    item_id: str
    order: int


def display_key(item) -> tuple:
    """Sort key for display order. Equal orders fall back to creation time."""
    return (item.order, item.created_at, item.id)


def in_display_order(items: Iterable) -> list:
    return sorted(items, key=display_key)


def has_order_conflicts(items: Sequence) -> bool:
    """True if two items share an order value."""
    orders = [item.order for item in items]
    return len(set(orders)) != len(orders)


def next_order(items: Sequence) -> int:
    """Order value for an item appended at the end of the list."""
    return max((item.order for item in items), default=-1) + 1


def _number(ordered: Sequence) -> tuple[list, list[OrderUpdate]]:
    result = []
    updates = []
    for position, item in enumerate(ordered):
        if item.order != position:
            updates.append(OrderUpdate(item.id, position))
            item = item.model_copy(update={"order": position})
        result.append(item)
    return result, updates


def renumber(items: Iterable) -> tuple[list, list[OrderUpdate]]:
    """
    Renumber a list densely in its current display order.

    Used to heal lists where two items ended up with the same order.

    Returns:
        Tuple of (items in display order, updates for changed items)
    """
    return _number(in_display_order(items))


def reorder(items: Iterable, ordered_ids: Sequence[str]) -> tuple[list, list[OrderUpdate]]:
    """
    Apply a new display order given as a list of item ids.

    Unknown and repeated ids are ignored. Items missing from ``ordered_ids``
    keep their relative order after the ones that were named. If the
    resulting order is the current one, nothing is emitted.

    Args:
        items: Current items of the list
        ordered_ids: Item ids in the desired display order

    Returns:
        Tuple of (items in the new display order, updates for changed items)
    """
    current = in_display_order(items)
    if not current:
        return [], []

    by_id = {item.id: item for item in current}
    seen = set()
    ordered = []
    for item_id in ordered_ids:
        if item_id not in by_id or item_id in seen:
            logger.debug(f"Ignoring id {item_id} in reorder request")
            continue
        seen.add(item_id)
        ordered.append(by_id[item_id])
    ordered.extend(item for item in current if item.id not in seen)

    if [item.id for item in ordered] == [item.id for item in current]:
        return current, []

    return _number(ordered)


def move(items: Iterable, item_id: str, position: int) -> tuple[list, list[OrderUpdate]]:
    """
    Move one item to a display position (clamped to the list bounds).

    Example:
        [A(0), B(1), C(2)], move C to 0 -> [C(0), A(1), B(2)], three updates
    """
    current = in_display_order(items)
    ids = [item.id for item in current]
    if item_id not in ids:
        return current, []

    ids.remove(item_id)
    position = max(0, min(position, len(ids)))
    ids.insert(position, item_id)
    return reorder(current, ids)
