"""
Slot assignment.

Teams are spread across a daily window (default 00:00-06:00, one slot per
minute, 360 slots). The team at position `index` in the id-ordered team list
gets slot `index % total_slots`, so assignment is stable across restarts for
the same team list. Teams past `total_slots` wrap around and share a slot.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class SlotAssignment:
    team_id: int
    index: int
    slot: int
    hour: int
    minute: int


def total_slots(window_hours: int, slot_minutes: int) -> int:
    if window_hours < 1 or slot_minutes < 1:
        raise ValueError("window_hours and slot_minutes must be positive")
    return max(1, (window_hours * 60) // slot_minutes)


def assign_slot(index: int, slots: int) -> int:
    if slots < 1:
        raise ValueError("slots must be positive")
    return index % slots


def slot_to_time(slot: int, *, window_start_hour: int = 0, slot_minutes: int = 1) -> tuple[int, int]:
    """(hour, minute) at which `slot` fires."""
    offset = (window_start_hour * 60 + slot * slot_minutes) % MINUTES_PER_DAY
    return divmod(offset, 60)


def assign_slots(
    team_ids: Sequence[int],
    *,
    slots: int,
    window_start_hour: int = 0,
    slot_minutes: int = 1,
) -> dict[int, SlotAssignment]:
    assignments: dict[int, SlotAssignment] = {}
    for index, team_id in enumerate(team_ids):
        slot = assign_slot(index, slots)
        hour, minute = slot_to_time(slot, window_start_hour=window_start_hour, slot_minutes=slot_minutes)
        assignments[team_id] = SlotAssignment(
            team_id=team_id,
            index=index,
            slot=slot,
            hour=hour,
            minute=minute,
        )
    return assignments


def overloaded_slots(assignments: Iterable[SlotAssignment], max_per_slot: int) -> dict[int, list[int]]:
    """Slots holding more than `max_per_slot` teams, with the team ids in each."""
    by_slot: dict[int, list[int]] = {}
    for assignment in assignments:
        by_slot.setdefault(assignment.slot, []).append(assignment.team_id)
    return {slot: ids for slot, ids in by_slot.items() if len(ids) > max_per_slot}
