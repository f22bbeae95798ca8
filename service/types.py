"""
Core value types shared by every stage of the scheduling engine.
"""
from dataclasses import dataclass, field
from enum import IntEnum
from typing import FrozenSet, Optional, Tuple

from models.rules import WeekType


@dataclass(frozen=True, order=True)
class TimeSlot:
    """A (day, period) coordinate of the weekly grid. Ordered by day, then period."""

    day_of_week: int
    period: int

    @property
    def key(self) -> str:
        return f"d{self.day_of_week}p{self.period}"

    def __str__(self) -> str:
        return f"day {self.day_of_week} period {self.period}"


class PriorityTier(IntEnum):
    """Placement tiers, processed in ascending order."""

    FIXED = 0
    CORE = 1
    GENERAL = 2

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class ScheduleVariable:
    """One atomic teaching hour that needs a slot and a room."""

    id: str
    class_id: str
    course_id: str
    teacher_id: Optional[str]
    subject: str
    priority_tier: PriorityTier
    order: int
    block_group_id: Optional[str] = None
    block_size: int = 1
    block_index: int = 0
    is_fixed_time: bool = False
    fixed_slot: Optional[TimeSlot] = None
    fixed_room_id: Optional[str] = None
    is_preserved: bool = False
    week_type: WeekType = WeekType.ALL
    start_week: int = 1
    end_week: int = 20
    preferred_slots: FrozenSet[TimeSlot] = field(default_factory=frozenset)
    avoid_slots: FrozenSet[TimeSlot] = field(default_factory=frozenset)

    @property
    def is_block(self) -> bool:
        return self.block_group_id is not None and self.block_size > 1

    def resources(self, room_id: Optional[str]) -> Tuple[Tuple[str, Optional[str]], ...]:
        """(kind, id) pairs this variable occupies when placed in ``room_id``."""
        return (("teacher", self.teacher_id), ("room", room_id), ("class", self.class_id))


@dataclass(frozen=True)
class Assignment:
    variable: ScheduleVariable
    slot: TimeSlot
    room_id: Optional[str]

    @property
    def variable_id(self) -> str:
        return self.variable.id
