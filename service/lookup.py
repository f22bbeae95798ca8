"""
Read-only lookup tables built once at the start of a run.

Every id reference in the teaching plans is resolved against these tables; the
constraint engine never searches entity lists.
"""
from types import MappingProxyType
from typing import FrozenSet, Iterable, List, Mapping, Optional

from models.entities import Course, Room, SchoolClass, SchoolDataSnapshot, Teacher
from models.rules import SchedulingRules, SlotGroup
from .types import TimeSlot


def expand_slot_groups(groups: Iterable[SlotGroup]) -> FrozenSet[TimeSlot]:
    """Flatten ``[{day_of_week, periods[]}]`` entries into individual slots."""
    return frozenset(
        TimeSlot(group.day_of_week, period)
        for group in groups
        for period in group.periods
    )


class LookupTables:
    """Immutable view over the snapshot entities and the rule set's time grid."""

    def __init__(self, rules: SchedulingRules, snapshot: SchoolDataSnapshot):
        self.rules = rules
        self.teachers: Mapping[str, Teacher] = MappingProxyType({t.id: t for t in snapshot.teachers})
        self.classes: Mapping[str, SchoolClass] = MappingProxyType({c.id: c for c in snapshot.classes})
        self.courses: Mapping[str, Course] = MappingProxyType({c.id: c for c in snapshot.courses})
        self.rooms: Mapping[str, Room] = MappingProxyType({r.id: r for r in snapshot.rooms})

        time_rules = rules.time_rules
        self.daily_periods = time_rules.daily_periods
        self.lunch_break_start = time_rules.lunch_break_start
        self.working_days = tuple(time_rules.working_days)
        self.all_slots: List[TimeSlot] = [
            TimeSlot(day, period)
            for day in self.working_days
            for period in range(1, self.daily_periods + 1)
        ]
        self._grid = frozenset(self.all_slots)
        self.forbidden_slots = expand_slot_groups(time_rules.forbidden_slots)

        self.teacher_unavailable: Mapping[str, FrozenSet[TimeSlot]] = MappingProxyType({
            t.id: expand_slot_groups(t.unavailable_slots) for t in snapshot.teachers
        })
        self.teacher_preferred: Mapping[str, FrozenSet[TimeSlot]] = MappingProxyType({
            t.id: expand_slot_groups(t.preferred_slots) for t in snapshot.teachers
        })
        self.room_unavailable: Mapping[str, FrozenSet[TimeSlot]] = MappingProxyType({
            r.id: expand_slot_groups(r.unavailable_slots) for r in snapshot.rooms
        })
        # Room ids sorted so candidate enumeration is deterministic
        self.room_ids: List[str] = sorted(r.id for r in snapshot.rooms if r.is_active)

    def in_grid(self, slot: TimeSlot) -> bool:
        return slot in self._grid

    def is_afternoon(self, slot: TimeSlot) -> bool:
        return slot.period > self.lunch_break_start

    def crosses_lunch(self, first_period: int, last_period: int) -> bool:
        """True when periods first..last straddle the lunch break."""
        return first_period <= self.lunch_break_start < last_period

    def class_size(self, class_id: str) -> int:
        school_class = self.classes.get(class_id)
        return school_class.student_count if school_class else 0

    def homeroom_for(self, class_id: str) -> Optional[str]:
        school_class = self.classes.get(class_id)
        return school_class.homeroom_id if school_class else None

    def teacher_name(self, teacher_id: Optional[str]) -> str:
        teacher = self.teachers.get(teacher_id) if teacher_id else None
        if teacher is None:
            return str(teacher_id)
        return teacher.name or teacher.id

    def required_room_types(self, course_id: str) -> List[str]:
        course = self.courses.get(course_id)
        return list(course.room_requirements.types) if course else []
