"""
Constraint engine: hard predicates and soft penalties for candidate placements.

Every check is evaluated against a ``WorkingState`` and the read-only lookup
tables for one candidate ``(variable, slot, room)``. Hard checks return a
``Rejection`` instead of raising; soft checks return non-negative penalties
tagged with the resource they concern so the solver can break ties by the
rule set's priority order.
"""
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from models.rules import ConflictPolicy, LabCoursePreference
from .lookup import LookupTables
from .state import WorkingState
from .types import Assignment, ScheduleVariable, TimeSlot

# Soft penalty weights
COLLISION_PENALTY = 1000
TEACHER_DAILY_LOAD_PENALTY = 30
TEACHER_CONTINUOUS_PENALTY = 25
TEACHER_REST_PENALTY = 10
TEACHER_WEEKLY_LOAD_PENALTY = 40
FRIDAY_AFTERNOON_PENALTY = 5
TEACHER_PREFERENCE_PENALTY = 10
FIRST_LAST_PERIOD_PENALTY = 20
COURSE_PREFERENCE_PENALTY = 10
AVOID_SLOT_PENALTY = 30
LAB_TIME_PENALTY = 10
CORE_PERIOD_MISS_PENALTY = 8
CORE_AVOID_PERIOD_PENALTY = 20
DAILY_OCCURRENCE_PENALTY = 50
CONCENTRATION_PENALTY = 60
ROTATION_INTERVAL_PENALTY = 15
ROTATION_CONSECUTIVE_PENALTY = 15
HOMEROOM_PENALTY = 3


class RejectionReason(str, Enum):
    OUTSIDE_GRID = "outside_grid"
    FORBIDDEN_SLOT = "forbidden_slot"
    TEACHER_UNAVAILABLE = "teacher_unavailable"
    TEACHER_BUSY = "teacher_busy"
    CLASS_BUSY = "class_busy"
    ROOM_BUSY = "room_busy"
    NO_ROOM = "no_room"
    ROOM_UNAVAILABLE = "room_unavailable"
    ROOM_TYPE_MISMATCH = "room_type_mismatch"
    ROOM_EQUIPMENT_MISSING = "room_equipment_missing"
    ROOM_CAPACITY = "room_capacity"
    CONTINUITY = "continuity"
    LUNCH_BOUNDARY = "lunch_boundary"
    BLOCK_TOO_LONG = "block_too_long"


BUSY_REASONS = {
    "teacher": RejectionReason.TEACHER_BUSY,
    "room": RejectionReason.ROOM_BUSY,
    "class": RejectionReason.CLASS_BUSY,
}


@dataclass(frozen=True)
class Rejection:
    reason: RejectionReason
    detail: str = ""


@dataclass(frozen=True)
class Penalty:
    kind: str
    resource: str  # "teacher" | "room" | "class"
    amount: float


@dataclass(frozen=True)
class Evaluation:
    """Outcome of evaluating one candidate placement."""

    rejection: Optional[Rejection] = None
    penalties: Tuple[Penalty, ...] = ()

    @property
    def feasible(self) -> bool:
        return self.rejection is None

    @property
    def total(self) -> float:
        return sum(p.amount for p in self.penalties)

    def by_resource(self, order: Sequence[str]) -> Tuple[float, ...]:
        """Penalty sums per resource kind, in the given priority order."""
        return tuple(sum(p.amount for p in self.penalties if p.resource == kind) for kind in order)


class ConstraintEngine:
    """Hard/soft constraint evaluation bound to one rule set and one snapshot."""

    def __init__(self, lookup: LookupTables):
        self.lookup = lookup
        self.rules = lookup.rules
        self._room_cache: Dict[Tuple[str, str], Tuple[List[str], Counter]] = {}
        core = self.rules.course_arrangement_rules.core_subject_strategy
        self._core_enabled = core.enable_core_subject_strategy
        self._avoid_first_last = {
            s.lower() for s in self.rules.course_arrangement_rules.avoid_first_last_period
        }

    # ======================================================== candidate rooms

    def candidate_rooms(self, variable: ScheduleVariable) -> List[str]:
        """Rooms statically suitable for the variable, lowest id first."""
        return self._suitable_rooms(variable)[0]

    def room_rejections(self, variable: ScheduleVariable) -> Counter:
        """Why each unsuitable room was ruled out, by reason."""
        return self._suitable_rooms(variable)[1]

    def _suitable_rooms(self, variable: ScheduleVariable) -> Tuple[List[str], Counter]:
        key = (variable.course_id, variable.class_id)
        if key not in self._room_cache:
            suitable, reasons = [], Counter()
            for room_id in self.lookup.room_ids:
                rejection = self._check_room_static(variable, room_id)
                if rejection is None:
                    suitable.append(room_id)
                else:
                    reasons[rejection.reason.value] += 1
            if not self.lookup.room_ids:
                reasons[RejectionReason.NO_ROOM.value] += 1
            self._room_cache[key] = (suitable, reasons)
        return self._room_cache[key]

    # ============================================================ hard checks

    def check_hard(self, state: WorkingState, variable: ScheduleVariable,
                   slot: TimeSlot, room_id: Optional[str]) -> Optional[Rejection]:
        """First hard constraint the candidate violates, or None."""
        rejection = self.check_time(state, variable, slot)
        if rejection is not None:
            return rejection
        rejection = self.check_room(variable, slot, room_id)
        if rejection is not None:
            return rejection
        return self._check_exclusive(state, variable, "room", room_id, slot)

    def check_time(self, state: WorkingState, variable: ScheduleVariable,
                   slot: TimeSlot) -> Optional[Rejection]:
        """Room-independent hard checks, continuity included."""
        rejection = self.check_availability(state, variable, slot)
        if rejection is None and variable.is_block:
            return self.check_continuity(state, variable, slot)
        return rejection

    def check_availability(self, state: WorkingState, variable: ScheduleVariable,
                           slot: TimeSlot) -> Optional[Rejection]:
        """Grid, forbidden slots, teacher availability and teacher/class exclusivity."""
        if not self.lookup.in_grid(slot):
            return Rejection(RejectionReason.OUTSIDE_GRID, str(slot))
        if slot in self.lookup.forbidden_slots:
            return Rejection(RejectionReason.FORBIDDEN_SLOT, str(slot))
        teacher_id = variable.teacher_id
        if teacher_id is not None and slot in self.lookup.teacher_unavailable.get(teacher_id, ()):
            return Rejection(RejectionReason.TEACHER_UNAVAILABLE, f"teacher {teacher_id} at {slot}")
        for kind, resource_id in (("teacher", teacher_id), ("class", variable.class_id)):
            rejection = self._check_exclusive(state, variable, kind, resource_id, slot)
            if rejection is not None:
                return rejection
        return None

    def check_room(self, variable: ScheduleVariable, slot: TimeSlot,
                   room_id: Optional[str]) -> Optional[Rejection]:
        rejection = self._check_room_static(variable, room_id)
        if rejection is not None:
            return rejection
        if slot in self.lookup.room_unavailable.get(room_id, ()):
            return Rejection(RejectionReason.ROOM_UNAVAILABLE, f"room {room_id} at {slot}")
        return None

    def room_open(self, state: WorkingState, variable: ScheduleVariable,
                  slot: TimeSlot, room_id: str) -> bool:
        """Room is suitable, available and (policy permitting) free at the slot."""
        if self.check_room(variable, slot, room_id) is not None:
            return False
        return self._check_exclusive(state, variable, "room", room_id, slot) is None

    def _check_room_static(self, variable: ScheduleVariable, room_id: Optional[str]) -> Optional[Rejection]:
        room = self.lookup.rooms.get(room_id) if room_id is not None else None
        if room is None:
            return Rejection(RejectionReason.NO_ROOM, f"room {room_id} does not exist")
        if not room.is_active:
            return Rejection(RejectionReason.ROOM_UNAVAILABLE, f"room {room_id} is inactive")
        course = self.lookup.courses.get(variable.course_id)
        requirements = course.room_requirements if course else None
        if requirements is not None:
            if requirements.types and room.type not in requirements.types:
                return Rejection(RejectionReason.ROOM_TYPE_MISMATCH, f"{room.type} not in {requirements.types}")
            missing = set(requirements.equipment) - set(room.equipment)
            if missing:
                return Rejection(RejectionReason.ROOM_EQUIPMENT_MISSING, ", ".join(sorted(missing)))
        if self.rules.room_constraints.respect_capacity_limits:
            needed = self.lookup.class_size(variable.class_id)
            if requirements is not None and requirements.capacity:
                needed = max(needed, requirements.capacity)
            if room.capacity < needed:
                return Rejection(RejectionReason.ROOM_CAPACITY, f"room {room_id} seats {room.capacity} < {needed}")
        return None

    def _check_exclusive(self, state: WorkingState, variable: ScheduleVariable, kind: str,
                         resource_id: Optional[str], slot: TimeSlot) -> Optional[Rejection]:
        if resource_id is None:
            return None
        if self.rules.conflict_resolution_rules.policy_for(kind) == ConflictPolicy.IGNORE:
            return None
        if state.is_busy(kind, resource_id, slot, exclude=variable.id):
            return Rejection(BUSY_REASONS[kind], f"{kind} {resource_id} at {slot}")
        return None

    def check_continuity(self, state: WorkingState, variable: ScheduleVariable,
                         slot: TimeSlot) -> Optional[Rejection]:
        """Block siblings must fill adjacent periods of one day without crossing lunch."""
        size = variable.block_size
        max_block = self.rules.course_arrangement_rules.max_continuous_hours
        if size > max_block:
            return Rejection(RejectionReason.BLOCK_TOO_LONG, f"block of {size} exceeds {max_block}")

        siblings = state.block_siblings(variable)
        if siblings:
            days = {a.slot.day_of_week for a in siblings}
            periods = sorted(a.slot.period for a in siblings)
            if days != {slot.day_of_week}:
                return Rejection(RejectionReason.CONTINUITY, "block siblings are on another day")
            if slot.period != periods[-1] + 1:
                return Rejection(
                    RejectionReason.CONTINUITY,
                    f"expected period {periods[-1] + 1}, got {slot.period}",
                )
            start = periods[0]
        else:
            start = slot.period
        end = start + size - 1
        if end > self.lookup.daily_periods:
            return Rejection(RejectionReason.CONTINUITY, f"block would end at period {end}")
        if self.lookup.crosses_lunch(start, end):
            return Rejection(RejectionReason.LUNCH_BOUNDARY, f"periods {start}-{end} cross lunch")
        return None

    # ============================================================ soft checks

    def soft_penalties(self, state: WorkingState, variable: ScheduleVariable,
                       slot: TimeSlot, room_id: Optional[str]) -> List[Penalty]:
        penalties: List[Penalty] = []
        penalties.extend(self._collision_penalties(state, variable, slot, room_id))
        penalties.extend(self._teacher_load_penalties(state, variable, slot))
        penalties.extend(self._placement_penalties(variable, slot))
        penalties.extend(self._distribution_penalties(state, variable, slot))
        penalties.extend(self._rotation_penalties(state, variable, slot))
        penalties.extend(self._room_penalties(variable, room_id))
        return [p for p in penalties if p.amount > 0]

    def evaluate(self, state: WorkingState, variable: ScheduleVariable,
                 slot: TimeSlot, room_id: Optional[str]) -> Evaluation:
        rejection = self.check_hard(state, variable, slot, room_id)
        if rejection is not None:
            return Evaluation(rejection=rejection)
        return Evaluation(penalties=tuple(self.soft_penalties(state, variable, slot, room_id)))

    def evaluate_room(self, state: WorkingState, variable: ScheduleVariable,
                      slot: TimeSlot, room_id: str) -> Evaluation:
        """Like ``evaluate`` for a slot that already passed ``check_time``."""
        rejection = self.check_room(variable, slot, room_id)
        if rejection is None:
            rejection = self._check_exclusive(state, variable, "room", room_id, slot)
        if rejection is not None:
            return Evaluation(rejection=rejection)
        return Evaluation(penalties=tuple(self.soft_penalties(state, variable, slot, room_id)))

    def assignment_penalties(self, state: WorkingState, assignment: Assignment) -> List[Penalty]:
        """Soft penalties an existing assignment incurs against the rest of the state."""
        return self.soft_penalties(state, assignment.variable, assignment.slot, assignment.room_id)

    def _collision_penalties(self, state, variable, slot, room_id) -> List[Penalty]:
        resolution = self.rules.conflict_resolution_rules
        penalties = []
        for kind, resource_id in variable.resources(room_id):
            if resource_id is None or resolution.policy_for(kind) != ConflictPolicy.IGNORE:
                continue
            others = state.occupants(kind, resource_id, slot, exclude=variable.id)
            if others:
                penalties.append(Penalty(f"{kind}_collision", kind, COLLISION_PENALTY * len(others)))
        return penalties

    def _teacher_load_penalties(self, state, variable, slot) -> List[Penalty]:
        teacher_id = variable.teacher_id
        if teacher_id is None:
            return []
        constraints = self.rules.teacher_constraints
        others = state.teacher_assignments(teacher_id, exclude=variable.id)
        penalties = []

        periods = {a.slot.period for a in others if a.slot.day_of_week == slot.day_of_week}
        periods.add(slot.period)
        if len(periods) > constraints.max_daily_hours:
            excess = len(periods) - constraints.max_daily_hours
            penalties.append(Penalty("teacher_daily_load", "teacher", TEACHER_DAILY_LOAD_PENALTY * excess))

        run = _run_length(periods, slot.period, self.lookup.lunch_break_start)
        if run > constraints.max_continuous_hours:
            excess = run - constraints.max_continuous_hours
            penalties.append(Penalty("teacher_continuous_load", "teacher", TEACHER_CONTINUOUS_PENALTY * excess))

        if constraints.min_rest_between_courses > self.rules.time_rules.break_duration:
            lunch = self.lookup.lunch_break_start
            back_to_back = (
                (slot.period - 1 in periods and slot.period - 1 != lunch)
                or (slot.period + 1 in periods and slot.period != lunch)
            )
            if back_to_back:
                penalties.append(Penalty("teacher_rest", "teacher", TEACHER_REST_PENALTY))

        teacher = self.lookup.teachers.get(teacher_id)
        if teacher is not None and teacher.max_weekly_hours is not None:
            weekly = len(others) + 1
            if weekly > teacher.max_weekly_hours:
                excess = weekly - teacher.max_weekly_hours
                penalties.append(Penalty("teacher_weekly_load", "teacher", TEACHER_WEEKLY_LOAD_PENALTY * excess))

        if constraints.avoid_friday_afternoon and slot.day_of_week == 5 and self.lookup.is_afternoon(slot):
            penalties.append(Penalty("friday_afternoon", "teacher", FRIDAY_AFTERNOON_PENALTY))

        if constraints.respect_teacher_preferences:
            preferred = self.lookup.teacher_preferred.get(teacher_id, frozenset())
            if preferred and slot not in preferred:
                penalties.append(Penalty("teacher_preference", "teacher", TEACHER_PREFERENCE_PENALTY))
        return penalties

    def _placement_penalties(self, variable, slot) -> List[Penalty]:
        penalties = []
        subject = variable.subject.lower()
        if subject in self._avoid_first_last and slot.period in (1, self.lookup.daily_periods):
            penalties.append(Penalty("first_last_period", "class", FIRST_LAST_PERIOD_PENALTY))
        if variable.preferred_slots and slot not in variable.preferred_slots:
            penalties.append(Penalty("course_preference", "class", COURSE_PREFERENCE_PENALTY))
        if slot in variable.avoid_slots:
            penalties.append(Penalty("avoid_slot", "class", AVOID_SLOT_PENALTY))

        lab_preference = self.rules.course_arrangement_rules.lab_course_preference
        if lab_preference != LabCoursePreference.FLEXIBLE and self._is_lab_course(variable):
            afternoon = self.lookup.is_afternoon(slot)
            if (lab_preference == LabCoursePreference.MORNING) == afternoon:
                penalties.append(Penalty("lab_time_preference", "room", LAB_TIME_PENALTY))

        if self._is_core(variable):
            strategy = self.rules.course_arrangement_rules.core_subject_strategy
            if slot.period in strategy.avoid_periods:
                penalties.append(Penalty("core_avoid_period", "class", CORE_AVOID_PERIOD_PENALTY))
            elif strategy.preferred_periods and slot.period not in strategy.preferred_periods:
                penalties.append(Penalty("core_preferred_period", "class", CORE_PERIOD_MISS_PENALTY))
        return penalties

    def _distribution_penalties(self, state, variable, slot) -> List[Penalty]:
        if not self._is_core(variable):
            return []
        strategy = self.rules.course_arrangement_rules.core_subject_strategy
        same_subject = [
            a for a in state.class_assignments(variable.class_id, exclude=variable.id)
            if a.variable.subject.lower() == variable.subject.lower()
        ]
        penalties = []

        daily = 1 + sum(1 for a in same_subject if a.slot.day_of_week == slot.day_of_week)
        if daily > strategy.max_daily_occurrences:
            excess = daily - strategy.max_daily_occurrences
            penalties.append(Penalty("core_daily_occurrence", "class", DAILY_OCCURRENCE_PENALTY * excess))

        if strategy.enforce_even_distribution:
            days = {a.slot.day_of_week for a in same_subject}
            days.add(slot.day_of_week)
            run = _run_length(days, slot.day_of_week)
            if run > strategy.max_concentration and strategy.balance_weight > 0:
                excess = run - strategy.max_concentration
                weight = strategy.balance_weight / 100.0
                penalties.append(Penalty("core_concentration", "class", CONCENTRATION_PENALTY * excess * weight))
        return penalties

    def _rotation_penalties(self, state, variable, slot) -> List[Penalty]:
        rotation = self.rules.teacher_constraints.rotation_strategy
        if not rotation.enable_rotation or variable.teacher_id is None:
            return []
        penalties = []
        teacher_lessons = sorted(
            (a.slot, a.variable.class_id)
            for a in state.teacher_assignments(variable.teacher_id, exclude=variable.id)
        )

        if rotation.min_interval_between_classes > 0:
            pair_slots = [s for s, class_id in teacher_lessons if class_id == variable.class_id]
            class_slots = sorted(a.slot for a in state.class_assignments(variable.class_id, exclude=variable.id))
            before = [s for s in pair_slots if s < slot]
            after = [s for s in pair_slots if s > slot]
            for neighbour in ([before[-1]] if before else []) + ([after[0]] if after else []):
                low, high = min(neighbour, slot), max(neighbour, slot)
                between = sum(1 for s in class_slots if low < s < high)
                if between < rotation.min_interval_between_classes:
                    penalties.append(Penalty("rotation_interval", "teacher", ROTATION_INTERVAL_PENALTY))

        if rotation.max_consecutive_classes > 0:
            timeline = teacher_lessons + [(slot, variable.class_id)]
            timeline.sort()
            position = timeline.index((slot, variable.class_id))
            run = 1
            index = position - 1
            while index >= 0 and timeline[index][1] == variable.class_id:
                run += 1
                index -= 1
            index = position + 1
            while index < len(timeline) and timeline[index][1] == variable.class_id:
                run += 1
                index += 1
            if run > rotation.max_consecutive_classes:
                excess = run - rotation.max_consecutive_classes
                penalties.append(Penalty("rotation_consecutive", "teacher", ROTATION_CONSECUTIVE_PENALTY * excess))
        return penalties

    def _room_penalties(self, variable, room_id) -> List[Penalty]:
        if not self.rules.room_constraints.prefer_fixed_classrooms or room_id is None:
            return []
        if self.lookup.required_room_types(variable.course_id):
            return []
        homeroom = self.lookup.homeroom_for(variable.class_id)
        if homeroom is not None and room_id != homeroom:
            return [Penalty("homeroom_preference", "room", HOMEROOM_PENALTY)]
        return []

    # =============================================================== helpers

    def _is_core(self, variable: ScheduleVariable) -> bool:
        return self._core_enabled and self.rules.is_core_subject(variable.subject)

    def _is_lab_course(self, variable: ScheduleVariable) -> bool:
        return any("lab" in t.lower() for t in self.lookup.required_room_types(variable.course_id))


def _run_length(values, anchor: int, boundary: Optional[int] = None) -> int:
    """Length of the run of consecutive integers in ``values`` containing ``anchor``.

    When ``boundary`` is given, ``boundary`` and ``boundary + 1`` are not treated
    as adjacent (the lunch break splits a run).
    """
    run = 1
    current = anchor
    while current - 1 in values and (boundary is None or current - 1 != boundary):
        run += 1
        current -= 1
    current = anchor
    while current + 1 in values and (boundary is None or current != boundary):
        run += 1
        current += 1
    return run
