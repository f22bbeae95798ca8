"""
Post-hoc conflict detection, scoring and suggestions.

Detection re-scans the busy indexes of a working state; it never mutates the
state, so running it twice yields the same records.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from models.entities import ScheduleRecord
from models.rules import RESOURCE_KINDS, ConflictPolicy, ConflictResolutionRules, SchedulingRules
from models.schemas import ConflictRecord, RunStatistics
from .constraints import ConstraintEngine, RejectionReason
from .lookup import LookupTables
from .state import WorkingState
from .types import PriorityTier, ScheduleVariable, TimeSlot

logger = logging.getLogger(__name__)

SEVERITY_BY_POLICY = {
    ConflictPolicy.STRICT: "critical",
    ConflictPolicy.WARN: "warning",
    ConflictPolicy.IGNORE: "info",
}

ROOM_REASONS = {
    RejectionReason.NO_ROOM.value,
    RejectionReason.ROOM_TYPE_MISMATCH.value,
    RejectionReason.ROOM_EQUIPMENT_MISSING.value,
    RejectionReason.ROOM_CAPACITY.value,
    RejectionReason.ROOM_BUSY.value,
    RejectionReason.ROOM_UNAVAILABLE.value,
}
TEACHER_REASONS = {
    RejectionReason.TEACHER_BUSY.value,
    RejectionReason.TEACHER_UNAVAILABLE.value,
    RejectionReason.FORBIDDEN_SLOT.value,
}
BLOCK_REASONS = {
    RejectionReason.CONTINUITY.value,
    RejectionReason.LUNCH_BOUNDARY.value,
    RejectionReason.BLOCK_TOO_LONG.value,
}


@dataclass
class ScoreSummary:
    soft_violations: int = 0
    total_score: float = 0.0
    by_kind: Counter = field(default_factory=Counter)
    overloaded_teachers: List[str] = field(default_factory=list)


class ConflictDetector:
    """Finds resource collisions and turns a finished run into statistics."""

    def __init__(self, rules: Optional[SchedulingRules] = None,
                 lookup: Optional[LookupTables] = None,
                 engine: Optional[ConstraintEngine] = None):
        self.resolution = rules.conflict_resolution_rules if rules else ConflictResolutionRules()
        self.lookup = lookup
        self.engine = engine

    # ============================================================= detection

    def detect(self, state: WorkingState, warned_ids: Iterable[str] = ()) -> List[ConflictRecord]:
        """
        Every (resource, slot) held by more than one assignment.

        Args:
            state: Finished working state; it is only read
            warned_ids: Fixed variables admitted under the 'warning' fixed-slot
                strategy; collisions involving them are reported as warnings

        Returns:
            Conflict records ordered by kind, resource and slot
        """
        warned = set(warned_ids)
        conflicts = []
        for kind in RESOURCE_KINDS:
            policy_severity = SEVERITY_BY_POLICY[self.resolution.policy_for(kind)]
            index = state.index_for(kind)
            for resource_id in sorted(index):
                for slot in sorted(index[resource_id]):
                    occupants = index[resource_id][slot]
                    if len(occupants) < 2:
                        continue
                    severity = "warning" if warned.intersection(occupants) else policy_severity
                    conflicts.append(ConflictRecord(
                        kind=kind,
                        resource_id=resource_id,
                        slot_key=slot.key,
                        day_of_week=slot.day_of_week,
                        period=slot.period,
                        competing_variable_ids=sorted(occupants),
                        severity=severity,
                        message=(
                            f"{self._describe(kind, resource_id)} is booked {len(occupants)} times at {slot}"
                        ),
                    ))
        if conflicts:
            logger.info(f"Detected {len(conflicts)} conflicts")
        return conflicts

    def detect_records(self, records: Sequence[ScheduleRecord]) -> List[ConflictRecord]:
        """Detect collisions among persisted records (inactive ones are skipped)."""
        state = WorkingState()
        for index, record in enumerate(records):
            if record.status != "active":
                continue
            variable = ScheduleVariable(
                id=f"record:{index}",
                class_id=record.class_id,
                course_id=record.course_id,
                teacher_id=record.teacher_id,
                subject="",
                priority_tier=PriorityTier.FIXED,
                order=index,
                is_fixed_time=True,
                is_preserved=True,
                week_type=record.week_type,
                start_week=record.start_week,
                end_week=record.end_week,
            )
            state.assign(variable, TimeSlot(record.day_of_week, record.period), record.room_id)
        return self.detect(state)

    # =============================================================== scoring

    def score(self, state: WorkingState) -> ScoreSummary:
        """Sum the soft penalties of every solver-placed assignment."""
        summary = ScoreSummary()
        if self.engine is None:
            return summary
        overloaded = set()
        for variable_id in sorted(state.assignments):
            assignment = state.assignments[variable_id]
            if assignment.variable.is_fixed_time or assignment.variable.is_preserved:
                continue
            for penalty in self.engine.assignment_penalties(state, assignment):
                summary.soft_violations += 1
                summary.total_score += penalty.amount
                summary.by_kind[penalty.kind] += 1
                if penalty.kind == "teacher_weekly_load":
                    overloaded.add(assignment.variable.teacher_id)
        summary.overloaded_teachers = sorted(overloaded)
        if summary.soft_violations:
            logger.debug(f"Soft penalties by kind: {dict(summary.by_kind)}")
        return summary

    def statistics(self, total_variables: int, unassigned_count: int, preserved_count: int,
                   conflicts: List[ConflictRecord], summary: ScoreSummary,
                   iterations: int, execution_time_ms: int) -> RunStatistics:
        return RunStatistics(
            total_variables=total_variables,
            assigned_variables=total_variables - unassigned_count,
            unassigned_variables=unassigned_count,
            preserved_assignments=preserved_count,
            hard_violations=len(conflicts),
            soft_violations=summary.soft_violations,
            total_score=round(summary.total_score, 2),
            iterations=iterations,
            execution_time_ms=execution_time_ms,
        )

    # =========================================================== suggestions

    def suggest(self, unassigned: Dict[str, Counter], variables: Dict[str, ScheduleVariable],
                conflicts: List[ConflictRecord], summary: ScoreSummary,
                assigned_count: int) -> List[str]:
        """Best-effort hints derived from unassigned reasons and violations."""
        suggestions: List[str] = []

        room_types: Counter = Counter()
        teachers: Counter = Counter()
        classes: Counter = Counter()
        block_hours = 0
        fixed_collisions = 0
        for variable_id in sorted(unassigned):
            reasons = unassigned[variable_id]
            if not reasons:
                continue
            dominant = reasons.most_common(1)[0][0]
            variable = variables.get(variable_id)
            if variable is None:
                continue
            if dominant in ROOM_REASONS:
                required = self.lookup.required_room_types(variable.course_id) if self.lookup else []
                room_types[", ".join(required) or "classroom"] += 1
            elif dominant in TEACHER_REASONS and variable.teacher_id:
                teachers[variable.teacher_id] += 1
            elif dominant == RejectionReason.CLASS_BUSY.value:
                classes[variable.class_id] += 1
            elif dominant in BLOCK_REASONS:
                block_hours += 1
            elif dominant == "fixed_slot_conflict":
                fixed_collisions += 1

        for room_type, count in room_types.most_common():
            suggestions.append(
                f"Add rooms of type '{room_type}' or relax room requirements: {count} hour(s) found no suitable room"
            )
        for teacher_id, count in teachers.most_common():
            suggestions.append(
                f"Teacher {self._teacher_name(teacher_id)} has no free slot for {count} hour(s); "
                f"extend the teacher's availability or reassign the course"
            )
        for class_id, count in classes.most_common():
            suggestions.append(
                f"Class {class_id} has more teaching hours than free slots ({count} unplaced); "
                f"reduce weekly hours or add periods to the time grid"
            )
        if block_hours:
            suggestions.append(
                f"{block_hours} continuous-course hour(s) could not fit a block; "
                f"review continuous hours and the lunch break position"
            )
        if fixed_collisions:
            suggestions.append(
                f"{fixed_collisions} fixed-time placement(s) collide; adjust their slots or the fixed conflict strategy"
            )

        for teacher_id in summary.overloaded_teachers:
            suggestions.append(
                f"Teacher {self._teacher_name(teacher_id)} exceeds the weekly hour limit; consider redistributing courses"
            )

        allowed = [c for c in conflicts if c.severity == "info"]
        if allowed:
            suggestions.append(
                f"{len(allowed)} resource collision(s) were allowed by the 'ignore' policy; review them before publishing"
            )
        blocking = len(conflicts) - len(allowed)
        if blocking:
            suggestions.append(f"{blocking} hard conflict(s) remain; resolve them before publishing the timetable")

        if assigned_count and summary.soft_violations > assigned_count:
            suggestions.append(
                f"Many soft constraint violations ({summary.soft_violations}); consider relaxing teacher load "
                f"or core-subject distribution rules"
            )
        return suggestions

    # =============================================================== helpers

    def _teacher_name(self, teacher_id: Optional[str]) -> str:
        if self.lookup is None:
            return str(teacher_id)
        return self.lookup.teacher_name(teacher_id)

    def _describe(self, kind: str, resource_id: str) -> str:
        if kind == "teacher":
            return f"Teacher {self._teacher_name(resource_id)}"
        if kind == "room":
            return f"Room {resource_id}"
        return f"Class {resource_id}"
