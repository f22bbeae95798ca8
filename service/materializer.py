"""
Result materialization: working state -> schedule records.
"""
from collections import Counter
from typing import Dict, List, Sequence

from models.entities import ScheduleRecord
from models.schemas import UnassignedVariable
from .state import WorkingState
from .types import ScheduleVariable


class ResultMaterializer:
    """Emits the persisted shape of a run; never writes anything itself."""

    def __init__(self, academic_year: str, semester: int):
        self.academic_year = academic_year
        self.semester = semester

    def records(self, state: WorkingState) -> List[ScheduleRecord]:
        """Every non-preserved assignment, sorted by class, day and period."""
        assignments = sorted(
            (a for a in state.assignments.values() if not a.variable.is_preserved),
            key=lambda a: (a.variable.class_id, a.slot.day_of_week, a.slot.period, a.variable.id),
        )
        return [
            ScheduleRecord(
                academic_year=self.academic_year,
                semester=self.semester,
                class_id=a.variable.class_id,
                course_id=a.variable.course_id,
                teacher_id=a.variable.teacher_id,
                room_id=a.room_id,
                day_of_week=a.slot.day_of_week,
                period=a.slot.period,
                week_type=a.variable.week_type,
                start_week=a.variable.start_week,
                end_week=a.variable.end_week,
                status="active",
            )
            for a in assignments
        ]

    @staticmethod
    def unassigned(variables: Sequence[ScheduleVariable],
                   reasons: Dict[str, Counter]) -> List[UnassignedVariable]:
        """Summaries of unplaced variables, in declaration order."""
        return [
            UnassignedVariable(
                variable_id=v.id,
                class_id=v.class_id,
                course_id=v.course_id,
                teacher_id=v.teacher_id,
                tier=v.priority_tier.label,
                block_group_id=v.block_group_id,
                reasons=dict(reasons[v.id]),
            )
            for v in sorted(variables, key=lambda v: v.order)
            if v.id in reasons
        ]
