"""
Variable generation: expands teaching plans into atomic placement requests.

Each weekly teaching hour becomes one ``ScheduleVariable``. Continuous
assignments are split into block groups whose siblings must occupy adjacent
periods; administratively fixed activities come from the rule set.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from models.entities import PlanCourseAssignment, ScheduleRecord, TeachingPlan
from models.rules import FixedCourseType, FixedTimeCourse
from models.schemas import Diagnostic
from .errors import SchedulingConfigurationError
from .lookup import LookupTables, expand_slot_groups
from .types import PriorityTier, ScheduleVariable, TimeSlot

logger = logging.getLogger(__name__)

SCHEDULABLE_PLAN_STATUSES = ("approved", "active")


@dataclass
class GenerationResult:
    variables: List[ScheduleVariable] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == "error"]


def select_plans(plans: Iterable[TeachingPlan], academic_year: str, semester: int,
                 class_ids: Optional[List[str]] = None) -> List[TeachingPlan]:
    """Approved plans of the target term, optionally limited to some classes."""
    wanted = set(class_ids or [])
    return [
        plan for plan in plans
        if plan.academic_year == academic_year
        and plan.semester == semester
        and plan.status in SCHEDULABLE_PLAN_STATUSES
        and (not wanted or plan.class_id in wanted)
    ]


class VariableGenerator:
    """Turns teaching plans and fixed-time activities into schedule variables."""

    def __init__(self, lookup: LookupTables, default_start_week: int = 1, default_end_week: int = 20):
        self.lookup = lookup
        self.rules = lookup.rules
        self.default_start_week = default_start_week
        self.default_end_week = default_end_week
        self._order = 0

    def generate(self, plans: List[TeachingPlan], class_ids: Optional[List[str]] = None,
                 preserved: Optional[List[ScheduleRecord]] = None) -> GenerationResult:
        """
        Build every variable of one run.

        Args:
            plans: Teaching plans already narrowed to the target term
            class_ids: Classes explicitly requested (empty means the plans' classes)
            preserved: Active records kept from a previous run; the hours they
                cover are not generated again

        Returns:
            GenerationResult with variables in declaration order and diagnostics

        Raises:
            SchedulingConfigurationError: when any plan is misconfigured
        """
        self._order = 0
        result = GenerationResult()
        covered = Counter((r.class_id, r.course_id) for r in preserved or [])

        scope = self._class_scope(plans, class_ids)
        self._generate_fixed_activities(scope, result)

        for plan in plans:
            if plan.class_id not in self.lookup.classes:
                result.diagnostics.append(Diagnostic(
                    severity="warning",
                    code="UNKNOWN_CLASS",
                    message=f"Teaching plan {plan.id} references unknown class {plan.class_id}",
                    subject_id=plan.id,
                ))
                continue
            for assignment in plan.course_assignments:
                self._generate_for_assignment(plan, assignment, covered, result)

        if result.errors:
            messages = "; ".join(d.message for d in result.errors)
            raise SchedulingConfigurationError(
                f"Teaching plan configuration is invalid: {messages}",
                diagnostics=result.diagnostics,
            )

        tiers = Counter(v.priority_tier.label for v in result.variables)
        logger.info(
            f"Generated {len(result.variables)} variables "
            f"(fixed={tiers.get('fixed', 0)}, core={tiers.get('core', 0)}, general={tiers.get('general', 0)})"
        )
        return result

    # ------------------------------------------------------------------ helpers

    def _next_order(self) -> int:
        self._order += 1
        return self._order

    def _class_scope(self, plans: List[TeachingPlan], class_ids: Optional[List[str]]) -> List[str]:
        scope = [cid for cid in class_ids or [] if cid in self.lookup.classes]
        for plan in plans:
            if plan.class_id in self.lookup.classes and plan.class_id not in scope:
                scope.append(plan.class_id)
        return scope

    def _generate_fixed_activities(self, scope: List[str], result: GenerationResult) -> None:
        fixed_config = self.rules.course_arrangement_rules.fixed_time_courses
        if not fixed_config.enabled:
            return
        for index, activity in enumerate(fixed_config.courses):
            targets = [cid for cid in scope if not activity.class_ids or cid in activity.class_ids]
            for class_id in targets:
                result.variables.append(self._fixed_activity_variable(index, activity, class_id))

    def _fixed_activity_variable(self, index: int, activity: FixedTimeCourse, class_id: str) -> ScheduleVariable:
        school_class = self.lookup.classes[class_id]
        # Class meetings are held by the class teacher in the homeroom; school-wide
        # activities such as flag-raising occupy only the class.
        if activity.type == FixedCourseType.CLASS_MEETING:
            teacher_id, room_id = school_class.class_teacher_id, school_class.homeroom_id
        else:
            teacher_id, room_id = None, None
        return ScheduleVariable(
            id=f"{class_id}:fixed:{activity.type.value}:{index}",
            class_id=class_id,
            course_id=activity.course_id or f"fixed:{activity.type.value}",
            teacher_id=teacher_id,
            subject=activity.type.value,
            priority_tier=PriorityTier.FIXED,
            order=self._next_order(),
            is_fixed_time=True,
            fixed_slot=TimeSlot(activity.day_of_week, activity.period),
            fixed_room_id=room_id,
            week_type=activity.week_type,
            start_week=activity.start_week,
            end_week=activity.end_week,
        )

    def _generate_for_assignment(self, plan: TeachingPlan, assignment: PlanCourseAssignment,
                                 covered: Counter, result: GenerationResult) -> None:
        arrangement = self.rules.course_arrangement_rules
        label = f"class {plan.class_id} course {assignment.course_id}"

        course = self.lookup.courses.get(assignment.course_id)
        if course is None:
            result.diagnostics.append(Diagnostic(
                severity="warning", code="UNKNOWN_COURSE",
                message=f"{label}: course does not exist, assignment skipped",
                subject_id=plan.id,
            ))
            return
        if assignment.teacher_id not in self.lookup.teachers:
            result.diagnostics.append(Diagnostic(
                severity="warning", code="UNKNOWN_TEACHER",
                message=f"{label}: teacher {assignment.teacher_id} does not exist, assignment skipped",
                subject_id=plan.id,
            ))
            return

        weekly_hours = assignment.weekly_hours if assignment.weekly_hours is not None else course.weekly_hours
        if weekly_hours <= 0:
            result.diagnostics.append(Diagnostic(
                severity="warning", code="INVALID_WEEKLY_HOURS",
                message=f"{label}: weekly hours must be positive (got {weekly_hours}), assignment skipped",
                subject_id=plan.id,
            ))
            return

        requires_continuous = (
            assignment.requires_continuous
            if assignment.requires_continuous is not None
            else course.requires_continuous
        )
        block_size = (
            assignment.continuous_hours
            if assignment.continuous_hours is not None
            else course.continuous_hours
        )
        if requires_continuous:
            if block_size is None or block_size < 2:
                result.diagnostics.append(Diagnostic(
                    severity="error", code="INVALID_CONTINUOUS_HOURS",
                    message=f"{label}: continuous courses need at least 2 continuous hours (got {block_size})",
                    subject_id=plan.id,
                ))
                return
            if not arrangement.allow_continuous_courses:
                result.diagnostics.append(Diagnostic(
                    severity="warning", code="CONTINUOUS_DISABLED",
                    message=f"{label}: continuous courses are disabled by the rule set, hours placed individually",
                    subject_id=plan.id,
                ))
                requires_continuous = False
            elif block_size > arrangement.max_continuous_hours:
                result.diagnostics.append(Diagnostic(
                    severity="warning", code="BLOCK_TOO_LONG",
                    message=(
                        f"{label}: block of {block_size} hours exceeds the maximum of "
                        f"{arrangement.max_continuous_hours} and cannot be placed"
                    ),
                    subject_id=plan.id,
                ))

        start_week = assignment.start_week or self.default_start_week
        end_week = assignment.end_week or self.default_end_week
        if start_week > end_week:
            result.diagnostics.append(Diagnostic(
                severity="error", code="INVALID_WEEK_RANGE",
                message=f"{label}: start week {start_week} is after end week {end_week}",
                subject_id=plan.id,
            ))
            return

        already = covered.get((plan.class_id, course.id), 0)
        hours = weekly_hours - already
        if hours <= 0:
            logger.debug(f"{label}: all {weekly_hours} hours are covered by preserved records")
            return

        tier = (
            PriorityTier.CORE
            if arrangement.core_subject_priority and self.rules.is_core_subject(course.subject)
            else PriorityTier.GENERAL
        )
        common = dict(
            class_id=plan.class_id,
            course_id=course.id,
            teacher_id=assignment.teacher_id,
            subject=course.subject,
            week_type=assignment.week_type,
            start_week=start_week,
            end_week=end_week,
            preferred_slots=expand_slot_groups(assignment.preferred_time_slots),
            avoid_slots=expand_slot_groups(assignment.avoid_time_slots),
        )
        prefix = f"{plan.class_id}:{course.id}"
        hour = 0

        for slot in assignment.fixed_slots[:hours]:
            result.variables.append(ScheduleVariable(
                id=f"{prefix}:{hour}",
                priority_tier=PriorityTier.FIXED,
                order=self._next_order(),
                is_fixed_time=True,
                fixed_slot=TimeSlot(slot.day_of_week, slot.period),
                **common,
            ))
            hour += 1

        remaining = hours - hour
        groups, remainder = divmod(remaining, block_size) if requires_continuous else (0, remaining)
        for group in range(groups):
            group_id = f"{prefix}:block{group}"
            for index in range(block_size):
                result.variables.append(ScheduleVariable(
                    id=f"{prefix}:{hour}",
                    priority_tier=tier,
                    order=self._next_order(),
                    block_group_id=group_id,
                    block_size=block_size,
                    block_index=index,
                    **common,
                ))
                hour += 1
        for _ in range(remainder):
            result.variables.append(ScheduleVariable(
                id=f"{prefix}:{hour}",
                priority_tier=tier,
                order=self._next_order(),
                **common,
            ))
            hour += 1

    def preserved_placements(self, records: List[ScheduleRecord]) -> List[Tuple[ScheduleVariable, TimeSlot, Optional[str]]]:
        """Wrap preserved schedule records as fixed placements ``(variable, slot, room)``."""
        placements = []
        for index, record in enumerate(records):
            slot = TimeSlot(record.day_of_week, record.period)
            course = self.lookup.courses.get(record.course_id)
            variable = ScheduleVariable(
                id=f"preserved:{index}:{record.class_id}:{record.course_id}",
                class_id=record.class_id,
                course_id=record.course_id,
                teacher_id=record.teacher_id,
                subject=course.subject if course else "",
                priority_tier=PriorityTier.FIXED,
                order=index - len(records),
                is_fixed_time=True,
                fixed_slot=slot,
                fixed_room_id=record.room_id,
                is_preserved=True,
                week_type=record.week_type,
                start_week=record.start_week,
                end_week=record.end_week,
            )
            placements.append((variable, slot, record.room_id))
        return placements
