"""
Scheduling rule set models.

A rule set is validated once when it is loaded; the engine then reads it as an
immutable value and never re-checks individual fields.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ===========================
# Enumerations
# ===========================

class ConflictPolicy(str, Enum):
    """How the engine treats two placements competing for one resource."""
    STRICT = "strict"
    WARN = "warn"
    IGNORE = "ignore"


class FixedConflictStrategy(str, Enum):
    """How colliding fixed-time activities are handled during pre-placement."""
    STRICT = "strict"
    FLEXIBLE = "flexible"
    WARNING = "warning"


class WeekType(str, Enum):
    ALL = "all"
    ODD = "odd"
    EVEN = "even"


class LabCoursePreference(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    FLEXIBLE = "flexible"


class FixedCourseType(str, Enum):
    CLASS_MEETING = "class-meeting"
    FLAG_RAISING = "flag-raising"
    EYE_EXERCISE = "eye-exercise"
    MORNING_READING = "morning-reading"
    AFTERNOON_READING = "afternoon-reading"
    CLEANING = "cleaning"
    OTHER = "other"


RESOURCE_KINDS = ("teacher", "room", "class")


# ===========================
# Time Rules
# ===========================

class SlotGroup(BaseModel):
    """A set of periods on one weekday, e.g. Monday periods 1-2."""
    day_of_week: int = Field(ge=1, le=7)
    periods: List[int] = []

    @field_validator("periods")
    @classmethod
    def _check_periods(cls, periods: List[int]) -> List[int]:
        for period in periods:
            if period < 1 or period > 12:
                raise ValueError("periods must be between 1 and 12")
        return periods


class TimeRules(BaseModel):
    daily_periods: int = Field(default=8, ge=4, le=12)
    working_days: List[int] = [1, 2, 3, 4, 5]
    period_duration: int = Field(default=45, ge=30, le=60)   # minutes
    break_duration: int = Field(default=10, ge=0, le=30)     # minutes between periods
    lunch_break_start: int = Field(default=4, ge=1, le=11)   # lunch follows this period
    forbidden_slots: List[SlotGroup] = []

    @field_validator("working_days")
    @classmethod
    def _check_working_days(cls, days: List[int]) -> List[int]:
        if not days:
            raise ValueError("working_days must not be empty")
        if any(day < 1 or day > 7 for day in days):
            raise ValueError("working_days must contain weekdays between 1 and 7")
        return sorted(set(days))

    @model_validator(mode="after")
    def _check_lunch_boundary(self) -> "TimeRules":
        if self.lunch_break_start >= self.daily_periods:
            raise ValueError("lunch_break_start must be before the last period of the day")
        return self


# ===========================
# Teacher Constraints
# ===========================

class RotationStrategy(BaseModel):
    enable_rotation: bool = False
    min_interval_between_classes: int = Field(default=0, ge=0)
    max_consecutive_classes: int = Field(default=0, ge=0)


class TeacherConstraints(BaseModel):
    max_daily_hours: int = Field(default=6, ge=1, le=12)
    max_continuous_hours: int = Field(default=3, ge=1, le=12)
    min_rest_between_courses: int = Field(default=10, ge=0, le=60)  # minutes
    avoid_friday_afternoon: bool = True
    respect_teacher_preferences: bool = True
    rotation_strategy: RotationStrategy = RotationStrategy()


# ===========================
# Room Constraints
# ===========================

class RoomConstraints(BaseModel):
    respect_capacity_limits: bool = True
    prefer_fixed_classrooms: bool = True


# ===========================
# Course Arrangement Rules
# ===========================

class FixedTimeCourse(BaseModel):
    """An administratively fixed activity, e.g. Monday flag-raising."""
    type: FixedCourseType
    day_of_week: int = Field(ge=1, le=7)
    period: int = Field(ge=1, le=12)
    week_type: WeekType = WeekType.ALL
    start_week: int = Field(default=1, ge=1, le=30)
    end_week: int = Field(default=20, ge=1, le=30)
    course_id: Optional[str] = None
    class_ids: List[str] = []
    notes: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _check_week_range(self) -> "FixedTimeCourse":
        if self.start_week > self.end_week:
            raise ValueError("start_week must not be after end_week")
        return self


class FixedTimeCourses(BaseModel):
    enabled: bool = False
    courses: List[FixedTimeCourse] = []
    conflict_strategy: FixedConflictStrategy = FixedConflictStrategy.STRICT


class CoreSubjectStrategy(BaseModel):
    enable_core_subject_strategy: bool = True
    core_subjects: List[str] = ["chinese", "mathematics", "english"]
    max_daily_occurrences: int = Field(default=2, ge=1)
    preferred_periods: List[int] = [2, 3, 4]
    avoid_periods: List[int] = []
    max_concentration: int = Field(default=2, ge=1)
    balance_weight: int = Field(default=70, ge=0, le=100)
    enforce_even_distribution: bool = True


class CourseArrangementRules(BaseModel):
    allow_continuous_courses: bool = True
    max_continuous_hours: int = Field(default=2, ge=2, le=4)
    avoid_first_last_period: List[str] = []
    core_subject_priority: bool = True
    lab_course_preference: LabCoursePreference = LabCoursePreference.FLEXIBLE
    fixed_time_courses: FixedTimeCourses = FixedTimeCourses()
    core_subject_strategy: CoreSubjectStrategy = CoreSubjectStrategy()


# ===========================
# Conflict Resolution Rules
# ===========================

class ConflictResolutionRules(BaseModel):
    teacher_conflict_resolution: ConflictPolicy = ConflictPolicy.STRICT
    room_conflict_resolution: ConflictPolicy = ConflictPolicy.STRICT
    class_conflict_resolution: ConflictPolicy = ConflictPolicy.STRICT
    priority_order: List[str] = list(RESOURCE_KINDS)

    @field_validator("priority_order")
    @classmethod
    def _check_priority_order(cls, order: List[str]) -> List[str]:
        unknown = [kind for kind in order if kind not in RESOURCE_KINDS]
        if unknown:
            raise ValueError(f"priority_order entries must be one of {RESOURCE_KINDS}, got {unknown}")
        if len(set(order)) != len(order):
            raise ValueError("priority_order must not repeat entries")
        return order

    def policy_for(self, kind: str) -> ConflictPolicy:
        """Conflict policy for a resource kind ('teacher', 'room' or 'class')."""
        return {
            "teacher": self.teacher_conflict_resolution,
            "room": self.room_conflict_resolution,
            "class": self.class_conflict_resolution,
        }[kind]


# ===========================
# Rule Set
# ===========================

class SchedulingRules(BaseModel):
    """Complete rule set consumed read-only by one scheduling run."""
    model_config = {"frozen": True}

    id: str
    name: str = Field(default="", max_length=100)
    academic_year: str = Field(pattern=r"^\d{4}-\d{4}$")
    semester: int = Field(ge=1, le=2)
    is_default: bool = False
    is_active: bool = True

    time_rules: TimeRules = TimeRules()
    teacher_constraints: TeacherConstraints = TeacherConstraints()
    room_constraints: RoomConstraints = RoomConstraints()
    course_arrangement_rules: CourseArrangementRules = CourseArrangementRules()
    conflict_resolution_rules: ConflictResolutionRules = ConflictResolutionRules()

    def is_core_subject(self, subject: Optional[str]) -> bool:
        """True when the subject is listed in the core subject strategy."""
        if not subject:
            return False
        core = {s.lower() for s in self.course_arrangement_rules.core_subject_strategy.core_subjects}
        return subject.lower() in core
