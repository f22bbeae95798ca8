"""
Entity snapshots supplied by the school administration side.

The scheduling service owns none of these records. They arrive with each
request as query results and are treated as read-only for the whole run.
"""
from pydantic import BaseModel, Field, model_validator
from typing import List, Optional

from .rules import SchedulingRules, SlotGroup, WeekType


class SlotPoint(BaseModel):
    """A single (day, period) coordinate."""
    day_of_week: int = Field(ge=1, le=7)
    period: int = Field(ge=1, le=12)


# ===========================
# Teacher / Class / Course / Room
# ===========================

class Teacher(BaseModel):
    id: str
    name: str = ""
    subjects: List[str] = []
    max_weekly_hours: Optional[int] = Field(default=None, ge=0)
    unavailable_slots: List[SlotGroup] = []
    preferred_slots: List[SlotGroup] = []


class SchoolClass(BaseModel):
    id: str
    name: str = ""
    grade: int = Field(default=1, ge=1, le=12)
    student_count: int = Field(default=0, ge=0)
    homeroom_id: Optional[str] = None
    class_teacher_id: Optional[str] = None


class RoomRequirements(BaseModel):
    types: List[str] = []
    capacity: Optional[int] = Field(default=None, ge=0)
    equipment: List[str] = []


class Course(BaseModel):
    id: str
    name: str = ""
    subject: str = ""
    weekly_hours: int = 0
    requires_continuous: bool = False
    continuous_hours: Optional[int] = None
    room_requirements: RoomRequirements = RoomRequirements()


class Room(BaseModel):
    id: str
    name: str = ""
    type: str = "classroom"
    capacity: int = Field(default=0, ge=0)
    equipment: List[str] = []
    unavailable_slots: List[SlotGroup] = []
    is_active: bool = True


# ===========================
# Teaching Plans
# ===========================

class PlanCourseAssignment(BaseModel):
    """One course of a class's teaching plan, with its resolved teacher."""
    course_id: str
    teacher_id: str
    weekly_hours: Optional[int] = None
    requires_continuous: Optional[bool] = None
    continuous_hours: Optional[int] = None
    preferred_time_slots: List[SlotGroup] = []
    avoid_time_slots: List[SlotGroup] = []
    fixed_slots: List[SlotPoint] = []
    week_type: WeekType = WeekType.ALL
    start_week: Optional[int] = Field(default=None, ge=1, le=30)
    end_week: Optional[int] = Field(default=None, ge=1, le=30)


class TeachingPlan(BaseModel):
    id: str
    class_id: str
    academic_year: str
    semester: int = Field(ge=1, le=2)
    status: str = "approved"  # draft | approved | active | archived
    course_assignments: List[PlanCourseAssignment] = []


# ===========================
# Schedule Records
# ===========================

class ScheduleRecord(BaseModel):
    """A persisted (or to-be-persisted) timetable entry."""
    academic_year: str
    semester: int = Field(ge=1, le=2)
    class_id: str
    course_id: str
    teacher_id: Optional[str] = None
    room_id: Optional[str] = None
    day_of_week: int = Field(ge=1, le=7)
    period: int = Field(ge=1, le=12)
    week_type: WeekType = WeekType.ALL
    start_week: int = Field(default=1, ge=1, le=30)
    end_week: int = Field(default=20, ge=1, le=30)
    status: str = "active"


class SchoolDataSnapshot(BaseModel):
    """Everything one run reads from the external collaborators."""
    rules: List[SchedulingRules] = []
    teachers: List[Teacher] = []
    classes: List[SchoolClass] = []
    courses: List[Course] = []
    rooms: List[Room] = []
    teaching_plans: List[TeachingPlan] = []
    existing_schedules: List[ScheduleRecord] = []

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "SchoolDataSnapshot":
        for label, items in (
            ("rules", self.rules),
            ("teachers", self.teachers),
            ("classes", self.classes),
            ("courses", self.courses),
            ("rooms", self.rooms),
        ):
            ids = [item.id for item in items]
            if len(ids) != len(set(ids)):
                raise ValueError(f"duplicate ids in {label}")
        return self
