"""
Data models and Pydantic schemas for the scheduling API.
"""
from .rules import (
    ConflictPolicy,
    FixedConflictStrategy,
    WeekType,
    LabCoursePreference,
    FixedCourseType,
    SlotGroup,
    TimeRules,
    RotationStrategy,
    TeacherConstraints,
    RoomConstraints,
    FixedTimeCourse,
    FixedTimeCourses,
    CoreSubjectStrategy,
    CourseArrangementRules,
    ConflictResolutionRules,
    SchedulingRules,
)
from .entities import (
    SlotPoint,
    Teacher,
    SchoolClass,
    RoomRequirements,
    Course,
    Room,
    PlanCourseAssignment,
    TeachingPlan,
    ScheduleRecord,
    SchoolDataSnapshot,
)
from .schemas import (
    AlgorithmConfig,
    SchedulingRequest,
    GenerateScheduleBody,
    ValidateScheduleBody,
    ProgressEvent,
    RunStatus,
    Diagnostic,
    ConflictRecord,
    RunStatistics,
    UnassignedVariable,
    SchedulingResult,
    ValidationResult,
)

__all__ = [
    "ConflictPolicy",
    "FixedConflictStrategy",
    "WeekType",
    "LabCoursePreference",
    "FixedCourseType",
    "SlotGroup",
    "TimeRules",
    "RotationStrategy",
    "TeacherConstraints",
    "RoomConstraints",
    "FixedTimeCourse",
    "FixedTimeCourses",
    "CoreSubjectStrategy",
    "CourseArrangementRules",
    "ConflictResolutionRules",
    "SchedulingRules",
    "SlotPoint",
    "Teacher",
    "SchoolClass",
    "RoomRequirements",
    "Course",
    "Room",
    "PlanCourseAssignment",
    "TeachingPlan",
    "ScheduleRecord",
    "SchoolDataSnapshot",
    "AlgorithmConfig",
    "SchedulingRequest",
    "GenerateScheduleBody",
    "ValidateScheduleBody",
    "ProgressEvent",
    "RunStatus",
    "Diagnostic",
    "ConflictRecord",
    "RunStatistics",
    "UnassignedVariable",
    "SchedulingResult",
    "ValidationResult",
]
