from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from enum import Enum

from .entities import ScheduleRecord, SchoolDataSnapshot
from .rules import SchedulingRules


# ===========================
# Request Schema
# ===========================

class AlgorithmConfig(BaseModel):
    """Search limits; unset fields fall back to the service settings."""
    max_iterations: Optional[int] = Field(default=None, ge=0)
    time_limit: Optional[float] = Field(default=None, ge=0)  # seconds, optimization phase
    enable_local_optimization: Optional[bool] = None


class SchedulingRequest(BaseModel):
    academic_year: str = Field(pattern=r"^\d{4}-\d{4}$")
    semester: int = Field(ge=1, le=2)
    class_ids: List[str] = []        # empty means every class with a plan
    rules_id: Optional[str] = None   # None means the active default rule set
    preserve_existing: bool = False
    algorithm_config: AlgorithmConfig = AlgorithmConfig()


class GenerateScheduleBody(BaseModel):
    """HTTP payload: the request plus the data snapshot it runs against."""
    request: SchedulingRequest
    data: SchoolDataSnapshot


class ValidateScheduleBody(BaseModel):
    records: List[ScheduleRecord]
    rules: Optional[SchedulingRules] = None


# ===========================
# Progress
# ===========================

class ProgressEvent(BaseModel):
    stage: str
    percentage: int = Field(ge=0, le=100)
    message: str
    assigned_count: int = 0
    total_count: int = 0


# ===========================
# Result Schema
# ===========================

class RunStatus(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"


class Diagnostic(BaseModel):
    """Generation-time or placement-time message (error or warning)."""
    severity: str  # "error" | "warning"
    code: str
    message: str
    subject_id: Optional[str] = None


class ConflictRecord(BaseModel):
    """Two or more placements sharing one resource at one slot."""
    model_config = {"frozen": True}

    kind: str  # "teacher" | "room" | "class"
    resource_id: str
    slot_key: str
    day_of_week: int
    period: int
    competing_variable_ids: List[str]
    severity: str  # "critical" | "warning" | "info"
    message: str


class RunStatistics(BaseModel):
    total_variables: int = 0
    assigned_variables: int = 0
    unassigned_variables: int = 0
    preserved_assignments: int = 0
    hard_violations: int = 0
    soft_violations: int = 0
    total_score: float = 0.0
    iterations: int = 0
    execution_time_ms: int = 0


class UnassignedVariable(BaseModel):
    variable_id: str
    class_id: str
    course_id: str
    teacher_id: Optional[str] = None
    tier: str
    block_group_id: Optional[str] = None
    reasons: Dict[str, int] = {}


class SchedulingResult(BaseModel):
    success: bool
    status: RunStatus
    message: str = ""
    statistics: RunStatistics = RunStatistics()
    conflicts: List[ConflictRecord] = []
    suggestions: List[str] = []
    assignments: List[ScheduleRecord] = []
    unassigned: List[UnassignedVariable] = []
    diagnostics: List[Diagnostic] = []


class ValidationResult(BaseModel):
    valid: bool
    checked_records: int
    conflicts: List[ConflictRecord] = []
