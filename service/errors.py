"""
Exceptions raised by the scheduling engine.

Only configuration problems are raised; infeasible placements, policy-driven
collisions and cancellation are reported through the result object.
"""
from typing import List, Optional

from models.schemas import Diagnostic


class SchedulingError(Exception):
    """Base class for scheduling engine errors."""


class SchedulingConfigurationError(SchedulingError):
    """The rule set or the teaching plans cannot be scheduled as configured."""

    def __init__(self, message: str, diagnostics: Optional[List[Diagnostic]] = None):
        super().__init__(message)
        self.diagnostics = diagnostics or [
            Diagnostic(severity="error", code="CONFIGURATION_ERROR", message=message)
        ]


class RulesNotFoundError(SchedulingConfigurationError):
    """No rule set matches the requested id, or no default exists."""

    def __init__(self, message: str):
        super().__init__(
            message,
            [Diagnostic(severity="error", code="RULES_NOT_FOUND", message=message)],
        )
