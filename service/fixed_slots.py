"""
Fixed-slot pre-placement.

Preserved records and Fixed-tier variables are committed at their declared
slots before the search starts, so every later candidate sees them as busy.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from models.rules import FixedConflictStrategy
from models.schemas import Diagnostic
from .constraints import ConstraintEngine
from .errors import SchedulingConfigurationError
from .lookup import LookupTables
from .state import WorkingState
from .types import PriorityTier, ScheduleVariable, TimeSlot

logger = logging.getLogger(__name__)


@dataclass
class PrePlacementResult:
    placed: List[str] = field(default_factory=list)
    unplaced: Dict[str, str] = field(default_factory=dict)  # variable id -> reason
    warned: List[str] = field(default_factory=list)  # collisions admitted under the warning strategy
    diagnostics: List[Diagnostic] = field(default_factory=list)


class FixedSlotPrePlacer:
    """Commits fixed placements according to the rule set's conflict strategy."""

    def __init__(self, lookup: LookupTables, engine: ConstraintEngine):
        self.lookup = lookup
        self.engine = engine
        self.strategy = lookup.rules.course_arrangement_rules.fixed_time_courses.conflict_strategy

    def place(self, state: WorkingState, variables: Sequence[ScheduleVariable],
              preserved: Sequence[Tuple[ScheduleVariable, TimeSlot, Optional[str]]] = ()) -> PrePlacementResult:
        """
        Commit preserved records, then every Fixed-tier variable.

        Args:
            state: Working state of the run (empty on entry)
            variables: All generated variables; only Fixed-tier ones are placed
            preserved: ``(variable, slot, room)`` triples kept from an earlier run

        Returns:
            PrePlacementResult listing placed and refused variable ids

        Raises:
            SchedulingConfigurationError: when a fixed slot lies outside the time grid
        """
        result = PrePlacementResult()

        for variable, slot, room_id in preserved:
            state.assign(variable, slot, room_id)
        if preserved:
            logger.info(f"Pre-placed {len(preserved)} preserved records")

        fixed = sorted(
            (v for v in variables if v.priority_tier == PriorityTier.FIXED),
            key=lambda v: v.order,
        )
        outside = [v for v in fixed if v.fixed_slot is None or not self.lookup.in_grid(v.fixed_slot)]
        if outside:
            diagnostics = [
                Diagnostic(
                    severity="error",
                    code="FIXED_SLOT_OUTSIDE_GRID",
                    message=f"Fixed placement {v.id} at {v.fixed_slot} is outside the time grid",
                    subject_id=v.id,
                )
                for v in outside
            ]
            raise SchedulingConfigurationError(
                f"{len(outside)} fixed placement(s) lie outside the time grid",
                diagnostics=diagnostics,
            )

        for variable in fixed:
            slot = variable.fixed_slot
            room_id = self._choose_room(state, variable, slot)
            collisions = [
                (kind, resource_id)
                for kind, resource_id in variable.resources(room_id)
                if resource_id is not None and state.is_busy(kind, resource_id, slot)
            ]
            if collisions:
                described = ", ".join(f"{kind} {resource_id}" for kind, resource_id in collisions)
                message = f"Fixed placement {variable.id} collides at {slot} on {described}"
                if self.strategy == FixedConflictStrategy.STRICT:
                    result.unplaced[variable.id] = "fixed_slot_conflict"
                    result.diagnostics.append(Diagnostic(
                        severity="error", code="FIXED_SLOT_CONFLICT",
                        message=f"{message}; not placed", subject_id=variable.id,
                    ))
                    logger.warning(message)
                    continue
                if self.strategy == FixedConflictStrategy.WARNING:
                    result.warned.append(variable.id)
                    result.diagnostics.append(Diagnostic(
                        severity="warning", code="FIXED_SLOT_CONFLICT",
                        message=message, subject_id=variable.id,
                    ))
                    logger.warning(message)
            state.assign(variable, slot, room_id)
            result.placed.append(variable.id)

        logger.info(f"Pre-placed {len(result.placed)} fixed variables, refused {len(result.unplaced)}")
        return result

    def _choose_room(self, state: WorkingState, variable: ScheduleVariable, slot: TimeSlot) -> Optional[str]:
        if variable.fixed_room_id is not None:
            return variable.fixed_room_id
        # School-wide activities have no course record and occupy no room
        if variable.course_id not in self.lookup.courses:
            return None
        homeroom = self.lookup.homeroom_for(variable.class_id)
        if homeroom is not None and not self.lookup.required_room_types(variable.course_id):
            return homeroom
        for room_id in self.engine.candidate_rooms(variable):
            if self.engine.room_open(state, variable, slot, room_id):
                return room_id
        return None
