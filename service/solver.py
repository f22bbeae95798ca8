"""
Staged heuristic solver.

Variables are placed tier by tier (Fixed, Core, General). Inside a tier the
most constrained placement units go first; each unit takes the cheapest
feasible ``(slot, room)`` candidate. Block groups are placed atomically.
A unit left without candidates is repaired by moving one standalone
assignment out of its way, when that assignment fits somewhere else.
An optional local-optimization pass then moves or swaps standalone
assignments while that strictly lowers the soft penalty total.
"""
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .constraints import ConstraintEngine, Evaluation
from .lookup import LookupTables
from .progress import ProgressTracker
from .state import WorkingState
from .types import Assignment, PriorityTier, ScheduleVariable, TimeSlot

logger = logging.getLogger(__name__)

# Progress ranges per stage
TIER_PROGRESS = {
    PriorityTier.FIXED: (10, 20),
    PriorityTier.CORE: (20, 50),
    PriorityTier.GENERAL: (50, 80),
}
OPTIMIZATION_PROGRESS = (80, 95)

CANCELLED = "cancelled"
IMPROVEMENT_EPSILON = 1e-9
MAX_REPAIR_ATTEMPTS = 10

Unit = Tuple[ScheduleVariable, ...]
CandidateKey = Tuple


@dataclass
class SolverOutcome:
    unassigned: Dict[str, Counter] = field(default_factory=dict)
    iterations: int = 0
    aborted: bool = False


class StagedSolver:
    """
    Places the non-fixed variables of one run into a working state.

    The solver never raises for infeasibility: a unit without any feasible
    candidate is reported as unassigned together with the rejection reasons
    seen while searching for it.
    """

    def __init__(
        self,
        lookup: LookupTables,
        engine: ConstraintEngine,
        tracker: Optional[ProgressTracker] = None,
        max_iterations: int = 2000,
        time_limit: float = 30.0,
        enable_local_optimization: bool = True,
        progress_interval: int = 100,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.lookup = lookup
        self.engine = engine
        self.tracker = tracker or ProgressTracker(None)
        self.max_iterations = max_iterations
        self.time_limit = time_limit
        self.enable_local_optimization = enable_local_optimization
        self.progress_interval = max(1, progress_interval)
        self.cancel_event = cancel_event
        self.priority_order = list(lookup.rules.conflict_resolution_rules.priority_order)

    def solve(self, state: WorkingState, variables: Sequence[ScheduleVariable],
              pre_unplaced: Optional[Dict[str, str]] = None) -> SolverOutcome:
        """
        Place every Core and General variable, then optionally improve.

        Args:
            state: Working state already holding the pre-placed fixed variables
            variables: All variables of the run (Fixed ones included)
            pre_unplaced: Fixed variables the pre-placer refused, with the reason

        Returns:
            SolverOutcome with unassigned variables, iterations and abort flag
        """
        outcome = SolverOutcome()
        for variable_id, reason in (pre_unplaced or {}).items():
            outcome.unassigned[variable_id] = Counter({reason: 1})

        assigned = self._assigned_count(state)
        _, high = TIER_PROGRESS[PriorityTier.FIXED]
        self.tracker.report("fixed", high, f"Fixed placements done ({assigned} assigned)", assigned)

        for tier in (PriorityTier.CORE, PriorityTier.GENERAL):
            tier_variables = [v for v in variables if v.priority_tier == tier]
            if outcome.aborted:
                self._mark_cancelled(tier_variables, outcome)
                continue
            self._place_tier(state, tier, tier_variables, outcome)
            assigned = self._assigned_count(state)
            _, high = TIER_PROGRESS[tier]
            self.tracker.report(
                tier.label, high,
                f"{tier.label.capitalize()} tier done: {len(tier_variables)} variables, "
                f"{sum(1 for v in tier_variables if v.id in outcome.unassigned)} unassigned",
                assigned,
            )

        if self.enable_local_optimization and not outcome.aborted:
            self._optimize(state, outcome)
        return outcome

    # ============================================================ construction

    def _place_tier(self, state: WorkingState, tier: PriorityTier,
                    variables: List[ScheduleVariable], outcome: SolverOutcome) -> None:
        """
        Place the units of one tier, most constrained first.

        Feasible counts are refreshed after every placement for the units that
        share a teacher, class or room with what moved, so the next unit is
        chosen against the current state. A unit without any candidate gets a
        bounded repair attempt before it is reported unassigned.
        """
        units = self._build_units(variables)
        if not units:
            return
        counts = {index: self._feasible_count(state, unit) for index, unit in enumerate(units)}
        pending = set(counts)
        logger.info(f"Placing {len(units)} {tier.label} units")

        low, high = TIER_PROGRESS[tier]
        done = 0
        while pending:
            if self._cancelled():
                logger.info("Cancellation requested during construction")
                outcome.aborted = True
                self._mark_cancelled([v for index in sorted(pending) for v in units[index]], outcome)
                return
            index = min(
                pending,
                key=lambda i: (counts[i], 0 if units[i][0].is_block else 1, min(v.order for v in units[i])),
            )
            pending.discard(index)
            unit = units[index]

            displaced = None
            reasons = self._place_unit(state, unit)
            if reasons is not None:
                displaced = self._repair(state, unit)
            if reasons is not None and displaced is None:
                for variable in unit:
                    outcome.unassigned[variable.id] = Counter(reasons)
                logger.debug(f"Unit {unit[0].block_group_id or unit[0].id} unassigned: {dict(reasons)}")
            else:
                moved = [state.assignments[v.id] for v in unit]
                if displaced is not None:
                    moved += [displaced, state.assignments[displaced.variable_id]]
                self._refresh_counts(state, units, pending, counts, moved)

            done += 1
            if done % self.progress_interval == 0:
                percentage = low + (high - low) * done // len(units)
                self.tracker.report(
                    tier.label, percentage,
                    f"Placed {done}/{len(units)} {tier.label} units",
                    self._assigned_count(state),
                )

    def _refresh_counts(self, state: WorkingState, units: List[Unit], pending: Set[int],
                        counts: Dict[int, int], moved: List[Assignment]) -> None:
        teachers = {a.variable.teacher_id for a in moved if a.variable.teacher_id is not None}
        classes = {a.variable.class_id for a in moved}
        rooms = {a.room_id for a in moved if a.room_id is not None}
        for index in pending:
            first = units[index][0]
            if (
                first.teacher_id in teachers
                or first.class_id in classes
                or rooms.intersection(self.engine.candidate_rooms(first))
            ):
                counts[index] = self._feasible_count(state, units[index])

    def _place_unit(self, state: WorkingState, unit: Unit) -> Optional[Counter]:
        if unit[0].is_block:
            return self._place_block(state, unit)
        return self._place_single(state, unit[0])

    def _repair(self, state: WorkingState, unit: Unit) -> Optional[Assignment]:
        """
        Make room for a unit that found no candidate.

        One movable assignment in the unit's way is lifted, the unit is placed,
        and the lifted variable is placed again elsewhere. When that fails the
        state is restored and the next blocker is tried.

        Returns:
            The displaced assignment as it was before the repair, or None
        """
        for blocker in self._blockers(state, unit)[:MAX_REPAIR_ATTEMPTS]:
            state.unassign(blocker.variable_id)
            if self._place_unit(state, unit) is None:
                if self._place_single(state, blocker.variable) is None:
                    logger.debug(
                        f"Repaired {unit[0].block_group_id or unit[0].id} by moving {blocker.variable_id} "
                        f"from {blocker.slot} to {state.assignments[blocker.variable_id].slot}"
                    )
                    return blocker
                state.unassign_all(v.id for v in unit)
            state.assign(blocker.variable, blocker.slot, blocker.room_id)
        return None

    def _blockers(self, state: WorkingState, unit: Unit) -> List[Assignment]:
        """Movable assignments holding the unit's teacher, class or rooms at otherwise usable slots."""
        first = unit[0]
        rooms = self.engine.candidate_rooms(first)
        if not rooms:
            return []
        free = WorkingState()
        found: Dict[str, Assignment] = {}
        for start in self.lookup.all_slots:
            slots = [TimeSlot(start.day_of_week, start.period + k) for k in range(len(unit))]
            # Grid, forbidden and unavailable slots cannot be repaired
            if any(self.engine.check_availability(free, v, s) is not None for v, s in zip(unit, slots)):
                continue
            for slot in slots:
                occupying = state.occupants("teacher", first.teacher_id, slot)
                occupying += state.occupants("class", first.class_id, slot)
                for room_id in rooms:
                    occupying += state.occupants("room", room_id, slot)
                for variable_id in occupying:
                    assignment = state.assignments[variable_id]
                    if variable_id not in found and self._is_movable(assignment.variable):
                        found[variable_id] = assignment
        return list(found.values())

    def _build_units(self, variables: Iterable[ScheduleVariable]) -> List[Unit]:
        units: List[List[ScheduleVariable]] = []
        block_positions: Dict[str, int] = {}
        for variable in variables:
            if not variable.is_block:
                units.append([variable])
                continue
            if variable.block_group_id not in block_positions:
                block_positions[variable.block_group_id] = len(units)
                units.append([])
            units[block_positions[variable.block_group_id]].append(variable)
        return [tuple(sorted(unit, key=lambda v: v.block_index)) for unit in units]

    def _feasible_count(self, state: WorkingState, unit: Unit) -> int:
        """Slots (block starts for a block) with a feasible time and an open room."""
        first = unit[0]
        rooms = self.engine.candidate_rooms(first)
        count = 0
        for slot in self.lookup.all_slots:
            slots = [TimeSlot(slot.day_of_week, slot.period + k) for k in range(len(unit))]
            if first.is_block:
                end = slots[-1].period
                if (
                    first.block_size > self.lookup.rules.course_arrangement_rules.max_continuous_hours
                    or end > self.lookup.daily_periods
                    or self.lookup.crosses_lunch(slot.period, end)
                ):
                    continue
            if any(self.engine.check_availability(state, v, s) is not None for v, s in zip(unit, slots)):
                continue
            if any(all(self.engine.room_open(state, first, s, room) for s in slots) for room in rooms):
                count += 1
        return count

    def _candidate_key(self, evaluation_total: float, by_resource: Tuple[float, ...],
                       slot: TimeSlot, room_id: str) -> CandidateKey:
        return (evaluation_total, by_resource, slot.day_of_week, slot.period, room_id)

    def _place_single(self, state: WorkingState, variable: ScheduleVariable) -> Optional[Counter]:
        """Commit the best candidate; return rejection reasons when there is none."""
        rooms = self.engine.candidate_rooms(variable)
        if not rooms:
            return Counter(self.engine.room_rejections(variable))
        reasons: Counter = Counter()
        best: Optional[Tuple[CandidateKey, TimeSlot, str]] = None

        for slot in self.lookup.all_slots:
            rejection = self.engine.check_time(state, variable, slot)
            if rejection is not None:
                reasons[rejection.reason.value] += 1
                continue
            for room_id in rooms:
                evaluation = self.engine.evaluate_room(state, variable, slot, room_id)
                if not evaluation.feasible:
                    reasons[evaluation.rejection.reason.value] += 1
                    continue
                key = self._candidate_key(
                    evaluation.total, evaluation.by_resource(self.priority_order), slot, room_id
                )
                if best is None or key < best[0]:
                    best = (key, slot, room_id)

        if best is None:
            return reasons
        state.assign(variable, best[1], best[2])
        return None

    def _place_block(self, state: WorkingState, unit: Unit) -> Optional[Counter]:
        """Place a block group sibling by sibling in one room, or not at all."""
        rooms = self.engine.candidate_rooms(unit[0])
        if not rooms:
            return Counter(self.engine.room_rejections(unit[0]))
        reasons: Counter = Counter()
        best: Optional[Tuple[CandidateKey, TimeSlot, str]] = None

        for start in self.lookup.all_slots:
            rejection = self.engine.check_time(state, unit[0], start)
            if rejection is not None:
                reasons[rejection.reason.value] += 1
                continue
            for room_id in rooms:
                evaluation = self._try_block(state, unit, start, room_id, reasons)
                if evaluation is None:
                    continue
                key = self._candidate_key(
                    evaluation.total, evaluation.by_resource(self.priority_order), start, room_id
                )
                if best is None or key < best[0]:
                    best = (key, start, room_id)

        if best is None:
            return reasons
        _, start, room_id = best
        for offset, variable in enumerate(unit):
            state.assign(variable, TimeSlot(start.day_of_week, start.period + offset), room_id)
        return None

    def _try_block(self, state: WorkingState, unit: Unit, start: TimeSlot,
                   room_id: str, reasons: Counter) -> Optional[Evaluation]:
        """Trial-place the whole block; always leaves the state as it found it."""
        placed: List[str] = []
        penalties = []
        try:
            for offset, variable in enumerate(unit):
                slot = TimeSlot(start.day_of_week, start.period + offset)
                evaluation = self.engine.evaluate(state, variable, slot, room_id)
                if not evaluation.feasible:
                    reasons[evaluation.rejection.reason.value] += 1
                    return None
                penalties.extend(evaluation.penalties)
                state.assign(variable, slot, room_id)
                placed.append(variable.id)
        finally:
            state.unassign_all(placed)
        return Evaluation(penalties=tuple(penalties))

    # ============================================================ optimization

    def _optimize(self, state: WorkingState, outcome: SolverOutcome) -> None:
        deadline = time.monotonic() + self.time_limit
        low, high = OPTIMIZATION_PROGRESS
        start_cost = self._total_cost(state, state.assignments.keys())
        logger.info(f"Local optimization started (cost={start_cost:.1f}, max_iterations={self.max_iterations})")

        cost = start_cost
        while True:
            if self._cancelled():
                logger.info("Cancellation requested during optimization")
                outcome.aborted = True
                return
            # Nothing left to improve
            if cost <= IMPROVEMENT_EPSILON:
                self._finish_optimization(state, outcome, start_cost)
                return
            improved = False
            for assignment in self._movable(state):
                for move in self._moves(state, assignment):
                    if outcome.iterations >= self.max_iterations or time.monotonic() >= deadline:
                        self._finish_optimization(state, outcome, start_cost)
                        return
                    if self._cancelled():
                        logger.info("Cancellation requested during optimization")
                        outcome.aborted = True
                        return
                    outcome.iterations += 1
                    if outcome.iterations % self.progress_interval == 0:
                        percentage = low + (high - low) * outcome.iterations // max(1, self.max_iterations)
                        self.tracker.report(
                            "optimization", percentage,
                            f"Optimization iteration {outcome.iterations}",
                            self._assigned_count(state),
                        )
                    if self._apply_if_better(state, move):
                        improved = True
                        break
                if improved:
                    break
            if not improved:
                self._finish_optimization(state, outcome, start_cost)
                return
            cost = self._total_cost(state, state.assignments.keys())

    def _finish_optimization(self, state: WorkingState, outcome: SolverOutcome, start_cost: float) -> None:
        end_cost = self._total_cost(state, state.assignments.keys())
        logger.info(
            f"Local optimization finished after {outcome.iterations} iterations "
            f"(cost {start_cost:.1f} -> {end_cost:.1f})"
        )

    def _movable(self, state: WorkingState) -> List[Assignment]:
        """Standalone solver-placed assignments, most penalized first."""
        movable = [a for a in state.assignments.values() if self._is_movable(a.variable)]
        costs = {a.variable_id: self._cost(state, a) for a in movable}
        return sorted(movable, key=lambda a: (-costs[a.variable_id], a.variable.order))

    def _moves(self, state: WorkingState, assignment: Assignment):
        variable = assignment.variable
        for slot in self.lookup.all_slots:
            for room_id in self.engine.candidate_rooms(variable):
                if slot == assignment.slot and room_id == assignment.room_id:
                    continue
                yield ("move", assignment, slot, room_id)
        for other in state.class_assignments(variable.class_id, exclude=variable.id):
            if self._is_movable(other.variable) and other.slot != assignment.slot:
                yield ("swap", assignment, other, None)

    def _apply_if_better(self, state: WorkingState, move) -> bool:
        kind, assignment, target, room_id = move
        if kind == "move":
            return self._try_move(state, assignment, target, room_id)
        return self._try_swap(state, assignment, target)

    def _try_move(self, state: WorkingState, assignment: Assignment, slot: TimeSlot, room_id: str) -> bool:
        variable = assignment.variable
        # The variable's own occupancy is excluded by id, so it can be checked in place
        if self.engine.check_hard(state, variable, slot, room_id) is not None:
            return False
        affected = self._neighbourhood(state, variable, [assignment.room_id, room_id])
        before = self._total_cost(state, affected)
        state.unassign(variable.id)
        state.assign(variable, slot, room_id)
        if self._total_cost(state, affected) < before - IMPROVEMENT_EPSILON:
            return True
        state.unassign(variable.id)
        state.assign(variable, assignment.slot, assignment.room_id)
        return False

    def _try_swap(self, state: WorkingState, first: Assignment, second: Assignment) -> bool:
        affected = self._neighbourhood(state, first.variable, [first.room_id]) | self._neighbourhood(
            state, second.variable, [second.room_id]
        )
        before = self._total_cost(state, affected)
        state.unassign(first.variable_id)
        state.unassign(second.variable_id)

        feasible = self.engine.check_hard(state, first.variable, second.slot, first.room_id) is None
        if feasible:
            state.assign(first.variable, second.slot, first.room_id)
            feasible = self.engine.check_hard(state, second.variable, first.slot, second.room_id) is None
            if feasible:
                state.assign(second.variable, first.slot, second.room_id)
                if self._total_cost(state, affected) < before - IMPROVEMENT_EPSILON:
                    return True
                state.unassign(second.variable_id)
            state.unassign(first.variable_id)

        state.assign(first.variable, first.slot, first.room_id)
        state.assign(second.variable, second.slot, second.room_id)
        return False

    def _neighbourhood(self, state: WorkingState, variable: ScheduleVariable,
                       room_ids: Iterable[Optional[str]]) -> Set[str]:
        """Ids of assignments whose penalties can change when ``variable`` moves."""
        affected = {variable.id}
        affected.update(a.variable_id for a in state.teacher_assignments(variable.teacher_id))
        affected.update(a.variable_id for a in state.class_assignments(variable.class_id))
        rooms = state.index_for("room")
        for room_id in room_ids:
            for occupants in rooms.get(room_id, {}).values() if room_id is not None else ():
                affected.update(occupants)
        return affected

    def _cost(self, state: WorkingState, assignment: Assignment) -> float:
        if assignment.variable.is_fixed_time or assignment.variable.is_preserved:
            return 0.0
        return sum(p.amount for p in self.engine.assignment_penalties(state, assignment))

    def _total_cost(self, state: WorkingState, variable_ids: Iterable[str]) -> float:
        return sum(
            self._cost(state, state.assignments[vid])
            for vid in list(variable_ids)
            if vid in state.assignments
        )

    # ================================================================ helpers

    @staticmethod
    def _is_movable(variable: ScheduleVariable) -> bool:
        return not (variable.is_fixed_time or variable.is_preserved or variable.is_block)

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _mark_cancelled(self, variables: Iterable[ScheduleVariable], outcome: SolverOutcome) -> None:
        for variable in variables:
            outcome.unassigned.setdefault(variable.id, Counter({CANCELLED: 1}))

    @staticmethod
    def _assigned_count(state: WorkingState) -> int:
        return sum(1 for a in state.assignments.values() if not a.variable.is_preserved)
