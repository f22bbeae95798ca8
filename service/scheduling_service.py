"""
Scheduling service: the single entry point of the timetable engine.

A run resolves its rule set from the snapshot, generates variables, pre-places
fixed activities, runs the staged solver, then detects conflicts and
materializes the result. Everything a run allocates is local to the call.
"""
import logging
import threading
import time
from typing import List, Optional

from config.settings import Settings, settings as default_settings
from models.entities import ScheduleRecord, SchoolDataSnapshot
from models.rules import SchedulingRules
from models.schemas import (
    Diagnostic, RunStatistics, RunStatus, SchedulingRequest, SchedulingResult, ValidationResult
)
from .conflicts import ConflictDetector
from .constraints import ConstraintEngine
from .errors import RulesNotFoundError, SchedulingConfigurationError
from .fixed_slots import FixedSlotPrePlacer
from .lookup import LookupTables
from .materializer import ResultMaterializer
from .progress import ProgressReporter, ProgressTracker
from .solver import StagedSolver
from .state import WorkingState
from .variables import VariableGenerator, select_plans

logger = logging.getLogger(__name__)


class SchedulingService:
    """
    Runs the scheduling engine against a data snapshot.

    The service holds no per-run state, so one instance can serve concurrent
    runs from several threads.
    """

    def __init__(self, config: Optional[Settings] = None):
        """
        Initialize the service.

        Args:
            config: Engine defaults; the module-level settings when omitted
        """
        self.config = config or default_settings

    def resolve_rules(self, snapshot: SchoolDataSnapshot, request: SchedulingRequest) -> SchedulingRules:
        """
        Pick the rule set of a run.

        Args:
            snapshot: Data snapshot holding the candidate rule sets
            request: The scheduling request

        Returns:
            The rule set named by ``request.rules_id``, else the active default
            rule set of the request's academic year and semester

        Raises:
            RulesNotFoundError: when no rule set matches
        """
        if request.rules_id is not None:
            for rules in snapshot.rules:
                if rules.id == request.rules_id:
                    return rules
            raise RulesNotFoundError(f"Scheduling rules {request.rules_id} not found")

        for rules in snapshot.rules:
            if (
                rules.is_default
                and rules.is_active
                and rules.academic_year == request.academic_year
                and rules.semester == request.semester
            ):
                return rules
        raise RulesNotFoundError(
            f"No active default scheduling rules for {request.academic_year} semester {request.semester}"
        )

    def execute_scheduling(
        self,
        request: SchedulingRequest,
        snapshot: SchoolDataSnapshot,
        on_progress: Optional[ProgressReporter] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SchedulingResult:
        """
        Generate a timetable for one academic term.

        Args:
            request: What to schedule and with which limits
            snapshot: Rule sets and entity data the run reads
            on_progress: Optional reporter receiving ProgressEvent values
            cancel_event: Optional event; once set, the run stops and ends aborted

        Returns:
            SchedulingResult; configuration problems and unexpected failures are
            reported as aborted results rather than raised
        """
        started = time.monotonic()
        tracker = ProgressTracker(on_progress)
        try:
            return self._run(request, snapshot, tracker, cancel_event, started)
        except SchedulingConfigurationError as e:
            logger.warning(f"Scheduling aborted by configuration error: {str(e)}")
            tracker.report("aborted", 100, str(e))
            return self._create_aborted_response(str(e), e.diagnostics, started)
        except Exception as e:
            logger.error(f"Scheduling error: {str(e)}", exc_info=True)
            tracker.report("aborted", 100, "Unexpected scheduling failure")
            return self._create_error_response(str(e), started)

    def validate_schedule(self, records: List[ScheduleRecord],
                          rules: Optional[SchedulingRules] = None) -> ValidationResult:
        """
        Check existing schedule records for resource collisions.

        Args:
            records: Records to check; only active ones take part
            rules: Rule set whose conflict policies set the severities

        Returns:
            ValidationResult with one conflict per over-booked resource slot
        """
        conflicts = ConflictDetector(rules).detect_records(records)
        logger.info(f"Validated {len(records)} schedule records: {len(conflicts)} conflicts")
        return ValidationResult(
            valid=not conflicts,
            checked_records=len(records),
            conflicts=conflicts,
        )

    # ------------------------------------------------------------------ run

    def _run(self, request: SchedulingRequest, snapshot: SchoolDataSnapshot, tracker: ProgressTracker,
             cancel_event: Optional[threading.Event], started: float) -> SchedulingResult:
        rules = self.resolve_rules(snapshot, request)
        logger.info(
            f"Scheduling {request.academic_year} semester {request.semester} "
            f"with rules {rules.id} ({rules.name or 'unnamed'})"
        )
        tracker.report("preparation", 0, f"Loading scheduling rules {rules.id}")

        lookup = LookupTables(rules, snapshot)
        engine = ConstraintEngine(lookup)
        generator = VariableGenerator(
            lookup,
            default_start_week=self.config.default_start_week,
            default_end_week=self.config.default_end_week,
        )

        plans = select_plans(snapshot.teaching_plans, request.academic_year, request.semester, request.class_ids)
        preserved_records = self._preserved_records(snapshot, request) if request.preserve_existing else []
        generation = generator.generate(plans, request.class_ids, preserved_records)
        variables = generation.variables
        diagnostics = list(generation.diagnostics)
        tracker.total_count = len(variables)
        tracker.report("preparation", 10, f"Generated {len(variables)} variables from {len(plans)} plans")

        state = WorkingState()
        pre_placement = FixedSlotPrePlacer(lookup, engine).place(
            state, variables, generator.preserved_placements(preserved_records)
        )
        diagnostics.extend(pre_placement.diagnostics)

        algorithm = request.algorithm_config
        solver = StagedSolver(
            lookup,
            engine,
            tracker=tracker,
            max_iterations=self._pick(algorithm.max_iterations, self.config.default_max_iterations),
            time_limit=self._pick(algorithm.time_limit, self.config.default_time_limit_seconds),
            enable_local_optimization=self._pick(
                algorithm.enable_local_optimization, self.config.default_enable_local_optimization
            ),
            progress_interval=self.config.progress_interval,
            cancel_event=cancel_event,
        )
        outcome = solver.solve(state, variables, pre_placement.unplaced)

        tracker.report("finalizing", 95, "Detecting conflicts and scoring")
        detector = ConflictDetector(rules, lookup, engine)
        conflicts = detector.detect(state, pre_placement.warned)
        summary = detector.score(state)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        statistics = detector.statistics(
            total_variables=len(variables),
            unassigned_count=len(outcome.unassigned),
            preserved_count=len(preserved_records),
            conflicts=conflicts,
            summary=summary,
            iterations=outcome.iterations,
            execution_time_ms=elapsed_ms,
        )
        suggestions = detector.suggest(
            outcome.unassigned,
            {v.id: v for v in variables},
            conflicts,
            summary,
            statistics.assigned_variables,
        )

        materializer = ResultMaterializer(request.academic_year, request.semester)
        status = RunStatus.ABORTED if outcome.aborted else RunStatus.COMPLETED
        message = self._summary_message(status, statistics)
        logger.info(message)
        tracker.report(status.value, 100, message, statistics.assigned_variables)

        return SchedulingResult(
            success=not outcome.aborted,
            status=status,
            message=message,
            statistics=statistics,
            conflicts=conflicts,
            suggestions=suggestions,
            assignments=materializer.records(state),
            unassigned=materializer.unassigned(variables, outcome.unassigned),
            diagnostics=diagnostics,
        )

    def _preserved_records(self, snapshot: SchoolDataSnapshot, request: SchedulingRequest) -> List[ScheduleRecord]:
        wanted = set(request.class_ids)
        return [
            record for record in snapshot.existing_schedules
            if record.status == "active"
            and record.academic_year == request.academic_year
            and record.semester == request.semester
            and (not wanted or record.class_id in wanted)
        ]

    @staticmethod
    def _pick(value, default):
        return default if value is None else value

    @staticmethod
    def _summary_message(status: RunStatus, statistics: RunStatistics) -> str:
        if status == RunStatus.ABORTED:
            return (
                f"Scheduling cancelled: {statistics.assigned_variables}/{statistics.total_variables} "
                f"variables assigned before stopping"
            )
        return (
            f"Scheduling completed: {statistics.assigned_variables}/{statistics.total_variables} variables assigned, "
            f"{statistics.unassigned_variables} unassigned, {statistics.hard_violations} conflicts"
        )

    # ------------------------------------------------------------ responses

    def _create_aborted_response(self, message: str, diagnostics: List[Diagnostic],
                                 started: float) -> SchedulingResult:
        """Create response for a run stopped by its configuration."""
        return SchedulingResult(
            success=False,
            status=RunStatus.ABORTED,
            message=message,
            statistics=RunStatistics(execution_time_ms=int((time.monotonic() - started) * 1000)),
            diagnostics=diagnostics,
        )

    def _create_error_response(self, error: str, started: float) -> SchedulingResult:
        """Create response for an unexpected engine failure."""
        return self._create_aborted_response(
            f"Scheduling failed: {error}",
            [Diagnostic(severity="error", code="SCHEDULER_ERROR", message=error)],
            started,
        )
