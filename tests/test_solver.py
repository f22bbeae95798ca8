"""
Test end-to-end scheduling runs through the scheduling service.
"""
import threading
from collections import Counter

from models.entities import SchoolDataSnapshot
from models.rules import SchedulingRules
from models.schemas import RunStatus, SchedulingRequest
from service.constraints import ConstraintEngine
from service.lookup import LookupTables
from service.scheduling_service import SchedulingService
from service.solver import StagedSolver
from service.state import WorkingState
from service.types import PriorityTier, ScheduleVariable, TimeSlot

WEEK = [1, 2, 3, 4, 5]
PERIODS = list(range(1, 9))

service = SchedulingService()


# Test data builders
def get_rules_document():
    return {
        "id": "rules-1",
        "name": "Default rules",
        "academic_year": "2024-2025",
        "semester": 1,
        "is_default": True,
    }


def get_request(**overrides):
    request = {
        "academic_year": "2024-2025",
        "semester": 1,
        "algorithm_config": {"enable_local_optimization": False},
    }
    request.update(overrides)
    return SchedulingRequest(**request)


def only_free_at(day, period):
    """Unavailable slot groups covering the whole week except one slot."""
    return only_free_at_slots((day, period))


def only_free_at_slots(*slots):
    """Unavailable slot groups covering the whole week except the given (day, period) slots."""
    groups = []
    for d in WEEK:
        periods = [p for p in PERIODS if (d, p) not in slots]
        groups.append({"day_of_week": d, "periods": periods})
    return groups


def get_snapshot_document(rules=None):
    """Return two classes sharing a teacher, with core and general courses."""
    return {
        "rules": [rules or get_rules_document()],
        "teachers": [
            {"id": "t-math", "name": "Alice", "subjects": ["mathematics"]},
            {"id": "t-music", "name": "Bob", "subjects": ["music"]},
            {"id": "t-chem", "name": "Carol", "subjects": ["chemistry"]},
        ],
        "classes": [
            {"id": "c1", "name": "Class 1", "student_count": 40, "homeroom_id": "r1", "class_teacher_id": "t-math"},
            {"id": "c2", "name": "Class 2", "student_count": 40, "homeroom_id": "r2", "class_teacher_id": "t-music"},
        ],
        "courses": [
            {"id": "math", "name": "Mathematics", "subject": "mathematics", "weekly_hours": 4},
            {"id": "music", "name": "Music", "subject": "music", "weekly_hours": 1},
            {"id": "chem", "name": "Chemistry", "subject": "chemistry", "weekly_hours": 2,
             "requires_continuous": True, "continuous_hours": 2,
             "room_requirements": {"types": ["lab"]}},
        ],
        "rooms": [
            {"id": "lab1", "type": "lab", "capacity": 45},
            {"id": "r1", "type": "classroom", "capacity": 45},
            {"id": "r2", "type": "classroom", "capacity": 45},
        ],
        "teaching_plans": [
            {"id": "p1", "class_id": "c1", "academic_year": "2024-2025", "semester": 1, "course_assignments": [
                {"course_id": "math", "teacher_id": "t-math"},
                {"course_id": "music", "teacher_id": "t-music"},
                {"course_id": "chem", "teacher_id": "t-chem"},
            ]},
            {"id": "p2", "class_id": "c2", "academic_year": "2024-2025", "semester": 1, "course_assignments": [
                {"course_id": "math", "teacher_id": "t-math"},
                {"course_id": "music", "teacher_id": "t-music"},
                {"course_id": "chem", "teacher_id": "t-chem"},
            ]},
        ],
    }


def get_single_course_snapshot(course, teacher=None, classes=("c1",), rules=None):
    """Return a snapshot where every class takes exactly one course from one teacher."""
    teacher = teacher or {"id": "t1", "name": "Alice"}
    return {
        "rules": [rules or get_rules_document()],
        "teachers": [teacher],
        "classes": [
            {"id": cid, "student_count": 30, "homeroom_id": f"room-{cid}"} for cid in classes
        ],
        "courses": [course],
        "rooms": [{"id": f"room-{cid}", "capacity": 40} for cid in classes],
        "teaching_plans": [
            {"id": f"plan-{cid}", "class_id": cid, "academic_year": "2024-2025", "semester": 1,
             "course_assignments": [{"course_id": course["id"], "teacher_id": teacher["id"]}]}
            for cid in classes
        ],
    }


def run(snapshot_document, **request_overrides):
    return service.execute_scheduling(get_request(**request_overrides), SchoolDataSnapshot(**snapshot_document))


def assert_exclusive(result):
    for attribute in ("teacher_id", "room_id", "class_id"):
        seen = Counter(
            (getattr(r, attribute), r.day_of_week, r.period)
            for r in result.assignments
            if getattr(r, attribute) is not None
        )
        duplicates = [key for key, count in seen.items() if count > 1]
        assert not duplicates, f"{attribute} double-booked: {duplicates}"


# ============================================
# Invariants
# ============================================

def test_full_run_is_exclusive_and_conserves_variables():
    result = run(get_snapshot_document(), algorithm_config={"enable_local_optimization": True, "max_iterations": 300})

    assert result.success
    assert result.status == RunStatus.COMPLETED
    stats = result.statistics
    assert stats.total_variables == 14
    assert stats.assigned_variables + stats.unassigned_variables == stats.total_variables
    assert stats.unassigned_variables == 0
    assert len(result.assignments) == stats.assigned_variables
    assert result.conflicts == []
    assert stats.hard_violations == 0
    assert stats.iterations <= 300
    assert_exclusive(result)


def test_blocks_occupy_adjacent_periods_in_one_room():
    result = run(get_snapshot_document())

    for class_id in ("c1", "c2"):
        chem = [r for r in result.assignments if r.class_id == class_id and r.course_id == "chem"]
        assert len(chem) == 2
        assert chem[0].day_of_week == chem[1].day_of_week
        assert chem[1].period == chem[0].period + 1
        assert chem[0].room_id == chem[1].room_id == "lab1"
        # lunch follows period 4
        assert (chem[0].period, chem[1].period) != (4, 5)


def test_records_are_sorted_by_class_day_period():
    result = run(get_snapshot_document())

    keys = [(r.class_id, r.day_of_week, r.period) for r in result.assignments]
    assert keys == sorted(keys)
    assert all(r.status == "active" and r.academic_year == "2024-2025" for r in result.assignments)


def test_fixed_time_activities_keep_their_slot():
    rules = get_rules_document()
    rules["course_arrangement_rules"] = {
        "fixed_time_courses": {
            "enabled": True,
            "courses": [{"type": "flag-raising", "day_of_week": 1, "period": 1}],
        }
    }
    result = run(get_snapshot_document(rules), algorithm_config={"enable_local_optimization": True})

    flag_raising = [r for r in result.assignments if r.course_id == "fixed:flag-raising"]
    assert sorted(r.class_id for r in flag_raising) == ["c1", "c2"]
    assert all((r.day_of_week, r.period) == (1, 1) for r in flag_raising)
    others_at_start = [
        r for r in result.assignments
        if (r.day_of_week, r.period) == (1, 1) and r.course_id != "fixed:flag-raising"
    ]
    assert others_at_start == []
    assert_exclusive(result)


# ============================================
# Scenarios
# ============================================

def test_continuous_pair_is_placed_on_adjacent_periods():
    course = {"id": "art", "subject": "art", "weekly_hours": 2, "requires_continuous": True, "continuous_hours": 2}
    result = run(get_single_course_snapshot(course))

    assert result.statistics.unassigned_variables == 0
    first, second = result.assignments
    assert first.day_of_week == second.day_of_week
    assert second.period == first.period + 1


def test_shared_teacher_with_one_opening_serves_one_class():
    course = {"id": "music", "subject": "music", "weekly_hours": 1}
    teacher = {"id": "t1", "name": "Alice", "unavailable_slots": only_free_at(1, 1)}
    result = run(get_single_course_snapshot(course, teacher, classes=("c1", "c2")))

    assert len(result.assignments) == 1
    assert (result.assignments[0].day_of_week, result.assignments[0].period) == (1, 1)
    assert result.assignments[0].class_id == "c1"
    assert [u.class_id for u in result.unassigned] == ["c2"]
    assert result.unassigned[0].reasons.get("teacher_busy") == 1
    assert result.statistics.assigned_variables + result.statistics.unassigned_variables == 2
    assert any("Alice" in s for s in result.suggestions)


def test_fixed_activity_blocks_core_course_at_its_slot():
    rules = get_rules_document()
    rules["course_arrangement_rules"] = {
        "fixed_time_courses": {
            "enabled": True,
            "courses": [{"type": "flag-raising", "day_of_week": 1, "period": 1}],
        }
    }
    course = {"id": "math", "subject": "mathematics", "weekly_hours": 1}
    teacher = {"id": "t1", "name": "Alice", "unavailable_slots": only_free_at(1, 1)}
    result = run(get_single_course_snapshot(course, teacher, rules=rules))

    placed = [(r.course_id, r.day_of_week, r.period) for r in result.assignments]
    assert placed == [("fixed:flag-raising", 1, 1)]
    assert len(result.unassigned) == 1
    assert result.unassigned[0].course_id == "math"
    assert result.unassigned[0].tier == "core"
    assert "class_busy" in result.unassigned[0].reasons


def test_preserved_record_keeps_its_slot_busy():
    course = {"id": "music", "subject": "music", "weekly_hours": 2}
    snapshot = get_single_course_snapshot(course)
    snapshot["existing_schedules"] = [{
        "academic_year": "2024-2025", "semester": 1, "class_id": "c1", "course_id": "music",
        "teacher_id": "t1", "room_id": "room-c1", "day_of_week": 1, "period": 2,
    }]
    result = run(snapshot, preserve_existing=True)

    assert result.statistics.preserved_assignments == 1
    assert result.statistics.total_variables == 1
    assert len(result.assignments) == 1
    assert (result.assignments[0].day_of_week, result.assignments[0].period) != (1, 2)


def test_without_preserve_existing_all_hours_are_scheduled():
    course = {"id": "music", "subject": "music", "weekly_hours": 2}
    snapshot = get_single_course_snapshot(course)
    snapshot["existing_schedules"] = [{
        "academic_year": "2024-2025", "semester": 1, "class_id": "c1", "course_id": "music",
        "teacher_id": "t1", "room_id": "room-c1", "day_of_week": 1, "period": 2,
    }]
    result = run(snapshot)

    assert result.statistics.preserved_assignments == 0
    assert len(result.assignments) == 2


# ============================================
# Tie-breaking and policies
# ============================================

def tie_snapshot(priority_order):
    """Two equally penalized slots: (1,1) misses the teacher preference, (1,2) the course preference."""
    rules = get_rules_document()
    rules["conflict_resolution_rules"] = {"priority_order": priority_order}
    course = {"id": "music", "subject": "music", "weekly_hours": 1}
    teacher = {"id": "t1", "name": "Alice", "preferred_slots": [{"day_of_week": 1, "periods": [2]}]}
    snapshot = get_single_course_snapshot(course, teacher, rules=rules)
    snapshot["teaching_plans"][0]["course_assignments"][0]["preferred_time_slots"] = [
        {"day_of_week": 1, "periods": [1]}
    ]
    return snapshot


def test_priority_order_breaks_equal_penalty_ties():
    teacher_first = run(tie_snapshot(["teacher", "room", "class"]))
    slot = (teacher_first.assignments[0].day_of_week, teacher_first.assignments[0].period)
    assert slot == (1, 2)

    class_first = run(tie_snapshot(["class", "room", "teacher"]))
    slot = (class_first.assignments[0].day_of_week, class_first.assignments[0].period)
    assert slot == (1, 1)


def test_ignore_policy_records_collision_instead_of_refusing():
    rules = get_rules_document()
    rules["conflict_resolution_rules"] = {"teacher_conflict_resolution": "ignore"}
    course = {"id": "music", "subject": "music", "weekly_hours": 1}
    teacher = {"id": "t1", "name": "Alice", "unavailable_slots": only_free_at(1, 1)}
    result = run(get_single_course_snapshot(course, teacher, classes=("c1", "c2"), rules=rules))

    assert result.statistics.unassigned_variables == 0
    assert len(result.conflicts) == 1
    conflict = result.conflicts[0]
    assert conflict.kind == "teacher"
    assert conflict.resource_id == "t1"
    assert conflict.severity == "info"
    assert conflict.slot_key == "d1p1"
    assert result.statistics.hard_violations == 1


def test_strict_fixed_collision_leaves_later_activity_unplaced():
    rules = get_rules_document()
    rules["course_arrangement_rules"] = {
        "fixed_time_courses": {
            "enabled": True,
            "conflict_strategy": "strict",
            "courses": [
                {"type": "flag-raising", "day_of_week": 1, "period": 1},
                {"type": "morning-reading", "day_of_week": 1, "period": 1},
            ],
        }
    }
    course = {"id": "music", "subject": "music", "weekly_hours": 1}
    result = run(get_single_course_snapshot(course, rules=rules))

    assert result.success
    assert [u.course_id for u in result.unassigned] == ["fixed:morning-reading"]
    assert result.unassigned[0].reasons == {"fixed_slot_conflict": 1}
    assert [d.code for d in result.diagnostics] == ["FIXED_SLOT_CONFLICT"]
    assert result.conflicts == []


def test_flexible_fixed_collision_is_placed_and_detected():
    rules = get_rules_document()
    rules["course_arrangement_rules"] = {
        "fixed_time_courses": {
            "enabled": True,
            "conflict_strategy": "flexible",
            "courses": [
                {"type": "flag-raising", "day_of_week": 1, "period": 1},
                {"type": "morning-reading", "day_of_week": 1, "period": 1},
            ],
        }
    }
    course = {"id": "music", "subject": "music", "weekly_hours": 1}
    result = run(get_single_course_snapshot(course, rules=rules))

    assert result.unassigned == []
    assert len(result.conflicts) == 1
    assert result.conflicts[0].kind == "class"
    assert result.conflicts[0].severity == "critical"
    assert result.diagnostics == []


def test_warning_fixed_collision_emits_warning_conflict():
    rules = get_rules_document()
    rules["course_arrangement_rules"] = {
        "fixed_time_courses": {
            "enabled": True,
            "conflict_strategy": "warning",
            "courses": [
                {"type": "flag-raising", "day_of_week": 1, "period": 1},
                {"type": "morning-reading", "day_of_week": 1, "period": 1},
            ],
        }
    }
    course = {"id": "music", "subject": "music", "weekly_hours": 1}
    result = run(get_single_course_snapshot(course, rules=rules))

    assert result.success
    assert result.unassigned == []
    assert [(c.kind, c.severity) for c in result.conflicts] == [("class", "warning")]
    assert [(d.severity, d.code) for d in result.diagnostics] == [("warning", "FIXED_SLOT_CONFLICT")]
    assert result.statistics.hard_violations == 1


def test_missing_room_type_is_reported_with_suggestion():
    course = {"id": "chem", "subject": "chemistry", "weekly_hours": 1, "room_requirements": {"types": ["lab"]}}
    result = run(get_single_course_snapshot(course))

    assert result.success
    assert len(result.unassigned) == 1
    assert result.unassigned[0].reasons == {"room_type_mismatch": 1}
    assert any("lab" in s for s in result.suggestions)


# ============================================
# Aborted runs
# ============================================

def test_cancellation_ends_aborted_with_partial_state():
    cancel_event = threading.Event()
    cancel_event.set()
    course = {"id": "music", "subject": "music", "weekly_hours": 2}
    result = service.execute_scheduling(
        get_request(), SchoolDataSnapshot(**get_single_course_snapshot(course)), cancel_event=cancel_event
    )

    assert result.status == RunStatus.ABORTED
    assert result.success is False
    assert result.statistics.unassigned_variables == 2
    assert all(u.reasons == {"cancelled": 1} for u in result.unassigned)


def test_unknown_rules_id_aborts_with_diagnostic():
    course = {"id": "music", "subject": "music", "weekly_hours": 1}
    result = run(get_single_course_snapshot(course), rules_id="missing")

    assert result.status == RunStatus.ABORTED
    assert result.success is False
    assert [d.code for d in result.diagnostics] == ["RULES_NOT_FOUND"]


def test_default_rules_are_resolved_by_term():
    rules = get_rules_document()
    rules["academic_year"] = "2023-2024"
    course = {"id": "music", "subject": "music", "weekly_hours": 1}
    result = run(get_single_course_snapshot(course, rules=rules))

    assert result.status == RunStatus.ABORTED
    assert [d.code for d in result.diagnostics] == ["RULES_NOT_FOUND"]


def test_fixed_slot_outside_grid_aborts():
    rules = get_rules_document()
    rules["course_arrangement_rules"] = {
        "fixed_time_courses": {
            "enabled": True,
            "courses": [{"type": "flag-raising", "day_of_week": 6, "period": 1}],
        }
    }
    course = {"id": "music", "subject": "music", "weekly_hours": 1}
    result = run(get_single_course_snapshot(course, rules=rules))

    assert result.status == RunStatus.ABORTED
    assert [d.code for d in result.diagnostics] == ["FIXED_SLOT_OUTSIDE_GRID"]
    assert result.assignments == []


def test_invalid_continuous_configuration_aborts():
    course = {"id": "art", "subject": "art", "weekly_hours": 2, "requires_continuous": True, "continuous_hours": 1}
    result = run(get_single_course_snapshot(course))

    assert result.status == RunStatus.ABORTED
    assert "INVALID_CONTINUOUS_HOURS" in [d.code for d in result.diagnostics]


# ============================================
# Repair and ordering
# ============================================

def get_one_class_snapshot(courses, rules=None):
    """One class taking one-hour courses, each from its own teacher.

    ``courses`` is a list of ``(course_id, subject, free_slots, preferred_slots)``.
    """
    return {
        "rules": [rules or get_rules_document()],
        "teachers": [
            {"id": f"t-{course_id}", "name": course_id.title(),
             "unavailable_slots": only_free_at_slots(*free),
             "preferred_slots": [{"day_of_week": d, "periods": [p]} for d, p in preferred]}
            for course_id, _, free, preferred in courses
        ],
        "classes": [{"id": "c1", "student_count": 30, "homeroom_id": "room-c1"}],
        "courses": [
            {"id": course_id, "subject": subject, "weekly_hours": 1}
            for course_id, subject, _, _ in courses
        ],
        "rooms": [{"id": "room-c1", "capacity": 40}],
        "teaching_plans": [{
            "id": "plan-c1", "class_id": "c1", "academic_year": "2024-2025", "semester": 1,
            "course_assignments": [
                {"course_id": course_id, "teacher_id": f"t-{course_id}"} for course_id, _, _, _ in courses
            ],
        }],
    }


def placed_periods(result):
    return {r.course_id: (r.day_of_week, r.period) for r in result.assignments}


def test_next_unit_is_chosen_against_current_state():
    snapshot = get_one_class_snapshot([
        ("art", "art", [(1, 1), (1, 2)], [(1, 2)]),
        ("drama", "drama", [(1, 3), (1, 4)], [(1, 3)]),
        ("music", "music", [(1, 2), (1, 3)], []),
    ])
    result = run(snapshot)

    assert result.unassigned == []
    periods = placed_periods(result)
    assert len(set(periods.values())) == 3
    assert periods["art"] == (1, 2)


def test_blocking_assignment_is_moved_to_fit_a_later_course():
    # Mathematics is core, so it is placed first and takes its preferred period 2,
    # the only period the music teacher can teach
    snapshot = get_one_class_snapshot([
        ("math", "mathematics", [(1, 1), (1, 2)], []),
        ("music", "music", [(1, 2)], []),
    ])
    result = run(snapshot)

    assert result.unassigned == []
    assert placed_periods(result) == {"math": (1, 1), "music": (1, 2)}
    assert_exclusive(result)


def test_repair_leaves_state_untouched_when_nothing_fits():
    snapshot = get_one_class_snapshot([
        ("math", "mathematics", [(1, 2)], []),
        ("music", "music", [(1, 2)], []),
    ])
    result = run(snapshot)

    assert placed_periods(result) == {"math": (1, 2)}
    assert [u.course_id for u in result.unassigned] == ["music"]
    assert result.unassigned[0].reasons.get("class_busy") == 1


def test_weekly_overload_is_suggested():
    course = {"id": "music", "subject": "music", "weekly_hours": 2}
    teacher = {"id": "t1", "name": "Alice", "max_weekly_hours": 1}
    result = run(get_single_course_snapshot(course, teacher))

    assert result.statistics.unassigned_variables == 0
    assert result.statistics.soft_violations >= 2
    assert any("Alice exceeds the weekly hour limit" in s for s in result.suggestions)


# ============================================
# Local optimization
# ============================================

def make_solver(**options):
    course = {"id": "music", "subject": "music", "weekly_hours": 1}
    lookup = LookupTables(
        SchedulingRules(**get_rules_document()),
        SchoolDataSnapshot(**get_single_course_snapshot(course)),
    )
    return StagedSolver(lookup, ConstraintEngine(lookup), **options)


def friday_afternoon_state():
    """A music hour placed on Friday afternoon, where it is penalized."""
    variable = ScheduleVariable(
        id="c1:music:0",
        class_id="c1",
        course_id="music",
        teacher_id="t1",
        subject="music",
        priority_tier=PriorityTier.GENERAL,
        order=0,
    )
    state = WorkingState()
    state.assign(variable, TimeSlot(5, 6), "room-c1")
    return state


def total_penalty(solver, state):
    return sum(
        p.amount
        for assignment in state.assignments.values()
        for p in solver.engine.assignment_penalties(state, assignment)
    )


def test_local_optimization_strictly_lowers_penalty():
    solver = make_solver(max_iterations=100)
    state = friday_afternoon_state()
    assert total_penalty(solver, state) == 5

    outcome = solver.solve(state, [])

    assert not outcome.aborted
    assert outcome.iterations == 1
    assert total_penalty(solver, state) == 0
    assert state.assignments["c1:music:0"].slot != TimeSlot(5, 6)


def test_max_iterations_bounds_optimization():
    solver = make_solver(max_iterations=0)
    state = friday_afternoon_state()

    outcome = solver.solve(state, [])

    assert outcome.iterations == 0
    assert state.assignments["c1:music:0"].slot == TimeSlot(5, 6)


def test_time_limit_bounds_optimization():
    solver = make_solver(time_limit=0)
    state = friday_afternoon_state()

    outcome = solver.solve(state, [])

    assert outcome.iterations == 0
    assert state.assignments["c1:music:0"].slot == TimeSlot(5, 6)


def test_optimization_stops_when_nothing_is_penalized():
    course = {"id": "music", "subject": "music", "weekly_hours": 1}
    result = run(
        get_single_course_snapshot(course),
        algorithm_config={"enable_local_optimization": True, "max_iterations": 500},
    )

    assert result.statistics.total_score == 0
    assert result.statistics.iterations == 0


def test_cancellation_during_optimization_keeps_placements():
    cancel_event = threading.Event()

    def cancel_after_construction(event):
        if event.message.startswith("General tier done"):
            cancel_event.set()

    course = {"id": "music", "subject": "music", "weekly_hours": 2}
    result = service.execute_scheduling(
        get_request(algorithm_config={"enable_local_optimization": True}),
        SchoolDataSnapshot(**get_single_course_snapshot(course)),
        on_progress=cancel_after_construction,
        cancel_event=cancel_event,
    )

    assert result.status == RunStatus.ABORTED
    assert result.success is False
    assert result.statistics.unassigned_variables == 0
    assert len(result.assignments) == 2
    assert result.statistics.iterations == 0
