"""
Test the scheduling API with self-contained test data.
"""
import json

import pytest
from fastapi.testclient import TestClient
from main import app


client = TestClient(app)


# Test data fixtures
def get_minimal_request():
    """Return minimal valid scheduling request."""
    return {
        "request": {
            "academic_year": "2024-2025",
            "semester": 1,
            "algorithm_config": {"max_iterations": 200, "time_limit": 5},
        },
        "data": {
            "rules": [
                {
                    "id": "rules-1",
                    "name": "Default rules",
                    "academic_year": "2024-2025",
                    "semester": 1,
                    "is_default": True,
                }
            ],
            "teachers": [
                {"id": "t1", "name": "John Doe", "subjects": ["mathematics"]}
            ],
            "classes": [
                {"id": "c1", "name": "Grade 7 Class 1", "grade": 7, "student_count": 40, "homeroom_id": "r101"}
            ],
            "courses": [
                {"id": "math", "name": "Mathematics", "subject": "mathematics", "weekly_hours": 4}
            ],
            "rooms": [
                {"id": "r101", "name": "Room 101", "type": "classroom", "capacity": 45}
            ],
            "teaching_plans": [
                {
                    "id": "plan-1",
                    "class_id": "c1",
                    "academic_year": "2024-2025",
                    "semester": 1,
                    "course_assignments": [{"course_id": "math", "teacher_id": "t1"}],
                }
            ],
        },
    }


def get_medium_request():
    """Return medium-sized scheduling request with multiple entities."""
    request = get_minimal_request()
    data = request["data"]
    data["teachers"].append({"id": "t2", "name": "Jane Roe", "subjects": ["physics"]})
    data["classes"].append(
        {"id": "c2", "name": "Grade 7 Class 2", "grade": 7, "student_count": 38, "homeroom_id": "r102"}
    )
    data["courses"].append({
        "id": "physics-lab",
        "name": "Physics Lab",
        "subject": "physics",
        "weekly_hours": 2,
        "requires_continuous": True,
        "continuous_hours": 2,
        "room_requirements": {"types": ["lab"]},
    })
    data["rooms"].extend([
        {"id": "r102", "name": "Room 102", "type": "classroom", "capacity": 45},
        {"id": "lab1", "name": "Lab A", "type": "lab", "capacity": 45},
    ])
    data["teaching_plans"][0]["course_assignments"].append({"course_id": "physics-lab", "teacher_id": "t2"})
    data["teaching_plans"].append({
        "id": "plan-2",
        "class_id": "c2",
        "academic_year": "2024-2025",
        "semester": 1,
        "course_assignments": [
            {"course_id": "math", "teacher_id": "t1"},
            {"course_id": "physics-lab", "teacher_id": "t2"},
        ],
    })
    return request


def test_root_endpoint():
    """Test root health check endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert "service" in data
    assert "status" in data
    assert data["status"] == "healthy"


def test_health_endpoint():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_generate_endpoint_minimal():
    """Test schedule generation with minimal data."""
    response = client.post("/api/v1/schedule/generate", json=get_minimal_request())

    assert response.status_code == 200
    data = response.json()

    # Check response structure
    assert data["success"] is True
    assert data["status"] == "completed"
    assert "statistics" in data
    assert "conflicts" in data
    assert "suggestions" in data
    assert isinstance(data["assignments"], list)
    assert len(data["assignments"]) == 4
    assert data["statistics"]["assigned_variables"] == 4
    assert data["statistics"]["unassigned_variables"] == 0


def test_generate_endpoint_medium():
    """Test schedule generation with two classes and a lab block."""
    response = client.post("/api/v1/schedule/generate", json=get_medium_request())

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    data = response.json()

    assert data["status"] == "completed"
    assert data["statistics"]["total_variables"] == 12
    assert data["conflicts"] == []

    # Lab courses must be in the lab, as one continuous pair per class
    for class_id in ("c1", "c2"):
        lab = [a for a in data["assignments"] if a["class_id"] == class_id and a["course_id"] == "physics-lab"]
        assert len(lab) == 2
        assert all(a["room_id"] == "lab1" for a in lab)
        assert lab[0]["day_of_week"] == lab[1]["day_of_week"]
        assert abs(lab[0]["period"] - lab[1]["period"]) == 1


def test_teacher_unavailable_slots_respected():
    """Test that teacher unavailable slots are never used."""
    request = get_minimal_request()
    request["data"]["teachers"][0]["unavailable_slots"] = [
        {"day_of_week": 1, "periods": [1, 2, 3, 4, 5, 6, 7, 8]}
    ]

    response = client.post("/api/v1/schedule/generate", json=request)

    assert response.status_code == 200
    data = response.json()
    assert data["assignments"]
    for assignment in data["assignments"]:
        assert assignment["day_of_week"] != 1


def test_forbidden_slots_respected():
    request = get_minimal_request()
    request["data"]["rules"][0]["time_rules"] = {
        "forbidden_slots": [{"day_of_week": day, "periods": [2, 3]} for day in range(1, 6)]
    }

    response = client.post("/api/v1/schedule/generate", json=request)

    assert response.status_code == 200
    for assignment in response.json()["assignments"]:
        assert assignment["period"] not in (2, 3)


def test_unknown_rules_returns_aborted_result():
    request = get_minimal_request()
    request["request"]["rules_id"] = "does-not-exist"

    response = client.post("/api/v1/schedule/generate", json=request)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is False
    assert data["status"] == "aborted"
    assert data["diagnostics"][0]["code"] == "RULES_NOT_FOUND"


def test_stream_endpoint_emits_progress_then_result():
    """Test the NDJSON progress stream."""
    response = client.post("/api/v1/schedule/generate/stream", json=get_minimal_request())

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    lines = [json.loads(line) for line in response.text.splitlines() if line.strip()]

    assert len(lines) >= 2
    assert all(line["event"] == "progress" for line in lines[:-1])
    assert lines[0]["stage"] == "preparation"
    result = lines[-1]
    assert result["event"] == "result"
    assert result["status"] == "completed"
    assert len(result["assignments"]) == 4


def test_validate_endpoint_detects_collisions():
    records = [
        {"academic_year": "2024-2025", "semester": 1, "class_id": "c1", "course_id": "math",
         "teacher_id": "t1", "room_id": "r101", "day_of_week": 1, "period": 1},
        {"academic_year": "2024-2025", "semester": 1, "class_id": "c2", "course_id": "math",
         "teacher_id": "t1", "room_id": "r102", "day_of_week": 1, "period": 1},
    ]

    response = client.post("/api/v1/schedule/validate", json={"records": records})

    assert response.status_code == 200
    data = response.json()
    assert data["valid"] is False
    assert data["checked_records"] == 2
    assert data["conflicts"][0]["kind"] == "teacher"
    assert data["conflicts"][0]["severity"] == "critical"


def test_validation_error_format():
    """Test that validation errors are returned in human-friendly format."""
    request = get_minimal_request()
    del request["request"]["academic_year"]
    request["data"]["classes"][0]["student_count"] = -5

    response = client.post("/api/v1/schedule/generate", json=request)

    assert response.status_code == 422
    data = response.json()
    assert "errors" in data
    assert isinstance(data["errors"], dict)

    # Each field should map to a list of string messages
    for field, messages in data["errors"].items():
        assert isinstance(messages, list)
        assert len(messages) > 0
        assert isinstance(messages[0], str)
    assert "Academic Year" in data["errors"]
    assert data["errors"]["Academic Year"] == ["Academic Year is required."]


@pytest.mark.parametrize("semester", [0, 3])
def test_semester_out_of_range_rejected(semester):
    request = get_minimal_request()
    request["request"]["semester"] = semester

    response = client.post("/api/v1/schedule/generate", json=request)

    assert response.status_code == 422
    assert "Semester" in response.json()["errors"]


def test_invalid_type_is_reported_in_plain_words():
    request = get_minimal_request()
    request["request"]["semester"] = "first"

    response = client.post("/api/v1/schedule/generate", json=request)

    assert response.status_code == 422
    messages = response.json()["errors"]["Semester"]
    assert messages[0].startswith("Semester has an invalid type.")
