"""
CanvasAssignmentSource tests over httpx.MockTransport.
"""

from datetime import datetime
from datetime import timezone

import httpx
import pytest

from assignment_sync.canvas_client import CanvasAssignmentSource
from assignment_sync.canvas_client import parse_assignment
from assignment_sync.canvas_client import parse_canvas_time
from assignment_sync.models import NetworkFailureError

BASE = "https://canvas.test"


def _source(handler) -> CanvasAssignmentSource:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return CanvasAssignmentSource(BASE, "secret-token", http_client=client)


def _assignment(aid: int, due: str | None = "2026-03-10T23:59:00Z", **extra):
    return {
        "id": aid,
        "course_id": 101,
        "name": f"Homework {aid}",
        "description": "<p>Solve it</p>",
        "due_at": due,
        "updated_at": "2026-03-01T12:00:00Z",
        "points_possible": 10,
        "submission_types": ["online_upload"],
        **extra,
    }


def test_parse_canvas_time():
    assert parse_canvas_time("2026-03-10T23:59:00Z") == datetime(
        2026, 3, 10, 23, 59, tzinfo=timezone.utc
    )
    assert parse_canvas_time(None) is None
    assert parse_canvas_time("") is None


def test_parse_assignment_drops_none_submission_type():
    a = parse_assignment(_assignment(1, due=None, submission_types=["none"]))
    assert a.due_at is None
    assert a.submission_types == ()
    assert a.points_possible == 10.0


def test_lists_assignments_for_given_courses():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=[_assignment(1), _assignment(2, due=None)])

    source = _source(handler)
    try:
        assignments = source.list_assignments([101])
    finally:
        source.close()

    assert [a.id for a in assignments] == [1, 2]
    assert assignments[0].due_at == datetime(2026, 3, 10, 23, 59, tzinfo=timezone.utc)
    assert requests[0].url.path == "/api/v1/courses/101/assignments"
    assert requests[0].url.params["per_page"] == "100"
    assert requests[0].headers["Authorization"] == "Bearer secret-token"


def test_follows_link_pagination():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("page") == "2":
            return httpx.Response(200, json=[_assignment(3)])
        return httpx.Response(
            200,
            json=[_assignment(1), _assignment(2)],
            headers={
                "Link": f'<{BASE}/api/v1/courses/101/assignments?page=2&per_page=100>; rel="next"'
            },
        )

    source = _source(handler)
    assert [a.id for a in source.list_assignments([101])] == [1, 2, 3]


def test_all_active_courses_when_none_given():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/courses":
            assert request.url.params["enrollment_state"] == "active"
            return httpx.Response(200, json=[{"id": 202, "name": "Databases"}, {"id": 101}])
        course_id = int(request.url.path.split("/")[4])
        return httpx.Response(200, json=[_assignment(course_id * 10, course_id=course_id)])

    source = _source(handler)
    assignments = source.list_assignments()

    assert [a.course_id for a in assignments] == [101, 202]
    assert source.course_names() == {202: "Databases", 101: "Course 101"}


def test_http_error_status_is_network_failure():
    source = _source(lambda request: httpx.Response(401, json={"errors": []}))
    with pytest.raises(NetworkFailureError, match="401"):
        source.list_assignments([101])


def test_transport_error_is_network_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    source = _source(handler)
    with pytest.raises(NetworkFailureError):
        source.list_assignments([101])


def test_invalid_json_is_network_failure():
    source = _source(lambda request: httpx.Response(200, text="<html>login</html>"))
    with pytest.raises(NetworkFailureError, match="invalid JSON"):
        source.list_assignments([101])
