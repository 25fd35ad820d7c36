"""
Canvas LMS REST client used as the remote assignment source.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from datetime import timezone
from typing import Any

import httpx

from assignment_sync.models import Assignment
from assignment_sync.models import NetworkFailureError

DEFAULT_PAGE_SIZE = 100

logger = logging.getLogger(__name__)


def parse_canvas_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_assignment(payload: dict[str, Any], course_id: int | None = None) -> Assignment:
    points = payload.get("points_possible")
    return Assignment(
        id=int(payload["id"]),
        course_id=int(payload.get("course_id") or course_id),
        name=payload.get("name") or "",
        description=payload.get("description"),
        due_at=parse_canvas_time(payload.get("due_at")),
        updated_at=parse_canvas_time(payload.get("updated_at")),
        points_possible=float(points) if points is not None else None,
        submission_types=tuple(
            t for t in payload.get("submission_types") or () if t and t != "none"
        ),
    )


class CanvasAssignmentSource:
    """Fetches assignments for a user's courses through the Canvas REST API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        http_client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._token = token
        self.page_size = max(1, int(page_size))
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.Client(timeout=httpx.Timeout(20.0, connect=10.0))
        )
        self._course_names: dict[int, str] | None = None

    def close(self) -> None:
        if self._owns_http_client:
            self._http_client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _get_paginated(self, path: str, params: dict[str, Any] | None = None) -> list[Any]:
        """GET every page, following ``Link: rel="next"``."""
        url: str | None = f"{self.base_url}{path}"
        query: dict[str, Any] | None = {"per_page": self.page_size, **(params or {})}
        items: list[Any] = []
        while url:
            try:
                response = self._http_client.get(
                    url,
                    params=query,
                    headers={
                        "Authorization": f"Bearer {self._token}",
                        "Accept": "application/json",
                    },
                )
            except httpx.HTTPError as exc:
                raise NetworkFailureError(f"Canvas request failed: {exc}") from exc

            if response.status_code < 200 or response.status_code >= 300:
                raise NetworkFailureError(
                    f"Canvas request {path} failed with status {response.status_code}"
                )
            try:
                page = response.json()
            except ValueError as exc:
                raise NetworkFailureError(f"Canvas returned invalid JSON for {path}") from exc
            if not isinstance(page, list):
                raise NetworkFailureError(f"Canvas payload for {path} must be a list")
            items.extend(page)

            next_link = response.links.get("next")
            url = next_link.get("url") if next_link else None
            # The next URL already carries the query string
            query = None
        return items

    def course_names(self) -> dict[int, str]:
        if self._course_names is None:
            courses = self._get_paginated("/api/v1/courses", {"enrollment_state": "active"})
            self._course_names = {
                int(c["id"]): c.get("name") or f"Course {c['id']}" for c in courses if "id" in c
            }
        return self._course_names

    def list_assignments(self, course_ids: Iterable[int] | None = None) -> list[Assignment]:
        ids = sorted(course_ids) if course_ids else sorted(self.course_names())
        assignments: list[Assignment] = []
        for course_id in ids:
            payload = self._get_paginated(f"/api/v1/courses/{course_id}/assignments")
            assignments.extend(parse_assignment(item, course_id) for item in payload)
            logger.debug(f"Fetched {len(payload)} assignment(s) for course {course_id}")
        logger.info(f"Fetched {len(assignments)} assignment(s) from {len(ids)} course(s)")
        return assignments
