"""
Tests for the description metadata block and the change-detection hash.
"""

from dataclasses import replace
from datetime import timedelta
from datetime import timezone

from assignment_sync.metadata import append_metadata
from assignment_sync.metadata import compute_event_hash
from assignment_sync.metadata import encode_metadata
from assignment_sync.metadata import extract_metadata
from assignment_sync.metadata import matches_metadata
from assignment_sync.metadata import strip_metadata
from assignment_sync.sync.events import build_event
from tests.conftest import make_assignment

META = {"canvas_assignment_id": "12", "canvas_course_id": "3", "source": "app_canvas"}


def test_encode_single_line():
    assert encode_metadata(META) == (
        "Metadata: canvas_assignment_id:12;canvas_course_id:3;source:app_canvas"
    )
    assert encode_metadata({}) == ""


def test_append_then_extract():
    text = append_metadata("Read chapter 4", META)
    assert text.startswith("Read chapter 4\n\nMetadata: ")
    assert extract_metadata(text) == META
    assert strip_metadata(text) == "Read chapter 4"


def test_append_replaces_existing_block():
    once = append_metadata("Body", {"a": "1"})
    twice = append_metadata(once, {"a": "2"})
    assert twice.count("Metadata:") == 1
    assert extract_metadata(twice) == {"a": "2"}


def test_append_to_empty_description():
    assert append_metadata(None, {"a": "1"}) == "Metadata: a:1"


def test_extract_without_block():
    assert extract_metadata("just text") == {}
    assert extract_metadata(None) == {}


def test_matches_metadata_requires_every_pair():
    event = build_event(make_assignment(12, course_id=3))
    assert matches_metadata(event, {"canvas_assignment_id": "12"})
    assert matches_metadata(event, {})
    assert not matches_metadata(event, {"canvas_assignment_id": "13"})


class TestEventHash:
    def test_stable_across_ids_and_metadata(self):
        event = build_event(make_assignment(1))
        same = replace(
            event,
            id="server-uid",
            metadata={},
            description=append_metadata(event.description, event.metadata),
        )
        assert compute_event_hash(event) == compute_event_hash(same)

    def test_same_instant_in_other_zone(self):
        event = build_event(make_assignment(1))
        tz = timezone(timedelta(hours=2))
        shifted = replace(
            event, start_time=event.start_time.astimezone(tz), end_time=event.end_time.astimezone(tz)
        )
        assert compute_event_hash(event) == compute_event_hash(shifted)

    def test_title_change_changes_hash(self):
        event = build_event(make_assignment(1))
        assert compute_event_hash(event) != compute_event_hash(replace(event, title="Other"))
