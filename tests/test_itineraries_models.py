import json
from datetime import datetime, timezone

import pytest

from travelops.itineraries.models import (
    Checkpoint,
    CreateItineraryRequest,
    ItineraryDetailResponse,
    ItineraryResponse,
    ItineraryStatus,
)


def test_create_request_accepts_canonical_payload():
    payload = json.loads(
        """{
        "title": "Test Trip",
        "meetupAt": "2026-07-14T18:30:00Z",
        "meetupLocationText": "Central Station",
        "notes": "Pack light"
    }"""
    )
    req = CreateItineraryRequest.from_dict(payload)
    assert req.title == "Test Trip"
    assert req.meetup_at == "2026-07-14T18:30:00Z"
    assert req.meetup_location_text == "Central Station"
    assert req.notes == "Pack light"


def test_response_canonical_field_names():
    resp = ItineraryResponse(
        id="test", title="Trip", meetup_location_text="Station", members_count=5
    )
    data = json.loads(resp.to_json())
    assert "meetupAt" in data
    assert "meetupLocationText" in data
    assert "membersCount" in data
    assert "meetupDate" not in data
    assert "location" not in data
    assert "memberCount" not in data
    assert data["membersCount"] == 5
    assert data["meetupLocationText"] == "Station"
    assert data["meetupAt"] is None


def test_create_request_rejects_old_field_names():
    req = CreateItineraryRequest.from_dict(
        {"title": "Trip", "meetupDate": "07/14/2026 6:30 PM", "location": "Station"}
    )
    assert req.meetup_at is None
    assert req.meetup_location_text == ""
    assert req.title == "Trip"


def test_create_request_keys_match_case_insensitively():
    req = CreateItineraryRequest.from_dict({"TITLE": "Trip", "MeetupAt": "2026-07-14T18:30:00Z"})
    assert req.title == "Trip"
    assert req.meetup_at == "2026-07-14T18:30:00Z"


def test_create_request_null_meetup_clears():
    req = CreateItineraryRequest.from_dict({"meetupAt": None, "title": None})
    assert req.meetup_at is None
    assert req.title == ""


def test_create_request_wrong_type_raises():
    with pytest.raises(ValueError):
        CreateItineraryRequest.from_dict({"title": 42})


def test_create_request_non_object_raises():
    with pytest.raises(ValueError):
        CreateItineraryRequest.from_dict(["title"])


def test_response_time_and_status_encoding():
    resp = ItineraryResponse(
        id="test",
        meetup_at=datetime(2026, 7, 14, 18, 30, tzinfo=timezone.utc),
        status=ItineraryStatus.PUBLISHED,
    )
    data = json.loads(resp.to_json())
    assert data["meetupAt"] == "2026-07-14T18:30:00Z"
    assert data["status"] == "published"


def test_detail_response_flattens_base_fields():
    detail = ItineraryDetailResponse(
        id="it-1",
        title="Trip",
        checkpoints=[Checkpoint(itinerary_id="it-1", checkpoint_text="Gate A", sort_order=1)],
    )
    data = json.loads(detail.to_json())
    assert data["id"] == "it-1"
    assert data["title"] == "Trip"
    assert data["checkpoints"][0]["checkpointText"] == "Gate A"
    assert data["checkpoints"][0]["itineraryId"] == "it-1"
    assert data["members"] == []
    assert data["formDefinitions"] == []


def test_status_values_round_trip():
    for status in ItineraryStatus:
        assert ItineraryStatus(str(status)) is status
    assert ItineraryStatus("in_progress") is ItineraryStatus.IN_PROGRESS