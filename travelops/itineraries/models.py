"""Itinerary records, request and response objects, and their JSON form."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from travelops.finance.models import to_json as _encode_json


class ItineraryStatus(StrEnum):
    DRAFT = "draft"
    PUBLISHED = "published"
    REVISED = "revised"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


@dataclass(kw_only=True)
class Itinerary:
    organizer_id: str
    title: str
    meetup_at: datetime | None = None
    meetup_location_text: str = ""
    notes: str = ""
    status: ItineraryStatus = ItineraryStatus.DRAFT
    published_at: datetime | None = None
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class Checkpoint:
    itinerary_id: str
    checkpoint_text: str
    sort_order: int = 0
    eta: datetime | None = None
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class Member:
    itinerary_id: str
    user_id: str
    role: str
    id: str = ""
    joined_at: datetime | None = None


@dataclass(kw_only=True)
class FormDefinition:
    itinerary_id: str
    field_key: str
    field_label: str
    field_type: str
    required: bool = False
    options: Any = None
    validation: Any = None
    active: bool = True
    sort_order: int = 0
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class FormSubmission:
    itinerary_id: str
    member_user_id: str
    payload: Any = None
    id: str = ""
    submitted_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class ChangeEvent:
    itinerary_id: str
    actor_id: str
    change_type: str
    summary: str
    diff: Any = None
    visible_from: datetime | None = None
    id: str = ""
    created_at: datetime | None = None


# JSON key (lower-cased) -> (attribute name, whether null clears the value)
_CREATE_ITINERARY_FIELDS = {
    "title": ("title", False),
    "meetupat": ("meetup_at", True),
    "meetuplocationtext": ("meetup_location_text", False),
    "notes": ("notes", False),
}


@dataclass(kw_only=True)
class CreateItineraryRequest:
    title: str = ""
    meetup_at: str | None = None
    meetup_location_text: str = ""
    notes: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CreateItineraryRequest:
        """Build a request from a decoded JSON object.

        Keys match field names case-insensitively; unknown keys are ignored.
        Raises ValueError when the body is not an object or a field has the wrong type.
        """
        if not isinstance(data, Mapping):
            raise ValueError("request body must be a JSON object")
        values: dict[str, Any] = {}
        for key, value in data.items():
            spec = _CREATE_ITINERARY_FIELDS.get(str(key).lower())
            if spec is None:
                continue
            name, nullable = spec
            if value is None:
                if nullable:
                    values[name] = None
                continue
            if not isinstance(value, str):
                raise ValueError(f"field {key!r} must be a string")
            values[name] = value
        return cls(**values)


@dataclass(kw_only=True)
class UpdateItineraryRequest:
    title: str | None = None
    meetup_at: str | None = None
    meetup_location_text: str | None = None
    notes: str | None = None


@dataclass(kw_only=True)
class CreateCheckpointRequest:
    checkpoint_text: str = ""
    sort_order: int = 0
    eta: str | None = None


@dataclass(kw_only=True)
class UpdateCheckpointRequest:
    checkpoint_text: str | None = None
    sort_order: int | None = None
    eta: str | None = None


@dataclass(kw_only=True)
class AddMemberRequest:
    user_id: str = ""
    role: str = ""


@dataclass(kw_only=True)
class CreateFormDefinitionRequest:
    field_key: str = ""
    field_label: str = ""
    field_type: str = ""
    required: bool = False
    options: Any = None
    validation: Any = None
    sort_order: int = 0


@dataclass(kw_only=True)
class UpdateFormDefinitionRequest:
    field_label: str | None = None
    field_type: str | None = None
    required: bool | None = None
    options: Any = None
    validation: Any = None
    active: bool | None = None
    sort_order: int | None = None


@dataclass(kw_only=True)
class SubmitFormRequest:
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(kw_only=True)
class ItineraryResponse:
    id: str = ""
    organizer_id: str = ""
    title: str = ""
    meetup_at: datetime | None = None
    meetup_location_text: str = ""
    notes: str = ""
    status: ItineraryStatus = ItineraryStatus.DRAFT
    published_at: datetime | None = None
    checkpoints_count: int = 0
    members_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_json(self) -> str:
        """Serialise with camelCase keys, as sent to API clients."""
        return _encode_json(self)


@dataclass(kw_only=True)
class ItineraryDetailResponse(ItineraryResponse):
    checkpoints: list[Checkpoint] = field(default_factory=list)
    members: list[Member] = field(default_factory=list)
    form_definitions: list[FormDefinition] = field(default_factory=list)


@dataclass(kw_only=True)
class ChangeEventResponse:
    id: str
    actor_id: str
    change_type: str
    summary: str
    diff: Any
    created_at: datetime | None


@dataclass(kw_only=True)
class PaginatedResponse:
    items: list[Any]
    total: int
    page: int
    page_size: int
    total_pages: int