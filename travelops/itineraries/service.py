"""Itinerary business rules: access control, publishing, checkpoints, members, forms, changes."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from travelops.errors import BadRequestError, ForbiddenError, InternalError, ValidationError
from travelops.itineraries.models import (
    AddMemberRequest,
    ChangeEvent,
    ChangeEventResponse,
    Checkpoint,
    CreateCheckpointRequest,
    CreateFormDefinitionRequest,
    CreateItineraryRequest,
    FormDefinition,
    FormSubmission,
    Itinerary,
    ItineraryDetailResponse,
    ItineraryResponse,
    ItineraryStatus,
    PaginatedResponse,
    SubmitFormRequest,
    UpdateCheckpointRequest,
    UpdateFormDefinitionRequest,
    UpdateItineraryRequest,
)
from travelops.itineraries.policy import can_manage_itinerary, can_view_itinerary
from travelops.itineraries.repository import ListFilters, Repository

_ADMINISTRATOR = "administrator"
_DEFAULT_MEMBER_ROLE = "participant"
_LIVE_STATUSES = (ItineraryStatus.PUBLISHED, ItineraryStatus.REVISED)

_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)


def _parse_rfc3339(text: str) -> datetime:
    """Parse an RFC 3339 timestamp; raise ValueError if it is not one."""
    match = _RFC3339.fullmatch(text)
    if match is None:
        raise ValueError(f"not an RFC3339 timestamp: {text!r}")
    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    fraction, zone = match.group(7), match.group(8)
    micro = int((fraction + "000000")[:6]) if fraction else 0
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        hours, minutes = int(zone[1:3]), int(zone[4:6])
        if hours > 23 or minutes > 59:
            raise ValueError(f"invalid time zone offset: {zone}")
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    return datetime(year, month, day, hour, minute, second, micro, tzinfo=tz)


def _format_rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.replace(microsecond=0).isoformat()
    if value.utcoffset() == timedelta(0):
        text = text.removesuffix("+00:00") + "Z"
    return text


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _optional_time(text: str | None, field: str) -> datetime | None:
    if text is None:
        return None
    try:
        return _parse_rfc3339(text)
    except ValueError:
        raise BadRequestError(f"{field} must be a valid RFC3339 timestamp") from None


@contextmanager
def _internal(message: str) -> Iterator[None]:
    """Turn any failure in the block into an InternalError carrying ``message``."""
    try:
        yield
    except Exception as exc:
        raise InternalError(message, exc) from exc


class ItineraryService:
    """Itinerary operations over a :class:`Repository`."""

    def __init__(self, repo: Repository, logger: logging.Logger | None = None):
        self.repo = repo
        self.logger = logger or logging.getLogger(__name__)

    # Helpers

    def _managed(self, itinerary_id: str, user_id: str, roles: Iterable[str], what: str) -> Itinerary:
        itinerary = self.repo.get_by_id(itinerary_id)
        if not can_manage_itinerary(user_id, list(roles), itinerary):
            raise ForbiddenError(f"only the organizer or an administrator can {what}")
        return itinerary

    def _viewable(self, itinerary_id: str, user_id: str, roles: list[str]) -> Itinerary:
        itinerary = self.repo.get_by_id(itinerary_id)
        with _internal("membership check failed"):
            is_member = self.repo.is_member(itinerary_id, user_id)
        if not can_view_itinerary(user_id, roles, is_member, itinerary):
            raise ForbiddenError("you do not have access to this itinerary")
        return itinerary

    def _to_response(self, itinerary: Itinerary) -> ItineraryResponse:
        return ItineraryResponse(
            id=itinerary.id,
            organizer_id=itinerary.organizer_id,
            title=itinerary.title,
            meetup_at=itinerary.meetup_at,
            meetup_location_text=itinerary.meetup_location_text,
            notes=itinerary.notes,
            status=itinerary.status,
            published_at=itinerary.published_at,
            checkpoints_count=self.repo.count_checkpoints(itinerary.id),
            members_count=self.repo.count_members(itinerary.id),
            created_at=itinerary.created_at,
            updated_at=itinerary.updated_at,
        )

    def _record_change(
        self, itinerary_id: str, actor_id: str, change_type: str, summary: str, diff: Any
    ) -> None:
        try:
            self.repo.create_change_event(
                ChangeEvent(
                    itinerary_id=itinerary_id,
                    actor_id=actor_id,
                    change_type=change_type,
                    summary=summary,
                    diff=diff,
                    visible_from=datetime.now(timezone.utc),
                )
            )
        except Exception as exc:
            self.logger.warning("failed to record change event %s: %s", change_type, exc)

    def _record_material_change(
        self, itinerary: Itinerary, actor_id: str, change_type: str, summary: str, diff: Any
    ) -> None:
        if itinerary.status not in _LIVE_STATUSES:
            return
        self._record_change(itinerary.id, actor_id, change_type, summary, diff)

    def _record_update_changes(
        self,
        old: Itinerary,
        actor_id: str,
        request: UpdateItineraryRequest,
        meetup_at: datetime | None,
    ) -> None:
        if request.meetup_at is not None and meetup_at is not None:
            old_value = _format_rfc3339(old.meetup_at) if old.meetup_at is not None else "not set"
            new_value = _format_rfc3339(meetup_at)
            self._record_change(
                old.id,
                actor_id,
                "meetup_time_changed",
                f"Meetup time changed from {old_value} to {new_value}",
                {"old": old_value, "new": new_value},
            )
        if request.meetup_location_text is not None:
            self._record_change(
                old.id,
                actor_id,
                "meetup_location_changed",
                f"Meetup location changed from {_quote(old.meetup_location_text)}"
                f" to {_quote(request.meetup_location_text)}",
                {"old": old.meetup_location_text, "new": request.meetup_location_text},
            )
        if request.notes is not None:
            self._record_change(
                old.id,
                actor_id,
                "notes_changed",
                "Itinerary notes updated",
                {"old": old.notes, "new": request.notes},
            )

    # Itineraries

    def create_itinerary(self, user_id: str, request: CreateItineraryRequest) -> ItineraryResponse:
        if not request.title:
            raise BadRequestError("title is required")
        meetup_at = _optional_time(request.meetup_at, "meetupAt")

        itinerary = Itinerary(
            organizer_id=user_id,
            title=request.title,
            meetup_at=meetup_at,
            meetup_location_text=request.meetup_location_text,
            notes=request.notes,
            status=ItineraryStatus.DRAFT,
        )
        try:
            itinerary_id = self.repo.create_itinerary(itinerary)
        except Exception as exc:
            self.logger.error("failed to create itinerary: %s", exc)
            raise InternalError("failed to create itinerary", exc) from exc

        with _internal("failed to fetch created itinerary"):
            created = self.repo.get_by_id(itinerary_id)
        return self._to_response(created)

    def get_itinerary(
        self, itinerary_id: str, user_id: str, roles: Iterable[str]
    ) -> ItineraryDetailResponse:
        roles = list(roles)
        itinerary = self._viewable(itinerary_id, user_id, roles)

        with _internal("failed to fetch checkpoints"):
            checkpoints = self.repo.get_checkpoints(itinerary_id)
        with _internal("failed to fetch members"):
            members = self.repo.get_members(itinerary_id)
        with _internal("failed to fetch form definitions"):
            definitions = self.repo.get_form_definitions(itinerary_id)

        return ItineraryDetailResponse(
            id=itinerary.id,
            organizer_id=itinerary.organizer_id,
            title=itinerary.title,
            meetup_at=itinerary.meetup_at,
            meetup_location_text=itinerary.meetup_location_text,
            notes=itinerary.notes,
            status=itinerary.status,
            published_at=itinerary.published_at,
            checkpoints_count=len(checkpoints),
            members_count=len(members),
            created_at=itinerary.created_at,
            updated_at=itinerary.updated_at,
            checkpoints=checkpoints,
            members=members,
            form_definitions=definitions,
        )

    def list_itineraries(
        self,
        user_id: str,
        roles: Iterable[str],
        page: int,
        page_size: int,
        status: str,
    ) -> PaginatedResponse:
        """One page of itineraries: all for administrators, otherwise organised or joined ones."""
        filters = ListFilters(status=str(status) if status else "", page=page, page_size=page_size)
        if _ADMINISTRATOR not in list(roles):
            filters.member_id = user_id

        with _internal("failed to list itineraries"):
            items, total = self.repo.list(filters)

        responses = []
        for itinerary in items:
            try:
                responses.append(self._to_response(itinerary))
            except Exception as exc:
                self.logger.warning(
                    "failed to build itinerary response id=%s: %s", itinerary.id, exc
                )

        total_pages = -(-total // page_size) if page_size > 0 else 0
        return PaginatedResponse(
            items=responses,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
        )

    def update_itinerary(
        self,
        itinerary_id: str,
        user_id: str,
        roles: Iterable[str],
        request: UpdateItineraryRequest,
    ) -> None:
        """Apply changes; a live itinerary records what changed and becomes revised."""
        itinerary = self._managed(itinerary_id, user_id, roles, "update this itinerary")
        meetup_at = _optional_time(request.meetup_at, "meetupAt")

        with _internal("failed to update itinerary"):
            self.repo.update(
                itinerary_id,
                request.title,
                meetup_at,
                request.meetup_location_text,
                request.notes,
            )

        if itinerary.status in _LIVE_STATUSES:
            self._record_update_changes(itinerary, user_id, request, meetup_at)
            if itinerary.status is ItineraryStatus.PUBLISHED:
                try:
                    self.repo.update_status(itinerary_id, ItineraryStatus.REVISED)
                except Exception as exc:
                    self.logger.error("failed to set revised status: %s", exc)

    def publish_itinerary(self, itinerary_id: str, user_id: str, roles: Iterable[str]) -> None:
        itinerary = self._managed(itinerary_id, user_id, roles, "publish this itinerary")

        problems: dict[str, str] = {}
        if not itinerary.title:
            problems["title"] = "title is required"
        if itinerary.meetup_at is None:
            problems["meetupAt"] = "meetup time is required"
        if not itinerary.meetup_location_text:
            problems["meetupLocationText"] = "meetup location is required"
        if problems:
            raise ValidationError(
                "itinerary is missing required fields for publishing", problems
            )

        with _internal("failed to publish itinerary"):
            self.repo.update_status(itinerary_id, ItineraryStatus.PUBLISHED)

        self._record_change(
            itinerary_id,
            user_id,
            "status_change",
            "Itinerary published by organizer",
            {"status": str(ItineraryStatus.PUBLISHED)},
        )

    # Checkpoints

    def add_checkpoint(
        self,
        itinerary_id: str,
        user_id: str,
        roles: Iterable[str],
        request: CreateCheckpointRequest,
    ) -> str:
        """Add a checkpoint and return its id."""
        itinerary = self._managed(itinerary_id, user_id, roles, "manage checkpoints")
        if not request.checkpoint_text:
            raise BadRequestError("checkpointText is required")
        eta = _optional_time(request.eta, "eta")

        checkpoint = Checkpoint(
            itinerary_id=itinerary_id,
            sort_order=request.sort_order,
            checkpoint_text=request.checkpoint_text,
            eta=eta,
        )
        with _internal("failed to create checkpoint"):
            checkpoint_id = self.repo.create_checkpoint(checkpoint)

        self._record_material_change(
            itinerary,
            user_id,
            "checkpoint_added",
            f"Checkpoint added: {request.checkpoint_text}",
            {"checkpointText": request.checkpoint_text, "sortOrder": request.sort_order},
        )
        return checkpoint_id

    def update_checkpoint(
        self,
        itinerary_id: str,
        checkpoint_id: str,
        user_id: str,
        roles: Iterable[str],
        request: UpdateCheckpointRequest,
    ) -> None:
        itinerary = self._managed(itinerary_id, user_id, roles, "manage checkpoints")
        eta = _optional_time(request.eta, "eta")
        self.repo.update_checkpoint(
            checkpoint_id, request.checkpoint_text, request.sort_order, eta
        )
        self._record_material_change(
            itinerary, user_id, "checkpoint_updated", "Checkpoint updated",
            {"checkpointId": checkpoint_id},
        )

    def delete_checkpoint(
        self, itinerary_id: str, checkpoint_id: str, user_id: str, roles: Iterable[str]
    ) -> None:
        itinerary = self._managed(itinerary_id, user_id, roles, "manage checkpoints")
        self.repo.delete_checkpoint(checkpoint_id)
        self._record_material_change(
            itinerary, user_id, "checkpoint_deleted", "Checkpoint removed",
            {"checkpointId": checkpoint_id},
        )

    # Members

    def add_member(
        self,
        itinerary_id: str,
        user_id: str,
        roles: Iterable[str],
        request: AddMemberRequest,
    ) -> None:
        self._managed(itinerary_id, user_id, roles, "manage members")
        if not request.user_id:
            raise BadRequestError("userId is required")
        role = request.role or _DEFAULT_MEMBER_ROLE
        self.repo.add_member(itinerary_id, request.user_id, role)

    def remove_member(
        self, itinerary_id: str, user_id: str, target_user_id: str, roles: Iterable[str]
    ) -> None:
        self._managed(itinerary_id, user_id, roles, "manage members")
        self.repo.remove_member(itinerary_id, target_user_id)

    # Form definitions

    def create_form_definition(
        self,
        itinerary_id: str,
        user_id: str,
        roles: Iterable[str],
        request: CreateFormDefinitionRequest,
    ) -> str:
        """Add a member form field and return its id."""
        self._managed(itinerary_id, user_id, roles, "manage form definitions")
        if not request.field_key or not request.field_label or not request.field_type:
            raise BadRequestError("fieldKey, fieldLabel, and fieldType are required")
        return self.repo.create_form_definition(
            FormDefinition(
                itinerary_id=itinerary_id,
                field_key=request.field_key,
                field_label=request.field_label,
                field_type=request.field_type,
                required=request.required,
                options=request.options,
                validation=request.validation,
                sort_order=request.sort_order,
            )
        )

    def update_form_definition(
        self,
        itinerary_id: str,
        definition_id: str,
        user_id: str,
        roles: Iterable[str],
        request: UpdateFormDefinitionRequest,
    ) -> None:
        self._managed(itinerary_id, user_id, roles, "manage form definitions")
        self.repo.update_form_definition(
            definition_id,
            request.field_label,
            request.field_type,
            request.required,
            request.options,
            request.validation,
            request.active,
            request.sort_order,
        )

    def get_form_definitions(
        self, itinerary_id: str, user_id: str, roles: Iterable[str]
    ) -> list[FormDefinition]:
        self._viewable(itinerary_id, user_id, list(roles))
        with _internal("failed to fetch form definitions"):
            return self.repo.get_form_definitions(itinerary_id)

    # Form submissions

    def submit_form(self, itinerary_id: str, user_id: str, request: SubmitFormRequest) -> None:
        """Store a member's form answers after checking every active required field."""
        self.repo.get_by_id(itinerary_id)
        with _internal("failed to fetch form definitions"):
            definitions = self.repo.get_form_definitions(itinerary_id)

        payload = request.payload or {}
        problems = {
            d.field_key: f"{d.field_label} is required"
            for d in definitions
            if d.active and d.required and payload.get(d.field_key) in (None, "")
        }
        if problems:
            raise ValidationError("form validation failed", problems)

        try:
            json.dumps(payload)
        except (TypeError, ValueError):
            raise BadRequestError("invalid payload") from None

        self.repo.submit_form(
            FormSubmission(itinerary_id=itinerary_id, member_user_id=user_id, payload=payload)
        )

    def get_form_submissions(
        self, itinerary_id: str, user_id: str, roles: Iterable[str]
    ) -> list[FormSubmission]:
        self._managed(itinerary_id, user_id, roles, "view all form submissions")
        with _internal("failed to fetch form submissions"):
            return self.repo.get_form_submissions(itinerary_id)

    # Change events

    def get_change_events(
        self, itinerary_id: str, user_id: str, roles: Iterable[str]
    ) -> list[ChangeEventResponse]:
        """Managers see every change; members only those already visible."""
        roles = list(roles)
        itinerary = self._viewable(itinerary_id, user_id, roles)
        with _internal("failed to fetch change events"):
            if can_manage_itinerary(user_id, roles, itinerary):
                events = self.repo.get_change_events(itinerary_id, None)
            else:
                events = self.repo.get_change_events_for_user(itinerary_id, user_id)
        return [
            ChangeEventResponse(
                id=e.id,
                actor_id=e.actor_id,
                change_type=e.change_type,
                summary=e.summary,
                diff=e.diff,
                created_at=e.created_at,
            )
            for e in events
        ]