"""SQLite persistence for itineraries, checkpoints, members, forms and change events."""

from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from travelops.errors import ConflictError, NotFoundError
from travelops.itineraries.models import (
    ChangeEvent,
    Checkpoint,
    FormDefinition,
    FormSubmission,
    Itinerary,
    ItineraryStatus,
    Member,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS itineraries (
    id TEXT PRIMARY KEY,
    organizer_id TEXT NOT NULL,
    title TEXT NOT NULL,
    meetup_at TEXT,
    meetup_location_text TEXT NOT NULL DEFAULT '',
    notes TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'draft',
    published_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS itinerary_checkpoints (
    id TEXT PRIMARY KEY,
    itinerary_id TEXT NOT NULL REFERENCES itineraries(id),
    sort_order INTEGER NOT NULL DEFAULT 0,
    checkpoint_text TEXT NOT NULL,
    eta TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS itinerary_members (
    id TEXT PRIMARY KEY,
    itinerary_id TEXT NOT NULL REFERENCES itineraries(id),
    user_id TEXT NOT NULL,
    role TEXT NOT NULL,
    joined_at TEXT NOT NULL,
    UNIQUE (itinerary_id, user_id)
);
CREATE TABLE IF NOT EXISTS itinerary_member_form_definitions (
    id TEXT PRIMARY KEY,
    itinerary_id TEXT NOT NULL REFERENCES itineraries(id),
    field_key TEXT NOT NULL,
    field_label TEXT NOT NULL,
    field_type TEXT NOT NULL,
    required INTEGER NOT NULL DEFAULT 0,
    options_json TEXT,
    validation_json TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS itinerary_member_form_submissions (
    id TEXT PRIMARY KEY,
    itinerary_id TEXT NOT NULL REFERENCES itineraries(id),
    member_user_id TEXT NOT NULL,
    payload_json TEXT,
    submitted_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (itinerary_id, member_user_id)
);
CREATE TABLE IF NOT EXISTS itinerary_change_events (
    id TEXT PRIMARY KEY,
    itinerary_id TEXT NOT NULL REFERENCES itineraries(id),
    actor_id TEXT NOT NULL,
    change_type TEXT NOT NULL,
    summary TEXT NOT NULL,
    diff_json TEXT,
    visible_from TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

_MAX_PAGE_SIZE = 100
_DEFAULT_PAGE_SIZE = 20

_ITINERARY_COLUMNS = (
    "i.id, i.organizer_id, i.title, i.meetup_at, i.meetup_location_text, i.notes,"
    " i.status, i.published_at, i.created_at, i.updated_at"
)
_CHECKPOINT_COLUMNS = (
    "id, itinerary_id, sort_order, checkpoint_text, eta, created_at, updated_at"
)
_DEFINITION_COLUMNS = (
    "id, itinerary_id, field_key, field_label, field_type, required, options_json,"
    " validation_json, active, sort_order, created_at, updated_at"
)
_SUBMISSION_COLUMNS = "id, itinerary_id, member_user_id, payload_json, submitted_at, updated_at"
_EVENT_COLUMNS = (
    "id, itinerary_id, actor_id, change_type, summary, diff_json, visible_from, created_at"
)


def create_schema(conn: sqlite3.Connection) -> None:
    """Create the itinerary tables if they do not exist."""
    conn.executescript(_SCHEMA)


def _ts(value: datetime | None) -> str | None:
    """Store a time as a fixed-width UTC string so that text order is time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _now() -> str:
    return _ts(datetime.now(timezone.utc))


def _parse(text: str | None) -> datetime | None:
    return datetime.fromisoformat(text) if text is not None else None


def _new_id() -> str:
    return str(uuid.uuid4())


def _dump(value: Any) -> str | None:
    """Encode a JSON value for storage; bytes are taken as already-encoded JSON."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode()
    return json.dumps(value)


def _load(text: str | None) -> Any:
    return json.loads(text) if text is not None else None


def _itinerary(row: sqlite3.Row) -> Itinerary:
    return Itinerary(
        id=row["id"],
        organizer_id=row["organizer_id"],
        title=row["title"],
        meetup_at=_parse(row["meetup_at"]),
        meetup_location_text=row["meetup_location_text"],
        notes=row["notes"],
        status=ItineraryStatus(row["status"]),
        published_at=_parse(row["published_at"]),
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
    )


def _checkpoint(row: sqlite3.Row) -> Checkpoint:
    return Checkpoint(
        id=row["id"],
        itinerary_id=row["itinerary_id"],
        sort_order=row["sort_order"],
        checkpoint_text=row["checkpoint_text"],
        eta=_parse(row["eta"]),
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
    )


def _definition(row: sqlite3.Row) -> FormDefinition:
    return FormDefinition(
        id=row["id"],
        itinerary_id=row["itinerary_id"],
        field_key=row["field_key"],
        field_label=row["field_label"],
        field_type=row["field_type"],
        required=bool(row["required"]),
        options=_load(row["options_json"]),
        validation=_load(row["validation_json"]),
        active=bool(row["active"]),
        sort_order=row["sort_order"],
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
    )


def _submission(row: sqlite3.Row) -> FormSubmission:
    return FormSubmission(
        id=row["id"],
        itinerary_id=row["itinerary_id"],
        member_user_id=row["member_user_id"],
        payload=_load(row["payload_json"]),
        submitted_at=_parse(row["submitted_at"]),
        updated_at=_parse(row["updated_at"]),
    )


def _event(row: sqlite3.Row) -> ChangeEvent:
    return ChangeEvent(
        id=row["id"],
        itinerary_id=row["itinerary_id"],
        actor_id=row["actor_id"],
        change_type=row["change_type"],
        summary=row["summary"],
        diff=_load(row["diff_json"]),
        visible_from=_parse(row["visible_from"]),
        created_at=_parse(row["created_at"]),
    )


def _optional_bool(value: bool | None) -> int | None:
    return None if value is None else int(value)


@dataclass(kw_only=True)
class ListFilters:
    """Criteria for listing itineraries; empty strings mean no restriction."""

    organizer_id: str = ""
    member_id: str = ""
    status: str = ""
    page: int = 1
    page_size: int = _DEFAULT_PAGE_SIZE


class Repository:
    """Itinerary data access over one SQLite connection in autocommit mode."""

    def __init__(self, conn: sqlite3.Connection):
        conn.isolation_level = None
        conn.row_factory = sqlite3.Row
        self.conn = conn

    # Itineraries

    def create_itinerary(self, itinerary: Itinerary) -> str:
        itinerary_id = _new_id()
        now = _now()
        self.conn.execute(
            "INSERT INTO itineraries (id, organizer_id, title, meetup_at,"
            " meetup_location_text, notes, status, created_at, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (itinerary_id, itinerary.organizer_id, itinerary.title, _ts(itinerary.meetup_at),
             itinerary.meetup_location_text, itinerary.notes, str(itinerary.status), now, now),
        )
        return itinerary_id

    def get_by_id(self, itinerary_id: str) -> Itinerary:
        row = self.conn.execute(
            f"SELECT {_ITINERARY_COLUMNS} FROM itineraries i WHERE i.id = ?",
            (itinerary_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError("itinerary")
        return _itinerary(row)

    def list(self, filters: ListFilters) -> tuple[list[Itinerary], int]:
        """Return one page of matching itineraries, newest first, and the total count."""
        page = max(filters.page, 1)
        page_size = filters.page_size
        if page_size < 1 or page_size > _MAX_PAGE_SIZE:
            page_size = _DEFAULT_PAGE_SIZE
        offset = (page - 1) * page_size

        clauses: list[str] = []
        params: list[Any] = []
        if filters.organizer_id:
            clauses.append("i.organizer_id = ?")
            params.append(filters.organizer_id)
        if filters.member_id:
            clauses.append(
                "(i.organizer_id = ? OR EXISTS (SELECT 1 FROM itinerary_members im"
                " WHERE im.itinerary_id = i.id AND im.user_id = ?))"
            )
            params.extend([filters.member_id, filters.member_id])
        if filters.status:
            clauses.append("i.status = ?")
            params.append(str(filters.status))
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""

        (total,) = self.conn.execute(
            f"SELECT COUNT(*) FROM itineraries i{where}", params
        ).fetchone()
        rows = self.conn.execute(
            f"SELECT {_ITINERARY_COLUMNS} FROM itineraries i{where}"
            " ORDER BY i.created_at DESC, i.rowid DESC LIMIT ? OFFSET ?",
            [*params, page_size, offset],
        ).fetchall()
        return [_itinerary(row) for row in rows], total

    def update(
        self,
        itinerary_id: str,
        title: str | None,
        meetup_at: datetime | None,
        meetup_location_text: str | None,
        notes: str | None,
    ) -> None:
        """Change the given fields; None leaves a field as it is."""
        cur = self.conn.execute(
            "UPDATE itineraries SET title = COALESCE(?, title),"
            " meetup_at = COALESCE(?, meetup_at),"
            " meetup_location_text = COALESCE(?, meetup_location_text),"
            " notes = COALESCE(?, notes), updated_at = ? WHERE id = ?",
            (title, _ts(meetup_at), meetup_location_text, notes, _now(), itinerary_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("itinerary")

    def update_status(self, itinerary_id: str, status: ItineraryStatus | str) -> None:
        """Set the status; publishing also stamps the publication time."""
        now = _now()
        if ItineraryStatus(status) is ItineraryStatus.PUBLISHED:
            self.conn.execute(
                "UPDATE itineraries SET status = ?, published_at = ?, updated_at = ?"
                " WHERE id = ?",
                (str(status), now, now, itinerary_id),
            )
        else:
            self.conn.execute(
                "UPDATE itineraries SET status = ?, updated_at = ? WHERE id = ?",
                (str(status), now, itinerary_id),
            )

    # Checkpoints

    def create_checkpoint(self, checkpoint: Checkpoint) -> str:
        """Insert a checkpoint, store its new id on it and return the id."""
        checkpoint_id = _new_id()
        now = _now()
        self.conn.execute(
            "INSERT INTO itinerary_checkpoints (id, itinerary_id, sort_order,"
            " checkpoint_text, eta, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (checkpoint_id, checkpoint.itinerary_id, checkpoint.sort_order,
             checkpoint.checkpoint_text, _ts(checkpoint.eta), now, now),
        )
        checkpoint.id = checkpoint_id
        return checkpoint_id

    def get_checkpoints(self, itinerary_id: str) -> list[Checkpoint]:
        rows = self.conn.execute(
            f"SELECT {_CHECKPOINT_COLUMNS} FROM itinerary_checkpoints"
            " WHERE itinerary_id = ? ORDER BY sort_order, rowid",
            (itinerary_id,),
        ).fetchall()
        return [_checkpoint(row) for row in rows]

    def update_checkpoint(
        self,
        checkpoint_id: str,
        text: str | None,
        sort_order: int | None,
        eta: datetime | None,
    ) -> None:
        cur = self.conn.execute(
            "UPDATE itinerary_checkpoints SET checkpoint_text = COALESCE(?, checkpoint_text),"
            " sort_order = COALESCE(?, sort_order), eta = COALESCE(?, eta),"
            " updated_at = ? WHERE id = ?",
            (text, sort_order, _ts(eta), _now(), checkpoint_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("checkpoint")

    def delete_checkpoint(self, checkpoint_id: str) -> None:
        cur = self.conn.execute(
            "DELETE FROM itinerary_checkpoints WHERE id = ?", (checkpoint_id,)
        )
        if cur.rowcount == 0:
            raise NotFoundError("checkpoint")

    def count_checkpoints(self, itinerary_id: str) -> int:
        (count,) = self.conn.execute(
            "SELECT COUNT(*) FROM itinerary_checkpoints WHERE itinerary_id = ?",
            (itinerary_id,),
        ).fetchone()
        return count

    # Members

    def add_member(self, itinerary_id: str, user_id: str, role: str) -> None:
        try:
            self.conn.execute(
                "INSERT INTO itinerary_members (id, itinerary_id, user_id, role, joined_at)"
                " VALUES (?, ?, ?, ?, ?)",
                (_new_id(), itinerary_id, user_id, role, _now()),
            )
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc):
                raise ConflictError("user is already a member of this itinerary") from exc
            raise

    def remove_member(self, itinerary_id: str, user_id: str) -> None:
        cur = self.conn.execute(
            "DELETE FROM itinerary_members WHERE itinerary_id = ? AND user_id = ?",
            (itinerary_id, user_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("member")

    def get_members(self, itinerary_id: str) -> list[Member]:
        rows = self.conn.execute(
            "SELECT id, itinerary_id, user_id, role, joined_at FROM itinerary_members"
            " WHERE itinerary_id = ? ORDER BY joined_at, rowid",
            (itinerary_id,),
        ).fetchall()
        return [
            Member(
                id=row["id"],
                itinerary_id=row["itinerary_id"],
                user_id=row["user_id"],
                role=row["role"],
                joined_at=_parse(row["joined_at"]),
            )
            for row in rows
        ]

    def is_member(self, itinerary_id: str, user_id: str) -> bool:
        (exists,) = self.conn.execute(
            "SELECT EXISTS(SELECT 1 FROM itinerary_members"
            " WHERE itinerary_id = ? AND user_id = ?)",
            (itinerary_id, user_id),
        ).fetchone()
        return bool(exists)

    def count_members(self, itinerary_id: str) -> int:
        (count,) = self.conn.execute(
            "SELECT COUNT(*) FROM itinerary_members WHERE itinerary_id = ?",
            (itinerary_id,),
        ).fetchone()
        return count

    # Form definitions

    def create_form_definition(self, definition: FormDefinition) -> str:
        """Insert an active form field definition, store its id on it and return the id."""
        definition_id = _new_id()
        now = _now()
        self.conn.execute(
            "INSERT INTO itinerary_member_form_definitions (id, itinerary_id, field_key,"
            " field_label, field_type, required, options_json, validation_json, active,"
            " sort_order, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)",
            (definition_id, definition.itinerary_id, definition.field_key,
             definition.field_label, definition.field_type, int(definition.required),
             _dump(definition.options), _dump(definition.validation),
             definition.sort_order, now, now),
        )
        definition.id = definition_id
        definition.active = True
        return definition_id

    def get_form_definitions(self, itinerary_id: str) -> list[FormDefinition]:
        rows = self.conn.execute(
            f"SELECT {_DEFINITION_COLUMNS} FROM itinerary_member_form_definitions"
            " WHERE itinerary_id = ? ORDER BY sort_order, rowid",
            (itinerary_id,),
        ).fetchall()
        return [_definition(row) for row in rows]

    def update_form_definition(
        self,
        definition_id: str,
        label: str | None,
        field_type: str | None,
        required: bool | None,
        options: Any,
        validation: Any,
        active: bool | None,
        sort_order: int | None,
    ) -> None:
        """Change the given fields; None leaves a field as it is."""
        cur = self.conn.execute(
            "UPDATE itinerary_member_form_definitions SET"
            " field_label = COALESCE(?, field_label),"
            " field_type = COALESCE(?, field_type),"
            " required = COALESCE(?, required),"
            " options_json = COALESCE(?, options_json),"
            " validation_json = COALESCE(?, validation_json),"
            " active = COALESCE(?, active),"
            " sort_order = COALESCE(?, sort_order),"
            " updated_at = ? WHERE id = ?",
            (label, field_type, _optional_bool(required), _dump(options), _dump(validation),
             _optional_bool(active), sort_order, _now(), definition_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("form definition")

    # Form submissions

    def submit_form(self, submission: FormSubmission) -> None:
        """Store a member's submission, replacing the payload of an earlier one."""
        now = _now()
        self.conn.execute(
            "INSERT INTO itinerary_member_form_submissions (id, itinerary_id,"
            " member_user_id, payload_json, submitted_at, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?)"
            " ON CONFLICT (itinerary_id, member_user_id) DO UPDATE SET"
            " payload_json = excluded.payload_json, updated_at = excluded.updated_at",
            (_new_id(), submission.itinerary_id, submission.member_user_id,
             _dump(submission.payload), now, now),
        )

    def get_form_submissions(self, itinerary_id: str) -> list[FormSubmission]:
        rows = self.conn.execute(
            f"SELECT {_SUBMISSION_COLUMNS} FROM itinerary_member_form_submissions"
            " WHERE itinerary_id = ? ORDER BY submitted_at, rowid",
            (itinerary_id,),
        ).fetchall()
        return [_submission(row) for row in rows]

    def get_form_submission_by_user(self, itinerary_id: str, user_id: str) -> FormSubmission:
        row = self.conn.execute(
            f"SELECT {_SUBMISSION_COLUMNS} FROM itinerary_member_form_submissions"
            " WHERE itinerary_id = ? AND member_user_id = ?",
            (itinerary_id, user_id),
        ).fetchone()
        if row is None:
            raise NotFoundError("form submission")
        return _submission(row)

    # Change events

    def create_change_event(self, event: ChangeEvent) -> str:
        """Record a change; it becomes visible to members from ``visible_from`` (default now)."""
        event_id = _new_id()
        now = _now()
        visible_from = _ts(event.visible_from) if event.visible_from is not None else now
        self.conn.execute(
            "INSERT INTO itinerary_change_events (id, itinerary_id, actor_id, change_type,"
            " summary, diff_json, visible_from, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (event_id, event.itinerary_id, event.actor_id, event.change_type, event.summary,
             _dump(event.diff), visible_from, now),
        )
        return event_id

    def get_change_events(
        self, itinerary_id: str, after: datetime | None
    ) -> list[ChangeEvent]:
        """All changes in creation order, optionally only those created after ``after``."""
        if after is not None:
            rows = self.conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM itinerary_change_events"
                " WHERE itinerary_id = ? AND created_at > ? ORDER BY created_at, rowid",
                (itinerary_id, _ts(after)),
            ).fetchall()
        else:
            rows = self.conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM itinerary_change_events"
                " WHERE itinerary_id = ? ORDER BY created_at, rowid",
                (itinerary_id,),
            ).fetchall()
        return [_event(row) for row in rows]

    def get_change_events_for_user(self, itinerary_id: str, user_id: str) -> list[ChangeEvent]:
        """Changes already visible to members, in creation order."""
        rows = self.conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM itinerary_change_events"
            " WHERE itinerary_id = ? AND visible_from <= ? ORDER BY created_at, rowid",
            (itinerary_id, _now()),
        ).fetchall()
        return [_event(row) for row in rows]