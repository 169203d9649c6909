from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from calfeed.models import (
    CalendarEvent,
    CalendarSettings,
    UserRecord,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)


CALENDAR_PATH = "$.calendar"
LOCK_PATH = "$.calendar.syncLockedAt"
EVENT_COLUMNS = (
    "id, user_id, source, external_uid, title, starts_at, ends_at, is_all_day, "
    "location, description, created_at, updated_at"
)
_UPDATABLE_EVENT_FIELDS = {"title", "starts_at", "ends_at", "is_all_day", "location", "description", "external_uid"}


def _now_text() -> str:
    return serialize_datetime(utc_now()) or ""


def _event_from_row(row: sqlite3.Row) -> CalendarEvent:
    return CalendarEvent(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        source=str(row["source"]),
        external_uid=row["external_uid"],
        title=str(row["title"] or ""),
        starts_at=parse_iso_datetime(row["starts_at"]),
        ends_at=parse_iso_datetime(row["ends_at"]),
        is_all_day=bool(row["is_all_day"]),
        location=str(row["location"] or ""),
        description=str(row["description"] or ""),
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


def _calendar_from_settings(settings_json: str | None) -> CalendarSettings | None:
    try:
        settings = json.loads(settings_json or "{}")
    except ValueError:
        return None
    calendar = settings.get("calendar") if isinstance(settings, dict) else None
    if not isinstance(calendar, dict):
        return None
    return CalendarSettings.from_dict(calendar)


class StateStore:
    """SQLite storage for users, their calendar settings and synced events.

    Calendar settings live under the ``calendar`` key of each user's
    ``settings_json`` document; every write here touches that key only.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL DEFAULT '',
            settings_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS calendar_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            source TEXT NOT NULL,
            external_uid TEXT,
            title TEXT NOT NULL DEFAULT '',
            starts_at TEXT NOT NULL,
            ends_at TEXT,
            is_all_day INTEGER NOT NULL DEFAULT 0,
            location TEXT NOT NULL DEFAULT '',
            description TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_calendar_events_user_start
            ON calendar_events(user_id, source, starts_at);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            added INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            deleted INTEGER NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # users and calendar settings

    def create_user(
        self,
        email: str = "",
        calendar: CalendarSettings | dict[str, Any] | None = None,
        preferences: dict[str, Any] | None = None,
    ) -> int:
        settings: dict[str, Any] = dict(preferences or {})
        if isinstance(calendar, CalendarSettings):
            settings["calendar"] = calendar.to_dict()
        elif calendar is not None:
            settings["calendar"] = dict(calendar)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO users(email, settings_json, created_at) VALUES (?, ?, ?)",
                    (str(email), json.dumps(settings, ensure_ascii=False), _now_text()),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def find_user(self, user_id: int) -> UserRecord | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, email, settings_json FROM users WHERE id = ?",
                    (int(user_id),),
                ).fetchone()
        if row is None:
            return None
        return UserRecord(
            id=int(row["id"]),
            email=str(row["email"] or ""),
            calendar=_calendar_from_settings(row["settings_json"]),
        )

    def find_user_settings(self, user_id: int) -> CalendarSettings | None:
        user = self.find_user(user_id)
        return user.calendar if user is not None else None

    def get_preferences(self, user_id: int) -> dict[str, Any]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT settings_json FROM users WHERE id = ?",
                    (int(user_id),),
                ).fetchone()
        if row is None:
            return {}
        return json.loads(row["settings_json"] or "{}")

    def update_user_settings(self, user_id: int, fields: dict[str, Any]) -> bool:
        """Merge ``fields`` (camelCase) into the user's calendar settings.

        ``None`` removes a field. Other preference keys are left untouched.
        """
        patch = {
            key: serialize_datetime(value) if isinstance(value, datetime) else value
            for key, value in fields.items()
        }
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"""
                    UPDATE users
                    SET settings_json = json_set(
                        COALESCE(settings_json, '{{}}'),
                        '{CALENDAR_PATH}',
                        json_patch(COALESCE(json_extract(settings_json, '{CALENDAR_PATH}'), '{{}}'), ?)
                    )
                    WHERE id = ?
                    """,
                    (json.dumps(patch, ensure_ascii=False), int(user_id)),
                )
                conn.commit()
                return cursor.rowcount > 0

    def find_users_with_calendar_settings(self) -> list[UserRecord]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT id, email, settings_json
                    FROM users
                    WHERE json_type(settings_json, '{CALENDAR_PATH}') = 'object'
                    ORDER BY id
                    """
                ).fetchall()
        users: list[UserRecord] = []
        for row in rows:
            calendar = _calendar_from_settings(row["settings_json"])
            if calendar is None:
                continue
            users.append(UserRecord(id=int(row["id"]), email=str(row["email"] or ""), calendar=calendar))
        return users

    # sync lock

    def try_acquire_sync_lock(self, user_id: int, now: datetime, stale_before: datetime) -> bool:
        """Claim the lock in one conditional UPDATE: free or stale only."""
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"""
                    UPDATE users
                    SET settings_json = json_set(settings_json, '{LOCK_PATH}', ?)
                    WHERE id = ?
                      AND json_type(settings_json, '{CALENDAR_PATH}') = 'object'
                      AND (
                        json_extract(settings_json, '{LOCK_PATH}') IS NULL
                        OR json_extract(settings_json, '{LOCK_PATH}') < ?
                      )
                    """,
                    (serialize_datetime(now), int(user_id), serialize_datetime(stale_before)),
                )
                conn.commit()
                return cursor.rowcount > 0

    def release_sync_lock(self, user_id: int) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    UPDATE users
                    SET settings_json = json_remove(settings_json, '{LOCK_PATH}')
                    WHERE id = ?
                      AND json_type(settings_json, '{CALENDAR_PATH}') = 'object'
                    """,
                    (int(user_id),),
                )
                conn.commit()

    # calendar events

    def find_calendar_events(
        self, user_id: int, source: str, start: datetime, end: datetime
    ) -> list[CalendarEvent]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {EVENT_COLUMNS}
                    FROM calendar_events
                    WHERE user_id = ? AND source = ? AND starts_at BETWEEN ? AND ?
                    ORDER BY starts_at, id
                    """,
                    (int(user_id), source, serialize_datetime(start), serialize_datetime(end)),
                ).fetchall()
        return [_event_from_row(row) for row in rows]

    def list_calendar_events(
        self, user_id: int, start: datetime | None = None, end: datetime | None = None
    ) -> list[CalendarEvent]:
        clauses = ["user_id = ?"]
        params: list[Any] = [int(user_id)]
        if start is not None:
            clauses.append("starts_at >= ?")
            params.append(serialize_datetime(start))
        if end is not None:
            clauses.append("starts_at <= ?")
            params.append(serialize_datetime(end))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT {EVENT_COLUMNS} FROM calendar_events WHERE {' AND '.join(clauses)} "
                    "ORDER BY starts_at, id",
                    params,
                ).fetchall()
        return [_event_from_row(row) for row in rows]

    def create_calendar_event(self, event: CalendarEvent) -> CalendarEvent:
        now = _now_text()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO calendar_events(
                        user_id, source, external_uid, title, starts_at, ends_at,
                        is_all_day, location, description, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(event.user_id),
                        event.source,
                        event.external_uid,
                        event.title or "",
                        serialize_datetime(event.starts_at),
                        serialize_datetime(event.ends_at),
                        1 if event.is_all_day else 0,
                        event.location or "",
                        event.description or "",
                        now,
                        now,
                    ),
                )
                conn.commit()
                event_id = int(cursor.lastrowid)
        stamp = parse_iso_datetime(now)
        return replace(event, id=event_id, created_at=stamp, updated_at=stamp)

    def update_calendar_event(self, existing: CalendarEvent, fields: dict[str, Any]) -> CalendarEvent:
        if existing.id is None:
            raise ValueError("Cannot update an event that has not been stored.")
        unknown = set(fields) - _UPDATABLE_EVENT_FIELDS
        if unknown:
            raise ValueError(f"Unsupported event fields: {', '.join(sorted(unknown))}")
        if not fields:
            return existing

        assignments: list[str] = []
        params: list[Any] = []
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            if isinstance(value, datetime):
                params.append(serialize_datetime(value))
            elif name == "is_all_day":
                params.append(1 if value else 0)
            elif name == "external_uid":
                params.append(value)
            else:
                params.append(value if value is not None else "")
        now = _now_text()
        assignments.append("updated_at = ?")
        params.extend([now, int(existing.id)])
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE calendar_events SET {', '.join(assignments)} WHERE id = ?",
                    params,
                )
                conn.commit()
        return replace(existing, updated_at=parse_iso_datetime(now), **fields)

    def delete_calendar_events_by_ids(self, ids: Iterable[int]) -> int:
        id_list = [int(item) for item in ids]
        if not id_list:
            return 0
        placeholders = ", ".join("?" for _ in id_list)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"DELETE FROM calendar_events WHERE id IN ({placeholders})",
                    id_list,
                )
                conn.commit()
                return int(cursor.rowcount)

    def delete_calendar_events_outside_range(
        self, user_id: int, source: str, start: datetime, end: datetime
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    DELETE FROM calendar_events
                    WHERE user_id = ? AND source = ? AND (starts_at < ? OR starts_at > ?)
                    """,
                    (int(user_id), source, serialize_datetime(start), serialize_datetime(end)),
                )
                conn.commit()
                return int(cursor.rowcount)

    def delete_all_events_outside_range(self, source: str, start: datetime, end: datetime) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM calendar_events WHERE source = ? AND (starts_at < ? OR starts_at > ?)",
                    (source, serialize_datetime(start), serialize_datetime(end)),
                )
                conn.commit()
                return int(cursor.rowcount)

    # sync run history

    def record_sync_run(
        self,
        *,
        user_id: int,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        added: int,
        updated: int,
        deleted: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(user_id, run_at, trigger, status, message, duration_ms, added, updated, deleted)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (int(user_id), _now_text(), trigger, status, message, int(duration_ms), added, updated, deleted),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20, user_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if user_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, user_id, run_at, trigger, status, message, duration_ms, added, updated, deleted
                        FROM sync_runs
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, user_id, run_at, trigger, status, message, duration_ms, added, updated, deleted
                        FROM sync_runs
                        WHERE user_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(user_id), max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]
