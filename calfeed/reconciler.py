from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from calfeed.models import CalendarEvent, ParsedEvent, serialize_datetime


COMPARED_FIELDS = ("title", "ends_at", "is_all_day", "location", "description")


@dataclass
class ReconcilePlan:
    to_create: list[ParsedEvent] = field(default_factory=list)
    to_update: list[tuple[CalendarEvent, dict[str, Any]]] = field(default_factory=list)
    to_delete_ids: list[int] = field(default_factory=list)
    unchanged: int = 0


def _comparable(name: str, value: Any) -> Any:
    if name == "ends_at":
        return serialize_datetime(value)
    if name == "is_all_day":
        return bool(value)
    return value or ""


def changed_fields(existing: CalendarEvent, incoming: ParsedEvent) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for name in COMPARED_FIELDS:
        new_value = getattr(incoming, name)
        if _comparable(name, getattr(existing, name)) != _comparable(name, new_value):
            changes[name] = new_value
    return changes


def reconcile(parsed: Iterable[ParsedEvent], existing: Iterable[CalendarEvent]) -> ReconcilePlan:
    """Diff feed occurrences against stored rows by (uid, start instant)."""
    existing_by_key: dict[tuple[str, str], CalendarEvent] = {}
    duplicate_ids: list[int] = []
    for event in existing:
        key = event.sync_key
        if key in existing_by_key:
            if event.id is not None:
                duplicate_ids.append(event.id)
            continue
        existing_by_key[key] = event

    plan = ReconcilePlan()
    seen: set[tuple[str, str]] = set()
    for incoming in parsed:
        key = incoming.sync_key
        if key in seen:
            continue
        seen.add(key)
        current = existing_by_key.get(key)
        if current is None:
            plan.to_create.append(incoming)
            continue
        changes = changed_fields(current, incoming)
        if changes:
            plan.to_update.append((current, changes))
        else:
            plan.unchanged += 1

    plan.to_delete_ids = [
        event.id
        for key, event in existing_by_key.items()
        if key not in seen and event.id is not None
    ] + duplicate_ids
    return plan
