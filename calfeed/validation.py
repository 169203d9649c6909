from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

from calfeed.models import SYNC_PRESETS, normalize_preset


# Incoming key -> stored camelCase key.
EDITABLE_FIELDS = {
    "enabled": "enabled",
    "source_url": "sourceUrl",
    "sourceUrl": "sourceUrl",
    "sync_interval_preset": "syncIntervalPreset",
    "syncIntervalPreset": "syncIntervalPreset",
}


class ValidationError(ValueError):
    pass


def _validate_source_url(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("source_url must be a string")
    text = value.strip()
    if not text:
        return ""
    try:
        parts = urlsplit(text)
        hostname = parts.hostname
    except ValueError as exc:
        raise ValidationError("source_url must be a valid http or https URL") from exc
    if parts.scheme.lower() not in {"http", "https"} or not hostname:
        raise ValidationError("source_url must be a valid http or https URL")
    return text


def validate_calendar_settings(payload: dict[str, Any]) -> dict[str, Any]:
    """Check a user-submitted settings edit and return the stored fields.

    Sync state (timestamps, caching tokens, errors, lock) is owned by the
    sync engine and cannot be written through here.
    """
    if not isinstance(payload, dict):
        raise ValidationError("calendar settings must be an object")
    unknown = sorted(set(payload) - set(EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(f"unsupported calendar settings: {', '.join(unknown)}")

    cleaned: dict[str, Any] = {}
    for key, value in payload.items():
        target = EDITABLE_FIELDS[key]
        if target == "enabled":
            if not isinstance(value, bool):
                raise ValidationError("enabled must be a boolean")
            cleaned[target] = value
        elif target == "sourceUrl":
            cleaned[target] = _validate_source_url(value)
        elif target == "syncIntervalPreset":
            preset = normalize_preset(value) if isinstance(value, str) else None
            if preset not in SYNC_PRESETS:
                allowed = ", ".join(SYNC_PRESETS)
                raise ValidationError(f"sync_interval_preset must be one of: {allowed}")
            cleaned[target] = preset
    return cleaned
