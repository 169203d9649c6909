from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


ICS_SOURCE = "ics"

SYNC_PRESETS: dict[str, timedelta] = {
    "15m": timedelta(minutes=15),
    "30m": timedelta(minutes=30),
    "1h": timedelta(hours=1),
    "2h": timedelta(hours=2),
    "6h": timedelta(hours=6),
    "12h": timedelta(hours=12),
    "24h": timedelta(hours=24),
}
DEFAULT_SYNC_PRESET = "6h"

# Older settings records were written with these spellings.
_PRESET_ALIASES = {"15min": "15m", "30min": "30m"}


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    # Fixed precision keeps stored timestamps comparable as plain strings.
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat(timespec="microseconds")


def normalize_preset(value: Any) -> str:
    text = str(value or "").strip()
    return _PRESET_ALIASES.get(text, text)


def event_sync_key(external_uid: str | None, starts_at: datetime | None) -> tuple[str, str]:
    return (str(external_uid or ""), serialize_datetime(starts_at) or "")


def _resolve_zone(tz_name: str) -> ZoneInfo | timezone:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def retention_window(
    now: datetime,
    past_days: int = 30,
    future_days: int = 90,
    tz_name: str = "UTC",
) -> tuple[datetime, datetime]:
    zone = _resolve_zone(tz_name)
    local_today = _ensure_tz(now).astimezone(zone).date()
    start = datetime.combine(local_today - timedelta(days=past_days), time.min, tzinfo=zone)
    end = datetime.combine(local_today + timedelta(days=future_days), time.max, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def date_to_datetime(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _pick(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class CalendarSettings:
    enabled: bool = False
    source_url: str = ""
    sync_interval_preset: str = DEFAULT_SYNC_PRESET
    last_synced_at: datetime | None = None
    last_sync_error: str | None = None
    etag: str | None = None
    last_modified: str | None = None
    sync_locked_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarSettings":
        data = data or {}
        preset = normalize_preset(_pick(data, "syncIntervalPreset", "sync_interval_preset", "syncPreset"))
        return cls(
            enabled=_pick(data, "enabled") is True,
            source_url=str(_pick(data, "sourceUrl", "source_url", "icsUrl") or "").strip(),
            sync_interval_preset=preset or DEFAULT_SYNC_PRESET,
            last_synced_at=_lenient_datetime(_pick(data, "lastSyncedAt", "last_synced_at")),
            last_sync_error=_optional_text(_pick(data, "lastSyncError", "last_sync_error")),
            etag=_optional_text(_pick(data, "etag", "entityTag")),
            last_modified=_optional_text(_pick(data, "lastModified", "last_modified")),
            sync_locked_at=_lenient_datetime(_pick(data, "syncLockedAt", "sync_locked_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "sourceUrl": self.source_url,
            "syncIntervalPreset": self.sync_interval_preset,
            "lastSyncedAt": serialize_datetime(self.last_synced_at),
            "lastSyncError": self.last_sync_error,
            "etag": self.etag,
            "lastModified": self.last_modified,
            "syncLockedAt": serialize_datetime(self.sync_locked_at),
        }

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.source_url)


def _lenient_datetime(value: Any) -> datetime | None:
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError):
        return None


@dataclass
class UserRecord:
    id: int
    email: str = ""
    calendar: CalendarSettings | None = None


@dataclass
class ParsedEvent:
    external_uid: str | None
    title: str
    starts_at: datetime
    ends_at: datetime
    is_all_day: bool = False
    location: str = ""
    description: str = ""

    @property
    def sync_key(self) -> tuple[str, str]:
        return event_sync_key(self.external_uid, self.starts_at)


@dataclass
class CalendarEvent:
    user_id: int
    external_uid: str | None
    title: str = ""
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    is_all_day: bool = False
    location: str = ""
    description: str = ""
    source: str = ICS_SOURCE
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_parsed(cls, user_id: int, parsed: ParsedEvent, source: str = ICS_SOURCE) -> "CalendarEvent":
        return cls(
            user_id=user_id,
            source=source,
            external_uid=parsed.external_uid,
            title=parsed.title,
            starts_at=parsed.starts_at,
            ends_at=parsed.ends_at,
            is_all_day=parsed.is_all_day,
            location=parsed.location,
            description=parsed.description,
        )

    @property
    def sync_key(self) -> tuple[str, str]:
        return event_sync_key(self.external_uid, self.starts_at)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("starts_at", "ends_at", "created_at", "updated_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass
class FetchResult:
    success: bool
    status_code: int | None = None
    body: str | None = None
    etag: str | None = None
    last_modified: str | None = None
    error: str | None = None

    @property
    def not_modified(self) -> bool:
        return self.success and self.status_code == 304


@dataclass
class SyncCounts:
    added: int = 0
    updated: int = 0
    deleted: int = 0
    skipped_not_modified: int = 0
    error: str | None = None
    synced_at: datetime | None = None

    @property
    def changes(self) -> int:
        return self.added + self.updated + self.deleted

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": self.added,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped_not_modified": self.skipped_not_modified,
            "error": self.error,
            "synced_at": serialize_datetime(self.synced_at),
        }


@dataclass
class SweepSummary:
    users_processed: int = 0
    users_synced: int = 0
    users_skipped: int = 0
    users_errored: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FetcherConfig:
    timeout_seconds: float = 10.0
    max_redirects: int = 3
    max_bytes: int = 2 * 1024 * 1024
    user_agent: str = "calfeed-ics-fetcher"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FetcherConfig":
        data = data or {}
        return cls(
            timeout_seconds=max(1.0, float(data.get("timeout_seconds", 10))),
            max_redirects=max(0, int(data.get("max_redirects", 3))),
            max_bytes=max(1024, int(data.get("max_bytes", 2 * 1024 * 1024))),
            user_agent=str(data.get("user_agent", "calfeed-ics-fetcher")).strip() or "calfeed-ics-fetcher",
        )


@dataclass
class ParserConfig:
    max_events: int = 5000

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ParserConfig":
        data = data or {}
        return cls(max_events=max(1, int(data.get("max_events", 5000))))


@dataclass
class SyncConfig:
    retention_past_days: int = 30
    retention_future_days: int = 90
    lock_timeout_seconds: int = 300
    default_preset: str = DEFAULT_SYNC_PRESET
    timezone: str = "UTC"
    sweep_interval_seconds: int = 900
    cleanup_interval_seconds: int = 86400

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        preset = normalize_preset(data.get("default_preset", DEFAULT_SYNC_PRESET))
        return cls(
            retention_past_days=max(0, int(data.get("retention_past_days", 30))),
            retention_future_days=max(0, int(data.get("retention_future_days", 90))),
            lock_timeout_seconds=max(1, int(data.get("lock_timeout_seconds", 300))),
            default_preset=preset if preset in SYNC_PRESETS else DEFAULT_SYNC_PRESET,
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            sweep_interval_seconds=max(30, int(data.get("sweep_interval_seconds", 900))),
            cleanup_interval_seconds=max(60, int(data.get("cleanup_interval_seconds", 86400))),
        )


@dataclass
class StorageConfig:
    database_path: str = "data/calfeed.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(database_path=str(data.get("database_path", "data/calfeed.db")).strip() or "data/calfeed.db")


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(
            level=level,
            format=str(data.get("format", cls.format)).strip() or cls.format,
        )


@dataclass
class AppConfig:
    fetcher: FetcherConfig = field(default_factory=FetcherConfig)
    parser: ParserConfig = field(default_factory=ParserConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            fetcher=FetcherConfig.from_dict(data.get("fetcher")),
            parser=ParserConfig.from_dict(data.get("parser")),
            sync=SyncConfig.from_dict(data.get("sync")),
            storage=StorageConfig.from_dict(data.get("storage")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()
