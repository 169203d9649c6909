"""Line-oriented parser for ICS feeds.

Only VEVENT blocks are read. Anything that cannot be understood is skipped
so that one broken record never hides the rest of the feed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

from icalendar import vDate, vDatetime, vDuration

from calfeed.models import ParsedEvent, date_to_datetime


logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 5000

_LINE_SPLIT = re.compile(r"\r?\n|\r")
_ESCAPE_PATTERN = re.compile(r"\\([nN,;\\])")
_DATE_ONLY = re.compile(r"^\d{8}$")
_SHORT_DATETIME = re.compile(r"^(\d{8}T\d{4})(Z?)$")
_DURATION_SHAPE = re.compile(r"^[+-]?P(?:\d+W)?(?:\d+D)?(?:T(?:\d+H)?(?:\d+M)?(?:\d+S)?)?$")


@dataclass
class _PendingEvent:
    uid: str | None = None
    title: str | None = None
    location: str | None = None
    description: str | None = None
    status: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    duration: timedelta | None = None
    all_day: bool = False

    def finalize(self) -> ParsedEvent | None:
        if self.status == "CANCELLED" or self.starts_at is None:
            return None
        ends_at = self.ends_at
        if ends_at is None and self.duration is not None:
            try:
                ends_at = self.starts_at + self.duration
            except OverflowError:
                return None
        if ends_at is None:
            return None
        return ParsedEvent(
            external_uid=self.uid or None,
            title=self.title or "",
            starts_at=self.starts_at,
            ends_at=ends_at,
            is_all_day=self.all_day,
            location=self.location or "",
            description=self.description or "",
        )


def unfold_lines(text: str | None) -> list[str]:
    lines: list[str] = []
    for raw in _LINE_SPLIT.split(text or ""):
        if raw[:1] in (" ", "\t") and lines:
            lines[-1] += raw[1:]
        else:
            lines.append(raw)
    return lines


def unescape_text(value: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        char = match.group(1)
        return "\n" if char in "nN" else char

    return _ESCAPE_PATTERN.sub(_replace, value)


def parse_ics_datetime(value: str) -> tuple[datetime, bool] | None:
    """Decode a DATE or DATE-TIME value into ``(instant, is_date_only)``.

    Floating times are read as UTC; only a comparable instant is needed.
    """
    text = value.strip()
    if _DATE_ONLY.match(text):
        try:
            return date_to_datetime(vDate.from_ical(text)), True
        except (ValueError, OverflowError):
            return None
    short = _SHORT_DATETIME.match(text)
    if short:
        text = f"{short.group(1)}00{short.group(2)}"
    try:
        parsed = vDatetime.from_ical(text)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc), False


def parse_ics_duration(value: str) -> timedelta | None:
    text = value.strip().upper()
    if not _DURATION_SHAPE.match(text):
        return None
    try:
        parsed = vDuration.from_ical(text)
    except (ValueError, OverflowError):
        return None
    return parsed if isinstance(parsed, timedelta) else None


def _split_property(line: str) -> tuple[str, str] | None:
    separator = line.find(":")
    if separator == -1:
        return None
    name = line[:separator].split(";", 1)[0].strip().upper()
    return name, line[separator + 1 :]


def _apply_property(pending: _PendingEvent, name: str, value: str) -> None:
    value = value.strip()
    if name == "UID":
        pending.uid = value
    elif name == "SUMMARY":
        pending.title = unescape_text(value)
    elif name == "LOCATION":
        pending.location = unescape_text(value)
    elif name == "DESCRIPTION":
        pending.description = unescape_text(value)
    elif name == "STATUS":
        pending.status = value.upper()
    elif name == "DTSTART":
        decoded = parse_ics_datetime(value)
        if decoded is not None:
            pending.starts_at, pending.all_day = decoded
    elif name == "DTEND":
        decoded = parse_ics_datetime(value)
        if decoded is not None:
            pending.ends_at = decoded[0]
    elif name == "DURATION":
        duration = parse_ics_duration(value)
        if duration is not None:
            pending.duration = duration


def iter_events(lines: Iterable[str]) -> Iterable[ParsedEvent | None]:
    """Yield one item per closed VEVENT; ``None`` marks a dropped record."""
    pending: _PendingEvent | None = None
    for line in lines:
        if not line:
            continue
        split = _split_property(line)
        if split is None:
            continue
        name, value = split
        marker = value.strip().upper()
        if name == "BEGIN" and marker == "VEVENT":
            pending = _PendingEvent()
            continue
        if name == "END" and marker == "VEVENT":
            if pending is not None:
                yield pending.finalize()
            pending = None
            continue
        if pending is None:
            continue
        _apply_property(pending, name, value)


def parse_ics(text: str | None, max_events: int = DEFAULT_MAX_EVENTS) -> list[ParsedEvent]:
    events: list[ParsedEvent] = []
    if max_events <= 0:
        return events
    dropped = 0
    for item in iter_events(unfold_lines(text)):
        if item is None:
            dropped += 1
            continue
        events.append(item)
        if len(events) >= max_events:
            logger.debug("ICS event cap of %s reached, ignoring the rest of the feed", max_events)
            break
    if dropped:
        logger.debug("Dropped %s cancelled or incomplete VEVENT records", dropped)
    return events
