from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

from calfeed.ics_fetcher import IcsFetcher
from calfeed.ics_parser import parse_ics
from calfeed.models import (
    ICS_SOURCE,
    SYNC_PRESETS,
    CalendarEvent,
    CalendarSettings,
    ParsedEvent,
    ParserConfig,
    SweepSummary,
    SyncConfig,
    SyncCounts,
    UserRecord,
    retention_window,
    utc_now,
)
from calfeed.reconciler import reconcile
from calfeed.state_store import StateStore


logger = logging.getLogger(__name__)

NO_SOURCE_ERROR = "No ICS URL configured."
DISABLED_ERROR = "Calendar sync is disabled."
USER_NOT_FOUND_ERROR = "User not found."

EventParser = Callable[..., list[ParsedEvent]]


@dataclass
class ManualSyncOutcome:
    status: str
    counts: SyncCounts = field(default_factory=SyncCounts)
    triggered: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        payload = self.counts.to_dict()
        payload["status"] = self.status
        payload["triggered"] = self.triggered
        return payload


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class SyncEngine:
    """Pulls each user's ICS feed and mirrors it into the event table.

    Storage, fetcher and parser are injected so that the same engine serves
    the scheduler sweep and interactive requests, possibly from several
    processes sharing one database. The per-user lock stored in the
    settings record is the only thing keeping two syncs of one user apart.
    """

    def __init__(
        self,
        store: StateStore,
        fetcher: IcsFetcher,
        parser: EventParser = parse_ics,
        config: SyncConfig | None = None,
        parser_config: ParserConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.parser = parser
        self.config = config or SyncConfig()
        self.parser_config = parser_config or ParserConfig()
        self.clock = clock

    # scheduling decisions

    def sync_interval(self, settings: CalendarSettings) -> timedelta:
        return SYNC_PRESETS.get(settings.sync_interval_preset) or SYNC_PRESETS[self.config.default_preset]

    def is_due_for_sync(self, settings: CalendarSettings | None) -> bool:
        if settings is None or not settings.is_configured:
            return False
        if settings.last_synced_at is None:
            return True
        return self.clock() - settings.last_synced_at >= self.sync_interval(settings)

    def retention_window(self) -> tuple[datetime, datetime]:
        return retention_window(
            self.clock(),
            past_days=self.config.retention_past_days,
            future_days=self.config.retention_future_days,
            tz_name=self.config.timezone,
        )

    # locking

    def lock_user(self, user_id: int) -> bool:
        now = self.clock()
        stale_before = now - timedelta(seconds=self.config.lock_timeout_seconds)
        try:
            return self.store.try_acquire_sync_lock(user_id, now, stale_before)
        except Exception:
            logger.exception("Error acquiring calendar sync lock for user %s", user_id)
            return False

    def unlock_user(self, user_id: int) -> bool:
        try:
            self.store.release_sync_lock(user_id)
            return True
        except Exception:
            logger.exception("Error releasing calendar sync lock for user %s", user_id)
            return False

    @contextmanager
    def user_sync_lock(self, user_id: int) -> Iterator[bool]:
        acquired = self.lock_user(user_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.unlock_user(user_id)

    # sync

    def _persist_error(self, user_id: int, message: str) -> None:
        try:
            self.store.update_user_settings(user_id, {"lastSyncError": message})
        except Exception:
            logger.exception("Could not store sync error for user %s", user_id)

    def _record_run(self, user_id: int, trigger: str, started: float, counts: SyncCounts) -> None:
        if counts.error:
            status, message = "error", counts.error
        elif counts.skipped_not_modified:
            status, message = "not_modified", "Feed not modified."
        else:
            status = "success"
            message = f"Added {counts.added}, updated {counts.updated}, deleted {counts.deleted}."
        try:
            self.store.record_sync_run(
                user_id=user_id,
                trigger=trigger,
                status=status,
                message=message,
                duration_ms=_elapsed_ms(started),
                added=counts.added,
                updated=counts.updated,
                deleted=counts.deleted,
            )
        except Exception:
            logger.exception("Could not record sync run for user %s", user_id)

    def sync_user(self, user_id: int, trigger: str = "manual") -> SyncCounts:
        """Fetch, parse and reconcile one user's feed.

        The caller must hold the user's lock. Failures are stored in
        ``lastSyncError`` and reported through ``SyncCounts.error``.
        """
        started = time.monotonic()
        counts = SyncCounts()
        try:
            settings = self.store.find_user_settings(user_id)
        except Exception as exc:
            logger.exception("Could not load calendar settings for user %s", user_id)
            counts.error = _error_text(exc)
            return counts

        if settings is None and self.store.find_user(user_id) is None:
            counts.error = USER_NOT_FOUND_ERROR
            return counts
        settings = settings or CalendarSettings()

        if not settings.source_url:
            counts.error = NO_SOURCE_ERROR
        elif not settings.enabled:
            counts.error = DISABLED_ERROR
        if counts.error:
            self._persist_error(user_id, counts.error)
            self._record_run(user_id, trigger, started, counts)
            return counts

        try:
            self._sync_feed(user_id, settings, counts)
        except Exception as exc:
            logger.exception("Error syncing calendar feed for user %s", user_id)
            counts.error = _error_text(exc)
            self._persist_error(user_id, counts.error)

        self._record_run(user_id, trigger, started, counts)
        return counts

    def _sync_feed(self, user_id: int, settings: CalendarSettings, counts: SyncCounts) -> None:
        result = self.fetcher.fetch(
            settings.source_url,
            etag=settings.etag,
            last_modified=settings.last_modified,
        )
        if not result.success:
            counts.error = result.error or "ICS fetch failed."
            self._persist_error(user_id, counts.error)
            return

        if result.not_modified:
            counts.synced_at = self.clock()
            self.store.update_user_settings(
                user_id,
                {
                    "lastSyncedAt": counts.synced_at,
                    "lastSyncError": None,
                    "etag": result.etag or settings.etag,
                    "lastModified": result.last_modified or settings.last_modified,
                },
            )
            counts.skipped_not_modified = 1
            return

        parsed = self.parser(result.body or "", max_events=self.parser_config.max_events)
        window_start, window_end = self.retention_window()
        in_window = [
            event
            for event in parsed
            if event.external_uid and window_start <= event.starts_at <= window_end
        ]

        existing = self.store.find_calendar_events(user_id, ICS_SOURCE, window_start, window_end)
        plan = reconcile(in_window, existing)

        for incoming in plan.to_create:
            self.store.create_calendar_event(CalendarEvent.from_parsed(user_id, incoming))
            counts.added += 1
        for current, changes in plan.to_update:
            self.store.update_calendar_event(current, changes)
            counts.updated += 1
        if plan.to_delete_ids:
            counts.deleted += self.store.delete_calendar_events_by_ids(plan.to_delete_ids)
        counts.deleted += self.store.delete_calendar_events_outside_range(
            user_id, ICS_SOURCE, window_start, window_end
        )

        counts.synced_at = self.clock()
        self.store.update_user_settings(
            user_id,
            {
                "lastSyncedAt": counts.synced_at,
                "lastSyncError": None,
                "etag": result.etag or settings.etag,
                "lastModified": result.last_modified or settings.last_modified,
            },
        )
        logger.info(
            "Calendar sync for user %s: %s parsed, %s in window, +%s ~%s -%s",
            user_id,
            len(parsed),
            len(in_window),
            counts.added,
            counts.updated,
            counts.deleted,
        )

    # sweep

    def find_due_users(self) -> list[UserRecord]:
        return [user for user in self.store.find_users_with_calendar_settings() if self.is_due_for_sync(user.calendar)]

    def sync_due_users(self) -> SweepSummary:
        summary = SweepSummary()
        try:
            due_users = self.find_due_users()
        except Exception:
            logger.exception("Error finding users due for calendar sync")
            return summary
        if not due_users:
            return summary

        logger.info("Calendar sync: %s users due", len(due_users))
        summary.users_processed = len(due_users)
        for user in due_users:
            try:
                with self.user_sync_lock(user.id) as acquired:
                    if not acquired:
                        logger.info("Calendar sync: user %s already syncing, skipped", user.id)
                        summary.users_skipped += 1
                        continue
                    counts = self.sync_user(user.id, trigger="scheduled")
            except Exception:
                logger.exception("Calendar sync: unexpected error for user %s", user.id)
                summary.users_errored += 1
                continue
            if counts.error:
                logger.warning("Calendar sync: user %s failed: %s", user.id, counts.error)
                summary.users_errored += 1
            else:
                summary.users_synced += 1

        logger.info(
            "Calendar sync completed: %s synced, %s skipped, %s errored",
            summary.users_synced,
            summary.users_skipped,
            summary.users_errored,
        )
        return summary

    # interactive actions

    def _configured_settings(self, user_id: int) -> tuple[str | None, CalendarSettings | None]:
        user = self.store.find_user(user_id)
        if user is None:
            return "not_found", None
        if user.calendar is None or not user.calendar.is_configured:
            return "not_configured", user.calendar
        return None, user.calendar

    def sync_now(self, user_id: int) -> ManualSyncOutcome:
        problem, _settings = self._configured_settings(user_id)
        if problem:
            return ManualSyncOutcome(status=problem)
        with self.user_sync_lock(user_id) as acquired:
            if not acquired:
                return ManualSyncOutcome(status="in_progress")
            counts = self.sync_user(user_id, trigger="manual")
        return ManualSyncOutcome(status="ok", counts=counts, triggered=True)

    def sync_if_stale(self, user_id: int) -> ManualSyncOutcome:
        problem, settings = self._configured_settings(user_id)
        if problem:
            return ManualSyncOutcome(status=problem)
        if not self.is_due_for_sync(settings):
            return ManualSyncOutcome(status="ok")
        with self.user_sync_lock(user_id) as acquired:
            if not acquired:
                return ManualSyncOutcome(status="ok")
            counts = self.sync_user(user_id, trigger="stale")
        return ManualSyncOutcome(status="ok", counts=counts, triggered=True)

    def prune_outside_retention(self) -> int:
        window_start, window_end = self.retention_window()
        removed = self.store.delete_all_events_outside_range(ICS_SOURCE, window_start, window_end)
        logger.info("Calendar cleanup: removed %s events outside retention window", removed)
        return removed
