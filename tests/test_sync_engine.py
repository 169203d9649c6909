import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from calfeed.ics_fetcher import IcsFetcher
from calfeed.models import ICS_SOURCE, CalendarEvent, CalendarSettings, FetchResult, SyncConfig
from calfeed.state_store import StateStore
from calfeed.sync_engine import (
    DISABLED_ERROR,
    NO_SOURCE_ERROR,
    USER_NOT_FOUND_ERROR,
    SyncEngine,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
FEED_URL = "https://cal.example.com/team.ics"


def _vevent(uid: str | None, start: str, end: str, summary: str = "Meeting") -> str:
    lines = ["BEGIN:VEVENT"]
    if uid:
        lines.append(f"UID:{uid}")
    lines.extend([f"SUMMARY:{summary}", f"DTSTART:{start}", f"DTEND:{end}", "END:VEVENT"])
    return "\r\n".join(lines)


def _feed(*events: str) -> str:
    return "\r\n".join(["BEGIN:VCALENDAR", "VERSION:2.0", *events, "END:VCALENDAR"]) + "\r\n"


BASE_FEED = _feed(
    _vevent("a", "20260302T090000Z", "20260302T100000Z", "Standup"),
    _vevent("b", "20260305T140000Z", "20260305T150000Z", "Review"),
    _vevent("ancient", "20250101T090000Z", "20250101T100000Z"),
    _vevent("far", "20270101T090000Z", "20270101T100000Z"),
    _vevent(None, "20260303T090000Z", "20260303T100000Z", "No uid"),
)


def _ok(body: str, etag: str | None = '"v1"') -> FetchResult:
    return FetchResult(success=True, status_code=200, body=body, etag=etag)


class SyncEngineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.store = StateStore(str(Path(self.tmpdir.name) / "state.db"))
        self.fetcher = mock.Mock(spec=IcsFetcher)
        self.now = NOW
        self.engine = SyncEngine(
            store=self.store,
            fetcher=self.fetcher,
            config=SyncConfig(),
            clock=lambda: self.now,
        )

    def _user(self, **calendar) -> int:
        settings = {"enabled": True, "sourceUrl": FEED_URL, "syncIntervalPreset": "1h"}
        settings.update(calendar)
        return self.store.create_user("user@example.com", calendar=settings)

    def _titles(self, user_id: int) -> dict[str, str]:
        return {event.external_uid: event.title for event in self.store.list_calendar_events(user_id)}


class SyncUserTests(SyncEngineTestCase):
    def test_initial_sync_keeps_windowed_events_with_uid(self) -> None:
        user_id = self._user()
        self.fetcher.fetch.return_value = _ok(BASE_FEED)

        counts = self.engine.sync_user(user_id)

        self.assertIsNone(counts.error)
        self.assertEqual((counts.added, counts.updated, counts.deleted), (2, 0, 0))
        self.assertEqual(counts.synced_at, NOW)
        self.assertEqual(self._titles(user_id), {"a": "Standup", "b": "Review"})
        settings = self.store.find_user_settings(user_id)
        self.assertEqual(settings.last_synced_at, NOW)
        self.assertEqual(settings.etag, '"v1"')
        self.assertIsNone(settings.last_sync_error)
        self.fetcher.fetch.assert_called_once_with(FEED_URL, etag=None, last_modified=None)

    def test_repeat_sync_of_same_feed_changes_nothing(self) -> None:
        user_id = self._user()
        self.fetcher.fetch.return_value = _ok(BASE_FEED, etag=None)
        self.engine.sync_user(user_id)
        before = self.store.list_calendar_events(user_id)

        counts = self.engine.sync_user(user_id)

        self.assertEqual((counts.added, counts.updated, counts.deleted), (0, 0, 0))
        after = self.store.list_calendar_events(user_id)
        self.assertEqual([event.id for event in after], [event.id for event in before])

    def test_not_modified_skips_reconcile_and_sends_tokens(self) -> None:
        user_id = self._user()
        self.fetcher.fetch.return_value = FetchResult(
            success=True, status_code=200, body=BASE_FEED, etag='"v1"', last_modified="Sun, 01 Mar 2026 10:00:00 GMT"
        )
        self.engine.sync_user(user_id)
        self.now = NOW + timedelta(hours=2)
        self.fetcher.fetch.return_value = FetchResult(success=True, status_code=304, etag='"v1"')

        counts = self.engine.sync_user(user_id)

        self.assertEqual(counts.skipped_not_modified, 1)
        self.assertEqual((counts.added, counts.updated, counts.deleted), (0, 0, 0))
        self.fetcher.fetch.assert_called_with(
            FEED_URL, etag='"v1"', last_modified="Sun, 01 Mar 2026 10:00:00 GMT"
        )
        settings = self.store.find_user_settings(user_id)
        self.assertEqual(settings.last_synced_at, NOW + timedelta(hours=2))
        self.assertEqual(settings.last_modified, "Sun, 01 Mar 2026 10:00:00 GMT")
        self.assertEqual(len(self.store.list_calendar_events(user_id)), 2)
        runs = self.store.recent_sync_runs(user_id=user_id)
        self.assertEqual(runs[0]["status"], "not_modified")

    def test_changed_feed_updates_and_deletes(self) -> None:
        user_id = self._user()
        self.fetcher.fetch.return_value = _ok(BASE_FEED)
        self.engine.sync_user(user_id)
        self.fetcher.fetch.return_value = _ok(
            _feed(
                _vevent("a", "20260302T090000Z", "20260302T100000Z", "Standup (moved room)"),
                _vevent("c", "20260310T090000Z", "20260310T100000Z", "Planning"),
            ),
            etag='"v2"',
        )

        counts = self.engine.sync_user(user_id)

        self.assertEqual((counts.added, counts.updated, counts.deleted), (1, 1, 1))
        self.assertEqual(self._titles(user_id), {"a": "Standup (moved room)", "c": "Planning"})
        self.assertEqual(self.store.find_user_settings(user_id).etag, '"v2"')

    def test_fetch_failure_records_error_and_keeps_events(self) -> None:
        user_id = self._user()
        self.fetcher.fetch.return_value = _ok(BASE_FEED)
        self.engine.sync_user(user_id)
        self.fetcher.fetch.return_value = FetchResult(
            success=False, status_code=500, error="Request failed with status 500 for https://cal.example.com."
        )
        self.now = NOW + timedelta(hours=3)

        counts = self.engine.sync_user(user_id)

        self.assertEqual(counts.error, "Request failed with status 500 for https://cal.example.com.")
        self.assertEqual((counts.added, counts.updated, counts.deleted), (0, 0, 0))
        self.assertEqual(set(self._titles(user_id)), {"a", "b"})
        settings = self.store.find_user_settings(user_id)
        self.assertEqual(settings.last_sync_error, counts.error)
        self.assertEqual(settings.last_synced_at, NOW)
        self.assertEqual(self.store.recent_sync_runs(user_id=user_id)[0]["status"], "error")

    def test_disabled_user_is_not_fetched(self) -> None:
        user_id = self._user(enabled=False)
        counts = self.engine.sync_user(user_id)
        self.assertEqual(counts.error, DISABLED_ERROR)
        self.fetcher.fetch.assert_not_called()
        self.assertEqual(self.store.find_user_settings(user_id).last_sync_error, DISABLED_ERROR)

    def test_missing_url_is_reported(self) -> None:
        user_id = self._user(sourceUrl="")
        counts = self.engine.sync_user(user_id)
        self.assertEqual(counts.error, NO_SOURCE_ERROR)
        self.fetcher.fetch.assert_not_called()

    def test_unknown_user(self) -> None:
        counts = self.engine.sync_user(404)
        self.assertEqual(counts.error, USER_NOT_FOUND_ERROR)
        self.assertEqual(self.store.recent_sync_runs(), [])

    def test_rows_outside_retention_are_pruned(self) -> None:
        user_id = self._user()
        self.store.create_calendar_event(
            CalendarEvent(
                user_id=user_id,
                external_uid="stale",
                title="Old",
                starts_at=NOW - timedelta(days=45),
                ends_at=NOW - timedelta(days=45) + timedelta(hours=1),
            )
        )
        self.store.create_calendar_event(
            CalendarEvent(
                user_id=user_id,
                external_uid="mine",
                title="Manual",
                starts_at=NOW - timedelta(days=45),
                source="manual",
            )
        )
        self.fetcher.fetch.return_value = _ok(BASE_FEED)

        counts = self.engine.sync_user(user_id)

        self.assertEqual(counts.deleted, 1)
        remaining = {(event.source, event.external_uid) for event in self.store.list_calendar_events(user_id)}
        self.assertEqual(remaining, {(ICS_SOURCE, "a"), (ICS_SOURCE, "b"), ("manual", "mine")})

    def test_storage_failure_keeps_partial_counts(self) -> None:
        user_id = self._user()
        self.fetcher.fetch.return_value = _ok(BASE_FEED)
        real_create = self.store.create_calendar_event
        calls = []

        def flaky_create(event):
            calls.append(event)
            if len(calls) > 1:
                raise RuntimeError("disk full")
            return real_create(event)

        with mock.patch.object(self.store, "create_calendar_event", side_effect=flaky_create):
            counts = self.engine.sync_user(user_id)

        self.assertEqual(counts.added, 1)
        self.assertEqual(counts.error, "disk full")
        settings = self.store.find_user_settings(user_id)
        self.assertEqual(settings.last_sync_error, "disk full")
        self.assertIsNone(settings.last_synced_at)

    def test_parser_receives_event_cap(self) -> None:
        user_id = self._user()
        parser = mock.Mock(return_value=[])
        engine = SyncEngine(self.store, self.fetcher, parser=parser, clock=lambda: NOW)
        self.fetcher.fetch.return_value = _ok("BEGIN:VCALENDAR\r\nEND:VCALENDAR")
        engine.sync_user(user_id)
        parser.assert_called_once_with("BEGIN:VCALENDAR\r\nEND:VCALENDAR", max_events=5000)


class ScheduleTests(SyncEngineTestCase):
    def test_is_due_for_sync(self) -> None:
        settings = CalendarSettings(enabled=True, source_url=FEED_URL, sync_interval_preset="1h")
        self.assertTrue(self.engine.is_due_for_sync(settings))
        settings.last_synced_at = NOW - timedelta(minutes=59)
        self.assertFalse(self.engine.is_due_for_sync(settings))
        settings.last_synced_at = NOW - timedelta(hours=1)
        self.assertTrue(self.engine.is_due_for_sync(settings))
        settings.enabled = False
        self.assertFalse(self.engine.is_due_for_sync(settings))
        self.assertFalse(self.engine.is_due_for_sync(None))

    def test_unknown_preset_falls_back_to_default(self) -> None:
        settings = CalendarSettings(enabled=True, source_url=FEED_URL, sync_interval_preset="5m")
        self.assertEqual(self.engine.sync_interval(settings), timedelta(hours=6))

    def test_sweep_counts_synced_skipped_and_errored(self) -> None:
        synced = self._user(sourceUrl="https://cal.example.com/ok.ics")
        locked = self._user(sourceUrl="https://cal.example.com/locked.ics")
        failing = self._user(sourceUrl="https://cal.example.com/fail.ics")
        self._user(lastSyncedAt="2026-03-01T11:50:00+00:00")
        self._user(enabled=False)
        self.store.try_acquire_sync_lock(locked, NOW, NOW - timedelta(minutes=5))

        results = {
            "https://cal.example.com/ok.ics": _ok(BASE_FEED),
            "https://cal.example.com/fail.ics": FetchResult(success=False, error="Request timed out."),
        }
        self.fetcher.fetch.side_effect = lambda url, **kwargs: results[url]

        summary = self.engine.sync_due_users()

        self.assertEqual(summary.users_processed, 3)
        self.assertEqual(summary.users_synced, 1)
        self.assertEqual(summary.users_skipped, 1)
        self.assertEqual(summary.users_errored, 1)
        self.assertEqual(len(self.store.list_calendar_events(synced)), 2)
        self.assertEqual(self.store.find_user_settings(failing).last_sync_error, "Request timed out.")
        # Only the holder releases a lock.
        self.assertEqual(self.store.find_user_settings(locked).sync_locked_at, NOW)
        self.assertIsNone(self.store.find_user_settings(synced).sync_locked_at)

    def test_sweep_survives_unexpected_exception(self) -> None:
        first = self._user()
        second = self._user()
        self.fetcher.fetch.return_value = _ok(BASE_FEED)
        real_sync_user = self.engine.sync_user

        def explode_first(user_id, trigger="manual"):
            if user_id == first:
                raise RuntimeError("boom")
            return real_sync_user(user_id, trigger=trigger)

        with mock.patch.object(self.engine, "sync_user", side_effect=explode_first):
            summary = self.engine.sync_due_users()

        self.assertEqual(summary.users_errored, 1)
        self.assertEqual(summary.users_synced, 1)
        self.assertIsNone(self.store.find_user_settings(first).sync_locked_at)
        self.assertEqual(len(self.store.list_calendar_events(second)), 2)

    def test_stale_lock_is_taken_over(self) -> None:
        user_id = self._user()
        self.store.try_acquire_sync_lock(user_id, NOW - timedelta(minutes=10), NOW - timedelta(minutes=15))
        self.fetcher.fetch.return_value = _ok(BASE_FEED)
        summary = self.engine.sync_due_users()
        self.assertEqual(summary.users_synced, 1)

    def test_lock_errors_are_treated_as_not_acquired(self) -> None:
        with mock.patch.object(self.store, "try_acquire_sync_lock", side_effect=RuntimeError("db gone")):
            self.assertFalse(self.engine.lock_user(1))

    def test_prune_outside_retention(self) -> None:
        user_id = self._user()
        self.store.create_calendar_event(
            CalendarEvent(user_id=user_id, external_uid="old", starts_at=NOW - timedelta(days=31))
        )
        self.store.create_calendar_event(
            CalendarEvent(user_id=user_id, external_uid="recent", starts_at=NOW - timedelta(days=29))
        )
        self.assertEqual(self.engine.prune_outside_retention(), 1)
        self.assertEqual(set(self._titles(user_id)), {"recent"})


class InteractiveSyncTests(SyncEngineTestCase):
    def test_sync_now_statuses(self) -> None:
        self.assertEqual(self.engine.sync_now(999).status, "not_found")
        unconfigured = self._user(enabled=False)
        self.assertEqual(self.engine.sync_now(unconfigured).status, "not_configured")

        user_id = self._user()
        self.store.try_acquire_sync_lock(user_id, NOW, NOW - timedelta(minutes=5))
        self.assertEqual(self.engine.sync_now(user_id).status, "in_progress")
        self.store.release_sync_lock(user_id)

        self.fetcher.fetch.return_value = _ok(BASE_FEED)
        outcome = self.engine.sync_now(user_id)
        self.assertTrue(outcome.ok)
        self.assertTrue(outcome.triggered)
        self.assertEqual(outcome.counts.added, 2)
        self.assertEqual(outcome.to_dict()["added"], 2)
        self.assertIsNone(self.store.find_user_settings(user_id).sync_locked_at)
        self.assertEqual(self.store.recent_sync_runs(user_id=user_id)[0]["trigger"], "manual")

    def test_sync_if_stale_only_when_due(self) -> None:
        user_id = self._user(lastSyncedAt="2026-03-01T11:30:00+00:00")
        outcome = self.engine.sync_if_stale(user_id)
        self.assertTrue(outcome.ok)
        self.assertFalse(outcome.triggered)
        self.fetcher.fetch.assert_not_called()

        self.now = NOW + timedelta(hours=1)
        self.fetcher.fetch.return_value = _ok(BASE_FEED)
        outcome = self.engine.sync_if_stale(user_id)
        self.assertTrue(outcome.triggered)
        self.assertEqual(self.store.recent_sync_runs(user_id=user_id)[0]["trigger"], "stale")

    def test_sync_if_stale_does_not_wait_for_lock(self) -> None:
        user_id = self._user()
        self.store.try_acquire_sync_lock(user_id, NOW, NOW - timedelta(minutes=5))
        outcome = self.engine.sync_if_stale(user_id)
        self.assertEqual(outcome.status, "ok")
        self.assertFalse(outcome.triggered)
        self.fetcher.fetch.assert_not_called()


if __name__ == "__main__":
    unittest.main()
