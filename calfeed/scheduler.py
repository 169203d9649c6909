from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from calfeed.config_manager import ConfigManager
from calfeed.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self._last_cleanup: float | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calfeed-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_pending(self) -> None:
        """One scheduler tick: the due-user sweep, then cleanup when it is time."""
        try:
            self.sync_engine.sync_due_users()
        except Exception:
            logger.exception("Scheduled calendar sweep failed")

        cleanup_interval = self.config_manager.load().sync.cleanup_interval_seconds
        now = time.monotonic()
        if self._last_cleanup is None or now - self._last_cleanup >= cleanup_interval:
            self._last_cleanup = now
            try:
                self.sync_engine.prune_outside_retention()
            except Exception:
                logger.exception("Calendar retention cleanup failed")

    def _loop(self) -> None:
        self.run_pending()
        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.sweep_interval_seconds))
            self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_pending()
