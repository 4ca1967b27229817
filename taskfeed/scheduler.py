from __future__ import annotations

import threading
from typing import Optional

from taskfeed.config_manager import ConfigManager
from taskfeed.sources import SourceRegistry


IDLE_POLL_SECONDS = 300


class SyncScheduler:
    def __init__(self, registry: SourceRegistry, config_manager: ConfigManager) -> None:
        self.registry = registry
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="taskfeed-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _loop(self) -> None:
        if self.config_manager.load().sync.interval_seconds > 0:
            self.registry.resync_all(trigger="startup")

        while not self._stop_event.is_set():
            interval_seconds = self.config_manager.load().sync.interval_seconds
            # With periodic sync disabled, only manual triggers wake the loop.
            manual = self._manual_trigger_event.wait(timeout=interval_seconds or IDLE_POLL_SECONDS)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            if manual:
                self.registry.resync_all(trigger="manual")
            elif interval_seconds > 0:
                self.registry.resync_all(trigger="scheduled")
