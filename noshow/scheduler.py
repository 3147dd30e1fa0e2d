from __future__ import annotations

import logging
import threading
from typing import Optional

from noshow.config_manager import ConfigManager
from noshow.sweeper import DeadlineSweeper

logger = logging.getLogger("noshow.scheduler")


class SweepScheduler:
    def __init__(self, sweeper: DeadlineSweeper, config_manager: ConfigManager) -> None:
        self.sweeper = sweeper
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self._tick_thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._manual_trigger_event.clear()
        self._thread = threading.Thread(target=self._loop, name="noshow-sweep-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        if self._tick_thread and self._tick_thread.is_alive():
            self._tick_thread.join(timeout=5)
            if self._tick_thread.is_alive():
                logger.warning("Sweep tick still running after stop; leaving it to finish")
        self._thread = None
        self._tick_thread = None

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _interval_seconds(self) -> int:
        try:
            config = self.config_manager.load()
        except Exception as exc:
            logger.warning("Config reload failed, keeping default interval: %s", exc)
            return 300
        return max(30, int(config.sweep.interval_seconds))

    def _loop(self) -> None:
        # Run one sweep at startup so overdue appointments are not left waiting a full interval.
        self._dispatch("startup")

        while not self._stop_event.is_set():
            interval_seconds = self._interval_seconds()
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            if manual:
                self._dispatch("manual")
            else:
                self._dispatch("scheduled")

    def _dispatch(self, trigger: str) -> None:
        # Ticks run off the timer thread; the sweeper refuses overlapping ticks.
        self._tick_thread = threading.Thread(
            target=self.sweeper.run_once,
            kwargs={"trigger": trigger},
            name=f"noshow-sweep-{trigger}",
            daemon=True,
        )
        self._tick_thread.start()
