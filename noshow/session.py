from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Any

from noshow.config_manager import ConfigManager
from noshow.scheduler import SweepScheduler
from noshow.state_store import StateStore
from noshow.store import RecordStore
from noshow.sweeper import DeadlineSweeper
from noshow.synchronizer import LiveViewSynchronizer, Snapshot
from noshow.time_rule import resolve_timezone

logger = logging.getLogger("noshow.session")


class ReconciliationSession:
    """Live view and deadline sweep for one signed-in clinic.

    The clinic comes from ``clinic_id`` when given, otherwise it is looked up
    from ``user_id`` through the store. Without a clinic the session holds no
    subscription and sweeps an empty snapshot, which touches nothing.
    """

    def __init__(
        self,
        store: RecordStore,
        config_manager: ConfigManager,
        state_store: StateStore | None = None,
        *,
        user_id: str | None = None,
        clinic_id: str | None = None,
    ) -> None:
        self.store = store
        self.config_manager = config_manager
        self.state_store = state_store
        self.user_id = str(user_id or "").strip()
        self._explicit_clinic_id = str(clinic_id or "").strip()
        self._lock = threading.RLock()
        self._synchronizer: LiveViewSynchronizer | None = None
        self._scheduler: SweepScheduler | None = None
        self.sweeper = self._build_sweeper()

    def _build_sweeper(self) -> DeadlineSweeper:
        config = self.config_manager.load()
        return DeadlineSweeper(
            self._sweep_snapshot,
            self.store,
            grace=timedelta(hours=config.sweep.overdue_after_hours),
            tz=resolve_timezone(config.sweep.timezone),
            state_store=self.state_store,
        )

    def _sweep_snapshot(self) -> Snapshot:
        # Each tick first checks that the live view is still being fed.
        synchronizer = self._synchronizer
        if synchronizer is None:
            return Snapshot.empty()
        synchronizer.ensure_subscribed()
        return synchronizer.snapshot()

    def refresh_settings(self) -> None:
        config = self.config_manager.load()
        self.sweeper.grace = timedelta(hours=config.sweep.overdue_after_hours)
        self.sweeper.tz = resolve_timezone(config.sweep.timezone)

    @property
    def clinic_id(self) -> str:
        synchronizer = self._synchronizer
        return synchronizer.clinic_id if synchronizer is not None else ""

    @property
    def synchronizer(self) -> LiveViewSynchronizer | None:
        return self._synchronizer

    @property
    def is_started(self) -> bool:
        return self._scheduler is not None

    def snapshot(self) -> Snapshot:
        synchronizer = self._synchronizer
        if synchronizer is None:
            return Snapshot.empty()
        return synchronizer.snapshot()

    def resolve_clinic_id(self) -> str:
        if self._explicit_clinic_id:
            return self._explicit_clinic_id
        if not self.user_id:
            return ""
        try:
            return self.store.resolve_clinic_id(self.user_id) or ""
        except Exception as exc:
            logger.warning("Could not resolve clinic for user %s: %s", self.user_id, exc)
            return ""

    def start(self) -> None:
        with self._lock:
            if self._scheduler is not None:
                return
            clinic_id = self.resolve_clinic_id()
            if not clinic_id:
                logger.info("No active clinic for session; running without a subscription")
            self._replace_synchronizer(clinic_id)
            self._scheduler = SweepScheduler(self.sweeper, self.config_manager)
            self._scheduler.start()

    def switch_tenant(self, clinic_id: str | None) -> None:
        """Point the session at ``clinic_id``.

        A blank id clears the override and falls back to the clinic of the
        signed-in user, the same way ``start()`` resolves it.
        """
        with self._lock:
            self._explicit_clinic_id = str(clinic_id or "").strip()
            if self._scheduler is None:
                return
            target = self.resolve_clinic_id()
            if target == self.clinic_id:
                return
            logger.info("Switching session clinic %r -> %r", self.clinic_id, target)
            self._replace_synchronizer(target)

    def trigger_sweep(self) -> bool:
        scheduler = self._scheduler
        if scheduler is None:
            return False
        scheduler.trigger_manual()
        return True

    def stop(self) -> None:
        with self._lock:
            scheduler, self._scheduler = self._scheduler, None
            synchronizer, self._synchronizer = self._synchronizer, None
        if synchronizer is not None:
            synchronizer.stop()
        if scheduler is not None:
            scheduler.stop()

    def status(self) -> dict[str, Any]:
        synchronizer = self._synchronizer
        snapshot = self.snapshot()
        return {
            "started": self.is_started,
            "clinic_id": self.clinic_id,
            "subscribed": bool(synchronizer and synchronizer.is_subscribed),
            "subscription_live": bool(synchronizer and synchronizer.is_live),
            "subscription_resubscribes": synchronizer.resubscribe_count if synchronizer else 0,
            "snapshot_size": len(snapshot),
            "snapshot_received_at": snapshot.received_at.isoformat() if snapshot.received_at else None,
            "subscription_errors": synchronizer.error_count if synchronizer else 0,
            "last_subscription_error": synchronizer.last_error if synchronizer else "",
            "tick_in_progress": self.sweeper.tick_in_progress,
        }

    def _replace_synchronizer(self, clinic_id: str) -> None:
        previous = self._synchronizer
        self._synchronizer = None
        if previous is not None:
            previous.stop()
        synchronizer = LiveViewSynchronizer(self.store, clinic_id, state_store=self.state_store)
        synchronizer.start()
        self._synchronizer = synchronizer
