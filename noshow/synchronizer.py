from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Iterator

from noshow.errors import SubscriptionError
from noshow.models import Appointment, utc_now
from noshow.state_store import StateStore
from noshow.store import RecordStore, Subscription

logger = logging.getLogger("noshow.synchronizer")


@dataclass(frozen=True)
class Snapshot:
    records: tuple[Appointment, ...] = ()
    received_at: datetime | None = None
    clinic_id: str = ""

    @classmethod
    def empty(cls, clinic_id: str = "") -> "Snapshot":
        return cls(records=(), received_at=None, clinic_id=clinic_id)

    @property
    def is_empty(self) -> bool:
        return not self.records

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[Appointment]:
        return iter(self.records)


class SnapshotHolder:
    """Holds the latest snapshot; one writer, any number of readers."""

    def __init__(self, clinic_id: str = "") -> None:
        self._lock = threading.Lock()
        self._snapshot = Snapshot.empty(clinic_id)
        self._clinic_id = clinic_id

    def replace(self, records: Iterable[Appointment]) -> Snapshot:
        snapshot = Snapshot(records=tuple(records), received_at=utc_now(), clinic_id=self._clinic_id)
        with self._lock:
            self._snapshot = snapshot
        return snapshot

    def clear(self) -> None:
        with self._lock:
            self._snapshot = Snapshot.empty(self._clinic_id)

    def current(self) -> Snapshot:
        with self._lock:
            return self._snapshot


@dataclass
class _ErrorState:
    count: int = 0
    last_error: str = ""
    last_error_at: datetime | None = field(default=None)


class LiveViewSynchronizer:
    """Mirrors every appointment of one clinic from the remote store.

    Create a new instance when the clinic changes; an instance never
    re-targets its subscription.
    """

    def __init__(self, store: RecordStore, clinic_id: str | None, state_store: StateStore | None = None) -> None:
        self.store = store
        self.clinic_id = str(clinic_id or "").strip()
        self.state_store = state_store
        self._holder = SnapshotHolder(self.clinic_id)
        self._lock = threading.Lock()
        # Guards _active together with writes to the holder.
        self._view_lock = threading.Lock()
        self._subscription: Subscription | None = None
        self._started = False
        self._active = False
        self._resubscribes = 0
        self._errors = _ErrorState()

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None

    @property
    def is_live(self) -> bool:
        subscription = self._subscription
        return subscription is not None and bool(subscription.is_active)

    @property
    def resubscribe_count(self) -> int:
        return self._resubscribes

    @property
    def error_count(self) -> int:
        return self._errors.count

    @property
    def last_error(self) -> str:
        return self._errors.last_error

    def snapshot(self) -> Snapshot:
        return self._holder.current()

    def start(self) -> bool:
        if not self.clinic_id:
            logger.info("No clinic resolved; synchronizer stays idle")
            return False
        with self._lock:
            self._started = True
            if self._subscription is not None:
                return True
            return self._subscribe()

    def ensure_subscribed(self) -> bool:
        """Reopen the subscription if the store closed it without reporting.

        A listen stream can end on a fatal RPC error without ever invoking
        ``on_error``. The closed stream is reported as a subscription error
        and replaced; the last good snapshot stays visible meanwhile. Also
        retries a subscription whose initial ``subscribe`` failed. Does
        nothing before ``start()`` or after ``stop()``.
        """
        with self._lock:
            if not self._started:
                return False
            closed = self._subscription
            if closed is not None and closed.is_active:
                return True
            self._subscription = None
            if closed is not None:
                self._on_error(
                    SubscriptionError(
                        {
                            "operation": "listen",
                            "request_data": {"clinicId": self.clinic_id},
                            "reason": "stream closed by the store",
                        }
                    )
                )
                self._release(closed)
            self._resubscribes += 1
            logger.info("Resubscribing for clinic %s (attempt %d)", self.clinic_id, self._resubscribes)
            return self._subscribe()

    def stop(self) -> None:
        with self._lock:
            subscription = self._subscription
            self._subscription = None
            self._started = False
            with self._view_lock:
                self._active = False
                self._holder.clear()
        if subscription is None:
            return
        self._release(subscription)
        logger.info("Synchronizer stopped for clinic %s", self.clinic_id)

    def _subscribe(self) -> bool:
        # Caller holds self._lock. The first notification may arrive before
        # subscribe() returns.
        with self._view_lock:
            self._active = True
        try:
            self._subscription = self.store.subscribe(self.clinic_id, self._on_snapshot, self._on_error)
        except Exception as exc:
            with self._view_lock:
                self._active = False
            self._on_error(exc)
            return False
        logger.info("Synchronizer subscribed for clinic %s", self.clinic_id)
        return True

    def _release(self, subscription: Subscription) -> None:
        try:
            subscription.unsubscribe()
        except Exception as exc:
            logger.warning("Unsubscribe failed for clinic %s: %s", self.clinic_id, exc)

    def _on_snapshot(self, records: list[Appointment]) -> None:
        matching = [record for record in records if self._matches(record)]
        with self._view_lock:
            # A notification that races stop() must not repopulate the view.
            if not self._active:
                return
            snapshot = self._holder.replace(matching)
        logger.debug("Snapshot for clinic %s replaced: %d records", self.clinic_id, len(snapshot))

    def _matches(self, record: Appointment) -> bool:
        return not record.clinic_id or record.clinic_id == self.clinic_id

    def _on_error(self, exc: BaseException) -> None:
        error_message = f"{type(exc).__name__}: {exc}"
        self._errors.count += 1
        self._errors.last_error = error_message
        self._errors.last_error_at = utc_now()
        logger.warning("Subscription error for clinic %s: %s", self.clinic_id, error_message)
        if self.state_store is None:
            return
        try:
            self.state_store.record_audit_event(
                clinic_id=self.clinic_id or "none",
                appointment_id="subscription",
                action="subscription_error",
                details={"error": error_message},
            )
        except Exception:
            logger.exception("Failed to record subscription error")
