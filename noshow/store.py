from __future__ import annotations

from typing import Callable, Protocol, Sequence

from noshow.models import Appointment, StatusTransition


SnapshotCallback = Callable[[list[Appointment]], None]
ErrorCallback = Callable[[BaseException], None]


class Subscription(Protocol):
    @property
    def is_active(self) -> bool:
        """False once the stream has ended, whether or not an error was reported."""
        ...

    def unsubscribe(self) -> None:
        ...


class RecordStore(Protocol):
    """Boundary to the remote appointment store.

    ``subscribe`` delivers the full result set matching the clinic filter on
    every change. ``commit_transitions`` writes all transitions atomically and
    raises BatchWriteError when the store rejects the batch.
    """

    def subscribe(
        self,
        clinic_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        ...

    def commit_transitions(self, transitions: Sequence[StatusTransition]) -> None:
        ...

    def resolve_clinic_id(self, user_id: str) -> str | None:
        ...
