from __future__ import annotations

import logging
import threading
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable

from noshow.errors import ScheduleParseError
from noshow.models import (
    STATUS_NO_SHOW,
    Appointment,
    StatusTransition,
    SweepResult,
    utc_now,
)
from noshow.state_store import StateStore
from noshow.store import RecordStore
from noshow.synchronizer import Snapshot
from noshow.time_rule import OVERDUE_AFTER, is_overdue

logger = logging.getLogger("noshow.sweeper")


@dataclass
class SweepPlan:
    transitions: list[StatusTransition] = field(default_factory=list)
    evaluated: int = 0
    parse_failures: list[Appointment] = field(default_factory=list)


def plan_transitions(
    snapshot: Snapshot,
    now: datetime,
    *,
    grace: timedelta = OVERDUE_AFTER,
    tz: tzinfo = timezone.utc,
) -> SweepPlan:
    plan = SweepPlan()
    for appointment in snapshot:
        if not appointment.is_eligible:
            continue
        plan.evaluated += 1
        try:
            overdue = is_overdue(appointment.date, appointment.time, now, grace=grace, tz=tz)
        except ScheduleParseError as exc:
            logger.debug("Skipping appointment %s: %s", appointment.appointment_id, exc)
            plan.parse_failures.append(appointment)
            continue
        if overdue:
            plan.transitions.append(
                StatusTransition(
                    appointment_id=appointment.appointment_id,
                    from_status=appointment.status,
                    to_status=STATUS_NO_SHOW,
                    update_time=appointment.update_time,
                )
            )
    return plan


class DeadlineSweeper:
    """Moves overdue Confirmed/Skipped appointments to No-show.

    One call to ``run_once`` is one tick: it reads the latest snapshot, plans
    the transitions and commits them in a single batch. It never raises; a
    failed batch is logged and retried naturally on the next tick because the
    affected appointments are still eligible and still overdue.
    """

    def __init__(
        self,
        snapshot_source: Callable[[], Snapshot],
        store: RecordStore,
        *,
        grace: timedelta = OVERDUE_AFTER,
        tz: tzinfo = timezone.utc,
        state_store: StateStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.snapshot_source = snapshot_source
        self.store = store
        self.grace = grace
        self.tz = tz
        self.state_store = state_store
        self.clock = clock
        self._tick_lock = threading.Lock()

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_lock.locked()

    def run_once(self, trigger: str = "scheduled") -> SweepResult:
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Sweep (%s) skipped: previous tick still running", trigger)
            return SweepResult(
                status="skipped",
                message="tick in progress",
                duration_ms=0,
                evaluated=0,
                transitioned=0,
                parse_failures=0,
                trigger=trigger,
            )
        started_at = utc_now()
        try:
            return self._run(trigger, started_at)
        except Exception as exc:
            logger.exception("Sweep (%s) failed unexpectedly", trigger)
            return self._finish(
                started_at,
                trigger=trigger,
                clinic_id="",
                status="error",
                message=f"{type(exc).__name__}: {exc}",
            )
        finally:
            self._tick_lock.release()

    def _run(self, trigger: str, started_at: datetime) -> SweepResult:
        snapshot = self.snapshot_source()
        clinic_id = snapshot.clinic_id

        if snapshot.is_empty:
            return self._finish(
                started_at,
                trigger=trigger,
                clinic_id=clinic_id,
                status="skipped",
                message="Snapshot empty. Sweep skipped.",
            )

        plan = plan_transitions(snapshot, self.clock(), grace=self.grace, tz=self.tz)
        if plan.parse_failures:
            logger.info(
                "Sweep (%s): %d appointments with unparseable date/time skipped",
                trigger,
                len(plan.parse_failures),
            )

        if not plan.transitions:
            return self._finish(
                started_at,
                trigger=trigger,
                clinic_id=clinic_id,
                status="success",
                message=f"Evaluated {plan.evaluated} appointments, none overdue.",
                plan=plan,
            )

        try:
            self.store.commit_transitions(plan.transitions)
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            logger.error(
                "Sweep (%s) batch write of %d transitions failed: %s",
                trigger,
                len(plan.transitions),
                error_message,
            )
            return self._finish(
                started_at,
                trigger=trigger,
                clinic_id=clinic_id,
                status="error",
                message=error_message,
                plan=plan,
                write_error=exc,
            )

        logger.info("Sweep (%s) marked %d appointments as %s", trigger, len(plan.transitions), STATUS_NO_SHOW)
        return self._finish(
            started_at,
            trigger=trigger,
            clinic_id=clinic_id,
            status="success",
            message=f"Evaluated {plan.evaluated} appointments, {len(plan.transitions)} marked {STATUS_NO_SHOW}.",
            plan=plan,
            transitioned=len(plan.transitions),
        )

    def _finish(
        self,
        started_at: datetime,
        *,
        trigger: str,
        clinic_id: str,
        status: str,
        message: str,
        plan: SweepPlan | None = None,
        transitioned: int = 0,
        write_error: BaseException | None = None,
    ) -> SweepResult:
        plan = plan or SweepPlan()
        duration_ms = int((utc_now() - started_at).total_seconds() * 1000)
        result = SweepResult(
            status=status,
            message=message,
            duration_ms=duration_ms,
            evaluated=plan.evaluated,
            transitioned=transitioned,
            parse_failures=len(plan.parse_failures),
            trigger=trigger,
        )
        if self.state_store is not None:
            try:
                self._record(self.state_store, result, clinic_id=clinic_id, plan=plan, write_error=write_error)
            except Exception:
                logger.exception("Failed to record sweep run")
        return result

    @staticmethod
    def _record(
        state_store: StateStore,
        result: SweepResult,
        *,
        clinic_id: str,
        plan: SweepPlan,
        write_error: BaseException | None,
    ) -> None:
        run_id = state_store.record_sweep_run(
            trigger=result.trigger,
            clinic_id=clinic_id,
            status=result.status,
            message=result.message,
            duration_ms=result.duration_ms,
            evaluated=result.evaluated,
            transitioned=result.transitioned,
            parse_failures=result.parse_failures,
        )
        if write_error is not None:
            state_store.record_audit_event(
                clinic_id=clinic_id,
                appointment_id="batch",
                action="batch_write_failed",
                run_id=run_id,
                details={
                    "trigger": result.trigger,
                    "error": result.message,
                    "appointment_ids": [t.appointment_id for t in plan.transitions],
                    "traceback": "".join(traceback.format_exception(write_error, limit=5)),
                },
            )
            return
        for transition in plan.transitions[: result.transitioned]:
            state_store.record_audit_event(
                clinic_id=clinic_id,
                appointment_id=transition.appointment_id,
                action="mark_no_show",
                run_id=run_id,
                details={"trigger": result.trigger, **transition.to_dict()},
            )
