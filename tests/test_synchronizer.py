import threading
import unittest
from unittest import mock

from noshow.errors import SubscriptionError
from noshow.models import Appointment
from noshow.synchronizer import LiveViewSynchronizer, Snapshot, SnapshotHolder


def _appointment(appointment_id: str, clinic_id: str = "clinic-1", status: str = "Confirmed") -> Appointment:
    return Appointment(
        appointment_id=appointment_id,
        clinic_id=clinic_id,
        date="5 March 2025",
        time="10:00 am",
        status=status,
    )


class _FakeSubscribingStore:
    def __init__(self) -> None:
        self.subscriptions: list[mock.Mock] = []
        self.subscribe_calls: list[str] = []
        self.on_snapshot = None
        self.on_error = None
        self.subscribe_error: Exception | None = None
        self.initial_records: list[Appointment] | None = None

    def subscribe(self, clinic_id, on_snapshot, on_error):
        self.subscribe_calls.append(clinic_id)
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        if self.initial_records is not None:
            on_snapshot(list(self.initial_records))
        subscription = mock.Mock()
        self.subscriptions.append(subscription)
        return subscription

    def push(self, records: list[Appointment]) -> None:
        self.on_snapshot(records)


class SnapshotHolderTests(unittest.TestCase):
    def test_replace_swaps_whole_snapshot(self) -> None:
        holder = SnapshotHolder("clinic-1")
        self.assertTrue(holder.current().is_empty)
        first = holder.replace([_appointment("a1"), _appointment("a2")])
        self.assertEqual(len(first), 2)
        holder.replace([_appointment("a3")])
        current = holder.current()
        self.assertEqual([a.appointment_id for a in current], ["a3"])
        self.assertEqual(current.clinic_id, "clinic-1")
        self.assertIsNotNone(current.received_at)
        # Earlier readers keep the snapshot they were handed.
        self.assertEqual([a.appointment_id for a in first], ["a1", "a2"])

    def test_concurrent_readers_see_complete_snapshots(self) -> None:
        holder = SnapshotHolder("clinic-1")
        sizes: set[int] = set()
        stop = threading.Event()

        def reader() -> None:
            while not stop.is_set():
                snapshot = holder.current()
                sizes.add(len(snapshot.records))

        thread = threading.Thread(target=reader)
        thread.start()
        for _ in range(200):
            holder.replace([_appointment(f"a{i}") for i in range(10)])
            holder.replace([_appointment(f"b{i}") for i in range(3)])
        stop.set()
        thread.join(timeout=5)
        self.assertTrue(sizes <= {0, 3, 10})


class LiveViewSynchronizerTests(unittest.TestCase):
    def test_no_clinic_means_no_subscription(self) -> None:
        store = _FakeSubscribingStore()
        synchronizer = LiveViewSynchronizer(store, None)
        self.assertFalse(synchronizer.start())
        self.assertFalse(synchronizer.is_subscribed)
        self.assertEqual(store.subscribe_calls, [])
        self.assertTrue(synchronizer.snapshot().is_empty)
        synchronizer.stop()

    def test_start_subscribes_once(self) -> None:
        store = _FakeSubscribingStore()
        synchronizer = LiveViewSynchronizer(store, "clinic-1")
        self.assertTrue(synchronizer.start())
        self.assertTrue(synchronizer.start())
        self.assertEqual(store.subscribe_calls, ["clinic-1"])
        self.assertTrue(synchronizer.is_subscribed)

    def test_each_notification_replaces_snapshot(self) -> None:
        store = _FakeSubscribingStore()
        synchronizer = LiveViewSynchronizer(store, "clinic-1")
        synchronizer.start()
        store.push([_appointment("a1"), _appointment("a2")])
        self.assertEqual(len(synchronizer.snapshot()), 2)
        store.push([_appointment("a2", status="Completed")])
        snapshot = synchronizer.snapshot()
        self.assertEqual([(a.appointment_id, a.status) for a in snapshot], [("a2", "Completed")])

    def test_records_for_other_clinics_are_dropped(self) -> None:
        store = _FakeSubscribingStore()
        synchronizer = LiveViewSynchronizer(store, "clinic-1")
        synchronizer.start()
        store.push([_appointment("a1"), _appointment("x1", clinic_id="clinic-2")])
        self.assertEqual([a.appointment_id for a in synchronizer.snapshot()], ["a1"])

    def test_notification_during_subscribe_is_kept(self) -> None:
        store = _FakeSubscribingStore()
        store.initial_records = [_appointment("a1")]
        synchronizer = LiveViewSynchronizer(store, "clinic-1")
        synchronizer.start()
        self.assertEqual(len(synchronizer.snapshot()), 1)

    def test_subscription_error_keeps_last_snapshot(self) -> None:
        store = _FakeSubscribingStore()
        state_store = mock.Mock()
        synchronizer = LiveViewSynchronizer(store, "clinic-1", state_store=state_store)
        synchronizer.start()
        store.push([_appointment("a1")])
        with self.assertLogs("noshow.synchronizer", level="WARNING"):
            store.on_error(SubscriptionError({"path": "appointments", "operation": "list"}))
        self.assertEqual(len(synchronizer.snapshot()), 1)
        self.assertEqual(synchronizer.error_count, 1)
        self.assertIn("SubscriptionError", synchronizer.last_error)
        state_store.record_audit_event.assert_called_once()
        self.assertEqual(state_store.record_audit_event.call_args.kwargs["action"], "subscription_error")

    def test_failed_subscribe_does_not_raise(self) -> None:
        store = _FakeSubscribingStore()
        store.subscribe_error = SubscriptionError({"path": "appointments", "operation": "list"})
        synchronizer = LiveViewSynchronizer(store, "clinic-1")
        with self.assertLogs("noshow.synchronizer", level="WARNING"):
            self.assertFalse(synchronizer.start())
        self.assertFalse(synchronizer.is_subscribed)
        self.assertEqual(synchronizer.error_count, 1)

    def test_stop_releases_subscription_once(self) -> None:
        store = _FakeSubscribingStore()
        synchronizer = LiveViewSynchronizer(store, "clinic-1")
        synchronizer.start()
        store.push([_appointment("a1")])
        synchronizer.stop()
        synchronizer.stop()
        store.subscriptions[0].unsubscribe.assert_called_once_with()
        self.assertFalse(synchronizer.is_subscribed)
        self.assertTrue(synchronizer.snapshot().is_empty)

    def test_stop_before_start_is_safe(self) -> None:
        synchronizer = LiveViewSynchronizer(_FakeSubscribingStore(), "clinic-1")
        synchronizer.stop()
        self.assertFalse(synchronizer.is_subscribed)

    def test_notifications_after_stop_are_ignored(self) -> None:
        store = _FakeSubscribingStore()
        synchronizer = LiveViewSynchronizer(store, "clinic-1")
        synchronizer.start()
        synchronizer.stop()
        store.push([_appointment("late")])
        self.assertTrue(synchronizer.snapshot().is_empty)

    def test_unsubscribe_failure_is_logged(self) -> None:
        store = _FakeSubscribingStore()
        synchronizer = LiveViewSynchronizer(store, "clinic-1")
        synchronizer.start()
        store.subscriptions[0].unsubscribe.side_effect = RuntimeError("channel closed")
        with self.assertLogs("noshow.synchronizer", level="WARNING"):
            synchronizer.stop()
        self.assertFalse(synchronizer.is_subscribed)

    def test_closed_stream_is_reported_and_resubscribed(self) -> None:
        store = _FakeSubscribingStore()
        state_store = mock.Mock()
        synchronizer = LiveViewSynchronizer(store, "clinic-1", state_store=state_store)
        synchronizer.start()
        store.push([_appointment("a1")])
        self.assertTrue(synchronizer.ensure_subscribed())
        self.assertEqual(store.subscribe_calls, ["clinic-1"])

        store.subscriptions[0].is_active = False
        self.assertFalse(synchronizer.is_live)
        with self.assertLogs("noshow.synchronizer", level="WARNING"):
            self.assertTrue(synchronizer.ensure_subscribed())

        self.assertEqual(store.subscribe_calls, ["clinic-1", "clinic-1"])
        store.subscriptions[0].unsubscribe.assert_called_once_with()
        self.assertTrue(synchronizer.is_live)
        self.assertEqual(synchronizer.error_count, 1)
        self.assertEqual(synchronizer.resubscribe_count, 1)
        self.assertIn("stream closed", synchronizer.last_error)
        self.assertEqual(state_store.record_audit_event.call_args.kwargs["action"], "subscription_error")
        # The last good view stays until the new stream delivers.
        self.assertEqual([a.appointment_id for a in synchronizer.snapshot()], ["a1"])
        store.push([_appointment("a2")])
        self.assertEqual([a.appointment_id for a in synchronizer.snapshot()], ["a2"])

    def test_failed_subscribe_is_retried(self) -> None:
        store = _FakeSubscribingStore()
        store.subscribe_error = SubscriptionError({"path": "appointments", "operation": "list"})
        synchronizer = LiveViewSynchronizer(store, "clinic-1")
        with self.assertLogs("noshow.synchronizer", level="WARNING"):
            self.assertFalse(synchronizer.start())
        store.subscribe_error = None
        self.assertTrue(synchronizer.ensure_subscribed())
        self.assertTrue(synchronizer.is_subscribed)
        self.assertEqual(len(store.subscribe_calls), 2)

    def test_no_resubscribe_before_start_or_after_stop(self) -> None:
        store = _FakeSubscribingStore()
        synchronizer = LiveViewSynchronizer(store, "clinic-1")
        self.assertFalse(synchronizer.ensure_subscribed())
        synchronizer.start()
        synchronizer.stop()
        self.assertFalse(synchronizer.ensure_subscribed())
        self.assertEqual(store.subscribe_calls, ["clinic-1"])
        self.assertFalse(LiveViewSynchronizer(store, "").ensure_subscribed())

    def test_notification_in_flight_during_stop_does_not_repopulate(self) -> None:
        store = _FakeSubscribingStore()
        synchronizer = LiveViewSynchronizer(store, "clinic-1")
        synchronizer.start()
        entered = threading.Event()
        release = threading.Event()
        holder = synchronizer._holder
        original_replace = holder.replace

        def slow_replace(records):
            entered.set()
            release.wait(timeout=5)
            return original_replace(records)

        with mock.patch.object(holder, "replace", side_effect=slow_replace):
            notifier = threading.Thread(target=store.push, args=([_appointment("late")],))
            notifier.start()
            self.assertTrue(entered.wait(timeout=5))
            stopper = threading.Thread(target=synchronizer.stop)
            stopper.start()
            stopper.join(timeout=0.2)
            release.set()
            notifier.join(timeout=5)
            stopper.join(timeout=5)

        self.assertFalse(stopper.is_alive())
        self.assertTrue(synchronizer.snapshot().is_empty)

    def test_empty_snapshot_factory(self) -> None:
        snapshot = Snapshot.empty("clinic-9")
        self.assertTrue(snapshot.is_empty)
        self.assertEqual(len(snapshot), 0)
        self.assertEqual(snapshot.clinic_id, "clinic-9")


if __name__ == "__main__":
    unittest.main()
