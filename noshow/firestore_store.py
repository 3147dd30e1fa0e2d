from __future__ import annotations

import logging
import threading
from typing import Any, Sequence

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from noshow.errors import BatchWriteError, StoreOperationError, SubscriptionError
from noshow.models import Appointment, FirestoreConfig, StatusTransition
from noshow.store import ErrorCallback, SnapshotCallback

logger = logging.getLogger("noshow.firestore_store")

CLINIC_FIELD = "clinicId"


class FirestoreSubscription:
    def __init__(self, watch: Any, path: str) -> None:
        self._watch = watch
        self._path = path
        self._lock = threading.Lock()
        self._closed = False

    @property
    def is_active(self) -> bool:
        if self._closed:
            return False
        return bool(getattr(self._watch, "is_active", True))

    def unsubscribe(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._watch.unsubscribe()
        except Exception as exc:
            raise SubscriptionError({"path": self._path, "operation": "unsubscribe"}, exc) from exc


class FirestoreRecordStore:
    def __init__(self, config: FirestoreConfig, client: Any = None) -> None:
        self.config = config
        self._client = client

    def _connect(self) -> Any:
        if self._client is not None:
            return self._client
        kwargs: dict[str, Any] = {"database": self.config.database}
        if self.config.project_id:
            kwargs["project"] = self.config.project_id
        if self.config.credentials_path:
            self._client = firestore.Client.from_service_account_json(self.config.credentials_path, **kwargs)
        else:
            self._client = firestore.Client(**kwargs)
        return self._client

    def _appointments_query(self, clinic_id: str) -> Any:
        client = self._connect()
        return client.collection(self.config.appointments_collection).where(
            filter=FieldFilter(CLINIC_FIELD, "==", clinic_id)
        )

    def subscribe(
        self,
        clinic_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> FirestoreSubscription:
        path = self.config.appointments_collection
        context = {
            "path": path,
            "operation": "list",
            "request_data": {CLINIC_FIELD: clinic_id},
        }

        def _handle(docs: list[Any], _changes: Any, _read_time: Any) -> None:
            # Runs on the watch thread; nothing may escape into it.
            try:
                records = [
                    Appointment.from_document(doc.id, doc.to_dict(), getattr(doc, "update_time", None))
                    for doc in docs
                ]
            except Exception as exc:
                on_error(SubscriptionError(context, exc))
                return
            on_snapshot(records)

        try:
            watch = self._appointments_query(clinic_id).on_snapshot(_handle)
        except google_exceptions.GoogleAPICallError as exc:
            raise SubscriptionError(context, exc) from exc
        logger.info("Subscribed to %s where %s == %s", path, CLINIC_FIELD, clinic_id)
        return FirestoreSubscription(watch, path)

    def commit_transitions(self, transitions: Sequence[StatusTransition]) -> None:
        if not transitions:
            return
        client = self._connect()
        collection = client.collection(self.config.appointments_collection)
        batch = client.batch()
        for transition in transitions:
            ref = collection.document(transition.appointment_id)
            if transition.update_time is not None:
                # Reject the batch if the document changed after the snapshot was taken.
                option = client.write_option(last_update_time=transition.update_time)
                batch.update(ref, transition.field_updates, option=option)
            else:
                batch.update(ref, transition.field_updates)
        try:
            batch.commit()
        except google_exceptions.GoogleAPICallError as exc:
            raise BatchWriteError(
                {
                    "path": self.config.appointments_collection,
                    "operation": "update",
                    "request_data": [transition.to_dict() for transition in transitions],
                },
                exc,
            ) from exc

    def resolve_clinic_id(self, user_id: str) -> str | None:
        if not user_id:
            return None
        client = self._connect()
        path = f"{self.config.users_collection}/{user_id}"
        try:
            snapshot = client.collection(self.config.users_collection).document(user_id).get()
        except google_exceptions.GoogleAPICallError as exc:
            raise StoreOperationError({"path": path, "operation": "get"}, exc) from exc
        if not snapshot.exists:
            return None
        clinic_id = str((snapshot.to_dict() or {}).get(CLINIC_FIELD, "") or "").strip()
        return clinic_id or None
