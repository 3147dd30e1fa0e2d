from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping


STATUS_CONFIRMED = "Confirmed"
STATUS_PENDING = "Pending"
STATUS_SKIPPED = "Skipped"
STATUS_COMPLETED = "Completed"
STATUS_NO_SHOW = "No-show"

ELIGIBLE_STATUSES = frozenset({STATUS_CONFIRMED, STATUS_SKIPPED})


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


@dataclass
class FirestoreConfig:
    project_id: str = ""
    database: str = "(default)"
    credentials_path: str = ""
    appointments_collection: str = "appointments"
    users_collection: str = "users"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FirestoreConfig":
        data = data or {}
        return cls(
            project_id=str(data.get("project_id", "")).strip(),
            database=str(data.get("database", "(default)")).strip() or "(default)",
            credentials_path=str(data.get("credentials_path", "")).strip(),
            appointments_collection=str(data.get("appointments_collection", "appointments")).strip()
            or "appointments",
            users_collection=str(data.get("users_collection", "users")).strip() or "users",
        )


@dataclass
class SessionConfig:
    user_id: str = ""
    clinic_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SessionConfig":
        data = data or {}
        return cls(
            user_id=str(data.get("user_id", "") or "").strip(),
            clinic_id=str(data.get("clinic_id", "") or "").strip(),
        )


@dataclass
class SweepConfig:
    interval_seconds: int = 300
    overdue_after_hours: float = 5
    timezone: str = "UTC"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SweepConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            overdue_after_hours=max(0.0, float(data.get("overdue_after_hours", 5))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
        )


@dataclass
class AppConfig:
    firestore: FirestoreConfig = field(default_factory=FirestoreConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            firestore=FirestoreConfig.from_dict(data.get("firestore")),
            session=SessionConfig.from_dict(data.get("session")),
            sweep=SweepConfig.from_dict(data.get("sweep")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class Appointment:
    appointment_id: str
    clinic_id: str = ""
    date: str = ""
    time: str = ""
    status: str = ""
    update_time: datetime | None = None

    @classmethod
    def from_document(
        cls,
        appointment_id: str,
        data: Mapping[str, Any] | None,
        update_time: datetime | None = None,
    ) -> "Appointment":
        data = data or {}
        # Legacy documents sometimes hold non-string values; keep them as text
        # so the time rule rejects them instead of the snapshot handler.
        return cls(
            appointment_id=str(appointment_id),
            clinic_id=str(data.get("clinicId", "") or ""),
            date=str(data.get("date", "") or ""),
            time=str(data.get("time", "") or ""),
            status=str(data.get("status", "") or ""),
            update_time=update_time,
        )

    @property
    def is_eligible(self) -> bool:
        return self.status in ELIGIBLE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["update_time"] = serialize_datetime(self.update_time)
        return payload


@dataclass(frozen=True)
class StatusTransition:
    appointment_id: str
    from_status: str
    to_status: str = STATUS_NO_SHOW
    update_time: datetime | None = None

    @property
    def field_updates(self) -> dict[str, Any]:
        return {"status": self.to_status}

    def to_dict(self) -> dict[str, Any]:
        return {
            "appointment_id": self.appointment_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "update_time": serialize_datetime(self.update_time),
        }


@dataclass
class SweepResult:
    status: str
    message: str
    duration_ms: int
    evaluated: int
    transitioned: int
    parse_failures: int
    trigger: str
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "evaluated": self.evaluated,
            "transitioned": self.transitioned,
            "parse_failures": self.parse_failures,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }
