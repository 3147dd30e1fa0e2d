from __future__ import annotations

import json
from typing import Any


class NoShowError(Exception):
    """Base class for errors raised inside the reconciliation service."""


class ScheduleParseError(NoShowError, ValueError):
    def __init__(self, date_text: Any, time_text: Any, reason: str = "") -> None:
        self.date_text = date_text
        self.time_text = time_text
        self.reason = reason
        message = f"Unparseable appointment schedule date={date_text!r} time={time_text!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class StoreOperationError(NoShowError):
    """A remote store call failed.

    ``context`` describes the request the store rejected: the document or
    collection ``path``, the ``operation`` (get, list, update, ...) and the
    ``request_data`` that was sent, if any.
    """

    def __init__(self, context: dict[str, Any], cause: BaseException | None = None) -> None:
        self.context = dict(context)
        self.cause = cause
        detail = json.dumps(self.context, indent=2, default=str, ensure_ascii=False)
        message = f"Store operation failed:\n{detail}"
        if cause is not None:
            message = f"{message}\ncause: {type(cause).__name__}: {cause}"
        super().__init__(message)


class SubscriptionError(StoreOperationError):
    pass


class BatchWriteError(StoreOperationError):
    pass
