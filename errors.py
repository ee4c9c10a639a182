"""Typed errors raised by the queue controller.

Each error carries a stable ``code`` for clients, a human readable message,
the HTTP status the API layer should answer with, and whether the caller may
simply retry.  Only ``SessionBusyError`` is retryable.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class QueueError(Exception):
    code = "queue_error"
    http_status = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            body["data"] = self.details
        return body


class NotFoundError(QueueError):
    code = "not_found"
    http_status = 404


class InvalidStateError(QueueError):
    code = "invalid_state"
    http_status = 409


class NoEligibleTokenError(QueueError):
    code = "no_eligible_token"
    http_status = 409


class RecallLimitExceededError(QueueError):
    code = "recall_limit_exceeded"
    http_status = 409


class ConsistencyError(QueueError):
    code = "consistency_violation"
    http_status = 409


class SessionBusyError(QueueError):
    code = "session_busy"
    http_status = 503
    retryable = True


class UnauthorizedError(QueueError):
    code = "unauthorized"
    http_status = 403
