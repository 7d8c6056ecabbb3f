"""Result type returned by every state-changing operation.

Callers branch on ``kind``; only programming errors escape as exceptions.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class OutcomeKind(StrEnum):
    APPLIED = "applied"
    NOOP = "noop"
    NOT_SUPPORTED = "not_supported"
    RETRYABLE = "retryable"
    REJECTED = "rejected"


# HTTP status for each kind when an outcome is surfaced through the API
HTTP_STATUS = {
    OutcomeKind.APPLIED: 200,
    OutcomeKind.NOOP: 200,
    OutcomeKind.NOT_SUPPORTED: 400,
    OutcomeKind.RETRYABLE: 503,
    OutcomeKind.REJECTED: 409,
}


@dataclass
class Outcome:
    kind: OutcomeKind
    reason: str = ""
    subscription: Any = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def applied(cls, subscription=None, reason: str = "", **data) -> "Outcome":
        return cls(OutcomeKind.APPLIED, reason, subscription, data)

    @classmethod
    def noop(cls, reason: str, subscription=None, **data) -> "Outcome":
        return cls(OutcomeKind.NOOP, reason, subscription, data)

    @classmethod
    def not_supported(cls, reason: str) -> "Outcome":
        return cls(OutcomeKind.NOT_SUPPORTED, reason)

    @classmethod
    def retryable(cls, reason: str, subscription=None) -> "Outcome":
        return cls(OutcomeKind.RETRYABLE, reason, subscription)

    @classmethod
    def rejected(cls, reason: str, subscription=None, **data) -> "Outcome":
        return cls(OutcomeKind.REJECTED, reason, subscription, data)

    @property
    def ok(self) -> bool:
        return self.kind in (OutcomeKind.APPLIED, OutcomeKind.NOOP)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.kind]
