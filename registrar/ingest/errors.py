from __future__ import annotations

import re
from typing import Optional

RATE_LIMIT_STATUS = 429
RATE_LIMIT_MARKERS = ("429", "rate", "quota", "limit")
# Whole words only: "rate" must not fire inside "generate" or "GenerateContentRequest".
_RATE_LIMIT_PATTERN = re.compile(
    r"(?<![a-z0-9])(?:" + "|".join(RATE_LIMIT_MARKERS) + r")(?:s|ed|ing)?(?![a-z0-9])"
)


class IngestError(Exception):
    """Base for item-local pipeline failures.

    Carries enough provider detail for the queue to decide whether the failure
    should hold back the next dispatch.
    """

    kind = "ingest"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        provider_message: Optional[str] = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider_message = provider_message
        self.timed_out = timed_out

    @property
    def is_rate_limited(self) -> bool:
        return is_rate_limit_failure(self)

    def describe(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.provider_message and self.provider_message not in self.message:
            parts.append(self.provider_message)
        return " | ".join(parts)


class ClassificationError(IngestError):
    kind = "classification"


class UploadError(IngestError):
    kind = "upload"


class ReconciliationError(IngestError):
    """Raised by the coordinator; ``cause`` is the sub-call failure when there is one."""

    kind = "reconciliation"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, orphaned_key: Optional[str] = None) -> None:
        nested = cause if isinstance(cause, IngestError) else None
        super().__init__(
            message,
            status_code=nested.status_code if nested else None,
            provider_message=nested.provider_message if nested else None,
            timed_out=nested.timed_out if nested else False,
        )
        self.cause = cause
        self.orphaned_key = orphaned_key


class ValidationError(IngestError):
    kind = "validation"


def is_rate_limit_failure(exc: BaseException) -> bool:
    """Return True when a failure looks like upstream throttling.

    Timeouts count as throttling so a struggling provider gets the same breathing
    room as an explicit 429.
    """
    if isinstance(exc, ReconciliationError) and exc.cause is not None and exc.cause is not exc:
        if is_rate_limit_failure(exc.cause):
            return True
    if isinstance(exc, IngestError):
        if exc.status_code == RATE_LIMIT_STATUS or exc.timed_out:
            return True
        text = f"{exc.message} {exc.provider_message or ''}".lower()
    else:
        text = str(exc).lower()
    return _RATE_LIMIT_PATTERN.search(text) is not None


__all__ = [
    "IngestError",
    "ClassificationError",
    "UploadError",
    "ReconciliationError",
    "ValidationError",
    "is_rate_limit_failure",
    "RATE_LIMIT_STATUS",
]
