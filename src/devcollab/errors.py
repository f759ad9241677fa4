"""Error taxonomy shared by the transaction coordinator and the collaboration hub."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from devcollab.models import CompensationOutcome

__all__ = [
    "ErrorKind",
    "DevCollabError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "RemoteFailure",
    "LocalFailure",
    "CompensationFailure",
    "TransactionCancelled",
    "classify",
]


class ErrorKind(str, Enum):
    """Classification of every failure surfaced by devcollab."""

    validation = "validation"
    not_found = "not_found"
    conflict = "conflict"
    remote_failure = "remote_failure"
    local_failure = "local_failure"
    compensation_failure = "compensation_failure"
    cancelled = "cancelled"


class DevCollabError(Exception):
    """Base class for all devcollab errors.

    Args:
        message: Human-readable description.
        kind: Override of the class-level :attr:`kind`.
    """

    kind: ErrorKind = ErrorKind.local_failure

    def __init__(self, message: str = "", *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ValidationError(DevCollabError):
    """Malformed input: bad id, missing field, unknown tag."""

    kind = ErrorKind.validation


class NotFoundError(DevCollabError):
    kind = ErrorKind.not_found


class ConflictError(DevCollabError):
    """A uniqueness or precondition check failed."""

    kind = ErrorKind.conflict


class RemoteFailure(DevCollabError):
    """A gateway call failed (transport, timeout or non-2xx response)."""

    kind = ErrorKind.remote_failure

    def __init__(self, message: str = "", *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LocalFailure(DevCollabError):
    kind = ErrorKind.local_failure


class TransactionCancelled(DevCollabError):
    kind = ErrorKind.cancelled


class CompensationFailure(DevCollabError):
    """At least one compensating action failed after an abort.

    Carries the outcome of every compensation that was attempted, in the
    order they ran.
    """

    kind = ErrorKind.compensation_failure

    def __init__(self, outcomes: list[CompensationOutcome], cause: str = "") -> None:
        failed = [o.step_name for o in outcomes if not o.succeeded]
        message = f"compensation failed for step(s): {', '.join(failed)}"
        if cause:
            message = f"{message} (after: {cause})"
        super().__init__(message)
        self.outcomes = outcomes


def classify(exc: BaseException, *, remote: bool = False) -> ErrorKind:
    """Map an arbitrary exception raised by a step action to an :class:`ErrorKind`.

    Timeouts and transport errors count as remote failures wherever they come
    from; anything else unclassified is blamed on the side the step talks to.
    """
    if isinstance(exc, DevCollabError):
        return exc.kind
    if isinstance(exc, asyncio.CancelledError):
        return ErrorKind.cancelled
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.HTTPError, OSError)):
        return ErrorKind.remote_failure
    return ErrorKind.remote_failure if remote else ErrorKind.local_failure
