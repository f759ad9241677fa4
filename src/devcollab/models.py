"""Pydantic models for the devcollab transaction coordinator."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from devcollab.errors import (
    CompensationFailure,
    ConflictError,
    DevCollabError,
    ErrorKind,
    LocalFailure,
    NotFoundError,
    RemoteFailure,
    TransactionCancelled,
    ValidationError,
)

__all__ = [
    "TransactionStatus",
    "TransactionStep",
    "CompensationRecord",
    "CompensationOutcome",
    "Transaction",
    "TransactionResult",
]

# Forward actions take no arguments and return an opaque result (or an
# awaitable of one).  Compensating actions receive that result.
ForwardAction = Callable[[], Any]
CompensatingAction = Callable[[Any], Any]


class TransactionStatus(str, Enum):
    """Lifecycle states for a coordinated transaction."""

    pending = "pending"
    committing = "committing"
    committed = "committed"
    compensating = "compensating"
    aborted = "aborted"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TransactionStatus.committed,
            TransactionStatus.aborted,
            TransactionStatus.failed,
        )


class TransactionStep(BaseModel):
    """A single unit of work with its compensating action."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    step_id: str = Field(..., description="Unique identifier for this step")
    name: str = Field(..., description="Step name, unique enough to read in logs")
    forward: ForwardAction = Field(..., exclude=True, description="The intended effect")
    compensate: CompensatingAction | None = Field(
        default=None,
        exclude=True,
        description="Inverse effect; None means identity compensation",
    )
    remote: bool = Field(
        default=False, description="True when the forward action calls the Git-gateway"
    )
    executed: bool = Field(
        default=False, description="True iff the forward action returned successfully"
    )
    result: Any = Field(default=None, exclude=True, description="Forward action result")
    error: str | None = Field(default=None, description="Forward failure, if any")


class CompensationRecord(BaseModel):
    """A reversible side effect already performed during an in-flight transaction."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    record_id: str
    step_id: str
    step_name: str
    compensate: CompensatingAction | None = Field(default=None, exclude=True)
    result: Any = Field(default=None, exclude=True)
    recorded_at: datetime


class CompensationOutcome(BaseModel):
    """What happened when one compensating action ran."""

    step_name: str
    succeeded: bool
    idempotent: bool = Field(
        default=False,
        description="True when the inverse target was already absent (not found)",
    )
    error_kind: ErrorKind | None = None
    error: str | None = None


class Transaction(BaseModel):
    """An ordered sequence of steps executed as one saga."""

    transaction_id: str = Field(..., description="Unique identifier for this transaction")
    name: str = Field(..., description="Business operation, e.g. 'create_repository'")
    steps: list[TransactionStep] = Field(
        default_factory=list, description="Ordered list of steps to execute"
    )
    current_index: int = Field(
        default=0, description="Index of the step being (or next to be) executed"
    )
    status: TransactionStatus = Field(
        default=TransactionStatus.pending, description="Current lifecycle state"
    )
    created_at: datetime = Field(..., description="UTC timestamp of begin()")
    started_at: datetime | None = Field(default=None, description="UTC start of execute()")
    ended_at: datetime | None = Field(default=None, description="UTC terminal timestamp")
    error_kind: ErrorKind | None = None
    error: str | None = None


class TransactionResult(BaseModel):
    """Final outcome of executing a transaction."""

    transaction_id: str
    name: str
    status: TransactionStatus
    completed_steps: list[str] = Field(
        default_factory=list, description="Names of steps whose forward action succeeded"
    )
    compensated_steps: list[str] = Field(
        default_factory=list,
        description="Names of steps whose compensation succeeded, in the order they were undone",
    )
    failed_step: str | None = Field(
        default=None, description="Name of the step whose forward action failed"
    )
    error_kind: ErrorKind | None = Field(
        default=None,
        description="Originating kind for aborts, compensation_failure for failed",
    )
    error: str | None = None
    compensation_outcomes: list[CompensationOutcome] = Field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.status is TransactionStatus.committed

    def raise_for_status(self) -> None:
        """Raise the error this result carries, if it did not commit.

        Raises:
            CompensationFailure: For ``failed`` transactions.
            DevCollabError: The subclass matching :attr:`error_kind` for
                ``aborted`` transactions.
        """
        if self.status is TransactionStatus.committed:
            return
        if self.status is TransactionStatus.failed:
            raise CompensationFailure(self.compensation_outcomes)
        kind = self.error_kind or ErrorKind.local_failure
        raise _ERRORS_BY_KIND.get(kind, DevCollabError)(self.error or kind.value)


_ERRORS_BY_KIND: dict[ErrorKind, type[DevCollabError]] = {
    ErrorKind.validation: ValidationError,
    ErrorKind.not_found: NotFoundError,
    ErrorKind.conflict: ConflictError,
    ErrorKind.remote_failure: RemoteFailure,
    ErrorKind.local_failure: LocalFailure,
    ErrorKind.cancelled: TransactionCancelled,
}
