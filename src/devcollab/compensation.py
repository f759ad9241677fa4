"""Compensation registry for in-flight transactions."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from devcollab.errors import ErrorKind, NotFoundError, classify
from devcollab.models import CompensationOutcome, CompensationRecord, TransactionStep

__all__ = ["CompensationRegistry", "run_action"]

logger = logging.getLogger(__name__)


async def run_action(action: Callable[..., Any], *args: Any) -> Any:
    """Call *action* and await its result when it is awaitable."""
    result = action(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class CompensationRegistry:
    """Records the reversible side effects of one transaction.

    A record is appended only after a step's forward action succeeded, so the
    registry holds exactly one entry per successful step.  :meth:`unwind` runs
    them newest first and keeps going when one of them fails.
    """

    def __init__(self, transaction_id: str) -> None:
        self.transaction_id = transaction_id
        self.interrupted = False
        self._records: list[CompensationRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> tuple[CompensationRecord, ...]:
        return tuple(self._records)

    def record(self, step: TransactionStep) -> CompensationRecord:
        """Append the compensation for a step whose forward action succeeded.

        Raises:
            ValueError: When *step* has not executed.
        """
        if not step.executed:
            raise ValueError(f"Step {step.name!r} has not executed; nothing to compensate.")
        entry = CompensationRecord(
            record_id=str(uuid.uuid4()),
            step_id=step.step_id,
            step_name=step.name,
            compensate=step.compensate,
            result=step.result,
            recorded_at=datetime.now(tz=timezone.utc),
        )
        self._records.append(entry)
        logger.debug(
            "Recorded compensation for step %s (transaction %s)",
            step.name,
            self.transaction_id,
        )
        return entry

    def clear(self) -> None:
        self._records.clear()

    async def unwind(self) -> list[CompensationOutcome]:
        """Run every recorded compensation in LIFO order and empty the registry.

        A compensation raising :class:`~devcollab.errors.NotFoundError` counts
        as success: the resource it would remove is already gone.  A
        compensation that is cancelled counts as failed; the remaining ones
        still run and :attr:`interrupted` is set so the caller can re-raise
        the cancellation once the transaction is settled.

        Returns:
            One :class:`~devcollab.models.CompensationOutcome` per record, in
            the order the compensations ran.
        """
        outcomes: list[CompensationOutcome] = []
        while self._records:
            entry = self._records.pop()
            outcomes.append(await self._compensate(entry))
        return outcomes

    async def _compensate(self, entry: CompensationRecord) -> CompensationOutcome:
        if entry.compensate is None:
            return CompensationOutcome(step_name=entry.step_name, succeeded=True)
        try:
            await run_action(entry.compensate, entry.result)
        except NotFoundError:
            logger.info(
                "Compensation target for step %s already absent (transaction %s)",
                entry.step_name,
                self.transaction_id,
            )
            return CompensationOutcome(
                step_name=entry.step_name, succeeded=True, idempotent=True
            )
        except asyncio.CancelledError:
            logger.warning(
                "Compensation for step %s cancelled (transaction %s)",
                entry.step_name,
                self.transaction_id,
            )
            self.interrupted = True
            return CompensationOutcome(
                step_name=entry.step_name,
                succeeded=False,
                error_kind=ErrorKind.cancelled,
                error="compensation cancelled",
            )
        except Exception as exc:
            logger.error(
                "Compensation for step %s failed (transaction %s): %s",
                entry.step_name,
                self.transaction_id,
                exc,
            )
            return CompensationOutcome(
                step_name=entry.step_name,
                succeeded=False,
                error_kind=classify(exc),
                error=str(exc) or type(exc).__name__,
            )
        logger.info(
            "Compensated step %s (transaction %s)", entry.step_name, self.transaction_id
        )
        return CompensationOutcome(step_name=entry.step_name, succeeded=True)
