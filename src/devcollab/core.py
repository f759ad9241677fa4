"""Transaction coordinator: sagas spanning the local store and the Git-gateway."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from devcollab.adapters import LocalStore
from devcollab.compensation import CompensationRegistry, run_action
from devcollab.errors import (
    CompensationFailure,
    TransactionCancelled,
    ValidationError,
    classify,
)
from devcollab.models import (
    CompensatingAction,
    ForwardAction,
    Transaction,
    TransactionResult,
    TransactionStatus,
    TransactionStep,
)

__all__ = ["TransactionCoordinator"]

logger = logging.getLogger(__name__)

_DEFAULT_RETENTION = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class TransactionCoordinator:
    """Run multi-step business operations as compensating transactions.

    Steps execute strictly in order.  When the forward action of step *k*
    fails, the compensations of steps ``0..k-1`` run in reverse order.  A
    failing compensation does not stop the others; it turns the terminal
    status into ``failed`` instead of ``aborted``.

    Transactions do not share mutable state, so distinct transactions may be
    executed concurrently from separate tasks without locking.

    Args:
        step_timeout: Optional limit in seconds for each forward action.  A
            forward action exceeding it fails as a remote failure.
    """

    def __init__(self, step_timeout: float | None = None) -> None:
        self._step_timeout = step_timeout
        self._transactions: dict[str, Transaction] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def begin(self, name: str) -> Transaction:
        """Create a new transaction in the *pending* state.

        Args:
            name: The business operation, e.g. ``"create_repository"``.

        Raises:
            ValidationError: When *name* is empty.
        """
        if not name:
            raise ValidationError("Transaction name must not be empty")
        tx = Transaction(
            transaction_id=str(uuid.uuid4()),
            name=name,
            status=TransactionStatus.pending,
            created_at=_utcnow(),
        )
        self._transactions[tx.transaction_id] = tx
        logger.debug("Transaction %s (%s) created", tx.transaction_id, name)
        return tx

    def add_step(
        self,
        tx: Transaction,
        name: str,
        forward: ForwardAction,
        compensate: CompensatingAction | None = None,
        *,
        remote: bool = False,
    ) -> TransactionStep:
        """Append a step to *tx*.

        Args:
            tx: The transaction to extend.
            name: Step name used in results and logs.
            forward: Zero-argument callable (plain or coroutine function)
                performing the effect; its return value is the step result.
            compensate: Callable receiving the step result and undoing the
                effect.  ``None`` is an identity compensation.
            remote: True when *forward* calls the Git-gateway.  Unclassified
                errors of remote steps count as remote failures.

        Raises:
            ValidationError: When *tx* is not *pending* or *name* is empty.
        """
        if tx.status is not TransactionStatus.pending:
            raise ValidationError(
                f"Cannot add steps to transaction {tx.transaction_id!r} "
                f"in state {tx.status.value!r}; only 'pending' transactions accept new steps."
            )
        if not name:
            raise ValidationError("Step name must not be empty")

        step = TransactionStep(
            step_id=str(uuid.uuid4()),
            name=name,
            forward=forward,
            compensate=compensate,
            remote=remote,
        )
        tx.steps.append(step)
        return step

    def add_local_step(
        self,
        tx: Transaction,
        name: str,
        store: LocalStore,
        forward: Callable[[Any], Any],
        compensate: Callable[[Any, Any], Any] | None = None,
    ) -> TransactionStep:
        """Append a step whose effect is confined to the local store.

        Both actions run inside ``store.within_local_transaction`` so each is
        all-or-nothing.  *forward* receives the store session; *compensate*
        receives the session and the forward result.
        """

        def run_forward() -> Awaitable[Any]:
            return store.within_local_transaction(forward)

        run_compensate: CompensatingAction | None = None
        if compensate is not None:

            def run_compensate(result: Any) -> Awaitable[Any]:
                return store.within_local_transaction(lambda session: compensate(session, result))

        return self.add_step(tx, name, run_forward, run_compensate, remote=False)

    async def execute(
        self, tx: Transaction, *, cancel_event: asyncio.Event | None = None
    ) -> TransactionResult:
        """Execute all steps in order, compensating on the first failure.

        Args:
            tx: A *pending* transaction.
            cancel_event: When set between two steps, the transaction is
                treated as failed with kind ``cancelled`` and compensated.

        Returns:
            A :class:`~devcollab.models.TransactionResult` with status
            ``committed``, ``aborted`` or ``failed``.

        Raises:
            ValidationError: When *tx* is not in *pending* state.
            asyncio.CancelledError: When the calling task is cancelled while a
                forward action or a compensation is running.  Compensation
                completes first and the transaction is left in its terminal
                state.
        """
        if tx.status is not TransactionStatus.pending:
            raise ValidationError(
                f"Transaction {tx.transaction_id!r} is in state {tx.status.value!r}; "
                "only 'pending' transactions can be executed."
            )

        registry = CompensationRegistry(tx.transaction_id)
        tx.started_at = _utcnow()
        self._set_status(tx, TransactionStatus.committing)
        completed: list[str] = []

        for index, step in enumerate(tx.steps):
            tx.current_index = index
            if cancel_event is not None and cancel_event.is_set():
                cancelled = TransactionCancelled(f"Cancelled before step {step.name!r}")
                return await self._abort_fully(tx, registry, step, cancelled, completed)
            try:
                step.result = await self._run_forward(step)
            except asyncio.CancelledError:
                cancelled = TransactionCancelled(f"Cancelled during step {step.name!r}")
                await self._abort_fully(tx, registry, step, cancelled, completed)
                raise
            except Exception as exc:
                return await self._abort_fully(tx, registry, step, exc, completed)

            step.executed = True
            registry.record(step)
            completed.append(step.name)

        tx.current_index = len(tx.steps)
        registry.clear()
        tx.ended_at = _utcnow()
        self._set_status(tx, TransactionStatus.committed)
        logger.info(
            "Transaction %s (%s) committed with %d step(s)",
            tx.transaction_id,
            tx.name,
            len(completed),
        )
        return TransactionResult(
            transaction_id=tx.transaction_id,
            name=tx.name,
            status=TransactionStatus.committed,
            completed_steps=completed,
        )

    def status(self, tx: Transaction | str) -> TransactionStatus:
        """Return the current status of a transaction object or id.

        Raises:
            KeyError: When no transaction with that id is registered.
        """
        if isinstance(tx, Transaction):
            return tx.status
        return self._transactions[tx].status

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        return self._transactions.get(transaction_id)

    def get_all_transactions(self) -> list[Transaction]:
        return list(self._transactions.values())

    def list_active(self) -> list[Transaction]:
        """Return transactions that have not reached a terminal status."""
        return [tx for tx in self._transactions.values() if not tx.status.is_terminal]

    def cleanup_completed(self, max_age: timedelta = _DEFAULT_RETENTION) -> int:
        """Forget terminal transactions that ended more than *max_age* ago.

        Returns:
            The number of transactions removed.
        """
        cutoff = _utcnow() - max_age
        stale = [
            tx_id
            for tx_id, tx in self._transactions.items()
            if tx.status.is_terminal and tx.ended_at is not None and tx.ended_at <= cutoff
        ]
        for tx_id in stale:
            del self._transactions[tx_id]
        logger.info("Cleaned up %d completed transaction(s)", len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _run_forward(self, step: TransactionStep) -> Any:
        if self._step_timeout is None:
            return await run_action(step.forward)
        return await asyncio.wait_for(run_action(step.forward), timeout=self._step_timeout)

    async def _abort_fully(
        self,
        tx: Transaction,
        registry: CompensationRegistry,
        step: TransactionStep,
        exc: BaseException,
        completed: list[str],
    ) -> TransactionResult:
        """Run :meth:`_abort` to the end even if the calling task is cancelled.

        A cancellation arriving while compensations run is held back until the
        transaction is terminal, then re-raised.
        """
        abort = asyncio.ensure_future(self._abort(tx, registry, step, exc, completed))
        interrupted = False
        while not abort.done():
            try:
                await asyncio.shield(abort)
            except asyncio.CancelledError:
                if abort.done():
                    raise
                interrupted = True
        if interrupted:
            raise asyncio.CancelledError()
        return abort.result()

    async def _abort(
        self,
        tx: Transaction,
        registry: CompensationRegistry,
        step: TransactionStep,
        exc: BaseException,
        completed: list[str],
    ) -> TransactionResult:
        kind = classify(exc, remote=step.remote)
        reason = str(exc) or type(exc).__name__
        step.error = reason
        self._set_status(tx, TransactionStatus.compensating)
        logger.warning(
            "Transaction %s (%s) failed at step %s [%s]: %s; compensating %d step(s)",
            tx.transaction_id,
            tx.name,
            step.name,
            kind.value,
            reason,
            len(registry),
        )

        outcomes = await registry.unwind()
        compensated = [o.step_name for o in outcomes if o.succeeded]

        if all(o.succeeded for o in outcomes):
            final = TransactionStatus.aborted
            tx.error_kind, tx.error = kind, reason
        else:
            final = TransactionStatus.failed
            composite = CompensationFailure(outcomes, cause=reason)
            tx.error_kind, tx.error = composite.kind, str(composite)
            logger.error(
                "Transaction %s (%s) partially rolled back: %s",
                tx.transaction_id,
                tx.name,
                composite,
            )

        tx.ended_at = _utcnow()
        self._set_status(tx, final)
        if registry.interrupted:
            raise asyncio.CancelledError()
        return TransactionResult(
            transaction_id=tx.transaction_id,
            name=tx.name,
            status=final,
            completed_steps=completed,
            compensated_steps=compensated,
            failed_step=step.name,
            error_kind=tx.error_kind,
            error=tx.error,
            compensation_outcomes=outcomes,
        )

    def _set_status(self, tx: Transaction, status: TransactionStatus) -> None:
        """Move *tx* to *status* in place.

        Callers hold a reference to the same object as the registry, so the
        change is observable through :meth:`status` immediately.

        Raises:
            ValidationError: When *tx* is already terminal.
        """
        if tx.status.is_terminal:
            raise ValidationError(
                f"Transaction {tx.transaction_id!r} is already {tx.status.value!r}"
            )
        tx.status = status
