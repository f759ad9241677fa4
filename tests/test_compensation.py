"""Tests for the compensation registry."""

from __future__ import annotations

import pytest

from devcollab.compensation import CompensationRegistry, run_action
from devcollab.errors import ErrorKind, NotFoundError, RemoteFailure
from devcollab.models import TransactionStep


def _executed_step(name: str, compensate=None, result: object = None) -> TransactionStep:
    step = TransactionStep(
        step_id=f"id-{name}", name=name, forward=lambda: None, compensate=compensate
    )
    step.executed = True
    step.result = result
    return step


class TestRunAction:
    @pytest.mark.asyncio
    async def test_plain_function(self) -> None:
        assert await run_action(lambda x: x + 1, 1) == 2

    @pytest.mark.asyncio
    async def test_coroutine_function(self) -> None:
        async def double(x: int) -> int:
            return x * 2

        assert await run_action(double, 4) == 8


class TestRecord:
    def test_record_appends_one_entry(self) -> None:
        registry = CompensationRegistry("tx-1")
        entry = registry.record(_executed_step("a", result="r"))
        assert len(registry) == 1
        assert entry.step_name == "a"
        assert entry.result == "r"
        assert registry.records == (entry,)

    def test_unexecuted_step_rejected(self) -> None:
        registry = CompensationRegistry("tx-1")
        step = TransactionStep(step_id="s", name="a", forward=lambda: None)
        with pytest.raises(ValueError, match="has not executed"):
            registry.record(step)
        assert len(registry) == 0

    def test_clear(self) -> None:
        registry = CompensationRegistry("tx-1")
        registry.record(_executed_step("a"))
        registry.clear()
        assert len(registry) == 0


class TestUnwind:
    @pytest.mark.asyncio
    async def test_lifo_order_and_results_passed(self) -> None:
        calls: list[object] = []
        registry = CompensationRegistry("tx-1")
        for name in ("a", "b", "c"):
            registry.record(_executed_step(name, calls.append, result=name.upper()))

        outcomes = await registry.unwind()

        assert calls == ["C", "B", "A"]
        assert [o.step_name for o in outcomes] == ["c", "b", "a"]
        assert all(o.succeeded for o in outcomes)
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_not_found_is_idempotent_success(self) -> None:
        def gone(_: object) -> None:
            raise NotFoundError("already deleted")

        registry = CompensationRegistry("tx-1")
        registry.record(_executed_step("a", gone))
        (outcome,) = await registry.unwind()
        assert outcome.succeeded is True
        assert outcome.idempotent is True

    @pytest.mark.asyncio
    async def test_failure_recorded_and_unwinding_continues(self) -> None:
        calls: list[str] = []

        async def refuse(_: object) -> None:
            raise RemoteFailure("gateway said no", status_code=500)

        registry = CompensationRegistry("tx-1")
        registry.record(_executed_step("a", lambda _: calls.append("a")))
        registry.record(_executed_step("b", refuse))

        outcomes = await registry.unwind()

        assert calls == ["a"]
        assert outcomes[0].succeeded is False
        assert outcomes[0].error_kind is ErrorKind.remote_failure
        assert outcomes[0].error == "gateway said no"
        assert outcomes[1].succeeded is True

    @pytest.mark.asyncio
    async def test_identity_compensation_succeeds(self) -> None:
        registry = CompensationRegistry("tx-1")
        registry.record(_executed_step("a"))
        (outcome,) = await registry.unwind()
        assert outcome.succeeded is True
        assert outcome.idempotent is False
