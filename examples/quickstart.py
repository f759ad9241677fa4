"""Quickstart examples for devcollab.

Demonstrates compensating transactions and room fan-out in-process:
  1. Repository creation that commits
  2. Automatic rollback when the Git-gateway fails
  3. Partial rollback when a compensation itself fails
  4. Presence and chat fan-out through the hub

Run directly:
    python examples/quickstart.py
"""

from __future__ import annotations

import asyncio
import itertools

from devcollab import Hub, RemoteFailure, RepositoryService, TransactionCoordinator
from devcollab.adapters import (
    CreateBranchRequest,
    CreateRepositoryRequest,
    GatewayBranch,
    GatewayRepository,
    UpdateRepositoryRequest,
)
from devcollab.errors import NotFoundError
from devcollab.models import TransactionResult
from devcollab.session import ClientSession
from devcollab.store import InMemoryProjectStore, ProjectRecord

# ---------------------------------------------------------------------------
# A Git-gateway that lives in memory
# ---------------------------------------------------------------------------


class DemoGateway:
    """Prints every call; ``broken`` names operations that fail."""

    def __init__(self, *broken: str) -> None:
        self.broken = set(broken)
        self.repositories: dict[str, GatewayRepository] = {}
        self._ids = itertools.count(1)

    def _call(self, operation: str, target: str) -> None:
        print(f"  gateway.{operation}({target})")
        if operation in self.broken:
            raise RemoteFailure(f"{operation} is unavailable", status_code=503)

    async def create_repository(self, request: CreateRepositoryRequest) -> GatewayRepository:
        self._call("create_repository", request.name)
        repo = GatewayRepository(
            id=f"gw-{next(self._ids)}", project_id=request.project_id, name=request.name
        )
        self.repositories[repo.id] = repo
        return repo

    async def get_repository(self, repository_id: str) -> GatewayRepository:
        self._call("get_repository", repository_id)
        if repository_id not in self.repositories:
            raise NotFoundError(repository_id)
        return self.repositories[repository_id]

    async def update_repository(
        self, repository_id: str, request: UpdateRepositoryRequest
    ) -> GatewayRepository:
        self._call("update_repository", repository_id)
        return self.repositories[repository_id]

    async def delete_repository(self, repository_id: str) -> None:
        self._call("delete_repository", repository_id)
        self.repositories.pop(repository_id, None)

    async def create_branch(
        self, repository_id: str, request: CreateBranchRequest
    ) -> GatewayBranch:
        self._call("create_branch", request.name)
        return GatewayBranch(id="b-1", repository_id=repository_id, name=request.name)

    async def delete_branch(self, repository_id: str, branch_name: str) -> None:
        self._call("delete_branch", branch_name)

    async def set_default_branch(self, repository_id: str, branch_name: str) -> None:
        self._call("set_default_branch", branch_name)


def _setup(*broken: str) -> tuple[RepositoryService, InMemoryProjectStore, ProjectRecord]:
    store = InMemoryProjectStore()
    project = store.add_project(ProjectRecord(tenant_id="acme", name="Apollo"), owner_id="ana")
    service = RepositoryService(TransactionCoordinator(), store, DemoGateway(*broken))
    return service, store, project


def _print_result(result: TransactionResult) -> None:
    print(f"  Status           : {result.status.value}")
    print(f"  Completed steps  : {', '.join(result.completed_steps) or '-'}")
    if result.failed_step:
        print(f"  Failed step      : {result.failed_step} [{result.error_kind.value}]")
        print(f"  Compensated steps: {', '.join(result.compensated_steps) or '-'}")


# ---------------------------------------------------------------------------
# Demos
# ---------------------------------------------------------------------------


async def demo_commit() -> None:
    print("\n=== Demo 1: Repository creation commits ===")
    service, store, project = _setup()
    outcome = await service.create_repository(
        "acme", "ana", CreateRepositoryRequest(project_id=project.id, name="payments")
    )
    _print_result(outcome.result)
    assert outcome.result.committed
    assert outcome.repository is not None and outcome.repository.gateway_id == "gw-1"


async def demo_rollback() -> None:
    print("\n=== Demo 2: Gateway failure rolls back the local row ===")
    service, store, project = _setup("create_repository")
    outcome = await service.create_repository(
        "acme", "ana", CreateRepositoryRequest(project_id=project.id, name="payments")
    )
    _print_result(outcome.result)
    assert store.count_repositories() == 0


async def demo_compensation_failure() -> None:
    print("\n=== Demo 3: A compensation that fails ===")
    service, store, project = _setup("get_repository", "delete_repository")
    outcome = await service.create_repository(
        "acme", "ana", CreateRepositoryRequest(project_id=project.id, name="payments")
    )
    _print_result(outcome.result)
    print(f"  Error            : {outcome.result.error}")


async def demo_hub() -> None:
    print("\n=== Demo 4: Room fan-out ===")
    hub = Hub()
    await hub.start()
    ana = ClientSession(user_id=1, username="ana", room_id=10)
    bo = ClientSession(user_id=2, username="bo", room_id=10)
    try:
        await hub.attach(ana)
        await hub.attach(bo)
        await hub.submit(bo, "chat_message", {"message": "hello", "message_id": "m1"})
        await hub.submit(bo, "heartbeat")
        await hub.flush()
        while len(ana.outbound):
            event = ana.outbound.get_nowait()
            print(f"  ana <- {event.type.value} from {event.username}: {event.data}")
        print(f"  Occupants: {[o['username'] for o in hub.room_occupants(10)]}")
    finally:
        await hub.stop()


async def main() -> None:
    await demo_commit()
    await demo_rollback()
    await demo_compensation_failure()
    await demo_hub()


if __name__ == "__main__":
    asyncio.run(main())
