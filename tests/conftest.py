"""Shared test fixtures for devcollab tests."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import pytest
import pytest_asyncio

from devcollab.adapters import (
    CreateBranchRequest,
    CreateRepositoryRequest,
    GatewayBranch,
    GatewayRepository,
    UpdateRepositoryRequest,
)
from devcollab.core import TransactionCoordinator
from devcollab.errors import NotFoundError, RemoteFailure
from devcollab.hub import Hub
from devcollab.repositories import RepositoryService
from devcollab.session import ClientSession, ConnectionClosed
from devcollab.store import InMemoryProjectStore, ProjectRecord

TENANT_ID = "tenant-1"
OWNER_ID = "user-1"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeGitGateway:
    """In-memory Git-gateway with per-operation fault injection.

    ``fail[operation] = exc`` makes the next calls of *operation* raise *exc*.
    With ``strict_deletes`` set, deleting a missing resource raises
    :class:`NotFoundError` instead of succeeding silently.
    """

    def __init__(self) -> None:
        self.repositories: dict[str, GatewayRepository] = {}
        self.branches: dict[tuple[str, str], GatewayBranch] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail: dict[str, BaseException] = {}
        self.strict_deletes = False
        self.name_overrides: dict[str, str] = {}
        self._next_id = 0

    def _enter(self, operation: str, target: str) -> None:
        self.calls.append((operation, target))
        exc = self.fail.get(operation)
        if exc is not None:
            raise exc

    async def create_repository(self, request: CreateRepositoryRequest) -> GatewayRepository:
        self._enter("create_repository", request.name)
        self._next_id += 1
        repo = GatewayRepository(
            id=f"gw-{self._next_id}",
            project_id=request.project_id,
            name=request.name,
            description=request.description,
            visibility=request.visibility,
            default_branch=request.default_branch or "main",
        )
        self.repositories[repo.id] = repo
        return repo

    async def get_repository(self, repository_id: str) -> GatewayRepository:
        self._enter("get_repository", repository_id)
        repo = self.repositories.get(repository_id)
        if repo is None:
            raise NotFoundError(f"gateway repository {repository_id} not found")
        if repository_id in self.name_overrides:
            return repo.model_copy(update={"name": self.name_overrides[repository_id]})
        return repo

    async def update_repository(
        self, repository_id: str, request: UpdateRepositoryRequest
    ) -> GatewayRepository:
        self._enter("update_repository", repository_id)
        repo = self.repositories.get(repository_id)
        if repo is None:
            raise NotFoundError(f"gateway repository {repository_id} not found")
        updated = repo.model_copy(update=request.model_dump(exclude_none=True))
        self.repositories[repository_id] = updated
        return updated

    async def delete_repository(self, repository_id: str) -> None:
        self._enter("delete_repository", repository_id)
        if self.repositories.pop(repository_id, None) is None and self.strict_deletes:
            raise NotFoundError(f"gateway repository {repository_id} not found")

    async def create_branch(
        self, repository_id: str, request: CreateBranchRequest
    ) -> GatewayBranch:
        self._enter("create_branch", f"{repository_id}/{request.name}")
        if repository_id not in self.repositories:
            raise NotFoundError(f"gateway repository {repository_id} not found")
        branch = GatewayBranch(
            id=f"br-{len(self.branches) + 1}",
            repository_id=repository_id,
            name=request.name,
            commit_sha=request.from_sha,
        )
        self.branches[(repository_id, request.name)] = branch
        return branch

    async def delete_branch(self, repository_id: str, branch_name: str) -> None:
        self._enter("delete_branch", f"{repository_id}/{branch_name}")
        if self.branches.pop((repository_id, branch_name), None) is None and self.strict_deletes:
            raise NotFoundError(f"branch {branch_name} not found")

    async def set_default_branch(self, repository_id: str, branch_name: str) -> None:
        self._enter("set_default_branch", f"{repository_id}/{branch_name}")
        repo = self.repositories[repository_id]
        self.repositories[repository_id] = repo.model_copy(
            update={"default_branch": branch_name}
        )

    def operations(self) -> list[str]:
        return [operation for operation, _ in self.calls]


class FakeTransport:
    """Scripted connection for the session pumps.

    Feed inbound frames with :meth:`feed`; :meth:`disconnect` makes the next
    receive raise :class:`ConnectionClosed`.
    """

    def __init__(self) -> None:
        self.inbound: asyncio.Queue[str | BaseException] = asyncio.Queue()
        self.sent: list[str] = []
        self.pings = 0
        self.closed = False
        self.send_delay = 0.0

    def feed(self, *frames: str) -> None:
        for frame in frames:
            self.inbound.put_nowait(frame)

    def disconnect(self) -> None:
        self.inbound.put_nowait(ConnectionClosed(1000, "peer went away"))

    async def receive_text(self) -> str:
        item = await self.inbound.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send_text(self, text: str) -> None:
        if self.closed:
            raise ConnectionClosed(reason="transport closed")
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        self.sent.append(text)

    async def ping(self) -> None:
        self.pings += 1

    async def close(self, code: int = 1000) -> None:
        self.closed = True


def drain(session: ClientSession) -> list:
    """Pop every event currently queued for *session*."""
    events = []
    while len(session.outbound):
        events.append(session.outbound.get_nowait())
    return events


# ---------------------------------------------------------------------------
# Coordinator fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def coordinator() -> TransactionCoordinator:
    return TransactionCoordinator()


@pytest.fixture()
def store() -> InMemoryProjectStore:
    return InMemoryProjectStore()


@pytest.fixture()
def project(store: InMemoryProjectStore) -> ProjectRecord:
    return store.add_project(
        ProjectRecord(tenant_id=TENANT_ID, name="Apollo", key="APL"), owner_id=OWNER_ID
    )


@pytest.fixture()
def gateway() -> FakeGitGateway:
    return FakeGitGateway()


@pytest.fixture()
def service(
    coordinator: TransactionCoordinator,
    store: InMemoryProjectStore,
    gateway: FakeGitGateway,
) -> RepositoryService:
    return RepositoryService(coordinator, store, gateway)


@pytest.fixture()
def remote_failure() -> RemoteFailure:
    return RemoteFailure("gateway unavailable", status_code=503)


# ---------------------------------------------------------------------------
# Hub fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def hub() -> AsyncIterator[Hub]:
    running = Hub(command_queue_size=64)
    await running.start()
    try:
        yield running
    finally:
        await running.stop()


@pytest.fixture()
def make_session():
    """Factory for sessions: ``make_session(user_id, room_id, username=None)``."""

    def factory(
        user_id: int, room_id: int = 1, username: str | None = None, queue_size: int = 256
    ) -> ClientSession:
        return ClientSession(
            user_id=user_id,
            username=username or f"user{user_id}",
            room_id=room_id,
            avatar=f"https://avatars.example/{user_id}.png",
            queue_size=queue_size,
        )

    return factory
