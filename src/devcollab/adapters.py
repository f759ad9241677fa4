"""Adapter contracts the transaction coordinator is parameterised over.

Two capability sets:

* :class:`GitGateway`: operations on the external Git-gateway, exposed as
  inverse pairs (create/delete repository, create/delete branch, update with
  the previous values).  Every create returns a stable identifier usable by its
  inverse and every delete of a missing resource succeeds.
* :class:`LocalStore`: the owning service's relational state with a scoped
  local transaction that commits or rolls back on every exit path.

Concrete implementations live in :mod:`devcollab.gateway` and
:mod:`devcollab.store`; tests supply in-memory doubles.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, Field

__all__ = [
    "RepositoryVisibility",
    "RepositoryStatus",
    "GatewayRepository",
    "GatewayBranch",
    "CreateRepositoryRequest",
    "UpdateRepositoryRequest",
    "CreateBranchRequest",
    "GitGateway",
    "LocalStore",
]

T = TypeVar("T")


class RepositoryVisibility(str, Enum):
    public = "public"
    private = "private"
    internal = "internal"


class RepositoryStatus(str, Enum):
    pending = "pending"
    active = "active"
    archived = "archived"
    deleted = "deleted"


class GatewayRepository(BaseModel):
    """Repository as reported by the Git-gateway."""

    id: str = Field(..., description="Stable gateway identifier")
    project_id: str
    name: str
    description: str | None = None
    visibility: RepositoryVisibility = RepositoryVisibility.private
    status: RepositoryStatus = RepositoryStatus.active
    default_branch: str = "main"
    clone_url: str = ""
    branch_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class GatewayBranch(BaseModel):
    id: str
    repository_id: str
    name: str
    commit_sha: str = ""
    is_default: bool = False
    is_protected: bool = False


class CreateRepositoryRequest(BaseModel):
    project_id: str
    name: str
    description: str | None = None
    visibility: RepositoryVisibility = RepositoryVisibility.private
    default_branch: str | None = None
    init_readme: bool = False


class UpdateRepositoryRequest(BaseModel):
    """Partial update; ``None`` fields are left untouched."""

    name: str | None = None
    description: str | None = None
    visibility: RepositoryVisibility | None = None
    default_branch: str | None = None


class CreateBranchRequest(BaseModel):
    name: str
    from_sha: str = ""
    protected: bool | None = None


@runtime_checkable
class GitGateway(Protocol):
    """Operations the coordinator invokes on the external Git-gateway."""

    async def create_repository(self, request: CreateRepositoryRequest) -> GatewayRepository: ...

    async def get_repository(self, repository_id: str) -> GatewayRepository: ...

    async def update_repository(
        self, repository_id: str, request: UpdateRepositoryRequest
    ) -> GatewayRepository: ...

    async def delete_repository(self, repository_id: str) -> None: ...

    async def create_branch(
        self, repository_id: str, request: CreateBranchRequest
    ) -> GatewayBranch: ...

    async def delete_branch(self, repository_id: str, branch_name: str) -> None: ...

    async def set_default_branch(self, repository_id: str, branch_name: str) -> None: ...


@runtime_checkable
class LocalStore(Protocol):
    """The owning service's relational state."""

    async def within_local_transaction(self, fn: Callable[[Any], Awaitable[T] | T]) -> T:
        """Run ``fn(session)`` inside a local transaction.

        Commits when *fn* returns, rolls back when it raises (including
        cancellation), and re-raises.
        """
        ...
