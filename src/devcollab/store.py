"""In-memory relational store for project-service state.

Implements the :class:`~devcollab.adapters.LocalStore` contract: every
mutation made inside :meth:`InMemoryProjectStore.within_local_transaction`
is committed when the callable returns and rolled back to the pre-transaction
snapshot when it raises.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel, Field

from devcollab.adapters import RepositoryStatus, RepositoryVisibility
from devcollab.compensation import run_action
from devcollab.errors import ConflictError, NotFoundError

__all__ = ["ProjectRecord", "RepositoryRecord", "InMemoryProjectStore"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class ProjectRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    name: str
    key: str = ""
    status: str = "active"


class RepositoryRecord(BaseModel):
    """Project-service view of a repository hosted by the Git-gateway."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    project_id: str
    tenant_id: str
    name: str
    description: str | None = None
    visibility: RepositoryVisibility = RepositoryVisibility.private
    default_branch: str = "main"
    gateway_id: str | None = Field(
        default=None, description="Identifier assigned by the Git-gateway"
    )
    status: RepositoryStatus = RepositoryStatus.pending
    branch_count: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class InMemoryProjectStore:
    """Projects, memberships and repositories held in process memory.

    Local transactions are serialised by an :class:`asyncio.Lock`, which gives
    each one a consistent snapshot to roll back to.
    """

    def __init__(self) -> None:
        self._projects: dict[str, ProjectRecord] = {}
        self._members: set[tuple[str, str]] = set()
        self._repositories: dict[str, RepositoryRecord] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Local transaction
    # ------------------------------------------------------------------

    async def within_local_transaction(
        self, fn: Callable[[InMemoryProjectStore], Awaitable[T] | T]
    ) -> T:
        async with self._lock:
            snapshot = self._snapshot()
            try:
                result = await run_action(fn, self)
            except BaseException:
                self._restore(snapshot)
                logger.debug("Local transaction rolled back")
                raise
            logger.debug("Local transaction committed")
            return result

    def _snapshot(self) -> tuple[Any, ...]:
        return (
            copy.deepcopy(self._projects),
            set(self._members),
            copy.deepcopy(self._repositories),
        )

    def _restore(self, snapshot: tuple[Any, ...]) -> None:
        self._projects, self._members, self._repositories = snapshot

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def add_project(self, project: ProjectRecord, owner_id: str | None = None) -> ProjectRecord:
        self._projects[project.id] = project
        if owner_id is not None:
            self._members.add((project.id, owner_id))
        return project

    def add_member(self, project_id: str, user_id: str) -> None:
        self.get_project(project_id)
        self._members.add((project_id, user_id))

    def get_project(self, project_id: str, tenant_id: str | None = None) -> ProjectRecord:
        """Return the project, scoped to *tenant_id* when given.

        Raises:
            NotFoundError: When no such project exists for the tenant.
        """
        project = self._projects.get(project_id)
        if project is None or (tenant_id is not None and project.tenant_id != tenant_id):
            raise NotFoundError(f"Project not found: {project_id}")
        return project

    def has_access(self, project_id: str, user_id: str) -> bool:
        return (project_id, user_id) in self._members

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    def insert_repository(self, record: RepositoryRecord) -> RepositoryRecord:
        """Insert a repository row.

        Raises:
            ConflictError: When the project already has a live repository
                with the same name.
        """
        for existing in self._repositories.values():
            if (
                existing.project_id == record.project_id
                and existing.name == record.name
                and existing.status is not RepositoryStatus.deleted
            ):
                raise ConflictError(
                    f"Repository {record.name!r} already exists in project {record.project_id}"
                )
        self._repositories[record.id] = record
        return record

    def get_repository(self, repository_id: str) -> RepositoryRecord:
        record = self._repositories.get(repository_id)
        if record is None:
            raise NotFoundError(f"Repository not found: {repository_id}")
        return record

    def update_repository(self, repository_id: str, **changes: Any) -> RepositoryRecord:
        record = self.get_repository(repository_id)
        updated = record.model_copy(update={**changes, "updated_at": _now()})
        self._repositories[repository_id] = updated
        return updated

    def delete_repository(self, repository_id: str) -> RepositoryRecord:
        """Remove a repository row.

        Raises:
            NotFoundError: When the row is already gone.
        """
        record = self._repositories.pop(repository_id, None)
        if record is None:
            raise NotFoundError(f"Repository not found: {repository_id}")
        return record

    def list_repositories(
        self, project_id: str, *, include_deleted: bool = False
    ) -> list[RepositoryRecord]:
        return [
            r
            for r in self._repositories.values()
            if r.project_id == project_id
            and (include_deleted or r.status is not RepositoryStatus.deleted)
        ]

    def count_repositories(self) -> int:
        return len(self._repositories)
