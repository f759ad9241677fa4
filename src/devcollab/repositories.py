"""Repository operations that keep the project store and the Git-gateway in step.

Each public method validates its input first (validation failures never
start a transaction), then runs one coordinated transaction whose local and
remote portions are separate steps with their own inverses.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel

from devcollab.adapters import (
    CreateBranchRequest,
    CreateRepositoryRequest,
    GatewayBranch,
    GatewayRepository,
    GitGateway,
    RepositoryStatus,
    UpdateRepositoryRequest,
)
from devcollab.core import TransactionCoordinator
from devcollab.errors import ConflictError, NotFoundError, ValidationError
from devcollab.models import TransactionResult
from devcollab.store import InMemoryProjectStore, RepositoryRecord

__all__ = ["RepositoryOperation", "RepositoryService"]

logger = logging.getLogger(__name__)


class RepositoryOperation(BaseModel):
    """Outcome of a repository operation."""

    result: TransactionResult
    repository: RepositoryRecord | None = None


class RepositoryService:
    """Create, update and delete repositories across the store and the gateway.

    Args:
        coordinator: Runs the transactions.
        store: The project-service store.
        gateway: The Git-gateway adapter.
    """

    def __init__(
        self,
        coordinator: TransactionCoordinator,
        store: InMemoryProjectStore,
        gateway: GitGateway,
    ) -> None:
        self._coordinator = coordinator
        self._store = store
        self._gateway = gateway

    async def create_repository(
        self, tenant_id: str, user_id: str, request: CreateRepositoryRequest
    ) -> RepositoryOperation:
        """Insert the local row, create the gateway repository, link and confirm.

        Raises:
            ValidationError: Empty name or the user has no access to the project.
            NotFoundError: The project does not exist for *tenant_id*.
        """
        if not request.name.strip():
            raise ValidationError("Repository name must not be empty")
        self._store.get_project(request.project_id, tenant_id)
        if not self._store.has_access(request.project_id, user_id):
            raise ValidationError(
                f"User {user_id} may not create repositories in project {request.project_id}"
            )

        created: dict[str, Any] = {}
        tx = self._coordinator.begin("create_repository")

        def insert_row(session: InMemoryProjectStore) -> RepositoryRecord:
            record = session.insert_repository(
                RepositoryRecord(
                    project_id=request.project_id,
                    tenant_id=tenant_id,
                    name=request.name,
                    description=request.description,
                    visibility=request.visibility,
                    default_branch=request.default_branch or "main",
                )
            )
            created["record"] = record
            return record

        def delete_row(session: InMemoryProjectStore, record: RepositoryRecord) -> None:
            session.delete_repository(record.id)

        async def create_remote() -> GatewayRepository:
            repo = await self._gateway.create_repository(request)
            created["remote"] = repo
            return repo

        async def delete_remote(repo: GatewayRepository) -> None:
            await self._gateway.delete_repository(repo.id)

        def link_row(session: InMemoryProjectStore) -> RepositoryRecord:
            remote: GatewayRepository = created["remote"]
            return session.update_repository(
                created["record"].id,
                gateway_id=remote.id,
                default_branch=remote.default_branch,
                status=RepositoryStatus.active,
            )

        async def confirm_remote() -> GatewayRepository:
            remote: GatewayRepository = created["remote"]
            verified = await self._gateway.get_repository(remote.id)
            if verified.name != request.name:
                raise ConflictError(
                    f"Gateway repository {remote.id} is named {verified.name!r}, "
                    f"expected {request.name!r}"
                )
            return verified

        self._coordinator.add_local_step(
            tx, "insert_repository_row", self._store, insert_row, delete_row
        )
        self._coordinator.add_step(
            tx, "create_gateway_repository", create_remote, delete_remote, remote=True
        )
        self._coordinator.add_local_step(tx, "link_gateway_repository", self._store, link_row)
        self._coordinator.add_step(tx, "confirm_gateway_repository", confirm_remote, remote=True)

        result = await self._coordinator.execute(tx)
        return self._outcome(result, created.get("record"))

    async def update_repository(
        self, tenant_id: str, repository_id: str, request: UpdateRepositoryRequest
    ) -> RepositoryOperation:
        """Update the local row, then the gateway; each restores previous values on rollback."""
        record = self._live_repository(tenant_id, repository_id)
        changes = request.model_dump(exclude_none=True)
        if not changes:
            raise ValidationError("Update request carries no changes")

        previous = {field: getattr(record, field) for field in changes}
        gateway_id = record.gateway_id
        tx = self._coordinator.begin("update_repository")

        def update_row(session: InMemoryProjectStore) -> RepositoryRecord:
            return session.update_repository(repository_id, **changes)

        def restore_row(session: InMemoryProjectStore, _: RepositoryRecord) -> None:
            session.update_repository(repository_id, **previous)

        async def update_remote() -> GatewayRepository:
            return await self._gateway.update_repository(gateway_id, request)

        async def restore_remote(_: GatewayRepository) -> None:
            await self._gateway.update_repository(
                gateway_id, UpdateRepositoryRequest.model_validate(previous)
            )

        self._coordinator.add_local_step(
            tx, "update_repository_row", self._store, update_row, restore_row
        )
        self._coordinator.add_step(
            tx, "update_gateway_repository", update_remote, restore_remote, remote=True
        )

        result = await self._coordinator.execute(tx)
        return self._outcome(result, record)

    async def delete_repository(self, tenant_id: str, repository_id: str) -> RepositoryOperation:
        """Soft-delete the local row, then delete the gateway repository.

        The gateway delete is the last step, so nothing after it can force an
        undo it has no inverse for.
        """
        record = self._live_repository(tenant_id, repository_id)
        gateway_id = record.gateway_id
        tx = self._coordinator.begin("delete_repository")

        def mark_deleted(session: InMemoryProjectStore) -> RepositoryStatus:
            session.update_repository(repository_id, status=RepositoryStatus.deleted)
            return record.status

        def restore_status(session: InMemoryProjectStore, status: RepositoryStatus) -> None:
            session.update_repository(repository_id, status=status)

        async def delete_remote() -> None:
            await self._gateway.delete_repository(gateway_id)

        self._coordinator.add_local_step(
            tx, "mark_repository_deleted", self._store, mark_deleted, restore_status
        )
        self._coordinator.add_step(tx, "delete_gateway_repository", delete_remote, remote=True)

        result = await self._coordinator.execute(tx)
        return self._outcome(result, record)

    async def create_branch(
        self, tenant_id: str, repository_id: str, request: CreateBranchRequest
    ) -> RepositoryOperation:
        """Create a branch on the gateway and bump the local branch count."""
        if not request.name.strip():
            raise ValidationError("Branch name must not be empty")
        record = self._live_repository(tenant_id, repository_id)
        gateway_id = record.gateway_id
        tx = self._coordinator.begin("create_branch")

        async def create_remote() -> GatewayBranch:
            return await self._gateway.create_branch(gateway_id, request)

        async def delete_remote(branch: GatewayBranch) -> None:
            await self._gateway.delete_branch(gateway_id, branch.name)

        def bump_count(session: InMemoryProjectStore) -> RepositoryRecord:
            current = session.get_repository(repository_id)
            return session.update_repository(repository_id, branch_count=current.branch_count + 1)

        def drop_count(session: InMemoryProjectStore, _: RepositoryRecord) -> None:
            current = session.get_repository(repository_id)
            session.update_repository(
                repository_id, branch_count=max(current.branch_count - 1, 0)
            )

        self._coordinator.add_step(
            tx, "create_gateway_branch", create_remote, delete_remote, remote=True
        )
        self._coordinator.add_local_step(
            tx, "increment_branch_count", self._store, bump_count, drop_count
        )

        result = await self._coordinator.execute(tx)
        return self._outcome(result, record)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _live_repository(self, tenant_id: str, repository_id: str) -> RepositoryRecord:
        record = self._store.get_repository(repository_id)
        if record.tenant_id != tenant_id or record.status is RepositoryStatus.deleted:
            raise NotFoundError(f"Repository not found: {repository_id}")
        if record.gateway_id is None:
            raise ValidationError(f"Repository {repository_id} is not linked to the gateway")
        return record

    def _outcome(
        self, result: TransactionResult, record: RepositoryRecord | None
    ) -> RepositoryOperation:
        if not result.committed or record is None:
            logger.warning(
                "%s did not commit: %s (%s)", result.name, result.status.value, result.error
            )
            return RepositoryOperation(result=result)
        return RepositoryOperation(
            result=result, repository=self._store.get_repository(record.id)
        )
