"""Tests for repository operations spanning the store and the gateway."""

from __future__ import annotations

import pytest

from devcollab.adapters import (
    CreateBranchRequest,
    CreateRepositoryRequest,
    RepositoryStatus,
    UpdateRepositoryRequest,
)
from devcollab.errors import (
    CompensationFailure,
    ErrorKind,
    NotFoundError,
    RemoteFailure,
    ValidationError,
)
from devcollab.models import TransactionStatus
from devcollab.repositories import RepositoryService
from devcollab.store import InMemoryProjectStore, ProjectRecord, RepositoryRecord

from .conftest import OWNER_ID, TENANT_ID, FakeGitGateway


async def _create(
    service: RepositoryService, project: ProjectRecord, name: str = "api"
) -> RepositoryRecord:
    outcome = await service.create_repository(
        TENANT_ID, OWNER_ID, CreateRepositoryRequest(project_id=project.id, name=name)
    )
    assert outcome.repository is not None
    return outcome.repository


class TestCreateRepository:
    @pytest.mark.asyncio
    async def test_commit_links_local_row(
        self,
        service: RepositoryService,
        project: ProjectRecord,
        gateway: FakeGitGateway,
    ) -> None:
        outcome = await service.create_repository(
            TENANT_ID,
            OWNER_ID,
            CreateRepositoryRequest(project_id=project.id, name="api", default_branch="trunk"),
        )

        assert outcome.result.status is TransactionStatus.committed
        assert outcome.result.completed_steps == [
            "insert_repository_row",
            "create_gateway_repository",
            "link_gateway_repository",
            "confirm_gateway_repository",
        ]
        repo = outcome.repository
        assert repo is not None
        assert repo.gateway_id == "gw-1"
        assert repo.status is RepositoryStatus.active
        assert repo.default_branch == "trunk"
        assert "gw-1" in gateway.repositories

    @pytest.mark.asyncio
    async def test_gateway_failure_removes_local_row(
        self,
        service: RepositoryService,
        project: ProjectRecord,
        store: InMemoryProjectStore,
        gateway: FakeGitGateway,
        remote_failure: RemoteFailure,
    ) -> None:
        gateway.fail["create_repository"] = remote_failure

        outcome = await service.create_repository(
            TENANT_ID, OWNER_ID, CreateRepositoryRequest(project_id=project.id, name="api")
        )

        assert outcome.result.status is TransactionStatus.aborted
        assert outcome.result.error_kind is ErrorKind.remote_failure
        assert outcome.repository is None
        assert store.count_repositories() == 0

    @pytest.mark.asyncio
    async def test_confirm_mismatch_rolls_back_both_sides(
        self,
        service: RepositoryService,
        project: ProjectRecord,
        store: InMemoryProjectStore,
        gateway: FakeGitGateway,
    ) -> None:
        gateway.name_overrides["gw-1"] = "someone-else"

        outcome = await service.create_repository(
            TENANT_ID, OWNER_ID, CreateRepositoryRequest(project_id=project.id, name="api")
        )

        assert outcome.result.status is TransactionStatus.aborted
        assert outcome.result.error_kind is ErrorKind.conflict
        assert outcome.result.failed_step == "confirm_gateway_repository"
        assert gateway.repositories == {}
        assert store.count_repositories() == 0

    @pytest.mark.asyncio
    async def test_compensation_failure_is_reported(
        self,
        service: RepositoryService,
        project: ProjectRecord,
        store: InMemoryProjectStore,
        gateway: FakeGitGateway,
    ) -> None:
        gateway.fail["get_repository"] = RemoteFailure("gateway flapped")
        gateway.fail["delete_repository"] = RemoteFailure("delete refused")

        outcome = await service.create_repository(
            TENANT_ID, OWNER_ID, CreateRepositoryRequest(project_id=project.id, name="api")
        )

        assert outcome.result.status is TransactionStatus.failed
        assert store.count_repositories() == 0
        assert "gw-1" in gateway.repositories
        with pytest.raises(CompensationFailure, match="create_gateway_repository"):
            outcome.result.raise_for_status()

    @pytest.mark.asyncio
    async def test_validation_happens_before_any_side_effect(
        self, service: RepositoryService, project: ProjectRecord, gateway: FakeGitGateway
    ) -> None:
        with pytest.raises(ValidationError):
            await service.create_repository(
                TENANT_ID, OWNER_ID, CreateRepositoryRequest(project_id=project.id, name="  ")
            )
        with pytest.raises(ValidationError):
            await service.create_repository(
                TENANT_ID, "stranger", CreateRepositoryRequest(project_id=project.id, name="api")
            )
        with pytest.raises(NotFoundError):
            await service.create_repository(
                "other-tenant", OWNER_ID, CreateRepositoryRequest(project_id=project.id, name="api")
            )
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_name_aborts_without_gateway_call(
        self, service: RepositoryService, project: ProjectRecord, gateway: FakeGitGateway
    ) -> None:
        await _create(service, project)
        gateway.calls.clear()

        outcome = await service.create_repository(
            TENANT_ID, OWNER_ID, CreateRepositoryRequest(project_id=project.id, name="api")
        )

        assert outcome.result.error_kind is ErrorKind.conflict
        assert outcome.result.failed_step == "insert_repository_row"
        assert gateway.calls == []


class TestUpdateRepository:
    @pytest.mark.asyncio
    async def test_update_both_sides(
        self, service: RepositoryService, project: ProjectRecord, gateway: FakeGitGateway
    ) -> None:
        repo = await _create(service, project)

        outcome = await service.update_repository(
            TENANT_ID, repo.id, UpdateRepositoryRequest(description="payments API")
        )

        assert outcome.result.committed
        assert outcome.repository is not None
        assert outcome.repository.description == "payments API"
        assert gateway.repositories["gw-1"].description == "payments API"

    @pytest.mark.asyncio
    async def test_gateway_failure_restores_local_values(
        self,
        service: RepositoryService,
        project: ProjectRecord,
        store: InMemoryProjectStore,
        gateway: FakeGitGateway,
        remote_failure: RemoteFailure,
    ) -> None:
        repo = await _create(service, project)
        gateway.fail["update_repository"] = remote_failure

        outcome = await service.update_repository(
            TENANT_ID, repo.id, UpdateRepositoryRequest(description="changed")
        )

        assert outcome.result.status is TransactionStatus.aborted
        assert store.get_repository(repo.id).description is None

    @pytest.mark.asyncio
    async def test_empty_update_rejected(
        self, service: RepositoryService, project: ProjectRecord
    ) -> None:
        repo = await _create(service, project)
        with pytest.raises(ValidationError):
            await service.update_repository(TENANT_ID, repo.id, UpdateRepositoryRequest())


class TestDeleteRepository:
    @pytest.mark.asyncio
    async def test_delete_marks_row_and_removes_remote(
        self,
        service: RepositoryService,
        project: ProjectRecord,
        store: InMemoryProjectStore,
        gateway: FakeGitGateway,
    ) -> None:
        repo = await _create(service, project)

        outcome = await service.delete_repository(TENANT_ID, repo.id)

        assert outcome.result.committed
        assert store.get_repository(repo.id).status is RepositoryStatus.deleted
        assert gateway.repositories == {}

    @pytest.mark.asyncio
    async def test_gateway_failure_restores_status(
        self,
        service: RepositoryService,
        project: ProjectRecord,
        store: InMemoryProjectStore,
        gateway: FakeGitGateway,
        remote_failure: RemoteFailure,
    ) -> None:
        repo = await _create(service, project)
        gateway.fail["delete_repository"] = remote_failure

        outcome = await service.delete_repository(TENANT_ID, repo.id)

        assert outcome.result.status is TransactionStatus.aborted
        assert store.get_repository(repo.id).status is RepositoryStatus.active

    @pytest.mark.asyncio
    async def test_deleted_repository_is_not_found(
        self, service: RepositoryService, project: ProjectRecord
    ) -> None:
        repo = await _create(service, project)
        await service.delete_repository(TENANT_ID, repo.id)
        with pytest.raises(NotFoundError):
            await service.delete_repository(TENANT_ID, repo.id)

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_delete(
        self, service: RepositoryService, project: ProjectRecord
    ) -> None:
        repo = await _create(service, project)
        with pytest.raises(NotFoundError):
            await service.delete_repository("other-tenant", repo.id)


class TestCreateBranch:
    @pytest.mark.asyncio
    async def test_branch_bumps_count(
        self,
        service: RepositoryService,
        project: ProjectRecord,
        gateway: FakeGitGateway,
    ) -> None:
        repo = await _create(service, project)

        outcome = await service.create_branch(
            TENANT_ID, repo.id, CreateBranchRequest(name="feature/login")
        )

        assert outcome.result.committed
        assert outcome.repository is not None
        assert outcome.repository.branch_count == 1
        assert ("gw-1", "feature/login") in gateway.branches

    @pytest.mark.asyncio
    async def test_local_failure_deletes_remote_branch(
        self,
        service: RepositoryService,
        project: ProjectRecord,
        store: InMemoryProjectStore,
        gateway: FakeGitGateway,
    ) -> None:
        repo = await _create(service, project)

        original = store.update_repository

        def broken_update(repository_id: str, **changes):
            if "branch_count" in changes:
                raise RuntimeError("constraint violated")
            return original(repository_id, **changes)

        store.update_repository = broken_update  # type: ignore[method-assign]

        outcome = await service.create_branch(
            TENANT_ID, repo.id, CreateBranchRequest(name="feature/login")
        )

        assert outcome.result.status is TransactionStatus.aborted
        assert outcome.result.error_kind is ErrorKind.local_failure
        assert gateway.branches == {}
        assert gateway.operations()[-1] == "delete_branch"

    @pytest.mark.asyncio
    async def test_empty_branch_name_rejected(
        self, service: RepositoryService, project: ProjectRecord
    ) -> None:
        repo = await _create(service, project)
        with pytest.raises(ValidationError):
            await service.create_branch(TENANT_ID, repo.id, CreateBranchRequest(name=""))
