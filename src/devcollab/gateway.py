"""HTTP client for the Git-gateway service."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from devcollab.adapters import (
    CreateBranchRequest,
    CreateRepositoryRequest,
    GatewayBranch,
    GatewayRepository,
    UpdateRepositoryRequest,
)
from devcollab.errors import ConflictError, NotFoundError, RemoteFailure, ValidationError

if TYPE_CHECKING:
    from devcollab.config import Settings

__all__ = ["GitGatewayClient"]

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_DEFAULT_TIMEOUT = 30.0


class GitGatewayClient:
    """Async Git-gateway client implementing :class:`~devcollab.adapters.GitGateway`.

    Responses use the gateway envelope ``{"success", "message", "data"}``.
    Status codes map onto the error taxonomy: 404 raises
    :class:`~devcollab.errors.NotFoundError`, 409 raises
    :class:`~devcollab.errors.ConflictError`, 400/422 raise
    :class:`~devcollab.errors.ValidationError`, and anything else (including
    transport errors and timeouts) raises :class:`~devcollab.errors.RemoteFailure`.
    Deletes of a resource the gateway no longer has succeed.

    Args:
        base_url: Gateway root URL, e.g. ``http://git-gateway:8083``.
        api_key: Optional bearer token.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> GitGatewayClient:
        """Build a client from the ``gateway_*`` fields of *settings*."""
        return cls(
            settings.gateway_url,
            api_key=settings.gateway_api_key,
            timeout=settings.gateway_timeout,
            transport=transport,
        )

    async def __aenter__(self) -> GitGatewayClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    async def create_repository(self, request: CreateRepositoryRequest) -> GatewayRepository:
        repo = await self._request_model(
            "POST", "/api/v1/repositories", GatewayRepository, body=request
        )
        logger.info("Repository created on gateway: %s (%s)", repo.name, repo.id)
        return repo

    async def get_repository(self, repository_id: str) -> GatewayRepository:
        return await self._request_model(
            "GET", f"/api/v1/repositories/{repository_id}", GatewayRepository
        )

    async def update_repository(
        self, repository_id: str, request: UpdateRepositoryRequest
    ) -> GatewayRepository:
        repo = await self._request_model(
            "PUT", f"/api/v1/repositories/{repository_id}", GatewayRepository, body=request
        )
        logger.info("Repository updated on gateway: %s", repository_id)
        return repo

    async def delete_repository(self, repository_id: str) -> None:
        await self._delete(f"/api/v1/repositories/{repository_id}")
        logger.info("Repository deleted on gateway: %s", repository_id)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def create_branch(
        self, repository_id: str, request: CreateBranchRequest
    ) -> GatewayBranch:
        branch = await self._request_model(
            "POST",
            f"/api/v1/repositories/{repository_id}/branches",
            GatewayBranch,
            body=request,
        )
        logger.info("Branch created on gateway: %s/%s", repository_id, branch.name)
        return branch

    async def delete_branch(self, repository_id: str, branch_name: str) -> None:
        await self._delete(f"/api/v1/repositories/{repository_id}/branches/{branch_name}")
        logger.info("Branch deleted on gateway: %s/%s", repository_id, branch_name)

    async def set_default_branch(self, repository_id: str, branch_name: str) -> None:
        await self._request(
            "PUT",
            f"/api/v1/repositories/{repository_id}/default-branch",
            json={"branch_name": branch_name},
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _delete(self, path: str) -> None:
        try:
            await self._request("DELETE", path)
        except NotFoundError:
            logger.debug("Gateway resource already absent: %s", path)

    async def _request_model(
        self, method: str, path: str, model: type[M], body: BaseModel | None = None
    ) -> M:
        payload = body.model_dump(mode="json", exclude_none=True) if body is not None else None
        data = await self._request(method, path, json=payload)
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            raise RemoteFailure(f"Unexpected gateway payload for {method} {path}: {exc}") from exc

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        logger.debug("Git gateway request %s %s", method, path)
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise RemoteFailure(f"Gateway timeout on {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise RemoteFailure(f"Gateway request {method} {path} failed: {exc}") from exc

        envelope = _decode(response)
        message = envelope.get("message") or response.reason_phrase
        status = response.status_code
        if status == 404:
            raise NotFoundError(message)
        if status == 409:
            raise ConflictError(message)
        if status in (400, 422):
            raise ValidationError(message)
        if status >= 400:
            raise RemoteFailure(f"Gateway error (status {status}): {message}", status_code=status)
        if envelope and envelope.get("success") is False:
            raise RemoteFailure(f"Gateway request failed: {message}", status_code=status)
        return envelope.get("data")


def _decode(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
