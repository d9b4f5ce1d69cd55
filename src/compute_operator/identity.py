"""Async clients for the identity service.

The identity service issues the bearer tokens used against the region
service and records the quota allocations charged against each project.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

from pydantic import BaseModel

from .api_models import WIRE_MODEL_CONFIG, AllocationRecord, AllocationWrite, dump
from .errors import BackendStatusError
from .transport import MAX_ERROR_BODY_LENGTH, BackendClient

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth2/v2/token"

# Tokens are refreshed this long before the issuer says they expire
TOKEN_REFRESH_LEEWAY_SECONDS = 60.0


class TokenResponse(BaseModel):
    """OAuth2 token endpoint response."""

    model_config = WIRE_MODEL_CONFIG

    access_token: str
    token_type: str = "Bearer"
    expires_in: float = 3600.0


class TokenIssuer(BackendClient):
    """Issues service tokens using the client credentials grant.

    The controller authenticates with its TLS client certificate, so no
    secret is sent in the request body. Tokens are cached and shared by all
    workers until shortly before they expire.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def get_token(self) -> str:
        async with self._lock:
            if self._token is not None and time.monotonic() < self._expires_at:
                return self._token

            resp = await self.client.post(
                TOKEN_PATH,
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
            if resp.status_code != 200:
                raise BackendStatusError(
                    resp.status_code,
                    f"POST {TOKEN_PATH} expected 200: {resp.text[:MAX_ERROR_BODY_LENGTH]}",
                )

            token = TokenResponse.model_validate(resp.json())
            self._token = token.access_token
            self._expires_at = (
                time.monotonic() + max(token.expires_in - TOKEN_REFRESH_LEEWAY_SECONDS, 0.0)
            )

            logger.info("Issued service token", extra={"expires_in": token.expires_in})
            return self._token

    def invalidate(self) -> None:
        """Drop the cached token so the next call issues a fresh one."""
        self._token = None
        self._expires_at = 0.0


class IdentityAPI(Protocol):
    """Quota allocation operations on the identity service."""

    async def create_allocation(
        self, org: str, project: str, request: AllocationWrite
    ) -> AllocationRecord: ...

    async def update_allocation(
        self, org: str, project: str, allocation_id: str, request: AllocationWrite
    ) -> AllocationRecord: ...

    async def delete_allocation(self, org: str, project: str, allocation_id: str) -> bool: ...


def _allocations(org: str, project: str) -> str:
    return f"/api/v1/organizations/{org}/projects/{project}/allocations"


class IdentityClient(BackendClient):
    """HTTP implementation of IdentityAPI."""

    async def create_allocation(
        self, org: str, project: str, request: AllocationWrite
    ) -> AllocationRecord:
        resp = await self._request(
            "POST", _allocations(org, project), expected=(201,), json=dump(request)
        )
        return AllocationRecord.model_validate(resp.json())

    async def update_allocation(
        self, org: str, project: str, allocation_id: str, request: AllocationWrite
    ) -> AllocationRecord:
        resp = await self._request(
            "PUT",
            f"{_allocations(org, project)}/{allocation_id}",
            expected=(200,),
            json=dump(request),
        )
        return AllocationRecord.model_validate(resp.json())

    async def delete_allocation(self, org: str, project: str, allocation_id: str) -> bool:
        resp = await self._request(
            "DELETE", f"{_allocations(org, project)}/{allocation_id}", expected=(202, 404)
        )
        return resp.status_code == 202
