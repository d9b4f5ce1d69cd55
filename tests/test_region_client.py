"""Tests for the region and identity HTTP clients."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from compute_operator.api_models import (
    AllocationSpec,
    AllocationWrite,
    ResourceWriteMetadata,
    ServerSpec,
    ServerWrite,
)
from compute_operator.errors import BackendStatusError
from compute_operator.identity import IdentityClient, TokenIssuer
from compute_operator.region import RegionClient
from compute_operator.tags import CLUSTER_TAG

BASE_URL = "https://region.example.com"
IDENTITY_PATH = "/api/v1/organizations/o/projects/p/identities/i"

SERVER_JSON = {
    "metadata": {
        "id": "server-1",
        "name": "default-0",
        "provisioningStatus": "provisioned",
        "healthStatus": "healthy",
        "tags": [{"name": "compute-cluster", "value": "c1"}],
    },
    "spec": {"flavorId": "f", "imageId": "i", "networkId": "n"},
    "status": {"privateIP": "192.168.0.4"},
}

Handler = Callable[[httpx.Request], httpx.Response]


class Recorder:
    """httpx transport handler returning canned responses."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.requests: list[httpx.Request] = []
        self._responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responses.pop(0)


async def fixed_token() -> str:
    return "secret-token"

class RotatingToken:
    """Token source handing out a new token after each invalidation."""

    def __init__(self) -> None:
        self.generation = 1

    async def __call__(self) -> str:
        return f"token-{self.generation}"

    def invalidate(self) -> None:
        self.generation += 1



def region_client(handler: Handler, **kwargs: Any) -> RegionClient:
    return RegionClient(BASE_URL, transport=httpx.MockTransport(handler), **kwargs)


class TestRegionClient:
    """Tests for RegionClient."""

    @pytest.mark.asyncio
    async def test_list_servers_by_tag(self) -> None:
        """Test the list call filters by tag and parses records."""
        recorder = Recorder(httpx.Response(200, json=[SERVER_JSON]))

        async with region_client(recorder, token_source=fixed_token) as client:
            servers = await client.list_servers("o", (CLUSTER_TAG, "c1"))

        [request] = recorder.requests
        assert request.method == "GET"
        assert request.url.path == "/api/v1/organizations/o/servers"
        assert request.url.params["tag"] == "compute-cluster=c1"
        assert request.headers["Authorization"] == "Bearer secret-token"

        [server] = servers
        assert server.metadata.id == "server-1"
        assert server.status.private_ip == "192.168.0.4"

    @pytest.mark.asyncio
    async def test_create_server_body(self) -> None:
        """Test requests are sent in their camelCase wire form."""
        recorder = Recorder(httpx.Response(201, json=SERVER_JSON))
        request = ServerWrite(
            metadata=ResourceWriteMetadata(name="default-0"),
            spec=ServerSpec(flavor_id="f", image_id="i", network_id="n"),
        )

        async with region_client(recorder) as client:
            await client.create_server("o", "p", "i", request)

        [sent] = recorder.requests
        assert sent.method == "POST"
        assert sent.url.path == f"{IDENTITY_PATH}/servers"
        body = json.loads(sent.content)
        assert body["spec"]["flavorId"] == "f"
        assert "diskSize" not in body["spec"]
        assert "Authorization" not in sent.headers

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("status", "accepted"), [(202, True), (404, False)])
    async def test_delete_status_contract(self, status: int, accepted: bool) -> None:
        """Test deletes report whether they were accepted."""
        recorder = Recorder(httpx.Response(status))

        async with region_client(recorder) as client:
            assert await client.delete_server("o", "p", "i", "server-1") is accepted

    @pytest.mark.asyncio
    async def test_unexpected_status(self) -> None:
        """Test any other code is a backend status error."""
        recorder = Recorder(httpx.Response(500, text="internal error"))

        async with region_client(recorder) as client:
            with pytest.raises(BackendStatusError) as exc_info:
                await client.delete_server("o", "p", "i", "server-1")

        assert exc_info.value.status_code == 500
        assert "internal error" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_get_missing_identity(self) -> None:
        """Test a 404 on a read is surfaced with its code."""
        recorder = Recorder(httpx.Response(404))

        async with region_client(recorder) as client:
            with pytest.raises(BackendStatusError) as exc_info:
                await client.get_identity("o", "p", "i")

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_rejected_token_refreshed(self) -> None:
        """Test a 401 invalidates the token and the call is sent once more."""
        recorder = Recorder(httpx.Response(401), httpx.Response(200, json=[SERVER_JSON]))
        token = RotatingToken()

        async with region_client(
            recorder, token_source=token, on_unauthorized=token.invalidate
        ) as client:
            servers = await client.list_servers("o", (CLUSTER_TAG, "c1"))

        assert len(servers) == 1
        first, second = recorder.requests
        assert first.headers["Authorization"] == "Bearer token-1"
        assert second.headers["Authorization"] == "Bearer token-2"

    @pytest.mark.asyncio
    async def test_rejected_token_retried_once(self) -> None:
        """Test a second 401 is surfaced instead of retried."""
        recorder = Recorder(httpx.Response(401), httpx.Response(401))
        token = RotatingToken()

        async with region_client(
            recorder, token_source=token, on_unauthorized=token.invalidate
        ) as client:
            with pytest.raises(BackendStatusError) as exc_info:
                await client.delete_server("o", "p", "i", "server-1")

        assert exc_info.value.status_code == 401
        assert len(recorder.requests) == 2
        assert token.generation == 2

    @pytest.mark.asyncio
    async def test_unauthorized_without_invalidation(self) -> None:
        """Test a 401 is not retried when nothing can refresh the token."""
        recorder = Recorder(httpx.Response(401))

        async with region_client(recorder, token_source=fixed_token) as client:
            with pytest.raises(BackendStatusError):
                await client.delete_server("o", "p", "i", "server-1")

        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_update_server_accepted(self) -> None:
        """Test updates expect 202."""
        recorder = Recorder(httpx.Response(202))
        request = ServerWrite(
            metadata=ResourceWriteMetadata(name="default-0"),
            spec=ServerSpec(flavor_id="f", image_id="i", network_id="n"),
        )

        async with region_client(recorder) as client:
            await client.update_server("o", "p", "i", "server-1", request)

        assert recorder.requests[0].method == "PUT"
        assert recorder.requests[0].url.path == f"{IDENTITY_PATH}/servers/server-1"

    @pytest.mark.asyncio
    async def test_list_flavors(self) -> None:
        """Test flavors parse GPU details."""
        recorder = Recorder(
            httpx.Response(
                200,
                json=[
                    {
                        "metadata": {"id": "gpu", "name": "gpu"},
                        "spec": {"cpus": 8, "gpu": {"physicalCount": 2}},
                    }
                ],
            )
        )

        async with region_client(recorder) as client:
            [flavor] = await client.list_flavors("o", "r")

        assert recorder.requests[0].url.path == "/api/v1/organizations/o/regions/r/flavors"
        assert flavor.spec.gpu is not None
        assert flavor.spec.gpu.physical_count == 2


class TestIdentityClient:
    """Tests for IdentityClient and TokenIssuer."""

    @pytest.mark.asyncio
    async def test_create_allocation(self) -> None:
        """Test allocations are posted to the project."""
        record = {
            "metadata": {"id": "allocation-1", "name": "computecluster-c1"},
            "spec": {
                "kind": "computecluster",
                "id": "c1",
                "allocations": [{"kind": "servers", "committed": 2}],
            },
        }
        recorder = Recorder(httpx.Response(201, json=record))
        request = AllocationWrite(
            metadata=ResourceWriteMetadata(name="computecluster-c1"),
            spec=AllocationSpec(kind="computecluster", id="c1"),
        )

        client = IdentityClient(BASE_URL, transport=httpx.MockTransport(recorder))
        try:
            created = await client.create_allocation("o", "p", request)
        finally:
            await client.aclose()

        assert recorder.requests[0].url.path == "/api/v1/organizations/o/projects/p/allocations"
        assert created.metadata.id == "allocation-1"
        assert created.spec.allocations[0].committed == 2

    @pytest.mark.asyncio
    async def test_token_cached(self) -> None:
        """Test a token is reused until it nears expiry."""
        recorder = Recorder(
            httpx.Response(200, json={"access_token": "t1", "expires_in": 3600}),
            httpx.Response(200, json={"access_token": "t2", "expires_in": 3600}),
        )
        issuer = TokenIssuer(BASE_URL, transport=httpx.MockTransport(recorder))

        try:
            assert await issuer.get_token() == "t1"
            assert await issuer.get_token() == "t1"
            issuer.invalidate()
            assert await issuer.get_token() == "t2"
        finally:
            await issuer.aclose()

        assert len(recorder.requests) == 2
        assert b"grant_type=client_credentials" in recorder.requests[0].content

    @pytest.mark.asyncio
    async def test_short_lived_token_not_cached(self) -> None:
        """Test a token expiring within the refresh leeway is fetched again."""
        recorder = Recorder(
            httpx.Response(200, json={"access_token": "t1", "expires_in": 30}),
            httpx.Response(200, json={"access_token": "t2", "expires_in": 30}),
        )
        issuer = TokenIssuer(BASE_URL, transport=httpx.MockTransport(recorder))

        try:
            assert await issuer.get_token() == "t1"
            assert await issuer.get_token() == "t2"
        finally:
            await issuer.aclose()

    @pytest.mark.asyncio
    async def test_token_rejected(self) -> None:
        """Test a failed token request raises with the status code."""
        recorder = Recorder(httpx.Response(401, text="unauthorized"))
        issuer = TokenIssuer(BASE_URL, transport=httpx.MockTransport(recorder))

        try:
            with pytest.raises(BackendStatusError) as exc_info:
                await issuer.get_token()
        finally:
            await issuer.aclose()

        assert exc_info.value.status_code == 401
