"""Async client for the region service.

Covers exactly the endpoints the provisioners consume: servers, security
groups, identities, networks and flavors. Resources are scoped by
organization, project and cloud identity; list endpoints are organization
wide and filtered by tag.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from pydantic import TypeAdapter

from .api_models import (
    Flavor,
    IdentityRecord,
    IdentityWrite,
    NetworkRecord,
    NetworkWrite,
    SecurityGroupRecord,
    SecurityGroupWrite,
    ServerRecord,
    ServerWrite,
    dump,
)
from .tags import tag_query
from .transport import BackendClient

_servers = TypeAdapter(list[ServerRecord])
_security_groups = TypeAdapter(list[SecurityGroupRecord])
_flavors = TypeAdapter(list[Flavor])


class RegionAPI(Protocol):
    """Operations the provisioners need from the region service.

    Delete operations return True when the deletion was accepted and False
    when the resource was already gone.
    """

    async def list_servers(self, org: str, tag: tuple[str, str]) -> list[ServerRecord]: ...

    async def create_server(
        self, org: str, project: str, identity: str, request: ServerWrite
    ) -> ServerRecord: ...

    async def update_server(
        self, org: str, project: str, identity: str, server_id: str, request: ServerWrite
    ) -> None: ...

    async def delete_server(
        self, org: str, project: str, identity: str, server_id: str
    ) -> bool: ...

    async def list_security_groups(
        self, org: str, tag: tuple[str, str]
    ) -> list[SecurityGroupRecord]: ...

    async def create_security_group(
        self, org: str, project: str, identity: str, request: SecurityGroupWrite
    ) -> SecurityGroupRecord: ...

    async def update_security_group(
        self, org: str, project: str, identity: str, group_id: str, request: SecurityGroupWrite
    ) -> None: ...

    async def delete_security_group(
        self, org: str, project: str, identity: str, group_id: str
    ) -> bool: ...

    async def get_identity(self, org: str, project: str, identity: str) -> IdentityRecord: ...

    async def create_identity(
        self, org: str, project: str, request: IdentityWrite
    ) -> IdentityRecord: ...

    async def delete_identity(self, org: str, project: str, identity: str) -> bool: ...

    async def get_network(
        self, org: str, project: str, identity: str, network_id: str
    ) -> NetworkRecord: ...

    async def get_network_by_id(self, org: str, project: str, network_id: str) -> NetworkRecord: ...

    async def create_network(
        self, org: str, project: str, identity: str, request: NetworkWrite
    ) -> NetworkRecord: ...

    async def list_flavors(self, org: str, region: str) -> list[Flavor]: ...


def _project(org: str, project: str) -> str:
    return f"/api/v1/organizations/{org}/projects/{project}"


def _identity(org: str, project: str, identity: str) -> str:
    return f"{_project(org, project)}/identities/{identity}"


class RegionClient(BackendClient):
    """HTTP implementation of RegionAPI."""

    # =========================================================================
    # Servers
    # =========================================================================

    async def list_servers(self, org: str, tag: tuple[str, str]) -> list[ServerRecord]:
        resp = await self._request(
            "GET",
            f"/api/v1/organizations/{org}/servers",
            expected=(200,),
            params={"tag": tag_query(*tag)},
        )
        return _servers.validate_python(resp.json())

    async def create_server(
        self, org: str, project: str, identity: str, request: ServerWrite
    ) -> ServerRecord:
        resp = await self._request(
            "POST",
            f"{_identity(org, project, identity)}/servers",
            expected=(201,),
            json=dump(request),
        )
        return ServerRecord.model_validate(resp.json())

    async def update_server(
        self, org: str, project: str, identity: str, server_id: str, request: ServerWrite
    ) -> None:
        await self._request(
            "PUT",
            f"{_identity(org, project, identity)}/servers/{server_id}",
            expected=(202,),
            json=dump(request),
        )

    async def delete_server(self, org: str, project: str, identity: str, server_id: str) -> bool:
        resp = await self._request(
            "DELETE",
            f"{_identity(org, project, identity)}/servers/{server_id}",
            expected=(202, 404),
        )
        return resp.status_code == 202

    # =========================================================================
    # Security groups
    # =========================================================================

    async def list_security_groups(
        self, org: str, tag: tuple[str, str]
    ) -> list[SecurityGroupRecord]:
        resp = await self._request(
            "GET",
            f"/api/v1/organizations/{org}/securitygroups",
            expected=(200,),
            params={"tag": tag_query(*tag)},
        )
        return _security_groups.validate_python(resp.json())

    async def create_security_group(
        self, org: str, project: str, identity: str, request: SecurityGroupWrite
    ) -> SecurityGroupRecord:
        resp = await self._request(
            "POST",
            f"{_identity(org, project, identity)}/securitygroups",
            expected=(201,),
            json=dump(request),
        )
        return SecurityGroupRecord.model_validate(resp.json())

    async def update_security_group(
        self, org: str, project: str, identity: str, group_id: str, request: SecurityGroupWrite
    ) -> None:
        await self._request(
            "PUT",
            f"{_identity(org, project, identity)}/securitygroups/{group_id}",
            expected=(202,),
            json=dump(request),
        )

    async def delete_security_group(
        self, org: str, project: str, identity: str, group_id: str
    ) -> bool:
        resp = await self._request(
            "DELETE",
            f"{_identity(org, project, identity)}/securitygroups/{group_id}",
            expected=(202, 404),
        )
        return resp.status_code == 202

    # =========================================================================
    # Identities and networks
    # =========================================================================

    async def get_identity(self, org: str, project: str, identity: str) -> IdentityRecord:
        resp = await self._request("GET", _identity(org, project, identity), expected=(200,))
        return IdentityRecord.model_validate(resp.json())

    async def create_identity(
        self, org: str, project: str, request: IdentityWrite
    ) -> IdentityRecord:
        resp = await self._request(
            "POST",
            f"{_project(org, project)}/identities",
            expected=(201,),
            json=dump(request),
        )
        return IdentityRecord.model_validate(resp.json())

    async def delete_identity(self, org: str, project: str, identity: str) -> bool:
        resp = await self._request(
            "DELETE", _identity(org, project, identity), expected=(202, 404)
        )
        return resp.status_code == 202

    async def get_network(
        self, org: str, project: str, identity: str, network_id: str
    ) -> NetworkRecord:
        resp = await self._request(
            "GET",
            f"{_identity(org, project, identity)}/networks/{network_id}",
            expected=(200,),
        )
        return NetworkRecord.model_validate(resp.json())

    async def get_network_by_id(self, org: str, project: str, network_id: str) -> NetworkRecord:
        resp = await self._request(
            "GET", f"{_project(org, project)}/networks/{network_id}", expected=(200,)
        )
        return NetworkRecord.model_validate(resp.json())

    async def create_network(
        self, org: str, project: str, identity: str, request: NetworkWrite
    ) -> NetworkRecord:
        resp = await self._request(
            "POST",
            f"{_identity(org, project, identity)}/networks",
            expected=(201,),
            json=dump(request),
        )
        return NetworkRecord.model_validate(resp.json())

    # =========================================================================
    # Flavors
    # =========================================================================

    async def list_flavors(self, org: str, region: str) -> list[Flavor]:
        resp = await self._request(
            "GET", f"/api/v1/organizations/{org}/regions/{region}/flavors", expected=(200,)
        )
        return _flavors.validate_python(resp.json())


@dataclass(frozen=True)
class Scope:
    """Organization, project and cloud identity a set of resources lives in."""

    organization_id: str
    project_id: str
    identity_id: str
