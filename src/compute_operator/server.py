"""Per-pool servers.

Servers are named deterministically from their pool and replica index, so
the desired set of a pool is computable from its replica count alone and
the diff against the backend needs no extra bookkeeping. The current set
is recovered on every pass from a tag-filtered list.

ORDERING:
- deletes (scale down, removed pools, rebuilds) are issued first, bounding
  peak usage and freeing names about to be reused
- a rebuild ends the pass with Yield; the replacement is created next pass
- in-place updates follow, then creates in ascending index order
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Iterator
from typing import Any

from .api_models import (
    AllowedAddressPair,
    ResourceWriteMetadata,
    ServerNetworking,
    ServerRecord,
    ServerSpec,
    ServerWrite,
    dump,
)
from .errors import Yield
from .models import ComputeCluster, WorkloadPool, utcnow
from .region import RegionAPI, Scope
from .securitygroup import SecurityGroupSet
from .tags import CLUSTER_TAG, POOL_TAG, cluster_tags, find_tag, has_tag

logger = logging.getLogger(__name__)


def server_name(pool_name: str, index: int) -> str:
    return f"{pool_name}-{index}"


def desired_server_names(pool: WorkloadPool, retired: set[str] | None = None) -> list[str]:
    """Names of the servers a pool should have, lowest index first.

    These are the first ``replicas`` names of the pool that have not been
    retired by an eviction. Without retirements this is exactly indices
    ``0..replicas-1``.
    """
    retired = retired or set()
    names: list[str] = []
    index = 0
    while len(names) < pool.replicas:
        name = server_name(pool.name, index)
        if name not in retired:
            names.append(name)
        index += 1
    return names


def encode_user_data(user_data: bytes | None) -> str | None:
    if not user_data:
        return None
    return base64.b64encode(user_data).decode("ascii")


class ServerSet(dict[str, dict[str, ServerRecord]]):
    """Servers of a cluster indexed by pool name, then server name.

    The set is kept current as the pass creates and deletes servers so the
    status written at the end of the pass reflects what was done.
    """

    @classmethod
    def from_servers(cls, cluster_id: str, servers: list[ServerRecord]) -> ServerSet:
        """Index servers by their pool tag.

        Servers not tagged with the cluster, or without a pool tag, are
        not ours to manage and are ignored.
        """
        result = cls()
        for server in servers:
            if not has_tag(server.metadata.tags, CLUSTER_TAG, cluster_id):
                continue
            pool_name = find_tag(server.metadata.tags, POOL_TAG)
            if pool_name is None:
                continue
            result.setdefault(pool_name, {})[server.metadata.name] = server
        return result

    def servers(self) -> Iterator[ServerRecord]:
        for pool in self.values():
            yield from pool.values()

    def find(self, server_id: str) -> tuple[str, ServerRecord] | None:
        """Find a server by backend ID, returning its pool and record."""
        for pool_name, pool in self.items():
            for server in pool.values():
                if server.metadata.id == server_id:
                    return pool_name, server
        return None

    def mark_deleting(self, pool_name: str, name: str) -> None:
        server = self[pool_name][name]
        metadata = server.metadata.model_copy(update={"deletion_time": utcnow()})
        self[pool_name][name] = server.model_copy(update={"metadata": metadata})


async def list_servers(region: RegionAPI, cluster: ComputeCluster) -> ServerSet:
    servers = await region.list_servers(
        cluster.metadata.organization_id, (CLUSTER_TAG, cluster.metadata.id)
    )
    return ServerSet.from_servers(cluster.metadata.id, servers)


def build_server_request(
    cluster: ComputeCluster,
    pool: WorkloadPool,
    name: str,
    network_id: str,
    groups: SecurityGroupSet,
) -> ServerWrite:
    """Create or update request for one server of a pool."""
    group = groups.get(pool.name)

    return ServerWrite(
        metadata=ResourceWriteMetadata(
            name=name,
            description=f"Server for cluster {cluster.metadata.name}",
            tags=cluster_tags(cluster.metadata.id, pool.name),
        ),
        spec=ServerSpec(
            flavor_id=pool.flavor_id,
            image_id=pool.image_id,
            network_id=network_id,
            disk_size=pool.disk_size,
            networking=ServerNetworking(
                public_ip=pool.public_ip,
                security_groups=[group.metadata.id] if group is not None else [],
                allowed_address_pairs=[
                    AllowedAddressPair(cidr=pair.cidr, mac_address=pair.mac_address)
                    for pair in pool.allowed_address_pairs
                ],
            ),
            user_data=encode_user_data(pool.user_data),
        ),
    )


def needs_rebuild(current: ServerSpec, desired: ServerSpec) -> bool:
    """Whether a server must be deleted and recreated to match.

    The region service has no rebuild primitive preserving identity, so
    flavor or boot image changes replace the server. Disk size only
    applies to servers created after it changes.
    """
    return current.flavor_id != desired.flavor_id or current.image_id != desired.image_id


def _canonical_networking(networking: ServerNetworking) -> dict[str, Any]:
    data = dump(networking)
    data["securityGroups"] = sorted(networking.security_groups)
    data["allowedSourceAddresses"] = sorted(networking.allowed_source_addresses)
    data["allowedAddressPairs"] = sorted(
        (pair.cidr, pair.mac_address or "") for pair in networking.allowed_address_pairs
    )
    return data


def needs_update(current: ServerSpec, desired: ServerSpec) -> bool:
    """Whether a server's networking or user data can be updated in place."""
    return (
        _canonical_networking(current.networking) != _canonical_networking(desired.networking)
        or (current.user_data or None) != (desired.user_data or None)
    )


async def _delete(
    region: RegionAPI,
    scope: Scope,
    servers: ServerSet,
    pool_name: str,
    name: str,
    reason: str,
) -> None:
    server = servers[pool_name][name]
    logger.info(
        "Deleting server",
        extra={"pool": pool_name, "server": name, "id": server.metadata.id, "reason": reason},
    )
    await region.delete_server(
        scope.organization_id, scope.project_id, scope.identity_id, server.metadata.id
    )
    servers.mark_deleting(pool_name, name)


async def reconcile_servers(
    region: RegionAPI,
    scope: Scope,
    cluster: ComputeCluster,
    servers: ServerSet,
    groups: SecurityGroupSet,
    network_id: str,
) -> None:
    """Converge every pool's servers on its desired set.

    Servers already being deleted are neither deleted again nor replaced.

    Raises:
        Yield: If a rebuild was started, or a desired name is still held by
            a server being deleted.
        BackendStatusError: If the region service rejects a call.
    """
    hint = cluster.control.eviction
    pools = {pool.name: pool for pool in cluster.spec.workload_pools}

    desired: dict[str, list[str]] = {
        pool.name: desired_server_names(pool, hint.names_for(pool.name) if hint else None)
        for pool in cluster.spec.workload_pools
    }
    requests: dict[str, dict[str, ServerWrite]] = {
        pool_name: {
            name: build_server_request(cluster, pools[pool_name], name, network_id, groups)
            for name in names
        }
        for pool_name, names in desired.items()
    }

    # Scale down and removed pools
    for pool_name in sorted(servers):
        wanted = set(desired.get(pool_name, []))
        for name in sorted(servers[pool_name]):
            server = servers[pool_name][name]
            if server.metadata.deletion_time is None and name not in wanted:
                await _delete(region, scope, servers, pool_name, name, "not desired")

    # Rebuilds
    rebuilding = False
    for pool_name, names in desired.items():
        for name in names:
            server = servers.get(pool_name, {}).get(name)
            if server is None or server.metadata.deletion_time is not None:
                continue
            if needs_rebuild(server.spec, requests[pool_name][name].spec):
                await _delete(region, scope, servers, pool_name, name, "rebuild")
                rebuilding = True

    if rebuilding:
        raise Yield("awaiting server deletion for rebuild")

    # In-place updates
    for pool_name, names in desired.items():
        for name in names:
            server = servers.get(pool_name, {}).get(name)
            if server is None or server.metadata.deletion_time is not None:
                continue
            request = requests[pool_name][name]
            if needs_update(server.spec, request.spec):
                logger.info(
                    "Updating server",
                    extra={"pool": pool_name, "server": name, "id": server.metadata.id},
                )
                await region.update_server(
                    scope.organization_id,
                    scope.project_id,
                    scope.identity_id,
                    server.metadata.id,
                    request,
                )
                servers[pool_name][name] = server.model_copy(update={"spec": request.spec})

    # Creates, lowest index first
    waiting = False
    for pool_name, names in desired.items():
        for name in names:
            server = servers.get(pool_name, {}).get(name)
            if server is not None:
                waiting = waiting or server.metadata.deletion_time is not None
                continue
            logger.info("Creating server", extra={"pool": pool_name, "server": name})
            created = await region.create_server(
                scope.organization_id,
                scope.project_id,
                scope.identity_id,
                requests[pool_name][name],
            )
            servers.setdefault(pool_name, {})[name] = created

    if waiting:
        raise Yield("awaiting deletion of servers occupying desired names")
