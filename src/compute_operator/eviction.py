"""Eviction of specific machines from a compute cluster.

Ordinary scale down always removes the highest indexed servers of a pool.
Eviction removes the servers a user names instead, which means the
reconciler must be kept from replacing them:

1. resolve the machine IDs against the backend, rejecting the request if
   any is unknown, already deleting, or named twice
2. pause the cluster (halts server reconciliation)
3. decrement the owning pools' replicas and retire the evicted names
4. delete the servers
5. recompute the quota allocation for the new replica counts
6. persist the new spec and retired names, unpausing in the same write

If (4) or (5) fails the spec and retired names are restored, the pause is
cleared and EvictionError reports which servers were already deleted. The
reconciler recreates those against the restored replica counts.

Retired names are skipped when choosing a pool's desired names, so the
remaining servers keep their names. A retired name is forgotten once its
server is gone and its index lies beyond every desired index of the pool,
at which point forgetting it changes nothing.
"""

from __future__ import annotations

import logging

from .allocation import AllocationManager, cluster_allocations
from .errors import ConflictError, EvictionError, InvalidRequestError
from .models import ClusterSpec, ComputeCluster, EvictedServer, EvictionHint
from .pause import PauseController
from .region import RegionAPI
from .server import ServerSet, desired_server_names, list_servers
from .store import ObjectStore, get_owned

logger = logging.getLogger(__name__)


def _index(name: str) -> int | None:
    _, _, suffix = name.rpartition("-")
    return int(suffix) if suffix.isdigit() else None


def prune_eviction_hint(cluster: ComputeCluster, servers: ServerSet) -> EvictionHint | None:
    """Drop retired names that no longer influence desired names.

    Returns:
        The hint to persist, None when nothing remains retired.
    """
    hint = cluster.control.eviction
    if hint is None:
        return None

    present = {server.metadata.id for server in servers.servers()}
    kept: list[EvictedServer] = []

    for entry in hint.servers:
        if entry.id in present:
            kept.append(entry)
            continue

        pool = cluster.spec.get_pool(entry.pool)
        if pool is None:
            continue

        desired = desired_server_names(pool, hint.names_for(pool.name))
        highest = max((_index(name) or 0 for name in desired), default=-1)
        index = _index(entry.name)
        if index is not None and index < highest:
            kept.append(entry)

    return EvictionHint(servers=kept) if kept else None


class EvictionCoordinator:
    """Runs the pause, delete, adjust, unpause protocol for one cluster."""

    def __init__(
        self,
        store: ObjectStore,
        region: RegionAPI,
        allocations: AllocationManager,
        pauses: PauseController,
    ) -> None:
        self._store = store
        self._region = region
        self._allocations = allocations
        self._pauses = pauses

    async def evict(
        self,
        org: str,
        project: str,
        name: str,
        machine_ids: list[str],
        initiated_by: str = "unknown",
    ) -> None:
        """Delete the named machines and shrink their pools to match.

        Raises:
            NotFoundError: If the cluster does not exist in the project.
            ConflictError: If the cluster is being deleted or an eviction is
                already in flight.
            InvalidRequestError: If a machine ID is missing, deleting,
                duplicated, or not a desired member of its pool.
            EvictionError: If deletion or the allocation update failed after
                the cluster was paused.
        """
        cluster = await get_owned(self._store, ComputeCluster, org, project, name)

        if cluster.metadata.deleting:
            raise ConflictError(f"compute cluster {name} is being deleted")
        if cluster.control.paused:
            raise ConflictError(f"compute cluster {name} is being evicted")

        if not machine_ids:
            raise InvalidRequestError("no machine IDs given")
        if len(set(machine_ids)) != len(machine_ids):
            raise InvalidRequestError("machine IDs must be unique")

        servers = await list_servers(self._region, cluster)
        hint = cluster.control.eviction or EvictionHint()
        targets: list[EvictedServer] = []

        for machine_id in machine_ids:
            found = servers.find(machine_id)
            if found is None or found[1].metadata.deletion_time is not None:
                raise InvalidRequestError(f"machine {machine_id} cannot be resolved")

            pool_name, server = found
            pool = cluster.spec.get_pool(pool_name)
            if pool is None or server.metadata.name not in desired_server_names(
                pool, hint.names_for(pool_name)
            ):
                raise InvalidRequestError(f"machine {machine_id} is already being removed")

            targets.append(EvictedServer(id=machine_id, name=server.metadata.name, pool=pool_name))

        identity_id = cluster.control.identity_id
        if identity_id is None:
            raise ConflictError(f"compute cluster {name} has no identity")

        previous_spec = cluster.spec.model_copy(deep=True)
        previous_hint = (
            cluster.control.eviction.model_copy(deep=True) if cluster.control.eviction else None
        )

        cluster_id = cluster.metadata.id
        cluster = await self._pauses.pause(cluster_id, initiated_by)

        updated_spec = cluster.spec.model_copy(deep=True)
        for target in targets:
            pool = updated_spec.get_pool(target.pool)
            if pool is None or pool.replicas < 1:
                await self._pauses.resume(cluster_id, initiated_by)
                raise ConflictError(
                    f"workload pool {target.pool} of compute cluster {name} changed "
                    "during eviction"
                )
            pool.replicas -= 1
        updated_hint = EvictionHint(servers=hint.servers + targets)

        extra = {"cluster": name, "cluster_id": cluster_id, "organization": org, "project": project}
        deleted: list[str] = []

        try:
            for target in targets:
                await self._region.delete_server(org, project, identity_id, target.id)
                deleted.append(target.id)
                logger.info(
                    "Evicted server", extra={**extra, "server": target.name, "id": target.id}
                )

            flavors = await self._region.list_flavors(org, updated_spec.region_id)
            allocating = cluster.model_copy(update={"spec": updated_spec})
            await self._allocations.update(allocating, cluster_allocations(updated_spec, flavors))
        except Exception as e:
            logger.error(
                "Eviction failed, restoring cluster",
                extra={**extra, "error": str(e), "deleted": deleted},
            )

            def restore(obj: ComputeCluster) -> None:
                obj.spec = previous_spec
                obj.control.eviction = previous_hint

            await self._pauses.resume(cluster_id, initiated_by, apply=restore)
            raise EvictionError(e, deleted) from e

        def commit(obj: ComputeCluster) -> None:
            obj.spec = _with_replicas(obj.spec, updated_spec)
            obj.control.eviction = updated_hint

        await self._pauses.resume(cluster_id, initiated_by, apply=commit)
        logger.info("Eviction complete", extra={**extra, "machines": machine_ids})


def _with_replicas(current: ClusterSpec, updated: ClusterSpec) -> ClusterSpec:
    """Apply updated replica counts to the stored spec."""
    result = current.model_copy(deep=True)
    for pool in result.workload_pools:
        target = updated.get_pool(pool.name)
        if target is not None:
            pool.replicas = target.replicas
    return result
