"""Quota allocations charged against a project.

Each cluster or instance owns exactly one allocation record in the
identity service, created with the object, updated whenever its spec
changes and deleted once its backend resources are gone. The reference
to the record lives in the object's control fields.
"""

from __future__ import annotations

import logging

from .api_models import (
    AllocationSpec,
    AllocationWrite,
    Flavor,
    ResourceAllocation,
    ResourceWriteMetadata,
)
from .identity import IdentityAPI
from .models import ClusterSpec, ManagedObject

logger = logging.getLogger(__name__)

ALLOCATION_KINDS: dict[str, str] = {
    "ComputeCluster": "computecluster",
    "ComputeInstance": "computeinstance",
}


class AllocationError(Exception):
    """Raised when allocations cannot be computed for an object."""

    pass


def cluster_allocations(spec: ClusterSpec, flavors: list[Flavor]) -> list[ResourceAllocation]:
    """Quota committed by a cluster.

    The cluster itself counts once, every replica counts as a server, and
    every replica of a GPU flavor commits that flavor's physical GPUs.

    Raises:
        AllocationError: If a pool references a flavor the region does not
            offer. Flavors are validated on create and update, so this
            indicates an internal inconsistency.
    """
    by_id = {flavor.metadata.id: flavor for flavor in flavors}
    servers = 0
    gpus = 0

    for pool in spec.workload_pools:
        flavor = by_id.get(pool.flavor_id)
        if flavor is None:
            raise AllocationError(
                f"no matching flavor {pool.flavor_id} found when generating allocations"
            )

        servers += pool.replicas
        if flavor.spec.gpu is not None:
            gpus += pool.replicas * flavor.spec.gpu.physical_count

    return [
        ResourceAllocation(kind="clusters", committed=1),
        ResourceAllocation(kind="servers", committed=servers),
        ResourceAllocation(kind="gpus", committed=gpus),
    ]


def instance_allocations() -> list[ResourceAllocation]:
    return [ResourceAllocation(kind="servers", committed=1)]


class AllocationManager:
    """Creates, updates and deletes an object's allocation record."""

    def __init__(self, identity: IdentityAPI) -> None:
        self._identity = identity

    def _request(
        self, obj: ManagedObject, allocations: list[ResourceAllocation]
    ) -> AllocationWrite:
        kind = ALLOCATION_KINDS[obj.KIND]
        return AllocationWrite(
            metadata=ResourceWriteMetadata(name=f"{kind}-{obj.metadata.id}"),
            spec=AllocationSpec(kind=kind, id=obj.metadata.id, allocations=allocations),
        )

    async def create(self, obj: ManagedObject, allocations: list[ResourceAllocation]) -> str:
        """Create the allocation, returning its ID for the control fields."""
        meta = obj.metadata
        record = await self._identity.create_allocation(
            meta.organization_id, meta.project_id, self._request(obj, allocations)
        )
        logger.info(
            "Created allocation",
            extra={"kind": obj.KIND, "object": meta.name, "allocation": record.metadata.id},
        )
        return record.metadata.id

    async def update(self, obj: ManagedObject, allocations: list[ResourceAllocation]) -> None:
        """Replace the committed quota.

        Raises:
            AllocationError: If the object has no allocation to update.
        """
        meta = obj.metadata
        allocation_id = obj.control.allocation_id
        if allocation_id is None:
            raise AllocationError(f"{obj.KIND} {meta.name} has no allocation")

        await self._identity.update_allocation(
            meta.organization_id, meta.project_id, allocation_id, self._request(obj, allocations)
        )
        logger.info(
            "Updated allocation",
            extra={"kind": obj.KIND, "object": meta.name, "allocation": allocation_id},
        )

    async def delete(self, obj: ManagedObject) -> None:
        """Delete the allocation; already gone or never created is success."""
        meta = obj.metadata
        allocation_id = obj.control.allocation_id
        if allocation_id is None:
            return

        await self._identity.delete_allocation(meta.organization_id, meta.project_id, allocation_id)
        logger.info(
            "Deleted allocation",
            extra={"kind": obj.KIND, "object": meta.name, "allocation": allocation_id},
        )
