"""Mutation operations on compute clusters.

These run on behalf of a caller and fail synchronously with ConflictError,
InvalidRequestError or NotFoundError. They only ever write the persisted
object; backend resources are left to the reconciler, with the exception
of quota allocations, which are reserved before the object is written so
a project can never run over its quota.
"""

from __future__ import annotations

import logging

from .allocation import AllocationManager, cluster_allocations
from .api_models import Flavor
from .errors import ConflictError, InvalidRequestError
from .eviction import EvictionCoordinator
from .models import PROVISIONER_HOLD, ClusterSpec, ComputeCluster, ObjectMetadata
from .region import RegionAPI
from .saga import Action, Saga
from .store import ObjectExistsError, ObjectStore, get_owned, mutate

logger = logging.getLogger(__name__)


class ClusterService:
    """Create, read, update, delete and evict compute clusters."""

    def __init__(
        self,
        store: ObjectStore,
        region: RegionAPI,
        allocations: AllocationManager,
        evictions: EvictionCoordinator,
    ) -> None:
        self._store = store
        self._region = region
        self._allocations = allocations
        self._evictions = evictions

    async def _flavors(self, org: str, spec: ClusterSpec) -> list[Flavor]:
        """Fetch the region's flavors, checking every pool's flavor exists.

        Raises:
            InvalidRequestError: If a pool names a flavor the region lacks.
        """
        flavors = await self._region.list_flavors(org, spec.region_id)
        known = {flavor.metadata.id for flavor in flavors}

        for pool in spec.workload_pools:
            if pool.flavor_id not in known:
                raise InvalidRequestError(
                    f"workload pool {pool.name} references unknown flavor {pool.flavor_id}"
                )

        return flavors

    async def get(self, org: str, project: str, name: str) -> ComputeCluster:
        return await get_owned(self._store, ComputeCluster, org, project, name)

    async def list(self, org: str, project: str) -> list[ComputeCluster]:
        objects = await self._store.list(
            ComputeCluster.KIND,
            lambda obj: obj.metadata.organization_id == org
            and obj.metadata.project_id == project,
        )
        return [obj for obj in objects if isinstance(obj, ComputeCluster)]

    async def create(
        self,
        org: str,
        project: str,
        name: str,
        spec: ClusterSpec,
        tags: dict[str, str] | None = None,
    ) -> ComputeCluster:
        """Reserve quota for a new cluster, then persist it.

        If the object cannot be written the allocation is deleted again.

        Raises:
            ConflictError: If a cluster of that name exists.
            InvalidRequestError: If a pool references an unknown flavor.
        """
        flavors = await self._flavors(org, spec)

        cluster = ComputeCluster(
            metadata=ObjectMetadata(
                name=name,
                organization_id=org,
                project_id=project,
                holds=[PROVISIONER_HOLD],
                tags=tags or {},
            ),
            spec=spec,
        )
        created: list[ComputeCluster] = []

        async def create_allocation() -> None:
            cluster.control.allocation_id = await self._allocations.create(
                cluster, cluster_allocations(spec, flavors)
            )

        async def delete_allocation() -> None:
            await self._allocations.delete(cluster)

        async def create_object() -> None:
            try:
                obj = await self._store.create(cluster)
            except ObjectExistsError as e:
                raise ConflictError(
                    f"compute cluster {name} already exists in project {project}"
                ) from e
            assert isinstance(obj, ComputeCluster)
            created.append(obj)

        await Saga(
            Action("create allocation", create_allocation, delete_allocation),
            Action("create cluster", create_object),
        ).run()

        logger.info(
            "Created compute cluster",
            extra={
                "cluster": name,
                "id": cluster.metadata.id,
                "organization": org,
                "project": project,
            },
        )
        return created[0]

    async def update(
        self, org: str, project: str, name: str, spec: ClusterSpec
    ) -> ComputeCluster:
        """Replace a cluster's spec, adjusting its allocation first.

        Control fields and status are carried over from the stored object.
        If the write fails the previous allocation is restored.

        Raises:
            NotFoundError: If the cluster does not exist in the project.
            ConflictError: If the cluster is being deleted or evicted.
            InvalidRequestError: If a pool references an unknown flavor.
        """
        current = await self.get(org, project, name)
        if current.metadata.deleting:
            raise ConflictError(f"compute cluster {name} is being deleted")
        if current.control.paused:
            raise ConflictError(f"compute cluster {name} is being evicted")

        flavors = await self._flavors(org, spec)
        updated: list[ComputeCluster] = []

        async def update_allocation() -> None:
            await self._allocations.update(current, cluster_allocations(spec, flavors))

        async def restore_allocation() -> None:
            previous = await self._region.list_flavors(org, current.spec.region_id)
            await self._allocations.update(current, cluster_allocations(current.spec, previous))

        def set_spec(obj: ComputeCluster) -> None:
            if obj.metadata.deleting:
                raise ConflictError(f"compute cluster {name} is being deleted")
            if obj.control.paused:
                raise ConflictError(f"compute cluster {name} is being evicted")
            obj.spec = spec.model_copy(deep=True)

        async def write_object() -> None:
            updated.append(
                await mutate(self._store, ComputeCluster.KIND, current.metadata.id, set_spec)
            )

        await Saga(
            Action("update allocation", update_allocation, restore_allocation),
            Action("update cluster", write_object),
        ).run()

        logger.info(
            "Updated compute cluster",
            extra={"cluster": name, "organization": org, "project": project},
        )
        return updated[0]

    async def delete(self, org: str, project: str, name: str) -> None:
        """Request deletion; repeating the request while it is pending is a no-op.

        Raises:
            NotFoundError: If the cluster does not exist in the project.
        """
        cluster = await self.get(org, project, name)
        if cluster.metadata.deleting:
            return

        await self._store.delete(ComputeCluster.KIND, cluster.metadata.id)
        logger.info(
            "Deleting compute cluster",
            extra={"cluster": name, "organization": org, "project": project},
        )

    async def evict(
        self,
        org: str,
        project: str,
        name: str,
        machine_ids: list[str],
        initiated_by: str = "unknown",
    ) -> None:
        await self._evictions.evict(org, project, name, machine_ids, initiated_by)
