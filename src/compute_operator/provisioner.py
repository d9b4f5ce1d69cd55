"""Top-level drivers run once per reconcile pass.

A provisioner holds no state between passes: everything it needs is read
from the persisted object and the backends at the start of each pass, and
everything it learns is written back through conditional writes. A pass
either converges, raises Yield to be re-run later, or fails.

CLUSTER PASS:
1. create/resolve identity and network (may Yield)
2. list servers
3. reconcile security groups
4. reconcile servers, unless paused by an eviction (Yield)
Status is persisted from whatever servers were seen and changed, however
the pass ends.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from .allocation import AllocationManager
from .api_models import (
    ProvisioningStatus,
    ResourceWriteMetadata,
    ServerNetworking,
    ServerRecord,
    ServerSpec,
    ServerWrite,
)
from .dependency import DependencyResolver
from .errors import ConsistencyError, Yield
from .eviction import prune_eviction_hint
from .models import ComputeCluster, ComputeInstance, ManagedObject
from .region import RegionAPI, Scope
from .securitygroup import list_security_groups, reconcile_security_groups
from .server import (
    ServerSet,
    encode_user_data,
    list_servers,
    needs_rebuild,
    needs_update,
    reconcile_servers,
)
from .status import apply_instance_status, cluster_status
from .store import ObjectStore, mutate
from .tags import INSTANCE_TAG, has_tag, instance_tags

logger = logging.getLogger(__name__)


class Provisioner(Protocol):
    """Drives one kind of object towards its desired state."""

    async def provision(self, obj: ManagedObject) -> None: ...

    async def deprovision(self, obj: ManagedObject) -> None: ...


class BaseProvisioner:
    """Collaborators and status persistence shared by the provisioners."""

    def __init__(
        self,
        store: ObjectStore,
        region: RegionAPI,
        allocations: AllocationManager,
    ) -> None:
        self._store = store
        self._region = region
        self._allocations = allocations

    def region_client(self) -> RegionAPI:
        """Region client for this pass; tokens are refreshed on demand."""
        return self._region

    async def _persist(self, obj: ManagedObject, fn: Callable[..., None], what: str) -> None:
        """Write a change made during the pass without masking pass errors."""
        try:
            await mutate(self._store, obj.KIND, obj.metadata.id, fn)
        except Exception as e:
            logger.error(
                f"Failed to persist {what}",
                extra={
                    "kind": obj.KIND,
                    "object": obj.metadata.id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

    async def _release_allocation(self, obj: ManagedObject) -> None:
        """Delete the allocation once and forget its reference."""
        if obj.control.allocation_id is None:
            return

        await self._allocations.delete(obj)

        def clear_allocation(current: ManagedObject) -> None:
            current.control.allocation_id = None

        await mutate(self._store, obj.KIND, obj.metadata.id, clear_allocation)


class ClusterProvisioner(BaseProvisioner):
    """Provisions compute clusters."""

    async def _persist_status(
        self,
        cluster: ComputeCluster,
        servers: ServerSet,
        ssh_private_key: str | None,
        deprovisioning: bool = False,
    ) -> None:
        observed_hint = cluster.control.eviction

        def update_status(obj: ComputeCluster) -> None:
            obj.status = cluster_status(obj, servers, ssh_private_key, deprovisioning)

            # Only prune a hint no eviction has touched since this pass read it
            unchanged = obj.control.eviction == observed_hint
            if not deprovisioning and not obj.control.paused and unchanged:
                obj.control.eviction = prune_eviction_hint(obj, servers)

        await self._persist(cluster, update_status, "cluster status")

    async def provision(self, cluster: ComputeCluster) -> None:  # type: ignore[override]
        """Run one provisioning pass.

        Raises:
            Yield: If dependencies are settling, a rebuild is in progress or
                the cluster is paused.
        """
        region = self.region_client()
        resolver = DependencyResolver(self._store, region)

        await resolver.ensure(cluster)
        dependencies = await resolver.resolve(cluster)

        meta = cluster.metadata
        scope = Scope(meta.organization_id, meta.project_id, dependencies.identity_id)

        servers = await list_servers(region, cluster)

        try:
            groups = await list_security_groups(region, cluster)
            await reconcile_security_groups(region, scope, cluster, groups)

            if cluster.control.paused:
                logger.info("Cluster paused, skipping servers", extra={"cluster": meta.name})
                raise Yield("cluster is paused")

            await reconcile_servers(
                region, scope, cluster, servers, groups, dependencies.network_id
            )
        finally:
            await self._persist_status(cluster, servers, dependencies.ssh_private_key)

    async def deprovision(self, cluster: ComputeCluster) -> None:  # type: ignore[override]
        """Tear down a deleted cluster's backend resources.

        Deleting the identity deletes everything inside it. Returns once the
        identity is confirmed gone and the allocation released.

        Raises:
            Yield: Until the identity deletion completes.
        """
        region = self.region_client()

        servers = await list_servers(region, cluster)
        await self._persist_status(cluster, servers, None, deprovisioning=True)

        await DependencyResolver(self._store, region).delete_identity(cluster)
        await self._release_allocation(cluster)

        logger.info("Cluster deprovisioned", extra={"cluster": cluster.metadata.name})


class InstanceProvisioner(BaseProvisioner):
    """Provisions standalone compute instances."""

    def _scope(self, instance: ComputeInstance) -> Scope:
        identity_id = instance.control.identity_id
        if identity_id is None:
            raise ConsistencyError(f"compute instance {instance.metadata.name} has no identity")
        return Scope(instance.metadata.organization_id, instance.metadata.project_id, identity_id)

    async def _find_server(self, instance: ComputeInstance) -> ServerRecord | None:
        servers = await self._region.list_servers(
            instance.metadata.organization_id, (INSTANCE_TAG, instance.metadata.id)
        )
        instance_id = instance.metadata.id
        servers = [s for s in servers if has_tag(s.metadata.tags, INSTANCE_TAG, instance_id)]
        if len(servers) > 1:
            raise ConsistencyError(
                f"compute instance {instance.metadata.name} has {len(servers)} servers"
            )
        return servers[0] if servers else None

    def _server_request(self, instance: ComputeInstance) -> ServerWrite:
        spec = instance.spec
        return ServerWrite(
            metadata=ResourceWriteMetadata(
                name=instance.metadata.name,
                description=f"Server for instance {instance.metadata.name}",
                tags=instance_tags(instance.metadata.id),
            ),
            spec=ServerSpec(
                flavor_id=spec.flavor_id,
                image_id=spec.image_id,
                network_id=spec.network_id,
                networking=ServerNetworking(
                    public_ip=spec.networking.public_ip,
                    security_groups=spec.networking.security_group_ids,
                    allowed_source_addresses=spec.networking.allowed_source_addresses,
                ),
                user_data=encode_user_data(spec.user_data),
            ),
        )

    async def _persist_status(self, instance: ComputeInstance, server: ServerRecord | None) -> None:
        def update_status(obj: ComputeInstance) -> None:
            apply_instance_status(obj, server)

        await self._persist(instance, update_status, "instance status")

    async def provision(self, instance: ComputeInstance) -> None:  # type: ignore[override]
        """Create, update or rebuild the instance's server.

        Raises:
            Yield: While a rebuild is in progress or the server is not yet
                provisioned.
        """
        scope = self._scope(instance)
        server = await self._find_server(instance)
        request = self._server_request(instance)
        extra = {"instance": instance.metadata.name}

        try:
            if server is None:
                logger.info("Creating server", extra=extra)
                server = await self._region.create_server(
                    scope.organization_id, scope.project_id, scope.identity_id, request
                )
            elif server.metadata.deletion_time is not None:
                raise Yield("awaiting server deletion")
            elif needs_rebuild(server.spec, request.spec):
                logger.info("Rebuilding server", extra={**extra, "id": server.metadata.id})
                await self._region.delete_server(
                    scope.organization_id, scope.project_id, scope.identity_id, server.metadata.id
                )
                server = None
                raise Yield("awaiting server deletion for rebuild")
            elif needs_update(server.spec, request.spec):
                logger.info("Updating server", extra={**extra, "id": server.metadata.id})
                await self._region.update_server(
                    scope.organization_id,
                    scope.project_id,
                    scope.identity_id,
                    server.metadata.id,
                    request,
                )
                server = server.model_copy(update={"spec": request.spec})
        finally:
            await self._persist_status(instance, server)

        if server.metadata.provisioning_status != ProvisioningStatus.PROVISIONED.value:
            logger.info("Waiting for server to become ready", extra=extra)
            raise Yield("waiting for server to become ready")

    async def deprovision(self, instance: ComputeInstance) -> None:  # type: ignore[override]
        """Delete the server, then release the allocation once it is gone.

        Raises:
            Yield: Until the server has disappeared from the region.
        """
        server = await self._find_server(instance)

        if server is not None:
            if server.metadata.deletion_time is None:
                scope = self._scope(instance)
                logger.info(
                    "Deleting server",
                    extra={"instance": instance.metadata.name, "id": server.metadata.id},
                )
                await self._region.delete_server(
                    scope.organization_id, scope.project_id, scope.identity_id, server.metadata.id
                )

            def mark_deprovisioning(obj: ComputeInstance) -> None:
                obj.status.provisioning_status = ProvisioningStatus.DEPROVISIONING.value

            await self._persist(instance, mark_deprovisioning, "instance status")
            raise Yield("awaiting server deletion")

        await self._release_allocation(instance)
        logger.info("Instance deprovisioned", extra={"instance": instance.metadata.name})
