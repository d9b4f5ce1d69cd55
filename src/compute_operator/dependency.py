"""Identity and network dependencies of a compute cluster.

Servers can only be created inside a cloud identity and attached to a
network, both of which the region service provisions asynchronously. This
module creates them on first use, records their references in the
cluster's control fields, and waits for them to become usable.

STATE HANDLING:
- unknown / provisioning: not ready yet, Yield and check again later
- provisioned: ready
- anything else: fatal DependencyStatusError, surfaced in status

Each step returns promptly after a single check; nothing here blocks
waiting for the region service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .api_models import (
    IdentityRecord,
    IdentityWrite,
    IdentityWriteSpec,
    NetworkRecord,
    NetworkSpec,
    NetworkWrite,
    ProvisioningStatus,
    ResourceWriteMetadata,
)
from .errors import DependencyStatusError, Yield
from .models import ComputeCluster
from .region import RegionAPI
from .store import ObjectStore, mutate
from .tags import cluster_tags

logger = logging.getLogger(__name__)

PENDING_STATUSES = frozenset(
    {ProvisioningStatus.UNKNOWN.value, ProvisioningStatus.PROVISIONING.value}
)


def check_ready(kind: str, status: str, extra: dict[str, str]) -> None:
    """Classify a dependency's provisioning status.

    Raises:
        Yield: If the dependency is still being provisioned.
        DependencyStatusError: If the status is not one we know how to handle.
    """
    if status == ProvisioningStatus.PROVISIONED.value:
        return

    if status in PENDING_STATUSES:
        logger.info(f"Waiting for {kind} to become ready", extra={**extra, "status": status})
        raise Yield(f"waiting for {kind} to become ready")

    raise DependencyStatusError(kind, status)


def dependency_name(cluster: ComputeCluster) -> str:
    """Name given to the identity and network created for a cluster."""
    return f"compute-cluster-{cluster.metadata.name}"


@dataclass(frozen=True)
class ResolvedDependencies:
    """Provisioned dependencies a reconcile pass may build on."""

    identity: IdentityRecord
    network: NetworkRecord

    @property
    def identity_id(self) -> str:
        return self.identity.metadata.id

    @property
    def network_id(self) -> str:
        return self.network.metadata.id

    @property
    def ssh_private_key(self) -> str | None:
        return self.identity.spec.ssh_private_key


class DependencyResolver:
    """Creates, resolves and tears down a cluster's identity and network."""

    def __init__(self, store: ObjectStore, region: RegionAPI) -> None:
        self._store = store
        self._region = region

    def _log_extra(self, cluster: ComputeCluster) -> dict[str, str]:
        return {
            "cluster": cluster.metadata.name,
            "organization": cluster.metadata.organization_id,
            "project": cluster.metadata.project_id,
        }

    async def ensure(self, cluster: ComputeCluster) -> None:
        """Create whichever dependency is missing, one per pass.

        The reference is persisted before yielding so a retried pass picks
        up the resource instead of creating a duplicate.

        Raises:
            Yield: After creating a dependency, or while the identity a
                network must be created in is still provisioning.
        """
        meta = cluster.metadata
        extra = self._log_extra(cluster)

        if cluster.control.identity_id is None:
            identity = await self._region.create_identity(
                meta.organization_id,
                meta.project_id,
                IdentityWrite(
                    metadata=ResourceWriteMetadata(
                        name=dependency_name(cluster),
                        description=f"Identity for cluster {meta.name}",
                        tags=cluster_tags(meta.id),
                    ),
                    spec=IdentityWriteSpec(region_id=cluster.spec.region_id),
                ),
            )

            def set_identity(obj: ComputeCluster) -> None:
                obj.control.identity_id = identity.metadata.id

            await mutate(self._store, cluster.KIND, meta.id, set_identity)
            logger.info("Created identity", extra={**extra, "identity": identity.metadata.id})
            raise Yield("identity created")

        if cluster.control.network_id is None:
            identity = await self._region.get_identity(
                meta.organization_id, meta.project_id, cluster.control.identity_id
            )
            check_ready("identity", identity.metadata.provisioning_status, extra)

            network = await self._region.create_network(
                meta.organization_id,
                meta.project_id,
                identity.metadata.id,
                NetworkWrite(
                    metadata=ResourceWriteMetadata(
                        name=dependency_name(cluster),
                        description=f"Network for cluster {meta.name}",
                        tags=cluster_tags(meta.id),
                    ),
                    spec=NetworkSpec(
                        prefix=cluster.spec.network.node_prefix,
                        dns_nameservers=cluster.spec.network.dns_nameservers,
                    ),
                ),
            )

            def set_network(obj: ComputeCluster) -> None:
                obj.control.network_id = network.metadata.id

            await mutate(self._store, cluster.KIND, meta.id, set_network)
            logger.info("Created network", extra={**extra, "network": network.metadata.id})
            raise Yield("network created")

    async def resolve(self, cluster: ComputeCluster) -> ResolvedDependencies:
        """Fetch the identity and then the network, both must be provisioned.

        Raises:
            Yield: If either is still provisioning.
            DependencyStatusError: If either reports an unhandled status.
        """
        meta = cluster.metadata
        extra = self._log_extra(cluster)
        identity_id = cluster.control.identity_id
        network_id = cluster.control.network_id

        if identity_id is None or network_id is None:
            raise Yield("dependencies not yet created")

        identity = await self._region.get_identity(
            meta.organization_id, meta.project_id, identity_id
        )
        check_ready("identity", identity.metadata.provisioning_status, extra)

        network = await self._region.get_network(
            meta.organization_id, meta.project_id, identity_id, network_id
        )
        check_ready("network", network.metadata.provisioning_status, extra)

        return ResolvedDependencies(identity=identity, network=network)

    async def delete_identity(self, cluster: ComputeCluster) -> None:
        """Delete the cluster's identity, and with it everything inside it.

        Returns only once the identity is confirmed gone or was never
        created.

        Raises:
            Yield: If the deletion was accepted but has not completed.
        """
        identity_id = cluster.control.identity_id
        if identity_id is None:
            return

        accepted = await self._region.delete_identity(
            cluster.metadata.organization_id, cluster.metadata.project_id, identity_id
        )
        if accepted:
            logger.info(
                "Awaiting identity deletion",
                extra={**self._log_extra(cluster), "identity": identity_id},
            )
            raise Yield("awaiting identity deletion")
