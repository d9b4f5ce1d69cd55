"""Projection of observed backend state into object status."""

from __future__ import annotations

from .api_models import HealthStatus, ProvisioningStatus, ServerRecord
from .models import (
    ClusterStatus,
    ComputeCluster,
    ComputeInstance,
    MachineStatus,
    PoolStatus,
    utcnow,
)
from .server import ServerSet


def machine_status(server: ServerRecord) -> MachineStatus:
    provisioning = server.metadata.provisioning_status
    if server.metadata.deletion_time is not None:
        provisioning = ProvisioningStatus.DEPROVISIONING.value

    return MachineStatus(
        id=server.metadata.id,
        hostname=server.metadata.name,
        image_id=server.spec.image_id,
        flavor_id=server.spec.flavor_id,
        private_ip=server.status.private_ip,
        public_ip=server.status.public_ip,
        provisioning_status=provisioning,
        health_status=server.metadata.health_status,
    )


def _aggregate_health(machines: list[MachineStatus]) -> str:
    health = {m.health_status for m in machines}
    if not machines or health == {HealthStatus.HEALTHY.value}:
        return HealthStatus.HEALTHY.value
    if HealthStatus.ERROR.value in health or HealthStatus.DEGRADED.value in health:
        return HealthStatus.DEGRADED.value
    return HealthStatus.UNKNOWN.value


def cluster_status(
    cluster: ComputeCluster,
    servers: ServerSet,
    ssh_private_key: str | None,
    deprovisioning: bool = False,
) -> ClusterStatus:
    """Build cluster status from the servers seen (and changed) this pass.

    Pools are reported in spec order followed by any pools still holding
    servers after removal from the spec. The cluster is provisioned once
    every pool has exactly its desired number of provisioned machines.
    """
    pool_names = [pool.name for pool in cluster.spec.workload_pools]
    pool_names += sorted(set(servers) - set(pool_names))

    pools: list[PoolStatus] = []
    converged = True
    for name in pool_names:
        machines = [machine_status(s) for _, s in sorted(servers.get(name, {}).items())]
        pool = cluster.spec.get_pool(name)
        replicas = pool.replicas if pool is not None else 0

        provisioned = [
            m for m in machines if m.provisioning_status == ProvisioningStatus.PROVISIONED.value
        ]
        if len(provisioned) != replicas or len(machines) != replicas:
            converged = False

        pools.append(PoolStatus(name=name, replicas=replicas, machines=machines))

    all_machines = [m for pool in pools for m in pool.machines]

    if deprovisioning:
        provisioning_status = ProvisioningStatus.DEPROVISIONING.value
    elif converged:
        provisioning_status = ProvisioningStatus.PROVISIONED.value
    else:
        provisioning_status = ProvisioningStatus.PROVISIONING.value

    return ClusterStatus(
        provisioning_status=provisioning_status,
        health_status=_aggregate_health(all_machines),
        message=None,
        ssh_private_key=ssh_private_key,
        workload_pools=pools,
        updated_at=utcnow(),
    )


def apply_instance_status(instance: ComputeInstance, server: ServerRecord | None) -> None:
    """Copy a server's addresses, power state and health into instance status."""
    status = instance.status
    status.updated_at = utcnow()

    if server is None:
        status.provisioning_status = ProvisioningStatus.PROVISIONING.value
        status.health_status = HealthStatus.UNKNOWN.value
        status.private_ip = None
        status.public_ip = None
        status.power_state = None
        return

    status.provisioning_status = server.metadata.provisioning_status
    status.health_status = server.metadata.health_status
    status.private_ip = server.status.private_ip
    status.public_ip = server.status.public_ip
    status.power_state = server.status.power_state
    status.message = None
