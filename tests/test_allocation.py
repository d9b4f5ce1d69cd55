"""Tests for quota allocations."""

from __future__ import annotations

import pytest
from region_mock import (
    GPU_FLAVOR,
    ORG,
    PROJECT,
    SMALL_FLAVOR,
    MockEnvironment,
    MockIdentity,
    MockRegion,
    cluster_spec,
)

from compute_operator.allocation import (
    AllocationError,
    AllocationManager,
    cluster_allocations,
    instance_allocations,
)
from compute_operator.models import ClusterSpec, ComputeCluster, ObjectMetadata


def _committed(spec: ClusterSpec) -> dict[str, int]:
    region = MockRegion()
    region.add_flavor(SMALL_FLAVOR)
    region.add_flavor(GPU_FLAVOR, gpus=2)
    return {a.kind: a.committed for a in cluster_allocations(spec, region.flavors)}


class TestClusterAllocations:
    """Tests for cluster quota computation."""

    def test_cpu_only(self) -> None:
        """Test replicas are counted as servers."""
        assert _committed(cluster_spec(replicas=3)) == {"clusters": 1, "servers": 3, "gpus": 0}

    def test_gpus_per_replica(self) -> None:
        """Test GPU flavors commit their GPUs for every replica."""
        spec = ClusterSpec.model_validate(
            {
                "regionId": "r",
                "workloadPools": [
                    {"name": "cpu", "replicas": 2, "flavorId": SMALL_FLAVOR, "imageId": "i"},
                    {"name": "gpu", "replicas": 3, "flavorId": GPU_FLAVOR, "imageId": "i"},
                ],
            }
        )

        assert _committed(spec) == {"clusters": 1, "servers": 5, "gpus": 6}

    def test_no_pools(self) -> None:
        """Test an empty cluster still counts as a cluster."""
        assert _committed(ClusterSpec(region_id="r")) == {"clusters": 1, "servers": 0, "gpus": 0}

    def test_unknown_flavor(self) -> None:
        """Test an unknown flavor cannot be allocated."""
        with pytest.raises(AllocationError, match="no matching flavor"):
            _committed(cluster_spec(flavorId="flavor-missing"))

    def test_instance(self) -> None:
        """Test an instance commits one server."""
        assert [(a.kind, a.committed) for a in instance_allocations()] == [("servers", 1)]


class TestAllocationManager:
    """Tests for AllocationManager against the mock identity service."""

    def _cluster(self) -> ComputeCluster:
        return ComputeCluster(
            metadata=ObjectMetadata(
                id="7d2e", name="c1", organization_id=ORG, project_id=PROJECT
            ),
            spec=cluster_spec(),
        )

    @pytest.mark.asyncio
    async def test_lifecycle(self) -> None:
        """Test create, update and delete of one record."""
        identity = MockIdentity()
        manager = AllocationManager(identity)
        cluster = self._cluster()

        cluster.control.allocation_id = await manager.create(cluster, instance_allocations())
        record = identity.allocation_for("7d2e")
        assert record is not None
        assert record.spec.kind == "computecluster"
        assert record.metadata.name == "computecluster-7d2e"

        region = MockRegion()
        region.add_flavor(SMALL_FLAVOR)
        await manager.update(cluster, cluster_allocations(cluster.spec, region.flavors))
        assert identity.committed(cluster.control.allocation_id)["clusters"] == 1

        await manager.delete(cluster)
        assert identity.allocations == {}

    @pytest.mark.asyncio
    async def test_update_without_allocation(self) -> None:
        """Test updating an object with no allocation is an error."""
        manager = AllocationManager(MockIdentity())

        with pytest.raises(AllocationError):
            await manager.update(self._cluster(), instance_allocations())

    @pytest.mark.asyncio
    async def test_delete_without_allocation(self) -> None:
        """Test deleting with no allocation makes no call."""
        identity = MockIdentity()

        await AllocationManager(identity).delete(self._cluster())

        assert identity.calls == []

    @pytest.mark.asyncio
    async def test_delete_already_gone(self) -> None:
        """Test a record deleted elsewhere is not an error."""
        identity = MockIdentity()
        manager = AllocationManager(identity)
        cluster = self._cluster()
        cluster.control.allocation_id = await manager.create(cluster, instance_allocations())
        identity.allocations.clear()

        await manager.delete(cluster)

    @pytest.mark.asyncio
    async def test_cluster_create_reserves_quota(self, env: MockEnvironment) -> None:
        """Test creating a cluster allocates before persisting."""
        cluster = await env.clusters.create(ORG, PROJECT, "c1", cluster_spec(replicas=2))

        assert cluster.control.allocation_id is not None
        assert env.identity.committed(cluster.control.allocation_id) == {
            "clusters": 1,
            "servers": 2,
            "gpus": 0,
        }
