"""Tests for cluster mutation operations."""

from __future__ import annotations

import pytest
from region_mock import GPU_FLAVOR, ORG, PROJECT, MockEnvironment, cluster_spec

from compute_operator.errors import (
    BackendStatusError,
    ConflictError,
    InvalidRequestError,
    NotFoundError,
)
from compute_operator.models import PROVISIONER_HOLD
from compute_operator.store import VersionConflictError
from compute_operator.tags import CLUSTER_TAG


class TestCreate:
    """Tests for ClusterService.create()."""

    @pytest.mark.asyncio
    async def test_create(self, env: MockEnvironment) -> None:
        """Test the cluster is persisted with its hold and tags."""
        cluster = await env.clusters.create(
            ORG, PROJECT, "c1", cluster_spec(), tags={"team": "ml"}
        )

        assert cluster.metadata.holds == [PROVISIONER_HOLD]
        assert cluster.metadata.tags == {"team": "ml"}
        assert [c.metadata.name for c in await env.clusters.list(ORG, PROJECT)] == ["c1"]
        assert await env.clusters.list(ORG, "project-2") == []

    @pytest.mark.asyncio
    async def test_same_name_in_two_projects(self, env: MockEnvironment) -> None:
        """Test each project owns its cluster names and servers independently."""
        first = await env.clusters.create(ORG, PROJECT, "c1", cluster_spec(replicas=2))
        second = await env.clusters.create(ORG, "project-2", "c1", cluster_spec())

        assert first.metadata.id != second.metadata.id
        listed = await env.clusters.list(ORG, "project-2")
        assert [c.metadata.id for c in listed] == [second.metadata.id]

        await env.converge_cluster("c1")
        await env.converge_cluster("c1", project="project-2")

        assert len(env.region.live_servers((CLUSTER_TAG, first.metadata.id))) == 2
        assert len(env.region.live_servers((CLUSTER_TAG, second.metadata.id))) == 1

        await env.clusters.update(ORG, "project-2", "c1", cluster_spec(replicas=0))
        await env.converge_cluster("c1", project="project-2")

        assert len(env.region.live_servers((CLUSTER_TAG, first.metadata.id))) == 2
        assert env.region.live_servers((CLUSTER_TAG, second.metadata.id)) == []

    @pytest.mark.asyncio
    async def test_unknown_flavor(self, env: MockEnvironment) -> None:
        """Test pools must reference flavors of the region."""
        with pytest.raises(InvalidRequestError, match="flavor-missing"):
            await env.clusters.create(ORG, PROJECT, "c1", cluster_spec(flavorId="flavor-missing"))

        assert env.identity.calls_to("create_allocation") == []

    @pytest.mark.asyncio
    async def test_duplicate_releases_allocation(self, env: MockEnvironment) -> None:
        """Test a failed write deletes the allocation it reserved."""
        await env.clusters.create(ORG, PROJECT, "c1", cluster_spec())

        with pytest.raises(ConflictError, match="already exists"):
            await env.clusters.create(ORG, PROJECT, "c1", cluster_spec(replicas=5))

        assert len(env.identity.allocations) == 1
        assert env.identity.calls_to("delete_allocation") != []

    @pytest.mark.asyncio
    async def test_allocation_failure_writes_nothing(self, env: MockEnvironment) -> None:
        """Test nothing is persisted when quota cannot be reserved."""
        env.identity.fail_next("create_allocation", BackendStatusError(403, "quota exceeded"))

        with pytest.raises(BackendStatusError):
            await env.clusters.create(ORG, PROJECT, "c1", cluster_spec())

        with pytest.raises(NotFoundError):
            await env.clusters.get(ORG, PROJECT, "c1")


class TestUpdate:
    """Tests for ClusterService.update()."""

    @pytest.mark.asyncio
    async def test_update_adjusts_allocation(self, env: MockEnvironment) -> None:
        """Test spec and quota change together."""
        created = await env.clusters.create(ORG, PROJECT, "c1", cluster_spec())

        updated = await env.clusters.update(
            ORG, PROJECT, "c1", cluster_spec(replicas=2, flavorId=GPU_FLAVOR)
        )

        assert updated.spec.workload_pools[0].replicas == 2
        assert updated.control.allocation_id == created.control.allocation_id
        assert created.control.allocation_id is not None
        assert env.identity.committed(created.control.allocation_id) == {
            "clusters": 1,
            "servers": 2,
            "gpus": 4,
        }

    @pytest.mark.asyncio
    async def test_failed_write_restores_allocation(
        self, env: MockEnvironment, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test the previous quota is restored when the write fails."""
        created = await env.clusters.create(ORG, PROJECT, "c1", cluster_spec(replicas=1))
        assert created.control.allocation_id is not None

        async def failing_update(obj: object) -> object:
            raise VersionConflictError("always stale")

        monkeypatch.setattr(env.store, "update", failing_update)

        with pytest.raises(VersionConflictError):
            await env.clusters.update(ORG, PROJECT, "c1", cluster_spec(replicas=4))

        assert env.identity.committed(created.control.allocation_id)["servers"] == 1

    @pytest.mark.asyncio
    async def test_update_while_paused(self, env: MockEnvironment) -> None:
        """Test spec changes are refused during an eviction."""
        await env.clusters.create(ORG, PROJECT, "c1", cluster_spec())
        await env.pauses.pause((await env.cluster("c1")).metadata.id)

        with pytest.raises(ConflictError, match="evicted"):
            await env.clusters.update(ORG, PROJECT, "c1", cluster_spec(replicas=2))

        assert env.identity.calls_to("update_allocation") == []

    @pytest.mark.asyncio
    async def test_update_while_deleting(self, env: MockEnvironment) -> None:
        """Test a cluster being deleted cannot be updated."""
        await env.clusters.create(ORG, PROJECT, "c1", cluster_spec())
        await env.clusters.delete(ORG, PROJECT, "c1")

        with pytest.raises(ConflictError, match="deleted"):
            await env.clusters.update(ORG, PROJECT, "c1", cluster_spec(replicas=2))

    @pytest.mark.asyncio
    async def test_update_missing(self, env: MockEnvironment) -> None:
        """Test updating an unknown cluster."""
        with pytest.raises(NotFoundError):
            await env.clusters.update(ORG, PROJECT, "missing", cluster_spec())


class TestDelete:
    """Tests for ClusterService.delete()."""

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, env: MockEnvironment) -> None:
        """Test repeated deletes leave one pending deletion."""
        await env.clusters.create(ORG, PROJECT, "c1", cluster_spec())

        await env.clusters.delete(ORG, PROJECT, "c1")
        first = await env.cluster("c1")
        await env.clusters.delete(ORG, PROJECT, "c1")
        second = await env.cluster("c1")

        assert first.metadata.deleting
        assert second.metadata.deletion_time == first.metadata.deletion_time

    @pytest.mark.asyncio
    async def test_delete_other_project(self, env: MockEnvironment) -> None:
        """Test another project's cluster cannot be deleted."""
        await env.clusters.create(ORG, PROJECT, "c1", cluster_spec())

        with pytest.raises(NotFoundError):
            await env.clusters.delete(ORG, "project-2", "c1")

        assert not (await env.cluster("c1")).metadata.deleting
