"""Tests for the persisted cluster pause flag."""

from __future__ import annotations

import logging

import pytest
from region_mock import ORG, PROJECT, MockEnvironment, cluster_spec

from compute_operator.errors import ConflictError
from compute_operator.models import ComputeCluster
from compute_operator.pause import PauseController


async def create_cluster(env: MockEnvironment, replicas: int = 1) -> str:
    cluster = await env.clusters.create(ORG, PROJECT, "c1", cluster_spec(replicas=replicas))
    return cluster.metadata.id


class TestPauseController:
    """Tests for PauseController."""

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, env: MockEnvironment) -> None:
        """Test the flag is persisted and cleared."""
        cluster_id = await create_cluster(env)
        controller = PauseController(env.store)

        paused = await controller.pause(cluster_id, "alice")
        assert paused.control.paused
        assert (await env.cluster("c1")).control.paused

        resumed = await controller.resume(cluster_id, "alice")
        assert not resumed.control.paused
        assert not (await env.cluster("c1")).control.paused

    @pytest.mark.asyncio
    async def test_second_pause_conflicts(self, env: MockEnvironment) -> None:
        """Test only one holder may pause a cluster."""
        cluster_id = await create_cluster(env)
        controller = PauseController(env.store)
        await controller.pause(cluster_id)

        with pytest.raises(ConflictError, match="already paused"):
            await controller.pause(cluster_id)

    @pytest.mark.asyncio
    async def test_deleting_cluster_cannot_pause(self, env: MockEnvironment) -> None:
        """Test a cluster being deleted cannot be paused."""
        cluster_id = await create_cluster(env)
        await env.clusters.delete(ORG, PROJECT, "c1")

        with pytest.raises(ConflictError, match="being deleted"):
            await PauseController(env.store).pause(cluster_id)

        assert not (await env.cluster("c1")).control.paused

    @pytest.mark.asyncio
    async def test_resume_applies_change_atomically(self, env: MockEnvironment) -> None:
        """Test a spec change lands in the same write as the unpause."""
        cluster_id = await create_cluster(env, replicas=3)
        controller = PauseController(env.store)
        paused = await controller.pause(cluster_id)

        def shrink(cluster: ComputeCluster) -> None:
            cluster.spec.workload_pools[0].replicas = 2

        resumed = await controller.resume(cluster_id, apply=shrink)

        assert resumed.metadata.version > paused.metadata.version
        assert resumed.spec.workload_pools[0].replicas == 2
        assert not resumed.control.paused

    @pytest.mark.asyncio
    async def test_audit_log(
        self, env: MockEnvironment, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test pause and resume are audited in order."""
        cluster_id = await create_cluster(env)
        controller = PauseController(env.store)

        with caplog.at_level(logging.INFO, logger="compute_operator.pause"):
            await controller.pause(cluster_id, "alice")
            await controller.resume(cluster_id, "bob")

        records = [r for r in caplog.records if r.getMessage().startswith("AUDIT: ")]
        assert [r.getMessage() for r in records] == ["AUDIT: PAUSE_SET", "AUDIT: PAUSE_CLEARED"]
        assert [r.identity for r in records] == ["alice", "bob"]  # type: ignore[attr-defined]
        assert records[0].cluster_id == cluster_id  # type: ignore[attr-defined]
        assert records[1].details == {"spec_changed": False}  # type: ignore[attr-defined]
