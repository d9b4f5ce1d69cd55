"""Region and identity service mocks for integration testing.

This package provides in-memory implementations of the region and identity
service APIs so the provisioners can be tested end to end without a real
backend.

Key Features:
- In-memory state for servers, security groups, identities and networks
- Asynchronous provisioning simulated with an explicit ``settle()`` step
- Identity deletion cascades to everything created inside it
- Call recording for asserting on backend traffic
- Error injection for testing failure scenarios

Usage:
    from region_mock import MockEnvironment, cluster_spec, ORG, PROJECT

    env = MockEnvironment()
    await env.clusters.create(ORG, PROJECT, "c1", cluster_spec(replicas=3))
    await env.converge_cluster("c1")

    assert len(env.region.live_servers()) == 3
"""

from .calls import MockService, RecordedCall
from .context import (
    GPU_FLAVOR,
    IMAGE,
    LARGE_FLAVOR,
    ORG,
    PROJECT,
    REGION,
    SMALL_FLAVOR,
    MockEnvironment,
    cluster_spec,
)
from .identity import MockIdentity
from .region import MockRegion

__all__ = [
    "GPU_FLAVOR",
    "IMAGE",
    "LARGE_FLAVOR",
    "ORG",
    "PROJECT",
    "REGION",
    "SMALL_FLAVOR",
    "MockEnvironment",
    "MockIdentity",
    "MockRegion",
    "MockService",
    "RecordedCall",
    "cluster_spec",
]
