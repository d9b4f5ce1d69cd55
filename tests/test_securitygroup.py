"""Tests for per-pool security groups."""

from __future__ import annotations

from typing import Any

import pytest
from region_mock import IMAGE, ORG, PROJECT, SMALL_FLAVOR, MockRegion

from compute_operator.api_models import (
    PortRange,
    SecurityGroupRule,
    SecurityGroupRulePort,
    SecurityGroupSpec,
    SecurityGroupWrite,
)
from compute_operator.errors import ConsistencyError
from compute_operator.models import ClusterSpec, ComputeCluster, ObjectMetadata
from compute_operator.region import Scope
from compute_operator.securitygroup import (
    list_security_groups,
    reconcile_security_groups,
    required_rules,
    required_security_groups,
    rules_equal,
)
from compute_operator.tags import cluster_tags

IDENTITY = "identity-1"
SCOPE = Scope(ORG, PROJECT, IDENTITY)

SSH = {"protocol": "tcp", "port": 22, "prefixes": ["0.0.0.0/0"]}
HTTP_RANGE = {"protocol": "tcp", "port": 80, "portMax": 443, "prefixes": ["10.0.0.0/8"]}


def make_cluster(**firewalls: list[dict[str, Any]]) -> ComputeCluster:
    """A cluster with one pool per keyword, each with the given firewall."""
    pools = [
        {"name": name, "flavorId": SMALL_FLAVOR, "imageId": IMAGE, "firewall": rules}
        for name, rules in firewalls.items()
    ]
    return ComputeCluster(
        metadata=ObjectMetadata(id="c1", name="c1", organization_id=ORG, project_id=PROJECT),
        spec=ClusterSpec.model_validate({"regionId": "region-1", "workloadPools": pools}),
    )


@pytest.fixture
def region() -> MockRegion:
    region = MockRegion()
    region.add_identity(ORG, PROJECT, IDENTITY)
    return region


async def reconcile(region: MockRegion, cluster: ComputeCluster) -> None:
    groups = await list_security_groups(region, cluster)
    await reconcile_security_groups(region, SCOPE, cluster, groups)


class TestRequiredRules:
    """Tests for firewall translation."""

    def test_one_rule_per_prefix(self) -> None:
        """Test each prefix becomes its own rule."""
        cluster = make_cluster(
            default=[{"protocol": "udp", "port": 53, "prefixes": ["10.0.0.0/8", "172.16.0.0/12"]}]
        )

        rules = required_rules(cluster.spec.workload_pools[0])

        assert [r.cidr for r in rules] == ["10.0.0.0/8", "172.16.0.0/12"]
        assert all(r.port == SecurityGroupRulePort(number=53) for r in rules)

    def test_port_range(self) -> None:
        """Test portMax produces a range."""
        cluster = make_cluster(default=[HTTP_RANGE])

        [rule] = required_rules(cluster.spec.workload_pools[0])

        assert rule.port == SecurityGroupRulePort(range=PortRange(start=80, end=443))

    def test_only_pools_with_rules(self) -> None:
        """Test pools without firewall rules get no group."""
        cluster = make_cluster(web=[SSH], batch=[])

        required = required_security_groups(cluster)

        assert list(required) == ["web"]
        assert required["web"].metadata.name == "c1-web"
        assert required["web"].metadata.tags == cluster_tags("c1", "web")

    def test_rules_equal_ignores_order(self) -> None:
        """Test rule comparison is structural and unordered."""
        a = SecurityGroupRule(
            direction="ingress",
            protocol="tcp",
            cidr="1.0.0.0/8",
            port=SecurityGroupRulePort(number=1),
        )
        b = SecurityGroupRule(
            direction="ingress",
            protocol="tcp",
            cidr="2.0.0.0/8",
            port=SecurityGroupRulePort(number=2),
        )

        assert rules_equal([a, b], [b, a]) is True
        assert rules_equal([a], [a, b]) is False


class TestListSecurityGroups:
    """Tests for recovering groups from tags."""

    @pytest.mark.asyncio
    async def test_missing_pool_tag(self, region: MockRegion) -> None:
        """Test a cluster-tagged group without a pool tag is inconsistent."""
        await region.create_security_group(
            ORG,
            PROJECT,
            IDENTITY,
            SecurityGroupWrite(
                metadata={"name": "stray", "tags": cluster_tags("c1")},
                spec=SecurityGroupSpec(),
            ),
        )

        with pytest.raises(ConsistencyError, match="workload-pool"):
            await list_security_groups(region, make_cluster(default=[SSH]))

    @pytest.mark.asyncio
    async def test_two_groups_for_one_pool(self, region: MockRegion) -> None:
        """Test duplicate ownership of a pool is inconsistent."""
        for name in ("a", "b"):
            await region.create_security_group(
                ORG,
                PROJECT,
                IDENTITY,
                SecurityGroupWrite(
                    metadata={"name": name, "tags": cluster_tags("c1", "default")},
                    spec=SecurityGroupSpec(),
                ),
            )

        with pytest.raises(ConsistencyError, match="already exists"):
            await list_security_groups(region, make_cluster(default=[SSH]))


class TestReconcileSecurityGroups:
    """Tests for reconcile_security_groups against the mock region."""

    @pytest.mark.asyncio
    async def test_create_then_noop(self, region: MockRegion) -> None:
        """Test groups are created once and left alone when unchanged."""
        cluster = make_cluster(web=[SSH])

        await reconcile(region, cluster)
        assert [g.metadata.name for g in region.security_groups.values()] == ["c1-web"]

        region.settle()
        region.reset_calls()
        await reconcile(region, cluster)
        assert region.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_created_group_visible_to_servers(self, region: MockRegion) -> None:
        """Test a group created this pass is added to the working set."""
        cluster = make_cluster(web=[SSH])
        groups = await list_security_groups(region, cluster)

        await reconcile_security_groups(region, SCOPE, cluster, groups)

        assert list(groups) == ["web"]
        assert groups["web"].metadata.id in region.security_groups

    @pytest.mark.asyncio
    async def test_rule_change_updates(self, region: MockRegion) -> None:
        """Test changed rules are updated in place."""
        await reconcile(region, make_cluster(web=[SSH]))
        region.reset_calls()

        await reconcile(region, make_cluster(web=[SSH, HTTP_RANGE]))

        assert [c.method for c in region.mutating_calls()] == ["update_security_group"]
        [group] = region.security_groups.values()
        assert len(group.spec.rules) == 2

    @pytest.mark.asyncio
    async def test_rules_removed_deletes_group(self, region: MockRegion) -> None:
        """Test a pool losing all rules loses its group."""
        await reconcile(region, make_cluster(web=[SSH]))
        region.reset_calls()

        await reconcile(region, make_cluster(web=[]))

        assert [c.method for c in region.mutating_calls()] == ["delete_security_group"]
        region.settle()
        assert region.security_groups == {}
