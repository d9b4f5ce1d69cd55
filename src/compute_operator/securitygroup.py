"""Per-pool security groups.

Security groups are optional per workload pool and there is at most one
per pool; a group exists exactly when its pool declares firewall rules.
Groups identify their owning pool through tags, so the current set is
recovered from a tag-filtered list on every pass and the diff recomputed
from scratch. Nothing is rolled back: a pass that fails half way is
completed by the next one.
"""

from __future__ import annotations

import json
import logging

from .api_models import (
    PortRange,
    ResourceWriteMetadata,
    SecurityGroupRecord,
    SecurityGroupRule,
    SecurityGroupRulePort,
    SecurityGroupSpec,
    SecurityGroupWrite,
    dump,
)
from .errors import ConsistencyError
from .models import ComputeCluster, FirewallRule, WorkloadPool
from .region import RegionAPI, Scope
from .tags import CLUSTER_TAG, cluster_tags, require_pool

logger = logging.getLogger(__name__)


class SecurityGroupSet(dict[str, SecurityGroupRecord]):
    """Security groups of a cluster indexed by pool name."""

    def add(self, pool_name: str, group: SecurityGroupRecord) -> None:
        """Add a group, refusing a second group for the same pool.

        Raises:
            ConsistencyError: If the pool already has a group.
        """
        if pool_name in self:
            raise ConsistencyError(f"security group for pool {pool_name} already exists")
        self[pool_name] = group


async def list_security_groups(region: RegionAPI, cluster: ComputeCluster) -> SecurityGroupSet:
    """Read the cluster's existing security groups.

    Raises:
        ConsistencyError: If a group has no pool tag, or two groups claim
            the same pool.
    """
    groups = await region.list_security_groups(
        cluster.metadata.organization_id, (CLUSTER_TAG, cluster.metadata.id)
    )

    result = SecurityGroupSet()
    for group in groups:
        pool_name = require_pool(group.metadata.tags, f"security group {group.metadata.id}")
        result.add(pool_name, group)

    logger.debug(
        "Read existing security groups",
        extra={"cluster": cluster.metadata.name, "pools": sorted(result)},
    )
    return result


def security_group_name(cluster_name: str, pool_name: str) -> str:
    return f"{cluster_name}-{pool_name}"


def _rule(rule: FirewallRule, prefix: str) -> SecurityGroupRule:
    if rule.port_max is not None:
        port = SecurityGroupRulePort(range=PortRange(start=rule.port, end=rule.port_max))
    else:
        port = SecurityGroupRulePort(number=rule.port)

    return SecurityGroupRule(
        direction=rule.direction, protocol=rule.protocol, cidr=prefix, port=port
    )


def required_rules(pool: WorkloadPool) -> list[SecurityGroupRule]:
    """Translate a pool's firewall into region rules, one per prefix."""
    return [_rule(rule, prefix) for rule in pool.firewall for prefix in rule.prefixes]


def required_security_groups(cluster: ComputeCluster) -> dict[str, SecurityGroupWrite]:
    """Every security group that should exist, indexed by pool name."""
    name = cluster.metadata.name
    return {
        pool.name: SecurityGroupWrite(
            metadata=ResourceWriteMetadata(
                name=security_group_name(name, pool.name),
                description=f"Security group for cluster {name}",
                tags=cluster_tags(cluster.metadata.id, pool.name),
            ),
            spec=SecurityGroupSpec(rules=required_rules(pool)),
        )
        for pool in cluster.spec.workload_pools
        if pool.has_firewall_rules
    }


def _canonical(rules: list[SecurityGroupRule]) -> list[str]:
    return sorted(json.dumps(dump(rule), sort_keys=True) for rule in rules)


def rules_equal(current: list[SecurityGroupRule], required: list[SecurityGroupRule]) -> bool:
    """Compare rule sets structurally, ignoring order."""
    return _canonical(current) == _canonical(required)


async def reconcile_security_groups(
    region: RegionAPI,
    scope: Scope,
    cluster: ComputeCluster,
    groups: SecurityGroupSet,
) -> None:
    """Create, update and delete security groups to match the pools.

    Created groups are added to ``groups`` so servers created later in the
    same pass can reference them; deleted groups are removed from it.
    """
    required = required_security_groups(cluster)
    extra = {"cluster": cluster.metadata.name}

    for pool_name in sorted(required.keys() - groups.keys()):
        request = required[pool_name]
        logger.info(
            "Creating security group",
            extra={**extra, "pool": pool_name, "name": request.metadata.name},
        )
        group = await region.create_security_group(
            scope.organization_id, scope.project_id, scope.identity_id, request
        )
        groups.add(pool_name, group)

    for pool_name in sorted(required.keys() & groups.keys()):
        current = groups[pool_name]
        request = required[pool_name]

        # Only rules are compared; tags and descriptions are not
        if rules_equal(current.spec.rules, request.spec.rules):
            continue

        logger.info(
            "Updating security group",
            extra={**extra, "pool": pool_name, "id": current.metadata.id},
        )
        await region.update_security_group(
            scope.organization_id, scope.project_id, scope.identity_id, current.metadata.id, request
        )
        groups[pool_name] = current.model_copy(update={"spec": request.spec})

    for pool_name in sorted(groups.keys() - required.keys()):
        group = groups[pool_name]
        logger.info(
            "Deleting security group",
            extra={
                **extra,
                "pool": pool_name,
                "id": group.metadata.id,
                "name": group.metadata.name,
            },
        )
        await region.delete_security_group(
            scope.organization_id, scope.project_id, scope.identity_id, group.metadata.id
        )
        del groups[pool_name]
