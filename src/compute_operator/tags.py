"""Tag-encoded ownership at the region API boundary.

The region service only knows free-form key/value tags, so ownership of
servers and security groups by a cluster and pool is encoded there and
recovered here. Owners are identified by their generated object ID as
the list endpoints span a whole organization. Nothing outside the
provisioners' backend calls should look at raw tags.
"""

from __future__ import annotations

from .api_models import Tag
from .errors import ConsistencyError

CLUSTER_TAG = "compute-cluster"
POOL_TAG = "workload-pool"
INSTANCE_TAG = "compute-instance"


def cluster_tags(cluster_id: str, pool_name: str | None = None) -> list[Tag]:
    """Ownership tags for a resource belonging to a cluster, and optionally a pool."""
    tags = [Tag(name=CLUSTER_TAG, value=cluster_id)]
    if pool_name is not None:
        tags.append(Tag(name=POOL_TAG, value=pool_name))
    return tags


def instance_tags(instance_id: str) -> list[Tag]:
    return [Tag(name=INSTANCE_TAG, value=instance_id)]


def tag_query(name: str, value: str) -> str:
    """Format a tag filter as accepted by the region list endpoints."""
    return f"{name}={value}"


def find_tag(tags: list[Tag], name: str) -> str | None:
    """Get the value of a tag, or None when absent.

    Raises:
        ConsistencyError: If the tag appears more than once.
    """
    values = [tag.value for tag in tags if tag.name == name]
    if len(values) > 1:
        raise ConsistencyError(f"tag {name!r} appears {len(values)} times")
    return values[0] if values else None


def has_tag(tags: list[Tag], name: str, value: str) -> bool:
    return any(tag.name == name and tag.value == value for tag in tags)


def require_pool(tags: list[Tag], resource: str) -> str:
    """Recover the owning pool of a cluster resource.

    Raises:
        ConsistencyError: If the pool tag is missing, empty or duplicated.
    """
    pool = find_tag(tags, POOL_TAG)
    if not pool:
        raise ConsistencyError(f"{resource} has no {POOL_TAG} tag")
    return pool
