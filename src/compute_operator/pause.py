"""Persisted pause flag for compute clusters.

While a cluster is paused its provisioner skips server reconciliation, so
servers can be deleted and the spec adjusted without the reconciler
racing to replace them. The flag lives in the cluster's control fields
and is only ever changed through conditional writes.

DESIGN PHILOSOPHY:
- At most one holder: pausing an already paused cluster is a conflict
- Deleting clusters cannot be paused
- All pause/resume events are logged for audit
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .errors import ConflictError
from .models import ComputeCluster
from .store import ObjectStore, mutate

logger = logging.getLogger(__name__)


class PauseController:
    """Sets and clears the pause flag of clusters.

    Usage:
        controller = PauseController(store)

        cluster = await controller.pause(cluster_id, "user@example.com")
        try:
            ...
        finally:
            await controller.resume(cluster_id, "user@example.com")
    """

    def __init__(self, store: ObjectStore) -> None:
        self._store = store

    def _log_audit(
        self,
        event_type: str,
        cluster: ComputeCluster,
        identity: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        logger.info(
            f"AUDIT: {event_type}",
            extra={
                "event_type": event_type,
                "cluster": cluster.metadata.name,
                "cluster_id": cluster.metadata.id,
                "identity": identity,
                "details": details or {},
            },
        )

    async def pause(self, cluster_id: str, initiated_by: str = "unknown") -> ComputeCluster:
        """Set the pause flag.

        Returns:
            The cluster as persisted with the flag set.

        Raises:
            ConflictError: If the cluster is being deleted or already paused.
        """

        def set_paused(cluster: ComputeCluster) -> None:
            name = cluster.metadata.name
            if cluster.metadata.deleting:
                raise ConflictError(f"compute cluster {name} is being deleted")
            if cluster.control.paused:
                raise ConflictError(f"compute cluster {name} is already paused")
            cluster.control.paused = True

        cluster: ComputeCluster = await mutate(
            self._store, ComputeCluster.KIND, cluster_id, set_paused
        )

        self._log_audit("PAUSE_SET", cluster, initiated_by)
        return cluster

    async def resume(
        self,
        cluster_id: str,
        resumed_by: str = "unknown",
        apply: Callable[[ComputeCluster], None] | None = None,
    ) -> ComputeCluster:
        """Clear the pause flag, whatever set it.

        ``apply`` is run on the cluster in the same conditional write, so a
        spec change and the unpause become visible together.
        """

        def clear_paused(cluster: ComputeCluster) -> None:
            if apply is not None:
                apply(cluster)
            cluster.control.paused = False

        cluster: ComputeCluster = await mutate(
            self._store, ComputeCluster.KIND, cluster_id, clear_paused
        )

        self._log_audit("PAUSE_CLEARED", cluster, resumed_by, {"spec_changed": apply is not None})
        return cluster
