"""Reconcile scheduler.

Drives the provisioners from the object store's change stream:
1. Watch every managed kind and enqueue the keys of changed objects
2. Workers take keys off the queue and run one pass per key
3. Re-queue with backoff after a Yield or failure, or after the resync
   interval once converged

QUEUE SEMANTICS:
- a key is never processed by two workers at once
- a key added while it is being processed is re-queued when the pass ends
- adding a key that is already queued is a no-op

Status-only writes (the provisioners' own status updates) do not trigger
new passes; only changes to spec, control fields, holds or deletion state
do.

SECURITY: Every pass runs under a deadline so a hung backend call cannot
stall a worker indefinitely.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .api_models import ProvisioningStatus
from .config import Config
from .errors import Yield
from .models import PROVISIONER_HOLD, ComputeCluster, ComputeInstance, ManagedObject, utcnow
from .provisioner import Provisioner
from .store import ObjectNotFoundError, ObjectStore, WatchEventType, mutate

logger = logging.getLogger(__name__)

# Kind and object ID
Key = tuple[str, str]


class ReconcileOutcome(str, Enum):
    """How a reconcile pass ended."""

    CONVERGED = "converged"
    YIELDED = "yielded"
    FAILED = "failed"
    DELETED = "deleted"
    GONE = "gone"


@dataclass
class ReconcileResult:
    """Result of a single reconcile pass."""

    kind: str
    object_id: str
    name: str | None = None
    outcome: ReconcileOutcome = ReconcileOutcome.CONVERGED
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    reason: str | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass did not fail."""
        return self.error is None


class WorkQueue:
    """Deduplicating work queue with per-key mutual exclusion.

    ``dirty`` holds keys waiting to be processed, ``processing`` keys a
    worker currently holds. A key is in the underlying queue at most once.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Key] = asyncio.Queue()
        self._dirty: set[Key] = set()
        self._processing: set[Key] = set()
        self._timers: dict[Key, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return self._queue.qsize()

    def add(self, key: Key) -> None:
        if self._shutting_down or key in self._dirty:
            return

        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    def add_after(self, key: Key, delay: float) -> None:
        """Add a key once ``delay`` seconds have passed.

        An earlier pending add for the same key wins over a later one.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        pending = self._timers.get(key)
        if pending is not None:
            if pending.when() <= due:
                return
            pending.cancel()

        self._timers[key] = loop.call_at(due, self._fire, key)

    def _fire(self, key: Key) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> Key:
        """Wait for a key and mark it as being processed."""
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: Key) -> None:
        """Finish processing a key, re-queuing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.put_nowait(key)

    def is_processing(self, key: Key) -> bool:
        return key in self._processing

    def shutdown(self) -> None:
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


class Backoff:
    """Per-key exponential backoff with jitter."""

    def __init__(self, base_seconds: float, max_seconds: float) -> None:
        self._base = base_seconds
        self._max = max_seconds
        self._failures: dict[Key, int] = {}

    def next_delay(self, key: Key) -> float:
        attempt = self._failures.get(key, 0)
        self._failures[key] = attempt + 1

        delay = min(self._base * (2**attempt), self._max)
        jitter = random.uniform(0, delay * 0.2)
        return min(delay + jitter, self._max)

    def failures(self, key: Key) -> int:
        return self._failures.get(key, 0)

    def reset(self, key: Key) -> None:
        self._failures.pop(key, None)


def desired_state(obj: ManagedObject) -> str:
    """Fingerprint of everything a pass acts on, excluding status and version."""
    data = obj.model_dump(mode="json", exclude={"status"})
    data["metadata"].pop("version", None)
    return json.dumps(data, sort_keys=True)


class Reconciler:
    """Runs provisioners for every managed object until shutdown."""

    def __init__(
        self,
        config: Config,
        store: ObjectStore,
        provisioners: dict[str, Provisioner],
    ) -> None:
        """Initialize the reconciler.

        Args:
            config: Validated controller configuration.
            store: Object store holding the managed objects.
            provisioners: Provisioner for each managed kind.
        """
        self._config = config
        self._store = store
        self._provisioners = provisioners
        self._queue = WorkQueue()
        self._backoff = Backoff(config.backoff_base_seconds, config.backoff_max_seconds)
        self._seen: dict[Key, str] = {}
        self._shutdown_event = asyncio.Event()

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    async def run(self) -> None:
        """Watch, schedule and reconcile until shutdown is requested."""
        logger.info(
            "Starting reconciler",
            extra={
                "kinds": sorted(self._provisioners),
                "workers": self._config.workers,
                "reconcile_timeout_seconds": self._config.reconcile_timeout_seconds,
                "resync_interval_seconds": self._config.resync_interval_seconds,
            },
        )

        tasks = [asyncio.create_task(self._watch(kind)) for kind in self._provisioners]
        tasks += [asyncio.create_task(self._worker()) for _ in range(self._config.workers)]

        try:
            await self._shutdown_event.wait()
        finally:
            self._queue.shutdown()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _watch(self, kind: str) -> None:
        async for event in self._store.watch(kind):
            key = event.key

            if event.type is WatchEventType.DELETED:
                self._seen.pop(key, None)
            else:
                try:
                    obj = await self._store.get(kind, event.id)
                except ObjectNotFoundError:
                    continue

                fingerprint = desired_state(obj)
                if self._seen.get(key) == fingerprint:
                    continue
                self._seen[key] = fingerprint

            self._queue.add(key)

    async def _worker(self) -> None:
        while True:
            key = await self._queue.get()
            try:
                result = await self.reconcile(*key)
            finally:
                self._queue.done(key)
            self._schedule(result)

    def _schedule(self, result: ReconcileResult) -> None:
        key = (result.kind, result.object_id)

        if result.outcome is ReconcileOutcome.CONVERGED:
            self._backoff.reset(key)
            self._queue.add_after(key, self._config.resync_interval_seconds)
        elif result.outcome in (ReconcileOutcome.YIELDED, ReconcileOutcome.FAILED):
            self._queue.add_after(key, self._backoff.next_delay(key))
        else:
            self._backoff.reset(key)

    async def reconcile(self, kind: str, object_id: str) -> ReconcileResult:
        """Run one pass for one object.

        Yield and failures are captured in the result rather than raised.
        """
        result = ReconcileResult(kind=kind, object_id=object_id)

        try:
            obj = await self._store.get(kind, object_id)
        except ObjectNotFoundError:
            result.outcome = ReconcileOutcome.GONE
            result.end_time = datetime.now(UTC)
            return result

        result.name = obj.metadata.name

        provisioner = self._provisioners[kind]

        try:
            async with asyncio.timeout(self._config.reconcile_timeout_seconds):
                if obj.metadata.deleting:
                    await provisioner.deprovision(obj)
                    await self._store.release(kind, object_id, PROVISIONER_HOLD)
                    result.outcome = ReconcileOutcome.DELETED
                else:
                    if PROVISIONER_HOLD not in obj.metadata.holds:
                        obj = await mutate(self._store, kind, object_id, _add_hold)
                    await provisioner.provision(obj)
                    result.outcome = ReconcileOutcome.CONVERGED
        except Yield as y:
            result.outcome = ReconcileOutcome.YIELDED
            result.reason = y.reason
        except TimeoutError as e:
            result.outcome = ReconcileOutcome.FAILED
            result.error = e
            await self._record_error(obj, "reconcile timed out")
        except Exception as e:
            result.outcome = ReconcileOutcome.FAILED
            result.error = e
            await self._record_error(obj, str(e))
        finally:
            result.end_time = datetime.now(UTC)

        self._log_result(result)
        return result

    async def _record_error(self, obj: ManagedObject, message: str) -> None:
        def set_error(current: ComputeCluster | ComputeInstance) -> None:
            current.status.provisioning_status = ProvisioningStatus.ERROR.value
            current.status.message = message
            current.status.updated_at = utcnow()

        try:
            await mutate(self._store, obj.KIND, obj.metadata.id, set_error)
        except Exception as e:
            logger.error(
                "Failed to record reconcile error",
                extra={"kind": obj.KIND, "object": obj.metadata.id, "error": str(e)},
            )

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconcile result with structured data."""
        extra: dict[str, Any] = {
            "kind": result.kind,
            "object": result.object_id,
            "name": result.name,
            "outcome": result.outcome.value,
            "duration_seconds": result.duration_seconds,
        }

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error("Reconcile failed", extra=extra)
        elif result.outcome is ReconcileOutcome.YIELDED:
            extra["reason"] = result.reason
            logger.info("Reconcile yielded", extra=extra)
        else:
            logger.info("Reconcile result", extra=extra)


def _add_hold(obj: ManagedObject) -> None:
    if PROVISIONER_HOLD not in obj.metadata.holds:
        obj.metadata.holds.append(PROVISIONER_HOLD)
