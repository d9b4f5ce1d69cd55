"""Versioned object storage with optimistic concurrency and watches.

The reconcile core assumes nothing beyond the ``ObjectStore`` protocol:
get, list, conditional write, soft delete with pending-release holds, and
a change stream. Objects are keyed by kind and generated ID; names are
unique within a kind, organization and project.

``InMemoryObjectStore`` is the reference implementation used by the CLI
and the test suite; any backing store honouring the same contract (an
embedded KV store, a SQL table with a version column, an orchestration
platform's API) can replace it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, TypeVar

from .config import MAX_CONFLICT_RETRIES
from .errors import NotFoundError
from .models import ManagedObject, utcnow

logger = logging.getLogger(__name__)

ObjectT = TypeVar("ObjectT", bound=ManagedObject)

# Bounded per-watcher buffer; a watcher that falls this far behind is dropped
MAX_WATCH_QUEUE_SIZE = 10000


class StoreError(Exception):
    """Base class for object store errors."""

    pass


class ObjectNotFoundError(StoreError):
    """Raised when an object does not exist."""

    pass


class ObjectExistsError(StoreError):
    """Raised when creating an object whose key is already taken."""

    pass


class VersionConflictError(StoreError):
    """Raised when a conditional write's expected version is stale."""

    pass


class WatchEventType(str, Enum):
    """Kinds of change delivered on a watch stream."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class WatchEvent:
    """A change to a single object."""

    type: WatchEventType
    kind: str
    id: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind, self.id)


class ObjectStore(Protocol):
    """Storage substrate consumed by the reconcile core."""

    async def get(self, kind: str, object_id: str) -> ManagedObject: ...

    async def list(
        self, kind: str, predicate: Callable[[ManagedObject], bool] | None = None
    ) -> list[ManagedObject]: ...

    async def create(self, obj: ManagedObject) -> ManagedObject: ...

    async def update(self, obj: ManagedObject) -> ManagedObject: ...

    async def delete(self, kind: str, object_id: str) -> None: ...

    async def release(self, kind: str, object_id: str, hold: str) -> None: ...

    def watch(self, kind: str) -> AsyncIterator[WatchEvent]: ...


class InMemoryObjectStore:
    """Process-local object store.

    Objects are deep-copied on the way in and out so callers can never
    mutate stored state except through a conditional write.
    """

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str], ManagedObject] = {}
        self._watchers: dict[str, list[asyncio.Queue[WatchEvent]]] = {}
        self._lock = asyncio.Lock()
        self._next_version = 1

    def _bump(self, obj: ManagedObject) -> None:
        obj.metadata.version = self._next_version
        self._next_version += 1

    def _notify(self, event_type: WatchEventType, kind: str, object_id: str) -> None:
        event = WatchEvent(type=event_type, kind=kind, id=object_id)
        for queue in list(self._watchers.get(kind, [])):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping slow watcher", extra={"kind": kind})
                self._watchers[kind].remove(queue)

    def _name_taken(self, obj: ManagedObject) -> bool:
        meta = obj.metadata
        return any(
            kind == obj.KIND
            and other.metadata.organization_id == meta.organization_id
            and other.metadata.project_id == meta.project_id
            and other.metadata.name == meta.name
            for (kind, _), other in self._objects.items()
        )

    async def get(self, kind: str, object_id: str) -> ManagedObject:
        obj = self._objects.get((kind, object_id))
        if obj is None:
            raise ObjectNotFoundError(f"{kind} {object_id} not found")
        return obj.model_copy(deep=True)

    async def list(
        self, kind: str, predicate: Callable[[ManagedObject], bool] | None = None
    ) -> list[ManagedObject]:
        result = [
            obj.model_copy(deep=True)
            for (k, _), obj in self._objects.items()
            if k == kind and (predicate is None or predicate(obj))
        ]
        return sorted(result, key=lambda obj: (obj.metadata.name, obj.metadata.id))

    async def create(self, obj: ManagedObject) -> ManagedObject:
        """Store a new object.

        Raises:
            ObjectExistsError: If the ID is taken, or the project already
                has an object of that kind and name.
        """
        async with self._lock:
            if obj.key in self._objects or self._name_taken(obj):
                raise ObjectExistsError(f"{obj.KIND} {obj.metadata.name} already exists")

            stored = obj.model_copy(deep=True)
            stored.metadata.creation_time = utcnow()
            stored.metadata.deletion_time = None
            self._bump(stored)
            self._objects[stored.key] = stored

        self._notify(WatchEventType.ADDED, stored.KIND, stored.metadata.id)
        return stored.model_copy(deep=True)

    async def update(self, obj: ManagedObject) -> ManagedObject:
        """Replace an object if its version matches the stored one.

        Deletion state, creation time and name are owned by the store and
        cannot be changed through an update.
        """
        async with self._lock:
            current = self._objects.get(obj.key)
            if current is None:
                raise ObjectNotFoundError(f"{obj.KIND} {obj.metadata.id} not found")
            if current.metadata.version != obj.metadata.version:
                raise VersionConflictError(
                    f"{obj.KIND} {obj.metadata.id}: expected version "
                    f"{obj.metadata.version}, stored {current.metadata.version}"
                )

            stored = obj.model_copy(deep=True)
            stored.metadata.name = current.metadata.name
            stored.metadata.organization_id = current.metadata.organization_id
            stored.metadata.project_id = current.metadata.project_id
            stored.metadata.creation_time = current.metadata.creation_time
            stored.metadata.deletion_time = current.metadata.deletion_time
            self._bump(stored)

            removed = stored.metadata.deleting and not stored.metadata.holds
            if removed:
                del self._objects[stored.key]
            else:
                self._objects[stored.key] = stored

        self._notify(
            WatchEventType.DELETED if removed else WatchEventType.MODIFIED,
            stored.KIND,
            stored.metadata.id,
        )
        return stored.model_copy(deep=True)

    async def delete(self, kind: str, object_id: str) -> None:
        """Request deletion; the object lingers until every hold is released."""
        key = (kind, object_id)
        async with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise ObjectNotFoundError(f"{kind} {object_id} not found")
            if current.metadata.deleting:
                return

            if not current.metadata.holds:
                del self._objects[key]
                removed = True
            else:
                current.metadata.deletion_time = utcnow()
                self._bump(current)
                removed = False

        self._notify(
            WatchEventType.DELETED if removed else WatchEventType.MODIFIED, kind, object_id
        )

    async def release(self, kind: str, object_id: str, hold: str) -> None:
        """Remove a hold, completing a pending deletion if it was the last."""
        key = (kind, object_id)
        async with self._lock:
            current = self._objects.get(key)
            if current is None or hold not in current.metadata.holds:
                return

            current.metadata.holds.remove(hold)
            removed = current.metadata.deleting and not current.metadata.holds
            if removed:
                del self._objects[key]
            else:
                self._bump(current)

        self._notify(
            WatchEventType.DELETED if removed else WatchEventType.MODIFIED, kind, object_id
        )

    async def watch(self, kind: str) -> AsyncIterator[WatchEvent]:
        """Stream changes to objects of a kind.

        Every existing object is replayed as ADDED first so a watcher that
        starts late still sees the full set.
        """
        queue: asyncio.Queue[WatchEvent] = asyncio.Queue(maxsize=MAX_WATCH_QUEUE_SIZE)
        async with self._lock:
            for k, object_id in sorted(self._objects):
                if k == kind:
                    queue.put_nowait(WatchEvent(WatchEventType.ADDED, kind, object_id))
            self._watchers.setdefault(kind, []).append(queue)

        try:
            while True:
                yield await queue.get()
        finally:
            if queue in self._watchers.get(kind, []):
                self._watchers[kind].remove(queue)


async def mutate(
    store: ObjectStore,
    kind: str,
    object_id: str,
    fn: Callable[[ObjectT], None],
    retries: int = MAX_CONFLICT_RETRIES,
) -> ObjectT:
    """Apply ``fn`` to a fresh copy of an object and write it conditionally.

    On a version conflict the object is re-read and ``fn`` re-applied, so
    concurrent writers never overwrite each other's changes blindly. ``fn``
    must be safe to call more than once.

    Raises:
        VersionConflictError: If every attempt conflicted.
        ObjectNotFoundError: If the object does not exist.
    """
    last_error: VersionConflictError | None = None

    for attempt in range(retries):
        obj = await store.get(kind, object_id)
        fn(obj)  # type: ignore[arg-type]
        try:
            return await store.update(obj)  # type: ignore[return-value]
        except VersionConflictError as e:
            last_error = e
            logger.debug(
                "Conditional write conflicted, retrying from fresh read",
                extra={"kind": kind, "object": object_id, "attempt": attempt + 1},
            )

    assert last_error is not None
    raise last_error


async def get_owned(
    store: ObjectStore, object_class: type[ObjectT], org: str, project: str, name: str
) -> ObjectT:
    """Read an object by name on behalf of a caller scoped to one project.

    Objects of the same name in another organization or project are
    invisible.

    Raises:
        NotFoundError: If no such object exists in the project.
    """
    found = await store.list(
        object_class.KIND,
        lambda obj: obj.metadata.organization_id == org
        and obj.metadata.project_id == project
        and obj.metadata.name == name,
    )
    matches = [obj for obj in found if isinstance(obj, object_class)]
    if not matches:
        raise NotFoundError(f"{object_class.KIND} {name} not found")

    return matches[0]
