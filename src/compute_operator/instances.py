"""Mutation operations on standalone compute instances.

An instance is attached to an existing network chosen by the caller. The
network must belong to the caller's project; it supplies the region and
the cloud identity the instance's server is created in.
"""

from __future__ import annotations

import logging

from .allocation import AllocationManager, instance_allocations
from .api_models import NetworkRecord
from .errors import BackendStatusError, ConflictError, InvalidRequestError
from .models import PROVISIONER_HOLD, ComputeInstance, InstanceSpec, ObjectMetadata
from .region import RegionAPI
from .saga import Action, Saga
from .store import ObjectExistsError, ObjectStore, get_owned, mutate

logger = logging.getLogger(__name__)


class InstanceService:
    """Create, read, update and delete compute instances."""

    def __init__(
        self,
        store: ObjectStore,
        region: RegionAPI,
        allocations: AllocationManager,
    ) -> None:
        self._store = store
        self._region = region
        self._allocations = allocations

    async def _network(self, org: str, project: str, network_id: str) -> NetworkRecord:
        """Look up the network an instance attaches to.

        Raises:
            InvalidRequestError: If the network does not exist, lives in
                another project, or is not yet bound to an identity.
        """
        try:
            network = await self._region.get_network_by_id(org, project, network_id)
        except BackendStatusError as e:
            if e.status_code == 404:
                raise InvalidRequestError(f"network {network_id} not found") from e
            raise

        meta = network.metadata
        if meta.organization_id != org or meta.project_id != project:
            raise InvalidRequestError(f"network {network_id} not found")
        if network.status.identity_id is None or network.status.region_id is None:
            raise InvalidRequestError(f"network {network_id} is not ready")

        return network

    async def get(self, org: str, project: str, name: str) -> ComputeInstance:
        return await get_owned(self._store, ComputeInstance, org, project, name)

    async def create(
        self,
        org: str,
        project: str,
        name: str,
        spec: InstanceSpec,
        tags: dict[str, str] | None = None,
    ) -> ComputeInstance:
        """Reserve quota for a new instance, then persist it.

        Raises:
            ConflictError: If an instance of that name exists.
            InvalidRequestError: If the network is unusable.
        """
        network = await self._network(org, project, spec.network_id)

        instance = ComputeInstance(
            metadata=ObjectMetadata(
                name=name,
                organization_id=org,
                project_id=project,
                holds=[PROVISIONER_HOLD],
                tags=tags or {},
            ),
            spec=spec,
        )
        instance.control.region_id = network.status.region_id
        instance.control.identity_id = network.status.identity_id
        instance.control.network_id = network.metadata.id
        created: list[ComputeInstance] = []

        async def create_allocation() -> None:
            instance.control.allocation_id = await self._allocations.create(
                instance, instance_allocations()
            )

        async def delete_allocation() -> None:
            await self._allocations.delete(instance)

        async def create_object() -> None:
            try:
                obj = await self._store.create(instance)
            except ObjectExistsError as e:
                raise ConflictError(
                    f"compute instance {name} already exists in project {project}"
                ) from e
            assert isinstance(obj, ComputeInstance)
            created.append(obj)

        await Saga(
            Action("create allocation", create_allocation, delete_allocation),
            Action("create instance", create_object),
        ).run()

        logger.info(
            "Created compute instance",
            extra={"instance": name, "organization": org, "project": project},
        )
        return created[0]

    async def update(
        self, org: str, project: str, name: str, spec: InstanceSpec
    ) -> ComputeInstance:
        """Replace an instance's spec.

        Raises:
            NotFoundError: If the instance does not exist in the project.
            ConflictError: If the instance is being deleted.
            InvalidRequestError: If the new network is unusable or lives in
                another identity.
        """
        current = await self.get(org, project, name)
        if current.metadata.deleting:
            raise ConflictError(f"compute instance {name} is being deleted")

        if spec.network_id != current.spec.network_id:
            network = await self._network(org, project, spec.network_id)
            if network.status.identity_id != current.control.identity_id:
                raise InvalidRequestError("network cannot be moved to another identity")

        def set_spec(obj: ComputeInstance) -> None:
            if obj.metadata.deleting:
                raise ConflictError(f"compute instance {name} is being deleted")
            obj.spec = spec.model_copy(deep=True)
            obj.control.network_id = spec.network_id

        updated: ComputeInstance = await mutate(
            self._store, ComputeInstance.KIND, current.metadata.id, set_spec
        )

        logger.info(
            "Updated compute instance",
            extra={"instance": name, "organization": org, "project": project},
        )
        return updated

    async def delete(self, org: str, project: str, name: str) -> None:
        """Request deletion; repeating the request while it is pending is a no-op.

        Raises:
            NotFoundError: If the instance does not exist in the project.
        """
        instance = await self.get(org, project, name)
        if instance.metadata.deleting:
            return

        await self._store.delete(ComputeInstance.KIND, instance.metadata.id)
        logger.info(
            "Deleting compute instance",
            extra={"instance": name, "organization": org, "project": project},
        )
