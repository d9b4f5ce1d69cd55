"""Pydantic models for the persisted cluster and instance objects.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. First-class control fields in place of string-keyed annotations
"""

from __future__ import annotations

import ipaddress
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .api_models import HealthStatus, ProvisioningStatus

MODEL_CONFIG: Any = {"extra": "ignore", "populate_by_name": True}

# DNS label compatible: used verbatim in server and security group names
NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"

# Hold placed on every managed object so the provisioner can release
# backend resources before the object disappears from the store
PROVISIONER_HOLD = "provisioner"


def new_object_id() -> str:
    """Generate the immutable identifier of a new object."""
    return str(uuid.uuid4())


def _validate_prefix(value: str) -> str:
    try:
        return str(ipaddress.ip_network(value, strict=False))
    except ValueError as e:
        raise ValueError(f"invalid CIDR prefix {value!r}") from e


# =============================================================================
# Object metadata and control channel
# =============================================================================


class ObjectMetadata(BaseModel):
    """Identity and lifecycle metadata of a persisted object.

    ``id`` is generated once and keys the object everywhere outside the
    mutation API; ``name`` is only unique within a kind, organization and
    project.

    ``version`` is assigned by the object store on every successful write
    and is the expected version for the next conditional write.
    """

    model_config = MODEL_CONFIG

    id: str = Field(default_factory=new_object_id)
    name: Annotated[str, Field(min_length=1, max_length=63, pattern=NAME_PATTERN)]
    organization_id: str = Field(alias="organizationId")
    project_id: str = Field(alias="projectId")
    version: int = 0
    creation_time: datetime | None = Field(None, alias="creationTime")
    deletion_time: datetime | None = Field(None, alias="deletionTime")
    holds: list[str] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)

    @property
    def deleting(self) -> bool:
        return self.deletion_time is not None


class EvictedServer(BaseModel):
    """A server removed by eviction, remembered so its slot is not refilled."""

    model_config = MODEL_CONFIG

    id: str
    name: str
    pool: str


class EvictionHint(BaseModel):
    """Servers whose names are retired by completed evictions."""

    model_config = MODEL_CONFIG

    servers: list[EvictedServer] = Field(default_factory=list)

    def names_for(self, pool: str) -> set[str]:
        return {s.name for s in self.servers if s.pool == pool}


class ControlFields(BaseModel):
    """Out-of-band coordination state persisted alongside the spec.

    Identity and network references are populated by the dependency
    resolver for clusters and from the chosen network for instances, the
    allocation reference by the creation saga. ``paused``
    halts server reconciliation while an eviction is in flight.
    """

    model_config = MODEL_CONFIG

    region_id: str | None = Field(None, alias="regionId")
    identity_id: str | None = Field(None, alias="identityId")
    network_id: str | None = Field(None, alias="networkId")
    allocation_id: str | None = Field(None, alias="allocationId")
    paused: bool = False
    eviction: EvictionHint | None = None


class ManagedObject(BaseModel):
    """Base for every object the controller reconciles."""

    model_config = MODEL_CONFIG

    KIND: ClassVar[str] = ""

    metadata: ObjectMetadata
    control: ControlFields = Field(default_factory=ControlFields)

    @property
    def key(self) -> tuple[str, str]:
        return (self.KIND, self.metadata.id)


# =============================================================================
# Compute clusters
# =============================================================================


class FirewallRule(BaseModel):
    """Firewall rule applied to every server in a workload pool."""

    model_config = MODEL_CONFIG

    direction: Literal["ingress", "egress"] = "ingress"
    protocol: Literal["tcp", "udp"]
    port: Annotated[int, Field(ge=1, le=65535)]
    port_max: int | None = Field(None, ge=1, le=65535, alias="portMax")
    prefixes: Annotated[list[str], Field(min_length=1)]

    @field_validator("prefixes")
    @classmethod
    def validate_prefixes(cls, v: list[str]) -> list[str]:
        return [_validate_prefix(p) for p in v]

    @model_validator(mode="after")
    def validate_port_range(self) -> FirewallRule:
        if self.port_max is not None and self.port_max < self.port:
            raise ValueError("portMax must not be smaller than port")
        return self


class AllowedAddressPair(BaseModel):
    """Extra source address permitted on a pool's server ports."""

    model_config = MODEL_CONFIG

    cidr: str
    mac_address: str | None = Field(None, alias="macAddress")

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_prefix(v)


class WorkloadPool(BaseModel):
    """A homogeneous group of machines with an independent replica count."""

    model_config = MODEL_CONFIG

    name: Annotated[str, Field(min_length=1, max_length=48, pattern=NAME_PATTERN)]
    replicas: Annotated[int, Field(ge=0)] = 1
    flavor_id: str = Field(alias="flavorId")
    image_id: str = Field(alias="imageId")
    disk_size: int | None = Field(None, ge=1, alias="diskSize")
    firewall: list[FirewallRule] = Field(default_factory=list)
    public_ip: bool = Field(False, alias="publicIP")
    allowed_address_pairs: list[AllowedAddressPair] = Field(
        default_factory=list, alias="allowedAddressPairs"
    )
    user_data: bytes | None = Field(None, alias="userData")

    @property
    def has_firewall_rules(self) -> bool:
        return len(self.firewall) > 0


class NetworkConfig(BaseModel):
    """Addressing of the network the cluster's servers attach to."""

    model_config = MODEL_CONFIG

    node_prefix: str = Field("192.168.0.0/24", alias="nodePrefix")
    dns_nameservers: list[str] = Field(
        default_factory=lambda: ["8.8.8.8"], alias="dnsNameservers"
    )

    @field_validator("node_prefix")
    @classmethod
    def validate_node_prefix(cls, v: str) -> str:
        return _validate_prefix(v)

    @field_validator("dns_nameservers")
    @classmethod
    def validate_nameservers(cls, v: list[str]) -> list[str]:
        for address in v:
            try:
                ipaddress.ip_address(address)
            except ValueError as e:
                raise ValueError(f"invalid nameserver address {address!r}") from e
        return v


class ClusterSpec(BaseModel):
    """Desired state of a compute cluster."""

    model_config = MODEL_CONFIG

    region_id: str = Field(alias="regionId")
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    workload_pools: list[WorkloadPool] = Field(default_factory=list, alias="workloadPools")

    @field_validator("workload_pools")
    @classmethod
    def validate_unique_pools(cls, v: list[WorkloadPool]) -> list[WorkloadPool]:
        seen: set[str] = set()
        for pool in v:
            if pool.name in seen:
                raise ValueError(f"duplicate workload pool name {pool.name!r}")
            seen.add(pool.name)
        return v

    def get_pool(self, name: str) -> WorkloadPool | None:
        for pool in self.workload_pools:
            if pool.name == name:
                return pool
        return None


class MachineStatus(BaseModel):
    """Observed state of one server in a pool."""

    model_config = MODEL_CONFIG

    id: str
    hostname: str
    image_id: str = Field(alias="imageId")
    flavor_id: str = Field(alias="flavorId")
    private_ip: str | None = Field(None, alias="privateIP")
    public_ip: str | None = Field(None, alias="publicIP")
    provisioning_status: str = Field(ProvisioningStatus.UNKNOWN.value, alias="provisioningStatus")
    health_status: str = Field(HealthStatus.UNKNOWN.value, alias="healthStatus")


class PoolStatus(BaseModel):
    """Observed state of a workload pool."""

    model_config = MODEL_CONFIG

    name: str
    replicas: int = 0
    machines: list[MachineStatus] = Field(default_factory=list)


class ClusterStatus(BaseModel):
    """Observed state of a compute cluster."""

    model_config = MODEL_CONFIG

    provisioning_status: str = Field(ProvisioningStatus.UNKNOWN.value, alias="provisioningStatus")
    health_status: str = Field(HealthStatus.UNKNOWN.value, alias="healthStatus")
    message: str | None = None
    ssh_private_key: str | None = Field(None, alias="sshPrivateKey")
    workload_pools: list[PoolStatus] = Field(default_factory=list, alias="workloadPools")
    updated_at: datetime | None = Field(None, alias="updatedAt")


class ComputeCluster(ManagedObject):
    """A compute cluster of workload pools."""

    KIND: ClassVar[str] = "ComputeCluster"

    kind: Literal["ComputeCluster"] = "ComputeCluster"
    spec: ClusterSpec
    status: ClusterStatus = Field(default_factory=ClusterStatus)


# =============================================================================
# Compute instances
# =============================================================================


class InstanceNetworking(BaseModel):
    """Networking options of a standalone instance."""

    model_config = MODEL_CONFIG

    security_group_ids: list[str] = Field(default_factory=list, alias="securityGroupIDs")
    public_ip: bool = Field(False, alias="publicIP")
    allowed_source_addresses: list[str] = Field(
        default_factory=list, alias="allowedSourceAddresses"
    )

    @field_validator("allowed_source_addresses")
    @classmethod
    def validate_source_addresses(cls, v: list[str]) -> list[str]:
        return [_validate_prefix(p) for p in v]


class InstanceSpec(BaseModel):
    """Desired state of a standalone instance."""

    model_config = MODEL_CONFIG

    flavor_id: str = Field(alias="flavorId")
    image_id: str = Field(alias="imageId")
    network_id: str = Field(alias="networkId")
    networking: InstanceNetworking = Field(default_factory=InstanceNetworking)
    user_data: bytes | None = Field(None, alias="userData")


class InstanceStatus(BaseModel):
    """Observed state of a standalone instance."""

    model_config = MODEL_CONFIG

    provisioning_status: str = Field(ProvisioningStatus.UNKNOWN.value, alias="provisioningStatus")
    health_status: str = Field(HealthStatus.UNKNOWN.value, alias="healthStatus")
    message: str | None = None
    private_ip: str | None = Field(None, alias="privateIP")
    public_ip: str | None = Field(None, alias="publicIP")
    power_state: str | None = Field(None, alias="powerState")
    updated_at: datetime | None = Field(None, alias="updatedAt")


class ComputeInstance(ManagedObject):
    """A single server managed outside any pool."""

    KIND: ClassVar[str] = "ComputeInstance"

    kind: Literal["ComputeInstance"] = "ComputeInstance"
    spec: InstanceSpec
    status: InstanceStatus = Field(default_factory=InstanceStatus)


OBJECT_REGISTRY: dict[str, type[ManagedObject]] = {
    ComputeCluster.KIND: ComputeCluster,
    ComputeInstance.KIND: ComputeInstance,
}


def get_object_class(kind: str) -> type[ManagedObject]:
    """Get the model class for an object kind.

    Raises:
        ValueError: If kind is not recognized.
    """
    object_class = OBJECT_REGISTRY.get(kind)
    if object_class is None:
        valid_kinds = list(OBJECT_REGISTRY.keys())
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {valid_kinds}")
    return object_class


def utcnow() -> datetime:
    return datetime.now(UTC)
