"""Pydantic models for the region and identity service wire formats.

Only the fields the provisioners read or write are modelled; anything else
the services return is ignored so newer backends stay compatible.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

WIRE_MODEL_CONFIG: Any = {"extra": "ignore", "populate_by_name": True}


class ProvisioningStatus(str, Enum):
    """Resource provisioning states reported by the region service."""

    UNKNOWN = "unknown"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    DEPROVISIONING = "deprovisioning"
    ERROR = "error"


class HealthStatus(str, Enum):
    """Resource health states reported by the region service."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"


class Tag(BaseModel):
    """A free-form key/value pair attached to a backend resource."""

    model_config = WIRE_MODEL_CONFIG

    name: str
    value: str


class ResourceMetadata(BaseModel):
    """Metadata common to every resource read from the region service.

    Statuses are kept as plain strings so that an unrecognized value reaches
    the dependency resolver intact instead of failing validation.
    """

    model_config = WIRE_MODEL_CONFIG

    id: str
    name: str
    description: str | None = None
    organization_id: str | None = Field(None, alias="organizationId")
    project_id: str | None = Field(None, alias="projectId")
    tags: list[Tag] = Field(default_factory=list)
    provisioning_status: str = Field(ProvisioningStatus.UNKNOWN.value, alias="provisioningStatus")
    health_status: str = Field(HealthStatus.UNKNOWN.value, alias="healthStatus")
    deletion_time: datetime | None = Field(None, alias="deletionTime")


class ResourceWriteMetadata(BaseModel):
    """Metadata sent when creating or updating a resource."""

    model_config = WIRE_MODEL_CONFIG

    name: str
    description: str | None = None
    tags: list[Tag] = Field(default_factory=list)


# =============================================================================
# Servers
# =============================================================================


class AllowedAddressPair(BaseModel):
    """Additional address a server port may source traffic from."""

    model_config = WIRE_MODEL_CONFIG

    cidr: str
    mac_address: str | None = Field(None, alias="macAddress")


class ServerNetworking(BaseModel):
    """Networking options that can be changed on a running server."""

    model_config = WIRE_MODEL_CONFIG

    public_ip: bool = Field(False, alias="publicIP")
    security_groups: list[str] = Field(default_factory=list, alias="securityGroups")
    allowed_address_pairs: list[AllowedAddressPair] = Field(
        default_factory=list, alias="allowedAddressPairs"
    )
    allowed_source_addresses: list[str] = Field(
        default_factory=list, alias="allowedSourceAddresses"
    )


class ServerSpec(BaseModel):
    """Desired or provisioned server configuration."""

    model_config = WIRE_MODEL_CONFIG

    flavor_id: str = Field(alias="flavorId")
    image_id: str = Field(alias="imageId")
    network_id: str = Field(alias="networkId")
    disk_size: int | None = Field(None, alias="diskSize")
    networking: ServerNetworking = Field(default_factory=ServerNetworking)
    # Base64 encoded
    user_data: str | None = Field(None, alias="userData")


class ServerStatus(BaseModel):
    """Observed server state."""

    model_config = WIRE_MODEL_CONFIG

    private_ip: str | None = Field(None, alias="privateIP")
    public_ip: str | None = Field(None, alias="publicIP")
    power_state: str | None = Field(None, alias="powerState")


class ServerRecord(BaseModel):
    """A server as read from the region service."""

    model_config = WIRE_MODEL_CONFIG

    metadata: ResourceMetadata
    spec: ServerSpec
    status: ServerStatus = Field(default_factory=ServerStatus)


class ServerWrite(BaseModel):
    """A server create or update request."""

    model_config = WIRE_MODEL_CONFIG

    metadata: ResourceWriteMetadata
    spec: ServerSpec


# =============================================================================
# Security groups
# =============================================================================


class PortRange(BaseModel):
    """Inclusive port range."""

    model_config = WIRE_MODEL_CONFIG

    start: int
    end: int


class SecurityGroupRulePort(BaseModel):
    """Either a single port number or a range, never both."""

    model_config = WIRE_MODEL_CONFIG

    number: int | None = None
    range: PortRange | None = None


class SecurityGroupRule(BaseModel):
    """One rule of a security group, scoped to a single CIDR prefix."""

    model_config = WIRE_MODEL_CONFIG

    direction: str
    protocol: str
    cidr: str
    port: SecurityGroupRulePort


class SecurityGroupSpec(BaseModel):
    """The rule set of a security group."""

    model_config = WIRE_MODEL_CONFIG

    rules: list[SecurityGroupRule] = Field(default_factory=list)


class SecurityGroupRecord(BaseModel):
    """A security group as read from the region service."""

    model_config = WIRE_MODEL_CONFIG

    metadata: ResourceMetadata
    spec: SecurityGroupSpec = Field(default_factory=SecurityGroupSpec)


class SecurityGroupWrite(BaseModel):
    """A security group create or update request."""

    model_config = WIRE_MODEL_CONFIG

    metadata: ResourceWriteMetadata
    spec: SecurityGroupSpec


# =============================================================================
# Identities and networks
# =============================================================================


class IdentitySpec(BaseModel):
    """Cloud identity details."""

    model_config = WIRE_MODEL_CONFIG

    region_id: str = Field(alias="regionId")
    ssh_private_key: str | None = Field(None, alias="sshPrivateKey")


class IdentityRecord(BaseModel):
    """A cloud identity as read from the region service."""

    model_config = WIRE_MODEL_CONFIG

    metadata: ResourceMetadata
    spec: IdentitySpec


class IdentityWriteSpec(BaseModel):
    """Identity create request body."""

    model_config = WIRE_MODEL_CONFIG

    region_id: str = Field(alias="regionId")


class IdentityWrite(BaseModel):
    """An identity create request."""

    model_config = WIRE_MODEL_CONFIG

    metadata: ResourceWriteMetadata
    spec: IdentityWriteSpec


class NetworkSpec(BaseModel):
    """Network addressing."""

    model_config = WIRE_MODEL_CONFIG

    prefix: str
    dns_nameservers: list[str] = Field(default_factory=list, alias="dnsNameservers")


class NetworkStatus(BaseModel):
    """Where a network lives."""

    model_config = WIRE_MODEL_CONFIG

    region_id: str | None = Field(None, alias="regionId")
    identity_id: str | None = Field(None, alias="identityId")


class NetworkRecord(BaseModel):
    """A network as read from the region service."""

    model_config = WIRE_MODEL_CONFIG

    metadata: ResourceMetadata
    spec: NetworkSpec
    status: NetworkStatus = Field(default_factory=NetworkStatus)


class NetworkWrite(BaseModel):
    """A network create request."""

    model_config = WIRE_MODEL_CONFIG

    metadata: ResourceWriteMetadata
    spec: NetworkSpec


# =============================================================================
# Flavors
# =============================================================================


class GpuSpec(BaseModel):
    """GPU hardware attached to a flavor."""

    model_config = WIRE_MODEL_CONFIG

    vendor: str | None = None
    model: str | None = None
    physical_count: int = Field(0, alias="physicalCount")


class FlavorSpec(BaseModel):
    """Flavor hardware description."""

    model_config = WIRE_MODEL_CONFIG

    cpus: int = 0
    memory: int = 0
    disk: int = 0
    gpu: GpuSpec | None = None


class Flavor(BaseModel):
    """A server flavor offered by a region."""

    model_config = WIRE_MODEL_CONFIG

    metadata: ResourceMetadata
    spec: FlavorSpec = Field(default_factory=FlavorSpec)


# =============================================================================
# Quota allocations (identity service)
# =============================================================================


class ResourceAllocation(BaseModel):
    """Committed and reserved quota for one resource kind."""

    model_config = WIRE_MODEL_CONFIG

    kind: str
    committed: int
    reserved: int = 0


class AllocationSpec(BaseModel):
    """Allocations charged against a project for one owning resource."""

    model_config = WIRE_MODEL_CONFIG

    kind: str
    id: str
    allocations: list[ResourceAllocation] = Field(default_factory=list)


class AllocationWrite(BaseModel):
    """An allocation create or update request."""

    model_config = WIRE_MODEL_CONFIG

    metadata: ResourceWriteMetadata
    spec: AllocationSpec


class AllocationRecord(BaseModel):
    """An allocation as read from the identity service."""

    model_config = WIRE_MODEL_CONFIG

    metadata: ResourceMetadata
    spec: AllocationSpec


def dump(model: BaseModel) -> dict[str, Any]:
    """Serialize a wire model to its JSON shape."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)
