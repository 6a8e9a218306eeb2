"""Pydantic models for declared topology objects and their status.

These models provide:
1. Type-safe YAML parsing of ClusterTopology and Machine documents
2. The status record the reconcilers write and the store persists
3. Upstream validation helpers (create/update checks)

Field aliases follow the camelCase used in the YAML documents.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

API_VERSION = "infrastructure.cluster.x-k8s.io/v1beta1"
CLUSTER_FINALIZER = "cloudstackcluster.infrastructure.cluster.x-k8s.io"
MACHINE_FINALIZER = "cloudstackmachine.infrastructure.cluster.x-k8s.io"
DEFAULT_IDENTITY_REF_KIND = "Secret"

# Kubernetes object names (DNS-1123 subdomain) and namespaces (DNS-1123 label)
NAME_PATTERN = r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$"
NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"

K8S_DEFAULT_API_PORT = 6443

_MODEL_CONFIG: Any = {"extra": "ignore", "populate_by_name": True}


class NetworkType(str, Enum):
    """CloudStack guest network types."""

    ISOLATED = "Isolated"
    SHARED = "Shared"


class AffinityGroupType(str, Enum):
    """CloudStack host affinity group types."""

    AFFINITY = "host affinity"
    ANTI_AFFINITY = "host anti-affinity"


class AffinityMode(str, Enum):
    """Affinity policy a machine can ask for."""

    NONE = "no"
    PRO = "pro"
    ANTI = "anti"


class TransitionStep(str, Enum):
    """Last completed step of a stop/update/start affinity transition."""

    STARTED = "Started"
    STOPPED_PENDING_UPDATE = "StoppedPendingUpdate"
    UPDATED_PENDING_START = "UpdatedPendingStart"


# =============================================================================
# Shared
# =============================================================================


class ObjectMeta(BaseModel):
    """Identity and lifecycle markers of a stored object."""

    model_config = _MODEL_CONFIG

    name: str = Field(min_length=1, max_length=253, pattern=NAME_PATTERN)
    namespace: str = Field("default", min_length=1, max_length=63, pattern=NAMESPACE_PATTERN)
    uid: str = ""
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    finalizers: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)


class IdentityReference(BaseModel):
    """Reference to the secret holding API credentials."""

    model_config = _MODEL_CONFIG

    kind: str = DEFAULT_IDENTITY_REF_KIND
    name: str


class ControlPlaneEndpoint(BaseModel):
    """Address the cluster API server is reachable on."""

    model_config = _MODEL_CONFIG

    host: str = ""
    port: int = 0

    @property
    def effective_port(self) -> int:
        """Port to expose, falling back to the Kubernetes default."""
        return self.port or K8S_DEFAULT_API_PORT


class ResourceIdentifier(BaseModel):
    """A provider resource referenced by id or name."""

    model_config = _MODEL_CONFIG

    id: str = ""
    name: str = ""


class _Finalized(BaseModel):
    """Finalizer helpers shared by the stored object kinds."""

    model_config = _MODEL_CONFIG

    metadata: ObjectMeta

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if finalizer not in self.metadata.finalizers:
            self.metadata.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str) -> None:
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != finalizer]


# =============================================================================
# Networks and zones
# =============================================================================


class Network(BaseModel):
    """A guest network, declared by name or id and resolved to both."""

    model_config = _MODEL_CONFIG

    id: str = ""
    name: str = ""
    type: NetworkType | None = None


class Zone(BaseModel):
    """A declared zone and the network the cluster uses in it."""

    model_config = _MODEL_CONFIG

    id: str = ""
    name: str = ""
    network: Network = Field(default_factory=Network)


class ZoneStatus(BaseModel):
    """Snapshot of a resolved zone."""

    model_config = _MODEL_CONFIG

    id: str
    name: str = ""
    network: Network = Field(default_factory=Network)
    network_created_by_operator: bool = Field(False, alias="networkCreatedByOperator")
    # False while the provider does not list a zone that was resolved before
    discovered: bool = True


class FailureDomainSpec(BaseModel):
    """Placement eligibility of one failure domain."""

    model_config = _MODEL_CONFIG

    control_plane: bool = Field(True, alias="controlPlane")
    attributes: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Affinity groups
# =============================================================================


class AffinityGroup(BaseModel):
    """A host (anti-)affinity group. The id is canonical once known."""

    model_config = _MODEL_CONFIG

    id: str = ""
    name: str = ""
    type: AffinityGroupType | None = None


class AffinityGroupSet(BaseModel):
    """Affinity groups keyed by id.

    Adding a group whose id is already present replaces the stored entry,
    so the set never holds two entries with the same id. Removing an id
    that is not present does nothing.
    """

    model_config = _MODEL_CONFIG

    groups: dict[str, AffinityGroup] = Field(default_factory=dict)

    @classmethod
    def of(cls, groups: list[AffinityGroup]) -> AffinityGroupSet:
        group_set = cls()
        for group in groups:
            group_set.add(group)
        return group_set

    def add(self, group: AffinityGroup) -> None:
        if not group.id:
            raise ValueError("affinity group must have an id to be added to a set")
        self.groups[group.id] = group

    def remove(self, group_id: str) -> None:
        self.groups.pop(group_id, None)

    def ids(self) -> list[str]:
        return sorted(self.groups)

    def __contains__(self, group_id: object) -> bool:
        return group_id in self.groups

    def members(self) -> Iterator[AffinityGroup]:
        return iter(self.groups.values())

    def __len__(self) -> int:
        return len(self.groups)


class AffinityTransition(BaseModel):
    """Progress of the disruptive membership change on one instance."""

    model_config = _MODEL_CONFIG

    step: TransitionStep = TransitionStep.STARTED
    target_group_ids: list[str] = Field(default_factory=list, alias="targetGroupIDs")

    @property
    def pending(self) -> bool:
        return self.step != TransitionStep.STARTED


# =============================================================================
# ClusterTopology
# =============================================================================


class ClusterTopologySpec(BaseModel):
    """Declared network and placement topology of one cluster."""

    model_config = _MODEL_CONFIG

    zones: list[Zone] = Field(default_factory=list)
    account: str = ""
    domain: str = ""
    identity_ref: IdentityReference | None = Field(None, alias="identityRef")
    control_plane_endpoint: ControlPlaneEndpoint = Field(
        default_factory=ControlPlaneEndpoint, alias="controlPlaneEndpoint"
    )


class ClusterTopologyStatus(BaseModel):
    """Provider ids resolved or created for a cluster.

    Written by the reconcilers only.
    """

    model_config = _MODEL_CONFIG

    network_id: str = Field("", alias="networkID")
    network_type: NetworkType | None = Field(None, alias="networkType")
    domain_id: str = Field("", alias="domainID")
    public_ip_id: str = Field("", alias="publicIPID")
    public_ip_allocated_by_operator: bool = Field(False, alias="publicIPAllocatedByOperator")
    lb_rule_id: str = Field("", alias="lbRuleID")
    zones: dict[str, ZoneStatus] = Field(default_factory=dict)
    failure_domains: dict[str, FailureDomainSpec] = Field(
        default_factory=dict, alias="failureDomains"
    )
    affinity_groups: AffinityGroupSet = Field(
        default_factory=AffinityGroupSet, alias="affinityGroups"
    )
    ready: bool = False
    failure_reason: str | None = Field(None, alias="failureReason")
    failure_message: str | None = Field(None, alias="failureMessage")


class ClusterTopology(_Finalized):
    """Declared topology plus its status mirror."""

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = "ClusterTopology"
    spec: ClusterTopologySpec = Field(default_factory=ClusterTopologySpec)
    status: ClusterTopologyStatus = Field(default_factory=ClusterTopologyStatus)

    @property
    def key(self) -> str:
        return f"{self.kind}/{self.metadata.namespace}/{self.metadata.name}"


# =============================================================================
# Machine
# =============================================================================


class DiskOffering(ResourceIdentifier):
    """Data disk attached to a machine."""

    mount_path: str = Field("", alias="mountPath")
    device: str = ""
    filesystem: str = ""
    label: str = ""


class MachineSpec(BaseModel):
    """Declared compute instance."""

    model_config = _MODEL_CONFIG

    cluster_name: str = Field(alias="clusterName")
    owner_name: str = Field("", alias="ownerName")
    control_plane: bool = Field(False, alias="controlPlane")
    instance_id: str | None = Field(None, alias="instanceID")
    provider_id: str | None = Field(None, alias="providerID")
    zone_id: str = Field("", alias="zoneID")
    offering: ResourceIdentifier = Field(default_factory=ResourceIdentifier)
    template: ResourceIdentifier = Field(default_factory=ResourceIdentifier)
    disk_offering: DiskOffering | None = Field(None, alias="diskOffering")
    affinity: AffinityMode = AffinityMode.NONE
    affinity_group_ids: list[str] = Field(default_factory=list, alias="affinityGroupIDs")
    identity_ref: IdentityReference | None = Field(None, alias="identityRef")


class MachineStatus(BaseModel):
    """What the machine reconciler observed and changed."""

    model_config = _MODEL_CONFIG

    affinity_transition: AffinityTransition = Field(
        default_factory=AffinityTransition, alias="affinityTransition"
    )
    affinity_group_ids: list[str] = Field(default_factory=list, alias="affinityGroupIDs")
    # Groups joined because the machine declared them; only these are ever left
    managed_affinity_group_ids: list[str] = Field(
        default_factory=list, alias="managedAffinityGroupIDs"
    )
    lb_registered: bool = Field(False, alias="lbRegistered")
    ready: bool = False
    failure_reason: str | None = Field(None, alias="failureReason")
    failure_message: str | None = Field(None, alias="failureMessage")


class Machine(_Finalized):
    """A machine belonging to a cluster topology."""

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = "Machine"
    spec: MachineSpec
    status: MachineStatus = Field(default_factory=MachineStatus)

    @property
    def key(self) -> str:
        return f"{self.kind}/{self.metadata.namespace}/{self.metadata.name}"


KIND_MODELS: dict[str, type[ClusterTopology] | type[Machine]] = {
    "ClusterTopology": ClusterTopology,
    "Machine": Machine,
}


# =============================================================================
# Upstream validation
# =============================================================================


class TopologyValidationError(Exception):
    """Raised when a declared topology is rejected before reconciliation."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Validation failed:\n  - " + "\n  - ".join(errors))
        self.errors = errors


def validate_create(topology: ClusterTopology) -> None:
    """Check a new topology object.

    Raises:
        TopologyValidationError: Listing every problem found.
    """
    spec = topology.spec
    errors: list[str] = []

    if spec.identity_ref is not None and spec.identity_ref.kind != DEFAULT_IDENTITY_REF_KIND:
        errors.append("spec.identityRef.kind: must be a Secret")

    if spec.account and not spec.domain:
        errors.append("spec.account: specifying account requires additionally specifying domain")

    if not spec.zones:
        errors.append("spec.zones: at least one zone is required")
    for index, zone in enumerate(spec.zones):
        if not zone.id and not zone.name:
            errors.append(f"spec.zones[{index}]: zone requires a name or id")
        if not zone.network.id and not zone.network.name:
            errors.append(f"spec.zones[{index}].network: each zone requires a network specification")

    if errors:
        raise TopologyValidationError(errors)


def validate_update(old: ClusterTopology, new: ClusterTopology) -> None:
    """Check a change to an existing topology object.

    The endpoint host may be set once while it is still empty; after that
    host and port are fixed.

    Raises:
        TopologyValidationError: Listing every problem found.
    """
    errors: list[str] = []
    old_spec, spec = old.spec, new.spec

    if old_spec.zones != spec.zones:
        errors.append("spec.zones: zones and sub-attributes may not be modified after creation")

    if old_spec.control_plane_endpoint.host:
        if old_spec.control_plane_endpoint.host != spec.control_plane_endpoint.host:
            errors.append("spec.controlPlaneEndpoint.host: field is immutable")
        if old_spec.control_plane_endpoint.port != spec.control_plane_endpoint.port:
            errors.append("spec.controlPlaneEndpoint.port: field is immutable")

    if old_spec.identity_ref is not None and spec.identity_ref is not None:
        if old_spec.identity_ref.kind != spec.identity_ref.kind:
            errors.append("spec.identityRef.kind: field is immutable")
        if old_spec.identity_ref.name != spec.identity_ref.name:
            errors.append("spec.identityRef.name: field is immutable")

    if spec.identity_ref is not None and spec.identity_ref.kind != DEFAULT_IDENTITY_REF_KIND:
        errors.append("spec.identityRef.kind: must be a Secret")

    if errors:
        raise TopologyValidationError(errors)
