"""Network, public IP, firewall and load-balancer provisioning.

Every operation here can run again after a partial prior pass: ids already
in status are re-validated instead of recreated, and creates that the
provider rejects as duplicates count as success.

OWNERSHIP:
Networks can be shared by several clusters. Each cluster that uses a
network adds its own CAPC_cluster_<uid> tag. A network created by this
operator additionally carries created_by_CAPC. On teardown a cluster
removes its own tag and deletes the network only when no cluster tag is
left and created_by_CAPC is present. Externally managed networks are never
deleted.

Only isolated networks get a public IP, egress firewall rule and
load-balancer rule. Shared networks are routed by their owner.
"""

from __future__ import annotations

import logging

from .cloudstack import CloudStackClient, NetworkRecord, PublicIpAddressRecord
from .errors import (
    AllAllocatedError,
    AmbiguousMatchError,
    CloudStackAPIError,
    ErrorKind,
    FatalError,
    NoAddressesFoundError,
    NotFoundError,
    classify_error,
)
from .models import K8S_DEFAULT_API_PORT, ClusterTopology, NetworkType, ZoneStatus
from .tags import CLUSTER_TAG_PREFIX, CREATED_BY_TAG, TAG_MARKER_VALUE, ResourceType, TagAccessor, cluster_tag_name

logger = logging.getLogger(__name__)

DEFAULT_NETWORK_OFFERING = "DefaultIsolatedNetworkOfferingWithSourceNatService"
NETWORK_PROTOCOL_TCP = "tcp"
LB_RULE_NAME = "Kubernetes_API_Server"
LB_ALGORITHM = "roundrobin"


def primary_zone(topology: ClusterTopology) -> ZoneStatus | None:
    """Snapshot of the first declared zone, whose network fronts the API server."""
    if not topology.spec.zones:
        return None
    first = topology.spec.zones[0]
    for snapshot in topology.status.zones.values():
        if (first.id and snapshot.id == first.id) or (not first.id and snapshot.name == first.name):
            return snapshot
    return None


class NetworkProvisioner:
    """Resolves or creates the network resources of a cluster."""

    def __init__(self, client: CloudStackClient, tags: TagAccessor) -> None:
        self._client = client
        self._tags = tags

    # -------------------------------------------------------------------------
    # Networks
    # -------------------------------------------------------------------------

    def resolve_network(self, topology: ClusterTopology, zone: ZoneStatus) -> NetworkRecord:
        """Look up the zone's network by id, or by name when no id is declared.

        Writes: zone.network, and status.network_id/network_type for the
        primary zone.

        Raises:
            NotFoundError: If nothing matches.
            AmbiguousMatchError: If more than one network matches.
        """
        declared = zone.network
        if declared.id:
            label = f"UUID {declared.id}"
            try:
                response = self._client.list_networks(network_id=declared.id)
            except CloudStackAPIError as e:
                # Lookups by id answer an unknown id with an error, not an empty list
                if classify_error(e) != ErrorKind.NOT_FOUND:
                    raise
                raise NotFoundError(f"No match found for Network with {label}") from e
        else:
            response = self._client.list_networks(
                name=declared.name,
                zone_id=zone.id,
                account=topology.spec.account,
                domain_id=topology.status.domain_id,
            )
            label = f"name {declared.name}"

        if response.count == 0:
            raise NotFoundError(f"No match found for Network with {label}")
        if response.count > 1:
            raise AmbiguousMatchError(
                f"Expected 1 Network with {label}, but got {response.count}"
            )

        record = response.items[0]
        self._record_network(topology, zone, record)
        return record

    def get_or_create_network(self, topology: ClusterTopology, zone: ZoneStatus) -> NetworkRecord:
        """Resolve the zone's network, creating it when it does not exist.

        Ambiguous matches are never followed by a create.

        Raises:
            NotFoundError: If a network declared only by id does not exist.
            FatalError: If the default network offering is missing or ambiguous.
        """
        try:
            record = self.resolve_network(topology, zone)
        except NotFoundError:
            if zone.network.id and not zone.network.name:
                raise
            record = self._create_network(topology, zone)

        self.add_cluster_tags(topology, record.id, created=zone.network_created_by_operator)
        return record

    def _create_network(self, topology: ClusterTopology, zone: ZoneStatus) -> NetworkRecord:
        offerings = self._client.list_network_offerings(name=DEFAULT_NETWORK_OFFERING)
        if offerings.count != 1:
            raise FatalError(
                f"Expected 1 network offering named {DEFAULT_NETWORK_OFFERING}, "
                f"but got {offerings.count}"
            )

        record = self._client.create_network(
            name=zone.network.name,
            offering_id=offerings.items[0].id,
            zone_id=zone.id,
            account=topology.spec.account,
            domain_id=topology.status.domain_id,
        )
        zone.network_created_by_operator = True
        self._record_network(topology, zone, record)
        logger.info(
            "Created network",
            extra={"cluster": topology.metadata.name, "zone_id": zone.id, "network_id": record.id},
        )
        return record

    def _record_network(self, topology: ClusterTopology, zone: ZoneStatus, record: NetworkRecord) -> None:
        zone.network.id = record.id
        zone.network.name = record.name or zone.network.name
        zone.network.type = NetworkType(record.type) if record.type else None

        if primary_zone(topology) is zone:
            topology.status.network_id = zone.network.id
            topology.status.network_type = zone.network.type

    def add_cluster_tags(self, topology: ClusterTopology, network_id: str, *, created: bool) -> None:
        """Tag a network as used by this cluster, and as operator-created if it was."""
        new_tags = {cluster_tag_name(topology.metadata.uid): TAG_MARKER_VALUE}
        if created:
            new_tags[CREATED_BY_TAG] = TAG_MARKER_VALUE
        self._tags.add_tags(network_id, ResourceType.NETWORK, new_tags)

    def remove_cluster_tag_from_network(self, topology: ClusterTopology, network_id: str) -> None:
        self._tags.delete_tags(
            network_id, ResourceType.NETWORK, [cluster_tag_name(topology.metadata.uid)]
        )

    def delete_network_if_not_in_use(self, topology: ClusterTopology, network_id: str) -> bool:
        """Delete an operator-created network that no cluster uses any more.

        Returns:
            True if the network was deleted.
        """
        tags = self._tags.get_tags(network_id, ResourceType.NETWORK)
        users = [name for name in tags if name.startswith(CLUSTER_TAG_PREFIX)]
        if users or not tags.get(CREATED_BY_TAG):
            logger.info(
                "Leaving network in place",
                extra={
                    "cluster": topology.metadata.name,
                    "network_id": network_id,
                    "remaining_users": len(users),
                },
            )
            return False

        self._client.delete_network(network_id)
        logger.info(
            "Deleted network",
            extra={"cluster": topology.metadata.name, "network_id": network_id},
        )
        return True

    # -------------------------------------------------------------------------
    # Public IP
    # -------------------------------------------------------------------------

    def resolve_public_ip_details(self, topology: ClusterTopology) -> PublicIpAddressRecord:
        """Pick the public address for the control plane endpoint.

        A declared host is used whatever its allocation state. Otherwise the
        first unallocated candidate wins.

        Raises:
            NoAddressesFoundError: If there are no candidates.
            AllAllocatedError: If every candidate is already allocated.
        """
        host = topology.spec.control_plane_endpoint.host
        zone = primary_zone(topology)
        response = self._client.list_public_ip_addresses(
            ipaddress=host,
            account=topology.spec.account,
            domain_id=topology.status.domain_id,
            zone_id=zone.id if zone is not None else "",
        )

        if host:
            for candidate in response.items:
                if candidate.ipaddress == host:
                    return candidate
            raise NoAddressesFoundError(f'no public address "{host}" found')

        if response.count == 0:
            raise NoAddressesFoundError(
                f'no public addresses found for network "{topology.status.network_id}"'
            )
        for candidate in response.items:
            if not candidate.allocated:
                return candidate
        raise AllAllocatedError("all public IP addresses found were already allocated")

    def associate_public_ip_address(self, topology: ClusterTopology) -> None:
        """Allocate the endpoint address to the primary network.

        Writes: status.public_ip_id, status.public_ip_allocated_by_operator,
        and spec.control_plane_endpoint.host when it was still empty.
        """
        address = self.resolve_public_ip_details(topology)
        endpoint = topology.spec.control_plane_endpoint
        if not endpoint.host:
            endpoint.host = address.ipaddress
        topology.status.public_ip_id = address.id

        if address.allocated and address.associated_network_id == topology.status.network_id:
            return

        if not address.allocated:
            topology.status.public_ip_allocated_by_operator = True
        self._client.associate_ip_address(
            network_id=topology.status.network_id,
            ipaddress=address.ipaddress,
            account=topology.spec.account,
            domain_id=topology.status.domain_id,
        )
        logger.info(
            "Associated public IP",
            extra={
                "cluster": topology.metadata.name,
                "public_ip": address.ipaddress,
                "network_id": topology.status.network_id,
            },
        )

    def release_public_ip(self, topology: ClusterTopology) -> None:
        """Release an address this operator allocated. Declared, pre-allocated addresses stay."""
        status = topology.status
        if status.public_ip_id and status.public_ip_allocated_by_operator:
            try:
                self._client.disassociate_ip_address(status.public_ip_id)
            except CloudStackAPIError as e:
                if classify_error(e) != ErrorKind.NOT_FOUND:
                    raise
            logger.info(
                "Released public IP",
                extra={"cluster": topology.metadata.name, "public_ip_id": status.public_ip_id},
            )
        status.public_ip_id = ""
        status.public_ip_allocated_by_operator = False
        status.lb_rule_id = ""

    # -------------------------------------------------------------------------
    # Firewall and load balancer
    # -------------------------------------------------------------------------

    def open_firewall_rules(self, topology: ClusterTopology) -> None:
        """Ensure the egress rule exists. A duplicate rule counts as success."""
        try:
            self._client.create_egress_firewall_rule(
                network_id=topology.status.network_id, protocol=NETWORK_PROTOCOL_TCP
            )
        except CloudStackAPIError as e:
            if classify_error(e) != ErrorKind.ALREADY_EXISTS:
                raise
            logger.debug(
                "Egress firewall rule already present",
                extra={"network_id": topology.status.network_id},
            )

    def resolve_load_balancer_rule_details(self, topology: ClusterTopology) -> None:
        """Find the rule serving the endpoint port.

        Raises:
            NotFoundError: If no rule on the public IP uses that port.
        """
        rules = self._client.list_load_balancer_rules(
            public_ip_id=topology.status.public_ip_id,
            account=topology.spec.account,
            domain_id=topology.status.domain_id,
        )
        port = str(topology.spec.control_plane_endpoint.effective_port)
        for rule in rules.items:
            if rule.public_port == port:
                topology.status.lb_rule_id = rule.id
                return
        raise NotFoundError("no load balancer rule found")

    def get_or_create_load_balancer_rule(self, topology: ClusterTopology) -> None:
        """Resolve the endpoint rule, creating a round-robin rule if missing."""
        try:
            self.resolve_load_balancer_rule_details(topology)
            return
        except NotFoundError:
            pass

        public_port = topology.spec.control_plane_endpoint.port or K8S_DEFAULT_API_PORT
        rule = self._client.create_load_balancer_rule(
            name=LB_RULE_NAME,
            algorithm=LB_ALGORITHM,
            public_port=public_port,
            private_port=K8S_DEFAULT_API_PORT,
            public_ip_id=topology.status.public_ip_id,
            network_id=topology.status.network_id,
            protocol=NETWORK_PROTOCOL_TCP,
            account=topology.spec.account,
            domain_id=topology.status.domain_id,
        )
        topology.status.lb_rule_id = rule.id
        logger.info(
            "Created load balancer rule",
            extra={"cluster": topology.metadata.name, "lb_rule_id": rule.id, "port": public_port},
        )

    def assign_vm_to_load_balancer_rule(self, topology: ClusterTopology, instance_id: str) -> None:
        """Put an instance behind the endpoint rule unless it already is."""
        rule_id = topology.status.lb_rule_id
        instances = self._client.list_load_balancer_rule_instances(rule_id)
        if any(instance.id == instance_id for instance in instances.items):
            return
        self._client.assign_to_load_balancer_rule(rule_id=rule_id, instance_ids=[instance_id])
        logger.info(
            "Assigned instance to load balancer rule",
            extra={"lb_rule_id": rule_id, "instance_id": instance_id},
        )
