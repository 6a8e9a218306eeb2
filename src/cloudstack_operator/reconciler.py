"""Cluster topology reconciliation.

One call to TopologyReconciler.reconcile() converges one ClusterTopology
against CloudStack and returns how long to wait before the next pass.

PHASES:
- Active: finalizer, domain/account, zones, failure domains, per-zone
  networks, then (isolated primary network only) public IP, egress
  firewall and the API server load-balancer rule. Ready is set last.
- Terminating: release the public IP this operator allocated, delete the
  affinity groups the cluster created, release networks, then remove the
  finalizer. A failing teardown stage keeps the finalizer so the object is
  retried instead of being forgotten.

Every stage re-reads ids from status and only creates what is missing, so
a pass can start over after any partial success.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .affinity import AffinityGroupManager
from .cloudstack import CloudStackClient
from .config import Config
from .credentials import ApiConfig, CredentialError, resolve_identity
from .errors import ErrorKind, classify_error, is_terminal
from .models import CLUSTER_FINALIZER, ClusterTopology, IdentityReference, NetworkType
from .network import NetworkProvisioner, primary_zone
from .pipeline import Phase, PipelineOutcome, Stage, StagePipeline
from .scope import resolve_domain_and_account
from .tags import TagAccessor
from .zones import ZoneResolver

logger = logging.getLogger(__name__)

ClientFactory = Callable[[IdentityReference | None], CloudStackClient]


def make_client_factory(config: Config, default_api: ApiConfig) -> ClientFactory:
    """Build clients for the credentials an object's identity reference names."""

    def factory(identity_ref: IdentityReference | None) -> CloudStackClient:
        api = resolve_identity(identity_ref, secrets_dir=config.secrets_dir, default=default_api)
        return CloudStackClient(
            api,
            request_timeout_seconds=config.request_timeout_seconds,
            async_job_timeout_seconds=config.async_job_timeout_seconds,
        )

    return factory


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    key: str
    phase: Phase
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    requeue_after: float = 0.0
    message: str = ""
    failed_stage: str | None = None
    error: Exception | None = None
    error_kind: ErrorKind | None = None
    # True once teardown finished and the finalizer is gone
    released: bool = False

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None and self.requeue_after == 0

    @property
    def terminal(self) -> bool:
        if self.error is None:
            return False
        return self.error_kind is None or is_terminal(self.error_kind)

    @classmethod
    def from_outcome(cls, key: str, start: datetime, outcome: PipelineOutcome) -> ReconcileResult:
        return cls(
            key=key,
            phase=outcome.phase,
            start_time=start,
            end_time=datetime.now(UTC),
            requeue_after=outcome.requeue_after,
            message=outcome.message,
            failed_stage=outcome.failed_stage,
            error=outcome.error,
            error_kind=outcome.error_kind,
        )


def log_result(result: ReconcileResult) -> None:
    """Log reconciliation result with structured data."""
    extra: dict[str, Any] = {
        "object": result.key,
        "phase": result.phase.value,
        "duration_seconds": result.duration_seconds,
        "requeue_after": result.requeue_after,
    }
    if result.failed_stage is not None:
        extra["stage"] = result.failed_stage
    if result.error_kind is not None:
        extra["error_kind"] = result.error_kind.value
    if result.error is not None:
        extra["error"] = str(result.error)

    if result.terminal:
        logger.error("Reconciliation failed", extra=extra)
    elif result.error is not None:
        logger.warning("Reconciliation incomplete, requeued", extra=extra)
    else:
        logger.info("Reconciliation result", extra=extra)


class _ClusterStages:
    """Stage callables of one pass, bound to that pass's client."""

    def __init__(self, client: CloudStackClient, *, requeue_delay: float) -> None:
        self._client = client
        self._zones = ZoneResolver(client, requeue_delay=requeue_delay)
        self._networks = NetworkProvisioner(client, TagAccessor(client))
        self._affinity = AffinityGroupManager(client)

    def active(self) -> Sequence[Stage[ClusterTopology]]:
        return [
            self.add_finalizer,
            self.resolve_domain_and_account,
            self._zones.resolve_zones,
            self._zones.verify_zone_count,
            self._zones.set_failure_domains,
            self.get_or_create_networks,
            self.associate_public_ip_address,
            self.open_firewall_rules,
            self.get_or_create_load_balancer_rule,
            self.mark_ready,
        ]

    def terminating(self) -> Sequence[Stage[ClusterTopology]]:
        return [
            self.release_public_ip,
            self.delete_owned_affinity_groups,
            self.release_networks,
            self.remove_finalizer,
        ]

    # -------------------------------------------------------------------------
    # Active
    # -------------------------------------------------------------------------

    def add_finalizer(self, topology: ClusterTopology) -> None:
        topology.add_finalizer(CLUSTER_FINALIZER)

    def resolve_domain_and_account(self, topology: ClusterTopology) -> None:
        resolve_domain_and_account(self._client, topology)

    def get_or_create_networks(self, topology: ClusterTopology) -> None:
        """Resolve or create the network of every discovered zone.

        Reads:  status.zones, status.domain_id
        Writes: status.zones[*].network, status.network_id, status.network_type
        """
        for zone in topology.status.zones.values():
            self._networks.get_or_create_network(topology, zone)

    def associate_public_ip_address(self, topology: ClusterTopology) -> None:
        if _routes_endpoint(topology):
            self._networks.associate_public_ip_address(topology)

    def open_firewall_rules(self, topology: ClusterTopology) -> None:
        if _routes_endpoint(topology):
            self._networks.open_firewall_rules(topology)

    def get_or_create_load_balancer_rule(self, topology: ClusterTopology) -> None:
        if _routes_endpoint(topology):
            self._networks.get_or_create_load_balancer_rule(topology)

    def mark_ready(self, topology: ClusterTopology) -> None:
        topology.status.ready = True

    # -------------------------------------------------------------------------
    # Terminating
    # -------------------------------------------------------------------------

    def release_public_ip(self, topology: ClusterTopology) -> None:
        self._networks.release_public_ip(topology)

    def delete_owned_affinity_groups(self, topology: ClusterTopology) -> None:
        """Delete the groups created for this cluster's machines.

        Reads/Writes: status.affinity_groups (each entry dropped once gone)
        """
        owned = topology.status.affinity_groups
        for group in list(owned.members()):
            try:
                self._affinity.delete_affinity_group(group)
            except Exception as e:
                if classify_error(e) != ErrorKind.NOT_FOUND:
                    raise
            owned.remove(group.id)

    def release_networks(self, topology: ClusterTopology) -> None:
        """Drop this cluster's claim on each zone network.

        Reads/Writes: status.zones[*].network.id (cleared once released)
        """
        for zone in topology.status.zones.values():
            network_id = zone.network.id
            if not network_id:
                continue
            try:
                self._networks.remove_cluster_tag_from_network(topology, network_id)
                self._networks.delete_network_if_not_in_use(topology, network_id)
            except Exception as e:
                if classify_error(e) != ErrorKind.NOT_FOUND:
                    raise
                logger.info("Network already gone", extra={"network_id": network_id})
            zone.network.id = ""
            zone.network_created_by_operator = False
        topology.status.network_id = ""

    def remove_finalizer(self, topology: ClusterTopology) -> None:
        topology.remove_finalizer(CLUSTER_FINALIZER)


def _routes_endpoint(topology: ClusterTopology) -> bool:
    # Shared networks are routed by whoever owns them
    zone = primary_zone(topology)
    return zone is not None and zone.network.type == NetworkType.ISOLATED


class TopologyReconciler:
    """Converges ClusterTopology objects, one blocking pass at a time.

    Passes for the same object must not overlap. The manager serializes
    them per key.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        *,
        requeue_delay: float,
        partial_transition_delay: float,
    ) -> None:
        self._client_factory = client_factory
        self._requeue_delay = requeue_delay
        self._partial_transition_delay = partial_transition_delay

    def reconcile(self, topology: ClusterTopology) -> ReconcileResult:
        """Run the stage list matching the object's lifecycle phase.

        The topology's spec and status are updated in place. The caller
        persists them whatever the outcome.
        """
        start = datetime.now(UTC)
        phase = Phase.TERMINATING if topology.is_deleting else Phase.ACTIVE

        if phase == Phase.TERMINATING and not topology.has_finalizer(CLUSTER_FINALIZER):
            result = ReconcileResult(
                key=topology.key, phase=phase, start_time=start, end_time=start, released=True
            )
            log_result(result)
            return result

        try:
            client = self._client_factory(topology.spec.identity_ref)
        except CredentialError as e:
            result = ReconcileResult(
                key=topology.key,
                phase=phase,
                start_time=start,
                end_time=datetime.now(UTC),
                failed_stage="load_credentials",
                error=e,
                error_kind=ErrorKind.FATAL,
                message=str(e),
            )
            self._record_outcome(topology, result)
            log_result(result)
            return result

        try:
            stages = _ClusterStages(client, requeue_delay=self._requeue_delay)
            pipeline: StagePipeline[ClusterTopology] = StagePipeline(
                phase=phase,
                stages=stages.active() if phase == Phase.ACTIVE else stages.terminating(),
                requeue_delay=self._requeue_delay,
                partial_transition_delay=self._partial_transition_delay,
            )
            outcome = pipeline.run(topology, name=topology.key)
        finally:
            client.close()

        result = ReconcileResult.from_outcome(topology.key, start, outcome)
        self._record_outcome(topology, result)
        log_result(result)
        return result

    def _record_outcome(self, topology: ClusterTopology, result: ReconcileResult) -> None:
        status = topology.status
        if result.terminal:
            status.ready = False
            status.failure_reason = result.error_kind.value if result.error_kind else "Other"
            status.failure_message = f"{result.failed_stage}: {result.error}"
        elif result.success:
            status.failure_reason = None
            status.failure_message = None

        # Ready only holds for a pass that ran every active stage
        if result.phase == Phase.ACTIVE and not result.success:
            status.ready = False

        if result.phase == Phase.TERMINATING and not topology.has_finalizer(CLUSTER_FINALIZER):
            result.released = True
