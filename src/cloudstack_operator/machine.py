"""Machine reconciliation: affinity membership and load-balancer registration.

Instances are provisioned elsewhere. A Machine without instance_id is
requeued until one appears. Once it has one, this reconciler:

1. finishes any affinity transition an earlier pass left halfway
2. resolves the groups the machine should belong to, either the explicit
   affinity_group_ids or one group per owner for pro/anti affinity
3. joins missing groups and leaves groups it no longer declares, in a
   single stop/update/start cycle
4. registers control-plane instances with the cluster's API server rule

Groups created for pro/anti affinity belong to the cluster and are recorded
in the topology status. The caller persists both objects.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from .affinity import AffinityGroupManager
from .cloudstack import CloudStackClient
from .credentials import CredentialError
from .errors import ErrorKind, NotFoundError
from .models import (
    MACHINE_FINALIZER,
    AffinityGroup,
    AffinityGroupType,
    AffinityMode,
    ClusterTopology,
    Machine,
)
from .network import NetworkProvisioner
from .pipeline import Phase, Stage, StagePipeline, StageResult
from .reconciler import ClientFactory, ReconcileResult, log_result
from .tags import TagAccessor

logger = logging.getLogger(__name__)

_GROUP_TYPES = {
    AffinityMode.PRO: AffinityGroupType.AFFINITY,
    AffinityMode.ANTI: AffinityGroupType.ANTI_AFFINITY,
}


def owner_group_name(machine: Machine, topology: ClusterTopology) -> str:
    """Name of the group shared by all machines of one owner."""
    owner = machine.spec.owner_name or machine.spec.cluster_name
    return f"{machine.spec.affinity.value}Affinity-{owner}-{topology.metadata.uid}"


class _MachineStages:
    def __init__(
        self, client: CloudStackClient, topology: ClusterTopology | None, *, requeue_delay: float
    ) -> None:
        self._topology = topology
        self._requeue_delay = requeue_delay
        self._affinity = AffinityGroupManager(client)
        self._networks = NetworkProvisioner(client, TagAccessor(client))

    def active(self) -> Sequence[Stage[Machine]]:
        return [
            self.add_finalizer,
            self.wait_for_cluster,
            self.wait_for_instance,
            self.resume_affinity_transition,
            self.converge_affinity_groups,
            self.register_with_load_balancer,
            self.mark_ready,
        ]

    def terminating(self) -> Sequence[Stage[Machine]]:
        return [self.resume_affinity_transition, self.remove_finalizer]

    def add_finalizer(self, machine: Machine) -> None:
        machine.add_finalizer(MACHINE_FINALIZER)

    def wait_for_cluster(self, machine: Machine) -> StageResult | None:
        if self._topology is None or not self._topology.status.ready:
            return StageResult.requeue(
                self._requeue_delay, f"Waiting for cluster {machine.spec.cluster_name}"
            )
        return None

    def wait_for_instance(self, machine: Machine) -> StageResult | None:
        if not machine.spec.instance_id:
            return StageResult.requeue(self._requeue_delay, "Waiting for instance to be provisioned")
        return None

    def resume_affinity_transition(self, machine: Machine) -> None:
        if machine.spec.instance_id:
            self._affinity.resume_transition(machine)

    def converge_affinity_groups(self, machine: Machine) -> None:
        """Make the instance's membership match the declared groups.

        Groups this machine joined earlier and no longer declares are left.
        Groups joined some other way are not touched.

        Reads:  spec.affinity, spec.affinity_group_ids, topology scope
        Writes: status.affinity_group_ids, status.managed_affinity_group_ids,
                status.affinity_transition,
                topology status.affinity_groups (groups created here)
        """
        desired = self._desired_groups(machine)
        desired_ids = [group.id for group in desired]
        stale = [
            group_id
            for group_id in machine.status.managed_affinity_group_ids
            if group_id not in desired_ids
        ]
        if stale:
            logger.info(
                "Affinity groups no longer declared",
                extra={"machine": machine.metadata.name, "group_ids": stale},
            )
        self._affinity.change_membership(machine, add=desired, remove=stale)
        machine.status.managed_affinity_group_ids = desired_ids

    def _desired_groups(self, machine: Machine) -> list[AffinityGroup]:
        topology = self._require_cluster(machine)
        if machine.spec.affinity_group_ids:
            return [
                self._affinity.fetch_affinity_group(AffinityGroup(id=group_id))
                for group_id in machine.spec.affinity_group_ids
            ]

        group_type = _GROUP_TYPES.get(machine.spec.affinity)
        if group_type is None:
            return []
        group = AffinityGroup(name=owner_group_name(machine, topology), type=group_type)
        return [self._affinity.get_or_create_affinity_group(topology, group)]

    def register_with_load_balancer(self, machine: Machine) -> None:
        topology = self._require_cluster(machine)
        if not machine.spec.control_plane or not topology.status.lb_rule_id:
            return
        self._networks.assign_vm_to_load_balancer_rule(topology, machine.spec.instance_id or "")
        machine.status.lb_registered = True

    def _require_cluster(self, machine: Machine) -> ClusterTopology:
        if self._topology is None:
            raise NotFoundError(f"Cluster {machine.spec.cluster_name} not found")
        return self._topology

    def mark_ready(self, machine: Machine) -> None:
        machine.status.ready = True

    def remove_finalizer(self, machine: Machine) -> None:
        machine.remove_finalizer(MACHINE_FINALIZER)


class MachineReconciler:
    """Converges Machine objects against their cluster's topology."""

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

    def reconcile(self, machine: Machine, topology: ClusterTopology | None) -> ReconcileResult:
        start = datetime.now(UTC)
        phase = Phase.TERMINATING if machine.is_deleting else Phase.ACTIVE

        if phase == Phase.TERMINATING and not machine.has_finalizer(MACHINE_FINALIZER):
            result = ReconcileResult(
                key=machine.key, phase=phase, start_time=start, end_time=start, released=True
            )
            log_result(result)
            return result

        identity_ref = machine.spec.identity_ref
        if identity_ref is None and topology is not None:
            identity_ref = topology.spec.identity_ref
        try:
            client = self._client_factory(identity_ref)
        except CredentialError as e:
            result = ReconcileResult(
                key=machine.key,
                phase=phase,
                start_time=start,
                end_time=datetime.now(UTC),
                failed_stage="load_credentials",
                error=e,
                error_kind=ErrorKind.FATAL,
                message=str(e),
            )
            self._record_outcome(machine, result)
            log_result(result)
            return result

        try:
            stages = _MachineStages(client, topology, requeue_delay=self._requeue_delay)
            pipeline: StagePipeline[Machine] = StagePipeline(
                phase=phase,
                stages=stages.active() if phase == Phase.ACTIVE else stages.terminating(),
                requeue_delay=self._requeue_delay,
                partial_transition_delay=self._partial_transition_delay,
            )
            outcome = pipeline.run(machine, name=machine.key)
        finally:
            client.close()

        result = ReconcileResult.from_outcome(machine.key, start, outcome)
        self._record_outcome(machine, result)
        log_result(result)
        return result

    def _record_outcome(self, machine: Machine, result: ReconcileResult) -> None:
        status = machine.status
        if result.terminal:
            status.ready = False
            status.failure_reason = result.error_kind.value if result.error_kind else "Other"
            status.failure_message = f"{result.failed_stage}: {result.error}"
        elif result.success:
            status.failure_reason = None
            status.failure_message = None

        if result.phase == Phase.TERMINATING and not machine.has_finalizer(MACHINE_FINALIZER):
            result.released = True
