"""Tests for machine reconciliation."""

from datetime import UTC, datetime

import pytest
from cloudstack_mock import MockCloudStackClient, MockCloudStackState
from conftest import CLUSTER_UID, make_topology, zone

from cloudstack_operator.errors import CloudStackAPIError, ErrorKind, NotFoundError
from cloudstack_operator.machine import MachineReconciler, _MachineStages, owner_group_name
from cloudstack_operator.models import (
    MACHINE_FINALIZER,
    AffinityMode,
    AffinityTransition,
    ClusterTopology,
    IdentityReference,
    Machine,
    MachineSpec,
    ObjectMeta,
    TransitionStep,
)
from cloudstack_operator.reconciler import TopologyReconciler


@pytest.fixture
def reconciler(client_factory) -> MachineReconciler:
    return MachineReconciler(client_factory, requeue_delay=10, partial_transition_delay=2)


@pytest.fixture
def topology(client_factory, state: MockCloudStackState, zone_id: str) -> ClusterTopology:
    """A cluster that finished its active pass, with an API server rule."""
    state.add_public_ip("203.0.113.10", zone_id)
    cluster = make_topology(zone())
    result = TopologyReconciler(
        client_factory, requeue_delay=10, partial_transition_delay=2
    ).reconcile(cluster)
    assert result.success
    return cluster


def make_machine(
    name: str,
    instance_id: str | None,
    *,
    affinity: AffinityMode = AffinityMode.NONE,
    control_plane: bool = False,
    group_ids: list[str] | None = None,
) -> Machine:
    return Machine(
        metadata=ObjectMeta(name=name),
        spec=MachineSpec(
            cluster_name="cluster-a",
            owner_name="control-plane",
            instance_id=instance_id,
            affinity=affinity,
            control_plane=control_plane,
            affinity_group_ids=group_ids or [],
        ),
    )


class TestWaiting:
    """Tests for the dependency gates."""

    def test_waits_for_cluster(self, reconciler: MachineReconciler, state: MockCloudStackState) -> None:
        machine = make_machine("m0", state.add_vm("vm-0"))

        result = reconciler.reconcile(machine, None)

        assert result.requeue_after == 10
        assert result.message == "Waiting for cluster cluster-a"
        assert machine.has_finalizer(MACHINE_FINALIZER)
        assert not machine.status.ready

    def test_waits_for_ready_cluster(self, reconciler: MachineReconciler, state: MockCloudStackState) -> None:
        result = reconciler.reconcile(make_machine("m0", state.add_vm("vm-0")), make_topology(zone()))
        assert result.requeue_after == 10

    def test_waits_for_instance(self, reconciler: MachineReconciler, topology: ClusterTopology) -> None:
        result = reconciler.reconcile(make_machine("m0", None), topology)

        assert result.requeue_after == 10
        assert result.message == "Waiting for instance to be provisioned"


class TestAffinity:
    """Tests for affinity group convergence."""

    def test_no_affinity_makes_no_changes(
        self,
        reconciler: MachineReconciler,
        client: MockCloudStackClient,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        machine = make_machine("m0", state.add_vm("vm-0"))

        result = reconciler.reconcile(machine, topology)

        assert result.success
        assert machine.status.ready
        assert client.count("stopVirtualMachine") == 0

    def test_anti_affinity_group_shared_by_owner(
        self,
        reconciler: MachineReconciler,
        client: MockCloudStackClient,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        first = make_machine("m0", state.add_vm("vm-0"), affinity=AffinityMode.ANTI)
        second = make_machine("m1", state.add_vm("vm-1"), affinity=AffinityMode.ANTI)

        assert reconciler.reconcile(first, topology).success
        assert reconciler.reconcile(second, topology).success

        assert client.count("createAffinityGroup") == 1
        (group,) = topology.status.affinity_groups.members()
        assert group.name == f"antiAffinity-control-plane-{CLUSTER_UID}"
        assert group.name == owner_group_name(first, topology)
        assert state.affinity_groups[group.id]["type"] == "host anti-affinity"
        assert state.vm_groups(first.spec.instance_id) == [group.id]
        assert state.vm_groups(second.spec.instance_id) == [group.id]
        assert first.status.affinity_group_ids == [group.id]

    def test_pro_affinity_group_type(
        self,
        reconciler: MachineReconciler,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        machine = make_machine("m0", state.add_vm("vm-0"), affinity=AffinityMode.PRO)

        reconciler.reconcile(machine, topology)

        (group,) = topology.status.affinity_groups.members()
        assert group.name.startswith("proAffinity-")
        assert state.affinity_groups[group.id]["type"] == "host affinity"

    def test_converged_machine_is_not_restarted(
        self,
        reconciler: MachineReconciler,
        client: MockCloudStackClient,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        machine = make_machine("m0", state.add_vm("vm-0"), affinity=AffinityMode.ANTI)
        reconciler.reconcile(machine, topology)

        reconciler.reconcile(machine, topology)

        assert client.count("stopVirtualMachine") == 1

    def test_explicit_groups_are_joined(
        self,
        reconciler: MachineReconciler,
        client: MockCloudStackClient,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        first = state.add_affinity_group("rack-1")
        second = state.add_affinity_group("rack-2")
        machine = make_machine("m0", state.add_vm("vm-0"), group_ids=[first, second])

        result = reconciler.reconcile(machine, topology)

        assert result.success
        assert state.vm_groups(machine.spec.instance_id) == sorted([first, second])
        assert client.count("stopVirtualMachine") == 1
        assert client.count("createAffinityGroup") == 0

    def test_unknown_explicit_group_requeues(
        self,
        reconciler: MachineReconciler,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        machine = make_machine("m0", state.add_vm("vm-0"), group_ids=["missing"])

        result = reconciler.reconcile(machine, topology)

        assert result.error_kind == ErrorKind.NOT_FOUND
        assert result.requeue_after == 10
        assert not result.terminal

    def test_partial_transition_resumes_next_pass(
        self,
        reconciler: MachineReconciler,
        client: MockCloudStackClient,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        machine = make_machine("m0", state.add_vm("vm-0"), affinity=AffinityMode.ANTI)
        client.fail_next("updateVMAffinityGroup", CloudStackAPIError("Job failed", error_code=530))

        result = reconciler.reconcile(machine, topology)

        assert result.error_kind == ErrorKind.PARTIAL_TRANSITION
        assert result.requeue_after == 2
        assert machine.status.affinity_transition.step == TransitionStep.STOPPED_PENDING_UPDATE

        retry = reconciler.reconcile(machine, topology)

        assert retry.success
        assert state.vms[machine.spec.instance_id]["state"] == "Running"
        assert client.count("stopVirtualMachine") == 1

    def test_undeclared_group_is_left(
        self,
        reconciler: MachineReconciler,
        client: MockCloudStackClient,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        first = state.add_affinity_group("rack-1")
        second = state.add_affinity_group("rack-2")
        machine = make_machine("m0", state.add_vm("vm-0"), group_ids=[first, second])
        reconciler.reconcile(machine, topology)

        machine.spec.affinity_group_ids = [first]
        result = reconciler.reconcile(machine, topology)

        assert result.success
        assert state.vm_groups(machine.spec.instance_id) == [first]
        assert machine.status.affinity_group_ids == [first]
        assert machine.status.managed_affinity_group_ids == [first]
        assert client.count("stopVirtualMachine") == 2

    def test_foreign_group_is_kept(
        self,
        reconciler: MachineReconciler,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        """Groups the machine never declared are not its to leave."""
        foreign = state.add_affinity_group("placed-at-deploy")
        declared = state.add_affinity_group("rack-1")
        machine = make_machine(
            "m0", state.add_vm("vm-0", group_ids=[foreign]), group_ids=[declared]
        )
        reconciler.reconcile(machine, topology)

        machine.spec.affinity_group_ids = []
        reconciler.reconcile(machine, topology)

        assert state.vm_groups(machine.spec.instance_id) == [foreign]

    def test_partial_transition_without_delay_is_retried(
        self,
        client_factory,
        client: MockCloudStackClient,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        """A zero retry delay still leaves the machine recoverable."""
        reconciler = MachineReconciler(client_factory, requeue_delay=10, partial_transition_delay=0)
        machine = make_machine("m0", state.add_vm("vm-0"), affinity=AffinityMode.ANTI)
        client.fail_next("updateVMAffinityGroup", CloudStackAPIError("Job failed", error_code=530))

        result = reconciler.reconcile(machine, topology)

        assert result.error_kind == ErrorKind.PARTIAL_TRANSITION
        assert result.requeue_after == 0
        assert not result.terminal
        assert machine.status.failure_reason is None


class TestLoadBalancerRegistration:
    """Tests for control plane registration."""

    def test_control_plane_registered(
        self,
        reconciler: MachineReconciler,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        vm_id = state.add_vm("cp-0")
        machine = make_machine("cp-0", vm_id, control_plane=True)

        reconciler.reconcile(machine, topology)

        assert machine.status.lb_registered
        assert state.lb_instances[topology.status.lb_rule_id] == [vm_id]

    def test_worker_not_registered(
        self,
        reconciler: MachineReconciler,
        client: MockCloudStackClient,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        machine = make_machine("w-0", state.add_vm("w-0"))

        reconciler.reconcile(machine, topology)

        assert not machine.status.lb_registered
        assert client.count("assignToLoadBalancerRule") == 0


class TestMachineTeardown:
    """Tests for machine deletion."""

    def test_pending_transition_finished_before_release(
        self,
        reconciler: MachineReconciler,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        group_id = state.add_affinity_group("rack-1")
        vm_id = state.add_vm("vm-0")
        state.vms[vm_id]["state"] = "Stopped"
        machine = make_machine("m0", vm_id)
        machine.add_finalizer(MACHINE_FINALIZER)
        machine.status.affinity_transition = AffinityTransition(
            step=TransitionStep.STOPPED_PENDING_UPDATE, target_group_ids=[group_id]
        )
        machine.metadata.deletion_timestamp = datetime.now(UTC)

        result = reconciler.reconcile(machine, topology)

        assert result.released
        assert state.vms[vm_id]["state"] == "Running"
        assert state.vm_groups(vm_id) == [group_id]
        assert not machine.has_finalizer(MACHINE_FINALIZER)

    def test_identity_falls_back_to_cluster(
        self,
        client: MockCloudStackClient,
        state: MockCloudStackState,
        topology: ClusterTopology,
    ) -> None:
        """Machines without their own identity use the cluster credentials."""
        seen: list[IdentityReference | None] = []

        def factory(identity_ref: IdentityReference | None) -> MockCloudStackClient:
            seen.append(identity_ref)
            return client

        topology.spec.identity_ref = IdentityReference(name="tenant-a")
        MachineReconciler(factory, requeue_delay=10, partial_transition_delay=2).reconcile(
            make_machine("m0", state.add_vm("vm-0")), topology
        )

        assert seen == [IdentityReference(name="tenant-a")]


class TestMissingCluster:
    """Tests for stages that need the cluster."""

    def test_registration_without_cluster_is_not_found(
        self, client: MockCloudStackClient, state: MockCloudStackState
    ) -> None:
        stages = _MachineStages(client, None, requeue_delay=10)
        machine = make_machine("cp-0", state.add_vm("cp-0"), control_plane=True)

        with pytest.raises(NotFoundError):
            stages.register_with_load_balancer(machine)
