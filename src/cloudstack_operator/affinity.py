"""Host affinity groups and instance membership.

Changing the groups of a live instance needs the instance stopped. The
change therefore runs as three provider calls with no transaction around
them:

    STARTED --stop--> STOPPED_PENDING_UPDATE --update--> UPDATED_PENDING_START --start--> STARTED

The last completed step and the target group ids are persisted in
machine.status.affinity_transition. A later pass resumes from that step
with the persisted targets instead of stopping the instance again. Any
failure after the stop raises PartialTransitionError so the machine is
requeued promptly instead of being left stopped until the next resync.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .cloudstack import AffinityGroupRecord, CloudStackClient
from .errors import AmbiguousMatchError, NotFoundError, PartialTransitionError
from .models import (
    AffinityGroup,
    AffinityGroupSet,
    AffinityGroupType,
    AffinityTransition,
    ClusterTopology,
    Machine,
    TransitionStep,
)

logger = logging.getLogger(__name__)


def _to_group(record: AffinityGroupRecord) -> AffinityGroup:
    try:
        group_type: AffinityGroupType | None = AffinityGroupType(record.type)
    except ValueError:
        group_type = None
    return AffinityGroup(id=record.id, name=record.name, type=group_type)


class AffinityGroupManager:
    """CRUD for affinity groups and the membership transition of instances."""

    def __init__(self, client: CloudStackClient) -> None:
        self._client = client

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    def fetch_affinity_group(
        self, group: AffinityGroup, *, account: str = "", domain_id: str = ""
    ) -> AffinityGroup:
        """Resolve a group by id, or by name when no id is known.

        Fills in the missing id, name and type on the passed group.

        Raises:
            NotFoundError: If nothing matches or neither id nor name is set.
            AmbiguousMatchError: If more than one group matches.
        """
        if group.id:
            response = self._client.list_affinity_groups(group_id=group.id)
        elif group.name:
            response = self._client.list_affinity_groups(
                name=group.name, account=account, domain_id=domain_id
            )
        else:
            raise NotFoundError("could not fetch affinity group without a name or id")

        label = group.id or group.name
        if response.count == 0:
            raise NotFoundError(f"No match found for affinity group {label}")
        if response.count > 1:
            raise AmbiguousMatchError(
                f"Expected 1 affinity group matching {label}, but got {response.count}"
            )

        found = _to_group(response.items[0])
        group.id = found.id
        group.name = found.name or group.name
        group.type = found.type or group.type
        return group

    def get_or_create_affinity_group(
        self, topology: ClusterTopology, group: AffinityGroup
    ) -> AffinityGroup:
        """Fetch the group, creating it in the cluster's scope if absent.

        An ambiguous fetch is never followed by a create. The created group
        is recorded in status.affinity_groups so teardown can delete it.
        """
        account, domain_id = topology.spec.account, topology.status.domain_id
        try:
            return self.fetch_affinity_group(group, account=account, domain_id=domain_id)
        except NotFoundError:
            pass

        if group.type is None:
            raise ValueError(f"affinity group {group.name} needs a type to be created")
        record = self._client.create_affinity_group(
            name=group.name,
            group_type=group.type.value,
            account=account,
            domain_id=domain_id,
        )
        group.id = record.id
        topology.status.affinity_groups.add(group.model_copy())
        logger.info(
            "Created affinity group",
            extra={"cluster": topology.metadata.name, "group": group.name, "group_id": group.id},
        )
        return group

    def delete_affinity_group(self, group: AffinityGroup) -> None:
        self._client.delete_affinity_group(group_id=group.id, name="" if group.id else group.name)
        logger.info("Deleted affinity group", extra={"group": group.name, "group_id": group.id})

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def get_current_affinity_groups(self, machine: Machine) -> AffinityGroupSet:
        """Groups the live instance belongs to, read from its own record."""
        instance_id = machine.spec.instance_id or ""
        response = self._client.list_virtual_machines(instance_id=instance_id)
        if response.count == 0:
            raise NotFoundError(f"No match found for instance {instance_id}")
        if response.count > 1:
            raise AmbiguousMatchError(f"found more than one VM for ID: {instance_id}")
        return AffinityGroupSet.of([_to_group(g) for g in response.items[0].affinity_groups])

    def associate_affinity_group(self, machine: Machine, group: AffinityGroup) -> bool:
        """Add the instance to a group. Returns True if a transition ran."""
        return self.change_membership(machine, add=[group])

    def dissociate_affinity_group(self, machine: Machine, group: AffinityGroup) -> bool:
        """Remove the instance from a group. Returns True if a transition ran."""
        return self.change_membership(machine, remove=[group.id])

    def change_membership(
        self,
        machine: Machine,
        *,
        add: Sequence[AffinityGroup] = (),
        remove: Sequence[str] = (),
    ) -> bool:
        """Add and remove groups by id in one transition.

        The live membership is the baseline. Nothing is stopped when the
        resulting set equals it; status.affinity_group_ids is refreshed
        from the instance instead.

        Returns:
            True if a transition ran.
        """
        self.resume_transition(machine)
        current = self.get_current_affinity_groups(machine)
        baseline = current.ids()
        for group in add:
            current.add(group)
        for group_id in remove:
            current.remove(group_id)

        if current.ids() == baseline:
            machine.status.affinity_group_ids = baseline
            return False

        logger.info(
            "Changing affinity groups",
            extra={
                "machine": machine.metadata.name,
                "instance_id": machine.spec.instance_id,
                "add": sorted(set(current.ids()) - set(baseline)),
                "remove": sorted(set(baseline) - set(current.ids())),
            },
        )
        self.execute_transition(machine, current.ids())
        return True

    def resume_transition(self, machine: Machine) -> None:
        """Finish a transition an earlier pass left halfway."""
        transition = machine.status.affinity_transition
        if transition.pending:
            logger.warning(
                "Resuming affinity transition",
                extra={
                    "machine": machine.metadata.name,
                    "instance_id": machine.spec.instance_id,
                    "step": transition.step.value,
                },
            )
            self.execute_transition(machine, transition.target_group_ids)

    def execute_transition(self, machine: Machine, target_group_ids: list[str]) -> None:
        """Stop the instance, set its groups, start it again.

        Each completed step is written to machine.status before the next
        call. Resumes from the persisted step when one is pending.

        Raises:
            PartialTransitionError: If a call fails after the instance was stopped.
        """
        instance_id = machine.spec.instance_id or ""
        transition = machine.status.affinity_transition
        if not transition.pending:
            transition = AffinityTransition(target_group_ids=list(target_group_ids))
            machine.status.affinity_transition = transition
            self._client.stop_virtual_machine(instance_id)
            transition.step = TransitionStep.STOPPED_PENDING_UPDATE

        try:
            if transition.step == TransitionStep.STOPPED_PENDING_UPDATE:
                self._client.update_vm_affinity_group(
                    instance_id=instance_id, group_ids=transition.target_group_ids
                )
                transition.step = TransitionStep.UPDATED_PENDING_START

            if transition.step == TransitionStep.UPDATED_PENDING_START:
                self._client.start_virtual_machine(instance_id)
                transition.step = TransitionStep.STARTED
        except Exception as e:
            raise PartialTransitionError(
                f"instance {instance_id} left stopped during affinity change: {e}",
                instance_id=instance_id,
                completed_step=transition.step.value,
            ) from e

        machine.status.affinity_group_ids = list(transition.target_group_ids)
        logger.info(
            "Affinity groups updated",
            extra={"instance_id": instance_id, "group_ids": transition.target_group_ids},
        )
