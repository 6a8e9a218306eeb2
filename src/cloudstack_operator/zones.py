"""Zone resolution and failure domains.

Each declared zone becomes a zone snapshot in status.zones once the
provider knows it. A declared zone the provider does not list is not an
error: the zone count check below simply requeues until every zone is
discovered. A zone that was resolved before keeps its snapshot, marked as
undiscovered, so teardown can still release its network.
"""

from __future__ import annotations

import logging

from .cloudstack import CloudStackClient
from .errors import AmbiguousMatchError
from .models import ClusterTopology, FailureDomainSpec, Zone, ZoneStatus
from .pipeline import StageResult

logger = logging.getLogger(__name__)


class ZoneResolver:
    """Discovers declared zones and derives placement failure domains."""

    def __init__(self, client: CloudStackClient, *, requeue_delay: float) -> None:
        self._client = client
        self._requeue_delay = requeue_delay

    def resolve_zones(self, topology: ClusterTopology) -> None:
        """Fetch one zone snapshot per declared zone.

        Reads:  spec.zones, status.zones (network snapshots are carried over)
        Writes: status.zones

        Raises:
            AmbiguousMatchError: If a declared zone name matches several zones.
        """
        previous = topology.status.zones
        discovered: dict[str, ZoneStatus] = {}

        for zone in topology.spec.zones:
            response = self._client.list_zones(zone_id=zone.id, name="" if zone.id else zone.name)
            if response.count == 0:
                logger.info(
                    "Declared zone not found",
                    extra={"cluster": topology.metadata.name, "zone": zone.id or zone.name},
                )
                # Keep what was resolved before; teardown still needs its network
                known = _snapshot_for(previous, zone)
                if known is not None:
                    discovered[known.id] = known.model_copy(update={"discovered": False})
                continue
            if response.count > 1:
                raise AmbiguousMatchError(
                    f"Expected 1 zone matching {zone.id or zone.name}, but got {response.count}"
                )

            record = response.items[0]
            snapshot = previous.get(record.id)
            if snapshot is None:
                snapshot = ZoneStatus(id=record.id, network=zone.network.model_copy())
            discovered[record.id] = snapshot.model_copy(
                update={"name": record.name, "discovered": True}
            )

        topology.status.zones = discovered

    def verify_zone_count(self, topology: ClusterTopology) -> StageResult | None:
        """Requeue until every declared zone is listed by the provider."""
        expected = len(topology.spec.zones)
        actual = sum(1 for zone in topology.status.zones.values() if zone.discovered)
        if expected != actual:
            return StageResult.requeue(
                self._requeue_delay, f"Expected {expected} Zones, but found {actual}"
            )
        return None

    def set_failure_domains(self, topology: ClusterTopology) -> None:
        """Rebuild the failure domain map from the discovered zones.

        Reads:  status.zones
        Writes: status.failure_domains (replaced, never merged)
        """
        topology.status.failure_domains = {
            zone_id: FailureDomainSpec(control_plane=True)
            for zone_id, zone in topology.status.zones.items()
            if zone.discovered
        }


def _snapshot_for(snapshots: dict[str, ZoneStatus], zone: Zone) -> ZoneStatus | None:
    if zone.id:
        return snapshots.get(zone.id)
    for snapshot in snapshots.values():
        if snapshot.name == zone.name:
            return snapshot
    return None
