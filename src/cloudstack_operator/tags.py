"""Tag access on CloudStack resources.

Tags are the only ownership record this operator keeps on shared
resources. Reads and writes are not atomic: two clusters reconciling the
same network can race on the read-modify-write below. The periodic resync
re-derives tag state, so the tag set converges eventually rather than
being consistent at any single point in time.
"""

from __future__ import annotations

import logging
from enum import Enum

from .cloudstack import CloudStackClient

logger = logging.getLogger(__name__)

CLUSTER_TAG_PREFIX = "CAPC_cluster_"
CREATED_BY_TAG = "created_by_CAPC"
TAG_MARKER_VALUE = "1"


class ResourceType(str, Enum):
    """CloudStack resource types that accept tags."""

    NETWORK = "Network"
    PUBLIC_IP = "PublicIpAddress"
    VIRTUAL_MACHINE = "UserVm"
    LOAD_BALANCER = "LoadBalancer"


def cluster_tag_name(cluster_uid: str) -> str:
    """Ownership tag a cluster puts on resources it uses."""
    return f"{CLUSTER_TAG_PREFIX}{cluster_uid}"


class TagAccessor:
    """Get, add and delete string tags on any resource."""

    def __init__(self, client: CloudStackClient) -> None:
        self._client = client

    def get_tags(self, resource_id: str, resource_type: ResourceType) -> dict[str, str]:
        return self._client.list_tags(resource_id=resource_id, resource_type=resource_type.value)

    def add_tags(
        self, resource_id: str, resource_type: ResourceType, tags: dict[str, str]
    ) -> dict[str, str]:
        """Add tags whose name has no value yet on the resource.

        Returns:
            The tags that were actually written.
        """
        existing = self.get_tags(resource_id, resource_type)
        new_tags = {name: value for name, value in tags.items() if not existing.get(name)}
        if new_tags:
            self._client.create_tags(
                resource_id=resource_id, resource_type=resource_type.value, tags=new_tags
            )
            logger.info(
                "Tags added",
                extra={"resource_id": resource_id, "tags": sorted(new_tags)},
            )
        return new_tags

    def delete_tags(
        self, resource_id: str, resource_type: ResourceType, names: list[str]
    ) -> dict[str, str]:
        """Delete the named tags that are present on the resource.

        Returns:
            The tags that were actually removed, with their former values.
        """
        existing = self.get_tags(resource_id, resource_type)
        doomed = {name: existing[name] for name in names if existing.get(name)}
        if doomed:
            self._client.delete_tags(
                resource_id=resource_id, resource_type=resource_type.value, tags=doomed
            )
            logger.info(
                "Tags deleted",
                extra={"resource_id": resource_id, "tags": sorted(doomed)},
            )
        return doomed
