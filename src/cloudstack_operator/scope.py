"""Account and domain scoping for a cluster.

Reads:  spec.domain, spec.account, status.domain_id
Writes: status.domain_id
"""

from __future__ import annotations

import logging

from .cloudstack import CloudStackClient
from .errors import AmbiguousMatchError, NotFoundError
from .models import ClusterTopology

logger = logging.getLogger(__name__)

ROOT_DOMAIN = "ROOT"


def _matches_domain(declared: str, name: str, path: str) -> bool:
    # A declared domain is either a bare name or a path below ROOT
    if "/" in declared:
        wanted = declared if declared.startswith(ROOT_DOMAIN) else f"{ROOT_DOMAIN}/{declared}"
        return path.rstrip("/") == wanted.rstrip("/")
    return name == declared or path == declared


def resolve_domain_and_account(client: CloudStackClient, topology: ClusterTopology) -> None:
    """Populate status.domain_id and verify the declared account.

    Without a declared domain the cluster runs in the scope of the API
    credentials and nothing is resolved.

    Raises:
        NotFoundError: If the domain or account does not exist.
        AmbiguousMatchError: If the domain name matches several domains.
    """
    spec, status = topology.spec, topology.status
    if not spec.domain:
        status.domain_id = ""
        return

    if not status.domain_id:
        short_name = spec.domain.rstrip("/").rsplit("/", 1)[-1]
        response = client.list_domains(name=short_name)
        matches = [d for d in response.items if _matches_domain(spec.domain, d.name, d.path)]
        if not matches:
            raise NotFoundError(f"No match found for domain {spec.domain}")
        if len(matches) > 1:
            raise AmbiguousMatchError(
                f"Expected 1 domain matching {spec.domain}, but got {len(matches)}"
            )
        status.domain_id = matches[0].id
        logger.info(
            "Resolved domain",
            extra={"cluster": topology.metadata.name, "domain_id": status.domain_id},
        )

    if spec.account:
        accounts = client.list_accounts(name=spec.account, domain_id=status.domain_id)
        if accounts.count == 0:
            raise NotFoundError(f"No match found for account {spec.account} in {spec.domain}")
        if accounts.count > 1:
            raise AmbiguousMatchError(
                f"Expected 1 account named {spec.account}, but got {accounts.count}"
            )
