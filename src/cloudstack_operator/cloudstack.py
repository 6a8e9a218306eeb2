"""Synchronous CloudStack API client.

Every operation is one signed HTTP GET against the CloudStack API endpoint,
sent through an azure-core pipeline. Asynchronous CloudStack commands
return a job id; the client waits for the job to finish, bounded by the
async job timeout.

ARCHITECTURE:
- _execute() is the only method touching the wire. Test doubles replace it.
- _call() filters parameters and resolves async jobs.
- Typed methods return record dataclasses or ListResponse, whose count is
  what callers use to tell zero, one and many matches apart.

The client never retries. A failed call raises and the object is requeued.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar
from urllib.parse import quote, urlencode

from azure.core import PipelineClient
from azure.core.pipeline.policies import HeadersPolicy, RetryPolicy, UserAgentPolicy
from azure.core.rest import HttpRequest

from .credentials import ApiConfig
from .errors import CloudStackAPIError, TransientError

logger = logging.getLogger(__name__)

USER_AGENT = "cloudstack-operator/0.1.0"

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
DEFAULT_ASYNC_JOB_TIMEOUT_SECONDS = 300
ASYNC_JOB_POLL_INTERVAL_SECONDS = 2.0

JOB_STATUS_PENDING = 0
JOB_STATUS_SUCCEEDED = 1
JOB_STATUS_FAILED = 2

T = TypeVar("T")


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class ListResponse(Generic[T]):
    """A list call result. count is the provider's own match count."""

    count: int
    items: list[T] = field(default_factory=list)


@dataclass(frozen=True)
class ZoneRecord:
    id: str
    name: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ZoneRecord:
        return cls(id=data.get("id", ""), name=data.get("name", ""))


@dataclass(frozen=True)
class DomainRecord:
    id: str
    name: str
    path: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> DomainRecord:
        return cls(id=data.get("id", ""), name=data.get("name", ""), path=data.get("path", ""))


@dataclass(frozen=True)
class AccountRecord:
    id: str
    name: str
    domain_id: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> AccountRecord:
        return cls(
            id=data.get("id", ""), name=data.get("name", ""), domain_id=data.get("domainid", "")
        )


@dataclass(frozen=True)
class NetworkRecord:
    id: str
    name: str
    type: str
    zone_id: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> NetworkRecord:
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            type=data.get("type", ""),
            zone_id=data.get("zoneid", ""),
        )


@dataclass(frozen=True)
class NetworkOfferingRecord:
    id: str
    name: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> NetworkOfferingRecord:
        return cls(id=data.get("id", ""), name=data.get("name", ""))


@dataclass(frozen=True)
class PublicIpAddressRecord:
    """A public address. allocated is a timestamp string, empty when free."""

    id: str
    ipaddress: str
    allocated: str = ""
    associated_network_id: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> PublicIpAddressRecord:
        return cls(
            id=data.get("id", ""),
            ipaddress=data.get("ipaddress", ""),
            allocated=data.get("allocated", ""),
            associated_network_id=data.get("associatednetworkid", ""),
        )


@dataclass(frozen=True)
class LoadBalancerRuleRecord:
    id: str
    name: str
    public_port: str
    private_port: str = ""
    public_ip_id: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> LoadBalancerRuleRecord:
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            public_port=str(data.get("publicport", "")),
            private_port=str(data.get("privateport", "")),
            public_ip_id=data.get("publicipid", ""),
        )


@dataclass(frozen=True)
class AffinityGroupRecord:
    id: str
    name: str
    type: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> AffinityGroupRecord:
        return cls(id=data.get("id", ""), name=data.get("name", ""), type=data.get("type", ""))


@dataclass(frozen=True)
class VirtualMachineRecord:
    id: str
    name: str
    state: str
    affinity_groups: list[AffinityGroupRecord] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> VirtualMachineRecord:
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            state=data.get("state", ""),
            affinity_groups=[
                AffinityGroupRecord.from_api(group) for group in data.get("affinitygroup", [])
            ],
        )


def _scope(account: str | None, domain_id: str | None) -> dict[str, Any]:
    """Account/domain parameters, omitted when empty."""
    return {"account": account or None, "domainid": domain_id or None}


def _flatten_tags(tags: dict[str, str]) -> dict[str, str]:
    """Encode a tag map as CloudStack map parameters (tags[0].key=...)."""
    params: dict[str, str] = {}
    for index, (key, value) in enumerate(sorted(tags.items())):
        params[f"tags[{index}].key"] = key
        params[f"tags[{index}].value"] = value
    return params


class CloudStackClient:
    """Blocking client for the CloudStack API.

    Args:
        api: Endpoint and keys.
        request_timeout_seconds: Connect/read timeout of each HTTP request.
        async_job_timeout_seconds: Upper bound for waiting on async jobs.
    """

    def __init__(
        self,
        api: ApiConfig,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        async_job_timeout_seconds: int = DEFAULT_ASYNC_JOB_TIMEOUT_SECONDS,
    ) -> None:
        self._api = api
        self._request_timeout = request_timeout_seconds
        self._async_job_timeout = async_job_timeout_seconds
        self._pipeline = PipelineClient(
            base_url=api.api_url,
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(user_agent=USER_AGENT),
                RetryPolicy.no_retries(),
            ],
        )

    @property
    def api_url(self) -> str:
        return self._api.api_url

    def close(self) -> None:
        self._pipeline.close()

    # -------------------------------------------------------------------------
    # Wire
    # -------------------------------------------------------------------------

    def _signed_url(self, params: dict[str, str]) -> str:
        query = urlencode(sorted(params.items()), quote_via=quote, safe="*")
        digest = hmac.new(
            self._api.secret_key.encode("utf-8"),
            query.lower().encode("utf-8"),
            hashlib.sha1,
        ).digest()
        signature = quote(base64.b64encode(digest).decode("ascii"), safe="")
        return f"{self._api.api_url}?{query}&signature={signature}"

    def _execute(self, command: str, params: dict[str, str]) -> dict[str, Any]:
        """Send one API command and return the unwrapped response body.

        Raises:
            CloudStackAPIError: If CloudStack answers with an error.
            azure.core.exceptions.ServiceRequestError: On connection failures.
            azure.core.exceptions.ServiceResponseError: On read timeouts.
        """
        request_params = dict(params, command=command, response="json", apiKey=self._api.api_key)
        request = HttpRequest("GET", self._signed_url(request_params))
        response = self._pipeline.send_request(
            request,
            connection_timeout=self._request_timeout,
            read_timeout=self._request_timeout,
            connection_verify=self._api.verify_ssl,
        )

        try:
            payload = response.json()
        except ValueError as e:
            raise CloudStackAPIError(
                f"Invalid JSON in {command} response (HTTP {response.status_code})",
                command=command,
                error_code=response.status_code,
            ) from e

        body: dict[str, Any] = {}
        if isinstance(payload, dict) and payload:
            body = next(iter(payload.values())) or {}

        if response.status_code >= 400 or "errortext" in body:
            raise CloudStackAPIError(
                body.get("errortext", f"{command} failed with HTTP {response.status_code}"),
                command=command,
                error_code=body.get("errorcode", response.status_code),
                cs_error_code=body.get("cserrorcode"),
            )
        return body

    def _call(self, command: str, params: dict[str, Any], *, is_async: bool = False) -> dict[str, Any]:
        clean = {
            key: str(value).lower() if isinstance(value, bool) else str(value)
            for key, value in params.items()
            if value is not None
        }
        logger.debug("CloudStack call", extra={"command": command})
        body = self._execute(command, clean)
        if is_async and "jobid" in body:
            return self._wait_for_job(command, body["jobid"])
        return body

    def _wait_for_job(self, command: str, job_id: str) -> dict[str, Any]:
        deadline = time.monotonic() + self._async_job_timeout
        while True:
            body = self._execute("queryAsyncJobResult", {"jobid": job_id})
            status = int(body.get("jobstatus", JOB_STATUS_PENDING))
            if status == JOB_STATUS_SUCCEEDED:
                result = body.get("jobresult") or {}
                return result if isinstance(result, dict) else {}
            if status == JOB_STATUS_FAILED:
                result = body.get("jobresult") or {}
                raise CloudStackAPIError(
                    result.get("errortext", f"{command} job {job_id} failed"),
                    command=command,
                    error_code=result.get("errorcode"),
                    cs_error_code=result.get("cserrorcode"),
                )
            if time.monotonic() >= deadline:
                raise TransientError(
                    f"{command} job {job_id} did not finish within {self._async_job_timeout}s"
                )
            time.sleep(ASYNC_JOB_POLL_INTERVAL_SECONDS)

    def _list(
        self, command: str, key: str, params: dict[str, Any], record: Any
    ) -> ListResponse[Any]:
        body = self._call(command, params)
        raw = body.get(key, [])
        return ListResponse(count=int(body.get("count", len(raw))), items=[record.from_api(r) for r in raw])

    # -------------------------------------------------------------------------
    # Zones, domains, accounts
    # -------------------------------------------------------------------------

    def list_zones(self, *, zone_id: str = "", name: str = "") -> ListResponse[ZoneRecord]:
        return self._list(
            "listZones", "zone", {"id": zone_id or None, "name": name or None}, ZoneRecord
        )

    def list_domains(self, *, name: str = "", domain_id: str = "") -> ListResponse[DomainRecord]:
        return self._list(
            "listDomains",
            "domain",
            {"name": name or None, "id": domain_id or None, "listall": True},
            DomainRecord,
        )

    def list_accounts(self, *, name: str, domain_id: str) -> ListResponse[AccountRecord]:
        return self._list(
            "listAccounts",
            "account",
            {"name": name, "domainid": domain_id, "listall": True},
            AccountRecord,
        )

    # -------------------------------------------------------------------------
    # Networks
    # -------------------------------------------------------------------------

    def list_networks(
        self,
        *,
        network_id: str = "",
        name: str = "",
        zone_id: str = "",
        account: str = "",
        domain_id: str = "",
    ) -> ListResponse[NetworkRecord]:
        params = {
            "id": network_id or None,
            "keyword": name or None,
            "zoneid": zone_id or None,
            **_scope(account, domain_id),
        }
        response = self._list("listNetworks", "network", params, NetworkRecord)
        if not name:
            return response
        # keyword is a substring search; keep exact name matches only
        exact = [n for n in response.items if n.name == name]
        return ListResponse(count=len(exact), items=exact)

    def list_network_offerings(self, *, name: str) -> ListResponse[NetworkOfferingRecord]:
        return self._list(
            "listNetworkOfferings", "networkoffering", {"name": name}, NetworkOfferingRecord
        )

    def create_network(
        self,
        *,
        name: str,
        offering_id: str,
        zone_id: str,
        account: str = "",
        domain_id: str = "",
    ) -> NetworkRecord:
        body = self._call(
            "createNetwork",
            {
                "name": name,
                "displaytext": name,
                "networkofferingid": offering_id,
                "zoneid": zone_id,
                **_scope(account, domain_id),
            },
        )
        return NetworkRecord.from_api(body.get("network", {}))

    def delete_network(self, network_id: str) -> None:
        self._call("deleteNetwork", {"id": network_id}, is_async=True)

    # -------------------------------------------------------------------------
    # Public IP addresses and firewall
    # -------------------------------------------------------------------------

    def list_public_ip_addresses(
        self,
        *,
        ipaddress: str = "",
        account: str = "",
        domain_id: str = "",
        zone_id: str = "",
    ) -> ListResponse[PublicIpAddressRecord]:
        return self._list(
            "listPublicIpAddresses",
            "publicipaddress",
            {
                "allocatedonly": False,
                "ipaddress": ipaddress or None,
                "zoneid": zone_id or None,
                **_scope(account, domain_id),
            },
            PublicIpAddressRecord,
        )

    def associate_ip_address(
        self, *, network_id: str, ipaddress: str, account: str = "", domain_id: str = ""
    ) -> PublicIpAddressRecord:
        body = self._call(
            "associateIpAddress",
            {"networkid": network_id, "ipaddress": ipaddress, **_scope(account, domain_id)},
            is_async=True,
        )
        return PublicIpAddressRecord.from_api(body.get("ipaddress", {}))

    def disassociate_ip_address(self, public_ip_id: str) -> None:
        self._call("disassociateIpAddress", {"id": public_ip_id}, is_async=True)

    def create_egress_firewall_rule(self, *, network_id: str, protocol: str) -> None:
        self._call(
            "createEgressFirewallRule",
            {"networkid": network_id, "protocol": protocol},
            is_async=True,
        )

    # -------------------------------------------------------------------------
    # Load balancer rules
    # -------------------------------------------------------------------------

    def list_load_balancer_rules(
        self, *, public_ip_id: str, account: str = "", domain_id: str = ""
    ) -> ListResponse[LoadBalancerRuleRecord]:
        return self._list(
            "listLoadBalancerRules",
            "loadbalancerrule",
            {"publicipid": public_ip_id, **_scope(account, domain_id)},
            LoadBalancerRuleRecord,
        )

    def create_load_balancer_rule(
        self,
        *,
        name: str,
        algorithm: str,
        public_port: int,
        private_port: int,
        public_ip_id: str,
        network_id: str,
        protocol: str,
        account: str = "",
        domain_id: str = "",
    ) -> LoadBalancerRuleRecord:
        body = self._call(
            "createLoadBalancerRule",
            {
                "name": name,
                "algorithm": algorithm,
                "publicport": public_port,
                "privateport": private_port,
                "publicipid": public_ip_id,
                "networkid": network_id,
                "protocol": protocol,
                **_scope(account, domain_id),
            },
            is_async=True,
        )
        return LoadBalancerRuleRecord.from_api(body.get("loadbalancer", {}))

    def list_load_balancer_rule_instances(self, rule_id: str) -> ListResponse[VirtualMachineRecord]:
        return self._list(
            "listLoadBalancerRuleInstances",
            "loadbalancerruleinstance",
            {"id": rule_id},
            VirtualMachineRecord,
        )

    def assign_to_load_balancer_rule(self, *, rule_id: str, instance_ids: list[str]) -> None:
        self._call(
            "assignToLoadBalancerRule",
            {"id": rule_id, "virtualmachineids": ",".join(instance_ids)},
            is_async=True,
        )

    # -------------------------------------------------------------------------
    # Affinity groups and instances
    # -------------------------------------------------------------------------

    def list_affinity_groups(
        self, *, group_id: str = "", name: str = "", account: str = "", domain_id: str = ""
    ) -> ListResponse[AffinityGroupRecord]:
        return self._list(
            "listAffinityGroups",
            "affinitygroup",
            {"id": group_id or None, "name": name or None, **_scope(account, domain_id)},
            AffinityGroupRecord,
        )

    def create_affinity_group(
        self, *, name: str, group_type: str, account: str = "", domain_id: str = ""
    ) -> AffinityGroupRecord:
        body = self._call(
            "createAffinityGroup",
            {"name": name, "type": group_type, **_scope(account, domain_id)},
            is_async=True,
        )
        return AffinityGroupRecord.from_api(body.get("affinitygroup", {}))

    def delete_affinity_group(self, *, group_id: str = "", name: str = "") -> None:
        self._call(
            "deleteAffinityGroup",
            {"id": group_id or None, "name": name or None},
            is_async=True,
        )

    def list_virtual_machines(self, *, instance_id: str) -> ListResponse[VirtualMachineRecord]:
        return self._list(
            "listVirtualMachines",
            "virtualmachine",
            {"id": instance_id, "listall": True},
            VirtualMachineRecord,
        )

    def stop_virtual_machine(self, instance_id: str) -> None:
        self._call("stopVirtualMachine", {"id": instance_id}, is_async=True)

    def start_virtual_machine(self, instance_id: str) -> None:
        self._call("startVirtualMachine", {"id": instance_id}, is_async=True)

    def update_vm_affinity_group(self, *, instance_id: str, group_ids: list[str]) -> None:
        # An empty id list clears every group from the instance
        self._call(
            "updateVMAffinityGroup",
            {"id": instance_id, "affinitygroupids": ",".join(group_ids)},
            is_async=True,
        )

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def list_tags(self, *, resource_id: str, resource_type: str) -> dict[str, str]:
        body = self._call(
            "listTags",
            {"resourceid": resource_id, "resourcetype": resource_type, "listall": True},
        )
        return {tag.get("key", ""): tag.get("value", "") for tag in body.get("tag", [])}

    def create_tags(self, *, resource_id: str, resource_type: str, tags: dict[str, str]) -> None:
        self._call(
            "createTags",
            {"resourceids": resource_id, "resourcetype": resource_type, **_flatten_tags(tags)},
            is_async=True,
        )

    def delete_tags(self, *, resource_id: str, resource_type: str, tags: dict[str, str]) -> None:
        self._call(
            "deleteTags",
            {"resourceids": resource_id, "resourcetype": resource_type, **_flatten_tags(tags)},
            is_async=True,
        )
