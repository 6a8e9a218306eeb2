"""Tests for domain and account resolution."""

import pytest
from cloudstack_mock import MockCloudStackClient, MockCloudStackState
from conftest import make_topology, zone

from cloudstack_operator.errors import AmbiguousMatchError, NotFoundError
from cloudstack_operator.scope import resolve_domain_and_account


class TestResolveDomainAndAccount:
    """Tests for resolve_domain_and_account."""

    def test_no_domain_clears_status(self, client: MockCloudStackClient) -> None:
        topology = make_topology(zone())
        topology.status.domain_id = "stale"

        resolve_domain_and_account(client, topology)

        assert topology.status.domain_id == ""
        assert client.calls == []

    def test_domain_and_account(self, client: MockCloudStackClient, state: MockCloudStackState) -> None:
        domain_id = state.add_domain("tenant")
        state.add_account("acme", domain_id)
        topology = make_topology(zone(), account="acme", domain="tenant")

        resolve_domain_and_account(client, topology)

        assert topology.status.domain_id == domain_id

    def test_domain_by_path(self, client: MockCloudStackClient, state: MockCloudStackState) -> None:
        """A path picks one of several same-named domains."""
        state.add_domain("dev", path="ROOT/team-a/dev")
        wanted = state.add_domain("dev", path="ROOT/team-b/dev")
        topology = make_topology(zone(), domain="team-b/dev")

        resolve_domain_and_account(client, topology)

        assert topology.status.domain_id == wanted

    def test_ambiguous_domain_name(self, client: MockCloudStackClient, state: MockCloudStackState) -> None:
        state.add_domain("dev", path="ROOT/team-a/dev")
        state.add_domain("dev", path="ROOT/team-b/dev")

        with pytest.raises(AmbiguousMatchError):
            resolve_domain_and_account(client, make_topology(zone(), domain="dev"))

    def test_unknown_domain(self, client: MockCloudStackClient) -> None:
        with pytest.raises(NotFoundError):
            resolve_domain_and_account(client, make_topology(zone(), domain="nowhere"))

    def test_unknown_account(self, client: MockCloudStackClient, state: MockCloudStackState) -> None:
        state.add_domain("tenant")
        with pytest.raises(NotFoundError) as exc_info:
            resolve_domain_and_account(client, make_topology(zone(), account="ghost", domain="tenant"))
        assert "account ghost" in str(exc_info.value)

    def test_known_domain_id_not_looked_up_again(
        self, client: MockCloudStackClient, state: MockCloudStackState
    ) -> None:
        domain_id = state.add_domain("tenant")
        topology = make_topology(zone(), domain="tenant")
        topology.status.domain_id = domain_id

        resolve_domain_and_account(client, topology)

        assert client.count("listDomains") == 0
