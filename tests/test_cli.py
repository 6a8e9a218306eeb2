"""Tests for the cso command line."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from cloudstack_operator.cli import cli
from cloudstack_operator.models import ClusterTopology, ObjectMeta
from cloudstack_operator.store import ObjectStore

VALID = """\
kind: ClusterTopology
metadata:
  name: cluster-a
spec:
  zones:
    - name: zone-a
      network:
        name: net-a
"""


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def write(path: Path, content: str) -> Path:
    path.write_text(content)
    return path


class TestValidate:
    """Tests for `cso validate`."""

    def test_valid_document(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["validate", str(write(tmp_path / "c.yaml", VALID))])

        assert result.exit_code == 0
        assert "ClusterTopology/default/cluster-a: ok" in result.output

    def test_account_without_domain(self, runner: CliRunner, tmp_path: Path) -> None:
        path = write(tmp_path / "c.yaml", VALID.replace("spec:\n", "spec:\n  account: acme\n"))

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "invalid" in result.output
        assert "requires additionally specifying domain" in result.output
        assert "validation failed" in result.output

    def test_zone_change_rejected_as_update(self, runner: CliRunner, tmp_path: Path) -> None:
        old = write(tmp_path / "old.yaml", VALID)
        new = write(tmp_path / "new.yaml", VALID.replace("net-a", "net-b"))

        result = runner.invoke(cli, ["validate", str(new), "--old", str(old)])

        assert result.exit_code == 1
        assert "zones and sub-attributes may not be modified" in result.output

    def test_machine_documents_pass_through(self, runner: CliRunner, tmp_path: Path) -> None:
        path = write(
            tmp_path / "m.yaml",
            "kind: Machine\nmetadata:\n  name: cp-0\nspec:\n  clusterName: cluster-a\n",
        )

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 0
        assert "no checks for Machine" in result.output

    def test_unparseable_document(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["validate", str(write(tmp_path / "c.yaml", "kind: Pod\n"))])

        assert result.exit_code == 1
        assert "Unknown kind" in result.output


class TestStatus:
    """Tests for `cso status`."""

    @pytest.fixture
    def env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
        cloud_config = write(
            tmp_path / "cloud-config", "[Global]\napi-url = https://x\napi-key = k\nsecret-key = s\n"
        )
        specs_dir = tmp_path / "specs"
        specs_dir.mkdir()
        status_dir = tmp_path / "status"
        for var in ("CLOUDSTACK_API_KEY", "CLOUDSTACK_SECRET_KEY", "CLOUDSTACK_API_URL"):
            monkeypatch.delenv(var, raising=False)
        monkeypatch.setenv("CLOUD_CONFIG_PATH", str(cloud_config))
        monkeypatch.setenv("SPECS_DIR", str(specs_dir))
        monkeypatch.setenv("STATUS_DIR", str(status_dir))
        return status_dir

    def test_prints_record(self, runner: CliRunner, env: Path, tmp_path: Path) -> None:
        topology = ClusterTopology(metadata=ObjectMeta(name="cluster-a", uid="u1"))
        topology.status.ready = True
        topology.status.network_id = "n1"
        ObjectStore(tmp_path / "specs", env).save(topology)

        result = runner.invoke(cli, ["status", "cluster-a"])

        assert result.exit_code == 0
        assert "ready: true" in result.output
        assert "networkID: n1" in result.output

    def test_missing_record(self, runner: CliRunner, env: Path) -> None:
        result = runner.invoke(cli, ["status", "nope"])

        assert result.exit_code == 1
        assert "No status recorded" in result.output

    def test_credentials_in_environment_refused(
        self, runner: CliRunner, env: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CLOUDSTACK_API_KEY", "leaked")

        result = runner.invoke(cli, ["status", "cluster-a"])

        assert result.exit_code == 1
        assert "CLOUDSTACK_API_KEY" in result.output


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output
