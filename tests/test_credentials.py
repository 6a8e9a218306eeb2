"""Tests for credential file loading."""

from pathlib import Path

import pytest

from cloudstack_operator.credentials import (
    MAX_CREDENTIAL_FILE_SIZE_BYTES,
    ApiConfig,
    CredentialError,
    enforce_file_credentials,
    load_api_config,
    resolve_identity,
)
from cloudstack_operator.models import IdentityReference

VALID_INI = """\
[Global]
api-url = https://cloud.example.com/client/api
api-key = key-123
secret-key = secret-456
"""


def write(path: Path, content: str) -> Path:
    path.write_text(content)
    return path


class TestLoadApiConfig:
    """Tests for INI credential files."""

    def test_valid_file(self, tmp_path: Path) -> None:
        api = load_api_config(write(tmp_path / "cloud-config", VALID_INI))

        assert api.api_url == "https://cloud.example.com/client/api"
        assert api.api_key == "key-123"
        assert api.secret_key == "secret-456"
        assert api.verify_ssl is True

    def test_verify_ssl_false(self, tmp_path: Path) -> None:
        api = load_api_config(write(tmp_path / "c", VALID_INI + "verify-ssl = false\n"))
        assert api.verify_ssl is False

    def test_invalid_verify_ssl(self, tmp_path: Path) -> None:
        with pytest.raises(CredentialError) as exc_info:
            load_api_config(write(tmp_path / "c", VALID_INI + "verify-ssl = maybe\n"))
        assert "verify-ssl" in str(exc_info.value)

    def test_missing_global_section(self, tmp_path: Path) -> None:
        """Test that the [Global] section is required."""
        with pytest.raises(CredentialError) as exc_info:
            load_api_config(write(tmp_path / "c", "[Other]\napi-key = x\n"))
        assert "section Global not found" in str(exc_info.value)

    def test_missing_keys_listed(self, tmp_path: Path) -> None:
        with pytest.raises(CredentialError) as exc_info:
            load_api_config(write(tmp_path / "c", "[Global]\napi-url = https://x\n"))
        assert "api-key" in str(exc_info.value)
        assert "secret-key" in str(exc_info.value)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(CredentialError):
            load_api_config(tmp_path / "absent")

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test that oversized files are rejected before parsing."""
        padding = "#" * (MAX_CREDENTIAL_FILE_SIZE_BYTES + 1)
        with pytest.raises(CredentialError) as exc_info:
            load_api_config(write(tmp_path / "c", VALID_INI + padding))
        assert "exceeds" in str(exc_info.value)

    def test_secrets_not_in_repr(self) -> None:
        """Key material must not leak through repr."""
        api = ApiConfig(api_url="https://x", api_key="key-123", secret_key="secret-456")
        assert "key-123" not in repr(api)
        assert "secret-456" not in repr(api)


class TestResolveIdentity:
    """Tests for per-cluster credential selection."""

    DEFAULT = ApiConfig(api_url="https://default", api_key="k", secret_key="s")

    def test_no_reference_uses_default(self, tmp_path: Path) -> None:
        assert resolve_identity(None, secrets_dir=tmp_path, default=self.DEFAULT) is self.DEFAULT

    def test_secret_file_is_loaded(self, tmp_path: Path) -> None:
        write(tmp_path / "tenant-a", VALID_INI)

        api = resolve_identity(
            IdentityReference(name="tenant-a"), secrets_dir=tmp_path, default=self.DEFAULT
        )

        assert api.api_key == "key-123"

    def test_non_secret_kind_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(CredentialError):
            resolve_identity(
                IdentityReference(kind="ConfigMap", name="x"),
                secrets_dir=tmp_path,
                default=self.DEFAULT,
            )

    @pytest.mark.parametrize("name", ["../escape", "", "..", "a/b"])
    def test_path_escape_rejected(self, tmp_path: Path, name: str) -> None:
        with pytest.raises(CredentialError):
            resolve_identity(
                IdentityReference(name=name), secrets_dir=tmp_path, default=self.DEFAULT
            )


class TestEnforceFileCredentials:
    """Tests for the environment credential guard."""

    def test_clean_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for var in ("CLOUDSTACK_API_KEY", "CLOUDSTACK_SECRET_KEY", "CLOUDSTACK_API_URL"):
            monkeypatch.delenv(var, raising=False)
        enforce_file_credentials()

    def test_api_key_in_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CLOUDSTACK_SECRET_KEY", "leaked")
        with pytest.raises(CredentialError) as exc_info:
            enforce_file_credentials()
        assert "CLOUDSTACK_SECRET_KEY" in str(exc_info.value)
        assert "leaked" not in str(exc_info.value)
