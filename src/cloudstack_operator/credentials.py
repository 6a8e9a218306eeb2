"""CloudStack API credential loading.

Credentials are read from mounted INI files only:
- The operator-wide cloud-config (CLOUD_CONFIG_PATH)
- Per-cluster files referenced by an IdentityReference of kind Secret,
  mounted under SECRETS_DIR/<name>

File format (the [Global] section is required):

    [Global]
    api-url = https://cloud.example.com/client/api
    api-key = ...
    secret-key = ...
    verify-ssl = true

SECURITY INVARIANTS:
1. API keys never come from environment variables
2. Credential files are size-bounded before parsing
3. Secret material never appears in logs
"""

from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from .models import IdentityReference

logger = logging.getLogger(__name__)

GLOBAL_SECTION = "Global"
MAX_CREDENTIAL_FILE_SIZE_BYTES = 64 * 1024

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "CLOUDSTACK_API_KEY",
    "CLOUDSTACK_SECRET_KEY",
    "CLOUDSTACK_API_URL",
)


class CredentialError(Exception):
    """Raised when credentials cannot be loaded or are unsafe."""

    pass


@dataclass(frozen=True)
class ApiConfig:
    """Connection settings for one CloudStack endpoint."""

    api_url: str
    api_key: str = field(repr=False)
    secret_key: str = field(repr=False)
    verify_ssl: bool = True


def enforce_file_credentials() -> None:
    """Refuse to start when API credentials are present in the environment.

    Raises:
        CredentialError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Credential found in environment",
                extra={"security_event": "credential_detected", "env_var": env_var},
            )
            raise CredentialError(
                f"{env_var} must not be set; mount a cloud-config file instead"
            )


def load_api_config(path: Path) -> ApiConfig:
    """Read an INI credential file.

    Args:
        path: Path to the file.

    Returns:
        Parsed ApiConfig.

    Raises:
        CredentialError: If the file is missing, oversized or incomplete.
    """
    try:
        size = path.stat().st_size
    except OSError as e:
        raise CredentialError(f"Cannot read credentials file {path}: {e}") from e

    if size > MAX_CREDENTIAL_FILE_SIZE_BYTES:
        raise CredentialError(
            f"Credentials file {path} exceeds {MAX_CREDENTIAL_FILE_SIZE_BYTES} bytes"
        )

    parser = configparser.ConfigParser()
    try:
        parser.read_string(path.read_text(encoding="utf-8"), source=str(path))
    except (OSError, configparser.Error) as e:
        raise CredentialError(f"Invalid credentials file {path}: {e}") from e

    if not parser.has_section(GLOBAL_SECTION):
        raise CredentialError(f"section {GLOBAL_SECTION} not found in {path}")

    section = parser[GLOBAL_SECTION]
    missing = [key for key in ("api-url", "api-key", "secret-key") if not section.get(key)]
    if missing:
        raise CredentialError(f"Credentials file {path} is missing: {', '.join(missing)}")

    try:
        verify_ssl = section.getboolean("verify-ssl", fallback=True)
    except ValueError as e:
        raise CredentialError(f"verify-ssl must be a boolean in {path}") from e

    return ApiConfig(
        api_url=section["api-url"],
        api_key=section["api-key"],
        secret_key=section["secret-key"],
        verify_ssl=verify_ssl,
    )


def resolve_identity(
    identity_ref: IdentityReference | None,
    *,
    secrets_dir: Path,
    default: ApiConfig,
) -> ApiConfig:
    """Pick the credentials a cluster reconciles with.

    Args:
        identity_ref: The cluster's identity reference, if any.
        secrets_dir: Directory holding one credential file per secret name.
        default: Operator-wide credentials.

    Returns:
        Credentials from the referenced secret, or the default.
    """
    if identity_ref is None:
        return default

    if identity_ref.kind != "Secret":
        raise CredentialError(f"identity reference kind must be Secret: {identity_ref.kind}")

    # Secret names are DNS labels; reject anything that could leave secrets_dir
    if "/" in identity_ref.name or identity_ref.name in ("", ".", ".."):
        raise CredentialError(f"invalid secret name: {identity_ref.name!r}")

    return load_api_config(secrets_dir / identity_ref.name)
