"""Credential acquisition and administrator secret retrieval.

Azure authentication goes through DefaultAzureCredential so the same code
runs under a developer's ``az login`` and under a managed identity. No
client secret is ever read by this module.

The SQL administrator password comes from Key Vault when
KEY_VAULT_NAME and SQL_ADMIN_PASSWORD_SECRET_NAME are configured, otherwise
from ADMIN_PASS. Neither being available is a fatal error raised before any
resource is touched.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from typing import Any

from azure.core.exceptions import AzureError
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient
from pydantic import SecretStr

from .config import DatabaseConfig

logger = logging.getLogger(__name__)

ADMIN_PASSWORD_ENV_VAR = "ADMIN_PASS"

SecretReader = Callable[[str, str], str | None]


class AdminCredentialError(Exception):
    """Raised when the SQL administrator password cannot be obtained."""

    pass


def get_azure_credential() -> DefaultAzureCredential:
    """Return the credential used for every control-plane call."""
    credential = DefaultAzureCredential(exclude_interactive_browser_credential=True)
    log_security_audit_event(
        event_type="credential",
        target_resource=None,
        action="DefaultAzureCredential",
        result="initialized",
    )
    return credential


def vault_url(vault_name: str) -> str:
    return f"https://{vault_name}.vault.azure.net"


def make_key_vault_reader(credential: Any) -> SecretReader:
    """Build a reader that fetches secrets through azure-keyvault-secrets."""

    def read(vault_name: str, secret_name: str) -> str | None:
        client = SecretClient(vault_url=vault_url(vault_name), credential=credential)
        return client.get_secret(secret_name).value

    return read


def resolve_admin_password(
    database: DatabaseConfig,
    secret_reader: SecretReader | None = None,
    environ: Mapping[str, str] | None = None,
) -> SecretStr:
    """Obtain the SQL administrator password.

    Args:
        database: Database configuration naming the vault and secret.
        secret_reader: Reads a secret from a vault; required when a vault is configured.
        environ: Environment to read the fallback from (defaults to os.environ).

    Returns:
        The password wrapped so it never reaches a log line.

    Raises:
        AdminCredentialError: No vault secret and no ADMIN_PASS fallback.
    """
    env = os.environ if environ is None else environ

    if database.key_vault_name and database.password_secret_name:
        if secret_reader is None:
            raise AdminCredentialError("A Key Vault is configured but no secret reader was given")
        try:
            value = secret_reader(database.key_vault_name, database.password_secret_name)
        except AzureError as e:
            log_security_audit_event(
                event_type="secret_access",
                target_resource=f"{database.key_vault_name}/{database.password_secret_name}",
                action="get_secret",
                result="failure",
            )
            raise AdminCredentialError(
                f"Failed to read secret '{database.password_secret_name}' from Key Vault "
                f"'{database.key_vault_name}': {e}"
            ) from e
        if not value:
            raise AdminCredentialError(
                f"Secret '{database.password_secret_name}' in Key Vault "
                f"'{database.key_vault_name}' is empty"
            )
        log_security_audit_event(
            event_type="secret_access",
            target_resource=f"{database.key_vault_name}/{database.password_secret_name}",
            action="get_secret",
            result="success",
        )
        return SecretStr(value)

    fallback = env.get(ADMIN_PASSWORD_ENV_VAR)
    if fallback:
        logger.info("Using administrator password from environment")
        return SecretStr(fallback)

    raise AdminCredentialError(
        "No SQL administrator password available. Set KEY_VAULT_NAME and "
        "SQL_ADMIN_PASSWORD_SECRET_NAME to read it from Key Vault, or set ADMIN_PASS."
    )


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    All security events are logged with structured data for SIEM ingestion.

    Args:
        event_type: Type of security event (credential, secret_access, exposure).
        target_resource: Azure resource being accessed or changed.
        action: Action being performed.
        result: Result of the action (success, failure, applied).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
