"""Main entry point for the hub-and-spoke provisioner.

One run converges the requested phases and exits:
- 0 when every requested phase completed (warnings allowed)
- 1 on configuration errors and fatal provisioning failures
- 2 when the SQL administrator password cannot be obtained
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .control_plane import AzureControlPlane
from .reconciler import ALL_PHASES, Phase, ReconcileResult, TopologyReconciler
from .security import (
    AdminCredentialError,
    get_azure_credential,
    make_key_vault_reader,
    resolve_admin_password,
)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CREDENTIAL_ERROR = 2

_RESERVED_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_format: str = "json", level: int = logging.INFO) -> None:
    """Configure root logging.

    Args:
        log_format: "json" for structured output, "text" for a terminal.
        level: Root log level.
    """
    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def resume_hint(server_name: str) -> str:
    return f"  Re-run against this server with SQL_SERVER_NAME={server_name}"


def format_failure(result: ReconcileResult) -> str:
    """Human-readable failure message; names the SQL server once one was chosen."""
    lines = [f"Reconciliation failed: {result.error}"]
    if result.sql_server_name:
        lines.append(resume_hint(result.sql_server_name))
    return "\n".join(lines)


def format_completion(config: Config, result: ReconcileResult) -> str:
    """Human-readable completion message for a successful run."""
    lines = [f"Reconciliation of {config.resource_group} complete."]
    if result.firewall_private_ip:
        lines.append(f"  Firewall private IP: {result.firewall_private_ip}")
    summary = result.database
    if summary is not None:
        lines.extend(
            [
                f"  SQL server:  {summary.server_fqdn}",
                f"  Admin user:  {summary.admin_user}",
                f"  Private IP:  {summary.private_ip_display}",
                resume_hint(result.sql_server_name or config.database.server_name),
            ]
        )
        if summary.allowed_client_ip:
            lines.append(f"  Public access allowed from {summary.allowed_client_ip}")
        elif summary.public_access_enabled:
            lines.append("  Public access is still enabled from an earlier run")
        if summary.revert_command:
            lines.append(f"  Revert with: {summary.revert_command}")
    for warning in result.warnings:
        lines.append(f"  Warning: {warning}")
    return "\n".join(lines)


async def main(phases: Sequence[Phase] = ALL_PHASES, log_format: str = "json") -> int:
    """Run the provisioner.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging(log_format)
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    logger.info(
        "Starting hub-and-spoke provisioner",
        extra={
            "subscription_id": config.subscription_id,
            "location": config.location,
            "resource_group": config.resource_group,
            "phases": [phase.value for phase in phases],
        },
    )

    try:
        credential = get_azure_credential()

        admin_password = None
        if Phase.DATABASE in phases:
            admin_password = resolve_admin_password(
                config.database, make_key_vault_reader(credential)
            )

        control_plane = AzureControlPlane(
            credential,
            config.subscription_id,
            operation_timeout_seconds=config.operation_timeout_seconds,
        )
        reconciler = TopologyReconciler(config, control_plane, admin_password=admin_password)
        result = await reconciler.reconcile(phases)

    except AdminCredentialError as e:
        logger.critical("Administrator credential unavailable", extra={"error": str(e)})
        return EXIT_CREDENTIAL_ERROR

    except Exception as e:
        # Unexpected error - log with full traceback for debugging
        logger.exception("Provisioner failed unexpectedly", extra={"error": str(e)})
        return EXIT_FAILURE

    if not result.success:
        logger.error(
            "Provisioning failed",
            extra={
                "error": result.error,
                "error_type": result.error_type,
                "steps_completed": len(result.steps_completed),
                "sql_server_name": result.sql_server_name,
            },
        )
        print(format_failure(result))
        return EXIT_FAILURE

    print(format_completion(config, result))
    return EXIT_SUCCESS


def run() -> None:
    """Entry point that runs every phase with default settings."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
