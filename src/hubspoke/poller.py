"""Bounded polling for attributes the control plane fills in asynchronously.

A firewall's private IP, for example, is not guaranteed to exist when its
create call returns. Anything that consumes such an attribute waits here
first, and a wait that runs out is fatal for the run.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from typing import Any

from .config import DEFAULT_POLL_INTERVAL_SECONDS, DEFAULT_POLL_MAX_WAIT_SECONDS
from .control_plane import ProvisioningError, ResourceRef
from .probe import ResourceProbe

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class TimeoutFailure(ProvisioningError):
    """Raised when a polled attribute did not appear within the bound."""

    def __init__(
        self,
        ref: ResourceRef,
        path: str,
        elapsed_seconds: float,
        attempts: int,
        hints: list[str],
    ) -> None:
        self.ref = ref
        self.path = path
        self.elapsed_seconds = elapsed_seconds
        self.attempts = attempts
        self.hints = hints
        message = (
            f"Timed out waiting for {path} on {ref.label} after {elapsed_seconds:g}s "
            f"({attempts} probes)."
        )
        if hints:
            message += "\nTroubleshooting:\n  - " + "\n  - ".join(hints)
        super().__init__(message)


def default_hints(ref: ResourceRef) -> list[str]:
    """Generic diagnostics for any resource."""
    return [
        f"Check recent failures: az monitor activity-log list "
        f"--resource-group {ref.resource_group} --offset 1h -o table",
        f"Re-check the resource: az resource list -g {ref.resource_group} "
        f"--name {ref.name} -o json",
    ]


def firewall_hints(ref: ResourceRef) -> list[str]:
    """Diagnostics for a firewall that never reported its private IP."""
    return [
        f"Check recent failures: az monitor activity-log list "
        f"--resource-group {ref.resource_group} --offset 24h -o table",
        f"Re-check the firewall: az network firewall show -g {ref.resource_group} "
        f"-n {ref.name} -o json",
        "If the firewall SKU is AZFW_Hub it lives in a Virtual WAN hub and "
        "exposes no ipConfigurations; use an AZFW_VNet firewall instead.",
    ]


def _is_present(value: Any) -> bool:
    return value not in (None, "", [], {})


class ReadinessPoller:
    """Fixed-interval poller with a bounded total wait.

    Elapsed time is accounted in whole intervals, so a wait that never
    succeeds performs exactly ``ceil(max_wait / interval)`` probes.
    """

    def __init__(
        self,
        probe: ResourceProbe,
        *,
        sleep: Sleep = asyncio.sleep,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_wait_seconds: float = DEFAULT_POLL_MAX_WAIT_SECONDS,
    ) -> None:
        self._probe = probe
        self._sleep = sleep
        self._interval_seconds = interval_seconds
        self._max_wait_seconds = max_wait_seconds

    async def wait_for(
        self,
        ref: ResourceRef,
        path: str,
        max_wait_seconds: float | None = None,
        interval_seconds: float | None = None,
        hints: list[str] | None = None,
    ) -> Any:
        """Probe ``path`` on ``ref`` until it holds a non-empty value.

        Args:
            ref: Resource to probe.
            path: Dotted attribute path inside the resource document.
            max_wait_seconds: Total bound (defaults to the configured bound).
            interval_seconds: Sleep between probes (defaults to the configured interval).
            hints: Diagnostics to attach to the timeout error.

        Returns:
            The attribute value.

        Raises:
            TimeoutFailure: The bound was exceeded without a value.
            ControlPlaneError: A probe failed for a reason other than absence.
        """
        max_wait = self._max_wait_seconds if max_wait_seconds is None else max_wait_seconds
        interval = self._interval_seconds if interval_seconds is None else interval_seconds
        if interval <= 0:
            raise ValueError("interval_seconds must be positive")
        if max_wait <= 0:
            raise ValueError("max_wait_seconds must be positive")

        max_attempts = math.ceil(max_wait / interval)
        logger.info(
            "Waiting for attribute",
            extra={
                "resource": ref.label,
                "path": path,
                "max_wait_seconds": max_wait,
                "interval_seconds": interval,
                "max_attempts": max_attempts,
            },
        )

        elapsed = 0.0
        for attempts in range(1, max_attempts + 1):
            value = await self._probe.attribute(ref, path)
            if _is_present(value):
                logger.info(
                    "Attribute available",
                    extra={
                        "resource": ref.label,
                        "path": path,
                        "attempts": attempts,
                        "elapsed_seconds": elapsed,
                    },
                )
                return value

            logger.info(
                f"{ref.label} not ready yet (elapsed {elapsed:g}s), retrying in {interval:g}s",
                extra={"resource": ref.label, "attempt": attempts},
            )
            await self._sleep(interval)
            elapsed += interval

        logger.error(
            "Timed out waiting for attribute",
            extra={"resource": ref.label, "path": path, "elapsed_seconds": elapsed},
        )
        raise TimeoutFailure(
            ref,
            path,
            elapsed,
            max_attempts,
            hints if hints is not None else default_hints(ref),
        )
