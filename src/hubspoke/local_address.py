"""Discovery of this machine's public IPv4 address."""

from __future__ import annotations

import ipaddress
import logging

import requests

logger = logging.getLogger(__name__)

PUBLIC_ADDRESS_ENDPOINTS: tuple[str, ...] = (
    "https://ifconfig.me/ip",
    "https://icanhazip.com",
)
REQUEST_TIMEOUT_SECONDS = 5


def detect_public_address(
    endpoints: tuple[str, ...] = PUBLIC_ADDRESS_ENDPOINTS,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> str | None:
    """Ask each echo service in turn; None if none returns a usable IPv4 address."""
    for endpoint in endpoints:
        try:
            response = requests.get(endpoint, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(
                "Public address lookup failed",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            continue

        candidate = response.text.strip()
        try:
            return str(ipaddress.IPv4Address(candidate))
        except ValueError:
            logger.warning(
                "Public address lookup returned an unexpected body",
                extra={"endpoint": endpoint, "body": candidate[:64]},
            )
    return None
