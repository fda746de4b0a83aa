"""Azure control plane mock for reconciliation testing.

This module provides an in-memory implementation of the ControlPlane
protocol so the reconciler can be exercised without Azure connectivity.

Key Features:
- In-memory resource documents with ARM ids
- Delayed firewall private IP to exercise readiness polling
- Private endpoint and DNS zone group side effects
- Error injection per operation and resource kind
- Call log for ordering assertions

Usage:
    from azure_mock import InMemoryControlPlane, RecordingSleep

    control_plane = InMemoryControlPlane(firewall_ready_after=2)
    reconciler = TopologyReconciler(config, control_plane, sleep=RecordingSleep())
    result = await reconciler.reconcile()

    assert control_plane.count("create", ResourceKind.ROUTE) == 2
"""

from .control_plane import (
    ENDPOINT_PRIVATE_IP,
    FIREWALL_PRIVATE_IP,
    SUBSCRIPTION_ID,
    InMemoryControlPlane,
    RecordedCall,
    RecordingSleep,
)

__all__ = [
    "ENDPOINT_PRIVATE_IP",
    "FIREWALL_PRIVATE_IP",
    "SUBSCRIPTION_ID",
    "InMemoryControlPlane",
    "RecordedCall",
    "RecordingSleep",
]
