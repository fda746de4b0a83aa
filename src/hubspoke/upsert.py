"""Idempotent create/update/replace of a single resource.

The upsert policy is a property of the resource kind, not of the caller:

- CREATE_IF_ABSENT: create when missing, otherwise leave it alone even if it
  drifted. Used for expensive or disruptive resources (networks, firewall,
  gateways, SQL server) where an in-place update is never attempted.
- CREATE_OR_UPDATE: create when missing, update in place when the live
  resource differs from the declared fields. Used where updates are cheap
  and safe (a route's next hop, a subnet's route table association).
- CREATE_OR_REPLACE: create when missing, delete and recreate when the live
  resource does not match. Used where mutating in place risks stale state
  (DNS zone group bindings, half-wired private endpoints).

Each ensure performs at most one create, one update, or one delete followed
by one create. Failures are not retried: the run stops and a re-run resumes
from whatever already exists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .control_plane import (
    ControlPlane,
    ControlPlaneError,
    ProvisioningError,
    ResourceKind,
    ResourceRef,
)
from .models import ResourceSpec

logger = logging.getLogger(__name__)


class UpsertPolicy(str, Enum):
    """How an existing resource is treated."""

    CREATE_IF_ABSENT = "create-if-absent"
    CREATE_OR_REPLACE = "create-or-replace"
    CREATE_OR_UPDATE = "create-or-update"


class UpsertOutcome(str, Enum):
    """What an ensure call did."""

    CREATED = "created"
    UPDATED = "updated"
    REPLACED = "replaced"
    UNCHANGED = "unchanged"


RESOURCE_POLICIES: dict[ResourceKind, UpsertPolicy] = {
    ResourceKind.RESOURCE_GROUP: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.VIRTUAL_NETWORK: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.SUBNET: UpsertPolicy.CREATE_OR_UPDATE,
    ResourceKind.PUBLIC_IP: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.FIREWALL_POLICY: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.FIREWALL: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.VPN_GATEWAY: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.BASTION: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.PEERING: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.ROUTE_TABLE: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.ROUTE: UpsertPolicy.CREATE_OR_UPDATE,
    ResourceKind.SQL_SERVER: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.SQL_DATABASE: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.SQL_FIREWALL_RULE: UpsertPolicy.CREATE_OR_UPDATE,
    ResourceKind.PRIVATE_ENDPOINT: UpsertPolicy.CREATE_OR_REPLACE,
    ResourceKind.PRIVATE_DNS_ZONE: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.DNS_LINK: UpsertPolicy.CREATE_IF_ABSENT,
    ResourceKind.DNS_ZONE_GROUP: UpsertPolicy.CREATE_OR_REPLACE,
}


def policy_for(kind: ResourceKind) -> UpsertPolicy:
    return RESOURCE_POLICIES[kind]


class MutationFailure(ProvisioningError):
    """Raised when a create, update or delete call fails.

    The control plane's message is carried verbatim.
    """

    def __init__(self, ref: ResourceRef, operation: str, cause: ControlPlaneError) -> None:
        self.ref = ref
        self.operation = operation
        self.status_code = cause.status_code
        super().__init__(f"{operation} of {ref.label} failed: {cause}")


@dataclass(frozen=True)
class UpsertResult:
    """Result of a single ensure or patch call."""

    ref: ResourceRef
    policy: UpsertPolicy | None
    outcome: UpsertOutcome
    resource_id: str

    @property
    def mutated(self) -> bool:
        return self.outcome != UpsertOutcome.UNCHANGED


class ResourceUpserter:
    """Applies the per-kind upsert policy against the control plane."""

    def __init__(self, control_plane: ControlPlane, subscription_id: str) -> None:
        self._control_plane = control_plane
        self._subscription_id = subscription_id
        self.results: list[UpsertResult] = []

    async def ensure(
        self,
        ref: ResourceRef,
        spec: ResourceSpec,
        *,
        wait: bool = True,
    ) -> UpsertResult:
        """Bring ``ref`` to ``spec`` according to the kind's policy.

        Args:
            ref: Resource identity.
            spec: Desired state.
            wait: Wait for a create to finish. False only starts it.

        Raises:
            MutationFailure: A create, update or delete call failed.
            ControlPlaneError: The existence check itself failed.
        """
        policy = policy_for(ref.kind)
        existing = await self._control_plane.get(ref)

        if existing is None:
            resource_id = await self._mutate("create", ref, spec.to_arm_body(), wait=wait)
            return self._record(ref, policy, UpsertOutcome.CREATED, resource_id)

        resource_id = existing.get("id") or ref.resource_id(self._subscription_id)

        match policy:
            case UpsertPolicy.CREATE_IF_ABSENT:
                logger.info(
                    "Resource exists, leaving it untouched",
                    extra={"resource": ref.label, "policy": policy.value},
                )
                return self._record(ref, policy, UpsertOutcome.UNCHANGED, resource_id)

            case UpsertPolicy.CREATE_OR_UPDATE:
                if spec.matches(existing):
                    logger.info(
                        "Resource already matches desired state",
                        extra={"resource": ref.label, "policy": policy.value},
                    )
                    return self._record(ref, policy, UpsertOutcome.UNCHANGED, resource_id)
                await self._mutate("update", ref, spec.to_arm_body())
                return self._record(ref, policy, UpsertOutcome.UPDATED, resource_id)

            case UpsertPolicy.CREATE_OR_REPLACE:
                if spec.matches(existing):
                    logger.info(
                        "Resource already matches desired state",
                        extra={"resource": ref.label, "policy": policy.value},
                    )
                    return self._record(ref, policy, UpsertOutcome.UNCHANGED, resource_id)
                logger.info(
                    "Replacing resource that does not match desired state",
                    extra={"resource": ref.label, "policy": policy.value},
                )
                await self._mutate("delete", ref)
                resource_id = await self._mutate("create", ref, spec.to_arm_body(), wait=wait)
                return self._record(ref, policy, UpsertOutcome.REPLACED, resource_id)

        raise ValueError(f"Unhandled upsert policy {policy}")

    async def patch(self, ref: ResourceRef, body: dict[str, Any]) -> UpsertResult:
        """Apply an explicit in-place change to an existing resource."""
        await self._mutate("update", ref, body)
        return self._record(ref, None, UpsertOutcome.UPDATED, ref.resource_id(self._subscription_id))

    async def _mutate(
        self,
        operation: str,
        ref: ResourceRef,
        body: dict[str, Any] | None = None,
        *,
        wait: bool = True,
    ) -> str:
        logger.info(f"{operation.capitalize()} {ref.label}", extra={"resource": ref.label})
        try:
            match operation:
                case "create":
                    return await self._control_plane.create(ref, body or {}, wait=wait)
                case "update":
                    await self._control_plane.update(ref, body or {})
                case "delete":
                    await self._control_plane.delete(ref)
        except ControlPlaneError as e:
            raise MutationFailure(ref, operation, e) from e
        return ref.resource_id(self._subscription_id)

    def _record(
        self,
        ref: ResourceRef,
        policy: UpsertPolicy | None,
        outcome: UpsertOutcome,
        resource_id: str,
    ) -> UpsertResult:
        result = UpsertResult(ref=ref, policy=policy, outcome=outcome, resource_id=resource_id)
        self.results.append(result)
        if result.mutated:
            logger.info(
                f"Resource {outcome.value}",
                extra={"resource": ref.label, "outcome": outcome.value},
            )
        return result
