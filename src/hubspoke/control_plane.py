"""Azure control plane access through the generic ARM resources API.

Every resource the topology needs is addressed by a ResourceRef and read or
written as a plain ARM document. Using the generic resources API keeps the
dependency footprint to azure-mgmt-resource instead of one management SDK
per resource provider.

Absent resources are reported as absent. Any other failure (auth, network,
throttling, timeouts) is raised as ControlPlaneError and is never mistaken
for "not found".
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, TypeVar

from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, ResourceGroup, Sku

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Bound on single read calls; long-running writes use the configured timeout
READ_TIMEOUT_SECONDS = 120

_PATH_TOKEN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


class ProvisioningError(Exception):
    """Base class for every failure that halts or degrades a run."""

    pass


class ControlPlaneError(ProvisioningError):
    """Raised when the control plane cannot answer (transport, auth, throttling).

    Distinct from a resource being absent: callers must treat it as fatal.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ResourceKind(str, Enum):
    """Resource types managed by the provisioner."""

    RESOURCE_GROUP = "resourceGroup"
    VIRTUAL_NETWORK = "virtualNetwork"
    SUBNET = "subnet"
    PUBLIC_IP = "publicIp"
    FIREWALL_POLICY = "firewallPolicy"
    FIREWALL = "firewall"
    VPN_GATEWAY = "vpnGateway"
    BASTION = "bastion"
    PEERING = "peering"
    ROUTE_TABLE = "routeTable"
    ROUTE = "route"
    SQL_SERVER = "sqlServer"
    SQL_DATABASE = "sqlDatabase"
    SQL_FIREWALL_RULE = "sqlFirewallRule"
    PRIVATE_ENDPOINT = "privateEndpoint"
    PRIVATE_DNS_ZONE = "privateDnsZone"
    DNS_LINK = "dnsLink"
    DNS_ZONE_GROUP = "dnsZoneGroup"


@dataclass(frozen=True)
class KindInfo:
    """ARM addressing for a resource kind.

    ``type_path`` lists the type segment of each level, outermost first;
    child resources carry one parent name per extra level.
    """

    type_path: tuple[str, ...]
    api_version: str

    @property
    def depth(self) -> int:
        return len(self.type_path)


_NETWORK_API = "2023-09-01"
_SQL_API = "2021-11-01"
_PRIVATE_DNS_API = "2020-06-01"

KIND_INFO: dict[ResourceKind, KindInfo] = {
    ResourceKind.RESOURCE_GROUP: KindInfo((), "2022-09-01"),
    ResourceKind.VIRTUAL_NETWORK: KindInfo(
        ("Microsoft.Network/virtualNetworks",), _NETWORK_API
    ),
    ResourceKind.SUBNET: KindInfo(
        ("Microsoft.Network/virtualNetworks", "subnets"), _NETWORK_API
    ),
    ResourceKind.PUBLIC_IP: KindInfo(("Microsoft.Network/publicIPAddresses",), _NETWORK_API),
    ResourceKind.FIREWALL_POLICY: KindInfo(
        ("Microsoft.Network/firewallPolicies",), _NETWORK_API
    ),
    ResourceKind.FIREWALL: KindInfo(("Microsoft.Network/azureFirewalls",), _NETWORK_API),
    ResourceKind.VPN_GATEWAY: KindInfo(
        ("Microsoft.Network/virtualNetworkGateways",), _NETWORK_API
    ),
    ResourceKind.BASTION: KindInfo(("Microsoft.Network/bastionHosts",), _NETWORK_API),
    ResourceKind.PEERING: KindInfo(
        ("Microsoft.Network/virtualNetworks", "virtualNetworkPeerings"), _NETWORK_API
    ),
    ResourceKind.ROUTE_TABLE: KindInfo(("Microsoft.Network/routeTables",), _NETWORK_API),
    ResourceKind.ROUTE: KindInfo(("Microsoft.Network/routeTables", "routes"), _NETWORK_API),
    ResourceKind.SQL_SERVER: KindInfo(("Microsoft.Sql/servers",), _SQL_API),
    ResourceKind.SQL_DATABASE: KindInfo(("Microsoft.Sql/servers", "databases"), _SQL_API),
    ResourceKind.SQL_FIREWALL_RULE: KindInfo(
        ("Microsoft.Sql/servers", "firewallRules"), _SQL_API
    ),
    ResourceKind.PRIVATE_ENDPOINT: KindInfo(
        ("Microsoft.Network/privateEndpoints",), _NETWORK_API
    ),
    ResourceKind.PRIVATE_DNS_ZONE: KindInfo(
        ("Microsoft.Network/privateDnsZones",), _PRIVATE_DNS_API
    ),
    ResourceKind.DNS_LINK: KindInfo(
        ("Microsoft.Network/privateDnsZones", "virtualNetworkLinks"), _PRIVATE_DNS_API
    ),
    ResourceKind.DNS_ZONE_GROUP: KindInfo(
        ("Microsoft.Network/privateEndpoints", "privateDnsZoneGroups"), _NETWORK_API
    ),
}


@dataclass(frozen=True)
class ResourceRef:
    """Stable identity of a resource: kind, name, scope and parent names."""

    kind: ResourceKind
    name: str
    resource_group: str
    parents: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        info = KIND_INFO[self.kind]
        expected_parents = max(info.depth - 1, 0)
        if len(self.parents) != expected_parents:
            raise ValueError(
                f"{self.kind.value} requires {expected_parents} parent name(s), "
                f"got {self.parents}"
            )
        if not self.name:
            raise ValueError(f"{self.kind.value} requires a name")

    @property
    def api_version(self) -> str:
        return KIND_INFO[self.kind].api_version

    @property
    def label(self) -> str:
        """Human readable path such as ``subnet vnet-hub-secure/GatewaySubnet``."""
        return f"{self.kind.value} {'/'.join((*self.parents, self.name))}"

    def resource_id(self, subscription_id: str) -> str:
        scope = f"/subscriptions/{subscription_id}/resourceGroups/{self.resource_group}"
        if self.kind == ResourceKind.RESOURCE_GROUP:
            return scope
        names = (*self.parents, self.name)
        segments = "/".join(
            f"{type_segment}/{name}"
            for type_segment, name in zip(KIND_INFO[self.kind].type_path, names, strict=True)
        )
        return f"{scope}/providers/{segments}"


def read_path(document: dict[str, Any] | None, path: str) -> Any:
    """Resolve a dotted path with list indices inside an ARM document.

    Returns None when any segment along the way is missing.

    >>> read_path({"a": [{"b": 1}]}, "a[0].b")
    1
    """
    if document is None:
        return None
    current: Any = document
    for key, index in _PATH_TOKEN.findall(path):
        if key:
            if not isinstance(current, dict) or key not in current:
                return None
            current = current[key]
        else:
            position = int(index)
            if not isinstance(current, list) or position >= len(current):
                return None
            current = current[position]
    return current


def merge_documents(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``. Lists are replaced, not merged."""
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_documents(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ControlPlane(Protocol):
    """Capability surface consumed by the provisioning core."""

    async def exists(self, ref: ResourceRef) -> bool: ...

    async def get(self, ref: ResourceRef) -> dict[str, Any] | None: ...

    async def create(self, ref: ResourceRef, body: dict[str, Any], *, wait: bool = True) -> str: ...

    async def update(self, ref: ResourceRef, body: dict[str, Any]) -> None: ...

    async def delete(self, ref: ResourceRef) -> None: ...

    async def list_resources(
        self, kind: ResourceKind, resource_group: str
    ) -> list[dict[str, Any]]: ...


class AzureControlPlane:
    """ControlPlane backed by ResourceManagementClient.

    SECURITY: Timeouts are enforced on every Azure call so a hung request
    cannot stall the run indefinitely.
    """

    def __init__(
        self,
        credential: Any,
        subscription_id: str,
        operation_timeout_seconds: int,
        client: ResourceManagementClient | None = None,
    ) -> None:
        self._subscription_id = subscription_id
        self._operation_timeout_seconds = operation_timeout_seconds
        self._client = client or ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )

    async def exists(self, ref: ResourceRef) -> bool:
        if ref.kind == ResourceKind.RESOURCE_GROUP:
            return bool(
                await self._call(
                    lambda: self._client.resource_groups.check_existence(ref.name),
                    ref,
                    "exists",
                    READ_TIMEOUT_SECONDS,
                )
            )
        return await self.get(ref) is not None

    async def get(self, ref: ResourceRef) -> dict[str, Any] | None:
        def operation() -> Any:
            if ref.kind == ResourceKind.RESOURCE_GROUP:
                return self._client.resource_groups.get(ref.name)
            return self._client.resources.get_by_id(
                resource_id=ref.resource_id(self._subscription_id),
                api_version=ref.api_version,
            )

        try:
            resource = await self._call(operation, ref, "get", READ_TIMEOUT_SECONDS)
        except _NotFound:
            return None
        return resource.as_dict()

    async def create(self, ref: ResourceRef, body: dict[str, Any], *, wait: bool = True) -> str:
        resource_id = ref.resource_id(self._subscription_id)
        if ref.kind == ResourceKind.RESOURCE_GROUP:
            group = await self._call(
                lambda: self._client.resource_groups.create_or_update(
                    resource_group_name=ref.name,
                    parameters=ResourceGroup(location=body["location"], tags=body.get("tags")),
                ),
                ref,
                "create",
                self._operation_timeout_seconds,
            )
            return group.id or resource_id

        await self._put(ref, body, wait=wait)
        return resource_id

    async def update(self, ref: ResourceRef, body: dict[str, Any]) -> None:
        current = await self.get(ref)
        if current is None:
            raise ControlPlaneError(f"Cannot update {ref.label}: resource does not exist", 404)
        await self._put(ref, merge_documents(current, body), wait=True)

    async def delete(self, ref: ResourceRef) -> None:
        def begin() -> Any:
            if ref.kind == ResourceKind.RESOURCE_GROUP:
                return self._client.resource_groups.begin_delete(ref.name)
            return self._client.resources.begin_delete_by_id(
                resource_id=ref.resource_id(self._subscription_id),
                api_version=ref.api_version,
            )

        try:
            await self._execute_with_timeout(begin, ref, "delete")
        except _NotFound:
            logger.info("Resource already absent", extra={"resource": ref.label})

    async def list_resources(
        self, kind: ResourceKind, resource_group: str
    ) -> list[dict[str, Any]]:
        """List top-level resources of one kind in a resource group.

        A missing resource group lists as empty.
        """
        info = KIND_INFO[kind]
        if info.depth != 1:
            raise ValueError(f"Only top-level resources can be listed, not {kind.value}")
        scope = ResourceRef(ResourceKind.RESOURCE_GROUP, resource_group, resource_group)

        def operation() -> list[dict[str, Any]]:
            return [
                resource.as_dict()
                for resource in self._client.resources.list_by_resource_group(
                    resource_group_name=resource_group,
                    filter=f"resourceType eq '{info.type_path[0]}'",
                )
            ]

        try:
            return await self._call(operation, scope, "list", READ_TIMEOUT_SECONDS)
        except _NotFound:
            return []

    async def _put(self, ref: ResourceRef, body: dict[str, Any], *, wait: bool) -> None:
        resource_id = ref.resource_id(self._subscription_id)
        sku = body.get("sku")
        parameters = GenericResource(
            location=body.get("location"),
            tags=body.get("tags"),
            sku=Sku(**sku) if sku else None,
            properties=body.get("properties", {}),
        )

        def begin() -> Any:
            return self._client.resources.begin_create_or_update_by_id(
                resource_id=resource_id,
                api_version=ref.api_version,
                parameters=parameters,
            )

        if not wait:
            # Start the long-running operation without awaiting its result
            await self._call(begin, ref, "create", READ_TIMEOUT_SECONDS)
            logger.info(
                "Creation started without waiting for completion",
                extra={"resource": ref.label},
            )
            return
        await self._execute_with_timeout(begin, ref, "create")

    async def _execute_with_timeout(
        self,
        begin_operation: Callable[[], Any],
        ref: ResourceRef,
        operation_name: str,
    ) -> Any:
        """Start an Azure SDK poller operation and wait for it with a timeout."""
        poller = await self._call(begin_operation, ref, operation_name, READ_TIMEOUT_SECONDS)
        return await self._call(
            poller.result, ref, operation_name, self._operation_timeout_seconds
        )

    async def _call(
        self,
        operation: Callable[[], T],
        ref: ResourceRef,
        operation_name: str,
        timeout_seconds: int,
    ) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, operation),
                timeout=timeout_seconds,
            )
        except ResourceNotFoundError as e:
            raise _NotFound(ref, str(e)) from e
        except TimeoutError as e:
            logger.error(
                f"{operation_name} timed out",
                extra={"resource": ref.label, "timeout_seconds": timeout_seconds},
            )
            raise ControlPlaneError(
                f"{operation_name} on {ref.label} timed out after {timeout_seconds}s"
            ) from e
        except HttpResponseError as e:
            if e.status_code == 404:
                raise _NotFound(ref, str(e)) from e
            error_code = e.error.code if e.error else None
            logger.error(
                f"Azure API error during {operation_name}: {e.message}",
                extra={
                    "resource": ref.label,
                    "status_code": e.status_code,
                    "error_code": error_code,
                },
            )
            raise ControlPlaneError(str(e), e.status_code) from e
        except AzureError as e:
            # Auth failures, connection errors and similar
            logger.error(
                f"Azure error during {operation_name}: {e}",
                extra={"resource": ref.label},
            )
            raise ControlPlaneError(str(e)) from e


class _NotFound(ControlPlaneError):
    """ARM answered 404. Reads translate it to absent; writes let it propagate."""

    def __init__(self, ref: ResourceRef, detail: str) -> None:
        super().__init__(detail, 404)
        self.ref = ref
