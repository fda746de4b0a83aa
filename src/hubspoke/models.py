"""Pydantic models for desired resource state.

Each model is the desired specification of one resource kind. It validates
its inputs at construction (CIDRs, addresses, referenced ids), renders the
ARM document sent to the control plane, and decides whether an existing
document already satisfies it.

``matches`` only compares the fields a model declares. Everything else on
the live resource (provisioning state, etags, read-only properties) is left
alone.
"""

from __future__ import annotations

import ipaddress
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, SecretStr, field_validator

from .control_plane import read_path

CONNECTION_STATUS_PATH = (
    "properties.privateLinkServiceConnections[0].properties"
    ".privateLinkServiceConnectionState.status"
)


def _validate_cidr(value: str) -> str:
    try:
        ipaddress.ip_network(value)
    except ValueError as e:
        raise ValueError(f"Invalid CIDR: {value}") from e
    return value


def _validate_ipv4(value: str) -> str:
    try:
        ipaddress.IPv4Address(value)
    except ValueError as e:
        raise ValueError(f"Invalid IPv4 address: {value!r}") from e
    return value


def _same_id(left: str | None, right: str | None) -> bool:
    # ARM ids are case-insensitive and casing differs between APIs
    return (left or "").lower() == (right or "").lower()


def _require_resource_id(value: str) -> str:
    if not value or not value.startswith("/subscriptions/"):
        raise ValueError(f"Expected an ARM resource id, got {value!r}")
    return value


Cidr = Annotated[str, AfterValidator(_validate_cidr)]
IPv4 = Annotated[str, AfterValidator(_validate_ipv4)]
ResourceId = Annotated[str, AfterValidator(_require_resource_id)]


class ResourceSpec(BaseModel):
    """Base model for every desired resource specification."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    location: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)

    def arm_properties(self) -> dict[str, Any]:
        return {}

    def arm_sku(self) -> dict[str, str] | None:
        return None

    def to_arm_body(self) -> dict[str, Any]:
        """Render the ARM request body for create and update calls."""
        body: dict[str, Any] = {"properties": self.arm_properties()}
        if self.location:
            body["location"] = self.location
        sku = self.arm_sku()
        if sku:
            body["sku"] = sku
        if self.tags:
            body["tags"] = dict(self.tags)
        return body

    def matches(self, existing: dict[str, Any]) -> bool:
        """Return True when ``existing`` already satisfies this specification."""
        return True


class ResourceGroupSpec(ResourceSpec):
    location: str


class VirtualNetworkSpec(ResourceSpec):
    address_prefixes: list[str]

    @field_validator("address_prefixes")
    @classmethod
    def validate_prefixes(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("A virtual network needs at least one address prefix")
        return [_validate_cidr(prefix) for prefix in v]

    def arm_properties(self) -> dict[str, Any]:
        return {"addressSpace": {"addressPrefixes": list(self.address_prefixes)}}


class SubnetSpec(ResourceSpec):
    """Subnet inside a virtual network.

    ``route_table_id`` and ``private_endpoint_network_policies`` are only
    enforced when set; a subnet spec without them never removes an existing
    association.
    """

    address_prefix: Cidr
    private_endpoint_network_policies: str | None = None
    route_table_id: ResourceId | None = None

    def arm_properties(self) -> dict[str, Any]:
        properties: dict[str, Any] = {"addressPrefix": self.address_prefix}
        if self.private_endpoint_network_policies is not None:
            properties["privateEndpointNetworkPolicies"] = self.private_endpoint_network_policies
        if self.route_table_id is not None:
            properties["routeTable"] = {"id": self.route_table_id}
        return properties

    def matches(self, existing: dict[str, Any]) -> bool:
        if read_path(existing, "properties.addressPrefix") != self.address_prefix:
            return False
        if self.private_endpoint_network_policies is not None and (
            read_path(existing, "properties.privateEndpointNetworkPolicies")
            != self.private_endpoint_network_policies
        ):
            return False
        if self.route_table_id is not None and not _same_id(
            read_path(existing, "properties.routeTable.id"), self.route_table_id
        ):
            return False
        return True


class PublicIpSpec(ResourceSpec):
    sku_name: str = "Standard"
    allocation_method: str = "Static"

    def arm_sku(self) -> dict[str, str]:
        return {"name": self.sku_name}

    def arm_properties(self) -> dict[str, Any]:
        return {"publicIPAllocationMethod": self.allocation_method}


class FirewallPolicySpec(ResourceSpec):
    tier: str = "Standard"

    def arm_properties(self) -> dict[str, Any]:
        return {"sku": {"tier": self.tier}}


class FirewallSpec(ResourceSpec):
    """Azure Firewall attached to AzureFirewallSubnet and a public IP."""

    policy_id: ResourceId
    subnet_id: ResourceId
    public_ip_id: ResourceId
    ip_configuration_name: str = "fw-config"
    sku_name: str = "AZFW_VNet"
    sku_tier: str = "Standard"

    def arm_properties(self) -> dict[str, Any]:
        return {
            "sku": {"name": self.sku_name, "tier": self.sku_tier},
            "firewallPolicy": {"id": self.policy_id},
            "ipConfigurations": [
                {
                    "name": self.ip_configuration_name,
                    "properties": {
                        "subnet": {"id": self.subnet_id},
                        "publicIPAddress": {"id": self.public_ip_id},
                    },
                }
            ],
        }


class VpnGatewaySpec(ResourceSpec):
    subnet_id: ResourceId
    public_ip_id: ResourceId
    sku: str = "VpnGw1"
    gateway_type: str = "Vpn"
    vpn_type: str = "RouteBased"
    ip_configuration_name: str = "vnetGatewayConfig"

    def arm_properties(self) -> dict[str, Any]:
        return {
            "gatewayType": self.gateway_type,
            "vpnType": self.vpn_type,
            "sku": {"name": self.sku, "tier": self.sku},
            "ipConfigurations": [
                {
                    "name": self.ip_configuration_name,
                    "properties": {
                        "privateIPAllocationMethod": "Dynamic",
                        "subnet": {"id": self.subnet_id},
                        "publicIPAddress": {"id": self.public_ip_id},
                    },
                }
            ],
        }


class BastionSpec(ResourceSpec):
    subnet_id: ResourceId
    public_ip_id: ResourceId
    sku_name: str = "Standard"
    ip_configuration_name: str = "bastion-ipconfig"

    def arm_sku(self) -> dict[str, str]:
        return {"name": self.sku_name}

    def arm_properties(self) -> dict[str, Any]:
        return {
            "ipConfigurations": [
                {
                    "name": self.ip_configuration_name,
                    "properties": {
                        "subnet": {"id": self.subnet_id},
                        "publicIPAddress": {"id": self.public_ip_id},
                    },
                }
            ],
        }


class PeeringSpec(ResourceSpec):
    """One direction of a virtual network peering.

    Only the hub side offers gateway transit; spokes never use remote
    gateways here because the VPN gateway may still be provisioning.
    """

    remote_network_id: ResourceId
    allow_virtual_network_access: bool = True
    allow_forwarded_traffic: bool = True
    allow_gateway_transit: bool = False
    use_remote_gateways: bool = False

    def arm_properties(self) -> dict[str, Any]:
        return {
            "remoteVirtualNetwork": {"id": self.remote_network_id},
            "allowVirtualNetworkAccess": self.allow_virtual_network_access,
            "allowForwardedTraffic": self.allow_forwarded_traffic,
            "allowGatewayTransit": self.allow_gateway_transit,
            "useRemoteGateways": self.use_remote_gateways,
        }


class RouteTableSpec(ResourceSpec):
    pass


class RouteSpec(ResourceSpec):
    """User-defined route. The next hop must be a concrete address."""

    address_prefix: Cidr
    next_hop_ip_address: IPv4
    next_hop_type: str = "VirtualAppliance"

    def arm_properties(self) -> dict[str, Any]:
        return {
            "addressPrefix": self.address_prefix,
            "nextHopType": self.next_hop_type,
            "nextHopIpAddress": self.next_hop_ip_address,
        }

    def matches(self, existing: dict[str, Any]) -> bool:
        return (
            read_path(existing, "properties.addressPrefix") == self.address_prefix
            and read_path(existing, "properties.nextHopType") == self.next_hop_type
            and read_path(existing, "properties.nextHopIpAddress") == self.next_hop_ip_address
        )


class SqlServerSpec(ResourceSpec):
    administrator_login: str
    administrator_login_password: SecretStr
    public_network_access: str = "Disabled"
    version: str = "12.0"

    def arm_properties(self) -> dict[str, Any]:
        return {
            "administratorLogin": self.administrator_login,
            "administratorLoginPassword": self.administrator_login_password.get_secret_value(),
            "publicNetworkAccess": self.public_network_access,
            "version": self.version,
        }


class SqlDatabaseSpec(ResourceSpec):
    sku_name: str = "Basic"
    sku_tier: str = "Basic"

    def arm_sku(self) -> dict[str, str]:
        return {"name": self.sku_name, "tier": self.sku_tier}


class SqlFirewallRuleSpec(ResourceSpec):
    start_ip_address: IPv4
    end_ip_address: IPv4

    def arm_properties(self) -> dict[str, Any]:
        return {
            "startIpAddress": self.start_ip_address,
            "endIpAddress": self.end_ip_address,
        }

    def matches(self, existing: dict[str, Any]) -> bool:
        return (
            read_path(existing, "properties.startIpAddress") == self.start_ip_address
            and read_path(existing, "properties.endIpAddress") == self.end_ip_address
        )


class PrivateEndpointSpec(ResourceSpec):
    """Private endpoint fronting a PaaS resource.

    An endpoint counts as wired up when its connection was approved or it
    still publishes a custom DNS FQDN. Once a private DNS zone group is
    attached Azure empties ``customDnsConfigs``, so the connection state is
    what a healthy endpoint reports on later runs. Anything else never
    finished connecting and gets rebuilt.
    """

    subnet_id: ResourceId
    private_link_service_id: ResourceId
    connection_name: str
    group_ids: list[str] = Field(default_factory=lambda: ["sqlServer"])

    def arm_properties(self) -> dict[str, Any]:
        return {
            "subnet": {"id": self.subnet_id},
            "privateLinkServiceConnections": [
                {
                    "name": self.connection_name,
                    "properties": {
                        "privateLinkServiceId": self.private_link_service_id,
                        "groupIds": list(self.group_ids),
                    },
                }
            ],
        }

    def matches(self, existing: dict[str, Any]) -> bool:
        approved = read_path(existing, CONNECTION_STATUS_PATH) == "Approved"
        if not approved and not read_path(existing, "properties.customDnsConfigs[0].fqdn"):
            return False
        target = read_path(
            existing,
            "properties.privateLinkServiceConnections[0].properties.privateLinkServiceId",
        )
        return _same_id(target, self.private_link_service_id)


class PrivateDnsZoneSpec(ResourceSpec):
    location: str | None = "global"


class DnsLinkSpec(ResourceSpec):
    """Resolution-only link between a private DNS zone and a network."""

    location: str | None = "global"
    virtual_network_id: ResourceId
    registration_enabled: bool = False

    @field_validator("registration_enabled")
    @classmethod
    def validate_registration(cls, v: bool) -> bool:
        if v:
            raise ValueError("DNS links are resolution-only; auto-registration must stay off")
        return v

    def arm_properties(self) -> dict[str, Any]:
        return {
            "virtualNetwork": {"id": self.virtual_network_id},
            "registrationEnabled": self.registration_enabled,
        }


class DnsZoneGroupSpec(ResourceSpec):
    """Binding of a private endpoint to a private DNS zone.

    Never treated as current: an existing binding is always rebuilt so that
    records for a replaced endpoint cannot linger.
    """

    private_dns_zone_id: ResourceId
    config_name: str = "sql"

    def arm_properties(self) -> dict[str, Any]:
        return {
            "privateDnsZoneConfigs": [
                {
                    "name": self.config_name,
                    "properties": {"privateDnsZoneId": self.private_dns_zone_id},
                }
            ]
        }

    def matches(self, existing: dict[str, Any]) -> bool:
        return False
