"""Configuration management with validation.

The whole topology (names, address ranges, timing) is fixed at the top of a
run and handed to the reconciler as one immutable structure. Invalid
configurations fail at load time, before any Azure call is made.
"""

from __future__ import annotations

import ipaddress
import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum


class NetworkRole(str, Enum):
    """Role a virtual network plays in the topology."""

    HUB = "hub"
    SPOKE_PRODUCTION = "spoke-production"
    SPOKE_NONPRODUCTION = "spoke-nonproduction"


class SubnetRole(str, Enum):
    """Reserved purpose of a subnet."""

    FIREWALL = "firewall"
    GATEWAY = "gateway"
    BASTION = "bastion"
    DATABASE = "database"
    WORKLOAD = "workload"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Azure services only bind to subnets carrying these exact names
RESERVED_SUBNET_NAMES: dict[SubnetRole, str] = {
    SubnetRole.FIREWALL: "AzureFirewallSubnet",
    SubnetRole.GATEWAY: "GatewaySubnet",
    SubnetRole.BASTION: "AzureBastionSubnet",
}

# Configuration constants with documented bounds
DEFAULT_LOCATION = "japaneast"
DEFAULT_RESOURCE_GROUP = "Hub-Spoke-Tokyo"

DEFAULT_POLL_INTERVAL_SECONDS = 15
DEFAULT_POLL_MAX_WAIT_SECONDS = 600
MAX_POLL_WAIT_SECONDS = 7200
DEFAULT_DNS_PROPAGATION_SECONDS = 10
DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800

DEFAULT_SQL_ADMIN_USER = "sqladmin"
SQL_SERVER_NAME_PREFIX = "sql-hub-server"

MAX_RESOURCE_GROUP_NAME_LENGTH = 90

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_SQL_SERVER_NAME_PATTERN = r"^[a-z0-9][a-z0-9-]{0,61}[a-z0-9]$"
VALID_ADMIN_USER_PATTERN = r"^[A-Za-z][A-Za-z0-9_]{0,127}$"


@dataclass(frozen=True)
class SubnetConfig:
    """A subnet carved out of its parent network."""

    name: str
    address_prefix: str
    role: SubnetRole = SubnetRole.WORKLOAD


@dataclass(frozen=True)
class NetworkConfig:
    """A virtual network and the subnets it owns.

    ``label`` feeds the derived names: peerings are ``Hub-to-<label>`` and
    ``<label>-to-Hub``, route tables ``rt-<label>`` and DNS links
    ``link-<label>`` (lower-cased).
    """

    name: str
    role: NetworkRole
    label: str
    address_prefix: str
    subnets: tuple[SubnetConfig, ...] = ()
    workload_subnet: str | None = None
    inspect_egress: bool = True
    resolve_private_dns: bool = True

    @property
    def is_hub(self) -> bool:
        return self.role == NetworkRole.HUB

    @property
    def route_table_name(self) -> str:
        return f"rt-{self.label.lower()}"

    @property
    def dns_link_name(self) -> str:
        return f"link-{self.label.lower()}"

    def subnet(self, role: SubnetRole) -> SubnetConfig | None:
        """Return the first subnet with the given role, if any."""
        for subnet in self.subnets:
            if subnet.role == role:
                return subnet
        return None

    def subnet_named(self, name: str) -> SubnetConfig | None:
        for subnet in self.subnets:
            if subnet.name == name:
                return subnet
        return None


def hub_to_spoke_peering_name(spoke: NetworkConfig) -> str:
    return f"Hub-to-{spoke.label}"


def spoke_to_hub_peering_name(spoke: NetworkConfig) -> str:
    return f"{spoke.label}-to-Hub"


@dataclass(frozen=True)
class HubServicesConfig:
    """Names and SKUs of the shared services living in the hub."""

    firewall_name: str = "fw-hub"
    firewall_policy_name: str = "fw-policy-hub"
    firewall_ip_config_name: str = "fw-config"
    firewall_sku_name: str = "AZFW_VNet"
    firewall_sku_tier: str = "Standard"
    firewall_public_ip_name: str = "pip-firewall"

    enable_vpn_gateway: bool = True
    vpn_gateway_name: str = "vpn-gw-hub"
    vpn_gateway_sku: str = "VpnGw1"
    vpn_gateway_public_ip_name: str = "pip-vpn-gw"

    enable_bastion: bool = True
    bastion_name: str = "bastion-hub"
    bastion_sku: str = "Standard"
    bastion_public_ip_name: str = "pip-bastion"

    default_route_name: str = "Default-to-FW"

    @property
    def public_ip_names(self) -> tuple[str, ...]:
        names = [self.firewall_public_ip_name]
        if self.enable_vpn_gateway:
            names.append(self.vpn_gateway_public_ip_name)
        if self.enable_bastion:
            names.append(self.bastion_public_ip_name)
        return tuple(names)


@dataclass(frozen=True)
class DatabaseConfig:
    """Private SQL database and its private-link DNS chain."""

    server_name: str
    admin_user: str = DEFAULT_SQL_ADMIN_USER
    database_name: str = "HubDataDB"
    database_sku: str = "Basic"
    private_endpoint_name: str = "pe-sql-hub"
    connection_name: str = "sql-connection"
    group_id: str = "sqlServer"
    dns_zone_name: str = "privatelink.database.windows.net"
    zone_group_name: str = "dns-group-sql"
    zone_config_name: str = "sql"
    firewall_rule_name: str = "AllowLocalPC"
    key_vault_name: str | None = None
    password_secret_name: str | None = None
    # Set when no name was pinned: a server tagged by an earlier run is adopted
    reuse_managed_server: bool = False

    @property
    def server_fqdn(self) -> str:
        return f"{self.server_name}.database.windows.net"


def generate_sql_server_name() -> str:
    """SQL server host names are global, so a timestamp keeps them unique."""
    return f"{SQL_SERVER_NAME_PREFIX}-{int(time.time())}"


def default_hub() -> NetworkConfig:
    return NetworkConfig(
        name="vnet-hub-secure",
        role=NetworkRole.HUB,
        label="Hub",
        address_prefix="10.0.0.0/16",
        subnets=(
            SubnetConfig("AzureFirewallSubnet", "10.0.1.0/24", SubnetRole.FIREWALL),
            SubnetConfig("GatewaySubnet", "10.0.2.0/24", SubnetRole.GATEWAY),
            SubnetConfig("AzureBastionSubnet", "10.0.3.0/24", SubnetRole.BASTION),
            SubnetConfig("DatabaseSubnet", "10.0.4.0/24", SubnetRole.DATABASE),
        ),
        inspect_egress=False,
    )


def default_spokes() -> tuple[NetworkConfig, ...]:
    return (
        NetworkConfig(
            name="vnet-spoke-prod",
            role=NetworkRole.SPOKE_PRODUCTION,
            label="Prod",
            address_prefix="10.1.0.0/16",
            subnets=(SubnetConfig("default", "10.1.1.0/24"),),
            workload_subnet="default",
        ),
        NetworkConfig(
            name="vnet-spoke-nonprod",
            role=NetworkRole.SPOKE_NONPRODUCTION,
            label="NonProd",
            address_prefix="10.2.0.0/16",
            subnets=(SubnetConfig("default", "10.2.1.0/24"),),
            workload_subnet="default",
        ),
    )


def _validate_network(network: NetworkConfig) -> list[str]:
    errors: list[str] = []
    try:
        parent = ipaddress.ip_network(network.address_prefix)
    except ValueError:
        return [f"{network.name}: invalid address prefix {network.address_prefix}"]

    carved: list[tuple[str, ipaddress.IPv4Network | ipaddress.IPv6Network]] = []
    for subnet in network.subnets:
        try:
            cidr = ipaddress.ip_network(subnet.address_prefix)
        except ValueError:
            errors.append(f"{network.name}/{subnet.name}: invalid address prefix")
            continue
        if cidr.version != parent.version or not cidr.subnet_of(parent):  # type: ignore[arg-type]
            errors.append(
                f"{network.name}/{subnet.name}: {cidr} is outside {parent}"
            )
        for other_name, other in carved:
            if cidr.overlaps(other):
                errors.append(
                    f"{network.name}: subnets {other_name} and {subnet.name} overlap"
                )
        carved.append((subnet.name, cidr))

        reserved = RESERVED_SUBNET_NAMES.get(subnet.role)
        if reserved and subnet.name != reserved:
            errors.append(
                f"{network.name}/{subnet.name}: {subnet.role.value} subnet must be "
                f"named {reserved}"
            )

    if network.workload_subnet and network.subnet_named(network.workload_subnet) is None:
        errors.append(
            f"{network.name}: workload subnet {network.workload_subnet} is not defined"
        )
    return errors


@dataclass(frozen=True)
class Config:
    """Provisioner configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    subscription_id: str
    database: DatabaseConfig
    location: str = DEFAULT_LOCATION
    resource_group: str = DEFAULT_RESOURCE_GROUP
    hub: NetworkConfig = field(default_factory=default_hub)
    spokes: tuple[NetworkConfig, ...] = field(default_factory=default_spokes)
    services: HubServicesConfig = field(default_factory=HubServicesConfig)

    # Timing
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    poll_max_wait_seconds: int = DEFAULT_POLL_MAX_WAIT_SECONDS
    dns_propagation_seconds: int = DEFAULT_DNS_PROPAGATION_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Opens the SQL server to the caller's public address; off unless asked for
    allow_local_client: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not self.resource_group:
            errors.append("RESOURCE_GROUP_NAME is required")
        elif len(self.resource_group) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"RESOURCE_GROUP_NAME exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )

        # Topology validation
        if not self.hub.is_hub:
            errors.append(f"{self.hub.name}: hub network must have role 'hub'")
        if not self.spokes:
            errors.append("At least one spoke network is required")
        for spoke in self.spokes:
            if spoke.is_hub:
                errors.append(f"{spoke.name}: spoke network cannot have role 'hub'")
            if spoke.inspect_egress and not spoke.workload_subnet:
                errors.append(f"{spoke.name}: inspected spokes need a workload subnet")

        networks = (self.hub, *self.spokes)
        names = [n.name for n in networks]
        if len(set(names)) != len(names):
            errors.append(f"Network names must be unique: {names}")
        labels = [n.label.lower() for n in networks]
        if len(set(labels)) != len(labels):
            errors.append(f"Network labels must be unique: {labels}")

        for network in networks:
            errors.extend(_validate_network(network))

        prefixes: list[tuple[str, ipaddress.IPv4Network | ipaddress.IPv6Network]] = []
        for network in networks:
            try:
                cidr = ipaddress.ip_network(network.address_prefix)
            except ValueError:
                continue
            for other_name, other in prefixes:
                if cidr.overlaps(other):
                    errors.append(
                        f"Peered networks {other_name} and {network.name} overlap"
                    )
            prefixes.append((network.name, cidr))

        required_roles = [SubnetRole.FIREWALL, SubnetRole.DATABASE]
        if self.services.enable_vpn_gateway:
            required_roles.append(SubnetRole.GATEWAY)
        if self.services.enable_bastion:
            required_roles.append(SubnetRole.BASTION)
        for role in required_roles:
            if self.hub.subnet(role) is None:
                errors.append(f"{self.hub.name}: hub requires a {role.value} subnet")

        # Database validation
        if not re.match(VALID_SQL_SERVER_NAME_PATTERN, self.database.server_name):
            errors.append(
                f"SQL_SERVER_NAME must be lowercase letters, digits and hyphens: "
                f"{self.database.server_name}"
            )
        if not re.match(VALID_ADMIN_USER_PATTERN, self.database.admin_user):
            errors.append(f"ADMIN_USER is not a valid SQL login: {self.database.admin_user}")
        if bool(self.database.key_vault_name) != bool(self.database.password_secret_name):
            errors.append(
                "KEY_VAULT_NAME and SQL_ADMIN_PASSWORD_SECRET_NAME must be set together"
            )

        # Timing validation
        if self.poll_interval_seconds < 1:
            errors.append("POLL_INTERVAL_SECONDS must be at least 1")
        if not (
            self.poll_interval_seconds <= self.poll_max_wait_seconds <= MAX_POLL_WAIT_SECONDS
        ):
            errors.append(
                f"POLL_MAX_WAIT_SECONDS must be between POLL_INTERVAL_SECONDS "
                f"and {MAX_POLL_WAIT_SECONDS} seconds"
            )
        if self.dns_propagation_seconds < 0:
            errors.append("DNS_PROPAGATION_SECONDS cannot be negative")
        if self.operation_timeout_seconds < 1:
            errors.append("OPERATION_TIMEOUT_SECONDS must be at least 1")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def networks(self) -> tuple[NetworkConfig, ...]:
        return (self.hub, *self.spokes)

    @property
    def inspected_spokes(self) -> tuple[NetworkConfig, ...]:
        return tuple(s for s in self.spokes if s.inspect_egress)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription (required)
            AZURE_LOCATION: Region for every resource (default: japaneast)
            RESOURCE_GROUP_NAME: Resource group holding the topology
                (default: Hub-Spoke-Tokyo)
            POLL_INTERVAL_SECONDS: Readiness poll interval (default: 15)
            POLL_MAX_WAIT_SECONDS: Readiness poll bound (default: 600)
            DNS_PROPAGATION_SECONDS: Wait before counting DNS records (default: 10)
            OPERATION_TIMEOUT_SECONDS: Bound on a single Azure operation (default: 1800)
            ALLOW_LOCAL_CLIENT: Open the SQL server to this machine's public
                address (default: false)
            ENABLE_VPN_GATEWAY: Provision the hub VPN gateway (default: true)
            ENABLE_BASTION: Provision the hub bastion host (default: true)

        Database Variables:
            ADMIN_USER: SQL administrator login (default: sqladmin)
            SQL_SERVER_NAME: Reuse a server name from an earlier run. When
                unset, a sql-hub-server-* server this tool created in the
                resource group is adopted, else sql-hub-server-<unix timestamp>
            KEY_VAULT_NAME / SQL_ADMIN_PASSWORD_SECRET_NAME: Key Vault secret
                holding the administrator password. ADMIN_PASS is the fallback
                and is read only when the password is needed.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        pinned_server_name = os.environ.get("SQL_SERVER_NAME", "")

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", DEFAULT_LOCATION),
            resource_group=os.environ.get("RESOURCE_GROUP_NAME", DEFAULT_RESOURCE_GROUP),
            services=HubServicesConfig(
                enable_vpn_gateway=get_bool("ENABLE_VPN_GATEWAY", True),
                enable_bastion=get_bool("ENABLE_BASTION", True),
            ),
            database=DatabaseConfig(
                server_name=pinned_server_name or generate_sql_server_name(),
                reuse_managed_server=not pinned_server_name,
                admin_user=os.environ.get("ADMIN_USER") or DEFAULT_SQL_ADMIN_USER,
                key_vault_name=os.environ.get("KEY_VAULT_NAME") or None,
                password_secret_name=os.environ.get("SQL_ADMIN_PASSWORD_SECRET_NAME") or None,
            ),
            poll_interval_seconds=get_int("POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS),
            poll_max_wait_seconds=get_int("POLL_MAX_WAIT_SECONDS", DEFAULT_POLL_MAX_WAIT_SECONDS),
            dns_propagation_seconds=get_int(
                "DNS_PROPAGATION_SECONDS", DEFAULT_DNS_PROPAGATION_SECONDS
            ),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT_SECONDS", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            allow_local_client=get_bool("ALLOW_LOCAL_CLIENT", False),
        )
