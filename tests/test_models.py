"""Tests for desired-state resource models."""

import pytest
from pydantic import SecretStr, ValidationError

from hubspoke.models import (
    DnsLinkSpec,
    DnsZoneGroupSpec,
    FirewallSpec,
    PeeringSpec,
    PrivateEndpointSpec,
    PublicIpSpec,
    RouteSpec,
    SqlFirewallRuleSpec,
    SqlServerSpec,
    SubnetSpec,
    VirtualNetworkSpec,
)

SUB = "/subscriptions/00000000-0000-0000-0000-000000000000/resourceGroups/rg"
VNET_ID = f"{SUB}/providers/Microsoft.Network/virtualNetworks/vnet-hub-secure"
SUBNET_ID = f"{VNET_ID}/subnets/AzureFirewallSubnet"
PIP_ID = f"{SUB}/providers/Microsoft.Network/publicIPAddresses/pip-firewall"
POLICY_ID = f"{SUB}/providers/Microsoft.Network/firewallPolicies/fw-policy-hub"
RT_ID = f"{SUB}/providers/Microsoft.Network/routeTables/rt-prod"
SQL_ID = f"{SUB}/providers/Microsoft.Sql/servers/sql-hub-server-test"
ZONE_ID = f"{SUB}/providers/Microsoft.Network/privateDnsZones/privatelink.database.windows.net"


class TestRouteSpec:
    """Tests for RouteSpec."""

    def test_body(self) -> None:
        """Test the rendered route body."""
        spec = RouteSpec(address_prefix="0.0.0.0/0", next_hop_ip_address="10.0.1.4")

        assert spec.to_arm_body() == {
            "properties": {
                "addressPrefix": "0.0.0.0/0",
                "nextHopType": "VirtualAppliance",
                "nextHopIpAddress": "10.0.1.4",
            }
        }

    @pytest.mark.parametrize("next_hop", ["", "None", "fw-hub", "10.0.1"])
    def test_rejects_non_address_next_hop(self, next_hop: str) -> None:
        """Test that a route never carries an empty or placeholder next hop."""
        with pytest.raises(ValidationError):
            RouteSpec(address_prefix="0.0.0.0/0", next_hop_ip_address=next_hop)

    def test_rejects_invalid_prefix(self) -> None:
        """Test that the destination must be a CIDR."""
        with pytest.raises(ValidationError, match="Invalid CIDR"):
            RouteSpec(address_prefix="default", next_hop_ip_address="10.0.1.4")

    def test_matches(self) -> None:
        """Test drift detection on the next hop."""
        spec = RouteSpec(address_prefix="0.0.0.0/0", next_hop_ip_address="10.0.1.4")
        existing = spec.to_arm_body()

        assert spec.matches(existing)
        existing["properties"]["nextHopIpAddress"] = "10.0.1.5"
        assert not spec.matches(existing)


class TestSubnetSpec:
    """Tests for SubnetSpec."""

    def test_minimal_body(self) -> None:
        """Test optional properties are omitted when unset."""
        assert SubnetSpec(address_prefix="10.0.1.0/24").to_arm_body() == {
            "properties": {"addressPrefix": "10.0.1.0/24"}
        }

    def test_route_table_association(self) -> None:
        """Test the route table reference is rendered and compared."""
        spec = SubnetSpec(address_prefix="10.1.1.0/24", route_table_id=RT_ID)
        existing = {"properties": {"addressPrefix": "10.1.1.0/24"}}

        assert spec.to_arm_body()["properties"]["routeTable"] == {"id": RT_ID}
        assert not spec.matches(existing)
        existing["properties"]["routeTable"] = {"id": RT_ID.upper()}
        assert spec.matches(existing)

    def test_unset_fields_do_not_count_as_drift(self) -> None:
        """Test a plain subnet spec accepts an existing association."""
        spec = SubnetSpec(address_prefix="10.1.1.0/24")
        existing = {"properties": {"addressPrefix": "10.1.1.0/24", "routeTable": {"id": RT_ID}}}

        assert spec.matches(existing)

    def test_private_endpoint_policies(self) -> None:
        """Test private endpoint network policies are enforced when set."""
        spec = SubnetSpec(address_prefix="10.0.4.0/24", private_endpoint_network_policies="Disabled")
        existing = {
            "properties": {
                "addressPrefix": "10.0.4.0/24",
                "privateEndpointNetworkPolicies": "Enabled",
            }
        }

        assert not spec.matches(existing)

    def test_rejects_bare_name_as_route_table(self) -> None:
        """Test that only resource ids are accepted as references."""
        with pytest.raises(ValidationError, match="ARM resource id"):
            SubnetSpec(address_prefix="10.1.1.0/24", route_table_id="rt-prod")


class TestNetworkSpecs:
    """Tests for network resource models."""

    def test_virtual_network_body(self) -> None:
        """Test the address space body."""
        spec = VirtualNetworkSpec(location="japaneast", address_prefixes=["10.0.0.0/16"])

        assert spec.to_arm_body() == {
            "properties": {"addressSpace": {"addressPrefixes": ["10.0.0.0/16"]}},
            "location": "japaneast",
        }

    def test_virtual_network_requires_prefix(self) -> None:
        """Test an empty address space is rejected."""
        with pytest.raises(ValidationError):
            VirtualNetworkSpec(location="japaneast", address_prefixes=[])

    def test_public_ip_sku(self) -> None:
        """Test public IPs are Standard and static."""
        body = PublicIpSpec(location="japaneast").to_arm_body()

        assert body["sku"] == {"name": "Standard"}
        assert body["properties"] == {"publicIPAllocationMethod": "Static"}

    def test_firewall_body(self) -> None:
        """Test the firewall is wired to its subnet, IP and policy."""
        body = FirewallSpec(
            location="japaneast",
            policy_id=POLICY_ID,
            subnet_id=SUBNET_ID,
            public_ip_id=PIP_ID,
        ).to_arm_body()

        configuration = body["properties"]["ipConfigurations"][0]
        assert configuration["name"] == "fw-config"
        assert configuration["properties"]["subnet"] == {"id": SUBNET_ID}
        assert body["properties"]["firewallPolicy"] == {"id": POLICY_ID}
        assert body["properties"]["sku"] == {"name": "AZFW_VNet", "tier": "Standard"}

    def test_peering_defaults(self) -> None:
        """Test peerings forward traffic and never use remote gateways."""
        properties = PeeringSpec(remote_network_id=VNET_ID).arm_properties()

        assert properties["allowVirtualNetworkAccess"] is True
        assert properties["allowForwardedTraffic"] is True
        assert properties["allowGatewayTransit"] is False
        assert properties["useRemoteGateways"] is False

    def test_models_are_frozen(self) -> None:
        """Test desired state cannot be mutated after construction."""
        spec = PeeringSpec(remote_network_id=VNET_ID)

        with pytest.raises(ValidationError):
            spec.allow_gateway_transit = True  # type: ignore[misc]

    def test_unknown_fields_rejected(self) -> None:
        """Test typos in field names fail loudly."""
        with pytest.raises(ValidationError):
            PeeringSpec(remote_network_id=VNET_ID, allow_transit=True)  # type: ignore[call-arg]


class TestDatabaseSpecs:
    """Tests for database and private DNS models."""

    def test_sql_server_password_hidden_in_repr(self) -> None:
        """Test the administrator password never appears in a repr."""
        spec = SqlServerSpec(
            location="japaneast",
            administrator_login="sqladmin",
            administrator_login_password=SecretStr("P@ssw0rd!"),
        )

        assert "P@ssw0rd!" not in repr(spec)
        body = spec.to_arm_body()
        assert body["properties"]["administratorLoginPassword"] == "P@ssw0rd!"
        assert body["properties"]["publicNetworkAccess"] == "Disabled"

    def test_private_endpoint_requires_fqdn_to_match(self) -> None:
        """Test an endpoint without custom DNS configuration is not current."""
        spec = PrivateEndpointSpec(
            subnet_id=SUBNET_ID,
            private_link_service_id=SQL_ID,
            connection_name="sql-connection",
        )
        existing = spec.to_arm_body()

        assert not spec.matches(existing)
        existing["properties"]["customDnsConfigs"] = [
            {"fqdn": "sql-hub-server-test.database.windows.net", "ipAddresses": ["10.0.4.4"]}
        ]
        assert spec.matches(existing)

    def test_private_endpoint_approved_without_custom_dns(self) -> None:
        """Test an approved endpoint matches once a zone group took over its DNS."""
        spec = PrivateEndpointSpec(
            subnet_id=SUBNET_ID,
            private_link_service_id=SQL_ID,
            connection_name="sql-connection",
        )
        existing = spec.to_arm_body()
        connection = existing["properties"]["privateLinkServiceConnections"][0]
        existing["properties"]["customDnsConfigs"] = []

        connection["properties"]["privateLinkServiceConnectionState"] = {"status": "Pending"}
        assert not spec.matches(existing)
        connection["properties"]["privateLinkServiceConnectionState"] = {"status": "Approved"}
        assert spec.matches(existing)

    def test_private_endpoint_target_change(self) -> None:
        """Test an endpoint pointing at another server is not current."""
        spec = PrivateEndpointSpec(
            subnet_id=SUBNET_ID,
            private_link_service_id=SQL_ID,
            connection_name="sql-connection",
        )
        other = PrivateEndpointSpec(
            subnet_id=SUBNET_ID,
            private_link_service_id=SQL_ID.replace("test", "old"),
            connection_name="sql-connection",
        )
        existing = other.to_arm_body()
        existing["properties"]["customDnsConfigs"] = [{"fqdn": "x.database.windows.net"}]

        assert not spec.matches(existing)

    def test_private_endpoint_rejects_empty_target(self) -> None:
        """Test an empty target id is rejected before any call."""
        with pytest.raises(ValidationError):
            PrivateEndpointSpec(
                subnet_id=SUBNET_ID,
                private_link_service_id="",
                connection_name="sql-connection",
            )

    def test_dns_link_is_resolution_only(self) -> None:
        """Test that auto-registration cannot be switched on."""
        assert DnsLinkSpec(virtual_network_id=VNET_ID).to_arm_body() == {
            "properties": {
                "virtualNetwork": {"id": VNET_ID},
                "registrationEnabled": False,
            },
            "location": "global",
        }
        with pytest.raises(ValidationError, match="resolution-only"):
            DnsLinkSpec(virtual_network_id=VNET_ID, registration_enabled=True)

    def test_zone_group_never_matches(self) -> None:
        """Test zone groups are always rebuilt."""
        spec = DnsZoneGroupSpec(private_dns_zone_id=ZONE_ID)

        assert not spec.matches(spec.to_arm_body())
        config = spec.to_arm_body()["properties"]["privateDnsZoneConfigs"][0]
        assert config == {"name": "sql", "properties": {"privateDnsZoneId": ZONE_ID}}

    def test_firewall_rule_single_address(self) -> None:
        """Test firewall rules compare both bounds."""
        spec = SqlFirewallRuleSpec(start_ip_address="203.0.113.7", end_ip_address="203.0.113.7")
        existing = spec.to_arm_body()

        assert spec.matches(existing)
        existing["properties"]["endIpAddress"] = "203.0.113.255"
        assert not spec.matches(existing)
