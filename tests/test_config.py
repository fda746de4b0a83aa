"""Tests for configuration loading."""

import os
from dataclasses import replace
from unittest.mock import patch

import pytest

from factories import TEST_SQL_SERVER, make_config, make_database
from hubspoke.config import (
    DEFAULT_LOCATION,
    DEFAULT_RESOURCE_GROUP,
    Config,
    ConfigurationError,
    HubServicesConfig,
    NetworkConfig,
    NetworkRole,
    SubnetConfig,
    SubnetRole,
    default_hub,
    default_spokes,
    generate_sql_server_name,
    hub_to_spoke_peering_name,
    spoke_to_hub_peering_name,
)

SUBSCRIPTION = "12345678-1234-1234-1234-123456789012"


class TestDefaults:
    """Tests for the default topology."""

    def test_default_topology(self) -> None:
        """Test the documented default names and ranges."""
        config = make_config()

        assert config.location == DEFAULT_LOCATION == "japaneast"
        assert config.resource_group == DEFAULT_RESOURCE_GROUP == "Hub-Spoke-Tokyo"
        assert config.hub.name == "vnet-hub-secure"
        assert config.hub.address_prefix == "10.0.0.0/16"
        assert [s.name for s in config.spokes] == ["vnet-spoke-prod", "vnet-spoke-nonprod"]
        assert config.allow_local_client is False

    def test_hub_subnets(self) -> None:
        """Test reserved hub subnets carry their required names."""
        hub = default_hub()

        assert hub.subnet(SubnetRole.FIREWALL).name == "AzureFirewallSubnet"
        assert hub.subnet(SubnetRole.GATEWAY).name == "GatewaySubnet"
        assert hub.subnet(SubnetRole.BASTION).name == "AzureBastionSubnet"
        assert hub.subnet(SubnetRole.DATABASE).address_prefix == "10.0.4.0/24"
        assert hub.subnet(SubnetRole.WORKLOAD) is None

    def test_derived_names(self) -> None:
        """Test peering, route table and DNS link names derive from labels."""
        prod, nonprod = default_spokes()

        assert hub_to_spoke_peering_name(prod) == "Hub-to-Prod"
        assert spoke_to_hub_peering_name(nonprod) == "NonProd-to-Hub"
        assert prod.route_table_name == "rt-prod"
        assert nonprod.dns_link_name == "link-nonprod"
        assert default_hub().dns_link_name == "link-hub"

    def test_inspected_spokes_exclude_hub(self) -> None:
        """Test only spokes are routed through the firewall."""
        config = make_config()

        assert config.inspected_spokes == config.spokes
        assert config.hub not in config.inspected_spokes
        assert config.networks[0] is config.hub

    def test_public_ip_names_follow_enabled_services(self) -> None:
        """Test disabled services do not get public IPs."""
        services = HubServicesConfig(enable_vpn_gateway=False)

        assert services.public_ip_names == ("pip-firewall", "pip-bastion")

    def test_generated_server_name(self) -> None:
        """Test generated SQL server names are timestamped."""
        name = generate_sql_server_name()

        assert name.startswith("sql-hub-server-")
        assert name.rsplit("-", 1)[1].isdigit()

    def test_server_fqdn(self) -> None:
        """Test the SQL server FQDN."""
        assert make_database().server_fqdn == f"{TEST_SQL_SERVER}.database.windows.net"


class TestValidation:
    """Tests for Config validation."""

    def test_invalid_subscription(self) -> None:
        """Test that a non-GUID subscription raises error."""
        with pytest.raises(ConfigurationError, match="AZURE_SUBSCRIPTION_ID"):
            make_config(subscription_id="not-a-guid")

    def test_missing_subscription(self) -> None:
        """Test that a missing subscription raises error."""
        with pytest.raises(ConfigurationError, match="AZURE_SUBSCRIPTION_ID is required"):
            make_config(subscription_id="")

    def test_overlapping_networks(self) -> None:
        """Test that peered networks must not overlap."""
        prod, nonprod = default_spokes()
        clash = replace(
            nonprod,
            address_prefix="10.1.0.0/16",
            subnets=(SubnetConfig("default", "10.1.2.0/24"),),
        )

        with pytest.raises(ConfigurationError, match="overlap"):
            make_config(spokes=(prod, clash))

    def test_subnet_outside_network(self) -> None:
        """Test that subnets must sit inside their network."""
        prod, nonprod = default_spokes()
        stray = replace(prod, subnets=(SubnetConfig("default", "10.9.1.0/24"),))

        with pytest.raises(ConfigurationError, match="outside"):
            make_config(spokes=(stray, nonprod))

    def test_reserved_subnet_name(self) -> None:
        """Test that the firewall subnet must be named AzureFirewallSubnet."""
        hub = default_hub()
        renamed = replace(
            hub,
            subnets=(
                SubnetConfig("FirewallSubnet", "10.0.1.0/24", SubnetRole.FIREWALL),
                *hub.subnets[1:],
            ),
        )

        with pytest.raises(ConfigurationError, match="AzureFirewallSubnet"):
            make_config(hub=renamed)

    def test_hub_requires_database_subnet(self) -> None:
        """Test that the hub must carry a database subnet."""
        hub = default_hub()
        without_database = replace(
            hub, subnets=tuple(s for s in hub.subnets if s.role != SubnetRole.DATABASE)
        )

        with pytest.raises(ConfigurationError, match="database subnet"):
            make_config(hub=without_database)

    def test_disabled_gateway_needs_no_gateway_subnet(self) -> None:
        """Test that the gateway subnet is only required with a gateway."""
        hub = default_hub()
        without_gateway = replace(
            hub, subnets=tuple(s for s in hub.subnets if s.role != SubnetRole.GATEWAY)
        )

        config = make_config(
            hub=without_gateway,
            services=HubServicesConfig(enable_vpn_gateway=False),
        )

        assert config.hub.subnet(SubnetRole.GATEWAY) is None

    def test_spoke_cannot_be_hub(self) -> None:
        """Test that spokes cannot take the hub role."""
        rogue = NetworkConfig(
            name="vnet-rogue",
            role=NetworkRole.HUB,
            label="Rogue",
            address_prefix="10.5.0.0/16",
            subnets=(SubnetConfig("default", "10.5.1.0/24"),),
            workload_subnet="default",
        )

        with pytest.raises(ConfigurationError, match="cannot have role 'hub'"):
            make_config(spokes=(rogue,))

    def test_duplicate_labels(self) -> None:
        """Test that labels must be unique since names derive from them."""
        prod, nonprod = default_spokes()

        with pytest.raises(ConfigurationError, match="labels must be unique"):
            make_config(spokes=(prod, replace(nonprod, label="PROD")))

    def test_invalid_server_name(self) -> None:
        """Test that SQL server names must be DNS-safe."""
        with pytest.raises(ConfigurationError, match="SQL_SERVER_NAME"):
            make_config(database=make_database(server_name="Bad_Name"))

    def test_vault_requires_secret_name(self) -> None:
        """Test that a vault without a secret name is rejected."""
        with pytest.raises(ConfigurationError, match="set together"):
            make_config(database=make_database(key_vault_name="kv-hub"))

    def test_poll_bounds(self) -> None:
        """Test that the poll bound must cover at least one interval."""
        with pytest.raises(ConfigurationError, match="POLL_MAX_WAIT_SECONDS"):
            make_config(poll_interval_seconds=30, poll_max_wait_seconds=10)

    def test_errors_are_collected(self) -> None:
        """Test that every problem is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(subscription_id="bad", dns_propagation_seconds=-1)

        message = str(exc_info.value)
        assert "AZURE_SUBSCRIPTION_ID" in message
        assert "DNS_PROPAGATION_SECONDS" in message


class TestConfigFromEnv:
    """Tests for Config.from_env."""

    def test_minimal_env(self) -> None:
        """Test loading with only the subscription set."""
        with patch.dict(os.environ, {"AZURE_SUBSCRIPTION_ID": SUBSCRIPTION}, clear=True):
            config = Config.from_env()

        assert config.subscription_id == SUBSCRIPTION
        assert config.location == "japaneast"
        assert config.poll_interval_seconds == 15
        assert config.poll_max_wait_seconds == 600
        assert config.dns_propagation_seconds == 10
        assert config.database.admin_user == "sqladmin"
        assert config.database.server_name.startswith("sql-hub-server-")
        assert config.database.reuse_managed_server is True
        assert config.services.enable_vpn_gateway is True

    def test_full_env(self) -> None:
        """Test every supported variable."""
        env = {
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION,
            "AZURE_LOCATION": "westeurope",
            "RESOURCE_GROUP_NAME": "rg-hub",
            "POLL_INTERVAL_SECONDS": "5",
            "POLL_MAX_WAIT_SECONDS": "60",
            "DNS_PROPAGATION_SECONDS": "0",
            "ALLOW_LOCAL_CLIENT": "true",
            "ENABLE_VPN_GATEWAY": "false",
            "ENABLE_BASTION": "no",
            "ADMIN_USER": "dbadmin",
            "SQL_SERVER_NAME": "sql-hub-server-42",
            "KEY_VAULT_NAME": "kv-hub",
            "SQL_ADMIN_PASSWORD_SECRET_NAME": "sql-admin",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.location == "westeurope"
        assert config.resource_group == "rg-hub"
        assert config.poll_interval_seconds == 5
        assert config.poll_max_wait_seconds == 60
        assert config.dns_propagation_seconds == 0
        assert config.allow_local_client is True
        assert config.services.enable_vpn_gateway is False
        assert config.services.enable_bastion is False
        assert config.database.admin_user == "dbadmin"
        assert config.database.server_name == "sql-hub-server-42"
        assert config.database.reuse_managed_server is False
        assert config.database.key_vault_name == "kv-hub"

    def test_non_integer_timing(self) -> None:
        """Test that non-integer timings raise error."""
        env = {"AZURE_SUBSCRIPTION_ID": SUBSCRIPTION, "POLL_INTERVAL_SECONDS": "soon"}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError, match="POLL_INTERVAL_SECONDS"):
                Config.from_env()

    def test_missing_subscription(self) -> None:
        """Test that an empty environment fails validation."""
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError, match="AZURE_SUBSCRIPTION_ID"):
                Config.from_env()
