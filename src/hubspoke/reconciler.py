"""Topology reconciliation for the hub-and-spoke network.

The reconciler walks three phases, each gated by its own preconditions and
ordered by an explicit step graph:

1. hub: resource group, networks, reserved subnets, public IPs, firewall,
   VPN gateway, bastion and the peerings in both directions.
2. routing: wait for the firewall's private IP, then give every inspected
   spoke a route table whose default route points at that IP.
3. database: SQL server and database behind a private endpoint, the private
   DNS zone with its links and zone group, a record-count check, and the
   optional single-address allow-list.

Every mutating step goes through ResourceUpserter, so re-running after a
failure resumes from whatever already exists. Steps that consume an
asynchronously populated attribute run only after the poller confirmed it.
Execution is sequential: the last logged step is the one that failed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from functools import partial
from typing import Any

from pydantic import SecretStr

from .config import (
    SQL_SERVER_NAME_PREFIX,
    Config,
    NetworkConfig,
    SubnetConfig,
    SubnetRole,
    hub_to_spoke_peering_name,
    spoke_to_hub_peering_name,
)
from .control_plane import (
    ControlPlane,
    ControlPlaneError,
    ProvisioningError,
    ResourceKind,
    ResourceRef,
)
from .dependency import DependencyError, DependencyGraph, PreconditionChecker, Requirement
from .local_address import detect_public_address
from .models import (
    BastionSpec,
    DnsLinkSpec,
    DnsZoneGroupSpec,
    FirewallPolicySpec,
    FirewallSpec,
    PeeringSpec,
    PrivateDnsZoneSpec,
    PrivateEndpointSpec,
    PublicIpSpec,
    ResourceGroupSpec,
    RouteSpec,
    RouteTableSpec,
    SqlDatabaseSpec,
    SqlFirewallRuleSpec,
    SqlServerSpec,
    SubnetSpec,
    VirtualNetworkSpec,
    VpnGatewaySpec,
)
from .poller import ReadinessPoller, Sleep, firewall_hints
from .probe import ResourceProbe
from .security import log_security_audit_event
from .upsert import ResourceUpserter, UpsertOutcome, UpsertResult

logger = logging.getLogger(__name__)

FIREWALL_PRIVATE_IP_PATH = "properties.ipConfigurations[0].properties.privateIPAddress"
ENDPOINT_PRIVATE_IP_PATH = "properties.customDnsConfigs[0].ipAddresses[0]"
ZONE_GROUP_PRIVATE_IP_PATH = (
    "properties.privateDnsZoneConfigs[0].properties.recordSets[0].ipAddresses[0]"
)
ZONE_RECORD_SETS_PATH = "properties.numberOfRecordSets"
SERVER_PUBLIC_ACCESS_PATH = "properties.publicNetworkAccess"
DEFAULT_ROUTE_PREFIX = "0.0.0.0/0"

# Every private DNS zone carries an SOA record set of its own
ZONE_BASELINE_RECORD_SETS = 1

MANAGED_BY_TAG = {"managedBy": "hubspoke"}


class Phase(str, Enum):
    """Independently runnable parts of the topology."""

    HUB = "hub"
    ROUTING = "routing"
    DATABASE = "database"


ALL_PHASES: tuple[Phase, ...] = (Phase.HUB, Phase.ROUTING, Phase.DATABASE)


class TransientStepFailure(ProvisioningError):
    """An optional step failed. Logged as a warning; the run continues."""

    def __init__(self, step: str, detail: str) -> None:
        self.step = step
        super().__init__(f"{step}: {detail}")


@dataclass
class Step:
    """A named unit of work and the steps whose outputs it consumes."""

    name: str
    action: Callable[[], Awaitable[Any]]
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DatabaseSummary:
    """Connection details reported when the database phase completes."""

    server_fqdn: str
    admin_user: str
    private_ip: str | None = None
    allowed_client_ip: str | None = None
    public_access_enabled: bool = False
    revert_command: str | None = None

    @property
    def private_ip_display(self) -> str:
        return self.private_ip or "pending"


@dataclass
class ReconcileResult:
    """Result of a reconciliation run."""

    phases: list[Phase]
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    steps_completed: list[str] = field(default_factory=list)
    upserts: list[UpsertResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    firewall_private_ip: str | None = None
    sql_server_name: str | None = None
    database: DatabaseSummary | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def count(self, outcome: UpsertOutcome) -> int:
        return sum(1 for upsert in self.upserts if upsert.outcome == outcome)


class TopologyReconciler:
    """Builds and re-converges the hub-and-spoke topology."""

    def __init__(
        self,
        config: Config,
        control_plane: ControlPlane,
        *,
        admin_password: SecretStr | None = None,
        sleep: Sleep = asyncio.sleep,
        address_detector: Callable[[], str | None] = detect_public_address,
    ) -> None:
        """Initialize the reconciler.

        Args:
            config: Immutable topology configuration.
            control_plane: Control plane the run mutates.
            admin_password: SQL administrator password; required for the database phase.
            sleep: Awaitable sleep, replaced in tests.
            address_detector: Returns this machine's public IPv4 address or None.
        """
        self._config = config
        self._database = config.database
        self._admin_password = admin_password
        self._sleep = sleep
        self._address_detector = address_detector

        self._probe = ResourceProbe(control_plane)
        self._upserter = ResourceUpserter(control_plane, config.subscription_id)
        self._poller = ReadinessPoller(
            self._probe,
            sleep=sleep,
            interval_seconds=config.poll_interval_seconds,
            max_wait_seconds=config.poll_max_wait_seconds,
        )
        self._preconditions = PreconditionChecker(self._probe)

        self._outputs: dict[str, Any] = {}
        self._result = ReconcileResult(phases=[])

    async def reconcile(self, phases: Sequence[Phase] = ALL_PHASES) -> ReconcileResult:
        """Run the requested phases in topology order.

        Fatal failures stop the run and are reported on the result; nothing
        after the failing step executes.
        """
        ordered = [phase for phase in ALL_PHASES if phase in phases]
        if Phase.DATABASE in ordered and self._admin_password is None:
            raise ValueError("The database phase needs an administrator password")

        self._database = self._config.database
        self._outputs = {}
        self._upserter.results.clear()
        self._result = ReconcileResult(phases=ordered)
        result = self._result

        logger.info(
            "Starting reconciliation",
            extra={
                "phases": [phase.value for phase in ordered],
                "resource_group": self._config.resource_group,
                "location": self._config.location,
            },
        )

        try:
            for phase in ordered:
                await self._run_phase(phase)
        except ProvisioningError as e:
            logger.error(
                "Reconciliation halted",
                extra={
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "last_completed_step": (
                        result.steps_completed[-1] if result.steps_completed else None
                    ),
                },
            )
            result.error = str(e)
            result.error_type = type(e).__name__

        result.end_time = datetime.now(UTC)
        result.upserts = list(self._upserter.results)

        logger.info(
            f"Reconciliation {'complete' if result.success else 'failed'}: "
            f"{result.count(UpsertOutcome.CREATED)} created, "
            f"{result.count(UpsertOutcome.UPDATED)} updated, "
            f"{result.count(UpsertOutcome.REPLACED)} replaced, "
            f"{result.count(UpsertOutcome.UNCHANGED)} unchanged, "
            f"duration={result.duration_seconds:.1f}s",
            extra={"warnings": len(result.warnings), "success": result.success},
        )
        return result

    # -------------------------------------------------------------------------
    # Phase plumbing
    # -------------------------------------------------------------------------

    async def _run_phase(self, phase: Phase) -> None:
        requirements = self._requirements(phase)
        if requirements:
            await self._preconditions.verify(requirements, f"The {phase.value} phase")

        steps = self._steps(phase)
        by_name = {step.name: step for step in steps}
        graph = DependencyGraph()
        for step in steps:
            graph.add_node(step.name, step.depends_on)

        undefined = [name for name in graph.nodes if name not in by_name]
        if undefined:
            raise DependencyError(f"Steps depend on undefined steps: {undefined}")

        logger.debug(
            "Execution plan",
            extra={"phase": phase.value, "waves": graph.independent_groups()},
        )

        for name in graph.topological_sort():
            logger.info(f"Step {name}", extra={"phase": phase.value, "step": name})
            self._outputs[name] = await by_name[name].action()
            self._result.steps_completed.append(name)

    def _requirements(self, phase: Phase) -> list[Requirement]:
        config = self._config
        resource_group = Requirement(
            self._ref(ResourceKind.RESOURCE_GROUP, config.resource_group), "Resource group"
        )
        match phase:
            case Phase.HUB:
                return []
            case Phase.ROUTING:
                return [
                    resource_group,
                    *(
                        Requirement(self._network_ref(spoke), "Spoke VNet")
                        for spoke in config.inspected_spokes
                    ),
                    Requirement(
                        self._ref(ResourceKind.FIREWALL, config.services.firewall_name),
                        "Firewall",
                    ),
                ]
            case Phase.DATABASE:
                return [
                    resource_group,
                    Requirement(self._network_ref(config.hub), "Hub VNet"),
                    *(
                        Requirement(self._network_ref(spoke), "Spoke VNet")
                        for spoke in config.spokes
                    ),
                ]
        raise ValueError(f"Unknown phase {phase}")

    def _steps(self, phase: Phase) -> list[Step]:
        match phase:
            case Phase.HUB:
                return self._hub_steps()
            case Phase.ROUTING:
                return self._routing_steps()
            case Phase.DATABASE:
                return self._database_steps()
        raise ValueError(f"Unknown phase {phase}")

    def _ref(self, kind: ResourceKind, name: str, *parents: str) -> ResourceRef:
        return ResourceRef(kind, name, self._config.resource_group, tuple(parents))

    def _network_ref(self, network: NetworkConfig) -> ResourceRef:
        return self._ref(ResourceKind.VIRTUAL_NETWORK, network.name)

    def _output(self, step_name: str) -> Any:
        value = self._outputs.get(step_name)
        if value is None:
            raise DependencyError(f"Step output '{step_name}' is not available")
        return value

    def _warn(self, failure: TransientStepFailure) -> None:
        logger.warning(str(failure), extra={"step": failure.step, "transient": True})
        self._result.warnings.append(str(failure))

    @staticmethod
    def _subnet_step(network: NetworkConfig, subnet: SubnetConfig) -> str:
        return f"subnet:{network.name}/{subnet.name}"

    def _hub_subnet_step(self, role: SubnetRole) -> str:
        subnet = self._config.hub.subnet(role)
        if subnet is None:
            raise DependencyError(f"Hub has no {role.value} subnet")
        return self._subnet_step(self._config.hub, subnet)

    # -------------------------------------------------------------------------
    # Hub phase
    # -------------------------------------------------------------------------

    def _hub_steps(self) -> list[Step]:
        config = self._config
        services = config.services
        steps = [Step("resource-group", self._ensure_resource_group)]

        for network in config.networks:
            network_step = f"network:{network.name}"
            steps.append(
                Step(network_step, partial(self._ensure_network, network), ["resource-group"])
            )
            for subnet in network.subnets:
                # The database subnet belongs to the database phase
                if subnet.role == SubnetRole.DATABASE:
                    continue
                steps.append(
                    Step(
                        self._subnet_step(network, subnet),
                        partial(
                            self._ensure_subnet,
                            network,
                            SubnetSpec(address_prefix=subnet.address_prefix),
                            subnet.name,
                        ),
                        [network_step],
                    )
                )

        for public_ip in services.public_ip_names:
            steps.append(
                Step(
                    f"public-ip:{public_ip}",
                    partial(self._ensure_public_ip, public_ip),
                    ["resource-group"],
                )
            )

        steps.append(Step("firewall-policy", self._ensure_firewall_policy, ["resource-group"]))
        steps.append(
            Step(
                "firewall",
                self._ensure_firewall,
                [
                    self._hub_subnet_step(SubnetRole.FIREWALL),
                    f"public-ip:{services.firewall_public_ip_name}",
                    "firewall-policy",
                ],
            )
        )
        if services.enable_vpn_gateway:
            steps.append(
                Step(
                    "vpn-gateway",
                    self._ensure_vpn_gateway,
                    [
                        self._hub_subnet_step(SubnetRole.GATEWAY),
                        f"public-ip:{services.vpn_gateway_public_ip_name}",
                    ],
                )
            )
        if services.enable_bastion:
            steps.append(
                Step(
                    "bastion",
                    self._ensure_bastion,
                    [
                        self._hub_subnet_step(SubnetRole.BASTION),
                        f"public-ip:{services.bastion_public_ip_name}",
                    ],
                )
            )

        hub_step = f"network:{config.hub.name}"
        for spoke in config.spokes:
            networks = [hub_step, f"network:{spoke.name}"]
            steps.append(
                Step(
                    f"peering:{hub_to_spoke_peering_name(spoke)}",
                    partial(
                        self._ensure_peering,
                        config.hub,
                        spoke,
                        hub_to_spoke_peering_name(spoke),
                        services.enable_vpn_gateway,
                    ),
                    networks,
                )
            )
            steps.append(
                Step(
                    f"peering:{spoke_to_hub_peering_name(spoke)}",
                    partial(
                        self._ensure_peering,
                        spoke,
                        config.hub,
                        spoke_to_hub_peering_name(spoke),
                        False,
                    ),
                    networks,
                )
            )
        return steps

    async def _ensure_resource_group(self) -> str:
        config = self._config
        result = await self._upserter.ensure(
            self._ref(ResourceKind.RESOURCE_GROUP, config.resource_group),
            ResourceGroupSpec(location=config.location, tags=MANAGED_BY_TAG),
        )
        return result.resource_id

    async def _ensure_network(self, network: NetworkConfig) -> str:
        result = await self._upserter.ensure(
            self._network_ref(network),
            VirtualNetworkSpec(
                location=self._config.location,
                address_prefixes=[network.address_prefix],
                tags={**MANAGED_BY_TAG, "role": network.role.value},
            ),
        )
        return result.resource_id

    async def _ensure_subnet(self, network: NetworkConfig, spec: SubnetSpec, name: str) -> str:
        result = await self._upserter.ensure(
            self._ref(ResourceKind.SUBNET, name, network.name), spec
        )
        return result.resource_id

    async def _ensure_public_ip(self, name: str) -> str:
        result = await self._upserter.ensure(
            self._ref(ResourceKind.PUBLIC_IP, name),
            PublicIpSpec(location=self._config.location, tags=MANAGED_BY_TAG),
        )
        return result.resource_id

    async def _ensure_firewall_policy(self) -> str:
        result = await self._upserter.ensure(
            self._ref(ResourceKind.FIREWALL_POLICY, self._config.services.firewall_policy_name),
            FirewallPolicySpec(location=self._config.location, tags=MANAGED_BY_TAG),
        )
        return result.resource_id

    async def _ensure_firewall(self) -> str:
        services = self._config.services
        result = await self._upserter.ensure(
            self._ref(ResourceKind.FIREWALL, services.firewall_name),
            FirewallSpec(
                location=self._config.location,
                tags=MANAGED_BY_TAG,
                policy_id=self._output("firewall-policy"),
                subnet_id=self._output(self._hub_subnet_step(SubnetRole.FIREWALL)),
                public_ip_id=self._output(f"public-ip:{services.firewall_public_ip_name}"),
                ip_configuration_name=services.firewall_ip_config_name,
                sku_name=services.firewall_sku_name,
                sku_tier=services.firewall_sku_tier,
            ),
        )
        return result.resource_id

    async def _ensure_vpn_gateway(self) -> str:
        services = self._config.services
        # Gateways take 30+ minutes; nothing here consumes their attributes
        result = await self._upserter.ensure(
            self._ref(ResourceKind.VPN_GATEWAY, services.vpn_gateway_name),
            VpnGatewaySpec(
                location=self._config.location,
                tags=MANAGED_BY_TAG,
                subnet_id=self._output(self._hub_subnet_step(SubnetRole.GATEWAY)),
                public_ip_id=self._output(f"public-ip:{services.vpn_gateway_public_ip_name}"),
                sku=services.vpn_gateway_sku,
            ),
            wait=False,
        )
        return result.resource_id

    async def _ensure_bastion(self) -> str:
        services = self._config.services
        result = await self._upserter.ensure(
            self._ref(ResourceKind.BASTION, services.bastion_name),
            BastionSpec(
                location=self._config.location,
                tags=MANAGED_BY_TAG,
                subnet_id=self._output(self._hub_subnet_step(SubnetRole.BASTION)),
                public_ip_id=self._output(f"public-ip:{services.bastion_public_ip_name}"),
                sku_name=services.bastion_sku,
            ),
            wait=False,
        )
        return result.resource_id

    async def _ensure_peering(
        self,
        local: NetworkConfig,
        remote: NetworkConfig,
        name: str,
        allow_gateway_transit: bool,
    ) -> str:
        result = await self._upserter.ensure(
            self._ref(ResourceKind.PEERING, name, local.name),
            PeeringSpec(
                remote_network_id=self._output(f"network:{remote.name}"),
                allow_gateway_transit=allow_gateway_transit,
            ),
        )
        return result.resource_id

    # -------------------------------------------------------------------------
    # Routing phase
    # -------------------------------------------------------------------------

    def _routing_steps(self) -> list[Step]:
        steps = [Step("firewall-private-ip", self._await_firewall_private_ip)]
        for spoke in self._config.inspected_spokes:
            table_step = f"route-table:{spoke.route_table_name}"
            route_step = f"route:{spoke.route_table_name}/{self._config.services.default_route_name}"
            steps.append(Step(table_step, partial(self._ensure_route_table, spoke)))
            steps.append(
                Step(
                    route_step,
                    partial(self._ensure_default_route, spoke),
                    ["firewall-private-ip", table_step],
                )
            )
            steps.append(
                Step(
                    f"subnet-route:{spoke.name}/{spoke.workload_subnet}",
                    partial(self._associate_route_table, spoke),
                    [table_step, route_step],
                )
            )
        return steps

    async def _await_firewall_private_ip(self) -> str:
        """Re-resolve the firewall IP; it may come from an earlier, separate run."""
        ref = self._ref(ResourceKind.FIREWALL, self._config.services.firewall_name)
        private_ip = await self._poller.wait_for(
            ref,
            FIREWALL_PRIVATE_IP_PATH,
            hints=firewall_hints(ref),
        )
        logger.info("Firewall private IP confirmed", extra={"private_ip": private_ip})
        self._result.firewall_private_ip = private_ip
        return private_ip

    def _default_route_spec(self) -> RouteSpec:
        # One spec for every spoke so coverage stays symmetric
        return RouteSpec(
            address_prefix=DEFAULT_ROUTE_PREFIX,
            next_hop_ip_address=self._output("firewall-private-ip"),
        )

    async def _ensure_route_table(self, spoke: NetworkConfig) -> str:
        result = await self._upserter.ensure(
            self._ref(ResourceKind.ROUTE_TABLE, spoke.route_table_name),
            RouteTableSpec(location=self._config.location, tags=MANAGED_BY_TAG),
        )
        return result.resource_id

    async def _ensure_default_route(self, spoke: NetworkConfig) -> str:
        result = await self._upserter.ensure(
            self._ref(
                ResourceKind.ROUTE,
                self._config.services.default_route_name,
                spoke.route_table_name,
            ),
            self._default_route_spec(),
        )
        return result.resource_id

    async def _associate_route_table(self, spoke: NetworkConfig) -> str:
        subnet = spoke.subnet_named(spoke.workload_subnet or "")
        if subnet is None:
            raise DependencyError(f"{spoke.name} has no workload subnet to route")
        return await self._ensure_subnet(
            spoke,
            SubnetSpec(
                address_prefix=subnet.address_prefix,
                route_table_id=self._output(f"route-table:{spoke.route_table_name}"),
            ),
            subnet.name,
        )

    # -------------------------------------------------------------------------
    # Database phase
    # -------------------------------------------------------------------------

    def _database_steps(self) -> list[Step]:
        config = self._config
        database_subnet = config.hub.subnet(SubnetRole.DATABASE)
        if database_subnet is None:
            raise DependencyError("Hub has no database subnet")
        subnet_step = self._subnet_step(config.hub, database_subnet)

        steps = [
            Step("network-ids", self._resolve_network_ids),
            Step(
                subnet_step,
                partial(
                    self._ensure_subnet,
                    config.hub,
                    SubnetSpec(
                        address_prefix=database_subnet.address_prefix,
                        private_endpoint_network_policies="Disabled",
                    ),
                    database_subnet.name,
                ),
            ),
            Step("sql-server-name", self._resolve_sql_server_name),
            Step("sql-server", self._ensure_sql_server, ["sql-server-name"]),
            Step("sql-database", self._ensure_sql_database, ["sql-server"]),
            Step("sql-server-id", self._resolve_sql_server_id, ["sql-server"]),
            Step("private-endpoint", self._ensure_private_endpoint, ["sql-server-id", subnet_step]),
            Step("private-dns-zone", self._ensure_private_dns_zone),
        ]

        link_steps = []
        for network in config.networks:
            if not network.resolve_private_dns:
                continue
            link_step = f"dns-link:{network.dns_link_name}"
            link_steps.append(link_step)
            steps.append(
                Step(
                    link_step,
                    partial(self._ensure_dns_link, network),
                    ["private-dns-zone", "network-ids"],
                )
            )

        steps.extend(
            [
                Step(
                    "dns-zone-group",
                    self._replace_dns_zone_group,
                    ["private-endpoint", "private-dns-zone", *link_steps],
                ),
                Step("dns-verification", self._verify_dns_records, ["dns-zone-group"]),
                Step(
                    "client-allow-list",
                    self._allow_local_client,
                    ["sql-server", "dns-verification"],
                ),
                Step(
                    "database-summary",
                    self._summarize_database,
                    ["private-endpoint", "client-allow-list"],
                ),
            ]
        )
        return steps

    def _sql_server_ref(self) -> ResourceRef:
        return self._ref(ResourceKind.SQL_SERVER, self._database.server_name)

    def _firewall_rule_ref(self) -> ResourceRef:
        return self._ref(
            ResourceKind.SQL_FIREWALL_RULE,
            self._database.firewall_rule_name,
            self._database.server_name,
        )

    def _private_endpoint_ref(self) -> ResourceRef:
        return self._ref(
            ResourceKind.PRIVATE_ENDPOINT, self._database.private_endpoint_name
        )

    def _dns_zone_ref(self) -> ResourceRef:
        return self._ref(ResourceKind.PRIVATE_DNS_ZONE, self._database.dns_zone_name)

    async def _resolve_network_ids(self) -> dict[str, str]:
        return {
            network.name: await self._probe.resolve_id(self._network_ref(network))
            for network in self._config.networks
        }

    async def _resolve_sql_server_name(self) -> str:
        """Adopt the server an earlier, unpinned run created instead of minting another."""
        database = self._config.database
        if database.reuse_managed_server:
            candidates = [
                name
                for name in await self._probe.find_tagged(
                    ResourceKind.SQL_SERVER, self._config.resource_group, MANAGED_BY_TAG
                )
                if name.startswith(f"{SQL_SERVER_NAME_PREFIX}-")
            ]
            if candidates:
                # Generated names end in a unix timestamp; the newest wins
                adopted = max(candidates, key=lambda name: (len(name), name))
                if len(candidates) > 1:
                    logger.warning(
                        "Several managed SQL servers found; adopting the newest",
                        extra={"servers": sorted(candidates), "adopted": adopted},
                    )
                logger.info(
                    "Reusing SQL server from an earlier run",
                    extra={"server": adopted, "generated": database.server_name},
                )
                self._database = replace(database, server_name=adopted)

        self._result.sql_server_name = self._database.server_name
        return self._database.server_name

    async def _ensure_sql_server(self) -> str:
        database = self._database
        # Checked in reconcile(); kept for type narrowing
        if self._admin_password is None:
            raise ValueError("The database phase needs an administrator password")
        result = await self._upserter.ensure(
            self._sql_server_ref(),
            SqlServerSpec(
                location=self._config.location,
                tags=MANAGED_BY_TAG,
                administrator_login=database.admin_user,
                administrator_login_password=self._admin_password,
            ),
        )
        return result.resource_id

    async def _ensure_sql_database(self) -> str:
        database = self._database
        result = await self._upserter.ensure(
            self._ref(ResourceKind.SQL_DATABASE, database.database_name, database.server_name),
            SqlDatabaseSpec(
                location=self._config.location,
                tags=MANAGED_BY_TAG,
                sku_name=database.database_sku,
                sku_tier=database.database_sku,
            ),
        )
        return result.resource_id

    async def _resolve_sql_server_id(self) -> str:
        # An empty target must never reach the private endpoint
        return await self._probe.resolve_id(self._sql_server_ref())

    async def _ensure_private_endpoint(self) -> str:
        config = self._config
        result = await self._upserter.ensure(
            self._private_endpoint_ref(),
            PrivateEndpointSpec(
                location=config.location,
                tags=MANAGED_BY_TAG,
                subnet_id=self._output(self._hub_subnet_step(SubnetRole.DATABASE)),
                private_link_service_id=self._output("sql-server-id"),
                connection_name=self._database.connection_name,
                group_ids=[self._database.group_id],
            ),
        )
        return result.resource_id

    async def _ensure_private_dns_zone(self) -> str:
        result = await self._upserter.ensure(
            self._dns_zone_ref(), PrivateDnsZoneSpec(tags=MANAGED_BY_TAG)
        )
        return result.resource_id

    async def _ensure_dns_link(self, network: NetworkConfig) -> str:
        result = await self._upserter.ensure(
            self._ref(
                ResourceKind.DNS_LINK, network.dns_link_name, self._database.dns_zone_name
            ),
            DnsLinkSpec(virtual_network_id=self._output("network-ids")[network.name]),
        )
        return result.resource_id

    async def _replace_dns_zone_group(self) -> str:
        database = self._database
        result = await self._upserter.ensure(
            self._ref(
                ResourceKind.DNS_ZONE_GROUP,
                database.zone_group_name,
                database.private_endpoint_name,
            ),
            DnsZoneGroupSpec(
                private_dns_zone_id=self._output("private-dns-zone"),
                config_name=database.zone_config_name,
            ),
        )
        return result.resource_id

    async def _verify_dns_records(self) -> int:
        """Count A records in the zone; zero is a warning, never a failure."""
        propagation = self._config.dns_propagation_seconds
        if propagation > 0:
            logger.info(f"Waiting {propagation}s for DNS propagation")
            await self._sleep(propagation)

        zone_ref = self._dns_zone_ref()
        try:
            record_sets = await self._probe.attribute(zone_ref, ZONE_RECORD_SETS_PATH)
        except ControlPlaneError as e:
            self._warn(TransientStepFailure("dns-verification", f"could not read record count: {e}"))
            return 0

        records = max(int(record_sets or 0) - ZONE_BASELINE_RECORD_SETS, 0)
        if records == 0:
            self._warn(
                TransientStepFailure(
                    "dns-verification",
                    f"No DNS records found in {zone_ref.name}. The private endpoint may "
                    f"not resolve correctly yet.",
                )
            )
        else:
            logger.info(
                "DNS records present",
                extra={"zone": zone_ref.name, "record_count": records},
            )
        return records

    def _revert_command(self) -> str:
        return (
            f"az sql server update -g {self._config.resource_group} "
            f"-n {self._database.server_name} --set publicNetworkAccess=Disabled"
        )

    async def _allow_local_client(self) -> str:
        """Open the SQL server to this machine's address only. Returns the address or ""."""
        if not self._config.allow_local_client:
            await self._report_lingering_exposure()
            return ""

        loop = asyncio.get_running_loop()
        address = await loop.run_in_executor(None, self._address_detector)
        if not address:
            self._warn(
                TransientStepFailure(
                    "client-allow-list",
                    "could not detect this machine's public IP; firewall rule skipped",
                )
            )
            return ""

        server_ref = self._sql_server_ref()
        if await self._probe.attribute(server_ref, SERVER_PUBLIC_ACCESS_PATH) != "Enabled":
            await self._upserter.patch(
                server_ref, {"properties": {"publicNetworkAccess": "Enabled"}}
            )
        await self._upserter.ensure(
            self._firewall_rule_ref(),
            SqlFirewallRuleSpec(start_ip_address=address, end_ip_address=address),
        )

        log_security_audit_event(
            event_type="exposure",
            target_resource=server_ref.label,
            action=f"allow {address}",
            result="applied",
        )
        logger.warning(
            "SQL server public access is enabled for this machine's address. This is a "
            "temporary relaxation of the zero-trust posture; revert it when done testing.",
            extra={"client_ip": address, "revert_command": self._revert_command()},
        )
        return address

    async def _report_lingering_exposure(self) -> None:
        """Warn when an earlier allow-list run left the server publicly reachable.

        Public access is never switched off automatically; the operator may
        still be relying on it.
        """
        server_ref = self._sql_server_ref()
        if await self._probe.attribute(server_ref, SERVER_PUBLIC_ACCESS_PATH) != "Enabled":
            logger.info("Local client allow-list disabled; SQL server public access is disabled")
            return

        rule_ref = self._firewall_rule_ref()
        detail = "public network access is still enabled"
        if await self._probe.exists(rule_ref):
            detail += f" and firewall rule {rule_ref.name} is still present"
        self._warn(
            TransientStepFailure(
                "client-allow-list",
                f"Local client allow-list is disabled but {server_ref.label}: {detail}. "
                f"Revert with: {self._revert_command()}",
            )
        )

    async def _endpoint_private_ip(self) -> str | None:
        # Azure moves the address to the zone group once one is attached
        private_ip = await self._probe.attribute(
            self._private_endpoint_ref(), ENDPOINT_PRIVATE_IP_PATH
        )
        if private_ip:
            return private_ip
        zone_group = self._ref(
            ResourceKind.DNS_ZONE_GROUP,
            self._database.zone_group_name,
            self._database.private_endpoint_name,
        )
        return await self._probe.attribute(zone_group, ZONE_GROUP_PRIVATE_IP_PATH)

    async def _summarize_database(self) -> DatabaseSummary:
        database = self._database
        private_ip = await self._endpoint_private_ip()
        allowed = self._outputs.get("client-allow-list") or None
        public_access = (
            await self._probe.attribute(self._sql_server_ref(), SERVER_PUBLIC_ACCESS_PATH)
            == "Enabled"
        )
        summary = DatabaseSummary(
            server_fqdn=database.server_fqdn,
            admin_user=database.admin_user,
            private_ip=private_ip,
            allowed_client_ip=allowed,
            public_access_enabled=public_access,
            revert_command=self._revert_command() if public_access else None,
        )
        self._result.database = summary
        logger.info(
            "Database ready",
            extra={
                "server_fqdn": summary.server_fqdn,
                "admin_user": summary.admin_user,
                "private_ip": summary.private_ip_display,
            },
        )
        return summary
