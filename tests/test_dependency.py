"""Tests for step ordering and precondition checks."""

from __future__ import annotations

import pytest

from azure_mock import InMemoryControlPlane
from hubspoke.control_plane import ControlPlaneError, ResourceKind, ResourceRef
from hubspoke.dependency import (
    CyclicDependencyError,
    DependencyGraph,
    DependencyNode,
    PreconditionChecker,
    PreconditionFailure,
    Requirement,
)
from hubspoke.probe import ResolutionFailure, ResourceProbe

RG = "Hub-Spoke-Tokyo"


class TestDependencyNode:
    """Tests for DependencyNode dataclass."""

    def test_default_values(self) -> None:
        """Test default node values."""
        node = DependencyNode(name="firewall")
        assert node.name == "firewall"
        assert node.depends_on == []


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_add_node(self) -> None:
        """Test adding nodes."""
        graph = DependencyGraph()
        graph.add_node("firewall", ["firewall-policy"])

        assert "firewall" in graph.nodes
        assert "firewall-policy" in graph.nodes  # Auto-created
        assert graph.nodes["firewall"].depends_on == ["firewall-policy"]

    def test_validate_detects_cycle(self) -> None:
        """Test validation detects cycles."""
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        graph.add_node("b", ["c"])
        graph.add_node("c", ["a"])  # Cycle: a -> b -> c -> a

        with pytest.raises(CyclicDependencyError, match="Circular dependency"):
            graph.validate()

    def test_topological_sort(self) -> None:
        """Test dependencies come first."""
        graph = DependencyGraph()
        graph.add_node("route", ["firewall-private-ip", "route-table"])
        graph.add_node("route-table", [])
        graph.add_node("firewall-private-ip", [])
        graph.add_node("subnet-route", ["route", "route-table"])

        order = graph.topological_sort()

        assert order.index("firewall-private-ip") < order.index("route")
        assert order.index("route-table") < order.index("route")
        assert order.index("route") < order.index("subnet-route")

    def test_declaration_order_among_ready_steps(self) -> None:
        """Test independent steps keep the order they were declared in."""
        graph = DependencyGraph()
        for name in ["resource-group", "network:hub", "network:prod", "network:nonprod"]:
            graph.add_node(name, [] if name == "resource-group" else ["resource-group"])

        assert graph.topological_sort() == [
            "resource-group",
            "network:hub",
            "network:prod",
            "network:nonprod",
        ]

    def test_topological_sort_rejects_cycle(self) -> None:
        """Test sorting a cyclic graph fails before yielding anything."""
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        graph.add_node("b", ["a"])

        with pytest.raises(CyclicDependencyError):
            graph.topological_sort()

    def test_independent_groups(self) -> None:
        """Test steps are grouped into waves of mutually independent steps."""
        graph = DependencyGraph()
        graph.add_node("resource-group", [])
        graph.add_node("network:hub", ["resource-group"])
        graph.add_node("public-ip:pip-firewall", ["resource-group"])
        graph.add_node("subnet:hub/AzureFirewallSubnet", ["network:hub"])
        graph.add_node(
            "firewall", ["subnet:hub/AzureFirewallSubnet", "public-ip:pip-firewall"]
        )

        assert graph.independent_groups() == [
            ["resource-group"],
            ["network:hub", "public-ip:pip-firewall"],
            ["subnet:hub/AzureFirewallSubnet"],
            ["firewall"],
        ]


class TestPreconditionChecker:
    """Tests for PreconditionChecker."""

    @pytest.mark.asyncio
    async def test_all_present(self) -> None:
        """Test verification passes without mutating anything."""
        control_plane = InMemoryControlPlane()
        group = ResourceRef(ResourceKind.RESOURCE_GROUP, RG, RG)
        control_plane.seed(group)

        await PreconditionChecker(ResourceProbe(control_plane)).verify(
            [Requirement(group, "Resource group")], "The routing phase"
        )

        assert control_plane.mutations() == []

    @pytest.mark.asyncio
    async def test_missing_requirement_named(self) -> None:
        """Test the failure names the missing resource and what needs it."""
        control_plane = InMemoryControlPlane()
        group = ResourceRef(ResourceKind.RESOURCE_GROUP, RG, RG)
        control_plane.seed(group)
        hub = ResourceRef(ResourceKind.VIRTUAL_NETWORK, "vnet-hub-secure", RG)

        with pytest.raises(PreconditionFailure) as exc_info:
            await PreconditionChecker(ResourceProbe(control_plane)).verify(
                [Requirement(group, "Resource group"), Requirement(hub, "Hub VNet")],
                "The database phase",
            )

        message = str(exc_info.value)
        assert "Hub VNet 'vnet-hub-secure'" in message
        assert f"resource group '{RG}'" in message
        assert "The database phase" in message
        assert exc_info.value.requirement.ref == hub

    @pytest.mark.asyncio
    async def test_stops_at_first_missing(self) -> None:
        """Test later requirements are not probed after a miss."""
        control_plane = InMemoryControlPlane()
        group = ResourceRef(ResourceKind.RESOURCE_GROUP, RG, RG)
        hub = ResourceRef(ResourceKind.VIRTUAL_NETWORK, "vnet-hub-secure", RG)

        with pytest.raises(PreconditionFailure, match="Resource group"):
            await PreconditionChecker(ResourceProbe(control_plane)).verify(
                [Requirement(group, "Resource group"), Requirement(hub, "Hub VNet")],
                "The routing phase",
            )

        assert control_plane.count("exists") == 1

    @pytest.mark.asyncio
    async def test_lookup_error_is_not_missing(self) -> None:
        """Test a failing probe is reported as such, not as a missing resource."""
        control_plane = InMemoryControlPlane()
        control_plane.fail_on(
            "exists", ResourceKind.RESOURCE_GROUP, ControlPlaneError("unauthorized", 401)
        )
        group = ResourceRef(ResourceKind.RESOURCE_GROUP, RG, RG)

        with pytest.raises(ControlPlaneError, match="unauthorized"):
            await PreconditionChecker(ResourceProbe(control_plane)).verify(
                [Requirement(group, "Resource group")], "The routing phase"
            )


class TestResourceProbe:
    """Tests for ResourceProbe id resolution and tagged lookups."""

    @pytest.mark.asyncio
    async def test_resolve_id(self) -> None:
        """Test the id of an existing resource is returned."""
        control_plane = InMemoryControlPlane()
        server = ResourceRef(ResourceKind.SQL_SERVER, "sql-hub-server-test", RG)
        control_plane.seed(server)

        resource_id = await ResourceProbe(control_plane).resolve_id(server)

        assert resource_id.endswith("/providers/Microsoft.Sql/servers/sql-hub-server-test")

    @pytest.mark.asyncio
    async def test_resolve_missing(self) -> None:
        """Test a missing resource fails with a diagnostic command."""
        control_plane = InMemoryControlPlane()
        server = ResourceRef(ResourceKind.SQL_SERVER, "sql-hub-server-test", RG)

        with pytest.raises(ResolutionFailure) as exc_info:
            await ResourceProbe(control_plane).resolve_id(server)

        message = str(exc_info.value)
        assert "sql-hub-server-test" in message
        assert "az resource show" in message
        assert "Microsoft.Sql/servers" in message

    @pytest.mark.asyncio
    async def test_resolve_empty_id(self) -> None:
        """Test a document without an id is a resolution failure."""
        control_plane = InMemoryControlPlane()
        server = ResourceRef(ResourceKind.SQL_SERVER, "sql-hub-server-test", RG)
        control_plane.seed(server)["id"] = ""

        with pytest.raises(ResolutionFailure, match="empty id"):
            await ResourceProbe(control_plane).resolve_id(server)

    @pytest.mark.asyncio
    async def test_find_tagged(self) -> None:
        """Test only resources carrying every requested tag are returned."""
        control_plane = InMemoryControlPlane()
        control_plane.seed(
            ResourceRef(ResourceKind.SQL_SERVER, "sql-hub-server-1", RG),
            {"tags": {"managedBy": "hubspoke", "env": "test"}},
        )
        control_plane.seed(
            ResourceRef(ResourceKind.SQL_SERVER, "sql-other", RG), {"tags": {"managedBy": "bicep"}}
        )
        control_plane.seed(ResourceRef(ResourceKind.SQL_SERVER, "sql-untagged", RG))
        control_plane.seed(
            ResourceRef(ResourceKind.SQL_SERVER, "sql-elsewhere", "rg-other"),
            {"tags": {"managedBy": "hubspoke"}},
        )

        names = await ResourceProbe(control_plane).find_tagged(
            ResourceKind.SQL_SERVER, RG, {"managedBy": "hubspoke"}
        )

        assert names == ["sql-hub-server-1"]
