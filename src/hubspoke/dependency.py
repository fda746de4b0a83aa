"""Step dependency ordering and precondition checks.

This module implements:
1. Dependency graph construction from step declarations
2. Topological sorting for execution order
3. Cycle detection so a bad declaration fails before anything runs
4. Precondition checks for resources a phase needs but does not create

Steps declare the steps they consume via ``depends_on``. Among steps that
are ready at the same time, declaration order is kept, so the run reads in
the same order the topology is described.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .control_plane import ProvisioningError, ResourceRef
from .probe import ResourceProbe

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when a step graph is malformed."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


class PreconditionFailure(ProvisioningError):
    """Raised when a resource the run relies on, but does not create, is missing.

    Nothing has been mutated when this is raised.
    """

    def __init__(self, requirement: Requirement, purpose: str) -> None:
        self.requirement = requirement
        ref = requirement.ref
        super().__init__(
            f"{requirement.description} '{ref.name}' not found in resource group "
            f"'{ref.resource_group}'. {purpose} cannot proceed without it; "
            f"provision it first (run the hub phase) and retry."
        )


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of reconciliation steps."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    def add_node(self, name: str, depends_on: list[str] | None = None) -> None:
        """Add a step to the graph.

        Args:
            name: Step name.
            depends_on: Names of steps that must complete first.
        """
        if name in self.nodes:
            if depends_on:
                self.nodes[name].depends_on = depends_on
        else:
            self.nodes[name] = DependencyNode(name=name, depends_on=depends_on or [])

        # Ensure all dependencies have nodes (even if not yet defined)
        for dep in depends_on or []:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(name=dep)

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in in_degree:
                    in_degree[dep] += 1

        queue = [node for node, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1

            for dep in self.nodes[current].depends_on:
                if dep in in_degree:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        queue.append(dep)

        if processed != len(self.nodes):
            cycle_nodes = [node for node, degree in in_degree.items() if degree > 0]
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    def topological_sort(self) -> list[str]:
        """Return step names in dependency order (dependencies first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        position = {name: index for index, name in enumerate(self.nodes)}
        dependents: dict[str, list[str]] = {node: [] for node in self.nodes}
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in dependents:
                    dependents[dep].append(node.name)
                    in_degree[node.name] += 1

        # Kahn's algorithm
        result: list[str] = []
        queue = [node for node, degree in in_degree.items() if degree == 0]

        while queue:
            # Declaration order among ready steps
            queue.sort(key=position.__getitem__)
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def independent_groups(self) -> list[list[str]]:
        """Group steps into waves whose members do not depend on each other.

        Steps in the same wave could run concurrently; the reconciler runs
        them one after the other.
        """
        order = self.topological_sort()
        level: dict[str, int] = {}
        for name in order:
            deps = [d for d in self.nodes[name].depends_on if d in level]
            level[name] = 1 + max((level[d] for d in deps), default=-1)

        groups: list[list[str]] = []
        for name in order:
            while len(groups) <= level[name]:
                groups.append([])
            groups[level[name]].append(name)
        return groups


@dataclass(frozen=True)
class Requirement:
    """A resource that must already exist, with a human description."""

    ref: ResourceRef
    description: str


class PreconditionChecker:
    """Verifies required resources exist before any mutating step runs."""

    def __init__(self, probe: ResourceProbe) -> None:
        self._probe = probe

    async def verify(self, requirements: list[Requirement], purpose: str) -> None:
        """Probe each requirement in order and stop at the first missing one.

        Args:
            requirements: Resources the caller depends on.
            purpose: What is about to run, used in the error message.

        Raises:
            PreconditionFailure: A required resource does not exist.
            ControlPlaneError: The control plane could not be queried.
        """
        for requirement in requirements:
            if not await self._probe.exists(requirement.ref):
                logger.error(
                    "Precondition not met",
                    extra={
                        "resource": requirement.ref.label,
                        "resource_group": requirement.ref.resource_group,
                        "purpose": purpose,
                    },
                )
                raise PreconditionFailure(requirement, purpose)
            logger.info(
                "Precondition satisfied",
                extra={"resource": requirement.ref.label, "purpose": purpose},
            )
