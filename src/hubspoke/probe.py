"""Resource existence and attribute probing.

Absent resources are an ordinary answer (False / None). Transport and
authorization failures surface as ControlPlaneError so that a flaky API call
is never read as "the resource does not exist".
"""

from __future__ import annotations

import logging
from typing import Any

from .control_plane import (
    KIND_INFO,
    ControlPlane,
    ProvisioningError,
    ResourceKind,
    ResourceRef,
    read_path,
)

logger = logging.getLogger(__name__)


class ResolutionFailure(ProvisioningError):
    """Raised when an identifier needed by a later step cannot be obtained."""

    def __init__(self, ref: ResourceRef, detail: str) -> None:
        self.ref = ref
        super().__init__(
            f"Could not resolve the id of {ref.label} in resource group "
            f"'{ref.resource_group}': {detail}. "
            f"Inspect it with: az resource show -g {ref.resource_group} "
            f"-n {'/'.join((*ref.parents, ref.name))} --resource-type {_cli_type(ref)}"
        )


def _cli_type(ref: ResourceRef) -> str:
    return "/".join(KIND_INFO[ref.kind].type_path) or "resourceGroups"


class ResourceProbe:
    """Read-only view of the control plane."""

    def __init__(self, control_plane: ControlPlane) -> None:
        self._control_plane = control_plane

    async def exists(self, ref: ResourceRef) -> bool:
        found = await self._control_plane.exists(ref)
        logger.debug("Probed existence", extra={"resource": ref.label, "exists": found})
        return found

    async def attribute(self, ref: ResourceRef, path: str) -> Any:
        """Return the value at ``path`` or None when the resource or value is absent."""
        return read_path(await self._control_plane.get(ref), path)

    async def find_tagged(
        self, kind: ResourceKind, resource_group: str, tags: dict[str, str]
    ) -> list[str]:
        """Names of ``kind`` resources in the group that carry every tag in ``tags``."""
        names = [
            document["name"]
            for document in await self._control_plane.list_resources(kind, resource_group)
            if tags.items() <= (document.get("tags") or {}).items()
        ]
        logger.debug(
            "Listed tagged resources",
            extra={"kind": kind.value, "resource_group": resource_group, "found": names},
        )
        return names

    async def resolve_id(self, ref: ResourceRef) -> str:
        """Return the ARM id of an existing resource.

        Raises:
            ResolutionFailure: The resource is missing or reports no id.
        """
        document = await self._control_plane.get(ref)
        if document is None:
            raise ResolutionFailure(ref, "resource does not exist")
        resource_id = document.get("id")
        if not resource_id:
            raise ResolutionFailure(ref, "resource reported an empty id")
        logger.info("Resolved resource id", extra={"resource": ref.label, "resource_id": resource_id})
        return resource_id
