"""Target scope discovery.

Turns a central-management anchor project into the ordered set of projects
that should receive role bindings:

1. Walk the anchor's ancestry to its enclosing folder or organization.
2. Recursively enumerate sub-folders (active only).
3. List active projects under every container, paging through all results.
4. Drop free-trial projects (when requested) and explicitly excluded ones.

Any listing error is fatal here: binding creation must not proceed from a
partial membership set. Teardown decides separately whether to fall back to
the last-known set.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

from .models import DiscoveryMode, IntegrationSpec
from .provider import (
    LIFECYCLE_STATE_ACTIVE,
    PARENT_TYPE_FOLDER,
    PARENT_TYPE_ORGANIZATION,
    Project,
    ProviderCaller,
    ProviderError,
)

logger = logging.getLogger(__name__)


class ScopeResolutionError(Exception):
    """Raised when the anchor has no enclosing container of the requested kind."""

    pass


@dataclass(frozen=True)
class ScopeQuery:
    """Discovery inputs, independent of how they were configured."""

    service_project: str
    mode: DiscoveryMode = DiscoveryMode.SINGLE
    anchor: str | None = None
    exclude_scopes: frozenset[str] = frozenset()
    exclude_free_trial: bool = True

    @classmethod
    def from_spec(cls, spec: IntegrationSpec, service_project: str) -> ScopeQuery:
        return cls(
            service_project=service_project,
            mode=spec.discovery_mode,
            anchor=spec.anchor_project,
            exclude_scopes=frozenset(spec.exclude_projects),
            exclude_free_trial=spec.exclude_free_trial_projects,
        )


@dataclass(frozen=True)
class ScopeInfo:
    """One target scope and the attributes exclusion predicates look at."""

    scope_id: str
    number: str = ""
    free_trial: bool = False


@dataclass
class ScopeSet:
    """Ordered, duplicate-free set of target scopes."""

    scopes: list[ScopeInfo] = field(default_factory=list)
    anchor: str | None = None

    @property
    def ids(self) -> list[str]:
        return [s.scope_id for s in self.scopes]

    def number_for(self, scope_id: str) -> str:
        for scope in self.scopes:
            if scope.scope_id == scope_id:
                return scope.number
        return ""

    def __contains__(self, scope_id: object) -> bool:
        return any(s.scope_id == scope_id for s in self.scopes)

    def __iter__(self) -> Iterator[ScopeInfo]:
        return iter(self.scopes)

    def __len__(self) -> int:
        return len(self.scopes)


class ScopeResolver:
    """Resolves a ScopeQuery into a ScopeSet using live hierarchy queries."""

    def __init__(self, caller: ProviderCaller) -> None:
        self._caller = caller

    async def resolve(self, query: ScopeQuery) -> ScopeSet:
        """Compute the current target scope set.

        The anchor is always a member unless it is explicitly excluded. It is
        exempt from the free-trial filter.

        Raises:
            ProviderError: If ancestry or any listing call fails.
            ScopeResolutionError: If the anchor has no enclosing container.
        """
        # Exclusions only apply to discovered sets
        if query.mode == DiscoveryMode.SINGLE or not query.anchor:
            return ScopeSet(scopes=[ScopeInfo(query.service_project)], anchor=None)

        container_type, container_id = await self._find_container(query.anchor, query.mode)

        if container_type == PARENT_TYPE_FOLDER:
            folder_ids = await self._discover_folders(f"folders/{container_id}")
            folder_ids.insert(0, container_id)
            projects = await self._list_projects_in_folders(folder_ids)
        else:
            # Organization: every folder, plus projects directly under the org
            folder_ids = await self._discover_folders(f"organizations/{container_id}")
            projects = await self._list_projects_in_folders(folder_ids)
            projects.extend(
                await self._caller.call("list_projects", PARENT_TYPE_ORGANIZATION, container_id)
            )

        logger.debug(
            "Discovered container contents",
            extra={
                "container_type": container_type,
                "container_id": container_id,
                "folder_count": len(folder_ids),
                "project_count": len(projects),
            },
        )

        scope_set = self._filter(projects, query)
        logger.info(
            "Resolved target scopes",
            extra={
                "anchor": query.anchor,
                "mode": query.mode.value,
                "scope_count": len(scope_set),
                "scopes": scope_set.ids,
            },
        )
        return scope_set

    async def resolve_numbers(self, scope_set: ScopeSet, scope_ids: list[str]) -> list[str]:
        """Project numbers parallel to scope_ids.

        Numbers already known from listing are reused; the rest are fetched.
        A lookup failure yields "" and a warning rather than an error.
        """
        numbers: list[str] = []
        for scope_id in scope_ids:
            number = scope_set.number_for(scope_id)
            if not number:
                try:
                    project: Project = await self._caller.call("get_project", scope_id)
                    number = project.project_number
                except ProviderError as e:
                    logger.warning(
                        "Failed to get project number",
                        extra={"scope": scope_id, "error": str(e)},
                    )
                    number = ""
            numbers.append(number)
        return numbers

    async def _find_container(self, anchor: str, mode: DiscoveryMode) -> tuple[str, str]:
        wanted = PARENT_TYPE_FOLDER if mode == DiscoveryMode.FOLDER else PARENT_TYPE_ORGANIZATION
        ancestry: list[tuple[str, str]] = await self._caller.call("get_ancestry", anchor)
        for node_type, node_id in ancestry:
            if node_type == wanted:
                return node_type, node_id
        raise ScopeResolutionError(f"No {wanted} found in ancestry of project {anchor}")

    async def _discover_folders(self, parent: str) -> list[str]:
        """All active folder ids below parent, depth-first, parent excluded."""
        discovered: list[str] = []
        for folder_id in await self._caller.call("list_folders", parent):
            discovered.append(folder_id)
            discovered.extend(await self._discover_folders(f"folders/{folder_id}"))
        return discovered

    async def _list_projects_in_folders(self, folder_ids: list[str]) -> list[Project]:
        projects: list[Project] = []
        for folder_id in folder_ids:
            projects.extend(await self._caller.call("list_projects", PARENT_TYPE_FOLDER, folder_id))
        return projects

    def _filter(self, projects: list[Project], query: ScopeQuery) -> ScopeSet:
        scopes: list[ScopeInfo] = []
        seen: set[str] = set()
        anchor_info: ScopeInfo | None = None

        for project in projects:
            if project.project_id in seen or project.lifecycle_state != LIFECYCLE_STATE_ACTIVE:
                continue
            seen.add(project.project_id)
            info = ScopeInfo(project.project_id, project.project_number, project.is_free_trial)

            if project.project_id == query.anchor:
                anchor_info = info
            elif query.exclude_free_trial and info.free_trial:
                logger.debug("Excluding free trial project", extra={"scope": info.scope_id})
                continue
            scopes.append(info)

        if anchor_info is None and query.anchor:
            scopes.insert(0, ScopeInfo(query.anchor))

        scopes = [s for s in scopes if s.scope_id not in query.exclude_scopes]
        return ScopeSet(scopes=scopes, anchor=query.anchor)
