"""Replication of scope-bound custom roles into target scopes.

A custom role defined in one project cannot be bound in another project. For
every scope-bound role and every target scope other than the role's origin,
a structurally identical copy (title, description, permissions, stage) is
created as projects/{target}/roles/{role_id}. Organization-level and
predefined roles are valid everywhere and are never replicated.

The resulting ReplicationMap says, per target scope, which role reference is
authoritative. A missing entry means "not replicated": bindings for that
(role, scope) pair are skipped, never reported as bound.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .config import REPLICATED_ROLE_DESCRIPTION_SUFFIX
from .provider import (
    PARENT_TYPE_PROJECT,
    ProviderCaller,
    ProviderError,
    RoleDefinition,
    is_custom_role,
    is_scope_bound,
    parse_role_name,
    project_role_name,
)
from .provisioner import IdempotentProvisioner, ProvisioningError, ResourceKind, RoleSpec
from .retry import RetryExhaustedError

logger = logging.getLogger(__name__)


class MissingRoleError(Exception):
    """Raised when a configured custom role does not exist."""

    pass


def origin_of(role_ref: str) -> str | None:
    """Origin scope of a scope-bound role reference, None otherwise."""
    container_type, container_id, _ = parse_role_name(role_ref)
    return container_id if container_type == PARENT_TYPE_PROJECT else None


@dataclass
class ReplicationMap:
    """target_scope -> (origin role reference -> replica role reference)."""

    entries: dict[str, dict[str, str]] = field(default_factory=dict)

    def record(self, target_scope: str, origin_ref: str, replica_ref: str) -> None:
        self.entries.setdefault(target_scope, {})[origin_ref] = replica_ref

    def replica_for(self, target_scope: str, origin_ref: str) -> str | None:
        return self.entries.get(target_scope, {}).get(origin_ref)

    def is_bindable(self, target_scope: str, role_ref: str) -> bool:
        """Whether a scope-correct reference exists for this scope."""
        if not is_scope_bound(role_ref) or origin_of(role_ref) == target_scope:
            return True
        return self.replica_for(target_scope, role_ref) is not None

    def resolve(self, target_scope: str, role_ref: str) -> str:
        """Scope-correct role reference, falling back to the raw reference."""
        if not is_scope_bound(role_ref) or origin_of(role_ref) == target_scope:
            return role_ref
        return self.replica_for(target_scope, role_ref) or role_ref

    def replicas(self) -> list[tuple[str, str, str]]:
        """All (target_scope, origin_ref, replica_ref) entries."""
        return [
            (scope, origin, replica)
            for scope, mapping in self.entries.items()
            for origin, replica in mapping.items()
        ]

    def __len__(self) -> int:
        return sum(len(m) for m in self.entries.values())

    @classmethod
    def derive(cls, role_refs: list[str], scope_ids: list[str]) -> ReplicationMap:
        """Reconstruct the expected map from a persisted record.

        Replicas are deterministic (same role id in the target project), so
        the map can be rebuilt without provider calls.
        """
        mapping = cls()
        for role_ref in role_refs:
            origin = origin_of(role_ref) if is_scope_bound(role_ref) else None
            if origin is None:
                continue
            role_id = parse_role_name(role_ref)[2]
            for scope_id in scope_ids:
                if scope_id != origin:
                    mapping.record(scope_id, role_ref, project_role_name(scope_id, role_id))
        return mapping


@dataclass
class ReplicationReport:
    """Outcome of replicating a set of roles into a set of scopes."""

    replication_map: ReplicationMap = field(default_factory=ReplicationMap)
    created: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)


class RoleReplicator:
    """Ensures scope-bound roles exist in every target scope."""

    def __init__(self, caller: ProviderCaller, provisioner: IdempotentProvisioner) -> None:
        self._caller = caller
        self._provisioner = provisioner

    async def load_roles(self, role_refs: list[str]) -> dict[str, RoleDefinition | None]:
        """Fetch configured role definitions, validating custom roles exist.

        Returns:
            Mapping of role reference to its definition. Predefined roles whose
            lookup failed map to None.

        Raises:
            MissingRoleError: A custom role does not exist.
            ProviderError: A scope-bound role could not be read.
        """
        definitions: dict[str, RoleDefinition | None] = {}
        for role_ref in role_refs:
            try:
                definition: RoleDefinition = await self._caller.call("get_role", role_ref)
            except ProviderError as e:
                if is_custom_role(role_ref) and e.not_found:
                    raise MissingRoleError(f"Custom role {role_ref} not found") from e
                if is_scope_bound(role_ref):
                    raise
                logger.warning(
                    "Could not read role definition",
                    extra={"role": role_ref, "error": str(e)},
                )
                definitions[role_ref] = None
                continue
            if definition.deleted and is_custom_role(role_ref):
                raise MissingRoleError(f"Custom role {role_ref} is deleted")
            # Map keys are the configured references, not the provider's echo
            definition.name = role_ref
            definitions[role_ref] = definition
        return definitions

    async def ensure_replica(
        self,
        role_def: RoleDefinition,
        target_scope: str,
        report: ReplicationReport | None = None,
    ) -> str:
        """Role reference to bind in target_scope, replicating when needed.

        Organization-wide roles, and scope-bound roles asked for in their own
        origin scope, come back unchanged. Otherwise a replica with the same
        role id is reconciled or created in target_scope and, when a report
        is given, recorded in its map.

        Raises:
            ProviderError, ProvisioningError, RetryExhaustedError: Replication failed.
        """
        if not role_def.is_scope_bound or target_scope == role_def.origin_scope:
            return role_def.name

        replica_ref, created = await self._replicate_into(role_def, target_scope)
        if report is not None:
            report.replication_map.record(target_scope, role_def.name, replica_ref)
            if created:
                report.created.append(replica_ref)
        return replica_ref

    async def replicate(
        self,
        role_defs: list[RoleDefinition],
        scope_ids: list[str],
    ) -> ReplicationReport:
        """Replicate every scope-bound role into every non-origin scope.

        Failures for one scope are logged and skipped; they never abort
        replication for other scopes.
        """
        report = ReplicationReport()
        for role_def in role_defs:
            if not role_def.is_scope_bound:
                continue
            for scope_id in scope_ids:
                if scope_id == role_def.origin_scope:
                    continue
                try:
                    await self.ensure_replica(role_def, scope_id, report)
                except (ProviderError, ProvisioningError, RetryExhaustedError) as e:
                    logger.warning(
                        "Failed to replicate role, skipping scope",
                        extra={"role": role_def.name, "scope": scope_id, "error": str(e)},
                    )
                    report.failed.append((scope_id, role_def.name))

        logger.info(
            "Role replication complete",
            extra={
                "replica_count": len(report.replication_map),
                "created_count": len(report.created),
                "failed_count": len(report.failed),
            },
        )
        return report

    async def delete_replicas(
        self, role_refs: list[str], scope_ids: list[str]
    ) -> tuple[list[str], list[str]]:
        """Delete replicas of scope-bound roles in non-origin scopes.

        The origin role is never touched. Already-absent replicas count as
        deleted.

        Returns:
            Tuple of (deleted replica names, replica names that failed).
        """
        deleted: list[str] = []
        failed: list[str] = []
        for _, _, replica_ref in ReplicationMap.derive(role_refs, scope_ids).replicas():
            try:
                await self._caller.call("delete_role", replica_ref)
                deleted.append(replica_ref)
            except ProviderError as e:
                if e.not_found:
                    deleted.append(replica_ref)
                    continue
                logger.warning(
                    "Failed to delete replicated role",
                    extra={"role": replica_ref, "error": str(e)},
                )
                failed.append(replica_ref)
        return deleted, failed

    async def _replicate_into(
        self, role_def: RoleDefinition, target_scope: str
    ) -> tuple[str, bool]:
        desired = RoleSpec(
            scope_id=target_scope,
            role_id=role_def.role_id,
            title=role_def.title,
            description=role_def.description + REPLICATED_ROLE_DESCRIPTION_SUFFIX,
            permissions=tuple(role_def.permissions),
            stage=role_def.stage,
        )

        try:
            existing: RoleDefinition = await self._caller.call("get_role", desired.name)
        except ProviderError as e:
            if not e.not_found:
                raise
        else:
            replica = await self._provisioner.reconcile_role(existing, desired)
            logger.debug(
                "Replica already present",
                extra={"role": role_def.name, "replica": replica.name},
            )
            return desired.name, False

        outcome = await self._provisioner.provision_named(ResourceKind.ROLE, desired)
        logger.info(
            "Replicated role",
            extra={
                "role": role_def.name,
                "replica": desired.name,
                "scope": target_scope,
                "adopted": outcome.adopted,
            },
        )
        return desired.name, not outcome.adopted
