"""Best-effort, idempotent teardown of an integration.

Order: bindings -> replicated roles -> credential -> identity. Every step
runs even if an earlier one failed, and every step treats "already absent"
as success, so tearing down twice is safe. Origin roles are never deleted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .bindings import BindingReconciler
from .credentials import CredentialRotator
from .provider import ProviderCaller, ProviderError, ServiceAccount
from .replication import ReplicationMap, RoleReplicator
from .retry import RetryExhaustedError
from .scopes import ScopeQuery, ScopeResolutionError, ScopeResolver
from .security import log_security_audit_event

logger = logging.getLogger(__name__)


@dataclass
class TeardownTarget:
    """Everything teardown needs, reconstructed from the persisted record."""

    identity: ServiceAccount
    query: ScopeQuery
    role_refs: list[str] = field(default_factory=list)
    known_scopes: list[str] = field(default_factory=list)
    key_name: str | None = None


@dataclass
class TeardownReport:
    """What teardown did; errors are collected, never raised."""

    scopes: list[str] = field(default_factory=list)
    discovery_fell_back: bool = False
    binding_failures: list[tuple[str, str]] = field(default_factory=list)
    replicas_deleted: list[str] = field(default_factory=list)
    replica_failures: list[str] = field(default_factory=list)
    credential_deleted: bool = False
    identity_deleted: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.errors and not self.binding_failures and not self.replica_failures


class TeardownCoordinator:
    """Removes everything one integration created."""

    def __init__(
        self,
        caller: ProviderCaller,
        resolver: ScopeResolver,
        replicator: RoleReplicator,
        bindings: BindingReconciler,
        rotator: CredentialRotator,
    ) -> None:
        self._caller = caller
        self._resolver = resolver
        self._replicator = replicator
        self._bindings = bindings
        self._rotator = rotator

    async def teardown(self, target: TeardownTarget) -> TeardownReport:
        """Run every teardown step, collecting failures in the report."""
        report = TeardownReport()
        report.scopes = await self._current_scopes(target, report)

        # 1. Bindings, using replica names in non-origin scopes
        replication_map = ReplicationMap.derive(target.role_refs, report.scopes)
        for scope_id in report.scopes:
            result = await self._bindings.remove(
                scope_id, target.identity.member, target.role_refs, replication_map
            )
            report.binding_failures.extend((scope_id, role) for role in result.failed)

        # 2. Replicated roles (never the origin)
        deleted, failed = await self._replicator.delete_replicas(target.role_refs, report.scopes)
        report.replicas_deleted = deleted
        report.replica_failures = failed

        # 3. Credential
        if target.key_name:
            try:
                report.credential_deleted = await self._rotator.delete(target.key_name)
            except ProviderError as e:
                logger.warning("Failed to delete key", extra={"error": str(e)})
                report.errors.append(f"delete key: {e}")

        # 4. Identity; provider keeps it soft-deleted for 30 days, no purge wait
        try:
            await self._caller.call("delete_service_account", target.identity.name)
            report.identity_deleted = True
            log_security_audit_event(
                event_type="identity",
                target_resource=target.identity.email,
                action="delete",
                result="success",
            )
        except ProviderError as e:
            if e.not_found:
                logger.warning(
                    "Service account already deleted or in soft-delete period",
                    extra={"service_account": target.identity.email},
                )
            else:
                logger.warning(
                    "Failed to delete service account",
                    extra={"service_account": target.identity.email, "error": str(e)},
                )
                report.errors.append(f"delete service account: {e}")

        logger.info(
            "Teardown finished",
            extra={
                "service_account": target.identity.email,
                "scope_count": len(report.scopes),
                "replicas_deleted": len(report.replicas_deleted),
                "complete": report.complete,
            },
        )
        return report

    async def _current_scopes(self, target: TeardownTarget, report: TeardownReport) -> list[str]:
        """Rediscovered scopes plus last-known ones; last-known only if discovery fails.

        Discovery may fail precisely because resources are being deleted
        concurrently.
        """
        try:
            scope_set = await self._resolver.resolve(target.query)
        except (ProviderError, RetryExhaustedError, ScopeResolutionError) as e:
            logger.warning(
                "Failed to rediscover target scopes, falling back to last-known set",
                extra={"error": str(e), "known_scopes": target.known_scopes},
            )
            report.discovery_fell_back = True
            return list(target.known_scopes)

        scopes = scope_set.ids
        scopes.extend(s for s in target.known_scopes if s not in scope_set)
        return scopes
