"""Create / Read / Update / Delete entry points for one integration.

This module implements the reconciliation recipe for one identity + role +
binding bundle across a dynamically discovered set of projects:

1. Provision the identity (create or adopt), wait for propagation
2. Resolve target scopes, replicate scope-bound roles into them
3. Bind the identity in every scope
4. Ensure a keyed credential
5. On later invocations: verify bindings (read), apply deltas (update),
   rotate on token change, and tear everything down (delete)

Create is driven by the lifecycle state machine. The state reached is
written to the record, so a create that fails midway resumes from there.

Entry points never raise for provider failures: they return a
ReconcileResult with `error` set and the record reflecting what actually
happened. Configuration errors raise immediately.

SECURITY: Every provider call carries a timeout and every operation runs
under an overall deadline.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from .bindings import BindingReconciler
from .config import ConfigurationError, EngineConfig
from .credentials import CredentialRotator
from .lifecycle import (
    IntegrationLifecycle,
    IntegrationState,
    InvalidTransitionError,
    next_create_state,
)
from .models import IntegrationRecord, IntegrationSpec
from .provenance import OperationProvenance, ProvenanceLogger
from .provider import (
    ProviderCaller,
    ProviderClient,
    ProviderError,
    RoleDefinition,
    ServiceAccount,
    is_custom_role,
    service_account_email,
)
from .provisioner import (
    IdempotentProvisioner,
    ProvisioningError,
    ResourceKind,
    ServiceAccountSpec,
)
from .replication import MissingRoleError, ReplicationMap, RoleReplicator
from .retry import RetryExecutor, RetryExhaustedError
from .scopes import ScopeQuery, ScopeResolutionError, ScopeResolver, ScopeSet
from .teardown import TeardownCoordinator, TeardownReport, TeardownTarget

logger = logging.getLogger(__name__)

# Failures that abort an operation and are reported through the result
OPERATION_ERRORS: tuple[type[Exception], ...] = (
    ProviderError,
    RetryExhaustedError,
    ProvisioningError,
    MissingRoleError,
    ScopeResolutionError,
    InvalidTransitionError,
    TimeoutError,
)


class Operation(str, Enum):
    """Engine entry points."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class ReplacementRequiredError(ConfigurationError):
    """Raised when an update changes a field that cannot change in place."""

    def __init__(self, fields: list[str]) -> None:
        super().__init__(f"Changing {', '.join(fields)} requires replacement")
        self.fields = fields


@dataclass
class ReconcileResult:
    """Result of one engine invocation."""

    operation: Operation
    record: IntegrationRecord | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    adopted: bool = False
    drift_detected: bool = False
    removed: bool = False  # Read: identity no longer exists upstream
    key_rotated: bool = False
    replicas_created: list[str] = field(default_factory=list)
    failed_scopes: list[str] = field(default_factory=list)
    teardown: TeardownReport | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the operation succeeded."""
        return self.error is None


@dataclass
class _CreateContext:
    """In-memory state carried between create steps.

    Anything missing (after a resume) is recomputed by the step needing it.
    """

    spec: IntegrationSpec
    record: IntegrationRecord
    lifecycle: IntegrationLifecycle
    resuming: bool = False
    identity: ServiceAccount | None = None
    role_defs: dict[str, RoleDefinition | None] | None = None
    scope_set: ScopeSet | None = None
    replication_map: ReplicationMap | None = None


class IntegrationReconciler:
    """Reconciliation engine for one cross-scope identity integration.

    The provider client is injected so the engine runs against fakes in tests.
    """

    def __init__(self, client: ProviderClient, config: EngineConfig) -> None:
        """Wire the engine components.

        Args:
            client: Control-plane client (real or fake).
            config: Validated engine configuration.
        """
        self._config = config
        self._caller = ProviderCaller(client, config.call_timeout_seconds)

        provision_retry = RetryExecutor(
            max_attempts=config.retry_max_attempts,
            base_delay_seconds=config.retry_base_delay_seconds,
        )
        policy_retry = RetryExecutor(
            max_attempts=config.iam_policy_max_retries,
            base_delay_seconds=config.iam_policy_retry_initial_wait_seconds,
            max_delay_seconds=config.iam_policy_retry_max_wait_seconds,
            delay_first_attempt=False,
        )

        self._resolver = ScopeResolver(self._caller)
        self._provisioner = IdempotentProvisioner(self._caller, provision_retry)
        self._replicator = RoleReplicator(self._caller, self._provisioner)
        self._bindings = BindingReconciler(self._caller, policy_retry)
        self._rotator = CredentialRotator(self._caller, provision_retry)
        self._teardown = TeardownCoordinator(
            self._caller, self._resolver, self._replicator, self._bindings, self._rotator
        )
        self._provenance = ProvenanceLogger(enabled=config.enable_audit_logging)

    @property
    def config(self) -> EngineConfig:
        return self._config

    # =========================================================================
    # Create
    # =========================================================================

    async def create(
        self,
        spec: IntegrationSpec,
        resume: IntegrationRecord | None = None,
    ) -> ReconcileResult:
        """Provision the integration, or resume a partially created one.

        Args:
            spec: Desired state.
            resume: Persisted record of an earlier, incomplete create.

        Returns:
            ReconcileResult whose record holds the state reached.

        Raises:
            ConfigurationError: If the spec cannot be resolved to a project,
                or a resumed record disagrees on immutable fields.
        """
        project_id = spec.resolve_project_id(self._config.default_project_id)

        if resume is not None:
            changed = resume.changed_replacement_fields(spec, self._config.default_project_id)
            if changed:
                raise ReplacementRequiredError(changed)
            record = resume.model_copy(deep=True)
            record.apply_spec(spec)
        else:
            record = IntegrationRecord.from_spec(spec, project_id)

        ctx = _CreateContext(
            spec=spec,
            record=record,
            lifecycle=IntegrationLifecycle(record.state),
            resuming=resume is not None,
        )
        result = ReconcileResult(operation=Operation.CREATE, record=record)
        provenance = self._provenance.create_provenance(Operation.CREATE.value, project_id)

        logger.info(
            "Starting create",
            extra={
                "project_id": project_id,
                "account_id": spec.account_id,
                "discovery_mode": spec.discovery_mode.value,
                "resume_from": record.state.value if ctx.resuming else None,
            },
        )

        try:
            async with asyncio.timeout(self._config.operation_timeout_seconds):
                await self._run_create_steps(ctx, result)
        except OPERATION_ERRORS as e:
            logger.error(
                "Create failed",
                extra={
                    "state": ctx.lifecycle.state.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            result.error = e
        finally:
            record.state = ctx.lifecycle.state

        self._finish(provenance, result)
        return result

    async def _run_create_steps(self, ctx: _CreateContext, result: ReconcileResult) -> None:
        for step in ctx.lifecycle.remaining_create_steps():
            match step:
                case IntegrationState.PROVISIONING:
                    await self._provision_identity(ctx, result)
                case IntegrationState.REPLICATING:
                    await self._replicate_roles(ctx, result)
                case IntegrationState.BINDING:
                    await self._bind_scopes(ctx, result)
                case IntegrationState.KEYED:
                    await self._ensure_key(ctx)
            ctx.lifecycle.advance(next_create_state(step))
            ctx.record.state = ctx.lifecycle.state

        logger.info(
            "Create complete",
            extra={
                "service_account": ctx.record.service_account_email,
                "bound_projects": ctx.record.bound_projects,
                "failed_scopes": result.failed_scopes,
            },
        )

    async def _provision_identity(self, ctx: _CreateContext, result: ReconcileResult) -> None:
        record = ctx.record
        desired = ServiceAccountSpec(
            project_id=record.project_id,
            account_id=record.account_id,
            display_name=record.display_name,
            description=record.description,
        )
        # Adopt on resume only an identity this engine already recorded
        adopt = record.create_ignore_already_exists or (
            ctx.resuming and record.service_account_email is not None
        )
        outcome = await self._provisioner.provision_named(
            ResourceKind.SERVICE_ACCOUNT, desired, adopt=adopt
        )
        ctx.identity = outcome.handle
        record.set_identity(outcome.handle)
        result.adopted = outcome.adopted

        # Fixed wait: a new identity is not immediately usable in policies
        if self._config.propagation_wait_seconds > 0:
            logger.debug(
                "Waiting for identity propagation",
                extra={"seconds": self._config.propagation_wait_seconds},
            )
            await asyncio.sleep(self._config.propagation_wait_seconds)

    async def _replicate_roles(self, ctx: _CreateContext, result: ReconcileResult) -> None:
        record = ctx.record
        ctx.role_defs = await self._replicator.load_roles(record.roles)
        ctx.scope_set = await self._resolver.resolve(ScopeQuery.from_spec(record, record.project_id))

        scope_bound = [d for d in ctx.role_defs.values() if d is not None and d.is_scope_bound]
        report = await self._replicator.replicate(scope_bound, ctx.scope_set.ids)
        ctx.replication_map = report.replication_map
        result.replicas_created.extend(report.created)

    async def _bind_scopes(self, ctx: _CreateContext, result: ReconcileResult) -> None:
        if ctx.scope_set is None or ctx.replication_map is None:
            await self._replicate_roles(ctx, result)
        scope_set = ctx.scope_set
        replication_map = ctx.replication_map
        if scope_set is None or replication_map is None:
            raise InvalidTransitionError("Roles must be replicated before binding")

        record = ctx.record
        identity = self._require_identity(ctx)

        bound: list[str] = []
        for scope_id in scope_set.ids:
            scope_result = await self._bindings.apply(
                scope_id, identity.member, record.roles, replication_map
            )
            if scope_result.complete:
                bound.append(scope_id)
            else:
                result.failed_scopes.append(scope_id)

        if result.failed_scopes:
            logger.warning(
                "Bindings incomplete in some scopes",
                extra={"failed_scopes": result.failed_scopes},
            )

        record.bound_projects = bound
        record.bound_project_numbers = await self._resolver.resolve_numbers(scope_set, bound)

    async def _ensure_key(self, ctx: _CreateContext) -> None:
        identity = self._require_identity(ctx)
        key = await self._rotator.ensure(identity, ctx.record.credential())
        ctx.record.set_credential(key)

    def _require_identity(self, ctx: _CreateContext) -> ServiceAccount:
        if ctx.identity is None:
            ctx.identity = ctx.record.identity()
        if ctx.identity is None:
            raise InvalidTransitionError("Identity must be provisioned before this step")
        return ctx.identity

    # =========================================================================
    # Read
    # =========================================================================

    async def read(self, record: IntegrationRecord) -> ReconcileResult:
        """Refresh the record from live state without mutating anything upstream.

        Returns:
            ReconcileResult with `removed=True` and no record if the identity
            no longer exists; otherwise the refreshed record, with scopes whose
            bindings drifted dropped from boundProjects.
        """
        refreshed = record.model_copy(deep=True)
        result = ReconcileResult(operation=Operation.READ, record=refreshed)
        provenance = self._provenance.create_provenance(Operation.READ.value, record.project_id)

        try:
            async with asyncio.timeout(self._config.operation_timeout_seconds):
                await self._refresh(refreshed, result)
        except OPERATION_ERRORS as e:
            logger.error("Read failed", extra={"error": str(e), "error_type": type(e).__name__})
            result.error = e
            result.record = record

        self._finish(provenance, result)
        return result

    async def _refresh(self, record: IntegrationRecord, result: ReconcileResult) -> None:
        try:
            observed: ServiceAccount = await self._caller.call(
                "get_service_account", record.expected_identity_name()
            )
        except ProviderError as e:
            if not e.not_found:
                raise
            logger.warning(
                "Service account not found, removing from state",
                extra={"service_account": record.expected_identity_name()},
            )
            result.removed = True
            result.record = None
            return

        record.service_account_email = observed.email
        record.service_account_unique_id = observed.unique_id
        identity = record.identity()
        if identity is None:
            raise InvalidTransitionError("Refreshed record has no identity")

        await self._warn_missing_roles(record.roles)

        replication_map = ReplicationMap.derive(record.roles, record.bound_projects)
        kept: list[str] = []
        kept_numbers: list[str] = []
        for scope_id in record.bound_projects:
            try:
                all_bound = await self._bindings.verify(
                    scope_id, identity.member, record.roles, replication_map
                )
            except ProviderError as e:
                logger.warning(
                    "Failed to get policy for scope",
                    extra={"scope": scope_id, "error": str(e)},
                )
                all_bound = False
            if all_bound:
                kept.append(scope_id)
                kept_numbers.append(record.number_for(scope_id))

        if len(kept) != len(record.bound_projects):
            result.drift_detected = True
            result.failed_scopes = [s for s in record.bound_projects if s not in kept]
        record.bound_projects = kept
        record.bound_project_numbers = kept_numbers

        current_key = record.credential()
        if current_key is not None:
            key = await self._rotator.refresh(current_key)
            if key is None:
                # Recreated by the next update
                result.drift_detected = True
                record.set_credential(None)
            else:
                record.valid_after = key.valid_after
                record.valid_before = key.valid_before

    async def _warn_missing_roles(self, role_refs: list[str]) -> None:
        for role_ref in role_refs:
            if not is_custom_role(role_ref):
                continue
            try:
                await self._caller.call("get_role", role_ref)
            except ProviderError as e:
                if e.not_found:
                    logger.warning("Custom role not found", extra={"role": role_ref})

    # =========================================================================
    # Update
    # =========================================================================

    async def update(self, spec: IntegrationSpec, record: IntegrationRecord) -> ReconcileResult:
        """Move an existing integration to a new desired state.

        Only the delta is applied: display fields are patched with a field
        mask, bindings are added/removed for the (scope, role) pairs that
        changed, and the key rotates only when the rotation token changed.

        Raises:
            ReplacementRequiredError: If an immutable field changed.
        """
        changed = record.changed_replacement_fields(spec, self._config.default_project_id)
        if changed:
            raise ReplacementRequiredError(changed)

        if record.state != IntegrationState.ACTIVE:
            logger.info(
                "Record not active, resuming create",
                extra={"state": record.state.value},
            )
            return await self.create(spec, resume=record)

        updated = record.model_copy(deep=True)
        result = ReconcileResult(operation=Operation.UPDATE, record=updated)
        provenance = self._provenance.create_provenance(Operation.UPDATE.value, record.project_id)

        try:
            async with asyncio.timeout(self._config.operation_timeout_seconds):
                await self._apply_update(spec, record, updated, result)
        except OPERATION_ERRORS as e:
            logger.error("Update failed", extra={"error": str(e), "error_type": type(e).__name__})
            result.error = e
            # Nothing partial is persisted; every step is safe to re-run
            result.record = record

        self._finish(provenance, result)
        return result

    async def _apply_update(
        self,
        spec: IntegrationSpec,
        record: IntegrationRecord,
        updated: IntegrationRecord,
        result: ReconcileResult,
    ) -> None:
        identity = record.identity()
        if identity is None:
            raise InvalidTransitionError("Active record has no identity")

        update_mask = []
        if spec.display_name != record.display_name:
            update_mask.append("displayName")
        if spec.description != record.description:
            update_mask.append("description")
        if update_mask:
            await self._caller.call(
                "patch_service_account",
                identity.name,
                spec.display_name,
                spec.description,
                ",".join(update_mask),
            )
            logger.info("Patched service account", extra={"update_mask": update_mask})

        if (
            spec.roles != record.roles
            or spec.exclude_projects != record.exclude_projects
            or spec.exclude_free_trial_projects != record.exclude_free_trial_projects
        ):
            await self._apply_binding_delta(spec, record, updated, identity, result)

        key, rotated = await self._rotator.reconcile(
            identity, record.credential(), record.rotation_time, spec.rotation_time
        )
        updated.set_credential(key)
        result.key_rotated = rotated

        updated.apply_spec(spec)
        updated.state = IntegrationState.ACTIVE

    async def _apply_binding_delta(
        self,
        spec: IntegrationSpec,
        record: IntegrationRecord,
        updated: IntegrationRecord,
        identity: ServiceAccount,
        result: ReconcileResult,
    ) -> None:
        scope_set = await self._resolver.resolve(ScopeQuery.from_spec(spec, record.project_id))
        old_scopes = record.bound_projects
        new_scopes = scope_set.ids

        old_pairs = {(s, r) for s in old_scopes for r in record.roles}
        new_pairs = {(s, r) for s in new_scopes for r in spec.roles}
        to_remove = old_pairs - new_pairs
        to_add = new_pairs - old_pairs

        logger.info(
            "Applying binding delta",
            extra={"add_count": len(to_add), "remove_count": len(to_remove)},
        )

        # Removals use the previous desired set's replica names
        old_map = ReplicationMap.derive(record.roles, old_scopes)
        for scope_id in old_scopes:
            roles = [r for r in record.roles if (scope_id, r) in to_remove]
            if roles:
                await self._bindings.remove(scope_id, identity.member, roles, old_map)
        for role_ref in record.roles:
            scopes = [s for s in old_scopes if (s, role_ref) in to_remove]
            if scopes:
                await self._replicator.delete_replicas([role_ref], scopes)

        # Additions
        add_roles = [r for r in spec.roles if any((s, r) in to_add for s in new_scopes)]
        role_defs = await self._replicator.load_roles(add_roles)
        scope_bound = [d for d in role_defs.values() if d is not None and d.is_scope_bound]
        report = await self._replicator.replicate(scope_bound, new_scopes)
        result.replicas_created.extend(report.created)

        bound: list[str] = []
        for scope_id in new_scopes:
            roles = [r for r in spec.roles if (scope_id, r) in to_add]
            if roles:
                scope_result = await self._bindings.apply(
                    scope_id, identity.member, roles, report.replication_map
                )
                if not scope_result.complete:
                    result.failed_scopes.append(scope_id)
                    continue
            bound.append(scope_id)

        numbers = [record.number_for(s) or scope_set.number_for(s) for s in bound]
        missing = [s for s, n in zip(bound, numbers, strict=True) if not n]
        if missing:
            resolved = dict(
                zip(missing, await self._resolver.resolve_numbers(scope_set, missing), strict=True)
            )
            numbers = [n or resolved.get(s, "") for s, n in zip(bound, numbers, strict=True)]

        updated.bound_projects = bound
        updated.bound_project_numbers = numbers

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete(self, record: IntegrationRecord) -> ReconcileResult:
        """Tear down the integration. Best-effort; never fails on absent resources."""
        result = ReconcileResult(operation=Operation.DELETE, record=record)
        provenance = self._provenance.create_provenance(Operation.DELETE.value, record.project_id)
        lifecycle = IntegrationLifecycle(record.state)

        email = record.service_account_email or service_account_email(
            record.account_id, record.project_id
        )
        target = TeardownTarget(
            identity=ServiceAccount(
                project_id=record.project_id,
                account_id=record.account_id,
                email=email,
                name=record.expected_identity_name(),
            ),
            query=ScopeQuery.from_spec(record, record.project_id),
            role_refs=list(record.roles),
            known_scopes=list(record.bound_projects),
            key_name=record.key_name,
        )

        try:
            if lifecycle.can_advance(IntegrationState.TEARING_DOWN):
                lifecycle.advance(IntegrationState.TEARING_DOWN)
            async with asyncio.timeout(self._config.operation_timeout_seconds):
                report = await self._teardown.teardown(target)
            result.teardown = report
            if lifecycle.can_advance(IntegrationState.DELETED):
                lifecycle.advance(IntegrationState.DELETED)
            result.record = None
            if not report.complete:
                logger.warning(
                    "Teardown left resources behind",
                    extra={
                        "binding_failures": len(report.binding_failures),
                        "replica_failures": report.replica_failures,
                        "errors": report.errors,
                    },
                )
        except OPERATION_ERRORS as e:
            logger.error("Delete failed", extra={"error": str(e), "error_type": type(e).__name__})
            result.error = e
            record.state = lifecycle.state

        self._finish(provenance, result)
        return result

    # =========================================================================
    # Provenance
    # =========================================================================

    def _finish(self, provenance: OperationProvenance, result: ReconcileResult) -> None:
        result.end_time = datetime.now(UTC)

        record = result.record
        if record is not None:
            provenance.service_account_email = record.service_account_email or ""
            provenance.lifecycle_state = record.state.value
            provenance.fan_out.scopes_bound = len(record.bound_projects)
        provenance.drift_detected = result.drift_detected
        provenance.key_rotated = result.key_rotated
        provenance.removed_upstream = result.removed
        provenance.fan_out.scopes_failed = len(result.failed_scopes)
        provenance.fan_out.replicas_created = len(result.replicas_created)
        if result.teardown is not None:
            provenance.fan_out.replicas_deleted = len(result.teardown.replicas_deleted)
        provenance.duration_seconds = result.duration_seconds
        if result.error is not None:
            provenance.error = str(result.error)
            provenance.error_type = type(result.error).__name__

        self._provenance.log_provenance(provenance)
