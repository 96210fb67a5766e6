"""Create-or-adopt provisioning for named resources.

A provider "already exists" response is not a failure: the existing resource
is looked up by its natural key and returned with adopted=True. Adoption
keeps the caller's immutable fields (short name, parent) instead of the
provider's echo, because normalized forms such as project numbers would
otherwise look like drift on every later reconcile. Mutable fields are
brought in line with an explicit field-mask patch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .provider import (
    ProviderCaller,
    ProviderError,
    RoleDefinition,
    ServiceAccount,
    project_role_name,
    service_account_email,
    service_account_name,
)
from .retry import RetryExecutor
from .security import log_security_audit_event

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Resource kinds the provisioner knows how to create and adopt."""

    SERVICE_ACCOUNT = "service_account"
    ROLE = "role"


class ProvisioningError(Exception):
    """Raised when an existing resource cannot be adopted."""

    pass


@dataclass(frozen=True)
class ServiceAccountSpec:
    """Desired identity; (project_id, account_id) is the natural key."""

    project_id: str
    account_id: str
    display_name: str
    description: str

    @property
    def email(self) -> str:
        return service_account_email(self.account_id, self.project_id)

    @property
    def name(self) -> str:
        return service_account_name(self.project_id, self.email)


@dataclass(frozen=True)
class RoleSpec:
    """Desired scope-bound role; (scope_id, role_id) is the natural key."""

    scope_id: str
    role_id: str
    title: str
    description: str
    permissions: tuple[str, ...] = field(default_factory=tuple)
    stage: str = "GA"

    @property
    def name(self) -> str:
        return project_role_name(self.scope_id, self.role_id)

    def to_role(self) -> RoleDefinition:
        return RoleDefinition(
            name=self.name,
            title=self.title,
            description=self.description,
            permissions=list(self.permissions),
            stage=self.stage,
        )


@dataclass
class ProvisionOutcome:
    """Result of provision_named."""

    handle: Any
    adopted: bool = False


class IdempotentProvisioner:
    """Creates named resources, adopting existing ones on collision."""

    def __init__(self, caller: ProviderCaller, retry: RetryExecutor) -> None:
        self._caller = caller
        self._retry = retry

    async def provision_named(
        self,
        kind: ResourceKind,
        desired: ServiceAccountSpec | RoleSpec,
        *,
        adopt: bool = True,
    ) -> ProvisionOutcome:
        """Create the resource, or adopt it if it already exists.

        Args:
            kind: Resource kind.
            desired: Desired spec matching the kind.
            adopt: Whether an existing resource may be adopted.

        Returns:
            ProvisionOutcome with the resource handle and whether it was adopted.

        Raises:
            ProvisioningError: Existing resource found but adoption is disabled
                or the resource is unusable.
            ProviderError: Non-transient provider failure.
            RetryExhaustedError: Transient failures persisted.
        """
        match kind, desired:
            case ResourceKind.SERVICE_ACCOUNT, ServiceAccountSpec():
                create = self._create_service_account
                adopt_existing = self._adopt_service_account
            case ResourceKind.ROLE, RoleSpec():
                create = self._create_role
                adopt_existing = self._adopt_role
            case _:
                raise ProvisioningError(
                    f"{type(desired).__name__} does not describe a {kind.value}"
                )

        try:
            handle = await self._retry.run(
                f"create {kind.value} {desired.name}", lambda: create(desired)
            )
            logger.info(
                "Created resource",
                extra={"kind": kind.value, "resource": desired.name},
            )
            return ProvisionOutcome(handle=handle, adopted=False)
        except ProviderError as e:
            if not e.already_exists:
                raise
            if not adopt:
                raise ProvisioningError(
                    f"{kind.value} {desired.name} already exists and adoption is disabled"
                ) from e

        logger.warning(
            "Resource already exists, adopting",
            extra={"kind": kind.value, "resource": desired.name},
        )
        handle = await adopt_existing(desired)
        return ProvisionOutcome(handle=handle, adopted=True)

    # -------------------------------------------------------------------------
    # Service accounts
    # -------------------------------------------------------------------------

    async def _create_service_account(self, desired: ServiceAccountSpec) -> ServiceAccount:
        created: ServiceAccount = await self._caller.call(
            "create_service_account",
            desired.project_id,
            desired.account_id,
            desired.display_name,
            desired.description,
        )
        log_security_audit_event(
            event_type="identity",
            target_resource=created.email,
            action="create",
            result="success",
        )
        return self._identity_handle(desired, created)

    async def _adopt_service_account(self, desired: ServiceAccountSpec) -> ServiceAccount:
        try:
            existing: ServiceAccount = await self._caller.call("get_service_account", desired.name)
        except ProviderError as e:
            if e.not_found:
                raise ProvisioningError(
                    f"service account with email {desired.email} is in its 30-day soft-delete "
                    "period and cannot be used; wait for deletion to complete or use a "
                    "different accountId"
                ) from e
            raise ProvisioningError(
                f"service account with email {desired.email} already exists but cannot be "
                f"retrieved: {e}"
            ) from e

        if existing.disabled:
            raise ProvisioningError(
                f"service account {desired.email} exists but is disabled; enable it manually "
                "or use a different accountId"
            )

        # Accounts in unusual states (soft-deleted but still retrievable) fail here
        try:
            await self._caller.call("list_service_account_keys", desired.name)
        except ProviderError as e:
            if e.not_found:
                raise ProvisioningError(
                    f"service account {desired.email} exists but is not fully operational "
                    "(possibly in soft-delete period)"
                ) from e
            logger.warning(
                "Could not list keys for existing service account",
                extra={"service_account": desired.email, "error": str(e)},
            )

        update_mask = []
        if existing.display_name != desired.display_name:
            update_mask.append("displayName")
        if existing.description != desired.description:
            update_mask.append("description")
        if update_mask:
            existing = await self._caller.call(
                "patch_service_account",
                existing.name,
                desired.display_name,
                desired.description,
                ",".join(update_mask),
            )
            logger.info(
                "Patched adopted service account",
                extra={"service_account": desired.email, "update_mask": update_mask},
            )

        log_security_audit_event(
            event_type="identity",
            target_resource=desired.email,
            action="adopt",
            result="adopted",
        )
        return self._identity_handle(desired, existing)

    @staticmethod
    def _identity_handle(desired: ServiceAccountSpec, observed: ServiceAccount) -> ServiceAccount:
        # Immutable fields come from the desired spec, computed ones from the provider
        return ServiceAccount(
            project_id=desired.project_id,
            account_id=desired.account_id,
            email=observed.email or desired.email,
            name=observed.name or desired.name,
            unique_id=observed.unique_id,
            display_name=desired.display_name,
            description=desired.description,
            disabled=observed.disabled,
        )

    # -------------------------------------------------------------------------
    # Roles
    # -------------------------------------------------------------------------

    async def _create_role(self, desired: RoleSpec) -> RoleDefinition:
        return await self._caller.call(
            "create_role", desired.scope_id, desired.role_id, desired.to_role()
        )

    async def _adopt_role(self, desired: RoleSpec) -> RoleDefinition:
        existing: RoleDefinition = await self._caller.call("get_role", desired.name)
        return await self.reconcile_role(existing, desired)

    async def reconcile_role(self, existing: RoleDefinition, desired: RoleSpec) -> RoleDefinition:
        """Undelete and patch an existing role until it matches the desired spec."""
        if existing.deleted:
            logger.info("Undeleting soft-deleted role", extra={"role": desired.name})
            existing = await self._caller.call("undelete_role", desired.name)

        update_mask = []
        if existing.title != desired.title:
            update_mask.append("title")
        if existing.description != desired.description:
            update_mask.append("description")
        if sorted(existing.permissions) != sorted(desired.permissions):
            update_mask.append("includedPermissions")
        if existing.stage != desired.stage:
            update_mask.append("stage")
        if update_mask:
            existing = await self._caller.call(
                "patch_role", desired.name, desired.to_role(), ",".join(update_mask)
            )
            logger.info(
                "Patched adopted role",
                extra={"role": desired.name, "update_mask": update_mask},
            )

        # Keep the natural key as requested
        existing.name = desired.name
        return existing
