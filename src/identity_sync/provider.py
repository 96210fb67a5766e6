"""Provider boundary: value types, typed errors and the client protocol.

The engine never talks to a cloud SDK directly. Every control-plane call goes
through a ProviderClient implementation, and every failure surfaces as a
ProviderError carrying an ErrorKind. Retry and adoption decisions are made on
the kind, never on error text.

ProviderClient methods are synchronous (blocking network I/O). ProviderCaller
adapts them to the async engine by running each call in the default executor
under a per-call timeout.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)

# Role resource-name prefixes
PREDEFINED_ROLE_PREFIX = "roles/"
PROJECT_ROLE_PREFIX = "projects/"
ORGANIZATION_ROLE_PREFIX = "organizations/"

# Hierarchy node types returned by get_ancestry
PARENT_TYPE_PROJECT = "project"
PARENT_TYPE_FOLDER = "folder"
PARENT_TYPE_ORGANIZATION = "organization"

LIFECYCLE_STATE_ACTIVE = "ACTIVE"


class ErrorKind(str, Enum):
    """Classification of provider failures."""

    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    FATAL = "fatal"


class ProviderError(Exception):
    """Raised by provider clients for every control-plane failure."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.FATAL,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Only transient failures (propagation lag, conflicts) are retried."""
        return self.kind == ErrorKind.TRANSIENT

    @property
    def not_found(self) -> bool:
        return self.kind == ErrorKind.NOT_FOUND

    @property
    def already_exists(self) -> bool:
        return self.kind == ErrorKind.ALREADY_EXISTS


# =============================================================================
# Value types
# =============================================================================


@dataclass
class ServiceAccount:
    """Cached projection of a provider identity."""

    project_id: str
    account_id: str
    email: str
    name: str
    unique_id: str = ""
    display_name: str = ""
    description: str = ""
    disabled: bool = False

    @property
    def member(self) -> str:
        """Policy member string for this identity."""
        return f"serviceAccount:{self.email}"


@dataclass
class RoleDefinition:
    """A role as returned by the provider.

    `name` is the full resource name (roles/x, projects/p/roles/x or
    organizations/o/roles/x).
    """

    name: str
    title: str = ""
    description: str = ""
    permissions: list[str] = field(default_factory=list)
    stage: str = "GA"
    deleted: bool = False

    @property
    def role_id(self) -> str:
        return parse_role_name(self.name)[2]

    @property
    def origin_scope(self) -> str | None:
        """Scope that defines a scope-bound role, None otherwise."""
        container_type, container_id, _ = parse_role_name(self.name)
        return container_id if container_type == PARENT_TYPE_PROJECT else None

    @property
    def is_scope_bound(self) -> bool:
        return is_scope_bound(self.name)


@dataclass
class ServiceAccountKey:
    """Keyed credential. The secret material is excluded from repr."""

    name: str
    valid_after: str = ""
    valid_before: str = ""
    private_key_data: str | None = field(default=None, repr=False)


@dataclass
class Project:
    """A target scope as listed by the resource manager."""

    project_id: str
    project_number: str = ""
    lifecycle_state: str = LIFECYCLE_STATE_ACTIVE
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def is_free_trial(self) -> bool:
        return (
            self.labels.get("free-trial") == "true"
            or self.labels.get("billing-tier") == "free"
        )


@dataclass
class Binding:
    """One role entry in an access-policy document."""

    role: str
    members: list[str] = field(default_factory=list)
    # Conditional bindings are carried through untouched
    condition: dict[str, Any] | None = None


@dataclass
class Policy:
    """Access-policy document for one scope."""

    bindings: list[Binding] = field(default_factory=list)
    etag: str = ""
    version: int = 1


# =============================================================================
# Role name helpers
# =============================================================================


def parse_role_name(name: str) -> tuple[str, str | None, str]:
    """Split a role resource name into (container_type, container_id, role_id).

    Args:
        name: Role name such as "roles/viewer", "projects/p1/roles/r1" or
              "organizations/123/roles/r1".

    Returns:
        Tuple where container_type is "predefined", "project" or "organization".

    Raises:
        ValueError: If the name does not match any known form.
    """
    parts = name.split("/")
    if len(parts) == 2 and parts[0] == "roles" and parts[1]:
        return "predefined", None, parts[1]
    if len(parts) == 4 and parts[2] == "roles" and parts[1] and parts[3]:
        if parts[0] == "projects":
            return PARENT_TYPE_PROJECT, parts[1], parts[3]
        if parts[0] == "organizations":
            return PARENT_TYPE_ORGANIZATION, parts[1], parts[3]
    raise ValueError(f"Unrecognized role name: {name}")


def is_scope_bound(role_name: str) -> bool:
    """Whether a role is only valid inside the project that defines it."""
    return role_name.startswith(PROJECT_ROLE_PREFIX)


def is_custom_role(role_name: str) -> bool:
    return role_name.startswith((PROJECT_ROLE_PREFIX, ORGANIZATION_ROLE_PREFIX))


def project_role_name(scope_id: str, role_id: str) -> str:
    return f"projects/{scope_id}/roles/{role_id}"


def service_account_email(account_id: str, project_id: str) -> str:
    return f"{account_id}@{project_id}.iam.gserviceaccount.com"


def service_account_name(project_id: str, email: str) -> str:
    return f"projects/{project_id}/serviceAccounts/{email}"


# =============================================================================
# Client protocol
# =============================================================================


class ProviderClient(Protocol):
    """Synchronous control-plane operations consumed by the engine.

    Implementations raise ProviderError for every failure.
    """

    def create_service_account(
        self, project_id: str, account_id: str, display_name: str, description: str
    ) -> ServiceAccount: ...

    def get_service_account(self, name: str) -> ServiceAccount: ...

    def patch_service_account(
        self, name: str, display_name: str, description: str, update_mask: str
    ) -> ServiceAccount: ...

    def delete_service_account(self, name: str) -> None: ...

    def list_service_account_keys(self, name: str) -> list[str]: ...

    def create_service_account_key(self, name: str) -> ServiceAccountKey: ...

    def get_service_account_key(self, name: str) -> ServiceAccountKey: ...

    def delete_service_account_key(self, name: str) -> None: ...

    def get_role(self, name: str) -> RoleDefinition: ...

    def create_role(self, scope_id: str, role_id: str, role: RoleDefinition) -> RoleDefinition: ...

    def patch_role(self, name: str, role: RoleDefinition, update_mask: str) -> RoleDefinition: ...

    def undelete_role(self, name: str) -> RoleDefinition: ...

    def delete_role(self, name: str) -> None: ...

    def get_project(self, project_id: str) -> Project: ...

    def get_ancestry(self, project_id: str) -> list[tuple[str, str]]: ...

    def list_folders(self, parent: str) -> list[str]: ...

    def list_projects(self, parent_type: str, parent_id: str) -> list[Project]: ...

    def get_iam_policy(self, project_id: str) -> Policy: ...

    def set_iam_policy(self, project_id: str, policy: Policy) -> Policy: ...


class ProviderCaller:
    """Runs blocking ProviderClient calls from async code.

    SECURITY: Enforces a timeout on every provider call to prevent indefinite
    hangs. Cancellation of the awaiting task propagates immediately; the
    executor thread is abandoned, not joined.
    """

    def __init__(self, client: ProviderClient, timeout_seconds: float) -> None:
        self._client = client
        self._timeout_seconds = timeout_seconds

    @property
    def client(self) -> ProviderClient:
        return self._client

    async def call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke a client method in the default executor.

        Args:
            method: Name of the ProviderClient method.
            *args: Positional arguments for the method.
            **kwargs: Keyword arguments for the method.

        Returns:
            Whatever the client method returns.

        Raises:
            ProviderError: Raised by the client, or TRANSIENT on timeout.
        """
        fn = functools.partial(getattr(self._client, method), *args, **kwargs)
        loop = asyncio.get_event_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, fn),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(
                "Provider call timed out",
                extra={"operation": method, "timeout_seconds": self._timeout_seconds},
            )
            raise ProviderError(
                f"{method} timed out after {self._timeout_seconds}s",
                kind=ErrorKind.TRANSIENT,
            ) from e
