"""Mock ProviderClient backed by FakeCloudState.

Implements the synchronous ProviderClient protocol with provider-like
semantics (409 on duplicate create, 404 on missing resources, etag checks on
policy writes) and records every call for assertions.

Failure injection:
    client.fail("create_role", transient_error(), match="proj-b", times=None)
    client.fail("set_iam_policy", conflict_error(), match="proj-a", times=2)
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from identity_sync.provider import (
    ErrorKind,
    Policy,
    Project,
    ProviderError,
    RoleDefinition,
    ServiceAccount,
    ServiceAccountKey,
    parse_role_name,
    project_role_name,
    service_account_email,
)

from .state import FakeCloudState


def not_found_error(message: str = "Not found") -> ProviderError:
    return ProviderError(message, kind=ErrorKind.NOT_FOUND, status_code=404)


def already_exists_error(message: str = "Already exists") -> ProviderError:
    return ProviderError(message, kind=ErrorKind.ALREADY_EXISTS, status_code=409)


def transient_error(message: str = "Service unavailable") -> ProviderError:
    return ProviderError(message, kind=ErrorKind.TRANSIENT, status_code=503)


def conflict_error(message: str = "Concurrent policy changes") -> ProviderError:
    return ProviderError(message, kind=ErrorKind.TRANSIENT, status_code=409)


def fatal_error(message: str = "Permission denied") -> ProviderError:
    return ProviderError(message, kind=ErrorKind.FATAL, status_code=403)


@dataclass
class FailureRule:
    """Raise `error` from `method` when `match` is among the call arguments.

    `times=None` fails forever; otherwise the rule is used up after `times` hits.
    """

    method: str
    error: ProviderError
    match: str | None = None
    times: int | None = 1

    def applies(self, method: str, args: tuple[Any, ...]) -> bool:
        if self.method != method or self.times == 0:
            return False
        if self.match is None:
            return True
        return any(isinstance(a, str) and self.match in a for a in args)


class MockProviderClient:
    """In-memory ProviderClient for engine tests."""

    def __init__(self, state: FakeCloudState | None = None) -> None:
        self.state = state or FakeCloudState()
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self._rules: list[FailureRule] = []

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def fail(
        self,
        method: str,
        error: ProviderError,
        *,
        match: str | None = None,
        times: int | None = 1,
    ) -> None:
        """Inject a failure for subsequent calls of method."""
        self._rules.append(FailureRule(method, error, match, times))

    def clear_failures(self) -> None:
        self._rules.clear()

    def call_count(self, method: str, match: str | None = None) -> int:
        return sum(
            1
            for name, args in self.calls
            if name == method
            and (match is None or any(isinstance(a, str) and match in a for a in args))
        )

    def reset_calls(self) -> None:
        self.calls.clear()

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        for rule in self._rules:
            if rule.applies(method, args):
                if rule.times is not None:
                    rule.times -= 1
                raise rule.error

    def _require_project(self, project_id: str) -> None:
        if project_id not in self.state.projects:
            raise not_found_error(f"Project {project_id} not found")

    def _account(self, name: str) -> ServiceAccount:
        email = name.rsplit("/", 1)[-1]
        account = self.state.service_accounts.get(email)
        if account is None:
            raise not_found_error(f"Service account {email} not found")
        return account

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    def create_service_account(
        self, project_id: str, account_id: str, display_name: str, description: str
    ) -> ServiceAccount:
        self._record("create_service_account", project_id, account_id, display_name, description)
        self._require_project(project_id)
        email = service_account_email(account_id, project_id)
        if email in self.state.service_accounts or email in self.state.soft_deleted_accounts:
            raise already_exists_error(f"Service account {email} already exists")
        account = self.state.add_service_account(
            project_id, account_id, display_name=display_name, description=description
        )
        return copy.copy(account)

    def get_service_account(self, name: str) -> ServiceAccount:
        self._record("get_service_account", name)
        return copy.copy(self._account(name))

    def patch_service_account(
        self, name: str, display_name: str, description: str, update_mask: str
    ) -> ServiceAccount:
        self._record("patch_service_account", name, display_name, description, update_mask)
        account = self._account(name)
        fields = update_mask.split(",")
        if "displayName" in fields:
            account.display_name = display_name
        if "description" in fields:
            account.description = description
        return copy.copy(account)

    def delete_service_account(self, name: str) -> None:
        self._record("delete_service_account", name)
        account = self._account(name)
        for key in self.state.keys_for(account.name):
            del self.state.keys[key.name]
        self.state.soft_delete_service_account(account.email)

    def list_service_account_keys(self, name: str) -> list[str]:
        self._record("list_service_account_keys", name)
        account = self._account(name)
        return [k.name for k in self.state.keys_for(account.name)]

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    def create_service_account_key(self, name: str) -> ServiceAccountKey:
        self._record("create_service_account_key", name)
        account = self._account(name)
        return copy.copy(self.state.add_key(account.name))

    def get_service_account_key(self, name: str) -> ServiceAccountKey:
        self._record("get_service_account_key", name)
        key = self.state.keys.get(name)
        if key is None:
            raise not_found_error(f"Key {name} not found")
        # The provider never returns private key material after creation
        return ServiceAccountKey(
            name=key.name, valid_after=key.valid_after, valid_before=key.valid_before
        )

    def delete_service_account_key(self, name: str) -> None:
        self._record("delete_service_account_key", name)
        if self.state.keys.pop(name, None) is None:
            raise not_found_error(f"Key {name} not found")

    # -------------------------------------------------------------------------
    # Roles
    # -------------------------------------------------------------------------

    def get_role(self, name: str) -> RoleDefinition:
        self._record("get_role", name)
        role = self.state.predefined_roles.get(name) or self.state.custom_roles.get(name)
        if role is None:
            raise not_found_error(f"Role {name} not found")
        return copy.deepcopy(role)

    def create_role(self, scope_id: str, role_id: str, role: RoleDefinition) -> RoleDefinition:
        self._record("create_role", scope_id, role_id)
        self._require_project(scope_id)
        name = project_role_name(scope_id, role_id)
        if name in self.state.custom_roles:
            raise already_exists_error(f"Role {name} already exists")
        created = self.state.add_custom_role(
            name,
            title=role.title,
            description=role.description,
            permissions=role.permissions,
            stage=role.stage,
        )
        return copy.deepcopy(created)

    def patch_role(self, name: str, role: RoleDefinition, update_mask: str) -> RoleDefinition:
        self._record("patch_role", name, update_mask)
        existing = self.state.custom_roles.get(name)
        if existing is None:
            raise not_found_error(f"Role {name} not found")
        fields = update_mask.split(",")
        if "title" in fields:
            existing.title = role.title
        if "description" in fields:
            existing.description = role.description
        if "includedPermissions" in fields:
            existing.permissions = list(role.permissions)
        if "stage" in fields:
            existing.stage = role.stage
        return copy.deepcopy(existing)

    def undelete_role(self, name: str) -> RoleDefinition:
        self._record("undelete_role", name)
        existing = self.state.custom_roles.get(name)
        if existing is None:
            raise not_found_error(f"Role {name} not found")
        existing.deleted = False
        return copy.deepcopy(existing)

    def delete_role(self, name: str) -> None:
        self._record("delete_role", name)
        if self.state.live_role(name) is None:
            raise not_found_error(f"Role {name} not found")
        self.state.custom_roles[name].deleted = True

    # -------------------------------------------------------------------------
    # Hierarchy
    # -------------------------------------------------------------------------

    def get_project(self, project_id: str) -> Project:
        self._record("get_project", project_id)
        self._require_project(project_id)
        p = self.state.projects[project_id]
        return Project(p.project_id, p.project_number, p.lifecycle_state, dict(p.labels))

    def get_ancestry(self, project_id: str) -> list[tuple[str, str]]:
        self._record("get_ancestry", project_id)
        self._require_project(project_id)
        return self.state.ancestry(project_id)

    def list_folders(self, parent: str) -> list[str]:
        self._record("list_folders", parent)
        return [
            f.folder_id
            for f in self.state.folders.values()
            if f.parent == parent and f.lifecycle_state == "ACTIVE"
        ]

    def list_projects(self, parent_type: str, parent_id: str) -> list[Project]:
        self._record("list_projects", parent_type, parent_id)
        return [
            Project(p.project_id, p.project_number, p.lifecycle_state, dict(p.labels))
            for p in self.state.projects.values()
            if p.parent_type == parent_type and p.parent_id == parent_id
        ]

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    def get_iam_policy(self, project_id: str) -> Policy:
        self._record("get_iam_policy", project_id)
        self._require_project(project_id)
        return self.state.policy(project_id)

    def set_iam_policy(self, project_id: str, policy: Policy) -> Policy:
        self._record("set_iam_policy", project_id)
        self._require_project(project_id)
        current = self.state.policies[project_id]
        if policy.etag != current.etag:
            raise conflict_error(f"Etag mismatch for {project_id}")

        for binding in policy.bindings:
            container_type, container_id, _ = parse_role_name(binding.role)
            if container_type == "project" and container_id != project_id:
                raise ProviderError(
                    f"Role {binding.role} is not supported for this resource",
                    kind=ErrorKind.FATAL,
                    status_code=400,
                )
            if container_type != "predefined" and self.state.live_role(binding.role) is None:
                raise ProviderError(
                    f"Role {binding.role} does not exist in the resource's hierarchy",
                    kind=ErrorKind.FATAL,
                    status_code=400,
                )

        stored = copy.deepcopy(policy)
        stored.etag = self.state.next_etag()
        self.state.policies[project_id] = stored
        return copy.deepcopy(stored)
