"""In-memory Google Cloud state for integration testing.

Models just enough of the resource hierarchy, IAM and policy semantics for
the engine: organizations, folders and projects; service accounts and keys;
predefined and project-level custom roles with soft delete; and per-project
access policies guarded by etags.
"""

from __future__ import annotations

import base64
import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from identity_sync.provider import (
    Policy,
    RoleDefinition,
    ServiceAccount,
    ServiceAccountKey,
    service_account_email,
    service_account_name,
)

# Fixed origin for key timestamps so tests can compare them
KEY_CLOCK_ORIGIN = datetime(2026, 1, 1, tzinfo=UTC)
KEY_VALIDITY = timedelta(days=3650)


@dataclass
class FakeProject:
    """A project and its position in the hierarchy."""

    project_id: str
    project_number: str
    parent_type: str
    parent_id: str
    lifecycle_state: str = "ACTIVE"
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class FakeFolder:
    folder_id: str
    parent: str  # "organizations/<id>" or "folders/<id>"
    lifecycle_state: str = "ACTIVE"


class FakeCloudState:
    """Shared in-memory state behind one or more MockProviderClients."""

    def __init__(self) -> None:
        self.organizations: set[str] = set()
        self.folders: dict[str, FakeFolder] = {}
        self.projects: dict[str, FakeProject] = {}
        self.service_accounts: dict[str, ServiceAccount] = {}  # by email
        self.soft_deleted_accounts: set[str] = set()
        self.keys: dict[str, ServiceAccountKey] = {}
        self.predefined_roles: dict[str, RoleDefinition] = {}
        self.custom_roles: dict[str, RoleDefinition] = {}
        self.policies: dict[str, Policy] = {}
        self._etag_counter = 0
        self._key_counter = 0
        self._project_number_counter = 100000000000
        self._unique_id_counter = 110000000000000000000

    # -------------------------------------------------------------------------
    # Hierarchy
    # -------------------------------------------------------------------------

    def add_organization(self, org_id: str) -> None:
        self.organizations.add(org_id)

    def add_folder(self, folder_id: str, parent: str, lifecycle_state: str = "ACTIVE") -> None:
        """Add a folder under "organizations/<id>" or "folders/<id>"."""
        self.folders[folder_id] = FakeFolder(folder_id, parent, lifecycle_state)

    def add_project(
        self,
        project_id: str,
        parent_type: str = "organization",
        parent_id: str = "",
        *,
        project_number: str | None = None,
        lifecycle_state: str = "ACTIVE",
        labels: dict[str, str] | None = None,
    ) -> FakeProject:
        if project_number is None:
            self._project_number_counter += 1
            project_number = str(self._project_number_counter)
        project = FakeProject(
            project_id=project_id,
            project_number=project_number,
            parent_type=parent_type,
            parent_id=parent_id,
            lifecycle_state=lifecycle_state,
            labels=dict(labels or {}),
        )
        self.projects[project_id] = project
        self.policies[project_id] = Policy(etag=self.next_etag())
        return project

    def ancestry(self, project_id: str) -> list[tuple[str, str]]:
        """(type, id) pairs from the project up to the organization."""
        project = self.projects[project_id]
        chain = [("project", project_id)]
        parent_type, parent_id = project.parent_type, project.parent_id
        while parent_id:
            chain.append((parent_type, parent_id))
            if parent_type != "folder":
                break
            parent = self.folders[parent_id].parent
            kind, parent_id = parent.split("/", 1)
            parent_type = "folder" if kind == "folders" else "organization"
        return chain

    # -------------------------------------------------------------------------
    # Identities and keys
    # -------------------------------------------------------------------------

    def add_service_account(
        self,
        project_id: str,
        account_id: str,
        *,
        display_name: str = "",
        description: str = "",
        disabled: bool = False,
    ) -> ServiceAccount:
        email = service_account_email(account_id, project_id)
        account = ServiceAccount(
            project_id=project_id,
            account_id=account_id,
            email=email,
            name=service_account_name(project_id, email),
            unique_id=str(self._next_unique_id()),
            display_name=display_name,
            description=description,
            disabled=disabled,
        )
        self.service_accounts[email] = account
        return account

    def _next_unique_id(self) -> int:
        self._unique_id_counter += 1
        return self._unique_id_counter

    def soft_delete_service_account(self, email: str) -> None:
        """Delete an account but keep its id reserved, as the provider does."""
        self.service_accounts.pop(email, None)
        self.soft_deleted_accounts.add(email)

    def add_key(self, account_name: str) -> ServiceAccountKey:
        self._key_counter += 1
        valid_after = KEY_CLOCK_ORIGIN + timedelta(seconds=self._key_counter)
        key = ServiceAccountKey(
            name=f"{account_name}/keys/key{self._key_counter:04d}",
            valid_after=valid_after.isoformat().replace("+00:00", "Z"),
            valid_before=(valid_after + KEY_VALIDITY).isoformat().replace("+00:00", "Z"),
            private_key_data=base64.b64encode(
                f"private-key-{self._key_counter}".encode()
            ).decode(),
        )
        self.keys[key.name] = key
        return key

    def keys_for(self, account_name: str) -> list[ServiceAccountKey]:
        prefix = f"{account_name}/keys/"
        return [k for name, k in self.keys.items() if name.startswith(prefix)]

    # -------------------------------------------------------------------------
    # Roles
    # -------------------------------------------------------------------------

    def add_predefined_role(self, name: str, title: str = "") -> RoleDefinition:
        role = RoleDefinition(name=name, title=title or name)
        self.predefined_roles[name] = role
        return role

    def add_custom_role(
        self,
        name: str,
        *,
        title: str = "",
        description: str = "",
        permissions: list[str] | None = None,
        stage: str = "GA",
        deleted: bool = False,
    ) -> RoleDefinition:
        role = RoleDefinition(
            name=name,
            title=title,
            description=description,
            permissions=list(permissions or []),
            stage=stage,
            deleted=deleted,
        )
        self.custom_roles[name] = role
        return role

    def live_role(self, name: str) -> RoleDefinition | None:
        role = self.custom_roles.get(name)
        if role is None or role.deleted:
            return None
        return role

    # -------------------------------------------------------------------------
    # Policies
    # -------------------------------------------------------------------------

    def next_etag(self) -> str:
        self._etag_counter += 1
        return f"etag-{self._etag_counter}"

    def policy(self, project_id: str) -> Policy:
        return copy.deepcopy(self.policies[project_id])

    def members_of(self, project_id: str, role: str) -> list[str]:
        return [
            m
            for b in self.policies[project_id].bindings
            if b.role == role and b.condition is None
            for m in b.members
        ]

    def holds(self, project_id: str, role: str, member: str) -> bool:
        return member in self.members_of(project_id, role)

    def revoke(self, project_id: str, role: str, member: str) -> None:
        """Out-of-band binding removal, to simulate drift."""
        policy = self.policies[project_id]
        for binding in policy.bindings:
            if binding.role == role and member in binding.members:
                binding.members.remove(member)
        policy.bindings = [b for b in policy.bindings if b.members]
        policy.etag = self.next_etag()
