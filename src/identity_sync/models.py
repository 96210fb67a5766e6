"""Pydantic models for the desired integration spec and the persisted record.

These models provide:
1. Type-safe YAML/JSON parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Reconstruction of engine state from the flat persisted record
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from .config import (
    MAX_ACCOUNT_ID_LENGTH,
    MAX_DESCRIPTION_BYTES,
    MIN_ACCOUNT_ID_LENGTH,
    RESERVED_ACCOUNT_ID_PREFIX,
    SERVICE_ACCOUNT_DEFAULT_DESCRIPTION,
    SERVICE_ACCOUNT_DEFAULT_DISPLAY_NAME,
    VALID_ACCOUNT_ID_PATTERN,
    ConfigurationError,
)
from .lifecycle import IntegrationState
from .provider import (
    ServiceAccount,
    ServiceAccountKey,
    parse_role_name,
    service_account_email,
    service_account_name,
)


class DiscoveryMode(str, Enum):
    """How target scopes are discovered."""

    SINGLE = "single"
    FOLDER = "folder"
    ORGANIZATION = "organization"


# Fields whose change cannot be applied in place
REPLACEMENT_FIELDS: tuple[str, ...] = (
    "project_id",
    "account_id",
    "central_management_project_id_in_folder",
    "central_management_project_id_in_org",
)


class IntegrationSpec(BaseModel):
    """Desired state of one cross-scope identity integration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    project_id: str | None = Field(None, alias="projectId")
    account_id: str = Field(..., alias="accountId")
    display_name: str = Field(SERVICE_ACCOUNT_DEFAULT_DISPLAY_NAME, alias="displayName")
    description: str = SERVICE_ACCOUNT_DEFAULT_DESCRIPTION
    create_ignore_already_exists: bool = Field(True, alias="createIgnoreAlreadyExists")

    # Central-management anchors (mutually exclusive)
    central_management_project_id_in_folder: str | None = Field(
        None, alias="centralManagementProjectIdInFolder"
    )
    central_management_project_id_in_org: str | None = Field(
        None, alias="centralManagementProjectIdInOrg"
    )

    exclude_free_trial_projects: bool = Field(True, alias="excludeFreeTrialProjects")
    exclude_projects: list[str] = Field(default_factory=list, alias="excludeProjects")

    roles: list[str] = Field(..., min_length=1)

    # Opaque; any change in value requests a key rotation
    rotation_time: str | None = Field(None, alias="rotationTime")

    @field_validator("account_id")
    @classmethod
    def validate_account_id(cls, v: str) -> str:
        if not (MIN_ACCOUNT_ID_LENGTH <= len(v) <= MAX_ACCOUNT_ID_LENGTH):
            raise ValueError(
                f"accountId must be between {MIN_ACCOUNT_ID_LENGTH} and "
                f"{MAX_ACCOUNT_ID_LENGTH} characters, got {len(v)} characters"
            )
        if v.lower().startswith(RESERVED_ACCOUNT_ID_PREFIX):
            raise ValueError(f"accountId cannot start with '{RESERVED_ACCOUNT_ID_PREFIX}' prefix")
        if not re.match(VALID_ACCOUNT_ID_PATTERN, v):
            raise ValueError(
                "accountId must start with a lowercase letter, followed by lowercase "
                "letters, digits, or hyphens, and must end with a letter or digit"
            )
        return v

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        size = len(v.encode("utf-8"))
        if size > MAX_DESCRIPTION_BYTES:
            raise ValueError(
                f"description must be at most {MAX_DESCRIPTION_BYTES} UTF-8 bytes, got {size} bytes"
            )
        return v

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, v: list[str]) -> list[str]:
        for role in v:
            parse_role_name(role)
        # Preserve configured order, drop duplicates
        return list(dict.fromkeys(v))

    @field_validator("exclude_projects")
    @classmethod
    def validate_exclude_projects(cls, v: list[str]) -> list[str]:
        return [p.strip() for p in v if p.strip()]

    @model_validator(mode="after")
    def validate_discovery_mode(self) -> IntegrationSpec:
        if self.central_management_project_id_in_folder and self.central_management_project_id_in_org:
            raise ValueError(
                "centralManagementProjectIdInFolder and centralManagementProjectIdInOrg "
                "are mutually exclusive"
            )
        return self

    @property
    def discovery_mode(self) -> DiscoveryMode:
        if self.central_management_project_id_in_folder:
            return DiscoveryMode.FOLDER
        if self.central_management_project_id_in_org:
            return DiscoveryMode.ORGANIZATION
        return DiscoveryMode.SINGLE

    @property
    def anchor_project(self) -> str | None:
        """Central-management project used to find the enclosing container."""
        return (
            self.central_management_project_id_in_folder
            or self.central_management_project_id_in_org
        )

    def resolve_project_id(self, default_project_id: str | None = None) -> str:
        """Project hosting the identity.

        Resolution order: projectId, folder anchor, org anchor, default.

        Raises:
            ConfigurationError: If no project can be determined.
        """
        project = self.project_id or self.anchor_project or default_project_id
        if not project:
            raise ConfigurationError(
                "projectId is required when no central management project is set "
                "and no default project is configured"
            )
        return project


class IntegrationRecord(IntegrationSpec):
    """Flat persisted record: desired fields plus everything observed.

    This is the only durable memory between invocations. ScopeSet and
    ReplicationMap membership are reconstructed from it plus live queries.
    """

    project_id: str = Field(..., alias="projectId")

    service_account_email: str | None = Field(None, alias="serviceAccountEmail")
    service_account_name: str | None = Field(None, alias="serviceAccountName")
    service_account_unique_id: str | None = Field(None, alias="serviceAccountUniqueId")

    key_name: str | None = Field(None, alias="keyName")
    private_key: SecretStr | None = Field(None, alias="privateKey")
    valid_after: str | None = Field(None, alias="validAfter")
    valid_before: str | None = Field(None, alias="validBefore")

    bound_projects: list[str] = Field(default_factory=list, alias="boundProjects")
    bound_project_numbers: list[str] = Field(default_factory=list, alias="boundProjectNumbers")

    state: IntegrationState = IntegrationState.PROVISIONING

    @classmethod
    def from_spec(cls, spec: IntegrationSpec, project_id: str) -> IntegrationRecord:
        """Start a record for a new integration."""
        data = spec.model_dump()
        data["project_id"] = project_id
        return cls.model_validate(data)

    def apply_spec(self, spec: IntegrationSpec) -> None:
        """Copy mutable desired fields from a spec."""
        self.display_name = spec.display_name
        self.description = spec.description
        self.create_ignore_already_exists = spec.create_ignore_already_exists
        self.exclude_free_trial_projects = spec.exclude_free_trial_projects
        self.exclude_projects = list(spec.exclude_projects)
        self.roles = list(spec.roles)
        self.rotation_time = spec.rotation_time

    def changed_replacement_fields(
        self, spec: IntegrationSpec, default_project_id: str | None = None
    ) -> list[str]:
        """Names of immutable fields that differ from the desired spec."""
        changed: list[str] = []
        if spec.resolve_project_id(default_project_id) != self.project_id:
            changed.append("project_id")
        for name in REPLACEMENT_FIELDS[1:]:
            if getattr(spec, name) != getattr(self, name):
                changed.append(name)
        return changed

    def identity(self) -> ServiceAccount | None:
        """Identity projection, None until provisioning succeeded."""
        if not self.service_account_email:
            return None
        return ServiceAccount(
            project_id=self.project_id,
            account_id=self.account_id,
            email=self.service_account_email,
            name=self.service_account_name
            or service_account_name(self.project_id, self.service_account_email),
            unique_id=self.service_account_unique_id or "",
            display_name=self.display_name,
            description=self.description,
        )

    def expected_identity_name(self) -> str:
        """Identity resource name derived from the natural key."""
        return self.service_account_name or service_account_name(
            self.project_id, service_account_email(self.account_id, self.project_id)
        )

    def set_identity(self, identity: ServiceAccount) -> None:
        self.service_account_email = identity.email
        self.service_account_name = identity.name
        self.service_account_unique_id = identity.unique_id

    def credential(self) -> ServiceAccountKey | None:
        if not self.key_name:
            return None
        return ServiceAccountKey(
            name=self.key_name,
            valid_after=self.valid_after or "",
            valid_before=self.valid_before or "",
            private_key_data=self.private_key.get_secret_value() if self.private_key else None,
        )

    def set_credential(self, key: ServiceAccountKey | None) -> None:
        if key is None:
            self.key_name = None
            self.private_key = None
            self.valid_after = None
            self.valid_before = None
            return
        self.key_name = key.name
        if key.private_key_data is not None:
            self.private_key = SecretStr(key.private_key_data)
        self.valid_after = key.valid_after
        self.valid_before = key.valid_before

    def number_for(self, project_id: str) -> str:
        """Persisted project number for a bound project, "" if unknown."""
        try:
            index = self.bound_projects.index(project_id)
        except ValueError:
            return ""
        if index < len(self.bound_project_numbers):
            return self.bound_project_numbers[index]
        return ""

    def to_state_dict(self) -> dict[str, Any]:
        """Serialize for persistence, including the secret material.

        SECURITY: Only for writing the state file. Use redacted_dict() for
        anything displayed or logged.
        """
        data = self.model_dump(mode="json", by_alias=True)
        data["privateKey"] = self.private_key.get_secret_value() if self.private_key else None
        return data

    def redacted_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True)
        data["privateKey"] = "<redacted>" if self.private_key else None
        return data
