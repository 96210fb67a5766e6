"""Google Cloud implementation of the ProviderClient protocol.

This module talks to three REST surfaces through googleapiclient discovery:
1. IAM v1: service accounts, keys, predefined and custom roles
2. Resource Manager v1: projects, ancestry, project access policies
3. Resource Manager v2: folders

Every HttpError is translated into a ProviderError with an ErrorKind. The
classification depends on the operation: a 409 means "already exists" on a
create but "concurrent modification" on a policy write.

SECURITY:
- Clients are built from Application Default Credentials only
- Requests are never retried inside the SDK (num_retries=0); retry policy
  belongs to the engine so it can be bounded and logged
"""

from __future__ import annotations

import logging
from typing import Any

from googleapiclient import discovery
from googleapiclient.errors import HttpError

from .provider import (
    ORGANIZATION_ROLE_PREFIX,
    PREDEFINED_ROLE_PREFIX,
    Binding,
    ErrorKind,
    Policy,
    Project,
    ProviderError,
    RoleDefinition,
    ServiceAccount,
    ServiceAccountKey,
    service_account_name,
)

logger = logging.getLogger(__name__)

# Policy version that preserves conditional bindings on read-modify-write
REQUESTED_POLICY_VERSION = 3

KEY_PRIVATE_KEY_TYPE = "TYPE_GOOGLE_CREDENTIALS_FILE"
KEY_ALGORITHM = "KEY_ALG_RSA_2048"

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Substring of the 400 returned while a new principal is still propagating
MEMBER_NOT_FOUND_MARKER = "does not exist"


def classify_http_error(
    error: HttpError,
    *,
    conflict_kind: ErrorKind = ErrorKind.FATAL,
    policy_write: bool = False,
) -> ErrorKind:
    """Map an HttpError to an ErrorKind.

    Args:
        error: The SDK error.
        conflict_kind: Kind to use for 409 on this operation.
        policy_write: Whether the call was setIamPolicy, where 412 and
            "member does not exist" 400s are transient.
    """
    status = int(error.resp.status)
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status == 409:
        return ErrorKind.TRANSIENT if policy_write else conflict_kind
    if policy_write and status == 412:
        return ErrorKind.TRANSIENT
    if policy_write and status == 400 and MEMBER_NOT_FOUND_MARKER in str(error):
        return ErrorKind.TRANSIENT
    if status in TRANSIENT_STATUS_CODES:
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


def _service_account_from_api(project_id: str, data: dict[str, Any]) -> ServiceAccount:
    email = data.get("email", "")
    return ServiceAccount(
        project_id=data.get("projectId", project_id),
        account_id=email.split("@", 1)[0],
        email=email,
        name=data.get("name") or service_account_name(project_id, email),
        unique_id=data.get("uniqueId", ""),
        display_name=data.get("displayName", ""),
        description=data.get("description", ""),
        disabled=bool(data.get("disabled", False)),
    )


def _role_from_api(data: dict[str, Any]) -> RoleDefinition:
    return RoleDefinition(
        name=data.get("name", ""),
        title=data.get("title", ""),
        description=data.get("description", ""),
        permissions=list(data.get("includedPermissions", [])),
        stage=data.get("stage", "GA"),
        deleted=bool(data.get("deleted", False)),
    )


def _role_to_api(role: RoleDefinition) -> dict[str, Any]:
    return {
        "title": role.title,
        "description": role.description,
        "includedPermissions": list(role.permissions),
        "stage": role.stage,
    }


def _key_from_api(data: dict[str, Any]) -> ServiceAccountKey:
    return ServiceAccountKey(
        name=data.get("name", ""),
        valid_after=data.get("validAfterTime", ""),
        valid_before=data.get("validBeforeTime", ""),
        private_key_data=data.get("privateKeyData"),
    )


def _project_from_api(data: dict[str, Any]) -> Project:
    return Project(
        project_id=data.get("projectId", ""),
        project_number=str(data.get("projectNumber", "")),
        lifecycle_state=data.get("lifecycleState", ""),
        labels=dict(data.get("labels", {})),
    )


def policy_from_api(data: dict[str, Any]) -> Policy:
    return Policy(
        bindings=[
            Binding(
                role=b.get("role", ""),
                members=list(b.get("members", [])),
                condition=b.get("condition"),
            )
            for b in data.get("bindings", [])
        ],
        etag=data.get("etag", ""),
        version=int(data.get("version", 1)),
    )


def policy_to_api(policy: Policy) -> dict[str, Any]:
    bindings = []
    for binding in policy.bindings:
        entry: dict[str, Any] = {"role": binding.role, "members": list(binding.members)}
        if binding.condition is not None:
            entry["condition"] = binding.condition
        bindings.append(entry)
    data: dict[str, Any] = {"bindings": bindings, "version": policy.version}
    if policy.etag:
        data["etag"] = policy.etag
    return data


class GcpProviderClient:
    """ProviderClient backed by the IAM and Resource Manager REST APIs."""

    def __init__(self, credentials: Any) -> None:
        """Build discovery clients.

        Args:
            credentials: google.auth credentials (see security.get_default_credentials).
        """
        self._iam = discovery.build("iam", "v1", credentials=credentials, cache_discovery=False)
        self._crm = discovery.build(
            "cloudresourcemanager", "v1", credentials=credentials, cache_discovery=False
        )
        self._crm_folders = discovery.build(
            "cloudresourcemanager", "v2", credentials=credentials, cache_discovery=False
        )

    # -------------------------------------------------------------------------
    # Request helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _execute(
        request: Any,
        operation: str,
        *,
        conflict_kind: ErrorKind = ErrorKind.FATAL,
        policy_write: bool = False,
    ) -> dict[str, Any]:
        try:
            return request.execute(num_retries=0) or {}
        except HttpError as e:
            kind = classify_http_error(e, conflict_kind=conflict_kind, policy_write=policy_write)
            status = int(e.resp.status)
            logger.debug(
                "Google API call failed",
                extra={"operation": operation, "status_code": status, "kind": kind.value},
            )
            raise ProviderError(
                f"{operation} failed ({status}): {e}", kind=kind, status_code=status
            ) from e

    def _list_all(self, collection: Any, request: Any, items_key: str, operation: str) -> list:
        items: list[Any] = []
        while request is not None:
            response = self._execute(request, operation)
            items.extend(response.get(items_key, []))
            request = collection.list_next(previous_request=request, previous_response=response)
        return items

    def _role_collection(self, name: str) -> Any:
        if name.startswith(PREDEFINED_ROLE_PREFIX):
            return self._iam.roles()
        if name.startswith(ORGANIZATION_ROLE_PREFIX):
            return self._iam.organizations().roles()
        return self._iam.projects().roles()

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    def create_service_account(
        self, project_id: str, account_id: str, display_name: str, description: str
    ) -> ServiceAccount:
        request = self._iam.projects().serviceAccounts().create(
            name=f"projects/{project_id}",
            body={
                "accountId": account_id,
                "serviceAccount": {"displayName": display_name, "description": description},
            },
        )
        data = self._execute(
            request, "create service account", conflict_kind=ErrorKind.ALREADY_EXISTS
        )
        return _service_account_from_api(project_id, data)

    def get_service_account(self, name: str) -> ServiceAccount:
        request = self._iam.projects().serviceAccounts().get(name=name)
        data = self._execute(request, "get service account")
        return _service_account_from_api(name.split("/")[1], data)

    def patch_service_account(
        self, name: str, display_name: str, description: str, update_mask: str
    ) -> ServiceAccount:
        request = self._iam.projects().serviceAccounts().patch(
            name=name,
            body={
                "serviceAccount": {"displayName": display_name, "description": description},
                "updateMask": update_mask,
            },
        )
        data = self._execute(request, "patch service account")
        return _service_account_from_api(name.split("/")[1], data)

    def delete_service_account(self, name: str) -> None:
        self._execute(
            self._iam.projects().serviceAccounts().delete(name=name), "delete service account"
        )

    def list_service_account_keys(self, name: str) -> list[str]:
        request = self._iam.projects().serviceAccounts().keys().list(
            name=name, keyTypes="USER_MANAGED"
        )
        data = self._execute(request, "list service account keys")
        return [k.get("name", "") for k in data.get("keys", [])]

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    def create_service_account_key(self, name: str) -> ServiceAccountKey:
        request = self._iam.projects().serviceAccounts().keys().create(
            name=name,
            body={"privateKeyType": KEY_PRIVATE_KEY_TYPE, "keyAlgorithm": KEY_ALGORITHM},
        )
        return _key_from_api(self._execute(request, "create service account key"))

    def get_service_account_key(self, name: str) -> ServiceAccountKey:
        request = self._iam.projects().serviceAccounts().keys().get(name=name)
        return _key_from_api(self._execute(request, "get service account key"))

    def delete_service_account_key(self, name: str) -> None:
        request = self._iam.projects().serviceAccounts().keys().delete(name=name)
        self._execute(request, "delete service account key")

    # -------------------------------------------------------------------------
    # Roles
    # -------------------------------------------------------------------------

    def get_role(self, name: str) -> RoleDefinition:
        request = self._role_collection(name).get(name=name)
        return _role_from_api(self._execute(request, "get role"))

    def create_role(self, scope_id: str, role_id: str, role: RoleDefinition) -> RoleDefinition:
        request = self._iam.projects().roles().create(
            parent=f"projects/{scope_id}",
            body={"roleId": role_id, "role": _role_to_api(role)},
        )
        data = self._execute(request, "create role", conflict_kind=ErrorKind.ALREADY_EXISTS)
        return _role_from_api(data)

    def patch_role(self, name: str, role: RoleDefinition, update_mask: str) -> RoleDefinition:
        request = self._role_collection(name).patch(
            name=name, body=_role_to_api(role), updateMask=update_mask
        )
        return _role_from_api(self._execute(request, "patch role"))

    def undelete_role(self, name: str) -> RoleDefinition:
        request = self._role_collection(name).undelete(name=name, body={})
        return _role_from_api(self._execute(request, "undelete role"))

    def delete_role(self, name: str) -> None:
        self._execute(self._role_collection(name).delete(name=name), "delete role")

    # -------------------------------------------------------------------------
    # Hierarchy
    # -------------------------------------------------------------------------

    def get_project(self, project_id: str) -> Project:
        request = self._crm.projects().get(projectId=project_id)
        return _project_from_api(self._execute(request, "get project"))

    def get_ancestry(self, project_id: str) -> list[tuple[str, str]]:
        request = self._crm.projects().getAncestry(projectId=project_id, body={})
        data = self._execute(request, "get ancestry")
        return [
            (a["resourceId"]["type"], a["resourceId"]["id"])
            for a in data.get("ancestor", [])
            if "resourceId" in a
        ]

    def list_folders(self, parent: str) -> list[str]:
        folders = self._crm_folders.folders()
        items = self._list_all(folders, folders.list(parent=parent), "folders", "list folders")
        return [
            f["name"].split("/", 1)[1]
            for f in items
            if f.get("lifecycleState") == "ACTIVE" and "name" in f
        ]

    def list_projects(self, parent_type: str, parent_id: str) -> list[Project]:
        projects = self._crm.projects()
        request = projects.list(filter=f"parent.type:{parent_type} parent.id:{parent_id}")
        items = self._list_all(projects, request, "projects", "list projects")
        return [_project_from_api(p) for p in items]

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    def get_iam_policy(self, project_id: str) -> Policy:
        request = self._crm.projects().getIamPolicy(
            resource=project_id,
            body={"options": {"requestedPolicyVersion": REQUESTED_POLICY_VERSION}},
        )
        return policy_from_api(self._execute(request, "get IAM policy"))

    def set_iam_policy(self, project_id: str, policy: Policy) -> Policy:
        request = self._crm.projects().setIamPolicy(
            resource=project_id, body={"policy": policy_to_api(policy)}
        )
        return policy_from_api(self._execute(request, "set IAM policy", policy_write=True))
