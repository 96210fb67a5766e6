"""Credential acquisition and security audit events.

The engine authenticates with Application Default Credentials (workload
identity, metadata server, or gcloud user credentials). It mints long-lived
keys for the identity it manages, but it should not itself run on one:
key-file credentials are accepted but flagged in the audit log.

SECURITY INVARIANTS:
1. Private key material is never logged; records are shown through
   redacted_dict().
2. Every identity and key lifecycle event is emitted on the audit logger.
"""

from __future__ import annotations

import logging
from typing import Any

import google.auth
from google.auth.exceptions import DefaultCredentialsError
from google.oauth2 import service_account

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = f"{__name__}.audit"
audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class CredentialError(Exception):
    """Raised when no usable ambient credentials are available."""

    pass


def get_default_credentials() -> tuple[Any, str | None]:
    """Resolve Application Default Credentials for the control-plane APIs.

    Returns:
        Tuple of (credentials, project_id detected from the environment).

    Raises:
        CredentialError: If no default credentials can be found.
    """
    try:
        credentials, project_id = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
    except DefaultCredentialsError as e:
        logger.critical(
            "No application default credentials available",
            extra={"security_event": "credentials_missing"},
        )
        raise CredentialError(
            "Application default credentials not found. Run "
            "'gcloud auth application-default login' or attach a workload identity."
        ) from e

    credential_type = type(credentials).__name__
    if isinstance(credentials, service_account.Credentials):
        logger.warning(
            "Running with service account key file credentials",
            extra={
                "security_event": "key_file_credentials",
                "credential_type": credential_type,
            },
        )
    else:
        logger.info(
            "Using application default credentials",
            extra={"credential_type": credential_type, "detected_project": project_id},
        )
    return credentials, project_id


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    All security events are logged with structured data for SIEM ingestion.

    Args:
        event_type: Type of security event (identity, credential, binding, ...)
        target_resource: Resource name being acted on.
        action: Action being performed.
        result: Result of the action (success, failure, adopted, absent).
    """
    audit_logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
