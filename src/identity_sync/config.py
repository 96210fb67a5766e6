"""Engine configuration with validation.

Timing and retry bounds are enforced at configuration load time so a
misconfigured engine fails before touching any provider API.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_PROPAGATION_WAIT_SECONDS = 5
MAX_PROPAGATION_WAIT_SECONDS = 300

MAX_PROVISION_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 5
MAX_RETRY_ATTEMPTS_LIMIT = 10

IAM_POLICY_MAX_RETRIES = 5
IAM_POLICY_RETRY_INITIAL_WAIT_SECONDS = 1
IAM_POLICY_RETRY_MAX_WAIT_SECONDS = 30

DEFAULT_CALL_TIMEOUT_SECONDS = 60
DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800

# Security constraints - enforced limits to prevent abuse
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file
MAX_RECORD_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max persisted record
MAX_DESCRIPTION_BYTES = 256

# Input validation patterns
VALID_ACCOUNT_ID_PATTERN = r"^[a-z](?:[-a-z0-9]{4,28}[a-z0-9])$"
MIN_ACCOUNT_ID_LENGTH = 6
MAX_ACCOUNT_ID_LENGTH = 30
RESERVED_ACCOUNT_ID_PREFIX = "goog"

# Defaults applied to the managed identity
SERVICE_ACCOUNT_DEFAULT_DISPLAY_NAME = "Vision One CAM Service Account"
SERVICE_ACCOUNT_DEFAULT_DESCRIPTION = (
    "Service account for Trend Micro Vision One Cloud Account Management"
)
REPLICATED_ROLE_DESCRIPTION_SUFFIX = " (replicated for multi-project service account)"

# Environment variables consulted (in order) for the default project
DEFAULT_PROJECT_ENV_VARS: tuple[str, ...] = (
    "GOOGLE_PROJECT",
    "GCP_PROJECT",
    "GOOGLE_CLOUD_PROJECT",
)


@dataclass(frozen=True)
class EngineConfig:
    """Reconciliation engine configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-reconcile.
    Zero delays are allowed so tests can run without wall-clock waits.
    """

    # Timing
    propagation_wait_seconds: float = DEFAULT_PROPAGATION_WAIT_SECONDS
    call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS
    operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Retry Executor (provisioning calls)
    retry_max_attempts: int = MAX_PROVISION_RETRIES
    retry_base_delay_seconds: float = RETRY_BACKOFF_BASE_SECONDS

    # Access-policy read-modify-write conflicts
    iam_policy_max_retries: int = IAM_POLICY_MAX_RETRIES
    iam_policy_retry_initial_wait_seconds: float = IAM_POLICY_RETRY_INITIAL_WAIT_SECONDS
    iam_policy_retry_max_wait_seconds: float = IAM_POLICY_RETRY_MAX_WAIT_SECONDS

    # Project used when a spec names neither a project nor an anchor
    default_project_id: str | None = None

    # Emit security audit and provenance events
    enable_audit_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (0 <= self.propagation_wait_seconds <= MAX_PROPAGATION_WAIT_SECONDS):
            errors.append(
                f"PROPAGATION_WAIT_SECONDS must be between 0 and {MAX_PROPAGATION_WAIT_SECONDS}"
            )

        if self.call_timeout_seconds <= 0:
            errors.append("CALL_TIMEOUT must be positive")

        if self.operation_timeout_seconds < self.call_timeout_seconds:
            errors.append("OPERATION_TIMEOUT must be at least CALL_TIMEOUT")

        if not (1 <= self.retry_max_attempts <= MAX_RETRY_ATTEMPTS_LIMIT):
            errors.append(f"RETRY_MAX_ATTEMPTS must be between 1 and {MAX_RETRY_ATTEMPTS_LIMIT}")

        if self.retry_base_delay_seconds < 0:
            errors.append("RETRY_BASE_DELAY_SECONDS cannot be negative")

        if self.iam_policy_max_retries < 1:
            errors.append("IAM_POLICY_MAX_RETRIES must be at least 1")

        if self.iam_policy_retry_initial_wait_seconds < 0:
            errors.append("IAM_POLICY_RETRY_INITIAL_WAIT cannot be negative")

        if self.iam_policy_retry_max_wait_seconds < self.iam_policy_retry_initial_wait_seconds:
            errors.append("IAM_POLICY_RETRY_MAX_WAIT must be at least IAM_POLICY_RETRY_INITIAL_WAIT")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            PROPAGATION_WAIT_SECONDS: Sleep after identity creation (default: 5)
            RETRY_MAX_ATTEMPTS: Attempts for retried provisioning calls (default: 3)
            RETRY_BASE_DELAY_SECONDS: Base backoff, doubled per attempt (default: 5)
            IAM_POLICY_MAX_RETRIES: Policy read-modify-write attempts (default: 5)
            IAM_POLICY_RETRY_INITIAL_WAIT: Initial conflict backoff (default: 1)
            IAM_POLICY_RETRY_MAX_WAIT: Maximum conflict backoff (default: 30)
            CALL_TIMEOUT: Timeout for a single provider call in seconds (default: 60)
            OPERATION_TIMEOUT: Deadline for a whole operation in seconds (default: 1800)
            ENABLE_AUDIT_LOGGING: Emit audit/provenance events (default: true)
            GOOGLE_PROJECT, GCP_PROJECT, GOOGLE_CLOUD_PROJECT: Default project,
                first one set wins.
        """

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        default_project = next(
            (os.environ[key] for key in DEFAULT_PROJECT_ENV_VARS if os.environ.get(key)),
            None,
        )

        return cls(
            propagation_wait_seconds=get_float(
                "PROPAGATION_WAIT_SECONDS", DEFAULT_PROPAGATION_WAIT_SECONDS
            ),
            call_timeout_seconds=get_float("CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT_SECONDS),
            operation_timeout_seconds=get_float(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            retry_max_attempts=get_int("RETRY_MAX_ATTEMPTS", MAX_PROVISION_RETRIES),
            retry_base_delay_seconds=get_float(
                "RETRY_BASE_DELAY_SECONDS", RETRY_BACKOFF_BASE_SECONDS
            ),
            iam_policy_max_retries=get_int("IAM_POLICY_MAX_RETRIES", IAM_POLICY_MAX_RETRIES),
            iam_policy_retry_initial_wait_seconds=get_float(
                "IAM_POLICY_RETRY_INITIAL_WAIT", IAM_POLICY_RETRY_INITIAL_WAIT_SECONDS
            ),
            iam_policy_retry_max_wait_seconds=get_float(
                "IAM_POLICY_RETRY_MAX_WAIT", IAM_POLICY_RETRY_MAX_WAIT_SECONDS
            ),
            default_project_id=default_project,
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
        )

    def with_default_project(self, project_id: str) -> EngineConfig:
        """Copy of this configuration with a different default project."""
        return replace(self, default_project_id=project_id)
