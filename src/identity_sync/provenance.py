"""Per-invocation provenance for audit and compliance.

Every create/read/update/delete invocation is stamped with one record that
answers:
- "Which identity was touched, and by which engine version?"
- "Which scopes ended up bound, and which fan-out steps failed?"
- "Was drift detected or a key rotated?"

Partial multi-scope failures do not fail an operation; this record is where
they become visible besides warning-level logs.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
ENGINE_VERSION = os.environ.get("IDENTITY_SYNC_VERSION", "dev")


@dataclass
class FanOutSummary:
    """Counts across target scopes for one invocation."""

    scopes_bound: int = 0
    scopes_failed: int = 0
    replicas_created: int = 0
    replicas_deleted: int = 0

    @property
    def partial(self) -> bool:
        return self.scopes_failed > 0


@dataclass
class OperationProvenance:
    """Complete provenance record for one engine invocation."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    operation: str = ""
    engine_version: str = ENGINE_VERSION
    instance_id: str = ""

    # Identity
    project_id: str = ""
    service_account_email: str = ""
    lifecycle_state: str = ""

    # Outcome
    drift_detected: bool = False
    key_rotated: bool = False
    removed_upstream: bool = False
    fan_out: FanOutSummary = field(default_factory=FanOutSummary)

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Emits provenance records on the structured logger."""

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled
        self._instance_id = os.environ.get("HOSTNAME", "")

    def create_provenance(self, operation: str, project_id: str) -> OperationProvenance:
        return OperationProvenance(
            operation=operation,
            engine_version=ENGINE_VERSION,
            instance_id=self._instance_id,
            project_id=project_id,
        )

    def log_provenance(self, provenance: OperationProvenance) -> None:
        """Log a completed provenance record.

        Level is ERROR for failed invocations and WARNING for partial fan-out
        or detected drift, so incomplete results stand out without failing.
        """
        if not self._enabled:
            return

        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.fan_out.partial or provenance.drift_detected:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Operation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "operation": provenance.operation,
                "service_account": provenance.service_account_email,
                "scopes_bound": provenance.fan_out.scopes_bound,
                "scopes_failed": provenance.fan_out.scopes_failed,
                "drift_detected": provenance.drift_detected,
                "key_rotated": provenance.key_rotated,
                "engine_version": provenance.engine_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )
