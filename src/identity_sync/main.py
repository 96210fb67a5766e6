"""Logging setup and engine wiring for the identity-sync CLI.

AMBIENT CREDENTIALS:
The engine authenticates with Application Default Credentials only. It
manages a keyed identity for an external consumer, but never reads or
writes credentials of its own from the spec or record.

Each invocation is one-shot: load the desired spec and the record, run one
engine operation, persist the record, exit with a status code.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from .config import ConfigurationError, EngineConfig
from .gcp_client import GcpProviderClient
from .models import IntegrationRecord, IntegrationSpec
from .reconciler import IntegrationReconciler, ReconcileResult, ReplacementRequiredError
from .security import AUDIT_LOGGER_NAME, CredentialError, get_default_credentials
from .spec_loader import SpecLoadError, delete_record, save_record

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_OPERATION_FAILED = 1
EXIT_CONFIGURATION_ERROR = 2

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    json_output: bool = True,
    level: str = "INFO",
    enable_audit_logging: bool = True,
) -> None:
    """Configure structured logging on stderr.

    Stdout is reserved for command output (records, validation summaries).

    Args:
        json_output: JSON lines if True, plain text otherwise.
        level: Root log level name.
        enable_audit_logging: If False, security audit events are dropped.
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level.upper())

    # Reduce noise from the Google client libraries
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)
    logging.getLogger("google.auth").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logging.getLogger(AUDIT_LOGGER_NAME).disabled = not enable_audit_logging


def build_reconciler(config: EngineConfig) -> IntegrationReconciler:
    """Create an engine bound to the Google Cloud control plane.

    Raises:
        CredentialError: If no ambient credentials are available.
    """
    credentials, detected_project = get_default_credentials()
    if config.default_project_id is None and detected_project:
        logger.debug("Using project detected from credentials", extra={"project": detected_project})
        config = config.with_default_project(detected_project)
    return IntegrationReconciler(GcpProviderClient(credentials), config)


def persist_result(result: ReconcileResult, record_path: Path) -> None:
    """Write or remove the record after an operation.

    Partial records from a failed create are written too: they are the
    resumption point for the next invocation.
    """
    if result.record is None:
        delete_record(record_path)
        logger.info("Record removed", extra={"path": str(record_path)})
        return
    save_record(record_path, result.record)


def exit_code_for(result: ReconcileResult) -> int:
    if result.success:
        return EXIT_SUCCESS
    return EXIT_OPERATION_FAILED


async def apply_integration(
    reconciler: IntegrationReconciler,
    spec: IntegrationSpec,
    record: IntegrationRecord | None,
    *,
    allow_replace: bool = False,
) -> ReconcileResult:
    """Create when there is no record, update otherwise.

    Raises:
        ReplacementRequiredError: If an immutable field changed and
            allow_replace is False.
    """
    if record is None:
        return await reconciler.create(spec)

    try:
        return await reconciler.update(spec, record)
    except ReplacementRequiredError as e:
        if not allow_replace:
            raise
        logger.warning("Replacing integration", extra={"fields": e.fields})

    deleted = await reconciler.delete(record)
    if not deleted.success:
        return deleted
    return await reconciler.create(spec)


def report_failure(error: Exception) -> int:
    """Log a pre-operation failure and map it to an exit code."""
    match error:
        case CredentialError():
            logger.critical("Credentials unavailable", extra={"error": str(error)})
            return EXIT_CONFIGURATION_ERROR
        case ConfigurationError() | SpecLoadError():
            logger.error("Configuration error", extra={"error": str(error)})
            return EXIT_CONFIGURATION_ERROR
        case _:
            logger.error(
                "Operation failed",
                extra={"error": str(error), "error_type": type(error).__name__},
            )
            return EXIT_OPERATION_FAILED
