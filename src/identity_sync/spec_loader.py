"""Desired-spec and record file handling with validation.

The desired spec is YAML written by humans; the record is JSON written by
this engine and read back on the next invocation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. The record contains private key material and is written
with owner-only permissions.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_RECORD_FILE_SIZE_BYTES, MAX_SPEC_FILE_SIZE_BYTES
from .models import IntegrationRecord, IntegrationSpec

logger = logging.getLogger(__name__)

RECORD_FILE_MODE = 0o600


class SpecLoadError(Exception):
    """Raised when spec or record loading or validation fails."""

    pass


def _read_bounded(path: Path, max_bytes: int, kind: str) -> str:
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {kind} file {path}: {e}") from e

    if file_size > max_bytes:
        raise SpecLoadError(f"{kind.capitalize()} file exceeds maximum size of {max_bytes} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {kind} file {path}: {e}") from e


def _format_validation_error(path: Path, error: ValidationError) -> str:
    # Format Pydantic validation errors for readability
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"]) or "<root>"
        errors.append(f"  - {loc}: {item['msg']}")
    error_list = "\n".join(errors)
    return f"Validation failed for {path}:\n{error_list}"


def load_integration_spec(spec_path: Path) -> IntegrationSpec:
    """Load and validate a desired integration spec from YAML.

    Both a flat mapping and a Kubernetes-style wrapper
    (apiVersion/kind/metadata/spec) are accepted.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    content = _read_bounded(spec_path, MAX_SPEC_FILE_SIZE_BYTES, "spec")

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    try:
        spec = IntegrationSpec.model_validate(spec_data)
    except ValidationError as e:
        raise SpecLoadError(_format_validation_error(spec_path, e)) from e

    logger.info(
        "Loaded integration spec",
        extra={"path": str(spec_path), "account_id": spec.account_id},
    )
    return spec


def load_record(record_path: Path) -> IntegrationRecord | None:
    """Load the persisted record. Returns None if the file does not exist.

    Raises:
        SpecLoadError: If the file exists but is unreadable or invalid.
    """
    if not record_path.exists():
        return None

    content = _read_bounded(record_path, MAX_RECORD_FILE_SIZE_BYTES, "record")

    try:
        raw_data: Any = json.loads(content)
    except json.JSONDecodeError as e:
        raise SpecLoadError(f"Invalid JSON in {record_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Record must be a JSON object: {record_path}")

    try:
        return IntegrationRecord.model_validate(raw_data)
    except ValidationError as e:
        raise SpecLoadError(_format_validation_error(record_path, e)) from e


def save_record(record_path: Path, record: IntegrationRecord) -> None:
    """Write the record atomically with owner-only permissions.

    Raises:
        SpecLoadError: If the file cannot be written.
    """
    tmp_path = record_path.with_name(record_path.name + ".tmp")
    content = json.dumps(record.to_state_dict(), indent=2, sort_keys=True)
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, RECORD_FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.write("\n")
        os.replace(tmp_path, record_path)
    except OSError as e:
        raise SpecLoadError(f"Failed to write record file {record_path}: {e}") from e
    finally:
        # Gone after a successful replace
        tmp_path.unlink(missing_ok=True)

    logger.debug(
        "Saved record",
        extra={"path": str(record_path), "state": record.state.value},
    )


def delete_record(record_path: Path) -> None:
    """Remove the record file if present."""
    try:
        record_path.unlink(missing_ok=True)
    except OSError as e:
        raise SpecLoadError(f"Failed to remove record file {record_path}: {e}") from e
