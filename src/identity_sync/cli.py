"""Identity sync CLI (idsync).

One-shot commands around the reconciliation engine. The desired spec is a
YAML file; the record produced by the engine lives in a JSON state file.

Usage:
    idsync validate integration.yaml                 # Check a spec offline
    idsync apply integration.yaml --state state.json # Create or update
    idsync refresh --state state.json                # Detect drift
    idsync destroy --state state.json                # Tear down
    idsync show --state state.json                   # Print the record

Exit codes: 0 success, 1 operation failure, 2 configuration or credential error.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, NoReturn

import click

from .config import ConfigurationError, EngineConfig
from .lifecycle import IntegrationState
from .main import (
    EXIT_SUCCESS,
    apply_integration,
    build_reconciler,
    exit_code_for,
    persist_result,
    report_failure,
    setup_logging,
)
from .models import IntegrationRecord
from .reconciler import ReconcileResult
from .security import CredentialError
from .spec_loader import SpecLoadError, load_integration_spec, load_record

CLI_VERSION = "0.1.0"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Failures raised before an operation starts
SETUP_ERRORS = (ConfigurationError, SpecLoadError, CredentialError)

state_option = click.option(
    "--state",
    "state_path",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="JSON state file holding the integration record.",
)


def _load_config(ctx: click.Context) -> EngineConfig:
    """Load engine configuration and configure logging from it."""
    json_output = ctx.obj["log_format"] == "json"
    try:
        config = EngineConfig.from_env()
    except ConfigurationError as e:
        setup_logging(json_output=json_output, level=ctx.obj["log_level"])
        _fail(ctx, e)
    setup_logging(
        json_output=json_output,
        level=ctx.obj["log_level"],
        enable_audit_logging=config.enable_audit_logging,
    )
    return config


def _fail(ctx: click.Context, error: Exception) -> NoReturn:
    click.echo(f"Error: {error}", err=True)
    ctx.exit(report_failure(error))


def _require_record(ctx: click.Context, state_path: Path) -> IntegrationRecord:
    record = load_record(state_path)
    if record is None:
        _fail(ctx, ConfigurationError(f"No record found at {state_path}"))
    return record


def _summary(result: ReconcileResult) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "operation": result.operation.value,
        "success": result.success,
        "durationSeconds": round(result.duration_seconds, 3),
    }
    if result.record is not None:
        summary["state"] = result.record.state.value
        summary["serviceAccountEmail"] = result.record.service_account_email
        summary["boundProjects"] = result.record.bound_projects
    if result.failed_scopes:
        summary["failedScopes"] = result.failed_scopes
    if result.drift_detected:
        summary["driftDetected"] = True
    if result.removed:
        summary["removedUpstream"] = True
    if result.key_rotated:
        summary["keyRotated"] = True
    if result.teardown is not None:
        summary["teardownComplete"] = result.teardown.complete
    if result.error is not None:
        summary["error"] = str(result.error)
    return summary


def _finish(ctx: click.Context, result: ReconcileResult, state_path: Path) -> NoReturn:
    try:
        persist_result(result, state_path)
    except SpecLoadError as e:
        _fail(ctx, e)
    click.echo(json.dumps(_summary(result), indent=2))
    ctx.exit(exit_code_for(result))


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=CLI_VERSION, prog_name="idsync")
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="json",
    show_default=True,
    help="Log line format (logs go to stderr).",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
@click.pass_context
def cli(ctx: click.Context, log_format: str, log_level: str) -> None:
    """Identity sync CLI (idsync).

    Reconciles one service account, its custom roles and its role bindings
    across a single project, a folder, or a whole organization.

    \b
    Quick Start:
        idsync validate integration.yaml
        idsync apply integration.yaml --state state.json
    """
    ctx.ensure_object(dict)
    ctx.obj["log_format"] = log_format
    ctx.obj["log_level"] = log_level


@cli.command()
@click.argument("spec_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def validate(ctx: click.Context, spec_path: Path) -> None:
    """Validate a spec without calling any cloud API."""
    config = _load_config(ctx)
    try:
        spec = load_integration_spec(spec_path)
        project_id = spec.resolve_project_id(config.default_project_id)
    except SETUP_ERRORS as e:
        _fail(ctx, e)

    click.echo(
        json.dumps(
            {
                "valid": True,
                "projectId": project_id,
                "accountId": spec.account_id,
                "discoveryMode": spec.discovery_mode.value,
                "anchorProject": spec.anchor_project,
                "roles": spec.roles,
            },
            indent=2,
        )
    )
    ctx.exit(EXIT_SUCCESS)


@cli.command()
@click.argument("spec_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@state_option
@click.option(
    "--allow-replace",
    is_flag=True,
    help="Delete and recreate when an immutable field changed.",
)
@click.pass_context
def apply(ctx: click.Context, spec_path: Path, state_path: Path, allow_replace: bool) -> None:
    """Create the integration, or update it to match SPEC_PATH."""
    config = _load_config(ctx)
    try:
        spec = load_integration_spec(spec_path)
        record = load_record(state_path)
        reconciler = build_reconciler(config)
        result = asyncio.run(
            apply_integration(reconciler, spec, record, allow_replace=allow_replace)
        )
    except SETUP_ERRORS as e:
        _fail(ctx, e)
    _finish(ctx, result, state_path)


@cli.command()
@state_option
@click.pass_context
def refresh(ctx: click.Context, state_path: Path) -> None:
    """Re-read live state and drop drifted scopes from the record."""
    config = _load_config(ctx)
    try:
        record = _require_record(ctx, state_path)
        reconciler = build_reconciler(config)
        result = asyncio.run(reconciler.read(record))
    except SETUP_ERRORS as e:
        _fail(ctx, e)
    _finish(ctx, result, state_path)


@cli.command()
@state_option
@click.pass_context
def destroy(ctx: click.Context, state_path: Path) -> None:
    """Tear down everything the record describes."""
    config = _load_config(ctx)
    try:
        record = load_record(state_path)
        if record is None:
            click.echo("Nothing to destroy")
            ctx.exit(EXIT_SUCCESS)
        reconciler = build_reconciler(config)
        result = asyncio.run(reconciler.delete(record))
    except SETUP_ERRORS as e:
        _fail(ctx, e)
    _finish(ctx, result, state_path)


@cli.command()
@state_option
@click.pass_context
def show(ctx: click.Context, state_path: Path) -> None:
    """Print the record with the private key redacted."""
    _load_config(ctx)
    try:
        record = _require_record(ctx, state_path)
    except SpecLoadError as e:
        _fail(ctx, e)
    click.echo(json.dumps(record.redacted_dict(), indent=2, sort_keys=True))
    if record.state != IntegrationState.ACTIVE:
        click.echo(f"Integration is not active (state: {record.state.value})", err=True)
    ctx.exit(EXIT_SUCCESS)
