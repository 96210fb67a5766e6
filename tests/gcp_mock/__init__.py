"""Google Cloud API mock for integration testing.

This package provides an in-memory implementation of the control-plane
operations the engine uses, so create/read/update/delete can be exercised
end to end without Google Cloud connectivity.

Key Features:
- Organization / folder / project hierarchy with labels and lifecycle state
- Service accounts with soft delete, keys with a monotonic clock
- Predefined and custom roles, custom roles with soft delete and undelete
- Etag-checked access policies that reject cross-project custom roles
- Call recording and failure injection per method and argument

Usage:
    from gcp_mock import FakeCloudState, MockProviderClient

    state = FakeCloudState()
    state.add_project("proj-a")
    client = MockProviderClient(state)
    reconciler = IntegrationReconciler(client, EngineConfig(...))
"""

from .client import (
    FailureRule,
    MockProviderClient,
    already_exists_error,
    conflict_error,
    fatal_error,
    not_found_error,
    transient_error,
)
from .context import MockGcpContext
from .state import FakeCloudState, FakeFolder, FakeProject

__all__ = [
    "FailureRule",
    "FakeCloudState",
    "FakeFolder",
    "FakeProject",
    "MockGcpContext",
    "MockProviderClient",
    "already_exists_error",
    "conflict_error",
    "fatal_error",
    "not_found_error",
    "transient_error",
]
