"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for gcp_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from gcp_mock import FakeCloudState, MockProviderClient  # noqa: E402
from identity_sync.config import EngineConfig  # noqa: E402

ORG_ID = "123456789"


@pytest.fixture
def fast_config() -> EngineConfig:
    """Engine configuration with every delay set to zero."""
    return EngineConfig(
        propagation_wait_seconds=0,
        call_timeout_seconds=5,
        operation_timeout_seconds=30,
        retry_max_attempts=3,
        retry_base_delay_seconds=0,
        iam_policy_max_retries=5,
        iam_policy_retry_initial_wait_seconds=0,
        iam_policy_retry_max_wait_seconds=0,
    )


@pytest.fixture
def cloud() -> FakeCloudState:
    """Organization with nested folders and a handful of projects.

    org 123456789
    ├── folder f-root
    │   ├── central       (anchor candidate)
    │   ├── proj-a
    │   ├── trial-1       (free trial)
    │   └── folder f-child
    │       └── proj-b
    ├── folder f-other
    │   └── proj-c
    └── proj-org          (directly under org)
    """
    state = FakeCloudState()
    state.add_organization(ORG_ID)
    state.add_folder("f-root", f"organizations/{ORG_ID}")
    state.add_folder("f-child", "folders/f-root")
    state.add_folder("f-other", f"organizations/{ORG_ID}")
    state.add_project("central", "folder", "f-root", project_number="1001")
    state.add_project("proj-a", "folder", "f-root", project_number="1002")
    state.add_project("trial-1", "folder", "f-root", labels={"free-trial": "true"})
    state.add_project("proj-b", "folder", "f-child", project_number="1003")
    state.add_project("proj-c", "folder", "f-other", project_number="1004")
    state.add_project("proj-org", "organization", ORG_ID, project_number="1005")
    state.add_predefined_role("roles/viewer")
    state.add_predefined_role("roles/iam.securityReviewer")
    state.add_custom_role(
        "projects/central/roles/camReader",
        title="CAM Reader",
        description="Reads inventory",
        permissions=["resourcemanager.projects.get", "compute.instances.list"],
    )
    state.add_custom_role(
        f"organizations/{ORG_ID}/roles/orgAuditor",
        title="Org Auditor",
        permissions=["resourcemanager.projects.list"],
    )
    return state


@pytest.fixture
def client(cloud: FakeCloudState) -> MockProviderClient:
    return MockProviderClient(cloud)
