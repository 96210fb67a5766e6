"""Tests for the Scope Resolver."""

import pytest

from gcp_mock import FakeCloudState, MockProviderClient, fatal_error
from identity_sync.models import DiscoveryMode
from identity_sync.provider import ProviderCaller, ProviderError
from identity_sync.scopes import ScopeQuery, ScopeResolutionError, ScopeResolver, ScopeSet


def make_resolver(client: MockProviderClient) -> ScopeResolver:
    return ScopeResolver(ProviderCaller(client, timeout_seconds=5))


class TestSingleMode:
    """Tests for single-project discovery."""

    @pytest.mark.asyncio
    async def test_returns_service_project_only(self, client: MockProviderClient) -> None:
        """Test that single mode makes no hierarchy calls."""
        scope_set = await make_resolver(client).resolve(ScopeQuery(service_project="proj-a"))

        assert scope_set.ids == ["proj-a"]
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_exclusions_ignored(self, client: MockProviderClient) -> None:
        query = ScopeQuery(service_project="proj-a", exclude_scopes=frozenset({"proj-a"}))

        assert (await make_resolver(client).resolve(query)).ids == ["proj-a"]


class TestOrganizationMode:
    """Tests for organization-wide discovery."""

    @pytest.mark.asyncio
    async def test_anchor_in_org_with_exclusion(self) -> None:
        """Test Scenario A: org {p1,p2,p3}, anchor p1, exclude p3 resolves to {p1,p2}."""
        state = FakeCloudState()
        state.add_organization("org-x")
        for project_id in ("p1", "p2", "p3"):
            state.add_project(project_id, "organization", "org-x")

        query = ScopeQuery(
            service_project="p1",
            mode=DiscoveryMode.ORGANIZATION,
            anchor="p1",
            exclude_scopes=frozenset({"p3"}),
        )
        scope_set = await make_resolver(MockProviderClient(state)).resolve(query)

        assert set(scope_set.ids) == {"p1", "p2"}
        assert scope_set.anchor == "p1"

    @pytest.mark.asyncio
    async def test_walks_every_folder(self, client: MockProviderClient) -> None:
        """Test that nested folders and projects directly under the org are found."""
        query = ScopeQuery(
            service_project="central", mode=DiscoveryMode.ORGANIZATION, anchor="central"
        )
        scope_set = await make_resolver(client).resolve(query)

        assert set(scope_set.ids) == {"central", "proj-a", "proj-b", "proj-c", "proj-org"}
        assert client.call_count("list_folders") == 4  # org, f-root, f-child, f-other

    @pytest.mark.asyncio
    async def test_free_trial_excluded_by_default(self, client: MockProviderClient) -> None:
        query = ScopeQuery(
            service_project="central", mode=DiscoveryMode.ORGANIZATION, anchor="central"
        )

        assert "trial-1" not in await make_resolver(client).resolve(query)

    @pytest.mark.asyncio
    async def test_free_trial_included_when_requested(self, client: MockProviderClient) -> None:
        query = ScopeQuery(
            service_project="central",
            mode=DiscoveryMode.ORGANIZATION,
            anchor="central",
            exclude_free_trial=False,
        )

        assert "trial-1" in await make_resolver(client).resolve(query)

    @pytest.mark.asyncio
    async def test_inactive_projects_skipped(self, cloud: FakeCloudState) -> None:
        cloud.add_project("doomed", "folder", "f-other", lifecycle_state="DELETE_REQUESTED")
        query = ScopeQuery(
            service_project="central", mode=DiscoveryMode.ORGANIZATION, anchor="central"
        )

        scope_set = await make_resolver(MockProviderClient(cloud)).resolve(query)

        assert "doomed" not in scope_set


class TestFolderMode:
    """Tests for folder-scoped discovery."""

    @pytest.mark.asyncio
    async def test_folder_and_subfolders(self, client: MockProviderClient) -> None:
        """Test that the anchor's folder and its descendants are covered, not siblings."""
        query = ScopeQuery(service_project="central", mode=DiscoveryMode.FOLDER, anchor="central")

        scope_set = await make_resolver(client).resolve(query)

        assert set(scope_set.ids) == {"central", "proj-a", "proj-b"}

    @pytest.mark.asyncio
    async def test_numbers_from_listing(self, client: MockProviderClient) -> None:
        query = ScopeQuery(service_project="central", mode=DiscoveryMode.FOLDER, anchor="central")

        scope_set = await make_resolver(client).resolve(query)

        assert scope_set.number_for("proj-b") == "1003"

    @pytest.mark.asyncio
    async def test_free_trial_anchor_kept(self, cloud: FakeCloudState) -> None:
        """Test that the anchor is never dropped by the free-trial filter."""
        query = ScopeQuery(service_project="trial-1", mode=DiscoveryMode.FOLDER, anchor="trial-1")

        scope_set = await make_resolver(MockProviderClient(cloud)).resolve(query)

        assert "trial-1" in scope_set

    @pytest.mark.asyncio
    async def test_anchor_can_be_excluded_explicitly(self, client: MockProviderClient) -> None:
        query = ScopeQuery(
            service_project="central",
            mode=DiscoveryMode.FOLDER,
            anchor="central",
            exclude_scopes=frozenset({"central"}),
        )

        scope_set = await make_resolver(client).resolve(query)

        assert "central" not in scope_set

    @pytest.mark.asyncio
    async def test_project_outside_any_folder(self, client: MockProviderClient) -> None:
        """Test that folder mode fails when the anchor has no folder ancestor."""
        query = ScopeQuery(
            service_project="proj-org", mode=DiscoveryMode.FOLDER, anchor="proj-org"
        )

        with pytest.raises(ScopeResolutionError):
            await make_resolver(client).resolve(query)

    @pytest.mark.asyncio
    async def test_listing_failure_propagates(self, client: MockProviderClient) -> None:
        client.fail("list_projects", fatal_error(), times=None)
        query = ScopeQuery(service_project="central", mode=DiscoveryMode.FOLDER, anchor="central")

        with pytest.raises(ProviderError):
            await make_resolver(client).resolve(query)


class TestResolveNumbers:
    """Tests for project number resolution."""

    @pytest.mark.asyncio
    async def test_fetches_missing_numbers(self, client: MockProviderClient) -> None:
        numbers = await make_resolver(client).resolve_numbers(ScopeSet(), ["proj-a", "proj-c"])

        assert numbers == ["1002", "1004"]

    @pytest.mark.asyncio
    async def test_failure_yields_empty_string(self, client: MockProviderClient) -> None:
        """Test that lists stay parallel when a lookup fails."""
        numbers = await make_resolver(client).resolve_numbers(ScopeSet(), ["proj-a", "missing"])

        assert numbers == ["1002", ""]
