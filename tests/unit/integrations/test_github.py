"""
Unit tests for the GitHub adapter.

HTTP is served by httpx.MockTransport; no network access.
"""

import httpx
import pytest

from engimetric.integrations.base import DateRange, IntegrationSettings
from engimetric.integrations.github import GitHubAdapter, build_search_query
from engimetric.kernel.errors import MissingCredentialsError, ProviderFetchError
from engimetric.teams.models import TeamMember

pytestmark = pytest.mark.unit

JUNE = DateRange.for_month("2024-06")
SETTINGS = IntegrationSettings(enabled=True, token="ghp_test", org="acme")


def _pr(number: int, login: str) -> dict:
    return {"number": number, "user": {"login": login}, "pull_request": {"merged_at": "2024-06-10T10:00:00Z"}}


def _members():
    return [
        TeamMember(id=1, team_id=1, full_name="Member One", aliases=["aliasA"]),
        TeamMember(id=2, team_id=1, full_name="Member Two", aliases=["aliasB", "b-bot"]),
    ]


class TestSearchQuery:
    def test_query_scopes_org_and_merge_window(self):
        assert build_search_query("acme", JUNE) == "org:acme is:pr state:closed merged:2024-06-01..2024-06-30"


class TestFetchData:
    @pytest.mark.asyncio
    async def test_follows_pages_until_short_page(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            page = int(request.url.params["page"])
            if page == 1:
                items = [_pr(i, "aliasA") for i in range(100)]
            else:
                items = [_pr(100 + i, "aliasB") for i in range(20)]
            return httpx.Response(200, json={"total_count": 120, "items": items})

        adapter = GitHubAdapter(api_url="https://github.test", transport=httpx.MockTransport(handler))
        records = await adapter.fetch_data(SETTINGS, JUNE)

        assert len(records) == 120
        assert [int(r.url.params["page"]) for r in requests] == [1, 2]
        first = requests[0]
        assert first.url.path == "/search/issues"
        assert first.url.params["q"] == "org:acme is:pr state:closed merged:2024-06-01..2024-06-30"
        assert first.url.params["per_page"] == "100"
        assert first.headers["Authorization"] == "Bearer ghp_test"

    @pytest.mark.asyncio
    async def test_stops_when_total_count_reached(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"total_count": 100, "items": [_pr(i, "x") for i in range(100)]})

        adapter = GitHubAdapter(api_url="https://github.test", transport=httpx.MockTransport(handler))
        records = await adapter.fetch_data(SETTINGS, JUNE)

        assert len(records) == 100
        assert calls == 1

    @pytest.mark.asyncio
    async def test_stops_at_search_result_cap(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"total_count": 5000, "items": [_pr(i, "x") for i in range(100)]})

        adapter = GitHubAdapter(api_url="https://github.test", transport=httpx.MockTransport(handler))
        records = await adapter.fetch_data(SETTINGS, JUNE)

        assert len(records) == 1000

    @pytest.mark.asyncio
    async def test_empty_month_returns_no_records(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"total_count": 0, "items": []})

        adapter = GitHubAdapter(api_url="https://github.test", transport=httpx.MockTransport(handler))
        assert await adapter.fetch_data(SETTINGS, JUNE) == []

    @pytest.mark.asyncio
    async def test_missing_token_fails_before_any_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        adapter = GitHubAdapter(api_url="https://github.test", transport=httpx.MockTransport(handler))
        with pytest.raises(MissingCredentialsError, match="GitHub token is required"):
            await adapter.fetch_data(IntegrationSettings(enabled=True, org="acme"), JUNE)

    @pytest.mark.asyncio
    async def test_missing_org_fails(self):
        adapter = GitHubAdapter(api_url="https://github.test")
        with pytest.raises(MissingCredentialsError):
            await adapter.fetch_data(IntegrationSettings(enabled=True, token="t"), JUNE)

    @pytest.mark.asyncio
    async def test_error_status_raises_provider_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "Bad credentials"})

        adapter = GitHubAdapter(api_url="https://github.test", transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderFetchError) as excinfo:
            await adapter.fetch_data(SETTINGS, JUNE)
        assert "Bad credentials" in excinfo.value.message
        assert excinfo.value.meta["provider_status"] == 401

    @pytest.mark.asyncio
    async def test_network_failure_raises_provider_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        adapter = GitHubAdapter(api_url="https://github.test", transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderFetchError):
            await adapter.fetch_data(SETTINGS, JUNE)


class TestProcessRecord:
    def test_matches_author_alias(self):
        adapter = GitHubAdapter()
        assert adapter.process_record(_pr(1, "b-bot"), _members()) == {2: {"merges": 1, "reviews": 0}}

    def test_unmatched_author_yields_none(self):
        assert GitHubAdapter().process_record(_pr(1, "stranger"), _members()) is None

    def test_alias_match_is_exact(self):
        assert GitHubAdapter().process_record(_pr(1, "aliasa"), _members()) is None

    def test_record_without_user_yields_none(self):
        assert GitHubAdapter().process_record({"number": 1, "user": None}, _members()) is None

    def test_process_records_aggregates_and_skips_unmatched(self):
        records = [_pr(1, "aliasA"), _pr(2, "stranger"), _pr(3, "aliasA"), _pr(4, "aliasB")]
        assert GitHubAdapter().process_records(records, _members()) == {
            1: {"merges": 2, "reviews": 0},
            2: {"merges": 1, "reviews": 0},
        }
