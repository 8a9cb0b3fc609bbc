"""
GitHub Adapter

Counts merged pull requests per member. Records come from the issue search API
(`is:pr state:closed merged:<start>..<end>` scoped to the configured org) and
are attributed to a member when the PR author's login is one of their aliases.
"""

from __future__ import annotations

from typing import Any, Sequence

import httpx
import structlog

from engimetric.config import get_settings
from engimetric.integrations.base import (
    DateRange,
    IntegrationAdapter,
    IntegrationMetadata,
    IntegrationSettings,
    MemberDeltas,
    RawRecord,
)
from engimetric.integrations.catalogue import GITHUB
from engimetric.integrations.http import RetryPolicy, request_with_retry
from engimetric.kernel.errors import ProviderFetchError
from engimetric.teams.models import TeamMember

logger = structlog.get_logger()

SEARCH_PATH = "/search/issues"
PER_PAGE = 100
# The search API never returns more than 1000 results for one query.
SEARCH_RESULT_CAP = 1000


def build_search_query(org: str, date_range: DateRange) -> str:
    return (
        f"org:{org} is:pr state:closed "
        f"merged:{date_range.start_date.isoformat()}..{date_range.end_date.isoformat()}"
    )


class GitHubAdapter(IntegrationAdapter):
    def __init__(
        self,
        *,
        api_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_url = api_url
        self._transport = transport

    @property
    def metadata(self) -> IntegrationMetadata:
        return GITHUB

    def _client(self, token: str) -> httpx.AsyncClient:
        settings = get_settings()
        return httpx.AsyncClient(
            base_url=self._api_url or settings.github_api_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=settings.http_timeout_seconds,
            transport=self._transport,
        )

    async def fetch_data(self, settings: IntegrationSettings, date_range: DateRange) -> list[RawRecord]:
        self.validate_settings(settings)
        token = str(settings.get_field("token"))
        org = str(settings.get_field("org"))
        query = build_search_query(org, date_range)
        app_settings = get_settings()
        policy = RetryPolicy.from_settings(app_settings)

        records: list[RawRecord] = []
        page = 1
        async with self._client(token) as client:
            while True:
                try:
                    response = await request_with_retry(
                        client,
                        "GET",
                        SEARCH_PATH,
                        params={"q": query, "per_page": PER_PAGE, "page": page},
                        policy=policy,
                        rate_limit_key=f"github:search:{org}",
                        rate_limit_per_minute=app_settings.github_search_rate_limit_per_minute,
                    )
                except httpx.HTTPError as exc:
                    raise ProviderFetchError(
                        message=f"GitHub request failed: {exc}",
                        integration=self.name,
                    ) from exc

                if response.status_code >= 400:
                    raise ProviderFetchError(
                        message=_error_message(response),
                        integration=self.name,
                        status_code=response.status_code,
                    )

                payload = response.json()
                items = payload.get("items") or []
                records.extend(items)
                total_count = int(payload.get("total_count") or 0)

                if (
                    len(items) < PER_PAGE
                    or len(records) >= total_count
                    or page * PER_PAGE >= SEARCH_RESULT_CAP
                ):
                    break
                page += 1

        if total_count > SEARCH_RESULT_CAP:
            logger.warning(
                "GitHub search truncated at result cap",
                org=org,
                month=date_range.month,
                total_count=total_count,
                fetched=len(records),
            )

        logger.info(
            "Fetched GitHub pull requests",
            org=org,
            month=date_range.month,
            count=len(records),
            pages=page,
        )
        return records

    def process_record(self, record: RawRecord, members: Sequence[TeamMember]) -> MemberDeltas | None:
        login = (record.get("user") or {}).get("login")
        for member in members:
            if member.matches_alias(login):
                return {member.id: {"merges": 1, "reviews": 0}}
        return None


def _error_message(response: httpx.Response) -> str:
    detail: Any = None
    try:
        detail = response.json().get("message")
    except ValueError:
        detail = None
    return f"GitHub API error {response.status_code}: {detail or response.reason_phrase}"
