"""
Integration Adapter Contract

Every provider implements `fetch_data` (raw records for a date range) and
`process_record` (one raw record -> per-member metric deltas, or None when no
member matches). The orchestrator only ever talks to this contract.
"""

from __future__ import annotations

import calendar
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any, Literal, Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field

from engimetric.kernel.errors import MissingCredentialsError, ValidationError
from engimetric.teams.models import TeamMember

logger = structlog.get_logger()

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")

RawRecord = dict[str, Any]
# member id -> metric name -> value
MemberDeltas = dict[int, dict[str, int]]


def parse_month(month: str) -> tuple[int, int]:
    """Parse `YYYY-MM` into (year, month)."""
    match = _MONTH_RE.fullmatch(month or "")
    if not match:
        raise ValidationError(
            message=f"Invalid month {month!r}, expected YYYY-MM",
            code="sync.invalid_month",
        )
    year, month_number = int(match.group(1)), int(match.group(2))
    if not 1 <= month_number <= 12:
        raise ValidationError(
            message=f"Invalid month {month!r}, expected YYYY-MM",
            code="sync.invalid_month",
        )
    return year, month_number


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar date range handed to `fetch_data`."""

    start_date: date
    end_date: date

    @classmethod
    def for_month(cls, month: str) -> "DateRange":
        year, month_number = parse_month(month)
        last_day = calendar.monthrange(year, month_number)[1]
        return cls(
            start_date=date(year, month_number, 1),
            end_date=date(year, month_number, last_day),
        )

    @property
    def month(self) -> str:
        return self.start_date.strftime("%Y-%m")


class IntegrationField(BaseModel):
    """A provider-specific settings field."""

    key: str
    type: Literal["string", "secret", "url"] = "string"
    required: bool = False
    encrypted: bool = False
    label: str | None = None


class IntegrationMetadata(BaseModel):
    name: str
    fields: list[IntegrationField] = Field(default_factory=list)
    metric_keys: list[str] = Field(default_factory=list)
    # Metrics that must not be summed into the monthly summary (e.g. line changes).
    non_additive_metrics: list[str] = Field(default_factory=list)

    @property
    def encrypted_fields(self) -> list[str]:
        return [field.key for field in self.fields if field.encrypted]

    @property
    def required_fields(self) -> list[IntegrationField]:
        return [field for field in self.fields if field.required]


class IntegrationSettings(BaseModel):
    """Per-team settings for one integration: `enabled` plus provider fields."""

    model_config = ConfigDict(extra="allow")

    enabled: bool = False

    def get_field(self, key: str, default: Any = None) -> Any:
        return (self.model_extra or {}).get(key, default)


class IntegrationAdapter(ABC):
    """
    Base class for provider adapters.

    Adapters are stateless with respect to teams; all per-team input arrives
    through `settings` and `members`.
    """

    @property
    @abstractmethod
    def metadata(self) -> IntegrationMetadata:
        """Static description of the provider's settings and metrics."""

    @property
    def name(self) -> str:
        return self.metadata.name

    def validate_settings(self, settings: IntegrationSettings) -> None:
        """Raise MissingCredentialsError when a required field is blank."""
        for field in self.metadata.required_fields:
            if not settings.get_field(field.key):
                raise MissingCredentialsError(
                    message=f"{self.name} {field.label or field.key} is required",
                    integration=self.name,
                    field=field.key,
                )

    @abstractmethod
    async def fetch_data(self, settings: IntegrationSettings, date_range: DateRange) -> list[RawRecord]:
        """Return every raw record in range, following pagination to the end."""

    @abstractmethod
    def process_record(self, record: RawRecord, members: Sequence[TeamMember]) -> MemberDeltas | None:
        """Map one raw record to per-member deltas, or None when no member matches."""

    def process_records(self, records: Sequence[RawRecord], members: Sequence[TeamMember]) -> MemberDeltas:
        """Fold `process_record` over a batch, summing deltas per member and metric."""
        totals: MemberDeltas = {}
        unmatched = 0
        for record in records:
            deltas = self.process_record(record, members)
            if deltas is None:
                unmatched += 1
                continue
            for member_id, metrics in deltas.items():
                bucket = totals.setdefault(member_id, {})
                for metric, value in metrics.items():
                    bucket[metric] = bucket.get(metric, 0) + value
        if unmatched:
            logger.debug(
                "Dropped records with no matching member",
                integration=self.name,
                unmatched=unmatched,
                total=len(records),
            )
        return totals
