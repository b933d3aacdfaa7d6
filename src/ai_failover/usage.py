from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx
import structlog

from .contracts import UsageRecord
from .metrics import usage_reports_total

log = structlog.get_logger()


class UsageReporter(Protocol):
    async def record(self, record: UsageRecord) -> None: ...


async def report_usage(reporter: UsageReporter, record: UsageRecord) -> bool:
    """
    Persist one usage record.

    Failures never reach the caller: the response has already been delivered,
    so a sink outage is logged and counted, not surfaced.
    """
    try:
        await reporter.record(record)
    except Exception as e:
        usage_reports_total.labels(status="error").inc()
        log.error(
            "usage_report_failed",
            record_id=record.id,
            provider=record.provider,
            model=record.model,
            error_type=type(e).__name__,
            error=str(e),
        )
        return False
    usage_reports_total.labels(status="ok").inc()
    return True


class NullUsageReporter:
    async def record(self, record: UsageRecord) -> None:
        return None


@dataclass
class UsageTotals:
    cost: float = 0.0
    tokens: int = 0
    requests: int = 0

    def add(self, record: UsageRecord) -> None:
        self.cost += record.cost
        self.tokens += record.total_tokens
        self.requests += 1


@dataclass
class UsageStats:
    total_cost: float = 0.0
    total_tokens: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    request_count: int = 0
    by_provider: dict[str, UsageTotals] = field(default_factory=dict)
    by_model: dict[str, UsageTotals] = field(default_factory=dict)

    @classmethod
    def from_records(cls, records: list[UsageRecord]) -> UsageStats:
        stats = cls(request_count=len(records))
        for r in records:
            stats.total_cost += r.cost
            stats.total_tokens += r.total_tokens
            stats.total_prompt_tokens += r.prompt_tokens
            stats.total_completion_tokens += r.completion_tokens
            stats.by_provider.setdefault(r.provider, UsageTotals()).add(r)
            stats.by_model.setdefault(r.model, UsageTotals()).add(r)
        return stats

    def to_dict(self) -> dict[str, Any]:
        def _totals(t: UsageTotals) -> dict[str, Any]:
            return {"cost": t.cost, "tokens": t.tokens, "requests": t.requests}

        return {
            "totalCost": self.total_cost,
            "totalTokens": self.total_tokens,
            "totalPromptTokens": self.total_prompt_tokens,
            "totalCompletionTokens": self.total_completion_tokens,
            "requestCount": self.request_count,
            "byProvider": {k: _totals(v) for k, v in self.by_provider.items()},
            "byModel": {k: _totals(v) for k, v in self.by_model.items()},
        }


class InMemoryUsageReporter:
    def __init__(self) -> None:
        self._records: list[UsageRecord] = []

    async def record(self, record: UsageRecord) -> None:
        self._records.append(record)

    def records(
        self,
        *,
        caller_id: str | None = None,
        provider: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageRecord]:
        out = list(self._records)
        if caller_id:
            out = [r for r in out if r.caller_id == caller_id]
        if provider:
            out = [r for r in out if r.provider == provider]
        if start is not None:
            out = [r for r in out if r.created_at >= start]
        if end is not None:
            out = [r for r in out if r.created_at <= end]
        return out

    def stats(
        self,
        *,
        caller_id: str | None = None,
        provider: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> UsageStats:
        return UsageStats.from_records(self.records(caller_id=caller_id, provider=provider, start=start, end=end))


class HttpUsageReporter:
    """POSTs each record as JSON to a callback URL owned by the persistence tier."""

    def __init__(
        self,
        url: str,
        *,
        auth_header: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ):
        self.url = url
        self._auth_header = auth_header
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def record(self, record: UsageRecord) -> None:
        headers = {"Authorization": self._auth_header} if self._auth_header else {}
        resp = await self._client.post(self.url, json=record.to_dict(), headers=headers)
        resp.raise_for_status()
