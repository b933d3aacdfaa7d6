from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from .config import FailoverPolicy, ProviderConfig
from .contracts import (
    AttemptRecord,
    CompletionDone,
    CompletionRequest,
    CompletionResult,
    ErrorChunk,
    ProviderName,
    ProviderStatus,
    Usage,
    UsageRecord,
)
from .errors import (
    ExhaustedError,
    MissingProvidersError,
    ProviderError,
    RequestTimeoutError,
    UpstreamProtocolError,
)
from .metrics import (
    cost_usd_total,
    logical_requests_total,
    provider_attempts_total,
    provider_failovers_total,
    provider_retries_total,
    tokens_total,
    upstream_latency_seconds,
)
from .providers.base import ProviderAdapter
from .providers.registry import create_adapter
from .session import StreamingSession
from .usage import UsageReporter, report_usage

log = structlog.get_logger()

AdapterFactory = Callable[[ProviderName, ProviderConfig], ProviderAdapter]
Sleeper = Callable[[float], Awaitable[None]]


class OrchestratorState(str, Enum):
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Candidate:
    provider: ProviderName
    model: str


def _record_usage_metrics(provider: str, usage: Usage) -> None:
    tokens_total.labels(provider=provider, direction="prompt").inc(usage.prompt_tokens)
    tokens_total.labels(provider=provider, direction="completion").inc(usage.completion_tokens)
    cost_usd_total.labels(provider=provider).inc(usage.cost)


class FailoverOrchestrator:
    """
    Drives one logical request across the candidate providers of a FailoverPolicy.

    Same-provider retries apply to rate-limit and transient errors only, bounded
    by `policy.max_retries` with `policy.retry_delay_seconds` between them. Any
    other pre-output error advances to the next candidate, which runs with its
    provider's fallback model. Once a chunk has reached the caller the request
    is committed to that attempt: a later failure is forwarded as the terminal
    error and never failed over.

    Instances hold per-session state (adapters, attempt log, provider statuses)
    and are not shared between callers.
    """

    def __init__(
        self,
        provider_configs: Mapping[ProviderName, ProviderConfig],
        policy: FailoverPolicy,
        *,
        adapter_factory: AdapterFactory | None = None,
        sleeper: Sleeper | None = None,
    ):
        self.provider_configs = dict(provider_configs)
        self.policy = policy
        self._adapter_factory: AdapterFactory = adapter_factory or create_adapter
        self._sleep: Sleeper = sleeper or asyncio.sleep
        self._adapters: dict[ProviderName, ProviderAdapter] = {}
        self._statuses: dict[str, ProviderStatus] = {}
        self.state = OrchestratorState.ATTEMPTING
        self.attempts: list[AttemptRecord] = []

    async def aclose(self) -> None:
        adapters, self._adapters = self._adapters, {}
        for adapter in adapters.values():
            await adapter.aclose()

    def candidates(self, request: CompletionRequest, preferred: ProviderName | str | None = None) -> list[Candidate]:
        order = [p for p in self.policy.candidate_order(preferred) if p in self.provider_configs]
        if not order:
            raise MissingProvidersError()
        out = [Candidate(order[0], request.model)]
        out.extend(Candidate(p, self.policy.fallback_models[p]) for p in order[1:])
        return out

    def provider_statuses(self) -> list[ProviderStatus]:
        return list(self._statuses.values())

    async def check_providers(self) -> dict[str, ProviderStatus]:
        names = [p for p in self.policy.providers if p in self.provider_configs]
        statuses = await asyncio.gather(*(self._adapter(p).check_health() for p in names))
        for status in statuses:
            self._statuses[status.provider] = status
        return {s.provider: s for s in statuses}

    def _adapter(self, provider: ProviderName) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            adapter = self._adapter_factory(provider, self.provider_configs[provider])
            self._adapters[provider] = adapter
        return adapter

    def _record_attempt(self, index: int, candidate: Candidate, error: ProviderError | None) -> None:
        provider = candidate.provider.value
        self.attempts.append(
            AttemptRecord(
                index=index,
                provider=provider,
                model=candidate.model,
                error_kind=error.kind if error is not None else None,
                error=str(error) if error is not None else None,
            )
        )
        provider_attempts_total.labels(provider=provider, outcome=error.kind if error else "success").inc()
        self._statuses[provider] = ProviderStatus(
            provider=provider,
            available=error is None,
            error=str(error) if error is not None else None,
        )

    async def _with_retries(
        self,
        candidates: list[Candidate],
        attempt: Callable[[Candidate, int], Awaitable[Any]],
        *,
        abandoned: Callable[[], bool] = lambda: False,
    ) -> Any:
        """Run `attempt` over the candidates with the retry/failover rules. Raises ExhaustedError."""
        last_error: ProviderError | None = None
        for position, candidate in enumerate(candidates):
            if position > 0:
                previous = candidates[position - 1].provider.value
                provider_failovers_total.labels(from_provider=previous, to_provider=candidate.provider.value).inc()
                log.warning(
                    "provider_failover",
                    from_provider=previous,
                    to_provider=candidate.provider.value,
                    model=candidate.model,
                    error_kind=last_error.kind if last_error else None,
                )
            retries = 0
            while True:
                if abandoned():
                    self.state = OrchestratorState.CANCELLED
                    return None
                index = len(self.attempts)
                try:
                    return await attempt(candidate, index)
                except ProviderError as e:
                    last_error = e
                    if e.retry_same_provider and retries < self.policy.max_retries:
                        retries += 1
                        provider_retries_total.labels(provider=candidate.provider.value, kind=e.kind).inc()
                        log.info(
                            "provider_retry",
                            provider=candidate.provider.value,
                            model=candidate.model,
                            attempt=index,
                            retry=retries,
                            error_kind=e.kind,
                        )
                        await self._sleep(self.policy.retry_delay_seconds)
                        continue
                    break

        self.state = OrchestratorState.EXHAUSTED
        error = ExhaustedError(last_error, self.attempts)
        log.error(
            "failover_exhausted",
            failed_providers=error.failed_providers,
            attempts=len(self.attempts),
            last_error_kind=last_error.kind if last_error else None,
        )
        raise error

    # Streaming

    async def stream(
        self,
        request: CompletionRequest,
        session: StreamingSession,
        *,
        preferred: ProviderName | str | None = None,
        timeout_seconds: float | None = None,
    ) -> OrchestratorState:
        """
        Stream one logical request into `session`.

        The session always ends with exactly one terminal chunk. Usage is
        reported after the channel is closed and outside the deadline.
        """
        self.state = OrchestratorState.ATTEMPTING
        self.attempts = []
        try:
            try:
                candidates = self.candidates(request, preferred)
            except MissingProvidersError as e:
                self.state = OrchestratorState.EXHAUSTED
                log.warning("no_providers_configured", caller_id=request.caller_id)
                await session.on_error(e)
                return self.state

            try:
                await asyncio.wait_for(self._drive(request, candidates, session), timeout=timeout_seconds or None)
            except asyncio.TimeoutError:
                if not session.delivered:
                    self.state = OrchestratorState.EXHAUSTED
                log.warning("request_deadline_exceeded", timeout_seconds=timeout_seconds, attempts=len(self.attempts))
                await session.on_error(RequestTimeoutError("Request timed out."))
            except ExhaustedError as e:
                await session.on_error(e)
            except Exception as e:
                log.exception("orchestrator_internal_error", attempts=len(self.attempts))
                if not session.delivered:
                    self.state = OrchestratorState.EXHAUSTED
                await session.on_error(e)
        except asyncio.CancelledError:
            if session.record is None:
                self.state = OrchestratorState.CANCELLED
                log.info("request_cancelled", attempts=len(self.attempts))
            else:
                self.state = OrchestratorState.SUCCEEDED
                log.info("request_cancelled_after_completion", attempts=len(self.attempts))
            raise
        finally:
            await session.close()
            logical_requests_total.labels(mode="stream", outcome=self.state.value).inc()
            # A completed request is reported even when the caller is cancelled.
            await session.finalize()

        return self.state

    async def _drive(self, request: CompletionRequest, candidates: list[Candidate], session: StreamingSession) -> None:
        async def attempt(candidate: Candidate, index: int) -> None:
            await self._attempt_stream(request, candidate, index, session)

        await self._with_retries(candidates, attempt, abandoned=lambda: session.channel.abandoned)

    async def _attempt_stream(
        self,
        request: CompletionRequest,
        candidate: Candidate,
        index: int,
        session: StreamingSession,
    ) -> None:
        provider = candidate.provider.value
        adapter = self._adapter(candidate.provider)
        session.begin_attempt(provider, candidate.model)
        log.info("provider_attempt", provider=provider, model=candidate.model, attempt=index, mode="stream")

        started = time.monotonic()
        chunks = adapter.stream(request.with_model(candidate.model))
        try:
            async for chunk in chunks:
                if session.channel.abandoned:
                    self.state = OrchestratorState.CANCELLED
                    log.info("caller_disconnected", provider=provider, model=candidate.model, attempt=index)
                    return
                if isinstance(chunk, ErrorChunk):
                    raise UpstreamProtocolError(chunk.message, provider=provider, model=candidate.model)
                if isinstance(chunk, CompletionDone):
                    self._record_attempt(index, candidate, None)
                    self.state = OrchestratorState.SUCCEEDED
                    await session.on_complete(chunk.usage, chunk.finish_reason)
                    _record_usage_metrics(provider, chunk.usage)
                    log.info(
                        "provider_attempt_succeeded",
                        provider=provider,
                        model=candidate.model,
                        attempt=index,
                        total_tokens=chunk.usage.total_tokens,
                    )
                    return
                if not session.delivered:
                    upstream_latency_seconds.labels(provider=provider).observe(time.monotonic() - started)
                    self.state = OrchestratorState.SUCCEEDED
                await session.on_chunk(chunk)
            raise UpstreamProtocolError(
                f"{provider} stream ended without a completion event.", provider=provider, model=candidate.model
            )
        except ProviderError as e:
            self._record_attempt(index, candidate, e)
            log.warning(
                "provider_attempt_failed",
                provider=provider,
                model=candidate.model,
                attempt=index,
                error_kind=e.kind,
                error=str(e),
                after_output=session.delivered,
            )
            if session.delivered:
                await session.on_error(e)
                return
            raise
        finally:
            aclose = getattr(chunks, "aclose", None)
            if callable(aclose):
                await aclose()

    # Unary

    async def complete(
        self,
        request: CompletionRequest,
        *,
        preferred: ProviderName | str | None = None,
        reporter: UsageReporter | None = None,
        purpose: str | None = None,
        metadata: dict[str, Any] | None = None,
        timeout_seconds: float | None = None,
    ) -> CompletionResult:
        self.state = OrchestratorState.ATTEMPTING
        self.attempts = []
        outcome = "error"
        try:
            candidates = self.candidates(request, preferred)

            async def attempt(candidate: Candidate, index: int) -> CompletionResult:
                return await self._attempt_complete(request, candidate, index)

            try:
                result: CompletionResult = await asyncio.wait_for(
                    self._with_retries(candidates, attempt), timeout=timeout_seconds or None
                )
            except asyncio.TimeoutError as e:
                raise RequestTimeoutError("Request timed out.") from e
            self.state = OrchestratorState.SUCCEEDED
            outcome = self.state.value
        except ProviderError as e:
            outcome = e.kind
            raise
        finally:
            logical_requests_total.labels(mode="complete", outcome=outcome).inc()

        _record_usage_metrics(result.provider, result.usage)
        if reporter is not None:
            record = UsageRecord.from_usage(
                result.usage,
                provider=result.provider,
                model=result.model,
                caller_id=request.caller_id,
                purpose=purpose,
                metadata=metadata,
            )
            await report_usage(reporter, record)
        return result

    async def _attempt_complete(self, request: CompletionRequest, candidate: Candidate, index: int) -> CompletionResult:
        provider = candidate.provider.value
        adapter = self._adapter(candidate.provider)
        log.info("provider_attempt", provider=provider, model=candidate.model, attempt=index, mode="complete")
        started = time.monotonic()
        try:
            result = await adapter.complete(request.with_model(candidate.model))
        except ProviderError as e:
            self._record_attempt(index, candidate, e)
            log.warning(
                "provider_attempt_failed",
                provider=provider,
                model=candidate.model,
                attempt=index,
                error_kind=e.kind,
                error=str(e),
            )
            raise
        upstream_latency_seconds.labels(provider=provider).observe(time.monotonic() - started)
        self._record_attempt(index, candidate, None)
        return result
