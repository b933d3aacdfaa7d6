import asyncio

import httpx
import pytest
from pydantic import SecretStr

from ai_failover.channel import QueueChannel
from ai_failover.config import DEFAULT_FALLBACK_MODELS, FailoverPolicy, ProviderConfig
from ai_failover.contracts import (
    ChatMessage,
    CompletionDone,
    CompletionRequest,
    CompletionResult,
    ContentDelta,
    ErrorChunk,
    ProviderName,
    ProviderStatus,
    Usage,
)
from ai_failover.errors import (
    AuthenticationError,
    CapabilityMismatchError,
    ExhaustedError,
    MissingProvidersError,
    RateLimitError,
    TransientError,
)
from ai_failover.orchestrator import FailoverOrchestrator, OrchestratorState
from ai_failover.providers.openai import OpenAIAdapter
from ai_failover.session import StreamingSession
from ai_failover.usage import InMemoryUsageReporter

OPENAI = ProviderName.OPENAI
ANTHROPIC = ProviderName.ANTHROPIC
GOOGLE = ProviderName.GOOGLE

USAGE = Usage.from_counts(12, 8, cost=0.0005)
OK = [ContentDelta("Hel"), ContentDelta("lo"), CompletionDone(USAGE)]


class ScriptedAdapter:
    """Each call pops one outcome: an exception, or a list of chunks (exceptions inside are raised mid-stream)."""

    def __init__(self, provider, script=()):
        self.name = provider
        self.script = list(script)
        self.calls = []
        self.closed = False

    def _next(self, request):
        self.calls.append(request.model)
        return self.script.pop(0) if self.script else list(OK)

    async def stream(self, request):
        outcome = self._next(request)
        if isinstance(outcome, BaseException):
            raise outcome
        for chunk in outcome:
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk

    async def complete(self, request):
        outcome = self._next(request)
        if isinstance(outcome, BaseException):
            raise outcome
        return CompletionResult(provider=self.name.value, model=request.model, content="Hello", usage=USAGE)

    async def check_health(self):
        return ProviderStatus(provider=self.name.value, available=True, latency_ms=1.0)

    async def aclose(self):
        self.closed = True


class RecordingSleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _request(model="gpt-4o-mini"):
    return CompletionRequest(messages=(ChatMessage(role="user", content="hi"),), model=model, caller_id="user-1")


def _policy(*providers, max_retries=3, retry_delay_seconds=1.0):
    return FailoverPolicy(
        providers=providers,
        fallback_models=dict(DEFAULT_FALLBACK_MODELS),
        max_retries=max_retries,
        retry_delay_seconds=retry_delay_seconds,
    )


def _orchestrator(adapters, policy, *, sleeper=None, configured=None):
    names = configured if configured is not None else list(adapters)
    configs = {name: ProviderConfig(api_key=SecretStr("k")) for name in names}
    return FailoverOrchestrator(
        configs,
        policy,
        adapter_factory=lambda provider, _config: adapters[provider],
        sleeper=sleeper or RecordingSleeper(),
    )


async def _run(orchestrator, request, *, reporter=None, preferred=None, timeout_seconds=None):
    channel = QueueChannel()
    reporter = reporter if reporter is not None else InMemoryUsageReporter()
    session = StreamingSession(channel, reporter=reporter, caller_id=request.caller_id, purpose="chat")
    state = await orchestrator.stream(request, session, preferred=preferred, timeout_seconds=timeout_seconds)
    events = [chunk async for chunk in channel]
    return state, events, reporter


def _terminals(events):
    return [e for e in events if isinstance(e, (CompletionDone, ErrorChunk))]


@pytest.mark.asyncio
async def test_all_candidates_failing_emits_one_exhausted_error_and_no_usage():
    adapters = {
        OPENAI: ScriptedAdapter(OPENAI, [AuthenticationError("bad key")]),
        ANTHROPIC: ScriptedAdapter(ANTHROPIC, [CapabilityMismatchError("no tools")]),
    }
    orch = _orchestrator(adapters, _policy(OPENAI, ANTHROPIC))

    state, events, reporter = await _run(orch, _request())

    assert state is OrchestratorState.EXHAUSTED
    assert len(events) == 1
    assert isinstance(events[0], ErrorChunk)
    assert events[0].code == "exhausted"
    assert "no tools" in events[0].message
    assert reporter.records() == []


@pytest.mark.asyncio
async def test_transient_errors_exhaust_retry_budget_on_every_candidate():
    sleeper = RecordingSleeper()
    adapters = {
        OPENAI: ScriptedAdapter(OPENAI, [TransientError("503")] * 3),
        ANTHROPIC: ScriptedAdapter(ANTHROPIC, [TransientError("503")] * 3),
    }
    orch = _orchestrator(adapters, _policy(OPENAI, ANTHROPIC, max_retries=2), sleeper=sleeper)

    state, events, reporter = await _run(orch, _request())

    assert state is OrchestratorState.EXHAUSTED
    assert len(adapters[OPENAI].calls) == 3
    assert len(adapters[ANTHROPIC].calls) == 3
    assert sleeper.delays == [1.0] * 4
    assert _terminals(events) == [events[-1]]
    assert events[-1].code == "exhausted"
    assert reporter.records() == []
    assert len(orch.attempts) == 6


@pytest.mark.asyncio
async def test_single_candidate_success_emits_done_and_one_record():
    adapters = {OPENAI: ScriptedAdapter(OPENAI)}
    orch = _orchestrator(adapters, _policy(OPENAI))

    state, events, reporter = await _run(orch, _request())

    assert state is OrchestratorState.SUCCEEDED
    assert [type(e) for e in events] == [ContentDelta, ContentDelta, CompletionDone]
    assert events[-1].usage == USAGE
    records = reporter.records()
    assert len(records) == 1
    record = records[0]
    assert record.provider == "openai"
    assert record.model == "gpt-4o-mini"
    assert record.caller_id == "user-1"
    assert record.purpose == "chat"
    assert record.total_tokens == record.prompt_tokens + record.completion_tokens == 20


@pytest.mark.asyncio
async def test_preferred_provider_is_attempted_first_with_request_model():
    adapters = {ANTHROPIC: ScriptedAdapter(ANTHROPIC), OPENAI: ScriptedAdapter(OPENAI)}
    orch = _orchestrator(adapters, _policy(ANTHROPIC, OPENAI))

    state, _events, reporter = await _run(orch, _request("gpt-4o"), preferred="openai")

    assert state is OrchestratorState.SUCCEEDED
    assert adapters[OPENAI].calls == ["gpt-4o"]
    assert adapters[ANTHROPIC].calls == []
    assert reporter.records()[0].provider == "openai"


@pytest.mark.asyncio
async def test_rate_limited_twice_then_success_retries_same_candidate():
    sleeper = RecordingSleeper()
    adapters = {
        OPENAI: ScriptedAdapter(OPENAI, [RateLimitError(), RateLimitError(), list(OK)]),
        ANTHROPIC: ScriptedAdapter(ANTHROPIC),
    }
    orch = _orchestrator(adapters, _policy(OPENAI, ANTHROPIC, max_retries=3), sleeper=sleeper)

    state, events, reporter = await _run(orch, _request("gpt-4o-mini"))

    assert state is OrchestratorState.SUCCEEDED
    assert sleeper.delays == [1.0, 1.0]
    assert adapters[OPENAI].calls == ["gpt-4o-mini"] * 3
    assert adapters[ANTHROPIC].calls == []
    assert "".join(e.text for e in events if isinstance(e, ContentDelta)) == "Hello"
    records = reporter.records()
    assert len(records) == 1
    assert records[0].provider == "openai"


@pytest.mark.asyncio
async def test_authentication_error_fails_over_immediately_with_fallback_model():
    sleeper = RecordingSleeper()
    adapters = {
        ANTHROPIC: ScriptedAdapter(ANTHROPIC, [AuthenticationError("bad key")]),
        OPENAI: ScriptedAdapter(OPENAI),
    }
    orch = _orchestrator(adapters, _policy(ANTHROPIC, OPENAI), sleeper=sleeper)

    state, _events, reporter = await _run(orch, _request("claude-sonnet-4-20250514"))

    assert state is OrchestratorState.SUCCEEDED
    assert adapters[ANTHROPIC].calls == ["claude-sonnet-4-20250514"]
    assert adapters[OPENAI].calls == [DEFAULT_FALLBACK_MODELS[OPENAI]]
    assert sleeper.delays == []
    assert reporter.records()[0].model == "gpt-4o-mini"
    assert [(a.provider, a.error_kind) for a in orch.attempts] == [
        ("anthropic", "authentication"),
        ("openai", None),
    ]
    statuses = {s.provider: s for s in orch.provider_statuses()}
    assert statuses["anthropic"].available is False
    assert statuses["openai"].available is True


@pytest.mark.asyncio
async def test_exhausted_retry_budget_advances_to_next_candidate():
    sleeper = RecordingSleeper()
    adapters = {
        OPENAI: ScriptedAdapter(OPENAI, [RateLimitError(), RateLimitError()]),
        GOOGLE: ScriptedAdapter(GOOGLE),
    }
    orch = _orchestrator(adapters, _policy(OPENAI, GOOGLE, max_retries=1), sleeper=sleeper)

    state, _events, reporter = await _run(orch, _request())

    assert state is OrchestratorState.SUCCEEDED
    assert len(adapters[OPENAI].calls) == 2
    assert sleeper.delays == [1.0]
    assert adapters[GOOGLE].calls == ["gemini-1.5-flash"]
    assert reporter.records()[0].provider == "google"


@pytest.mark.asyncio
async def test_mid_stream_failure_is_forwarded_not_failed_over():
    adapters = {
        OPENAI: ScriptedAdapter(OPENAI, [[ContentDelta("partial"), TransientError("connection reset")]]),
        ANTHROPIC: ScriptedAdapter(ANTHROPIC),
    }
    orch = _orchestrator(adapters, _policy(OPENAI, ANTHROPIC))

    _state, events, reporter = await _run(orch, _request())

    assert events[0] == ContentDelta("partial")
    assert isinstance(events[1], ErrorChunk)
    assert events[1].code == "transient"
    assert len(events) == 2
    assert adapters[ANTHROPIC].calls == []
    assert len(adapters[OPENAI].calls) == 1
    assert reporter.records() == []


@pytest.mark.asyncio
async def test_adapter_error_chunk_before_output_triggers_failover():
    adapters = {
        OPENAI: ScriptedAdapter(OPENAI, [[ErrorChunk("bad payload")]]),
        ANTHROPIC: ScriptedAdapter(ANTHROPIC),
    }
    orch = _orchestrator(adapters, _policy(OPENAI, ANTHROPIC))

    state, _events, reporter = await _run(orch, _request())

    assert state is OrchestratorState.SUCCEEDED
    assert orch.attempts[0].error_kind == "malformed_upstream_response"
    assert reporter.records()[0].provider == "anthropic"


@pytest.mark.asyncio
async def test_providers_without_credentials_are_skipped():
    adapters = {ANTHROPIC: ScriptedAdapter(ANTHROPIC), OPENAI: ScriptedAdapter(OPENAI)}
    orch = _orchestrator(adapters, _policy(ANTHROPIC, OPENAI), configured=[OPENAI])

    state, _events, _reporter = await _run(orch, _request("gpt-4o"))

    assert state is OrchestratorState.SUCCEEDED
    assert adapters[ANTHROPIC].calls == []
    assert adapters[OPENAI].calls == ["gpt-4o"]


@pytest.mark.asyncio
async def test_no_configured_provider_fails_before_any_attempt():
    adapters = {OPENAI: ScriptedAdapter(OPENAI)}
    orch = _orchestrator(adapters, _policy(OPENAI), configured=[])

    with pytest.raises(MissingProvidersError):
        orch.candidates(_request())

    state, events, reporter = await _run(orch, _request())

    assert state is OrchestratorState.EXHAUSTED
    assert len(events) == 1
    assert events[0].code == "missing_providers"
    assert adapters[OPENAI].calls == []
    assert reporter.records() == []


@pytest.mark.asyncio
async def test_caller_disconnect_stops_pulling_and_skips_failover():
    channel = QueueChannel()
    released = []
    fallback = ScriptedAdapter(ANTHROPIC)

    class DisconnectingAdapter(ScriptedAdapter):
        async def stream(self, request):
            self.calls.append(request.model)
            try:
                yield ContentDelta("a")
                channel.abandon()
                yield ContentDelta("b")
                yield CompletionDone(USAGE)
            finally:
                released.append(True)

    adapters = {OPENAI: DisconnectingAdapter(OPENAI), ANTHROPIC: fallback}
    orch = _orchestrator(adapters, _policy(OPENAI, ANTHROPIC))
    reporter = InMemoryUsageReporter()
    session = StreamingSession(channel, reporter=reporter)

    state = await orch.stream(_request(), session)

    assert state is OrchestratorState.CANCELLED
    assert released == [True]
    assert fallback.calls == []
    assert reporter.records() == []


@pytest.mark.asyncio
async def test_disconnect_during_retry_delay_starts_no_new_attempt():
    channel = QueueChannel()

    async def abandoning_sleeper(_seconds):
        channel.abandon()

    adapters = {
        OPENAI: ScriptedAdapter(OPENAI, [RateLimitError()]),
        ANTHROPIC: ScriptedAdapter(ANTHROPIC),
    }
    orch = _orchestrator(adapters, _policy(OPENAI, ANTHROPIC), sleeper=abandoning_sleeper)
    session = StreamingSession(channel, reporter=InMemoryUsageReporter())

    state = await orch.stream(_request(), session)

    assert state is OrchestratorState.CANCELLED
    assert len(adapters[OPENAI].calls) == 1
    assert adapters[ANTHROPIC].calls == []


@pytest.mark.asyncio
async def test_request_deadline_sends_timeout_error():
    class SlowAdapter(ScriptedAdapter):
        async def stream(self, request):
            self.calls.append(request.model)
            await asyncio.sleep(1)
            yield CompletionDone(USAGE)

    adapters = {OPENAI: SlowAdapter(OPENAI)}
    orch = _orchestrator(adapters, _policy(OPENAI))

    _state, events, reporter = await _run(orch, _request(), timeout_seconds=0.01)

    assert len(events) == 1
    assert isinstance(events[0], ErrorChunk)
    assert events[0].code == "timeout"
    assert reporter.records() == []


@pytest.mark.asyncio
async def test_usage_reporter_failure_does_not_affect_delivered_response():
    class BrokenReporter:
        async def record(self, record):
            raise RuntimeError("database down")

    adapters = {OPENAI: ScriptedAdapter(OPENAI)}
    orch = _orchestrator(adapters, _policy(OPENAI))

    state, events, _reporter = await _run(orch, _request(), reporter=BrokenReporter())

    assert state is OrchestratorState.SUCCEEDED
    assert isinstance(events[-1], CompletionDone)


@pytest.mark.asyncio
async def test_complete_retries_then_records_usage_once():
    sleeper = RecordingSleeper()
    adapters = {
        OPENAI: ScriptedAdapter(OPENAI, [TransientError("timeout"), None]),
        ANTHROPIC: ScriptedAdapter(ANTHROPIC),
    }
    orch = _orchestrator(adapters, _policy(OPENAI, ANTHROPIC), sleeper=sleeper)
    reporter = InMemoryUsageReporter()

    result = await orch.complete(_request(), reporter=reporter, purpose="chat")

    assert result.content == "Hello"
    assert result.provider == "openai"
    assert sleeper.delays == [1.0]
    assert len(reporter.records()) == 1
    assert reporter.records()[0].purpose == "chat"


@pytest.mark.asyncio
async def test_complete_exhaustion_raises_with_attempt_log():
    adapters = {
        OPENAI: ScriptedAdapter(OPENAI, [AuthenticationError("bad key")]),
        ANTHROPIC: ScriptedAdapter(ANTHROPIC, [AuthenticationError("bad key")]),
    }
    orch = _orchestrator(adapters, _policy(OPENAI, ANTHROPIC))
    reporter = InMemoryUsageReporter()

    with pytest.raises(ExhaustedError) as exc:
        await orch.complete(_request(), reporter=reporter)

    assert exc.value.failed_providers == ["openai", "anthropic"]
    assert isinstance(exc.value.last_error, AuthenticationError)
    assert reporter.records() == []


@pytest.mark.asyncio
async def test_check_providers_probes_each_configured_provider_and_closes_adapters():
    adapters = {OPENAI: ScriptedAdapter(OPENAI), ANTHROPIC: ScriptedAdapter(ANTHROPIC)}
    orch = _orchestrator(adapters, _policy(ANTHROPIC, OPENAI))

    statuses = await orch.check_providers()
    await orch.aclose()

    assert set(statuses) == {"anthropic", "openai"}
    assert all(s.available for s in statuses.values())
    assert adapters[OPENAI].closed and adapters[ANTHROPIC].closed


@pytest.mark.asyncio
async def test_upstream_timeout_retries_same_candidate_then_fails_over():
    timeouts = []

    def handler(request):
        timeouts.append(str(request.url))
        raise httpx.ReadTimeout("timed out", request=request)

    sleeper = RecordingSleeper()
    openai = OpenAIAdapter(
        ProviderConfig(api_key=SecretStr("k"), timeout_seconds=0.5),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    adapters = {OPENAI: openai, ANTHROPIC: ScriptedAdapter(ANTHROPIC)}
    orch = _orchestrator(adapters, _policy(OPENAI, ANTHROPIC, max_retries=1), sleeper=sleeper)

    state, events, reporter = await _run(orch, _request())
    await orch.aclose()

    assert state is OrchestratorState.SUCCEEDED
    assert len(timeouts) == 2
    assert sleeper.delays == [1.0]
    assert [a.error_kind for a in orch.attempts] == ["transient", "transient", None]
    assert adapters[ANTHROPIC].calls == [DEFAULT_FALLBACK_MODELS[ANTHROPIC]]
    assert isinstance(events[-1], CompletionDone)
    assert reporter.records()[0].provider == "anthropic"


class SlowReporter(InMemoryUsageReporter):
    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()

    async def record(self, record):
        self.started.set()
        await asyncio.sleep(0.05)
        await super().record(record)


@pytest.mark.asyncio
async def test_cancel_while_persisting_usage_still_records_once():
    reporter = SlowReporter()
    channel = QueueChannel()
    session = StreamingSession(channel, reporter=reporter, caller_id="user-1", purpose="chat")
    orch = _orchestrator({OPENAI: ScriptedAdapter(OPENAI)}, _policy(OPENAI))

    task = asyncio.create_task(orch.stream(_request(), session))
    await reporter.started.wait()
    channel.abandon()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert orch.state is OrchestratorState.SUCCEEDED
    assert reporter.records() == [session.record]
    assert await session.finalize() is False


@pytest.mark.asyncio
async def test_cancel_before_completion_records_nothing():
    reporter = InMemoryUsageReporter()
    channel = QueueChannel()
    session = StreamingSession(channel, reporter=reporter)
    gate = asyncio.Event()

    class HangingAdapter(ScriptedAdapter):
        async def stream(self, request):
            self.calls.append(request.model)
            yield ContentDelta("a")
            await gate.wait()
            yield CompletionDone(USAGE)

    orch = _orchestrator({OPENAI: HangingAdapter(OPENAI)}, _policy(OPENAI))
    task = asyncio.create_task(orch.stream(_request(), session))
    while not session.delivered:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert orch.state is OrchestratorState.CANCELLED
    assert session.record is None
    assert reporter.records() == []
