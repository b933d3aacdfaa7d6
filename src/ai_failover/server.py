import asyncio
import os
import time
from contextlib import asynccontextmanager
from functools import partial

import structlog

from .channel import QueueChannel
from .config import ProxyConfig
from .contracts import CompletionRequest
from .credentials import CredentialSource, EnvCredentialSource
from .errors import (
    AuthenticationError,
    CapabilityMismatchError,
    ConfigurationError,
    ExhaustedError,
    MissingProvidersError,
    ProviderError,
    RateLimitError,
    RequestTimeoutError,
    UpstreamProtocolError,
)
from .http_security import install_middlewares
from .logging import configure_logging
from .metrics import maybe_start_metrics, server_errors_total, server_request_latency_seconds, server_requests_total
from .orchestrator import AdapterFactory, FailoverOrchestrator, Sleeper
from .providers.registry import create_adapter
from .schemas import (
    CompletionRequestBody,
    CompletionResponse,
    make_completion_response,
    make_error_response,
    make_provider_status,
)
from .session import StreamingSession
from .streaming import sse_from_channel
from .usage import HttpUsageReporter, InMemoryUsageReporter, UsageReporter, UsageStats

log = structlog.get_logger()

DEFAULT_PURPOSE = "chat"


def create_app(
    cfg: ProxyConfig | None = None,
    *,
    credentials: CredentialSource | None = None,
    reporter: UsageReporter | None = None,
    adapter_factory: AdapterFactory | None = None,
    sleeper: Sleeper | None = None,
):
    try:
        from fastapi import FastAPI, Request
        from fastapi.exceptions import RequestValidationError
        from fastapi.responses import JSONResponse, StreamingResponse
    except ImportError as e:  # pragma: no cover
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    cfg = cfg or ProxyConfig()
    configure_logging(level=cfg.log_level, fmt=cfg.log_format, secrets=cfg.secrets())

    policy = cfg.failover_policy()
    credentials = credentials or EnvCredentialSource(cfg)
    owned_reporter: HttpUsageReporter | None = None
    if reporter is None:
        if cfg.usage_callback_url:
            owned_reporter = HttpUsageReporter(cfg.usage_callback_url, auth_header=cfg.usage_callback_auth)
            reporter = owned_reporter
        else:
            reporter = InMemoryUsageReporter()
    factory: AdapterFactory = adapter_factory or partial(create_adapter, app_url=cfg.app_url)

    # Stream producers outlive their response body until usage is persisted.
    background: set[asyncio.Task[None]] = set()

    def _request_id(request) -> str | None:
        return getattr(getattr(request, "state", None), "request_id", None)

    def _caller_id(request) -> str | None:
        return getattr(getattr(request, "state", None), "caller_id", None)

    def _observe(path: str, status_code: int, started_at: float) -> None:
        server_requests_total.labels(path=path, status=str(status_code)).inc()
        server_request_latency_seconds.labels(path=path).observe(max(0.0, time.monotonic() - started_at))

    def _error(request, status_code: int, message: str, type: str, headers: dict[str, str] | None = None):
        server_errors_total.labels(type=type).inc()
        return JSONResponse(
            status_code=status_code,
            content=make_error_response(message=message, type=type, code=_request_id(request)).model_dump(),
            headers=headers,
        )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        try:
            yield
        finally:
            if background:
                await asyncio.wait(set(background))
            if owned_reporter is not None:
                await owned_reporter.aclose()

    app = FastAPI(
        title="ai-failover-proxy",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    install_middlewares(app, cfg=cfg)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request.") if errors else "Invalid request."
        return _error(request, 400, message, "invalid_request_error")

    @app.exception_handler(CapabilityMismatchError)
    async def _capability_error_handler(request, exc: CapabilityMismatchError):
        return _error(request, 400, str(exc), "invalid_request_error")

    @app.exception_handler(ConfigurationError)
    async def _config_error_handler(request, exc: ConfigurationError):
        return _error(request, 400, str(exc), "invalid_request_error")

    @app.exception_handler(AuthenticationError)
    async def _auth_error_handler(request, exc: AuthenticationError):
        return _error(request, 401, str(exc), "authentication_error")

    @app.exception_handler(RateLimitError)
    async def _rate_limit_error_handler(request, exc: RateLimitError):
        headers = {}
        if exc.retry_after_seconds is not None:
            headers["Retry-After"] = str(exc.retry_after_seconds)
        return _error(request, 429, str(exc), "rate_limit_error", headers=headers)

    @app.exception_handler(ExhaustedError)
    async def _exhausted_error_handler(request, exc: ExhaustedError):
        return _error(request, 502, str(exc), "upstream_error")

    @app.exception_handler(UpstreamProtocolError)
    async def _upstream_error_handler(request, exc: UpstreamProtocolError):
        return _error(request, 502, str(exc), "upstream_error")

    @app.exception_handler(MissingProvidersError)
    async def _missing_providers_handler(request, exc: MissingProvidersError):
        return _error(request, 503, str(exc), "configuration_error")

    @app.exception_handler(RequestTimeoutError)
    async def _timeout_error_handler(request, exc: RequestTimeoutError):
        return _error(request, 504, str(exc) or "Request timed out.", "timeout")

    @app.exception_handler(ProviderError)
    async def _provider_error_handler(request, exc: ProviderError):
        return _error(request, 500, str(exc), "api_error")

    def _check_limits(body: CompletionRequestBody) -> None:
        if len(body.messages) > cfg.max_messages:
            raise ConfigurationError("Too many messages.")
        if body.total_chars() > cfg.max_total_message_chars:
            raise ConfigurationError("Message content too large.")

    def _completion_request(body: CompletionRequestBody, caller_id: str | None) -> CompletionRequest:
        try:
            return body.to_completion_request(caller_id=caller_id)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    async def _orchestrator(caller_id: str | None) -> FailoverOrchestrator:
        keys = await credentials.get_api_keys(caller_id)
        return FailoverOrchestrator(
            cfg.provider_configs(keys),
            policy,
            adapter_factory=factory,
            sleeper=sleeper,
        )

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/v1/ai/stream")
    async def stream(body: CompletionRequestBody, request: Request):
        started_at = time.monotonic()
        _check_limits(body)
        caller_id = _caller_id(request)
        completion_request = _completion_request(body, caller_id)
        orchestrator = await _orchestrator(caller_id)
        # Fail before the event stream starts so the caller gets a 503, not an SSE error.
        orchestrator.candidates(completion_request, body.provider)

        channel = QueueChannel()
        session = StreamingSession(
            channel,
            reporter=reporter,
            caller_id=caller_id,
            purpose=body.purpose or DEFAULT_PURPOSE,
            metadata=body.usage_metadata(),
        )

        async def _produce() -> None:
            try:
                await orchestrator.stream(
                    completion_request,
                    session,
                    preferred=body.provider,
                    timeout_seconds=cfg.stream_total_timeout_seconds,
                )
            finally:
                await orchestrator.aclose()

        task = asyncio.create_task(_produce())
        background.add(task)
        task.add_done_callback(background.discard)

        async def _events():
            try:
                async for data in sse_from_channel(channel):
                    yield data
            finally:
                if channel.abandoned and not task.done():
                    log.info("stream_client_disconnected", model=completion_request.model)
                    # Once the session has terminated the producer is only persisting usage.
                    if not session.terminated:
                        task.cancel()

        _observe("/v1/ai/stream", 200, started_at)
        return StreamingResponse(_events(), media_type="text/event-stream", headers={"X-Accel-Buffering": "no"})

    @app.post("/v1/ai/complete", response_model=CompletionResponse)
    async def complete(body: CompletionRequestBody, request: Request):
        started_at = time.monotonic()
        _check_limits(body)
        caller_id = _caller_id(request)
        completion_request = _completion_request(body, caller_id)
        orchestrator = await _orchestrator(caller_id)
        try:
            result = await orchestrator.complete(
                completion_request,
                preferred=body.provider,
                reporter=reporter,
                purpose=body.purpose or DEFAULT_PURPOSE,
                metadata=body.usage_metadata(),
                timeout_seconds=cfg.complete_timeout_seconds,
            )
        finally:
            await orchestrator.aclose()
        _observe("/v1/ai/complete", 200, started_at)
        return make_completion_response(result)

    @app.post("/v1/ai/providers/check")
    async def check_providers(request: Request):
        started_at = time.monotonic()
        orchestrator = await _orchestrator(_caller_id(request))
        try:
            statuses = await orchestrator.check_providers()
        finally:
            await orchestrator.aclose()
        _observe("/v1/ai/providers/check", 200, started_at)
        return {"providers": [make_provider_status(s).model_dump(by_alias=True) for s in statuses.values()]}

    @app.get("/v1/ai/usage")
    async def usage(request: Request, provider: str | None = None, limit: int = 100):
        if not isinstance(reporter, InMemoryUsageReporter):
            raise ConfigurationError("Usage queries are served by the persistence tier when USAGE_CALLBACK_URL is set.")
        caller_id = _caller_id(request)
        records = reporter.records(caller_id=caller_id, provider=provider)
        records.sort(key=lambda r: r.created_at, reverse=True)
        records = records[: max(0, limit)]
        return {"records": [r.to_dict() for r in records], "stats": UsageStats.from_records(records).to_dict()}

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("ai_failover.server:app", host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
