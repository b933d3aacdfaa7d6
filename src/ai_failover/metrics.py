from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

server_requests_total = Counter(
    "server_requests_total",
    "Total HTTP requests handled by server",
    labelnames=["path", "status"],
)

server_request_latency_seconds = Histogram(
    "server_request_latency_seconds",
    "HTTP request latency (seconds)",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["path"],
)

server_errors_total = Counter(
    "server_errors_total",
    "Total errors returned by server",
    labelnames=["type"],
)

provider_attempts_total = Counter(
    "provider_attempts_total",
    "Provider attempts by outcome (success or error kind)",
    labelnames=["provider", "outcome"],
)

provider_retries_total = Counter(
    "provider_retries_total",
    "Same-provider re-attempts after a retryable error",
    labelnames=["provider", "kind"],
)

provider_failovers_total = Counter(
    "provider_failovers_total",
    "Switches from one provider to the next candidate",
    labelnames=["from_provider", "to_provider"],
)

upstream_latency_seconds = Histogram(
    "provider_upstream_latency_seconds",
    "Time from dispatch to first chunk (stream) or full response (unary)",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60],
    labelnames=["provider"],
)

logical_requests_total = Counter(
    "logical_requests_total",
    "Logical completion requests by mode and terminal outcome",
    labelnames=["mode", "outcome"],
)

tokens_total = Counter(
    "tokens_total",
    "Tokens billed per provider",
    labelnames=["provider", "direction"],
)

cost_usd_total = Counter(
    "cost_usd_total",
    "Billed cost in USD per provider",
    labelnames=["provider"],
)

usage_reports_total = Counter(
    "usage_reports_total",
    "Usage sink deliveries by status",
    labelnames=["status"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
