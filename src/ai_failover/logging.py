from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping, MutableMapping
from typing import Any, TypeAlias, cast

import structlog

_SENSITIVE_KEYS = {
    "authorization",
    "proxy-authorization",
    "x-api-key",
    "x-goog-api-key",
    "api_key",
    "apikey",
    "usage_callback_auth",
    "server_auth_token",
}

_SENSITIVE_FRAGMENTS = ("api_key", "apikey", "secret", "password", "token_value")

# Bearer tokens and the vendor key shapes we proxy for (OpenAI/OpenRouter/Anthropic `sk-...`, Google `AIza...`).
_PATTERNS = (
    (re.compile(r"(?i)\bBearer\s+([A-Za-z0-9._~+/-]{6,})"), "Bearer [REDACTED]"),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{8,}"), "[REDACTED]"),
    (re.compile(r"\bAIza[0-9A-Za-z_-]{20,}"), "[REDACTED]"),
)

ProcessorReturn: TypeAlias = Mapping[str, Any] | str | bytes | bytearray | tuple[Any, ...]
Processor: TypeAlias = Callable[[Any, str, MutableMapping[str, Any]], ProcessorReturn]


def redact_text(value: str, *, secrets: list[str] | None = None) -> str:
    out = value
    for secret in secrets or ():
        if secret and secret in out:
            out = out.replace(secret, "[REDACTED]")
    for pattern, replacement in _PATTERNS:
        out = pattern.sub(replacement, out)
    return out


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return lowered in _SENSITIVE_KEYS or any(f in lowered for f in _SENSITIVE_FRAGMENTS)


def _redact(obj: Any, *, secrets: list[str]) -> Any:
    if isinstance(obj, str):
        return redact_text(obj, secrets=secrets)
    if isinstance(obj, (list, tuple)):
        return type(obj)(_redact(v, secrets=secrets) for v in obj)
    if isinstance(obj, dict):
        return {
            k: "[REDACTED]" if _is_sensitive_key(str(k)) else _redact(v, secrets=secrets) for k, v in obj.items()
        }
    return obj


def redaction_processor(secrets: list[str] | None = None) -> Processor:
    known = [s for s in secrets or () if isinstance(s, str) and s]

    def _processor(_logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> ProcessorReturn:
        return cast(dict[str, Any], _redact(dict(event_dict), secrets=known))

    return _processor


def configure_logging(level: str = "INFO", fmt: str = "json", *, secrets: list[str] | None = None) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    # Redaction always runs, so vendor key shapes are masked even when no secrets are known up front.
    processors: list[Processor] = [
        cast(Processor, structlog.contextvars.merge_contextvars),
        cast(Processor, structlog.processors.add_log_level),
        cast(Processor, structlog.processors.TimeStamper(fmt="iso")),
        cast(Processor, structlog.processors.format_exc_info),
        redaction_processor(secrets),
    ]

    if fmt == "json":
        processors.append(cast(Processor, structlog.processors.JSONRenderer()))
    else:
        processors.append(cast(Processor, structlog.dev.ConsoleRenderer()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )
