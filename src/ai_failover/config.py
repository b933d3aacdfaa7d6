from __future__ import annotations

import os

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from .contracts import ProviderName


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


DEFAULT_FAILOVER_ORDER = "anthropic,openai,google,openrouter"

DEFAULT_FALLBACK_MODELS: dict[ProviderName, str] = {
    ProviderName.ANTHROPIC: "claude-3-5-haiku-20241022",
    ProviderName.OPENAI: "gpt-4o-mini",
    ProviderName.GOOGLE: "gemini-1.5-flash",
    ProviderName.OPENROUTER: "openai/gpt-4o-mini",
}

API_KEY_ENV_VARS: dict[ProviderName, str] = {
    ProviderName.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderName.OPENAI: "OPENAI_API_KEY",
    ProviderName.GOOGLE: "GOOGLE_API_KEY",
    ProviderName.OPENROUTER: "OPENROUTER_API_KEY",
}


class ProviderConfig(BaseModel):
    """Per-provider credentials and connection parameters for one request-handling session."""

    model_config = ConfigDict(frozen=True)

    api_key: SecretStr
    base_url: str | None = None
    timeout_seconds: float = 60.0
    max_retries: int = 2

    @field_validator("timeout_seconds")
    @classmethod
    def _validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be > 0.")
        return v

    @field_validator("max_retries")
    @classmethod
    def _validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be >= 0.")
        return v


class FailoverPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    providers: tuple[ProviderName, ...]
    fallback_models: dict[ProviderName, str]
    max_retries: int = 3
    retry_delay_seconds: float = 1.0

    @model_validator(mode="after")
    def _validate_policy(self) -> "FailoverPolicy":
        if not self.providers:
            raise ValueError("Failover policy needs at least one provider.")
        if len(set(self.providers)) != len(self.providers):
            raise ValueError("Failover providers must be unique.")
        missing = [p.value for p in self.providers if not self.fallback_models.get(p)]
        if missing:
            raise ValueError(f"Missing fallback model for: {', '.join(missing)}.")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must be >= 0.")
        return self

    def candidate_order(self, preferred: ProviderName | str | None = None) -> list[ProviderName]:
        order = list(self.providers)
        if preferred is None:
            return order
        try:
            name = ProviderName(preferred)
        except ValueError:
            return order
        if name in order:
            order.remove(name)
            order.insert(0, name)
        return order


class ProxyConfig(BaseModel):
    # Upstream credentials (already decrypted)
    anthropic_api_key: str | None = Field(default_factory=lambda: os.getenv("ANTHROPIC_API_KEY"))
    openai_api_key: str | None = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    google_api_key: str | None = Field(default_factory=lambda: os.getenv("GOOGLE_API_KEY"))
    openrouter_api_key: str | None = Field(default_factory=lambda: os.getenv("OPENROUTER_API_KEY"))
    openrouter_base_url: str = Field(
        default_factory=lambda: os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    )
    app_url: str = Field(default_factory=lambda: os.getenv("APP_URL", "http://localhost:3000"))

    # Per-provider connection behavior
    provider_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "60"))
    )
    provider_max_retries: int = Field(default_factory=lambda: int(os.getenv("PROVIDER_MAX_RETRIES", "2")))

    # Failover
    failover_providers: list[str] = Field(
        default_factory=lambda: _parse_csv(os.getenv("FAILOVER_PROVIDERS", DEFAULT_FAILOVER_ORDER))
    )
    failover_max_retries: int = Field(default_factory=lambda: int(os.getenv("FAILOVER_MAX_RETRIES", "3")))
    failover_retry_delay_seconds: float = Field(
        default_factory=lambda: float(os.getenv("FAILOVER_RETRY_DELAY_SECONDS", "1.0"))
    )
    fallback_models: dict[str, str] = Field(
        default_factory=lambda: {
            p.value: os.getenv(f"FALLBACK_MODEL_{p.name}", model) for p, model in DEFAULT_FALLBACK_MODELS.items()
        }
    )

    # Usage sink
    usage_callback_url: str | None = Field(default_factory=lambda: os.getenv("USAGE_CALLBACK_URL"))
    usage_callback_auth: str | None = Field(default_factory=lambda: os.getenv("USAGE_CALLBACK_AUTH"))

    # Observability
    enable_metrics: bool = Field(default_factory=lambda: _env_bool("ENABLE_METRICS"))
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    # Server hardening
    server_auth_token: str | None = Field(default_factory=lambda: os.getenv("SERVER_AUTH_TOKEN"))
    enable_api_docs: bool = Field(default_factory=lambda: _env_bool("ENABLE_API_DOCS"))
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("CORS_ALLOW_ORIGINS")))
    cors_allow_credentials: bool = Field(default_factory=lambda: _env_bool("CORS_ALLOW_CREDENTIALS"))
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUEST_BODY_BYTES", str(4 * 1024 * 1024)))
    )
    max_inflight_requests: int = Field(default_factory=lambda: int(os.getenv("MAX_INFLIGHT_REQUESTS", "32")))
    max_messages: int = Field(default_factory=lambda: int(os.getenv("MAX_MESSAGES", "128")))
    max_total_message_chars: int = Field(
        default_factory=lambda: int(os.getenv("MAX_TOTAL_MESSAGE_CHARS", "400000"))
    )

    # End-to-end deadlines
    complete_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("COMPLETE_TIMEOUT_SECONDS", "60"))
    )
    stream_total_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("STREAM_TOTAL_TIMEOUT_SECONDS", "300"))
    )

    def failover_policy(self) -> FailoverPolicy:
        return FailoverPolicy(
            providers=tuple(ProviderName(p) for p in self.failover_providers),
            fallback_models={ProviderName(k): v for k, v in self.fallback_models.items()},
            max_retries=self.failover_max_retries,
            retry_delay_seconds=self.failover_retry_delay_seconds,
        )

    def api_keys(self) -> dict[ProviderName, str]:
        keys = {
            ProviderName.ANTHROPIC: self.anthropic_api_key,
            ProviderName.OPENAI: self.openai_api_key,
            ProviderName.GOOGLE: self.google_api_key,
            ProviderName.OPENROUTER: self.openrouter_api_key,
        }
        return {name: key for name, key in keys.items() if key}

    def provider_config(self, provider: ProviderName, api_key: str) -> ProviderConfig:
        base_url = self.openrouter_base_url if provider is ProviderName.OPENROUTER else None
        return ProviderConfig(
            api_key=SecretStr(api_key),
            base_url=base_url,
            timeout_seconds=self.provider_timeout_seconds,
            max_retries=self.provider_max_retries,
        )

    def provider_configs(self, api_keys: dict[ProviderName, str]) -> dict[ProviderName, ProviderConfig]:
        return {name: self.provider_config(name, key) for name, key in api_keys.items() if key}

    def secrets(self) -> list[str]:
        values = [*self.api_keys().values(), self.server_auth_token, self.usage_callback_auth]
        return [s for s in values if s]
