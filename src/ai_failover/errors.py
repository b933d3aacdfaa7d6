from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .contracts import AttemptRecord


class ProviderError(Exception):
    """Base error for provider failures."""

    kind = "provider_error"
    retry_same_provider = False

    def __init__(self, message: str = "", *, provider: str | None = None, model: str | None = None):
        super().__init__(message)
        self.provider = provider
        self.model = model


class ConfigurationError(ProviderError):
    kind = "configuration"


class PricingError(ConfigurationError):
    """No pricing row for a (provider, model) pair."""


class MissingProvidersError(ProviderError):
    """No candidate in the failover policy has credentials configured."""

    kind = "missing_providers"

    def __init__(self, message: str = "No AI providers are configured for this workspace"):
        super().__init__(message)


class CapabilityMismatchError(ProviderError):
    """Requested feature (tools, vision, streaming, model) unsupported by the chosen model."""

    kind = "capability_mismatch"


class AuthenticationError(ProviderError):
    kind = "authentication"


class RateLimitError(ProviderError):
    kind = "rate_limited"
    retry_same_provider = True

    def __init__(
        self,
        retry_after_seconds: int | None = None,
        message: str = "Rate limited",
        *,
        provider: str | None = None,
        model: str | None = None,
    ):
        super().__init__(message, provider=provider, model=model)
        self.retry_after_seconds = retry_after_seconds


class TransientError(ProviderError):
    """Network failure, timeout or upstream 5xx."""

    kind = "transient"
    retry_same_provider = True


class UpstreamProtocolError(ProviderError):
    """Unexpected upstream response shape / contract mismatch."""

    kind = "malformed_upstream_response"


class RequestTimeoutError(ProviderError):
    """Server-side request deadline exceeded."""

    kind = "timeout"


class ExhaustedError(ProviderError):
    """Every candidate in the failover policy failed."""

    kind = "exhausted"

    def __init__(self, last_error: BaseException | None, attempts: Sequence[AttemptRecord] = ()):
        detail = str(last_error) if last_error is not None and str(last_error) else "Unknown error"
        super().__init__(f"All providers failed. Last error: {detail}")
        self.last_error = last_error
        self.attempts = tuple(attempts)

    @property
    def failed_providers(self) -> list[str]:
        seen: list[str] = []
        for attempt in self.attempts:
            if attempt.provider not in seen:
                seen.append(attempt.provider)
        return seen


def error_kind(error: BaseException) -> str:
    if isinstance(error, ProviderError):
        return error.kind
    return "internal"
