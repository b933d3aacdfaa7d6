from __future__ import annotations

from dataclasses import dataclass

from .contracts import ProviderName
from .errors import PricingError


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider: ProviderName
    context_window: int
    max_output_tokens: int
    input_cost_per_1m: float
    output_cost_per_1m: float
    supports_streaming: bool = True
    supports_tools: bool = True
    supports_vision: bool = True


def _m(provider: ProviderName, id: str, name: str, ctx: int, max_out: int, inp: float, out: float, **caps: bool) -> ModelInfo:
    return ModelInfo(
        id=id,
        name=name,
        provider=provider,
        context_window=ctx,
        max_output_tokens=max_out,
        input_cost_per_1m=inp,
        output_cost_per_1m=out,
        **caps,
    )


_A = ProviderName.ANTHROPIC
_O = ProviderName.OPENAI
_G = ProviderName.GOOGLE
_R = ProviderName.OPENROUTER

# USD per 1M tokens. No dynamic fetching, no defaults.
MODEL_CATALOG: tuple[ModelInfo, ...] = (
    _m(_A, "claude-sonnet-4-20250514", "Claude Sonnet 4", 200_000, 8192, 3.0, 15.0),
    _m(_A, "claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", 200_000, 8192, 3.0, 15.0),
    _m(_A, "claude-3-5-haiku-20241022", "Claude 3.5 Haiku", 200_000, 8192, 0.8, 4.0, supports_vision=False),
    _m(_O, "gpt-4o", "GPT-4o", 128_000, 16384, 2.5, 10.0),
    _m(_O, "gpt-4o-mini", "GPT-4o Mini", 128_000, 16384, 0.15, 0.6),
    _m(_O, "gpt-4-turbo", "GPT-4 Turbo", 128_000, 4096, 10.0, 30.0),
    _m(_G, "gemini-2.0-flash-exp", "Gemini 2.0 Flash", 1_000_000, 8192, 0.0, 0.0),
    _m(_G, "gemini-1.5-pro", "Gemini 1.5 Pro", 2_000_000, 8192, 1.25, 5.0),
    _m(_G, "gemini-1.5-flash", "Gemini 1.5 Flash", 1_000_000, 8192, 0.075, 0.3),
    _m(_R, "anthropic/claude-sonnet-4", "Claude Sonnet 4 (OpenRouter)", 200_000, 8192, 3.0, 15.0),
    _m(_R, "openai/gpt-4o", "GPT-4o (OpenRouter)", 128_000, 16384, 2.5, 10.0),
    _m(_R, "openai/gpt-4o-mini", "GPT-4o Mini (OpenRouter)", 128_000, 16384, 0.15, 0.6),
    _m(_R, "google/gemini-pro-1.5", "Gemini Pro 1.5 (OpenRouter)", 2_000_000, 8192, 1.25, 5.0),
    _m(_R, "meta-llama/llama-3.3-70b-instruct", "Llama 3.3 70B (OpenRouter)", 128_000, 4096, 0.35, 0.4, supports_vision=False),
    _m(_R, "mistralai/mistral-large", "Mistral Large (OpenRouter)", 128_000, 4096, 2.0, 6.0, supports_vision=False),
)

_BY_KEY: dict[tuple[ProviderName, str], ModelInfo] = {(m.provider, m.id): m for m in MODEL_CATALOG}


def _coerce(provider: ProviderName | str) -> ProviderName | None:
    try:
        return ProviderName(provider)
    except ValueError:
        return None


def find_model(provider: ProviderName | str, model: str) -> ModelInfo | None:
    name = _coerce(provider)
    if name is None:
        return None
    return _BY_KEY.get((name, model))


def get_model(model: str) -> ModelInfo | None:
    for info in MODEL_CATALOG:
        if info.id == model:
            return info
    return None


def models_for(provider: ProviderName | str) -> list[ModelInfo]:
    name = _coerce(provider)
    return [m for m in MODEL_CATALOG if m.provider == name]


def calculate_cost(provider: ProviderName | str, model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """
    Price a completion from the static catalog.

    Unknown (provider, model) pairs raise PricingError instead of pricing at zero,
    so billing gaps surface as configuration failures.
    """
    if prompt_tokens < 0 or completion_tokens < 0:
        raise ValueError("Token counts must be non-negative.")
    info = find_model(provider, model)
    if info is None:
        label = provider.value if isinstance(provider, ProviderName) else provider
        raise PricingError(f"No pricing configured for {label}/{model}.", provider=label, model=model)
    input_cost = (prompt_tokens / 1_000_000) * info.input_cost_per_1m
    output_cost = (completion_tokens / 1_000_000) * info.output_cost_per_1m
    return input_cost + output_cost
