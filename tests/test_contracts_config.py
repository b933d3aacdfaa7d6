import pytest
from pydantic import ValidationError

from ai_failover.config import DEFAULT_FALLBACK_MODELS, FailoverPolicy, ProviderConfig, ProxyConfig
from ai_failover.contracts import ChatMessage, CompletionRequest, ImagePart, ProviderName, TextPart, Usage
from ai_failover.credentials import EnvCredentialSource, StaticCredentialSource


def test_usage_enforces_total_consistency():
    assert Usage.from_counts(2, 3).total_tokens == 5
    with pytest.raises(ValueError):
        Usage(prompt_tokens=2, completion_tokens=3, total_tokens=4)
    with pytest.raises(ValueError):
        Usage.from_counts(-1, 0)


def test_completion_request_validation():
    with pytest.raises(ValueError):
        CompletionRequest(messages=(), model="gpt-4o")
    with pytest.raises(ValueError):
        CompletionRequest(messages=(ChatMessage(role="user", content="hi"),), model="")
    with pytest.raises(ValueError):
        CompletionRequest(messages=(ChatMessage(role="user", content="hi"),), model="m", max_tokens=0)

    req = CompletionRequest(
        messages=(ChatMessage(role="user", content=(TextPart("look"), ImagePart(url="https://x.test/a.png"))),),
        model="gpt-4o",
    )
    assert req.uses_vision
    assert req.with_model("gpt-4o-mini").model == "gpt-4o-mini"
    assert req.model == "gpt-4o"


def test_image_part_requires_url_or_data():
    with pytest.raises(ValueError):
        ImagePart()
    assert ImagePart(data="AAAA", mime_type="image/png").as_data_url() == "data:image/png;base64,AAAA"


def test_provider_config_hides_api_key():
    cfg = ProviderConfig(api_key="sk-live-secret-value")
    assert "sk-live-secret-value" not in repr(cfg)
    assert cfg.api_key.get_secret_value() == "sk-live-secret-value"
    with pytest.raises(ValidationError):
        ProviderConfig(api_key="k", timeout_seconds=0)


def test_failover_policy_validation_and_candidate_order():
    policy = FailoverPolicy(
        providers=(ProviderName.ANTHROPIC, ProviderName.OPENAI, ProviderName.GOOGLE),
        fallback_models=dict(DEFAULT_FALLBACK_MODELS),
    )
    assert policy.candidate_order("google") == [ProviderName.GOOGLE, ProviderName.ANTHROPIC, ProviderName.OPENAI]
    assert policy.candidate_order("openrouter") == list(policy.providers)
    assert policy.candidate_order("bogus") == list(policy.providers)

    with pytest.raises(ValidationError):
        FailoverPolicy(providers=(), fallback_models={})
    with pytest.raises(ValidationError):
        FailoverPolicy(providers=(ProviderName.OPENAI, ProviderName.OPENAI), fallback_models=dict(DEFAULT_FALLBACK_MODELS))
    with pytest.raises(ValidationError):
        FailoverPolicy(providers=(ProviderName.OPENAI,), fallback_models={ProviderName.ANTHROPIC: "x"})


def test_proxy_config_reads_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-openai-test")
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.setenv("FAILOVER_PROVIDERS", "openai, google")
    monkeypatch.setenv("FAILOVER_MAX_RETRIES", "1")
    monkeypatch.setenv("FALLBACK_MODEL_GOOGLE", "gemini-1.5-pro")

    cfg = ProxyConfig()
    policy = cfg.failover_policy()
    assert policy.providers == (ProviderName.OPENAI, ProviderName.GOOGLE)
    assert policy.max_retries == 1
    assert policy.fallback_models[ProviderName.GOOGLE] == "gemini-1.5-pro"
    assert cfg.api_keys() == {ProviderName.OPENAI: "sk-openai-test"}
    assert "sk-openai-test" in cfg.secrets()


def test_openrouter_provider_config_uses_configured_base_url():
    cfg = ProxyConfig(openrouter_base_url="https://router.test/api/v1")
    configs = cfg.provider_configs({ProviderName.OPENROUTER: "k1", ProviderName.OPENAI: "k2", ProviderName.GOOGLE: ""})
    assert set(configs) == {ProviderName.OPENROUTER, ProviderName.OPENAI}
    assert configs[ProviderName.OPENROUTER].base_url == "https://router.test/api/v1"
    assert configs[ProviderName.OPENAI].base_url is None


@pytest.mark.asyncio
async def test_credential_sources():
    static = StaticCredentialSource({"openai": "k", "google": ""})
    assert await static.get_api_keys("anyone") == {ProviderName.OPENAI: "k"}

    env = EnvCredentialSource(ProxyConfig(anthropic_api_key="a", openai_api_key=None, google_api_key=None, openrouter_api_key=None))
    assert await env.get_api_keys(None) == {ProviderName.ANTHROPIC: "a"}
