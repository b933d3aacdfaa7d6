from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from .config import ProxyConfig
from .contracts import ProviderName


class CredentialSource(Protocol):
    """Resolves a caller's decrypted provider API keys."""

    async def get_api_keys(self, caller_id: str | None) -> dict[ProviderName, str]: ...


class StaticCredentialSource:
    def __init__(self, keys: Mapping[ProviderName | str, str]):
        self._keys = {ProviderName(k): v for k, v in keys.items() if v}

    async def get_api_keys(self, caller_id: str | None) -> dict[ProviderName, str]:
        return dict(self._keys)


class EnvCredentialSource:
    """Same keys for every caller, read from the process environment."""

    def __init__(self, cfg: ProxyConfig | None = None):
        self._cfg = cfg

    async def get_api_keys(self, caller_id: str | None) -> dict[ProviderName, str]:
        cfg = self._cfg or ProxyConfig()
        return cfg.api_keys()
