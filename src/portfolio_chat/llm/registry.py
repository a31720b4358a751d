"""Provider registry owned by the application context."""

from __future__ import annotations

from portfolio_chat.llm.base import LlmProviderClient


class ProviderRegistry:
    """Maps provider names to client instances; one of them is the default."""

    def __init__(self, default: str | None = None) -> None:
        self._clients: dict[str, LlmProviderClient] = {}
        self._default = default

    def register(self, name: str, client: LlmProviderClient) -> None:
        if name in self._clients:
            raise ValueError(f"Provider already registered: {name}")
        self._clients[name] = client
        if self._default is None:
            self._default = name

    def get(self, name: str | None = None) -> LlmProviderClient:
        key = name or self._default
        if key is None or key not in self._clients:
            raise KeyError(f"Unknown provider: {key}")
        return self._clients[key]

    @property
    def default_name(self) -> str | None:
        return self._default

    def names(self) -> list[str]:
        return list(self._clients)
