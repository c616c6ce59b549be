"""Configuration: frozen Config with explicit provider/mode choices."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Literal

from dotenv import load_dotenv

from toolstream.capabilities import MODES
from toolstream.errors import ConfigurationError
from toolstream.retry import RetryPolicy

load_dotenv()

ProviderName = Literal["anthropic", "openai", "deepseek", "local"]

PROVIDERS: tuple[ProviderName, ...] = ("anthropic", "openai", "deepseek", "local")

# Provider-specific API key environment variable names; local needs none.
API_KEY_ENV_VARS: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
}

LOCAL_BASE_URL_ENV_VAR = "TOOLSTREAM_LOCAL_BASE_URL"
DEFAULT_LOCAL_BASE_URL = "http://localhost:11434"


def _default_local_base_url() -> str:
    return os.environ.get(LOCAL_BASE_URL_ENV_VAR) or DEFAULT_LOCAL_BASE_URL


@dataclass(frozen=True)
class Config:
    """Immutable configuration for a toolstream engine.

    API keys are auto-resolved from standard environment variables.

    Example:
        config = Config(provider="anthropic", mode="agent")
        # API key is automatically resolved from ANTHROPIC_API_KEY
    """

    provider: ProviderName = "anthropic"
    #: Provider default model when *None*.
    model: str | None = None
    #: Auto-resolved from ``<PROVIDER>_API_KEY`` when *None*.
    api_key: str | None = None
    mode: str = "assistant"
    approval_timeout_s: float = 30.0
    #: Follow-up requests allowed after tool execution within one turn.
    max_tool_rounds: int = 1
    local_base_url: str = field(default_factory=_default_local_base_url)
    #: Provider default when *None*.
    request_timeout_s: float | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    use_mock: bool = False
    always_approve: frozenset[str] = frozenset()
    never_execute: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        """Auto-resolve API key and validate configuration."""
        if self.provider not in PROVIDERS:
            raise ConfigurationError(
                f"Unknown provider: {self.provider!r}",
                hint=f"Supported providers: {', '.join(PROVIDERS)}",
            )
        if self.mode not in MODES:
            raise ConfigurationError(
                f"Unknown mode: {self.mode!r}",
                hint=f"Supported modes: {', '.join(MODES)}",
            )
        if self.approval_timeout_s <= 0:
            raise ConfigurationError(
                f"approval_timeout_s must be > 0, got {self.approval_timeout_s}",
                hint="Unanswered approvals are denied after this many seconds.",
            )
        if self.max_tool_rounds < 0:
            raise ConfigurationError(
                f"max_tool_rounds must be ≥ 0, got {self.max_tool_rounds}",
                hint="0 disables follow-up requests after tool execution.",
            )
        if self.request_timeout_s is not None and self.request_timeout_s <= 0:
            raise ConfigurationError(f"request_timeout_s must be > 0, got {self.request_timeout_s}")

        object.__setattr__(self, "always_approve", frozenset(self.always_approve))
        object.__setattr__(self, "never_execute", frozenset(self.never_execute))

        env_var = API_KEY_ENV_VARS.get(self.provider)
        if self.api_key is None and env_var is not None and not self.use_mock:
            object.__setattr__(self, "api_key", os.environ.get(env_var) or None)

        if env_var is not None and not self.use_mock and not self.api_key:
            raise ConfigurationError(
                f"API key required for {self.provider}",
                hint=f"Set {env_var} environment variable or pass api_key=...",
            )

    @property
    def provider_id(self) -> str:
        """Registry key of the provider this config selects."""
        return "mock" if self.use_mock else self.provider

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(provider={self.provider!r}, model={self.model!r}, mode={self.mode!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, use_mock={self.use_mock})"
        )

    __repr__ = __str__
