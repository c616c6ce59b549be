"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration and small capability
fixtures. Fixtures here are autouse unless noted.
"""

from __future__ import annotations

from contextlib import suppress
import logging
import os
from typing import Any

import pytest

from toolstream.capabilities import CapabilityDescriptor, CapabilityRegistry, FunctionCapability

ANTHROPIC_KEY = "sk-ant-test-key_123"
OPENAI_KEY = "sk-test-key-123"
DEEPSEEK_KEY = "sk-deepseek-test"

# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr("dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False)


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears ANTHROPIC_*, OPENAI_*, DEEPSEEK_* and TOOLSTREAM_* env vars.
    Opt-out: @pytest.mark.allow_env_pollution
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return
    for key in list(os.environ.keys()):
        if key.startswith(("ANTHROPIC_", "OPENAI_", "DEEPSEEK_", "TOOLSTREAM_")):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Capabilities
# =============================================================================


class RecordingFunction:
    """Callable capability body that records every parameter mapping it gets."""

    def __init__(self, result: Any = "ok", error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def __call__(self, parameters: dict[str, Any]) -> Any:
        self.calls.append(parameters)
        if self.error is not None:
            raise self.error
        return self.result


def make_capability(
    capability_id: str = "file_read",
    *,
    risk_level: str = "low",
    func: RecordingFunction | None = None,
    **kwargs: Any,
) -> tuple[FunctionCapability, RecordingFunction]:
    body = func or RecordingFunction()
    descriptor = CapabilityDescriptor(
        id=capability_id,
        description=f"{capability_id} capability",
        risk_level=risk_level,
        parameters={"path": {"type": "string", "description": "File path", "required": True}},
        **kwargs,
    )
    return FunctionCapability(descriptor, body), body


@pytest.fixture
def file_read():
    """A low-risk ``file_read`` capability and its recording body."""
    return make_capability("file_read", category="read")


@pytest.fixture
def file_delete():
    """A high-risk ``file_delete`` capability and its recording body."""
    return make_capability("file_delete", risk_level="high", category="write")


@pytest.fixture
def capability_registry(file_read, file_delete) -> CapabilityRegistry:
    return CapabilityRegistry([file_read[0], file_delete[0]])
