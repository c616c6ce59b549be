"""Provider implementations and the uniform provider contract."""

from .anthropic import AnthropicProvider
from .base import BaseProvider, Provider, ProviderCapabilities, StreamHandle
from .deepseek import DeepSeekProvider
from .local import LocalProvider
from .mock import MockProvider
from .models import (
    ExecutionResult,
    FinalMessage,
    Message,
    ModelPricing,
    ProviderDescriptor,
    ProviderResponse,
    RequestDefaults,
    StreamCallbacks,
    Usage,
)
from .openai import OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "DeepSeekProvider",
    "ExecutionResult",
    "FinalMessage",
    "LocalProvider",
    "Message",
    "MockProvider",
    "ModelPricing",
    "OpenAIProvider",
    "Provider",
    "ProviderCapabilities",
    "ProviderDescriptor",
    "ProviderResponse",
    "RequestDefaults",
    "StreamCallbacks",
    "StreamHandle",
    "Usage",
]
