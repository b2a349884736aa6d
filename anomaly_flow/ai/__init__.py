"""
AI provider gateway module.
Rate-limited, circuit-broken access to one or more LLM backends.
"""

from anomaly_flow.ai.errors import (
    MalformedJudgment,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
)
from anomaly_flow.ai.gateway import AIGateway, ProviderResponse
from anomaly_flow.ai.providers import (
    LLMProvider,
    MockProvider,
    OpenAIProvider,
    OpenRouterProvider,
    get_configured_providers,
)

__all__ = [
    "AIGateway",
    "ProviderResponse",
    "LLMProvider",
    "MockProvider",
    "OpenAIProvider",
    "OpenRouterProvider",
    "get_configured_providers",
    "ProviderError",
    "ProviderTimeout",
    "ProviderUnavailable",
    "MalformedJudgment",
]
