"""
LLM providers behind the gateway.
Supports: OpenAI, OpenRouter, and Mock mode.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional, Sequence, Union

import httpx
from openai import AsyncOpenAI

from anomaly_flow.ai.errors import ProviderError
from anomaly_flow.ai.parsing import keyword_judgment
from anomaly_flow.config import settings
from anomaly_flow.schemas import ImageAttachment

logger = logging.getLogger(__name__)


class LLMProvider(ABC):
    """Abstract base class for text-generation providers."""

    name: str = "provider"
    model: str = "unknown"

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        attachments: Sequence[ImageAttachment] = (),
    ) -> str:
        """Return the model's text answer to the prompt."""
        pass

    async def aclose(self) -> None:
        """Release any network resources held by the provider."""
        return None


def _chat_content(prompt: str, attachments: Sequence[ImageAttachment]) -> Union[list[dict], str]:
    """Build an OpenAI-style message content, with images as data URLs."""
    if not attachments:
        return prompt
    parts: list[dict] = [{"type": "text", "text": prompt}]
    for image in attachments:
        parts.append(
            {
                "type": "image_url",
                "image_url": {"url": f"data:{image.mime_type};base64,{image.data}"},
            }
        )
    return parts


class OpenAIProvider(LLMProvider):
    """
    OpenAI chat completions provider.
    Requires OPENAI_API_KEY environment variable.
    """

    name = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini"):
        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model
        logger.info(f"Initialized OpenAI provider: {model}")

    async def generate(
        self,
        prompt: str,
        attachments: Sequence[ImageAttachment] = (),
    ) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": "You are an anomaly detection analyst."},
                {"role": "user", "content": _chat_content(prompt, attachments)},
            ],
            temperature=0.2,
        )
        content = response.choices[0].message.content
        if not content:
            raise ProviderError(self.name, "empty completion")
        return content

    async def aclose(self) -> None:
        await self.client.close()


class OpenRouterProvider(LLMProvider):
    """
    OpenRouter provider (OpenAI-compatible chat completions over HTTP).
    Requires OPENROUTER_API_KEY environment variable.
    """

    name = "openrouter"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        app_url: str = "http://localhost:3001",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self.client = client or httpx.AsyncClient(base_url=base_url)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "HTTP-Referer": app_url,
            "X-Title": "Anomaly Detection",
        }
        logger.info(f"Initialized OpenRouter provider: {model}")

    async def generate(
        self,
        prompt: str,
        attachments: Sequence[ImageAttachment] = (),
    ) -> str:
        response = await self.client.post(
            "/chat/completions",
            json={
                "model": self.model,
                "messages": [
                    {"role": "user", "content": _chat_content(prompt, attachments)},
                ],
            },
            headers=self._headers,
        )
        if response.status_code >= 400:
            raise ProviderError(self.name, f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            return response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(self.name, f"unexpected response shape: {e}")

    async def aclose(self) -> None:
        await self.client.aclose()


class MockProvider(LLMProvider):
    """
    Mock provider for running without API calls.
    Answers deterministically by scoring the prompt's observation text
    with the keyword heuristic, in whatever format the prompt asks for.
    """

    name = "mock"
    model = "mock-keyword-v1"

    SUBJECT_PATTERN = re.compile(r'^Text(?: Data)?:\s*"?(.+?)"?\s*$', re.MULTILINE)

    def _subject(self, prompt: str) -> str:
        match = self.SUBJECT_PATTERN.search(prompt)
        return match.group(1) if match else ""

    async def generate(
        self,
        prompt: str,
        attachments: Sequence[ImageAttachment] = (),
    ) -> str:
        judgment = keyword_judgment(self._subject(prompt), provider=self.name)

        if "[Classification]|" in prompt:
            label = "anomalous" if judgment.is_anomaly else "normal"
            fake = "yes" if judgment.is_fake else "no"
            return (
                f"{label}|{judgment.confidence * 100:.0f}|{judgment.severity.value}"
                f"|{fake}|{judgment.reasoning}"
            )

        if "isAnomaly" in prompt:
            return json.dumps(
                {
                    "isAnomaly": judgment.is_anomaly,
                    "severity": judgment.severity.value,
                    "confidence": judgment.confidence,
                    "description": judgment.reasoning,
                    "recommendedActions": (
                        ["flag_for_review"] if judgment.is_anomaly else ["continue_monitoring"]
                    ),
                }
            )

        return f"Mock analysis: {judgment.reasoning}. Severity: {5 if judgment.is_anomaly else 2}/10"


def get_configured_providers() -> list[tuple[LLMProvider, Optional[int], Optional[int]]]:
    """
    Build the configured providers in fallback priority order.

    Returns:
        List of (provider, per_minute_limit, per_day_limit); None means unlimited
    """
    available: dict[str, tuple[LLMProvider, Optional[int], Optional[int]]] = {}

    if settings.openai_api_key:
        available["openai"] = (
            OpenAIProvider(api_key=settings.openai_api_key, model=settings.openai_model),
            settings.openai_requests_per_minute or None,
            settings.openai_requests_per_day or None,
        )
    if settings.openrouter_api_key:
        available["openrouter"] = (
            OpenRouterProvider(
                api_key=settings.openrouter_api_key,
                model=settings.openrouter_model,
                base_url=settings.openrouter_base_url,
                app_url=settings.app_url,
            ),
            settings.openrouter_requests_per_minute or None,
            settings.openrouter_requests_per_day or None,
        )
    if settings.use_mock_llm:
        available["mock"] = (MockProvider(), None, None)

    providers = []
    for name in settings.provider_priority:
        if name in available:
            providers.append(available.pop(name))
        else:
            logger.info(f"Provider '{name}' not configured, skipping")

    if available:
        logger.warning(f"Providers not listed in provider_priority ignored: {sorted(available)}")

    return providers
