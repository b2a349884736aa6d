"""
Multi-provider AI gateway.

Routes each prompt to the highest-priority provider that is neither
quota-exhausted nor circuit-broken, falling through to the next provider
on failure. Quota counters and breaker state are shared by every run in
the process, so all bookkeeping happens under one lock.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from anomaly_flow.ai.errors import ProviderTimeout, ProviderUnavailable
from anomaly_flow.ai.parsing import parse_or_fallback
from anomaly_flow.ai.providers import LLMProvider
from anomaly_flow.schemas import ImageAttachment, Judgment

logger = logging.getLogger(__name__)

MINUTE_SECONDS = 60.0
DAY_SECONDS = 86_400.0


@dataclass
class ProviderResponse:
    """Raw text answer and the provider that produced it."""

    text: str
    provider: str
    model: str


@dataclass
class ProviderQuota:
    """
    Per-provider call counters.

    Windows reset once their length has elapsed since the last reset,
    not on wall-clock boundaries. A limit of None means unlimited.
    """

    per_minute_limit: Optional[int] = None
    per_day_limit: Optional[int] = None
    minute_count: int = 0
    day_count: int = 0
    minute_reset_at: float = 0.0
    day_reset_at: float = 0.0

    def refresh(self, now: float) -> None:
        if now - self.minute_reset_at >= MINUTE_SECONDS:
            self.minute_count = 0
            self.minute_reset_at = now
        if now - self.day_reset_at >= DAY_SECONDS:
            self.day_count = 0
            self.day_reset_at = now

    def exhausted_reason(self) -> Optional[str]:
        if self.per_minute_limit is not None and self.minute_count >= self.per_minute_limit:
            return "per-minute quota exhausted"
        if self.per_day_limit is not None and self.day_count >= self.per_day_limit:
            return "daily quota exhausted"
        return None

    def consume(self) -> None:
        self.minute_count += 1
        self.day_count += 1


@dataclass
class CircuitBreaker:
    """Consecutive-failure counter that disables a provider for a cool-down."""

    failure_threshold: int = 5
    cooldown_seconds: float = 300.0
    consecutive_failures: int = 0
    open_until: Optional[float] = None

    def is_open(self, now: float) -> bool:
        if self.open_until is None:
            return False
        if now < self.open_until:
            return True
        # Cool-down elapsed
        self.consecutive_failures = 0
        self.open_until = None
        return False

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.open_until = None

    def record_failure(self, now: float) -> bool:
        """Count a failure; returns True when this failure trips the breaker."""
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.failure_threshold and self.open_until is None:
            self.open_until = now + self.cooldown_seconds
            return True
        return False


@dataclass
class ProviderSlot:
    provider: LLMProvider
    quota: ProviderQuota
    breaker: CircuitBreaker
    last_error: Optional[str] = field(default=None)


class AIGateway:
    """
    Uniform "generate / judge from prompt" service over several providers.

    Providers are tried in registration order; the first registered one
    is the primary. Knows nothing about anomalies or workflows.
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout_seconds = timeout_seconds
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._slots: dict[str, ProviderSlot] = {}
        self._lock = threading.Lock()

    def register_provider(
        self,
        provider: LLMProvider,
        per_minute: Optional[int] = None,
        per_day: Optional[int] = None,
    ) -> None:
        """
        Register a provider at the end of the fallback order.

        Args:
            provider: Provider implementation
            per_minute: Calls allowed per rolling minute (None = unlimited)
            per_day: Calls allowed per rolling day (None = unlimited)
        """
        if provider.name in self._slots:
            raise ValueError(f"Provider '{provider.name}' is already registered")

        now = self._clock()
        self._slots[provider.name] = ProviderSlot(
            provider=provider,
            quota=ProviderQuota(
                per_minute_limit=per_minute,
                per_day_limit=per_day,
                minute_reset_at=now,
                day_reset_at=now,
            ),
            breaker=CircuitBreaker(
                failure_threshold=self.failure_threshold,
                cooldown_seconds=self.cooldown_seconds,
            ),
        )
        logger.debug(f"Registered provider: {provider.name} ({provider.model})")

    @property
    def provider_names(self) -> list[str]:
        return list(self._slots)

    def _reserve(self, slot: ProviderSlot) -> Optional[str]:
        """
        Atomically check availability and take a quota slot.

        Returns:
            None if the call may proceed, otherwise the reason it may not
        """
        with self._lock:
            now = self._clock()
            if slot.breaker.is_open(now):
                remaining = slot.breaker.open_until - now
                return (
                    f"circuit open after {slot.breaker.consecutive_failures} consecutive "
                    f"failures, retry in {remaining:.0f}s"
                )
            slot.quota.refresh(now)
            reason = slot.quota.exhausted_reason()
            if reason:
                return reason
            slot.quota.consume()
            return None

    def _record_success(self, slot: ProviderSlot) -> None:
        with self._lock:
            slot.breaker.record_success()
            slot.last_error = None

    def _record_failure(self, slot: ProviderSlot, error: str) -> None:
        with self._lock:
            slot.last_error = error
            tripped = slot.breaker.record_failure(self._clock())
            failures = slot.breaker.consecutive_failures

        logger.error(
            f"{slot.provider.name} API error "
            f"(failure {failures}/{self.failure_threshold}): {error}"
        )
        if tripped:
            logger.error(
                f"{slot.provider.name} disabled for {self.cooldown_seconds:.0f}s "
                f"due to {failures} consecutive failures"
            )

    async def _call(
        self,
        slot: ProviderSlot,
        prompt: str,
        attachments: Sequence[ImageAttachment],
    ) -> str:
        name = slot.provider.name
        try:
            return await asyncio.wait_for(
                slot.provider.generate(prompt, attachments),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ProviderTimeout(name, self.timeout_seconds)

    async def generate(
        self,
        prompt: str,
        attachments: Optional[Sequence[ImageAttachment]] = None,
        forced_provider: Optional[str] = None,
    ) -> ProviderResponse:
        """
        Generate a raw answer from the first usable provider.

        Args:
            prompt: Prompt text
            attachments: Optional images sent with the prompt
            forced_provider: Restrict the call to one named provider

        Returns:
            ProviderResponse tagged with the provider that answered

        Raises:
            ProviderUnavailable: After every candidate provider has been tried
        """
        attachments = attachments or ()

        if forced_provider is not None:
            if forced_provider not in self._slots:
                raise ProviderUnavailable({forced_provider: "not configured"})
            candidates = [self._slots[forced_provider]]
        else:
            candidates = list(self._slots.values())

        reasons: dict[str, str] = {}
        for slot in candidates:
            name = slot.provider.name
            blocked = self._reserve(slot)
            if blocked:
                logger.warning(f"Skipping provider {name}: {blocked}")
                reasons[name] = blocked
                continue

            try:
                text = await self._call(slot, prompt, attachments)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record_failure(slot, str(e))
                reasons[name] = str(e)
                continue

            self._record_success(slot)
            logger.info(f"AI call served by {name} ({slot.provider.model})")
            return ProviderResponse(text=text, provider=name, model=slot.provider.model)

        logger.error(f"All AI providers failed: {reasons}")
        raise ProviderUnavailable(reasons)

    async def judge(
        self,
        prompt: str,
        attachments: Optional[Sequence[ImageAttachment]] = None,
    ) -> Judgment:
        """
        Generate an answer and parse it into a Judgment.

        Unparseable answers degrade to the keyword heuristic.

        Raises:
            ProviderUnavailable: If no provider could answer
        """
        response = await self.generate(prompt, attachments)
        return parse_or_fallback(response.text, response.provider)

    def status(self) -> dict:
        """
        Report quota usage and breaker state for every provider.

        Returns:
            Dictionary keyed by provider name, plus "primary"
        """
        report: dict = {"primary": next(iter(self._slots), None), "providers": {}}
        with self._lock:
            now = self._clock()
            for name, slot in self._slots.items():
                quota = slot.quota
                breaker = slot.breaker
                quota.refresh(now)
                circuit_open = breaker.is_open(now)
                report["providers"][name] = {
                    "model": slot.provider.model,
                    "per_minute": {
                        "used": quota.minute_count,
                        "limit": quota.per_minute_limit,
                        "remaining": (
                            None
                            if quota.per_minute_limit is None
                            else max(0, quota.per_minute_limit - quota.minute_count)
                        ),
                        "resets_in_seconds": max(0.0, quota.minute_reset_at + MINUTE_SECONDS - now),
                    },
                    "per_day": {
                        "used": quota.day_count,
                        "limit": quota.per_day_limit,
                        "remaining": (
                            None
                            if quota.per_day_limit is None
                            else max(0, quota.per_day_limit - quota.day_count)
                        ),
                        "resets_in_seconds": max(0.0, quota.day_reset_at + DAY_SECONDS - now),
                    },
                    "consecutive_failures": breaker.consecutive_failures,
                    "circuit_open": circuit_open,
                    "circuit_retry_in_seconds": (
                        max(0.0, breaker.open_until - now) if circuit_open else 0.0
                    ),
                    "available": not circuit_open and quota.exhausted_reason() is None,
                    "last_error": slot.last_error,
                }
        return report

    async def aclose(self) -> None:
        for slot in self._slots.values():
            await slot.provider.aclose()
