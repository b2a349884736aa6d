"""
Errors raised by AI providers and the provider gateway.
"""


class ProviderError(Exception):
    """A single provider call failed."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"{provider}: {message}")


class ProviderTimeout(ProviderError):
    """A provider call exceeded its timeout."""

    def __init__(self, provider: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(provider, f"timed out after {timeout_seconds:.1f}s")


class ProviderUnavailable(Exception):
    """Every configured provider is quota-exhausted, circuit-broken or failed."""

    def __init__(self, reasons: dict[str, str]):
        self.reasons = reasons
        detail = "; ".join(f"{name}: {reason}" for name, reason in reasons.items())
        super().__init__(
            f"AI service unavailable - all providers failed ({detail or 'no providers configured'})"
        )


class MalformedJudgment(ValueError):
    """A provider response could not be parsed as a judgment."""

    def __init__(self, message: str, raw_text: str = ""):
        self.raw_text = raw_text
        super().__init__(message)
