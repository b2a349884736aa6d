"""
Parsing of provider output into judgments, plus the deterministic
keyword heuristics used whenever a model answer cannot be trusted.
"""

import json
import logging
import re
from typing import Any, Optional

from pydantic import ValidationError

from anomaly_flow.ai.errors import MalformedJudgment
from anomaly_flow.schemas import Judgment, Severity, severity_for_confidence

logger = logging.getLogger(__name__)

JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

# Keyword lists for text scoring
ANOMALY_KEYWORDS = [
    "explosion", "disaster", "emergency", "unusual", "strange", "anomaly",
    "threat", "danger", "warning", "alert", "critical", "urgent", "fire",
    "smoke", "earthquake", "flood", "storm", "accident", "crash", "attack",
]

FAKE_KEYWORDS = [
    "fake", "hoax", "fabricated", "false", "misleading", "photoshop",
    "edited", "manipulated", "doctored", "staged",
]

NORMAL_KEYWORDS = [
    "normal", "regular", "typical", "routine", "standard", "ordinary",
    "safe", "calm", "peaceful", "stable",
]

# Hazard words looked for in image descriptions
IMAGE_HAZARD_KEYWORDS = [
    "fire", "smoke", "explosion", "damage", "destruction", "disaster",
    "flood", "storm", "earthquake", "accident", "crash", "weapon",
    "emergency", "danger", "hazard", "unusual", "abnormal", "strange",
]

NEGATIONS = ("no anomaly", "not an anomaly", "not anomalous", "no anomalies")

MAX_REASONING_CHARS = 1000


def extract_json_block(text: str) -> dict:
    """
    Extract the outermost JSON object embedded in a model answer.

    Raises:
        MalformedJudgment: If no parseable object is present
    """
    match = JSON_BLOCK.search(text or "")
    if not match:
        raise MalformedJudgment("response contains no JSON object", raw_text=text)
    try:
        data = json.loads(match.group())
    except json.JSONDecodeError as e:
        raise MalformedJudgment(f"invalid JSON in response: {e}", raw_text=text)
    if not isinstance(data, dict):
        raise MalformedJudgment("JSON payload is not an object", raw_text=text)
    return data


def _coerce_bool(value: Any, field: str = "isAnomaly") -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"yes", "true", "maybe", "anomaly", "anomalous"}:
            return True
        if lowered in {"no", "false", "normal"}:
            return False
    raise MalformedJudgment(f"cannot interpret {field} value {value!r}")


def _coerce_confidence(value: Any) -> float:
    if isinstance(value, str):
        value = value.strip().rstrip("%")
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        raise MalformedJudgment(f"cannot interpret confidence value {value!r}")
    # 0-100 scale
    if 1.0 < confidence <= 100.0:
        confidence = confidence / 100.0
    return min(max(confidence, 0.0), 1.0)


def _coerce_actions(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(item) for item in value]
    return [str(value)]


def parse_judgment(text: str, provider: str) -> Judgment:
    """
    Parse a JSON-shaped model answer into a Judgment.

    Expected keys: isAnomaly, severity, confidence, description,
    recommendedActions.

    Raises:
        MalformedJudgment: If the answer does not have the expected structure
    """
    data = extract_json_block(text)

    if "isAnomaly" not in data or "confidence" not in data:
        raise MalformedJudgment("missing isAnomaly or confidence", raw_text=text)

    try:
        severity = Severity.coerce(data.get("severity", Severity.MEDIUM.value))
    except ValueError:
        raise MalformedJudgment(f"unknown severity {data.get('severity')!r}", raw_text=text)

    reasoning = data.get("description") or data.get("reasoning") or ""

    try:
        return Judgment(
            is_anomaly=_coerce_bool(data["isAnomaly"]),
            severity=severity,
            confidence=_coerce_confidence(data["confidence"]),
            reasoning=str(reasoning)[:MAX_REASONING_CHARS],
            provider=provider,
            recommended_actions=_coerce_actions(data.get("recommendedActions")),
            is_fake=_coerce_bool(data.get("isFake", False), "isFake"),
        )
    except ValidationError as e:
        raise MalformedJudgment(f"judgment failed validation: {e}", raw_text=text)


def heuristic_judgment(text: str, provider: str) -> Judgment:
    """
    Keyword fallback over a raw model answer that could not be parsed.

    Always returns medium severity at 0.5 confidence.
    """
    lowered = (text or "").lower()
    negated = any(phrase in lowered for phrase in NEGATIONS)
    is_anomaly = not negated and (
        re.search(r"\byes\b", lowered) is not None or "anomal" in lowered
    )

    return Judgment(
        is_anomaly=is_anomaly,
        severity=Severity.MEDIUM,
        confidence=0.5,
        reasoning=(text or "")[:MAX_REASONING_CHARS],
        provider=provider,
        recommended_actions=["Manual review required"],
    )


def parse_or_fallback(text: str, provider: str) -> Judgment:
    """Parse a model answer, degrading to the keyword heuristic on failure."""
    try:
        return parse_judgment(text, provider)
    except MalformedJudgment as e:
        logger.warning(f"Failed to parse {provider} response as JSON, using fallback: {e}")
        return heuristic_judgment(text, provider)


def keyword_judgment(text: str, provider: str = "heuristic") -> Judgment:
    """
    Score free text with the anomaly / fake / normal keyword lists.

    Used when no model is reachable at all.
    """
    lowered = (text or "").lower()
    anomaly_matches = [k for k in ANOMALY_KEYWORDS if k in lowered]
    fake_matches = [k for k in FAKE_KEYWORDS if k in lowered]
    normal_matches = [k for k in NORMAL_KEYWORDS if k in lowered]

    if len(fake_matches) > 1:
        return Judgment(
            is_anomaly=False,
            severity=Severity.LOW,
            confidence=0.2,
            reasoning=f"Content appears fabricated or fake (keywords: {', '.join(fake_matches)})",
            provider=provider,
            is_fake=True,
        )

    confidence = 0.5
    is_anomaly = False
    reasoning = "Text analysis completed"

    if len(anomaly_matches) > 2:
        confidence = min(0.9, 0.5 + len(anomaly_matches) * 0.1)
        is_anomaly = True
        reasoning = f"Multiple anomaly indicators detected: {', '.join(anomaly_matches)}"
    elif anomaly_matches and not normal_matches:
        confidence = 0.7
        is_anomaly = True
        reasoning = f"Anomaly indicators found: {', '.join(anomaly_matches)}"
    elif len(normal_matches) > len(anomaly_matches):
        confidence = 0.4
        reasoning = "Content appears normal with standard language patterns"

    if not is_anomaly and not anomaly_matches:
        reasoning = "Content appears normal with no significant anomaly indicators"

    return Judgment(
        is_anomaly=is_anomaly,
        severity=severity_for_confidence(confidence, is_anomaly),
        confidence=round(confidence, 2),
        reasoning=reasoning,
        provider=provider,
    )


def parse_pipe_judgment(text: str, provider: str) -> Judgment:
    """
    Parse a "classification|confidence|severity|isFake|reasoning" answer.

    Raises:
        MalformedJudgment: If the answer does not have five fields
    """
    parts = (text or "").strip().split("|")
    if len(parts) < 5:
        raise MalformedJudgment("expected five pipe-separated fields", raw_text=text)

    classification = parts[0].strip().lower()
    try:
        confidence = float(parts[1].strip().rstrip("%")) / 100.0
        severity = Severity.coerce(parts[2])
    except ValueError as e:
        raise MalformedJudgment(f"invalid pipe-format field: {e}", raw_text=text)

    return Judgment(
        is_anomaly="anomalous" in classification,
        severity=severity,
        confidence=min(0.95, max(confidence, 0.0)),
        reasoning="|".join(parts[4:]).strip()[:MAX_REASONING_CHARS],
        provider=provider,
        is_fake="yes" in parts[3].lower(),
    )


def image_judgment(text: str, provider: str) -> Judgment:
    """Score an image description by hazard keywords and a 0-10 severity rating."""
    lowered = (text or "").lower()
    hazard_count = sum(1 for keyword in IMAGE_HAZARD_KEYWORDS if keyword in lowered)

    rating_match: Optional[re.Match] = re.search(r"severity[:\s]+(\d+)", text or "", re.IGNORECASE)
    if rating_match is None:
        rating_match = re.search(r"(\d+)\s*/\s*10", text or "")
    rating = int(rating_match.group(1)) if rating_match else 5
    rating = min(rating, 10)

    if rating >= 8:
        severity = Severity.CRITICAL
    elif rating >= 6:
        severity = Severity.HIGH
    elif rating >= 4:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW

    return Judgment(
        is_anomaly=hazard_count > 0 or rating > 6,
        severity=severity,
        confidence=round(min(0.95, hazard_count * 0.1 + rating * 0.08), 2),
        reasoning=(text or "")[:200],
        provider=provider,
    )
