"""
Cross-verification aggregator.
Combines independent signal judgments into one consensus judgment.
"""

import math
from typing import Sequence

from anomaly_flow.schemas import (
    CrossVerificationResult,
    Judgment,
    Severity,
    severity_for_confidence,
)


def aggregate(judgments: Sequence[Judgment]) -> CrossVerificationResult:
    """
    Aggregate judgments by majority vote and mean confidence.

    - consensus: fraction of judgments reporting an anomaly
    - is_anomaly: consensus >= 0.5 (a tie counts as an anomaly)
    - confidence: arithmetic mean of the input confidences
    - severity: derived from confidence, always LOW for non-anomalies

    Any judgment flagged as fabricated overrides the vote. The result
    depends only on the multiset of inputs, never on their order.

    Args:
        judgments: Judgments from any mix of providers and modalities

    Returns:
        CrossVerificationResult
    """
    total = len(judgments)
    if total == 0:
        return CrossVerificationResult(
            consensus=0.0,
            is_anomaly=False,
            confidence=0.0,
            severity=Severity.LOW,
            reasoning="insufficient data",
            source_count=0,
        )

    if any(j.is_fake for j in judgments):
        return CrossVerificationResult(
            consensus=0.1,
            is_anomaly=False,
            confidence=0.2,
            severity=Severity.LOW,
            reasoning="Content flagged as potentially fabricated or fake",
            source_count=total,
            is_fake=True,
        )

    anomaly_count = sum(1 for j in judgments if j.is_anomaly)
    consensus = anomaly_count / total
    # fsum is exactly rounded, so the mean does not depend on input order
    confidence = math.fsum(j.confidence for j in judgments) / total
    is_anomaly = consensus >= 0.5

    if is_anomaly:
        reasoning = (
            f"{anomaly_count}/{total} sources detected an anomaly. "
            f"Average confidence: {confidence * 100:.0f}%"
        )
    else:
        reasoning = (
            f"{total - anomaly_count}/{total} sources found no anomaly. "
            f"Content appears normal."
        )

    return CrossVerificationResult(
        consensus=consensus,
        is_anomaly=is_anomaly,
        confidence=confidence,
        severity=severity_for_confidence(confidence, is_anomaly),
        reasoning=reasoning,
        source_count=total,
    )
