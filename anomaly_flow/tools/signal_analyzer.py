"""
Signal analyzer tool.
Turns a raw observation into a structured anomaly judgment via the AI gateway.
"""

import json
import logging

from anomaly_flow.ai.errors import ProviderUnavailable
from anomaly_flow.ai.gateway import AIGateway
from anomaly_flow.ai.parsing import keyword_judgment
from anomaly_flow.schemas import Judgment, Observation, Severity

logger = logging.getLogger(__name__)

RESPONSE_INSTRUCTIONS = """
Please provide:
1. Anomaly Detection: Is this an anomaly? (Yes/No/Maybe)
2. Severity: Low/Medium/High/Critical
3. Confidence Score: 0.0-1.0
4. Description: Detailed explanation
5. Recommended Actions: What should be done next

Response format: JSON with keys: isAnomaly, severity, confidence, description, recommendedActions
"""


class SignalAnalyzer:
    """
    Tool for assessing a single observation.

    Builds a provider-agnostic prompt, asks the gateway for a judgment and
    never raises: if no provider is reachable the observation text is
    scored with the keyword heuristic instead. Retries and provider
    fallback are left entirely to the gateway.
    """

    def __init__(self, gateway: AIGateway):
        self.gateway = gateway

    @staticmethod
    def build_prompt(observation: Observation) -> str:
        """Embed the observation's fields in the analysis prompt."""
        location = (
            f"{observation.location.lat}, {observation.location.lng}"
            if observation.location
            else "Unknown"
        )
        if observation.location and observation.location.address:
            location += f" ({observation.location.address})"

        sources = ", ".join(observation.source_labels) if observation.source_labels else "Unknown"

        prompt_parts = [
            "Analyze the following data for potential anomalies. "
            "Consider multiple modalities and cross-verify information.\n\n",
            "Context:\n",
            f"- Location: {location}\n",
            f"- Timestamp: {observation.timestamp.isoformat()}\n",
            f"- Data Sources: {sources}\n\n",
        ]

        if observation.text:
            prompt_parts.append(f"Text Data: {observation.text}\n\n")

        if observation.images:
            prompt_parts.append(
                f"Image Analysis Required: {len(observation.images)} images available\n"
            )

        if observation.existing_context:
            prompt_parts.append(
                f"Previous Analysis Context: {json.dumps(observation.existing_context, default=str)}\n\n"
            )

        prompt_parts.append(RESPONSE_INSTRUCTIONS)

        return "".join(prompt_parts)

    @staticmethod
    def _degraded_judgment(observation: Observation) -> Judgment:
        """Local judgment used when every provider is unavailable."""
        scored = keyword_judgment(observation.text or "", provider="heuristic")
        return Judgment(
            is_anomaly=scored.is_anomaly,
            severity=Severity.MEDIUM,
            confidence=0.5,
            reasoning=f"AI providers unavailable; keyword assessment: {scored.reasoning}",
            provider="heuristic",
            recommended_actions=["Manual review required"],
            is_fake=scored.is_fake,
        )

    async def analyze(self, observation: Observation) -> Judgment:
        """
        Assess an observation.

        Args:
            observation: Observation to analyze

        Returns:
            Judgment from the model, or a heuristic one at 0.5 confidence
        """
        prompt = self.build_prompt(observation)

        try:
            judgment = await self.gateway.judge(prompt, attachments=observation.images)
        except ProviderUnavailable as e:
            logger.warning(f"Signal analysis degraded to heuristic scoring: {e}")
            return self._degraded_judgment(observation)

        logger.info(
            f"Signal analysis completed by {judgment.provider}: "
            f"anomaly={judgment.is_anomaly} severity={judgment.severity.value} "
            f"confidence={judgment.confidence:.2f}"
        )
        return judgment

    async def execute(self, input_data: dict) -> dict:
        """
        Execute signal analysis.

        Args:
            input_data: Dictionary matching the Observation schema

        Returns:
            Dictionary matching the Judgment schema
        """
        observation = Observation.model_validate(input_data)
        judgment = await self.analyze(observation)
        return judgment.model_dump(mode="json")
