"""
Content analyzer tool.
Assesses uploaded evidence (text and images) and returns judgments
interchangeable with the signal analyzer's.
"""

import base64
import logging

from anomaly_flow.ai.errors import MalformedJudgment, ProviderUnavailable
from anomaly_flow.ai.gateway import AIGateway
from anomaly_flow.ai.parsing import image_judgment, keyword_judgment, parse_pipe_judgment
from anomaly_flow.schemas import ImageAttachment, Judgment, Severity

logger = logging.getLogger(__name__)

IMAGE_PROMPT = (
    "Analyze this image for any anomalies, unusual patterns, disasters, emergencies, "
    "or dangerous situations. Describe what you see and rate the severity from 0-10."
)

TEXT_PROMPT_TEMPLATE = """Analyze this text for anomalies, threats, emergencies, or unusual patterns.
Text: "{text}"

Provide:
1. Is this content normal or anomalous? (normal/anomalous)
2. Confidence level (0-100%)
3. Severity (Low/Medium/High/Critical)
4. Is this fake or fabricated content? (yes/no)
5. Brief reasoning

Format: [Classification]|[Confidence]|[Severity]|[IsFake]|[Reasoning]"""

MAX_TEXT_CHARS = 4000


class ContentAnalyzer:
    """
    Tool for judging uploaded evidence.

    Never raises: unreachable providers and unparseable answers fall back
    to local keyword scoring.
    """

    def __init__(self, gateway: AIGateway):
        self.gateway = gateway

    async def analyze_text(self, text: str) -> Judgment:
        """
        Judge a piece of text.

        Args:
            text: Free text (report body, social post, extracted document text)

        Returns:
            Judgment with is_fake set for fabricated content
        """
        prompt = TEXT_PROMPT_TEMPLATE.format(text=text[:MAX_TEXT_CHARS])

        try:
            response = await self.gateway.generate(prompt)
        except ProviderUnavailable as e:
            logger.error(f"Text analysis error: {e}")
            return keyword_judgment(text)

        try:
            return parse_pipe_judgment(response.text, response.provider)
        except MalformedJudgment as e:
            logger.warning(f"Unstructured text analysis from {response.provider}, using keywords: {e}")
            judgment = keyword_judgment(response.text, provider=response.provider)
            return judgment.model_copy(update={"confidence": 0.5})

    async def analyze_image(
        self,
        image_bytes: bytes,
        filename: str = "upload",
        mime_type: str = "image/jpeg",
    ) -> Judgment:
        """
        Judge an image.

        Args:
            image_bytes: Raw image content
            filename: Original file name, for logging
            mime_type: Image MIME type

        Returns:
            Judgment scored from the model's description of the image
        """
        attachment = ImageAttachment(
            data=base64.b64encode(image_bytes).decode("ascii"),
            mime_type=mime_type,
        )

        try:
            response = await self.gateway.generate(IMAGE_PROMPT, attachments=[attachment])
        except ProviderUnavailable as e:
            logger.error(f"Image analysis error for {filename}: {e}")
            return Judgment(
                is_anomaly=False,
                severity=Severity.MEDIUM,
                confidence=0.5,
                reasoning="Analysis failed - manual review needed",
                provider="heuristic",
                recommended_actions=["Manual review required"],
            )

        judgment = image_judgment(response.text, response.provider)
        logger.info(
            f"Image {filename} analyzed by {response.provider}: "
            f"anomaly={judgment.is_anomaly} severity={judgment.severity.value}"
        )
        return judgment
