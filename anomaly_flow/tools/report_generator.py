"""
Report generator tool.
Drafts a narrative anomaly report through the AI gateway.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from anomaly_flow.ai.gateway import AIGateway

logger = logging.getLogger(__name__)


class AnomalyReport(BaseModel):
    """Generated report."""

    anomaly_id: str
    content: str
    format: str
    provider: str
    generated_at: datetime


class ReportGenerator:
    """
    Tool for drafting anomaly reports.

    Raises ProviderUnavailable when no provider can answer; callers decide
    whether a missing report matters.
    """

    def __init__(self, gateway: AIGateway):
        self.gateway = gateway

    @staticmethod
    def build_prompt(anomaly_data: dict[str, Any], report_format: str = "json") -> str:
        return (
            "Generate a comprehensive anomaly report based on the following data:\n\n"
            f"{json.dumps(anomaly_data, indent=2, default=str)}\n\n"
            "Please create a detailed report including:\n"
            "1. Executive Summary\n"
            "2. Anomaly Details\n"
            "3. Evidence and Cross-verification\n"
            "4. Impact Assessment\n"
            "5. Recommendations\n"
            "6. Timeline\n\n"
            f"Format the response as a structured {report_format.upper()} report."
        )

    async def generate(self, anomaly_data: dict[str, Any], report_format: str = "json") -> AnomalyReport:
        response = await self.gateway.generate(self.build_prompt(anomaly_data, report_format))

        logger.info(f"Report generated in {report_format} format using {response.provider}")

        return AnomalyReport(
            anomaly_id=str(anomaly_data.get("id", "")),
            content=response.text,
            format=report_format,
            provider=response.provider,
            generated_at=datetime.now(timezone.utc),
        )
