"""
Analysis tools used by the workflow stages.
Each tool turns evidence into Judgment-shaped output.
"""

from anomaly_flow.tools.content_analyzer import ContentAnalyzer
from anomaly_flow.tools.cross_verifier import aggregate
from anomaly_flow.tools.report_generator import AnomalyReport, ReportGenerator
from anomaly_flow.tools.signal_analyzer import SignalAnalyzer

__all__ = [
    "SignalAnalyzer",
    "ContentAnalyzer",
    "ReportGenerator",
    "AnomalyReport",
    "aggregate",
]
