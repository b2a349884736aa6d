"""
Anomaly Decision Orchestrator

Runs detected anomalies through configurable decision workflows: AI
analysis through a resilient multi-provider gateway, cross-verification
of source judgments, confidence-based routing, human review gates and an
append-only audit trail.
"""

__version__ = "1.0.0"
__author__ = "Demo Project"
