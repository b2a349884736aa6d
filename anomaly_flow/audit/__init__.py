"""
Audit module for tracking all workflow events.
Provides the append-only audit trail and run checkpoints.
"""

from anomaly_flow.audit.logger import AuditLogger, EventSink, sanitize_changes

__all__ = ["AuditLogger", "EventSink", "sanitize_changes"]
