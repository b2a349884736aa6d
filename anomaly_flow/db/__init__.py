"""
Database module for the anomaly workflow core.
Provides SQLAlchemy models, async session management, and base classes.
"""

from anomaly_flow.db.base import Base
from anomaly_flow.db.session import create_engine, create_session_maker, init_db
from anomaly_flow.db.models import (
    Anomaly,
    AuditEvent,
    SignalData,
    Workflow,
    WorkflowRun,
)

__all__ = [
    "Base",
    "init_db",
    "create_engine",
    "create_session_maker",
    "Anomaly",
    "SignalData",
    "Workflow",
    "WorkflowRun",
    "AuditEvent",
]
