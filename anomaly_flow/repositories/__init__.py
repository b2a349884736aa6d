"""
Anomaly and workflow stores.
"""

from anomaly_flow.repositories.base import AnomalyStore, WorkflowStore, rolling_average
from anomaly_flow.repositories.errors import RecordNotFound
from anomaly_flow.repositories.sql import SqlAnomalyStore, SqlWorkflowStore

__all__ = [
    "AnomalyStore",
    "WorkflowStore",
    "SqlAnomalyStore",
    "SqlWorkflowStore",
    "RecordNotFound",
    "rolling_average",
]
