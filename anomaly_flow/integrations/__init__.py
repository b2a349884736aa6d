"""
Integrations with downstream systems.
"""

from anomaly_flow.integrations.remote_jobs import RemoteJobClient, RemoteJobError, build_job_payload

__all__ = ["RemoteJobClient", "RemoteJobError", "build_job_payload"]
