"""
Remote job trigger.
Hands processed anomalies to a downstream workflow service: fetch the
remote workflow's payload schema, initiate a job, then execute it with a
payload built from the anomaly.
"""

import asyncio
import logging
from datetime import date
from typing import Any, Optional, Sequence

import httpx

from anomaly_flow.config import settings

logger = logging.getLogger(__name__)

TERMINAL_JOB_STATUSES = {"COMPLETED", "FAILED"}


class RemoteJobError(Exception):
    """A call to the remote job service failed."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


def build_job_payload(
    schema: dict[str, Any],
    anomaly_data: dict[str, Any],
    file_urls: Sequence[str] = (),
) -> dict[str, Any]:
    """
    Map anomaly fields onto the remote workflow's input schema.

    Fields are matched on their display name first, then on their type.
    Schema fields that no anomaly data fits are left out.

    Args:
        schema: Mapping of field key to {type, display_name}
        anomaly_data: Anomaly snapshot (JSON-compatible)
        file_urls: Uploaded evidence URLs

    Returns:
        Payload mapping of field key to {value, type}
    """
    payload: dict[str, Any] = {}

    for key, field in (schema or {}).items():
        field_type = field.get("type")
        display_name = (field.get("display_name") or "").lower()

        if "text" in display_name or field_type == "str":
            value = anomaly_data.get("title") or anomaly_data.get("description") or ""
            payload[key] = {"value": value, "type": "str"}
        elif "number" in display_name or field_type == "float":
            payload[key] = {"value": anomaly_data.get("confidence") or 0, "type": "float"}
        elif field_type == "file" and file_urls:
            payload[key] = {"value": file_urls[0], "type": "file"}
        elif field_type == "array_files" and file_urls:
            payload[key] = {"value": list(file_urls), "type": "array_files"}
        elif field_type == "bool":
            payload[key] = {"value": bool(anomaly_data.get("verified", False)), "type": "bool"}
        elif field_type == "date":
            value = anomaly_data.get("timestamp") or date.today().isoformat()
            payload[key] = {"value": value, "type": "date"}
        elif field_type == "object":
            payload[key] = {
                "value": {
                    "anomaly_id": anomaly_data.get("id"),
                    "location": anomaly_data.get("location"),
                    "severity": anomaly_data.get("severity"),
                },
                "type": "object",
            }
        elif field_type == "array":
            modalities = anomaly_data.get("modalities") or {}
            payload[key] = {"value": sorted(modalities) or anomaly_data.get("source_apis") or [], "type": "array"}

    return payload


class RemoteJobClient:
    """
    Client for the remote job service.

    Every request carries the service key header. Errors are raised as
    RemoteJobError; callers running this in the background log them.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        service_key: Optional[str] = None,
        workflow_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 30.0,
    ):
        self.base_url = (base_url or settings.remote_jobs_base_url).rstrip("/")
        self.service_key = settings.remote_jobs_service_key if service_key is None else service_key
        self.workflow_id = settings.remote_jobs_workflow_id if workflow_id is None else workflow_id
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_seconds)

    @property
    def enabled(self) -> bool:
        return bool(self.service_key and self.workflow_id)

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> dict[str, Any]:
        if not self.service_key:
            raise RemoteJobError(operation, "service key not configured")

        try:
            response = await self._client.request(
                method,
                path,
                headers={"x-service-key": self.service_key},
                **kwargs,
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise RemoteJobError(operation, str(e)) from e
        except ValueError as e:
            raise RemoteJobError(operation, f"invalid JSON response: {e}") from e

    async def get_workflow_details(self, workflow_id: str) -> dict[str, Any]:
        data = await self._request("get_workflow_details", "GET", f"/workflow/{workflow_id}")
        logger.info(f"Retrieved remote workflow details for {workflow_id}")
        return data

    async def initiate_job(self, workflow_id: str, title: str, description: str) -> str:
        data = await self._request(
            "initiate_job",
            "POST",
            "/job/initiate",
            json={"workflowId": workflow_id, "title": title, "description": description},
        )
        job_id = data.get("jobExecutionId")
        if not job_id:
            raise RemoteJobError("initiate_job", "response has no jobExecutionId")
        logger.info(f"Remote job initiated: {job_id}")
        return job_id

    async def execute_job(self, job_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self._request(
            "execute_job",
            "POST",
            "/job/execute",
            json={"jobExecutionId": job_id, "jobPayloadSchemaInstance": payload},
        )
        logger.info(f"Remote job executed: {job_id}")
        return data

    async def submit(self, anomaly_data: dict[str, Any], file_urls: Sequence[str] = ()) -> str:
        """
        Start a remote job for an anomaly.

        Args:
            anomaly_data: Anomaly snapshot (JSON-compatible)
            file_urls: Already-uploaded evidence URLs

        Returns:
            Remote job execution id
        """
        if not self.enabled:
            raise RemoteJobError("submit", "remote job service not configured")

        details = await self.get_workflow_details(self.workflow_id)
        job_id = await self.initiate_job(
            self.workflow_id,
            f"Anomaly Analysis: {anomaly_data.get('title', '')}",
            f"Processing anomaly {anomaly_data.get('id')} - {anomaly_data.get('description') or ''}",
        )
        payload = build_job_payload(details.get("jobPayloadSchema") or {}, anomaly_data, file_urls)
        await self.execute_job(job_id, payload)

        logger.info(f"Remote workflow triggered for anomaly {anomaly_data.get('id')}. Job ID: {job_id}")
        return job_id

    async def poll(self, job_id: str) -> str:
        """Current status of a remote job, e.g. RUNNING, COMPLETED, FAILED."""
        data = await self._request("poll", "GET", f"/job/{job_id}/status")
        return str(data.get("status", "UNKNOWN"))

    async def get_results(self, job_id: str) -> dict[str, Any]:
        return await self._request("get_results", "GET", f"/job/{job_id}/results")

    async def monitor(
        self,
        job_id: str,
        interval_seconds: float = 5.0,
        max_attempts: int = 60,
    ) -> str:
        """
        Poll until the job reaches a terminal status.

        Returns:
            The terminal status

        Raises:
            RemoteJobError: If the job is still running after max_attempts polls
        """
        for attempt in range(max_attempts):
            status = await self.poll(job_id)
            if status in TERMINAL_JOB_STATUSES:
                logger.info(f"Remote job {job_id} finished with status {status}")
                return status
            if attempt < max_attempts - 1:
                await asyncio.sleep(interval_seconds)

        raise RemoteJobError("monitor", f"job {job_id} still running after {max_attempts} polls")

    async def aclose(self) -> None:
        await self._client.aclose()
