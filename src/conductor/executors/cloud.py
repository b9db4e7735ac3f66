from __future__ import annotations

import logging
from typing import Any

import httpx

from conductor.executors.base import (
    ExecutorConfigError,
    ExecutorError,
    JobExecutor,
    JobPoll,
    JobStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.cursor.com"
REMOTE_STATUS_MAP: dict[str, JobStatus] = {
    "CREATING": "queued",
    "PENDING": "queued",
    "RUNNING": "running",
    "FINISHED": "succeeded",
    "COMPLETED": "succeeded",
    "FAILED": "failed",
    "ERROR": "failed",
    "CANCELLED": "cancelled",
    "EXPIRED": "cancelled",
}


class CloudAgentExecutor(JobExecutor):
    """Remote coding-agent API: POST a prompt, then poll the agent by id."""

    name = "cloud"

    def __init__(
        self,
        *,
        api_key: str,
        repository: str,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = 30.0,
        auto_create_pr: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.repository = repository
        self.api_url = api_url.rstrip("/")
        self.auto_create_pr = auto_create_pr
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def check_ready(self) -> None:
        if not self.api_key:
            raise ExecutorConfigError(
                "No API key configured; set CONDUCTOR_API_KEY.", executor=self.name
            )
        if not self.repository:
            raise ExecutorConfigError(
                "No target repository configured; set executor.repository or "
                "CONDUCTOR_REPOSITORY.",
                executor=self.name,
            )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                auth=httpx.BasicAuth(self.api_key, ""),
                timeout=self._timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        client = self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling %s %s", method, path)
            raise ExecutorError(f"Timeout calling {path}", executor=self.name) from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling %s %s: %s", method, path, exc)
            raise ExecutorError(str(exc), executor=self.name) from exc

        if not response.is_success:
            raise ExecutorError(
                f"API error: {response.status_code} - {response.text[:500]}",
                executor=self.name,
                status_code=response.status_code,
                retriable=response.status_code >= 500 or response.status_code == 429,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExecutorError(
                f"API returned invalid JSON for {path}",
                executor=self.name,
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise ExecutorError(f"API returned unexpected payload for {path}", executor=self.name)
        return payload

    async def submit(self, instruction: str, source_ref: str, target_branch: str) -> str:
        body = {
            "prompt": {"text": instruction},
            "source": {"repository": self.repository, "ref": source_ref},
            "target": {"branchName": target_branch, "autoCreatePr": self.auto_create_pr},
        }
        payload = await self._request("POST", "/v0/agents", json=body)
        job_id = payload.get("id")
        if not job_id:
            raise ExecutorError("API response did not include an agent id", executor=self.name)
        logger.info("Submitted cloud agent %s for branch %s", job_id, target_branch)
        return str(job_id)

    async def poll(self, job_id: str) -> JobPoll:
        payload = await self._request("GET", f"/v0/agents/{job_id}")
        remote_status = str(payload.get("status") or "").upper()
        status = REMOTE_STATUS_MAP.get(remote_status)
        if status is None:
            logger.warning(
                "Unknown status %r for agent %s, treating as running", remote_status, job_id
            )
            status = "running"
        target = payload.get("target") if isinstance(payload.get("target"), dict) else {}
        artifact_ref = target.get("prUrl") or target.get("branchName")
        return JobPoll(status=status, artifact_ref=artifact_ref, detail=payload.get("summary"))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
