from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from uuid import uuid4

from conductor.executors.base import ExecutorConfigError, ExecutorError, JobExecutor, JobPoll

logger = logging.getLogger(__name__)


class LocalProcessExecutor(JobExecutor):
    """Runs each job as a local agent CLI process in the working tree."""

    name = "local"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds
        self._jobs: dict[str, asyncio.Task[tuple[int, str]]] = {}

    def build_command(self, instruction: str) -> list[str]:
        return [self.binary, "-p", instruction]

    def check_ready(self) -> None:
        if not self.binary:
            raise ExecutorConfigError("No local agent binary configured.", executor=self.name)

    async def _wait(self, process: asyncio.subprocess.Process) -> tuple[int, str]:
        try:
            if self.timeout_seconds:
                _, stderr = await asyncio.wait_for(
                    process.communicate(), timeout=self.timeout_seconds
                )
            else:
                _, stderr = await process.communicate()
        except TimeoutError:
            process.kill()
            await process.wait()
            return -1, f"timed out after {self.timeout_seconds:.1f}s"
        return process.returncode or 0, (stderr or b"").decode("utf-8", errors="replace").strip()

    async def submit(self, instruction: str, source_ref: str, target_branch: str) -> str:
        _ = source_ref
        command = self.build_command(
            f"{instruction}\n\nWork on git branch: {target_branch}"
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ExecutorError(
                f"Agent binary not found: {self.binary}",
                executor=self.name,
                retriable=False,
            ) from exc
        job_id = f"local-{uuid4().hex[:12]}"
        self._jobs[job_id] = asyncio.create_task(self._wait(process))
        logger.info("Started local agent %s (pid %s) for %s", job_id, process.pid, target_branch)
        return job_id

    async def poll(self, job_id: str) -> JobPoll:
        job = self._jobs.get(job_id)
        if job is None:
            return JobPoll(status="failed", detail=f"unknown local job {job_id}")
        if not job.done():
            return JobPoll(status="running")
        self._jobs.pop(job_id, None)
        return_code, stderr = job.result()
        if return_code == 0:
            return JobPoll(status="succeeded")
        return JobPoll(status="failed", detail=f"exit code {return_code}: {stderr[:500]}")

    async def aclose(self) -> None:
        for job in self._jobs.values():
            job.cancel()
        self._jobs.clear()
