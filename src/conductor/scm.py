from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)


class GitCommandError(RuntimeError):
    """Raised when a git subprocess exits with a non-zero status."""


class BranchRegistry(ABC):
    """Source-control operations the scheduler relies on."""

    @abstractmethod
    def branch_exists(self, name: str) -> bool:
        """Return True when ``name`` already exists (remote, else local)."""

    @abstractmethod
    def fetch_branch(self, name: str) -> bool:
        """Fetch ``name`` from the remote; False when it is not available."""

    @abstractmethod
    def restore_path(self, branch: str, path: Path) -> bool:
        """Check out ``path`` as it exists on the fetched ``branch``."""

    @abstractmethod
    def commit_all(self, message: str) -> bool:
        """Commit every pending change; False on a soft failure."""


class GitRepository(BranchRegistry):
    def __init__(self, repo_root: Path, *, remote: str = "origin") -> None:
        self.repo_root = repo_root.resolve()
        self.remote = remote

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise GitCommandError("git executable not found") from exc
        if check and proc.returncode != 0:
            raise GitCommandError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def is_repository(self) -> bool:
        try:
            proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        except GitCommandError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _remote_branch_exists(self, name: str) -> bool:
        proc = self._run_git(
            ["ls-remote", "--exit-code", "--heads", self.remote, name], check=False
        )
        if proc.returncode == 0:
            return bool(proc.stdout.strip())
        if proc.returncode == 2:
            return False
        raise GitCommandError(proc.stderr.strip() or f"ls-remote failed for {self.remote}")

    def _local_branch_exists(self, name: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], check=False
        )
        if proc.returncode == 0:
            return True
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/remotes/{self.remote}/{name}"],
            check=False,
        )
        return proc.returncode == 0

    def branch_exists(self, name: str) -> bool:
        try:
            return self._remote_branch_exists(name)
        except GitCommandError as exc:
            logger.debug("Remote lookup for %s failed, using local refs: %s", name, exc)
            return self._local_branch_exists(name)

    def fetch_branch(self, name: str) -> bool:
        proc = self._run_git(
            ["fetch", self.remote, f"+refs/heads/{name}:refs/remotes/{self.remote}/{name}"],
            check=False,
        )
        if proc.returncode != 0:
            logger.warning("git fetch of %s failed: %s", name, proc.stderr.strip())
            return False
        return True

    def restore_path(self, branch: str, path: Path) -> bool:
        target = path.resolve()
        try:
            relative = target.relative_to(self.repo_root)
        except ValueError:
            logger.warning("Cannot restore %s: outside repository %s", path, self.repo_root)
            return False
        for ref in (f"refs/remotes/{self.remote}/{branch}", f"refs/heads/{branch}"):
            proc = self._run_git(["checkout", ref, "--", relative.as_posix()], check=False)
            if proc.returncode == 0:
                return True
        logger.warning("Could not restore %s from %s: %s", relative, branch, proc.stderr.strip())
        return False

    def commit_all(self, message: str) -> bool:
        try:
            self._run_git(["add", "-A"])
            status = self._run_git(["status", "--porcelain"])
            if not status.stdout.strip():
                logger.info("Nothing to commit for: %s", message)
                return True
            self._run_git(["commit", "-m", message])
        except GitCommandError as exc:
            logger.warning("Commit failed (continuing): %s", exc)
            return False
        return True
