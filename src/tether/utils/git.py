"""Repository-state capture for working directories under git."""

import asyncio

from tether.utils.telemetry import get_logger

logger = get_logger("tether.git")


class GitError(Exception):
    """Raised when a git command fails or git is unavailable."""


async def _git(cwd: str, *args: str, timeout: float = 10.0) -> str:
    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
        raise GitError(str(e)) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except TimeoutError as e:
        process.kill()
        await process.wait()
        raise GitError(f"git {' '.join(args)} timed out after {timeout}s") from e

    if process.returncode != 0:
        raise GitError(stderr.decode(errors="replace").strip() or f"git exited {process.returncode}")
    return stdout.decode().strip()


class GitInspector:
    """Reads repository state for a working directory."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    async def is_git_repo(self, cwd: str) -> bool:
        try:
            return await _git(cwd, "rev-parse", "--is-inside-work-tree", timeout=self.timeout) == "true"
        except GitError:
            return False

    async def get_current_commit(self, cwd: str) -> str | None:
        """HEAD commit of the repository containing ``cwd``, or None.

        Directories outside a repository and repositories without commits
        both yield None; only unexpected failures raise.
        """
        if not await self.is_git_repo(cwd):
            return None
        try:
            return await _git(cwd, "rev-parse", "HEAD", timeout=self.timeout)
        except GitError as e:
            logger.debug("No HEAD commit", cwd=cwd, error=str(e))
            return None
