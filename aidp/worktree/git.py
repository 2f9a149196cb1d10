"""
Git Subprocess Helpers
======================

Async wrappers around the git CLI used by the worktree manager, plus a
parser for ``git worktree list --porcelain`` output.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union
import asyncio
import logging

logger = logging.getLogger(__name__)


class GitCommandError(Exception):
    """Raised when a git command fails."""

    def __init__(self, message: str, args: Optional[List[str]] = None, returncode: Optional[int] = None,
                 stderr: str = ""):
        super().__init__(message)
        self.command = args or []
        self.returncode = returncode
        self.stderr = stderr


@dataclass
class GitWorktree:
    """One entry of ``git worktree list --porcelain``."""
    path: str
    branch: Optional[str]
    head: str = ""
    bare: bool = False
    detached: bool = False
    prunable: bool = False


async def run_git(
    args: List[str],
    cwd: Union[str, Path],
    timeout: float = 60
) -> str:
    """
    Run a git command asynchronously.

    Args:
        args: Git command arguments (e.g., ['worktree', 'list'])
        cwd: Working directory for command
        timeout: Command timeout in seconds (default 60)

    Returns:
        Command stdout output (stripped)

    Raises:
        GitCommandError: If command fails or times out
    """
    cmd = ['git'] + args
    logger.debug(f"Running git command: {' '.join(cmd)} in {cwd}")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise GitCommandError("Git command not found. Is git installed?", args=cmd) from e
    except OSError as e:
        raise GitCommandError(f"Failed to run git command: {e}", args=cmd) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise GitCommandError(f"Git command timed out after {timeout}s: {' '.join(cmd)}", args=cmd)

    if process.returncode != 0:
        stderr_str = stderr.decode('utf-8', errors='replace').strip()
        stdout_str = stdout.decode('utf-8', errors='replace').strip()
        detail = stderr_str or stdout_str
        raise GitCommandError(
            f"Git command failed (exit {process.returncode}): {' '.join(cmd)}\n{detail}",
            args=cmd,
            returncode=process.returncode,
            stderr=detail
        )

    return stdout.decode('utf-8', errors='replace').strip()


def parse_worktree_list(output: str) -> List[GitWorktree]:
    """
    Parse ``git worktree list --porcelain`` output.

    Records are separated by blank lines; each starts with a
    ``worktree <path>`` line.
    """
    worktrees: List[GitWorktree] = []
    current: Optional[GitWorktree] = None

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        key, _, value = line.partition(" ")
        if key == "worktree":
            if current:
                worktrees.append(current)
            current = GitWorktree(path=value.strip(), branch=None)
        elif current is None:
            continue
        elif key == "HEAD":
            current.head = value.strip()
        elif key == "branch":
            branch = value.strip()
            if branch.startswith("refs/heads/"):
                branch = branch[len("refs/heads/"):]
            current.branch = branch
        elif key == "bare":
            current.bare = True
        elif key == "detached":
            current.detached = True
        elif key == "prunable":
            current.prunable = True

    if current:
        worktrees.append(current)

    return worktrees
