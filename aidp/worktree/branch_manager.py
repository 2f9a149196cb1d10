"""
Worktree Branch Manager
=======================

Guarantees that work for a branch or a pull request happens in an isolated
git worktree, without creating duplicate worktrees.

Key Features:
- Finds worktrees from live ``git worktree list`` state (the registry can go stale)
- Idempotent creation under ``<project>/.worktrees/<sanitized-branch>``
- PR worktrees on a synthesized ``<head>-pr-<number>`` branch so PRs sharing
  a head branch never collide
- JSON registries in ``.aidp/worktrees.json`` and ``.aidp/pr_worktrees.json``
- Stale PR worktree detection and cleanup
"""

from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import os
import re
import time

from aidp.logger import AidpLogger, get_logger
from aidp.worktree.git import GitCommandError, GitWorktree, parse_worktree_list, run_git
from aidp.worktree.registry import JsonRegistry

COMPONENT = "worktree_branch_manager"

REGISTRY_FILE = "worktrees.json"
PR_REGISTRY_FILE = "pr_worktrees.json"

_FORBIDDEN_BRANCH_CHARS = set(" ~^:?*[\\")
_PATH_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")

SECONDS_PER_DAY = 24 * 60 * 60


class WorktreeError(Exception):
    """Base error for worktree operations."""
    pass


class WorktreeLookupError(WorktreeError):
    """Raised when the project is not a git repository or git lookup fails."""
    pass


class WorktreeCreationError(WorktreeError):
    """Raised for invalid branch names or any git failure while creating a worktree."""
    pass


@dataclass
class WorktreeEntry:
    """
    Registry entry for a branch worktree.

    Attributes:
        branch: Literal git branch name
        path: Absolute worktree path
        created_at: Epoch seconds
    """
    branch: str
    path: str
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PrWorktreeEntry:
    """
    Registry entry for a pull-request worktree.

    Attributes:
        pr_number: Pull request number (unique key)
        head_branch: PR head branch as named on the remote
        base_branch: Branch the worktree was created from
        branch: Synthesized local branch ``<head_branch>-pr-<pr_number>``
        path: Absolute worktree path
        created_at: Epoch seconds
    """
    pr_number: int
    head_branch: str
    base_branch: str
    branch: str
    path: str
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def validate_branch_name(branch: Any) -> str:
    """
    Check that ``branch`` is a usable git ref name.

    Rejects parent-directory traversal, leading dashes that git would read
    as flags, and the characters git forbids in ref names.

    Raises:
        WorktreeCreationError: If the name is invalid
    """
    if not isinstance(branch, str) or not branch.strip():
        raise WorktreeCreationError(f"Invalid branch name: {branch!r}")

    problems = []
    if branch.startswith('-'):
        problems.append("starts with '-'")
    if '..' in branch:
        problems.append("contains '..'")
    if branch.startswith('/') or branch.endswith('/') or '//' in branch:
        problems.append("has an empty path component")
    if branch.endswith('.') or branch.endswith('.lock'):
        problems.append("ends with '.' or '.lock'")
    if '@{' in branch or branch == '@':
        problems.append("contains '@{'")
    if any(part.startswith('.') for part in branch.split('/')):
        problems.append("has a component starting with '.'")
    if any(ch in _FORBIDDEN_BRANCH_CHARS or ord(ch) < 32 or ord(ch) == 127 for ch in branch):
        problems.append("contains forbidden characters")

    if problems:
        raise WorktreeCreationError(f"Invalid branch name '{branch}': {', '.join(problems)}")
    return branch


def sanitize_for_path(branch: str) -> str:
    """Directory name for a branch: path-unsafe characters (including '/') become '_'."""
    return _PATH_UNSAFE.sub('_', branch)


class WorktreeBranchManager:
    """
    Creates and finds git worktrees for branches and pull requests.

    All git access is asynchronous. The registries are a best-effort record;
    live git state wins whenever the two disagree.
    """

    def __init__(
        self,
        project_dir: Union[str, Path, None] = None,
        worktree_dir: str = ".worktrees",
        logger: Optional[AidpLogger] = None,
        git_timeout: float = 60
    ):
        """
        Initialize worktree branch manager.

        Args:
            project_dir: Path to the project repository (defaults to cwd)
            worktree_dir: Directory for worktrees, relative to project root
            logger: Logger handle (defaults to the process-wide logger)
            git_timeout: Timeout in seconds for each git command
        """
        self.project_dir = Path(project_dir or os.getcwd()).resolve()
        self.worktree_dir = worktree_dir
        self.git_timeout = git_timeout
        self._logger = logger

        aidp_dir = self.project_dir / ".aidp"
        self.registry = JsonRegistry(aidp_dir / REGISTRY_FILE, name="worktrees", logger=logger)
        self.pr_registry = JsonRegistry(aidp_dir / PR_REGISTRY_FILE, name="pr_worktrees", logger=logger)

    @property
    def logger(self) -> AidpLogger:
        return self._logger or get_logger()

    @property
    def worktree_root(self) -> Path:
        return self.project_dir / self.worktree_dir

    def worktree_path_for(self, branch: str) -> Path:
        return self.worktree_root / sanitize_for_path(branch)

    @staticmethod
    def pr_branch_name(pr_number: int, head_branch: str) -> str:
        return f"{head_branch}-pr-{pr_number}"

    def get_pr_branch(self, pr_number: int) -> Optional[str]:
        """Branch recorded for a PR worktree, or None if the PR is unknown."""
        entry = self._find_pr_entry(pr_number)
        return entry.get('branch') if entry else None

    # =========================================================================
    # Branch worktrees
    # =========================================================================

    async def find_worktree(self, branch: str, pr_number: Optional[int] = None) -> Optional[str]:
        """
        Find the live worktree checked out on ``branch``.

        Args:
            branch: Branch name
            pr_number: When given, the PR registry is checked first

        Returns:
            Worktree path, or None if no worktree has the branch checked out

        Raises:
            WorktreeLookupError: If the project is not a git repository
        """
        self.logger.debug(COMPONENT, "finding_worktree", branch=branch, pr_number=pr_number)

        if pr_number is not None:
            entry = self._find_pr_entry(pr_number)
            if entry and entry.get('path') and Path(entry['path']).is_dir():
                return entry['path']

        for worktree in await self._live_worktrees():
            if worktree.branch == branch and not worktree.prunable and Path(worktree.path).is_dir():
                return worktree.path

        removed = self.registry.remove(lambda e: e.get('branch') == branch)
        if removed:
            self.logger.debug(COMPONENT, "pruned_stale_registry_entry", branch=branch)
        return None

    async def create_worktree(self, branch: str, base_branch: Optional[str] = None) -> str:
        """
        Return the worktree for ``branch``, creating it if needed.

        Args:
            branch: Branch to check out (created from base_branch if missing)
            base_branch: Start point for a new branch (defaults to the
                repository's default branch)

        Returns:
            Absolute worktree path

        Raises:
            WorktreeCreationError: For invalid names or git failures
            WorktreeLookupError: If the project is not a git repository
        """
        self.logger.debug(COMPONENT, "creating_worktree", branch=branch, base_branch=base_branch)
        validate_branch_name(branch)
        if base_branch is not None:
            validate_branch_name(base_branch)

        existing = await self.find_worktree(branch)
        if existing:
            if not self.registry.find(lambda e: e.get('branch') == branch):
                self._register(branch, existing)
            self.logger.debug(COMPONENT, "found_existing_worktree", branch=branch, path=existing)
            return existing

        worktree_path = self.worktree_path_for(branch)
        if worktree_path.exists() and any(worktree_path.iterdir()):
            raise WorktreeCreationError(
                f"Worktree directory already exists and is not a worktree for '{branch}': {worktree_path}"
            )

        try:
            branch_exists = await self._branch_exists(branch)
            start_point = None
            if not branch_exists:
                if base_branch:
                    start_point = base_branch
                else:
                    default_branch = await self._default_branch()
                    start_point = await self._resolve_start_point(default_branch, prefer_remote=False)
            self.worktree_root.mkdir(parents=True, exist_ok=True)
            await self._worktree_add(worktree_path, branch, branch_exists, start_point)
        except GitCommandError as e:
            self.logger.error(COMPONENT, "worktree_creation_failed", branch=branch, error=str(e))
            raise WorktreeCreationError(f"Failed to create worktree for '{branch}': {e}") from e

        self._register(branch, str(worktree_path))
        self.logger.info(COMPONENT, "worktree_created", branch=branch, path=str(worktree_path))
        return str(worktree_path)

    async def remove_worktree(self, branch: str, delete_branch: bool = False) -> bool:
        """
        Remove the worktree for ``branch`` and its registry entry.

        Returns:
            True if something was removed, False if the branch is unknown
        """
        self.logger.debug(COMPONENT, "removing_worktree", branch=branch, delete_branch=delete_branch)

        entry = self.registry.find(lambda e: e.get('branch') == branch)
        path = entry.get('path') if entry else None
        if path is None:
            for worktree in await self._live_worktrees():
                if worktree.branch == branch:
                    path = worktree.path
                    break

        if path is None:
            self.logger.warn(COMPONENT, "worktree_not_found", branch=branch)
            return False

        if Path(path).resolve() == self.project_dir:
            self.logger.warn(COMPONENT, "refusing_to_remove_main_checkout", branch=branch, path=path)
            return False

        await self._remove_git_worktree(path, branch if delete_branch else None)
        self.registry.remove(lambda e: e.get('branch') == branch)
        self.logger.info(COMPONENT, "worktree_removed", branch=branch, path=path)
        return True

    def list_worktrees(self) -> List[Dict[str, Any]]:
        """Registry entries, each flagged ``active`` when its directory still exists."""
        return [
            {**entry, 'active': bool(entry.get('path')) and Path(entry['path']).is_dir()}
            for entry in self.registry.read()
        ]

    # =========================================================================
    # Pull request worktrees
    # =========================================================================

    async def find_or_create_pr_worktree(
        self,
        *,
        pr_number: Optional[int] = None,
        head_branch: Optional[str] = None,
        base_branch: str = "main",
        max_stale_days: Optional[float] = 7
    ) -> str:
        """
        Return the worktree for a pull request, creating it if needed.

        The checked-out branch is ``<head_branch>-pr-<pr_number>`` so two PRs
        with the same head branch name get separate branches and paths.

        Args:
            pr_number: Pull request number (required)
            head_branch: PR head branch
            base_branch: Branch the worktree starts from
            max_stale_days: Registry hits older than this are recreated

        Returns:
            Absolute worktree path

        Raises:
            ValueError: If pr_number is missing or not a positive integer
            WorktreeCreationError: For invalid branch names or git failures
        """
        if pr_number is None:
            raise ValueError("pr_number is required")
        if isinstance(pr_number, bool) or int(pr_number) <= 0:
            raise ValueError(f"PR number must be a positive integer, got {pr_number!r}")
        pr_number = int(pr_number)

        self.logger.debug(COMPONENT, "finding_or_creating_pr_worktree",
                          pr_number=pr_number, head_branch=head_branch, base_branch=base_branch)

        validate_branch_name(head_branch)
        validate_branch_name(base_branch)
        pr_branch = self.pr_branch_name(pr_number, head_branch)
        validate_branch_name(pr_branch)

        entry = self._find_pr_entry(pr_number)
        if entry:
            path = entry.get('path')
            if path and Path(path).is_dir():
                if not self._is_stale(entry, max_stale_days):
                    self.logger.debug(COMPONENT, "found_existing_pr_worktree", pr_number=pr_number, path=path)
                    return path
                self.logger.warn(COMPONENT, "stale_pr_worktree", pr_number=pr_number, path=path,
                                 max_stale_days=max_stale_days)
                await self._discard_pr_entry(entry)
            else:
                self.logger.warn(COMPONENT, "pr_worktree_path_missing", pr_number=pr_number, expected_path=path)
                self.pr_registry.remove(lambda e: self._same_pr(e, pr_number))

        worktree_path = self.worktree_path_for(pr_branch)
        live = await self._live_worktrees()
        reused = next((wt for wt in live if wt.branch == pr_branch and Path(wt.path).is_dir()), None)

        if reused:
            worktree_path = Path(reused.path)
        else:
            try:
                await self._fetch(base_branch)
                start_point = await self._resolve_start_point(base_branch)
                branch_exists = await self._branch_exists(pr_branch)
                self.worktree_root.mkdir(parents=True, exist_ok=True)
                await self._worktree_add(worktree_path, pr_branch, branch_exists, start_point)
            except GitCommandError as e:
                self.logger.error(COMPONENT, "pr_worktree_creation_failed", pr_number=pr_number,
                                  head_branch=head_branch, base_branch=base_branch, error=str(e))
                raise WorktreeCreationError(f"Failed to create worktree for PR {pr_number}: {e}") from e

        record = PrWorktreeEntry(
            pr_number=pr_number,
            head_branch=head_branch,
            base_branch=base_branch,
            branch=pr_branch,
            path=str(worktree_path),
            created_at=int(time.time())
        )
        self.pr_registry.upsert(record.to_dict(), key='pr_number')
        self.logger.info(COMPONENT, "pr_worktree_created", pr_number=pr_number, path=str(worktree_path))
        return str(worktree_path)

    async def remove_pr_worktree(self, pr_number: int, delete_branch: bool = False) -> bool:
        """Remove a PR worktree and its registry entry. False if the PR is unknown."""
        self.logger.debug(COMPONENT, "removing_pr_worktree", pr_number=pr_number)
        entry = self._find_pr_entry(pr_number)
        if not entry:
            return False
        await self._discard_pr_entry(entry, delete_branch=delete_branch)
        return True

    def list_pr_worktrees(self) -> List[Dict[str, Any]]:
        return [
            {**entry, 'active': bool(entry.get('path')) and Path(entry['path']).is_dir()}
            for entry in self.pr_registry.read()
        ]

    async def cleanup_stale_pr_worktrees(self, max_stale_days: float = 7) -> List[int]:
        """
        Remove PR worktrees older than ``max_stale_days``.

        Returns:
            PR numbers that were removed
        """
        self.logger.debug(COMPONENT, "cleaning_stale_pr_worktrees", threshold_days=max_stale_days)
        removed = []
        for entry in self.pr_registry.read():
            if self._is_stale(entry, max_stale_days):
                await self._discard_pr_entry(entry)
                removed.append(entry.get('pr_number'))

        self.logger.info(COMPONENT, "stale_pr_worktrees_cleaned", count=len(removed))
        return removed

    # =========================================================================
    # Helpers
    # =========================================================================

    def _register(self, branch: str, path: str) -> None:
        entry = WorktreeEntry(branch=branch, path=path, created_at=int(time.time()))
        self.registry.upsert(entry.to_dict(), key='branch')

    def _find_pr_entry(self, pr_number: int) -> Optional[Dict[str, Any]]:
        return self.pr_registry.find(lambda e: self._same_pr(e, pr_number))

    @staticmethod
    def _same_pr(entry: Dict[str, Any], pr_number: int) -> bool:
        try:
            return int(entry.get('pr_number')) == int(pr_number)
        except (TypeError, ValueError):
            return False

    @staticmethod
    def _is_stale(entry: Dict[str, Any], max_stale_days: Optional[float]) -> bool:
        created_at = entry.get('created_at')
        if max_stale_days is None or not isinstance(created_at, (int, float)):
            return False
        return (time.time() - created_at) > max_stale_days * SECONDS_PER_DAY

    async def _discard_pr_entry(self, entry: Dict[str, Any], delete_branch: bool = False) -> None:
        path = entry.get('path')
        branch = entry.get('branch')
        if path:
            await self._remove_git_worktree(path, branch if delete_branch else None)
        self.pr_registry.remove(lambda e: self._same_pr(e, entry.get('pr_number')))
        self.logger.info(COMPONENT, "pr_worktree_removed", pr_number=entry.get('pr_number'), path=path)

    async def _remove_git_worktree(self, path: str, delete_branch: Optional[str] = None) -> None:
        if Path(path).exists():
            try:
                await self._git(['worktree', 'remove', '--force', path])
            except GitCommandError as e:
                self.logger.warn(COMPONENT, "git_worktree_remove_failed", path=path, error=str(e))
        try:
            await self._git(['worktree', 'prune'])
        except GitCommandError as e:
            self.logger.debug(COMPONENT, "git_worktree_prune_failed", error=str(e))

        if delete_branch:
            try:
                await self._git(['branch', '-D', delete_branch])
            except GitCommandError as e:
                self.logger.warn(COMPONENT, "branch_delete_failed", branch=delete_branch, error=str(e))

    async def _git(self, args: List[str]) -> str:
        return await run_git(args, cwd=self.project_dir, timeout=self.git_timeout)

    async def _ensure_git_repo(self) -> None:
        try:
            await self._git(['rev-parse', '--git-dir'])
        except GitCommandError as e:
            raise WorktreeLookupError(f"Not in a git repository: {self.project_dir}") from e

    async def _live_worktrees(self) -> List[GitWorktree]:
        await self._ensure_git_repo()
        try:
            output = await self._git(['worktree', 'list', '--porcelain'])
        except GitCommandError as e:
            raise WorktreeLookupError(f"Failed to list worktrees: {e}") from e
        return parse_worktree_list(output)

    async def _branch_exists(self, branch: str) -> bool:
        try:
            await self._git(['show-ref', '--verify', '--quiet', f'refs/heads/{branch}'])
            return True
        except GitCommandError:
            return False

    async def _ref_exists(self, ref: str) -> bool:
        try:
            await self._git(['rev-parse', '--verify', '--quiet', f'{ref}^{{commit}}'])
            return True
        except GitCommandError:
            return False

    async def _default_branch(self) -> str:
        """
        Detect the default branch: origin/HEAD target, then main/master,
        then the currently checked-out branch.
        """
        try:
            output = await self._git(['symbolic-ref', 'refs/remotes/origin/HEAD'])
            prefix = 'refs/remotes/origin/'
            if output.startswith(prefix) and len(output) > len(prefix):
                return output[len(prefix):]
        except GitCommandError:
            pass

        for candidate in ('main', 'master'):
            if await self._branch_exists(candidate):
                return candidate

        current = await self._git(['rev-parse', '--abbrev-ref', 'HEAD'])
        if current == 'HEAD':
            raise GitCommandError("Could not determine default branch (detached HEAD)")
        return current

    async def _fetch(self, base_branch: str) -> None:
        try:
            await self._git(['fetch', 'origin', base_branch])
        except GitCommandError as e:
            self.logger.debug(COMPONENT, "fetch_base_branch_failed", base_branch=base_branch, error=str(e))

    async def _resolve_start_point(self, base_branch: str, prefer_remote: bool = True) -> str:
        candidates = [f"origin/{base_branch}", base_branch]
        if not prefer_remote:
            candidates.reverse()
        for candidate in candidates:
            if await self._ref_exists(candidate):
                return candidate
        raise GitCommandError(f"Base branch '{base_branch}' does not exist in the repository")

    async def _worktree_add(
        self,
        worktree_path: Path,
        branch: str,
        branch_exists: bool,
        start_point: Optional[str]
    ) -> None:
        prune_attempted = False

        while True:
            if branch_exists:
                args = ['worktree', 'add', str(worktree_path), branch]
            else:
                args = ['worktree', 'add', '-b', branch, str(worktree_path)]
                if start_point:
                    args.append(start_point)

            try:
                await self._git(args)
                return
            except GitCommandError as e:
                output = (e.stderr or str(e)).lower()

                if not branch_exists and f"'{branch.lower()}' already exists" in output:
                    self.logger.debug(COMPONENT, "branch_exists_retry", branch=branch)
                    branch_exists = True
                    continue

                if not prune_attempted and "missing but already registered worktree" in output:
                    self.logger.debug(COMPONENT, "prune_missing_worktree", branch=branch, path=str(worktree_path))
                    await self._git(['worktree', 'prune'])
                    prune_attempted = True
                    continue

                raise
