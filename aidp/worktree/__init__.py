"""
Worktree management: isolated git worktrees per branch and per pull request.
"""

from aidp.worktree.branch_manager import (
    PrWorktreeEntry,
    WorktreeBranchManager,
    WorktreeCreationError,
    WorktreeEntry,
    WorktreeError,
    WorktreeLookupError,
    sanitize_for_path,
    validate_branch_name,
)
from aidp.worktree.git import GitCommandError, GitWorktree, parse_worktree_list, run_git
from aidp.worktree.registry import JsonRegistry

__all__ = [
    'GitCommandError',
    'GitWorktree',
    'JsonRegistry',
    'PrWorktreeEntry',
    'WorktreeBranchManager',
    'WorktreeCreationError',
    'WorktreeEntry',
    'WorktreeError',
    'WorktreeLookupError',
    'parse_worktree_list',
    'run_git',
    'sanitize_for_path',
    'validate_branch_name',
]
