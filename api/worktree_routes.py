"""
Worktree API Routes
===================

REST API endpoints for managing branch and pull-request worktrees of a
project. Provides operations for listing, looking up, creating and removing
worktrees.

The project is taken from the AIDP_PROJECT_DIR environment variable
(defaults to the current directory).
"""

from typing import List, Optional
import logging
import os

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field

from aidp.worktree import (
    WorktreeBranchManager,
    WorktreeCreationError,
    WorktreeError,
    WorktreeLookupError,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["worktrees"])


# =============================================================================
# Request/Response Models
# =============================================================================

class WorktreeInfoResponse(BaseModel):
    """Response model for a branch worktree."""
    branch: str
    path: str
    created_at: Optional[int] = None
    active: bool = True


class PrWorktreeInfoResponse(BaseModel):
    """Response model for a pull-request worktree."""
    pr_number: int
    branch: Optional[str] = None
    path: str
    head_branch: Optional[str] = None
    base_branch: Optional[str] = None
    created_at: Optional[int] = None
    active: bool = True


class WorktreeCreateRequest(BaseModel):
    """Request model for creating a worktree."""
    branch: str = Field(..., description="Branch to check out in the worktree")
    base_branch: Optional[str] = Field(None, description="Start point when the branch does not exist yet")


class PrWorktreeCreateRequest(BaseModel):
    """Request model for creating a pull-request worktree."""
    pr_number: int = Field(..., gt=0, description="Pull request number")
    head_branch: str = Field(..., description="PR head branch")
    base_branch: str = Field("main", description="Branch the worktree starts from")
    max_stale_days: float = Field(7, gt=0, description="Recreate recorded worktrees older than this")


class WorktreePathResponse(BaseModel):
    """Response model for create and lookup operations."""
    path: str


# =============================================================================
# Helper Functions
# =============================================================================

def get_worktree_manager() -> WorktreeBranchManager:
    """
    Get a WorktreeBranchManager for the configured project.

    Returns:
        WorktreeBranchManager rooted at AIDP_PROJECT_DIR (or cwd)
    """
    return WorktreeBranchManager(project_dir=os.environ.get("AIDP_PROJECT_DIR") or os.getcwd())


def _http_error(e: Exception, action: str) -> HTTPException:
    if isinstance(e, WorktreeCreationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, WorktreeLookupError):
        logger.warning(f"Worktree lookup failed while trying to {action}: {e}")
        return HTTPException(status_code=409, detail=str(e))
    logger.error(f"Failed to {action}: {e}")
    return HTTPException(status_code=500, detail=str(e))


# =============================================================================
# API Endpoints
# =============================================================================

@router.get("/api/worktrees", response_model=List[WorktreeInfoResponse])
async def list_worktrees(manager: WorktreeBranchManager = Depends(get_worktree_manager)):
    """
    List all recorded branch worktrees.

    Each entry is flagged ``active`` when its directory still exists.
    """
    try:
        return [WorktreeInfoResponse(**entry) for entry in manager.list_worktrees()]
    except Exception as e:
        raise _http_error(e, "list worktrees")


@router.get("/api/worktrees/lookup", response_model=WorktreePathResponse)
async def find_worktree(
    branch: str = Query(..., description="Branch name"),
    pr_number: Optional[int] = Query(None, description="PR number to check first"),
    manager: WorktreeBranchManager = Depends(get_worktree_manager)
):
    """
    Find the live worktree for a branch.
    """
    try:
        path = await manager.find_worktree(branch, pr_number=pr_number)
    except (WorktreeError, OSError) as e:
        raise _http_error(e, "find worktree")

    if not path:
        raise HTTPException(status_code=404, detail=f"No worktree found for branch {branch}")
    return WorktreePathResponse(path=path)


@router.post("/api/worktrees", response_model=WorktreePathResponse)
async def create_worktree(
    request: WorktreeCreateRequest,
    manager: WorktreeBranchManager = Depends(get_worktree_manager)
):
    """
    Create (or return the existing) worktree for a branch.
    """
    try:
        path = await manager.create_worktree(request.branch, base_branch=request.base_branch)
    except (WorktreeError, OSError) as e:
        raise _http_error(e, "create worktree")
    return WorktreePathResponse(path=path)


@router.delete("/api/worktrees")
async def remove_worktree(
    branch: str = Query(..., description="Branch name"),
    delete_branch: bool = Query(False, description="Also delete the local branch"),
    manager: WorktreeBranchManager = Depends(get_worktree_manager)
):
    """
    Remove the worktree for a branch.
    """
    try:
        removed = await manager.remove_worktree(branch, delete_branch=delete_branch)
    except (WorktreeError, OSError) as e:
        raise _http_error(e, "remove worktree")

    if not removed:
        raise HTTPException(status_code=404, detail=f"No worktree found for branch {branch}")
    return {"message": f"Successfully removed worktree for branch {branch}"}


@router.get("/api/pr-worktrees", response_model=List[PrWorktreeInfoResponse])
async def list_pr_worktrees(manager: WorktreeBranchManager = Depends(get_worktree_manager)):
    """
    List all recorded pull-request worktrees.
    """
    try:
        return [PrWorktreeInfoResponse(**entry) for entry in manager.list_pr_worktrees()]
    except Exception as e:
        raise _http_error(e, "list PR worktrees")


@router.post("/api/pr-worktrees", response_model=WorktreePathResponse)
async def create_pr_worktree(
    request: PrWorktreeCreateRequest,
    manager: WorktreeBranchManager = Depends(get_worktree_manager)
):
    """
    Find or create the worktree for a pull request.

    The worktree checks out ``<head_branch>-pr-<pr_number>``.
    """
    try:
        path = await manager.find_or_create_pr_worktree(
            pr_number=request.pr_number,
            head_branch=request.head_branch,
            base_branch=request.base_branch,
            max_stale_days=request.max_stale_days
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (WorktreeError, OSError) as e:
        raise _http_error(e, "create PR worktree")
    return WorktreePathResponse(path=path)


@router.delete("/api/pr-worktrees/{pr_number}")
async def remove_pr_worktree(
    pr_number: int,
    delete_branch: bool = Query(False, description="Also delete the local branch"),
    manager: WorktreeBranchManager = Depends(get_worktree_manager)
):
    """
    Remove the worktree for a pull request.
    """
    try:
        removed = await manager.remove_pr_worktree(pr_number, delete_branch=delete_branch)
    except (WorktreeError, OSError) as e:
        raise _http_error(e, "remove PR worktree")

    if not removed:
        raise HTTPException(status_code=404, detail=f"No worktree found for PR {pr_number}")
    return {"message": f"Successfully removed worktree for PR {pr_number}"}
