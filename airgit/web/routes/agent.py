"""Agent job routes: trigger pipelines and poll their status."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from airgit.config import Config
from airgit.ids import parse_issue_number
from airgit.pipeline import IssuePipeline, ReviewPipeline
from airgit.runner import JobRunner
from airgit.state import AgentStatusStore
from airgit.web.deps import get_config, get_current_user, get_runner, get_store, get_worktrees
from airgit.web.models import ApplyReviewRequest, ProcessIssueRequest, TriggerResponse
from airgit.worktree import WorktreeManager

router = APIRouter(prefix="/api/agent", tags=["agent"])
logger = logging.getLogger("airgit.web")


@router.post("/process", response_model=TriggerResponse)
@router.post("/trigger", response_model=TriggerResponse, include_in_schema=False)
async def process_issue(
    req: ProcessIssueRequest,
    config: Config = Depends(get_config),
    store: AgentStatusStore = Depends(get_store),
    runner: JobRunner = Depends(get_runner),
    worktrees: WorktreeManager = Depends(get_worktrees),
    user: Optional[str] = Depends(get_current_user),
) -> TriggerResponse:
    """Start the issue pipeline in the background.

    The pending record exists before this returns, so an immediate status
    poll never 404s.
    """
    job = store.create(req.issue_number, kind="issue")
    pipeline = IssuePipeline(
        config,
        store,
        req.issue_number,
        req.issue_title,
        req.issue_body,
        job_id=job.job_id,
        worktrees=worktrees,
    )
    runner.submit(f"issue-{req.issue_number}", pipeline.run(), key=req.issue_number)
    logger.info("Agent processing started for issue #%s", req.issue_number)
    return TriggerResponse(success=True, message="Agent processing started")


@router.post("/apply-review", response_model=TriggerResponse)
async def apply_review(
    req: ApplyReviewRequest,
    config: Config = Depends(get_config),
    store: AgentStatusStore = Depends(get_store),
    runner: JobRunner = Depends(get_runner),
    worktrees: WorktreeManager = Depends(get_worktrees),
    user: Optional[str] = Depends(get_current_user),
) -> TriggerResponse:
    """Start the review pipeline for an existing PR in the background."""
    job = store.create(req.issue_number, kind="review")
    pipeline = ReviewPipeline(
        config,
        store,
        req.issue_number,
        req.pr_number,
        req.comments,
        job_id=job.job_id,
        worktrees=worktrees,
    )
    runner.submit(f"review-{req.issue_number}", pipeline.run(), key=req.issue_number)
    logger.info(
        "Review application started for PR #%s (issue #%s, %d comments)",
        req.pr_number,
        req.issue_number,
        len(req.comments),
    )
    return TriggerResponse(success=True, message="Review application started")


@router.get("/status")
async def agent_status(
    issue_number: Optional[str] = None,
    store: AgentStatusStore = Depends(get_store),
    user: Optional[str] = Depends(get_current_user),
) -> Dict[str, Any]:
    """Current job record for an issue."""
    if not issue_number:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing issue_number")
    try:
        key = parse_issue_number(issue_number)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid issue_number")

    job, found = store.get(key)
    if not found or job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No status for this issue")
    return job.to_api()


@router.get("/jobs")
async def list_jobs(
    store: AgentStatusStore = Depends(get_store),
    user: Optional[str] = Depends(get_current_user),
) -> List[Dict[str, Any]]:
    """Every job recorded since startup, ordered by issue number."""
    return [job.to_api() for job in store.snapshot()]
