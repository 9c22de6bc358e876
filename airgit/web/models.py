"""Pydantic models for the agent API."""

from pydantic import BaseModel, Field

from airgit.comments import ReviewComment


class ProcessIssueRequest(BaseModel):
    """Body of POST /api/agent/process."""

    issue_number: int = Field(gt=0)
    issue_title: str = ""
    issue_body: str = ""


class ApplyReviewRequest(BaseModel):
    """Body of POST /api/agent/apply-review."""

    issue_number: int = Field(gt=0)
    pr_number: int = Field(gt=0)
    comments: list[ReviewComment] = Field(default_factory=list)


class TriggerResponse(BaseModel):
    success: bool = True
    message: str
