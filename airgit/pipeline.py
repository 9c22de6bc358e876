"""Agent pipelines: issue -> pull request, and review comments -> push.

Both pipelines run as one background task per trigger. They move their job
record from ``running`` to ``completed`` or ``failed`` and always remove
their worktree on the way out. Every step either succeeds or raises a
``PipelineError`` whose message becomes the job's final message.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from airgit.agent import build_issue_prompt, build_review_prompt, run_coding_agent
from airgit.comments import (
    DeletionIntentClassifier,
    DeletionReport,
    ReviewComment,
    apply_deletions,
)
from airgit.config import Config
from airgit.errors import PipelineError, SetupError
from airgit.github import check_auth, create_pr, get_pr_head_branch
from airgit.ids import branch_name, workspace_name
from airgit.progress import ProgressClassifier
from airgit.state import AgentStatusStore
from airgit.state_machine import JobState
from airgit.worktree import Workspace, WorktreeManager, resolve_main_repo

log = logging.getLogger("airgit.pipeline")

Outcome = Tuple[str, Dict[str, Any]]

NO_CHANGES_MESSAGE = "Completed: no changes were necessary"
ALREADY_ADDRESSED_MESSAGE = "Completed: review comments already addressed"
DELETIONS_APPLIED_MESSAGE = "Completed: requested deletions already applied"


class Pipeline:
    """Shared run loop: status transitions, error mapping, progress updates."""

    kind = "job"

    def __init__(
        self,
        config: Config,
        store: AgentStatusStore,
        key: int,
        job_id: Optional[str] = None,
        worktrees: Optional[WorktreeManager] = None,
        classifier: Optional[ProgressClassifier] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.key = key
        self.job_id = job_id
        self.worktrees = worktrees or WorktreeManager(config)
        self.classifier = classifier

    def progress(self, message: str) -> None:
        """Publish a progress message for this job."""
        log.debug("Job #%s: %s", self.key, message)
        self.store.update_message(self.key, message, job_id=self.job_id)

    def _finish(self, state: JobState, message: str, **fields: Any) -> None:
        self.store.transition(self.key, state, message, job_id=self.job_id, **fields)

    async def run(self) -> None:
        """Run the pipeline to a terminal state. Never raises except on cancellation."""
        log.info("Starting %s pipeline for #%s", self.kind, self.key)
        self.store.transition(self.key, JobState.RUNNING, self.start_message, job_id=self.job_id)

        try:
            message, fields = await self.execute()
        except PipelineError as e:
            log.warning("%s job #%s failed (%s): %s", self.kind, self.key, e.category, e)
            self._finish(JobState.FAILED, str(e))
        except asyncio.CancelledError:
            log.warning("%s job #%s cancelled", self.kind, self.key)
            self._finish(JobState.FAILED, "Cancelled: server is shutting down")
            raise
        except Exception as e:
            log.exception("Unexpected error in %s job #%s", self.kind, self.key)
            self._finish(JobState.FAILED, f"Unexpected error: {e}")
        else:
            self._finish(JobState.COMPLETED, message, **fields)

    @property
    def start_message(self) -> str:
        return "Processing"

    async def execute(self) -> Outcome:
        raise NotImplementedError

    async def prepare(self) -> Path:
        """Steps shared by both pipelines before a worktree exists.

        Returns:
            The resolved main repository
        """
        self.progress("Cleaning up stale worktrees")
        await self.worktrees.cleanup_stale(self.config.repo_path, self.kind, self.key)
        self.worktrees.ensure_base_dir()
        try:
            return resolve_main_repo(self.config.repo_path)
        except OSError as e:
            raise SetupError(f"Failed to resolve main repository: {e}", cause=e) from e

    def new_worktree_path(self) -> Path:
        return self.config.get_worktree_path(workspace_name(self.kind, self.key))

    async def run_agent(self, workspace: Workspace, prompt: str) -> None:
        self.progress("Running coding agent")
        await run_coding_agent(
            self.config,
            workspace.path,
            prompt,
            on_progress=self.progress,
            classifier=self.classifier,
        )

    async def commit_changes(self, workspace: Workspace, message: str) -> None:
        """Stage everything and commit it when anything is staged.

        The agent may have committed on its own, so an empty index does not
        mean the run produced nothing; callers check ``commits_ahead``.
        """
        self.progress("Staging changes")
        await self.worktrees.stage_all(workspace.path)
        if await self.worktrees.has_staged_changes(workspace.path):
            self.progress("Committing changes")
            await self.worktrees.commit(workspace.path, message)


class IssuePipeline(Pipeline):
    """Implement a GitHub issue on a fresh branch and open a pull request."""

    kind = "issue"

    def __init__(
        self,
        config: Config,
        store: AgentStatusStore,
        issue_number: int,
        issue_title: str,
        issue_body: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(config, store, issue_number, **kwargs)
        self.issue_title = issue_title
        self.issue_body = issue_body

    @property
    def start_message(self) -> str:
        return f"Processing issue #{self.key}"

    def commit_message(self) -> str:
        return f"Fix #{self.key}: {self.issue_title}"

    def pr_title(self) -> str:
        return f"Issue #{self.key}: {self.issue_title}"

    def pr_body(self) -> str:
        return (
            f"Fixes #{self.key}\n\n"
            f"Auto-generated implementation for issue #{self.key} by the AirGit agent."
        )

    async def execute(self) -> Outcome:
        main_repo = await self.prepare()
        path = self.new_worktree_path()
        branch = branch_name(self.config.branch_prefix, self.kind, self.key)
        wt = self.worktrees

        self.progress("Preparing worktree")
        async with wt.workspace(main_repo, path, branch, on_step=self.progress) as workspace:
            self.progress("Checking GitHub authentication")
            await check_auth(self.config, main_repo)

            prompt = build_issue_prompt(self.key, self.issue_title, self.issue_body)
            await self.run_agent(workspace, prompt)

            await self.commit_changes(workspace, self.commit_message())
            if not await wt.commits_ahead(workspace.path, workspace.start_commit or "HEAD"):
                return NO_CHANGES_MESSAGE, {}

            self.progress("Pushing branch")
            await wt.push(workspace.path, branch)

            self.progress("Creating pull request")
            pr = await create_pr(
                self.config,
                main_repo,
                title=self.pr_title(),
                body=self.pr_body(),
                head=branch,
                base=workspace.base_branch or "main",
            )
            return f"PR created: {pr.url}", {"pr_number": pr.number, "pr_url": pr.url}


class ReviewPipeline(Pipeline):
    """Apply review comments to an existing pull request's branch and push."""

    kind = "review"

    def __init__(
        self,
        config: Config,
        store: AgentStatusStore,
        issue_number: int,
        pr_number: int,
        comments: Sequence[ReviewComment],
        deletion_classifier: Optional[DeletionIntentClassifier] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, store, issue_number, **kwargs)
        self.pr_number = pr_number
        self.comments: List[ReviewComment] = list(comments)
        self.deletion_classifier = deletion_classifier

    @property
    def start_message(self) -> str:
        return f"Applying review comments to PR #{self.pr_number}"

    def commit_message(self, report: DeletionReport) -> str:
        lines = [f"Address review comments on PR #{self.pr_number}"]
        if report.deleted:
            lines.append("")
            lines.extend(f"- Delete {p}" for p in report.deleted)
        return "\n".join(lines)

    async def execute(self) -> Outcome:
        main_repo = await self.prepare()

        self.progress(f"Resolving branch for PR #{self.pr_number}")
        branch = await get_pr_head_branch(self.config, main_repo, self.pr_number)
        path = self.new_worktree_path()
        wt = self.worktrees

        self.progress("Preparing worktree")
        async with wt.workspace(
            main_repo, path, branch, existing_branch=True, on_step=self.progress
        ) as workspace:
            report = apply_deletions(workspace.path, self.comments, self.deletion_classifier)
            if report.requested:
                self.progress(
                    f"Deleted {len(report.deleted)} file(s), "
                    f"{len(report.already_absent)} already absent"
                )

            if report.all_already_applied and not await wt.has_upstream_diff(workspace.path, branch):
                return DELETIONS_APPLIED_MESSAGE, {}

            self.progress("Checking GitHub authentication")
            await check_auth(self.config, main_repo)

            if report.remaining:
                prompt = build_review_prompt(self.pr_number, report.remaining)
                await self.run_agent(workspace, prompt)

            await self.commit_changes(workspace, self.commit_message(report))
            if not await wt.commits_ahead(workspace.path, f"origin/{branch}"):
                return ALREADY_ADDRESSED_MESSAGE, {}

            self.progress("Pushing branch")
            await wt.push(workspace.path, branch)
            return f"Review changes pushed to PR #{self.pr_number}", {}
