"""Invoking the external coding agent.

The agent is an opaque executable (``copilot`` by default) that reads a
prompt on stdin and edits files in its working directory. We only watch its
output for progress lines and its exit status.
"""

import logging
from pathlib import Path
from typing import Callable, Optional, Sequence

from airgit.comments import ReviewComment
from airgit.config import Config
from airgit.errors import AgentError, AgentTimeoutError, CommandError, CommandNotFound, CommandTimeout
from airgit.process import CommandResult, stream_command
from airgit.progress import ProgressClassifier, default_classifier

log = logging.getLogger("airgit.agent")

PROGRESS_PREFIX = "🤖 "

ISSUE_PROMPT = """You are a code implementation assistant. Please analyze and implement the solution for GitHub issue #{number}.

Issue Title: {title}

Issue Description:
{body}

Instructions:
1. Analyze the issue and understand what needs to be implemented
2. Write clean, production-ready code that solves this issue
3. Follow the existing code style and conventions in the repository
4. Add appropriate tests if needed
5. Update any relevant documentation
6. Do not commit, push, or open a pull request; leave the changes in the working tree

Please implement the complete solution."""

REVIEW_PROMPT = """You are a code implementation assistant. Please address the following review comments on pull request #{pr_number}.

{comments}

Instructions:
1. Make the changes each comment asks for
2. Keep unrelated code unchanged
3. Do not commit or push; leave the changes in the working tree"""


def build_issue_prompt(number: int, title: str, body: str) -> str:
    return ISSUE_PROMPT.format(number=number, title=title, body=body or "(no description)")


def format_comment(index: int, comment: ReviewComment) -> str:
    location = ""
    if comment.path:
        location = f" ({comment.path}"
        if comment.line:
            location += f":{comment.line}"
        location += ")"
    return f"Comment {index}{location}:\n{comment.body.strip()}"


def build_review_prompt(pr_number: int, comments: Sequence[ReviewComment]) -> str:
    blocks = "\n\n".join(format_comment(i, c) for i, c in enumerate(comments, start=1))
    return REVIEW_PROMPT.format(pr_number=pr_number, comments=blocks)


async def run_coding_agent(
    config: Config,
    cwd: Path,
    prompt: str,
    on_progress: Optional[Callable[[str], None]] = None,
    classifier: Optional[ProgressClassifier] = None,
) -> CommandResult:
    """Run the coding agent in ``cwd`` and stream its progress.

    Args:
        config: AirGit configuration (agent command, args, timeout)
        cwd: Worktree the agent works in
        prompt: Fed to the agent on stdin
        on_progress: Receives meaningful output lines, prefixed with a robot marker
        classifier: Progress classifier (default: keyword classifier)

    Raises:
        AgentTimeoutError: If the agent ran past ``config.agent.timeout``
        AgentError: If the agent could not be started or exited non-zero
    """
    if classifier is None:
        classifier = default_classifier

    def on_line(stream: str, line: str) -> None:
        message, meaningful = classifier.classify(line)
        if meaningful and on_progress is not None:
            on_progress(PROGRESS_PREFIX + message)

    log.info("Running %s in %s", config.agent.command, cwd)
    try:
        result = await stream_command(
            config.agent.command,
            config.agent.args,
            cwd=cwd,
            on_line=on_line,
            input_text=prompt,
            timeout=config.agent.timeout,
        )
    except CommandTimeout as e:
        raise AgentTimeoutError(
            f"Coding agent timed out after {_format_duration(e.timeout)} and was stopped", cause=e
        ) from e
    except CommandNotFound as e:
        raise AgentError(f"Coding agent could not be started: {e.reason}", cause=e) from e
    except CommandError as e:
        tail = e.output.strip().splitlines()[-1:] if e.output.strip() else []
        detail = f": {tail[0]}" if tail else ""
        raise AgentError(f"Coding agent failed (exit status {e.returncode}){detail}", cause=e) from e

    log.info("%s finished in %s", config.agent.command, cwd)
    return result


def _format_duration(seconds: float) -> str:
    if seconds >= 3600 and seconds % 3600 == 0:
        hours = int(seconds // 3600)
        return f"{hours} hour" + ("s" if hours != 1 else "")
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute" + ("s" if minutes != 1 else "")
    return f"{seconds:g} seconds"
