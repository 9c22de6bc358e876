"""GitHub integration for AirGit, via the gh CLI."""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from airgit.config import Config
from airgit.errors import (
    AirGitError,
    AuthenticationError,
    CommandError,
    PullRequestError,
    SetupError,
)
from airgit.process import env_without, run_command

log = logging.getLogger("airgit.github")

# Token-style credentials that would mask the user's interactive gh login
TOKEN_ENV_VARS = (
    "GH_TOKEN",
    "GITHUB_TOKEN",
    "GH_ENTERPRISE_TOKEN",
    "GITHUB_ENTERPRISE_TOKEN",
)

_PR_URL_PATTERN = re.compile(r"https?://\S+/pull/(\d+)")


@dataclass
class PullRequest:
    """GitHub pull request information."""

    number: int
    url: str
    branch: str
    title: str = ""


def parse_pr_url(text: str) -> Tuple[int, str]:
    """Extract the PR number and URL from gh output.

    Args:
        text: Output of ``gh pr create`` (the URL is usually the last line)

    Returns:
        (number, url)

    Raises:
        ValueError: If no pull request URL is present
    """
    matches = list(_PR_URL_PATTERN.finditer(text))
    if not matches:
        raise ValueError(f"No pull request URL in output: {text!r}")
    match = matches[-1]
    return int(match.group(1)), match.group(0)


async def check_auth(config: Config, repo: Path) -> None:
    """Verify gh has a usable interactive login.

    Token variables are stripped so a stale or scoped token in the server's
    environment can't make the check pass while pushes fail.

    Raises:
        AuthenticationError: If gh is missing or not logged in
    """
    try:
        await run_command(
            config.gh_command,
            ["auth", "status"],
            cwd=repo,
            env=env_without(TOKEN_ENV_VARS),
        )
    except CommandError as e:
        raise AuthenticationError(
            f"GitHub authentication failed: run 'gh auth login' ({e.output or 'not logged in'})",
            cause=e,
        ) from e
    except AirGitError as e:
        raise AuthenticationError(f"GitHub authentication check failed: {e}", cause=e) from e


async def get_pr_head_branch(config: Config, repo: Path, pr_number: int) -> str:
    """Get the head branch name of a pull request.

    Raises:
        SetupError: If gh fails or the PR has no head branch
    """
    try:
        result = await run_command(
            config.gh_command,
            ["pr", "view", str(pr_number), "--json", "headRefName"],
            cwd=repo,
        )
        branch = json.loads(result.stdout).get("headRefName", "")
    except (AirGitError, json.JSONDecodeError, AttributeError) as e:
        raise SetupError(f"Failed to resolve branch for PR #{pr_number}: {e}", cause=e) from e

    if not branch:
        raise SetupError(f"PR #{pr_number} has no head branch")
    log.debug("PR #%s is on branch %s", pr_number, branch)
    return str(branch)


async def create_pr(
    config: Config,
    repo: Path,
    title: str,
    body: str,
    head: str,
    base: str,
) -> PullRequest:
    """Create a pull request.

    Args:
        config: AirGit configuration
        repo: Repository to run gh in
        title: PR title
        body: PR body
        head: Source branch
        base: Target branch

    Returns:
        Created PullRequest

    Raises:
        PullRequestError: If gh fails or prints no PR URL
    """
    try:
        result = await run_command(
            config.gh_command,
            ["pr", "create", "--title", title, "--body", body, "--base", base, "--head", head],
            cwd=repo,
        )
        number, url = parse_pr_url(result.stdout)
    except (AirGitError, ValueError) as e:
        raise PullRequestError(f"Failed to create PR: {e}", cause=e) from e

    log.info("Created PR #%s: %s", number, url)
    return PullRequest(number=number, url=url, branch=head, title=title)

