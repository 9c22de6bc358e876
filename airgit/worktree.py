"""Git worktree management for AirGit.

Each agent job gets its own worktree under ``Config.worktrees_dir`` so the
coding agent can edit files without touching the user's checkout. The
``workspace()`` context manager guarantees the worktree is removed however
the job ends.
"""

import logging
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Optional

from airgit.config import Config
from airgit.errors import AirGitError, CommandError, CommitError, PushError, SetupError
from airgit.ids import workspace_prefix
from airgit.process import CommandResult, run_command

log = logging.getLogger("airgit.worktree")

DEFAULT_BRANCH_FALLBACK = "main"
ORIGIN_HEAD_REF = "refs/remotes/origin/HEAD"

StepCallback = Callable[[str], None]


@dataclass
class Workspace:
    """A worktree checked out for one job run."""

    path: Path
    branch: str
    main_repo: Path
    base_branch: Optional[str] = None
    start_commit: Optional[str] = None


def resolve_main_repo(path: Path) -> Path:
    """Find the main repository when ``path`` is a linked worktree.

    A linked worktree has a ``.git`` *file* containing
    ``gitdir: <repo>/.git/worktrees/<name>``; the repository root is the
    directory holding that ``.git`` directory. Anything else is returned
    unchanged.

    Raises:
        SetupError: If the .git file has no gitdir line
    """
    path = Path(path)
    git_path = path / ".git"
    if not git_path.is_file():
        return path

    for line in git_path.read_text().splitlines():
        if line.startswith("gitdir:"):
            gitdir = Path(line[len("gitdir:"):].strip())
            if not gitdir.is_absolute():
                gitdir = (path / gitdir).resolve()
            # <repo>/.git/worktrees/<name> -> <repo>/.git -> <repo>
            main_repo = gitdir.parent.parent.parent
            log.debug("%s is a worktree of %s", path, main_repo)
            return main_repo

    raise SetupError(f"Malformed .git file in {path}: no gitdir line")


def parse_worktree_list(output: str) -> List[Dict[str, str]]:
    """Parse ``git worktree list --porcelain`` output.

    Returns:
        One dict per worktree with ``path`` and, when checked out on a
        branch, ``branch`` (the full ``refs/heads/...`` name)
    """
    worktrees: List[Dict[str, str]] = []
    current: Dict[str, str] = {}

    for line in output.splitlines():
        if not line.strip():
            if current:
                worktrees.append(current)
                current = {}
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            if current:
                worktrees.append(current)
            current = {"path": value}
        elif key in ("branch", "HEAD"):
            current[key.lower()] = value
        elif key in ("detached", "bare", "locked", "prunable"):
            current[key] = value or "true"

    if current:
        worktrees.append(current)
    return worktrees


class WorktreeManager:
    """Manages git worktrees for agent jobs."""

    def __init__(self, config: Config):
        self.config = config

    @property
    def base_dir(self) -> Path:
        return self.config.worktrees_dir

    async def git(self, cwd: Path, *args: str, check: bool = True) -> CommandResult:
        return await run_command(self.config.git_command, args, cwd=cwd, check=check)

    def ensure_base_dir(self) -> None:
        """Create the worktrees base directory.

        Raises:
            SetupError: If the directory can't be created
        """
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SetupError(f"Failed to create worktree directory: {e}", cause=e) from e

    async def cleanup_stale(self, repo: Path, kind: str, key: object) -> List[Path]:
        """Remove worktrees left behind by an earlier run for the same job key.

        Args:
            repo: Any checkout of the repository
            kind: Job kind ("issue" or "review")
            key: Job key (issue number)

        Returns:
            Paths that were removed
        """
        if not self.base_dir.is_dir():
            return []

        prefix = workspace_prefix(kind, key)
        removed: List[Path] = []
        for entry in sorted(self.base_dir.iterdir()):
            if entry.is_dir() and entry.name.startswith(prefix):
                log.info("Removing stale worktree %s", entry)
                await self.remove_worktree(repo, entry)
                removed.append(entry)
        return removed

    async def fetch_origin(self, repo: Path, *refs: str) -> bool:
        """Fetch from origin. Failures are logged and reported as False."""
        try:
            await self.git(repo, "fetch", "origin", *refs)
            return True
        except AirGitError as e:
            log.warning("git fetch origin failed in %s, continuing: %s", repo, e)
            return False

    async def get_default_branch(self, repo: Path) -> str:
        """Default branch of origin, from refs/remotes/origin/HEAD, else 'main'."""
        try:
            result = await self.git(repo, "symbolic-ref", ORIGIN_HEAD_REF, check=False)
        except AirGitError as e:
            log.warning("Could not resolve %s: %s", ORIGIN_HEAD_REF, e)
            return DEFAULT_BRANCH_FALLBACK

        ref = result.stdout.strip()
        if result.ok and ref.startswith("refs/remotes/origin/"):
            return ref[len("refs/remotes/origin/"):]
        log.info("origin/HEAD not set in %s, using '%s'", repo, DEFAULT_BRANCH_FALLBACK)
        return DEFAULT_BRANCH_FALLBACK

    async def _ref_exists(self, repo: Path, ref: str) -> bool:
        result = await self.git(repo, "rev-parse", "--verify", "--quiet", ref, check=False)
        return result.ok

    async def add_worktree(self, main_repo: Path, path: Path, branch: str, base_branch: str) -> None:
        """Create a worktree on a new branch started from base_branch.

        Prefers ``origin/<base>`` so the branch starts from what was just fetched.

        Raises:
            SetupError: If git worktree add fails
        """
        start_point = base_branch
        try:
            if await self._ref_exists(main_repo, f"refs/remotes/origin/{base_branch}"):
                start_point = f"origin/{base_branch}"
            await self.git(main_repo, "worktree", "add", "-b", branch, str(path), start_point)
        except AirGitError as e:
            raise SetupError(f"Failed to create worktree: {e}", cause=e) from e
        log.info("Created worktree %s on %s (from %s)", path, branch, start_point)

    async def create_worktree(
        self,
        main_repo: Path,
        path: Path,
        branch: str,
        on_step: Optional[StepCallback] = None,
    ) -> str:
        """Fetch, resolve the default branch, and add a worktree on a new branch.

        Returns:
            The base branch the new branch was created from

        Raises:
            SetupError: If the worktree can't be created
        """
        def step(message: str) -> None:
            if on_step is not None:
                on_step(message)

        step("Fetching origin")
        await self.fetch_origin(main_repo)
        step("Resolving default branch")
        base_branch = await self.get_default_branch(main_repo)
        step(f"Creating worktree from {base_branch}")
        await self.add_worktree(main_repo, path, branch, base_branch)
        return base_branch

    async def list_worktrees(self, main_repo: Path) -> List[Dict[str, str]]:
        result = await self.git(main_repo, "worktree", "list", "--porcelain")
        return parse_worktree_list(result.stdout)

    async def find_worktrees_for_branch(self, main_repo: Path, branch: str) -> List[Path]:
        """Paths of worktrees that currently have ``branch`` checked out."""
        target = f"refs/heads/{branch}"
        return [
            Path(wt["path"])
            for wt in await self.list_worktrees(main_repo)
            if wt.get("branch") == target
        ]

    async def create_worktree_for_existing_branch(self, main_repo: Path, path: Path, branch: str) -> None:
        """Check out an existing (remote) branch in a new worktree.

        A branch can be checked out in only one worktree, so any other
        worktree on ``branch`` is removed first.

        Raises:
            SetupError: If the worktree can't be created
        """
        await self.fetch_origin(main_repo, branch)

        try:
            holders = await self.find_worktrees_for_branch(main_repo, branch)
        except AirGitError as e:
            raise SetupError(f"Failed to list worktrees: {e}", cause=e) from e

        for holder in holders:
            if holder.resolve() == Path(main_repo).resolve():
                raise SetupError(
                    f"Branch {branch} is checked out in the main repository; switch it first"
                )
            if holder.resolve() != Path(path).resolve():
                log.warning("Evicting worktree %s which has %s checked out", holder, branch)
                await self.remove_worktree(main_repo, holder)

        try:
            if await self._ref_exists(main_repo, f"refs/heads/{branch}"):
                await self.git(main_repo, "worktree", "add", str(path), branch)
                if await self._ref_exists(main_repo, f"refs/remotes/origin/{branch}"):
                    merge = await self.git(path, "merge", "--ff-only", f"origin/{branch}", check=False)
                    if not merge.ok:
                        log.warning(
                            "Local %s could not be fast-forwarded to origin/%s, "
                            "working on the local branch (push may be rejected): %s",
                            branch, branch, merge.output,
                        )
            else:
                await self.git(
                    main_repo, "worktree", "add", "--track", "-b", branch, str(path), f"origin/{branch}"
                )
        except AirGitError as e:
            raise SetupError(f"Failed to create worktree for {branch}: {e}", cause=e) from e
        log.info("Created worktree %s on existing branch %s", path, branch)

    async def remove_worktree(self, main_repo: Path, path: Path) -> None:
        """Force-remove a worktree. Errors are logged, never raised."""
        try:
            if path.exists():
                await self.git(main_repo, "worktree", "remove", "--force", str(path))
                log.info("Removed worktree %s", path)
            else:
                log.debug("Worktree %s already gone, pruning", path)
                await self.git(main_repo, "worktree", "prune", check=False)
        except AirGitError as e:
            log.warning("Failed to remove worktree %s: %s", path, e)

        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
            if path.exists():
                log.warning("Worktree directory %s could not be deleted", path)

    @asynccontextmanager
    async def workspace(
        self,
        main_repo: Path,
        path: Path,
        branch: str,
        existing_branch: bool = False,
        on_step: Optional[StepCallback] = None,
    ) -> AsyncIterator[Workspace]:
        """Create a worktree for a job and remove it when the block exits.

        Args:
            main_repo: Resolved main repository
            path: Where to create the worktree
            branch: New branch name, or the existing branch when existing_branch
            existing_branch: Check out branch instead of creating it
            on_step: Called with a short message before each git phase
        """
        base_branch: Optional[str] = None
        try:
            if existing_branch:
                if on_step is not None:
                    on_step(f"Preparing worktree for {branch}")
                await self.create_worktree_for_existing_branch(main_repo, path, branch)
            else:
                base_branch = await self.create_worktree(main_repo, path, branch, on_step=on_step)
            start_commit = await self.head_commit(path)
            yield Workspace(
                path=path,
                branch=branch,
                main_repo=main_repo,
                base_branch=base_branch,
                start_commit=start_commit,
            )
        finally:
            await self.remove_worktree(main_repo, path)
            if not existing_branch:
                # Pushed work lives on origin; the local job branch is disposable
                await self.delete_branch(main_repo, branch)

    async def head_commit(self, path: Path) -> str:
        """Commit id checked out in ``path``.

        Raises:
            SetupError: If HEAD can't be resolved
        """
        try:
            result = await self.git(path, "rev-parse", "HEAD")
        except AirGitError as e:
            raise SetupError(f"Failed to resolve HEAD in {path}: {e}", cause=e) from e
        return result.stdout.strip()

    async def delete_branch(self, main_repo: Path, branch: str) -> None:
        """Force-delete a local branch. Errors are logged, never raised."""
        try:
            result = await self.git(main_repo, "branch", "-D", branch, check=False)
        except AirGitError as e:
            log.warning("Failed to delete branch %s: %s", branch, e)
            return
        if result.ok:
            log.debug("Deleted local branch %s", branch)

    async def stage_all(self, path: Path) -> None:
        try:
            await self.git(path, "add", "-A")
        except AirGitError as e:
            raise CommitError(f"Failed to stage changes: {e}", cause=e) from e

    async def has_staged_changes(self, path: Path) -> bool:
        """True when the index differs from HEAD."""
        try:
            result = await self.git(path, "diff", "--cached", "--quiet", check=False)
        except AirGitError as e:
            raise CommitError(f"Failed to inspect staged changes: {e}", cause=e) from e
        if result.returncode not in (0, 1):
            raise CommitError(f"Failed to inspect staged changes: {result.output}")
        return result.returncode == 1

    async def commit(self, path: Path, message: str) -> bool:
        """Commit staged changes.

        Returns:
            False when git reports there was nothing to commit

        Raises:
            CommitError: If the commit fails for any other reason
        """
        try:
            await self.git(path, "commit", "-m", message)
            return True
        except CommandError as e:
            if "nothing to commit" in e.output or "no changes added to commit" in e.output:
                log.info("Nothing to commit in %s", path)
                return False
            raise CommitError(f"Failed to commit changes: {e}", cause=e) from e
        except AirGitError as e:
            raise CommitError(f"Failed to commit changes: {e}", cause=e) from e

    async def commits_ahead(self, path: Path, upstream: str) -> int:
        """Number of commits on HEAD that ``upstream`` does not contain.

        Picks up commits the coding agent made itself, which never show up
        as staged changes.

        Raises:
            CommitError: If git can't compare the two
        """
        try:
            result = await self.git(path, "rev-list", "--count", f"{upstream}..HEAD")
        except AirGitError as e:
            raise CommitError(f"Failed to compare HEAD with {upstream}: {e}", cause=e) from e
        try:
            return int(result.stdout.strip() or "0")
        except ValueError as e:
            raise CommitError(f"Unexpected rev-list output: {result.stdout!r}", cause=e) from e

    async def push(self, path: Path, branch: str) -> None:
        try:
            await self.git(path, "push", "-u", "origin", f"HEAD:refs/heads/{branch}")
        except AirGitError as e:
            raise PushError(f"Failed to push {branch}: {e}", cause=e) from e
        log.info("Pushed %s", branch)

    async def has_upstream_diff(self, path: Path, branch: str) -> bool:
        """True when the worktree differs from origin/<branch> in any way.

        Counts uncommitted edits, untracked files, and commits not on the remote.
        """
        try:
            status = await self.git(path, "status", "--porcelain", check=False)
            if status.stdout.strip():
                return True
            diff = await self.git(path, "diff", "--quiet", f"origin/{branch}", "HEAD", check=False)
        except AirGitError as e:
            log.warning("Could not compare %s with origin, assuming it differs: %s", path, e)
            return True
        return diff.returncode != 0
