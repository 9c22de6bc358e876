"""Tests for git worktree management."""

import shutil
import subprocess
from pathlib import Path
from typing import List
from unittest.mock import AsyncMock, patch

import pytest

from airgit.config import Config
from airgit.errors import CommandError, CommandNotFound, CommitError, PushError, SetupError
from airgit.process import CommandResult
from airgit.worktree import WorktreeManager, parse_worktree_list, resolve_main_repo

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    ).stdout


def _ok(stdout: str = "", returncode: int = 0) -> CommandResult:
    return CommandResult(argv=["git"], returncode=returncode, stdout=stdout)


class TestResolveMainRepo:
    """Tests for resolve_main_repo."""

    def test_plain_repository_unchanged(self, tmp_path: Path) -> None:
        (tmp_path / ".git").mkdir()
        assert resolve_main_repo(tmp_path) == tmp_path

    def test_no_git_at_all_unchanged(self, tmp_path: Path) -> None:
        assert resolve_main_repo(tmp_path) == tmp_path

    def test_linked_worktree_resolves_to_root(self, tmp_path: Path) -> None:
        (tmp_path / ".git").write_text("gitdir: /repo/.git/worktrees/foo\n")
        assert resolve_main_repo(tmp_path) == Path("/repo")

    def test_relative_gitdir(self, tmp_path: Path) -> None:
        main = tmp_path / "main"
        (main / ".git" / "worktrees" / "wt").mkdir(parents=True)
        wt = tmp_path / "wt"
        wt.mkdir()
        (wt / ".git").write_text("gitdir: ../main/.git/worktrees/wt\n")
        assert resolve_main_repo(wt) == main.resolve()

    def test_malformed_git_file(self, tmp_path: Path) -> None:
        (tmp_path / ".git").write_text("nonsense\n")
        with pytest.raises(SetupError, match="no gitdir"):
            resolve_main_repo(tmp_path)


class TestParseWorktreeList:

    def test_parse_porcelain(self) -> None:
        output = (
            "worktree /repo\n"
            "HEAD 1111111111111111111111111111111111111111\n"
            "branch refs/heads/main\n"
            "\n"
            "worktree /tmp/airgit/review-3-1\n"
            "HEAD 2222222222222222222222222222222222222222\n"
            "branch refs/heads/feature/x\n"
            "\n"
            "worktree /tmp/detached\n"
            "HEAD 3333333333333333333333333333333333333333\n"
            "detached\n"
        )
        worktrees = parse_worktree_list(output)
        assert [wt["path"] for wt in worktrees] == ["/repo", "/tmp/airgit/review-3-1", "/tmp/detached"]
        assert worktrees[1]["branch"] == "refs/heads/feature/x"
        assert worktrees[2]["detached"] == "true"
        assert "branch" not in worktrees[2]

    def test_empty(self) -> None:
        assert parse_worktree_list("") == []


class TestWorktreeManagerMocked:
    """WorktreeManager behavior with git mocked out."""

    @pytest.mark.asyncio
    async def test_default_branch_from_origin_head(self, config: Config) -> None:
        manager = WorktreeManager(config)
        with patch("airgit.worktree.run_command",
                   new=AsyncMock(return_value=_ok("refs/remotes/origin/develop\n"))):
            assert await manager.get_default_branch(Path("/repo")) == "develop"

    @pytest.mark.asyncio
    async def test_default_branch_fallback(self, config: Config) -> None:
        manager = WorktreeManager(config)
        with patch("airgit.worktree.run_command",
                   new=AsyncMock(return_value=_ok("", returncode=128))):
            assert await manager.get_default_branch(Path("/repo")) == "main"

    @pytest.mark.asyncio
    async def test_fetch_failure_is_not_fatal(self, config: Config) -> None:
        manager = WorktreeManager(config)
        error = CommandError(["git", "fetch"], 128, "Could not resolve host")
        with patch("airgit.worktree.run_command", new=AsyncMock(side_effect=error)):
            assert await manager.fetch_origin(Path("/repo")) is False

    @pytest.mark.asyncio
    async def test_add_worktree_failure(self, config: Config) -> None:
        manager = WorktreeManager(config)
        calls: List[tuple] = []

        async def fake_run(program, args, **kwargs):
            calls.append(tuple(args))
            if args[0] == "rev-parse":
                return _ok()
            raise CommandError(["git", *args], 128, "fatal: already exists")

        with patch("airgit.worktree.run_command", new=fake_run):
            with pytest.raises(SetupError, match="Failed to create worktree"):
                await manager.add_worktree(Path("/repo"), Path("/tmp/wt"), "airgit/issue-1-1", "main")

        assert calls[-1] == ("worktree", "add", "-b", "airgit/issue-1-1", "/tmp/wt", "origin/main")

    @pytest.mark.asyncio
    async def test_evicts_other_worktree_on_branch(self, config: Config, tmp_path: Path) -> None:
        manager = WorktreeManager(config)
        holder = tmp_path / "old-holder"
        holder.mkdir()
        porcelain = (
            f"worktree {tmp_path / 'repo'}\nbranch refs/heads/main\n\n"
            f"worktree {holder}\nbranch refs/heads/feature\n"
        )
        calls: List[tuple] = []

        async def fake_run(program, args, **kwargs):
            calls.append(tuple(args))
            if args[:2] == ("worktree", "list"):
                return _ok(porcelain)
            if args[0] == "rev-parse":
                return _ok(returncode=1)
            return _ok()

        with patch("airgit.worktree.run_command", new=fake_run):
            await manager.create_worktree_for_existing_branch(
                tmp_path / "repo", tmp_path / "new", "feature"
            )

        assert ("worktree", "remove", "--force", str(holder)) in calls
        assert calls[-1] == (
            "worktree", "add", "--track", "-b", "feature", str(tmp_path / "new"), "origin/feature"
        )

    @pytest.mark.asyncio
    async def test_branch_held_by_main_repo(self, config: Config, tmp_path: Path) -> None:
        manager = WorktreeManager(config)
        repo = tmp_path / "repo"
        porcelain = f"worktree {repo}\nbranch refs/heads/feature\n"

        async def fake_run(program, args, **kwargs):
            if args[:2] == ("worktree", "list"):
                return _ok(porcelain)
            return _ok()

        with patch("airgit.worktree.run_command", new=fake_run):
            with pytest.raises(SetupError, match="main repository"):
                await manager.create_worktree_for_existing_branch(repo, tmp_path / "new", "feature")

    @pytest.mark.asyncio
    async def test_remove_worktree_never_raises(self, config: Config, tmp_path: Path) -> None:
        manager = WorktreeManager(config)
        leftover = tmp_path / "leftover"
        (leftover / "sub").mkdir(parents=True)
        error = CommandError(["git", "worktree", "remove"], 128, "not a working tree")
        with patch("airgit.worktree.run_command", new=AsyncMock(side_effect=error)):
            await manager.remove_worktree(tmp_path, leftover)
        assert not leftover.exists()

    @pytest.mark.asyncio
    async def test_cleanup_stale_only_matches_own_key(self, config: Config) -> None:
        manager = WorktreeManager(config)
        base = config.worktrees_dir
        for name in ("issue-4-100-1", "issue-42-100-2", "review-4-100-3", "issue-4-200-4"):
            (base / name).mkdir(parents=True)

        with patch("airgit.worktree.run_command", new=AsyncMock(return_value=_ok())):
            removed = await manager.cleanup_stale(config.repo_path, "issue", 4)

        assert sorted(p.name for p in removed) == ["issue-4-100-1", "issue-4-200-4"]
        assert sorted(p.name for p in base.iterdir()) == ["issue-42-100-2", "review-4-100-3"]

    @pytest.mark.asyncio
    async def test_workspace_removed_when_body_raises(self, config: Config, tmp_path: Path) -> None:
        manager = WorktreeManager(config)
        path = tmp_path / "ws"
        calls: List[tuple] = []

        async def fake_run(program, args, **kwargs):
            calls.append(tuple(args))
            if args[:2] == ("worktree", "add"):
                path.mkdir()
            if args[0] == "symbolic-ref":
                return _ok("refs/remotes/origin/main\n")
            return _ok()

        with patch("airgit.worktree.run_command", new=fake_run):
            with pytest.raises(RuntimeError):
                async with manager.workspace(tmp_path, path, "airgit/issue-1-1"):
                    raise RuntimeError("agent exploded")

        assert ("worktree", "remove", "--force", str(path)) in calls
        assert ("branch", "-D", "airgit/issue-1-1") in calls

    @pytest.mark.asyncio
    async def test_commit_nothing_to_commit(self, config: Config) -> None:
        manager = WorktreeManager(config)
        error = CommandError(["git", "commit"], 1, "On branch x\nnothing to commit, working tree clean")
        with patch("airgit.worktree.run_command", new=AsyncMock(side_effect=error)):
            assert await manager.commit(Path("/wt"), "msg") is False

    @pytest.mark.asyncio
    async def test_commit_other_failure(self, config: Config) -> None:
        manager = WorktreeManager(config)
        error = CommandError(["git", "commit"], 128, "Please tell me who you are")
        with patch("airgit.worktree.run_command", new=AsyncMock(side_effect=error)):
            with pytest.raises(CommitError):
                await manager.commit(Path("/wt"), "msg")

    @pytest.mark.asyncio
    async def test_push_failure(self, config: Config) -> None:
        manager = WorktreeManager(config)
        error = CommandError(["git", "push"], 1, "rejected")
        with patch("airgit.worktree.run_command", new=AsyncMock(side_effect=error)):
            with pytest.raises(PushError, match="Failed to push"):
                await manager.push(Path("/wt"), "b")

    @pytest.mark.asyncio
    async def test_has_staged_changes_exit_codes(self, config: Config) -> None:
        manager = WorktreeManager(config)
        with patch("airgit.worktree.run_command", new=AsyncMock(return_value=_ok(returncode=1))):
            assert await manager.has_staged_changes(Path("/wt")) is True
        with patch("airgit.worktree.run_command", new=AsyncMock(return_value=_ok(returncode=0))):
            assert await manager.has_staged_changes(Path("/wt")) is False
        with patch("airgit.worktree.run_command", new=AsyncMock(return_value=_ok(returncode=128))):
            with pytest.raises(CommitError):
                await manager.has_staged_changes(Path("/wt"))

    @pytest.mark.asyncio
    async def test_has_upstream_diff_when_git_missing(self, config: Config) -> None:
        manager = WorktreeManager(config)
        error = CommandNotFound(["git"], "not found (git)")
        with patch("airgit.worktree.run_command", new=AsyncMock(side_effect=error)):
            assert await manager.has_upstream_diff(Path("/wt"), "b") is True

    @pytest.mark.asyncio
    async def test_commits_ahead_counts_rev_list(self, config: Config) -> None:
        manager = WorktreeManager(config)
        with patch("airgit.worktree.run_command", new=AsyncMock(return_value=_ok("2\n"))) as mock_run:
            assert await manager.commits_ahead(Path("/wt"), "origin/feature") == 2
        assert mock_run.call_args[0][1] == ("rev-list", "--count", "origin/feature..HEAD")

    @pytest.mark.asyncio
    async def test_commits_ahead_failure(self, config: Config) -> None:
        manager = WorktreeManager(config)
        error = CommandError(["git", "rev-list"], 128, "unknown revision")
        with patch("airgit.worktree.run_command", new=AsyncMock(side_effect=error)):
            with pytest.raises(CommitError, match="origin/feature"):
                await manager.commits_ahead(Path("/wt"), "origin/feature")

    @pytest.mark.asyncio
    async def test_failed_fast_forward_is_logged(self, config: Config, tmp_path: Path, caplog) -> None:
        manager = WorktreeManager(config)

        async def fake_run(program, args, **kwargs):
            if args[:2] == ("worktree", "list"):
                return _ok(f"worktree {tmp_path / 'repo'}\nbranch refs/heads/main\n")
            if args[0] == "merge":
                return _ok("fatal: Not possible to fast-forward, aborting.", returncode=128)
            return _ok()

        with patch("airgit.worktree.run_command", new=fake_run):
            await manager.create_worktree_for_existing_branch(
                tmp_path / "repo", tmp_path / "new", "feature"
            )

        warnings = [r for r in caplog.records if r.levelname == "WARNING" and r.name == "airgit.worktree"]
        assert len(warnings) == 1
        assert "fast-forwarded to origin/feature" in warnings[0].getMessage()

    def test_ensure_base_dir_failure(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("")
        manager = WorktreeManager(Config(worktrees_dir=blocker / "sub"))
        with pytest.raises(SetupError, match="Failed to create worktree directory"):
            manager.ensure_base_dir()


@requires_git
class TestWorktreeManagerWithGit:
    """End-to-end against a real git repository and a local bare origin."""

    @pytest.mark.asyncio
    async def test_new_branch_workspace_commit_and_push(self, config: Config, git_repo: Path) -> None:
        manager = WorktreeManager(config)
        manager.ensure_base_dir()
        path = config.get_worktree_path("issue-1-1")
        branch = "airgit/issue-1-1"
        steps: List[str] = []

        async with manager.workspace(git_repo, path, branch, on_step=steps.append) as ws:
            assert ws.base_branch == "main"
            assert (path / "README.md").exists()

            (path / "fix.txt").write_text("fixed\n")
            await manager.stage_all(path)
            assert await manager.has_staged_changes(path) is True
            assert await manager.commit(path, "Fix #1: demo") is True
            await manager.push(path, branch)

        assert steps == ["Fetching origin", "Resolving default branch", "Creating worktree from main"]
        assert not path.exists()
        assert branch not in _git(git_repo, "branch", "--list", branch)
        assert f"refs/heads/{branch}" in _git(git_repo, "ls-remote", "origin")

    @pytest.mark.asyncio
    async def test_nothing_to_commit(self, config: Config, git_repo: Path) -> None:
        manager = WorktreeManager(config)
        path = config.get_worktree_path("issue-2-1")

        async with manager.workspace(git_repo, path, "airgit/issue-2-1"):
            await manager.stage_all(path)
            assert await manager.has_staged_changes(path) is False
            assert await manager.commit(path, "empty") is False

    @pytest.mark.asyncio
    async def test_commits_ahead_sees_commits_made_in_worktree(self, config: Config, git_repo: Path) -> None:
        manager = WorktreeManager(config)
        path = config.get_worktree_path("issue-5-1")

        async with manager.workspace(git_repo, path, "airgit/issue-5-1") as ws:
            assert ws.start_commit == _git(git_repo, "rev-parse", "origin/main").strip()
            assert await manager.commits_ahead(path, ws.start_commit) == 0

            (path / "fix.txt").write_text("fixed\n")
            _git(path, "add", "fix.txt")
            _git(path, "commit", "-m", "agent commit")

            await manager.stage_all(path)
            assert await manager.has_staged_changes(path) is False
            assert await manager.commits_ahead(path, ws.start_commit) == 1

    @pytest.mark.asyncio
    async def test_existing_branch_evicts_previous_holder(self, config: Config, git_repo: Path) -> None:
        _git(git_repo, "checkout", "-b", "feature")
        (git_repo / "feature.txt").write_text("feature\n")
        _git(git_repo, "add", "feature.txt")
        _git(git_repo, "commit", "-m", "feature")
        _git(git_repo, "push", "-u", "origin", "feature")
        _git(git_repo, "checkout", "main")

        stale = config.worktrees_dir / "review-3-old"
        config.worktrees_dir.mkdir(parents=True)
        _git(git_repo, "worktree", "add", str(stale), "feature")

        manager = WorktreeManager(config)
        path = config.get_worktree_path("review-3-new")
        async with manager.workspace(git_repo, path, "feature", existing_branch=True) as ws:
            assert not stale.exists()
            assert (ws.path / "feature.txt").exists()
            assert await manager.has_upstream_diff(ws.path, "feature") is False

            (ws.path / "feature.txt").unlink()
            assert await manager.has_upstream_diff(ws.path, "feature") is True

        assert not path.exists()
        # The PR branch itself survives
        assert "feature" in _git(git_repo, "branch", "--list", "feature")

    @pytest.mark.asyncio
    async def test_resolve_main_repo_from_linked_worktree(self, config: Config, git_repo: Path) -> None:
        linked = config.worktrees_dir / "linked"
        config.worktrees_dir.mkdir(parents=True)
        _git(git_repo, "worktree", "add", "-b", "linked", str(linked))

        assert resolve_main_repo(linked).resolve() == git_repo.resolve()
