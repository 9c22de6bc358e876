"""Pytest configuration and fixtures for airgit tests."""

import subprocess
from pathlib import Path

import pytest
from click.testing import CliRunner

from airgit.config import AgentConfig, Config
from airgit.state import AgentStatusStore


@pytest.fixture(autouse=True)
def clean_airgit_environment(monkeypatch):
    """Keep the developer's AIRGIT_* settings out of every test."""
    for name in (
        "AIRGIT_REPO_PATH",
        "AIRGIT_LISTEN_ADDR",
        "AIRGIT_LISTEN_PORT",
        "AIRGIT_TLS_CERT",
        "AIRGIT_TLS_KEY",
        "AIRGIT_WORKTREES_DIR",
        "AIRGIT_LOG_LEVEL",
        "AIRGIT_AGENT_COMMAND",
        "AIRGIT_AGENT_TIMEOUT",
        "AIRGIT_WEB_AUTH",
        "AIRGIT_WEB_USERNAME",
        "AIRGIT_WEB_PASSWORD",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config pointing at throwaway directories."""
    repo = tmp_path / "repo"
    repo.mkdir(exist_ok=True)
    return Config(
        repo_path=repo,
        worktrees_dir=tmp_path / "worktrees",
        agent=AgentConfig(command="fake-agent", args=[], timeout=5),
    )


@pytest.fixture
def store() -> AgentStatusStore:
    return AgentStatusStore()


@pytest.fixture
def cli_runner():
    """Create a Click test runner."""
    return CliRunner()


def run_git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    ).stdout


@pytest.fixture
def git_identity(monkeypatch):
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "AirGit Test")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "airgit@example.com")


@pytest.fixture
def git_repo(tmp_path: Path, git_identity) -> Path:
    """A repository with a bare origin, on branch main, origin/HEAD set."""
    origin = tmp_path / "origin.git"
    run_git(tmp_path, "init", "--bare", "-b", "main", str(origin))
    repo = tmp_path / "repo"
    repo.mkdir(exist_ok=True)
    run_git(repo, "init", "-b", "main")
    (repo / "README.md").write_text("# demo\n")
    run_git(repo, "add", "README.md")
    run_git(repo, "commit", "-m", "initial")
    run_git(repo, "remote", "add", "origin", str(origin))
    run_git(repo, "push", "-u", "origin", "main")
    run_git(repo, "remote", "set-head", "origin", "main")
    return repo
