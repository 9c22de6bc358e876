"""Configuration management for AirGit."""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

CONFIG_FILE_NAME = ".airgit.yaml"

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "AIRGIT_REPO_PATH": "repo_path",
    "AIRGIT_LISTEN_ADDR": "listen_addr",
    "AIRGIT_LISTEN_PORT": "listen_port",
    "AIRGIT_TLS_CERT": "tls_cert",
    "AIRGIT_TLS_KEY": "tls_key",
    "AIRGIT_WORKTREES_DIR": "worktrees_dir",
    "AIRGIT_LOG_LEVEL": "log_level",
    "AIRGIT_AGENT_COMMAND": "agent.command",
    "AIRGIT_AGENT_TIMEOUT": "agent.timeout",
}


class AgentConfig(BaseModel):
    """Configuration for the external coding agent."""

    command: str = "copilot"
    args: List[str] = Field(default_factory=lambda: ["--allow-all-tools"])
    timeout: float = 2 * 60 * 60  # seconds


class Config(BaseModel):
    """AirGit configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    repo_path: Path = Field(default_factory=Path.home)
    listen_addr: str = "0.0.0.0"
    listen_port: int = 8080
    tls_cert: Optional[Path] = None
    tls_key: Optional[Path] = None
    worktrees_dir: Path = Path("/tmp/airgit")
    branch_prefix: str = "airgit"
    git_command: str = "git"
    gh_command: str = "gh"
    log_level: str = "INFO"
    agent: AgentConfig = Field(default_factory=AgentConfig)

    @property
    def tls_enabled(self) -> bool:
        """TLS is only used when both certificate and key are configured."""
        return bool(self.tls_cert and self.tls_key)

    def get_worktree_path(self, name: str) -> Path:
        """Get the worktree path for a workspace name.

        Args:
            name: Workspace directory name (see ``airgit.ids.workspace_name``)

        Returns:
            Absolute path under the worktrees base directory
        """
        return self.worktrees_dir / name


def find_config_file(start_path: Path) -> Optional[Path]:
    """Find .airgit.yaml file by walking up directory tree.

    Args:
        start_path: Directory to start searching from

    Returns:
        Path to config file, or None if not found
    """
    current = start_path.resolve()

    while True:
        config_file = current / CONFIG_FILE_NAME
        if config_file.exists():
            return config_file

        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def _set_dotted(data: Dict[str, Any], key: str, value: Any) -> None:
    parts = key.split(".")
    for part in parts[:-1]:
        data = data.setdefault(part, {})
    data[parts[-1]] = value


def apply_env_overrides(data: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Overlay AIRGIT_* environment variables onto raw config data.

    Empty variables are ignored so an unset-but-exported value keeps the default.
    """
    if environ is None:
        environ = dict(os.environ)

    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            _set_dotted(data, key, value)

    return data


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> Config:
    """Load configuration from .airgit.yaml and the environment.

    Args:
        path: Config file, or directory to start looking for one (default: current directory)
        environ: Environment mapping (default: ``os.environ``)

    Returns:
        Loaded configuration (defaults when no file is found)
    """
    if path is None:
        path = Path.cwd()

    data: Dict[str, Any] = {}
    config_file = path if path.is_file() else find_config_file(path)
    if config_file is not None:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f) or {}

    return Config(**apply_env_overrides(data, environ))
