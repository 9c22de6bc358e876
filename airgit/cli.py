"""AirGit command line: start the agent server."""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from airgit import __version__
from airgit.config import Config, load_config

console = Console()
log = logging.getLogger("airgit.cli")


def setup_logging(level: str) -> None:
    """Route all airgit loggers through rich at the given level."""
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def apply_cli_overrides(
    config: Config,
    repo_path: Optional[Path] = None,
    listen_addr: Optional[str] = None,
    listen_port: Optional[int] = None,
    tls_cert: Optional[Path] = None,
    tls_key: Optional[Path] = None,
) -> Config:
    """Flags win over file and environment settings."""
    update = {
        "repo_path": repo_path,
        "listen_addr": listen_addr,
        "listen_port": listen_port,
        "tls_cert": tls_cert,
        "tls_key": tls_key,
    }
    return config.model_copy(update={k: v for k, v in update.items() if v is not None})


def print_banner(config: Config) -> None:
    scheme = "https" if config.tls_enabled else "http"
    console.print(f"[bold green]AirGit {__version__}[/bold green]")
    console.print(f"[dim]Repository:[/dim] {config.repo_path}")
    console.print(f"[dim]Worktrees:[/dim]  {config.worktrees_dir}")
    console.print(f"[dim]Agent:[/dim]      {config.agent.command} {' '.join(config.agent.args)}")
    console.print(f"\nListening on {scheme}://{config.listen_addr}:{config.listen_port}")


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "-v", "--version", prog_name="airgit")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Path to .airgit.yaml (default: search upward from the current directory)")
@click.option("--repo-path", type=click.Path(path_type=Path), default=None,
              help="Repository the agent works on (env: AIRGIT_REPO_PATH)")
@click.option("--listen-addr", default=None, help="Address to bind to (env: AIRGIT_LISTEN_ADDR)")
@click.option("--listen-port", "--port", "-p", "listen_port", type=int, default=None,
              help="Port to bind to (env: AIRGIT_LISTEN_PORT)")
@click.option("--tls-cert", type=click.Path(path_type=Path), default=None,
              help="TLS certificate file (env: AIRGIT_TLS_CERT)")
@click.option("--tls-key", type=click.Path(path_type=Path), default=None,
              help="TLS private key file (env: AIRGIT_TLS_KEY)")
def main(
    config_path: Optional[Path],
    repo_path: Optional[Path],
    listen_addr: Optional[str],
    listen_port: Optional[int],
    tls_cert: Optional[Path],
    tls_key: Optional[Path],
) -> None:
    """Start the AirGit agent server.

    Issues posted to /api/agent/process are implemented by the coding agent
    in a fresh git worktree and opened as pull requests.
    """
    try:
        config = load_config(config_path)
        config = apply_cli_overrides(config, repo_path, listen_addr, listen_port, tls_cert, tls_key)
    except (OSError, ValidationError, ValueError) as e:
        console.print(f"[red]Invalid configuration: {escape(str(e))}[/red]")
        sys.exit(1)

    if bool(config.tls_cert) != bool(config.tls_key):
        console.print("[yellow]Both --tls-cert and --tls-key are required for TLS; serving plain HTTP[/yellow]")

    setup_logging(config.log_level)
    log.debug("Configuration: %s", config)
    print_banner(config)

    import uvicorn

    from airgit.web.app import create_app

    ssl_options = {}
    if config.tls_enabled:
        ssl_options = {"ssl_certfile": str(config.tls_cert), "ssl_keyfile": str(config.tls_key)}

    # Single worker: job state lives in process memory.
    uvicorn.run(
        create_app(config),
        host=config.listen_addr,
        port=config.listen_port,
        loop="asyncio",
        log_config=None,
        **ssl_options,
    )


if __name__ == "__main__":
    main()
