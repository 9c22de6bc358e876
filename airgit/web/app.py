"""AirGit agent server: FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from airgit import __version__
from airgit.config import Config, load_config
from airgit.runner import JobRunner
from airgit.state import AgentStatusStore
from airgit.web.routes.agent import router as agent_router
from airgit.worktree import WorktreeManager

logger = logging.getLogger("airgit.web")


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Build the app. Config is loaded from file/env at startup when not given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        cfg = config if config is not None else load_config()
        app.state.config = cfg
        app.state.store = AgentStatusStore()
        app.state.runner = JobRunner()
        app.state.worktrees = WorktreeManager(cfg)
        logger.info("AirGit %s serving %s", __version__, cfg.repo_path)

        yield

        await app.state.runner.shutdown()
        logger.info("AirGit stopped")

    app = FastAPI(title="AirGit", version=__version__, lifespan=lifespan)
    app.include_router(agent_router)

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "healthy", "service": "airgit", "version": __version__}

    return app


app = create_app()
