"""Shared dependencies for web routes."""

import os
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from airgit.config import Config
from airgit.runner import JobRunner
from airgit.state import AgentStatusStore
from airgit.worktree import WorktreeManager

# auto_error=False so requests without credentials reach verify_credentials
security = HTTPBasic(auto_error=False)


def auth_enabled() -> bool:
    return os.getenv("AIRGIT_WEB_AUTH", "false").lower() == "true"


def verify_credentials(
    credentials: Optional[HTTPBasicCredentials] = Depends(security),
) -> Optional[str]:
    """Verify HTTP Basic Auth credentials.

    Only enforced when AIRGIT_WEB_AUTH=true.
    """
    if not auth_enabled():
        return None

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Basic"},
        )

    expected_user = os.getenv("AIRGIT_WEB_USERNAME", "admin")
    expected_password = os.getenv("AIRGIT_WEB_PASSWORD", "changeme")
    username_correct = secrets.compare_digest(
        credentials.username.encode("utf-8"), expected_user.encode("utf-8")
    )
    password_correct = secrets.compare_digest(
        credentials.password.encode("utf-8"), expected_password.encode("utf-8")
    )

    if not (username_correct and password_correct):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )

    return str(credentials.username)


def get_current_user(
    username: Optional[str] = Depends(verify_credentials),
) -> Optional[str]:
    """Current authenticated user (or None if auth disabled)."""
    return username


def get_config(request: Request) -> Config:
    return request.app.state.config


def get_store(request: Request) -> AgentStatusStore:
    return request.app.state.store


def get_runner(request: Request) -> JobRunner:
    return request.app.state.runner


def get_worktrees(request: Request) -> WorktreeManager:
    return request.app.state.worktrees
