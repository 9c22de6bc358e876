"""Identifier generation for agent workspaces.

This module is the single source of truth for how job keys become
directory names and branch names. Every generated name embeds the job key
(so stale workspaces can be found by prefix) and a suffix that is unique
within the process, even when many jobs are triggered in the same
millisecond.
"""

import itertools
import re
import threading
import time

_counter = itertools.count()
_counter_lock = threading.Lock()


def parse_issue_number(s: str) -> int:
    """Parse an issue or PR number from user input.

    Args:
        s: User-provided number, e.g. "42" or "#42"

    Returns:
        Positive integer

    Raises:
        ValueError: If input is not a positive integer
    """
    if s is None or not str(s).strip():
        raise ValueError(f"Invalid issue number: {s!r}")
    text = str(s).strip().lstrip("#")
    if not text.isdigit() or int(text) < 1:
        raise ValueError(f"Invalid issue number: {s!r}")
    return int(text)


def sanitize_key(value: object) -> str:
    """Reduce a job key to a lowercase token safe for paths and ref names."""
    token = re.sub(r"[^a-z0-9]+", "-", str(value).lower()).strip("-")
    return token or "job"


def unique_suffix() -> str:
    """Millisecond timestamp plus a process-wide sequence number.

    The counter keeps names distinct when two calls land in the same
    millisecond; the timestamp keeps them distinct across restarts.
    """
    with _counter_lock:
        seq = next(_counter)
    return f"{int(time.time() * 1000)}-{seq}"


def workspace_prefix(kind: str, key: object) -> str:
    """Prefix shared by every workspace created for ``kind``/``key``."""
    return f"{sanitize_key(kind)}-{sanitize_key(key)}-"


def workspace_name(kind: str, key: object) -> str:
    """Directory name for a new workspace, e.g. ``issue-42-1718000000000-3``."""
    return f"{workspace_prefix(kind, key)}{unique_suffix()}"


def branch_name(prefix: str, kind: str, key: object) -> str:
    """Branch name for a new agent branch, e.g. ``airgit/issue-42-1718000000000-4``."""
    return f"{prefix}/{workspace_name(kind, key)}"
