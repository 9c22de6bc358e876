"""Exception hierarchy for AirGit.

Process-level failures (``CommandError`` and friends) come from
``airgit.process``. Pipeline failures carry a ``category`` so the job record
can explain which phase of the run broke.
"""

from typing import Optional, Sequence


class AirGitError(Exception):
    """Base class for all AirGit errors."""


class CommandError(AirGitError):
    """An external command exited with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, output: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        detail = output.strip()
        message = f"{argv[0]} exited with status {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CommandTimeout(AirGitError):
    """An external command ran past its deadline and was killed."""

    def __init__(self, argv: Sequence[str], timeout: float, output: str = "") -> None:
        self.argv = list(argv)
        self.timeout = timeout
        self.output = output
        super().__init__(f"{argv[0]} timed out after {timeout:g}s")


class CommandNotFound(AirGitError):
    """An external command could not be spawned (missing binary, permissions)."""

    def __init__(self, argv: Sequence[str], reason: str) -> None:
        self.argv = list(argv)
        self.reason = reason
        super().__init__(f"Could not run {argv[0]}: {reason}")


class PipelineError(AirGitError):
    """A pipeline step failed; the message is shown to the polling client."""

    category = "pipeline"

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        self.cause = cause
        super().__init__(message)


class SetupError(PipelineError):
    category = "setup"


class AuthenticationError(PipelineError):
    category = "authentication"


class AgentError(PipelineError):
    category = "agent"


class AgentTimeoutError(AgentError):
    category = "agent-timeout"


class CommitError(PipelineError):
    category = "commit"


class PushError(PipelineError):
    category = "push"


class PullRequestError(PipelineError):
    category = "pull-request"
