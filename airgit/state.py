"""In-memory status records for agent jobs.

One ``AgentJob`` per issue number. A new trigger for the same issue replaces
the previous record; records are never deleted and do not survive a restart.
The store is created by the web app lifespan and handed to the pipelines,
which only ever touch the record for their own key.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from airgit.ids import unique_suffix
from airgit.state_machine import TERMINAL_STATES, JobState, validate_job_transition

log = logging.getLogger("airgit.state")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AgentJob(BaseModel):
    """Status of one agent run, keyed by issue number.

    Serialized with the camelCase names the web UI polls for.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    issue_number: int = Field(alias="issueNumber")
    job_id: str = Field(default_factory=unique_suffix, alias="jobId")
    kind: str = "issue"
    state: JobState = Field(default=JobState.PENDING, alias="status")
    message: str = ""
    started_at: datetime = Field(default_factory=utc_now, alias="startTime")
    ended_at: Optional[datetime] = Field(default=None, alias="endTime")
    pr_number: Optional[int] = Field(default=None, alias="prNumber")
    pr_url: Optional[str] = Field(default=None, alias="prURL")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_api(self) -> Dict[str, Any]:
        """JSON-ready dict using the wire names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AgentStatusStore:
    """Lock-guarded mapping of issue number to AgentJob.

    Every accessor copies records in and out so callers never hold a
    reference that another task is mutating.
    """

    def __init__(self) -> None:
        self._jobs: Dict[int, AgentJob] = {}
        self._lock = threading.Lock()

    def set(self, key: int, job: AgentJob) -> None:
        with self._lock:
            self._jobs[key] = job.model_copy()

    def get(self, key: int) -> Tuple[Optional[AgentJob], bool]:
        with self._lock:
            job = self._jobs.get(key)
            if job is None:
                return None, False
            return job.model_copy(), True

    def create(self, key: int, kind: str = "issue", message: str = "Queued") -> AgentJob:
        """Record a fresh pending job, replacing any previous record for key."""
        job = AgentJob(issue_number=key, kind=kind, state=JobState.PENDING, message=message)
        self.set(key, job)
        log.info("Job #%s (%s) queued", key, kind)
        return job

    def _current(self, key: int, job_id: Optional[str]) -> Optional[AgentJob]:
        # Caller holds the lock. A job_id mismatch means a newer trigger
        # replaced the record and the caller's run is superseded.
        job = self._jobs.get(key)
        if job is None or (job_id is not None and job.job_id != job_id):
            return None
        return job

    def update_message(self, key: int, message: str, job_id: Optional[str] = None) -> None:
        """Replace the progress message of a job.

        No-op when key is unknown or the record belongs to another run.
        """
        with self._lock:
            job = self._current(key, job_id)
            if job is None:
                return
            self._jobs[key] = job.model_copy(update={"message": message})

    def transition(
        self,
        key: int,
        state: JobState,
        message: str,
        job_id: Optional[str] = None,
        **fields: Any,
    ) -> Optional[AgentJob]:
        """Move a job to a new state.

        ``ended_at`` is stamped when the new state is terminal.

        Returns:
            The updated record, or None when job_id no longer owns the key

        Raises:
            KeyError: If no job exists for key
            InvalidTransitionError: If the state change is not allowed
        """
        with self._lock:
            if key not in self._jobs:
                raise KeyError(key)
            job = self._current(key, job_id)
            if job is None:
                log.info("Job #%s run %s superseded, not recording %s", key, job_id, state.value)
                return None
            validate_job_transition(job.state.value, state.value)
            update: Dict[str, Any] = {"state": state, "message": message, **fields}
            if state in TERMINAL_STATES:
                update["ended_at"] = utc_now()
            job = job.model_copy(update=update)
            self._jobs[key] = job

        log.info("Job #%s -> %s: %s", key, state.value, message)
        return job.model_copy()

    def snapshot(self) -> List[AgentJob]:
        """All records, ordered by issue number."""
        with self._lock:
            return [self._jobs[k].model_copy() for k in sorted(self._jobs)]
