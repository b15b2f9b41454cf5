"""A compile job as tracked by the scheduler."""

from __future__ import annotations

import enum
from typing import Any


class JobState(enum.Enum):
    """Life cycle of a job inside the scheduler."""

    PENDING = 0
    WAITING_FOR_CS = 1
    COMPILING = 2


class Job:
    """One compile request from a submitting daemon.

    Creating a job counts it against its submitter's submitted jobs;
    :meth:`release` takes it back off once the job is gone.
    """

    def __init__(self, job_id: int, submitter: Any) -> None:
        self._id = job_id
        self.local_client_id = 0
        self.state = JobState.PENDING
        self.server: Any = None  # the server the job is built on
        self.submitter = submitter  # the server that submitted the job
        self.environments: list[tuple[str, str]] = []
        self.start_time = 0  # local to the compile server
        self.start_on_scheduler = 0  # local to the scheduler
        self.done_time = 0
        self.target_platform = ""
        self.file_name = ""
        self.master_job_for: list[Job] = []
        self.arg_flags = 0
        self.language = ""
        self.preferred_host = ""
        self.minimal_host_version = 0
        self.required_features = 0
        self.niceness = 0
        self._released = False
        submitter.submitted_jobs_count += 1

    @property
    def id(self) -> int:
        return self._id

    def release(self) -> None:
        """Drop the job from its submitter's count; later calls do nothing."""
        if self._released:
            return
        self._released = True
        self.submitter.submitted_jobs_count -= 1

    def append_environment(self, env: tuple[str, str]) -> None:
        """Add a (platform, environment) pair the job can run in."""
        self.environments.append(tuple(env))

    def clear_environments(self) -> None:
        self.environments.clear()

    def add_dependent(self, job: Job) -> None:
        """Record a job that was requested together with this one."""
        self.master_job_for.append(job)

    def __repr__(self) -> str:
        return f"Job(id={self._id}, state={self.state.name}, file={self.file_name!r})"