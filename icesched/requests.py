"""Pending job requests, grouped by submitter and ordered by priority."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator


@dataclass(eq=False)
class JobRequestsGroup:
    """Pending jobs of one submitter that share the same niceness.

    Niceness follows unix nice values: 0 is the highest priority and 20 the
    lowest.
    """

    submitter: Any
    niceness: int
    jobs: list[Any] = field(default_factory=list)

    def remove_job(self, job: Any) -> bool:
        """Remove ``job`` from the group; tell whether it was there."""
        if job.niceness != self.niceness:
            raise ValueError(
                f"job {job.id} has niceness {job.niceness}, group has {self.niceness}"
            )
        for index, queued in enumerate(self.jobs):
            if queued is job:
                del self.jobs[index]
                return True
        return False


@dataclass(frozen=True, eq=False)
class JobRequestPosition:
    """A place in the request queue: one job inside one group."""

    group: JobRequestsGroup
    job: Any


def _index_of(items: list[Any], item: Any) -> int:
    for index, candidate in enumerate(items):
        if candidate is item:
            return index
    return -1


class JobRequestQueue:
    """All pending job requests, higher priority groups first.

    Within one niceness level groups are served round-robin: after a job is
    taken from a group, the group moves behind the others of its level.
    """

    def __init__(self) -> None:
        self._groups: list[JobRequestsGroup] = []

    def __iter__(self) -> Iterator[JobRequestsGroup]:
        return iter(list(self._groups))

    def __bool__(self) -> bool:
        return bool(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def enqueue(self, job: Any) -> None:
        """Queue ``job`` in the group of its submitter and niceness."""
        for index, group in enumerate(self._groups):
            if group.submitter is job.submitter and group.niceness == job.niceness:
                group.jobs.append(job)
                return
            if group.niceness > job.niceness:
                self._groups.insert(
                    index, JobRequestsGroup(job.submitter, job.niceness, [job])
                )
                return
        self._groups.append(JobRequestsGroup(job.submitter, job.niceness, [job]))

    def enqueue_group(self, group: JobRequestsGroup) -> None:
        """Put ``group`` behind all groups of the same or higher priority."""
        for index, queued in enumerate(self._groups):
            if queued.niceness > group.niceness:
                self._groups.insert(index, group)
                return
        self._groups.append(group)

    def first(self) -> JobRequestPosition | None:
        """Position of the first pending job, or None if nothing is queued."""
        if not self._groups:
            return None
        group = self._groups[0]
        if not group.jobs:
            raise RuntimeError("empty group in the request queue")
        return JobRequestPosition(group, group.jobs[0])

    def next(self, position: JobRequestPosition) -> JobRequestPosition | None:
        """Position after ``position``, or None at the end of the queue."""
        group = position.group
        job_index = _index_of(group.jobs, position.job)
        if job_index < 0:
            raise ValueError(f"job {position.job.id} is not in its group")
        if job_index + 1 < len(group.jobs):
            return JobRequestPosition(group, group.jobs[job_index + 1])
        group_index = _index_of(self._groups, group)
        if group_index < 0:
            raise ValueError("group is not in the request queue")
        if group_index + 1 < len(self._groups):
            following = self._groups[group_index + 1]
            if not following.jobs:
                raise RuntimeError("empty group in the request queue")
            return JobRequestPosition(following, following.jobs[0])
        return None

    def remove(self, position: JobRequestPosition) -> None:
        """Take the job at ``position`` out and rotate its group backwards."""
        group = position.group
        group_index = _index_of(self._groups, group)
        if group_index < 0:
            raise ValueError("group is not in the request queue")
        if _index_of(group.jobs, position.job) < 0:
            raise ValueError(f"job {position.job.id} is not in its group")
        del self._groups[group_index]
        group.remove_job(position.job)
        if group.jobs:
            self.enqueue_group(group)

    def remove_submitter(self, submitter: Any) -> list[Any]:
        """Drop every group of ``submitter``; return the jobs they held."""
        removed: list[Any] = []
        kept: list[JobRequestsGroup] = []
        for group in self._groups:
            if group.submitter is submitter:
                removed.extend(group.jobs)
            else:
                kept.append(group)
        self._groups = kept
        return removed

    def discard_job(self, submitter: Any, job: Any) -> None:
        """Remove ``job`` from the groups of ``submitter``.

        Scanning stops at the first group that is left empty, which is then
        dropped from the queue.
        """
        for index, group in enumerate(self._groups):
            if group.submitter is not submitter:
                continue
            job_index = _index_of(group.jobs, job)
            if job_index >= 0:
                del group.jobs[job_index]
            if not group.jobs:
                del self._groups[index]
                break