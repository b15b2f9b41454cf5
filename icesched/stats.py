"""Compile speed estimates and the history of finished job statistics."""

from __future__ import annotations

import enum
import math
from collections import deque
from dataclasses import dataclass
from typing import Any

from icesched.jobstat import JobStat

# Jobs with less output than this are too small to base timings on.
MIN_OUTPUT_SIZE = 4096
# Statistics kept per server (compiled) and per submitter (requested).
MAX_SERVER_HISTORY = 200
# Statistics kept for the whole cluster.
MAX_GLOBAL_HISTORY = 2000
# Below this many compiled jobs a server's speed is treated pessimistically.
TRUSTED_HISTORY = 7
# One job may move a server's speed by at most this factor.
SMOOTHING_FACTOR = 1.2


class ArgFlag(enum.IntFlag):
    """Compiler options that change the size of the produced code."""

    NONE = 0
    G = 0x1
    G3 = 0x2
    O = 0x4  # noqa: E741
    O2 = 0x8
    OL2 = 0x10


@dataclass
class JobDoneReport:
    """What a daemon or client reports when a job has finished.

    ``unknown_client_id`` is non-zero when the sender did not know the
    scheduler's job id and identifies the job by its local client id instead.
    """

    job_id: int = 0
    exitcode: int = 0
    in_compressed: int = 0
    in_uncompressed: int = 0
    out_compressed: int = 0
    out_uncompressed: int = 0
    real_msec: int = 0
    user_msec: int = 0
    sys_msec: int = 0
    pfaults: int = 0
    client_count: int = 0
    from_server: bool = True
    unknown_client_id: int = 0


def _half_toward_zero(value: int) -> int:
    return int(value / 2)


def server_speed(cs: Any, job: Any = None) -> float:
    """Estimate how much output ``cs`` produces per millisecond of user time.

    With ``job`` given, the estimate also accounts for the load the job would
    add: the server's reported load, its assigned jobs and, when it is the
    job's own submitter, how busy it already is with its own clients.
    """
    cum = cs.cum_compiled
    if not cs.last_compiled_jobs or cum.compile_time_user == 0:
        return 0.0

    speed = cum.output_size / cum.compile_time_user

    if job is not None:
        if job.submitter is cs:
            client_count = cs.client_count
            if client_count == 0:
                # Older daemons do not report their client count.
                client_count = cs.submitted_jobs_count
            if client_count > cs.max_jobs:
                # Building everything locally would overload the submitter.
                speed *= 0.1
            elif client_count == cs.max_jobs:
                speed *= 0.8
            elif client_count <= _half_toward_zero(cs.max_jobs):
                # Few jobs: save the overhead of distributing.
                speed *= 1.1
        else:
            speed *= (1000 - cs.load) / 1000

        # Not all slots are equally fast (SMT, clock ramping).
        if cs.max_jobs:
            speed *= 1.0 - (0.5 * len(cs.job_list) / cs.max_jobs)

    compiled = len(cs.last_compiled_jobs)
    if compiled < TRUSTED_HISTORY:
        # The first jobs a server got are not representative.
        speed *= -0.5 * compiled + 4.5

    return speed


class StatsHistory:
    """Statistics of recently finished jobs across the whole cluster."""

    def __init__(self) -> None:
        self.all_job_stats: deque[JobStat] = deque()
        self.cum_job_stats = JobStat()

    def __len__(self) -> int:
        return len(self.all_job_stats)

    def add_job_stats(self, job: Any, report: JobDoneReport) -> None:
        """Record the statistics of a finished job.

        Failed jobs and jobs with little output are ignored. The output size
        is normalised for debug and optimisation flags, and once the server
        has enough history a single job cannot move its speed too far.
        """
        if report.out_uncompressed < MIN_OUTPUT_SIZE or report.exitcode != 0:
            return

        stat = JobStat(
            output_size=report.out_uncompressed,
            compile_time_real=report.real_msec,
            compile_time_user=report.user_msec,
            compile_time_sys=report.sys_msec,
            job_id=job.id,
        )

        flags = job.arg_flags
        if flags & ArgFlag.G:
            stat.output_size = stat.output_size * 10 // 36
        elif flags & ArgFlag.G3:
            stat.output_size = stat.output_size * 10 // 45

        if flags & (ArgFlag.O | ArgFlag.O2 | ArgFlag.OL2):
            stat.output_size = stat.output_size * 58 // 35

        server = job.server
        if len(server.last_compiled_jobs) >= TRUSTED_HISTORY:
            user = stat.compile_time_user
            if user:
                this_speed = stat.output_size / user
            else:
                this_speed = math.inf if stat.output_size else math.nan
            current = server_speed(server)
            if this_speed / SMOOTHING_FACTOR > current:
                stat.output_size = int(current * SMOOTHING_FACTOR * user)
            elif this_speed * SMOOTHING_FACTOR < current:
                stat.output_size = int(current / SMOOTHING_FACTOR * user)

        server.append_compiled_job(stat)
        server.cum_compiled = server.cum_compiled + stat
        if len(server.last_compiled_jobs) > MAX_SERVER_HISTORY:
            server.cum_compiled = server.cum_compiled - server.last_compiled_jobs[0]
            server.pop_compiled_job()

        submitter = job.submitter
        submitter.append_requested_job(stat)
        submitter.cum_requested = submitter.cum_requested + stat
        if len(submitter.last_requested_jobs) > MAX_SERVER_HISTORY:
            submitter.cum_requested = submitter.cum_requested - submitter.last_requested_jobs[0]
            submitter.pop_requested_job()

        self.all_job_stats.append(stat)
        self.cum_job_stats = self.cum_job_stats + stat
        if len(self.all_job_stats) > MAX_GLOBAL_HISTORY:
            self.cum_job_stats = self.cum_job_stats - self.all_job_stats.popleft()