"""Core scheduling logic: accepting job requests and assigning them to servers."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field

from icesched.compileserver import CompileServer, ServerState, ServerType
from icesched.job import Job, JobState
from icesched.requests import JobRequestQueue
from icesched.stats import JobDoneReport, StatsHistory, server_speed

log = logging.getLogger(__name__)

# Seconds a daemon has to answer a ping.
MAX_SCHEDULER_PONG = 3
# Seconds of silence after which a daemon is pinged (or dropped).
MAX_SCHEDULER_PING = 12 * MAX_SCHEDULER_PONG
# Seconds a daemon may spend installing an environment.
MAX_BUSY_INSTALLING = 120

# Daemons from this protocol version on use TCP keepalive instead of pings.
_PROTOCOL_KEEPALIVE = 27
# Daemons from this protocol version on send pings separately from stats.
_PROTOCOL_SEPARATE_PING = 25
# Submitters from this protocol version on understand "build it yourself".
_PROTOCOL_NO_CS = 37

# How many recent statistics are compared when matching job ids.
_MATCH_WINDOW = 16

_LANGUAGE_NAMES = {
    "c": "C",
    "c++": "C++",
    "objc": "ObjC",
    "objc++": "ObjC++",
    "custom": "<custom>",
}


class SchedulerError(Exception):
    """The scheduler's bookkeeping is in an inconsistent state."""


@dataclass
class CompileRequest:
    """A daemon's request for compile servers for ``count`` jobs."""

    count: int = 1
    versions: list[tuple[str, str]] = field(default_factory=list)
    target: str = ""
    arg_flags: int = 0
    language: str = "c++"
    filename: str = ""
    client_id: int = 0
    preferred_host: str = ""
    minimal_host_version: int = 0
    required_features: int = 0
    niceness: int = 0
    client_count: int = 0


@dataclass
class LoginInfo:
    """What a daemon tells the scheduler when it logs in."""

    port: int = 0
    envs: list[tuple[str, str]] = field(default_factory=list)
    max_jobs: int = 0
    no_remote: bool = False
    node_name: str = ""
    host_platform: str = ""
    chroot_possible: bool = False
    supported_features: int = 0


@dataclass
class Assignment:
    """A job handed to a compile server.

    ``local`` means the submitter is told to build the job itself;
    ``got_env`` tells whether the server already has the environment.
    """

    job: Job
    server: CompileServer
    host_platform: str
    got_env: bool
    matched_job_id: int
    local: bool


def envs_match(cs: CompileServer, job: Job) -> str:
    """Return the host platform of a job environment installed on ``cs``, or ""."""
    if job.submitter is cs:
        return cs.host_platform  # it will compile itself
    for platform, name in cs.compiler_versions:
        if platform != job.target_platform:
            continue
        for job_platform, job_name in job.environments:
            if name == job_name and cs.platforms_compatible(job_platform):
                return job_platform
    return ""


def _now() -> int:
    return int(time.time())


class Scheduler:
    """Keeps track of connected servers and pending jobs and pairs them up."""

    def __init__(self) -> None:
        self.css: list[CompileServer] = []
        self.monitors: list[CompileServer] = []
        self.controls: list[CompileServer] = []
        self.block_css: list[str] = []
        self.new_job_id = 0
        self.jobs: dict[int, Job] = {}
        self.job_requests = JobRequestQueue()
        self.stats = StatsHistory()
        self.pending_pings: list[CompileServer] = []
        self.start_time = _now()
        self.rng = random.Random()

    def create_job(self, submitter: CompileServer) -> Job:
        self.new_job_id += 1
        if self.new_job_id in self.jobs:
            raise SchedulerError(f"job id {self.new_job_id} is already in use")
        job = Job(self.new_job_id, submitter)
        self.jobs[job.id] = job
        return job

    def handle_cs_request(self, submitter: CompileServer, request: CompileRequest) -> list[Job]:
        """Create and queue the jobs of a request; the first is master of the rest."""
        submitter.client_count = request.client_count
        created: list[Job] = []
        for _ in range(request.count):
            job = self.create_job(submitter)
            job.environments = [tuple(env) for env in request.versions]
            job.target_platform = request.target
            job.arg_flags = request.arg_flags
            job.language = _LANGUAGE_NAMES.get(request.language.lower(), "???")
            job.file_name = request.filename
            job.local_client_id = request.client_id
            job.preferred_host = request.preferred_host
            job.minimal_host_version = request.minimal_host_version
            job.required_features = request.required_features
            job.niceness = max(0, min(20, request.niceness))
            self.job_requests.enqueue(job)
            log.info(
                "NEW %s client=%s versions=[%s] %s %s %s",
                job.id, submitter.node_name,
                ", ".join(f"{name}({platform})" for platform, name in job.environments),
                request.filename, job.language, job.niceness,
            )
            if created:
                created[0].add_dependent(job)
            created.append(job)
        return created

    def pick_server(self, job: Job) -> CompileServer | None:
        """Choose the best server for ``job`` among those eligible now."""
        if job.preferred_host:
            for cs in self.css:
                if cs.matches(job.preferred_host) and cs.is_eligible_now(job):
                    return cs
            return None

        if not len(self.stats):
            # No statistics yet: pick any usable server at random, so a broken
            # first server does not keep us from ever collecting statistics.
            selected = None
            eligible = 0
            for cs in self.css:
                if cs.is_eligible_now(job):
                    eligible += 1
                    if self.rng.randrange(eligible) == 0:
                        selected = cs
            if selected is not None:
                log.debug("no job stats - returning randomly selected %s", selected.node_name)
            return selected

        best = bestui = bestpre = None
        for cs in self.css:
            if not cs.is_eligible_now(job) or not cs.can_install(job):
                continue
            if not cs.chroot_possible and cs is not job.submitter:
                log.debug("%s can't use chroot", cs.node_name)
                continue
            if not cs.check_remote(job):
                log.debug("%s fails remote job check", cs.node_name)
                continue

            if not cs.last_compiled_jobs and not cs.job_list and cs.max_jobs:
                # Make every server compile once to learn its speed.
                if envs_match(cs, job):
                    best = cs
                else:
                    bestui = cs
                break

            # Now and then use a server not picked for a long time, so its
            # speed rating can follow outside influences.
            since_picked = (job.id - cs.last_picked_id) % 2**32
            if not cs.last_picked_id or since_picked > 20 * len(self.css):
                best = cs
                break

            if envs_match(cs, job):
                if best is None:
                    best = cs
                elif best.last_compiled_jobs and server_speed(best, job) < server_speed(cs, job):
                    if len(cs.job_list) < cs.max_jobs:
                        best = cs
                    else:
                        bestpre = cs
            else:
                if bestui is None:
                    bestui = cs
                elif bestui.last_compiled_jobs and server_speed(bestui, job) < server_speed(cs, job):
                    if len(cs.job_list) < cs.max_jobs:
                        bestui = cs
                    else:
                        bestpre = cs

        return best or bestui or bestpre

    def _matched_job_id(self, submitter: CompileServer, server: CompileServer) -> int:
        matched = 0
        for count, requested in enumerate(submitter.last_requested_jobs, start=1):
            for rcount, compiled in enumerate(server.last_compiled_jobs, start=1):
                if requested.job_id == compiled.job_id:
                    matched = requested.job_id
                if rcount > _MATCH_WINDOW:
                    break
            if matched or count > _MATCH_WINDOW:
                break
        return matched

    def empty_queue(self) -> Assignment | None:
        """Assign the first pending job, or return None if it has to wait.

        Only the first pending job is considered; when no server is found for
        it and some server could take it later, nothing is assigned.
        """
        position = self.job_requests.first()
        if position is None:
            return None
        if not self.css:
            raise SchedulerError("jobs are pending but no compile server is connected")

        job = position.job
        use_cs = self.pick_server(job)
        if use_cs is None:
            submitter = job.submitter
            # Ignore the submitter's load if nobody else fits; obey its slots.
            if (
                len(submitter.job_list) < submitter.max_jobs
                and not job.preferred_host
                and submitter.can_install(job)
            ):
                use_cs = submitter
            else:
                for cs in self.css:
                    if job.preferred_host and not cs.matches(job.preferred_host):
                        continue
                    if cs.is_eligible_ever(job):
                        log.debug("No suitable host found, delaying")
                        return None
                log.info("No suitable host found, assigning submitter")
                use_cs = submitter

        self.job_requests.remove(position)
        job.state = JobState.WAITING_FOR_CS
        job.server = use_cs

        host_platform = envs_match(use_cs, job)
        got_env = bool(host_platform)
        if not got_env:
            host_platform = use_cs.can_install(job)

        assignment = Assignment(
            job=job,
            server=use_cs,
            host_platform=host_platform,
            got_env=got_env,
            matched_job_id=self._matched_job_id(job.submitter, use_cs),
            local=job.submitter.protocol >= _PROTOCOL_NO_CS and use_cs is job.submitter,
        )

        log.debug(
            "put %s in joblist of %s%s", job.id, use_cs.node_name,
            "" if got_env else " (will install now)",
        )
        use_cs.append_job(job)
        if not got_env:
            use_cs.busy_installing = _now()

        if job.master_job_for:
            env = next(
                (name for platform, name in job.environments if platform == use_cs.host_platform),
                "",
            )
            if env:
                for dependent in job.master_job_for:
                    dependent.clear_environments()
                    dependent.append_environment((use_cs.host_platform, env))

        return assignment

    def handle_login(self, cs: CompileServer, login: LoginInfo) -> bool:
        """Register a daemon; False if it is blocked and must be disconnected."""
        cs.type = ServerType.DAEMON
        cs.remote_port = login.port
        cs.compiler_versions = [tuple(env) for env in login.envs]
        cs.max_jobs = login.max_jobs
        cs.no_remote = login.no_remote
        cs.node_name = login.node_name or cs.name
        cs.host_platform = login.host_platform
        cs.chroot_possible = login.chroot_possible
        cs.supported_features = login.supported_features
        cs.pick_new_id()

        if any(cs.matches(blocked) for blocked in self.block_css):
            return False

        log.debug(
            "login %s protocol version: %s [%s]", login.node_name, cs.protocol,
            ", ".join(f"{name}({platform})" for platform, name in login.envs),
        )

        # Other servers with the same address and name must be stale.
        for other in list(self.css):
            if other is not cs and other.name == cs.name and other.node_name == cs.node_name:
                self.remove_server(other)

        self.css.append(cs)
        cs.state = ServerState.LOGGEDIN
        return True

    def handle_relogin(self, cs: CompileServer, envs: list[tuple[str, str]]) -> None:
        """A daemon reports its installed environments after installing one."""
        cs.compiler_versions = [tuple(env) for env in envs]
        cs.busy_installing = 0
        log.debug(
            "RELOGIN %s(%s): [%s]", cs.node_name, cs.host_platform,
            ", ".join(f"{name}({platform})" for platform, name in envs),
        )

    def handle_job_begin(
        self, cs: CompileServer, job_id: int, start_time: int, client_count: int
    ) -> bool:
        job = self.jobs.get(job_id)
        if job is None:
            log.debug("handle_job_begin: no valid job id %s", job_id)
            return False
        if job.server is not cs:
            log.debug("that job isn't handled by %s", cs.name)
            return False
        cs.client_count = client_count
        job.state = JobState.COMPILING
        job.start_time = start_time
        job.start_on_scheduler = _now()
        log.debug(
            "BEGIN: %s client=%s(%s) server=%s(%s)", job_id, job.submitter.node_name,
            job.target_platform, cs.node_name, cs.host_platform,
        )
        return True

    def handle_job_done(self, cs: CompileServer, report: JobDoneReport) -> bool:
        """Finish a job; a sender that is not involved in it is disconnected."""
        job = None
        if report.unknown_client_id:
            # The job was cancelled before its id reached the daemon.
            for candidate in list(self.jobs.values()):
                if (
                    candidate.server is None
                    and candidate.submitter is cs
                    and candidate.local_client_id == report.unknown_client_id
                ):
                    log.debug("STOP (WAITFORCS) FOR %s", candidate.id)
                    job = candidate
                    report.job_id = job.id
                    self.job_requests.discard_job(cs, job)
        else:
            job = self.jobs.get(report.job_id)

        if job is None:
            log.debug("job ID not present %s", report.job_id)
            return False

        if report.from_server and job.server is not cs:
            log.info("the server isn't the same for job %s", report.job_id)
            self.remove_server(cs)
            return False
        if not report.from_server and job.submitter is not cs:
            log.info("the submitter isn't the same for job %s", report.job_id)
            self.remove_server(cs)
            return False

        cs.client_count = report.client_count
        log.debug("END %s status=%s", report.job_id, report.exitcode)

        if job.server is not None:
            job.server.remove_job(job)
            self.stats.add_job_stats(job, report)
        self.jobs.pop(report.job_id, None)
        job.release()
        return True

    def handle_ping(self, cs: CompileServer, now: int | None = None) -> None:
        cs.last_talk = _now() if now is None else now
        if cs.max_jobs < 0:
            cs.max_jobs = -cs.max_jobs

    def handle_stats(self, cs: CompileServer, load: int, client_count: int) -> bool:
        """Record a server's load; False if the server is not a known daemon."""
        if cs.protocol < _PROTOCOL_SEPARATE_PING:
            self.handle_ping(cs)
        if not any(server is cs for server in self.css):
            return False
        cs.load = load
        cs.client_count = client_count
        return True

    def handle_blacklist_host_env(
        self, cs: CompileServer, hostname: str, target: str, environment: str
    ) -> bool:
        for server in self.css:
            if server.name == hostname:
                log.debug(
                    "Blacklisting host %s for environment %s (%s)", hostname, environment, target
                )
                cs.blacklist_server(server, (target, environment))
        return True

    def handle_local_job(self, cs: CompileServer, client_job_id: int) -> int:
        """Give a job the daemon builds locally a scheduler id and return it."""
        self.new_job_id += 1
        cs.insert_client_job_id(client_job_id, self.new_job_id)
        return self.new_job_id

    def handle_local_job_done(self, cs: CompileServer, client_job_id: int) -> int:
        """Forget a local job; return its scheduler id (0 if unknown)."""
        job_id = cs.get_client_job_id(client_job_id)
        cs.erase_client_job_id(client_job_id)
        return job_id

    def remove_server(self, cs: CompileServer) -> list[int]:
        """Forget a connection; return the ids of jobs stopped because of it."""
        stopped: list[int] = []
        if cs.type is ServerType.MONITOR:
            self.monitors = [m for m in self.monitors if m is not cs]
        elif cs.type is ServerType.DAEMON:
            log.info("remove daemon %s", cs.node_name)
            self.css = [server for server in self.css if server is not cs]

            for job in self.job_requests.remove_submitter(cs):
                log.debug("STOP (DAEMON) FOR %s", job.id)
                stopped.append(job.id)
                if job.server is not None:
                    job.server.busy_installing = 0
                self.jobs.pop(job.id, None)
                job.release()

            for job_id, job in list(self.jobs.items()):
                if job.server is not cs and job.submitter is not cs:
                    continue
                log.debug("STOP (DAEMON2) FOR %s", job_id)
                stopped.append(job_id)
                if job.server is not None:
                    if job.server is not cs:
                        job.server.remove_job(job)
                    job.server.busy_installing = 0
                del self.jobs[job_id]
                job.release()

            for server in self.css:
                server.unblacklist_server(cs)
        elif cs.type is ServerType.LINE:
            self.controls = [c for c in self.controls if c is not cs]
        else:
            log.debug("remote end had UNKNOWN type?")
        cs._close_in_socket()
        return stopped

    def prune_servers(self, now: int | None = None) -> int:
        """Drop silent connections and ping quiet daemons.

        Servers due for a ping are added to ``pending_pings``. Returns the
        number of seconds until the next pruning is needed.
        """
        now = _now() if now is None else now
        min_time = MAX_SCHEDULER_PING

        for control in list(self.controls):
            if now - control.last_talk >= MAX_SCHEDULER_PING:
                self.remove_server(control)
                continue
            min_time = min(min_time, MAX_SCHEDULER_PING - now + control.last_talk)

        for cs in list(self.css):
            cs.start_in_connection_test(now)
            timeout = cs.next_timeout(now)
            if timeout != -1:
                min_time = min(min_time, timeout)

            if cs.busy_installing and now - cs.busy_installing >= MAX_BUSY_INSTALLING:
                log.debug("busy installing for a long time - removing %s", cs.node_name)
                self.remove_server(cs)
                continue

            if cs.protocol >= _PROTOCOL_KEEPALIVE:
                continue

            if now - cs.last_talk >= MAX_SCHEDULER_PING:
                if cs.max_jobs >= 0:
                    log.debug("send ping %s", cs.node_name)
                    cs.max_jobs = -cs.max_jobs  # better not give it away
                    self.pending_pings.append(cs)
                    cs.last_talk = now - MAX_SCHEDULER_PING + 2 * MAX_SCHEDULER_PONG
                    min_time = min(min_time, 2 * MAX_SCHEDULER_PONG)
                    continue
                log.debug("removing %s", cs.node_name)
                self.remove_server(cs)
                continue

            min_time = min(min_time, MAX_SCHEDULER_PING - now + cs.last_talk)

        return min_time