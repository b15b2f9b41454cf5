"""A compile server (compile daemon) as seen by the scheduler."""

from __future__ import annotations

import enum
import errno
import itertools
import logging
import socket
import time
from collections import deque
from typing import Any, ClassVar, Iterator

from icesched.jobstat import JobStat

log = logging.getLogger(__name__)

# Target platforms whose code can also run on the listed host platforms.
_PLATFORM_MAP: dict[str, tuple[str, ...]] = {
    "i386": ("i486", "i586", "i686", "x86_64"),
    "i486": ("i586", "i686", "x86_64"),
    "i586": ("i686", "x86_64"),
    "i686": ("x86_64",),
    "ppc": ("ppc64",),
    "s390": ("s390x",),
}

# Seconds to wait before retrying after consecutive failed incoming connections.
_RETRY_DELAYS = (2, 4, 8, 16, 32, 64, 128, 256, 512, 1024, 2048, 4096)
# After a successful incoming connection, check back after this many seconds.
_CHECK_BACK_TIME = 60
# How long an incoming connection attempt may take.
_MAX_CONNECT_TIMEOUT = 5


def platforms_compatible(host_platform: str, target: str) -> bool:
    """Tell whether code for ``target`` can run on ``host_platform``."""
    if target == host_platform:
        return True
    return host_platform in _PLATFORM_MAP.get(target, ())


def _now(now: float | None) -> int:
    return int(time.time()) if now is None else now


class ServerState(enum.Enum):
    CONNECTED = 0
    LOGGEDIN = 1


class ServerType(enum.Enum):
    UNKNOWN = 0
    DAEMON = 1
    MONITOR = 2
    LINE = 3


class CompileServer:
    """One connected peer: a compile daemon, a monitor or a control line.

    ``name`` is the peer's network address; ``node_name`` is the name the
    daemon reports at login.
    """

    _host_ids: ClassVar[Iterator[int]] = itertools.count(1)

    def __init__(self, name: str) -> None:
        self.name = name
        self.protocol = 0
        self.maximum_remote_protocol = 0
        self.last_talk = 0

        self.remote_port = 0  # port on which the daemon takes compile requests
        self.host_id = 0
        self.node_name = ""
        self.busy_installing = 0  # time installation started, 0 if idle
        self.host_platform = ""
        self.load = 1000  # load * 1000
        self.max_jobs = 0
        self.no_remote = False
        self.job_list: list[Any] = []
        self.state = ServerState.CONNECTED
        self.type = ServerType.UNKNOWN
        self.chroot_possible = False
        self.supported_features = 0
        self.client_count = 0  # client connections the daemon has
        self.submitted_jobs_count = 0
        self.last_picked_id = 0
        self.compiler_versions: list[tuple[str, str]] = []
        self.last_compiled_jobs: deque[JobStat] = deque()
        self.last_requested_jobs: deque[JobStat] = deque()
        self.cum_compiled = JobStat()
        self.cum_requested = JobStat()
        self._client_map: dict[int, int] = {}
        self.blacklist: dict[CompileServer, list[tuple[str, str]]] = {}

        self.in_socket: socket.socket | None = None
        self._in_conn_attempt = 0
        self.next_conn_time = 0
        self.last_conn_start_time = 0
        self.accepting_in_connection = True

    def __repr__(self) -> str:
        return f"CompileServer(name={self.name!r}, node_name={self.node_name!r})"

    def pick_new_id(self) -> None:
        """Give the server a fresh host id; it must not have one yet."""
        if self.host_id:
            raise RuntimeError(f"server {self.name} already has host id {self.host_id}")
        self.host_id = next(CompileServer._host_ids)

    def check_remote(self, job: Any) -> bool:
        """A server that refuses remote jobs may only build its own."""
        return job.submitter is self or not self.no_remote

    def platforms_compatible(self, target: str) -> bool:
        return platforms_compatible(self.host_platform, target)

    def _blacklisted(self, job: Any, environment: tuple[str, str]) -> bool:
        return tuple(environment) in job.submitter.envs_blacklisted_for(self)

    def can_install(self, job: Any, ignore_installing: bool = False) -> str:
        """Return the platform of the first job environment installable here, or ""."""
        if not ignore_installing and self.busy_installing:
            return ""
        for env in job.environments:
            if self.platforms_compatible(env[0]) and not self._blacklisted(job, env):
                return env[0]
        return ""

    def max_preload_count(self) -> int:
        """Number of jobs that may be sent beyond the free compile slots."""
        return self.max_jobs

    def is_eligible_ever(self, job: Any) -> bool:
        """Tell whether this server could build ``job`` at some point."""
        return (
            self.max_jobs > 0
            and (self.chroot_possible or job.submitter is self)
            and job.minimal_host_version <= self.maximum_remote_protocol
            and self.features_supported(job.required_features)
            and self.accepting_in_connection
            and bool(self.can_install(job, True))
            and self.check_remote(job)
        )

    def is_eligible_now(self, job: Any) -> bool:
        """Tell whether this server can take ``job`` right now."""
        if not self.is_eligible_ever(job):
            return False
        count = len(self.job_list)
        jobs_okay = count < self.max_jobs
        if self.max_jobs > 0 and count < self.max_jobs + self.max_preload_count():
            jobs_okay = True  # allow a job for preloading
        return jobs_okay and self.load < 1000 and bool(self.can_install(job, False))

    def matches(self, name: str) -> bool:
        return self.node_name == name or self.name == name

    def features_supported(self, features: int) -> bool:
        return (self.supported_features & features) == features

    def append_job(self, job: Any) -> None:
        self.last_picked_id = job.id
        self.job_list.append(job)

    def remove_job(self, job: Any) -> None:
        self.job_list[:] = [j for j in self.job_list if j is not job]

    def append_compiled_job(self, stat: JobStat) -> None:
        self.last_compiled_jobs.append(stat)

    def pop_compiled_job(self) -> JobStat:
        return self.last_compiled_jobs.popleft()

    def append_requested_job(self, stat: JobStat) -> None:
        self.last_requested_jobs.append(stat)

    def pop_requested_job(self) -> JobStat:
        return self.last_requested_jobs.popleft()

    def get_client_job_id(self, local_id: int) -> int:
        """Map a daemon-local job id to the scheduler's id (0 if unknown)."""
        return self._client_map.setdefault(local_id, 0)

    def insert_client_job_id(self, local_id: int, new_id: int) -> None:
        self._client_map[local_id] = new_id

    def erase_client_job_id(self, local_id: int) -> None:
        self._client_map.pop(local_id, None)

    def envs_blacklisted_for(self, cs: CompileServer) -> list[tuple[str, str]]:
        """Environments this submitter must not have built on ``cs``."""
        return list(self.blacklist.get(cs, ()))

    def blacklist_server(self, cs: CompileServer, env: tuple[str, str]) -> None:
        self.blacklist.setdefault(cs, []).append(tuple(env))

    def unblacklist_server(self, cs: CompileServer) -> None:
        self.blacklist.pop(cs, None)

    @property
    def in_fd(self) -> int:
        """File descriptor of the connectivity probe, or -1."""
        return self.in_socket.fileno() if self.in_socket is not None else -1

    def start_in_connection_test(self, now: float | None = None) -> None:
        """Start a non-blocking connect to the daemon's compile port."""
        now = _now(now)
        if self.no_remote or self.connection_in_progress() or self.next_conn_time > now:
            return

        self.in_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.in_socket.setblocking(False)
        try:
            address = socket.gethostbyname(self.name)
        except OSError:
            self.update_in_connectivity(False, now)
        else:
            status = self.in_socket.connect_ex((address, self.remote_port))
            if status == 0:
                self.update_in_connectivity(self.is_connected(now), now)
            elif status not in (errno.EINPROGRESS, errno.EAGAIN, errno.EWOULDBLOCK):
                self.update_in_connectivity(False, now)
        self.last_conn_start_time = now

    def _close_in_socket(self) -> None:
        if self.in_socket is not None:
            self.in_socket.close()
            self.in_socket = None

    def update_in_connectivity(self, accepting: bool, now: float | None = None) -> None:
        """Record the outcome of a connectivity probe and schedule the next one."""
        now = _now(now)
        if accepting:
            if not self.accepting_in_connection:
                self.accepting_in_connection = True
                self._in_conn_attempt = 0
                log.debug(
                    "Client (%s %s:%s) is accepting incoming connections.",
                    self.node_name, self.name, self.remote_port,
                )
            self.next_conn_time = now + _CHECK_BACK_TIME
        else:
            if self.accepting_in_connection:
                self.accepting_in_connection = False
                log.debug(
                    "Client (%s %s:%s) connected but is not able to accept "
                    "incoming connections.",
                    self.node_name, self.name, self.remote_port,
                )
            self.next_conn_time = now + _RETRY_DELAYS[self._in_conn_attempt]
            if self._in_conn_attempt < len(_RETRY_DELAYS) - 1:
                self._in_conn_attempt += 1
            log.debug(
                "%s failed to accept an incoming connection on %s:%s "
                "attempting again in %s seconds",
                self.node_name, self.name, self.remote_port, self.next_conn_time - now,
            )
        self._close_in_socket()

    def is_connected(self, now: float | None = None) -> bool:
        """Tell whether the probe connected within its time limit."""
        if self.connection_timeout(now) == 0 or self.in_socket is None:
            return False
        try:
            error = self.in_socket.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        except OSError:
            return False
        if error != 0:
            return False
        try:
            self.in_socket.getpeername()
        except OSError:
            return False
        return True

    def connection_timeout(self, now: float | None = None) -> int:
        """Seconds left for the current probe to connect."""
        elapsed = _now(now) - self.last_conn_start_time
        return _MAX_CONNECT_TIMEOUT - elapsed if elapsed < _MAX_CONNECT_TIMEOUT else 0

    def connection_in_progress(self) -> bool:
        return self.in_socket is not None

    def next_timeout(self, now: float | None = None) -> int:
        """Seconds until the next probe event, or -1 if no probes are made."""
        if self.no_remote:
            return -1
        if self.in_socket is not None:
            return self.connection_timeout(now)
        return max(self.next_conn_time - _now(now), 0)