"""The scheduler's plain-text control interface."""

from __future__ import annotations

import time

from icesched.job import Job, JobState
from icesched.scheduler import Scheduler
from icesched.stats import server_speed

_STATE_NAMES = {
    JobState.PENDING: "PEND",
    JobState.WAITING_FOR_CS: "WAIT",
    JobState.COMPILING: "COMP",
}

_HELP_TEXT = "listcs\nlistblocks\nlistjobs\nremovecs\nblockcs\nunblockcs\ninternals\nhelp\nquit"
_DONE = "200 done"
_GOODBYE = "200 Good Bye!"
_SEPARATORS = " \t\n"
# Longest line prefix the job dump keeps before the file name.
_MAX_PREFIX = 999


def dump_job(job: Job) -> str:
    """One-line description of a job: id, state, submitter, server and file."""
    state = _STATE_NAMES.get(job.state, "Huh?")
    submitter = job.submitter.node_name if job.submitter is not None else "<>"
    server = job.server.node_name if job.server is not None else "<unknown>"
    prefix = f"{job.id} {state} sub:{submitter} on:{server} "
    return prefix[:_MAX_PREFIX] + job.file_name


def split_words(text: str, separators: str) -> list[str]:
    """Split ``text`` at any of the ``separators`` characters, dropping empty words."""
    words: list[str] = []
    current: list[str] = []
    for char in text:
        if char in separators:
            if current:
                words.append("".join(current))
                current = []
        else:
            current.append(char)
    if current:
        words.append("".join(current))
    return words


def _now(now: int | None) -> int:
    return int(time.time()) if now is None else now


def greeting(scheduler: Scheduler, now: int | None, version: str) -> str:
    """The banner sent to a control connection when it opens."""
    uptime = _now(now) - scheduler.start_time
    return (
        f"200-ICECC {version}: {uptime}s uptime, {len(scheduler.css)} hosts, "
        f"{len(scheduler.jobs)} jobs in queue ({scheduler.new_job_id} total).\n"
        "200 Use 'help' for help and 'quit' to quit.\n"
    )


def _list_servers(scheduler: Scheduler, now: int) -> list[str]:
    lines: list[str] = []
    for cs in scheduler.css:
        line = (
            f" {cs.node_name} ({cs.name}:{cs.remote_port}) [{cs.host_platform}] "
            f"speed={server_speed(cs):.2f} jobs={len(cs.job_list)}/{cs.max_jobs} load={cs.load}"
        )
        if cs.busy_installing:
            line += f" busy installing since {now - cs.busy_installing} s"
        lines.append(line)
        lines.extend("   " + dump_job(job) for job in cs.job_list)
    return lines


def _remove_hosts(scheduler: Scheduler, hosts: list[str], block: bool) -> list[str]:
    lines: list[str] = []
    for host in hosts:
        if block:
            scheduler.block_css.append(host)
        server = next((cs for cs in scheduler.css if cs.matches(host)), None)
        if server is not None:
            lines.append(f"removing host {host}")
            scheduler.remove_server(server)
    return lines


def _unblock_hosts(scheduler: Scheduler, hosts: list[str]) -> None:
    for host in hosts:
        if host in scheduler.block_css:
            scheduler.block_css.remove(host)


def _internals(scheduler: Scheduler, hosts: list[str]) -> list[str]:
    lines: list[str] = []
    for cs in scheduler.css:
        if hosts and not any(cs.matches(host) for host in hosts):
            continue
        # The network layer stores the daemon's last status report here.
        status = getattr(cs, "internal_status", None)
        lines.append(status if status else f"{cs.node_name} not reporting\n")
    return lines


def execute_command(scheduler: Scheduler, text: str, now: int | None = None) -> list[str]:
    """Run one control command and return the text lines to send back.

    Every command ends with "200 done", except "quit" and "exit", which
    answer with a good-bye line after which the connection is to be closed.
    """
    now = _now(now)
    words = split_words(text, _SEPARATORS)
    command = words[0].lower() if words else ""
    args = words[1:]

    if command == "listcs":
        lines = _list_servers(scheduler, now)
    elif command == "listblocks":
        lines = ["   " + host for host in scheduler.block_css]
    elif command == "listjobs":
        lines = [" " + dump_job(scheduler.jobs[job_id]) for job_id in sorted(scheduler.jobs)]
    elif command in ("quit", "exit"):
        return [_GOODBYE]
    elif command in ("removecs", "blockcs"):
        if not args:
            lines = ["401 Sure. But which hosts?"]
        else:
            lines = _remove_hosts(scheduler, args, block=command == "blockcs")
    elif command == "unblockcs":
        if not args:
            lines = ["401 Sure. But which host?"]
        else:
            _unblock_hosts(scheduler, args)
            lines = []
    elif command == "internals":
        lines = _internals(scheduler, args)
    elif command == "help":
        lines = [_HELP_TEXT]
    else:
        lines = [f"Invalid command '{text}'"]

    lines.append(_DONE)
    return lines