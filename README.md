# icesched

`icesched` is the scheduling core of a distributed compile cluster. Compile
daemons log in to the scheduler. Clients ask it where each compile job
should run. The scheduler answers with the best host it knows of. It picks
that host from:

- the measured speed of each daemon
- its reported load
- its free job slots
- the compiler environments it has installed or can install

You feed the package events as they arrive and act on the decisions it
returns. That makes it easy to embed in your own server loop and easy to
test.

## What is inside

- `icesched.jobstat.JobStat` holds the statistics of one finished compile
  job: output size and real, user and system time in milliseconds. Records
  combine field by field with `+` and `-`, and divide by an integer with
  `//`, which rounds toward zero. A combined record has `job_id` 0.

- `icesched.job.Job` is one compile request. Its `state` is a `JobState`:
  `PENDING`, `WAITING_FOR_CS` or `COMPILING`. It keeps the environments it
  can use and the server it was sent to.
  - Creating a job increments its submitter's `submitted_jobs_count`, and
    `Job.release()` decrements it once.
  - `Job.add_dependent()` records jobs that were requested together with it.

- `icesched.compileserver.CompileServer` is one connected peer: a daemon, a
  monitor or a control line. `ServerState` and `ServerType` say what it is.
  - It answers eligibility questions through `is_eligible_ever()`,
    `is_eligible_now()`, `can_install()`, `platforms_compatible()` and
    `check_remote()`.
  - It keeps blacklisted environments per server and a map from the
    daemon's local job ids to scheduler job ids.
  - It runs a back-off timer that probes, with a non-blocking TCP connect,
    whether the daemon accepts incoming connections. See
    `start_in_connection_test()`, `update_in_connectivity()`,
    `is_connected()` and `next_timeout()`.

- `icesched.compileserver.platforms_compatible(host_platform, target)`
  tells whether code for `target` runs on `host_platform`. For example,
  `i686` code runs on `x86_64`, and `ppc` code runs on `ppc64`.

- `icesched.requests.JobRequestQueue` holds pending requests. They sit in
  `JobRequestsGroup`s by submitter and niceness (0 to 20), with higher
  priority first. Within one priority level, a group moves behind the
  others after a job is taken from it, so submitters are served
  round-robin.

- `icesched.stats` keeps the rolling statistics:
  - `StatsHistory` holds the statistics of recent jobs.
  - `server_speed(cs, job=None)` derives a speed rating for a server.
    Given a job, the rating also accounts for the load that job would add.
  - `ArgFlag` marks the debug and optimisation flags that change output
    size.
  - `JobDoneReport` is what a finished job reports.

- `icesched.scheduler.Scheduler` ties these together. It has these
  handlers:

  | Method | Handles |
  | --- | --- |
  | `handle_login()` | a daemon login, described by `LoginInfo` |
  | `handle_relogin()` | a daemon's environments after an install |
  | `handle_cs_request()` | a compile request, described by `CompileRequest` |
  | `handle_job_begin()`, `handle_job_done()` | job begin and done reports |
  | `handle_ping()`, `handle_stats()` | pings and load statistics |
  | `handle_blacklist_host_env()` | a request to blacklist an environment |
  | `handle_local_job()`, `handle_local_job_done()` | jobs a daemon builds locally |
  | `remove_server()` | a connection going away |
  | `prune_servers()` | silent connections |

  `empty_queue()` assigns the first pending job and returns an
  `Assignment`. It returns `None` when the job has to wait or nothing is
  pending. `Assignment.local` means the submitter is told to build the job
  itself. Inconsistent bookkeeping raises `SchedulerError`.

- `icesched.control` implements the line-based control interface:
  - `greeting()` returns the banner.
  - `dump_job()` describes a job on one line.
  - `split_words()` splits a command line into words.
  - `execute_command()` runs one command and returns the reply lines.

  The commands are `listcs`, `listblocks`, `listjobs`, `removecs`,
  `blockcs`, `unblockcs`, `internals`, `help` and `quit`/`exit`.
  `internals` reports a server's `internal_status` attribute if your code
  has set it, and otherwise "not reporting".

## Example

```python
from icesched.compileserver import CompileServer, platforms_compatible
from icesched.scheduler import CompileRequest, LoginInfo, Scheduler
from icesched.stats import JobDoneReport

assert platforms_compatible("x86_64", "i686")
assert not platforms_compatible("i686", "x86_64")

sched = Scheduler()
daemon = CompileServer("10.0.0.5")
env = ("x86_64", "gcc-12.tar.gz")
sched.handle_login(daemon, LoginInfo(
    port=10245, envs=[env], max_jobs=4, node_name="build1",
    host_platform="x86_64", chroot_possible=True,
))
sched.handle_stats(daemon, load=0, client_count=0)

(job,) = sched.handle_cs_request(
    daemon, CompileRequest(versions=[env], target="x86_64", filename="main.cpp")
)
assignment = sched.empty_queue()
assert assignment.server is daemon

sched.handle_job_begin(daemon, job.id, start_time=0, client_count=1)
sched.handle_job_done(daemon, JobDoneReport(
    job_id=job.id, out_uncompressed=20000, user_msec=400,
))
```

## A typical loop

1. Create one `Scheduler`.
2. Pass each incoming login or message to the matching `handle_*` method.
3. Call `empty_queue()` until it returns `None`, and tell each submitter
   about its assignment.
4. Call `prune_servers(now)`. It returns how many seconds you may sleep
   before the next check. Send a ping to each server it has added to
   `pending_pings`, then empty that list.

## What it does not do

The package makes scheduling decisions only. It has no command to start a
scheduler. It does not listen for or accept daemon, monitor or control
connections, and it does not encode or decode their messages. It does not
answer or send network broadcasts. It does not push statistics to
monitors. The one network operation it performs is the connectivity probe
in `CompileServer.start_in_connection_test()`. Everything else, including
sending the replies of `execute_command()`, is up to the code that embeds
it.

## Requirements

Python 3.10 or newer. The package uses only the standard library.