import pytest

from icesched.compileserver import CompileServer
from icesched.job import Job
from icesched.jobstat import JobStat
from icesched.stats import (
    ArgFlag,
    JobDoneReport,
    StatsHistory,
    server_speed,
)


def make_job(server, submitter, job_id=1, flags=0):
    job = Job(job_id, submitter)
    job.server = server
    job.arg_flags = flags
    return job


def report(out=10000, user=100, exitcode=0):
    return JobDoneReport(
        job_id=1,
        exitcode=exitcode,
        out_uncompressed=out,
        real_msec=user * 2,
        user_msec=user,
        sys_msec=user // 2,
    )


def server_with_history(count, output=1000, user=100):
    cs = CompileServer("10.0.0.1")
    cs.max_jobs = 4
    for _ in range(count):
        cs.append_compiled_job(JobStat(output_size=output, compile_time_user=user))
    cs.cum_compiled = JobStat(output_size=output * count, compile_time_user=user * count)
    return cs


def test_speed_without_history_is_zero():
    cs = CompileServer("host")
    assert server_speed(cs) == 0.0


def test_speed_with_zero_user_time_is_zero():
    cs = CompileServer("host")
    cs.append_compiled_job(JobStat(output_size=5000))
    cs.cum_compiled = JobStat(output_size=5000)
    assert server_speed(cs) == 0.0


def test_speed_with_trusted_history_is_output_per_user_time():
    cs = server_with_history(7, output=1000, user=100)
    assert server_speed(cs) == pytest.approx(10.0)


def test_pessimism_shrinks_with_history():
    speeds = [server_speed(server_with_history(n)) for n in range(1, 8)]
    assert speeds == sorted(speeds, reverse=True)
    assert speeds[0] > speeds[-1]
    assert server_speed(server_with_history(8)) == pytest.approx(speeds[-1])


def test_remote_load_reduces_speed():
    cs = server_with_history(7)
    submitter = CompileServer("10.0.0.2")
    job = make_job(cs, submitter)
    cs.load = 0
    idle = server_speed(cs, job)
    cs.load = 500
    busy = server_speed(cs, job)
    assert busy < idle
    assert idle == pytest.approx(server_speed(cs))


def test_assigned_jobs_throttle_speed():
    cs = server_with_history(7)
    cs.load = 0
    submitter = CompileServer("10.0.0.2")
    job = make_job(cs, submitter)
    before = server_speed(cs, job)
    cs.job_list.append(make_job(cs, submitter, job_id=2))
    after = server_speed(cs, job)
    assert after < before


def test_local_submitter_load_ordering():
    cs = server_with_history(7)
    job = make_job(cs, cs)

    def speed_for(clients):
        cs.client_count = clients
        return server_speed(cs, job)

    overloaded = speed_for(cs.max_jobs + 1)
    full = speed_for(cs.max_jobs)
    neutral = speed_for(cs.max_jobs - 1)
    light = speed_for(1)
    assert overloaded < full < neutral < light


def test_local_submitter_falls_back_to_submitted_count():
    cs = server_with_history(7)
    job = make_job(cs, cs)
    for n in range(2, 2 + cs.max_jobs + 1):
        make_job(cs, cs, job_id=n)
    cs.client_count = 0
    fallback = server_speed(cs, job)
    cs.client_count = cs.submitted_jobs_count
    assert fallback == pytest.approx(server_speed(cs, job))


@pytest.mark.parametrize("rep", [report(out=4095), report(exitcode=1)])
def test_small_or_failed_jobs_ignored(rep):
    history = StatsHistory()
    server = CompileServer("s")
    submitter = CompileServer("c")
    job = make_job(server, submitter)
    history.add_job_stats(job, rep)
    assert len(history) == 0
    assert len(server.last_compiled_jobs) == 0
    assert len(submitter.last_requested_jobs) == 0


def test_records_job_everywhere():
    history = StatsHistory()
    server = CompileServer("s")
    submitter = CompileServer("c")
    job = make_job(server, submitter, job_id=42)
    rep = report(out=8000, user=50)
    history.add_job_stats(job, rep)
    assert len(history) == 1
    stat = server.last_compiled_jobs[0]
    assert stat.job_id == 42
    assert stat.output_size == rep.out_uncompressed
    assert stat.compile_time_user == rep.user_msec
    assert stat.compile_time_real == rep.real_msec
    assert stat.compile_time_sys == rep.sys_msec
    assert submitter.last_requested_jobs[0] == stat
    assert server.cum_compiled.output_size == rep.out_uncompressed
    assert server.cum_compiled.job_id == 0
    assert submitter.cum_requested.output_size == rep.out_uncompressed
    assert history.cum_job_stats.compile_time_user == rep.user_msec


def test_debug_flag_shrinks_and_optimisation_grows_output():
    history = StatsHistory()
    server = CompileServer("s")
    submitter = CompileServer("c")
    debug = make_job(server, submitter, job_id=1, flags=ArgFlag.G)
    optimised = make_job(server, submitter, job_id=2, flags=ArgFlag.O2)
    history.add_job_stats(debug, report(out=36000))
    history.add_job_stats(optimised, report(out=35000))
    first, second = server.last_compiled_jobs
    assert first.output_size == 10000
    assert second.output_size == 58000


def test_g3_shrinks_less_than_nothing_but_still_shrinks():
    history = StatsHistory()
    server = CompileServer("s")
    job = make_job(server, CompileServer("c"), flags=ArgFlag.G3)
    history.add_job_stats(job, report(out=45000))
    assert server.last_compiled_jobs[0].output_size < 45000


def test_server_history_is_capped():
    history = StatsHistory()
    server = CompileServer("s")
    submitter = CompileServer("c")
    for n in range(1, 202):
        history.add_job_stats(make_job(server, submitter, job_id=n), report())
    assert len(server.last_compiled_jobs) == 200
    assert len(submitter.last_requested_jobs) == 200
    assert server.last_compiled_jobs[0].job_id == 2
    assert server.cum_compiled.output_size == sum(
        s.output_size for s in server.last_compiled_jobs
    )
    assert submitter.cum_requested.compile_time_user == sum(
        s.compile_time_user for s in submitter.last_requested_jobs
    )


def test_global_history_is_capped():
    history = StatsHistory()
    server = CompileServer("s")
    submitter = CompileServer("c")
    for n in range(1, 2002):
        history.add_job_stats(make_job(server, submitter, job_id=n), report())
    assert len(history) == 2000
    assert history.all_job_stats[0].job_id == 2
    assert history.cum_job_stats.output_size == sum(
        s.output_size for s in history.all_job_stats
    )


def _trained_server(history):
    server = CompileServer("s")
    submitter = CompileServer("c")
    for n in range(1, 8):
        history.add_job_stats(make_job(server, submitter, job_id=n), report(10000, 100))
    return server, submitter


def test_fast_spike_is_clamped():
    history = StatsHistory()
    server, submitter = _trained_server(history)
    current = server_speed(server)
    history.add_job_stats(make_job(server, submitter, job_id=100), report(100000, 100))
    stored = server.last_compiled_jobs[-1]
    assert stored.output_size < 100000
    assert stored.output_size / stored.compile_time_user == pytest.approx(
        current * 1.2, rel=1e-3
    )


def test_slow_spike_is_raised():
    history = StatsHistory()
    server, submitter = _trained_server(history)
    current = server_speed(server)
    history.add_job_stats(make_job(server, submitter, job_id=100), report(5000, 1000))
    stored = server.last_compiled_jobs[-1]
    assert stored.output_size > 5000
    assert stored.output_size / stored.compile_time_user == pytest.approx(
        current / 1.2, rel=1e-3
    )


def test_consistent_job_is_not_adjusted():
    history = StatsHistory()
    server, submitter = _trained_server(history)
    history.add_job_stats(make_job(server, submitter, job_id=100), report(10000, 100))
    assert server.last_compiled_jobs[-1].output_size == 10000