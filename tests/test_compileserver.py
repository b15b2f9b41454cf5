import select
import socket

import pytest

from icesched.compileserver import (
    CompileServer,
    ServerState,
    ServerType,
    platforms_compatible,
)
from icesched.job import Job
from icesched.jobstat import JobStat


def _server(name="10.0.0.1", platform="x86_64", max_jobs=2, load=0, chroot=True):
    cs = CompileServer(name)
    cs.host_platform = platform
    cs.max_jobs = max_jobs
    cs.load = load
    cs.chroot_possible = chroot
    return cs


def _job(submitter, envs=(("x86_64", "gcc.tar.gz"),), job_id=1):
    job = Job(job_id, submitter)
    for env in envs:
        job.append_environment(env)
    return job


@pytest.mark.parametrize(
    "host, target, expected",
    [
        ("x86_64", "x86_64", True),
        ("x86_64", "i686", True),
        ("x86_64", "i386", True),
        ("i686", "x86_64", False),
        ("ppc64", "ppc", True),
        ("ppc", "ppc64", False),
        ("s390x", "s390", True),
        ("armv7l", "i386", False),
    ],
)
def test_platforms_compatible(host, target, expected):
    assert platforms_compatible(host, target) is expected
    cs = _server(platform=host)
    assert cs.platforms_compatible(target) is expected


def test_defaults():
    cs = CompileServer("host")
    assert cs.state is ServerState.CONNECTED
    assert cs.type is ServerType.UNKNOWN
    assert cs.load == 1000
    assert cs.in_fd == -1
    assert cs.accepting_in_connection is True


def test_pick_new_id_unique_and_once():
    a, b = CompileServer("a"), CompileServer("b")
    a.pick_new_id()
    b.pick_new_id()
    assert a.host_id > 0 and b.host_id > a.host_id
    with pytest.raises(RuntimeError):
        a.pick_new_id()


def test_check_remote():
    cs = _server()
    other = _server("10.0.0.2")
    cs.no_remote = True
    assert cs.check_remote(_job(cs)) is True
    assert cs.check_remote(_job(other)) is False
    cs.no_remote = False
    assert cs.check_remote(_job(other)) is True


def test_can_install_picks_first_compatible():
    cs = _server(platform="x86_64")
    submitter = _server("10.0.0.2")
    job = _job(submitter, envs=[("armv7l", "arm.tar"), ("i686", "x86.tar"), ("x86_64", "x64.tar")])
    assert cs.can_install(job) == "i686"


def test_can_install_busy_installing():
    cs = _server()
    job = _job(_server("10.0.0.2"))
    cs.busy_installing = 100
    assert cs.can_install(job) == ""
    assert cs.can_install(job, True) == "x86_64"


def test_can_install_respects_blacklist():
    cs = _server()
    submitter = _server("10.0.0.2")
    job = _job(submitter, envs=[("x86_64", "a.tar"), ("i686", "b.tar")])
    submitter.blacklist_server(cs, ("x86_64", "a.tar"))
    assert cs.can_install(job) == "i686"
    submitter.blacklist_server(cs, ("i686", "b.tar"))
    assert cs.can_install(job) == ""


def test_features_supported():
    cs = _server()
    cs.supported_features = 0b101
    assert cs.features_supported(0b001)
    assert cs.features_supported(0b101)
    assert not cs.features_supported(0b010)
    assert cs.features_supported(0)


def test_is_eligible_ever_conditions():
    cs = _server()
    submitter = _server("10.0.0.2")
    job = _job(submitter)
    assert cs.is_eligible_ever(job)

    cs.chroot_possible = False
    assert not cs.is_eligible_ever(job)
    assert cs.is_eligible_ever(_job(cs))
    cs.chroot_possible = True

    cs.accepting_in_connection = False
    assert not cs.is_eligible_ever(job)
    cs.accepting_in_connection = True

    job.minimal_host_version = cs.maximum_remote_protocol + 1
    assert not cs.is_eligible_ever(job)
    job.minimal_host_version = 0

    job.required_features = 1
    assert not cs.is_eligible_ever(job)
    cs.supported_features = 1
    assert cs.is_eligible_ever(job)

    cs.max_jobs = 0
    assert not cs.is_eligible_ever(job)


def test_is_eligible_now_load_and_slots():
    cs = _server(max_jobs=2, load=1000)
    submitter = _server("10.0.0.2")
    job = _job(submitter)
    assert not cs.is_eligible_now(job)
    cs.load = 0
    assert cs.is_eligible_now(job)
    for i in range(2 * cs.max_jobs):
        cs.append_job(_job(submitter, job_id=10 + i))
    assert len(cs.job_list) == cs.max_jobs + cs.max_preload_count()
    assert not cs.is_eligible_now(job)
    cs.remove_job(cs.job_list[0])
    assert cs.is_eligible_now(job)


def test_matches_node_name_or_address():
    cs = CompileServer("10.0.0.7")
    cs.node_name = "builder"
    assert cs.matches("builder")
    assert cs.matches("10.0.0.7")
    assert not cs.matches("other")


def test_job_list_and_last_picked():
    cs = _server()
    job = _job(cs, job_id=42)
    cs.append_job(job)
    assert cs.last_picked_id == 42
    assert cs.job_list == [job]
    cs.remove_job(job)
    assert cs.job_list == []
    assert cs.last_picked_id == 42


def test_stat_queues_fifo():
    cs = _server()
    first, second = JobStat(output_size=1, job_id=1), JobStat(output_size=2, job_id=2)
    cs.append_compiled_job(first)
    cs.append_compiled_job(second)
    assert cs.pop_compiled_job() == first
    assert list(cs.last_compiled_jobs) == [second]
    cs.append_requested_job(second)
    assert cs.pop_requested_job() == second
    with pytest.raises(IndexError):
        cs.pop_requested_job()


def test_client_job_id_map():
    cs = _server()
    assert cs.get_client_job_id(5) == 0
    cs.insert_client_job_id(5, 77)
    assert cs.get_client_job_id(5) == 77
    cs.erase_client_job_id(5)
    assert cs.get_client_job_id(5) == 0
    cs.erase_client_job_id(99)
    assert cs.get_client_job_id(99) == 0


def test_blacklist_add_and_remove():
    submitter, target = _server("a"), _server("b")
    assert submitter.envs_blacklisted_for(target) == []
    submitter.blacklist_server(target, ("x86_64", "gcc"))
    assert submitter.envs_blacklisted_for(target) == [("x86_64", "gcc")]
    submitter.unblacklist_server(target)
    assert submitter.envs_blacklisted_for(target) == []


def test_connection_timeout_window():
    cs = _server()
    cs.last_conn_start_time = 1000
    assert cs.connection_timeout(1000) == 5
    assert cs.connection_timeout(1005) == 0
    assert cs.connection_timeout(2000) == 0


def test_next_timeout_without_probe():
    cs = _server()
    cs.no_remote = True
    assert cs.next_timeout(100) == -1
    cs.no_remote = False
    cs.next_conn_time = 50
    assert cs.next_timeout(100) == 0


def test_failed_connectivity_backoff():
    cs = _server()
    now = 1000
    delays = []
    for _ in range(3):
        cs.update_in_connectivity(False, now)
        delays.append(cs.next_timeout(now))
    assert delays == [2, 4, 8]
    assert cs.accepting_in_connection is False
    assert not cs.connection_in_progress()


def test_backoff_is_capped():
    cs = _server()
    for _ in range(30):
        cs.update_in_connectivity(False, 0)
    assert cs.next_timeout(0) == 4096


def test_success_resets_backoff():
    cs = _server()
    cs.update_in_connectivity(False, 0)
    cs.update_in_connectivity(False, 0)
    cs.update_in_connectivity(True, 0)
    assert cs.accepting_in_connection is True
    assert cs.next_timeout(0) == 60
    cs.update_in_connectivity(False, 0)
    assert cs.next_timeout(0) == 2


def test_probe_not_started_when_no_remote_or_waiting():
    cs = _server()
    cs.no_remote = True
    cs.start_in_connection_test(0)
    assert not cs.connection_in_progress()
    cs.no_remote = False
    cs.next_conn_time = 100
    cs.start_in_connection_test(50)
    assert not cs.connection_in_progress()


def _finish_pending(cs, now):
    if cs.connection_in_progress():
        select.select([], [cs.in_socket], [], 5)
        cs.update_in_connectivity(cs.is_connected(now), now)


def test_probe_against_listening_socket():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        cs = _server("127.0.0.1")
        cs.remote_port = listener.getsockname()[1]
        cs.start_in_connection_test(1)
        assert cs.last_conn_start_time == 1
        _finish_pending(cs, 1)
        assert cs.accepting_in_connection is True
        assert not cs.connection_in_progress()
        assert cs.next_timeout(1) == 60
        assert cs.in_fd == -1


def test_probe_unresolvable_host_marks_not_accepting():
    cs = _server("host.invalid")
    cs.remote_port = 1
    cs.start_in_connection_test(10)
    assert cs.accepting_in_connection is False
    assert not cs.connection_in_progress()
    assert cs.next_timeout(10) == 2