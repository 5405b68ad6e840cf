import errno
import os

import pytest

from procmetrics.helpers import NonFatalError, is_non_fatal
from procmetrics.procfs import (
    fill_pid_metrics,
    get_args,
    get_boot_time,
    get_cpu_time,
    get_env_data,
    get_fd_stats,
    get_info_for_pid,
    get_io_data,
    get_mem_data,
    get_proc_status,
    get_proc_string_data,
    get_self_pid,
    get_user,
    list_pids,
    parse_proc_stat,
)
from procmetrics.resolve import new_test_resolver
from procmetrics.types import PidState, ProcIOInfo, ProcState, get_proc_state

STAT_LINE = (
    "4067478 (elastic-agent) S 1 4067478 4067478 0 -1 4194560 151900 "
    "1587 0 0 8229 3989 0 1 32 12 26"
    " 0 200791940 2675654656 15487 18446744073709551615 1 1 0 0 0 0 0 0 2143420159 "
    "0 0 0 17 9 0 0 0 0 0 0 0 0 0 0 0 0 0"
)

IO_CONTENT = (
    "rchar: 10418\nwchar: 8\nsyscr: 14\nsyscw: 1\n"
    "read_bytes: 5243\nwrite_bytes: 128\ncancelled_write_bytes: 4\n"
)

LIMITS_CONTENT = (
    "Limit                     Soft Limit           Hard Limit           Units     \n"
    "Max cpu time              unlimited            unlimited            seconds   \n"
    "Max open files            1024                 4096                 files     \n"
)

UNUSED_UID = "3999999999"


def _write(root, relative, content):
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode()
    path.write_bytes(content)
    return path


def _full_process(root, pid=42, with_io=True):
    base = f"proc/{pid}"
    _write(root, f"{base}/stat", STAT_LINE)
    _write(root, f"{base}/statm", "100 20 5 1 0 50 0\n")
    _write(root, f"{base}/cmdline", b"/usr/bin/agent\0run\0")
    _write(root, f"{base}/limits", LIMITS_CONTENT)
    _write(root, f"{base}/environ", b"HOME=/root\0PATH=/bin\0")
    _write(root, f"{base}/status", f"Name:\telastic-agent\nUid:\t{UNUSED_UID}\t{UNUSED_UID}\n")
    _write(root, f"{base}/fd/0", "")
    _write(root, f"{base}/fd/1", "")
    if with_io:
        _write(root, f"{base}/io", IO_CONTENT)
    _write(root, "proc/stat", "cpu 1 2 3 4\nbtime 1697992081\nprocesses 10\n")
    return new_test_resolver(str(root))


def test_parse_proc_stat():
    want = ProcState(
        name="elastic-agent",
        state=get_proc_state(ord("S")),
        ppid=1,
        pgid=4067478,
        num_threads=26,
    )
    assert parse_proc_stat(STAT_LINE.encode()) == want


def test_parse_proc_stat_name_with_parentheses():
    line = STAT_LINE.replace("(elastic-agent) S", "(odd) name) Z", 1)
    state = parse_proc_stat(line)
    assert state.name == "odd) name"
    assert state.state == PidState.ZOMBIE


def test_parse_proc_stat_without_comm():
    with pytest.raises(ValueError, match="comm"):
        parse_proc_stat(b"4067478 elastic-agent S 1 2 3")


def test_parse_proc_stat_too_few_fields():
    with pytest.raises(ValueError, match="expected at least 36"):
        parse_proc_stat(b"1 (x) S 1 2 3 4 5 6 7 8 9 10")


def test_get_info_for_pid_num_threads(tmp_path):
    _write(tmp_path, "proc/42/stat", STAT_LINE)
    want = ProcState(
        name="elastic-agent",
        state="sleeping",
        pid=42,
        ppid=1,
        pgid=4067478,
        num_threads=26,
    )
    got = get_info_for_pid(new_test_resolver(str(tmp_path)), 42)
    assert got == want


def test_get_info_for_pid_missing_process(tmp_path):
    (tmp_path / "proc").mkdir()
    with pytest.raises(ProcessLookupError) as info:
        get_info_for_pid(new_test_resolver(str(tmp_path)), 99)
    assert info.value.errno == errno.ESRCH


def test_get_info_for_pid_bad_stat(tmp_path):
    _write(tmp_path, "proc/5/stat", "garbage")
    with pytest.raises(ValueError, match="pid 5"):
        get_info_for_pid(new_test_resolver(str(tmp_path)), 5)


def test_get_self_pid_no_hostfs():
    assert get_self_pid(new_test_resolver("")) == os.getpid()


def test_get_self_pid_from_hostfs(tmp_path):
    _write(tmp_path, "proc/self/stat", "1234 (agent) S 1 1 1")
    assert get_self_pid(new_test_resolver(str(tmp_path))) == 1234


def test_list_pids(tmp_path):
    for name in ("42", "1", "self", "abc", "12x"):
        (tmp_path / "proc" / name).mkdir(parents=True)
    _write(tmp_path, "proc/stat", "btime 1\n")
    assert list_pids(new_test_resolver(str(tmp_path))) == [1, 42]


def test_list_pids_missing_procfs(tmp_path):
    with pytest.raises(FileNotFoundError):
        list_pids(new_test_resolver(str(tmp_path)))


def test_parse_io(tmp_path):
    _write(tmp_path, "proc/42/io", IO_CONTENT)
    good = ProcIOInfo(
        read_char=10418,
        write_char=8,
        read_syscalls=14,
        write_syscalls=1,
        read_bytes=5243,
        write_bytes=128,
        cancelled_write_bytes=4,
    )
    assert get_io_data(new_test_resolver(str(tmp_path) + "/"), 42) == good


def test_parse_io_bad_counter(tmp_path):
    _write(tmp_path, "proc/42/io", "rchar: lots\n")
    with pytest.raises(ValueError, match="io stat file"):
        get_io_data(new_test_resolver(str(tmp_path)), 42)


def test_get_mem_data(tmp_path):
    _write(tmp_path, "proc/3/statm", "100 20 5 1 0 50 0\n")
    mem = get_mem_data(new_test_resolver(str(tmp_path)), 3)
    assert mem.size == 100 * 4096
    assert mem.rss.bytes == 20 * 4096
    assert mem.share == 5 * 4096
    assert mem.rss.pct is None


def test_get_mem_data_bad_size(tmp_path):
    _write(tmp_path, "proc/3/statm", "x 20 5\n")
    with pytest.raises(ValueError, match="memory size"):
        get_mem_data(new_test_resolver(str(tmp_path)), 3)


def test_get_args(tmp_path):
    _write(tmp_path, "proc/8/cmdline", b"foo\0--bar\0baz\0")
    _write(tmp_path, "proc/9/cmdline", b"")
    resolver = new_test_resolver(str(tmp_path))
    assert get_args(resolver, 8) == ["foo", "--bar", "baz"]
    assert get_args(resolver, 9) == []


def test_get_env_data(tmp_path):
    _write(tmp_path, "proc/4/environ", b"HOME=/root\0PATH=/bin\0BROKEN\0 =x\0EMPTY=\0")
    resolver = new_test_resolver(str(tmp_path))
    assert get_env_data(resolver, 4, None) == {"HOME": "/root", "PATH": "/bin", "EMPTY": ""}
    assert get_env_data(resolver, 4, lambda key: key.startswith("P")) == {"PATH": "/bin"}


def test_get_fd_stats(tmp_path):
    _write(tmp_path, "proc/6/limits", LIMITS_CONTENT)
    for name in ("0", "1", "2"):
        _write(tmp_path, f"proc/6/fd/{name}", "")
    fd = get_fd_stats(new_test_resolver(str(tmp_path)), 6)
    assert fd.open == 3
    assert fd.limit.soft == 1024
    assert fd.limit.hard == 4096


def test_get_fd_stats_unlimited_is_an_error(tmp_path):
    _write(tmp_path, "proc/6/limits", "Max open files unlimited unlimited files\n")
    with pytest.raises(ValueError, match="limits value"):
        get_fd_stats(new_test_resolver(str(tmp_path)), 6)


def test_get_boot_time(tmp_path):
    _write(tmp_path, "proc/stat", "cpu 1 2 3\nbtime 1697992081\n")
    assert get_boot_time(new_test_resolver(str(tmp_path))) == 1697992081


def test_get_boot_time_missing(tmp_path):
    _write(tmp_path, "proc/stat", "cpu 1 2 3\n")
    with pytest.raises(ValueError, match="no boot time"):
        get_boot_time(new_test_resolver(str(tmp_path)))


def test_get_cpu_time(tmp_path):
    _write(tmp_path, "proc/42/stat", STAT_LINE)
    _write(tmp_path, "proc/stat", "btime 1697992081\n")
    cpu = get_cpu_time(new_test_resolver(str(tmp_path)), 42)
    assert cpu.user.ticks == 82290
    assert cpu.system.ticks == 39890
    assert cpu.total.ticks == 122180
    assert cpu.start_time == "2023-11-14T22:13:20.000Z"


def test_get_proc_status(tmp_path):
    _write(tmp_path, "proc/2/status", "Name:\tbash\nState:\tS (sleeping)\nnoise\n")
    status = get_proc_status(new_test_resolver(str(tmp_path)), 2)
    assert status == {"Name": "bash", "State": "S (sleeping)"}


def test_get_user_falls_back_to_uid(tmp_path):
    _write(tmp_path, "proc/2/status", f"Uid:\t{UNUSED_UID}\t{UNUSED_UID}\n")
    assert get_user(new_test_resolver(str(tmp_path)), 2) == UNUSED_UID


def test_get_user_without_uid(tmp_path):
    _write(tmp_path, "proc/2/status", "Name:\tbash\n")
    with pytest.raises(ValueError, match="Uid"):
        get_user(new_test_resolver(str(tmp_path)), 2)


def test_get_proc_string_data(tmp_path):
    base = tmp_path / "proc" / "7"
    base.mkdir(parents=True)
    os.symlink("/usr/bin/agent", base / "exe")
    os.symlink("/tmp/work", base / "cwd")
    assert get_proc_string_data(new_test_resolver(str(tmp_path)), 7) == (
        "/usr/bin/agent",
        "/tmp/work",
    )


def test_get_proc_string_data_missing_exe(tmp_path):
    (tmp_path / "proc" / "7").mkdir(parents=True)
    with pytest.raises(FileNotFoundError):
        get_proc_string_data(new_test_resolver(str(tmp_path)), 7)


def test_fill_pid_metrics(tmp_path):
    resolver = _full_process(tmp_path)
    state = get_info_for_pid(resolver, 42)
    filled = fill_pid_metrics(resolver, 42, state, lambda key: key == "PATH")

    assert filled.memory.size == 409600
    assert filled.memory.rss.bytes == 81920
    assert filled.memory.share == 20480
    assert filled.cpu.total.ticks == 122180
    assert filled.cpu.start_time == "2023-11-14T22:13:20.000Z"
    assert filled.args == ["/usr/bin/agent", "run"]
    assert filled.fd.open == 2
    assert (filled.fd.limit.soft, filled.fd.limit.hard) == (1024, 4096)
    assert filled.env == {"PATH": "/bin"}
    assert filled.exe == ""
    assert filled.cwd == ""
    assert filled.username == UNUSED_UID
    assert filled.io.read_char == 10418
    assert filled.name == "elastic-agent"


def test_fill_pid_metrics_keeps_existing_args_and_env(tmp_path):
    resolver = _full_process(tmp_path)
    state = ProcState(pid=42, args=["cached"], env={"KEPT": "1"})
    filled = fill_pid_metrics(resolver, 42, state, None)
    assert filled.args == ["cached"]
    assert filled.env == {"KEPT": "1"}


def test_fill_pid_metrics_without_io_is_non_fatal(tmp_path):
    resolver = _full_process(tmp_path, with_io=False)
    state = ProcState(pid=42)
    with pytest.raises(NonFatalError) as info:
        fill_pid_metrics(resolver, 42, state, None)
    assert is_non_fatal(info.value)
    assert "/io unavailable" in str(info.value)
    assert state.memory.size == 409600
    assert state.username == UNUSED_UID


def test_fill_pid_metrics_missing_statm_is_fatal(tmp_path):
    resolver = _full_process(tmp_path)
    (tmp_path / "proc" / "42" / "statm").unlink()
    with pytest.raises(FileNotFoundError) as info:
        fill_pid_metrics(resolver, 42, ProcState(pid=42), None)
    assert "memory data" in str(info.value)
    assert not is_non_fatal(info.value)