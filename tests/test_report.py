import os
import time
import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest

from procmetrics.process import Stats
from procmetrics.report import (
    Monitor,
    ephemeral_id,
    process_name,
    setup_metrics,
    user_info,
)
from procmetrics.resolve import new_test_resolver

STAT_LINE = (
    "42 (elastic-agent) S 1 4067478 4067478 0 -1 4194560 151900 "
    "1587 0 0 8229 3989 0 1 32 12 26"
    " 0 200791940 2675654656 15487 18446744073709551615 1 1 0 0 0 0 0 0 "
    "2143420159 0 0 0 17 9 0 0 0 0 0 0 0 0 0 0 0 0 0"
)


@pytest.fixture
def fake_root(tmp_path):
    proc = tmp_path / "proc"
    (proc / "self").mkdir(parents=True)
    (proc / "self" / "stat").write_text(STAT_LINE)
    pid_dir = proc / "42"
    pid_dir.mkdir()
    (pid_dir / "stat").write_text(STAT_LINE)
    (pid_dir / "statm").write_text("100 50 10 0 0 0 0\n")
    (pid_dir / "cmdline").write_bytes(b"elastic-agent\0run\0")
    (pid_dir / "limits").write_text(
        "Limit                     Soft Limit           Hard Limit           Units     \n"
        "Max open files            1024                 4096                 files     \n"
    )
    fd_dir = pid_dir / "fd"
    fd_dir.mkdir()
    for index in range(3):
        (fd_dir / str(index)).write_text("")
    (pid_dir / "status").write_text("Name:\telastic-agent\nUid:\t0\t0\t0\t0\n")
    (pid_dir / "io").write_text("rchar: 10\nwchar: 8\n")
    (proc / "stat").write_text("cpu  1 2 3 4\nbtime 1600000000\n")
    return tmp_path


@pytest.fixture
def monitor(fake_root):
    stats = Stats(
        hostfs=new_test_resolver(str(fake_root)),
        procs=["elastic-agent"],
        cpu_ticks=True,
        cache_cmdline=True,
    )
    return Monitor(name="TestSys", version="test", stats=stats, platform="linux")


def test_ephemeral_id_is_stable_uuid4():
    first = ephemeral_id()
    assert first == ephemeral_id()
    assert isinstance(first, uuid.UUID)
    assert first.version == 4


@pytest.mark.parametrize(
    ("name", "platform", "expected"),
    [
        ("a-very-long-process-name", "linux", "a-very-long-pro"),
        ("a-very-long-process-name", "darwin", "a-very-long-pro"),
        ("a-very-long-process-name", "windows", "a-very-long-process-name"),
        ("short", "linux", "short"),
        ("exactly15chars!", "linux", "exactly15chars!"),
    ],
)
def test_process_name(name, platform, expected):
    assert process_name(name, platform) == expected


def test_user_info_reports_current_uid():
    info = user_info()
    assert info["uid"] == str(os.getuid())
    assert "gid" in info


def test_setup_metrics_info():
    mon = setup_metrics("TestSys", "test")
    info = mon.info()
    assert info["name"] == "TestSys"
    assert info["version"] == "test"
    assert info["ephemeral_id"] == str(ephemeral_id())
    assert info["uptime"]["ms"] >= 0


def test_setup_metrics_bad_name():
    with pytest.raises(ValueError, match="failed to init process stats"):
        setup_metrics("bad(", "1")


def test_uptime(monitor):
    monitor.start_time = time.monotonic() - 5
    assert monitor.info()["uptime"]["ms"] >= 5000


def test_cpu_values(monitor):
    cpu = monitor.cpu()
    assert cpu["user"] == {"ticks": 82290, "time": {"ms": 82290}}
    assert cpu["system"] == {"ticks": 39890, "time": {"ms": 39890}}
    assert cpu["total"]["ticks"] == 122180
    assert cpu["total"]["time"]["ms"] == 122180
    assert cpu["total"]["value"] == 122180.0


def test_memstats(monitor):
    basic = monitor.memstats(False)
    assert basic["rss"] == 50 << 12
    assert "gc" not in basic
    full = monitor.memstats(True)
    assert full["rss"] == 204800
    assert set(full["gc"]) == {"gen0", "gen1", "gen2"}


def test_handles(monitor):
    assert monitor.handles() == {"open": 3, "limit": {"hard": 4096, "soft": 1024}}


def test_handles_not_reported_on_windows(monitor):
    monitor.platform = "windows"
    assert monitor.handles() == {}
    assert "handles" not in monitor.collect(True)["beat"]
    assert "load" not in monitor.collect(True)["system"]


def test_missing_process_gives_empty_cpu(tmp_path):
    (tmp_path / "proc" / "self").mkdir(parents=True)
    (tmp_path / "proc" / "self" / "stat").write_text("7 (gone) S 1")
    stats = Stats(hostfs=new_test_resolver(str(tmp_path)), procs=["x"])
    mon = Monitor(name="x", version="1", stats=stats, platform="linux")
    assert mon.cpu() == {}
    assert "rss" not in mon.memstats(True)


def test_system_cpu_and_runtime(monitor):
    assert monitor.system_cpu() == {"cores": os.cpu_count() or 1}
    assert monitor.runtime()["threads"] >= 1


def test_system_load_normalised(monitor):
    load = monitor.system_load()
    cores = os.cpu_count() or 1
    for key in ("1", "5", "15"):
        assert load["norm"][key] == pytest.approx(load[key] / cores)


def test_flatten_concurrently(monitor):
    def run(_):
        return monitor.flatten(True)

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(run, range(100)))

    assert len(results) == 100
    for flat in results:
        assert "beat.info.uptime.ms" in flat
        assert flat["beat.cpu.total.ticks"] == 122180
        assert flat["beat.memstats.rss"] == 204800
        assert flat["beat.handles.open"] == 3
        assert flat["beat.info.name"] == "TestSys"
        assert "system.cpu.cores" in flat