"""Reading process information from a Linux-style /proc filesystem."""

from __future__ import annotations

import errno
import os
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

try:
    import pwd
except ImportError:  # pragma: no cover - platforms without a user database
    pwd = None

from procmetrics.helpers import NonFatalError, unix_time_ms_to_time
from procmetrics.resolve import Resolver
from procmetrics.types import (
    CPUTicks,
    CPUTotal,
    MemBytePct,
    ProcCPUInfo,
    ProcFDInfo,
    ProcIOInfo,
    ProcLimits,
    ProcMemInfo,
    ProcState,
    get_proc_state,
)

TICKS = 100
"""Clock ticks per second (USER_HZ) used in /proc/[pid]/stat."""

_MIN_STAT_FIELDS = 36
_UINT_RE = re.compile(r"[0-9]+")
_INT_RE = re.compile(r"[+-]?[0-9]+")
_IO_FIELDS = {
    "rchar": "read_char",
    "wchar": "write_char",
    "syscr": "read_syscalls",
    "syscw": "write_syscalls",
    "read_bytes": "read_bytes",
    "write_bytes": "write_bytes",
    "cancelled_write_bytes": "cancelled_write_bytes",
}

_boot_times: dict[str, int] = {}

EnvFilter = Callable[[str], bool]


def _with_context(err: BaseException, message: str) -> Exception:
    """Build an error of the same family as ``err`` with a leading message."""
    if isinstance(err, OSError):
        if err.errno is not None:
            return OSError(err.errno, f"{message}: {err.strerror or err}", err.filename)
        return OSError(f"{message}: {err}")
    return ValueError(f"{message}: {err}")


@contextmanager
def _context(message: str) -> Iterator[None]:
    try:
        yield
    except (OSError, ValueError) as err:
        raise _with_context(err, message) from err


def _read(path: str) -> bytes:
    return Path(path).read_bytes()


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", "replace")


def _parse_uint(text: str, message: str) -> int:
    if not _UINT_RE.fullmatch(text) or int(text) >= 1 << 64:
        raise ValueError(f"{message}: invalid unsigned integer {text!r}")
    return int(text)


def _parse_int(text: str, message: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"{message}: invalid integer {text!r}")
    return int(text)


def _pid_path(hostfs: Resolver, pid: int, name: str) -> str:
    return hostfs.join("proc", str(pid), name)


def get_self_pid(hostfs: Resolver) -> int:
    """Return our own PID, as seen from the host filesystem if one is set."""
    if not hostfs.is_set():
        return os.getpid()

    path = hostfs.resolve_hostfs("/proc/self/stat")
    with _context("error reading from self/stat while searching for our PID in a container"):
        raw = _decode(_read(path))

    first = raw.split(" ")[0]
    return _parse_int(
        first, "error parsing int from `stat` while searching for our pid in a container"
    )


def list_pids(hostfs: Resolver) -> list[int]:
    """Return the PIDs that have a directory under the proc filesystem, sorted."""
    proc_dir = hostfs.resolve_hostfs("proc")
    with _context(f"error reading from procfs {hostfs.resolve_hostfs('/')}"):
        names = os.listdir(proc_dir)

    pids = []
    for name in names:
        if not name or not "0" <= name[0] <= "9":
            continue
        if not (name.isascii() and name.isdigit()):
            continue
        pids.append(int(name))
    return sorted(pids)


def parse_proc_stat(data: bytes | str) -> ProcState:
    """Parse name, state, ppid, pgid and thread count from /proc/[pid]/stat content."""
    if isinstance(data, str):
        data = data.encode("utf-8")

    left = data.find(b"(")
    right = data.rfind(b")")
    if left < 0 or right < 0 or left >= right or right + 2 >= len(data):
        raise ValueError(f"failed to extract 'comm' field from {_decode(data)!r}")
    name = _decode(data[left + 1 : right])

    fields = [_decode(item) for item in data[right + 2 :].split()]
    if len(fields) <= _MIN_STAT_FIELDS:
        raise ValueError(
            f"expected at least {_MIN_STAT_FIELDS} stat fields from {_decode(data)!r}"
        )

    message = f"failed to parse stat fields from {_decode(data)!r}"
    ppid = _parse_int(fields[1], message)
    pgid = _parse_int(fields[2], message)
    num_threads = _parse_int(fields[17], message)

    return ProcState(
        name=name,
        state=get_proc_state(fields[0][0]),
        ppid=ppid,
        pgid=pgid,
        num_threads=num_threads,
    )


def get_info_for_pid(hostfs: Resolver, pid: int) -> ProcState:
    """Read the basic information for ``pid``.

    Raises ProcessLookupError if the process does not exist.
    """
    path = _pid_path(hostfs, pid, "stat")
    try:
        data = _read(path)
    except FileNotFoundError as err:
        raise ProcessLookupError(errno.ESRCH, os.strerror(errno.ESRCH)) from err
    except OSError as err:
        raise _with_context(err, f"error reading procdir {path}") from err

    try:
        state = parse_proc_stat(data)
    except ValueError as err:
        raise ValueError(f"failed to parse information for pid {pid}: {err}") from err
    state.pid = pid
    return state


def fill_pid_metrics(
    hostfs: Resolver,
    pid: int,
    state: ProcState,
    env_filter: EnvFilter | None = None,
) -> ProcState:
    """Fill ``state`` in place with the extended metrics of ``pid`` and return it.

    If only the I/O counters cannot be read, NonFatalError is raised after
    everything else has been filled in.
    """
    with _context(f"error getting memory data for pid {pid}"):
        state.memory = get_mem_data(hostfs, pid)

    with _context(f"error getting CPU data for pid {pid}"):
        state.cpu = get_cpu_time(hostfs, pid)

    if not state.args:
        with _context(f"error getting CLI args for pid {pid}"):
            state.args = get_args(hostfs, pid)

    with _context(f"error getting FD metrics for pid {pid}"):
        state.fd = get_fd_stats(hostfs, pid)

    if state.env is None:
        try:
            state.env = get_env_data(hostfs, pid, env_filter)
        except OSError:
            state.env = None

    try:
        state.exe, state.cwd = get_proc_string_data(hostfs, pid)
    except (PermissionError, FileNotFoundError):
        # Restricted or kernel processes have no readable exe/cwd links.
        state.exe, state.cwd = "", ""
    except OSError as err:
        raise _with_context(err, f"error getting metadata for pid {pid}") from err

    with _context(f"error creating username for pid {pid}"):
        state.username = get_user(hostfs, pid)

    try:
        state.io = get_io_data(hostfs, pid)
    except (OSError, ValueError) as err:
        raise NonFatalError(
            _with_context(err, "/io unavailable; if running inside a container, use SYS_PTRACE")
        ) from err

    return state


def get_proc_string_data(hostfs: Resolver, pid: int) -> tuple[str, str]:
    """Return the executable path and working directory of ``pid``."""
    try:
        exe = os.readlink(_pid_path(hostfs, pid, "exe"))
    except (PermissionError, FileNotFoundError):
        raise
    except OSError as err:
        raise _with_context(err, f"error fetching exe from pid {pid}") from err

    try:
        cwd = os.readlink(_pid_path(hostfs, pid, "cwd"))
    except PermissionError:
        raise
    except OSError as err:
        raise _with_context(err, f"error fetching cwd for pid {pid}") from err

    return exe, cwd


def _lookup_username(uid: str) -> str:
    if pwd is None:
        return uid
    try:
        return pwd.getpwuid(int(uid)).pw_name
    except (KeyError, ValueError, OverflowError):
        return uid


def get_user(hostfs: Resolver, pid: int) -> str:
    """Return the name of the user owning ``pid``, or its numeric UID."""
    with _context(f"error fetching user ID for pid {pid}"):
        status = get_proc_status(hostfs, pid)

    uid_values = status.get("Uid")
    if uid_values is None:
        raise ValueError("field Uid not found in proc status")
    uids = uid_values.split()
    if not uids:
        raise ValueError("field Uid in proc status is empty")
    return _lookup_username(uids[0])


def get_env_data(
    hostfs: Resolver, pid: int, env_filter: EnvFilter | None = None
) -> dict[str, str]:
    """Return the environment of ``pid``, keeping keys accepted by ``env_filter``."""
    path = _pid_path(hostfs, pid, "environ")
    try:
        data = _read(path)
    except PermissionError:
        raise
    except OSError as err:
        raise _with_context(err, f"error opening file {path}") from err

    env: dict[str, str] = {}
    for pair in data.split(b"\0"):
        key, sep, value = pair.partition(b"=")
        if not sep:
            continue
        name = _decode(key.strip())
        if not name:
            continue
        if env_filter is None or env_filter(name):
            env[name] = _decode(value.strip())
    return env


def get_mem_data(hostfs: Resolver, pid: int) -> ProcMemInfo:
    """Return size, RSS and shared memory of ``pid`` in bytes."""
    path = _pid_path(hostfs, pid, "statm")
    with _context(f"error opening file {path}"):
        data = _read(path)

    fields = _decode(data).split()
    if len(fields) < 3:
        raise ValueError(f"unexpected content in {path}: {_decode(data)!r}")

    size = _parse_uint(fields[0], f"error parsing memory size {fields[0]}")
    rss = _parse_uint(fields[1], f"error parsing memory rss {fields[1]}")
    try:
        share = _parse_uint(fields[2], "share")
    except ValueError:
        share = 0

    return ProcMemInfo(size=size << 12, share=share << 12, rss=MemBytePct(bytes=rss << 12))


def get_io_data(hostfs: Resolver, pid: int) -> ProcIOInfo:
    """Return the I/O counters from /proc/[pid]/io."""
    path = _pid_path(hostfs, pid, "io")
    with _context("error fetching IO metrics"):
        data = _read(path)

    values: dict[str, int] = {}
    for line in _decode(data).split("\n"):
        raw = line.split(": ")
        if len(raw) < 2:
            continue
        value = _parse_uint(raw[1], f"error converting counters {raw!r} in io stat file")
        attribute = _IO_FIELDS.get(raw[0])
        if attribute is not None:
            values[attribute] = value
    return ProcIOInfo(**values)


def get_cpu_time(hostfs: Resolver, pid: int) -> ProcCPUInfo:
    """Return CPU times of ``pid`` in milliseconds and its start time."""
    path = _pid_path(hostfs, pid, "stat")
    with _context(f"error opening file {path}"):
        data = _read(path)

    fields = _decode(data).split()
    if len(fields) < 22:
        raise ValueError(f"too few fields in {path}")

    user = _parse_uint(fields[13], f"error parsing user CPU times for pid {pid}")
    system = _parse_uint(fields[14], f"error parsing system CPU times for pid {pid}")

    with _context(f"error fetching boot time for pid {pid}"):
        btime = get_boot_time(hostfs)

    # Ticks are reported as milliseconds throughout.
    user_ticks = user * (1000 // TICKS)
    system_ticks = system * (1000 // TICKS)

    start = _parse_uint(
        fields[21], f"error parsing start time value {fields[21]} for pid {pid}"
    )
    start_ms = (start // TICKS + btime) * 1000

    return ProcCPUInfo(
        start_time=unix_time_ms_to_time(start_ms),
        total=CPUTotal(ticks=user_ticks + system_ticks),
        user=CPUTicks(ticks=user_ticks),
        system=CPUTicks(ticks=system_ticks),
    )


def get_args(hostfs: Resolver, pid: int) -> list[str]:
    """Return the command-line arguments of ``pid``."""
    path = _pid_path(hostfs, pid, "cmdline")
    with _context(f"error opening file {path}"):
        data = _read(path)
    # Only NUL-terminated arguments count; a trailing fragment is dropped.
    return [_decode(arg) for arg in data.split(b"\0")[:-1]]


def get_fd_stats(hostfs: Resolver, pid: int) -> ProcFDInfo:
    """Return the open file descriptor count and limits of ``pid``."""
    path = _pid_path(hostfs, pid, "limits")
    with _context(f"error opening file {path}"):
        data = _read(path)

    soft: int | None = None
    hard: int | None = None
    for line in _decode(data).split("\n"):
        if not line.startswith("Max open files"):
            continue
        fields = line.split()
        if len(fields) == 6:
            soft = _parse_uint(fields[3], f"error parsing limits value {fields[3]} for pid {pid}")
            hard = _parse_uint(fields[4], f"error parsing limits value {fields[4]} for pid {pid}")

    limits = ProcLimits(soft=soft, hard=hard)
    fd_path = _pid_path(hostfs, pid, "fd")
    try:
        open_count = len(os.listdir(fd_path))
    except PermissionError:
        return ProcFDInfo(limit=limits)
    except OSError as err:
        raise _with_context(err, f"error reading FD directory for pid {pid}") from err
    return ProcFDInfo(open=open_count, limit=limits)


def get_boot_time(hostfs: Resolver) -> int:
    """Return the system boot time in seconds since the Unix epoch."""
    path = hostfs.join("proc", "stat")
    cached = _boot_times.get(path)
    if cached:
        return cached

    with _context(f"error opening file {path}"):
        data = _read(path)

    for line in _decode(data).split("\n"):
        if line.startswith("btime"):
            btime = _parse_uint(line[6:], "error reading boot time")
            _boot_times[path] = btime
            return btime

    raise ValueError(f"no boot time found in file {path}")


def get_proc_status(hostfs: Resolver, pid: int) -> dict[str, str]:
    """Return the key/value pairs of /proc/[pid]/status."""
    path = _pid_path(hostfs, pid, "status")
    with _context(f"error opening file {path}"):
        data = _read(path)

    status: dict[str, str] = {}
    for line in _decode(data).split("\n"):
        key, sep, value = line.partition(":")
        if sep:
            status[key] = value.strip()
    return status