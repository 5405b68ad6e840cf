"""Data types describing a process and its metrics."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class PidState(str, enum.Enum):
    """Scheduler state of a process."""

    DEAD = "dead"
    RUNNING = "running"
    SLEEPING = "sleeping"
    IDLE = "idle"
    DISK_SLEEP = "disk_sleep"
    STOPPED = "stopped"
    ZOMBIE = "zombie"
    WAKEKILL = "wakekill"
    WAKING = "waking"
    PARKED = "parked"
    UNKNOWN = "unknown"


PID_STATES: dict[str, PidState] = {
    "S": PidState.SLEEPING,
    "R": PidState.RUNNING,
    "D": PidState.DISK_SLEEP,
    "I": PidState.IDLE,
    "T": PidState.STOPPED,
    "Z": PidState.ZOMBIE,
    "X": PidState.DEAD,
    "x": PidState.DEAD,
    "K": PidState.WAKEKILL,
    "W": PidState.WAKING,
    "P": PidState.PARKED,
}


def get_proc_state(code: str | int) -> PidState:
    """Map a one-character state code (or its byte value) to a PidState."""
    if isinstance(code, int):
        code = chr(code)
    return PID_STATES.get(code, PidState.UNKNOWN)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _prune(value: Any) -> Any:
    """Drop empty values recursively, as omitempty serialisation does."""
    if isinstance(value, dict):
        pruned = {key: _prune(item) for key, item in value.items()}
        return {key: item for key, item in pruned.items() if not _is_empty(item)}
    if isinstance(value, PidState):
        return value.value
    if isinstance(value, list):
        return list(value)
    return value


@dataclass
class IncludeTopConfig:
    """Configuration for keeping only the top N processes."""

    enabled: bool = False
    by_cpu: int = 0
    by_memory: int = 0


@dataclass
class CPUTicks:
    ticks: int | None = None


@dataclass
class CPUTotal:
    value: float | None = None
    ticks: int | None = None
    pct: float | None = None
    norm_pct: float | None = None

    def is_zero(self) -> bool:
        return (
            self.value is None
            and self.ticks is None
            and self.pct is None
            and self.norm_pct is None
        )


@dataclass
class ProcCPUInfo:
    start_time: str = ""
    total: CPUTotal = field(default_factory=CPUTotal)
    user: CPUTicks = field(default_factory=CPUTicks)
    system: CPUTicks = field(default_factory=CPUTicks)


@dataclass
class ProcIOInfo:
    """I/O counters as found in /proc/[pid]/io."""

    read_char: int | None = None
    write_char: int | None = None
    read_syscalls: int | None = None
    write_syscalls: int | None = None
    read_bytes: int | None = None
    write_bytes: int | None = None
    cancelled_write_bytes: int | None = None


@dataclass
class MemBytePct:
    bytes: int | None = None
    pct: float | None = None


@dataclass
class ProcMemInfo:
    size: int | None = None
    share: int | None = None
    rss: MemBytePct = field(default_factory=MemBytePct)


@dataclass
class ProcLimits:
    soft: int | None = None
    hard: int | None = None


@dataclass
class ProcFDInfo:
    open: int | None = None
    limit: ProcLimits = field(default_factory=ProcLimits)

    def is_zero(self) -> bool:
        return self.open is None and self.limit.hard is None and self.limit.soft is None


@dataclass
class RootCPUFields:
    start_time: str = ""
    pct: float | None = None


@dataclass
class Parent:
    pid: int | None = None


@dataclass
class UserName:
    name: str = ""


@dataclass
class ProcessRoot:
    """Process fields placed at the root of an event."""

    cmdline: str = ""
    state: PidState | None = None
    cpu: RootCPUFields = field(default_factory=RootCPUFields)
    memory_pct: float | None = None
    cwd: str = ""
    exe: str = ""
    args: list[str] = field(default_factory=list)
    name: str = ""
    pid: int | None = None
    parent: Parent = field(default_factory=Parent)
    pgid: int | None = None


@dataclass
class ProcStateRootEvent:
    """Root-level fields of a process event."""

    process: ProcessRoot = field(default_factory=ProcessRoot)
    user: UserName = field(default_factory=UserName)

    def to_dict(self) -> dict[str, Any]:
        proc = self.process
        return _prune(
            {
                "process": {
                    "command_line": proc.cmdline,
                    "state": proc.state,
                    "cpu": {"start_time": proc.cpu.start_time, "pct": proc.cpu.pct},
                    "memory": {"pct": proc.memory_pct},
                    "working_directory": proc.cwd,
                    "executable": proc.exe,
                    "args": list(proc.args),
                    "name": proc.name,
                    "pid": proc.pid,
                    "parent": {"pid": proc.parent.pid},
                    "pgid": proc.pgid,
                },
                "user": {"name": self.user.name},
            }
        )


@dataclass
class ProcState:
    """Information and metrics for a single process."""

    name: str = ""
    state: PidState | None = None
    username: str = ""
    pid: int | None = None
    ppid: int | None = None
    pgid: int | None = None
    num_threads: int | None = None

    args: list[str] = field(default_factory=list)
    cmdline: str = ""
    cwd: str = ""
    exe: str = ""
    env: dict[str, str] | None = None

    memory: ProcMemInfo = field(default_factory=ProcMemInfo)
    cpu: ProcCPUInfo = field(default_factory=ProcCPUInfo)
    fd: ProcFDInfo = field(default_factory=ProcFDInfo)
    network: Any = None
    io: ProcIOInfo = field(default_factory=ProcIOInfo)

    cgroup: dict[str, Any] | None = None

    sample_time: float | None = None
    failed: bool = False

    def format_for_root(self) -> ProcStateRootEvent:
        """Move the root-level fields out of this state into a root event."""
        root = ProcStateRootEvent()
        proc = root.process

        proc.name, self.name = self.name, ""
        proc.pid, self.pid = self.pid, None
        proc.parent.pid, self.ppid = self.ppid, None
        proc.pgid, self.pgid = self.pgid, None
        root.user.name, self.username = self.username, ""

        proc.cmdline = self.cmdline
        proc.state = self.state
        proc.cpu.start_time = self.cpu.start_time
        proc.cpu.pct = self.cpu.total.norm_pct
        proc.memory_pct = self.memory.rss.pct

        proc.cwd, self.cwd = self.cwd, ""
        proc.exe, self.exe = self.exe, ""
        proc.args, self.args = self.args, []
        return root

    def to_dict(self) -> dict[str, Any]:
        """Render the state as a nested dict, omitting empty fields."""
        cpu = self.cpu
        io = self.io
        result = _prune(
            {
                "name": self.name,
                "state": self.state,
                "username": self.username,
                "pid": self.pid,
                "ppid": self.ppid,
                "pgid": self.pgid,
                "num_threads": self.num_threads,
                "args": list(self.args),
                "cmdline": self.cmdline,
                "cwd": self.cwd,
                "exe": self.exe,
                "memory": {
                    "size": self.memory.size,
                    "share": self.memory.share,
                    "rss": {"bytes": self.memory.rss.bytes, "pct": self.memory.rss.pct},
                },
                "cpu": {
                    "start_time": cpu.start_time,
                    "total": {
                        "value": cpu.total.value,
                        "ticks": cpu.total.ticks,
                        "pct": cpu.total.pct,
                        "norm": {"pct": cpu.total.norm_pct},
                    },
                    "user": {"ticks": cpu.user.ticks},
                    "system": {"ticks": cpu.system.ticks},
                },
                "fd": {
                    "open": self.fd.open,
                    "limit": {"soft": self.fd.limit.soft, "hard": self.fd.limit.hard},
                },
                "io": {
                    "read_char": io.read_char,
                    "write_char": io.write_char,
                    "read_ops": io.read_syscalls,
                    "write_ops": io.write_syscalls,
                    "read_bytes": io.read_bytes,
                    "write_bytes": io.write_bytes,
                    "cancelled_write_bytes": io.cancelled_write_bytes,
                },
            }
        )
        if self.env:
            result["env"] = dict(self.env)
        if self.cgroup:
            result["cgroup"] = dict(self.cgroup)
        return result