"""Self-monitoring metrics for the running process and its host."""

from __future__ import annotations

import gc
import logging
import os
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

try:
    import pwd
except ImportError:  # pragma: no cover - platforms without a user database
    pwd = None

from procmetrics.process import Stats
from procmetrics.types import ProcState

_log = logging.getLogger("procmetrics.report")

_EPHEMERAL_ID = uuid.uuid4()

Metrics = dict[str, Any]


def _current_platform() -> str:
    platform = sys.platform
    if platform.startswith("linux"):
        return "linux"
    if platform == "darwin":
        return "darwin"
    if platform in ("win32", "cygwin"):
        return "windows"
    if platform.startswith("freebsd"):
        return "freebsd"
    return platform


def ephemeral_id() -> uuid.UUID:
    """Return the random identifier generated for this process run."""
    return _EPHEMERAL_ID


def user_info() -> dict[str, str]:
    """Return the username, uid and gid of the current user.

    If the uid has no entry in the user database, only uid and gid are given.
    """
    uid = os.getuid()
    if pwd is not None:
        try:
            entry = pwd.getpwuid(uid)
        except KeyError:
            pass
        else:
            return {"username": entry.pw_name, "uid": str(uid), "gid": str(entry.pw_gid)}
    return {"uid": str(uid), "gid": str(os.getgid())}


def process_name(name: str, platform: str | None = None) -> str:
    """Truncate ``name`` to the 15 characters the kernel keeps on Linux and macOS."""
    if platform is None:
        platform = _current_platform()
    if platform in ("linux", "darwin") and len(name) > 15:
        return name[:15]
    return name


@dataclass
class Monitor:
    """Produces the self-monitoring metrics of one process."""

    name: str
    version: str
    stats: Stats
    start_time: float = field(default_factory=time.monotonic)
    platform: str = field(default_factory=_current_platform)

    def _self_state(self, what: str) -> ProcState | None:
        try:
            return self.stats.get_self()
        except (OSError, ValueError) as err:
            _log.error("Error while %s: %s", what, err)
            return None

    def memstats(self, full: bool = False) -> Metrics:
        """Interpreter memory figures and the resident set size."""
        result: Metrics = {"allocated_blocks": sys.getallocatedblocks()}
        if full:
            gen0, gen1, gen2 = gc.get_count()
            result["gc"] = {"gen0": gen0, "gen1": gen1, "gen2": gen2}
            result["gc_objects"] = len(gc.get_objects())

        state = self._self_state("getting memory usage")
        if state is None:
            return result
        result["rss"] = state.memory.rss.bytes or 0
        return result

    def cpu(self) -> Metrics:
        """CPU time used by this process, in milliseconds."""
        state = self._self_state("retrieving CPU percentages")
        if state is None:
            return {}
        total = state.cpu.total
        user = state.cpu.user.ticks or 0
        system = state.cpu.system.ticks or 0
        ticks = total.ticks or 0
        return {
            "user": {"ticks": user, "time": {"ms": user}},
            "system": {"ticks": system, "time": {"ms": system}},
            "total": {
                "value": total.value or 0.0,
                "ticks": ticks,
                "time": {"ms": ticks},
            },
        }

    def runtime(self) -> Metrics:
        """Runtime figures of the interpreter."""
        return {"threads": threading.active_count()}

    def info(self) -> Metrics:
        """Uptime and identity of this process."""
        uptime_ms = int((time.monotonic() - self.start_time) * 1000)
        return {
            "uptime": {"ms": uptime_ms},
            "ephemeral_id": str(ephemeral_id()),
            "name": self.name,
            "version": self.version,
        }

    def handles(self) -> Metrics:
        """Open file descriptors and their limits, on Linux and FreeBSD."""
        if self.platform not in ("linux", "freebsd"):
            return {}
        state = self._self_state("retrieving FD information")
        if state is None:
            return {}
        fd = state.fd
        return {
            "open": fd.open or 0,
            "limit": {"hard": fd.limit.hard or 0, "soft": fd.limit.soft or 0},
        }

    def system_cpu(self) -> Metrics:
        """Number of CPU cores on the host."""
        return {"cores": os.cpu_count() or 1}

    def system_load(self) -> Metrics:
        """Host load averages, raw and normalised by the number of cores."""
        try:
            one, five, fifteen = os.getloadavg()
        except (AttributeError, OSError) as err:
            _log.error("Error retrieving load average: %s", err)
            return {}
        cores = os.cpu_count() or 1
        return {
            "1": one,
            "5": five,
            "15": fifteen,
            "norm": {"1": one / cores, "5": five / cores, "15": fifteen / cores},
        }

    def collect(self, full: bool = False) -> Metrics:
        """Gather every metric into the ``beat`` and ``system`` sections."""
        beat: Metrics = {
            "memstats": self.memstats(full),
            "cpu": self.cpu(),
            "runtime": self.runtime(),
            "info": self.info(),
        }
        if self.platform in ("linux", "freebsd"):
            beat["handles"] = self.handles()

        system: Metrics = {"cpu": self.system_cpu()}
        if self.platform != "windows":
            system["load"] = self.system_load()
        return {"beat": beat, "system": system}

    def flatten(self, full: bool = False) -> dict[str, Any]:
        """Return the collected metrics keyed by dotted paths."""
        flat: dict[str, Any] = {}

        def walk(prefix: str, value: Any) -> None:
            if isinstance(value, dict):
                for key, item in value.items():
                    walk(f"{prefix}.{key}" if prefix else key, item)
            else:
                flat[prefix] = value

        walk("", self.collect(full))
        return flat


def setup_metrics(name: str, version: str) -> Monitor:
    """Create a monitor for the current process.

    Raises ValueError if the process statistics cannot be initialised.
    """
    name = process_name(name)
    try:
        stats = Stats(procs=[name], cpu_ticks=True, cache_cmdline=True)
    except ValueError as err:
        raise ValueError(f"failed to init process stats for agent: {err}") from err
    return Monitor(name=name, version=version, stats=stats)