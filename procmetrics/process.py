"""Collecting and formatting metrics for sets of processes."""

from __future__ import annotations

import copy
import errno
import logging
import os
import re
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from procmetrics.helpers import (
    NonFatalError,
    get_proc_cpu_percentage,
    get_proc_mem_percentage,
    is_non_fatal,
    round_metric,
    to_non_fatal,
)
from procmetrics.procfs import fill_pid_metrics, get_info_for_pid, get_self_pid, list_pids
from procmetrics.resolve import Resolver, new_test_resolver
from procmetrics.types import IncludeTopConfig, PidState, ProcState

_log = logging.getLogger("procmetrics.processes")

_FAILED_PIDS_MESSAGE = (
    'error fetching PID metrics for {} processes, most likely a "permission denied" '
    "error. Enable debug logging to determine the exact cause."
)

Event = dict[str, Any]


def _wrap(err: BaseException, message: str) -> Exception:
    """Build an error of the same family as ``err`` with a leading message."""
    if isinstance(err, OSError):
        if err.errno is not None:
            return OSError(err.errno, f"{message}: {err.strerror or err}", err.filename)
        return OSError(f"{message}: {err}")
    return ValueError(f"{message}: {err}")


def _combine(errors: list[Exception]) -> Exception:
    if len(errors) == 1:
        return errors[0]
    return ExceptionGroup("errors fetching process metrics", errors)


def _extract_failed_pids(procs_map: dict[int, ProcState]) -> list[int]:
    """Remove failed entries from ``procs_map`` and return their PIDs."""
    failed = [pid for pid, state in procs_map.items() if state.failed]
    for pid in failed:
        del procs_map[pid]
    return failed


class ProcsTrack:
    """Thread-safe record of the last known state of each tracked process."""

    def __init__(self, pids: Mapping[int, ProcState] | None = None) -> None:
        self._pids: dict[int, ProcState] = dict(pids or {})
        self._lock = threading.Lock()

    def get_pid(self, pid: int) -> ProcState | None:
        """Return the stored state of ``pid``, or None if it is not tracked."""
        with self._lock:
            return self._pids.get(pid)

    def set_pid(self, pid: int, state: ProcState) -> None:
        with self._lock:
            self._pids[pid] = state

    def set_map(self, pids: Mapping[int, ProcState]) -> None:
        """Replace every tracked state at once."""
        with self._lock:
            self._pids = dict(pids)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pids)


def process_root_event(process: ProcState) -> Event:
    """Move the root-level fields out of ``process`` and render them as a dict."""
    return process.format_for_root().to_dict()


@dataclass
class Stats:
    """Collects metrics for the processes whose names match ``procs``."""

    hostfs: Resolver | None = None
    procs: list[str] = field(default_factory=list)
    cpu_ticks: bool = False
    env_whitelist: list[str] = field(default_factory=list)
    cache_cmdline: bool = False
    include_top: IncludeTopConfig = field(default_factory=IncludeTopConfig)
    procs_map: ProcsTrack = field(default_factory=ProcsTrack, repr=False)

    _skip_extended: bool = field(default=False, init=False, repr=False)
    _proc_regexps: list[re.Pattern[str]] = field(default_factory=list, init=False, repr=False)
    _env_regexps: list[re.Pattern[str]] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.hostfs is None:
            self.hostfs = new_test_resolver("/")
        if not self.procs:
            return

        for pattern in self.procs:
            try:
                self._proc_regexps.append(re.compile(pattern))
            except re.error as err:
                raise ValueError(f"failed to compile regexp [{pattern}]: {err}") from err

        for pattern in self.env_whitelist:
            try:
                self._env_regexps.append(re.compile(pattern))
            except re.error as err:
                raise ValueError(
                    f"failed to compile env whitelist regexp [{pattern}]: {err}"
                ) from err

    def fetch_pids(self) -> tuple[dict[int, ProcState], list[ProcState], NonFatalError | None]:
        """Collect every matching process on the host.

        Returns the map of all seen PIDs (failed ones flagged), the list of
        matching processes and a NonFatalError if collection was partial.
        Raises if the errors encountered were all fatal.
        """
        procs_map: dict[int, ProcState] = {}
        procs: list[ProcState] = []
        errors: list[Exception] = []

        for pid in list_pids(self.hostfs):
            try:
                state, matched, partial = self._pid_fill(pid, True)
            except (OSError, ValueError) as err:
                procs_map[pid] = ProcState(failed=True)
                _log.debug("Error fetching PID info for %d, skipping: %s", pid, err)
                # Processes may exit between listing and reading them.
                if not isinstance(err, ProcessLookupError):
                    errors.append(err)
                continue

            if partial is not None:
                procs_map[pid] = ProcState(failed=True)
                errors.append(partial)
            if not matched:
                _log.debug(
                    "Process name does not match the provided regex; PID=%d; name=%s",
                    pid,
                    state.name,
                )
                continue
            procs_map[pid] = state
            procs.append(state)

        if not errors:
            return procs_map, procs, None
        combined = _combine(errors)
        if not is_non_fatal(combined):
            raise _wrap(errors[0], "error gathering PIDs") from combined
        return procs_map, procs, to_non_fatal(combined)

    def get(self) -> tuple[list[Event], list[Event], NonFatalError | None]:
        """Return process events, their root events and any partial-collection error."""
        if not self.procs:
            return [], [], None

        procs_map, plist, partial = self.fetch_pids()
        failed = _extract_failed_pids(procs_map)
        self.procs_map.set_map(procs_map)

        plist = self.include_top_processes(plist)
        total_memory = self._total_memory()

        events: list[Event] = []
        roots: list[Event] = []
        for tracked in plist:
            process = copy.deepcopy(tracked)
            process.memory.rss.pct = get_proc_mem_percentage(process, total_memory)
            roots.append(process_root_event(process))
            events.append(self._process_event(process))

        if failed:
            _log.debug("error fetching process metrics: %s", partial)
            return events, roots, NonFatalError(ValueError(_FAILED_PIDS_MESSAGE.format(len(failed))))
        return events, roots, None

    def get_one(self, pid: int) -> Event:
        """Return the event for ``pid`` regardless of the name filter."""
        state, _ = self._fill_one(pid)
        return self._process_event(state)

    def get_one_root_event(self, pid: int) -> tuple[Event, Event, NonFatalError | None]:
        """Return the event and root event for ``pid`` and any partial error."""
        state, partial = self._fill_one(pid)
        event = self._process_event(state)
        root = process_root_event(state)
        return event, root, partial

    def get_self(self) -> ProcState:
        """Return the state of this process; partial collection errors are logged."""
        try:
            pid = get_self_pid(self.hostfs)
        except (OSError, ValueError) as err:
            raise _wrap(err, "error finding PID") from err
        state, partial = self._fill_one(pid)
        if partial is not None:
            _log.debug("partial metrics for pid %d: %s", pid, partial)
        return state

    def match_process(self, name: str) -> bool:
        """Return True if ``name`` matches any of the process patterns."""
        return any(regexp.search(name) for regexp in self._proc_regexps)

    def include_top_processes(self, processes: list[ProcState]) -> list[ProcState]:
        """Keep only the top processes by CPU and by memory, as configured."""
        top = self.include_top
        if not top.enabled or (top.by_cpu == 0 and top.by_memory == 0):
            return processes

        result: list[ProcState] = []
        if top.by_cpu > 0:
            by_cpu = sorted(processes, key=lambda p: p.cpu.total.pct or 0, reverse=True)
            result.extend(by_cpu[: top.by_cpu])

        if top.by_memory > 0:
            by_memory = sorted(processes, key=lambda p: p.memory.rss.bytes or 0, reverse=True)
            seen = {proc.pid for proc in result}
            for proc in by_memory[: top.by_memory]:
                if proc.pid not in seen:
                    result.append(proc)
                    seen.add(proc.pid)
        return result

    def is_whitelisted_env_var(self, name: str) -> bool:
        """Return True if ``name`` matches the environment whitelist."""
        return any(regexp.search(name) for regexp in self._env_regexps)

    def _fill_one(self, pid: int) -> tuple[ProcState, NonFatalError | None]:
        try:
            state, _, partial = self._pid_fill(pid, False)
        except (OSError, ValueError) as err:
            if not is_non_fatal(err):
                raise _wrap(err, f"error fetching PID {pid}") from err
            state, partial = ProcState(), NonFatalError(err)
        self.procs_map.set_pid(pid, copy.deepcopy(state))
        return state, partial

    def _pid_fill(
        self, pid: int, apply_filter: bool
    ) -> tuple[ProcState, bool, NonFatalError | None]:
        """Collect the state of ``pid``; the flag is False if the name filter rejected it."""
        try:
            state = get_info_for_pid(self.hostfs, pid)
        except (OSError, ValueError) as err:
            raise _wrap(err, f"GetInfoForPid failed for pid {pid}") from err
        if self._skip_extended:
            return state, True, None

        state = self._cache_cmdline(state)
        if apply_filter and not self.match_process(state.name):
            return state, False, None

        partial: NonFatalError | None = None
        try:
            fill_pid_metrics(self.hostfs, pid, state, self.is_whitelisted_env_var)
        except NonFatalError as err:
            partial = err
            _log.debug("%s", err)
        except (OSError, ValueError) as err:
            raise _wrap(err, f"FillPidMetrics failed for PID {pid}") from err

        if state.cpu.total.ticks is not None:
            state.cpu.total.value = round_metric(float(state.cpu.total.ticks))

        last = self.procs_map.get_pid(state.pid or 0)
        state.sample_time = time.time()
        if last is not None:
            state = get_proc_cpu_percentage(last, state)

        if state.args and not state.cmdline:
            state.cmdline = " ".join(state.args)

        return state, True, partial

    def _cache_cmdline(self, state: ProcState) -> ProcState:
        previous = self.procs_map.get_pid(state.pid or 0)
        if previous is not None:
            if self.cache_cmdline:
                state.args = list(previous.args)
                state.cmdline = previous.cmdline
            state.env = None if previous.env is None else dict(previous.env)
        return state

    def _process_event(self, process: ProcState) -> Event:
        if not self.cpu_ticks:
            process.cpu.user.ticks = None
            process.cpu.system.ticks = None
            process.cpu.total.ticks = None
        return process.to_dict()

    def _total_memory(self) -> int:
        path = self.hostfs.join("proc", "meminfo")
        try:
            text = Path(path).read_text(encoding="utf-8", errors="replace")
        except OSError as err:
            _log.warning("Getting memory details: %s", err)
            return 0
        for line in text.splitlines():
            if line.startswith("MemTotal:"):
                parts = line.split()
                try:
                    value = int(parts[1])
                except (IndexError, ValueError):
                    _log.warning("Getting memory details: malformed line %r", line)
                    return 0
                if len(parts) > 2 and parts[2].lower() == "kb":
                    value *= 1024
                return value
        return 0


def list_states(hostfs: Resolver) -> tuple[list[ProcState], NonFatalError | None]:
    """Return every process with only its basic information filled in."""
    stats = Stats(hostfs=hostfs, procs=[".*"])
    stats._skip_extended = True

    procs_map, plist, partial = stats.fetch_pids()
    failed = _extract_failed_pids(procs_map)
    if partial is not None and failed:
        _log.debug("error fetching process metrics: %s", partial)
        return plist, NonFatalError(ValueError(_FAILED_PIDS_MESSAGE.format(len(failed))))
    return plist, partial


def get_pid_state(hostfs: Resolver, pid: int) -> PidState | None:
    """Return the scheduler state of ``pid``.

    Raises ProcessLookupError if the process does not exist.
    """
    if not os.path.isdir(hostfs.join("proc", str(pid))):
        raise ProcessLookupError(errno.ESRCH, "process does not exist")
    try:
        state = get_info_for_pid(hostfs, pid)
    except (OSError, ValueError) as err:
        raise _wrap(err, f"error getting state info for pid {pid}") from err
    return state.state