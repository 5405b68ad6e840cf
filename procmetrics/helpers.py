"""Shared calculations and error classification for process metrics."""

from __future__ import annotations

import errno
import math
import os
from collections.abc import Iterator
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from procmetrics.types import ProcState

_NON_FATAL_ERRNOS = frozenset({errno.EACCES, errno.EPERM, errno.EINVAL})
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class NonFatalError(Exception):
    """Metrics were collected only partially; what was returned is still valid."""

    def __init__(self, err: BaseException | None = None) -> None:
        super().__init__(err)
        self.err = err
        if err is not None:
            self.__cause__ = err

    def __str__(self) -> str:
        if self.err is not None:
            return f"non fatal error; reporting partial metrics: {self.err}"
        return "non fatal error"


def _error_chain(err: BaseException) -> Iterator[BaseException]:
    stack = [err]
    seen: set[int] = set()
    while stack:
        current = stack.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        if isinstance(current, BaseExceptionGroup):
            stack.extend(current.exceptions)
        if isinstance(current, NonFatalError) and current.err is not None:
            stack.append(current.err)
        if current.__cause__ is not None:
            stack.append(current.__cause__)


def is_non_fatal(err: BaseException | None) -> bool:
    """Return True if the error (or anything it wraps) can be safely ignored."""
    if err is None:
        return True
    for item in _error_chain(err):
        if isinstance(item, NonFatalError):
            return True
        if isinstance(item, OSError) and item.errno in _NON_FATAL_ERRNOS:
            return True
    return False


def to_non_fatal(err: BaseException | None) -> BaseException | None:
    """Wrap a non-fatal error in NonFatalError; leave other errors untouched."""
    if err is None:
        return None
    if not is_non_fatal(err):
        return err
    return NonFatalError(err)


def round_metric(value: float) -> float:
    """Round to four decimal places, halves away from zero."""
    if not math.isfinite(value):
        return value
    return math.copysign(math.floor(abs(value) * 10000 + 0.5) / 10000, value)


def unix_time_ms_to_time(unix_time_ms: int) -> str:
    """Format milliseconds since the Unix epoch as a UTC timestamp string."""
    moment = _EPOCH + timedelta(milliseconds=unix_time_ms)
    return f"{moment:%Y-%m-%dT%H:%M:%S}.{moment.microsecond // 1000:03d}Z"


def get_proc_mem_percentage(proc: ProcState, total_phy_mem: int) -> float | None:
    """Resident memory as a fraction of total physical memory."""
    if total_phy_mem == 0:
        return None
    return round_metric((proc.memory.rss.bytes or 0) / total_phy_mem)


def _num_cpu() -> int:
    return os.cpu_count() or 1


def get_proc_cpu_percentage(s0: ProcState, s1: ProcState) -> ProcState:
    """Return ``s1`` with CPU percentages computed against the earlier ``s0``.

    ``pct`` ranges over [0, number of cores]; ``norm_pct`` over [0, 1].
    """
    if s0.cpu.total.ticks is None or s1.cpu.total.ticks is None:
        return s1
    if s0.sample_time is None or s1.sample_time is None:
        return s1

    delta_ms = int(round((s1.sample_time - s0.sample_time) * 1e9)) // 1_000_000
    cpu_delta_ms = s1.cpu.total.ticks - s0.cpu.total.ticks

    if delta_ms == 0:
        if cpu_delta_ms == 0:
            return s1
        pct = math.inf if cpu_delta_ms > 0 else -math.inf
    else:
        pct = cpu_delta_ms / delta_ms

    normalized = pct / _num_cpu()
    total = replace(s1.cpu.total, pct=round_metric(pct), norm_pct=round_metric(normalized))
    return replace(s1, cpu=replace(s1.cpu, total=total))