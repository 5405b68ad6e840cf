# procmetrics

Process metrics for Linux hosts, read straight from `/proc`, plus a small
self-monitoring report for the running program.

For each process it collects:

- name, state, pid, parent pid, process group and thread count
- command line, arguments, executable, working directory and environment
  (environment variables filtered by an allow-list of regular expressions)
- memory size, resident set size and shared memory, with RSS as a fraction
  of total physical memory (taken from `/proc/meminfo`)
- CPU ticks (in milliseconds) for user, system and total time, and CPU
  percentages computed between two samples of the same process
- open file descriptors and their soft and hard limits
- I/O counters from `/proc/<pid>/io`

A host filesystem root can be set, so that a program running in a container
can look at the host's processes through a mounted directory such as
`/hostfs`.

## Installation

```
pip install .
```

Python 3.11 or later is required. The package has no third-party
dependencies.

## Modules

- `procmetrics.resolve` – `Resolver` protocol, `TestingResolver` and
  `new_test_resolver(path)` for placing paths under a host root
- `procmetrics.types` – dataclasses such as `ProcState`, `ProcMemInfo`,
  `ProcCPUInfo`, `ProcFDInfo`, `ProcIOInfo`, `IncludeTopConfig` and the
  `PidState` enum
- `procmetrics.helpers` – `NonFatalError`, `is_non_fatal`, `to_non_fatal`,
  `round_metric`, `unix_time_ms_to_time`, `get_proc_mem_percentage` and
  `get_proc_cpu_percentage`
- `procmetrics.procfs` – low-level readers of `/proc` files
  (`get_info_for_pid`, `parse_proc_stat`, `fill_pid_metrics`,
  `get_mem_data`, `get_cpu_time`, `get_io_data`, `get_fd_stats`, ...)
- `procmetrics.process` – `Stats`, `ProcsTrack`, `list_states`,
  `get_pid_state` and `process_root_event`
- `procmetrics.report` – `Monitor`, `setup_metrics`, `process_name`,
  `ephemeral_id` and `user_info`

## Resolving paths under a host filesystem

```python
from procmetrics.resolve import new_test_resolver

host = new_test_resolver("/hostfs")
host.is_set()                  # True
host.join("proc", "1", "stat") # "/hostfs/proc/1/stat"

local = new_test_resolver("/")
local.is_set()                 # False
```

## Listing processes

```python
from procmetrics.process import list_states, get_pid_state
from procmetrics.resolve import new_test_resolver

root = new_test_resolver("/")

states, partial = list_states(root)
for state in states:
    print(state.pid, state.name, state.state)

print(get_pid_state(root, 1))
```

`list_states` fills in only the basic fields of each process and returns
them together with a `procmetrics.helpers.NonFatalError`, or `None`. A
`NonFatalError` means some processes could not be read (typically for lack
of permission) but the data returned is still valid; `is_non_fatal` tells
such errors apart from real failures. `get_pid_state` raises
`ProcessLookupError` if the process does not exist.

## Collecting full metrics

`procmetrics.process.Stats` holds the collection settings:

- `hostfs` – a resolver (defaults to `/`)
- `procs` – regular expressions matched against process names
- `env_whitelist` – regular expressions for environment variables to keep
- `cpu_ticks` – keep the tick counters in the events
- `cache_cmdline` – reuse arguments and command line from an earlier sample
- `include_top` – an `IncludeTopConfig` that narrows the result to the top
  processes by CPU and by memory

An invalid pattern raises `ValueError` when the `Stats` is created. Its main
calls are:

- `get()` – all matching processes, as a tuple of event dictionaries, ECS
  root events and a `NonFatalError` or `None`
- `get_one(pid)` – one process as an event dictionary
- `get_one_root_event(pid)` – one process as event, root event and partial
  error
- `get_self()` – the running process itself, as a `ProcState`

```python
from procmetrics.process import Stats
from procmetrics.types import IncludeTopConfig

stats = Stats(procs=[".*"], include_top=IncludeTopConfig(enabled=True, by_cpu=5))
events, roots, partial = stats.get()
```

CPU percentages appear from the second sample of a process onwards, since
they are computed from the difference between two samples.

## Self-monitoring

```python
from procmetrics.report import setup_metrics

monitor = setup_metrics("myservice", "1.0.0")

report = monitor.collect(full=True)
flat = monitor.flatten(full=True)

print(flat["beat.info.uptime.ms"])
print(flat["beat.cpu.total.ticks"])
print(flat["beat.memstats.rss"])
print(flat["system.cpu.cores"])
```

`collect` returns a nested dictionary with two sections:

- `beat` – `memstats` (allocated blocks, RSS and, with `full=True`, garbage
  collector counts), `cpu`, `runtime` (active thread count), `info` (uptime,
  ephemeral id, name, version) and, on Linux and FreeBSD, file-descriptor
  `handles`
- `system` – `cpu` (number of cores) and, except on Windows, `load`
  (load averages, raw and normalised by core count)

`flatten` returns the same values keyed by dotted paths. Each section is
also available on its own (`memstats`, `cpu`, `runtime`, `info`, `handles`,
`system_cpu`, `system_load`). The process name is cut to 15 characters on
Linux and macOS, matching the kernel's limit on command names. Each run gets
a random ephemeral id, available from `procmetrics.report.ephemeral_id()`;
`user_info()` returns the current user's name, uid and gid.

## What it does not do

- It reads only a Linux-style `/proc`; there is no collection for macOS,
  Windows or other systems.
- It does not collect cgroup metrics or per-process network counters.
- It has no command-line tool and no server or endpoint that publishes the
  metrics; it is a library to call from your own program.

## Running the tests

```
pip install ".[test]"
pytest
```