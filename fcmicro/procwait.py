"""Polling helpers for processes and CPU time sampling."""

from __future__ import annotations

import threading
from concurrent.futures import CancelledError
from dataclasses import dataclass, fields
from typing import Any, Callable, Iterator

import psutil


@dataclass(frozen=True)
class CPUTimes:
    """Aggregate CPU times, in seconds."""

    user: float = 0.0
    system: float = 0.0
    idle: float = 0.0
    nice: float = 0.0
    iowait: float = 0.0
    irq: float = 0.0
    softirq: float = 0.0
    steal: float = 0.0
    guest: float = 0.0
    guest_nice: float = 0.0

    @classmethod
    def from_psutil(cls, times: Any) -> CPUTimes:
        """Build from a psutil cpu_times result; missing fields count as zero."""
        return cls(**{f.name: float(getattr(times, f.name, 0.0)) for f in fields(cls)})


def wait_for_process_to_exist(
    matcher: Callable[[psutil.Process], bool],
    query_interval: float,
    cancel: threading.Event,
) -> list[psutil.Process]:
    """Poll running processes every ``query_interval`` seconds until ``matcher``
    accepts at least one, returning all matches.

    Raises CancelledError if ``cancel`` is set first; errors from the matcher
    propagate.
    """
    while not cancel.wait(query_interval):
        matches = [proc for proc in psutil.process_iter() if matcher(proc)]
        if matches:
            return matches
    raise CancelledError()


def wait_for_pid_to_exit(pid: int, query_interval: float, cancel: threading.Event) -> None:
    """Poll every ``query_interval`` seconds until ``pid`` no longer exists.

    Raises CancelledError if ``cancel`` is set first.
    """
    while not cancel.wait(query_interval):
        if not psutil.pid_exists(pid):
            return
    raise CancelledError()


def _sample_cpu_times(sample_interval: float, cancel: threading.Event) -> Iterator[CPUTimes]:
    while not cancel.wait(sample_interval):
        yield CPUTimes.from_psutil(psutil.cpu_times(percpu=False))


def average_cpu_deltas(sample_interval: float, cancel: threading.Event) -> CPUTimes:
    """Average CPU time consumed per ``sample_interval`` from now until ``cancel`` is set."""
    samples = _sample_cpu_times(sample_interval, cancel)
    first = next(samples, None)
    if first is None:
        raise RuntimeError("sample channel closed before first data point")

    count = 0
    last: CPUTimes | None = None
    for last in samples:
        count += 1
    if last is None:
        raise RuntimeError("only got one data point, cannot calculate average")

    return CPUTimes(
        **{
            f.name: (getattr(last, f.name) - getattr(first, f.name)) / count
            for f in fields(CPUTimes)
        }
    )