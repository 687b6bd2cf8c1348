import os
import subprocess
import sys
import threading
from concurrent.futures import CancelledError
from dataclasses import fields
from types import SimpleNamespace
from unittest import mock

import pytest

from fcmicro.procwait import (
    CPUTimes,
    average_cpu_deltas,
    wait_for_pid_to_exit,
    wait_for_process_to_exist,
)


def _fake_times(value):
    return SimpleNamespace(**{f.name: value for f in fields(CPUTimes)})


def test_wait_for_process_to_exist_finds_self():
    cancel = threading.Event()
    matches = wait_for_process_to_exist(lambda p: p.pid == os.getpid(), 0.01, cancel)
    assert [p.pid for p in matches] == [os.getpid()]


def test_wait_for_process_to_exist_cancelled():
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(CancelledError):
        wait_for_process_to_exist(lambda p: True, 0.01, cancel)


def test_wait_for_process_to_exist_matcher_error_propagates():
    def matcher(proc):
        raise KeyError("boom")

    with pytest.raises(KeyError):
        wait_for_process_to_exist(matcher, 0.01, threading.Event())


def test_wait_for_process_to_exist_keeps_polling_until_cancel():
    cancel = threading.Event()
    calls = []

    def matcher(proc):
        calls.append(proc.pid)
        if len(calls) > 3:
            cancel.set()
        return False

    with pytest.raises(CancelledError):
        wait_for_process_to_exist(matcher, 0.01, cancel)
    assert len(calls) > 3


def test_wait_for_pid_to_exit_returns_after_exit():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(0.2)"])
    reaper = threading.Thread(target=proc.wait)
    reaper.start()
    timeout = threading.Timer(20, lambda: None)
    cancel = threading.Event()
    try:
        assert wait_for_pid_to_exit(proc.pid, 0.02, cancel) is None
    finally:
        timeout.cancel()
        reaper.join()
    assert proc.returncode == 0


def test_wait_for_pid_to_exit_cancelled_while_alive():
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(CancelledError):
        wait_for_pid_to_exit(os.getpid(), 0.01, cancel)


def test_average_cpu_deltas_cancelled_before_first_sample():
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(RuntimeError, match="before first data point"):
        average_cpu_deltas(0.01, cancel)


def test_average_cpu_deltas_single_sample_is_error():
    cancel = threading.Event()

    def fake_cpu_times(percpu=False):
        cancel.set()
        return _fake_times(1.0)

    with mock.patch("psutil.cpu_times", side_effect=fake_cpu_times):
        with pytest.raises(RuntimeError, match="only got one data point"):
            average_cpu_deltas(0.001, cancel)


def test_average_cpu_deltas_worked_example():
    cancel = threading.Event()
    values = iter([10.0, 20.0, 30.0])

    def fake_cpu_times(percpu=False):
        value = next(values)
        if value == 30.0:
            cancel.set()
        return _fake_times(value)

    with mock.patch("psutil.cpu_times", side_effect=fake_cpu_times):
        result = average_cpu_deltas(0.001, cancel)
    assert result.user == 10.0
    assert len({getattr(result, f.name) for f in fields(CPUTimes)}) == 1


def test_average_cpu_deltas_sampling_error_propagates():
    with mock.patch("psutil.cpu_times", side_effect=OSError("no stats")):
        with pytest.raises(OSError, match="no stats"):
            average_cpu_deltas(0.001, threading.Event())


def test_average_cpu_deltas_real_samples_non_negative():
    cancel = threading.Event()
    timer = threading.Timer(0.35, cancel.set)
    timer.start()
    try:
        result = average_cpu_deltas(0.05, cancel)
    finally:
        timer.cancel()
    assert all(getattr(result, f.name) >= 0 for f in fields(CPUTimes))


def test_cpu_times_from_psutil_missing_fields_default_to_zero():
    times = CPUTimes.from_psutil(SimpleNamespace(user=1.5, system=2.5))
    assert times.user == 1.5
    assert times.system == 2.5
    assert times.iowait == 0.0
    assert times.guest_nice == 0.0