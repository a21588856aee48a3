"""Shared fixtures for the memory monitor tests."""

import threading
import time

import pytest

from monitor_settings import Settings
from process_provider import ProcessNotFound, ProcessProvider, ProviderError

MB = 1024 * 1024
GB = 1024 * MB


class FakeHandle:
    def __init__(self, pid):
        self.pid = pid


class FakeProcessProvider(ProcessProvider):
    """In-memory process table with scriptable failures."""

    def __init__(self, total_memory=16 * GB):
        self.total_memory = total_memory
        self.processes = {}
        self.killed = []
        self.list_error = None
        self.total_error = None
        self.memory_errors = set()
        self.terminate_errors = set()
        self._lock = threading.Lock()

    def add(self, pid, name="memhog", rss=0, percent=0.0):
        with self._lock:
            self.processes[pid] = {"name": name, "rss": rss, "percent": percent}

    def set_memory(self, pid, rss=None, percent=None):
        with self._lock:
            if rss is not None:
                self.processes[pid]["rss"] = rss
            if percent is not None:
                self.processes[pid]["percent"] = percent

    def exit(self, pid):
        with self._lock:
            self.processes.pop(pid, None)

    def list_by_executable_name(self, name):
        if self.list_error is not None:
            raise self.list_error
        with self._lock:
            return {pid for pid, info in self.processes.items() if info["name"] == name}

    def total_system_memory(self):
        if self.total_error is not None:
            raise self.total_error
        return self.total_memory

    def resolve(self, pid):
        with self._lock:
            if pid not in self.processes:
                raise ProcessNotFound(f"Process {pid} not found")
        return FakeHandle(pid)

    def _info(self, handle):
        if handle.pid in self.memory_errors:
            raise ProviderError(f"Access denied reading {handle.pid}")
        with self._lock:
            try:
                return self.processes[handle.pid]
            except KeyError:
                raise ProcessNotFound(f"Process {handle.pid} not found") from None

    def resident_memory(self, handle):
        return self._info(handle)["rss"]

    def memory_percent(self, handle):
        return self._info(handle)["percent"]

    def terminate(self, handle):
        if handle.pid in self.terminate_errors:
            raise ProviderError(f"Access denied killing {handle.pid}")
        with self._lock:
            if self.processes.pop(handle.pid, None) is None:
                raise ProcessNotFound(f"Process {handle.pid} already terminated")
            self.killed.append(handle.pid)


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def provider():
    return FakeProcessProvider()


@pytest.fixture
def settings(provider):
    """interval 1s, allowed 3s, 100MB absolute threshold on 'memhog'."""
    s = Settings(provider)
    s.set_proc_name("memhog")
    s.set_max_memory(100 * MB)
    s.set_interval(1)
    s.set_allowed_time(3)
    return s
