"""
Monitor Settings - validated configuration for the memory monitor
Purpose: Hold thresholds, timing and target process for a MemoryMonitor
"""

import math
from datetime import timedelta

from process_provider import MAX_LINUX_NAME_LENGTH, PsutilProcessProvider, is_linux

DEFAULT_PERCENT_MEMORY = 70.0  # allow 70%
DEFAULT_INTERVAL = 1.0  # check every second
DEFAULT_ALLOWED_TIME = 10.0  # allow to be over threshold for 10 seconds
MAX_DURATION = timedelta(days=1_000_000).total_seconds()


class InvalidSettingsError(ValueError):
    """Raised when the supplied settings are incorrect"""


def _require_finite(value, name):
    if not math.isfinite(value):
        raise InvalidSettingsError(f"{name} must be a finite number")


def _require_duration(value, name):
    _require_finite(value, name)
    if value > MAX_DURATION:
        raise InvalidSettingsError(f"{name} can not exceed {MAX_DURATION} seconds")


class Settings:
    """Settings for a MemoryMonitor.

    Exactly one threshold is active: an absolute one in bytes (max_memory) or a
    percentage of system memory (percent_memory). Setting one clears the other.
    Durations are in seconds. Set the interval before the allowed time, the
    allowed time is only checked against the interval in effect when it is set.
    """

    def __init__(self, provider=None):
        self._provider = provider
        self.max_memory = None
        self.percent_memory = DEFAULT_PERCENT_MEMORY
        self.proc_name = ""
        self.kill_all = False
        self.debug = False
        self.interval = DEFAULT_INTERVAL
        self.allowed_time = DEFAULT_ALLOWED_TIME

    @property
    def provider(self):
        if self._provider is None:
            self._provider = PsutilProcessProvider()
        return self._provider

    @property
    def threshold_mode(self):
        return "absolute" if self.max_memory is not None else "percent"

    def set_max_memory(self, max_memory):
        """Set the maximum resident memory in bytes a process may use"""
        _require_finite(max_memory, "max memory")
        if max_memory < 0:
            raise InvalidSettingsError("max memory can not be negative")
        total = self.provider.total_system_memory()
        if max_memory > total:
            raise InvalidSettingsError(f"max memory greater than system total of {total}")
        self.max_memory = int(max_memory)
        self.percent_memory = None

    def set_percent_memory(self, percent_memory):
        """Set the percentage of system memory a process may use"""
        _require_finite(percent_memory, "percent of memory")
        if percent_memory <= 0 or percent_memory > 100.0:
            raise InvalidSettingsError("percent of memory can not be 0 or > 100")
        self.percent_memory = float(percent_memory)
        self.max_memory = None

    def set_proc_name(self, proc_name):
        """Set the process name to monitor, *all* processes with this name are watched"""
        if not proc_name:
            raise InvalidSettingsError("process name must be set")
        if is_linux() and len(proc_name) > MAX_LINUX_NAME_LENGTH:
            proc_name = proc_name[:MAX_LINUX_NAME_LENGTH]
        self.proc_name = proc_name

    def enable_kill_all(self):
        """Kill every matching process when any one of them stays over the threshold"""
        self.kill_all = True

    def set_interval(self, interval):
        _require_duration(interval, "interval")
        if interval <= 0:
            raise InvalidSettingsError("interval must be greater than 0")
        self.interval = float(interval)

    def set_allowed_time(self, allowed_time):
        """Set how long a process may stay over the threshold before it is killed"""
        _require_duration(allowed_time, "allowed time")
        if allowed_time <= self.interval:
            raise InvalidSettingsError("allowed time must be greater than interval")
        self.allowed_time = float(allowed_time)

    def enable_debug(self):
        self.debug = True

    def __repr__(self):
        if self.max_memory is not None:
            threshold = f"max_memory={self.max_memory}"
        else:
            threshold = f"percent_memory={self.percent_memory}"
        return (f"Settings(proc_name={self.proc_name!r}, {threshold}, "
                f"interval={self.interval}, allowed_time={self.allowed_time}, "
                f"kill_all={self.kill_all}, debug={self.debug})")
