"""
Process Provider - access to live OS processes for the memory monitor
Purpose: Find processes by executable name, read their memory and kill them
"""

import sys
from abc import ABC, abstractmethod

import psutil

PSUTIL_ERRORS = (psutil.Error, OSError)

# linux truncates executable names to 15 characters
MAX_LINUX_NAME_LENGTH = 15


class ProviderError(Exception):
    """Raised when process information can not be read or acted on"""


class ProcessNotFound(ProviderError):
    """Raised when a pid no longer refers to a running process"""


def is_linux():
    return sys.platform.startswith('linux')


class ProcessProvider(ABC):
    """Capabilities the memory monitor needs from the operating system"""

    @abstractmethod
    def list_by_executable_name(self, name):
        """Return the set of pids whose executable name is `name`"""

    @abstractmethod
    def total_system_memory(self):
        """Return total system memory in bytes"""

    @abstractmethod
    def resolve(self, pid):
        """Return a handle for `pid`, raising ProcessNotFound if it is gone"""

    @abstractmethod
    def resident_memory(self, handle):
        """Return the resident set size of a process in bytes"""

    @abstractmethod
    def memory_percent(self, handle):
        """Return the share of system memory used by a process, 0-100"""

    @abstractmethod
    def terminate(self, handle):
        """Kill a process"""


class PsutilProcessProvider(ProcessProvider):
    """ProcessProvider backed by psutil"""

    def list_by_executable_name(self, name):
        pids = set()
        try:
            for process in psutil.process_iter(['name']):
                if self._name_matches(process.info['name'], name):
                    pids.add(process.pid)
        except PSUTIL_ERRORS as e:
            raise ProviderError(f"Failed to list processes: {e}") from e
        return pids

    def total_system_memory(self):
        try:
            return psutil.virtual_memory().total
        except PSUTIL_ERRORS as e:
            raise ProviderError(f"Failed to read system memory: {e}") from e

    def resolve(self, pid):
        try:
            return psutil.Process(pid)
        except psutil.NoSuchProcess as e:
            raise ProcessNotFound(f"Process {pid} not found") from e
        except PSUTIL_ERRORS as e:
            raise ProviderError(f"Failed to open process {pid}: {e}") from e

    def resident_memory(self, handle):
        try:
            return handle.memory_info().rss
        except psutil.NoSuchProcess as e:
            raise ProcessNotFound(f"Process {handle.pid} not found") from e
        except PSUTIL_ERRORS as e:
            raise ProviderError(f"Failed to read memory of {handle.pid}: {e}") from e

    def memory_percent(self, handle):
        try:
            return handle.memory_percent()
        except psutil.NoSuchProcess as e:
            raise ProcessNotFound(f"Process {handle.pid} not found") from e
        except PSUTIL_ERRORS as e:
            raise ProviderError(f"Failed to read memory percent of {handle.pid}: {e}") from e

    def terminate(self, handle):
        try:
            handle.kill()
        except psutil.NoSuchProcess as e:
            raise ProcessNotFound(f"Process {handle.pid} already terminated") from e
        except PSUTIL_ERRORS as e:
            raise ProviderError(f"Failed to kill {handle.pid}: {e}") from e

    @staticmethod
    def _name_matches(process_name, name):
        """Compare names the way the kernel stores them"""
        if not process_name:
            return False
        if process_name == name:
            return True
        # psutil may recover the full name from cmdline, the target is truncated
        if is_linux() and len(process_name) > MAX_LINUX_NAME_LENGTH:
            return process_name[:MAX_LINUX_NAME_LENGTH] == name
        return False
