#!/usr/bin/env python3
"""
Memory Monitor - Kill processes that stay over a memory threshold
Purpose: Watch every process with a given executable name and kill the ones
         that remain over the threshold for longer than the allowed time
"""

import argparse
import enum
import logging
import os
import signal
import sys
import threading
import time
from datetime import timedelta
from pathlib import Path
try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:
    import tomli as tomllib  # Fallback for older Python versions

from kill_channel import ChannelClosed, KillChannel
from monitor_settings import InvalidSettingsError, Settings
from process_provider import ProviderError

# Setup logging (will be configured properly in main)
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.toml'
DEFAULT_LOG_FILE = '/var/log/memory_monitor.log'


class MonitorError(Exception):
    """Raised when monitoring can not start or continue"""


class MonitorState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class MemoryMonitor:
    """Kills processes that stay over a memory threshold.

    Every `settings.interval` seconds the monitor looks up all processes named
    `settings.proc_name`, adds the interval to the overage of each one that is
    at or over the threshold and resets the others. Processes whose overage
    reaches `settings.allowed_time` are killed (all tracked processes when
    `settings.kill_all` is set) and the killed pids are sent over `killed`.

    `killed` is unbuffered: each cycle waits until a consumer receives the
    notification. Call stop() to end run(), and reset() before running again.
    """

    def __init__(self, settings, provider=None):
        self.settings = settings
        self.provider = provider or settings.provider
        self.system_memory = None
        self.error = None
        self._lock = threading.Lock()
        self._active = False
        self._thread = None
        self.reset()

    @property
    def state(self):
        if self._done.is_set():
            return MonitorState.STOPPED
        if self._active:
            return MonitorState.RUNNING
        return MonitorState.IDLE

    def reset(self):
        """Prepare a stopped monitor for another run with fresh state"""
        with self._lock:
            if self._active:
                raise RuntimeError("Can not reset a running memory monitor, call stop() and wait for it first")
            self.pids = {}
            self.killed = KillChannel()
            self._done = threading.Event()

    def run(self):
        """Main monitoring loop, blocks until stop() is called"""
        self._claim()
        self._run_claimed()

    def _claim(self):
        with self._lock:
            if self._active:
                raise RuntimeError("Memory monitor is already running")
            self._active = True

    def _release(self):
        with self._lock:
            self._active = False

    def _run_claimed(self):
        try:
            try:
                self.system_memory = self.provider.total_system_memory()
            except ProviderError as e:
                raise MonitorError(f"Failed to read total system memory: {e}") from e

            if not self.settings.proc_name:
                raise MonitorError("Process name not properly supplied")

            if self._done.is_set():
                return

            self._loop()
        finally:
            self._release()

    def _loop(self):
        logger.info(f"Monitoring processes named {self.settings.proc_name!r}")
        self._debug(f"Settings: {self.settings}, system memory: {self.system_memory}")

        interval = self.settings.interval
        next_tick = time.monotonic() + interval
        while not self._done.wait(max(0.0, next_tick - time.monotonic())):
            self.refresh_pids()
            self._debug(f"Refreshed pids {self.pids}")

            pids = self.kill_check()
            if pids:
                try:
                    self.killed.send(pids)
                except ChannelClosed:
                    if self._done.is_set():
                        logger.info(f"Stopped before kill notification for {pids} was received")
                        return
                    raise

            # a late tick fires at once, ticks missed meanwhile are dropped
            next_tick = max(next_tick + interval, time.monotonic())

        logger.info("Memory monitor stopped")

    def start(self):
        """Run the monitor on a background thread"""
        self._claim()
        self.error = None
        self._thread = threading.Thread(target=self._run_in_thread, name="memory-monitor", daemon=True)
        try:
            self._thread.start()
        except RuntimeError:
            self._release()
            raise
        return self._thread

    def _run_in_thread(self):
        try:
            self._run_claimed()
        except Exception as e:  # re-raised by join()
            logger.error(f"Memory monitor failed: {e}")
            self.error = e
            self.stop()

    def join(self, timeout=None):
        """Wait for the background thread, re-raising any error from run().

        Returns False if the thread is still running after `timeout` seconds.
        """
        if self._thread is None:
            return True
        self._thread.join(timeout)
        if self._thread.is_alive():
            return False
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        return True

    def stop(self):
        """Stop monitoring, close the killed channel and let run() return.

        Call reset() before running this monitor again.
        """
        self._done.set()
        self.killed.close()

    def refresh_pids(self):
        """Track any newly started process with the monitored name"""
        try:
            found_pids = self.provider.list_by_executable_name(self.settings.proc_name)
        except ProviderError as e:
            raise MonitorError(f"Error trying to find pids: {e}") from e

        for pid in found_pids:
            if pid not in self.pids:
                self.pids[pid] = timedelta(0)

    def kill_check(self):
        """Kill whatever stayed over the threshold too long, return the killed pids"""
        exceeded = self.check_exceeded()
        if not exceeded:
            return []

        if self.settings.kill_all:
            pids_to_kill = list(self.pids)
        else:
            pids_to_kill = exceeded

        for pid in pids_to_kill:
            try:
                self.kill(pid)
            except ProviderError as e:
                self._debug(f"Error killing process {pid}: {e}")

        logger.warning(f"Killed processes named {self.settings.proc_name!r}: {pids_to_kill}")
        return pids_to_kill

    def kill(self, pid):
        proc = self.provider.resolve(pid)
        self.provider.terminate(proc)

    def check_exceeded(self):
        """Update the overage of every tracked pid and return the ones to kill.

        Pids that no longer exist are dropped. Changes are applied after the
        pass over the tracked pids.
        """
        interval = timedelta(seconds=self.settings.interval)
        allowed_time = timedelta(seconds=self.settings.allowed_time)

        pids_to_kill = []
        gone = []
        overage = {}
        for pid, exceeded_time in self.pids.items():
            try:
                proc = self.provider.resolve(pid)
            except ProviderError:
                self._debug(f"pid {pid} no longer exists")
                gone.append(pid)
                continue

            if self.is_over_threshold(pid, proc):
                exceeded_time += interval
                self._debug(f"pid {pid} is over the limit for {exceeded_time}")
                if exceeded_time >= allowed_time:
                    pids_to_kill.append(pid)
            else:
                exceeded_time = timedelta(0)
            overage[pid] = exceeded_time

        for pid in gone:
            del self.pids[pid]
        self.pids.update(overage)
        return pids_to_kill

    def is_over_threshold(self, pid, proc):
        """Compare RSS with max_memory, or memory percent with percent_memory"""
        try:
            if self.settings.max_memory is not None:
                return self.provider.resident_memory(proc) >= self.settings.max_memory
            return self.provider.memory_percent(proc) >= self.settings.percent_memory
        except ProviderError as e:
            self._debug(f"Failed to read memory of pid {pid}: {e}")
            return False

    def _debug(self, message):
        if self.settings.debug:
            logger.debug(message)


def setup_logging(log_file, debug=False):
    """Setup logging configuration"""
    # Ensure log directory exists and is writable
    log_dir = os.path.dirname(log_file)
    if log_dir and not os.path.exists(log_dir):
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create log directory {log_dir}: {e}")

    handlers = [logging.StreamHandler(sys.stdout)]

    # Try to add file handler
    try:
        handlers.append(logging.FileHandler(log_file))
    except OSError:
        logger.warning(f"Cannot write to {log_file}, logging to stdout only")

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )


def load_config(config_path=None):
    """Load configuration from a TOML file"""
    config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.error(f"Configuration file not found: {config_path}")
        sys.exit(1)

    try:
        with open(config_path, 'rb') as f:
            toml_config = tomllib.load(f)

        thresholds = toml_config.get('thresholds', {})
        target = toml_config['target']
        settings = toml_config.get('settings', {})

        config = {
            'MAX_MEMORY_MB': thresholds.get('max_memory_mb', 0),
            'PERCENT_MEMORY': thresholds.get('percent_memory'),
            'CHECK_INTERVAL': thresholds.get('check_interval'),
            'ALLOWED_TIME': thresholds.get('allowed_time'),
            'PROC_NAME': target['name'],
            'KILL_ALL': target.get('kill_all', False),
            'LOG_FILE': settings.get('log_file', DEFAULT_LOG_FILE),
            'DEBUG': settings.get('debug', False),
        }

        logger.info(f"Loaded configuration from {config_path}")
        return config

    except (OSError, KeyError, tomllib.TOMLDecodeError) as e:
        logger.error(f"Failed to load configuration from {config_path}: {e}")
        sys.exit(1)


def build_settings(config, provider=None):
    """Turn a loaded configuration into validated Settings"""
    settings = Settings(provider)
    settings.set_proc_name(config['PROC_NAME'])

    if config.get('MAX_MEMORY_MB'):
        settings.set_max_memory(int(config['MAX_MEMORY_MB'] * 1024 * 1024))
    elif config.get('PERCENT_MEMORY') is not None:
        settings.set_percent_memory(config['PERCENT_MEMORY'])

    # interval first, allowed time is validated against it
    if config.get('CHECK_INTERVAL') is not None:
        settings.set_interval(config['CHECK_INTERVAL'])
    if config.get('ALLOWED_TIME') is not None:
        settings.set_allowed_time(config['ALLOWED_TIME'])

    if config.get('KILL_ALL'):
        settings.enable_kill_all()
    if config.get('DEBUG'):
        settings.enable_debug()
    return settings


def install_signal_handlers(monitor):
    """Stop the monitor on SIGTERM and SIGINT"""
    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        monitor.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Kill processes that stay over a memory threshold")
    parser.add_argument("--config", help=f"Path to the TOML config file (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--debug", action="store_true", help="Log every monitoring cycle")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)

    # Load configuration first
    config = load_config(args.config)
    if args.debug:
        config['DEBUG'] = True

    # Setup logging with config
    setup_logging(config['LOG_FILE'], config['DEBUG'])

    # Check if running as root (recommended)
    if hasattr(os, 'geteuid') and os.geteuid() != 0:
        logger.warning("Not running as root. May not be able to kill all processes.")

    try:
        settings = build_settings(config)
    except (InvalidSettingsError, ProviderError) as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    monitor = MemoryMonitor(settings)
    install_signal_handlers(monitor)
    monitor.start()

    for pids in monitor.killed:
        logger.info(f"Kill notification: {pids}")

    try:
        monitor.join()
    except MonitorError as e:
        logger.error(f"Memory monitor stopped: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
