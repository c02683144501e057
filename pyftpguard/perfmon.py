# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
Process-wide operational counters of an FTPServer, updated by every
worker thread and read by the administrative surface.

Counters are independent of each other: a snapshot is consistent per
counter, not across counters.
"""

import os
import threading
import time

import psutil

from .log import logger
from .utils import format_bytes
from .utils import format_duration

__all__ = ["PerformanceLedger"]


_COUNTERS = (
    "total_connections",
    "commands",
    "uploads",
    "downloads",
    "bytes_sent",
    "bytes_received",
    "errors",
)


class PerformanceLedger:
    """Thread safe counters plus a live connections gauge.

     - (float) report_interval:
        seconds between summary log lines written by the reporter
        thread started with start(); 0 disables it (defaults to 300).
    """

    report_interval = 300

    def __init__(self, report_interval=None):
        if report_interval is not None:
            self.report_interval = report_interval
        self._lock = threading.Lock()
        self._proc = psutil.Process(os.getpid())
        self._exit = threading.Event()
        self._reporter = None
        self._reset()

    def _reset(self):
        with self._lock:
            self._counters = dict.fromkeys(_COUNTERS, 0)
            self._current_connections = 0
            self._peak_connections = 0
            self._started = time.time()
            self._started_mono = time.monotonic()

    def __repr__(self):
        return (
            f"<{self.__class__.__name__}"
            f" connections={self.current_connections}"
            f" commands={self.get('commands')}>"
        )

    # --- updates

    def _incr(self, name, n=1):
        with self._lock:
            self._counters[name] += n

    def connection_opened(self):
        with self._lock:
            self._counters["total_connections"] += 1
            self._current_connections += 1
            self._peak_connections = max(
                self._peak_connections, self._current_connections
            )

    def connection_closed(self):
        with self._lock:
            if self._current_connections > 0:
                self._current_connections -= 1

    def command_processed(self):
        self._incr("commands")

    def bytes_sent(self, n):
        self._incr("bytes_sent", n)

    def bytes_received(self, n):
        self._incr("bytes_received", n)

    def upload_completed(self):
        self._incr("uploads")

    def download_completed(self):
        self._incr("downloads")

    def error_occurred(self):
        self._incr("errors")

    # --- reads

    def get(self, name):
        with self._lock:
            return self._counters[name]

    @property
    def current_connections(self):
        return self._current_connections

    def uptime(self):
        return time.monotonic() - self._started_mono

    def snapshot(self):
        """Return all counters as a dict, plus uptime, per-second rates
        and the process memory and thread count.
        """
        with self._lock:
            ret = dict(self._counters)
            ret["current_connections"] = self._current_connections
            ret["peak_connections"] = self._peak_connections
            ret["started"] = self._started
        uptime = max(self.uptime(), 0.001)
        ret["uptime"] = uptime
        ret["commands_per_sec"] = ret["commands"] / uptime
        ret["bytes_sent_per_sec"] = ret["bytes_sent"] / uptime
        ret["bytes_received_per_sec"] = ret["bytes_received"] / uptime
        try:
            with self._proc.oneshot():
                ret["memory_rss"] = self._proc.memory_info().rss
                ret["num_threads"] = self._proc.num_threads()
        except psutil.Error:
            ret["memory_rss"] = None
            ret["num_threads"] = threading.active_count()
        return ret

    def reset(self):
        """Zero all counters. The live connections gauge is kept."""
        with self._lock:
            current = self._current_connections
        self._reset()
        with self._lock:
            self._current_connections = current
            self._peak_connections = current
        logger.info("performance statistics reset")

    # --- reports

    def format_summary(self, snapshot=None):
        s = snapshot or self.snapshot()
        return (
            f"connections={s['current_connections']}"
            f" (total={s['total_connections']})"
            f" commands={s['commands']}"
            f" uploads={s['uploads']} downloads={s['downloads']}"
            f" sent={format_bytes(s['bytes_sent'])}"
            f" received={format_bytes(s['bytes_received'])}"
            f" errors={s['errors']}"
            f" uptime={format_duration(s['uptime'])}"
        )

    def format_stats(self):
        s = self.snapshot()
        mem = format_bytes(s["memory_rss"]) if s["memory_rss"] else "n/a"
        lines = [
            "=== Performance Statistics ===",
            f"Uptime: {format_duration(s['uptime'])}",
            "Connections:",
            f"  Current: {s['current_connections']}",
            f"  Peak: {s['peak_connections']}",
            f"  Total: {s['total_connections']}",
            "Commands:",
            f"  Total: {s['commands']}",
            f"  Rate: {s['commands_per_sec']:.2f}/sec",
            "Transfers:",
            f"  Uploads: {s['uploads']}",
            f"  Downloads: {s['downloads']}",
            f"  Bytes received: {format_bytes(s['bytes_received'])}",
            f"  Bytes sent: {format_bytes(s['bytes_sent'])}",
            f"Errors: {s['errors']}",
            "System Resources:",
            f"  Memory (RSS): {mem}",
            f"  Threads: {s['num_threads']}",
            "==============================",
        ]
        return "\n".join(lines)

    # --- periodic reporter

    def _report_loop(self):
        while not self._exit.wait(self.report_interval):
            logger.info("stats: %s", self.format_summary())

    def start(self):
        """Start logging a summary every 'report_interval' seconds."""
        if not self.report_interval:
            return
        if self._reporter is not None and self._reporter.is_alive():
            return
        self._exit.clear()
        self._reporter = threading.Thread(
            target=self._report_loop, name="pyftpguard-stats", daemon=True
        )
        self._reporter.start()

    def stop(self, timeout=None):
        self._exit.set()
        if self._reporter is not None:
            self._reporter.join(timeout)
            self._reporter = None
