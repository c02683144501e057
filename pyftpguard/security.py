# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
Per-address admission control and abuse mitigation shared by all the
worker threads of an FTPServer.

For every remote IP address the ledger keeps:

 - the number of currently active connections
 - the number of consecutive failed logins
 - the ban expiry time (if banned)
 - a fixed-duration request window (start time + request count)

Records are created on first contact and removed by a background
sweeper once they carry no information anymore (no connections, no
ban, no failures, expired window).

Locking: the address -> record dict is guarded by a global lock which
is held only to look up, create or drop records; every record has its
own lock guarding its counters, so that operations on different
addresses never wait on each other.
"""

import contextlib
import threading
import time

from .log import logger
from .utils import format_duration

__all__ = ["SecurityLedger"]


class _SecurityRecord:
    __slots__ = (
        "active_connections",
        "banned_until",
        "failed_logins",
        "last_failure",
        "lock",
        "requests_in_window",
        "window_start",
    )

    def __init__(self):
        self.lock = threading.Lock()
        self.active_connections = 0
        self.failed_logins = 0
        self.last_failure = None
        self.banned_until = None
        self.window_start = None
        self.requests_in_window = 0

    def is_banned(self, now):
        return self.banned_until is not None and now < self.banned_until

    def is_empty(self, now, rate_window):
        window_live = (
            self.window_start is not None
            and now - self.window_start < rate_window
        )
        return (
            self.active_connections <= 0
            and self.failed_logins == 0
            and not self.is_banned(now)
            and not window_live
        )


class SecurityLedger:
    """Tracks untrusted client behavior per source address.

    All the configurable options are class attributes which can be
    overridden via keyword arguments:

     - (int) max_login_attempts:
        consecutive failed logins after which the address gets banned
        (defaults to 3).

     - (float) ban_duration:
        how many seconds a ban lasts (defaults to 900).

     - (int) max_cons_per_ip:
        maximum simultaneous connections from the same address
        (defaults to 5, 0 == unlimited).

     - (float) rate_window:
        duration in seconds of the request counting window
        (defaults to 60).

     - (int) max_requests_per_window:
        requests allowed within a single window (defaults to 100,
        0 == unlimited).

     - (float) sweep_interval:
        seconds between background cleanups (defaults to 60).
    """

    max_login_attempts = 3
    ban_duration = 900
    max_cons_per_ip = 5
    rate_window = 60
    max_requests_per_window = 100
    sweep_interval = 60

    def __init__(self, timefunc=time.monotonic, **kwargs):
        for name, value in kwargs.items():
            if not hasattr(type(self), name) or name.startswith("_"):
                raise TypeError(f"unknown option {name!r}")
            setattr(self, name, value)
        self._timefunc = timefunc
        self._records = {}
        self._lock = threading.Lock()
        self._exit = threading.Event()
        self._sweeper = None

    def __repr__(self):
        return (
            f"<{self.__class__.__name__} addresses={len(self._records)}"
            f" max_login_attempts={self.max_login_attempts}"
            f" max_cons_per_ip={self.max_cons_per_ip}>"
        )

    # --- internals

    def _get(self, ip):
        rec = self._records.get(ip)
        if rec is None:
            with self._lock:
                rec = self._records.setdefault(ip, _SecurityRecord())
        return rec

    @contextlib.contextmanager
    def _locked(self, ip):
        # The sweeper may drop a record between lookup and locking;
        # retry until the locked record is the one in the map.
        while True:
            rec = self._get(ip)
            with rec.lock:
                if self._records.get(ip) is rec:
                    yield rec
                    return

    # --- admission

    def is_connection_allowed(self, ip):
        """Return False if 'ip' is banned or it already reached the
        maximum number of simultaneous connections.
        """
        rec = self._records.get(ip)
        if rec is None:
            return True
        now = self._timefunc()
        with rec.lock:
            if rec.is_banned(now):
                logger.info("connection denied for banned address %s", ip)
                return False
            if (
                self.max_cons_per_ip
                and rec.active_connections >= self.max_cons_per_ip
            ):
                logger.info(
                    "connection denied for %s: too many connections (%s)",
                    ip,
                    rec.active_connections,
                )
                return False
        return True

    def register_connection(self, ip):
        with self._locked(ip) as rec:
            rec.active_connections += 1
            return rec.active_connections

    def unregister_connection(self, ip):
        rec = self._records.get(ip)
        if rec is None:
            return 0
        with rec.lock:
            if rec.active_connections > 0:
                rec.active_connections -= 1
            return rec.active_connections

    def get_connection_count(self, ip):
        rec = self._records.get(ip)
        return rec.active_connections if rec is not None else 0

    # --- authentication

    def record_failed_login(self, ip):
        """Count a failed login; once the threshold is reached the
        address is banned for 'ban_duration' seconds.
        Return True if this failure caused a ban.
        """
        now = self._timefunc()
        with self._locked(ip) as rec:
            rec.last_failure = now
            rec.failed_logins += 1
            count = rec.failed_logins
            banned = (
                self.max_login_attempts
                and count >= self.max_login_attempts
            )
            if banned:
                rec.banned_until = now + self.ban_duration
                rec.failed_logins = 0
        if banned:
            logger.warning(
                "address %s banned for %s after %s failed logins",
                ip,
                format_duration(self.ban_duration),
                count,
            )
        else:
            logger.info("failed login from %s (attempt %s)", ip, count)
        return bool(banned)

    def record_successful_login(self, ip):
        """Clear the failed login counter. An already imposed ban stays
        in place until it expires.
        """
        rec = self._records.get(ip)
        if rec is None:
            return
        with rec.lock:
            rec.failed_logins = 0

    def get_failed_logins(self, ip):
        rec = self._records.get(ip)
        return rec.failed_logins if rec is not None else 0

    # --- bans

    def is_banned(self, ip):
        rec = self._records.get(ip)
        if rec is None:
            return False
        with rec.lock:
            return rec.is_banned(self._timefunc())

    def ban(self, ip, duration=None):
        """Ban an address manually."""
        duration = self.ban_duration if duration is None else duration
        with self._locked(ip) as rec:
            rec.banned_until = self._timefunc() + duration
        logger.warning(
            "address %s banned for %s", ip, format_duration(duration)
        )

    def unban(self, ip):
        """Lift the ban of an address; return True if it was banned."""
        rec = self._records.get(ip)
        if rec is None:
            return False
        with rec.lock:
            was_banned = rec.is_banned(self._timefunc())
            rec.banned_until = None
            rec.failed_logins = 0
        if was_banned:
            logger.info("address %s unbanned", ip)
        return was_banned

    # --- rate limiting

    def is_rate_limit_exceeded(self, ip):
        """Count one request from 'ip' and return True if it exceeds
        'max_requests_per_window' within the current window. A request
        arriving after the window expired opens a new window.
        """
        if not self.max_requests_per_window:
            return False
        now = self._timefunc()
        with self._locked(ip) as rec:
            if (
                rec.window_start is None
                or now - rec.window_start >= self.rate_window
            ):
                rec.window_start = now
                rec.requests_in_window = 1
                return False
            rec.requests_in_window += 1
            exceeded = rec.requests_in_window > self.max_requests_per_window
        if exceeded:
            logger.info("rate limit exceeded for %s", ip)
        return exceeded

    # --- cleanup

    def sweep(self):
        """Drop expired bans, expired windows, failed login counts
        older than 'ban_duration' and records left with nothing to
        track. Return the number of records removed.
        """
        now = self._timefunc()
        removed = 0
        with self._lock:
            for ip, rec in list(self._records.items()):
                with rec.lock:
                    if (
                        rec.banned_until is not None
                        and not rec.is_banned(now)
                    ):
                        rec.banned_until = None
                        logger.info("ban expired for %s", ip)
                    if (
                        rec.window_start is not None
                        and now - rec.window_start >= self.rate_window
                    ):
                        rec.window_start = None
                        rec.requests_in_window = 0
                    if (
                        rec.last_failure is not None
                        and now - rec.last_failure >= self.ban_duration
                    ):
                        # failures older than a ban are forgotten
                        rec.failed_logins = 0
                        rec.last_failure = None
                    if rec.is_empty(now, self.rate_window):
                        del self._records[ip]
                        removed += 1
        if removed:
            logger.debug("security sweep removed %s records", removed)
        return removed

    def reset(self):
        """Forget everything but the active connection counts."""
        with self._lock:
            for ip, rec in list(self._records.items()):
                with rec.lock:
                    rec.failed_logins = 0
                    rec.last_failure = None
                    rec.banned_until = None
                    rec.window_start = None
                    rec.requests_in_window = 0
                    if rec.active_connections <= 0:
                        del self._records[ip]
        logger.info("security ledger reset")

    def _sweep_loop(self):
        while not self._exit.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("security sweep failed")

    def start(self):
        """Start the background sweeper thread (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._exit.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="pyftpguard-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop(self, timeout=None):
        """Stop the background sweeper thread."""
        self._exit.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None

    # --- reports

    def get_stats(self):
        """Return a snapshot dict:

         - addresses: number of tracked addresses
         - active_connections: {ip: count} for addresses with connections
         - failed_logins: {ip: count} for addresses with failures
         - banned: {ip: seconds left}
         - rate_windows: number of open request windows
        """
        now = self._timefunc()
        ret = dict(
            addresses=0,
            active_connections={},
            failed_logins={},
            banned={},
            rate_windows=0,
        )
        with self._lock:
            items = list(self._records.items())
        ret["addresses"] = len(items)
        for ip, rec in items:
            with rec.lock:
                if rec.active_connections:
                    ret["active_connections"][ip] = rec.active_connections
                if rec.failed_logins:
                    ret["failed_logins"][ip] = rec.failed_logins
                if rec.is_banned(now):
                    ret["banned"][ip] = rec.banned_until - now
                if (
                    rec.window_start is not None
                    and now - rec.window_start < self.rate_window
                ):
                    ret["rate_windows"] += 1
        return ret

    def format_stats(self):
        """Return get_stats() as a human readable text report."""
        stats = self.get_stats()
        lines = ["=== Security Statistics ===", "Active connections by IP:"]
        for ip, count in sorted(stats["active_connections"].items()):
            lines.append(f"  {ip}: {count} connections")
        lines.append("Failed login attempts:")
        for ip, count in sorted(stats["failed_logins"].items()):
            lines.append(f"  {ip}: {count} attempts")
        lines.append("Banned IPs:")
        for ip, left in sorted(stats["banned"].items()):
            lines.append(f"  {ip}: {format_duration(left)} left")
        lines.append(f"Rate limit windows: {stats['rate_windows']}")
        lines.append("===========================")
        return "\n".join(lines)
