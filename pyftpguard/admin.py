# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
An interactive administration console for a running FTPServer.

It reads commands from stdin (or any file object) and prints read-only
reports of the server ledgers. It can also ban, unban and disconnect
addresses and shut the server down:

$ python3 -m pyftpguard --admin
admin> status
=== Server Status ===
Running: True
Active connections: 1 / 10
...
"""

import cmd
import ipaddress
import threading
import time

from .log import logger
from .utils import format_duration

__all__ = ["AdminConsole"]


class AdminConsole(cmd.Cmd):
    """A cmd.Cmd shell operating on an FTPServer instance."""

    intro = (
        "pyftpguard administration console. Type 'help' for available"
        " commands."
    )
    prompt = "admin> "

    def __init__(self, server, stdin=None, stdout=None):
        super().__init__(stdin=stdin, stdout=stdout)
        if stdin is not None:
            self.use_rawinput = False
        self.server = server

    def _print(self, s=""):
        self.stdout.write(s + "\n")

    def _check_ip(self, arg):
        try:
            return str(ipaddress.ip_address(arg))
        except ValueError:
            self._print(f"invalid IP address: {arg!r}")
            return None

    def emptyline(self):
        # don't repeat the last command
        return False

    def default(self, line):
        self._print(f"Unknown command: {line.split()[0]}")
        self._print("Type 'help' for available commands")

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except Exception as err:
            logger.exception("admin command %r failed", line)
            self._print(f"Error: {err}")
            return False

    # --- reports

    def do_status(self, arg):
        """Show whether the server is running and a performance summary."""
        server = self.server
        stats = server.get_stats()
        self._print("=== Server Status ===")
        self._print(f"Running: {stats['serving']}")
        if stats["address"]:
            host, port = stats["address"]
            self._print(f"Address: {host}:{port}")
        self._print(
            f"Active connections: {server.connection_count} /"
            f" {server.max_cons or 'unlimited'}"
        )
        self._print(
            "Performance: "
            + server.stats.format_summary(stats["performance"])
        )
        self._print("=====================")

    def do_stats(self, arg):
        """Show performance and security statistics."""
        self.do_performance(arg)
        self.do_security(arg)

    def do_connections(self, arg):
        """List the connected sessions."""
        stats = self.server.get_stats()
        sessions = stats["sessions"]
        self._print(
            f"Active connections: {len(sessions)} (max"
            f" {self.server.max_cons or 'unlimited'})"
        )
        now = time.time()
        for s in sessions:
            self._print(
                f"  {s['remote_ip']}:{s['remote_port']}"
                f" user={s['username'] or '-'} state={s['state']}"
                f" cwd={s['cwd']}"
                f" connected={format_duration(now - s['connected_at'])}"
                f" idle={format_duration(s['idle'])}"
            )

    def do_security(self, arg):
        """Show the security ledger (connections, failures, bans)."""
        self._print(self.server.security.format_stats())

    def do_performance(self, arg):
        """Show the performance counters."""
        self._print(self.server.stats.format_stats())

    def do_users(self, arg):
        """List the configured users and their permissions."""
        self._print("=== Users ===")
        for name, perm in self.server.authorizer.list_users():
            self._print(f"  {name}: perm={perm}")
        self._print("=============")

    def do_config(self, arg):
        """Show the effective configuration."""
        server = self.server
        handler = server.handler
        security = server.security
        self._print("=== Configuration ===")
        self._print(f"Root directory: {server.root}")
        self._print(f"Max connections: {server.max_cons}")
        self._print(f"Max connections per IP: {security.max_cons_per_ip}")
        self._print(f"Max login attempts: {security.max_login_attempts}")
        self._print(f"Ban duration: {security.ban_duration}s")
        self._print(
            f"Rate limit: {security.max_requests_per_window} per"
            f" {security.rate_window}s"
        )
        self._print(f"Idle timeout: {handler.timeout}s")
        self._print(f"Buffer size: {handler.buffer_size}")
        self._print(f"Encoding: {handler.encoding}")
        self._print(f"Banner: {handler.banner}")
        self._print("=====================")

    # --- actions

    def do_reset(self, arg):
        """reset stats|security: zero the performance counters or forget
        failed logins, bans and rate windows.
        """
        target = arg.strip().lower()
        if target == "stats":
            self.server.stats.reset()
            self._print("Performance statistics reset")
        elif target == "security":
            self.server.security.reset()
            self._print("Security ledger reset")
        else:
            self._print("Usage: reset <stats|security>")

    def do_ban(self, arg):
        """ban <ip> [seconds]: ban an address and disconnect its sessions."""
        parts = arg.split()
        if not parts or len(parts) > 2:
            self._print("Usage: ban <ip> [seconds]")
            return
        ip = self._check_ip(parts[0])
        if ip is None:
            return
        duration = None
        if len(parts) == 2:
            try:
                duration = float(parts[1])
                if duration <= 0:
                    raise ValueError
            except ValueError:
                self._print(f"invalid duration: {parts[1]!r}")
                return
        self.server.security.ban(ip, duration)
        kicked = self._kick(ip)
        self._print(f"Banned {ip} ({kicked} sessions disconnected)")

    def do_unban(self, arg):
        """unban <ip>: lift the ban of an address."""
        ip = self._check_ip(arg.strip())
        if ip is None:
            return
        if self.server.security.unban(ip):
            self._print(f"Unbanned {ip}")
        else:
            self._print(f"{ip} is not banned")

    def do_kick(self, arg):
        """kick <ip>: disconnect all the sessions of an address."""
        ip = self._check_ip(arg.strip())
        if ip is None:
            return
        self._print(f"Disconnected {self._kick(ip)} sessions from {ip}")

    def _kick(self, ip):
        count = 0
        for handler in self.server.get_handlers():
            if handler.remote_ip == ip:
                handler.shutdown()
                count += 1
        return count

    def do_shutdown(self, arg):
        """Stop the server, disconnecting all clients."""
        self._print("Shutting down server...")
        logger.info("shutdown requested from admin console")
        self.server.close_all()
        return True

    def do_quit(self, arg):
        """Leave the console; the server keeps running."""
        return True

    do_exit = do_quit
    do_EOF = do_quit

    # --- thread support

    def start(self):
        """Run the console loop in a daemon thread and return it."""
        t = threading.Thread(
            target=self.cmdloop, name="pyftpguard-admin", daemon=True
        )
        t.start()
        return t
