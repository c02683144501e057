# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import ftplib
import io

import pytest

from pyftpguard.admin import AdminConsole

from . import GLOBAL_TIMEOUT
from . import HOST
from . import PASSWD
from . import USER
from . import FtpdThreadWrapper
from . import PyftpguardTestCase
from . import call_until
from . import close_client
from . import setup_server


class TestAdminConsoleOffline(PyftpguardTestCase):
    """Commands run against a server which is not serving."""

    def setUp(self):
        super().setUp()
        self.server = setup_server(self.get_testdir())
        self.addCleanup(self.server.close_all)
        self.out = io.StringIO()
        self.console = AdminConsole(
            self.server, stdin=io.StringIO(), stdout=self.out
        )

    def run_cmd(self, line):
        self.out.seek(0)
        self.out.truncate()
        ret = self.console.onecmd(line)
        return ret, self.out.getvalue()

    def test_status(self):
        _, out = self.run_cmd("status")
        assert "=== Server Status ===" in out
        assert "Running: False" in out
        assert "Active connections: 0 / 10" in out
        assert "Performance: " in out

    def test_stats(self):
        _, out = self.run_cmd("stats")
        assert "=== Performance Statistics ===" in out
        assert "=== Security Statistics ===" in out

    def test_users(self):
        _, out = self.run_cmd("users")
        assert "anonymous: perm=r" in out
        assert f"{USER}: perm=rwd" in out

    def test_config(self):
        _, out = self.run_cmd("config")
        assert f"Root directory: {self.server.root}" in out
        assert "Max connections: 10" in out
        assert "Max login attempts: 3" in out
        assert "Idle timeout: 300s" in out

    def test_ban_unban(self):
        _, out = self.run_cmd("ban 10.0.0.1")
        assert out.strip() == "Banned 10.0.0.1 (0 sessions disconnected)"
        assert self.server.security.is_banned("10.0.0.1")
        _, out = self.run_cmd("security")
        assert "10.0.0.1" in out
        _, out = self.run_cmd("unban 10.0.0.1")
        assert out.strip() == "Unbanned 10.0.0.1"
        _, out = self.run_cmd("unban 10.0.0.1")
        assert out.strip() == "10.0.0.1 is not banned"

    def test_ban_duration(self):
        self.run_cmd("ban 10.0.0.1 30")
        banned = self.server.security.get_stats()["banned"]
        assert 0 < banned["10.0.0.1"] <= 30

    def test_bad_args(self):
        _, out = self.run_cmd("ban")
        assert "Usage: ban" in out
        _, out = self.run_cmd("ban foo")
        assert "invalid IP address" in out
        _, out = self.run_cmd("ban 10.0.0.1 -3")
        assert "invalid duration" in out
        _, out = self.run_cmd("kick 999.1.1.1")
        assert "invalid IP address" in out
        _, out = self.run_cmd("reset")
        assert "Usage: reset" in out
        assert not self.server.security.get_stats()["banned"]

    def test_reset(self):
        self.server.stats.command_processed()
        self.server.security.ban("10.0.0.1")
        _, out = self.run_cmd("reset stats")
        assert out.strip() == "Performance statistics reset"
        assert self.server.stats.get("commands") == 0
        _, out = self.run_cmd("reset security")
        assert out.strip() == "Security ledger reset"
        assert not self.server.security.is_banned("10.0.0.1")

    def test_unknown_command(self):
        ret, out = self.run_cmd("foo bar")
        assert not ret
        assert "Unknown command: foo" in out

    def test_command_error(self):
        def fail(arg):
            raise ValueError("boom")

        self.console.do_status = fail
        ret, out = self.run_cmd("status")
        assert not ret
        assert "Error: boom" in out

    def test_quit(self):
        for cmd in ("quit", "exit", "EOF"):
            ret, _ = self.run_cmd(cmd)
            assert ret is True

    def test_cmdloop(self):
        console = AdminConsole(
            self.server,
            stdin=io.StringIO("status\n\nusers\nquit\n"),
            stdout=self.out,
        )
        console.cmdloop()
        out = self.out.getvalue()
        assert "administration console" in out
        assert "=== Server Status ===" in out
        assert "=== Users ===" in out


class TestAdminConsoleLive(PyftpguardTestCase):
    """Commands affecting a running server."""

    def setUp(self):
        super().setUp()
        self.server = FtpdThreadWrapper(self.get_testdir())
        self.server.start()
        self.client = ftplib.FTP(timeout=GLOBAL_TIMEOUT)
        self.client.connect(self.server.host, self.server.port)
        self.client.login(USER, PASSWD)
        self.out = io.StringIO()
        self.console = AdminConsole(
            self.server.server, stdin=io.StringIO(), stdout=self.out
        )

    def tearDown(self):
        close_client(self.client)
        self.server.stop()
        super().tearDown()

    def test_connections(self):
        self.console.onecmd("connections")
        out = self.out.getvalue()
        assert "Active connections: 1 (max 10)" in out
        assert f"user={USER} state=AUTHENTICATED cwd=/" in out
        assert f"{HOST}:" in out

    def test_status(self):
        self.console.onecmd("status")
        out = self.out.getvalue()
        assert "Running: True" in out
        assert f"Address: {self.server.host}:{self.server.port}" in out
        assert "Active connections: 1 / 10" in out

    def test_kick(self):
        self.console.onecmd(f"kick {HOST}")
        assert f"Disconnected 1 sessions from {HOST}" in self.out.getvalue()
        ftpd = self.server.server
        call_until(lambda: ftpd.connection_count, "ret == 0")
        with pytest.raises((EOFError, OSError, ftplib.Error)):
            self.client.sendcmd("NOOP")
        # kicked, not banned
        self.client.close()
        self.client = ftplib.FTP(timeout=GLOBAL_TIMEOUT)
        self.client.connect(self.server.host, self.server.port)

    def test_ban(self):
        self.console.onecmd(f"ban {HOST}")
        assert f"Banned {HOST} (1 sessions disconnected)" in (
            self.out.getvalue()
        )
        ftpd = self.server.server
        call_until(lambda: ftpd.connection_count, "ret == 0")
        client = ftplib.FTP(timeout=GLOBAL_TIMEOUT)
        try:
            with pytest.raises(ftplib.error_temp, match="421"):
                client.connect(self.server.host, self.server.port)
        finally:
            client.close()

    def test_shutdown(self):
        ret = self.console.onecmd("shutdown")
        assert ret is True
        assert "Shutting down server..." in self.out.getvalue()
        self.server.join(GLOBAL_TIMEOUT)
        assert not self.server.is_alive()
        assert self.server.server.connection_count == 0
