# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import contextlib
import ftplib
import functools
import logging
import os
import re
import shutil
import socket
import stat
import threading
import time
import unittest
import uuid
import warnings

import psutil

import pyftpguard.servers
from pyftpguard.authorizers import DummyAuthorizer
from pyftpguard.handlers import FTPHandler
from pyftpguard.perfmon import PerformanceLedger
from pyftpguard.security import SecurityLedger
from pyftpguard.servers import FTPServer

HERE = os.path.realpath(os.path.abspath(os.path.dirname(__file__)))
ROOT_DIR = os.path.realpath(os.path.join(HERE, "..", ".."))

POSIX = os.name == "posix"

GITHUB_ACTIONS = "GITHUB_ACTIONS" in os.environ or "CIBUILDWHEEL" in os.environ
CI_TESTING = GITHUB_ACTIONS

# Attempt to use IP rather than hostname (test suite will run a lot faster)
try:
    HOST = socket.gethostbyname("localhost")
except OSError:
    HOST = "localhost"

USER = "user"
PASSWD = "12345"
# Use PID to disambiguate file name for parallel testing.
TESTFN_PREFIX = f"pyftpguard-tmp-{os.getpid()}-"
GLOBAL_TIMEOUT = 2

if CI_TESTING:
    GLOBAL_TIMEOUT *= 3


class PyftpguardTestCase(unittest.TestCase):
    """All test classes inherit from this one."""

    def setUp(self):
        super().setUp()
        reset_server_opts()

    def __str__(self):
        # Print a full path representation of the single unit tests
        # being run.
        fqmod = self.__class__.__module__
        if not fqmod.startswith("pyftpguard."):
            fqmod = "pyftpguard.test." + fqmod
        return f"{fqmod}.{self.__class__.__name__}.{self._testMethodName}"

    def get_testfn(self, suffix="", dir=None):
        fname = get_testfn(suffix=suffix, dir=dir)
        self.addCleanup(safe_rmpath, fname)
        return fname

    def get_testdir(self):
        """Create an empty directory and return its real path."""
        dirname = self.get_testfn()
        os.mkdir(dirname)
        return os.path.realpath(dirname)


def close_client(client):
    """Send QUIT (if still connected) and close an ftplib.FTP client."""
    try:
        if client.sock is not None:
            with contextlib.suppress(ftplib.Error, OSError, EOFError):
                resp = client.quit()
                assert resp.startswith("221"), resp
    finally:
        client.close()


def get_testfn(suffix="", dir=None):
    """Return the name of a file or directory which does not exist
    yet. The name starts with TESTFN_PREFIX so that conftest removes
    leftovers on exit.
    """
    dir = os.getcwd() if dir is None else dir
    for _ in range(100):
        name = f"{TESTFN_PREFIX}{uuid.uuid4().hex[:8]}{suffix}"
        if not os.path.lexists(os.path.join(dir, name)):
            return name
    raise RuntimeError("can't find a free test file name")


def safe_rmpath(path):
    """Convenience function for removing temporary test files or dirs."""
    try:
        st = os.lstat(path)
        if stat.S_ISDIR(st.st_mode):
            shutil.rmtree(path)
        else:
            os.remove(path)
    except FileNotFoundError:
        pass


def touch(name, data=b""):
    """Create a file and return its name."""
    with open(name, "wb") as f:
        f.write(data)
        return f.name


def disable_log_warning(fun):
    """Temporarily set FTP server's logging level to ERROR."""

    @functools.wraps(fun)
    def wrapper(self, *args, **kwargs):
        logger = logging.getLogger("pyftpguard")
        level = logger.getEffectiveLevel()
        logger.setLevel(logging.ERROR)
        try:
            return fun(self, *args, **kwargs)
        finally:
            logger.setLevel(level)

    return wrapper


def call_until(fun, expr, timeout=GLOBAL_TIMEOUT):
    """Poll fun() until the eval()ed 'expr' (where "ret" is the value
    returned by fun()) is true, and return that value.
    """
    deadline = time.monotonic() + timeout
    while True:
        ret = fun()
        if eval(expr):  # noqa: S307
            return ret
        if time.monotonic() > deadline:
            raise RuntimeError(f"timed out waiting for {expr!r} (ret={ret!r})")
        time.sleep(0.001)


def setup_server(root, handler=FTPHandler, addr=None, **security_opts):
    """Return an FTPServer listening on a free port, confined in
    'root', with a full-permissions USER and a read-only anonymous
    user.
    """
    addr = (HOST, 0) if addr is None else addr
    authorizer = DummyAuthorizer()
    authorizer.add_user(USER, PASSWD, perm="rwd")
    authorizer.add_anonymous(perm="r")
    security = SecurityLedger(**security_opts)
    stats = PerformanceLedger(report_interval=0)
    return FTPServer(
        addr,
        handler,
        root=root,
        authorizer=authorizer,
        security=security,
        stats=stats,
    )


def assert_free_resources(parent_pid=None):
    # check orphaned threads
    ts = [x for x in threading.enumerate() if x.name.startswith("pyftpguard")]
    assert not ts, ts
    # check unclosed connections
    if POSIX:
        this_proc = psutil.Process(parent_pid or os.getpid())
        cons = [
            x
            for x in this_proc.net_connections("tcp")
            if x.status == psutil.CONN_LISTEN
        ]
        if cons:
            warnings.warn(
                f"some listening sockets didn't close {str(cons)!r}",
                UserWarning,
                stacklevel=2,
            )


def reset_server_opts():
    # Since all pyftpguard configurable "options" are class attributes
    # we reset them at module.class level.
    klass = FTPHandler
    klass.timeout = 300
    klass.buffer_size = 8192
    klass.max_line_length = 2048
    klass.auth_failed_timeout = 0.001
    klass.banner = "pyftpguard ready."
    klass.encoding = "utf8"
    klass.unicode_errors = "replace"
    klass.use_gmt_times = True

    klass = pyftpguard.servers.FTPServer
    klass.max_cons = 10
    klass.join_timeout = GLOBAL_TIMEOUT
    klass.poll_timeout = 0.01


class FtpdThreadWrapper(threading.Thread):
    """A threaded FTP server used for running tests.
    It runs FTPServer.serve_forever() in a thread.
    The instance returned can be start()ed and stop()ped.
    """

    handler = FTPHandler
    # Makes the thread stop on interpreter exit.
    daemon = True

    def __init__(self, root, addr=None, **security_opts):
        self.parent_pid = os.getpid()
        super().__init__(name="test-ftpd")
        self.server = setup_server(
            root, handler=self.handler, addr=addr, **security_opts
        )
        self.host, self.port = self.server.address

    def run(self):
        self.server.serve_forever(handle_exit=False)

    def stop(self):
        self.server.close_all()
        self.join(GLOBAL_TIMEOUT)
        assert not self.is_alive()
        reset_server_opts()
        assert_free_resources(self.parent_pid)


class RawClient:
    """A minimal client speaking to the server over a plain socket.
    ftplib can't be used for transfers since payloads travel on the
    control connection.
    """

    def __init__(self, host, port, timeout=GLOBAL_TIMEOUT):
        self.sock = socket.create_connection((host, port), timeout=timeout)
        self.file = self.sock.makefile("rb")
        self.welcome = self.getresp()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def close(self):
        try:
            self.file.close()
        finally:
            self.sock.close()

    def send(self, line):
        self.sock.sendall(line.encode("utf8") + b"\r\n")

    def getline(self):
        line = self.file.readline()
        if not line:
            raise EOFError("connection closed by server")
        return line.decode("utf8").rstrip("\r\n")

    def getresp(self):
        """Read a (possibly multi-line) response and return it with
        lines joined by newlines.
        """
        line = self.getline()
        if line[3:4] != "-":
            return line
        code = line[:3]
        lines = [line]
        while True:
            line = self.getline()
            lines.append(line)
            if line[:3] == code and line[3:4] == " ":
                return "\n".join(lines)

    def sendcmd(self, line):
        self.send(line)
        return self.getresp()

    def login(self, user=USER, passwd=PASSWD):
        resp = self.sendcmd(f"USER {user}")
        assert resp.startswith("331"), resp
        resp = self.sendcmd(f"PASS {passwd}")
        assert resp.startswith("230"), resp
        return resp

    def read_exact(self, size):
        data = self.file.read(size)
        if len(data) != size:
            raise EOFError(f"got {len(data)} bytes out of {size}")
        return data

    def retrbinary(self, path):
        """Return a (data, final response) tuple."""
        resp = self.sendcmd(f"RETR {path}")
        if not resp.startswith("150"):
            return None, resp
        size = int(re.search(r"\((\d+) bytes\)", resp).group(1))
        data = self.read_exact(size)
        return data, self.getresp()

    def storbinary(self, path, data, allo=True):
        """Upload 'data'. With allo=False the write side of the socket
        is shut down to signal the end of the payload.
        """
        if allo:
            resp = self.sendcmd(f"ALLO {len(data)}")
            assert resp.startswith("200"), resp
        resp = self.sendcmd(f"STOR {path}")
        if not resp.startswith("150"):
            return resp
        self.sock.sendall(data)
        if not allo:
            self.sock.shutdown(socket.SHUT_WR)
        return self.getresp()

    def retrlines(self, cmd):
        """Return a (lines, final response) tuple."""
        resp = self.sendcmd(cmd)
        if not resp.startswith("150"):
            return None, resp
        lines = []
        while True:
            line = self.getline()
            if re.match(r"^\d{3} ", line):
                return lines, line
            lines.append(line)
