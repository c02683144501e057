# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
pytest config file, loaded before any test module.

Every test is wrapped by a fixture which snapshots the worker threads
and the listening sockets owned by this process, and complains if the
test leaves a server, a session or a ledger thread running.
"""

import atexit
import os
import threading
import warnings

import psutil
import pytest

from . import POSIX
from . import ROOT_DIR
from . import TESTFN_PREFIX
from . import safe_rmpath

# raise instead of emitting a ResourceWarning
STRICT = os.environ.get("PYFTPGUARD_STRICT_LEAKS") == "1"
this_proc = psutil.Process()


def _listening_ports():
    if not POSIX:
        return set()
    try:
        conns = this_proc.net_connections(kind="tcp")
    except psutil.AccessDenied:
        return set()
    return {c.laddr.port for c in conns if c.status == psutil.CONN_LISTEN}


def snapshot():
    return dict(
        threads=set(threading.enumerate()),
        listeners=_listening_ports(),
    )


def report_leak(nodeid, kind, leaked):
    msg = f"{nodeid!r} left {kind} behind: {sorted(map(str, leaked))}"
    if STRICT:
        raise RuntimeError(msg)
    warnings.warn(msg, ResourceWarning, stacklevel=2)


def check_leaks(before, nodeid):
    after = snapshot()
    # session threads exit asynchronously once their socket is closed
    threads = {
        t for t in after["threads"] - before["threads"] if t.is_alive()
    }
    for t in threads:
        t.join(1)
    threads = {t for t in threads if t.is_alive()}
    if threads:
        report_leak(nodeid, "threads", [t.name for t in threads])
    listeners = after["listeners"] - before["listeners"]
    if listeners:
        report_leak(nodeid, "listening sockets", listeners)


@pytest.fixture(autouse=True)
def leak_check(request):
    before = snapshot()
    yield
    if not request.session.testsfailed:
        check_leaks(before, request.node.nodeid)


@atexit.register
def remove_test_files():
    for name in os.listdir(ROOT_DIR):
        if name.startswith(TESTFN_PREFIX):
            safe_rmpath(os.path.join(ROOT_DIR, name))
