# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
This module contains the main FTPServer class which listens on a
host:port and dispatches the incoming connections to a handler.

The main thread is used only to accept new connections. Every time a
new connection comes in, the server asks the SecurityLedger whether
the remote address may connect and, if the global connection limit is
not reached either, hands the socket to a separate thread running the
handler's blocking read/dispatch loop. Connections which are not
admitted are answered with "421" and closed: they are never queued.
"""

import errno
import os
import socket
import threading
import time
import traceback

from .authorizers import DummyAuthorizer
from .handlers import FTPHandler
from .log import config_logging
from .log import is_logging_configured
from .log import logger
from .perfmon import PerformanceLedger
from .security import SecurityLedger

__all__ = ["FTPServer"]

# errors which may be raised by accept() and which are not supposed
# to tear down the server
_ACCEPT_ERRORS = frozenset((
    errno.ECONNABORTED,
    errno.EAGAIN,
    errno.EINTR,
    errno.EMFILE,
    errno.ENFILE,
    errno.ENOBUFS,
    errno.ENOMEM,
    errno.EPROTO,
))  # fmt: skip


class FTPServer:
    """Creates a socket listening on <address>, dispatching the requests
    to a <handler> (typically FTPHandler class), each one in its own
    thread.

    Depending on the type of address specified IPv4 or IPv6 connections
    (or both, depending from the underlying system) will be accepted.

    All relevant session information is stored in class attributes
    described below.

     - (int) max_cons:
        number of maximum simultaneous connections accepted (defaults
        to 10). Can be set to 0 for unlimited but it is recommended
        to always have a limit to avoid running out of threads (DoS).

     - (float) join_timeout:
        how many seconds to wait when join()ing worker threads on
        shutdown (defaults to 10).

     - (float) poll_timeout:
        how often the accept loop checks whether it was asked to stop
        (defaults to 0.5).

    The per-address limits (max connections per IP, failed logins,
    request rate) live in the SecurityLedger instance.
    """

    max_cons = 10
    join_timeout = 10
    poll_timeout = 0.5
    reject_message = "421 Server busy, try again later."

    def __init__(
        self,
        address_or_socket,
        handler=FTPHandler,
        root=None,
        authorizer=None,
        security=None,
        stats=None,
        backlog=100,
    ):
        """Creates a socket listening on 'address' dispatching
        connections to a 'handler'.

         - (tuple) address_or_socket: the (host, port) pair on which
           the command channel will listen for incoming connections or
           an existent socket object.

         - (class) handler: the handler class to use.

         - (str) root: the directory all sessions are confined to
           (defaults to the current working directory).

         - (instance) authorizer: a DummyAuthorizer instance.

         - (instance) security: a SecurityLedger instance; a new one
           with default limits is created if not provided.

         - (instance) stats: a PerformanceLedger instance.

         - (int) backlog: the maximum number of queued connections
           passed to listen(). If a connection request arrives when
           the queue is full the client may raise ECONNRESET.
           Defaults to 100.
        """
        self.handler = handler
        self.backlog = backlog
        self.root = os.path.realpath(root if root is not None else os.getcwd())
        if not os.path.isdir(self.root):
            raise ValueError(f"no such directory: {self.root!r}")
        self.authorizer = (
            authorizer if authorizer is not None else DummyAuthorizer()
        )
        self.security = security if security is not None else SecurityLedger()
        self.stats = stats if stats is not None else PerformanceLedger()
        self._lock = threading.Lock()
        self._exit = threading.Event()
        self._handlers = set()
        self._active_tasks = []
        self._serving = False
        self._loop_done = threading.Event()
        self._loop_done.set()
        if callable(getattr(address_or_socket, "listen", None)):
            self.socket = address_or_socket
        else:
            self.socket = self._bind_af_unspecified(address_or_socket)
        self.socket.listen(backlog)
        # accept() wakes up periodically to check whether to stop
        self.socket.settimeout(self.poll_timeout)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close_all()

    def __repr__(self):
        status = [self.__class__.__module__ + "." + self.__class__.__name__]
        try:
            addr = self.address
        except OSError:
            addr = None
        if addr is not None:
            status.append(f"addr={addr[0]}:{addr[1]}")
        status.append(f"connections={self.connection_count}")
        return "<{} at {:#x}>".format(" ".join(status), id(self))

    @staticmethod
    def _bind_af_unspecified(addr):
        """Create a listening socket guessing the address family
        from addr.
        """
        host, port = addr
        err = "getaddrinfo() returned an empty list"
        info = socket.getaddrinfo(
            host or None,
            port,
            socket.AF_UNSPEC,
            socket.SOCK_STREAM,
            0,
            socket.AI_PASSIVE,
        )
        for af, socktype, proto, _, sa in info:
            sock = None
            try:
                sock = socket.socket(af, socktype, proto)
                if os.name not in ("nt", "cygwin"):
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind(sa)
            except OSError as exc:
                err = exc
                if sock is not None:
                    sock.close()
                continue
            return sock
        raise OSError(err)

    @property
    def address(self):
        return self.socket.getsockname()[:2]

    @property
    def connection_count(self):
        with self._lock:
            return len(self._handlers)

    def get_handlers(self):
        """Return a list of the handlers currently serving a client."""
        with self._lock:
            return list(self._handlers)

    def get_stats(self):
        """Return a read-only snapshot of the whole server: the
        performance counters, the security ledger and the connected
        sessions.
        """
        sessions = []
        for handler in self.get_handlers():
            s = handler.session
            sessions.append(
                dict(
                    remote_ip=s.remote_ip,
                    remote_port=s.remote_port,
                    username=s.username,
                    state=s.state.name,
                    cwd=s.cwd,
                    connected_at=s.connected_at,
                    idle=s.idle_time(),
                )
            )
        sessions.sort(key=lambda x: x["connected_at"])
        return dict(
            address=self.address if self._serving else None,
            root=self.root,
            max_cons=self.max_cons,
            serving=self._serving,
            performance=self.stats.snapshot(),
            security=self.security.get_stats(),
            sessions=sessions,
        )

    # --- start / stop

    def _log_start(self):
        if not is_logging_configured():
            # If we get to this point it means the user hasn't
            # configured logger. We want to log by default so
            # we configure logging ourselves so that it will
            # print to stderr.
            config_logging()

        addr = self.address
        logger.info(
            ">>> starting FTP server on %s:%s, pid=%i <<<",
            addr[0],
            addr[1],
            os.getpid(),
        )
        logger.info("root directory: %s", self.root)
        logger.info(
            "max connections: %s (%s per address)",
            self.max_cons or "unlimited",
            self.security.max_cons_per_ip or "unlimited",
        )
        logger.info(
            "ban after %s failed logins for %ss; rate limit: %s"
            " connections per %ss",
            self.security.max_login_attempts,
            self.security.ban_duration,
            self.security.max_requests_per_window or "unlimited",
            self.security.rate_window,
        )

    def serve_forever(self, handle_exit=True):
        """Start serving.

         - (bool) handle_exit: when True catches KeyboardInterrupt and
           SystemExit exceptions (generally caused by SIGTERM / SIGINT
           signals) and gracefully exits after cleaning up resources.
           Also, logs server start and stop.
        """
        if self._exit.is_set():
            raise RuntimeError("server was closed")
        self._serving = True
        self.security.start()
        self.stats.start()
        if handle_exit:
            self._log_start()
            try:
                self._accept_loop()
            except (KeyboardInterrupt, SystemExit):
                pass
            logger.info(
                ">>> shutting down FTP server (%s active workers) <<<",
                self.connection_count,
            )
            self.close_all()
        else:
            self._accept_loop()

    def _accept_loop(self):
        self._loop_done.clear()
        try:
            self._accept_until_closed()
        finally:
            self._loop_done.set()

    def _accept_until_closed(self):
        while not self._exit.is_set():
            try:
                sock, addr = self.socket.accept()
            except TimeoutError:
                continue
            except OSError as err:
                if self._exit.is_set():
                    break
                if err.errno in _ACCEPT_ERRORS:
                    # transient condition; log it and keep accepting
                    logger.warning("accept() failed: %s", err)
                    if err.errno in (errno.EMFILE, errno.ENFILE):
                        time.sleep(self.poll_timeout)
                    continue
                raise
            self.handle_accepted(sock, addr)

    def _accept_new_cons(self):
        """Return True if the server is willing to accept new connections."""
        if not self.max_cons:
            return True
        return self.connection_count < self.max_cons

    def _reject(self, sock, addr, reason):
        logger.info("%s:%s connection rejected (%s)", addr[0], addr[1], reason)
        try:
            sock.settimeout(2)
            sock.sendall((self.reject_message + "\r\n").encode("ascii"))
        except OSError:
            pass
        finally:
            sock.close()

    def handle_accepted(self, sock, addr):
        """Called when remote client initiates a connection."""
        handler = None
        ip = addr[0]
        try:
            if not self.security.is_connection_allowed(ip):
                self._reject(sock, addr, "address not allowed")
                return
            if self.security.is_rate_limit_exceeded(ip):
                self._reject(sock, addr, "rate limit exceeded")
                return
            # For performance and security reasons we should always set
            # a limit for the number of threads serving clients.
            if not self._accept_new_cons():
                self._reject(sock, addr, "too many connections")
                return

            handler = self.handler(sock, addr, self)
            self._register(handler)
            t = threading.Thread(
                target=self._loop, args=(handler,), name=repr(addr)
            )
            t.daemon = True
            try:
                t.start()
            except RuntimeError:
                self._unregister(handler)
                raise
            with self._lock:
                # clean finished tasks
                self._active_tasks = [
                    x for x in self._active_tasks if x.is_alive()
                ]
                self._active_tasks.append(t)
            return handler
        except Exception:
            # This is supposed to be an application bug that should
            # be fixed. We do not want to tear down the server though
            # (DoS). We just log the exception.
            logger.error(traceback.format_exc())
            if handler is not None:
                handler.close()
            else:
                sock.close()

    def _register(self, handler):
        with self._lock:
            self._handlers.add(handler)
        self.security.register_connection(handler.remote_ip)
        self.stats.connection_opened()

    def _unregister(self, handler):
        with self._lock:
            if handler not in self._handlers:
                return
            self._handlers.discard(handler)
        self.security.unregister_connection(handler.remote_ip)
        self.stats.connection_closed()

    def _loop(self, handler):
        """Serve a handler in a separate thread."""
        try:
            if not self._exit.is_set():
                handler.run()
        except Exception:
            logger.error(traceback.format_exc())
            self.stats.error_occurred()
        finally:
            handler.close()
            self._unregister(handler)

    def close_all(self):
        """Stop serving and also disconnect all currently connected
        clients, waiting at most 'join_timeout' seconds for each worker.
        """
        self._exit.set()
        self._serving = False
        self._loop_done.wait(self.join_timeout)
        try:
            self.socket.close()
        except OSError:
            pass
        for handler in self.get_handlers():
            handler.shutdown()
        with self._lock:
            tasks = self._active_tasks[:]
            del self._active_tasks[:]
        self._wait_for_tasks(tasks)
        self.security.stop(self.join_timeout)
        self.stats.stop(self.join_timeout)

    stop = close_all

    def _wait_for_tasks(self, tasks):
        """Wait for threads to terminate."""
        timeout = self.join_timeout
        for t in tasks:
            if t is threading.current_thread():
                continue
            t.join(timeout)
            if t.is_alive():
                # do not wait any longer for the remaining threads
                timeout = 0
                logger.warning("thread %r didn't terminate; ignoring it", t)
