# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import os
import posixpath
import socket
import time
import traceback

from . import __ver__
from .exceptions import AuthenticationFailed
from .exceptions import FilesystemError
from .exceptions import _ConnectionLost
from .filesystems import AbstractedFS
from .filesystems import is_valid_filename
from .log import logger
from .session import AuthEvent
from .session import AuthState
from .session import Session
from .session import TransferType
from .utils import format_duration
from .utils import strerror

__all__ = ["FTPHandler", "proto_cmds"]


proto_cmds = {
    "ALLO": dict(
        perm=None,
        auth=True,
        arg=True,
        help="Syntax: ALLO <SP> bytes (announce the size of next STOR).",
    ),
    "CDUP": dict(
        perm=None,
        auth=True,
        arg=False,
        help="Syntax: CDUP (go to parent directory).",
    ),
    "CWD": dict(
        perm=None,
        auth=True,
        arg=True,
        help="Syntax: CWD <SP> dir-name (change working directory).",
    ),
    "DELE": dict(
        perm="d",
        auth=True,
        arg=True,
        help="Syntax: DELE <SP> file-name (delete file).",
    ),
    "FEAT": dict(
        perm=None,
        auth=False,
        arg=False,
        help="Syntax: FEAT (list all new features supported).",
    ),
    "HELP": dict(
        perm=None,
        auth=False,
        arg=None,
        help="Syntax: HELP [<SP> cmd] (show help).",
    ),
    "LIST": dict(
        perm="r",
        auth=True,
        arg=None,
        help="Syntax: LIST [<SP> path] (list files).",
    ),
    "MDTM": dict(
        perm="r",
        auth=True,
        arg=True,
        help="Syntax: MDTM <SP> path (file last modification time).",
    ),
    "MKD": dict(
        perm="w",
        auth=True,
        arg=True,
        help="Syntax: MKD <SP> path (create directory).",
    ),
    "MLSD": dict(
        perm="r",
        auth=True,
        arg=None,
        help="Syntax: MLSD [<SP> path] (list directory).",
    ),
    "MLST": dict(
        perm="r",
        auth=True,
        arg=None,
        help="Syntax: MLST [<SP> path] (show information about path).",
    ),
    "NOOP": dict(
        perm=None,
        auth=False,
        arg=False,
        help="Syntax: NOOP (just do nothing).",
    ),
    "OPTS": dict(
        perm=None,
        auth=True,
        arg=True,
        help="Syntax: OPTS <SP> cmd [<SP> option] (set option for command).",
    ),
    "PASS": dict(
        perm=None,
        auth=False,
        arg=None,
        help="Syntax: PASS [<SP> password] (set user password).",
    ),
    "PWD": dict(
        perm=None,
        auth=True,
        arg=False,
        help="Syntax: PWD (get current working directory).",
    ),
    "QUIT": dict(
        perm=None,
        auth=False,
        arg=None,
        help="Syntax: QUIT (quit current session).",
    ),
    "REIN": dict(
        perm=None, auth=True, arg=False, help="Syntax: REIN (flush account)."
    ),
    "RETR": dict(
        perm="r",
        auth=True,
        arg=True,
        help="Syntax: RETR <SP> file-name (retrieve a file).",
    ),
    "RMD": dict(
        perm="d",
        auth=True,
        arg=True,
        help="Syntax: RMD <SP> dir-name (remove directory).",
    ),
    "RNFR": dict(
        perm="w",
        auth=True,
        arg=True,
        help="Syntax: RNFR <SP> file-name (rename (source name)).",
    ),
    "RNTO": dict(
        perm="w",
        auth=True,
        arg=True,
        help="Syntax: RNTO <SP> file-name (rename (destination name)).",
    ),
    "SIZE": dict(
        perm="r",
        auth=True,
        arg=True,
        help="Syntax: SIZE <SP> file-name (get file size).",
    ),
    "STAT": dict(
        perm=None,
        auth=True,
        arg=None,
        help="Syntax: STAT [<SP> path name] (server stats [list files]).",
    ),
    "STOR": dict(
        perm="w",
        auth=True,
        arg=True,
        help="Syntax: STOR <SP> file-name (store a file).",
    ),
    "SYST": dict(
        perm=None,
        auth=False,
        arg=False,
        help="Syntax: SYST (get operating system type).",
    ),
    "TYPE": dict(
        perm=None,
        auth=True,
        arg=True,
        help="Syntax: TYPE <SP> [A | I] (set transfer type).",
    ),
    "USER": dict(
        perm=None,
        auth=False,
        arg=True,
        help="Syntax: USER <SP> user-name (set username).",
    ),
    "XCUP": dict(
        perm=None,
        auth=True,
        arg=False,
        help="Syntax: XCUP (obsolete; go to parent directory).",
    ),
    "XCWD": dict(
        perm=None,
        auth=True,
        arg=True,
        help="Syntax: XCWD <SP> dir-name (obsolete; change directory).",
    ),
    "XMKD": dict(
        perm="w",
        auth=True,
        arg=True,
        help="Syntax: XMKD <SP> dir-name (obsolete; create directory).",
    ),
    "XPWD": dict(
        perm=None,
        auth=True,
        arg=False,
        help="Syntax: XPWD (obsolete; get current dir).",
    ),
    "XRMD": dict(
        perm="d",
        auth=True,
        arg=True,
        help="Syntax: XRMD <SP> dir-name (obsolete; remove directory).",
    ),
}

# RFC-959 commands which are recognized but which need a separate data
# connection (or features) this server does not provide.
unimplemented_cmds = frozenset((
    "ABOR",
    "ACCT",
    "APPE",
    "EPRT",
    "EPSV",
    "MODE",
    "NLST",
    "PASV",
    "PORT",
    "REST",
    "SITE",
    "SMNT",
    "STOU",
    "STRU",
))  # fmt: skip

_MLSX_FACTS = ("type", "size", "modify", "perm")


class FTPHandler:
    """Implements the FTP server Protocol Interpreter (see RFC-959),
    handling commands received from the client on the control channel.

    One instance serves exactly one connection from a dedicated worker
    thread, using blocking I/O. File payloads (RETR, STOR) and listings
    travel on the same connection, framed as follows:

     - RETR: "150 ... (N bytes)." then exactly N raw bytes then "226".
     - STOR: "150" then either exactly the number of bytes announced by
       a previous ALLO, or every byte up to the client shutting down
       its sending side; then "226".
     - LIST / MLSD: "150" then one CRLF terminated line per entry
       then "226".

    All relevant session information is stored in class attributes
    reproduced below and can be modified before the server starts.

     - (int) timeout:
       the idle timeout of the connection in seconds; it applies to
       command reads and to every single read or write of a transfer
       (defaults to 300).

     - (int) buffer_size:
       the chunk size used while transferring files (defaults to 8192).

     - (int) max_line_length:
       the longest accepted command line, in bytes (defaults to 2048).

     - (float) auth_failed_timeout:
       the amount of time the server waits before sending a response
       in case of failed authentication (defaults to 3).

     - (str) banner:
       the string sent when client connects.

     - (str) encoding:
       the encoding used for commands and file names (defaults to
       "utf8").

     - (bool) use_gmt_times:
       when True (default) MDTM, MLSx and LIST use GMT times.

     - (instance) abstracted_fs:
       the class used to interact with the file system.
    """

    timeout = 300
    buffer_size = 8192
    max_line_length = 2048
    auth_failed_timeout = 3
    banner = f"pyftpguard {__ver__} ready."
    encoding = "utf8"
    unicode_errors = "replace"
    use_gmt_times = True
    abstracted_fs = AbstractedFS

    def __init__(self, sock, addr, server):
        """
        - (instance) sock: the connected socket.
        - (tuple) addr: the (ip, port) of the client.
        - (instance) server: the FTPServer instance which accepted it.
        """
        self.socket = sock
        self.server = server
        self.authorizer = server.authorizer
        self.security = server.security
        self.stats = server.stats
        self.session = Session(addr[:2], server.root)
        self.fs = self.abstracted_fs(server.root, self)
        self.remote_ip, self.remote_port = addr[:2]
        self._closing = False
        self._closed = False
        self.socket.settimeout(self.timeout)
        self._rfile = self.socket.makefile("rb")

    def __repr__(self):
        return (
            f"<{self.__class__.__name__}"
            f" {self.remote_ip}:{self.remote_port}"
            f" user={self.session.username!r}>"
        )

    __str__ = __repr__

    # --- worker loop

    def handle(self):
        """Called when the worker starts; send the greeting."""
        self.log("FTP session opened (connect)")
        self.respond(f"220 {self.banner}")

    def serve(self):
        """Read and dispatch commands until the client quits, goes
        away, or stays idle for longer than 'timeout' seconds.
        Socket failures end the loop; command failures do not.
        """
        while not self._closing:
            try:
                line = self._readline()
            except _ConnectionLost as err:
                if isinstance(err.__cause__, TimeoutError):
                    self.log("Control connection timed out.")
                    try:
                        self.respond("421 Control connection timed out.")
                    except _ConnectionLost:
                        pass
                else:
                    self.log(f"Connection lost ({err}).")
                return
            if line is None:
                self.log("FTP session closed (disconnect).")
                return
            if not line:
                continue
            self.process_command(line)
        self.log("FTP session closed (quit).")

    def run(self):
        """The whole life of the connection: greeting, command loop,
        teardown. Only _ConnectionLost is expected to escape from the
        protocol code, and it is handled here.
        """
        try:
            self.handle()
            self.serve()
        except _ConnectionLost as err:
            self.log(f"Connection lost ({err}).")
        finally:
            self.close()

    def shutdown(self):
        """Unblock the worker thread (used by FTPServer.close_all()).
        Can be called from any thread.
        """
        self._closing = True
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def close(self):
        """Close the connection. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._closing = True
        if not self.session.closed:
            self.session.state = AuthState.CLOSED
        try:
            self._rfile.close()
        finally:
            self.socket.close()

    # --- socket I/O

    def _readline(self):
        """Return the next command line as a str, "" for lines to
        ignore, or None on EOF.
        """
        try:
            data = self._rfile.readline(self.max_line_length + 1)
            if not data:
                return None
            if not data.endswith(b"\n") and len(data) > self.max_line_length:
                while data and not data.endswith(b"\n"):
                    data = self._rfile.readline(self.max_line_length)
                self.respond("500 Command line too long.")
                return ""
        except OSError as err:
            raise _ConnectionLost(strerror(err)) from err
        return data.decode(self.encoding, self.unicode_errors).strip()

    def _recv(self, size):
        try:
            data = self._rfile.read1(size)
        except OSError as err:
            raise _ConnectionLost(strerror(err)) from err
        self.stats.bytes_received(len(data))
        return data

    def _send(self, data):
        try:
            self.socket.sendall(data)
        except OSError as err:
            raise _ConnectionLost(strerror(err)) from err

    def push(self, data):
        """Send a str on the control channel."""
        self._send(data.encode(self.encoding, self.unicode_errors))

    def respond(self, resp, logfun=logger.debug):
        """Send a response to the client. 'resp' may contain CRLF
        separated lines (multi-line replies).
        """
        self.push(resp + "\r\n")
        self.log_cmd(resp, "->", logfun=logfun)

    # --- logging

    def log(self, msg, logfun=logger.info):
        """Log a message, including additional identifying session data."""
        prefix = (
            f"{self.remote_ip}:{self.remote_port}-"
            f"[{self.session.username or ''}]"
        )
        logfun(f"{prefix} {msg}")

    def log_cmd(self, line, direction="<-", logfun=logger.debug):
        """Log a command or a response passing through the channel."""
        if line.upper().startswith("PASS "):
            line = "PASS ******"
        if line:
            line = line.splitlines()[0]
        self.log(f"{direction} {line}", logfun=logfun)

    def log_transfer(self, cmd, filename, completed, nbytes, elapsed):
        self.log(
            f"{cmd} {filename} completed={int(completed)} bytes={nbytes}"
            f" seconds={elapsed:.3f}"
        )

    # --- dispatch

    def process_command(self, line):
        """Parse one command line and dispatch it to the ftp_* method,
        after checking its argument, the login state and the user
        permissions. An unexpected exception raised by the command is
        logged and answered with 451; the session goes on.
        """
        self.session.touch()
        self.stats.command_processed()
        self.log_cmd(line, "<-")
        cmd, _, arg = line.partition(" ")
        cmd = cmd.upper()
        arg = arg.strip()

        if cmd not in proto_cmds:
            if cmd in unimplemented_cmds:
                self.respond(f'502 Command "{cmd}" not implemented.')
            else:
                self.respond(f'500 Command "{cmd}" not understood.')
            return

        info = proto_cmds[cmd]
        if not arg and info["arg"] is True:
            self.respond("501 Syntax error: command needs an argument.")
            return
        if arg and info["arg"] is False:
            self.respond("501 Syntax error: command accepts no arguments.")
            return
        if info["auth"] and not self.session.authenticated:
            self.respond("530 Log in with USER and PASS first.")
            return
        if info["perm"] and not self.authorizer.has_perm(
            self.session.username, info["perm"]
        ):
            self.respond("550 Not enough privileges.")
            return

        method = getattr(self, "ftp_" + cmd)
        try:
            method(arg)
        except _ConnectionLost:
            raise
        except Exception:
            self.stats.error_occurred()
            logger.error(traceback.format_exc())
            self.respond("451 Internal server error.")

    # --- path helpers

    def _resolve(self, path):
        """Resolve a client path against the current directory and
        return a (virtual path, real path) tuple. FilesystemError is
        raised for paths escaping the root directory.
        """
        vpath = self.fs.ftpnorm(self.session.cwd, path)
        return vpath, self.fs.resolve_safe("/", vpath)

    def _fs_error(self, err):
        if isinstance(err, FilesystemError):
            self.respond(f"550 {err}.")
        else:
            self.respond(f"550 {strerror(err)}.")

    # --- authentication

    def ftp_USER(self, line):
        """Set the username for the current session."""
        # we always treat anonymous user as lower-case string.
        if line.lower() == "anonymous":
            line = "anonymous"
        was_authenticated = self.session.authenticated
        self.session.transition(AuthEvent.USER, username=line)
        if was_authenticated:
            self.log(
                f"OK USER {line!r}. Previous account information was"
                " flushed."
            )
            self.respond(
                "331 Previous account information was flushed, send"
                " password."
            )
        else:
            self.respond("331 Username ok, send password.")

    def ftp_PASS(self, line):
        """Check username's password against the authorizer."""
        session = self.session
        if session.authenticated:
            self.respond("503 User already authenticated.")
            return
        if not session.can(AuthEvent.PASS_OK):
            self.respond("503 Login with USER first.")
            return

        username = session.pending_username
        try:
            self.authorizer.validate_authentication(username, line)
        except AuthenticationFailed as err:
            session.transition(AuthEvent.PASS_FAILED)
            banned = self.security.record_failed_login(session.remote_ip)
            if self.auth_failed_timeout:
                time.sleep(self.auth_failed_timeout)
            self.log(f"Authentication failed (user: {username!r}).")
            if banned:
                self.respond("530 Maximum login attempts. Disconnecting.")
                self._closing = True
            else:
                self.respond(f"530 {err}")
            return

        session.transition(AuthEvent.PASS_OK)
        self.security.record_successful_login(session.remote_ip)
        self.respond(f"230 {self.authorizer.get_msg_login(username)}")
        self.log(f"USER {username!r} logged in.")

    def ftp_REIN(self, line):
        """Reinitialize user's current session."""
        self.session.transition(AuthEvent.REIN)
        self.log("OK REIN. Flushing account information.")
        self.respond("220 Ready for new user.")

    def ftp_QUIT(self, line):
        """Quit the current session disconnecting the client."""
        if self.session.authenticated:
            msg_quit = self.authorizer.get_msg_quit(self.session.username)
        else:
            msg_quit = "Goodbye."
        self.session.transition(AuthEvent.QUIT)
        self._closing = True
        self.respond(f"221 {msg_quit}")

    # --- filesystem navigation

    def ftp_PWD(self, line):
        """Return the name of the current working directory to the
        client.
        """
        cwd = self.session.cwd.replace('"', '""')
        self.respond(f'257 "{cwd}" is the current directory.')

    def ftp_CWD(self, path):
        """Change the current working directory. A relative ".." (also
        spelled "../" or "./..") never goes above the root directory.
        """
        parts = [x for x in path.split("/") if x not in ("", ".")]
        try:
            if parts == [".."] and not path.startswith("/"):
                vpath = posixpath.dirname(self.session.cwd) or "/"
                fspath = self.fs.resolve_safe("/", vpath)
            else:
                vpath, fspath = self._resolve(path)
        except FilesystemError as err:
            self._fs_error(err)
            return
        if not self.fs.isdir(fspath):
            self.respond(f'550 "{path}": No such directory.')
            return
        self.session.cwd = vpath
        self.respond(f'250 "{vpath}" is the current directory.')

    def ftp_CDUP(self, line):
        """Change into the parent directory."""
        self.ftp_CWD("..")

    # --- listings

    def _push_lines(self, iterator):
        self.respond("150 Here comes the directory listing.")
        buf = []
        size = 0
        for line in iterator:
            buf.append(line)
            size += len(line)
            if size >= self.buffer_size:
                self._send(b"".join(buf))
                self.stats.bytes_sent(size)
                buf, size = [], 0
        if buf:
            self._send(b"".join(buf))
            self.stats.bytes_sent(size)
        self.respond("226 Transfer complete.")

    def _listing_target(self, path):
        """Return (basedir, names) of what LIST / MLSD should show.
        Raises FilesystemError / OSError.
        """
        _, fspath = self._resolve(path)
        if self.fs.isdir(fspath):
            return fspath, sorted(self.fs.listdir(fspath))
        if not self.fs.lexists(fspath):
            raise FilesystemError("No such file or directory")
        basedir, filename = os.path.split(fspath)
        return basedir, [filename]

    def ftp_LIST(self, path):
        """Return a list of files in the specified directory (or of
        a single file) in "ls -l" format.
        """
        # "LIST -la" and the like; options are ignored
        if path.startswith("-"):
            path = path.partition(" ")[2].strip()
        try:
            basedir, names = self._listing_target(path or ".")
        except (OSError, FilesystemError) as err:
            self._fs_error(err)
            return
        self._push_lines(self.fs.format_list(basedir, names))

    def _listing_infos(self, path):
        """Return the FileInfo list MLSD should show: the entries of a
        directory or the file itself. Raises FilesystemError / OSError.
        """
        _, fspath = self._resolve(path)
        if self.fs.isdir(fspath):
            return self.fs.list_directory(fspath)
        info = self.fs.get_info(fspath)
        if info is None:
            raise FilesystemError("No such file or directory")
        return [info]

    def ftp_MLSD(self, path):
        """Return a machine readable list of the entries of the
        specified directory (RFC-3659).
        """
        try:
            infos = self._listing_infos(path or ".")
        except (OSError, FilesystemError) as err:
            self._fs_error(err)
            return
        perms = self.authorizer.get_perms(self.session.username)
        self._push_lines(self.fs.format_mlsx(infos, perms, _MLSX_FACTS))

    def ftp_MLST(self, path):
        """Return information about a single file or directory in a
        machine readable format (RFC-3659).
        """
        try:
            vpath, fspath = self._resolve(path or ".")
        except FilesystemError as err:
            self._fs_error(err)
            return
        info = self.fs.get_info(fspath)
        if info is None:
            self.respond("550 No such file or directory.")
            return
        perms = self.authorizer.get_perms(self.session.username)
        (line,) = self.fs.format_mlsx([info], perms, _MLSX_FACTS)
        facts = line.decode(self.encoding).split(" ", 1)[0]
        self.push(f"250-Listing {vpath}\r\n {facts} {vpath}\r\n")
        self.respond("250 End MLST.")

    def ftp_STAT(self, path):
        """Return statistics about current ftp session. If an argument
        is provided return directory listing over command channel.
        """
        if not path:
            s = self.session
            if s.authenticated:
                who = f"Logged in as: {s.username}"
            elif s.pending_username:
                who = "Waiting for password."
            else:
                who = "Waiting for username."
            lines = [
                f"211-pyftpguard {__ver__} status:",
                f" Connected to: {s.remote_ip}:{s.remote_port}",
                f" {who}",
                f" Current directory: {s.cwd}",
                f" TYPE: {s.transfer_type.label}; STRUcture: File;"
                " MODE: Stream",
                f" UTF8: {'on' if s.utf8_enabled else 'off'}",
                " Session time: "
                + format_duration(time.time() - s.connected_at),
                "211 End of status.",
            ]
            self.respond("\r\n".join(lines))
            return

        if path.startswith("-"):
            path = path.partition(" ")[2].strip() or "."
        try:
            vpath, _ = self._resolve(path)
            basedir, names = self._listing_target(path)
            lines = list(self.fs.format_list(basedir, names))
        except (OSError, FilesystemError) as err:
            self._fs_error(err)
            return
        self.push(f'213-Status of "{vpath}":\r\n')
        self._send(b"".join(b" " + x for x in lines))
        self.respond("213 End of status.")

    # --- transfers

    def ftp_TYPE(self, line):
        """Set current type data type to binary/ascii."""
        type = line.upper().replace(" ", "")
        if type in ("A", "AN", "L7"):
            self.session.transfer_type = TransferType.ASCII
            self.respond("200 Type set to: ASCII.")
        elif type in ("I", "L8"):
            self.session.transfer_type = TransferType.BINARY
            self.respond("200 Type set to: Binary.")
        else:
            self.respond(f'504 Unsupported type "{line}".')

    def ftp_ALLO(self, line):
        """Announce the exact size of the next STOR payload."""
        try:
            size = int(line.split()[0])
            if size < 0:
                raise ValueError(size)
        except ValueError:
            self.respond("501 Invalid ALLO parameter.")
            return
        self.session.allocated_size = size
        self.respond(f"200 ALLO OK, expecting {size} bytes.")

    def ftp_RETR(self, file):
        """Retrieve the specified file. Exactly the announced number of
        bytes follows the 150 reply.
        """
        try:
            vpath, fspath = self._resolve(file)
        except FilesystemError as err:
            self._fs_error(err)
            return
        if self.fs.isdir(fspath):
            self.respond(f'550 "{vpath}" is a directory.')
            return
        try:
            fd = self.fs.open(fspath, "rb")
            size = os.fstat(fd.fileno()).st_size
        except OSError as err:
            self._fs_error(err)
            return

        with fd:
            self.respond(
                f"150 Opening {self.session.transfer_type.label.upper()}"
                f' mode data transfer for "{vpath}" ({size} bytes).'
            )
            started = time.monotonic()
            sent = 0
            try:
                while sent < size:
                    chunk = fd.read(min(self.buffer_size, size - sent))
                    if not chunk:
                        raise OSError(f"file shrank to {sent} bytes")
                    self._send(chunk)
                    sent += len(chunk)
                    self.stats.bytes_sent(len(chunk))
            except OSError as err:
                # The byte count has been announced already: the
                # stream can't be re-synchronized, close the session.
                self.stats.error_occurred()
                self.log_transfer(
                    "RETR", fspath, False, sent, time.monotonic() - started
                )
                self.log(f"RETR aborted: {strerror(err)}", logger.error)
                self._closing = True
                self.respond("426 Transfer aborted; closing connection.")
                return
        self.respond("226 Transfer complete.")
        self.stats.download_completed()
        self.log_transfer(
            "RETR", fspath, True, sent, time.monotonic() - started
        )

    def _discard(self, remaining):
        """Read and throw away the rest of an upload."""
        while remaining is None or remaining > 0:
            size = self.buffer_size
            if remaining is not None:
                size = min(size, remaining)
            chunk = self._recv(size)
            if not chunk:
                return
            if remaining is not None:
                remaining -= len(chunk)

    def _remove_partial(self, fspath):
        try:
            self.fs.remove(fspath)
        except OSError as err:
            self.log(
                f"can't remove partial file {fspath!r}: {strerror(err)}",
                logger.error,
            )

    def ftp_STOR(self, file):
        """Store a file. The payload follows the 150 reply: either the
        number of bytes announced by ALLO, or everything the client
        sends up to shutting down its side of the connection.
        """
        size = self.session.allocated_size
        self.session.allocated_size = None
        try:
            vpath, fspath = self._resolve(file)
        except FilesystemError as err:
            self._fs_error(err)
            return
        if not is_valid_filename(posixpath.basename(vpath)):
            self.respond(f'553 Invalid file name "{file}".')
            return
        if self.fs.isdir(fspath):
            self.respond(f'550 "{vpath}" is a directory.')
            return
        if not self.fs.isdir(os.path.dirname(fspath)):
            self.respond("550 No such directory.")
            return
        try:
            fd = self.fs.open(fspath, "wb")
        except OSError as err:
            self._fs_error(err)
            return

        self.respond("150 Ok to send data.")
        started = time.monotonic()
        received = 0
        try:
            with fd:
                while size is None or received < size:
                    want = self.buffer_size
                    if size is not None:
                        want = min(want, size - received)
                    chunk = self._recv(want)
                    if not chunk:
                        break
                    fd.write(chunk)
                    received += len(chunk)
        except _ConnectionLost as err:
            self._remove_partial(fspath)
            self.stats.error_occurred()
            self.log_transfer(
                "STOR", fspath, False, received, time.monotonic() - started
            )
            if isinstance(err.__cause__, TimeoutError):
                self.respond("426 Transfer aborted; partial file removed.")
            raise
        except OSError as err:
            # local write error: consume the rest of the payload so
            # that the next command can be read
            self._remove_partial(fspath)
            self.stats.error_occurred()
            self._discard(None if size is None else size - received)
            if size is None:
                self._closing = True
            self.log(f"STOR failed: {strerror(err)}", logger.error)
            self.respond(f"451 Local error: {strerror(err)}.")
            return

        elapsed = time.monotonic() - started
        if size is not None and received < size:
            self._remove_partial(fspath)
            self.stats.error_occurred()
            self._closing = True
            self.log_transfer("STOR", fspath, False, received, elapsed)
            self.respond("426 Transfer aborted; partial file removed.")
            return
        if size is None:
            # the client shut down its side: no more commands can come
            self._closing = True
        self.respond("226 Transfer complete.")
        self.stats.upload_completed()
        self.log_transfer("STOR", fspath, True, received, elapsed)

    # --- filesystem mutations

    def ftp_DELE(self, path):
        """Delete the specified file."""
        try:
            vpath, fspath = self._resolve(path)
            if self.fs.isdir(fspath):
                self.respond(f'550 "{vpath}" is a directory; use RMD.')
                return
            if not self.fs.lexists(fspath):
                self.respond("550 No such file or directory.")
                return
            self.fs.remove(fspath)
        except (OSError, FilesystemError) as err:
            self._fs_error(err)
            return
        self.log(f'OK DELE "{vpath}".')
        self.respond("250 File removed.")

    def ftp_MKD(self, path):
        """Create the specified directory."""
        try:
            vpath, fspath = self._resolve(path)
        except FilesystemError as err:
            self._fs_error(err)
            return
        if not is_valid_filename(posixpath.basename(vpath)):
            self.respond(f'553 Invalid directory name "{path}".')
            return
        if self.fs.lexists(fspath):
            self.respond(f'550 "{vpath}" already exists.')
            return
        try:
            self.fs.mkdir(fspath)
        except OSError as err:
            self._fs_error(err)
            return
        self.log(f'OK MKD "{vpath}".')
        quoted = vpath.replace('"', '""')
        self.respond(f'257 "{quoted}" directory created.')

    def ftp_RMD(self, path):
        """Remove the specified directory, which must be empty."""
        try:
            vpath, fspath = self._resolve(path)
            if vpath == "/":
                self.respond("550 Can't remove root directory.")
                return
            if not self.fs.isdir(fspath):
                self.respond(f'550 "{vpath}": No such directory.')
                return
            if self.fs.listdir(fspath):
                self.respond(f'550 "{vpath}": Directory not empty.')
                return
            self.fs.rmdir(fspath)
        except (OSError, FilesystemError) as err:
            self._fs_error(err)
            return
        self.log(f'OK RMD "{vpath}".')
        self.respond("250 Directory removed.")

    def ftp_RNFR(self, path):
        """Rename the specified (only the source name is specified
        here, see RNTO command).
        """
        self.session.rename_source = None
        try:
            vpath, fspath = self._resolve(path)
        except FilesystemError as err:
            self._fs_error(err)
            return
        if vpath == "/":
            self.respond("550 Can't rename root directory.")
            return
        if not self.fs.lexists(fspath):
            self.respond("550 No such file or directory.")
            return
        self.session.rename_source = fspath
        self.respond("350 Ready for destination name.")

    def ftp_RNTO(self, path):
        """Rename file (destination name only, source is specified with
        RNFR). The pending source is forgotten whatever the outcome.
        """
        src = self.session.rename_source
        if src is None:
            self.respond("503 Bad sequence of commands: use RNFR first.")
            return
        try:
            vpath, dst = self._resolve(path)
            if not is_valid_filename(posixpath.basename(vpath)):
                self.respond(f'553 Invalid file name "{path}".')
                return
            if self.fs.lexists(dst):
                self.respond(f'550 "{vpath}" already exists.')
                return
            if not self.fs.lexists(src):
                self.respond("550 Rename source no longer exists.")
                return
            self.fs.rename(src, dst)
        except (OSError, FilesystemError) as err:
            self._fs_error(err)
            return
        finally:
            self.session.rename_source = None
        self.log(f'OK RNFR/RNTO "{self.fs.fs2ftp(src)}" ==> "{vpath}".')
        self.respond("250 Renaming ok.")

    # --- metadata

    def ftp_SIZE(self, path):
        """Return size of file in a format suitable for using with
        RESTart as defined in RFC-3659.
        """
        try:
            vpath, fspath = self._resolve(path)
            if not self.fs.isfile(self.fs.realpath(fspath)):
                self.respond(f'550 "{vpath}" is not retrievable.')
                return
            size = self.fs.getsize(fspath)
        except (OSError, FilesystemError) as err:
            self._fs_error(err)
            return
        self.respond(f"213 {size}")

    def ftp_MDTM(self, path):
        """Return last modification time of file to the client as an
        ISO 3307 style timestamp (YYYYMMDDHHMMSS) as defined in
        RFC-3659.
        """
        try:
            vpath, fspath = self._resolve(path)
            if not self.fs.isfile(self.fs.realpath(fspath)):
                self.respond(f'550 "{vpath}" is not retrievable.')
                return
            timefunc = time.gmtime if self.use_gmt_times else time.localtime
            lmt = time.strftime(
                "%Y%m%d%H%M%S", timefunc(self.fs.getmtime(fspath))
            )
        except (ValueError, OSError, FilesystemError) as err:
            if isinstance(err, ValueError):
                # mtime prior to year 1900
                self.respond(
                    "550 Can't determine file's last modification time."
                )
            else:
                self._fs_error(err)
            return
        self.respond(f"213 {lmt}")

    # --- miscellaneous

    def ftp_SYST(self, line):
        """Return system type (always returns UNIX type: L8)."""
        # This command is used to find out the type of operating system
        # at the server. The reply shall have as its first word one of
        # the system names listed in RFC-943.
        # Since that we always return a "/bin/ls -lA"-like output on
        # LIST we prefer to respond as if we would on Unix in any case.
        self.respond("215 UNIX Type: L8")

    def ftp_NOOP(self, line):
        """Do nothing."""
        self.respond("200 I successfully done nothin'.")

    def ftp_FEAT(self, line):
        """List all new features supported as defined in RFC-2398."""
        features = sorted([
            "MDTM",
            "MLST " + "".join(f"{x}*;" for x in _MLSX_FACTS),
            "SIZE",
            "TVFS",
            "UTF8",
        ])  # fmt: skip
        lines = ["211-Features supported:"]
        lines.extend(" " + x for x in features)
        lines.append("211 End FEAT.")
        self.respond("\r\n".join(lines))

    def ftp_OPTS(self, line):
        """Specify options for FTP commands as specified in RFC-2389."""
        parts = line.split()
        cmd = parts[0].upper()
        if cmd != "UTF8":
            self.respond(f'504 Option "{cmd}" not implemented.')
            return
        if len(parts) != 2 or parts[1].upper() not in ("ON", "OFF"):
            self.respond("501 Syntax: OPTS UTF8 <SP> ON|OFF.")
            return
        self.session.utf8_enabled = parts[1].upper() == "ON"
        if self.session.utf8_enabled:
            self.respond("200 UTF8 mode enabled.")
        else:
            self.respond("200 UTF8 mode disabled.")

    def ftp_HELP(self, line):
        """Return help text to the client."""
        if line:
            cmd = line.upper()
            if cmd in proto_cmds:
                self.respond(f"214 {proto_cmds[cmd]['help']}")
            else:
                self.respond("501 Unrecognized command.")
            return

        # provide a compact list of recognized commands
        keys = sorted(proto_cmds.keys())
        lines = ["214-The following commands are recognized:"]
        while keys:
            elems = keys[0:8]
            lines.append("".join(f" {x:<6}" for x in elems))
            del keys[0:8]
        lines.append("214 Help command successful.")
        self.respond("\r\n".join(lines))

    # --- support for deprecated cmds

    # RFC-1123 requires that the server treat XCUP, XCWD, XMKD, XPWD
    # and XRMD commands as synonyms for CDUP, CWD, MKD, LIST and RMD.
    # Such commands are obsoleted but some ftp clients (e.g. Windows
    # ftp.exe) still use them.

    def ftp_XCUP(self, line):
        """Change to the parent directory. Synonym for CDUP. Deprecated."""
        return self.ftp_CDUP(line)

    def ftp_XCWD(self, line):
        """Change the current working directory. Synonym for CWD.
        Deprecated.
        """
        return self.ftp_CWD(line)

    def ftp_XMKD(self, line):
        """Create the specified directory. Synonym for MKD. Deprecated."""
        return self.ftp_MKD(line)

    def ftp_XPWD(self, line):
        """Return the current working directory. Synonym for PWD.
        Deprecated.
        """
        return self.ftp_PWD(line)

    def ftp_XRMD(self, line):
        """Remove the specified directory. Synonym for RMD. Deprecated."""
        return self.ftp_RMD(line)
