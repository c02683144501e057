# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import collections
import os
import re
import stat
import time

from .exceptions import FilesystemError
from .exceptions import PathEscapeError
from .utils import memoize

try:
    import grp
    import pwd
except ImportError:
    pwd = grp = None


__all__ = ["AbstractedFS", "FileInfo", "is_valid_filename"]


_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)  # fmt: skip
_SIX_MONTHS = 180 * 24 * 60 * 60

# MLSx "perm" fact letters granted by each user permission
_MLSX_DIR_PERMS = (("r", "el"), ("w", "cfm"), ("d", "dp"))
_MLSX_FILE_PERMS = (("r", "r"), ("w", "afw"), ("d", "d"))

_INVALID_CHARS = frozenset('<>:"/\\|?*')
_RESERVED_NAMES_RE = re.compile(
    r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\..*)?$", re.IGNORECASE
)

# What the listing helpers know about a single directory entry.
FileInfo = collections.namedtuple(
    "FileInfo", ["name", "size", "mtime", "isdir", "perm"]
)


def is_valid_filename(name):
    """Return True if 'name' is safe to be used as the name of a new
    file or directory: not empty, no path separators, no characters
    reserved on Windows and no DOS device names (CON, LPT1.txt, ...).
    """
    if not name or not name.strip():
        return False
    if name in (".", ".."):
        return False
    if any(c in _INVALID_CHARS or ord(c) < 32 for c in name):
        return False
    return not _RESERVED_NAMES_RE.match(name)


# ===================================================================
# --- base class
# ===================================================================


class AbstractedFS:
    """A class used to interact with the file system, providing a
    cross-platform interface compatible with both Windows and
    UNIX style filesystems where all paths use "/" separator.

    AbstractedFS distinguishes between "real" filesystem paths and
    "virtual" ftp paths emulating a UNIX chroot jail where the user
    can not escape the root directory (example: real "/srv/ftp"
    path will be seen as "/" by the client).

    It keeps no per-session state: the current working directory lives
    in the Session and is passed in as the base of every resolution.

    FilesystemError exception can be raised from within any of
    the methods below in order to send a customized error string
    to the client.
    """

    def __init__(self, root, cmd_channel=None):
        """
        - (str) root: the "real" directory the client is confined to
        - (instance) cmd_channel: the FTPHandler class instance (may be
          None, in which case listing defaults are used).
        """
        self._root = os.path.realpath(root)
        self.cmd_channel = cmd_channel

    @property
    def root(self):
        """The real root directory."""
        return self._root

    @property
    def encoding(self):
        return getattr(self.cmd_channel, "encoding", "utf8")

    @property
    def unicode_errors(self):
        return getattr(self.cmd_channel, "unicode_errors", "replace")

    @property
    def use_gmt_times(self):
        return getattr(self.cmd_channel, "use_gmt_times", True)

    # --- Pathname / conversion utilities

    def ftpnorm(self, base, ftppath):
        """Normalize a "virtual" ftp pathname (typically the raw string
        coming from client) against the virtual directory 'base'.

        Example (having "/foo" as base):
        >>> ftpnorm('/foo', 'bar')
        '/foo/bar'

        ".." components never climb above "/": a path that tries to
        raises PathEscapeError instead of being silently clamped.
        Pathname returned is always absolute and uses "/" separators.
        """
        if ftppath.startswith("/"):
            joined = ftppath
        else:
            joined = base.rstrip("/") + "/" + ftppath
        parts = []
        for part in joined.split("/"):
            if part in ("", "."):
                continue
            if part == "..":
                if not parts:
                    raise PathEscapeError(
                        f"{ftppath!r} points outside of the root directory"
                    )
                parts.pop()
            else:
                parts.append(part)
        return "/" + "/".join(parts)

    def ftp2fs(self, ftppath):
        """Translate an absolute, normalized "virtual" ftp pathname into
        the equivalent absolute "real" filesystem pathname.

        Example (having "/srv/ftp" as root directory):
        >>> ftp2fs("/foo")
        '/srv/ftp/foo'
        """
        p = ftppath.lstrip("/")
        if not p:
            return self.root
        return os.path.normpath(os.path.join(self.root, *p.split("/")))

    def fs2ftp(self, fspath):
        """Translate a "real" filesystem pathname into equivalent
        absolute "virtual" ftp pathname depending on the root directory.

        Example (having "/srv/ftp" as root directory):
        >>> fs2ftp("/srv/ftp/foo")
        '/foo'

        On invalid pathnames escaping from the root directory
        (e.g. "/srv" when root is "/srv/ftp") always return "/".
        """
        if os.path.isabs(fspath):
            p = os.path.normpath(fspath)
        else:
            p = os.path.normpath(os.path.join(self.root, fspath))
        if not self.validpath(p):
            return "/"
        p = p[len(self.root) :].replace(os.sep, "/")
        if not p.startswith("/"):
            p = "/" + p
        return p

    def validpath(self, path):
        """Check whether the path belongs to the root directory.
        Expected argument is a "real" filesystem pathname.

        If path is a symbolic link it is resolved to check its real
        destination.

        Pathnames escaping from the root directory are considered
        not valid.
        """
        root = self.realpath(self.root)
        path = self.realpath(path)
        try:
            return os.path.commonpath([root, path]) == root
        except ValueError:
            # different drives on Windows
            return False

    def resolve_safe(self, base, ftppath):
        """Resolve the client supplied 'ftppath' against the virtual
        directory 'base' and return the real filesystem path.

        Raises PathEscapeError if the result (symlinks included) falls
        outside of the root directory.
        """
        fspath = self.ftp2fs(self.ftpnorm(base, ftppath))
        if not self.validpath(fspath):
            raise PathEscapeError(
                f"{ftppath!r} points outside of the root directory"
            )
        return fspath

    # --- Wrapper methods around open()

    def open(self, filename, mode):
        """Open a file returning its handler."""
        return open(filename, mode)

    # --- Wrapper methods around os.* calls

    def mkdir(self, path):
        """Create the specified directory."""
        os.mkdir(path)

    def listdir(self, path):
        """List the content of a directory."""
        return os.listdir(path)

    def rmdir(self, path):
        """Remove the specified directory."""
        os.rmdir(path)

    def remove(self, path):
        """Remove the specified file."""
        os.remove(path)

    def rename(self, src, dst):
        """Rename the specified src file to the dst filename."""
        os.rename(src, dst)

    def stat(self, path):
        """Perform a stat() system call on the given path."""
        return os.stat(path)

    def lstat(self, path):
        """Like stat but does not follow symbolic links."""
        return os.lstat(path)

    def readlink(self, path):
        """Return the path a symbolic link points to."""
        return os.readlink(path)

    # --- Wrapper methods around os.path.* calls

    def isfile(self, path):
        """Return True if path is a file."""
        return os.path.isfile(path)

    def isdir(self, path):
        """Return True if path is a directory."""
        return os.path.isdir(path)

    def getsize(self, path):
        """Return the size of the specified file in bytes."""
        return os.path.getsize(path)

    def getmtime(self, path):
        """Return the last modified time as a number of seconds since
        the epoch."""
        return os.path.getmtime(path)

    def realpath(self, path):
        """Return the canonical version of path eliminating any
        symbolic links encountered in the path.
        """
        return os.path.realpath(path)

    def lexists(self, path):
        """Return True if path refers to an existing path, including
        a broken or circular symbolic link.
        """
        return os.path.lexists(path)

    def get_user_by_uid(self, uid):
        """Return the name of user id 'uid', the uid itself if it has
        no passwd entry, or "owner" where the pwd module is missing.
        """
        if pwd is None:
            return "owner"
        try:
            return pwd.getpwuid(uid).pw_name
        except KeyError:
            return uid

    def get_group_by_gid(self, gid):
        """Return the name of group id 'gid', the gid itself if it
        has no group entry, or "group" where the grp module is missing.
        """
        if grp is None:
            return "group"
        try:
            return grp.getgrgid(gid).gr_name
        except KeyError:
            return gid

    # --- FileInfo helpers

    def get_info(self, path):
        """Return a FileInfo for 'path' (symlinks followed) or None if
        it doesn't exist. 'perm' is "r" or "-" followed by "w" or "-",
        telling whether the process can read or write the entry.
        """
        try:
            st = self.stat(path)
        except (OSError, FilesystemError):
            return None
        isdir = stat.S_ISDIR(st.st_mode)
        perm = ("r" if os.access(path, os.R_OK) else "-") + (
            "w" if os.access(path, os.W_OK) else "-"
        )
        return FileInfo(
            name=os.path.basename(path) or "/",
            size=0 if isdir else st.st_size,
            mtime=st.st_mtime,
            isdir=isdir,
            perm=perm,
        )

    def list_directory(self, path):
        """Return a list of FileInfo for the entries of directory 'path',
        sorted by name. Entries which vanish while listing are skipped.
        """
        ret = []
        for name in sorted(self.listdir(path)):
            info = self.get_info(os.path.join(path, name))
            if info is not None:
                ret.append(info)
        return ret

    # --- Listing utilities

    def _timefunc(self, secs=None):
        if self.use_gmt_times:
            return time.gmtime(secs)
        return time.localtime(secs)

    def _ls_mtime(self, mtime, now):
        # "Mon dd HH:MM" for recent files, "Mon dd  YYYY" for files
        # older than six months, as proftpd does
        fmt = " %d  %Y" if now - mtime > _SIX_MONTHS else " %d %H:%M"
        try:
            tm = self._timefunc(mtime)
            return _MONTHS[tm.tm_mon - 1] + time.strftime(fmt, tm)
        except (ValueError, OverflowError, OSError):
            # mtime out of the range supported by the platform
            tm = self._timefunc()
            return _MONTHS[tm.tm_mon - 1] + time.strftime(" %d %H:%M", tm)

    def format_list(self, basedir, listing, ignore_err=True):
        """Yield one "/bin/ls -lA" style line (CRLF terminated bytes)
        per name in 'listing', an entry of directory 'basedir'.

        Entries which can't be stat()ed are skipped unless 'ignore_err'
        is False. Where the pwd and grp modules are not available
        owner and group are printed as "owner" and "group":

        -rw-rw-rw-   1 owner    group        7045 Sep 02 03:47 music.mp3
        drwxrwxrwx   2 owner    group        4096 Aug 31  2019 e-books
        """
        users = memoize(self.get_user_by_uid)
        groups = memoize(self.get_group_by_gid)
        now = time.time()
        for basename in listing:
            path = os.path.join(basedir, basename)
            try:
                st = self.lstat(path)
            except (OSError, FilesystemError):
                if ignore_err:
                    continue
                raise
            name = basename
            if stat.S_ISLNK(st.st_mode):
                try:
                    name = f"{basename} -> {self.readlink(path)}"
                except (OSError, FilesystemError):
                    if not ignore_err:
                        raise
            fields = (
                stat.filemode(st.st_mode),
                f"{st.st_nlink or 1:>3}",
                f"{users(st.st_uid)!s:<8}",
                f"{groups(st.st_gid)!s:<8}",
                f"{st.st_size:>8}",
                self._ls_mtime(st.st_mtime, now),
                name,
            )
            line = " ".join(fields) + "\r\n"
            yield line.encode(self.encoding, self.unicode_errors)

    def format_mlsx(self, infos, perms, facts):
        """Yield one MLSD/MLST line (CRLF terminated bytes) per FileInfo
        in 'infos', as returned by list_directory() or get_info().

         - (str) perms: the user permission letters ("r", "w", "d").
         - (tuple) facts: the facts to report, amongst "type", "perm",
           "size" and "modify". Directories never report "size".

        The "perm" fact only advertises what both the user and the
        file access bits of the entry allow. Facts are sorted by name:

        modify=20071029155301;perm=r;size=156;type=file; music.mp3
        modify=20071127230206;perm=el;type=dir; ebooks
        """
        for info in infos:
            # "d" and "w" both need the entry to be writable on disk
            allowed = "".join(
                x for x in perms if ("r" if x == "r" else "w") in info.perm
            )
            table = _MLSX_DIR_PERMS if info.isdir else _MLSX_FILE_PERMS
            values = {
                "type": "dir" if info.isdir else "file",
                "perm": "".join(v for k, v in table if k in allowed),
            }
            if not info.isdir:
                values["size"] = info.size
            try:
                values["modify"] = time.strftime(
                    "%Y%m%d%H%M%S", self._timefunc(info.mtime)
                )
            except (ValueError, OverflowError, OSError):
                pass
            factstr = "".join(
                f"{name}={values[name]};"
                for name in sorted(values)
                if name in facts
            )
            line = f"{factstr} {info.name}\r\n"
            yield line.encode(self.encoding, self.unicode_errors)
