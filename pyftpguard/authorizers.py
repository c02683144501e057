# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""An "authorizer" is a class handling authentications and permissions
of the FTP server. It is used by pyftpguard.handlers.FTPHandler
class for:

- verifying user password
- checking user permissions when a filesystem read/write event occurs

DummyAuthorizer is the only authorizer: it manages "virtual" FTP users
kept in memory. All users share the server root directory.
"""

import hmac
import threading

from .exceptions import AuthenticationFailed
from .exceptions import AuthorizerError

__all__ = ["DummyAuthorizer"]


class DummyAuthorizer:
    """Basic "dummy" authorizer class managing "virtual" FTP users.

    Permission letters:

     - "r" = list directories and retrieve files (LIST, MLSD, MLST,
       RETR, SIZE, MDTM, STAT)
     - "w" = store files, create directories, rename (STOR, MKD, RNFR,
       RNTO)
     - "d" = delete files or directories (DELE, RMD)
    """

    read_perms = "r"
    write_perms = "wd"

    def __init__(self):
        self.user_table = {}
        self._lock = threading.Lock()

    def add_user(
        self,
        username,
        password,
        perm="r",
        msg_login="Login successful.",
        msg_quit="Goodbye.",
    ):
        """Add a user to the virtual users table.

        AuthorizerError exception is raised on error conditions such
        as invalid permissions or duplicate usernames.
        """
        if not username:
            raise AuthorizerError("username can't be empty")
        self._check_permissions(perm)
        with self._lock:
            if username in self.user_table:
                raise AuthorizerError(f"user {username!r} already exists")
            self.user_table[username] = dict(
                pwd=str(password),
                perm=perm,
                msg_login=str(msg_login),
                msg_quit=str(msg_quit),
            )

    def add_anonymous(self, perm="r", **kwargs):
        """Add an anonymous user to the virtual users table.
        Any password is accepted for it.

        AuthorizerError exception is raised on error conditions such
        as invalid permissions or duplicate usernames.
        """
        self.add_user("anonymous", "", perm=perm, **kwargs)

    def remove_user(self, username):
        """Remove a user from the virtual users table."""
        with self._lock:
            try:
                del self.user_table[username]
            except KeyError:
                raise AuthorizerError(
                    f"no such user {username!r}"
                ) from None

    def validate_authentication(self, username, password):
        """Raises AuthenticationFailed if supplied username and
        password don't match the stored credentials, else return
        None.
        """
        msg = "Login incorrect."
        user = self.user_table.get(username)
        if user is None:
            raise AuthenticationFailed(msg)
        if username == "anonymous":
            return
        if not hmac.compare_digest(
            user["pwd"].encode("utf8"), str(password).encode("utf8")
        ):
            raise AuthenticationFailed(msg)

    def has_user(self, username):
        """Whether the username exists in the virtual users table."""
        return username in self.user_table

    def has_perm(self, username, perm):
        """Whether the user has permission over a filesystem event."""
        user = self.user_table.get(username)
        if user is None:
            return False
        return perm in user["perm"]

    def get_perms(self, username):
        """Return current user permissions."""
        return self.user_table.get(username, {}).get("perm", "")

    def get_msg_login(self, username):
        """Return the user's login message."""
        return self.user_table.get(username, {}).get(
            "msg_login", "Login successful."
        )

    def get_msg_quit(self, username):
        """Return the user's quitting message."""
        return self.user_table.get(username, {}).get("msg_quit", "Goodbye.")

    def list_users(self):
        """Return a list of (username, perm) tuples, sorted by name."""
        return sorted(
            (name, user["perm"]) for name, user in self.user_table.items()
        )

    def _check_permissions(self, perm):
        for p in perm:
            if p not in self.read_perms + self.write_perms:
                raise AuthorizerError(f"no such permission {p!r}")
