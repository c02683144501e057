# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""Per-connection session state.

A Session is created by the worker thread which accepted the
connection and is only ever touched by that thread, hence it needs no
locking. The coarse login state is an explicit enum; it only changes
through Session.transition(), which rejects events that are not legal
in the current state:

    UNAUTHENTICATED --USER--> USERNAME_GIVEN --PASS ok--> AUTHENTICATED
          ^                        |                          |
          +------ PASS failed -----+        USER / REIN ------+
    any state --QUIT--> CLOSED
"""

import enum
import time

from .exceptions import IllegalTransitionError

__all__ = ["AuthEvent", "AuthState", "Session", "TransferType"]


class AuthState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    USERNAME_GIVEN = "username given"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class AuthEvent(enum.Enum):
    USER = "USER"
    PASS_OK = "PASS ok"
    PASS_FAILED = "PASS failed"
    REIN = "REIN"
    QUIT = "QUIT"


class TransferType(enum.Enum):
    ASCII = "A"
    BINARY = "I"

    @property
    def label(self):
        return "ASCII" if self is TransferType.ASCII else "Binary"


_S = AuthState
_E = AuthEvent
_TRANSITIONS = {
    (_S.UNAUTHENTICATED, _E.USER): _S.USERNAME_GIVEN,
    (_S.USERNAME_GIVEN, _E.USER): _S.USERNAME_GIVEN,
    (_S.AUTHENTICATED, _E.USER): _S.USERNAME_GIVEN,
    (_S.USERNAME_GIVEN, _E.PASS_OK): _S.AUTHENTICATED,
    (_S.USERNAME_GIVEN, _E.PASS_FAILED): _S.UNAUTHENTICATED,
    (_S.UNAUTHENTICATED, _E.REIN): _S.UNAUTHENTICATED,
    (_S.USERNAME_GIVEN, _E.REIN): _S.UNAUTHENTICATED,
    (_S.AUTHENTICATED, _E.REIN): _S.UNAUTHENTICATED,
    (_S.UNAUTHENTICATED, _E.QUIT): _S.CLOSED,
    (_S.USERNAME_GIVEN, _E.QUIT): _S.CLOSED,
    (_S.AUTHENTICATED, _E.QUIT): _S.CLOSED,
}
del _S, _E


class Session:
    """The state of a single FTP session.

     - (tuple) remote_address: the (ip, port) of the client.
     - (str) root: the real directory the session is confined to.
       It never changes.
     - (str) cwd: the current virtual directory, always absolute and
       "/" separated; "/" stands for root.
    """

    def __init__(self, remote_address, root):
        self.remote_address = remote_address
        self.remote_ip = remote_address[0]
        self.remote_port = remote_address[1]
        self.root = root
        self.state = AuthState.UNAUTHENTICATED
        self.username = None
        self.pending_username = None
        self.cwd = "/"
        self.rename_source = None
        self.utf8_enabled = False
        self.transfer_type = TransferType.BINARY
        # byte count announced by ALLO for the next STOR
        self.allocated_size = None
        self.connected_at = time.time()
        self.last_activity = time.monotonic()

    def __repr__(self):
        return (
            f"<{self.__class__.__name__}"
            f" {self.remote_ip}:{self.remote_port}"
            f" state={self.state.name} user={self.username!r}"
            f" cwd={self.cwd!r}>"
        )

    @property
    def authenticated(self):
        return self.state is AuthState.AUTHENTICATED

    @property
    def closed(self):
        return self.state is AuthState.CLOSED

    def can(self, event):
        """Whether 'event' is legal in the current state."""
        return (self.state, event) in _TRANSITIONS

    def transition(self, event, username=None):
        """Apply an auth event and return the new state.

        USER needs the 'username' argument. Entering UNAUTHENTICATED or
        USERNAME_GIVEN flushes the account information (user, directory,
        pending rename, transfer options).
        """
        try:
            new_state = _TRANSITIONS[(self.state, event)]
        except KeyError:
            raise IllegalTransitionError(
                f"{event.value} not allowed while {self.state.value}"
            ) from None
        if event is AuthEvent.USER:
            self.flush_account()
            self.pending_username = username
        elif event is AuthEvent.PASS_OK:
            self.username = self.pending_username
            self.pending_username = None
        elif event in (AuthEvent.PASS_FAILED, AuthEvent.REIN):
            self.flush_account()
        self.state = new_state
        return new_state

    def flush_account(self):
        """Forget everything tied to the logged in user."""
        self.username = None
        self.pending_username = None
        self.cwd = "/"
        self.rename_source = None
        self.allocated_size = None
        self.transfer_type = TransferType.BINARY

    def touch(self):
        """Record client activity."""
        self.last_activity = time.monotonic()

    def idle_time(self):
        return time.monotonic() - self.last_activity
