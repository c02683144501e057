# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

__all__ = [
    "AuthenticationFailed",
    "AuthorizerError",
    "FilesystemError",
    "IllegalTransitionError",
    "PathEscapeError",
]


class AuthorizerError(Exception):
    """Base class for authorizer exceptions."""


class AuthenticationFailed(Exception):
    """Exception raised when authentication fails for any reason."""


class FilesystemError(Exception):
    """Custom class for filesystem-related exceptions.
    You can raise this from an AbstractedFS subclass in order to
    send a customized error string to the client.
    """


class PathEscapeError(FilesystemError):
    """Raised when a path resolves outside of the session root."""


class IllegalTransitionError(Exception):
    """Raised when an auth event is not legal in the current session
    state (e.g. PASS while already logged in).
    """


class _ConnectionLost(Exception):
    """Raised when reading from or writing to the client socket fails
    (reset, timeout, shutdown). It ends the session. Unlike errors
    coming from the filesystem it is not an OSError subclass.
    """
