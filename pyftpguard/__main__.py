# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
Start a standalone FTP server from the command line:

$ python3 -m pyftpguard
"""

import argparse
import codecs
import logging
import os
import sys
import warnings

from . import __ver__
from .admin import AdminConsole
from .authorizers import DummyAuthorizer
from .handlers import FTPHandler
from .log import PREFIX_THREADS
from .log import config_logging
from .perfmon import PerformanceLedger
from .security import SecurityLedger
from .servers import FTPServer
from .utils import hilite
from .utils import term_supports_colors

DEFAULT_PORT = 2121


class ColorHelpFormatter(argparse.HelpFormatter):
    """Help formatter coloring group titles, option flags and their
    metavars.
    """

    def start_section(self, heading):
        super().start_section(hilite(heading.capitalize(), "orange"))

    def _format_action_invocation(self, action):
        if not action.option_strings:
            (name,) = self._metavar_formatter(action, action.dest)(1)
            return hilite(name, "white")
        flags = [hilite(opt, "lightblue") for opt in action.option_strings]
        if action.nargs != 0:
            default = self._get_default_metavar_for_optional(action)
            metavar = self._format_args(action, default)
            flags[-1] = f"{flags[-1]} {hilite(metavar, 'green')}"
        return ", ".join(flags)


def parse_encoding(value):
    try:
        codecs.lookup(value)
    except LookupError:
        raise argparse.ArgumentTypeError(
            f"unknown encoding: {value!r}"
        ) from None
    return value


def parse_port(value):
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid port number: {value!r}"
        ) from None
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(
            "port number must be between 0 and 65535"
        )
    return port


def parse_non_negative(value):
    try:
        num = float(value) if "." in value else int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid number: {value!r}"
        ) from None
    if num < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0 (got {value})")
    return num


def parse_positive(value):
    num = parse_non_negative(value)
    if num == 0:
        raise argparse.ArgumentTypeError(f"must be > 0 (got {value})")
    return num


def parse_directory(value):
    if not os.path.isdir(value):
        raise argparse.ArgumentTypeError(
            f"directory {value!r} does not exist"
        )
    return os.path.realpath(value)


def parse_args(args=None):
    usage = "python3 -m pyftpguard [options]"
    parser = argparse.ArgumentParser(
        usage=usage,
        description=main.__doc__,
        formatter_class=(
            ColorHelpFormatter
            if term_supports_colors()
            else argparse.HelpFormatter
        ),
    )

    # --- listening address, root and accounts

    group_main = parser.add_argument_group("Main options")
    group_main.add_argument(
        "-i",
        "--interface",
        default=None,
        metavar="ADDRESS",
        help="address to listen on (default: all interfaces)",
    )
    group_main.add_argument(
        "-p",
        "--port",
        type=parse_port,
        default=DEFAULT_PORT,
        metavar="PORT",
        help=f"TCP port to listen on, 0 for any (default: {DEFAULT_PORT})",
    )
    group_main.add_argument(
        "-w",
        "--write",
        action="store_true",
        default=False,
        help=(
            "grant upload, rename and delete rights to the account"
            " (default: read-only)"
        ),
    )
    group_main.add_argument(
        "-d",
        "--directory",
        type=parse_directory,
        default=os.getcwd(),
        metavar="PATH",
        help="the root directory clients are confined to (default: cwd)",
    )
    group_main.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="log every command and reply, with the session address",
    )
    group_main.add_argument(
        "-u",
        "--username",
        type=str,
        default=None,
        help="name of the single account (disables anonymous logins)",
    )
    group_main.add_argument(
        "-P",
        "--password",
        type=str,
        default=None,
        help="password of the -u account",
    )
    group_main.add_argument(
        "--anonymous",
        action="store_true",
        default=False,
        help="also allow anonymous logins when -u is given",
    )
    group_main.add_argument(
        "--admin",
        action="store_true",
        default=False,
        help="start the interactive administration console on stdin",
    )
    group_main.add_argument(
        "-v",
        "--version",
        action="store_true",
        help="print pyftpguard version and exit",
    )

    # --- security opts

    group_sec = parser.add_argument_group("Security options")
    group_sec.add_argument(
        "--max-cons",
        type=parse_non_negative,
        default=FTPServer.max_cons,
        help=(
            "global cap on concurrent sessions (default:"
            f" {FTPServer.max_cons})"
        ),
    )
    group_sec.add_argument(
        "--max-cons-per-ip",
        type=parse_non_negative,
        default=SecurityLedger.max_cons_per_ip,
        help=(
            "cap on concurrent sessions per client address (default:"
            f" {SecurityLedger.max_cons_per_ip}, 0 = unlimited)"
        ),
    )
    group_sec.add_argument(
        "--max-login-attempts",
        type=parse_positive,
        default=SecurityLedger.max_login_attempts,
        help=(
            "failed logins after which the client address gets banned"
            f" (default: {SecurityLedger.max_login_attempts})"
        ),
    )
    group_sec.add_argument(
        "--ban-duration",
        type=parse_positive,
        default=SecurityLedger.ban_duration,
        metavar="SECS",
        help=(
            "how long a banned address stays banned (default:"
            f" {SecurityLedger.ban_duration} seconds)"
        ),
    )
    group_sec.add_argument(
        "--rate-window",
        type=parse_positive,
        default=SecurityLedger.rate_window,
        metavar="SECS",
        help=(
            "duration of the connection rate limiting window (default:"
            f" {SecurityLedger.rate_window} seconds)"
        ),
    )
    group_sec.add_argument(
        "--max-requests",
        type=parse_non_negative,
        default=SecurityLedger.max_requests_per_window,
        help=(
            "max connections accepted from the same address within a rate"
            " window (default:"
            f" {SecurityLedger.max_requests_per_window}, 0 = unlimited)"
        ),
    )

    # --- session options

    group_misc = parser.add_argument_group("Other options")
    group_misc.add_argument(
        "--timeout",
        type=parse_positive,
        default=FTPHandler.timeout,
        help=f"idle session timeout (default: {FTPHandler.timeout} seconds)",
    )
    group_misc.add_argument(
        "--banner",
        type=str,
        default=FTPHandler.banner,
        help=(
            "greeting sent with the 220 reply (default:"
            f" {FTPHandler.banner!r})"
        ),
    )
    group_misc.add_argument(
        "--encoding",
        type=parse_encoding,
        default=FTPHandler.encoding,
        help=(
            "encoding of commands, replies and listings (default:"
            f" {FTPHandler.encoding})"
        ),
    )
    group_misc.add_argument(
        "--use-localtime",
        default=False,
        action="store_true",
        help=(
            "show listing and MDTM times in local time instead of UTC"
        ),
    )
    group_misc.add_argument(
        "--stats-interval",
        type=parse_non_negative,
        default=PerformanceLedger.report_interval,
        metavar="SECS",
        help=(
            "log a performance summary every SECS seconds (default:"
            f" {PerformanceLedger.report_interval}, 0 = disabled)"
        ),
    )

    return parser.parse_args(args)


def build_authorizer(opts):
    """Return a DummyAuthorizer holding either the -u user (plus
    anonymous with --anonymous) or the anonymous user alone.
    """
    authorizer = DummyAuthorizer()
    perm = "rwd" if opts.write else "r"
    if not opts.username:
        if opts.write:
            warnings.warn(
                "write permissions assigned to anonymous user.",
                RuntimeWarning,
                stacklevel=3,
            )
        authorizer.add_anonymous(perm=perm)
        return authorizer
    if not opts.password:
        raise argparse.ArgumentTypeError(
            "if username (-u) is supplied, password (-P) is required"
        )
    authorizer.add_user(opts.username, opts.password, perm=perm)
    if opts.anonymous:
        authorizer.add_anonymous(perm="r")
    return authorizer


def build_handler(opts):
    # subclass so that the FTPHandler class attributes stay untouched
    return type(
        FTPHandler.__name__,
        (FTPHandler,),
        dict(
            timeout=opts.timeout,
            banner=opts.banner,
            encoding=opts.encoding,
            use_gmt_times=not opts.use_localtime,
        ),
    )


def build_server(opts):
    security = SecurityLedger(
        max_cons_per_ip=opts.max_cons_per_ip,
        max_login_attempts=opts.max_login_attempts,
        ban_duration=opts.ban_duration,
        rate_window=opts.rate_window,
        max_requests_per_window=opts.max_requests,
    )
    server = FTPServer(
        (opts.interface, opts.port),
        build_handler(opts),
        root=opts.directory,
        authorizer=build_authorizer(opts),
        security=security,
        stats=PerformanceLedger(report_interval=opts.stats_interval),
    )
    server.max_cons = opts.max_cons
    return server


def main(args=None):
    """Start a standalone FTP server."""
    opts = parse_args(args=args)
    if opts.version:
        sys.exit(f"pyftpguard {__ver__}")
    if opts.debug:
        config_logging(level=logging.DEBUG, prefix=PREFIX_THREADS)
    # On Windows an empty address may bind IPv6 only.
    if os.name == "nt" and not opts.interface:
        opts.interface = "0.0.0.0"

    server = build_server(opts)
    if opts.admin:
        AdminConsole(server).start()
    try:
        server.serve_forever()
    finally:
        server.close_all()

    if args:  # only used in unit tests
        return server


if __name__ == "__main__":
    main()
