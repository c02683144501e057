# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
Logging support for pyftpguard, inspired from Tornado's
(http://www.tornadoweb.org/).

All modules log through the "pyftpguard" logger. If no logging has
been configured when FTPServer.serve_forever() is called,
config_logging() installs a colored stderr handler on it. To take
control of the output configure logging yourself beforehand:

>>> import logging
>>> logging.basicConfig(filename="ftpd.log", level=logging.DEBUG)
"""

import logging
import sys
import time

from .utils import curses
from .utils import stream_supports_colors

logger = logging.getLogger("pyftpguard")

LEVEL = logging.INFO
PREFIX = "[%(levelname)1.1s %(asctime)s]"
# session threads are named after the client "ip:port" address
PREFIX_THREADS = "[%(levelname)1.1s %(asctime)s %(threadName)s]"
TIME_FORMAT = "%y-%m-%d %H:%M:%S"

# curses color numbers (setaf) of each log level
LEVEL_COLORS = {
    logging.DEBUG: 4,  # blue
    logging.INFO: 2,  # green
    logging.WARNING: 3,  # yellow
    logging.ERROR: 1,  # red
    logging.CRITICAL: 1,
}


class LogFormatter(logging.Formatter):
    """Log formatter used in pyftpguard. It prepends a short
    "[L yy-mm-dd HH:MM:SS]" prefix to every line, colored by level when
    writing to a terminal, and indents multi-line messages and
    tracebacks.
    """

    def __init__(self, prefix=PREFIX, stream=None):
        logging.Formatter.__init__(self)
        self.prefix = prefix
        self._colors = {}
        self._normal = ""
        if stream_supports_colors(stream or sys.stderr):
            setaf = curses.tigetstr("setaf") or curses.tigetstr("setf") or b""
            for level, num in LEVEL_COLORS.items():
                self._colors[level] = str(curses.tparm(setaf, num), "ascii")
            self._normal = str(curses.tigetstr("sgr0"), "ascii")

    def _get_message(self, record):
        try:
            return record.getMessage()
        except Exception as err:  # noqa: BLE001
            return f"Bad message ({err!r}): {record.__dict__!r}"

    def format(self, record):
        record.message = self._get_message(record)
        record.asctime = time.strftime(
            TIME_FORMAT, self.converter(record.created)
        )
        prefix = self.prefix % record.__dict__
        if self._colors:
            color = self._colors.get(record.levelno, self._normal)
            prefix = f"{color}{prefix}{self._normal}"
        lines = [f"{prefix} {record.message}"]
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            lines[0] = lines[0].rstrip()
            lines.append(record.exc_text)
        return "\n".join(lines).replace("\n", "\n    ")


def is_logging_configured():
    """Return True if either the root or the "pyftpguard" logger has
    a handler attached.
    """
    return bool(logger.handlers or logging.root.handlers)


def config_logging(level=LEVEL, prefix=PREFIX, other_loggers=None):
    # Skip collecting LogRecord attributes we never print. See:
    # https://docs.python.org/3/howto/logging.html#optimization
    logging.logMultiprocessing = False
    logging.logProcesses = False
    if prefix != PREFIX_THREADS:
        logging.logThreads = False

    handler = logging.StreamHandler()
    handler.setFormatter(LogFormatter(prefix=prefix, stream=handler.stream))
    for log in [logger, *(other_loggers or [])]:
        log.setLevel(level)
        log.addHandler(handler)
