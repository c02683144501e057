# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import errno
import io
import logging
import os
import re
import sys

from pyftpguard.log import PREFIX_THREADS
from pyftpguard.log import LogFormatter
from pyftpguard.log import config_logging
from pyftpguard.log import is_logging_configured
from pyftpguard.log import logger
from pyftpguard.utils import format_bytes
from pyftpguard.utils import format_duration
from pyftpguard.utils import hilite
from pyftpguard.utils import memoize
from pyftpguard.utils import stream_supports_colors
from pyftpguard.utils import strerror

from . import PyftpguardTestCase


class TestUtils(PyftpguardTestCase):
    def test_format_bytes(self):
        assert format_bytes(0) == "0 B"
        assert format_bytes(1023) == "1023 B"
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(3 * 1024**2) == "3.0 MB"
        assert format_bytes(5 * 1024**5) == "5120.0 TB"

    def test_format_duration(self):
        assert format_duration(0) == "0s"
        assert format_duration(59.9) == "59s"
        assert format_duration(61) == "1m 1s"
        assert format_duration(3600) == "1h 0m 0s"
        assert format_duration(86400 + 3661) == "1d 1h 1m 1s"

    def test_strerror(self):
        err = OSError(errno.ENOENT, "whatever")
        assert strerror(err) == os.strerror(errno.ENOENT)
        assert strerror(OSError("no errno")) == "no errno"
        assert strerror(ValueError("boom")) == "boom"

    def test_memoize(self):
        calls = []

        @memoize
        def double(x, factor=2):
            calls.append(x)
            return x * factor

        assert double(2) == 4
        assert double(2) == 4
        assert double(2, factor=3) == 6
        assert calls == [2, 2]
        double.cache_clear()
        double(2)
        assert calls == [2, 2, 2]
        assert double.__name__ == "double"

    def test_no_colors_on_plain_streams(self):
        assert not stream_supports_colors(io.StringIO())

    def test_hilite_without_terminal(self):
        if not stream_supports_colors(sys.stdout):
            assert hilite("text", "green") == "text"


class TestLogFormatter(PyftpguardTestCase):
    def make_record(self, msg, level=logging.INFO, **kwargs):
        return logging.makeLogRecord(
            dict(
                name="pyftpguard",
                levelno=level,
                levelname=logging.getLevelName(level),
                msg=msg,
                **kwargs,
            )
        )

    def test_prefix(self):
        fmt = LogFormatter(stream=io.StringIO())
        out = fmt.format(self.make_record("hello"))
        assert re.match(
            r"^\[I \d\d-\d\d-\d\d \d\d:\d\d:\d\d\] hello$", out
        ), out

    def test_threads_prefix(self):
        fmt = LogFormatter(prefix=PREFIX_THREADS, stream=io.StringIO())
        record = self.make_record(
            "hello", level=logging.WARNING, threadName="127.0.0.1:5000"
        )
        out = fmt.format(record)
        assert out.startswith("[W ")
        assert "127.0.0.1:5000] hello" in out

    def test_multiline_is_indented(self):
        fmt = LogFormatter(stream=io.StringIO())
        out = fmt.format(self.make_record("first\nsecond"))
        assert out.endswith("first\n    second")

    def test_traceback(self):
        fmt = LogFormatter(stream=io.StringIO())
        try:
            raise ValueError("broken")
        except ValueError:
            record = self.make_record("failed", exc_info=sys.exc_info())
        out = fmt.format(record)
        lines = out.split("\n")
        assert lines[0].endswith("failed")
        assert lines[-1] == "    ValueError: broken"
        assert all(x.startswith("    ") for x in lines[1:])

    def test_bad_message(self):
        fmt = LogFormatter(stream=io.StringIO())
        record = self.make_record("%s %s", args=("only one",))
        assert "Bad message" in fmt.format(record)


class TestConfigLogging(PyftpguardTestCase):
    def setUp(self):
        super().setUp()
        self.other = logging.getLogger("pyftpguard-test-other")
        self.saved = [
            (log, log.level, list(log.handlers))
            for log in (logger, self.other)
        ]
        logging.logThreads = True

    def tearDown(self):
        for log, level, handlers in self.saved:
            log.setLevel(level)
            log.handlers[:] = handlers
        logging.logThreads = True
        logging.logProcesses = True
        logging.logMultiprocessing = True
        super().tearDown()

    def test_config_logging(self):
        config_logging(level=logging.DEBUG, other_loggers=[self.other])
        assert is_logging_configured()
        for log in (logger, self.other):
            assert log.level == logging.DEBUG
            handler = log.handlers[-1]
            assert isinstance(handler.formatter, LogFormatter)
        assert not logging.logThreads

    def test_threads_prefix_keeps_thread_names(self):
        config_logging(prefix=PREFIX_THREADS)
        assert logging.logThreads
        assert logger.handlers[-1].formatter.prefix == PREFIX_THREADS
