# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import functools
import os
import sys

try:
    import curses
except ImportError:
    curses = None

__all__ = [
    "format_bytes",
    "format_duration",
    "hilite",
    "memoize",
    "strerror",
    "stream_supports_colors",
    "term_supports_colors",
]

# ANSI codes of the colors used by the CLI help screen
COLORS = dict(
    green="32",
    lightblue="38;5;66",
    orange="38;5;208",
    white="97",
)


def memoize(fun):
    """Cache the return value of a function by its (hashable)
    arguments. Unlike functools.lru_cache the cache is unbounded and
    can be emptied with fun.cache_clear().
    """
    cache = {}

    @functools.wraps(fun)
    def wrapper(*args, **kwargs):
        key = (args, frozenset(kwargs.items()))
        if key not in cache:
            cache[key] = fun(*args, **kwargs)
        return cache[key]

    wrapper.cache_clear = cache.clear
    return wrapper


def stream_supports_colors(stream):
    """Return True if `stream` is a terminal able to display colors."""
    if curses is None or os.name == "nt":
        return False
    try:
        if not stream.isatty():
            return False
        curses.setupterm()
        return curses.tigetnum("colors") > 0
    except Exception:  # noqa: BLE001
        return False


@memoize
def term_supports_colors():
    return stream_supports_colors(sys.stdout) and stream_supports_colors(
        sys.stderr
    )


def hilite(s, color=None, bold=False):  # pragma: no cover
    """Wrap `s` into ANSI color codes if the terminal supports them."""
    if not term_supports_colors():
        return s
    if color is not None and color not in COLORS:
        raise ValueError(f"invalid color {color!r}; choose from {COLORS}")
    codes = [COLORS.get(color, "29")]
    if bold:
        codes.append("1")
    return f"\x1b[{';'.join(codes)}m{s}\x1b[0m"


def strerror(err):
    """Return the OS message of an OSError (e.g. "No such file or
    directory") or the string form of any other exception.
    """
    if isinstance(err, OSError) and err.errno is not None:
        return os.strerror(err.errno)
    return str(err)


def format_bytes(n):
    """Return a human readable version of a byte count.

    >>> format_bytes(1536)
    '1.5 KB'
    """
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(n) < 1024 or unit == "TB":
            if unit == "B":
                return f"{n} B"
            return f"{n:.1f} {unit}"
        n /= 1024.0


def format_duration(seconds):
    """Return a "1d 2h 3m 4s" string."""
    seconds = int(seconds)
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    if days:
        return f"{days}d {hours}h {minutes}m {seconds}s"
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"
