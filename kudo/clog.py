"""Verbosity-controlled output for command-line tools.

Level guidance: 0-1 normal output, 2-4 debug, 5-6 logical choices,
7-8 input/output details, 9-10 trace.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any, TextIO

__all__ = ["Verbose", "v", "init", "set_verbosity", "printf", "errorf"]

_verbosity = 0
_out: TextIO | None = None


def _format(fmt: str, args: tuple) -> str:
    return fmt % args if args else fmt


def _write(message: str) -> None:
    out = _out if _out is not None else sys.stdout
    out.write(message)
    out.write("\n")


@dataclass(frozen=True)
class Verbose:
    """Result of a verbosity check; prints only when enabled."""

    enabled: bool

    def __bool__(self) -> bool:
        return self.enabled

    def printf(self, fmt: str, *args: Any) -> None:
        if self.enabled:
            _write(_format(fmt, args))


def v(level: int) -> Verbose:
    """Return a Verbose that is enabled when the current verbosity is at least ``level``."""
    return Verbose(_verbosity >= level)


def init(out: TextIO | None, level: int = 0) -> None:
    """Set the output stream (None means standard output) and verbosity."""
    global _out
    _out = out
    set_verbosity(level)


def set_verbosity(level: int | str) -> None:
    """Set the verbosity level; strings are parsed as integers."""
    global _verbosity
    _verbosity = int(level)


def printf(fmt: str, *args: Any) -> None:
    """Print at level 0, which is always shown."""
    v(0).printf(fmt, *args)


def errorf(fmt: str, *args: Any) -> Exception:
    """Build an error from the message, print it at level 2, and return it."""
    message = _format(fmt, args)
    v(2).printf("%s", message)
    return Exception(message)