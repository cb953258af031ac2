"""ANSI styling for tailed log lines.

Styling is applied only when stdout is an interactive terminal so that
redirected output and CI logs stay plain.
"""

import sys


class ANSIColors:
    """Escape codes used by the log formatter.

    GREEN marks lifecycle events, RED errors, YELLOW warnings, CYAN request
    and billing lines, and DIM the timestamp column.
    """

    GREEN = "\033[92m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    CYAN = "\033[96m"
    DIM = "\033[2m"
    RESET = "\033[0m"


def is_tty() -> bool:
    """Return True when stdout is attached to a terminal."""
    return sys.stdout.isatty()


def colorize(text: str, color: str, force_tty: bool | None = None) -> str:
    """Wrap ``text`` in ``color`` and a reset code.

    ``force_tty`` overrides terminal detection; an empty ``color`` leaves the
    text as is.
    """
    enabled = is_tty() if force_tty is None else force_tty
    return f"{color}{text}{ANSIColors.RESET}" if enabled and color else text
