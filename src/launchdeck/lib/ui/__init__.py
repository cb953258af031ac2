"""Terminal styling helpers shared by the log tailers."""

from launchdeck.lib.ui.colors import ANSIColors, colorize, is_tty

__all__ = [
    "ANSIColors",
    "colorize",
    "is_tty",
]
