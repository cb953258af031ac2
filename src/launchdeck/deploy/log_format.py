"""Heuristic classification and formatting of tailed log lines.

Each classifier is an ordered tuple of rules. The first rule whose
predicate matches a message decides its icon and color; later rules are
not consulted.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from launchdeck.deploy.logs import FormatEvent, LogEvent
from launchdeck.lib.ui.colors import ANSIColors, colorize


@dataclass(frozen=True)
class Rule:
    """One classification rule.

    Attributes:
        name: Category name (used by tests and debug output)
        matches: Predicate over the raw message
        render: Builds the display text from the raw message
        color: ANSI color applied when writing to a terminal
    """

    name: str
    matches: Callable[[str], bool]
    render: Callable[[str], str]
    color: str = ""


def _contains_any(*needles: str) -> Callable[[str], bool]:
    return lambda message: any(n in message for n in needles)


def _prefixed(icon: str) -> Callable[[str], str]:
    return lambda message: f"{icon} {message}"


_REQUEST_ID = re.compile(r"RequestId:\s*([0-9a-fA-F-]+)")


def _request_marker(icon: str, label: str) -> Callable[[str], str]:
    def render(message: str) -> str:
        match = _REQUEST_ID.search(message)
        short_id = f" [{match.group(1)[:8]}...]" if match else ""
        return f"{icon} {label}{short_id}"

    return render


def _extract(message: str, label: str) -> str | None:
    match = re.search(rf"{re.escape(label)}\s*([\d.]+)", message)
    return match.group(1) if match else None


def _render_report(message: str) -> str:
    parts = []
    duration = _extract(message, "Duration:")
    if duration:
        parts.append(f"⏱️ {duration}ms")
    billed = _extract(message, "Billed Duration:")
    if billed:
        parts.append(f"💰 Billed: {billed}ms")
    memory = _extract(message, "Memory Size:")
    used = _extract(message, "Max Memory Used:")
    if memory:
        parts.append(f"🧠 Memory: {used + '/' if used else ''}{memory}MB")
    init = _extract(message, "Init Duration:")
    if init:
        parts.append(f"🥶 Cold start: {init}ms")
    return "📊 REQUEST REPORT " + " | ".join(parts)


def _render_init_report(message: str) -> str:
    failed = "Status: error" in message or "failed" in message.lower()
    duration = _extract(message, "Init Duration:")
    suffix = f" ({duration}ms)" if duration else ""
    return f"⚡ INIT {'FAILED' if failed else 'OK'}{suffix}"


def _is_startup(message: str) -> bool:
    return ("Started" in message and "Application" in message) or (
        "Application startup complete" in message
    )


_SERVER_MARKERS = ("Tomcat started on port", "server started", "Uvicorn running on")
_ERROR_MARKERS = ("ERROR", "Error", "Exception")
_WARN_MARKERS = ("WARN", "Warning")

SERVERLESS_RULES: tuple[Rule, ...] = (
    Rule(
        "request_start",
        lambda m: m.startswith("START RequestId:"),
        _request_marker("🚀", "REQUEST STARTED"),
        ANSIColors.CYAN,
    ),
    Rule(
        "request_end",
        lambda m: m.startswith("END RequestId:"),
        _request_marker("🏁", "REQUEST ENDED"),
        ANSIColors.CYAN,
    ),
    Rule(
        "report",
        lambda m: m.startswith("REPORT RequestId:"),
        _render_report,
        ANSIColors.CYAN,
    ),
    Rule("init_report", lambda m: m.startswith("INIT_REPORT"), _render_init_report),
    Rule("error", _contains_any(*_ERROR_MARKERS), _prefixed("❌"), ANSIColors.RED),
    Rule("warning", _contains_any(*_WARN_MARKERS), _prefixed("⚠️"), ANSIColors.YELLOW),
    Rule("extension", _contains_any("EXTENSION"), _prefixed("🔌")),
    Rule("startup", _is_startup, _prefixed("🌟"), ANSIColors.GREEN),
    Rule("server", _contains_any(*_SERVER_MARKERS), _prefixed("🌐"), ANSIColors.GREEN),
)

CONTAINER_RULES: tuple[Rule, ...] = (
    Rule("startup", _is_startup, _prefixed("🌟 ✅"), ANSIColors.GREEN),
    Rule(
        "server", _contains_any(*_SERVER_MARKERS), _prefixed("🌐 ✅"), ANSIColors.GREEN
    ),
    Rule("error", _contains_any(*_ERROR_MARKERS), _prefixed("❌ 🔥"), ANSIColors.RED),
    Rule("warning", _contains_any(*_WARN_MARKERS), _prefixed("⚠️"), ANSIColors.YELLOW),
)

DEFAULT_RULE = Rule("info", lambda m: True, _prefixed("📝"))


def classify(message: str, rules: Sequence[Rule]) -> Rule:
    """Return the first rule matching message, or the default rule."""
    for rule in rules:
        if rule.matches(message):
            return rule
    return DEFAULT_RULE


def format_timestamp(timestamp_ms: int) -> str:
    """Local wall-clock time as HH:MM:SS.mmm."""
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%H:%M:%S.%f")[:-3]


def make_formatter(
    rules: Sequence[Rule], force_tty: bool | None = None
) -> FormatEvent:
    """Build an event formatter for the given classifier."""

    def format_event(event: LogEvent) -> str:
        message = event.message.rstrip()
        rule = classify(message, rules)
        stamp = colorize(format_timestamp(event.timestamp), ANSIColors.DIM, force_tty)
        return f"{stamp} {colorize(rule.render(message), rule.color, force_tty)}"

    return format_event
