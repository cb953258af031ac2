"""Log tailing with a moving cursor.

A :class:`LogTailer` repeatedly asks a provider-specific fetch function for
the next page of log events after a ``(since, page_token)`` cursor, hands
each event to a formatter and emits the result. It runs until its
:class:`CancellationToken` is cancelled.

Timestamps are integer milliseconds since the Unix epoch throughout.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from launchdeck.lib.errors import LogSinkNotFoundError
from launchdeck.lib.logging_config import get_logger

logger = get_logger(__name__)

PAGE_SIZE = 100
IDLE_INTERVAL = 2.0
SINK_NOT_FOUND_INTERVAL = 5.0
ERROR_INTERVAL = 5.0
INITIAL_LOOKBACK_MS = 5 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class LogEvent:
    """A single log line from a provider log sink."""

    timestamp: int
    message: str
    stream: str | None = None


@dataclass(frozen=True)
class LogPage:
    """One fetch result: events plus an optional continuation token."""

    events: list[LogEvent] = field(default_factory=list)
    next_token: str | None = None


@dataclass
class LogCursor:
    """Position in a provider log stream.

    Attributes:
        since: Fetch events with timestamp >= since
        page_token: Continuation token of the previous page, if any
    """

    since: int
    page_token: str | None = None

    def advance(self, event: LogEvent) -> None:
        self.since = max(self.since, event.timestamp + 1)


class CancellationToken:
    """Cooperative stop signal shared between the tailer and its owner.

    ``wait`` sleeps for the given interval but returns as soon as the token
    is cancelled, so a cancel never waits out a backoff.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to seconds; return True if cancelled meanwhile."""
        return self._event.wait(seconds)


FetchPage = Callable[[int, "str | None", int], LogPage]
FormatEvent = Callable[[LogEvent], str]
Emit = Callable[[str], None]


class LogTailer:
    """Poll a log sink until cancelled.

    Args:
        fetch: ``fetch(since, page_token, page_size) -> LogPage``; raises
            LogSinkNotFoundError when the sink does not exist yet
        format_event: Turns an event into a printable line
        emit: Receives each formatted line
        since: Initial cursor timestamp, defaults to five minutes ago
        page_size: Maximum events per fetch
        idle_interval: Sleep after an empty page
        not_found_interval: Sleep after LogSinkNotFoundError
        error_interval: Sleep after any other fetch error
    """

    def __init__(
        self,
        fetch: FetchPage,
        format_event: FormatEvent,
        emit: Emit,
        *,
        since: int | None = None,
        page_size: int = PAGE_SIZE,
        idle_interval: float = IDLE_INTERVAL,
        not_found_interval: float = SINK_NOT_FOUND_INTERVAL,
        error_interval: float = ERROR_INTERVAL,
    ) -> None:
        self.fetch = fetch
        self.format_event = format_event
        self.emit = emit
        if since is None:
            since = now_ms() - INITIAL_LOOKBACK_MS
        self.cursor = LogCursor(since=since)
        self.page_size = page_size
        self.idle_interval = idle_interval
        self.not_found_interval = not_found_interval
        self.error_interval = error_interval

    def poll_once(self) -> float:
        """Fetch and emit one page.

        Returns:
            Seconds to wait before the next poll (0 when more pages are pending)
        """
        try:
            page = self.fetch(
                self.cursor.since, self.cursor.page_token, self.page_size
            )
        except LogSinkNotFoundError as e:
            logger.info(f"{e}; waiting for the workload to write logs")
            self.cursor.page_token = None
            return self.not_found_interval
        except Exception as e:
            logger.warning(f"Error fetching logs, retrying: {e}")
            return self.error_interval

        floor = self.cursor.since
        fresh = [event for event in page.events if event.timestamp >= floor]
        for event in fresh:
            self.cursor.advance(event)
            self.emit(self.format_event(event))

        if not page.events or not (fresh or page.next_token):
            self.cursor.page_token = None
            return self.idle_interval

        self.cursor.page_token = page.next_token
        return 0.0

    def run(self, token: CancellationToken) -> None:
        """Poll until the token is cancelled."""
        logger.debug(f"Tailing logs from {self.cursor.since}")
        while not token.cancelled:
            delay = self.poll_once()
            if delay and token.wait(delay):
                break
        logger.debug("Log tailing stopped")
