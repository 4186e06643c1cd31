"""
Ordered event channel for streaming a chat turn over SSE.

The orchestrator is the single producer; the HTTP layer is
the consumer.  Events are pushed to a ``queue.Queue`` and
read back as ``data: <json>\\n\\n`` frames.  The producer
closes the channel by writing exactly one terminal event
(``done`` or ``error``); any write after that is a caller
bug and raises ``StreamClosedError``.

Usage::

    stream = EventStream()
    # producer thread
    stream.emit(PlanEvent(intent=Intent.GENERAL_CHAT))
    stream.emit(DoneEvent(message_id="..."))
    # consumer
    for frame in stream.iter_frames():
        ...
"""

import logging
import queue
import threading
from typing import Iterator, List, Optional, Set

from console_agent.schemas import (
    DoneEvent,
    ErrorEvent,
    Event,
    ToolCallEvent,
    ToolResultEvent,
)

logger = logging.getLogger(__name__)

_TERMINAL_TYPES = (DoneEvent, ErrorEvent)


class StreamClosedError(RuntimeError):
    """Raised on writes after the terminal event or cancellation."""


class StreamProtocolError(RuntimeError):
    """Raised when an event would break the tool-call ordering."""


def format_frame(event: Event) -> str:
    """
    Serialise one event as a Server-Sent Events frame.

    Parameters:
        event (Event): Any stream event model.

    Returns:
        str: ``data: <json>\\n\\n``.
    """
    payload = event.model_dump_json(exclude_none=True)
    return f"data: {payload}\n\n"


class EventStream:
    """
    Single-writer, append-only channel of typed events.

    Attributes:
        history (list[Event]): Everything emitted so far, in
            order.  Kept for auditing and tests.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue(
            maxsize=maxsize
        )
        self._lock = threading.Lock()
        self._open_calls: Set[str] = set()
        self._seen_calls: Set[str] = set()
        self._terminated = False
        self._cancelled = False
        self.history: List[Event] = []

    # ----- producer side ---------------------------------------------

    def emit(self, event: Event) -> None:
        """
        Append *event* to the stream.

        Raises:
            StreamClosedError: The stream already terminated or
                the consumer went away.
            StreamProtocolError: The event breaks tool-call
                ordering (unknown or duplicate result, ``done``
                with results still pending).
        """
        with self._lock:
            if self._cancelled:
                raise StreamClosedError("stream was cancelled")
            if self._terminated:
                raise StreamClosedError(
                    f"cannot emit '{event.type}' after the "
                    "terminal event"
                )
            self._check_order(event)

            frame = format_frame(event)
            self.history.append(event)
            self._queue.put(frame)

            if isinstance(event, _TERMINAL_TYPES):
                self._terminated = True
                self._queue.put(None)

    def fail(self, message: str) -> None:
        """Terminate the stream with a single fatal error event."""
        self.emit(ErrorEvent(message=message))

    def _check_order(self, event: Event) -> None:
        if isinstance(event, ToolCallEvent):
            if event.tool_call_id in self._seen_calls:
                raise StreamProtocolError(
                    f"duplicate tool call '{event.tool_call_id}'"
                )
            self._seen_calls.add(event.tool_call_id)
            self._open_calls.add(event.tool_call_id)
        elif isinstance(event, ToolResultEvent):
            if event.tool_call_id not in self._open_calls:
                raise StreamProtocolError(
                    f"result for unknown or finished tool call "
                    f"'{event.tool_call_id}'"
                )
            self._open_calls.discard(event.tool_call_id)
        elif isinstance(event, DoneEvent) and self._open_calls:
            raise StreamProtocolError(
                "done emitted with pending tool calls: "
                + ", ".join(sorted(self._open_calls))
            )

    # ----- consumer side ---------------------------------------------

    def iter_frames(self) -> Iterator[str]:
        """
        Yield SSE frames until the producer closes the channel.

        Stops early if the stream is cancelled.
        """
        while True:
            frame = self._queue.get()
            if frame is None:
                break
            yield frame

    def cancel(self) -> None:
        """
        Signal that the consumer went away.

        Further writes raise ``StreamClosedError``; a blocked
        ``iter_frames`` is released.
        """
        with self._lock:
            if self._cancelled or self._terminated:
                self._cancelled = True
                return
            self._cancelled = True
            logger.info("[stream] cancelled by consumer")
            self._queue.put(None)

    # ----- state -----------------------------------------------------

    @property
    def is_closed(self) -> bool:
        """True once terminated or cancelled."""
        return self._terminated or self._cancelled

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending_tool_calls(self) -> Set[str]:
        """Tool call ids still waiting for a result."""
        with self._lock:
            return set(self._open_calls)
