"""Incremental assembly of answers streamed from ``/live/stream-answer``.

The backend writes ``data: {json}`` lines. ``{"text": ...}`` events extend
the answer, ``{"done": true}`` completes it and ``{"error": ...}`` aborts it.
"""

from __future__ import annotations

import codecs
import enum
import json
import logging
import threading
from typing import Callable, Iterable, Optional

from api_client import APIError, InterviewAPI
from models import AnswerRequest, ChatMessage

LOG = logging.getLogger("nexus_live")

DATA_PREFIX = "data: "
INCOMPLETE_REASON = "answer stream ended before completion"

UpdateFn = Callable[[str], None]
CompleteFn = Callable[[ChatMessage], None]
ErrorFn = Callable[[str], None]

__all__ = [
    "AnswerPhase",
    "StreamIncompleteError",
    "parse_event_line",
    "AnswerStreamReader",
    "AnswerStreamer",
    "consume_stream",
]


class AnswerPhase(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class StreamIncompleteError(RuntimeError):
    """The byte stream ended before a ``done`` event arrived."""


def parse_event_line(line: str) -> Optional[dict]:
    line = line.rstrip("\r")
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):]
    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        LOG.debug("skipping malformed stream event: %r", payload)
        return None
    return event if isinstance(event, dict) else None


class AnswerStreamReader:
    """Turns raw response bytes into running-answer updates and one final message.

    ``partial`` is the transient in-progress slot; it is only ever turned
    into a ``ChatMessage`` by a ``done`` event.
    """

    def __init__(
        self,
        on_update: Optional[UpdateFn] = None,
        on_complete: Optional[CompleteFn] = None,
        on_error: Optional[ErrorFn] = None,
    ):
        self.on_update = on_update
        self.on_complete = on_complete
        self.on_error = on_error
        self.phase = AnswerPhase.STREAMING
        self.partial = ""
        self.message: Optional[ChatMessage] = None
        self.error: Optional[str] = None
        self._answer = ""
        self._pending = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def finished(self) -> bool:
        return self.phase in (AnswerPhase.COMPLETED, AnswerPhase.FAILED)

    def feed(self, chunk: bytes) -> None:
        if self.finished or not chunk:
            return
        self._pending += self._decoder.decode(chunk)
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        for line in lines:
            self.handle_line(line)
            if self.finished:
                return

    def handle_line(self, line: str) -> None:
        if self.finished:
            return
        event = parse_event_line(line)
        if event is None:
            return

        text = event.get("text")
        if text:
            self._answer += str(text)
            self.partial = self._answer
            if self.on_update:
                self.on_update(self._answer)

        if event.get("done"):
            self._complete()
        elif event.get("error"):
            self.fail(str(event["error"]))

    def close(self) -> None:
        """The byte stream ended; flush the tail and resolve the answer."""
        if self.finished:
            return
        self._pending += self._decoder.decode(b"", final=True)
        tail, self._pending = self._pending, ""
        if tail:
            self.handle_line(tail)
        if not self.finished:
            self.fail(INCOMPLETE_REASON)

    def result(self) -> ChatMessage:
        if self.message is None:
            raise StreamIncompleteError(self.error or INCOMPLETE_REASON)
        return self.message

    def fail(self, reason: str) -> None:
        if self.finished:
            return
        self.phase = AnswerPhase.FAILED
        self.error = reason
        self.partial = ""
        if self.on_error:
            self.on_error(reason)

    def _complete(self) -> None:
        self.phase = AnswerPhase.COMPLETED
        self.message = ChatMessage.answer(self._answer)
        self.partial = ""
        if self.on_complete:
            self.on_complete(self.message)


class AnswerStreamer:
    """Single-flight runner: at most one answer stream at a time.

    A submission while another stream is running is rejected, not queued.
    """

    def __init__(self, api: InterviewAPI):
        self.api = api
        self._lock = threading.Lock()
        self._phase = AnswerPhase.IDLE
        self._thread: Optional[threading.Thread] = None

    @property
    def phase(self) -> AnswerPhase:
        return self._phase

    @property
    def is_streaming(self) -> bool:
        return self._phase is AnswerPhase.STREAMING

    def _claim(self) -> bool:
        with self._lock:
            if self._phase is AnswerPhase.STREAMING:
                return False
            self._phase = AnswerPhase.STREAMING
            return True

    def submit(
        self,
        request: AnswerRequest,
        on_update: Optional[UpdateFn] = None,
        on_complete: Optional[CompleteFn] = None,
        on_error: Optional[ErrorFn] = None,
    ) -> bool:
        """Start streaming on a worker thread. Returns False if one is in flight."""
        if not self._claim():
            LOG.info("Answer already streaming; ignoring new submission")
            return False

        def _worker() -> None:
            self._run_claimed(request, on_update, on_complete, on_error)

        thread = threading.Thread(target=_worker, name="answer-stream", daemon=True)
        self._thread = thread
        thread.start()
        return True

    def run(
        self,
        request: AnswerRequest,
        on_update: Optional[UpdateFn] = None,
        on_complete: Optional[CompleteFn] = None,
        on_error: Optional[ErrorFn] = None,
    ) -> Optional[AnswerStreamReader]:
        """Stream on the calling thread. Returns None if one is already in flight."""
        if not self._claim():
            LOG.info("Answer already streaming; ignoring new submission")
            return None
        return self._run_claimed(request, on_update, on_complete, on_error)

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None and thread.is_alive():
            thread.join(timeout)

    def _run_claimed(
        self,
        request: AnswerRequest,
        on_update: Optional[UpdateFn],
        on_complete: Optional[CompleteFn],
        on_error: Optional[ErrorFn],
    ) -> AnswerStreamReader:
        reader = AnswerStreamReader(on_update=on_update, on_complete=on_complete, on_error=on_error)
        try:
            with self.api.open_answer_stream(request) as response:
                consume_stream(reader, response.iter_bytes())
        except APIError as exc:
            reader.fail(exc.message)
        except Exception as exc:  # noqa: BLE001
            LOG.exception("Answer stream crashed")
            reader.fail(str(exc))
        finally:
            with self._lock:
                self._phase = reader.phase if reader.finished else AnswerPhase.FAILED
        if reader.phase is AnswerPhase.FAILED:
            LOG.warning("Answer stream failed: %s", reader.error)
        return reader


def consume_stream(reader: AnswerStreamReader, chunks: Iterable[bytes]) -> AnswerStreamReader:
    for chunk in chunks:
        reader.feed(chunk)
        if reader.finished:
            break
    reader.close()
    return reader
