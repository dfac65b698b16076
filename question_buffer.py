from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol

LOG = logging.getLogger("nexus_live")

__all__ = ["QuestionBuffer", "TimerHandle", "TimerFactory"]


class TimerHandle(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def thread_timer(interval: float, fn: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(interval, fn)
    timer.daemon = True
    return timer


class QuestionBuffer:
    """Rolling "detected question" assembled from finalized speech fragments.

    ``text`` is what gets sent when the user asks for an answer. ``preview``
    is the live transcript line; the silence timer only ever clears the
    preview, never the pending question. Fragments arriving while an answer
    is being generated are dropped.
    """

    def __init__(
        self,
        is_answering: Callable[[], bool] = lambda: False,
        *,
        max_chars: int = 500,
        silence_ms: int = 2000,
        timer_factory: TimerFactory = thread_timer,
        on_change: Optional[Callable[[str, str], None]] = None,
    ):
        self.is_answering = is_answering
        self.max_chars = max(1, int(max_chars))
        self.silence_s = max(0, int(silence_ms)) / 1000.0
        self._timer_factory = timer_factory
        self._on_change = on_change
        self._lock = threading.RLock()
        self._text = ""
        self._preview = ""
        self._silence_timer: Optional[TimerHandle] = None
        self._silence_generation = 0

    @property
    def text(self) -> str:
        with self._lock:
            return self._text

    @property
    def preview(self) -> str:
        with self._lock:
            return self._preview

    @property
    def silence_pending(self) -> bool:
        with self._lock:
            return self._silence_timer is not None

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self._text, self._preview)

    def _join(self, fragment: str) -> None:
        combined = f"{self._text} {fragment}" if self._text else fragment
        self._text = combined[-self.max_chars:]

    def append(self, fragment: str) -> bool:
        """Add a finalized recognition fragment. Returns True if it was kept."""
        cleaned = (fragment or "").strip()
        if not cleaned or self.is_answering():
            return False
        with self._lock:
            self._join(cleaned)
            self._preview = cleaned
            self._arm_silence_timer()
            self._notify()
        return True

    def append_transcription(self, text: str) -> bool:
        """Add a chunk-transcription result, skipping text already in the buffer."""
        cleaned = (text or "").strip()
        if not cleaned:
            return False
        with self._lock:
            self._preview = cleaned
            if self.is_answering() or cleaned in self._text:
                self._notify()
                return False
            self._join(cleaned)
            self._notify()
        return True

    def set_preview(self, text: str) -> None:
        with self._lock:
            self._preview = (text or "").strip()
            self._notify()

    def consume(self) -> str:
        with self._lock:
            text, self._text = self._text, ""
            self._notify()
            return text

    def clear(self) -> None:
        with self._lock:
            self._text = ""
            self._preview = ""
            self._cancel_silence_timer()
            self._notify()

    def cancel_timers(self) -> None:
        with self._lock:
            self._cancel_silence_timer()

    # ---- silence -------------------------------------------------------

    def _arm_silence_timer(self) -> None:
        self._cancel_silence_timer()
        generation = self._silence_generation
        timer = self._timer_factory(self.silence_s, lambda: self._on_silence(generation))
        self._silence_timer = timer
        timer.start()

    def _cancel_silence_timer(self) -> None:
        self._silence_generation += 1
        timer, self._silence_timer = self._silence_timer, None
        if timer is not None:
            timer.cancel()

    def _on_silence(self, generation: int) -> None:
        with self._lock:
            if generation != self._silence_generation:
                return
            self._silence_timer = None
            if self._preview:
                LOG.debug("silence: clearing live transcript")
            self._preview = ""
            self._notify()
