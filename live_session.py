from __future__ import annotations

import enum
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from answer_stream import AnswerStreamer
from api_client import APIError, InterviewAPI
from capture_core import (
    AudioCapture,
    CaptureError,
    ChunkRecorder,
    EnergySegmenter,
    RecognitionResult,
    SpeechRecognizer,
    find_loopback_candidate,
    list_input_devices,
    pick_default_mic,
)
from config import CaptureParameters, DetectionConfig, RecognizerConfig
from models import AnswerRequest, ChatMessage, Profile, SessionContext, now_ms
from profile_store import ChatLog
from question_buffer import QuestionBuffer, TimerFactory, thread_timer

LOG = logging.getLogger("nexus_live")

SYSTEM_LABEL = "SYSTEM"
MIC_LABEL = "MIC"

# (level, message); level is one of "info", "warning", "error"
Notifier = Callable[[str, str], None]

__all__ = [
    "CaptureMode",
    "CaptureState",
    "RestartPolicy",
    "CaptureSessionManager",
    "LiveSession",
]


def _log_notifier(level: str, message: str) -> None:
    LOG.log(logging.getLevelName(level.upper()), message)


class CaptureMode(str, enum.Enum):
    SCREEN = "screen"
    MICROPHONE = "microphone"


class CaptureState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class RestartPolicy:
    """Bounded recognizer restarts: at most ``max_restarts`` within ``window_s``.

    ``next_delay()`` returns the backoff before the next attempt, or None once
    the budget is spent.
    """

    def __init__(
        self,
        max_restarts: int = 5,
        window_s: float = 30.0,
        base_delay_s: float = 0.5,
        max_delay_s: float = 8.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_restarts = max(0, int(max_restarts))
        self.window_s = float(window_s)
        self.base_delay_s = float(base_delay_s)
        self.max_delay_s = float(max_delay_s)
        self._clock = clock
        self._attempts: Deque[float] = deque()

    @classmethod
    def from_parameters(cls, params: CaptureParameters, clock: Callable[[], float] = time.monotonic) -> "RestartPolicy":
        return cls(
            max_restarts=params.max_restarts,
            window_s=params.restart_window_s,
            base_delay_s=params.restart_base_delay_s,
            max_delay_s=params.restart_max_delay_s,
            clock=clock,
        )

    def next_delay(self) -> Optional[float]:
        now = self._clock()
        while self._attempts and now - self._attempts[0] > self.window_s:
            self._attempts.popleft()
        if len(self._attempts) >= self.max_restarts:
            return None
        delay = min(self.max_delay_s, self.base_delay_s * (2 ** len(self._attempts)))
        self._attempts.append(now)
        return delay

    def reset(self) -> None:
        self._attempts.clear()


class CaptureSessionManager:
    """Owns the audio sources, the recognizer and the chunk recorder of one session.

    Screen mode needs the system-loopback device; the microphone is optional
    there. Microphone mode runs the recognizer alone. Only one session can be
    connected at a time and ``disconnect()`` may be called any number of times
    from any thread.
    """

    def __init__(
        self,
        buffer: QuestionBuffer,
        api: Optional[InterviewAPI] = None,
        *,
        params: Optional[CaptureParameters] = None,
        recognizer_config: Optional[RecognizerConfig] = None,
        capture_factory: Callable[..., AudioCapture] = AudioCapture,
        recognizer_factory: Callable[..., SpeechRecognizer] = SpeechRecognizer,
        recorder_factory: Callable[..., ChunkRecorder] = ChunkRecorder,
        devices: Callable[[], List[Dict[str, object]]] = list_input_devices,
        timer_factory: TimerFactory = thread_timer,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.buffer = buffer
        self.api = api
        self.params = params or CaptureParameters.from_env()
        self.recognizer_config = recognizer_config
        self._capture_factory = capture_factory
        self._recognizer_factory = recognizer_factory
        self._recorder_factory = recorder_factory
        self._devices = devices
        self._timer_factory = timer_factory
        self.notify = notifier or _log_notifier
        self._clock = clock
        self.restart_policy = RestartPolicy.from_parameters(self.params, clock=clock)

        self._lock = threading.RLock()
        self._state = CaptureState.IDLE
        self._mode: Optional[CaptureMode] = None
        self._captures: Dict[str, AudioCapture] = {}
        self._recognizer: Optional[SpeechRecognizer] = None
        self._recognizer_source: Optional[str] = None
        self._recorder: Optional[ChunkRecorder] = None
        self._restart_timer = None
        self._generation = 0
        self._connected_at: Optional[float] = None
        self._listening = False
        self.audio_level = 0.0
        self._state_listeners: List[Callable[[CaptureState], None]] = []

    # ---- state ---------------------------------------------------------

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def mode(self) -> Optional[CaptureMode]:
        return self._mode

    @property
    def is_connected(self) -> bool:
        return self._state is CaptureState.CONNECTED

    @property
    def is_listening(self) -> bool:
        return self._listening and self._recognizer is not None

    @property
    def is_capturing_audio(self) -> bool:
        return self._recorder is not None

    @property
    def sources(self) -> List[str]:
        return list(self._captures)

    @property
    def elapsed_s(self) -> float:
        if self._connected_at is None:
            return 0.0
        return max(0.0, self._clock() - self._connected_at)

    def add_state_listener(self, listener: Callable[[CaptureState], None]) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, state: CaptureState) -> None:
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:  # noqa: BLE001
                LOG.exception("capture state listener failed")

    # ---- connect -------------------------------------------------------

    def connect(self, mode: CaptureMode) -> None:
        """Open the audio sources for ``mode``; raises ``CaptureError`` on failure."""
        mode = CaptureMode(mode)
        with self._lock:
            if self._state is not CaptureState.IDLE:
                raise CaptureError("A capture session is already active")
            self._generation += 1
            self._mode = mode
            self._set_state(CaptureState.CONNECTING)

            try:
                devices = self._devices()
                if mode is CaptureMode.SCREEN:
                    self._connect_screen(devices)
                else:
                    self._connect_microphone(devices)
                self._start_recognizer()
            except Exception as exc:
                self._teardown()
                self._mode = None
                self._set_state(CaptureState.IDLE)
                if isinstance(exc, CaptureError) and exc.permission_denied:
                    self.notify("error", "Audio capture was denied. Please allow access.")
                else:
                    self.notify("error", str(exc))
                if isinstance(exc, CaptureError):
                    raise
                raise CaptureError(f"Failed to start capture: {exc}") from exc

            self.restart_policy.reset()
            self._connected_at = self._clock()
            self._set_state(CaptureState.CONNECTED)

        if mode is CaptureMode.SCREEN:
            self.notify("info", "Connected to system audio; voice detection active")
        else:
            self.notify("info", "Connected to microphone")

    def _open_capture(self, label: str, device_idx: int) -> AudioCapture:
        capture = self._capture_factory(label, device_idx, self._on_frame, self._on_capture_ended)
        capture.open()
        self._captures[label] = capture
        return capture

    def _connect_screen(self, devices: List[Dict[str, object]]) -> None:
        loop_idx, loop_name = find_loopback_candidate(devices)
        if loop_idx is None:
            raise CaptureError("No system-audio device found. Install BlackHole/Loopback or use microphone mode")
        LOG.info("Using system audio device %s (%s)", loop_idx, loop_name)
        self._open_capture(SYSTEM_LABEL, loop_idx)

        mic_idx = pick_default_mic(devices)
        if mic_idx is not None:
            try:
                self._open_capture(MIC_LABEL, mic_idx)
            except CaptureError as exc:
                LOG.warning("Microphone unavailable, continuing with system audio only: %s", exc)
        else:
            LOG.info("No microphone found; recognizing system audio")

        self._recorder = self._recorder_factory(
            self._on_blob,
            interval_s=self.params.chunk_interval_s,
            min_blob_bytes=self.params.min_blob_bytes,
        )
        self._recorder.start()

    def _connect_microphone(self, devices: List[Dict[str, object]]) -> None:
        mic_idx = pick_default_mic(devices)
        if mic_idx is None:
            raise CaptureError("No microphone found")
        self._open_capture(MIC_LABEL, mic_idx)

    def _start_recognizer(self) -> None:
        source = MIC_LABEL if MIC_LABEL in self._captures else SYSTEM_LABEL
        recognizer = self._recognizer_factory(
            source,
            self._on_result,
            config=self.recognizer_config,
            on_end=self._on_recognizer_end,
        )
        self._recognizer_source = source
        self._recognizer = recognizer
        recognizer.start()
        self._listening = True
        LOG.info("Speech recognition started on %s", source)

    # ---- listening toggle ---------------------------------------------

    def stop_listening(self) -> None:
        with self._lock:
            recognizer, self._recognizer = self._recognizer, None
            self._listening = False
            self._cancel_restart()
        if recognizer is not None:
            recognizer.stop()
        self.buffer.cancel_timers()

    def start_listening(self) -> None:
        with self._lock:
            if self._state is not CaptureState.CONNECTED or self._recognizer is not None:
                return
            self._start_recognizer()

    def toggle_listening(self) -> bool:
        if self.is_listening:
            self.stop_listening()
        else:
            self.start_listening()
        return self.is_listening

    # ---- disconnect ----------------------------------------------------

    def disconnect(self) -> bool:
        """Stop everything. Returns False if there was nothing to stop."""
        with self._lock:
            if self._state is CaptureState.IDLE and not self._captures and self._recognizer is None:
                return False
            self._generation += 1
            self._teardown()
            self._mode = None
            self._connected_at = None
            self.audio_level = 0.0
            self._set_state(CaptureState.IDLE)
        self.buffer.clear()
        self.notify("info", "Session ended")
        return True

    def _teardown(self) -> None:
        self._cancel_restart()
        recognizer, self._recognizer = self._recognizer, None
        self._listening = False
        self._recognizer_source = None
        if recognizer is not None:
            try:
                recognizer.stop()
            except Exception:  # noqa: BLE001
                LOG.exception("recognizer stop failed")
        recorder, self._recorder = self._recorder, None
        if recorder is not None:
            try:
                recorder.stop()
            except Exception:  # noqa: BLE001
                LOG.exception("recorder stop failed")
        captures, self._captures = self._captures, {}
        for capture in captures.values():
            try:
                capture.stop()
            except Exception:  # noqa: BLE001
                LOG.exception("capture stop failed")
        self.buffer.cancel_timers()

    def _cancel_restart(self) -> None:
        timer, self._restart_timer = self._restart_timer, None
        if timer is not None:
            timer.cancel()

    # ---- callbacks (capture / recognizer / recorder threads) ----------

    def _on_frame(self, label: str, pcm16: bytes) -> None:
        if label == self._recognizer_source:
            recognizer = self._recognizer
            if recognizer is not None:
                recognizer.send_frame(pcm16)
        if label == SYSTEM_LABEL:
            recorder = self._recorder
            if recorder is not None:
                recorder.feed(pcm16)
        if label == SYSTEM_LABEL or SYSTEM_LABEL not in self._captures:
            # Map -70..-10 dBFS onto 0..100 for the level meter.
            level = (EnergySegmenter.frame_dbfs(pcm16) + 70.0) * (100.0 / 60.0)
            self.audio_level = min(100.0, max(0.0, level))

    def _on_result(self, result: RecognitionResult) -> None:
        if self._state is not CaptureState.CONNECTED:
            return
        if result.is_final:
            if not self.buffer.append(result.text):
                self.buffer.set_preview(result.text)
        else:
            self.buffer.set_preview(result.text)

    def _on_blob(self, blob: bytes) -> None:
        if self._state is not CaptureState.CONNECTED or self.api is None:
            return
        try:
            text = self.api.transcribe_chunk(blob)
        except APIError as exc:
            LOG.warning("Chunk transcription failed: %s", exc.message)
            return
        if text:
            LOG.info("[chunk] %s", text)
            self.buffer.append_transcription(text)

    def _on_capture_ended(self, label: str) -> None:
        with self._lock:
            if self._state is not CaptureState.CONNECTED or label not in self._captures:
                return
            if label == MIC_LABEL and SYSTEM_LABEL in self._captures:
                # Screen mode keeps going on system audio alone.
                self._captures.pop(MIC_LABEL)
                self._recognizer_source = SYSTEM_LABEL
                LOG.warning("Microphone ended; recognizing system audio instead")
                return
        self.notify("warning", f"{label.title()} audio ended")
        self.disconnect()

    def _on_recognizer_end(self, recognizer: SpeechRecognizer) -> None:
        with self._lock:
            if recognizer is not self._recognizer or self._state is not CaptureState.CONNECTED:
                return
            if recognizer.stopped:
                return
            self._recognizer = None
            fatal = recognizer.fatal_error
            delay = None if fatal else self.restart_policy.next_delay()
            if delay is not None:
                generation = self._generation
                LOG.warning("Speech recognition ended; restarting in %.1fs", delay)
                timer = self._timer_factory(delay, lambda: self._restart_recognizer(generation))
                self._restart_timer = timer
                timer.start()
                return
        self.notify("error", fatal or "Speech recognition keeps failing; ending session")
        self.disconnect()

    def _restart_recognizer(self, generation: int) -> None:
        with self._lock:
            self._restart_timer = None
            if generation != self._generation or self._state is not CaptureState.CONNECTED:
                return
            if not self._listening or self._recognizer is not None:
                return
            self._start_recognizer()


class LiveSession:
    """State of the active live view: chat, streaming slot, detected question.

    The streamer's phase is the only "answer in progress" flag; the question
    buffer reads it to drop fragments while an answer is being generated.
    """

    def __init__(
        self,
        api: InterviewAPI,
        chat: Optional[ChatLog] = None,
        *,
        context: Optional[SessionContext] = None,
        profile_provider: Callable[[], Optional[Profile]] = lambda: None,
        detection: Optional[DetectionConfig] = None,
        streamer: Optional[AnswerStreamer] = None,
        timer_factory: TimerFactory = thread_timer,
        capture_factory: Optional[Callable[[QuestionBuffer], CaptureSessionManager]] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.api = api
        self.chat = chat if chat is not None else ChatLog()
        self.context = context
        self.profile_provider = profile_provider
        self.detection = detection or DetectionConfig.from_env()
        self.streamer = streamer or AnswerStreamer(api)
        self.session_id = f"nexus_{now_ms()}"
        self.streaming_text = ""
        self.manual_input = ""
        self.on_change = on_change
        self._lock = threading.Lock()
        self.buffer = QuestionBuffer(
            lambda: self.streamer.is_streaming,
            max_chars=self.detection.max_chars,
            silence_ms=self.detection.silence_ms,
            timer_factory=timer_factory,
            on_change=lambda _text, _preview: self._changed(),
        )
        if capture_factory is None:
            self.capture = CaptureSessionManager(self.buffer, api, timer_factory=timer_factory)
        else:
            self.capture = capture_factory(self.buffer)

    @property
    def messages(self) -> List[ChatMessage]:
        return self.chat.messages

    @property
    def detected_question(self) -> str:
        return self.buffer.text

    @property
    def live_transcript(self) -> str:
        return self.buffer.preview

    @property
    def is_streaming(self) -> bool:
        return self.streamer.is_streaming

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def set_manual_input(self, text: str) -> None:
        self.manual_input = text or ""

    def build_request(self, question: str) -> AnswerRequest:
        use_profile = self.context.use_profile if self.context is not None else True
        profile = self.profile_provider() if use_profile else None
        return AnswerRequest(
            question=question,
            profile=profile.to_payload() if profile is not None else None,
            session_id=self.session_id,
            interview_context=self.context.to_interview_context() if self.context is not None else None,
        )

    def generate_answer(self, text: Optional[str] = None, wait: bool = False) -> bool:
        """Ask for an answer to ``text``, the typed input or the detected question.

        Returns False (and changes nothing) if there is no question or an
        answer is already streaming.
        With ``wait`` the call returns once the answer has finished streaming.
        """
        with self._lock:
            question = (text or self.manual_input or self.buffer.text).strip()
            if not question or self.streamer.is_streaming:
                return False

            request = self.build_request(question)
            self.chat.append(ChatMessage.question(question))
            self.streaming_text = ""
            self.manual_input = ""
            self.buffer.clear()
            self._changed()

            submitted = self.streamer.submit(request, self._on_stream_update, self._on_answer, self._on_stream_error)

        if submitted and wait:
            self.streamer.join()
        return submitted

    def answer_detected(self) -> bool:
        if not self.buffer.text.strip():
            return False
        return self.generate_answer(self.buffer.text)

    def _on_stream_update(self, text: str) -> None:
        self.streaming_text = text
        self._changed()

    def _on_answer(self, message: ChatMessage) -> None:
        self.chat.append(message)
        self.streaming_text = ""
        self._changed()

    def _on_stream_error(self, reason: str) -> None:
        self.chat.append(ChatMessage.answer(f"Error: {reason}"))
        self.streaming_text = ""
        self._changed()

    def clear_chat(self) -> None:
        self.chat.clear()
        self._changed()

    def clear_detected(self) -> None:
        self.buffer.clear()

    def close(self) -> None:
        self.capture.disconnect()
        self.buffer.cancel_timers()
