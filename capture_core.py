from __future__ import annotations

import io
import json
import logging
import os
import threading
import queue
import wave
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Tuple

import httpx
import numpy as np

from config import RecognizerConfig, SegmentConfig


# ---------------------------------------------------------------------------
# Configuration helpers


def _default_key_file() -> Path:
    # Prefer openai_api_key.txt next to the modules, fall back to the storage dir.
    script_dir = Path(__file__).resolve().parent
    candidates = [
        script_dir / "openai_api_key.txt",
        Path(os.environ.get("NEXUS_STORAGE_DIR", "~/.nexus_live")).expanduser() / "openai_api_key.txt",
    ]
    for path in candidates:
        if path.exists():
            return path
    return candidates[0]


def load_openai_api_key() -> Optional[str]:
    """Load the transcription API key from env or a local text file."""
    key = os.environ.get("OPENAI_API_KEY")
    if key:
        key = key.strip()
        if key:
            return key

    key_file = os.environ.get("OPENAI_API_KEY_FILE")
    path = Path(key_file).expanduser() if key_file else _default_key_file()
    if not path.exists():
        return None

    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return text or None


# ---------------------------------------------------------------------------
# Shared audio constants

CAPTURE_LOG = logging.getLogger("nexus_live")
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

STT_LOG = logging.getLogger("nexus_http")

SAMPLE_RATE = 16000
FRAME_MS = 10
FRAME_SAMPLES = SAMPLE_RATE * FRAME_MS // 1000  # 160 samples @16 kHz, 10 ms frame

LOOPBACK_TOKENS = ("blackhole", "loopback", "soundflower", "monitor of", "stereo mix")


class CaptureError(RuntimeError):
    """Audio capture could not be started (or was refused by the OS)."""

    def __init__(self, message: str, permission_denied: bool = False):
        super().__init__(message)
        self.permission_denied = permission_denied


# ---------------------------------------------------------------------------
# Device helpers


def _sounddevice():
    # PortAudio is loaded when sounddevice is imported; only do that once a device is needed.
    import sounddevice

    return sounddevice


def list_input_devices() -> List[Dict[str, object]]:
    devices: List[Dict[str, object]] = []
    for i, dev in enumerate(_sounddevice().query_devices()):
        if dev["max_input_channels"] > 0:
            devices.append({"index": i, "name": dev["name"], "channels": dev["max_input_channels"]})
    return devices


def _match_device(want: str, name: str) -> bool:
    return want.lower() in name.lower()


def _is_loopback(name: str) -> bool:
    return any(_match_device(token, name) for token in LOOPBACK_TOKENS)


def find_loopback_candidate(devices: Optional[List[Dict[str, object]]] = None) -> Tuple[Optional[int], Optional[str]]:
    """Return the input device that carries system (meeting) audio, if any."""
    devices = devices if devices is not None else list_input_devices()
    env_preferred = os.environ.get("NEXUS_LOOPBACK_DEVICE")
    priorities = ([env_preferred] if env_preferred else []) + list(LOOPBACK_TOKENS)
    for want in priorities:
        for dev in devices:
            if _match_device(want, str(dev["name"])):
                return int(dev["index"]), str(dev["name"])
    return None, None


def pick_default_mic(devices: Optional[List[Dict[str, object]]] = None) -> Optional[int]:
    devices = devices if devices is not None else list_input_devices()
    env_preferred = os.environ.get("NEXUS_MIC_DEVICE", "").strip().lower()
    preferred = None
    fallback = None
    for device in devices:
        name_low = str(device.get("name", "")).lower()
        if _is_loopback(name_low):
            continue
        if env_preferred and env_preferred in name_low:
            return int(device["index"])
        if fallback is None:
            fallback = device
        if preferred is None and "microphone" in name_low:
            preferred = device
    chosen = preferred or fallback
    return int(chosen["index"]) if chosen is not None else None


def pcm_to_wav(pcm16: bytes, sample_rate: int = SAMPLE_RATE) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm16)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Capture


class AudioCapture(threading.Thread):
    """Reads one input device and hands 10 ms PCM16 frames to ``on_frame``.

    ``on_ended`` fires when the stream stops without ``stop()`` being called
    (device unplugged, permission revoked).
    """

    def __init__(
        self,
        label: str,
        device_idx: int,
        on_frame: Callable[[str, bytes], None],
        on_ended: Optional[Callable[[str], None]] = None,
    ):
        super().__init__(daemon=True, name=f"capture-{label.lower()}")
        self.label = label
        self.device_idx = device_idx
        self.on_frame = on_frame
        self.on_ended = on_ended
        self._stop_event = threading.Event()
        self._ready = threading.Event()
        self._open_error: Optional[BaseException] = None

    def stop(self) -> None:
        self._stop_event.set()

    def open(self, timeout: float = 3.0) -> None:
        """Start the thread and wait until the device stream is running."""
        self.start()
        if not self._ready.wait(timeout):
            self.stop()
            raise CaptureError(f"{self.label} device did not start in time")
        if self._open_error is not None:
            message = str(self._open_error)
            denied = any(token in message.lower() for token in ("permission", "not allowed", "denied"))
            raise CaptureError(f"{self.label} capture failed: {message}", permission_denied=denied)

    def run(self) -> None:
        def cb(indata, _frames, _time_info, status):
            if status:
                CAPTURE_LOG.debug("%s status: %s", self.label, status)
            if self._stop_event.is_set():
                raise sd.CallbackStop()
            frame = indata[:, 0].astype(np.float32)
            pcm16 = np.clip(frame * 32768.0, -32768, 32767).astype(np.int16)
            self.on_frame(self.label, pcm16.tobytes())

        try:
            sd = _sounddevice()
            stream = sd.InputStream(
                samplerate=SAMPLE_RATE,
                channels=1,
                dtype="float32",
                blocksize=FRAME_SAMPLES,
                latency="low",
                device=self.device_idx,
                callback=cb,
            )
            stream.start()
        except Exception as exc:  # noqa: BLE001
            self._open_error = exc
            self._ready.set()
            return

        try:
            self._ready.set()
            while not self._stop_event.is_set() and stream.active:
                sd.sleep(100)
        finally:
            stream.close()

        if not self._stop_event.is_set():
            CAPTURE_LOG.warning("%s capture ended unexpectedly", self.label)
            if self.on_ended is not None:
                self.on_ended(self.label)


# ---------------------------------------------------------------------------
# Recognition


@dataclass
class RecognitionResult:
    """One recognizer event: interim text is superseded, final text is kept."""

    label: str
    text: str
    is_final: bool


class EnergySegmenter:
    """Energy gate that cuts the frame stream into speech segments."""

    def __init__(self, cfg: SegmentConfig):
        self.cfg = cfg
        self._calibration_left = max(1, cfg.energy_calibration_ms // FRAME_MS)
        self._calibration_levels: List[float] = []
        self._noise_floor_dbfs = cfg.energy_floor_dbfs
        self._threshold_dbfs = self._noise_floor_dbfs + cfg.energy_offset_db
        self._pre_roll: Deque[bytes] = deque(maxlen=max(1, cfg.pre_roll_ms // FRAME_MS))
        self._segment: List[bytes] = []
        self._speaking = False
        self._speech_frames = 0
        self._silence_frames = 0
        self._min_speech_frames = max(1, cfg.min_speech_ms // FRAME_MS)
        self._max_silence_frames = max(1, cfg.max_silence_ms // FRAME_MS)
        self._max_segment_frames = max(
            self._min_speech_frames + 1,
            int(cfg.max_segment_seconds * 1000 / FRAME_MS),
        )

    @staticmethod
    def frame_dbfs(pcm16: bytes) -> float:
        samples = np.frombuffer(pcm16, dtype=np.int16).astype(np.float32)
        if samples.size == 0:
            return -120.0
        rms = np.sqrt(np.mean(np.square(samples))) + 1e-12
        db = 20.0 * np.log10(rms / 32768.0)
        if not np.isfinite(db):
            return -120.0
        return float(db)

    def _raise_threshold(self) -> None:
        self._threshold_dbfs = max(self.cfg.energy_floor_dbfs, self._noise_floor_dbfs + self.cfg.energy_offset_db)

    def _reset(self) -> Optional[bytes]:
        data = b"".join(self._segment) if self._speech_frames >= self._min_speech_frames else None
        self._segment.clear()
        self._speaking = False
        self._speech_frames = 0
        self._silence_frames = 0
        return data or None

    def add_frame(self, pcm16: bytes) -> List[bytes]:
        """Return the segments (PCM bytes) completed by this frame."""
        level = self.frame_dbfs(pcm16)

        if self._calibration_left > 0:
            self._calibration_levels.append(level)
            self._calibration_left -= 1
            if self._calibration_left == 0:
                baseline = float(np.mean(self._calibration_levels))
                if not np.isfinite(baseline):
                    baseline = self.cfg.energy_floor_dbfs
                self._noise_floor_dbfs = max(self.cfg.energy_floor_dbfs, baseline)
                self._raise_threshold()
            self._pre_roll.append(pcm16)
            return []

        loud = level >= self._threshold_dbfs
        if not self._speaking:
            if not loud:
                self._pre_roll.append(pcm16)
                # Track slow drift of the room noise.
                self._noise_floor_dbfs = 0.95 * self._noise_floor_dbfs + 0.05 * level
                self._raise_threshold()
                return []
            self._speaking = True
            self._segment.extend(self._pre_roll)
            self._pre_roll.clear()

        self._segment.append(pcm16)
        self._speech_frames += 1
        self._silence_frames = 0 if loud else self._silence_frames + 1

        if self._speech_frames >= self._max_segment_frames or self._silence_frames >= self._max_silence_frames:
            done = self._reset()
            return [done] if done else []
        return []

    def flush(self) -> Optional[bytes]:
        """Hand back any pending speech segment."""
        return self._reset()


class SpeechRecognizer(threading.Thread):
    """Continuous recognition: VAD-cut segments posted to an HTTP transcriber.

    SSE ``*.delta`` events become interim results, completion events become
    final results. The thread ends on ``stop()``, when the API key is missing
    (``fatal_error`` is set) or after repeated transport failures.
    """

    MAX_CONSECUTIVE_FAILURES = 3

    def __init__(
        self,
        label: str,
        on_result: Callable[[RecognitionResult], None],
        *,
        config: Optional[RecognizerConfig] = None,
        on_end: Optional[Callable[["SpeechRecognizer"], None]] = None,
        max_queue: int = 2048,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(daemon=True, name=f"recognizer-{label.lower()}")
        self.label = label
        self.on_result = on_result
        self.on_end = on_end
        self.cfg = config or RecognizerConfig.from_env()
        self.fatal_error: Optional[str] = None
        self._frames: "queue.Queue[bytes]" = queue.Queue(maxsize=max_queue)
        self._stop_event = threading.Event()
        self._seg = EnergySegmenter(self.cfg.segment)
        self._api_key = load_openai_api_key()
        self._accum = ""
        self._failures = 0
        self._headers: Dict[str, str] = {}
        if self._api_key:
            self._headers["Authorization"] = f"Bearer {self._api_key}"
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(connect=10.0, read=30.0, write=30.0, pool=None))

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    def send_frame(self, pcm16: bytes) -> None:
        if not pcm16 or self._stop_event.is_set():
            return
        try:
            self._frames.put_nowait(pcm16)
        except queue.Full:
            try:
                _ = self._frames.get_nowait()
            except queue.Empty:
                pass
            try:
                self._frames.put_nowait(pcm16)
            except queue.Full:
                STT_LOG.warning("%s frame dropped (queue saturated)", self.label)

    def run(self) -> None:
        try:
            self._loop()
        finally:
            if self._owns_client:
                self._client.close()
            if self.on_end is not None:
                self.on_end(self)

    def _loop(self) -> None:
        if not self._api_key:
            self.fatal_error = "OPENAI_API_KEY missing; speech recognition disabled"
            STT_LOG.error("%s: %s", self.label, self.fatal_error)
            return

        while not self._stop_event.is_set():
            try:
                frame = self._frames.get(timeout=0.1)
            except queue.Empty:
                continue
            for segment in self._seg.add_frame(frame):
                self._transcribe_segment(segment)
            if self._failures >= self.MAX_CONSECUTIVE_FAILURES:
                STT_LOG.error("%s recognizer giving up after %d failed requests", self.label, self._failures)
                return

    # ---- helpers -----------------------------------------------------

    def _transcribe_segment(self, pcm16: bytes) -> None:
        if not pcm16:
            return

        use_sse = bool(self.cfg.interim_results and not self.cfg.model.lower().startswith("whisper"))
        data = {
            "model": self.cfg.model,
            "language": self.cfg.language,
            "stream": use_sse,
            "response_format": "json",
            "temperature": 0,
        }
        if self.cfg.prompt:
            data["prompt"] = self.cfg.prompt
        files = {"file": ("segment.wav", pcm_to_wav(pcm16), "audio/wav")}
        self._accum = ""

        try:
            if use_sse:
                STT_LOG.debug("%s POST %s stream=True model=%s", self.label, self.cfg.endpoint, self.cfg.model)
                headers = {**self._headers, "Accept": "text/event-stream"}
                with self._client.stream(
                    "POST", self.cfg.endpoint, data=data, files=files, headers=headers
                ) as response:
                    if response.status_code != 200:
                        response.read()
                        STT_LOG.error("%s transcription error %s: %s", self.label, response.status_code, response.text)
                        self._failures += 1
                        return
                    for line in response.iter_lines():
                        line = line.strip()
                        if not line.startswith("data:"):
                            continue
                        payload = line[5:].strip()
                        if payload == "[DONE]":
                            break
                        try:
                            message = json.loads(payload)
                        except json.JSONDecodeError:
                            STT_LOG.debug("%s SSE non-JSON payload: %s", self.label, payload)
                            continue
                        self._handle_sse(message)
            else:
                STT_LOG.debug("%s POST %s stream=False model=%s", self.label, self.cfg.endpoint, self.cfg.model)
                response = self._client.post(self.cfg.endpoint, data=data, files=files, headers=self._headers)
                if response.status_code != 200:
                    STT_LOG.error("%s transcription error %s: %s", self.label, response.status_code, response.text)
                    self._failures += 1
                    return
                payload = response.json()
                text = str(payload.get("text") or "").strip() if isinstance(payload, dict) else ""
                if text:
                    self.on_result(RecognitionResult(self.label, text, True))
        except httpx.HTTPError as exc:
            STT_LOG.error("%s upload failed: %s", self.label, exc)
            self._failures += 1
            return
        self._failures = 0

    def _handle_sse(self, message: dict) -> None:
        msg_type = str(message.get("type") or message.get("event") or "").lower()
        text = str(message.get("delta") or message.get("text") or "")

        if msg_type.endswith(".delta") or msg_type.endswith("_delta"):
            if text:
                self._accum += text
                self.on_result(RecognitionResult(self.label, self._accum.strip(), False))
        elif msg_type.endswith(".done") or msg_type.endswith("completed"):
            final_text = (text or self._accum).strip()
            if final_text:
                self.on_result(RecognitionResult(self.label, final_text, True))
            self._accum = ""
        elif msg_type == "error" or message.get("error"):
            STT_LOG.error("%s SSE error: %s", self.label, message)


# ---------------------------------------------------------------------------
# Periodic chunk recorder


class ChunkRecorder(threading.Thread):
    """Buffers PCM and flushes a WAV blob every ``interval_s`` seconds.

    Each flush ends the current recording and immediately begins the next, so
    no audio falls between blobs. Blobs smaller than ``min_blob_bytes`` are
    dropped; whatever is buffered at ``stop()`` is discarded.
    """

    def __init__(
        self,
        on_blob: Callable[[bytes], None],
        *,
        interval_s: float = 5.0,
        min_blob_bytes: int = 1000,
    ):
        super().__init__(daemon=True, name="chunk-recorder")
        self.on_blob = on_blob
        self.interval_s = max(0.1, float(interval_s))
        self.min_blob_bytes = int(min_blob_bytes)
        self._lock = threading.Lock()
        self._pcm: List[bytes] = []
        self._stop_event = threading.Event()

    def feed(self, pcm16: bytes) -> None:
        if self._stop_event.is_set():
            return
        with self._lock:
            self._pcm.append(pcm16)

    def stop(self) -> None:
        self._stop_event.set()
        with self._lock:
            self._pcm.clear()

    def flush(self) -> Optional[bytes]:
        with self._lock:
            pcm, self._pcm = b"".join(self._pcm), []
        if not pcm:
            return None
        blob = pcm_to_wav(pcm)
        if len(blob) < self.min_blob_bytes:
            return None
        return blob

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            blob = self.flush()
            if blob is None:
                continue
            try:
                self.on_blob(blob)
            except Exception as exc:  # noqa: BLE001
                CAPTURE_LOG.warning("chunk upload failed: %s", exc)


__all__ = [
    "SAMPLE_RATE",
    "FRAME_MS",
    "FRAME_SAMPLES",
    "CaptureError",
    "list_input_devices",
    "find_loopback_candidate",
    "pick_default_mic",
    "pcm_to_wav",
    "load_openai_api_key",
    "AudioCapture",
    "RecognitionResult",
    "EnergySegmenter",
    "SpeechRecognizer",
    "ChunkRecorder",
]
