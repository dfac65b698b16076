from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

__all__ = [
    "APIConfig",
    "CaptureParameters",
    "DetectionConfig",
    "SegmentConfig",
    "RecognizerConfig",
]


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() not in {"0", "false", "no", "off"}


DEFAULT_API_BASE = "http://localhost:8000"
DEFAULT_STORAGE_DIR = "~/.nexus_live"
DEFAULT_STT_MODEL = "gpt-4o-mini-transcribe"
DEFAULT_STT_ENDPOINT = "https://api.openai.com/v1/audio/transcriptions"
DEFAULT_LANGUAGE = "en"


@dataclass
class APIConfig:
    """Where the interview backend lives and how long we wait on it."""

    base_url: str = DEFAULT_API_BASE
    timeout_s: float = 30.0
    # Max gap between two chunks of a streamed answer before giving up.
    stream_idle_timeout_s: float = 60.0
    storage_dir: Path = field(default_factory=lambda: Path(DEFAULT_STORAGE_DIR).expanduser())

    @classmethod
    def from_env(cls) -> "APIConfig":
        d = cls()
        storage = os.environ.get("NEXUS_STORAGE_DIR")
        return cls(
            base_url=os.environ.get("NEXUS_API_BASE", d.base_url).rstrip("/"),
            timeout_s=_env_float("NEXUS_HTTP_TIMEOUT_S", d.timeout_s),
            stream_idle_timeout_s=_env_float("NEXUS_STREAM_IDLE_TIMEOUT_S", d.stream_idle_timeout_s),
            storage_dir=Path(storage).expanduser() if storage else d.storage_dir,
        )


@dataclass
class DetectionConfig:
    """Rolling detected-question buffer and chat caps."""

    max_chars: int = 500
    silence_ms: int = 2000
    chat_limit: int = 50
    practice_history_limit: int = 20

    @classmethod
    def from_env(cls) -> "DetectionConfig":
        d = cls()
        return cls(
            max_chars=_env_int("NEXUS_QUESTION_MAX_CHARS", d.max_chars),
            silence_ms=_env_int("NEXUS_SILENCE_MS", d.silence_ms),
            chat_limit=_env_int("NEXUS_CHAT_LIMIT", d.chat_limit),
            practice_history_limit=_env_int("NEXUS_PRACTICE_HISTORY_LIMIT", d.practice_history_limit),
        )


@dataclass
class CaptureParameters:
    """Periodic chunk upload and recognizer restart guard."""

    chunk_interval_s: float = 5.0
    min_blob_bytes: int = 1000
    max_restarts: int = 5
    restart_window_s: float = 30.0
    restart_base_delay_s: float = 0.5
    restart_max_delay_s: float = 8.0

    @classmethod
    def from_env(cls) -> "CaptureParameters":
        d = cls()
        return cls(
            chunk_interval_s=_env_float("NEXUS_CHUNK_INTERVAL_S", d.chunk_interval_s),
            min_blob_bytes=_env_int("NEXUS_MIN_BLOB_BYTES", d.min_blob_bytes),
            max_restarts=_env_int("NEXUS_RECOGNITION_MAX_RESTARTS", d.max_restarts),
            restart_window_s=_env_float("NEXUS_RECOGNITION_RESTART_WINDOW_S", d.restart_window_s),
            restart_base_delay_s=_env_float("NEXUS_RECOGNITION_RESTART_DELAY_S", d.restart_base_delay_s),
            restart_max_delay_s=_env_float("NEXUS_RECOGNITION_RESTART_MAX_DELAY_S", d.restart_max_delay_s),
        )


@dataclass
class SegmentConfig:
    """Lightweight energy VAD used before HTTP transcription."""

    # Calibrate on startup
    energy_calibration_ms: int = 3000
    energy_floor_dbfs: float = -50.0

    # Tighter gate → fewer false positives
    energy_offset_db: float = 12.0

    # Segment shaping
    min_speech_ms: int = 300
    max_silence_ms: int = 200
    max_segment_seconds: float = 5.0
    pre_roll_ms: int = 120

    @classmethod
    def from_env(cls) -> "SegmentConfig":
        d = cls()
        return cls(
            energy_calibration_ms=_env_int("STT_VAD_ENERGY_CAL_MS", d.energy_calibration_ms),
            energy_floor_dbfs=_env_float("STT_VAD_ENERGY_FLOOR_DBFS", d.energy_floor_dbfs),
            energy_offset_db=_env_float("STT_VAD_ENERGY_OFFSET_DB", d.energy_offset_db),
            min_speech_ms=_env_int("STT_VAD_MIN_SPEECH_MS", d.min_speech_ms),
            max_silence_ms=_env_int("STT_VAD_MAX_SILENCE_MS", d.max_silence_ms),
            max_segment_seconds=_env_float("STT_VAD_MAX_SEGMENT_SECONDS", d.max_segment_seconds),
            pre_roll_ms=_env_int("STT_VAD_PRE_ROLL_MS", d.pre_roll_ms),
        )


@dataclass
class RecognizerConfig:
    """Continuous recognition over HTTP transcription."""

    model: str = DEFAULT_STT_MODEL
    language: str = DEFAULT_LANGUAGE
    endpoint: str = DEFAULT_STT_ENDPOINT
    prompt: Optional[str] = field(default_factory=lambda: os.environ.get("STT_PROMPT"))

    # Interim results come from SSE deltas
    interim_results: bool = True

    segment: SegmentConfig = field(default_factory=SegmentConfig)

    @classmethod
    def from_env(cls, segment: Optional[SegmentConfig] = None) -> "RecognizerConfig":
        seg = segment or SegmentConfig.from_env()
        d = cls(segment=seg)
        return cls(
            model=os.environ.get("STT_MODEL", d.model),
            language=os.environ.get("STT_LANGUAGE", d.language),
            endpoint=os.environ.get("STT_ENDPOINT", d.endpoint),
            prompt=os.environ.get("STT_PROMPT", d.prompt),
            interim_results=_env_bool("STT_ENABLE_DELTA_STREAMING", d.interim_results),
            segment=seg,
        )

