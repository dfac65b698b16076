from __future__ import annotations
import os

# === Simple knobs (edit these numbers if you dislike envs) ===
NEXUS_API_BASE = os.environ.get("NEXUS_API_BASE", "http://localhost:8000")
NEXUS_STORAGE_DIR = os.environ.get("NEXUS_STORAGE_DIR", "~/.nexus_live")
STT_MODEL = os.environ.get("STT_MODEL", "gpt-4o-mini-transcribe")
STT_LANGUAGE = os.environ.get("STT_LANGUAGE", "en")

# Live session timing (seconds / milliseconds / characters)
LIVE = {
    "CHUNK_INTERVAL_S": float(os.environ.get("NEXUS_CHUNK_INTERVAL_S", "5.0")),
    "SILENCE_MS": int(os.environ.get("NEXUS_SILENCE_MS", "2000")),
    "QUESTION_MAX_CHARS": int(os.environ.get("NEXUS_QUESTION_MAX_CHARS", "500")),
    "CHAT_LIMIT": int(os.environ.get("NEXUS_CHAT_LIMIT", "50")),
    "STREAM_IDLE_TIMEOUT_S": float(os.environ.get("NEXUS_STREAM_IDLE_TIMEOUT_S", "60")),
}

# Mic VAD shaping for the recognizer (milliseconds / decibels / seconds)
VAD = {
    "ENERGY_CAL_MS": int(os.environ.get("STT_VAD_ENERGY_CAL_MS", "1200")),
    "ENERGY_FLOOR_DBFS": float(os.environ.get("STT_VAD_ENERGY_FLOOR_DBFS", "-60.0")),
    "ENERGY_OFFSET_DB": float(os.environ.get("STT_VAD_ENERGY_OFFSET_DB", "12.0")),
    "MIN_SPEECH_MS": int(os.environ.get("STT_VAD_MIN_SPEECH_MS", "400")),
    "MAX_SILENCE_MS": int(os.environ.get("STT_VAD_MAX_SILENCE_MS", "300")),
    "MAX_SEGMENT_SECONDS": float(os.environ.get("STT_VAD_MAX_SEGMENT_SECONDS", "5.0")),
    "PRE_ROLL_MS": int(os.environ.get("STT_VAD_PRE_ROLL_MS", "220")),
}

# Write env once so downstream .from_env() picks them up predictably.
os.environ.setdefault("NEXUS_API_BASE", NEXUS_API_BASE)
os.environ.setdefault("NEXUS_STORAGE_DIR", NEXUS_STORAGE_DIR)
os.environ.setdefault("STT_MODEL", STT_MODEL)
os.environ.setdefault("STT_LANGUAGE", STT_LANGUAGE)

os.environ.setdefault("NEXUS_CHUNK_INTERVAL_S", str(LIVE["CHUNK_INTERVAL_S"]))
os.environ.setdefault("NEXUS_SILENCE_MS", str(LIVE["SILENCE_MS"]))
os.environ.setdefault("NEXUS_QUESTION_MAX_CHARS", str(LIVE["QUESTION_MAX_CHARS"]))
os.environ.setdefault("NEXUS_CHAT_LIMIT", str(LIVE["CHAT_LIMIT"]))
os.environ.setdefault("NEXUS_STREAM_IDLE_TIMEOUT_S", str(LIVE["STREAM_IDLE_TIMEOUT_S"]))

os.environ.setdefault("STT_VAD_ENERGY_CAL_MS", str(VAD["ENERGY_CAL_MS"]))
os.environ.setdefault("STT_VAD_ENERGY_FLOOR_DBFS", str(VAD["ENERGY_FLOOR_DBFS"]))
os.environ.setdefault("STT_VAD_ENERGY_OFFSET_DB", str(VAD["ENERGY_OFFSET_DB"]))
os.environ.setdefault("STT_VAD_MIN_SPEECH_MS", str(VAD["MIN_SPEECH_MS"]))
os.environ.setdefault("STT_VAD_MAX_SILENCE_MS", str(VAD["MAX_SILENCE_MS"]))
os.environ.setdefault("STT_VAD_MAX_SEGMENT_SECONDS", str(VAD["MAX_SEGMENT_SECONDS"]))
os.environ.setdefault("STT_VAD_PRE_ROLL_MS", str(VAD["PRE_ROLL_MS"]))

# Re-export the dataclasses so rest of code imports from `config`.
from live_parameters import (  # noqa: E402
    APIConfig,
    CaptureParameters,
    DetectionConfig,
    RecognizerConfig,
    SegmentConfig,
)
