from __future__ import annotations

import contextlib
import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import httpx
from pydantic import BaseModel

from config import APIConfig
from models import AnswerRequest, Profile, normalize_profile

HTTP_LOG = logging.getLogger("nexus_http")

RESUME_EXTENSIONS = {".pdf", ".doc", ".docx"}
RESUME_MAX_BYTES = 10 * 1024 * 1024

__all__ = ["APIError", "InterviewAPI", "RESUME_EXTENSIONS", "RESUME_MAX_BYTES"]


class APIError(RuntimeError):
    """A backend call failed; ``message`` is what the user gets to see."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("detail", "error", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return fallback


def _as_payload(request: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(request, BaseModel):
        return request.model_dump(mode="json")
    return dict(request)


class InterviewAPI:
    """Thin wrapper over the interview backend. One attempt per call, no retry."""

    def __init__(self, config: Optional[APIConfig] = None, *, transport: Optional[httpx.BaseTransport] = None):
        self.cfg = config or APIConfig.from_env()
        self._client = httpx.Client(
            base_url=self.cfg.base_url,
            timeout=httpx.Timeout(self.cfg.timeout_s, connect=10.0),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "InterviewAPI":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ---- plumbing -----------------------------------------------------

    def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        HTTP_LOG.info("%s %s", method, path)
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            HTTP_LOG.error("%s failed: %s", operation, exc)
            raise APIError(f"{operation} failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            message = _error_message(response, f"{operation} failed")
            HTTP_LOG.error("%s error %s: %s", operation, response.status_code, message)
            raise APIError(message, response.status_code)

        try:
            return response.json()
        except ValueError:
            return response.text

    # ---- profile ------------------------------------------------------

    def upload_resume(self, path: Union[str, Path]) -> Profile:
        path = Path(path)
        if path.suffix.lower() not in RESUME_EXTENSIONS:
            raise APIError(f"Unsupported resume type {path.suffix or '(none)'}; use PDF, DOC or DOCX")
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise APIError(f"Cannot read resume {path}: {exc}") from exc
        if size > RESUME_MAX_BYTES:
            raise APIError("Resume is larger than 10 MB")

        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        files = {"file": (path.name, path.read_bytes(), mime)}
        data = self._request("Upload", "POST", "/profile/upload-resume", files=files)
        try:
            return normalize_profile(data)
        except ValueError as exc:
            raise APIError(f"Upload returned an unexpected payload: {exc}") from exc

    def create_manual_profile(self, profile: Union[Profile, Dict[str, Any]]) -> Any:
        return self._request("Create profile", "POST", "/profile/manual", json=_as_payload(profile))

    def get_profile(self, profile_id: str) -> Any:
        return self._request("Get profile", "GET", f"/profile/{profile_id}")

    def list_profiles(self) -> Any:
        return self._request("List profiles", "GET", "/profile/")

    # ---- practice interview --------------------------------------------

    def start_session(self, interview_type: str = "mixed", language: str = "en") -> Any:
        params = {"interview_type": str(getattr(interview_type, "value", interview_type)), "language": language}
        return self._request("Start session", "POST", "/interview/session/start", params=params)

    def end_session(self, session_id: str) -> Any:
        return self._request("End session", "POST", f"/interview/session/{session_id}/end")

    def get_assistance(self, request: Union[BaseModel, Dict[str, Any]]) -> Any:
        return self._request("Assistance", "POST", "/interview/assist", json=_as_payload(request))

    def get_coding_assistance(self, request: Union[BaseModel, Dict[str, Any]]) -> Any:
        return self._request("Coding assistance", "POST", "/interview/coding-assist", json=_as_payload(request))

    def get_feedback(self, request: Union[BaseModel, Dict[str, Any]]) -> Any:
        return self._request("Feedback", "POST", "/interview/feedback", json=_as_payload(request))

    def translate(self, text: str, target_language: str) -> Any:
        params = {"text": text, "target_language": target_language}
        return self._request("Translate", "POST", "/interview/translate", params=params)

    def check_health(self) -> Any:
        return self._request("Health check", "GET", "/health")

    # ---- live ----------------------------------------------------------

    def analyze_transcript(self, request: Union[BaseModel, Dict[str, Any]]) -> Any:
        return self._request("Analyze transcript", "POST", "/live/analyze-transcript", json=_as_payload(request))

    def quick_answer(self, question: str, profile: Union[Profile, Dict[str, Any], None] = None) -> Any:
        kwargs: Dict[str, Any] = {"params": {"question": question}}
        if profile:
            kwargs["json"] = {"profile": _as_payload(profile)}
        return self._request("Quick answer", "POST", "/live/quick-answer", **kwargs)

    def transcribe_chunk(self, audio: bytes, filename: str = "audio.wav", content_type: str = "audio/wav") -> str:
        files = {"file": (filename, audio, content_type)}
        data = self._request("Transcribe", "POST", "/live/transcribe-chunk", files=files)
        if isinstance(data, dict) and data.get("success"):
            return str(data.get("text") or "").strip()
        return ""

    def memory_status(self, session_id: str = "default") -> Any:
        return self._request("Memory status", "GET", "/live/memory-status", params={"session_id": session_id})

    def clear_memory(self, session_id: str = "default") -> Any:
        return self._request("Clear memory", "POST", "/live/clear-memory", params={"session_id": session_id})

    @contextlib.contextmanager
    def open_answer_stream(self, request: AnswerRequest) -> Iterator[httpx.Response]:
        """POST /live/stream-answer and yield the open streaming response.

        The read timeout is the idle gap allowed between two chunks.
        """
        timeout = httpx.Timeout(connect=10.0, read=self.cfg.stream_idle_timeout_s, write=self.cfg.timeout_s, pool=None)
        HTTP_LOG.info("POST /live/stream-answer session=%s", request.session_id)
        try:
            with self._client.stream(
                "POST",
                "/live/stream-answer",
                json=request.to_payload(),
                headers={"Accept": "text/event-stream"},
                timeout=timeout,
            ) as response:
                if response.status_code != 200:
                    response.read()
                    message = _error_message(response, "Answer stream failed")
                    HTTP_LOG.error("stream-answer error %s: %s", response.status_code, message)
                    raise APIError(message, response.status_code)
                yield response
        except httpx.HTTPError as exc:
            HTTP_LOG.error("stream-answer transport failure: %s", exc)
            raise APIError(f"Answer stream failed: {exc}") from exc


def describe_profiles(payload: Any) -> List[str]:
    """Flatten a /profile/ listing into one line per profile for the CLI."""
    if isinstance(payload, dict):
        items = payload.get("profiles") or []
    elif isinstance(payload, list):
        items = payload
    else:
        items = []
    lines: List[str] = []
    for item in items:
        if isinstance(item, dict):
            ident = item.get("id") or item.get("profile_id") or "?"
            lines.append(f"{ident}: {item.get('name') or 'Unknown'}")
    return lines
