from __future__ import annotations

import enum
import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "AVAILABLE_MODELS",
    "DEFAULT_MODEL_ID",
    "SUPPORTED_LANGUAGES",
    "InterviewType",
    "ExperienceEntry",
    "EducationEntry",
    "ProjectEntry",
    "Profile",
    "normalize_profile",
    "ChatMessage",
    "SessionContext",
    "AnswerRequest",
    "AssistanceRequest",
    "CodingAssistanceRequest",
    "FeedbackRequest",
    "TranscriptAnalysisRequest",
    "now_ms",
]


AVAILABLE_MODELS: List[Dict[str, str]] = [
    {"id": "claude-sonnet-4-20250514", "name": "Claude Sonnet 4", "desc": "Best for interviews"},
    {"id": "claude-3-5-sonnet-20241022", "name": "Claude 3.5 Sonnet", "desc": "Fast & accurate"},
    {"id": "claude-3-opus-20240229", "name": "Claude 3 Opus", "desc": "Most capable"},
]
DEFAULT_MODEL_ID = AVAILABLE_MODELS[0]["id"]

SUPPORTED_LANGUAGES = (
    "en", "es", "fr", "de", "zh", "ja", "ko", "hi", "ar", "pt", "ru", "it", "nl", "tr", "pl",
)


class InterviewType(str, enum.Enum):
    BEHAVIORAL = "behavioral"
    TECHNICAL = "technical"
    CODING = "coding"
    SITUATIONAL = "situational"
    MIXED = "mixed"


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Profile


class ExperienceEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    company: str = ""
    title: str = ""
    duration: str = ""
    description: str = ""
    achievements: List[str] = []


class EducationEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    institution: str = ""
    degree: str = ""
    field: str = ""
    year: str = ""


class ProjectEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    description: str = ""
    technologies: List[str] = []


class Profile(BaseModel):
    """Structured resume record used to personalize answers.

    List fields are always present (possibly empty). Unknown keys sent by the
    backend are kept so a stored profile round-trips unchanged.
    """

    model_config = ConfigDict(extra="allow")

    name: str = "Unknown"
    email: Optional[str] = None
    phone: Optional[str] = None
    skills: List[str] = []
    experience: List[ExperienceEntry] = []
    education: List[EducationEntry] = []
    projects: List[ProjectEntry] = []
    achievements: List[str] = []
    summary: str = ""
    raw_resume_text: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def headline(self) -> str:
        skills = ", ".join(self.skills[:3]) if self.skills else "Skills loaded"
        return f"{self.name or 'Your Profile'} ({skills})"


_PROFILE_LIST_FIELDS = ("skills", "experience", "education", "projects", "achievements")


def normalize_profile(payload: Any) -> Profile:
    """Accept an upload response (``{"profile": {...}}`` or bare) and fill defaults."""
    data = payload
    if isinstance(data, dict) and isinstance(data.get("profile"), dict):
        data = data["profile"]
    if not isinstance(data, dict):
        raise ValueError("profile payload must be a JSON object")

    cleaned: Dict[str, Any] = dict(data)
    cleaned["name"] = data.get("name") or "Unknown"
    cleaned["email"] = data.get("email") or None
    for key in _PROFILE_LIST_FIELDS:
        value = data.get(key)
        cleaned[key] = list(value) if isinstance(value, list) else []
    cleaned["summary"] = data.get("summary") or ""
    cleaned["raw_resume_text"] = data.get("raw_resume_text") or ""
    return Profile.model_validate(cleaned)


# ---------------------------------------------------------------------------
# Chat


class ChatMessage(BaseModel):
    """One question or completed answer; never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["question", "answer"]
    text: str
    timestamp_ms: int = Field(default_factory=now_ms)

    @classmethod
    def question(cls, text: str) -> "ChatMessage":
        return cls(kind="question", text=text)

    @classmethod
    def answer(cls, text: str) -> "ChatMessage":
        return cls(kind="answer", text=text)

    def to_record(self) -> Dict[str, Any]:
        return {"type": "q" if self.kind == "question" else "a", "text": self.text, "time": self.timestamp_ms}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ChatMessage":
        kind = record.get("type")
        if kind not in ("q", "a"):
            raise ValueError(f"unknown chat record type: {kind!r}")
        return cls(
            kind="question" if kind == "q" else "answer",
            text=str(record.get("text") or ""),
            timestamp_ms=int(record.get("time") or 0),
        )


# ---------------------------------------------------------------------------
# Session + requests


class SessionContext(BaseModel):
    """Interview details captured when a live session starts."""

    model_config = ConfigDict(frozen=True)

    role: str
    company: str = ""
    job_description: str = ""
    model_id: str = DEFAULT_MODEL_ID
    use_profile: bool = True

    def to_interview_context(self) -> Dict[str, str]:
        return {
            "role": self.role,
            "company": self.company,
            "job_description": self.job_description,
            "model": self.model_id,
        }


class AnswerRequest(BaseModel):
    question: str
    profile: Optional[Dict[str, Any]] = None
    session_id: str = "default"
    interview_context: Optional[Dict[str, str]] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AssistanceRequest(BaseModel):
    question: str
    session_id: str = ""
    context: str = ""
    interview_type: InterviewType = InterviewType.MIXED
    language: str = "en"
    assistance_level: str = "medium"


class CodingAssistanceRequest(BaseModel):
    problem_description: str
    session_id: str = ""
    language: str = "python"
    current_code: str = ""
    hints_only: bool = False


class FeedbackRequest(BaseModel):
    question: str
    user_response: str
    session_id: str = ""
    interview_type: InterviewType = InterviewType.MIXED


class TranscriptAnalysisRequest(BaseModel):
    transcript: str
    session_id: str = ""
    profile: Optional[Dict[str, Any]] = None
