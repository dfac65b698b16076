"""Screen-level state for the live flow and the practice panels.

The Tk app and the CLI both drive these objects; neither holds any state of
its own beyond widgets.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from answer_stream import AnswerStreamer
from api_client import InterviewAPI
from capture_core import CaptureError
from live_session import CaptureMode, CaptureState, LiveSession
from models import DEFAULT_MODEL_ID, AnswerRequest, Profile, SessionContext, now_ms
from profile_store import PracticeHistory

LOG = logging.getLogger("nexus_live")

QUESTION_TEMPLATES: Dict[str, List[str]] = {
    "behavioral": [
        "Tell me about yourself",
        "Why should we hire you?",
        "What are your greatest strengths?",
        "Describe a challenging project you worked on",
        "How do you handle conflict in a team?",
    ],
    "technical": [
        "Explain the difference between Docker and Kubernetes",
        "How would you design a CI/CD pipeline?",
        "What is Infrastructure as Code?",
        "Explain microservices architecture",
        "How do you handle secrets management?",
    ],
    "scenario": [
        "How would you handle a production outage?",
        "Design a highly available system",
        "How would you migrate to the cloud?",
        "Optimize a slow deployment pipeline",
        "Handle a security breach scenario",
    ],
}

CODING_LANGUAGES = ("python", "javascript", "typescript", "go", "rust", "bash", "yaml", "terraform", "dockerfile")

CODING_CHALLENGES: Dict[str, List[str]] = {
    "devops": [
        "Write a Kubernetes deployment for a microservice",
        "Create a Terraform module for AWS VPC",
        "Write a GitHub Actions CI/CD pipeline",
        "Create a Docker multi-stage build",
        "Write a Prometheus alerting rule",
    ],
    "algorithms": [
        "Implement a load balancer algorithm",
        "Write a rate limiter",
        "Implement a circuit breaker pattern",
        "Create a cache with TTL",
        "Write a retry mechanism with exponential backoff",
    ],
    "scripts": [
        "Write a log rotation script",
        "Create a backup automation script",
        "Write a health check script",
        "Create a deployment rollback script",
        "Write a secrets rotation script",
    ],
}


class SetupError(RuntimeError):
    """The setup form cannot produce a session yet."""


class FlowStage(enum.Enum):
    SETUP = "setup"
    CONNECT = "connect"
    ACTIVE = "active"


@dataclass
class SetupForm:
    role: str = ""
    company: str = ""
    job_description: str = ""
    model_id: str = DEFAULT_MODEL_ID
    use_profile: bool = True

    def validate(self) -> None:
        if not self.role.strip():
            raise SetupError("Please enter the role you're interviewing for")

    def to_context(self) -> SessionContext:
        self.validate()
        return SessionContext(
            role=self.role.strip(),
            company=self.company.strip(),
            job_description=self.job_description.strip(),
            model_id=self.model_id or DEFAULT_MODEL_ID,
            use_profile=self.use_profile,
        )


class SessionFlow:
    """SETUP -> CONNECT -> ACTIVE, and back to CONNECT when the session ends."""

    def __init__(self, session: LiveSession, form: Optional[SetupForm] = None):
        self.session = session
        self.form = form or SetupForm()
        self.stage = FlowStage.SETUP
        self.context: Optional[SessionContext] = None
        session.capture.add_state_listener(self._on_capture_state)

    def advance(self) -> None:
        if self.stage is not FlowStage.SETUP:
            return
        self.form.validate()
        self.stage = FlowStage.CONNECT

    def back_to_setup(self) -> None:
        if self.stage is FlowStage.CONNECT:
            self.stage = FlowStage.SETUP

    def start(self, mode: CaptureMode) -> bool:
        """Connect audio for ``mode``. Returns True once the view is ACTIVE."""
        if self.stage is not FlowStage.CONNECT:
            return self.stage is FlowStage.ACTIVE
        self.context = self.form.to_context()
        self.session.context = self.context
        try:
            self.session.capture.connect(mode)
        except CaptureError as exc:
            LOG.warning("Connect failed: %s", exc)
            return False
        self.stage = FlowStage.ACTIVE
        return True

    def end_session(self) -> None:
        self.session.capture.disconnect()
        if self.stage is FlowStage.ACTIVE:
            self.stage = FlowStage.CONNECT

    def _on_capture_state(self, state: CaptureState) -> None:
        # Device lost or recognizer gave up.
        if state is CaptureState.IDLE and self.stage is FlowStage.ACTIVE:
            self.stage = FlowStage.CONNECT


def build_coding_prompt(challenge: str, language: str) -> str:
    return (
        f"Coding Challenge: {challenge}\n"
        "\n"
        f"Language: {language}\n"
        "\n"
        "Please provide:\n"
        "1. A clean, well-commented solution\n"
        "2. Brief explanation of the approach\n"
        "3. Time and space complexity if applicable\n"
        "4. Any DevOps best practices considerations\n"
        "\n"
        "Write production-quality code."
    )


class PracticeSession:
    """One-off question answering for the practice panel, newest-first history."""

    session_prefix = "practice"
    history_limit = 20

    def __init__(
        self,
        api: InterviewAPI,
        profile_provider: Callable[[], Optional[Profile]] = lambda: None,
        *,
        streamer: Optional[AnswerStreamer] = None,
        history_limit: Optional[int] = None,
    ):
        self.api = api
        self.profile_provider = profile_provider
        self.streamer = streamer or AnswerStreamer(api)
        self.history = PracticeHistory(history_limit or self.history_limit)
        self.response = ""
        self.last_error: Optional[str] = None

    @property
    def is_loading(self) -> bool:
        return self.streamer.is_streaming

    def _request(self, question: str) -> AnswerRequest:
        profile = self.profile_provider()
        return AnswerRequest(
            question=question,
            profile=profile.to_payload() if profile is not None else None,
            session_id=f"{self.session_prefix}_{now_ms()}",
        )

    def _stream(self, question: str, on_update: Optional[Callable[[str], None]]) -> Optional[str]:
        self.response = ""
        self.last_error = None

        def _update(text: str) -> None:
            self.response = text
            if on_update is not None:
                on_update(text)

        reader = self.streamer.run(self._request(question), on_update=_update)
        if reader is None:
            return None
        if reader.message is None:
            self.last_error = reader.error
            LOG.warning("Failed to get response: %s", reader.error)
            return None
        self.response = reader.message.text
        return reader.message.text

    def ask(self, question: str, on_update: Optional[Callable[[str], None]] = None) -> Optional[str]:
        """Stream an answer for ``question``; None when busy, blank or failed."""
        question = (question or "").strip()
        if not question or self.is_loading:
            return None
        answer = self._stream(question, on_update)
        if answer is not None:
            self.history.add(question, answer)
        return answer


class CodingSession(PracticeSession):
    session_prefix = "coding"
    history_limit = 10

    def solve(
        self,
        challenge: str,
        language: str = "python",
        on_update: Optional[Callable[[str], None]] = None,
    ) -> Optional[str]:
        challenge = (challenge or "").strip()
        if not challenge or self.is_loading:
            return None
        code = self._stream(build_coding_prompt(challenge, language), on_update)
        if code is not None:
            self.history.add(challenge, code, language=language)
        return code
