from __future__ import annotations

import json
import logging
import os
import tempfile
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from models import ChatMessage, Profile, now_ms

LOG = logging.getLogger("nexus_live")

PROFILE_KEY = "nexusProfile"
CHAT_KEY = "nexusChat"


class KeyValueStore:
    """Durable string store: one ``<key>.json`` file per key."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, text: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", dir=str(self.directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.replace(tmp_name, self._path(key))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    def clear(self) -> None:
        for key in self.keys():
            self.remove(key)

    def dump(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for key in self.keys():
            text = self.get(key)
            if text is not None:
                out[key] = text
        return out

    def export(self, path: Union[str, Path]) -> Path:
        """Write every stored entry to ``path`` as one JSON object."""
        target = Path(path).expanduser()
        target.write_text(json.dumps(self.dump()), encoding="utf-8")
        return target


class ProfileStore:
    def __init__(self, kv: KeyValueStore, key: str = PROFILE_KEY):
        self.kv = kv
        self.key = key

    def load(self) -> Optional[Profile]:
        raw = self.kv.get(self.key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            LOG.error("Failed to load profile from storage: %s", exc)
            self.kv.remove(self.key)
            return None

        if not isinstance(data, dict) or not ("name" in data or "skills" in data):
            LOG.warning("Stored profile has an unexpected shape; discarding it")
            self.kv.remove(self.key)
            return None

        try:
            return Profile.model_validate(data)
        except ValidationError as exc:
            LOG.warning("Stored profile failed validation; discarding it: %s", exc)
            self.kv.remove(self.key)
            return None

    def save(self, profile: Union[Profile, Dict[str, Any], None]) -> None:
        if isinstance(profile, Profile):
            payload: Any = profile.to_payload()
        else:
            payload = profile
        if payload and isinstance(payload, dict):
            self.kv.set(self.key, json.dumps(payload))
        else:
            self.kv.remove(self.key)

    def clear(self) -> None:
        self.kv.remove(self.key)


class ChatHistoryStore:
    """Persists the live chat, keeping only the newest ``limit`` messages."""

    def __init__(self, kv: KeyValueStore, key: str = CHAT_KEY, limit: int = 50):
        self.kv = kv
        self.key = key
        self.limit = max(1, int(limit))

    def load(self) -> List[ChatMessage]:
        raw = self.kv.get(self.key)
        if raw is None:
            return []
        try:
            records = json.loads(raw)
        except json.JSONDecodeError:
            LOG.warning("Stored chat history is not valid JSON; starting empty")
            return []
        if not isinstance(records, list):
            return []

        messages: List[ChatMessage] = []
        for record in records:
            if not isinstance(record, dict):
                continue
            try:
                messages.append(ChatMessage.from_record(record))
            except (ValueError, TypeError, ValidationError):
                continue
        return messages[-self.limit:]

    def save(self, messages: Iterable[ChatMessage]) -> None:
        kept = list(messages)[-self.limit:]
        self.kv.set(self.key, json.dumps([m.to_record() for m in kept]))

    def clear(self) -> None:
        self.kv.remove(self.key)


class ChatLog:
    """Append-only chat for the live view; every append is persisted."""

    def __init__(self, store: Optional[ChatHistoryStore] = None):
        self.store = store
        self._messages: List[ChatMessage] = store.load() if store is not None else []

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, message: ChatMessage) -> None:
        self._messages.append(message)
        if self.store is not None:
            self.store.save(self._messages)

    def clear(self) -> None:
        self._messages.clear()
        if self.store is not None:
            self.store.clear()


class PracticeHistory:
    """Newest-first Q&A history shown in the practice panels."""

    def __init__(self, limit: int = 20):
        self.limit = max(1, int(limit))
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=self.limit)

    def add(self, question: str, answer: str, **extra: Any) -> None:
        entry = {"question": question, "answer": answer, "timestamp": now_ms()}
        entry.update(extra)
        self._entries.appendleft(entry)

    @property
    def entries(self) -> List[Dict[str, Any]]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
