"""Per-conversation history with a bounded message log and JSON persistence."""

import asyncio
import json
import logging
import os
import tempfile
import urllib.parse
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 100

_RESERVED = ("role", "content", "timestamp")


def _now() -> datetime:
    return datetime.now().astimezone()


def _parse_time(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    return _now()


@dataclass
class SessionMessage:
    role: str
    content: str
    timestamp: datetime = field(default_factory=_now)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {k: v for k, v in self.extra.items() if k not in _RESERVED}
        data.update(
            role=self.role,
            content=self.content,
            timestamp=self.timestamp.isoformat(),
        )
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SessionMessage":
        return cls(
            role=str(data["role"]),
            content=str(data.get("content") or ""),
            timestamp=_parse_time(data.get("timestamp")),
            extra={k: v for k, v in data.items() if k not in _RESERVED},
        )


def _check_bound(max_messages: int) -> int:
    if isinstance(max_messages, bool) or not isinstance(max_messages, int):
        raise TypeError(f"max_messages must be an int, got {type(max_messages).__name__}")
    if max_messages < 1:
        raise ValueError(f"max_messages must be >= 1, got {max_messages}")
    return max_messages


@dataclass
class Session:
    """A conversation keyed by ``channel:chat_id``.

    ``len(messages) <= max_messages`` holds after every mutation; the
    oldest messages are dropped first.
    """

    key: str
    messages: list[SessionMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    metadata: dict[str, Any] = field(default_factory=dict)
    max_messages: int = DEFAULT_MAX_MESSAGES

    def __post_init__(self):
        _check_bound(self.max_messages)
        self._trim()

    def _trim(self) -> None:
        overflow = len(self.messages) - self.max_messages
        if overflow > 0:
            del self.messages[:overflow]

    def add_message(self, role: str, content: str, **extra) -> SessionMessage:
        msg = SessionMessage(role=role, content=content, extra=extra)
        self.messages.append(msg)
        self.updated_at = msg.timestamp
        self._trim()
        return msg

    def get_history(self, max_messages: int) -> list[dict]:
        """Last *max_messages* entries, oldest first, as role/content dicts."""
        if max_messages <= 0:
            return []
        return [
            {"role": m.role, "content": m.content}
            for m in self.messages[-max_messages:]
        ]

    def clear(self) -> None:
        self.messages.clear()
        self.updated_at = _now()

    def set_max_messages(self, max_messages: int) -> None:
        self.max_messages = _check_bound(max_messages)
        self._trim()

    def __len__(self) -> int:
        return len(self.messages)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "messages": [m.to_dict() for m in self.messages],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": self.metadata,
            "max_messages": self.max_messages,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            key=str(data["key"]),
            messages=[SessionMessage.from_dict(m) for m in data.get("messages", [])],
            created_at=_parse_time(data.get("created_at")),
            updated_at=_parse_time(data.get("updated_at")),
            metadata=dict(data.get("metadata") or {}),
            max_messages=data.get("max_messages", DEFAULT_MAX_MESSAGES),
        )


def safe_filename(key: str) -> str:
    """Map a session key to a unique filename: ``telegram:5`` -> ``telegram_5.json``.

    ``%``, ``_`` and ``/`` are percent-escaped first, so every remaining
    ``_`` stands for a ``:`` and the mapping can be reversed exactly.
    """
    escaped = key.replace("%", "%25").replace("_", "%5F").replace("/", "%2F")
    return escaped.replace(":", "_") + ".json"


def key_from_filename(name: str) -> str:
    """Inverse of safe_filename (accepts the name with or without ``.json``)."""
    stem = name.removesuffix(".json")
    return urllib.parse.unquote(stem.replace("_", ":"))


class SessionManager:
    """Cache of sessions backed by one JSON file per key.

    Callers that read-modify-write a session hold ``lock`` for the whole
    sequence.
    """

    def __init__(self, sessions_dir: str | Path, max_messages: int = DEFAULT_MAX_MESSAGES):
        self.sessions_dir = Path(sessions_dir)
        self.max_messages = _check_bound(max_messages)
        self.lock = asyncio.Lock()
        self._cache: dict[str, Session] = {}

    def session_path(self, key: str) -> Path:
        return self.sessions_dir / safe_filename(key)

    def _load(self, key: str) -> Session | None:
        path = self.session_path(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            session = Session.from_dict(data)
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning("Ignoring unreadable session %s: %s", path, e)
            return None
        # a record written by hand may carry another key; the requested key wins
        session.key = key
        session.set_max_messages(self.max_messages)
        logger.debug("Loaded session %s (%d messages)", key, len(session))
        return session

    def get_or_create(self, key: str) -> Session:
        session = self._cache.get(key)
        if session is None:
            session = self._load(key) or Session(key=key, max_messages=self.max_messages)
            self._cache[key] = session
        return session

    def save(self, session: Session) -> None:
        """Write *session* atomically. Raises OSError on failure."""
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        path = self.session_path(session.key)
        payload = json.dumps(session.to_dict(), indent=2, ensure_ascii=False)

        fd, tmp = tempfile.mkstemp(dir=self.sessions_dir, prefix=".session-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        self._cache[session.key] = session
        logger.debug("Saved session %s to %s", session.key, path)

    def delete(self, key: str) -> bool:
        """Forget a session. Returns True if a stored record was removed."""
        self._cache.pop(key, None)
        path = self.session_path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def list_sessions(self) -> list[str]:
        if not self.sessions_dir.is_dir():
            return []
        keys = []
        for path in sorted(self.sessions_dir.glob("*.json")):
            try:
                key = json.loads(path.read_text(encoding="utf-8"))["key"]
            except (OSError, ValueError, TypeError, KeyError):
                key = None
            if not isinstance(key, str):
                key = key_from_filename(path.name)
            keys.append(key)
        return keys

    def set_max_messages(self, max_messages: int) -> None:
        """Change the bound for cached and future sessions."""
        self.max_messages = _check_bound(max_messages)
        for session in self._cache.values():
            session.set_max_messages(max_messages)
