"""Immutable conversation records.

Every record is a frozen dataclass; updates go through
:func:`dataclasses.replace` so a snapshot handed to a reader never changes
underneath it. ``to_dict``/``from_dict`` give a JSON-friendly layout for
whatever persistence layer sits outside the core.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

ROLES = ("user", "assistant")

DEFAULT_MODEL_ID = "openrouter:google/gemma-2-9b-it:free"
DEFAULT_PERSONA_ID = "default"
DEFAULT_TITLE = "New Chat"


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def derive_title(text: str, limit: int = 30) -> str:
    """Conversation title from the first user message."""
    text = " ".join(text.split())
    if len(text) <= limit:
        return text or DEFAULT_TITLE
    return text[: limit - 3] + "..."


# -----------------------------
# Records
# -----------------------------
@dataclass(frozen=True)
class Attachment:
    path: str
    preview_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "preview_url": self.preview_url}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Attachment":
        return cls(path=str(d["path"]), preview_url=str(d.get("preview_url") or ""))


@dataclass(frozen=True)
class Reminder:
    time: float
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"time": self.time, "text": self.text}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Reminder":
        return cls(time=float(d["time"]), text=str(d["text"]))


@dataclass(frozen=True)
class SamplingParams:
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"temperature": self.temperature, "max_tokens": self.max_tokens}

    @classmethod
    def from_dict(cls, d: Optional[Mapping[str, Any]]) -> "SamplingParams":
        d = d or {}
        temp = d.get("temperature")
        max_tokens = d.get("max_tokens")
        return cls(
            temperature=None if temp is None else float(temp),
            max_tokens=None if max_tokens is None else int(max_tokens),
        )


@dataclass(frozen=True)
class Message:
    """One turn of the conversation.

    Fields:
        visible_text: what the user sees; only grows while streaming.
        reasoning_text: the model's hidden deliberation; only grows while streaming.
        is_streaming: True while a response session is writing to this message.
            Once False it never becomes True again.
        is_reasoning_active: True while the stream is inside a reasoning span.
    """
    id: str
    role: str
    visible_text: str = ""
    reasoning_text: str = ""
    is_streaming: bool = False
    is_reasoning_active: bool = False
    attachments: Tuple[Attachment, ...] = ()

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"unknown message role: {self.role!r}")

    @classmethod
    def user(cls, text: str, attachments: Iterable[Attachment] = ()) -> "Message":
        return cls(id=new_id("msg"), role="user", visible_text=text, attachments=tuple(attachments))

    @classmethod
    def placeholder(cls) -> "Message":
        return cls(id=new_id("msg"), role="assistant", is_streaming=True)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "visible_text": self.visible_text,
            "reasoning_text": self.reasoning_text,
            "is_streaming": self.is_streaming,
            "is_reasoning_active": self.is_reasoning_active,
        }
        if self.attachments:
            d["attachments"] = [a.to_dict() for a in self.attachments]
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Message":
        return cls(
            id=str(d["id"]),
            role=str(d["role"]),
            visible_text=str(d.get("visible_text") or ""),
            reasoning_text=str(d.get("reasoning_text") or ""),
            is_streaming=bool(d.get("is_streaming", False)),
            is_reasoning_active=bool(d.get("is_reasoning_active", False)),
            attachments=tuple(Attachment.from_dict(a) for a in d.get("attachments") or ()),
        )


@dataclass(frozen=True)
class Conversation:
    id: str
    title: str = DEFAULT_TITLE
    messages: Tuple[Message, ...] = ()
    model_id: str = DEFAULT_MODEL_ID
    persona_id: str = DEFAULT_PERSONA_ID
    sampling: SamplingParams = field(default_factory=SamplingParams)
    pinned_message_id: Optional[str] = None
    reminders: Mapping[str, Reminder] = field(default_factory=dict)

    # --------- lookups ----------
    def message_ids(self) -> Tuple[str, ...]:
        return tuple(m.id for m in self.messages)

    def index_of(self, message_id: str) -> int:
        for i, m in enumerate(self.messages):
            if m.id == message_id:
                return i
        return -1

    def find(self, message_id: str) -> Optional[Message]:
        idx = self.index_of(message_id)
        return self.messages[idx] if idx >= 0 else None

    def last_user_index(self) -> int:
        for i in range(len(self.messages) - 1, -1, -1):
            if self.messages[i].role == "user":
                return i
        return -1

    # --------- serialization ----------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "model_id": self.model_id,
            "persona_id": self.persona_id,
            "sampling": self.sampling.to_dict(),
            "pinned_message_id": self.pinned_message_id,
            "reminders": {k: r.to_dict() for k, r in self.reminders.items()},
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Conversation":
        return cls(
            id=str(d["id"]),
            title=str(d.get("title") or DEFAULT_TITLE),
            messages=tuple(Message.from_dict(m) for m in d.get("messages") or ()),
            model_id=str(d.get("model_id") or DEFAULT_MODEL_ID),
            persona_id=str(d.get("persona_id") or DEFAULT_PERSONA_ID),
            sampling=SamplingParams.from_dict(d.get("sampling")),
            pinned_message_id=d.get("pinned_message_id"),
            reminders={k: Reminder.from_dict(r) for k, r in (d.get("reminders") or {}).items()},
        )

