"""In-memory conversation store with atomic, replace-whole-record updates."""
from __future__ import annotations

import logging
import threading
from dataclasses import fields, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .errors import ConversationNotFound, InvalidUpdate, MessageNotFound
from .models import Conversation, Message, SamplingParams, new_id

logger = logging.getLogger(__name__)

Patch = Mapping[str, Any]
Updater = Union[Patch, Callable[[Conversation], Patch]]
Listener = Callable[[Conversation], None]

_PATCHABLE = frozenset(f.name for f in fields(Conversation)) - {"id"}


def _validate(old: Conversation, new: Conversation, patch: Patch) -> Conversation:
    ids = new.message_ids()
    if len(set(ids)) != len(ids):
        raise InvalidUpdate(f"duplicate message ids in conversation {new.id!r}")

    streaming = [m.id for m in new.messages if m.is_streaming]
    if len(streaming) > 1:
        raise InvalidUpdate(f"more than one streaming message in {new.id!r}: {streaming}")

    previous = {m.id: m for m in old.messages}
    for m in new.messages:
        before = previous.get(m.id)
        if m.is_streaming and before is not None and not before.is_streaming:
            raise InvalidUpdate(f"message {m.id!r} already finished streaming")

    present = set(ids)
    pinned = new.pinned_message_id
    if pinned is not None and pinned not in present:
        if "pinned_message_id" in patch:
            raise InvalidUpdate(f"cannot pin unknown message {pinned!r}")
        # the pinned message was truncated away
        new = replace(new, pinned_message_id=None)

    if any(k not in present for k in new.reminders):
        new = replace(new, reminders={k: r for k, r in new.reminders.items() if k in present})
    return new


class ConversationStore:
    """Owns every :class:`Conversation` and serializes updates to them.

    All writes go through :meth:`apply_update`, which builds a fresh snapshot,
    validates the conversation invariants and swaps it in under a lock.
    Subscribers are notified with the committed snapshot after the lock is
    released, in the order updates were applied.
    """

    def __init__(self) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()

    # --------- reads ----------
    def get(self, conversation_id: str) -> Conversation:
        """Point-in-time snapshot (immutable)."""
        with self._lock:
            try:
                return self._conversations[conversation_id]
            except KeyError:
                raise ConversationNotFound(conversation_id) from None

    def list(self) -> List[Conversation]:
        with self._lock:
            return list(self._conversations.values())

    def __contains__(self, conversation_id: object) -> bool:
        with self._lock:
            return conversation_id in self._conversations

    def __len__(self) -> int:
        with self._lock:
            return len(self._conversations)

    # --------- lifecycle ----------
    def create(
        self,
        *,
        title: Optional[str] = None,
        model_id: Optional[str] = None,
        persona_id: Optional[str] = None,
        sampling: Optional[SamplingParams] = None,
        messages: Iterable[Message] = (),
    ) -> Conversation:
        kwargs: Dict[str, Any] = {"id": new_id("conv"), "messages": tuple(messages)}
        if title:
            kwargs["title"] = title
        if model_id:
            kwargs["model_id"] = model_id
        if persona_id:
            kwargs["persona_id"] = persona_id
        if sampling is not None:
            kwargs["sampling"] = sampling
        return self.put(Conversation(**kwargs))

    def put(self, conversation: Conversation) -> Conversation:
        """Insert a fully built conversation under its own id."""
        with self._lock:
            if conversation.id in self._conversations:
                raise InvalidUpdate(f"conversation {conversation.id!r} already exists")
            conversation = _validate(Conversation(id=conversation.id), conversation, {})
            self._conversations[conversation.id] = conversation
        self._notify(conversation)
        return conversation

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            return self._conversations.pop(conversation_id, None) is not None

    # --------- writes ----------
    def apply_update(self, conversation_id: str, updater: Updater) -> Conversation:
        """Apply a partial patch (or a function producing one) atomically."""
        with self._lock:
            current = self.get(conversation_id)
            patch = updater(current) if callable(updater) else updater
            patch = dict(patch or {})
            unknown = set(patch) - _PATCHABLE
            if unknown:
                raise InvalidUpdate(f"unknown conversation fields: {sorted(unknown)}")
            if "messages" in patch:
                patch["messages"] = tuple(patch["messages"])
            updated = _validate(current, replace(current, **patch), patch)
            self._conversations[conversation_id] = updated
        self._notify(updated)
        return updated

    def update_message(
        self,
        conversation_id: str,
        message_id: str,
        updater: Union[Patch, Callable[[Message], Patch]],
    ) -> Conversation:
        """Convenience wrapper: patch a single message inside one atomic update."""

        def _patch(conv: Conversation) -> Patch:
            idx = conv.index_of(message_id)
            if idx < 0:
                raise MessageNotFound(message_id)
            msg = conv.messages[idx]
            changes = updater(msg) if callable(updater) else updater
            messages = list(conv.messages)
            messages[idx] = replace(msg, **changes)
            return {"messages": messages}

        return self.apply_update(conversation_id, _patch)

    # --------- subscriptions ----------
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._listeners.remove(listener)
                except ValueError:
                    pass

        return _unsubscribe

    def _notify(self, conversation: Conversation) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(conversation)
            except Exception as e:
                logger.exception("Store listener failed for %s: %s", conversation.id, e)
