"""Conversation-level operations: send, stop, branch, edit-and-resubmit, regenerate.

Every operation that starts a new turn first cancels the session already
running for that conversation and waits for it to reach a terminal state, so
at most one session ever writes to a conversation.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .cancellation import CancellationToken
from .errors import InvalidOperation, MessageNotFound
from .memory import MemoryStore
from .models import Attachment, Conversation, Message, SamplingParams, derive_title, new_id
from .personas import PersonaRegistry
from .scanner import DEFAULT_CLOSE_TAG, DEFAULT_OPEN_TAG
from .session import ResponseSession, SessionState
from .store import ConversationStore
from .transport import CompletionRequest, CompletionTransport

logger = logging.getLogger(__name__)


class HistoryController:
    """Composes the store, the transport and response sessions.

    Parameters
    ----------
    store : ConversationStore
        Owner of all conversation records.
    transport : CompletionTransport
        Injected completion capability; never looked up globally.
    memory : MemoryStore | None
        Memory sink for directives and source of the system-prompt memory block.
    personas : PersonaRegistry | None
        Resolves a conversation's persona id to its system prompt.
    """

    def __init__(
        self,
        store: ConversationStore,
        transport: CompletionTransport,
        *,
        memory: Optional[MemoryStore] = None,
        personas: Optional[PersonaRegistry] = None,
        open_tag: str = DEFAULT_OPEN_TAG,
        close_tag: str = DEFAULT_CLOSE_TAG,
    ) -> None:
        self.store = store
        self.transport = transport
        self.memory = memory
        self.personas = personas or PersonaRegistry()
        self.open_tag = open_tag
        self.close_tag = close_tag
        self._sessions: Dict[str, ResponseSession] = {}
        self._tasks: Dict[str, "asyncio.Task[SessionState]"] = {}

    # -----------------------------
    # Conversations
    # -----------------------------
    def create_conversation(
        self,
        *,
        title: Optional[str] = None,
        model_id: Optional[str] = None,
        persona_id: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Conversation:
        persona = self.personas.get(persona_id)
        return self.store.create(
            title=title,
            model_id=model_id or (persona.model_id if persona else None),
            persona_id=persona.id if persona else persona_id,
            sampling=SamplingParams(temperature=temperature, max_tokens=max_tokens),
        )

    async def delete_conversation(self, conversation_id: str) -> bool:
        await self._cancel_active(conversation_id)
        self._sessions.pop(conversation_id, None)
        return self.store.delete(conversation_id)

    def branch(self, conversation_id: str, message_id: str) -> Conversation:
        """Fork the prefix up to and including ``message_id`` into a new conversation."""
        source = self.store.get(conversation_id)
        idx = source.index_of(message_id)
        if idx < 0:
            raise MessageNotFound(message_id)
        prefix = tuple(
            replace(m, is_streaming=False, is_reasoning_active=False) if m.is_streaming else m
            for m in source.messages[: idx + 1]
        )
        kept = {m.id for m in prefix}
        fork = Conversation(
            id=new_id("conv"),
            title=f"{source.title} (branch)",
            messages=prefix,
            model_id=source.model_id,
            persona_id=source.persona_id,
            sampling=source.sampling,
            pinned_message_id=source.pinned_message_id if source.pinned_message_id in kept else None,
            reminders={k: r for k, r in source.reminders.items() if k in kept},
        )
        logger.info("Branched %s at %s into %s", conversation_id, message_id, fork.id)
        return self.store.put(fork)

    # -----------------------------
    # Turns
    # -----------------------------
    async def send(
        self,
        conversation_id: str,
        text: str,
        attachments: Iterable[Attachment] = (),
    ) -> ResponseSession:
        """Append a user message and stream the assistant's reply."""
        text = text.strip()
        attachments = tuple(attachments)
        if not text and not attachments:
            raise InvalidOperation("message cannot be empty")
        await self._cancel_active(conversation_id)
        user = Message.user(text, attachments)

        def _patch(conv: Conversation) -> Dict[str, Any]:
            patch: Dict[str, Any] = {"messages": conv.messages + (user,)}
            if not conv.messages:
                patch["title"] = derive_title(text)
            return patch

        return self._start(conversation_id, _patch)

    async def edit_and_resubmit(self, conversation_id: str, message_id: str, text: str) -> ResponseSession:
        """Replace a user message and everything after it, then stream a new reply.

        Later messages are discarded, not archived.
        """
        text = text.strip()
        if not text:
            raise InvalidOperation("edited message cannot be empty")

        def _patch(conv: Conversation) -> Dict[str, Any]:
            idx = conv.index_of(message_id)
            if idx < 0:
                raise MessageNotFound(message_id)
            original = conv.messages[idx]
            if original.role != "user":
                raise InvalidOperation("only user messages can be edited")
            edited = Message.user(text, original.attachments)
            return {"messages": conv.messages[:idx] + (edited,)}

        # rejected edits must not stop the running turn
        _patch(self.store.get(conversation_id))
        await self._cancel_active(conversation_id)
        return self._start(conversation_id, _patch)

    async def regenerate(self, conversation_id: str) -> ResponseSession:
        """Drop everything after the last user message and stream a new reply."""

        def _patch(conv: Conversation) -> Dict[str, Any]:
            idx = conv.last_user_index()
            if idx < 0:
                raise InvalidOperation("nothing to regenerate: no user message")
            return {"messages": conv.messages[: idx + 1]}

        _patch(self.store.get(conversation_id))
        await self._cancel_active(conversation_id)
        return self._start(conversation_id, _patch)

    async def stop(self, conversation_id: str) -> bool:
        """Cancel the running turn, if any. Returns True if one was stopped."""
        return await self._cancel_active(conversation_id)

    # -----------------------------
    # Session bookkeeping
    # -----------------------------
    def active_session(self, conversation_id: str) -> Optional[ResponseSession]:
        session = self._sessions.get(conversation_id)
        if session is None or session.state.is_terminal:
            return None
        return session

    async def wait(self, conversation_id: str) -> Optional[SessionState]:
        """Wait for the latest session of a conversation to finish."""
        session = self._sessions.get(conversation_id)
        if session is None:
            return None
        return await session.wait()

    async def shutdown(self) -> None:
        """Cancel every running session and wait for their tasks."""
        for conversation_id in list(self._sessions):
            await self._cancel_active(conversation_id)
        tasks = [t for t in self._tasks.values() if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _cancel_active(self, conversation_id: str) -> bool:
        session = self.active_session(conversation_id)
        if session is None:
            return False
        session.cancel()
        await session.wait()
        return True

    def _start(self, conversation_id: str, truncate: Any) -> ResponseSession:
        placeholder = Message.placeholder()

        def _patch(conv: Conversation) -> Dict[str, Any]:
            patch = dict(truncate(conv))
            patch["messages"] = tuple(patch["messages"]) + (placeholder,)
            return patch

        conv = self.store.apply_update(conversation_id, _patch)
        history = conv.messages[:-1]
        request = self._build_request(conv, history)
        session = ResponseSession(
            self.store,
            conversation_id,
            placeholder.id,
            self.transport,
            request,
            memory_sink=self.memory,
            open_tag=self.open_tag,
            close_tag=self.close_tag,
        )
        self._sessions[conversation_id] = session
        task = asyncio.get_running_loop().create_task(session.run())
        self._tasks[conversation_id] = task
        task.add_done_callback(lambda t, cid=conversation_id: self._reap(cid, t))
        logger.info("Started session for %s (message %s)", conversation_id, placeholder.id)
        return session

    def _reap(self, conversation_id: str, task: "asyncio.Task[SessionState]") -> None:
        if self._tasks.get(conversation_id) is task:
            del self._tasks[conversation_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Session task for %s crashed: %s", conversation_id, task.exception())

    def _build_request(self, conv: Conversation, history: Sequence[Message]) -> CompletionRequest:
        messages: List[Message] = [m for m in history if m.visible_text or m.attachments]
        return CompletionRequest(
            model_id=conv.model_id,
            messages=messages,
            system_prompt=self.personas.system_prompt(conv.persona_id, self.memory) or None,
            temperature=conv.sampling.temperature,
            max_tokens=conv.sampling.max_tokens,
            cancellation=CancellationToken(),
        )
