"""One streaming turn: transport fragments in, conversation updates out.

Lifecycle::

    PENDING --first fragment--> STREAMING --end of stream--> COMPLETED
       |                            |------cancel()--------> ABORTED
       |                            '------transport error-> FAILED
       '--------cancel() / transport error before any fragment-------'

Per fragment the session runs buffer -> scanner -> directive extractor,
forwards directives to the memory sink and issues exactly one atomic store
update for the target message. After a terminal state nothing more is
written to the store.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple

from .buffer import FragmentBuffer
from .cancellation import CancellationToken
from .directives import Directive, DirectiveExtractor, Extraction
from .errors import StreamError, TransportError
from .models import Message
from .scanner import DEFAULT_CLOSE_TAG, DEFAULT_OPEN_TAG, DualChannelScanner, ScanResult
from .store import ConversationStore
from .transport import CompletionRequest, CompletionTransport, iterate_fragments

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ABORTED, SessionState.FAILED)


class MemorySink(Protocol):
    def record(self, key: str, value: str) -> None:
        ...


@dataclass(frozen=True)
class SessionOutcome:
    state: SessionState
    directives: Tuple[Directive, ...] = ()
    error: Optional[str] = None


class ResponseSession:
    """Drives one completion stream into one assistant message.

    The session only knows the target message id; every write goes through
    :meth:`ConversationStore.update_message`.
    """

    def __init__(
        self,
        store: ConversationStore,
        conversation_id: str,
        message_id: str,
        transport: CompletionTransport,
        request: CompletionRequest,
        *,
        memory_sink: Optional[MemorySink] = None,
        open_tag: str = DEFAULT_OPEN_TAG,
        close_tag: str = DEFAULT_CLOSE_TAG,
    ) -> None:
        self.store = store
        self.conversation_id = conversation_id
        self.message_id = message_id
        self.transport = transport
        self.request = request
        self.token: CancellationToken = request.cancellation
        self.memory_sink = memory_sink

        self.state = SessionState.PENDING
        self.error: Optional[str] = None
        self._buffer = FragmentBuffer()
        self._scanner = DualChannelScanner(open_tag, close_tag)
        self._extractor = DirectiveExtractor()
        self._done = asyncio.Event()
        self._fragments = 0

    # --------- public ----------
    @property
    def fragments_applied(self) -> int:
        return self._fragments

    @property
    def outcome(self) -> SessionOutcome:
        return SessionOutcome(self.state, self._extractor.applied, self.error)

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Freeze the message now; later fragments are dropped.

        Returns False if the session had already reached a terminal state.
        """
        if self.state.is_terminal:
            return False
        self.token.cancel(reason)
        self._finish(SessionState.ABORTED, {"is_streaming": False, "is_reasoning_active": False})
        logger.info("Session for %s aborted: %s", self.message_id, reason)
        return True

    async def wait(self) -> SessionState:
        await self._done.wait()
        return self.state

    async def run(self) -> SessionState:
        """Consume the transport until a terminal state is reached."""
        if self.state.is_terminal:
            return self.state
        stream = iterate_fragments(self.transport, self.request)
        try:
            while True:
                try:
                    fragment = await stream.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as e:
                    if self.token.is_cancelled or self.state.is_terminal:
                        logger.debug("Ignoring transport error for %s after cancellation: %s", self.message_id, e)
                    elif isinstance(e, TransportError):
                        self._fail(e)
                    else:
                        logger.exception("Transport failed for %s: %s", self.message_id, e)
                        self._fail(StreamError(str(e) or type(e).__name__))
                    break
                if self.token.is_cancelled or self.state.is_terminal:
                    logger.debug("Dropping fragment for %s after cancellation", self.message_id)
                    break
                self._apply_fragment(fragment)

            if not self.token.is_cancelled and not self.state.is_terminal:
                self._complete()
        except asyncio.CancelledError:
            self.cancel("task cancelled")
            raise
        finally:
            await stream.aclose()
        return self.state

    # --------- per fragment ----------
    def _apply_fragment(self, fragment: str) -> None:
        if self.state is SessionState.PENDING:
            self.state = SessionState.STREAMING
        self._buffer.append(fragment)
        scan = self._scanner.feed(self._buffer.drain())
        extraction = self._extractor.feed(scan.answer)
        self._forward(extraction)
        self._fragments += 1
        self._write(scan, extraction, {"is_reasoning_active": self._scanner.in_reasoning})

    def _complete(self) -> None:
        scan = self._scanner.flush()
        tail = self._extractor.feed(scan.answer)
        self._forward(tail)
        rest = self._extractor.flush()
        extraction = Extraction(visible=tail.visible + rest.visible, directives=tail.directives)
        if self.state is SessionState.PENDING:
            self.state = SessionState.STREAMING
        self._write(scan, extraction, {"is_streaming": False, "is_reasoning_active": False})
        self._set_terminal(SessionState.COMPLETED)

    def _fail(self, error: TransportError) -> None:
        if self.state.is_terminal:
            return
        self.error = error.summary()
        logger.warning("Session for %s failed: %s", self.message_id, error)
        self._finish(
            SessionState.FAILED,
            {
                "visible_text": self.error,
                "reasoning_text": "",
                "is_streaming": False,
                "is_reasoning_active": False,
            },
        )

    # --------- helpers ----------
    def _forward(self, extraction: Extraction) -> None:
        if self.memory_sink is None:
            return
        for d in extraction.directives:
            try:
                self.memory_sink.record(d.key, d.value)
            except Exception as e:
                logger.warning("Memory sink rejected %r: %s", d.key, e)

    def _write(self, scan: ScanResult, extraction: Extraction, flags: Dict[str, Any]) -> None:
        visible, reasoning = extraction.visible, scan.reasoning

        def _patch(msg: Message) -> Dict[str, Any]:
            changes = {k: v for k, v in flags.items() if getattr(msg, k) != v}
            if visible:
                changes["visible_text"] = msg.visible_text + visible
            if reasoning:
                changes["reasoning_text"] = msg.reasoning_text + reasoning
            return changes

        try:
            current = self.store.get(self.conversation_id).find(self.message_id)
            if current is not None and not _patch(current):
                return
            self.store.update_message(self.conversation_id, self.message_id, _patch)
        except KeyError:
            logger.debug("Target message %s no longer present", self.message_id)

    def _finish(self, state: SessionState, changes: Dict[str, Any]) -> None:
        if self.state.is_terminal:
            return
        try:
            self.store.update_message(self.conversation_id, self.message_id, changes)
        except KeyError:
            # target already truncated away by a history operation
            logger.debug("Target message %s no longer present", self.message_id)
        self._set_terminal(state)

    def _set_terminal(self, state: SessionState) -> None:
        self.state = state
        self._done.set()
