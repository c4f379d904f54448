"""Streaming chat client core.

Decodes a live completion stream into answer and reasoning channels, strips
inline memory directives, and keeps an ordered conversation history
consistent across cancellation, branching, editing and regeneration.

Typical usage
-------------
from chat_client import ConversationStore, HistoryController, MemoryStore
store = ConversationStore()
controller = HistoryController(store, transport, memory=MemoryStore())
conv = controller.create_conversation()
session = await controller.send(conv.id, "Hello")
await session.wait()

or, over HTTP, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .buffer import FragmentBuffer
from .cancellation import CancellationToken
from .directives import Directive, DirectiveExtractor, extract_directives
from .errors import (
    ChatClientError,
    ConversationNotFound,
    InvalidOperation,
    InvalidUpdate,
    MessageNotFound,
    StreamError,
    TransportError,
    TransportUnavailable,
)
from .history import HistoryController
from .memory import MemoryStore
from .models import Attachment, Conversation, Message, Reminder, SamplingParams
from .personas import Persona, PersonaRegistry
from .scanner import DualChannelScanner, ScanResult, ScanState
from .session import ResponseSession, SessionState
from .store import ConversationStore
from .transport import CompletionRequest, CompletionTransport, HttpCompletionTransport

__all__ = [
    "Attachment",
    "CancellationToken",
    "ChatClientError",
    "CompletionRequest",
    "CompletionTransport",
    "Conversation",
    "ConversationNotFound",
    "ConversationStore",
    "Directive",
    "DirectiveExtractor",
    "DualChannelScanner",
    "FragmentBuffer",
    "HistoryController",
    "HttpCompletionTransport",
    "InvalidOperation",
    "InvalidUpdate",
    "MemoryStore",
    "Message",
    "MessageNotFound",
    "Persona",
    "PersonaRegistry",
    "Reminder",
    "ResponseSession",
    "SamplingParams",
    "ScanResult",
    "ScanState",
    "SessionState",
    "StreamError",
    "TransportError",
    "TransportUnavailable",
    "create_app",
    "extract_directives",
    "get_version",
    "__version__",
]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


# ---------------------------------------------------------------------
# App factory export
# ---------------------------------------------------------------------
def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`chat_client.server.create_app`; the import is
    deferred so the core can be used without loading the web stack.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
