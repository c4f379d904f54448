"""Exception taxonomy for the chat client core."""
from __future__ import annotations


class ChatClientError(Exception):
    """Base class for every error raised by :mod:`chat_client`."""


# -----------------------------
# Transport failures
# -----------------------------
class TransportError(ChatClientError):
    """The completion transport failed; always converted to a FAILED turn."""

    user_message = "Error: the response stream was interrupted."

    def summary(self) -> str:
        """Short, human-readable line shown in place of the answer."""
        detail = str(self).strip()
        return f"Error: {detail}" if detail else self.user_message


class TransportUnavailable(TransportError):
    """The completion service could not be reached at all."""

    user_message = "Error: the completion service is unavailable."

    def summary(self) -> str:
        return self.user_message


class StreamError(TransportError):
    """The transport raised mid-stream."""


# -----------------------------
# Store / history failures
# -----------------------------
class ConversationNotFound(ChatClientError, KeyError):
    def __str__(self) -> str:
        return f"conversation not found: {self.args[0]!r}" if self.args else "conversation not found"


class MessageNotFound(ChatClientError, KeyError):
    def __str__(self) -> str:
        return f"message not found: {self.args[0]!r}" if self.args else "message not found"


class InvalidOperation(ChatClientError, ValueError):
    """A history operation was asked to do something it cannot (e.g. edit an assistant turn)."""


class InvalidUpdate(ChatClientError, ValueError):
    """A store patch would break a conversation invariant."""
