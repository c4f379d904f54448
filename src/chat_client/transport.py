"""Completion transport interface and an OpenAI-compatible HTTP implementation.

A transport turns a :class:`CompletionRequest` into a lazy, single-pass
sequence of text fragments. The core never looks at the wire format; it only
iterates fragments and reacts to :class:`~chat_client.errors.TransportError`.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Protocol, Sequence, Union

import httpx

from .cancellation import CancellationToken
from .errors import StreamError, TransportUnavailable
from .models import Message

logger = logging.getLogger(__name__)

FragmentStream = Union[AsyncIterator[str], Iterable[str]]


# -----------------------------
# Types
# -----------------------------
@dataclass
class CompletionRequest:
    model_id: str
    messages: Sequence[Message]
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    cancellation: CancellationToken = field(default_factory=CancellationToken)

    def chat_messages(self) -> List[Dict[str, Any]]:
        """Role/content dicts, system prompt first, attachments as file parts."""
        out: List[Dict[str, Any]] = []
        if self.system_prompt:
            out.append({"role": "system", "content": self.system_prompt})
        for m in self.messages:
            if m.attachments:
                parts: List[Dict[str, Any]] = [{"type": "file", "path": a.path} for a in m.attachments]
                if m.visible_text:
                    parts.append({"type": "text", "text": m.visible_text})
                out.append({"role": m.role, "content": parts})
            else:
                out.append({"role": m.role, "content": m.visible_text})
        return out


class CompletionTransport(Protocol):
    def stream_completion(self, request: CompletionRequest) -> FragmentStream:
        ...


async def iterate_fragments(transport: CompletionTransport, request: CompletionRequest) -> AsyncIterator[str]:
    """Open the transport's stream and adapt sync or async sources to one async iterator.

    Closing this generator closes the transport's own async generator too.
    """
    stream = transport.stream_completion(request)
    if hasattr(stream, "__aiter__"):
        try:
            async for fragment in stream:  # type: ignore[union-attr]
                yield fragment
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
    else:
        for fragment in stream:  # type: ignore[union-attr]
            yield fragment


# -----------------------------
# HTTP transport
# -----------------------------
class HttpCompletionTransport:
    """Streams ``/chat/completions`` server-sent events over :mod:`httpx`.

    Parameters
    ----------
    base_url : str
        API root, e.g. ``https://openrouter.ai/api/v1``.
    api_key : str | None
        Bearer token. Falls back to the environment variable named by
        ``api_key_env``.
    timeout : float
        Read timeout in seconds; connect is capped at 10s.
    client : httpx.AsyncClient | None
        Pre-built client (tests pass one backed by ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        api_key_env: str = "CHAT_CLIENT_API_KEY",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or os.environ.get(api_key_env)
        self.timeout = httpx.Timeout(timeout, connect=min(10.0, timeout))
        self._client = client

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "HttpCompletionTransport":
        t = (cfg or {}).get("transport", {}) or {}
        return cls(
            str(t.get("base_url") or "http://127.0.0.1:8080/v1"),
            api_key=t.get("api_key"),
            api_key_env=str(t.get("api_key_env") or "CHAT_CLIENT_API_KEY"),
            timeout=float(t.get("timeout", 60.0)),
        )

    def _payload(self, request: CompletionRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model_id,
            "messages": request.chat_messages(),
            "stream": True,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def stream_completion(self, request: CompletionRequest) -> AsyncIterator[str]:
        token = request.cancellation
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        owns_client = self._client is None
        try:
            async with client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                json=self._payload(request),
                headers=self._headers(),
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="ignore")
                    raise StreamError(f"HTTP {response.status_code}: {body[:200].strip()}")
                async for line in response.aiter_lines():
                    if token.is_cancelled:
                        logger.debug("Transport stopping: cancellation requested")
                        return
                    text = _parse_sse_line(line)
                    if text is None:
                        continue
                    if text is _DONE:
                        return
                    yield text
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise TransportUnavailable(str(e)) from e
        except httpx.HTTPError as e:
            raise StreamError(str(e) or type(e).__name__) from e
        finally:
            if owns_client:
                await client.aclose()


_DONE = object()


def _parse_sse_line(line: str) -> Any:
    """Return the delta text for one SSE line, ``_DONE`` at end, None to skip."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return _DONE
    try:
        event = json.loads(data)
    except json.JSONDecodeError as e:
        raise StreamError(f"malformed stream event: {e}") from e
    if isinstance(event, dict) and event.get("error"):
        err = event["error"]
        msg = err.get("message") if isinstance(err, dict) else str(err)
        raise StreamError(str(msg))
    try:
        choice = event["choices"][0]
    except (KeyError, IndexError, TypeError):
        return None
    delta = choice.get("delta") or {}
    text = delta.get("content") if isinstance(delta, dict) else None
    if text is None:
        text = choice.get("text")
    return text or None
