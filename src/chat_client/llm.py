"""Completion transport backed by a local GGUF model via llama.cpp."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

from .errors import StreamError, TransportUnavailable
from .transport import CompletionRequest

logger = logging.getLogger(__name__)


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


_END = object()


def _next_or_end(it: Iterator[Any]) -> Any:
    return next(it, _END)


# -----------------------------
# GGUF transport
# -----------------------------

class LlamaCppTransport:
    """Streams tokens from :mod:`llama_cpp` as completion fragments."""

    def __init__(self, model_path: Optional[str] = None, *, llama: Any = None, **kwargs: Any) -> None:
        """
        Parameters
        ----------
        model_path : str | None
            Path to .gguf weights. Ignored when ``llama`` is given.
        llama : Any
            Already constructed ``llama_cpp.Llama`` (or a stand-in with the
            same ``__call__`` API).
        kwargs : Any
            Passed to llama_cpp.Llama with some smart defaults:
              - n_threads: defaults to os.cpu_count()
              - n_gpu_layers: auto if gpu offload supported; else 0
              - use_mmap: default True, with fallback retry if OSError
        """
        if llama is not None:
            self._llama = llama
        else:
            self._llama = self._load(model_path, kwargs)

        self._supports_chat_template = hasattr(self._llama, "apply_chat_template")
        # Common stop tokens for instruction models
        self._default_stops = ["</s>", "###", "User:", "Assistant:"]

    @staticmethod
    def _load(model_path: Optional[str], kwargs: Dict[str, Any]) -> Any:
        if not model_path or not os.path.exists(model_path):
            raise TransportUnavailable(f"Model not found at: {model_path!r}")

        # Lazy import so unit tests pass without the dep.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1

        if "n_gpu_layers" not in kwargs or kwargs["n_gpu_layers"] is None:
            kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0

        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap
        try:
            return Llama(model_path=model_path, **kwargs)
        except OSError as e:
            if not use_mmap:
                raise
            # Retry without mmap on network filesystems / Windows oddities.
            logger.warning("mmap load failed, retrying without mmap: %s", e)
            kwargs["use_mmap"] = False
            return Llama(model_path=model_path, **kwargs)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "LlamaCppTransport":
        """Create from a config dict (``transport`` section)."""
        t = (cfg or {}).get("transport", {}) if isinstance(cfg, dict) else {}
        model_dir = t.get("model_dir")
        model_path = t.get("model_path")
        if model_dir and model_path and not os.path.isabs(model_path):
            model_path = os.path.join(model_dir, model_path)

        params = {
            "n_ctx": t.get("n_ctx", 4096),
            "n_threads": t.get("n_threads"),
            "n_gpu_layers": t.get("n_gpu_layers"),
            "use_mmap": t.get("use_mmap", True),
        }
        # Remove None entries (llama.cpp is picky)
        params = {k: v for k, v in params.items() if v is not None}
        return cls(model_path, **params)

    # -------------------------
    # Transport API
    # -------------------------
    async def stream_completion(self, request: CompletionRequest) -> AsyncIterator[str]:
        prompt = self._render_chat(request.chat_messages())
        kwargs: Dict[str, Any] = dict(stop=self._default_stops, stream=True)
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature

        loop = asyncio.get_running_loop()
        try:
            parts = iter(self._llama(prompt, **kwargs))
        except Exception as e:
            raise StreamError(f"local model failed to start: {e}") from e

        token = request.cancellation
        while not token.is_cancelled:
            try:
                # Blocking token iteration runs off the event loop.
                part = await loop.run_in_executor(None, _next_or_end, parts)
            except Exception as e:
                raise StreamError(f"local model failed: {e}") from e
            if part is _END:
                return
            text = part.get("choices", [{}])[0].get("text", "")
            if text:
                yield text

    # -------------------------
    # Internals
    # -------------------------
    def _render_chat(self, messages: List[Dict[str, Any]]) -> str:
        """Render chat messages to a prompt string.

        Uses llama.cpp chat template if available; otherwise falls back
        to a simple, robust instruction-style format.
        """
        if self._supports_chat_template:
            try:
                tpl = self._llama.apply_chat_template(messages, add_generation_prompt=True)
                if isinstance(tpl, bytes):
                    return tpl.decode("utf-8", errors="ignore")
                return str(tpl)
            except Exception as e:
                logger.debug("chat template failed, using fallback prompt: %s", e)

        lines: List[str] = []
        sys_lines = [m["content"] for m in messages if m["role"] == "system"]
        if sys_lines:
            lines.append("### System\n" + "\n".join(sys_lines).strip() + "\n")

        for m in messages:
            content = m["content"]
            if isinstance(content, list):
                content = "\n".join(p.get("text", "") for p in content if p.get("type") == "text")
            if m["role"] == "user":
                lines.append("### User\n" + content.strip() + "\n")
            elif m["role"] == "assistant":
                lines.append("### Assistant\n" + content.strip() + "\n")

        # Generation cue
        lines.append("### Assistant\n")
        return "\n".join(lines)
