"""Incremental splitter for the answer and reasoning channels of a stream.

Models that "think out loud" wrap their deliberation in a pair of tags::

    Sure. <think>the user wants X</think> Here is X.

The scanner consumes the stream a piece at a time and routes every character
to exactly one channel. Tags never reach either channel, even when a tag is
split across two or more fragments: any tail that could still grow into the
tag being searched for is held back until the next fragment decides it.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_OPEN_TAG = "<think>"
DEFAULT_CLOSE_TAG = "</think>"


class ScanState(str, Enum):
    IN_ANSWER = "in_answer"
    IN_REASONING = "in_reasoning"


@dataclass(frozen=True)
class ScanResult:
    answer: str = ""
    reasoning: str = ""

    def __bool__(self) -> bool:
        return bool(self.answer or self.reasoning)


def _held_prefix_len(text: str, delimiter: str) -> int:
    """Length of the longest tail of ``text`` that is a proper prefix of ``delimiter``."""
    longest = min(len(text), len(delimiter) - 1)
    for size in range(longest, 0, -1):
        if delimiter.startswith(text[-size:]):
            return size
    return 0


class DualChannelScanner:
    """Two-state machine: ``IN_ANSWER`` (initial) and ``IN_REASONING``.

    Parameters
    ----------
    open_tag : str
        Delimiter that switches the stream into the reasoning channel.
    close_tag : str
        Delimiter that switches it back to the answer channel.
    """

    def __init__(self, open_tag: str = DEFAULT_OPEN_TAG, close_tag: str = DEFAULT_CLOSE_TAG) -> None:
        if not open_tag or not close_tag:
            raise ValueError("reasoning delimiters must be non-empty")
        self.open_tag = open_tag
        self.close_tag = close_tag
        self.state = ScanState.IN_ANSWER
        self._pending = ""

    @property
    def in_reasoning(self) -> bool:
        return self.state is ScanState.IN_REASONING

    @property
    def pending(self) -> str:
        """Text held back because it may be the start of a delimiter."""
        return self._pending

    def feed(self, text: str) -> ScanResult:
        """Classify newly buffered text, returning what each channel gained."""
        buf = self._pending + text
        self._pending = ""
        answer: list[str] = []
        reasoning: list[str] = []

        while buf:
            if self.state is ScanState.IN_ANSWER:
                delimiter, out, next_state = self.open_tag, answer, ScanState.IN_REASONING
            else:
                delimiter, out, next_state = self.close_tag, reasoning, ScanState.IN_ANSWER

            idx = buf.find(delimiter)
            if idx >= 0:
                out.append(buf[:idx])
                self.state = next_state
                buf = buf[idx + len(delimiter):]
                continue

            held = _held_prefix_len(buf, delimiter)
            out.append(buf[: len(buf) - held])
            self._pending = buf[len(buf) - held:]
            break

        return ScanResult(answer="".join(answer), reasoning="".join(reasoning))

    def flush(self) -> ScanResult:
        """Release held text at end of stream into the current channel."""
        held, self._pending = self._pending, ""
        if not held:
            return ScanResult()
        if self.state is ScanState.IN_REASONING:
            return ScanResult(reasoning=held)
        return ScanResult(answer=held)
