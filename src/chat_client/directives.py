"""Extraction of inline ``[SAVE_MEMORY ...]`` directives from the answer channel.

The model is told it may persist facts about the user by writing::

    [SAVE_MEMORY key="favourite_colour" value="green"]

Matched directives are removed from the text the user sees and forwarded to
the memory sink. Keys and values cannot contain a double quote; there is no
escaping, so a value with ``"`` in it simply never matches.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Tuple

DIRECTIVE_RE = re.compile(r'\[SAVE_MEMORY\s+key="([^"]+)"\s+value="([^"]+)"\]')

# Token sequence mirrored from DIRECTIVE_RE for prefix checks.
_LIT, _WS, _FIELD = "lit", "ws", "field"
_GRAMMAR: Tuple[Tuple[str, str], ...] = (
    (_LIT, "[SAVE_MEMORY"),
    (_WS, ""),
    (_LIT, 'key="'),
    (_FIELD, ""),
    (_LIT, '"'),
    (_WS, ""),
    (_LIT, 'value="'),
    (_FIELD, ""),
    (_LIT, '"]'),
)


@dataclass(frozen=True)
class Directive:
    key: str
    value: str


@dataclass(frozen=True)
class Extraction:
    visible: str = ""
    directives: Tuple[Directive, ...] = field(default_factory=tuple)


def could_be_directive(text: str) -> bool:
    """True if ``text`` is an incomplete prefix of a directive.

    A complete directive returns False; it is the regex's job to match it.
    """
    pos = 0
    n = len(text)
    for kind, literal in _GRAMMAR:
        if pos >= n:
            return True
        if kind == _LIT:
            chunk = text[pos:pos + len(literal)]
            if not literal.startswith(chunk):
                return False
            if len(chunk) < len(literal):
                return True
            pos += len(literal)
        elif kind == _WS:
            start = pos
            while pos < n and text[pos].isspace():
                pos += 1
            if pos == start:
                return False
        else:
            start = pos
            while pos < n and text[pos] != '"':
                pos += 1
            if pos == start:
                return False
    return False


def extract_directives(text: str) -> Tuple[str, List[Directive]]:
    """Strip every complete directive from ``text`` in one pass."""
    found = [Directive(m.group(1), m.group(2)) for m in DIRECTIVE_RE.finditer(text)]
    return DIRECTIVE_RE.sub("", text), found


class DirectiveExtractor:
    """Incremental directive matcher with a confirmed-clean high-water mark.

    Text is only ever rescanned from the first position that might still be
    part of a directive, so each occurrence is reported exactly once and the
    visible output never shrinks.
    """

    def __init__(self) -> None:
        self._tail = ""
        self._visible: List[str] = []
        self._applied: List[Directive] = []

    @property
    def visible_text(self) -> str:
        """All text released for display so far."""
        return "".join(self._visible)

    @property
    def applied(self) -> Tuple[Directive, ...]:
        return tuple(self._applied)

    @property
    def pending(self) -> str:
        return self._tail

    def feed(self, answer: str) -> Extraction:
        """Consume the next piece of the answer channel."""
        text = self._tail + answer
        self._tail = ""
        if not text:
            return Extraction()

        out: List[str] = []
        found: List[Directive] = []
        pos = 0
        for match in DIRECTIVE_RE.finditer(text):
            out.append(text[pos:match.start()])
            found.append(Directive(match.group(1), match.group(2)))
            pos = match.end()

        rest = text[pos:]
        hold_at = self._hold_index(rest)
        out.append(rest[:hold_at])
        self._tail = rest[hold_at:]
        return self._emit("".join(out), found)

    def flush(self) -> Extraction:
        """End of stream: an unfinished directive is shown as plain text."""
        tail, self._tail = self._tail, ""
        return self._emit(tail, [])

    def _emit(self, visible: str, found: List[Directive]) -> Extraction:
        if visible:
            self._visible.append(visible)
        self._applied.extend(found)
        return Extraction(visible=visible, directives=tuple(found))

    @staticmethod
    def _hold_index(text: str) -> int:
        start = text.find("[")
        while start >= 0:
            if could_be_directive(text[start:]):
                return start
            start = text.find("[", start + 1)
        return len(text)
