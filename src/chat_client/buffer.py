"""Accumulator for raw transport fragments."""
from __future__ import annotations

from typing import List


class FragmentBuffer:
    """Collects fragments until the scanner drains them."""

    def __init__(self) -> None:
        self._parts: List[str] = []

    def append(self, fragment: str) -> None:
        if fragment:
            self._parts.append(fragment)

    def drain(self) -> str:
        """Return everything buffered so far and reset."""
        text = "".join(self._parts)
        self._parts = []
        return text

    def __len__(self) -> int:
        return sum(len(p) for p in self._parts)

    def __bool__(self) -> bool:
        return bool(self._parts)
