"""Long-term key/value memory (thread-safe, optional atomic JSON persistence)."""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

MEMORY_BLOCK_START = "--- Start of Long-Term Memory ---"
MEMORY_BLOCK_END = "--- End of Long-Term Memory ---"


# -----------------------------
# Helpers
# -----------------------------
def normalize_key(key: str) -> str:
    """User-entered keys use underscores in place of whitespace."""
    return re.sub(r"\s+", "_", key.strip())


def display_key(key: str) -> str:
    return key.replace("_", " ")


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


# -----------------------------
# MemoryStore
# -----------------------------
class MemoryStore:
    """Process-wide facts about the user, keyed by a short name.

    Written by the directive sink (:meth:`record`) while a response streams
    and by explicit user edits (:meth:`set`, :meth:`rename`, :meth:`delete`).
    Last write wins per key.

    Layout when ``path`` is given:
        <path>      # {"key": "value", ...}
    """

    def __init__(self, path: Optional[str] = None, initial: Optional[Dict[str, str]] = None) -> None:
        self.path = Path(path) if path else None
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()
        if self.path is not None:
            self._data.update(self._load(self.path))
        if initial:
            self._data.update({str(k): str(v) for k, v in initial.items()})

    # --------- sink ----------
    def record(self, key: str, value: str) -> None:
        """Memory sink entry point used by response sessions."""
        with self._lock:
            if self._data.get(key) == value:
                return
            self._data[key] = value
            self._save()
        logger.info("Memory updated: %s", key)

    # --------- user edits ----------
    def set(self, key: str, value: str) -> str:
        """Add or overwrite an entry from user input; returns the stored key."""
        key = normalize_key(key)
        value = value.strip()
        if not key or not value:
            raise ValueError("memory key and value must be non-empty")
        with self._lock:
            self._data[key] = value
            self._save()
        return key

    def rename(self, old_key: str, new_key: str, value: Optional[str] = None) -> str:
        new_key = normalize_key(new_key)
        if not new_key:
            raise ValueError("memory key must be non-empty")
        with self._lock:
            if old_key not in self._data:
                raise KeyError(old_key)
            current = self._data.pop(old_key)
            self._data[new_key] = value.strip() if value is not None else current
            self._save()
        return new_key

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._data:
                return False
            del self._data[key]
            self._save()
        return True

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._save()

    # --------- reads ----------
    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._data.get(key, default)

    def items(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._data.items())

    def to_dict(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def render_block(self) -> str:
        """Memory block prepended to the system prompt ("" when empty)."""
        entries = self.items()
        if not entries:
            return ""
        lines = [MEMORY_BLOCK_START]
        lines.extend(f"- {display_key(k)}: {v}" for k, v in entries)
        lines.append(MEMORY_BLOCK_END)
        return "\n".join(lines)

    # --------- internals ----------
    @staticmethod
    def _load(path: Path) -> Dict[str, str]:
        if not path.exists():
            return {}
        try:
            with path.open("r", encoding="utf-8") as f:
                raw: Any = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            # Corruption fallback: keep a backup and start fresh.
            logger.warning("Failed to read memory file %s: %s", path, e)
            try:
                path.rename(path.with_suffix(".corrupt.json"))
            except OSError:
                pass
            return {}
        if not isinstance(raw, dict):
            logger.warning("Ignoring memory file %s: expected an object", path)
            return {}
        return {str(k): str(v) for k, v in raw.items()}

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            _atomic_write_text(self.path, json.dumps(self._data, ensure_ascii=False, indent=2))
        except OSError as e:
            logger.warning("Failed to persist memory to %s: %s", self.path, e)
