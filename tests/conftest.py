"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_client.models import Message  # noqa: E402
from chat_client.store import ConversationStore  # noqa: E402


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Default config path shipped with the repo."""
    return project_root / "config" / "default.yaml"


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for memory files during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var.startswith("CHAT_CLIENT"):
            monkeypatch.delenv(var, raising=False)
    yield monkeypatch


@pytest.fixture()
def store() -> ConversationStore:
    return ConversationStore()


@pytest.fixture()
def streaming_conversation(store: ConversationStore):
    """A conversation with one user message and an empty streaming placeholder."""
    user = Message.user("hi")
    placeholder = Message.placeholder()
    conv = store.create(messages=[user, placeholder])
    return conv, placeholder
