from __future__ import annotations

from pathlib import Path

import pytest

from chat_client.config import DEFAULTS, load_config


def test_missing_file_uses_defaults(clean_env, tmp_path: Path):
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg["transport"] == DEFAULTS["transport"]
    assert cfg["stream"]["reasoning_open_tag"] == "<think>"


def test_shipped_config_loads(clean_env, config_path: Path):
    cfg = load_config(str(config_path))
    assert cfg["transport"]["kind"] in {"http", "llama_cpp"}
    assert cfg["stream"]["reasoning_close_tag"] == "</think>"


def test_file_overlays_defaults(clean_env, tmp_path: Path):
    path = tmp_path / "cfg.yaml"
    path.write_text("transport:\n  base_url: http://example.test/v1\n", encoding="utf-8")
    cfg = load_config(str(path))
    assert cfg["transport"]["base_url"] == "http://example.test/v1"
    assert cfg["transport"]["timeout"] == 60.0


def test_env_overrides(clean_env, tmp_path: Path):
    clean_env.setenv("CHAT_CLIENT__TRANSPORT__TIMEOUT", "5.5")
    clean_env.setenv("CHAT_CLIENT__DEFAULTS__MAX_TOKENS", "256")
    clean_env.setenv("CHAT_CLIENT__SERVER__DEBUG", "true")
    clean_env.setenv("CHAT_CLIENT__DEFAULTS__PERSONA_ID", "code_expert")
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg["transport"]["timeout"] == 5.5
    assert cfg["defaults"]["max_tokens"] == 256
    assert cfg["server"]["debug"] is True
    assert cfg["defaults"]["persona_id"] == "code_expert"


def test_config_path_from_env(clean_env, tmp_path: Path):
    path = tmp_path / "other.yaml"
    path.write_text("logging:\n  level: DEBUG\n", encoding="utf-8")
    clean_env.setenv("CHAT_CLIENT_CONFIG", str(path))
    assert load_config()["logging"]["level"] == "DEBUG"


def test_invalid_yaml_raises(clean_env, tmp_path: Path):
    path = tmp_path / "bad.yaml"
    path.write_text("transport: [unclosed\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(path))
