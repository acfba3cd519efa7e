from __future__ import annotations

import pytest

from chat_gateway.config import load_config, provider_api_key


def test_explicit_path_merges_over_defaults(config_path, clean_env):
    cfg = load_config(str(config_path))
    assert cfg["models"]["text"] == ["model-a", "model-b"]
    assert cfg["persona"]["system_prompt"] == "You are a test coach."
    # untouched defaults survive the merge
    assert cfg["server"]["cors_origins"] == ["*"]
    assert cfg["provider"]["title"] == "LifeCoach AI"


def test_env_var_selects_config(config_path, monkeypatch, clean_env):
    monkeypatch.setenv("CHAT_GATEWAY_CONFIG", str(config_path))
    assert load_config()["provider"]["base_url"] == "http://provider.test/v1"


def test_missing_file_falls_back_to_defaults(tmp_path, clean_env):
    cfg = load_config(str(tmp_path / "nope.yaml"))
    assert cfg["store"]["backend"] == "file"
    assert cfg["memory"]["max_sessions"] == 3


def test_env_overrides(config_path, monkeypatch, clean_env):
    monkeypatch.setenv("CHAT_GATEWAY__PROVIDER__TIMEOUT", "4.5")
    monkeypatch.setenv("CHAT_GATEWAY__MEMORY__MAX_SESSIONS", "0")
    monkeypatch.setenv("CHAT_GATEWAY__MODELS__TEXT", "x/one, x/two")
    monkeypatch.setenv("CHAT_GATEWAY__STORE__BACKEND", "memory")
    cfg = load_config(str(config_path))
    assert cfg["provider"]["timeout"] == 4.5
    assert cfg["memory"]["max_sessions"] == 0
    assert cfg["models"]["text"] == ["x/one", "x/two"]
    assert cfg["store"]["backend"] == "memory"


def test_invalid_yaml_raises(tmp_path, clean_env):
    bad = tmp_path / "bad.yaml"
    bad.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(bad))


def test_provider_api_key_prefers_config(monkeypatch, clean_env):
    monkeypatch.setenv("OPENROUTER_API_KEY", "env-key")
    assert provider_api_key({"provider": {"api_key": "cfg-key"}}) == "cfg-key"
    assert provider_api_key({"provider": {}}) == "env-key"
