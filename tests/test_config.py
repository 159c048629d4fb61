"""Tests for config loading and ${ENV} resolution."""

import pytest

from orchestrate import config as cfg_mod


@pytest.fixture(autouse=True)
def fresh_config():
    cfg_mod.reset_config()
    yield
    cfg_mod.reset_config()


def test_default_config_loads():
    cfg = cfg_mod.load_config()
    assert cfg["backend"]["url"] == "https://openrouter.ai/api/v1"
    assert cfg["backend"]["default_model"] == "google/gemini-2.0-flash-001"
    assert cfg["streaming"]["checkpoint_every"] == 100
    assert "sqlite_path" in cfg["storage"]


def test_env_vars_resolved(tmp_path, monkeypatch):
    monkeypatch.setenv("OR_TEST_KEY", "sk-123")
    path = tmp_path / "config.yaml"
    path.write_text(
        "backend:\n"
        "  api_key: \"${OR_TEST_KEY}\"\n"
        "  url: \"https://${MISSING_HOST_VAR}/v1\"\n"
        "  models: [\"${OR_TEST_KEY}\"]\n"
    )
    cfg = cfg_mod.load_config(path)
    assert cfg["backend"]["api_key"] == "sk-123"
    assert cfg["backend"]["url"] == "https:///v1"
    assert cfg["backend"]["models"] == ["sk-123"]


def test_env_override_path(tmp_path, monkeypatch):
    path = tmp_path / "other.yaml"
    path.write_text("server:\n  port: 9999\n")
    monkeypatch.setenv("ORCHESTRATE_CONFIG", str(path))
    assert cfg_mod.get_config()["server"]["port"] == 9999


def test_config_is_cached(tmp_path, monkeypatch):
    path = tmp_path / "c.yaml"
    path.write_text("server:\n  port: 1\n")
    monkeypatch.setenv("ORCHESTRATE_CONFIG", str(path))
    first = cfg_mod.get_config()
    path.write_text("server:\n  port: 2\n")
    assert cfg_mod.get_config() is first
    cfg_mod.reset_config()
    assert cfg_mod.get_config()["server"]["port"] == 2


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        cfg_mod.load_config(tmp_path / "nope.yaml")


def test_empty_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert cfg_mod.load_config(path) == {}
