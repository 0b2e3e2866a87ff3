"""
Tests for config loading and the limits block.
"""

import pytest

from chatfeedback import config as cfg_mod
from chatfeedback.config import (
    DEFAULT_CONTEXT_MSG_LIMIT,
    DEFAULT_MAX_MSG_SIZE,
    get_limits,
    get_models,
    load_config,
)


@pytest.fixture
def fresh_config():
    """Reset the cached config around a test."""
    orig = cfg_mod._config
    cfg_mod._config = None
    yield
    cfg_mod._config = orig


def test_load_config_resolves_env(tmp_path, monkeypatch, fresh_config):
    monkeypatch.setenv("CF_TEST_KEY", "sk-test")
    path = tmp_path / "config.yaml"
    path.write_text(
        "backend:\n"
        "  api_key: ${CF_TEST_KEY}\n"
        "  extra: [\"${CF_TEST_KEY}-x\"]\n"
    )
    cfg = load_config(path)
    assert cfg["backend"]["api_key"] == "sk-test"
    assert cfg["backend"]["extra"] == ["sk-test-x"]


def test_load_config_unset_env_is_blank(tmp_path, monkeypatch, fresh_config):
    monkeypatch.delenv("CF_UNSET_VAR", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text("limits:\n  max_msg_size: ${CF_UNSET_VAR}\n")
    assert load_config(path)["limits"]["max_msg_size"] == ""


def test_load_config_missing_file(tmp_path, fresh_config):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_load_config_is_cached(tmp_path, fresh_config):
    path = tmp_path / "config.yaml"
    path.write_text("server:\n  port: 9000\n")
    first = load_config(path)
    path.write_text("server:\n  port: 9001\n")
    assert load_config(path) is first


def test_limits_defaults_when_blank():
    limits = get_limits({"limits": {"context_msg_limit": "", "max_msg_size": None}})
    assert limits.context_msg_limit == DEFAULT_CONTEXT_MSG_LIMIT
    assert limits.max_msg_size == DEFAULT_MAX_MSG_SIZE


def test_limits_defaults_when_block_missing():
    limits = get_limits({})
    assert limits.context_msg_limit == -1
    assert limits.max_msg_size == 1000


def test_limits_parse_strings():
    limits = get_limits({"limits": {"context_msg_limit": "20", "max_msg_size": "250"}})
    assert limits.context_msg_limit == 20
    assert limits.max_msg_size == 250


def test_limits_invalid_value_falls_back():
    limits = get_limits({"limits": {"context_msg_limit": "lots", "max_msg_size": 50}})
    assert limits.context_msg_limit == DEFAULT_CONTEXT_MSG_LIMIT
    assert limits.max_msg_size == 50


def test_models_accepts_strings_and_dicts():
    models = get_models({"models": [
        "openai/gpt-4.1",
        {"id": "anthropic/claude-3.5-sonnet", "name": "Claude", "provider": "Anthropic"},
        {"name": "no id"},
    ]})
    assert [m["id"] for m in models] == ["openai/gpt-4.1", "anthropic/claude-3.5-sonnet"]
    assert models[0]["name"] == "openai/gpt-4.1"
    assert models[1]["provider"] == "Anthropic"
    assert models[1]["category"] == ""
