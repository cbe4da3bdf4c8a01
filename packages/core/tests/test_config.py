"""Tests for configuration loading."""

import pytest

from prrally_core.config import RallyConfig, load_config
from prrally_core.errors import ConfigError


def test_defaults_applied_when_no_config_file(tmp_path):
    config = load_config(config_path=str(tmp_path / "nonexistent.yml"))
    assert config["reviewer"] == "claude"
    assert config["reviewee"] == "claude"
    assert config["max_iterations"] == 10
    assert config["timeout_secs"] == 600
    assert config["prompt_dir"] is None
    assert config["reviewee_additional_tools"] == []
    assert config["auto_post"] is False
    assert config["store"] == "noop"


def test_config_file_overrides_defaults(tmp_path):
    cfg = tmp_path / ".rally.yml"
    cfg.write_text("reviewer: codex\nmax_iterations: 3\n")
    config = load_config(config_path=str(cfg))
    assert config["reviewer"] == "codex"
    assert config["max_iterations"] == 3


def test_additional_tools_loaded(tmp_path):
    cfg = tmp_path / ".rally.yml"
    cfg.write_text("reviewee_additional_tools:\n  - 'Bash(cargo test:*)'\n  - 'Bash(cargo fmt:*)'\n")
    config = load_config(config_path=str(cfg))
    assert config["reviewee_additional_tools"] == ["Bash(cargo test:*)", "Bash(cargo fmt:*)"]


def test_defaults_not_mutated_between_loads(tmp_path):
    config = load_config(config_path=str(tmp_path / "nonexistent.yml"))
    config["reviewee_additional_tools"].append("Bash(make:*)")
    assert load_config(config_path=str(tmp_path / "nonexistent.yml"))["reviewee_additional_tools"] == []


def test_cli_overrides_config_file(tmp_path):
    cfg = tmp_path / ".rally.yml"
    cfg.write_text("reviewer: codex\n")
    config = load_config(config_path=str(cfg), cli_overrides={"reviewer": "claude"})
    assert config["reviewer"] == "claude"


def test_none_cli_overrides_ignored(tmp_path):
    cfg = tmp_path / ".rally.yml"
    cfg.write_text("reviewer: codex\n")
    config = load_config(config_path=str(cfg), cli_overrides={"reviewer": None})
    assert config["reviewer"] == "codex"


def test_invalid_yaml_raises(tmp_path):
    cfg = tmp_path / ".rally.yml"
    cfg.write_text("reviewer: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(config_path=str(cfg))


def test_non_mapping_raises(tmp_path):
    cfg = tmp_path / ".rally.yml"
    cfg.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_path=str(cfg))


def test_github_token_from_env(monkeypatch):
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.setenv("GH_TOKEN", "gh-token")
    assert load_config(config_path="nonexistent.yml")["github_token"] == "gh-token"

    monkeypatch.setenv("GITHUB_TOKEN", "github-token")
    assert load_config(config_path="nonexistent.yml")["github_token"] == "github-token"


class TestRallyConfig:
    def test_from_dict(self):
        config = RallyConfig.from_dict(
            {"reviewer": "codex", "reviewee": "claude", "max_iterations": 4, "timeout_secs": 120, "auto_post": True}
        )
        assert config.reviewer == "codex"
        assert config.max_iterations == 4
        assert config.timeout_secs == 120
        assert config.auto_post is True

    def test_from_dict_uses_defaults(self):
        config = RallyConfig.from_dict({})
        assert config.reviewer == "claude"
        assert config.max_iterations == 10
        assert config.reviewer_additional_tools == []

    def test_unknown_backend_rejected(self):
        with pytest.raises(ConfigError, match="gemini"):
            RallyConfig(reviewer="gemini")

    @pytest.mark.parametrize("value", [0, -1, "5", True, None])
    def test_max_iterations_must_be_positive_int(self, value):
        with pytest.raises(ConfigError, match="max_iterations"):
            RallyConfig(max_iterations=value)

    def test_timeout_must_be_positive(self):
        with pytest.raises(ConfigError, match="timeout_secs"):
            RallyConfig(timeout_secs=0)
