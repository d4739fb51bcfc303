"""Tests for mdxflow settings."""

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from mdxflow.config import (
    FALLBACK_MODEL,
    MdxflowSettings,
    clear_settings_cache,
    config_file,
    find_dotenv,
    get_settings,
)


def test_defaults() -> None:
    settings = MdxflowSettings()

    assert settings.default_model == FALLBACK_MODEL
    assert settings.system_prompt == ""
    assert settings.retries == 0
    assert settings.retry_delay_ms == 1000
    assert settings.fetch_backend == "placeholder"


def test_environment_prefix(monkeypatch) -> None:
    monkeypatch.setenv("MDXFLOW_DEFAULT_MODEL", "openai/gpt-4o")
    monkeypatch.setenv("MDXFLOW_RETRIES", "3")

    settings = MdxflowSettings()

    assert settings.default_model == "openai/gpt-4o"
    assert settings.retries == 3


def test_yaml_config_file(tmp_path: Path, monkeypatch) -> None:
    """Test the config file supplies values the environment does not."""
    path = tmp_path / "config.yaml"
    path.write_text("default_model: anthropic/claude-sonnet-4\nsystem_prompt: Be terse.\n", encoding="utf-8")
    monkeypatch.setenv("MDXFLOW_CONFIG_FILE", str(path))
    monkeypatch.setenv("MDXFLOW_SYSTEM_PROMPT", "From env.")

    settings = MdxflowSettings()

    assert config_file() == path
    assert settings.default_model == "anthropic/claude-sonnet-4"
    assert settings.system_prompt == "From env."


def test_explicit_arguments_win(monkeypatch) -> None:
    monkeypatch.setenv("MDXFLOW_DEFAULT_MODEL", "openai/gpt-4o")

    assert MdxflowSettings(default_model="x/y").default_model == "x/y"


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        MdxflowSettings(retries=-1)
    with pytest.raises(ValidationError):
        MdxflowSettings(fetch_backend="ftp")


def test_config_file_default_location(monkeypatch) -> None:
    monkeypatch.delenv("MDXFLOW_CONFIG_FILE")

    assert config_file() == Path.home() / ".mdxflow" / "config.yaml"


def test_find_dotenv(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert find_dotenv(nested) is None

    env_file = tmp_path / "a" / ".env"
    env_file.write_text("MDXFLOW_RETRIES=2\n", encoding="utf-8")
    assert find_dotenv(nested) == env_file


def test_get_settings_reads_dotenv(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))
    (tmp_path / ".env").write_text("MDXFLOW_RETRIES=4\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()

    settings = get_settings()

    assert settings.retries == 4
    assert get_settings() is settings
    assert "MDXFLOW_RETRIES" not in os.environ
