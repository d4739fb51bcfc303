"""Runtime settings for mdxflow.

Uses pydantic-settings with an ``MDXFLOW_`` prefix. The .env file is found
by searching from the current directory up to home; an optional
``~/.mdxflow/config.yaml`` supplies lower-priority values. Precedence:
explicit arguments, environment, .env, config.yaml, built-in defaults.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

FALLBACK_MODEL = "azure/gpt-5.2"


def config_file() -> Path:
    """Location of the user config file (``MDXFLOW_CONFIG_FILE`` overrides)."""
    override = os.environ.get("MDXFLOW_CONFIG_FILE")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mdxflow" / "config.yaml"


class MdxflowSettings(BaseSettings):
    """mdxflow settings loaded from the environment and config files."""

    model_config = SettingsConfigDict(
        env_prefix="MDXFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    default_model: str = Field(
        default=FALLBACK_MODEL, description="Model used when neither the run nor the node sets one"
    )
    system_prompt: str = Field(default="", description="System prompt sent with every model call")
    retries: int = Field(default=0, ge=0, description="Retries for a failed model call")
    retry_delay_ms: int = Field(default=1000, ge=0, description="Initial retry backoff in ms")
    fetch_backend: Literal["placeholder", "http"] = Field(
        default="placeholder", description="Backend used by WebFetch nodes"
    )
    fetch_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout for WebFetch")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=config_file()),
            file_secret_settings,
        )


def find_dotenv(start_path: Path | None = None) -> Path | None:
    """Find .env by searching from start_path (or cwd) up to home."""
    current = start_path or Path.cwd()
    home = Path.home()

    while current >= home:
        candidate = current / ".env"
        if candidate.exists():
            return candidate
        if current == current.parent:
            break
        current = current.parent

    return None


@lru_cache(maxsize=1)
def get_settings() -> MdxflowSettings:
    """Get the cached settings instance."""
    env_file = find_dotenv()
    if env_file:
        return MdxflowSettings(_env_file=env_file)
    return MdxflowSettings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
