"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class ProviderConfig(BaseModel):
    """Generative-media provider connection and model selection.

    api_token is normally supplied via VIDWEAVE_PROVIDER__API_TOKEN.
    """

    api_token: Optional[str] = None
    base_url: str = "https://api.replicate.com/v1"
    default_model: str = "google/veo-3.1"
    default_image_model: str = "openai/dall-e-3"
    fallback_models: list[str] = Field(
        default_factory=lambda: ["google/veo-3-fast", "luma/ray"]
    )
    request_timeout: float = 120.0
    poll_interval: float = 5.0
    poll_max: int = 120
    model_cache_ttl: float = 3600.0
    reference_check_timeout: float = 5.0


class PipelineConfig(BaseModel):
    """Pipeline execution parameters."""

    max_scene_duration: float = 8.0
    short_segment_chars: int = 200
    long_prompt_chars: int = 300
    min_clause_chars: int = 10
    retry_max_attempts: int = 3
    retry_base_delay: float = 2.0
    retry_server_error_base_delay: float = 10.0
    worker_concurrency: int = 2
    use_reference_frame: bool = False
    thumbnail_timestamp: float = 0.5
    encode_preset: str = "fast"
    encode_crf: int = 23


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///vidweave.db"
    tmp_dir: Path = Path("tmp")
    media_dir: Path = Path("media")
    public_base_url: str = "http://localhost:8000/media"
    download_timeout: float = 300.0

    @field_validator("tmp_dir", "media_dir", mode="before")
    @classmethod
    def convert_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: VIDWEAVE_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="VIDWEAVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Environment first, then .env, then config.yaml, then defaults."""
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )


# Singleton instance
settings = Settings()
