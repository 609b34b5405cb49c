import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env early so $VAR references in app.yaml can be resolved
load_dotenv(Path.cwd() / ".env")

# Pattern to match $VAR_NAME environment variable references
ENV_VAR_PATTERN = re.compile(r"\$([A-Z_][A-Z0-9_]*)")

MB = 1024 * 1024


def interpolate_env_vars(value):
    """Recursively replace $VAR_NAME with os.environ values."""
    if isinstance(value, str):

        def replace(match):
            var = match.group(1)
            val = os.environ.get(var)
            if val is None:
                raise ValueError(f"Environment variable ${var} not set")
            return val

        return ENV_VAR_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: interpolate_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [interpolate_env_vars(item) for item in value]
    return value


def get_config_path() -> Path:
    """Return the app.yaml path, honouring PLUME_CONFIG."""
    override = os.environ.get("PLUME_CONFIG")
    if override:
        return Path(override)
    return Path.cwd() / "app.yaml"


def load_app_config() -> dict:
    """Load and parse app.yaml with environment variable interpolation."""
    config_path = get_config_path()

    if not config_path.exists():
        raise FileNotFoundError(f"app.yaml not found at {config_path}")

    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    return interpolate_env_vars(config)


DEFAULT_IMAGE_MIME_TYPES = [
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/avif",
]
DEFAULT_IMAGE_EXTENSIONS = ["jpg", "jpeg", "png", "gif", "webp", "avif"]


class UploadConfig(BaseModel):
    """Storage roots and default ingress limits."""

    root_path: str = "./uploads"
    public_prefix: str = "/uploads"
    temp_subdir: str = "temp"
    max_file_size: int = 5 * MB
    max_file_count: int = 10
    allowed_mime_types: list[str] = DEFAULT_IMAGE_MIME_TYPES
    allowed_extensions: list[str] = DEFAULT_IMAGE_EXTENSIONS
    filename_strategy: Literal["uuid", "timestamp", "original"] = "uuid"
    use_hash: bool = False
    concurrency: int = Field(default=5, ge=1)
    # Deadline in seconds for batch requests; None waits indefinitely
    batch_timeout: float | None = None
    max_request_size: int = 100 * MB


class CompressionConfig(BaseModel):
    """Default re-encoding policy for uploaded images."""

    enabled: bool = True
    format: str = "webp"
    quality: int = Field(default=70, ge=1, le=100)
    effort: int = Field(default=6, ge=0, le=10)
    lossless: bool = False


class ThumbnailConfig(BaseModel):
    """Default thumbnail geometry and encoding."""

    width: int = Field(default=400, gt=0)
    height: int = Field(default=400, gt=0)
    format: str = "webp"
    quality: int = Field(default=60, ge=1, le=100)
    fit: Literal["cover", "contain"] = "cover"


class SceneConfig(BaseModel):
    """Per-scene overrides declared in app.yaml.

    Every field is optional so a scene entry can tweak a single rule of a
    built-in scene. New scenes must at least set ``base_dir``.
    """

    base_dir: str | None = None
    date_partitioned: bool | None = None
    allowed_mime_types: list[str] | None = None
    allowed_extensions: list[str] | None = None
    max_file_size: int | None = None
    max_file_count: int | None = None
    compress: bool | None = None
    compression_format: str | None = None
    compression_quality: int | None = None
    thumbnail_scene: str | None = None
    thumbnail: ThumbnailConfig | None = None


class S3Config(BaseModel):
    """S3-compatible object store configuration."""

    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    prefix: str = ""
    public_url: str = ""
    acl: str = ""
    presign_ttl: int = 3600


class StorageConfig(BaseModel):
    """Remote publication backend."""

    backend: str = "local"
    local_path: str = "./uploads/remote"
    local_url_prefix: str = "/uploads/remote"
    s3: S3Config = S3Config()


class LogfireConfig(BaseModel):
    """Pydantic Logfire observability configuration."""

    enabled: bool = False
    service_name: str = "plume"
    environment: str = ""
    sample_rate: float = 1.0
    console: bool = False


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PLUME_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application
    debug: bool = False
    log_level: str = "info"

    upload: UploadConfig = UploadConfig()
    compression: CompressionConfig = CompressionConfig()
    thumbnail: ThumbnailConfig = ThumbnailConfig()
    storage: StorageConfig = StorageConfig()
    scenes: dict[str, SceneConfig] = {}
    logfire: LogfireConfig = LogfireConfig()


_SECTIONS: dict[str, type[BaseModel]] = {
    "upload": UploadConfig,
    "compression": CompressionConfig,
    "thumbnail": ThumbnailConfig,
    "storage": StorageConfig,
    "logfire": LogfireConfig,
}


@lru_cache
def get_settings() -> Settings:
    """Load settings from .env and app.yaml."""
    base_settings = Settings()

    try:
        app_config = load_app_config()
    except FileNotFoundError:
        return base_settings

    updates = {}
    for section, model in _SECTIONS.items():
        if section in app_config:
            updates[section] = model(**app_config[section])

    if "scenes" in app_config:
        updates["scenes"] = {
            name: SceneConfig(**(raw or {}))
            for name, raw in app_config["scenes"].items()
        }

    for key in ("debug", "log_level"):
        if key in app_config:
            updates[key] = app_config[key]

    if updates:
        return base_settings.model_copy(update=updates)

    return base_settings


def clear_settings_cache() -> None:
    """Forget the cached settings (tests and CLI overrides)."""
    get_settings.cache_clear()
