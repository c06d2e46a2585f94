import yaml
import re
from pydantic_settings import BaseSettings
from functools import lru_cache
from pathlib import Path
from dotenv import load_dotenv
import os

# Load .env from project root
project_root = Path(__file__).parent.parent.parent
env_path = project_root / ".env"
load_dotenv(env_path)


def substitute_env_vars(value):
    """
    Recursively substitute ${VAR_NAME} or ${VAR_NAME:-default} patterns
    with environment variable values.
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replace_match(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.environ.get(var_name, default_value)

        return re.sub(pattern, replace_match, value)
    elif isinstance(value, dict):
        return {k: substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [substitute_env_vars(item) for item in value]
    return value


def load_yaml_with_env(yaml_path: Path) -> dict:
    """Load YAML file with environment variable substitution."""
    if not yaml_path.exists():
        return {}

    with open(yaml_path, encoding="utf-8") as f:
        raw_config = yaml.safe_load(f) or {}

    return substitute_env_vars(raw_config)


class StorageSettings(BaseSettings):
    """Where certification photos are read from."""
    type: str = "local"  # local | http
    base_path: str = "storage"
    public_host: str = "storage.googleapis.com"
    raw_schemes: list[str] = ["gs"]
    timeout: float = 15.0


class ImageSettings(BaseSettings):
    """Settings for photo resizing before the AI call."""
    max_width: int = 800
    max_height: int = 800
    quality: int = 80
    format: str = "JPEG"
    max_bytes: int = 1024 * 1024
    second_pass_scale: float = 0.8
    quality_step: int = 20
    min_quality: int = 30


class GeminiSettings(BaseSettings):
    model: str = "gemini-1.5-flash"
    api_key: str | None = None
    timeout: float = 30.0


class RateLimitingSettings(BaseSettings):
    """Settings for API rate limiting."""
    max_concurrent_requests: int = 5
    request_delay_seconds: float = 1.0
    max_retries: int = 3
    base_backoff_seconds: float = 1.0
    jitter_seconds: float = 0.0


class PromptSettings(BaseSettings):
    max_prompt_length: int = 8000


class ExtractionSettings(BaseSettings):
    """Quality gate used by the retrying extraction entry point."""
    min_confidence: float = 0.3
    quality_check_attempts: int = 3
    quality_retry_delay_seconds: float = 1.0


class LoggingSettings(BaseSettings):
    level: str = "INFO"


class Settings(BaseSettings):
    storage: StorageSettings = StorageSettings()
    image: ImageSettings = ImageSettings()
    gemini: GeminiSettings = GeminiSettings()
    rate_limiting: RateLimitingSettings = RateLimitingSettings()
    prompts: PromptSettings = PromptSettings()
    extraction: ExtractionSettings = ExtractionSettings()
    logging: LoggingSettings = LoggingSettings()

    class Config:
        env_file = ".env"
        env_nested_delimiter = "__"
        extra = "ignore"  # Ignore extra fields not in the model


@lru_cache()
def get_settings() -> Settings:
    """Load settings from YAML config file with environment variable substitution."""
    config_path = Path(__file__).parent.parent.parent / "config" / "settings.yaml"

    # Load YAML with ${VAR_NAME} substitution from .env
    yaml_config = load_yaml_with_env(config_path)

    # Environment variables take precedence via pydantic-settings
    return Settings(**yaml_config)
