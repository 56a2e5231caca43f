import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from json_chat.infrastructure.local_platform_manager import get_parameters

# Constants that don't change
SCRIPT_TOOL_NAME = "python_executor"
DOCUMENT_VARIABLE = "json_data"
RESULT_VARIABLE = "result"
SCHEMA_CACHE_NAMESPACE = "json-chat:schema:v1"
DEFAULT_SETTINGS_PATH = "~/.json_chat/settings.json"


@dataclass
class ChatSettings:
    """Application settings loaded from the environment and the settings file."""

    # Model settings
    openai_model: str
    max_tool_rounds: int

    # Sandbox settings
    sandbox_timeout_seconds: float
    sandbox_memory_limit_mb: int
    tool_output_max_chars: int

    # Schema inference and cache
    schema_cache_ttl: int

    # Logging and persistence
    log_level: str
    logs_dir: str
    settings_path: str

    # Optional settings
    openai_api_key: str | None = None
    schema_inferrer_url: str | None = None
    redis_url: str | None = None


def _as_int(name: str, value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"Configuration value is invalid: {name.upper()}") from e


def _as_float(name: str, value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"Configuration value is invalid: {name.upper()}") from e


def read_settings_file(path: str | Path) -> dict[str, Any]:
    """Read the persisted settings file; a missing or unreadable file is empty."""
    settings_file = Path(path).expanduser()
    if not settings_file.exists():
        return {}
    try:
        data = json.loads(settings_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


class Config:
    """Singleton configuration manager for the JSON chat service."""

    _instance = None
    _settings = None

    def __new__(cls) -> "Config":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def get_settings(self) -> ChatSettings:
        """Get settings, loading them if not already cached."""
        if self._settings is None:
            self._settings = self._load_settings()
        return self._settings

    def reload(self) -> ChatSettings:
        """Drop the cached settings and load them again."""
        self._settings = None
        return self.get_settings()

    def save_openai_api_key(self, api_key: str) -> ChatSettings:
        """
        Persist the OpenAI API key to the settings file and refresh the cache.

        The file is created owner-only before the key is written. When
        OPENAI_API_KEY is set in the environment it keeps precedence; the saved
        key takes effect once the variable is unset.
        """
        api_key = api_key.strip()
        if not api_key:
            raise ValueError("Configuration value is invalid: OPENAI_API_KEY")

        settings = self.get_settings()
        settings_file = Path(settings.settings_path).expanduser()
        stored = read_settings_file(settings_file)
        stored["openai_api_key"] = api_key

        settings_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(settings_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        # An existing file keeps its old mode through os.open
        os.chmod(settings_file, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(stored, indent=2))

        env_key = get_parameters("openai_api_key")["openai_api_key"]
        self._settings = replace(settings, openai_api_key=env_key or api_key)
        return self._settings

    def _load_settings(self) -> ChatSettings:
        """Load settings from environment variables, then the settings file."""
        parameters = get_parameters(
            [
                "openai_api_key",
                "openai_model",
                "max_tool_rounds",
                "sandbox_timeout_seconds",
                "sandbox_memory_limit_mb",
                "tool_output_max_chars",
                "schema_inferrer_url",
                "redis_url",
                "schema_cache_ttl",
                "json_chat_settings_path",
                "log_level",
                "logs_dir",
            ]
        )

        settings_path = parameters["json_chat_settings_path"] or DEFAULT_SETTINGS_PATH
        stored = read_settings_file(settings_path)

        # The environment wins over the settings file
        api_key = parameters["openai_api_key"] or stored.get("openai_api_key") or None

        settings = ChatSettings(
            openai_model=parameters["openai_model"] or "gpt-5-mini",
            max_tool_rounds=_as_int("max_tool_rounds", parameters["max_tool_rounds"], 5),
            sandbox_timeout_seconds=_as_float(
                "sandbox_timeout_seconds", parameters["sandbox_timeout_seconds"], 5.0
            ),
            sandbox_memory_limit_mb=_as_int(
                "sandbox_memory_limit_mb", parameters["sandbox_memory_limit_mb"], 512
            ),
            tool_output_max_chars=_as_int(
                "tool_output_max_chars", parameters["tool_output_max_chars"], 20000
            ),
            schema_cache_ttl=_as_int("schema_cache_ttl", parameters["schema_cache_ttl"], 86400),
            log_level=(parameters["log_level"] or "INFO").upper(),
            logs_dir=parameters["logs_dir"] or "logs",
            settings_path=settings_path,
            openai_api_key=api_key,
            schema_inferrer_url=parameters["schema_inferrer_url"],
            redis_url=parameters["redis_url"],
        )

        # Validate settings
        self._validate_settings(settings)

        return settings

    def _validate_settings(self, settings: ChatSettings) -> None:
        """Validate that all numeric settings are in range."""
        positive_fields = [
            "max_tool_rounds",
            "sandbox_timeout_seconds",
            "sandbox_memory_limit_mb",
            "tool_output_max_chars",
            "schema_cache_ttl",
        ]
        for field in positive_fields:
            if getattr(settings, field) <= 0:
                raise ValueError(f"Configuration value is invalid: {field.upper()}")

        if settings.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("Configuration value is invalid: LOG_LEVEL")


# Create singleton instance
config = Config()


# Convenience functions
def get_settings() -> ChatSettings:
    """Get settings from the singleton config."""
    return config.get_settings()


def save_openai_api_key(api_key: str) -> ChatSettings:
    """Persist a new OpenAI API key through the singleton config."""
    return config.save_openai_api_key(api_key)
