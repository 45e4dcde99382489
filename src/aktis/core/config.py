from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, Dict, Any
from pathlib import Path

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class Settings(BaseSettings):
    # HTTP server (dispatch layer)
    SERVER_HOST: str = "127.0.0.1"
    SERVER_PORT: int = 8080

    # Storage
    AKTIS_WORKDIR: str = "var"  # Tool-managed artifacts
    DATABASE_PATH: Optional[str] = None  # Defaults to <workdir>/aktis.db

    # Remote requests
    HTTP_TIMEOUT_SECONDS: float = 30.0
    HTTP_RETRY_ATTEMPTS: int = 3  # Transport failures only
    HTTP_RETRY_MAX_WAIT_SECONDS: float = 30.0

    # Jira
    JIRA_PAGE_SIZE: int = 100
    JIRA_COUNT_LIMIT: int = 5000  # search/jql maxResults cap used for counting
    JIRA_PAGE_DELAY_MS: int = 300

    # Confluence
    CONFLUENCE_SPACE_PAGE_SIZE: int = 25
    CONFLUENCE_PAGE_SIZE: int = 25
    CONFLUENCE_PAGE_DELAY_MS: int = 500

    # Synchronization
    INDEX_PAGE_DELAY_MS: int = 500  # Between container list pages
    COUNT_DELAY_MS: int = 100  # After each parallel count fetch
    MAX_PAGE_ITERATIONS: int = 200  # Hard bound on item pagination

    # Observability
    LOG_FORMAT: str = "auto"  # json|plain|auto
    LOG_LEVEL: str = "info"
    PROGRESS_BUFFER: int = 500  # Progress events kept for polling

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.lower()
        if value == "warn":
            value = "warning"
        if value not in LOG_LEVELS:
            raise ValueError(f"invalid log level: {value}")
        return value

    @field_validator("LOG_FORMAT")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        if value not in ("json", "plain", "auto"):
            raise ValueError(f"invalid log format: {value}")
        return value

    @field_validator(
        "JIRA_PAGE_SIZE",
        "JIRA_COUNT_LIMIT",
        "CONFLUENCE_SPACE_PAGE_SIZE",
        "CONFLUENCE_PAGE_SIZE",
        "MAX_PAGE_ITERATIONS",
        "HTTP_RETRY_ATTEMPTS",
        "PROGRESS_BUFFER",
    )
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator(
        "JIRA_PAGE_DELAY_MS",
        "CONFLUENCE_PAGE_DELAY_MS",
        "INDEX_PAGE_DELAY_MS",
        "COUNT_DELAY_MS",
    )
    @classmethod
    def _check_delay(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be non-negative")
        return value

    def database_path(self) -> Path:
        """Resolved path of the embedded cache file."""
        if self.DATABASE_PATH:
            return Path(self.DATABASE_PATH)
        return Path(self.AKTIS_WORKDIR) / "aktis.db"

    @classmethod
    def load_config(
        cls, config_file: Optional[str] = None, **overrides: Any
    ) -> "Settings":
        """Load settings with config file -> env -> CLI precedence."""
        config_data: Dict[str, Any] = {}

        # Find config file
        if config_file:
            config_path: Optional[Path] = Path(config_file)
            if not config_path.exists():
                raise FileNotFoundError(f"config file not found: {config_file}")
        else:
            # Auto-discover .aktis.{yaml,yml,toml} or aktis.toml
            for candidate in (".aktis.yaml", ".aktis.yml", ".aktis.toml", "aktis.toml"):
                config_path = Path(candidate)
                if config_path.exists():
                    break
            else:
                config_path = None

        if config_path:
            if config_path.suffix in [".yaml", ".yml"]:
                import yaml  # type: ignore[import-untyped]

                with open(config_path) as f:
                    config_data = yaml.safe_load(f) or {}
            elif config_path.suffix == ".toml":
                import tomllib

                with open(config_path, "rb") as f:
                    config_data = tomllib.load(f)

        values = _flatten(config_data)

        # Environment variables win over the config file
        env_settings = cls()
        for name in env_settings.model_fields_set:
            values.pop(name, None)

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _flatten(data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten ``[server] port = 8080`` into ``SERVER_PORT``."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}_{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(_flatten(value, name))
        else:
            flat[name.upper()] = value
    return flat


# Default settings - will be replaced by load_config() during CLI startup
SETTINGS = Settings()
