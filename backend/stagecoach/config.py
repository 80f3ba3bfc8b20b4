"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class ServerConfig(BaseModel):
    """HTTP server parameters."""

    host: str = "0.0.0.0"
    port: int = 3000
    allowed_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173"]
    )


class ExecutorConfig(BaseModel):
    """Shell selection and subprocess I/O parameters."""

    posix_shell: str = "/bin/bash"
    windows_shell: str = "cmd.exe"
    encoding: str = "utf-8"
    chunk_size: int = 4096
    keepalive_seconds: float = 30.0  # Ping interval for idle stream subscribers
    finished_executions_kept: int = 100  # Terminal events replayed to late subscribers


class SchedulerConfig(BaseModel):
    """Cron trigger parameters."""

    timezone: str | None = None
    misfire_grace_seconds: int = 60
    coalesce: bool = True


class StorageConfig(BaseModel):
    """File locations relative to the data directory."""

    projects_file: str = "projects.yaml"
    history_file: str = "history/executions.jsonl"
    record_history: bool = True


class Settings(BaseSettings):
    """Main configuration class."""

    # Paths
    data_dir: Path = Path("data")

    # Observability
    logfire_token: str = ""

    # Nested configuration sections
    server: ServerConfig = Field(default_factory=ServerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    model_config = SettingsConfigDict(
        env_prefix="STAGECOACH_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("data_dir", mode="after")
    @classmethod
    def resolve_data_dir(cls, v: Path) -> Path:
        """Resolve data directory to absolute path."""
        return v.resolve()

    @property
    def projects_path(self) -> Path:
        return self.data_dir / self.storage.projects_file

    @property
    def history_path(self) -> Path:
        return self.data_dir / self.storage.history_file

    def load_yaml_config(self) -> None:
        """Overlay data/config.yaml on the current sections.

        Keys absent from the file keep their current (default or env) value.
        """
        config_path = self.data_dir / "config.yaml"
        if not config_path.exists():
            logger.warning(
                f"No config.yaml in {self.data_dir}, using defaults. "
                "Run 'python -m stagecoach init' to create one."
            )
            return

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                overlay = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Cannot parse {config_path}: {e}")
            raise

        if not isinstance(overlay, dict):
            raise ValueError(f"{config_path} must contain a mapping of sections")

        for name, values in overlay.items():
            if name not in CONFIG_SECTIONS:
                logger.warning(f"Ignoring unknown config section '{name}'")
                continue
            setattr(self, name, _merge_section(getattr(self, name), values or {}))

        logger.info(f"Loaded configuration from {config_path}")


CONFIG_SECTIONS = ("server", "executor", "scheduler", "storage")


def _merge_section(section: BaseModel, values: dict) -> BaseModel:
    merged = section.model_dump()
    merged.update(values)
    return type(section).model_validate(merged)


@lru_cache()
def get_settings() -> Settings:
    """Get singleton Settings instance."""
    settings = Settings()
    settings.load_yaml_config()
    return settings
