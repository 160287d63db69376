"""Configuration management for the avatar world scheduler."""

import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, Field


class DatabaseConfig(BaseModel):
    """Persistence settings."""

    path: str = Field(
        default="~/.avatarworld/avatarworld.db", description="Path to SQLite database file"
    )


class ThreadConfig(BaseModel):
    """Conversation thread tracker settings."""

    ttl_ms: int = Field(default=180_000, ge=1, description="Default thread lifetime")
    max_turns: int = Field(default=6, ge=1)
    extend_on_activity: bool = True
    cleanup_interval_ms: int = Field(
        default=60_000, ge=0, description="Prune interval; 0 disables the prune task"
    )


class AssignmentConfig(BaseModel):
    """Planner assignment queue settings."""

    dedupe_ttl_ms: int = Field(default=10_000, ge=0)
    worker_id: str = "planner"


class ThreadStateConfig(BaseModel):
    """Channel snapshot aggregation settings."""

    staleness_ms: int = Field(default=60_000, ge=0)
    message_window: int = Field(default=100, ge=1)
    recent_window: int = Field(default=10, ge=1)
    lookback_ms: int = Field(default=15 * 60_000, ge=0)
    limit: int = Field(default=20, ge=1)


class VideoJobConfig(BaseModel):
    """Background video job runner settings."""

    poll_interval_ms: int = Field(default=15_000, ge=100)
    max_attempts: int = Field(default=3, ge=1)
    max_concurrent: int = Field(default=1, ge=1)
    backoff_base_ms: int = Field(default=60_000, ge=0)
    max_backoff_ms: int = Field(default=15 * 60_000, ge=0)
    rate_limit_defer_ms: int = Field(default=60_000, ge=0)
    stale_running_ms: int = Field(
        default=30 * 60_000, ge=0, description="Reclaim running jobs with an older heartbeat; 0 disables"
    )
    rate_limit_per_hour: int = Field(default=10, ge=1)
    clear_on_start: bool = True
    delete_on_purge: bool = False
    notify_progress: bool = True


class ApiConfig(BaseModel):
    """Read-only status API settings."""

    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)


class Config(BaseModel):
    """Root configuration model."""

    database: DatabaseConfig = DatabaseConfig()
    threads: ThreadConfig = ThreadConfig()
    assignments: AssignmentConfig = AssignmentConfig()
    thread_state: ThreadStateConfig = ThreadStateConfig()
    video_jobs: VideoJobConfig = VideoJobConfig()
    api: ApiConfig = ApiConfig()


# Environment key -> (section, field)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "AVATARWORLD_DB_PATH": ("database", "path"),
    "CONVERSATION_THREAD_TTL": ("threads", "ttl_ms"),
    "CONVERSATION_THREAD_MAX_TURNS": ("threads", "max_turns"),
    "CONVERSATION_THREAD_EXTEND_ON_ACTIVITY": ("threads", "extend_on_activity"),
    "CONVERSATION_THREAD_CLEANUP_INTERVAL": ("threads", "cleanup_interval_ms"),
    "VIDEO_JOBS_POLL_MS": ("video_jobs", "poll_interval_ms"),
    "VIDEO_JOBS_MAX_ATTEMPTS": ("video_jobs", "max_attempts"),
    "VIDEO_JOBS_MAX_CONCURRENCY": ("video_jobs", "max_concurrent"),
    "VIDEO_JOBS_CLEAR_ON_START": ("video_jobs", "clear_on_start"),
    "VIDEO_JOBS_DELETE_ON_PURGE": ("video_jobs", "delete_on_purge"),
    "VIDEO_JOBS_NOTIFY_PROGRESS": ("video_jobs", "notify_progress"),
}


def apply_env_overrides(
    raw_config: dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> dict[str, Any]:
    """Overlay known environment keys onto a raw config dict.

    Values stay strings; pydantic coerces them ("true", "1", "yes" for bools).
    """
    environ = os.environ if environ is None else environ
    merged = {section: dict(values or {}) for section, values in raw_config.items()}
    for env_key, (section, field) in ENV_OVERRIDES.items():
        value = environ.get(env_key)
        if value is None or value == "":
            continue
        merged.setdefault(section, {})[field] = value
    return merged


def load_config(
    config_path: str | Path = "config.yaml", environ: Optional[Mapping[str, str]] = None
) -> Config:
    """Load and validate configuration from YAML file.

    Supports ${VAR_NAME} syntax for environment variable expansion, then
    applies the legacy environment overrides listed in ENV_OVERRIDES.

    Args:
        config_path: Path to the configuration file.
        environ: Environment mapping; defaults to os.environ.

    Returns:
        Validated Config object.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValidationError: If config is invalid.
        ValueError: If referenced environment variable is not set.
    """
    environ = os.environ if environ is None else environ
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}\n"
            "Copy config.example.yaml to config.yaml and adjust it."
        )

    with path.open() as f:
        raw_config = yaml.safe_load(f) or {}

    # Expand environment variables in the format ${VAR_NAME}
    def expand_env_vars(obj):
        if isinstance(obj, dict):
            return {k: expand_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [expand_env_vars(item) for item in obj]
        elif isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
            env_var = obj[2:-1]
            value = environ.get(env_var)
            if value is None:
                raise ValueError(f"Environment variable '{env_var}' is not set")
            return value
        return obj

    raw_config = expand_env_vars(raw_config)
    raw_config = apply_env_overrides(raw_config, environ)

    return Config(**raw_config)
