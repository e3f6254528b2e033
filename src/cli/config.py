"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./marketsync.yaml (working directory)
3. ~/.marketsync/config.yaml (user home)

Environment variables override YAML: MARKETSYNC_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
Without any config file the defaults below apply.
"""

import logging
import logging.handlers
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class DatabaseConfig(BaseModel):
    """State database location. Empty url falls back to env/data dir."""

    url: str = ""
    echo: bool = False


class ApiConfig(BaseModel):
    """Marketplace API defaults shared by all connections."""

    base_url: str = ""
    timeout_seconds: float = Field(default=30.0, gt=0)


class QueueConfig(BaseModel):
    """Batching and retry policy of the work queues."""

    batch_size: int = Field(default=100, ge=1)
    max_batches_per_run: int = Field(default=10, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    retry_backoff_seconds: float = Field(default=0.0, ge=0)
    stale_claim_seconds: float = Field(default=600.0, gt=0)
    dedup_window_seconds: float = Field(default=0.0, ge=0)
    max_order_pages_per_run: int = Field(default=20, ge=1)


class RetentionConfig(BaseModel):
    """Retention ages used by clean-logs."""

    queue_days: int = Field(default=30, ge=1)
    events_days: int = Field(default=30, ge=1)
    log_files_days: int = Field(default=30, ge=1)


class SchedulerConfig(BaseModel):
    """Intervals of the scheduled operations, in seconds (0 disables)."""

    clean_logs: float = 86400
    catalog_export: float = 86400
    queued_offer_export: float = 300
    queued_shipment_export: float = 300
    order_import: float = 300
    run_immediately: bool = True
    poll_interval: float = Field(default=1.0, gt=0)
    pid_file: str = ""

    def intervals(self) -> dict[str, float]:
        """Operation name -> interval."""
        return {
            "clean-logs": self.clean_logs,
            "catalog-export": self.catalog_export,
            "queued-offer-export": self.queued_offer_export,
            "queued-shipment-export": self.queued_shipment_export,
            "order-import": self.order_import,
        }


class ConcurrencyConfig(BaseModel):
    """Connections processed in parallel within one operation."""

    max_workers: int = Field(default=1, ge=1)


class LoggingConfig(BaseModel):
    """Application logging."""

    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    file: bool = True
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 5

    @field_validator("level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level '{value}'")
        return level


class HostConfig(BaseModel):
    """Host store factory (``package.module:callable``) and its options."""

    factory: str = ""
    options: dict[str, Any] = {}


class MarketSyncConfig(BaseModel):
    """Top-level configuration."""

    database: DatabaseConfig = DatabaseConfig()
    api: ApiConfig = ApiConfig()
    queue: QueueConfig = QueueConfig()
    retention: RetentionConfig = RetentionConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    concurrency: ConcurrencyConfig = ConcurrencyConfig()
    logging: LoggingConfig = LoggingConfig()
    host: HostConfig = HostConfig()


def _find_config_file() -> Path | None:
    candidates = [
        Path.cwd() / "marketsync.yaml",
        Path.cwd() / "marketsync.yml",
        Path.home() / ".marketsync" / "config.yaml",
        Path.home() / ".marketsync" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


# Environment names that are not section overrides
_RESERVED_ENV = frozenset({
    "MARKETSYNC_CREDENTIAL_KEY",
    "MARKETSYNC_CREDENTIAL_KEY_FILE",
    "MARKETSYNC_HOME",
    "MARKETSYNC_DB_PATH",
})


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply MARKETSYNC_<SECTION>_<KEY> env var overrides to config data.

    For example, ``MARKETSYNC_QUEUE_MAX_ATTEMPTS=8`` sets ``queue.max_attempts``
    and ``MARKETSYNC_SCHEDULER_ORDER_IMPORT=60`` sets
    ``scheduler.order_import``.
    """
    prefix = "MARKETSYNC_"
    known_sections = sorted(MarketSyncConfig.model_fields.keys(), key=len, reverse=True)
    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _RESERVED_ENV:
            continue
        suffix = key[len(prefix):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        section_data = data.setdefault(matched_section, {})
        if not isinstance(section_data, dict):
            continue
        # Coerce to int, bool, or keep as string; pydantic handles floats
        try:
            section_data[matched_field] = int(value)
        except ValueError:
            if value.lower() in ("true", "false"):
                section_data[matched_field] = value.lower() == "true"
            else:
                section_data[matched_field] = value
    return data


def load_config(config_path: str | None = None) -> MarketSyncConfig:
    """Load configuration from YAML with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.marketsync/).

    Returns:
        Validated MarketSyncConfig; defaults when no file exists.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
        pydantic.ValidationError: If a value is invalid.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return MarketSyncConfig(**data)


def configure_logging(config: LoggingConfig, log_dir: Path | None = None) -> None:
    """Configure the root logger from config.

    Logs go to stderr; with ``config.file`` set and a log directory given,
    also to a size-rotated ``marketsync.log`` there (rotated files are what
    clean-logs removes).
    """
    root = logging.getLogger()
    root.setLevel(config.level)
    formatter = logging.Formatter(config.format)

    for handler in list(root.handlers):
        if getattr(handler, "_marketsync", False):
            root.removeHandler(handler)
            handler.close()

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    stream._marketsync = True  # type: ignore[attr-defined]
    root.addHandler(stream)

    if config.file and log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / "marketsync.log",
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler._marketsync = True  # type: ignore[attr-defined]
        root.addHandler(file_handler)

    # Keep httpx request lines out of INFO output
    logging.getLogger("httpx").setLevel(logging.WARNING)
