"""Configuration management for the Nexus lifecycle engine.

Loads configuration from environment variables and .env file.
Provides validation and sensible defaults.

Usage:
    from nexus.core.config import get_config, validate_config

    config = get_config()
    issues = validate_config(config)
    if issues:
        for issue in issues:
            print(f"Config issue: {issue}")
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional

from nexus.core.exceptions import ConfigurationError


@dataclass
class Config:
    """Application configuration.

    Attributes:
        db_path: Path to SQLite database file
        log_path: Directory for log files
        decay_interval_hours: How often the inactivity decay scan runs
        decay_window_days: Trailing window with no activity before decay applies
        workflow_tick_seconds: How often waiting workflow runs are checked
        sequence_tick_seconds: How often due sequence enrollments are checked
        send_max_retries: Retries for a transient step failure before failing the run
        retry_base_seconds: First retry delay (doubles on each retry)
        retry_max_seconds: Upper bound for a retry delay
        running_lease_seconds: A running instance not saved for this long is rescheduled
        action_poll_seconds: Delay between checks of a running external action
        http_timeout_seconds: Timeout for every outbound HTTP request
        send_webhook_url: Relay endpoint that delivers outbound messages
        send_webhook_token: Bearer token for the relay endpoint
        apify_token: Apify API token for external actions
        debug: Enable debug mode
        dry_run: Log outbound messages instead of delivering them
    """

    db_path: Path = field(default_factory=lambda: Path.home() / ".nexus" / "lifecycle.db")
    log_path: Path = field(default_factory=lambda: Path.home() / ".nexus" / "logs")

    # Schedules
    decay_interval_hours: int = 24
    decay_window_days: int = 7
    workflow_tick_seconds: int = 60
    sequence_tick_seconds: int = 60

    # Retry policy
    send_max_retries: int = 3
    retry_base_seconds: int = 60
    retry_max_seconds: int = 3600
    running_lease_seconds: int = 900
    action_poll_seconds: int = 60
    http_timeout_seconds: int = 30

    # Outbound message relay
    send_webhook_url: Optional[str] = None
    send_webhook_token: Optional[str] = None

    # External actions
    apify_token: Optional[str] = None

    # Feature flags
    debug: bool = False
    dry_run: bool = False

    @property
    def decay_interval(self) -> timedelta:
        return timedelta(hours=self.decay_interval_hours)

    @property
    def decay_window(self) -> timedelta:
        return timedelta(days=self.decay_window_days)


def load_env_file(path: Path) -> dict[str, str]:
    """Parse .env file.

    Handles:
        - KEY=VALUE format
        - Comments (lines starting with #)
        - Blank lines
        - Quoted values

    Args:
        path: Path to .env file

    Returns:
        Dictionary of environment variables
    """
    env_vars: dict[str, str] = {}

    if not path.exists():
        return env_vars

    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()

            # Skip blank lines and comments
            if not line or line.startswith("#"):
                continue

            if "=" in line:
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()

                if value and value[0] in ('"', "'") and value[-1] == value[0]:
                    value = value[1:-1]

                if key:
                    env_vars[key] = value

    return env_vars


def _get_path(key: str, default: Path, env_vars: dict[str, str]) -> Path:
    """Get path from environment, expanding ~ and resolving."""
    value = os.environ.get(key) or env_vars.get(key)
    if value:
        return Path(value).expanduser().resolve()
    return default


def _get_str(key: str, env_vars: dict[str, str]) -> Optional[str]:
    """Get string from environment."""
    return os.environ.get(key) or env_vars.get(key) or None


def _get_bool(key: str, default: bool, env_vars: dict[str, str]) -> bool:
    """Get boolean from environment."""
    value = os.environ.get(key) or env_vars.get(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _get_int(key: str, default: int, env_vars: dict[str, str]) -> int:
    """Get positive integer from environment.

    Raises:
        ConfigurationError: If the value is not a positive integer
    """
    value = os.environ.get(key) or env_vars.get(key)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}") from e
    if parsed <= 0:
        raise ConfigurationError(f"{key} must be positive, got {parsed}")
    return parsed


DEFAULT_DB_PATH = Path.home() / ".nexus" / "lifecycle.db"
DEFAULT_LOG_PATH = Path.home() / ".nexus" / "logs"


def load_config(env_file: Optional[Path] = None) -> Config:
    """Load configuration from environment and .env file.

    Priority:
        1. Environment variables (highest)
        2. .env file
        3. Default values (lowest)

    Args:
        env_file: Path to .env file. Defaults to .env in current directory.

    Returns:
        Loaded configuration

    Raises:
        ConfigurationError: If a numeric setting is malformed
    """
    if env_file is None:
        env_file = Path.cwd() / ".env"

    env_vars = load_env_file(env_file)

    return Config(
        db_path=_get_path("NEXUS_DB_PATH", DEFAULT_DB_PATH, env_vars),
        log_path=_get_path("NEXUS_LOG_PATH", DEFAULT_LOG_PATH, env_vars),
        decay_interval_hours=_get_int("NEXUS_DECAY_INTERVAL_HOURS", 24, env_vars),
        decay_window_days=_get_int("NEXUS_DECAY_WINDOW_DAYS", 7, env_vars),
        workflow_tick_seconds=_get_int("NEXUS_WORKFLOW_TICK_SECONDS", 60, env_vars),
        sequence_tick_seconds=_get_int("NEXUS_SEQUENCE_TICK_SECONDS", 60, env_vars),
        send_max_retries=_get_int("NEXUS_SEND_MAX_RETRIES", 3, env_vars),
        retry_base_seconds=_get_int("NEXUS_RETRY_BASE_SECONDS", 60, env_vars),
        retry_max_seconds=_get_int("NEXUS_RETRY_MAX_SECONDS", 3600, env_vars),
        running_lease_seconds=_get_int("NEXUS_RUNNING_LEASE_SECONDS", 900, env_vars),
        action_poll_seconds=_get_int("NEXUS_ACTION_POLL_SECONDS", 60, env_vars),
        http_timeout_seconds=_get_int("NEXUS_HTTP_TIMEOUT_SECONDS", 30, env_vars),
        send_webhook_url=_get_str("NEXUS_SEND_WEBHOOK_URL", env_vars),
        send_webhook_token=_get_str("NEXUS_SEND_WEBHOOK_TOKEN", env_vars),
        apify_token=_get_str("APIFY_TOKEN", env_vars),
        debug=_get_bool("NEXUS_DEBUG", False, env_vars),
        dry_run=_get_bool("NEXUS_DRY_RUN", False, env_vars),
    )


def validate_config(config: Config) -> list[str]:
    """Validate configuration.

    Checks:
        - Required paths exist or can be created
        - Paths are writable
        - Retry bounds are consistent
        - Credential combinations are complete

    Args:
        config: Configuration to validate

    Returns:
        List of issues (empty if valid)
    """
    issues: list[str] = []

    db_dir = config.db_path.parent
    try:
        db_dir.mkdir(parents=True, exist_ok=True)
        if not os.access(db_dir, os.W_OK):
            issues.append(f"Database directory not writable: {db_dir}")
    except OSError as e:
        issues.append(f"Cannot create database directory {db_dir}: {e}")

    try:
        config.log_path.mkdir(parents=True, exist_ok=True)
        if not os.access(config.log_path, os.W_OK):
            issues.append(f"Log directory not writable: {config.log_path}")
    except OSError as e:
        issues.append(f"Cannot create log directory {config.log_path}: {e}")

    if config.retry_base_seconds > config.retry_max_seconds:
        issues.append(
            f"NEXUS_RETRY_BASE_SECONDS ({config.retry_base_seconds}) exceeds "
            f"NEXUS_RETRY_MAX_SECONDS ({config.retry_max_seconds})"
        )

    # Webhook relay: token without URL is a misconfiguration
    if config.send_webhook_token and not config.send_webhook_url:
        issues.append(
            "CRITICAL: NEXUS_SEND_WEBHOOK_TOKEN is set but NEXUS_SEND_WEBHOOK_URL is missing. "
            "Outbound messages cannot be delivered."
        )

    if not config.send_webhook_url and not config.dry_run:
        issues.append(
            "No outbound relay configured (NEXUS_SEND_WEBHOOK_URL). "
            "Message steps will fail until one is set or NEXUS_DRY_RUN is enabled."
        )

    return issues


# Singleton config
_config: Optional[Config] = None


def get_config() -> Config:
    """Return cached configuration singleton.

    Loads configuration on first call, returns cached version thereafter.

    Returns:
        Application configuration
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Reset cached configuration.

    Used primarily for testing.
    """
    global _config
    _config = None
