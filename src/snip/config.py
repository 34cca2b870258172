"""
Configuration management for the Snip update subsystem.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/snip/config.yml or --config path)
3. Environment variables (SNIP_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

Paths left empty in the configuration are derived from ``app.root`` so that a
single setting relocates the whole installation.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/snip/config.yml")

# =============================================================================
# Application Configuration
# =============================================================================


class AppSection(BaseModel):
    """Application tree settings.

    Attributes:
        root: Application root directory (the tree that updates overwrite).
        version: Version reported when no app_version setting is stored.
        min_python: Minimum interpreter version required to run an update.
        required_files: Files that must exist after an install.
    """

    root: str = Field(
        default="/var/www/snip",
        description="Application root directory",
    )
    version: str = Field(
        default="1.0.0",
        description="Fallback version when app_settings has no app_version",
    )
    min_python: str = Field(
        default="3.11.0",
        description="Minimum Python version required for updates",
    )
    required_files: list[str] = Field(
        default_factory=lambda: [
            "api/admin.php",
            "api/config.php",
            "api/UrlShortener.php",
            "index.html",
        ],
        description="Files that must exist after an update is installed",
    )


class DatabaseConfig(BaseModel):
    """Database settings.

    Attributes:
        path: SQLite database file. Empty means <root>/storage/snip.db.
        dump_command: Native dump tool executable.
        dump_timeout_seconds: Timeout for the dump tool process.
    """

    path: str = Field(
        default="",
        description="SQLite database file path",
    )
    dump_command: str = Field(
        default="sqlite3",
        description="Executable used for native database dumps",
    )
    dump_timeout_seconds: int = Field(
        default=300,
        ge=1,
        description="Timeout for the native dump tool in seconds",
    )


class ReleasesConfig(BaseModel):
    """Release registry settings.

    Attributes:
        owner: Repository owner on the registry.
        repo: Repository name on the registry.
        api_base: Base URL of the registry API.
        download_base: Base URL for release archive downloads.
        timeout_seconds: Timeout for every remote call.
        cache_ttl_seconds: Lifetime of the cached latest-release payload.
        user_agent: User-Agent header sent to the registry.
    """

    owner: str = Field(
        default="snip-app",
        description="Release repository owner",
    )
    repo: str = Field(
        default="snip",
        description="Release repository name",
    )
    api_base: str = Field(
        default="https://api.github.com",
        description="Release registry API base URL",
    )
    download_base: str = Field(
        default="https://github.com",
        description="Release archive download base URL",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for release registry requests in seconds",
    )
    cache_ttl_seconds: int = Field(
        default=3600,
        ge=0,
        description="How long the latest release is cached",
    )
    user_agent: str = Field(
        default="Snip-URL-Shortener/1.0",
        description="User-Agent header for registry requests",
    )


class BackupConfig(BaseModel):
    """Backup settings.

    Attributes:
        directory: Backup root. Empty means <root>/backup.
        retention_count: Number of newest backups to keep.
        max_age_days: Backups older than this are pruned.
        exclude_dirs: Directory names never archived.
    """

    directory: str = Field(
        default="",
        description="Backup root directory",
    )
    retention_count: int = Field(
        default=10,
        ge=1,
        description="Number of newest backups kept by pruning",
    )
    max_age_days: int = Field(
        default=90,
        ge=1,
        description="Maximum backup age in days",
    )
    exclude_dirs: list[str] = Field(
        default_factory=lambda: ["backup", "storage", ".git", "node_modules"],
        description="Directory names excluded from the file archive",
    )


class MaintenanceConfig(BaseModel):
    """Maintenance mode settings.

    Attributes:
        timeout_seconds: Default time-to-live of the maintenance flag.
        flag_file: Flag file. Empty means <root>/.maintenance.
    """

    timeout_seconds: int = Field(
        default=600,
        ge=1,
        description="Default maintenance flag TTL in seconds",
    )
    flag_file: str = Field(
        default="",
        description="Maintenance flag file path",
    )


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        update_log_path: Append-only update log. Empty means
            <root>/storage/logs/updates.log.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warning, error",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    update_log_path: str = Field(
        default="",
        description="Append-only update log file path",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        app: Application tree settings.
        database: Database settings.
        releases: Release registry settings.
        backup: Backup settings.
        maintenance: Maintenance mode settings.
        logging: Logging configuration.
    """

    app: AppSection = Field(default_factory=AppSection)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    releases: ReleasesConfig = Field(default_factory=ReleasesConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def app_root(self) -> Path:
        """Application root directory."""
        return Path(self.app.root)

    @property
    def database_path(self) -> Path:
        """SQLite database file."""
        if self.database.path:
            return Path(self.database.path)
        return self.app_root / "storage" / "snip.db"

    @property
    def backup_dir(self) -> Path:
        """Backup root directory."""
        if self.backup.directory:
            return Path(self.backup.directory)
        return self.app_root / "backup"

    @property
    def maintenance_flag_file(self) -> Path:
        """Maintenance flag file."""
        if self.maintenance.flag_file:
            return Path(self.maintenance.flag_file)
        return self.app_root / ".maintenance"

    @property
    def update_lock_file(self) -> Path:
        """Sentinel file marking an update in progress."""
        return self.app_root / ".update-in-progress"

    @property
    def version_cache_file(self) -> Path:
        """Cache file for the latest release payload."""
        return self.app_root / "storage" / "cache" / "version-check.json"

    @property
    def scratch_dir(self) -> Path:
        """Directory for downloaded archives and extraction."""
        return self.app_root / "storage"

    @property
    def update_log_path(self) -> Path:
        """Append-only update log."""
        if self.logging.update_log_path:
            return Path(self.logging.update_log_path)
        return self.app_root / "storage" / "logs" / "updates.log"


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = "SNIP_") -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, e.g.
    ``SNIP_BACKUP__RETENTION_COUNT=5``.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the argument parser shared by the scheduler entry point."""
    parser = argparse.ArgumentParser(
        prog="snip-scheduler",
        description="Snip update scheduler",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "action",
        nargs="?",
        default="check",
        choices=["check", "update", "backup"],
        help="check for updates, install the latest update, or create a backup",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--app-root",
        type=str,
        help="Override application root directory",
    )
    return parser


def _cli_overrides(parsed: argparse.Namespace) -> dict[str, Any]:
    """Convert parsed CLI flags into a config override dictionary."""
    result: dict[str, Any] = {}

    if getattr(parsed, "config", None):
        result["_config_path"] = parsed.config

    if getattr(parsed, "log_level", None):
        result["logging"] = {"level": parsed.log_level}

    if getattr(parsed, "app_root", None):
        result["app"] = {"root": parsed.app_root}

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = "SNIP_",
    cli_args: argparse.Namespace | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config flag or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Parsed command-line arguments, if any.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.
    """
    config_dict: dict[str, Any] = {}
    cli_config = _cli_overrides(cli_args) if cli_args is not None else {}

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
