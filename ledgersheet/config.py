"""
Configuration management for ledgersheet.

Loads and validates config.yaml from the ledgersheet home directory
($LEDGERSHEET_HOME, default ~/.config/ledgersheet).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from ledgersheet.errors import ConfigError

ENVIRONMENTS = ("sandbox", "production")
LOG_FORMATS = ("structured", "pretty")


@dataclass
class RetryConfig:
    """Backoff settings for the API client."""
    max_attempts: int = 6
    base_delay_ms: int = 250
    max_delay_ms: int = 30000
    jitter_ms: int = 250

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "RetryConfig":
        data = data or {}
        return cls(
            max_attempts=int(data.get("max_attempts", 6)),
            base_delay_ms=int(data.get("base_delay_ms", 250)),
            max_delay_ms=int(data.get("max_delay_ms", 30000)),
            jitter_ms=int(data.get("jitter_ms", 250)),
        )


@dataclass
class LedgersheetConfig:
    """Complete ledgersheet configuration."""
    store_path: str
    environment: str = "sandbox"
    minor_version: str = "75"
    spreadsheet_id: str = ""
    service_account_path: str = ""
    env_file: Optional[str] = None
    log_level: str = "INFO"
    log_format: str = "structured"
    log_file: Optional[str] = None
    retry: RetryConfig = field(default_factory=RetryConfig)
    query_length_threshold: int = 2000
    page_size: int = 1000
    cell_soft_limit: int = 1_000_000
    cell_hard_limit: int = 5_000_000
    lock_timeout_seconds: float = 10.0
    lock_lease_seconds: float = 360.0
    trigger_limit: int = 20
    job_ttl_seconds: int = 21600

    def validate(self) -> None:
        """Validate configuration values."""
        if not self.store_path:
            raise ConfigError("store_path is required")
        if self.environment not in ENVIRONMENTS:
            raise ConfigError(
                f"environment must be one of {ENVIRONMENTS}, got '{self.environment}'"
            )
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {LOG_FORMATS}")
        if self.retry.max_attempts < 1:
            raise ConfigError("retry.max_attempts must be at least 1")
        if not 1 <= self.page_size <= 1000:
            raise ConfigError("page_size must be between 1 and 1000")
        if self.cell_soft_limit > self.cell_hard_limit:
            raise ConfigError("cell_soft_limit cannot exceed cell_hard_limit")
        if self.trigger_limit < 1:
            raise ConfigError("trigger_limit must be at least 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any], home: Optional[Path] = None) -> "LedgersheetConfig":
        home = home or get_ledgersheet_home()
        store_path = data.get("store_path") or str(home / "store.json")
        return cls(
            store_path=str(Path(store_path).expanduser()),
            environment=str(data.get("environment", "sandbox")).strip().lower(),
            minor_version=str(data.get("minor_version", "75")).strip(),
            spreadsheet_id=data.get("spreadsheet_id", "") or "",
            service_account_path=str(Path(data["service_account_path"]).expanduser())
            if data.get("service_account_path") else "",
            env_file=data.get("env_file"),
            log_level=str(data.get("log_level", "INFO")).upper(),
            log_format=data.get("log_format", "structured"),
            log_file=data.get("log_file"),
            retry=RetryConfig.from_dict(data.get("retry")),
            query_length_threshold=int(data.get("query_length_threshold", 2000)),
            page_size=int(data.get("page_size", 1000)),
            cell_soft_limit=int(data.get("cell_soft_limit", 1_000_000)),
            cell_hard_limit=int(data.get("cell_hard_limit", 5_000_000)),
            lock_timeout_seconds=float(data.get("lock_timeout_seconds", 10.0)),
            lock_lease_seconds=float(data.get("lock_lease_seconds", 360.0)),
            trigger_limit=int(data.get("trigger_limit", 20)),
            job_ttl_seconds=int(data.get("job_ttl_seconds", 21600)),
        )


def get_ledgersheet_home() -> Path:
    """Return the ledgersheet home directory."""
    env_home = os.environ.get("LEDGERSHEET_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path("~/.config/ledgersheet").expanduser()


def load_config(config_path: Optional[Path] = None) -> LedgersheetConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $LEDGERSHEET_HOME/config.yaml

    Returns:
        LedgersheetConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If config is invalid
    """
    home = get_ledgersheet_home()
    if config_path is None:
        config_path = home / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"ledgersheet config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    try:
        config = LedgersheetConfig.from_dict(data, home=home)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)

    config.validate()
    return config
