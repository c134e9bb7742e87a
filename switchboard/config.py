"""Configuration management for switchboard.

Loads YAML settings (settings.yaml) and environment variables (.env)
into a typed Config object. Property getters provide safe access with
sensible defaults for the transport, the command store, permissions,
dispatch and logging.

Key classes:
    Config: Central configuration manager.

Key functions:
    get_config: Accessor for the process-wide Config instance. Only the
        entry point calls it; components receive the Config explicitly.
"""

import os
import re
from pathlib import Path
from typing import List, Optional

import structlog
import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError

logger = structlog.get_logger("switchboard.bot")

DEFAULT_PREFIX = ">"

_UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
    re.IGNORECASE,
)


class Config:
    """Central configuration manager for switchboard.

    Loads settings.yaml and .env from the config directory and exposes
    typed property accessors. Read-only after __init__.

    Args:
        config_dir: Path to the config directory. Defaults to
            ``<repo_root>/config/``.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        if config_dir is None:
            config_dir = Path(__file__).parent.parent / "config"
        self.config_dir = Path(config_dir)

        env_file = self.config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        self.settings = self._load_yaml("settings.yaml")

    def _load_yaml(self, filename: str) -> dict:
        """Load a YAML configuration file."""
        filepath = self.config_dir / filename
        if not filepath.exists():
            return {}
        try:
            with open(filepath, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Cannot parse {filename}", setting_name=filename, error=str(e)
            ) from e
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"{filename} must contain a mapping", setting_name=filename
            )
        return data

    def validate(self):
        """Validate critical settings at startup.

        Logs warnings/errors but does not raise -- the bot starts in
        degraded mode (e.g. nobody can run admin commands).
        """
        prefix = self.command_prefix
        if not prefix or any(ch.isspace() for ch in prefix):
            logger.error("config_invalid_value", key="command_prefix", value=prefix)

        if not self.superuser and not self.admins:
            logger.warning("no_admins_configured", msg="Admin commands will be refused")

        for entry in [self.superuser, *self.admins]:
            if not entry:
                continue
            if not isinstance(entry, str):
                logger.error("invalid_admin_entry", entry="..." + str(entry)[-4:])
            elif _UUID_PATTERN.match(entry):
                pass
            elif not entry.startswith("+") or not entry[1:].isdigit():
                logger.error("invalid_phone_number_format", number="..." + entry[-4:])

        timeout = self.settings.get("handler_timeout")
        if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
            logger.error("config_invalid_value", key="handler_timeout", value=timeout)

    # --- Commands ---

    @property
    def command_prefix(self) -> str:
        """Token that must start a message for it to be a command (default ``>``)."""
        return os.environ.get("SWITCHBOARD_PREFIX") or self.settings.get(
            "command_prefix", DEFAULT_PREFIX
        )

    @property
    def database_path(self) -> Path:
        """SQLite file holding dynamic commands."""
        configured = os.environ.get("SWITCHBOARD_DB") or self.settings.get("database_path")
        if configured:
            return Path(configured).expanduser()
        return Path(__file__).parent.parent / "data" / "switchboard.db"

    @property
    def handler_timeout(self) -> float:
        """Upper bound in seconds for a single command handler run (default 60)."""
        value = self.settings.get("handler_timeout", 60)
        if not isinstance(value, (int, float)) or value <= 0:
            return 60.0
        return float(value)

    # --- Permissions ---

    @property
    def superuser(self) -> Optional[str]:
        """Identity that is always an admin. Env var SWITCHBOARD_SUPERUSER wins."""
        return os.environ.get("SWITCHBOARD_SUPERUSER") or self.settings.get("superuser")

    @property
    def admins(self) -> List[str]:
        """Additional admin identities."""
        admins = self.settings.get("admins", [])
        if not isinstance(admins, list):
            logger.error("admins_invalid_type", type=type(admins).__name__)
            return []
        return admins

    @property
    def allowed_senders(self) -> Optional[List[str]]:
        """Optional allow-list of senders. None means everyone may talk to the bot."""
        allowed = self.settings.get("allowed_senders")
        if allowed is None:
            return None
        if not isinstance(allowed, list):
            logger.error("allowed_senders_invalid_type", type=type(allowed).__name__)
            return []
        return allowed

    # --- Transport ---

    @property
    def signal_api_url(self) -> str:
        """Signal API URL. Env var SIGNAL_API_URL takes precedence."""
        return os.environ.get("SIGNAL_API_URL") or self.settings.get(
            "signal_api_url", "http://127.0.0.1:8080"
        )

    @property
    def signal_account(self) -> Optional[str]:
        """Account to run as. When unset the first registered account is used."""
        return os.environ.get("SIGNAL_ACCOUNT") or self.settings.get("signal_account")

    # --- Logging ---

    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        configured = self.settings.get("log_dir")
        if configured:
            return Path(configured).expanduser()
        return Path(__file__).parent.parent / "logs"

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO). Controls console and combined file."""
        log_config = self.settings.get("logging", {})
        return log_config.get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Per-subsystem log level overrides. E.g. {"store": "DEBUG"}."""
        log_config = self.settings.get("logging", {})
        return log_config.get("subsystem_levels", {})

    @property
    def logging_max_file_size_mb(self) -> int:
        """Max size per log file in MB before rotation (default 10)."""
        log_config = self.settings.get("logging", {})
        return log_config.get("max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        """Number of rotated log files to keep (default 5)."""
        log_config = self.settings.get("logging", {})
        return log_config.get("backup_count", 5)


_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the process-wide config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
