"""Logging configuration for switchboard.

Routes each subsystem to its own log file, scrubs tokens and phone
numbers, and wires structlog on top of the stdlib logging hierarchy.

Subsystem hierarchy (stdlib dotted names, structlog wraps them):
    root                  → ConsoleHandler (terminal)
      └─ switchboard      → RotatingFileHandler → switchboard.log (combined)
           ├─ switchboard.bot      → RFH → bot.log
           ├─ switchboard.dispatch → RFH → dispatch.log
           ├─ switchboard.registry → RFH → registry.log
           ├─ switchboard.store    → RFH → store.log
           └─ switchboard.admin    → RFH → admin.log
"""

import logging
import logging.handlers
import re
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

SUBSYSTEMS = ("bot", "dispatch", "registry", "store", "admin")

LOGGER_PREFIX = "switchboard"

# ---------------------------------------------------------------------------
# Secret sanitization
# ---------------------------------------------------------------------------

_SECRET_PATTERNS = [
    # Bearer token values in headers
    re.compile(r"Bearer\s+[a-zA-Z0-9_./-]{20,}"),
    # token=... / password=... pairs in URLs
    re.compile(r"(?i)(?<=token=)[^&\s]+"),
    re.compile(r"(?i)(?<=password=)[^&\s]+"),
]

# E.164 phone numbers (+1234567890, 7-15 digits)
_PHONE_PATTERN = re.compile(r"\+\d{7,15}")

_REDACTED = "***REDACTED***"


def _scrub_value(value: str) -> str:
    """Scrub secrets and phone numbers from a single string value."""
    for pattern in _SECRET_PATTERNS:
        value = pattern.sub(_REDACTED, value)
    value = _PHONE_PATTERN.sub(lambda m: "..." + m.group(0)[-4:], value)
    return value


def sanitize_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """structlog processor that scrubs tokens and full phone numbers.

    Phone numbers are masked to their last 4 digits ("...1234").
    """
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _scrub_value(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = type(value)(
                _scrub_value(v) if isinstance(v, str) else v
                for v in value
            )
        elif isinstance(value, dict):
            event_dict[key] = {
                k: _scrub_value(v) if isinstance(v, str) else v
                for k, v in value.items()
            }
    return event_dict


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

_DEFAULTS = {
    "log_dir": Path(__file__).parent.parent / "logs",
    "level": "INFO",
    "subsystem_levels": {},
    "max_file_size_mb": 10,
    "backup_count": 5,
}


def _settings_from(config) -> Dict[str, Any]:
    if config is None:
        return dict(_DEFAULTS)
    return {
        "log_dir": config.log_dir,
        "level": config.logging_level,
        "subsystem_levels": config.logging_subsystem_levels or {},
        "max_file_size_mb": config.logging_max_file_size_mb,
        "backup_count": config.logging_backup_count,
    }


def _level(name: Optional[str], default: int) -> int:
    return getattr(logging, name.upper(), default) if name else default


def _attach_file(
    logger_name: str,
    path: Optional[Path],
    level: int,
    settings: Dict[str, Any],
    file_level: Optional[int] = None,
) -> None:
    """Reset a stdlib logger and give it a rotating file (when path is set)."""
    target = logging.getLogger(logger_name)
    target.handlers.clear()
    target.propagate = True
    target.setLevel(level)
    if path is None:
        return
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=settings["max_file_size_mb"] * 1024 * 1024,
        backupCount=settings["backup_count"],
        encoding="utf-8",
    )
    handler.setLevel(level if file_level is None else file_level)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
    ))
    target.addHandler(handler)


def setup_logging(config=None) -> None:
    """Configure structlog with a combined file and one file per subsystem.

    Called twice by the entry point: first with no config (defaults,
    loggers not cached), then with the loaded Config.
    """
    settings = _settings_from(config)
    root_level = _level(settings["level"], logging.INFO)
    log_dir: Optional[Path] = settings["log_dir"]

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(
            f"WARNING: Cannot create log directory {log_dir}: {exc}. "
            "Logging to the console only.",
            file=sys.stderr,
        )
        log_dir = None

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(root_level)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    root.addHandler(console)

    # Parent logger passes everything; its combined file filters at root_level
    _attach_file(
        LOGGER_PREFIX,
        log_dir / f"{LOGGER_PREFIX}.log" if log_dir else None,
        logging.DEBUG,
        settings,
        file_level=root_level,
    )

    for subsystem in SUBSYSTEMS:
        _attach_file(
            f"{LOGGER_PREFIX}.{subsystem}",
            log_dir / f"{subsystem}.log" if log_dir else None,
            _level(settings["subsystem_levels"].get(subsystem), root_level),
            settings,
        )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            sanitize_secrets,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=config is not None,
    )
