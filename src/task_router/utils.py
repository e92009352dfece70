"""
Shared plumbing for the routing engine.

- Typed configuration from environment variables and ``.env``
- Loguru JSON logging setup
- ``Timer`` for per-operation latency
- Masking of request content before it reaches the logs
- UTC clock helpers
"""

import os
import re
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from loguru import logger


class ConfigurationError(Exception):
    """Configuration is present but unusable."""
    pass


def setup_logging(level: Optional[str] = None) -> None:
    """Replace loguru's default sink with a serialized JSON sink on stdout."""
    logger.remove()
    logger.add(
        sys.stdout,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
        level=level or os.getenv("LOG_LEVEL", "INFO"),
        serialize=True
    )
    logger.debug("Routing engine logging configured")


# Optional environment variables with defaults, grouped by the type they are coerced to
_INT_VARS = {
    "MAX_ALTERNATIVES": 3,
    "ESCALATION_POLL_SECONDS": 5,
    "METRICS_ROLLUP_SECONDS": 60,
    "NOTIFY_MAX_RETRIES": 3,
    "DEFAULT_CAPACITY": 10,
}

_FLOAT_VARS = {
    "CONFIDENCE_WEIGHT_RULE_MATCH": 0.40,
    "CONFIDENCE_WEIGHT_SKILL_MATCH": 0.30,
    "CONFIDENCE_WEIGHT_AVAILABILITY": 0.25,
    "CONFIDENCE_WEIGHT_HISTORICAL": 0.05,
    "LOW_CONFIDENCE_THRESHOLD": 0.6,
    "REQUEST_TIMEOUT_SECONDS": 4.0,
}

_STR_VARS = {
    "ROUTING_DEFAULT_QUEUE": "general",
    "CLASSIFIER_URL": None,
    "WORKLOAD_SERVICE_URL": None,
    "NOTIFIER_URL": None,
    "DIRECTORY_PATH": None,
    "LOG_LEVEL": "INFO",
}


def default_config() -> Dict[str, Any]:
    """Configuration dictionary with every default applied and no environment lookups."""
    config: Dict[str, Any] = {}
    config.update(_INT_VARS)
    config.update(_FLOAT_VARS)
    config.update(_STR_VARS)
    return config


def _coerce(var: str, raw: Optional[str], default, cast):
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"Ignoring unparsable {var}={raw!r}, keeping {default}")
        return default


def load_and_validate_env() -> Dict[str, Any]:
    """
    Read routing configuration from the environment (and ``.env`` if present).

    Every variable is optional; numeric values that fail to parse keep
    their defaults.

    Returns:
        Dict[str, Any]: Variable name to typed value

    Raises:
        ConfigurationError: If the confidence weights are negative or all zero
    """
    load_dotenv()

    config: Dict[str, Any] = {}
    for var, default in _INT_VARS.items():
        config[var] = _coerce(var, os.getenv(var), default, int)
    for var, default in _FLOAT_VARS.items():
        config[var] = _coerce(var, os.getenv(var), default, float)
    for var, default in _STR_VARS.items():
        config[var] = os.getenv(var, default) or default

    weights = [
        config["CONFIDENCE_WEIGHT_RULE_MATCH"],
        config["CONFIDENCE_WEIGHT_SKILL_MATCH"],
        config["CONFIDENCE_WEIGHT_AVAILABILITY"],
        config["CONFIDENCE_WEIGHT_HISTORICAL"],
    ]
    if any(w < 0 for w in weights) or sum(weights) <= 0:
        raise ConfigurationError(f"Confidence weights must be non-negative and not all zero: {weights}")

    logger.info("Routing configuration loaded", default_queue=config["ROUTING_DEFAULT_QUEUE"])
    return config


_MASKS = [
    (re.compile(r'sk-[a-zA-Z0-9]+'), '[REDACTED]'),
    (re.compile(r'Bearer\s+[a-zA-Z0-9._-]+', re.IGNORECASE), '[REDACTED]'),
    (re.compile(r'[\w.+-]+@[\w-]+\.[\w.-]+'), '[EMAIL]'),
    (re.compile(r'\b[A-Za-z0-9]{20,}\b'), '[REDACTED]'),
]


def sanitize_for_logging(text: Optional[str], max_length: int = 200) -> str:
    """
    Shorten request content for logs, masking tokens and email addresses.

    Args:
        text: Raw content, subject or sender
        max_length: Characters kept before truncation

    Returns:
        str: Single-line masked preview
    """
    if not text:
        return ""

    preview = " ".join(text.split())
    for pattern, replacement in _MASKS:
        preview = pattern.sub(replacement, preview)

    if len(preview) > max_length:
        preview = preview[:max_length] + "..."
    return preview


class Timer:
    """Times a block with a monotonic clock and logs the outcome at debug level."""

    def __init__(self, operation: str = "operation"):
        self.operation = operation
        self._started: Optional[float] = None
        self._stopped: Optional[float] = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._stopped = time.perf_counter()
        if exc_type is None:
            logger.debug(f"{self.operation} finished", duration_ms=round(self.duration_ms, 3))
        else:
            logger.error(f"{self.operation} failed", duration_ms=round(self.duration_ms, 3), error=str(exc_val))

    @property
    def duration_ms(self) -> float:
        """Elapsed milliseconds; still running timers report time so far."""
        if self._started is None:
            return 0.0
        end = self._stopped if self._stopped is not None else time.perf_counter()
        return (end - self._started) * 1000


def get_utc_datetime() -> datetime:
    """Timezone-aware now in UTC."""
    return datetime.now(timezone.utc)


def get_current_timestamp() -> str:
    """ISO-8601 UTC timestamp string."""
    return get_utc_datetime().isoformat()


_config: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    """Process-wide configuration, loaded on first use."""
    global _config
    if _config is None:
        _config = load_and_validate_env()
    return _config


def initialize_app():
    """
    Configure logging and load configuration. Called once at startup.
    """
    setup_logging()
    config = get_config()

    logger.info(
        "Routing engine initialised",
        default_queue=config["ROUTING_DEFAULT_QUEUE"],
        confidence_weights={
            "rule_match": config["CONFIDENCE_WEIGHT_RULE_MATCH"],
            "skill_match": config["CONFIDENCE_WEIGHT_SKILL_MATCH"],
            "availability": config["CONFIDENCE_WEIGHT_AVAILABILITY"],
            "historical": config["CONFIDENCE_WEIGHT_HISTORICAL"]
        },
        collaborators={
            "classifier": config["CLASSIFIER_URL"] or "local",
            "workload": config["WORKLOAD_SERVICE_URL"] or "static",
            "notifier": config["NOTIFIER_URL"] or "log"
        }
    )
