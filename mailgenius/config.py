"""Settings loader: ``config.ini`` with ``MG_*`` environment fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Dict, Tuple

from .logger import get_logger
from .rate_limit import parse_profile

logger = get_logger("MailGenius.config")

PROFILE_PREFIX = "profile."


def _parse_profiles_env(value: str | None) -> Dict[str, Tuple[int, float]]:
    """Parse ``MG_RATE_LIMIT_PROFILES`` (``name=limit/window`` separated by commas)."""
    profiles: Dict[str, Tuple[int, float]] = {}
    if not value:
        return profiles
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise ValueError(f"Invalid rate limit profile entry: {item!r}")
        name, spec = item.split("=", 1)
        profiles[name.strip()] = parse_profile(spec)
    return profiles


def load_settings(config_path: str | os.PathLike | None = None) -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with MG_):
      MG_CONFIG - Path to config.ini file (default: config.ini)
      MG_LOG_LEVEL - Logging level (default: INFO)
      MG_DB_PATH - Database path (default: /data/mailgenius.db)
      MG_HOST / MG_PORT - Server bind address (default: 0.0.0.0:8000)
      MG_API_TOKEN - Control API token
      MG_CRON_SECRET - Shared secret for the /cron endpoints
      MG_TEST_MODE - Workers wait for an explicit wake-up (default: False)
      MG_MIN_WORKERS / MG_MAX_WORKERS - Autoscaling range (default: 2..10)
      MG_WORKER_LOWER_BOUND / MG_WORKER_UPPER_BOUND - Hard scaling policy (default: 1..20)
      MG_AUTOSCALE - Enable load based scaling (default: True)
      MG_POLL_INTERVAL - Idle worker poll interval in seconds (default: 1)
      MG_HEARTBEAT_INTERVAL - Worker heartbeat interval in seconds (default: 30)
      MG_STOP_TIMEOUT - Seconds to wait for in-flight batches on shutdown (default: 30)
      MG_MAX_RATE_LIMIT_WAIT - Longest in-batch rate limit pause before a job is released (default: 60)
      MG_MAX_QUEUE_SIZE - Pending jobs above which the health view raises an alert (default: 1000)
      MG_BATCH_SIZE / MG_MAX_RETRIES / MG_DEFAULT_PRIORITY - Job defaults (100, 3, 0)
      MG_RETRY_BASE_DELAY / MG_RETRY_MULTIPLIER / MG_RETRY_MAX_DELAY - Backoff (300, 3, 7200)
      MG_RATE_LIMIT_PROFILES - Profile overrides, e.g. "email-sending=200/60,api=500/60"
      MG_EMAIL_PROVIDER - resend, smtp or dry-run (default: dry-run)
      MG_RESEND_API_KEY / MG_RESEND_API_URL
      MG_SMTP_HOST / MG_SMTP_PORT / MG_SMTP_USER / MG_SMTP_PASSWORD / MG_SMTP_USE_TLS
      MG_MAINTENANCE_INTERVAL - Seconds between maintenance passes (default: 30)
      MG_RETENTION_DAYS - Job and retry retention (default: 30)
      MG_PROGRESS_TTL - Seconds finished progress records are kept (default: 3600)
      MG_LOG_DELIVERY_ACTIVITY - Log every send attempt (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [workers] min, max, lower_bound, upper_bound, autoscale, poll_interval, heartbeat_interval,
                stop_timeout, max_rate_limit_wait, max_queue_size, test_mode
      [retry] batch_size, max_retries, default_priority, base_delay, multiplier, max_delay
      [rate_limits] resource, profile.<name> = <limit>/<window_seconds>
      [email] provider, resend_api_key, resend_api_url, smtp_host, smtp_port, smtp_user, smtp_password, smtp_use_tls
      [cron] secret, maintenance_interval, retention_days, progress_ttl
      [logging] level, delivery_activity
    """
    path = Path(config_path or os.getenv("MG_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    profiles = _parse_profiles_env(os.getenv("MG_RATE_LIMIT_PROFILES"))
    if parser.has_section("rate_limits"):
        for key, value in parser.items("rate_limits"):
            if key.startswith(PROFILE_PREFIX):
                profiles[key[len(PROFILE_PREFIX):]] = parse_profile(value)
            elif key != "resource":
                logger.warning("Ignoring unknown key in [rate_limits] section: %s", key)

    settings = {
        "db_path": get("storage", "db_path", os.getenv("MG_DB_PATH", "/data/mailgenius.db")),
        "http_host": get("server", "host", os.getenv("MG_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("MG_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("MG_API_TOKEN")),
        "cron_secret": get("cron", "secret", os.getenv("MG_CRON_SECRET")),
        "test_mode": get_bool("workers", "test_mode", os.getenv("MG_TEST_MODE"), False),
        "min_workers": get_int("workers", "min", os.getenv("MG_MIN_WORKERS"), default=2),
        "max_workers": get_int("workers", "max", os.getenv("MG_MAX_WORKERS"), default=10),
        "worker_lower_bound": get_int("workers", "lower_bound", os.getenv("MG_WORKER_LOWER_BOUND"), default=1),
        "worker_upper_bound": get_int("workers", "upper_bound", os.getenv("MG_WORKER_UPPER_BOUND"), default=20),
        "autoscale": get_bool("workers", "autoscale", os.getenv("MG_AUTOSCALE"), True),
        "poll_interval": get_float("workers", "poll_interval", os.getenv("MG_POLL_INTERVAL"), default=1.0),
        "heartbeat_interval": get_float(
            "workers", "heartbeat_interval", os.getenv("MG_HEARTBEAT_INTERVAL"), default=30.0
        ),
        "stop_timeout": get_float("workers", "stop_timeout", os.getenv("MG_STOP_TIMEOUT"), default=30.0),
        "max_rate_limit_wait": get_float(
            "workers", "max_rate_limit_wait", os.getenv("MG_MAX_RATE_LIMIT_WAIT"), default=60.0
        ),
        "max_queue_size": get_int("workers", "max_queue_size", os.getenv("MG_MAX_QUEUE_SIZE"), default=1000),
        "batch_size": get_int("retry", "batch_size", os.getenv("MG_BATCH_SIZE"), default=100),
        "max_retries": get_int("retry", "max_retries", os.getenv("MG_MAX_RETRIES"), default=3),
        "default_priority": get_int("retry", "default_priority", os.getenv("MG_DEFAULT_PRIORITY"), default=0),
        "retry_base_delay": get_float("retry", "base_delay", os.getenv("MG_RETRY_BASE_DELAY"), default=300.0),
        "retry_multiplier": get_float("retry", "multiplier", os.getenv("MG_RETRY_MULTIPLIER"), default=3.0),
        "retry_max_delay": get_float("retry", "max_delay", os.getenv("MG_RETRY_MAX_DELAY"), default=7200.0),
        "rate_limit_resource": get("rate_limits", "resource", os.getenv("MG_RATE_LIMIT_RESOURCE", "email-sending")),
        "rate_limit_profiles": profiles,
        "email_provider": get("email", "provider", os.getenv("MG_EMAIL_PROVIDER", "dry-run")),
        "resend_api_key": get("email", "resend_api_key", os.getenv("MG_RESEND_API_KEY")),
        "resend_api_url": get("email", "resend_api_url", os.getenv("MG_RESEND_API_URL")),
        "smtp_host": get("email", "smtp_host", os.getenv("MG_SMTP_HOST")),
        "smtp_port": get_int("email", "smtp_port", os.getenv("MG_SMTP_PORT"), default=587),
        "smtp_user": get("email", "smtp_user", os.getenv("MG_SMTP_USER")),
        "smtp_password": get("email", "smtp_password", os.getenv("MG_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("email", "smtp_use_tls", os.getenv("MG_SMTP_USE_TLS"), None),
        "maintenance_interval": get_float(
            "cron", "maintenance_interval", os.getenv("MG_MAINTENANCE_INTERVAL"), default=30.0
        ),
        "retention_days": get_int("cron", "retention_days", os.getenv("MG_RETENTION_DAYS"), default=30),
        "progress_ttl_seconds": get_int("cron", "progress_ttl", os.getenv("MG_PROGRESS_TTL"), default=3600),
        "log_level": get("logging", "level", os.getenv("MG_LOG_LEVEL", "INFO")),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("MG_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    for key in ("api_token", "cron_secret"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    return settings
