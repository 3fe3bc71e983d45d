# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loading for the campaign dispatcher.

Settings come from an INI file (default ``config.ini``, overridden by the
``CDS_CONFIG`` environment variable) with ``CDS_*`` environment variables
as fallbacks for every key.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/dispatch.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = change-me

        [queue]
        lease_timeout_seconds = 900
        max_jobs_per_run = 5
        time_budget_ms = 55000
        paused_recheck_seconds = 300

        [delivery]
        concurrency = 4
        max_items_per_run = 50
        mx_check = true
        mx_cache_ttl_seconds = 86400
        limit_per_minute = 0
        limit_per_hour = 0
        limit_per_day = 0
        unsubscribe_base_url = https://crm.example.com/unsubscribe
        unsubscribe_secret = another-secret
        tracking_base_url = https://crm.example.com

        [smtp]
        host = smtp.example.com
        port = 587
        user = mailer
        password = secret
        use_tls = true
        from_address = news@example.com
        timeout = 30

        [logging]
        level = INFO
        delivery_activity = false

    Loading::

        config = load_config()
        dispatcher = CampaignDispatcher(db, transport, config=config)
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .logger import get_logger

logger = get_logger("ConfigLoader")

MAX_CONCURRENCY = 10
MAX_JOBS_PER_RUN = 50


@dataclass
class SmtpConfig:
    """Outbound SMTP relay used by :class:`~campaign_dispatch.transport.SmtpTransport`."""

    host: str | None = None
    port: int = 587
    user: str | None = None
    password: str | None = None
    use_tls: bool = True
    from_address: str | None = None
    timeout: float = 30.0
    pool_ttl: int = 300

    @property
    def configured(self) -> bool:
        return bool(self.host)


@dataclass
class DispatchConfig:
    """Tunable knobs of the queue processor and delivery engine.

    Attributes:
        db_path: Database connection string (SQLite path or PostgreSQL DSN).
        host: HTTP bind address.
        port: HTTP port.
        api_token: Shared secret for the ``X-API-Token`` header; None disables auth.
        lease_timeout_seconds: Age after which a processing job's lock is abandoned.
        concurrency: Concurrent sends per job, clamped to 1..10.
        max_items_per_run: Recipients attempted per job per invocation.
        time_budget_ms: Wall-clock budget per invocation.
        max_jobs_per_run: Jobs claimed sequentially per invocation, clamped to 1..50.
        paused_recheck_seconds: Delay before a paused campaign's job is looked at again.
        mx_check: Validate recipient domains through DNS before sending.
        mx_cache_ttl_seconds: Validity of cached MX results.
        limit_per_minute: Per-tenant send limit (0 = unlimited).
        limit_per_hour: Per-tenant send limit (0 = unlimited).
        limit_per_day: Per-tenant send limit (0 = unlimited).
        unsubscribe_base_url: Base for the ``List-Unsubscribe`` header.
        unsubscribe_secret: HMAC key signing unsubscribe and tracking links; links are
            omitted without it.
        tracking_base_url: Public base URL of this service's ``/track/open`` and
            ``/track/click`` routes; open and click tracking is off without it.
        log_level: Root logging level.
        log_delivery_activity: Log one line per delivery attempt.
        smtp: Outbound relay settings.
    """

    db_path: str = "/data/dispatch.db"
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    lease_timeout_seconds: int = 15 * 60
    concurrency: int = 4
    max_items_per_run: int = 50
    time_budget_ms: int = 55_000
    max_jobs_per_run: int = 5
    paused_recheck_seconds: int = 300
    mx_check: bool = True
    mx_cache_ttl_seconds: int = 24 * 3600
    limit_per_minute: int = 0
    limit_per_hour: int = 0
    limit_per_day: int = 0
    unsubscribe_base_url: str | None = None
    unsubscribe_secret: str | None = None
    tracking_base_url: str | None = None
    log_level: str = "INFO"
    log_delivery_activity: bool = False
    smtp: SmtpConfig | None = None

    def __post_init__(self) -> None:
        self.concurrency = min(MAX_CONCURRENCY, max(1, int(self.concurrency)))
        self.max_jobs_per_run = min(MAX_JOBS_PER_RUN, max(1, int(self.max_jobs_per_run)))
        self.max_items_per_run = max(1, int(self.max_items_per_run))
        self.time_budget_ms = max(0, int(self.time_budget_ms))
        if self.smtp is None:
            self.smtp = SmtpConfig()

    @property
    def rate_limits(self) -> dict[str, int]:
        return {
            "limit_per_minute": self.limit_per_minute,
            "limit_per_hour": self.limit_per_hour,
            "limit_per_day": self.limit_per_day,
        }


def load_config(
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> DispatchConfig:
    """Load configuration from an INI file with environment variables as fallbacks.

    Args:
        config_path: INI file to read. Defaults to ``$CDS_CONFIG`` or ``config.ini``.
            A missing file is not an error; every key has a default.
        env: Environment mapping (defaults to ``os.environ``).

    Returns:
        A populated :class:`DispatchConfig`.
    """
    env = os.environ if env is None else env
    path = Path(config_path or env.get("CDS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    read = parser.read(path)
    if read:
        logger.debug("Loaded configuration from %s", path)

    def get(section: str, option: str, env_key: str) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return env.get(env_key)

    def get_int(section: str, option: str, env_key: str, default: int) -> int:
        value = get(section, option, env_key)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_float(section: str, option: str, env_key: str, default: float) -> float:
        value = get(section, option, env_key)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    def get_bool(section: str, option: str, env_key: str, default: bool) -> bool:
        value = get(section, option, env_key)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_str(section: str, option: str, env_key: str, default: str | None = None) -> str | None:
        value = get(section, option, env_key)
        if value is None:
            return default
        value = value.strip()
        return value or default

    defaults = DispatchConfig()
    smtp = SmtpConfig(
        host=get_str("smtp", "host", "CDS_SMTP_HOST"),
        port=get_int("smtp", "port", "CDS_SMTP_PORT", 587),
        user=get_str("smtp", "user", "CDS_SMTP_USER"),
        password=get_str("smtp", "password", "CDS_SMTP_PASSWORD"),
        use_tls=get_bool("smtp", "use_tls", "CDS_SMTP_USE_TLS", True),
        from_address=get_str("smtp", "from_address", "CDS_SMTP_FROM"),
        timeout=get_float("smtp", "timeout", "CDS_SMTP_TIMEOUT", 30.0),
        pool_ttl=get_int("smtp", "pool_ttl", "CDS_SMTP_POOL_TTL", 300),
    )
    db_path = get_str("storage", "db_path", "CDS_DB_PATH", defaults.db_path) or defaults.db_path
    if not db_path.startswith(("postgresql:", "postgres:", "sqlite:")):
        db_path = os.path.expanduser(db_path)

    return DispatchConfig(
        db_path=db_path,
        host=get_str("server", "host", "CDS_HOST", defaults.host) or defaults.host,
        port=get_int("server", "port", "CDS_PORT", defaults.port),
        api_token=get_str("server", "api_token", "CDS_API_TOKEN"),
        lease_timeout_seconds=get_int(
            "queue", "lease_timeout_seconds", "CDS_LEASE_TIMEOUT_SECONDS", defaults.lease_timeout_seconds
        ),
        max_jobs_per_run=get_int("queue", "max_jobs_per_run", "CDS_MAX_JOBS_PER_RUN", defaults.max_jobs_per_run),
        time_budget_ms=get_int("queue", "time_budget_ms", "CDS_TIME_BUDGET_MS", defaults.time_budget_ms),
        paused_recheck_seconds=get_int(
            "queue", "paused_recheck_seconds", "CDS_PAUSED_RECHECK_SECONDS", defaults.paused_recheck_seconds
        ),
        concurrency=get_int("delivery", "concurrency", "CDS_CONCURRENCY", defaults.concurrency),
        max_items_per_run=get_int(
            "delivery", "max_items_per_run", "CDS_MAX_ITEMS_PER_RUN", defaults.max_items_per_run
        ),
        mx_check=get_bool("delivery", "mx_check", "CDS_MX_CHECK", defaults.mx_check),
        mx_cache_ttl_seconds=get_int(
            "delivery", "mx_cache_ttl_seconds", "CDS_MX_CACHE_TTL_SECONDS", defaults.mx_cache_ttl_seconds
        ),
        limit_per_minute=get_int("delivery", "limit_per_minute", "CDS_LIMIT_PER_MINUTE", 0),
        limit_per_hour=get_int("delivery", "limit_per_hour", "CDS_LIMIT_PER_HOUR", 0),
        limit_per_day=get_int("delivery", "limit_per_day", "CDS_LIMIT_PER_DAY", 0),
        unsubscribe_base_url=get_str("delivery", "unsubscribe_base_url", "CDS_UNSUBSCRIBE_BASE_URL"),
        unsubscribe_secret=get_str("delivery", "unsubscribe_secret", "CDS_UNSUBSCRIBE_SECRET"),
        tracking_base_url=get_str("delivery", "tracking_base_url", "CDS_TRACKING_BASE_URL"),
        log_level=get_str("logging", "level", "CDS_LOG_LEVEL", "INFO") or "INFO",
        log_delivery_activity=get_bool("logging", "delivery_activity", "CDS_LOG_DELIVERY_ACTIVITY", False),
        smtp=smtp,
    )


__all__ = ["DispatchConfig", "SmtpConfig", "load_config"]
