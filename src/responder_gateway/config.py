from __future__ import annotations

from dataclasses import dataclass
import os

from dotenv import find_dotenv, load_dotenv


@dataclass(frozen=True)
class Settings:
    app_env: str
    tenant_store_dsn: str
    quota_backend: str
    quota_redis_url: str
    quota_redis_key_prefix: str
    quota_redis_fail_open: bool
    credentials_dir: str
    session_transport_factory: str
    pairing_timeout_seconds: float
    reconnect_delay_seconds: float
    sync_failure_reconnect_delay_seconds: float
    health_probe_timeout_seconds: float
    health_recent_activity_seconds: float
    send_timeout_seconds: float
    tenant_cache_ttl_seconds: float
    tenant_cache_max_entries: int
    cache_sweep_interval_seconds: float
    subscription_check_interval_seconds: float
    echo_suppression_seconds: float
    closed_weekdays: tuple[int, ...]
    default_country_code: str
    gateway_autostart: bool
    jwt_shared_secret: str
    jwt_algorithm: str
    log_level: str


def _parse_bool(raw: str, default: bool) -> bool:
    text = (raw or "").strip().lower()
    if not text:
        return default
    return text in {"1", "true", "yes", "y", "on"}


def _parse_int_list(raw: str, default: tuple[int, ...]) -> tuple[int, ...]:
    text = (raw or "").strip()
    if not text:
        return default
    values = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        value = int(part)
        if value < 0 or value > 6:
            raise ValueError("CLOSED_WEEKDAYS entries must be between 0 (Monday) and 6 (Sunday)")
        values.append(value)
    return tuple(sorted(set(values)))


def get_settings() -> Settings:
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    return Settings(
        app_env=os.getenv("APP_ENV", "dev"),
        tenant_store_dsn=os.getenv("TENANT_STORE_DSN", ""),
        quota_backend=os.getenv("QUOTA_BACKEND", "database"),
        quota_redis_url=os.getenv("QUOTA_REDIS_URL", ""),
        quota_redis_key_prefix=os.getenv("QUOTA_REDIS_KEY_PREFIX", "gateway:quota"),
        quota_redis_fail_open=_parse_bool(os.getenv("QUOTA_REDIS_FAIL_OPEN", "true"), default=True),
        credentials_dir=os.getenv("CREDENTIALS_DIR", ""),
        session_transport_factory=os.getenv("SESSION_TRANSPORT_FACTORY", ""),
        pairing_timeout_seconds=float(os.getenv("PAIRING_TIMEOUT_SECONDS", "30")),
        reconnect_delay_seconds=float(os.getenv("RECONNECT_DELAY_SECONDS", "5")),
        sync_failure_reconnect_delay_seconds=float(os.getenv("SYNC_FAILURE_RECONNECT_DELAY_SECONDS", "10")),
        health_probe_timeout_seconds=float(os.getenv("HEALTH_PROBE_TIMEOUT_SECONDS", "2")),
        health_recent_activity_seconds=float(os.getenv("HEALTH_RECENT_ACTIVITY_SECONDS", "300")),
        send_timeout_seconds=float(os.getenv("SEND_TIMEOUT_SECONDS", "60")),
        tenant_cache_ttl_seconds=float(os.getenv("TENANT_CACHE_TTL_SECONDS", "300")),
        tenant_cache_max_entries=int(os.getenv("TENANT_CACHE_MAX_ENTRIES", "1000")),
        cache_sweep_interval_seconds=float(os.getenv("CACHE_SWEEP_INTERVAL_SECONDS", "600")),
        subscription_check_interval_seconds=float(os.getenv("SUBSCRIPTION_CHECK_INTERVAL_SECONDS", "3600")),
        echo_suppression_seconds=float(os.getenv("ECHO_SUPPRESSION_SECONDS", "10")),
        closed_weekdays=_parse_int_list(os.getenv("CLOSED_WEEKDAYS", ""), default=(5, 6)),
        default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", "234"),
        gateway_autostart=_parse_bool(os.getenv("GATEWAY_AUTOSTART", "true"), default=True),
        jwt_shared_secret=os.getenv("JWT_SHARED_SECRET", ""),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
