from pydantic_settings import BaseSettings, SettingsConfigDict
import logging

from errors import ConfigurationError

# Set up logging
logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32


class ProxySettings(BaseSettings):
    """Proxy settings from environment (for container config)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Signing secret for bearer tokens (JWT HS256)
    jwt_secret: str = ""
    # CORS origin of the frontend; empty disables cross-origin access
    allowed_origin: str = ""
    log_level: str = "INFO"

    # Upstream Xtream API
    upstream_timeout: float = 15.0
    stream_max_redirects: int = 5

    # Sessions and tokens (seconds)
    session_ttl: int = 6 * 60 * 60
    session_sweep_interval: int = 15 * 60
    login_token_ttl: int = 6 * 60 * 60
    stream_token_ttl: int = 2 * 60 * 60

    # EPG cache
    epg_cache_ttl: int = 6 * 60 * 60
    epg_sweep_interval: int = 30 * 60
    epg_batch_max_size: int = 50
    epg_batch_concurrency: int = 10

    # Rate limiting, per client address
    rate_limit_window: int = 15 * 60
    rate_limit_login: int = 10
    rate_limit_api: int = 1000

    # Honour X-Forwarded-For/X-Forwarded-Proto from a reverse proxy
    trust_proxy_headers: bool = True

    # Request body cap in bytes
    max_body_size: int = 10 * 1024

    # Optional prebuilt frontend to serve
    frontend_dir: str = ""

    host: str = "0.0.0.0"
    port: int = 3000


# In-memory cache of settings
_cached_settings: ProxySettings | None = None


def get_settings() -> ProxySettings:
    """Get the current proxy settings, loading them on first use."""
    global _cached_settings

    if _cached_settings is None:
        _cached_settings = ProxySettings()
    return _cached_settings


def clear_settings_cache() -> None:
    """Clear the cached settings (forces reload)."""
    global _cached_settings
    _cached_settings = None
    logger.debug("Settings cache cleared")


def validate_startup_settings(settings: ProxySettings | None = None) -> None:
    """Refuse to start without a signing secret of adequate length."""
    settings = settings or get_settings()
    if not settings.jwt_secret or len(settings.jwt_secret) < MIN_SECRET_LENGTH:
        raise ConfigurationError(
            f"JWT_SECRET must be set and be at least {MIN_SECRET_LENGTH} characters long"
        )
    if not settings.allowed_origin:
        logger.warning("ALLOWED_ORIGIN is not set; cross-origin requests will be rejected")


def get_log_level_from_env() -> str:
    """Get log level from settings or default to INFO."""
    return get_settings().log_level.upper()


def set_log_level(level: str) -> None:
    """Set the logging level for all loggers dynamically."""
    level_upper = level.upper()

    # Validate log level
    valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if level_upper not in valid_levels:
        logger.warning("Invalid log level '%s', using INFO", level)
        level_upper = "INFO"

    numeric_level = getattr(logging, level_upper)
    logging.getLogger().setLevel(numeric_level)

    for logger_name in logging.root.manager.loggerDict:
        logging.getLogger(logger_name).setLevel(numeric_level)

    logger.info("Log level set to %s", level_upper)
