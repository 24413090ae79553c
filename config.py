import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

# ====================================================================================
# ENVIRONMENT CONFIGURATION: PROD / STAGE / LOCAL isolation via prefixes
# ====================================================================================
# Every variable is read with the environment prefix:
#   - PROD: PROD_DATABASE_URL, PROD_PI_SERVER_API_KEY, ...
#   - STAGE: STAGE_DATABASE_URL, STAGE_PI_SERVER_API_KEY, ...
#   - LOCAL: LOCAL_DATABASE_URL, LOCAL_PI_SERVER_API_KEY, ...
#
# A STAGE process therefore cannot pick up PROD_PI_SERVER_API_KEY even if it is
# present in the environment.
#
# Settings are read ONCE at startup (load_settings) into an immutable Settings
# value that is passed to the services. Request code never reads os.environ.
# ====================================================================================

VALID_ENVIRONMENTS = ("prod", "stage", "local")

DEFAULT_PI_API_BASE = "https://api.minepi.com/v2"

# Secrets that must never be set without prefix
_DIRECT_USAGE_VARS = ("DATABASE_URL", "PI_SERVER_API_KEY")


class ConfigError(Exception):
    """Raised when the environment cannot produce a valid configuration"""
    pass


@dataclass(frozen=True)
class Settings:
    app_env: str
    database_url: str
    pi_api_base: str
    pi_server_api_key: str = field(repr=False)
    pi_api_timeout: float
    cors_origins: Tuple[str, ...]
    redis_url: str
    http_host: str
    http_port: int
    db_pool_min_size: int = 2
    db_pool_max_size: int = 15
    db_pool_acquire_timeout: int = 10
    db_pool_command_timeout: int = 30
    warnings: Tuple[str, ...] = ()

    @property
    def payments_enabled(self) -> bool:
        return bool(self.pi_server_api_key)


def parse_cors_origins(value: str) -> Tuple[str, ...]:
    """
    "*" -> ("*",); "https://a.com, https://b.com" -> ("https://a.com", "https://b.com")
    """
    value = (value or "").strip()
    if not value or value == "*":
        return ("*",)
    return tuple(o.strip() for o in value.split(",") if o.strip())


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from the environment.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Immutable Settings

    Raises:
        ConfigError: invalid APP_ENV, un-prefixed secrets, missing PROD database,
                     or a malformed numeric value
    """
    if environ is None:
        environ = os.environ

    app_env = environ.get("APP_ENV", "prod").lower()
    if app_env not in VALID_ENVIRONMENTS:
        raise ConfigError(f"Invalid APP_ENV={app_env}. Must be one of: prod, stage, local")

    prefix = app_env.upper()

    def env(key: str, default: str = "") -> str:
        """
        Read a prefixed variable.

        Example:
            env("DATABASE_URL") -> STAGE_DATABASE_URL (if APP_ENV=stage)
        """
        return environ.get(f"{prefix}_{key}", default)

    def env_int(key: str, default: str) -> int:
        raw = env(key, default)
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{prefix}_{key} must be an integer, got: {raw}")

    for var in _DIRECT_USAGE_VARS:
        if environ.get(var):
            raise ConfigError(
                f"Direct usage of {var} is FORBIDDEN! Use {prefix}_{var} instead"
            )

    warnings = []

    database_url = env("DATABASE_URL").strip()
    if not database_url:
        if app_env == "prod":
            raise ConfigError(f"{prefix}_DATABASE_URL is REQUIRED in PROD!")
        warnings.append(
            f"{prefix}_DATABASE_URL is not set - using in-memory ledger (data is lost on restart)"
        )

    pi_server_api_key = env("PI_SERVER_API_KEY").strip()
    if not pi_server_api_key:
        warnings.append(f"{prefix}_PI_SERVER_API_KEY is not set - payments won't work")

    raw_timeout = env("PI_API_TIMEOUT", "10.0")
    try:
        pi_api_timeout = float(raw_timeout)
    except ValueError:
        raise ConfigError(f"{prefix}_PI_API_TIMEOUT must be a number, got: {raw_timeout}")

    # Platform-provided PORT wins over the prefixed value
    raw_port = environ.get("PORT") or env("HTTP_PORT") or "5000"
    try:
        http_port = int(raw_port)
    except ValueError:
        raise ConfigError(f"PORT must be a number, got: {raw_port}")

    return Settings(
        app_env=app_env,
        database_url=database_url,
        pi_api_base=(env("PI_API_BASE") or DEFAULT_PI_API_BASE).rstrip("/"),
        pi_server_api_key=pi_server_api_key,
        pi_api_timeout=pi_api_timeout,
        cors_origins=parse_cors_origins(env("CORS_ORIGINS", "*")),
        redis_url=env("REDIS_URL").strip(),
        http_host=env("HTTP_HOST", "0.0.0.0"),
        http_port=http_port,
        db_pool_min_size=env_int("DB_POOL_MIN_SIZE", "2"),
        db_pool_max_size=env_int("DB_POOL_MAX_SIZE", "15"),
        db_pool_acquire_timeout=env_int("DB_POOL_ACQUIRE_TIMEOUT", "10"),
        db_pool_command_timeout=env_int("DB_POOL_COMMAND_TIMEOUT", "30"),
        warnings=tuple(warnings),
    )
