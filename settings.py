"""
Process-wide proxy configuration.

Read once at startup from the environment (after loading .env) and passed
into create_app. Nothing reads the environment after this point.
"""

import logging
import os
from dataclasses import dataclass

from dotenv import find_dotenv, load_dotenv

from route_table import DEFAULT_ROUTES, ConfigError, RouteEntry, load_routes

logger = logging.getLogger("ai-proxy.settings")

DEFAULT_UPSTREAM_TIMEOUT = 60.0


@dataclass(frozen=True)
class ProxySettings:
    api_key: str
    routes: tuple[RouteEntry, ...] = DEFAULT_ROUTES
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def load_settings(dotenv: bool = True) -> ProxySettings:
    """Build ProxySettings from the environment.

    Raises ConfigError when API_KEY is missing or a value is malformed.
    """
    if dotenv:
        load_dotenv(find_dotenv(usecwd=True))

    api_key = os.environ.get("API_KEY", "")
    if not api_key:
        raise ConfigError("API_KEY is not defined in the environment or .env file")

    routes = DEFAULT_ROUTES
    routes_path = os.environ.get("ROUTES_CONFIG_PATH", "")
    if routes_path:
        routes = load_routes(routes_path)
        logger.info("Route table replaced by %s", routes_path)

    return ProxySettings(
        api_key=api_key,
        routes=routes,
        upstream_timeout=_float_env("UPSTREAM_TIMEOUT_SECONDS", DEFAULT_UPSTREAM_TIMEOUT),
        host=os.environ.get("HOST", "0.0.0.0"),
        port=_int_env("PORT", 3000),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    )
