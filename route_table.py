"""
Static routing table for upstream AI providers.

Each entry maps a leading path segment (or a hostname alias) to an upstream
base URL. Matching is first-hit in table order, so more specific segments
must be listed before shorter ones that are a prefix of them.

The default table can be replaced by a YAML file with ${ENV_VAR}
interpolation (see load_routes).
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

import yaml

logger = logging.getLogger("ai-proxy.routes")

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


class ConfigError(Exception):
    """Raised when proxy configuration is missing or malformed."""


@dataclass(frozen=True)
class RouteEntry:
    path_segment: str
    target: str
    hostname_alias: str | None = None


DEFAULT_ROUTES: tuple[RouteEntry, ...] = (
    RouteEntry(
        path_segment="generativelanguage",
        target="https://generativelanguage.googleapis.com",
        hostname_alias="gooai.chatkit.app",
    ),
    RouteEntry(path_segment="groq", target="https://api.groq.com"),
    RouteEntry(path_segment="anthropic", target="https://api.anthropic.com"),
    RouteEntry(path_segment="pplx", target="https://api.perplexity.ai"),
    RouteEntry(path_segment="openai", target="https://api.openai.com"),
    RouteEntry(path_segment="mistral", target="https://api.mistral.ai"),
    # Must stay ahead of "openrouter"
    RouteEntry(path_segment="openrouter/api", target="https://openrouter.ai/api"),
    RouteEntry(path_segment="openrouter", target="https://openrouter.ai/api"),
    RouteEntry(path_segment="xai", target="https://api.x.ai"),
)


def match_route(
    path: str,
    hostname: str | None,
    routes: tuple[RouteEntry, ...],
) -> RouteEntry | None:
    """Return the first entry whose segment prefixes path or whose alias equals hostname.

    The segment must be followed by a slash: "/openai2/x" does not match "openai".
    """
    for route in routes:
        if path.startswith(f"/{route.path_segment}/"):
            return route
        if route.hostname_alias and hostname == route.hostname_alias:
            return route
    return None


def rewrite_path(path: str, path_segment: str) -> str:
    """Replace the first "/<segment>/" in path with "/". No-op when absent."""
    return path.replace(f"/{path_segment}/", "/", 1)


def build_target_url(route: RouteEntry, path: str, query: str = "") -> str:
    url = f"{route.target}{rewrite_path(path, route.path_segment)}"
    if query:
        url = f"{url}?{query}"
    return url


# --- YAML loading ---


def _interpolate_env(value: str) -> str:
    """Replace ${ENV_VAR} placeholders with environment variable values."""
    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        env_val = os.environ.get(var_name, "")
        if not env_val:
            logger.warning("Environment variable %s is not set", var_name)
        return env_val
    return _ENV_VAR_PATTERN.sub(replacer, value)


def _interpolate_recursive(obj):
    """Recursively interpolate env vars in strings within dicts/lists."""
    if isinstance(obj, str):
        return _interpolate_env(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


def _parse_route(index: int, raw) -> RouteEntry:
    if not isinstance(raw, dict):
        raise ConfigError(f"Route #{index} must be a mapping")

    segment = str(raw.get("path_segment", "")).strip()
    if not segment or segment.startswith("/") or segment.endswith("/"):
        raise ConfigError(
            f"Route #{index}: path_segment must be non-empty without leading/trailing slash"
        )

    target = str(raw.get("target", "")).strip().rstrip("/")
    parts = urlsplit(target)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigError(f"Route #{index} ({segment}): target must be an absolute http(s) URL")
    if parts.query or parts.fragment:
        raise ConfigError(f"Route #{index} ({segment}): target must not carry a query or fragment")

    alias = raw.get("hostname_alias")
    return RouteEntry(
        path_segment=segment,
        target=target,
        hostname_alias=str(alias) if alias else None,
    )


def load_routes(config_path: str) -> tuple[RouteEntry, ...]:
    """Load an ordered route table from a YAML file.

    Unlike the defaults, a bad file is fatal: the proxy must not start with
    a routing table it cannot read.
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Routes config not found at {config_path}")

    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse routes config {config_path}: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("routes"), list):
        raise ConfigError("Routes config must be a mapping with a 'routes' list")

    raw = _interpolate_recursive(raw)
    routes = tuple(_parse_route(i, r) for i, r in enumerate(raw["routes"]))
    if not routes:
        raise ConfigError("Routes config defines no routes")

    # Flag entries shadowed by an earlier, shorter segment
    for i, later in enumerate(routes):
        for earlier in routes[:i]:
            if f"/{later.path_segment}/".startswith(f"/{earlier.path_segment}/"):
                logger.warning(
                    "Route %s is shadowed by earlier route %s",
                    later.path_segment, earlier.path_segment,
                )
                break

    logger.info(
        "Routes config loaded: %d routes (%s)",
        len(routes), ", ".join(r.path_segment for r in routes),
    )
    return routes
