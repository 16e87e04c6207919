"""Configuration loading and validation.

Reads ``threadline.toml``, resolves ``${VAR}`` references from the
environment, and returns a validated ``ThreadlineConfig`` dataclass. Every
section is optional; a missing file yields the defaults.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from croniter import croniter

from threadline.routing.scoring import DEFAULT_KNOWN_CITIES

CONFIG_FILENAME = "threadline.toml"
CONFIG_ENV_VAR = "THREADLINE_CONFIG"

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [threadline.logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Connection settings from [threadline.database].

    ``url`` wins when set; otherwise DATABASE_URL / POSTGRES_* are read at
    connect time.
    """

    url: str | None = None
    name: str = "threadline"
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class RoutingConfig:
    """Routing behaviour from [threadline.routing]."""

    create_thread_on_miss: bool = True
    participant_thread_limit: int = 10
    recent_thread_scan_limit: int = 100
    known_cities: tuple[str, ...] = DEFAULT_KNOWN_CITIES


@dataclass
class IdentityConfig:
    """Identity resolution settings from [threadline.identity]."""

    cache_ttl_seconds: float = 300.0
    verification_sweep_cron: str = "0 * * * *"


@dataclass
class RetryConfig:
    """Retry sweep settings from [threadline.retry]."""

    max_retries: int = 3
    base_delay_seconds: float = 60.0
    sweep_cron: str = "*/5 * * * *"
    batch_limit: int = 200


@dataclass
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 8400


@dataclass
class ThreadlineConfig:
    """Fully parsed configuration."""

    default_organization_id: str | None = None
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    source_path: Path | None = None


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively replace ``${VAR_NAME}`` references with environment values.

    Parameters
    ----------
    value:
        A parsed TOML value: dict, list, string, int, float, bool, or None.

    Returns
    -------
    Any
        The same structure with every reference in string values resolved.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace every ``${VAR_NAME}`` in *s*, reporting all missing names at once."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _section(parent: dict, name: str, path: str) -> dict:
    section = parent.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{path}] must be a TOML table")
    return section


def _positive_int(section: dict, key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be an integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _positive_float(section: dict, key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be positive.")
    return value


def _cron(section: dict, key: str, default: str, path: str) -> str:
    value = str(section.get(key, default)).strip()
    if not croniter.is_valid(value):
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Expected a cron expression.")
    return value


def _parse_logging(root: dict) -> LoggingConfig:
    section = _section(root, "logging", "threadline.logging")
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid threadline.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=section.get("log_root"),
    )


def _parse_database(root: dict) -> DatabaseConfig:
    path = "threadline.database"
    section = _section(root, "database", path)
    url = section.get("url")
    if url is not None and (not isinstance(url, str) or not url.strip()):
        raise ConfigError(f"{path}.url must be a non-empty string when set")
    min_size = _positive_int(section, "min_pool_size", 2, path)
    max_size = _positive_int(section, "max_pool_size", 10, path)
    if min_size > max_size:
        raise ConfigError(f"{path}.min_pool_size must not exceed max_pool_size")
    return DatabaseConfig(
        url=url.strip() if url else None,
        name=str(section.get("name", "threadline")).strip() or "threadline",
        min_pool_size=min_size,
        max_pool_size=max_size,
    )


def _parse_routing(root: dict) -> RoutingConfig:
    path = "threadline.routing"
    section = _section(root, "routing", path)
    raw_cities = section.get("known_cities")
    if raw_cities is None:
        cities = DEFAULT_KNOWN_CITIES
    elif isinstance(raw_cities, list) and all(isinstance(c, str) for c in raw_cities):
        cities = tuple(c.strip().lower() for c in raw_cities if c.strip())
    else:
        raise ConfigError(f"{path}.known_cities must be a list of strings")
    create_on_miss = section.get("create_thread_on_miss", True)
    if not isinstance(create_on_miss, bool):
        raise ConfigError(f"{path}.create_thread_on_miss must be a boolean")
    return RoutingConfig(
        create_thread_on_miss=create_on_miss,
        participant_thread_limit=_positive_int(section, "participant_thread_limit", 10, path),
        recent_thread_scan_limit=_positive_int(section, "recent_thread_scan_limit", 100, path),
        known_cities=cities,
    )


def _parse_identity(root: dict) -> IdentityConfig:
    path = "threadline.identity"
    section = _section(root, "identity", path)
    return IdentityConfig(
        cache_ttl_seconds=_positive_float(section, "cache_ttl_seconds", 300.0, path),
        verification_sweep_cron=_cron(section, "verification_sweep_cron", "0 * * * *", path),
    )


def _parse_retry(root: dict) -> RetryConfig:
    path = "threadline.retry"
    section = _section(root, "retry", path)
    return RetryConfig(
        max_retries=_positive_int(section, "max_retries", 3, path),
        base_delay_seconds=_positive_float(section, "base_delay_seconds", 60.0, path),
        sweep_cron=_cron(section, "sweep_cron", "*/5 * * * *", path),
        batch_limit=_positive_int(section, "batch_limit", 200, path),
    )


def _parse_api(root: dict) -> ApiConfig:
    path = "threadline.api"
    section = _section(root, "api", path)
    return ApiConfig(
        host=str(section.get("host", "127.0.0.1")),
        port=_positive_int(section, "port", 8400, path),
    )


def parse_config(data: dict[str, Any], *, source_path: Path | None = None) -> ThreadlineConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    root = _section(data, "threadline", "threadline")

    default_org = root.get("default_organization_id")
    if default_org is not None and (not isinstance(default_org, str) or not default_org.strip()):
        raise ConfigError("threadline.default_organization_id must be a non-empty string")

    return ThreadlineConfig(
        default_organization_id=default_org.strip() if default_org else None,
        database=_parse_database(root),
        routing=_parse_routing(root),
        identity=_parse_identity(root),
        retry=_parse_retry(root),
        logging=_parse_logging(root),
        api=_parse_api(root),
        source_path=source_path,
    )


def load_config(path: Path | str | None = None) -> ThreadlineConfig:
    """Load and validate ``threadline.toml``.

    Parameters
    ----------
    path:
        Config file, or a directory containing ``threadline.toml``. Defaults
        to ``$THREADLINE_CONFIG`` and then ``./threadline.toml``. A missing
        default file yields the built-in defaults; a missing explicit file is
        an error.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    explicit = path is not None or CONFIG_ENV_VAR in os.environ
    raw_path = path if path is not None else os.environ.get(CONFIG_ENV_VAR, CONFIG_FILENAME)
    toml_path = Path(raw_path)
    if toml_path.is_dir():
        toml_path = toml_path / CONFIG_FILENAME

    if not toml_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {toml_path}")
        return parse_config({})

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data, source_path=toml_path)


__all__ = [
    "ApiConfig",
    "ConfigError",
    "DatabaseConfig",
    "IdentityConfig",
    "LoggingConfig",
    "RetryConfig",
    "RoutingConfig",
    "ThreadlineConfig",
    "load_config",
    "parse_config",
    "resolve_env_vars",
]
