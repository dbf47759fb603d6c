"""Questline configuration loading and validation.

Reads ``questline.toml``, resolves ``${VAR}`` environment references, parses
every section, and returns a validated :class:`QuestlineConfig` dataclass.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_CONFIG_PATH = Path("questline.toml")

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


class ScheduleTarget(enum.StrEnum):
    """Which source new sessions are scheduled on."""

    SWISSRPG = "swissrpg"
    MEETUP = "meetup"


@dataclass
class DatabaseConfig:
    """Connection settings from the [database] section.

    ``url`` is optional; when unset the ``DATABASE_URL`` / ``POSTGRES_*``
    environment variables are used (see :func:`questline.db.db_params_from_env`).
    """

    url: str | None = None
    name: str = "questline"
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class RedisConfig:
    url: str = "redis://localhost:6379/0"


@dataclass
class MeetupConfig:
    """Meetup GraphQL API and OAuth2 settings from the [meetup] section."""

    enabled: bool = False
    api_url: str = "https://api.meetup.com/gql"
    oauth_token_url: str = "https://secure.meetup.com/oauth2/access"
    client_id: str | None = None
    client_secret: str | None = None
    organizer_id: int | None = None
    group_urlnames: list[str] = field(default_factory=list)


@dataclass
class SwissRPGConfig:
    enabled: bool = False
    base_url: str = "https://app.swissrpg.ch"
    api_token: str | None = None


@dataclass
class SyncConfig:
    """Recurring sync loop timing from the [sync] section.

    Offsets stagger the first tick of each loop so passes do not contend for
    the same rows; every later tick follows ``interval_s``.
    """

    interval_s: float = 15 * 60
    timeout_s: float = 360
    meetup_offset_s: float = 15 * 60
    swissrpg_offset_s: float = 20 * 60
    free_spots_offset_s: float = 25 * 60
    rate_limit_delay_s: float = 1.0


@dataclass
class FlowConfig:
    """Schedule-session flow settings from the [flow] section."""

    ttl_s: int = 10 * 60
    default_duration_min: int = 240
    max_duration_min: int = 720
    timezone: str = "Europe/Zurich"
    schedule_target: ScheduleTarget = ScheduleTarget.SWISSRPG

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass
class WebConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    base_url: str = "http://localhost:8080"


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class QuestlineConfig:
    """Parsed and validated questline configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    meetup: MeetupConfig = field(default_factory=MeetupConfig)
    swissrpg: SwissRPGConfig = field(default_factory=SwissRPGConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    flow: FlowConfig = field(default_factory=FlowConfig)
    web: WebConfig = field(default_factory=WebConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    shutdown_timeout_s: float = 30.0


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
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


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name, {})
    if not isinstance(raw, dict):
        raise ConfigError(f"[{name}] must be a table")
    return raw


def _positive_number(section: dict[str, Any], key: str, default: float, where: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"{where}.{key} must be a number, got {raw!r}")
    if raw <= 0:
        raise ConfigError(f"{where}.{key} must be positive, got {raw!r}")
    return float(raw)


def _non_negative_number(section: dict[str, Any], key: str, default: float, where: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"{where}.{key} must be a number, got {raw!r}")
    if raw < 0:
        raise ConfigError(f"{where}.{key} must not be negative, got {raw!r}")
    return float(raw)


def _optional_str(section: dict[str, Any], key: str, where: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{where}.{key} must be a string when set")
    return raw.strip() or None


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    min_pool = int(_positive_number(section, "min_pool_size", 2, "database"))
    max_pool = int(_positive_number(section, "max_pool_size", 10, "database"))
    if min_pool > max_pool:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")
    return DatabaseConfig(
        url=_optional_str(section, "url", "database"),
        name=_optional_str(section, "name", "database") or "questline",
        min_pool_size=min_pool,
        max_pool_size=max_pool,
    )


def _parse_meetup(section: dict[str, Any]) -> MeetupConfig:
    defaults = MeetupConfig()
    urlnames = section.get("group_urlnames", [])
    if not isinstance(urlnames, list) or not all(isinstance(u, str) for u in urlnames):
        raise ConfigError("meetup.group_urlnames must be a list of strings")

    organizer_raw = section.get("organizer_id")
    organizer_id: int | None = None
    if organizer_raw is not None:
        try:
            organizer_id = int(organizer_raw)
        except (TypeError, ValueError) as exc:
            raise ConfigError(
                f"meetup.organizer_id must be an integer, got {organizer_raw!r}"
            ) from exc

    cfg = MeetupConfig(
        enabled=bool(section.get("enabled", False)),
        api_url=_optional_str(section, "api_url", "meetup") or defaults.api_url,
        oauth_token_url=_optional_str(section, "oauth_token_url", "meetup")
        or defaults.oauth_token_url,
        client_id=_optional_str(section, "client_id", "meetup"),
        client_secret=_optional_str(section, "client_secret", "meetup"),
        organizer_id=organizer_id,
        group_urlnames=[u.strip() for u in urlnames if u.strip()],
    )
    if cfg.enabled:
        missing = [
            name
            for name, value in (
                ("client_id", cfg.client_id),
                ("client_secret", cfg.client_secret),
                ("organizer_id", cfg.organizer_id),
            )
            if value is None
        ]
        if missing:
            raise ConfigError(
                "meetup is enabled but missing required field(s): "
                + ", ".join(f"meetup.{name}" for name in missing)
            )
    return cfg


def _parse_swissrpg(section: dict[str, Any]) -> SwissRPGConfig:
    base_url = _optional_str(section, "base_url", "swissrpg") or SwissRPGConfig.base_url
    cfg = SwissRPGConfig(
        enabled=bool(section.get("enabled", False)),
        base_url=base_url.rstrip("/"),
        api_token=_optional_str(section, "api_token", "swissrpg"),
    )
    if cfg.enabled and cfg.api_token is None:
        raise ConfigError("swissrpg is enabled but swissrpg.api_token is not set")
    return cfg


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    d = SyncConfig()
    return SyncConfig(
        interval_s=_positive_number(section, "interval_s", d.interval_s, "sync"),
        timeout_s=_positive_number(section, "timeout_s", d.timeout_s, "sync"),
        meetup_offset_s=_non_negative_number(section, "meetup_offset_s", d.meetup_offset_s, "sync"),
        swissrpg_offset_s=_non_negative_number(
            section, "swissrpg_offset_s", d.swissrpg_offset_s, "sync"
        ),
        free_spots_offset_s=_non_negative_number(
            section, "free_spots_offset_s", d.free_spots_offset_s, "sync"
        ),
        rate_limit_delay_s=_non_negative_number(
            section, "rate_limit_delay_s", d.rate_limit_delay_s, "sync"
        ),
    )


def _parse_flow(section: dict[str, Any]) -> FlowConfig:
    d = FlowConfig()
    timezone = _optional_str(section, "timezone", "flow") or d.timezone
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"flow.timezone is not a known IANA zone: {timezone!r}") from exc

    target_raw = str(section.get("schedule_target", d.schedule_target.value)).strip().lower()
    try:
        target = ScheduleTarget(target_raw)
    except ValueError as exc:
        valid = ", ".join(t.value for t in ScheduleTarget)
        raise ConfigError(
            f"Invalid flow.schedule_target: {target_raw!r}. Expected one of: {valid}"
        ) from exc

    default_duration = int(
        _positive_number(section, "default_duration_min", d.default_duration_min, "flow")
    )
    max_duration = int(_positive_number(section, "max_duration_min", d.max_duration_min, "flow"))
    if default_duration > max_duration:
        raise ConfigError("flow.default_duration_min must not exceed flow.max_duration_min")

    return FlowConfig(
        ttl_s=int(_positive_number(section, "ttl_s", d.ttl_s, "flow")),
        default_duration_min=default_duration,
        max_duration_min=max_duration,
        timezone=timezone,
        schedule_target=target,
    )


def _parse_web(section: dict[str, Any]) -> WebConfig:
    d = WebConfig()
    port = section.get("port", d.port)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"web.port must be a valid TCP port, got {port!r}")
    return WebConfig(
        host=_optional_str(section, "host", "web") or d.host,
        port=port,
        base_url=(_optional_str(section, "base_url", "web") or d.base_url).rstrip("/"),
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=_optional_str(section, "log_root", "logging"),
    )


def parse_config(data: dict[str, Any]) -> QuestlineConfig:
    """Validate an already-decoded TOML document into a :class:`QuestlineConfig`."""
    data = resolve_env_vars(data)

    redis_section = _section(data, "redis")
    shutdown_section = _section(data, "shutdown")

    return QuestlineConfig(
        database=_parse_database(_section(data, "database")),
        redis=RedisConfig(url=_optional_str(redis_section, "url", "redis") or RedisConfig.url),
        meetup=_parse_meetup(_section(data, "meetup")),
        swissrpg=_parse_swissrpg(_section(data, "swissrpg")),
        sync=_parse_sync(_section(data, "sync")),
        flow=_parse_flow(_section(data, "flow")),
        web=_parse_web(_section(data, "web")),
        logging=_parse_logging(_section(data, "logging")),
        shutdown_timeout_s=_positive_number(shutdown_section, "timeout_s", 30.0, "shutdown"),
    )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> QuestlineConfig:
    """Load and validate a questline TOML file.

    Parameters
    ----------
    path:
        Path to the TOML file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
