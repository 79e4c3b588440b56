"""dosekeeper configuration loading and validation.

Reads ``dosekeeper.toml`` from a config directory, parses all sections, and
returns a validated :class:`DoseKeeperConfig` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CONFIG_FILENAME = "dosekeeper.toml"

# Pattern matching ${VAR_NAME}.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when dosekeeper configuration is missing, malformed, or invalid."""


@dataclass
class DbConfig:
    """Database configuration from [dosekeeper.db]."""

    name: str = "dosekeeper"
    schema: str | None = None


@dataclass
class LoggingConfig:
    """Logging configuration from [dosekeeper.logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class CacheConfig:
    """Month/week cache configuration from [dosekeeper.cache].

    ``max_months`` bounds how many month snapshots stay in memory for quick
    back-navigation.  ``debounce_ms`` is the quiet period before a day
    selection triggers a rebuild.
    """

    max_months: int = 3
    debounce_ms: int = 150


@dataclass
class IntakeConfig:
    """Intake write-behind configuration from [dosekeeper.intake]."""

    max_attempts: int = 4
    base_delay_s: float = 0.5
    max_delay_s: float = 8.0
    queue_capacity: int = 256
    count_prn: bool = False

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based), capped at ``max_delay_s``."""
        return min(self.base_delay_s * (2 ** (attempt - 1)), self.max_delay_s)


@dataclass
class DoseKeeperConfig:
    """Parsed and validated dosekeeper configuration."""

    timezone: str = "UTC"
    db: DbConfig = field(default_factory=DbConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    intake: IntakeConfig = field(default_factory=IntakeConfig)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaves pass through unchanged.

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
    """Replace all ``${VAR_NAME}`` occurrences in *s*, reporting every missing name at once."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        env_value = os.environ.get(match.group(1))
        if env_value is None:
            missing.append(match.group(1))
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)} "
            f"(original: {s!r})"
        )
    return result


def _section(parent: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"{path} must be a TOML table")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be an integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _non_negative_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number.") from exc
    if value < 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must not be negative.")
    return value


def parse_config(data: dict[str, Any]) -> DoseKeeperConfig:
    """Validate an already-decoded TOML document into a :class:`DoseKeeperConfig`."""
    data = resolve_env_vars(data)

    # --- [dosekeeper] section (required) ---
    root = data.get("dosekeeper")
    if not isinstance(root, dict):
        raise ConfigError("Missing [dosekeeper] section in config")

    timezone = str(root.get("timezone", "UTC")).strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown dosekeeper.timezone: {timezone!r}") from exc

    # --- [dosekeeper.db] ---
    db_section = _section(root, "db", "dosekeeper.db")
    db_name = str(db_section.get("name", "dosekeeper")).strip()
    if not db_name:
        raise ConfigError("dosekeeper.db.name must be a non-empty string")
    db_schema = db_section.get("schema")
    if db_schema is not None:
        if not isinstance(db_schema, str) or not db_schema.strip():
            raise ConfigError("dosekeeper.db.schema must be a non-empty string when set")
        db_schema = db_schema.strip()
        if _DB_SCHEMA_PATTERN.fullmatch(db_schema) is None:
            raise ConfigError(
                f"Invalid dosekeeper.db.schema: {db_schema!r}. "
                "Expected a valid SQL identifier-style value."
            )

    # --- [dosekeeper.logging] ---
    logging_section = _section(root, "logging", "dosekeeper.logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid dosekeeper.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    # --- [dosekeeper.cache] ---
    cache_section = _section(root, "cache", "dosekeeper.cache")
    cache_config = CacheConfig(
        max_months=_positive_int(cache_section, "max_months", 3, "dosekeeper.cache"),
        debounce_ms=int(_non_negative_float(cache_section, "debounce_ms", 150, "dosekeeper.cache")),
    )

    # --- [dosekeeper.intake] ---
    intake_section = _section(root, "intake", "dosekeeper.intake")
    path = "dosekeeper.intake"
    intake_config = IntakeConfig(
        max_attempts=_positive_int(intake_section, "max_attempts", 4, path),
        base_delay_s=_non_negative_float(intake_section, "base_delay_s", 0.5, path),
        max_delay_s=_non_negative_float(intake_section, "max_delay_s", 8.0, path),
        queue_capacity=_positive_int(intake_section, "queue_capacity", 256, path),
        count_prn=bool(intake_section.get("count_prn", False)),
    )
    if intake_config.max_delay_s < intake_config.base_delay_s:
        raise ConfigError("dosekeeper.intake.max_delay_s must be >= base_delay_s")

    return DoseKeeperConfig(
        timezone=timezone,
        db=DbConfig(name=db_name, schema=db_schema),
        logging=logging_config,
        cache=cache_config,
        intake=intake_config,
    )


def load_config(config_dir: Path) -> DoseKeeperConfig:
    """Load and validate ``dosekeeper.toml`` from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = config_dir / CONFIG_FILENAME
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
