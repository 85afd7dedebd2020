"""
Configuration for the telepool agent.

Configuration is an explicit, immutable value: build it once with
`TelepoolConfig.load()` and hand it to `TelemetryPooler`. Nothing is stored at
module level.

Hierarchy of precedence (highest to lowest):
1. Overrides passed to `TelepoolConfig.load()`
2. Environment variables (TELEPOOL_*)
3. The JSON config file (`<home>/config.json`)
4. Hardcoded defaults (in dataclass fields)

Example:
    >>> from telepool import TelepoolConfig
    >>>
    >>> config = TelepoolConfig.load()
    >>> config.api.resolved_base_url
    'https://api.rulecatch.ai'
    >>>
    >>> # Custom configuration
    >>> config = TelepoolConfig.load(
    ...     api={"api_key": "dc_abc123", "region": "eu"},
    ...     backpressure={"max_drain_duration": 30},
    ... )
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Literal, Self

from telepool._backoff import BackoffPolicy
from telepool._utils import load_json_file, now_ms

logger = logging.getLogger(__name__)

Region = Literal["us", "eu"]

REGION_BASE_URLS: dict[str, str] = {
    "us": "https://api.rulecatch.ai",
    "eu": "https://api-eu.rulecatch.ai",
}

DEFAULT_HOME_DIR = Path("~/.claude/rulecatch")

# Keys of the JSON config file mapped to (section, field)
CONFIG_FILE_KEYS: dict[str, tuple[str, str]] = {
    "apiKey": ("api", "api_key"),
    "region": ("api", "region"),
    "baseUrl": ("api", "base_url"),
    "projectId": ("api", "project_id"),
    "batchSize": ("buffer", "batch_size"),
    "monitorOnly": ("buffer", "monitor_only"),
}

SECTIONS = ("api", "backpressure", "buffer")

_UNLIMITED = ("none", "null", "unlimited")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Reads environment variables with type conversion.

    Example:
        >>> EnvVars.get("TELEPOOL_BATCH_SIZE", type_hint=int)
        20
        >>> EnvVars.get("UNDEFINED_VAR") is None
        True
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Args:
            var_name: The environment variable name.
            type_hint: Type hint used to infer the converter (ignored if converter is provided).
            converter: Custom converter function (takes precedence over type_hint).

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        # Field types are strings here (from __future__ import annotations)
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return lambda v: v.lower() in ("true", "1", "yes")
        return str


def _optional_seconds(value: str) -> float | None:
    if value.lower() in _UNLIMITED:
        return None
    return float(value)


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration sections.

    Provides `.with_overrides()` for partial updates with strict field-name
    validation, and `.with_env_vars()` driven by the `env` key of each
    field's metadata.
    """

    def with_overrides(
        self,
        overrides: dict[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """
        Return a new instance with specified fields overridden.

        Args:
            overrides: Dict of field names to new values. Only existing fields are allowed.
            allow_none_fields: Field names that accept None; other None values are ignored.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields
        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        allow_none = allow_none_fields or set()
        filtered = {k: v for k, v in overrides.items() if v is not None or k in allow_none}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return a new instance with environment variables applied.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        return self.with_overrides(self.env_overrides())

    def env_overrides(self) -> dict[str, Any]:
        """Return the field values currently provided by environment variables."""
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if env_var and not f.metadata.get("skip", False):
                value = EnvVars.get(
                    var_name=env_var,
                    type_hint=f.type,
                    converter=f.metadata.get("converter"),
                )
                if value is not None:
                    overrides[f.name] = value
        return overrides

    def env_var_for(self, field_name: str) -> str | None:
        """Return the env var name declared for a field, if any."""
        for f in fields(self):
            if f.name == field_name:
                return f.metadata.get("env")
        return None


# =============================================================================
# Configuration Sections
# =============================================================================


def _default_client_version() -> str:
    from telepool import __version__
    return __version__


@dataclass(frozen=True)
class ApiConfig(OverridableConfig):
    """
    Connection settings for the ingestion API.

    Attributes:
        api_key: API key sent as bearer token.
            Env var: TELEPOOL_API_KEY
        region: Data region, "us" or "eu"; selects the default base URL.
            Env var: TELEPOOL_REGION
        base_url: Explicit base URL, overriding the region default.
            Env var: TELEPOOL_BASE_URL (TELEPOOL_API_URL takes precedence)
        project_id: Project identifier sent with each ingest batch.
            Env var: TELEPOOL_PROJECT_ID
        session_token: Pooler session token (read from `<home>/.session` when unset).
        negotiate_timeout: Capacity negotiation timeout in seconds.
            Env var: TELEPOOL_NEGOTIATE_TIMEOUT
        send_timeout: Ingest request timeout in seconds.
            Env var: TELEPOOL_SEND_TIMEOUT
        client_version: Version reported during capacity negotiation.
    """

    api_key: str | None = field(default=None, metadata={"env": "TELEPOOL_API_KEY"})
    region: Region = field(default="us", metadata={"env": "TELEPOOL_REGION"})
    base_url: str | None = field(default=None, metadata={"env": "TELEPOOL_BASE_URL", "skip": True})
    project_id: str | None = field(default=None, metadata={"env": "TELEPOOL_PROJECT_ID"})
    session_token: str | None = None
    negotiate_timeout: float = field(default=10.0, metadata={"env": "TELEPOOL_NEGOTIATE_TIMEOUT"})
    send_timeout: float = field(default=30.0, metadata={"env": "TELEPOOL_SEND_TIMEOUT"})
    client_version: str = field(default_factory=_default_client_version)

    API_URL_ENV = "TELEPOOL_API_URL"

    @property
    def resolved_base_url(self) -> str:
        """The explicit base URL, or the default one for the region."""
        return self.base_url or REGION_BASE_URLS.get(self.region, REGION_BASE_URLS["us"])

    def has_credentials(self) -> bool:
        return bool(self.api_key)

    def env_overrides(self) -> dict[str, Any]:
        """Adds base_url, where TELEPOOL_API_URL wins over TELEPOOL_BASE_URL."""
        overrides = super().env_overrides()
        if base_url := (EnvVars.get(self.API_URL_ENV) or EnvVars.get("TELEPOOL_BASE_URL")):
            overrides["base_url"] = base_url
        return overrides

    def env_var_for(self, field_name: str) -> str | None:
        if field_name == "base_url" and os.environ.get(self.API_URL_ENV):
            return self.API_URL_ENV
        return super().env_var_for(field_name)

    def validate(self) -> Self:
        """Validate API configuration fields."""
        if self.api_key is not None and not isinstance(self.api_key, str):
            raise ConfigValidationError(
                "api_key", self.api_key,
                "Must be a string.", section="api"
            )
        if self.region not in REGION_BASE_URLS:
            raise ConfigValidationError(
                "region", self.region,
                f"Must be one of: {tuple(REGION_BASE_URLS)}.", section="api"
            )
        if self.base_url and not (self.base_url.startswith("http://") or self.base_url.startswith("https://")):
            raise ConfigValidationError(
                "base_url", self.base_url,
                "Must start with 'http://' or 'https://'.", section="api"
            )
        if self.negotiate_timeout <= 0:
            raise ConfigValidationError(
                "negotiate_timeout", self.negotiate_timeout,
                "Must be greater than 0.", section="api"
            )
        if self.send_timeout <= 0:
            raise ConfigValidationError(
                "send_timeout", self.send_timeout,
                "Must be greater than 0.", section="api"
            )
        return self


@dataclass(frozen=True)
class BackpressureConfig(OverridableConfig):
    """
    Tunables of the backpressure controller.

    Attributes:
        base_delay_ms: Backoff delay at level 0.
            Env var: TELEPOOL_BACKOFF_BASE_DELAY_MS
        multiplier: Growth factor per backoff level.
            Env var: TELEPOOL_BACKOFF_MULTIPLIER
        max_delay_ms: Ceiling of any backoff delay.
            Env var: TELEPOOL_BACKOFF_MAX_DELAY_MS
        max_backoff_level: Highest backoff level.
            Env var: TELEPOOL_BACKOFF_MAX_LEVEL
        circuit_breaker_threshold: Consecutive failures that open the breaker.
            Env var: TELEPOOL_CIRCUIT_BREAKER_THRESHOLD
        renegotiate_every: Events sent between two capacity negotiations.
            Env var: TELEPOOL_RENEGOTIATE_EVERY
        max_drain_duration: Seconds after which a drain stops starting new
            batches. None means no bound.
            Env var: TELEPOOL_MAX_DRAIN_DURATION ("none"/"unlimited" accepted)

    Example:
        >>> BackpressureConfig(base_delay_ms=500).to_policy().delay(1)
        1000
    """

    base_delay_ms: int = field(default=1000, metadata={"env": "TELEPOOL_BACKOFF_BASE_DELAY_MS"})
    multiplier: int = field(default=2, metadata={"env": "TELEPOOL_BACKOFF_MULTIPLIER"})
    max_delay_ms: int = field(default=300_000, metadata={"env": "TELEPOOL_BACKOFF_MAX_DELAY_MS"})
    max_backoff_level: int = field(default=10, metadata={"env": "TELEPOOL_BACKOFF_MAX_LEVEL"})
    circuit_breaker_threshold: int = field(default=10, metadata={"env": "TELEPOOL_CIRCUIT_BREAKER_THRESHOLD"})
    renegotiate_every: int = field(default=100, metadata={"env": "TELEPOOL_RENEGOTIATE_EVERY"})
    max_drain_duration: float | None = field(
        default=None,
        metadata={"env": "TELEPOOL_MAX_DRAIN_DURATION", "converter": _optional_seconds},
    )

    def with_overrides(
        self,
        overrides: dict[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """
        Return a new instance with specified fields overridden.

        `max_drain_duration` accepts None or "unlimited"/"none"/"null" to
        remove the bound.
        """
        if not overrides:
            return self

        processed = dict(overrides)
        value = processed.get("max_drain_duration")
        if isinstance(value, str) and value.lower() in _UNLIMITED:
            processed["max_drain_duration"] = None

        merged_allow_none = {"max_drain_duration"} | (allow_none_fields or set())
        return super().with_overrides(processed, allow_none_fields=merged_allow_none)

    def env_overrides(self) -> dict[str, Any]:
        overrides = super().env_overrides()
        # An explicit "unlimited" converts to None and must still count
        raw = os.environ.get("TELEPOOL_MAX_DRAIN_DURATION")
        if raw and raw.lower() in _UNLIMITED:
            overrides["max_drain_duration"] = None
        return overrides

    def to_policy(self) -> BackoffPolicy:
        """Build the BackoffPolicy described by this section."""
        return BackoffPolicy(
            base_delay_ms=self.base_delay_ms,
            multiplier=self.multiplier,
            max_delay_ms=self.max_delay_ms,
            max_backoff_level=self.max_backoff_level,
            circuit_breaker_threshold=self.circuit_breaker_threshold,
        )

    def validate(self) -> Self:
        """Validate backpressure configuration fields."""
        if self.base_delay_ms <= 0:
            raise ConfigValidationError(
                "base_delay_ms", self.base_delay_ms,
                "Must be greater than 0.", section="backpressure"
            )
        if self.multiplier < 1:
            raise ConfigValidationError(
                "multiplier", self.multiplier,
                "Must be >= 1.", section="backpressure"
            )
        if self.max_delay_ms < self.base_delay_ms:
            raise ConfigValidationError(
                "max_delay_ms", self.max_delay_ms,
                "Must be >= base_delay_ms.", section="backpressure"
            )
        if self.max_backoff_level < 0:
            raise ConfigValidationError(
                "max_backoff_level", self.max_backoff_level,
                "Must be >= 0.", section="backpressure"
            )
        if self.circuit_breaker_threshold <= 0:
            raise ConfigValidationError(
                "circuit_breaker_threshold", self.circuit_breaker_threshold,
                "Must be greater than 0.", section="backpressure"
            )
        if self.renegotiate_every <= 0:
            raise ConfigValidationError(
                "renegotiate_every", self.renegotiate_every,
                "Must be greater than 0.", section="backpressure"
            )
        if self.max_drain_duration is not None and self.max_drain_duration <= 0:
            raise ConfigValidationError(
                "max_drain_duration", self.max_drain_duration,
                "Must be greater than 0 (or None for unlimited).", section="backpressure"
            )
        return self


@dataclass(frozen=True)
class BufferConfig(OverridableConfig):
    """
    Local storage settings.

    Attributes:
        home_dir: Directory holding the buffer, state, log and config files.
            Env var: TELEPOOL_HOME
        batch_size: Buffered events required before a non-forced flush sends.
            Env var: TELEPOOL_BATCH_SIZE
        monitor_only: Capture events locally and discard them instead of sending.
            Env var: TELEPOOL_MONITOR_ONLY
    """

    home_dir: Path = field(
        default=DEFAULT_HOME_DIR,
        metadata={"env": "TELEPOOL_HOME", "converter": Path},
    )
    batch_size: int = field(default=20, metadata={"env": "TELEPOOL_BATCH_SIZE"})
    monitor_only: bool = field(default=False, metadata={"env": "TELEPOOL_MONITOR_ONLY"})

    @property
    def home(self) -> Path:
        return Path(self.home_dir).expanduser()

    @property
    def buffer_dir(self) -> Path:
        return self.home / "buffer"

    @property
    def state_file(self) -> Path:
        return self.home / ".backpressure-state"

    @property
    def log_file(self) -> Path:
        return self.home / "flush.log"

    @property
    def config_file(self) -> Path:
        return self.home / "config.json"

    @property
    def session_file(self) -> Path:
        return self.home / ".session"

    def validate(self) -> Self:
        """Validate buffer configuration fields."""
        if isinstance(self.batch_size, bool) or not isinstance(self.batch_size, int) or self.batch_size <= 0:
            raise ConfigValidationError(
                "batch_size", self.batch_size,
                "Must be an integer greater than 0.", section="buffer"
            )
        if not isinstance(self.monitor_only, bool):
            raise ConfigValidationError(
                "monitor_only", self.monitor_only,
                "Must be a boolean.", section="buffer"
            )
        return self


# =============================================================================
# Explain
# =============================================================================


@dataclass(frozen=True)
class ConfigEntry:
    """
    A configuration field with its resolved value and source.

    Attributes:
        name: The field name (e.g., "batch_size").
        value: The resolved value.
        source: Where the value came from: "default", "file", "env:VAR_NAME",
            "session" or "override".

    Example:
        >>> ConfigEntry("api_key", "dc_1234567890abcd", "file").formatted_value
        'dc_1********abcd'
    """

    name: str
    value: Any
    source: str

    SENSITIVE_FIELDS = ("api_key", "session_token")

    @property
    def formatted_value(self) -> str:
        """
        Return value formatted for display.

        Masks sensitive fields showing only first and last 4 characters,
        and truncates long strings.
        """
        if self.name in self.SENSITIVE_FIELDS and self.value is not None:
            secret = str(self.value)
            if len(secret) >= 12:
                return f"{secret[:4]}********{secret[-4:]}"
            if len(secret) >= 3:
                visible = max(1, len(secret) // 3)
                return f"********{secret[-visible:]}"
            return "********"

        if self.value is None:
            return "None"

        str_value = str(self.value)
        max_length = 50
        if len(str_value) > max_length:
            return str_value[: max_length - 3] + "..."

        return str_value


# =============================================================================
# Root Configuration
# =============================================================================


@dataclass(frozen=True)
class TelepoolConfig:
    """
    Complete telepool configuration.

    Attributes:
        api: Ingestion API connection settings.
        backpressure: Backpressure controller tunables.
        buffer: Local storage settings.

    Example:
        >>> config = TelepoolConfig.load(buffer={"batch_size": 5})
        >>> config.buffer.batch_size
        5
        >>> config.backpressure.to_policy().delay(3)
        8000
    """

    api: ApiConfig = field(default_factory=ApiConfig)
    backpressure: BackpressureConfig = field(default_factory=BackpressureConfig)
    buffer: BufferConfig = field(default_factory=BufferConfig)
    _sources: dict[str, dict[str, str]] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def load(
        cls,
        config_file: Path | None = None,
        *,
        api: dict[str, Any] | None = None,
        backpressure: dict[str, Any] | None = None,
        buffer: dict[str, Any] | None = None,
    ) -> TelepoolConfig:
        """
        Resolve the configuration from every source and validate it.

        The config file defaults to `<home>/config.json`, where `home` is
        taken from the overrides, TELEPOOL_HOME or the default directory.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
            ConfigValidationError: If a resolved value is invalid.
        """
        config = cls()
        if config_file is None:
            home = cls().with_env_vars().with_section_overrides(buffer=buffer).buffer
            config_file = home.config_file

        return (
            config.with_config_file(config_file)
            .with_env_vars()
            .with_section_overrides(api=api, backpressure=backpressure, buffer=buffer)
            .with_session_token()
            .validate()
        )

    def with_config_file(self, path: Path) -> TelepoolConfig:
        """
        Return a new config with the JSON config file applied.

        A missing file is not an error. An unreadable or malformed file is
        logged and ignored. Unknown keys are ignored.
        """
        try:
            data = load_json_file(Path(path).expanduser())
        except FileNotFoundError:
            return self
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️ Ignoring unreadable config file {path}: {e}")
            return self

        if not isinstance(data, dict):
            logger.warning(f"⚠️ Ignoring config file {path}: expected a JSON object")
            return self

        per_section: dict[str, dict[str, Any]] = {}
        for key, (section, name) in CONFIG_FILE_KEYS.items():
            if key in data and data[key] is not None:
                per_section.setdefault(section, {})[name] = data[key]

        return self._apply(per_section, lambda section, name: "file")

    def with_env_vars(self) -> TelepoolConfig:
        """Return a new config with TELEPOOL_* environment variables applied."""
        per_section = {name: getattr(self, name).env_overrides() for name in SECTIONS}
        return self._apply(
            per_section,
            lambda section, name: f"env:{getattr(self, section).env_var_for(name)}",
        )

    def with_section_overrides(
        self,
        *,
        api: dict[str, Any] | None = None,
        backpressure: dict[str, Any] | None = None,
        buffer: dict[str, Any] | None = None,
    ) -> TelepoolConfig:
        """Return a new config with explicit per-section overrides applied."""
        per_section = {"api": api or {}, "backpressure": backpressure or {}, "buffer": buffer or {}}
        return self._apply(per_section, lambda section, name: "override")

    def with_session_token(self, now: int | None = None) -> TelepoolConfig:
        """
        Return a new config with the session token read from `<home>/.session`.

        The session file is a JSON object `{"token": ..., "expiry": <epoch ms>}`.
        Expired, malformed or missing sessions are ignored, and an explicitly
        configured token is kept.
        """
        if self.api.session_token:
            return self
        try:
            session = load_json_file(self.buffer.session_file)
        except FileNotFoundError:
            return self
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️ Ignoring unreadable session file: {e}")
            return self

        if not isinstance(session, dict) or not isinstance(session.get("token"), str):
            logger.warning("⚠️ Ignoring session file without a token")
            return self

        expiry = session.get("expiry")
        now = now_ms() if now is None else now
        if isinstance(expiry, (int, float)) and expiry <= now:
            logger.info("Session token expired")
            return self

        return self._apply({"api": {"session_token": session["token"]}}, lambda section, name: "session")

    def validate(self) -> TelepoolConfig:
        """
        Validate every section.

        Raises:
            ConfigValidationError: If any field has an invalid value.
        """
        self.api.validate()
        self.backpressure.validate()
        self.buffer.validate()
        return self

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """
        Return every field with its resolved value and source.

        Example:
            >>> data = TelepoolConfig.load().explain_data()
            >>> [(e.name, e.source) for e in data["buffer"]][:2]
            [('home_dir', 'default'), ('batch_size', 'file')]
        """
        result: dict[str, list[ConfigEntry]] = {}
        for section_name in SECTIONS:
            section_config = getattr(self, section_name)
            section_sources = self._sources.get(section_name, {})
            result[section_name] = [
                ConfigEntry(
                    name=f.name,
                    value=getattr(section_config, f.name),
                    source=section_sources.get(f.name, "default"),
                )
                for f in fields(section_config)
            ]
        return result

    def _apply(
        self,
        per_section: dict[str, dict[str, Any]],
        source_of: Callable[[str, str], str],
    ) -> TelepoolConfig:
        sections = {name: getattr(self, name) for name in SECTIONS}
        sources = {name: dict(flds) for name, flds in self._sources.items()}

        for section_name, overrides in per_section.items():
            if not overrides:
                continue
            section = sections[section_name]
            updated = section.with_overrides(overrides)
            sections[section_name] = updated
            for name, value in overrides.items():
                # None overrides are dropped unless the field accepts None
                if value is not None or getattr(updated, name) is None:
                    sources.setdefault(section_name, {})[name] = source_of(section_name, name)

        return TelepoolConfig(**sections, _sources=sources)
