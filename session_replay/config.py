"""Configuration module — frozen dataclasses for the recorder and the server.

The recorder reads its settings from a YAML file whose keys follow the
camelCase names of the configuration surface (``applicationId``,
``networkConfig.batchSize`` ...). The server reads fixed values from
environment variables once at startup.
"""

import copy
import logging
import os
from dataclasses import dataclass, field

import yaml

from session_replay.errors import ConfigError

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}
APP_ENVS = ("development", "test", "production")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


# ----------------------------------------------------------------------
# Recorder (client) configuration
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class PrivacySettings:
    mask_inputs: bool = True
    excluded_elements: tuple[str, ...] = ()
    excluded_pages: tuple[str, ...] = ()
    mask_text_content: bool = False


@dataclass(frozen=True)
class NetworkConfig:
    endpoint: str = "http://localhost:3000/api/events"
    batch_size: int = 50
    flush_interval: int = 5000  # ms
    retry_attempts: int = 3
    retry_delay: int = 1000  # ms
    auth_token: str | None = None
    request_timeout: int = 10000  # ms
    max_pending_batches: int = 20


@dataclass(frozen=True)
class RecordingConfig:
    application_id: str
    sampling_rate: float = 1.0
    privacy_settings: PrivacySettings = field(default_factory=PrivacySettings)
    network_config: NetworkConfig = field(default_factory=NetworkConfig)
    debug: bool = False

    def __post_init__(self):
        if not self.application_id:
            raise ConfigError("applicationId is required")
        if not 0.0 <= self.sampling_rate <= 1.0:
            raise ConfigError(
                f"samplingRate must be between 0 and 1, got {self.sampling_rate}"
            )
        net = self.network_config
        if net.batch_size < 1:
            raise ConfigError("networkConfig.batchSize must be at least 1")
        if net.flush_interval <= 0:
            raise ConfigError("networkConfig.flushInterval must be positive")
        if net.retry_attempts < 0 or net.retry_delay < 0:
            raise ConfigError("networkConfig retry settings must not be negative")
        if net.max_pending_batches < 1:
            raise ConfigError("networkConfig.maxPendingBatches must be at least 1")


DEFAULTS = {
    "applicationId": None,
    "samplingRate": 1.0,
    "debug": False,
    "privacySettings": {
        "maskInputs": True,
        "excludedElements": [],
        "excludedPages": [],
        "maskTextContent": False,
    },
    "networkConfig": {
        "endpoint": NetworkConfig.endpoint,
        "batchSize": NetworkConfig.batch_size,
        "flushInterval": NetworkConfig.flush_interval,
        "retryAttempts": NetworkConfig.retry_attempts,
        "retryDelay": NetworkConfig.retry_delay,
        "authToken": None,
        "requestTimeout": NetworkConfig.request_timeout,
        "maxPendingBatches": NetworkConfig.max_pending_batches,
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override dict into base dict."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def recording_config_from_dict(data: dict | None) -> RecordingConfig:
    """Build a RecordingConfig from camelCase settings, filling in defaults."""
    merged = _deep_merge(DEFAULTS, data or {})
    privacy = merged["privacySettings"]
    network = merged["networkConfig"]
    try:
        return RecordingConfig(
            application_id=merged["applicationId"],
            sampling_rate=float(merged["samplingRate"]),
            debug=bool(merged["debug"]),
            privacy_settings=PrivacySettings(
                mask_inputs=bool(privacy["maskInputs"]),
                excluded_elements=tuple(privacy["excludedElements"] or ()),
                excluded_pages=tuple(privacy["excludedPages"] or ()),
                mask_text_content=bool(privacy["maskTextContent"]),
            ),
            network_config=NetworkConfig(
                endpoint=network["endpoint"],
                batch_size=int(network["batchSize"]),
                flush_interval=int(network["flushInterval"]),
                retry_attempts=int(network["retryAttempts"]),
                retry_delay=int(network["retryDelay"]),
                auth_token=network["authToken"],
                request_timeout=int(network["requestTimeout"]),
                max_pending_batches=int(network["maxPendingBatches"]),
            ),
        )
    except ConfigError:
        raise
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid recording config: {exc}") from exc


def load_recording_config(path: str | None, overrides: dict | None = None) -> RecordingConfig:
    """Load a RecordingConfig from a YAML file, then apply *overrides*."""
    data: dict = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            logger.info("Loaded recording config from %s", path)
        except FileNotFoundError:
            logger.warning("Config file %s not found, using defaults", path)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping")
    if overrides:
        data = _deep_merge(data, overrides)
    return recording_config_from_dict(data)


# ----------------------------------------------------------------------
# Server configuration
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    jwt_secret: str
    app_env: str = "development"
    host: str = "0.0.0.0"
    port: int = 3000
    data_dir: str = "./data"
    db_name: str = "session_replay"
    jwt_expiration_hours: int = 24
    cors_origins: tuple[str, ...] = ("*",)
    session_retention_days: int = 30
    max_events_per_session: int = 10000
    rate_limit_window_minutes: int = 15
    rate_limit_max_requests: int = 100
    enable_request_logging: bool = True
    log_level: str = "info"
    reaper_interval_minutes: int = 60
    max_batch_events: int = 500

    @property
    def database_path(self) -> str:
        return os.path.join(self.data_dir, self.db_name + ".db")

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def logging_level(self) -> int:
        return LOG_LEVELS[self.log_level]


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def load_server_config() -> ServerConfig:
    """Build ServerConfig from environment variables with sensible defaults."""
    secret = os.environ.get("JWT_SECRET")
    if not secret:
        raise ConfigError("JWT secret is required (set JWT_SECRET)")

    app_env = os.environ.get("APP_ENV", ServerConfig.app_env).lower()
    if app_env not in APP_ENVS:
        raise ConfigError(f"APP_ENV must be one of {', '.join(APP_ENVS)}")

    log_level = os.environ.get("LOG_LEVEL", ServerConfig.log_level).lower()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

    raw_origins = os.environ.get("CORS_ORIGINS", "*")
    if raw_origins.strip() == "*":
        origins = ("*",)
    else:
        origins = tuple(o.strip() for o in raw_origins.split(",") if o.strip())

    config = ServerConfig(
        jwt_secret=secret,
        app_env=app_env,
        host=os.environ.get("SERVER_HOST", ServerConfig.host),
        port=_int_env("PORT", ServerConfig.port),
        data_dir=os.environ.get("DATA_DIR", ServerConfig.data_dir),
        db_name=os.environ.get("DB_NAME", ServerConfig.db_name),
        jwt_expiration_hours=_int_env("JWT_EXPIRATION_HOURS", ServerConfig.jwt_expiration_hours),
        cors_origins=origins,
        session_retention_days=_int_env(
            "SESSION_RETENTION_DAYS", ServerConfig.session_retention_days
        ),
        max_events_per_session=_int_env(
            "MAX_EVENTS_PER_SESSION", ServerConfig.max_events_per_session
        ),
        rate_limit_window_minutes=_int_env(
            "RATE_LIMIT_WINDOW_MINUTES", ServerConfig.rate_limit_window_minutes
        ),
        rate_limit_max_requests=_int_env(
            "RATE_LIMIT_MAX_REQUESTS", ServerConfig.rate_limit_max_requests
        ),
        enable_request_logging=_parse_bool(os.environ.get("ENABLE_REQUEST_LOGGING", "true")),
        log_level=log_level,
        reaper_interval_minutes=_int_env(
            "REAPER_INTERVAL_MINUTES", ServerConfig.reaper_interval_minutes
        ),
        max_batch_events=_int_env("MAX_BATCH_EVENTS", ServerConfig.max_batch_events),
    )

    for name in (
        "session_retention_days",
        "max_events_per_session",
        "rate_limit_window_minutes",
        "rate_limit_max_requests",
        "jwt_expiration_hours",
        "reaper_interval_minutes",
        "max_batch_events",
    ):
        if getattr(config, name) < 1:
            raise ConfigError(f"{name.upper()} must be at least 1")
    return config
