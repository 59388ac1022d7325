# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the PortMail service.

Configuration is read once at process start from an INI file, with
``PM_*`` environment variables taking precedence over file values. The
result is a :class:`ServiceConfig` that is passed explicitly to the
service, the dispatcher and the mail sender.

Example:
    Configuration file format (config.ini)::

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = change-me
        cron_secret = another-secret
        environment = production

        [storage]
        db_path = /data/portmail.db
        backend = local
        base_dir = /data/attachments
        timeout_seconds = 30

        [smtp]
        host = smtp.gmail.com
        port = 465
        user = agency@example.com
        password = app-password
        use_tls = true

        [delivery]
        batch_size = 50
        self_trigger_interval = 60
        log_delivery_activity = false

    Loading it::

        config = load_config("/etc/portmail/config.ini")
        config.smtp.require_credentials()

Environment variables:
    PM_CONFIG, PM_HOST, PM_PORT, PM_API_TOKEN, PM_CRON_SECRET,
    PM_ENVIRONMENT, PM_DB_PATH, PM_STORAGE_BACKEND, PM_STORAGE_BASE_DIR,
    PM_STORAGE_ENDPOINT, PM_STORAGE_BUCKET, PM_STORAGE_TOKEN,
    PM_STORAGE_TIMEOUT, PM_SMTP_HOST, PM_SMTP_PORT, PM_SMTP_USER,
    PM_SMTP_PASSWORD, PM_SMTP_SENDER, PM_SMTP_USE_TLS, PM_SMTP_TIMEOUT,
    PM_BATCH_SIZE, PM_SELF_TRIGGER_INTERVAL, PM_LOG_DELIVERY_ACTIVITY.
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .errors import ConfigurationError
from .logger import get_logger

DEFAULT_BATCH_SIZE = 50
DEFAULT_SELF_TRIGGER_INTERVAL = 60.0
STORAGE_BACKENDS = {"local", "http"}

logger = get_logger("Config")


@dataclass
class SMTPSettings:
    """SMTP relay connection settings.

    Attributes:
        host: Relay hostname.
        port: Relay port. 465 uses implicit TLS, other ports use STARTTLS
            when ``use_tls`` is set.
        user: Login user. Also the default sender address.
        password: Login password (for Gmail, an app password).
        sender: Explicit From address; falls back to ``user``.
        use_tls: Whether to encrypt the connection.
        timeout_seconds: Upper bound for a single send.
    """

    host: str = "smtp.gmail.com"
    port: int = 465
    user: str | None = None
    password: str | None = None
    sender: str | None = None
    use_tls: bool = True
    timeout_seconds: float = 30.0

    @property
    def from_address(self) -> str | None:
        return self.sender or self.user

    def require_credentials(self) -> None:
        """Fail fast when the relay cannot be used.

        Raises:
            ConfigurationError: If host, user or password is missing.
        """
        missing = [
            name
            for name, value in (("host", self.host), ("user", self.user), ("password", self.password))
            if not value
        ]
        if missing:
            raise ConfigurationError(
                "SMTP configuration incomplete: missing " + ", ".join(f"smtp.{name}" for name in missing)
                + " (set PM_SMTP_USER and PM_SMTP_PASSWORD)"
            )


@dataclass
class StorageSettings:
    """Job store and file store settings.

    Attributes:
        db_path: SQLite database path, ``":memory:"`` is not supported
            because every operation opens its own connection.
        backend: File store backend, ``local`` or ``http``.
        base_dir: Root directory of the local file store.
        endpoint: Base URL of the HTTP object storage.
        bucket: Bucket holding ship attachments.
        token: Bearer token for the HTTP object storage.
        timeout_seconds: Upper bound for a single attachment download.
    """

    db_path: str = "/data/portmail.db"
    backend: str = "local"
    base_dir: str | None = None
    endpoint: str | None = None
    bucket: str = "ship-attachments"
    token: str | None = None
    timeout_seconds: float = 30.0

    def validate(self) -> None:
        """Check that the selected backend has what it needs.

        Raises:
            ConfigurationError: On an unknown backend or missing settings.
        """
        if not self.db_path:
            raise ConfigurationError("storage.db_path is required")
        if self.backend not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"Unknown storage backend '{self.backend}' (expected one of {sorted(STORAGE_BACKENDS)})"
            )
        if self.backend == "http" and not self.endpoint:
            raise ConfigurationError("storage.endpoint is required for the http backend")


@dataclass
class ServiceConfig:
    """Complete service configuration assembled once at process start.

    Attributes:
        host: API bind address.
        port: API port.
        api_token: Secret expected in ``X-API-Token`` for CRUD routes.
            ``None`` disables the check.
        cron_secret: Shared secret expected as ``Authorization: Bearer``
            on the sweep trigger route.
        environment: ``production`` or ``development``. Outside
            production the cron secret is not enforced and the local
            self-trigger runs.
        batch_size: Maximum jobs handled by a single sweep.
        self_trigger_interval: Seconds between development sweeps.
        log_delivery_activity: Log every delivery attempt at INFO level.
        smtp: Mail relay settings.
        storage: Job store and file store settings.
    """

    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    cron_secret: str | None = None
    environment: str = "production"
    batch_size: int = DEFAULT_BATCH_SIZE
    self_trigger_interval: float = DEFAULT_SELF_TRIGGER_INTERVAL
    log_delivery_activity: bool = False
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def load_config(
    config_path: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> ServiceConfig:
    """Build a :class:`ServiceConfig` from an INI file and the environment.

    Args:
        config_path: INI file path. Defaults to ``PM_CONFIG`` or
            ``config.ini``. A missing file is not an error.
        environ: Environment mapping, ``os.environ`` by default.

    Returns:
        The assembled configuration.

    Raises:
        ConfigurationError: If a numeric option cannot be parsed or the
            storage settings are inconsistent.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("PM_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
        logger.debug("Loaded configuration file %s", path)

    def get(section: str, option: str, env_name: str, default: str | None = None) -> str | None:
        if env_name in env and env[env_name] != "":
            return env[env_name]
        if parser.has_option(section, option):
            return parser.get(section, option)
        return default

    def get_int(section: str, option: str, env_name: str, default: int) -> int:
        value = get(section, option, env_name)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigurationError(f"{section}.{option} must be an integer, got {value!r}") from exc

    def get_float(section: str, option: str, env_name: str, default: float) -> float:
        value = get(section, option, env_name)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigurationError(f"{section}.{option} must be a number, got {value!r}") from exc

    smtp = SMTPSettings(
        host=get("smtp", "host", "PM_SMTP_HOST", SMTPSettings.host),
        port=get_int("smtp", "port", "PM_SMTP_PORT", SMTPSettings.port),
        user=get("smtp", "user", "PM_SMTP_USER"),
        password=get("smtp", "password", "PM_SMTP_PASSWORD"),
        sender=get("smtp", "sender", "PM_SMTP_SENDER"),
        use_tls=_parse_bool(get("smtp", "use_tls", "PM_SMTP_USE_TLS"), SMTPSettings.use_tls),
        timeout_seconds=get_float("smtp", "timeout_seconds", "PM_SMTP_TIMEOUT", SMTPSettings.timeout_seconds),
    )
    storage = StorageSettings(
        db_path=get("storage", "db_path", "PM_DB_PATH", StorageSettings.db_path),
        backend=(get("storage", "backend", "PM_STORAGE_BACKEND", StorageSettings.backend) or "").lower(),
        base_dir=get("storage", "base_dir", "PM_STORAGE_BASE_DIR"),
        endpoint=get("storage", "endpoint", "PM_STORAGE_ENDPOINT"),
        bucket=get("storage", "bucket", "PM_STORAGE_BUCKET", StorageSettings.bucket),
        token=get("storage", "token", "PM_STORAGE_TOKEN"),
        timeout_seconds=get_float("storage", "timeout_seconds", "PM_STORAGE_TIMEOUT", StorageSettings.timeout_seconds),
    )
    storage.validate()

    return ServiceConfig(
        host=get("server", "host", "PM_HOST", ServiceConfig.host),
        port=get_int("server", "port", "PM_PORT", ServiceConfig.port),
        api_token=get("server", "api_token", "PM_API_TOKEN"),
        cron_secret=get("server", "cron_secret", "PM_CRON_SECRET"),
        environment=get("server", "environment", "PM_ENVIRONMENT", ServiceConfig.environment),
        batch_size=max(1, get_int("delivery", "batch_size", "PM_BATCH_SIZE", DEFAULT_BATCH_SIZE)),
        self_trigger_interval=max(
            1.0,
            get_float("delivery", "self_trigger_interval", "PM_SELF_TRIGGER_INTERVAL", DEFAULT_SELF_TRIGGER_INTERVAL),
        ),
        log_delivery_activity=_parse_bool(
            get("delivery", "log_delivery_activity", "PM_LOG_DELIVERY_ACTIVITY"), False
        ),
        smtp=smtp,
        storage=storage,
    )
