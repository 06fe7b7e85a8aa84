from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from purgeman.cache.purge import CacheTarget
from purgeman.errors import ConfigurationError

AMQP_PORT_DEFAULT = 5672
IRODS_PORT_DEFAULT = 1247
VARNISH_URL_PREFIX_DEFAULT = "http://127.0.0.1:6081/"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PURGEMAN_", extra="ignore")

    # AMQP
    amqp_host: str = ""
    amqp_port: int = AMQP_PORT_DEFAULT
    amqp_vhost: str = ""
    amqp_exchange: str = ""
    amqp_queue: str = ""
    amqp_username: str = ""
    amqp_password: str = ""

    # iRODS
    irods_host: str = ""
    irods_port: int = IRODS_PORT_DEFAULT
    irods_username: str = ""
    irods_password: str = ""
    irods_zone: str = ""
    uuid_attribute: str = "ipc_UUID"

    # Varnish
    varnish_urls: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [VARNISH_URL_PREFIX_DEFAULT]
    )
    varnish_hosts_override: Annotated[list[str], NoDecode] = Field(default_factory=list)
    purge_timeout: float = 30.0

    # Service
    retry_interval: float = 60.0
    max_concurrent_handlers: int = 0  # 0 = unbounded

    # Observability
    log_path: str = ""
    log_level: str = "INFO"
    log_json: bool = False
    metrics_port: int = 0

    # Process
    foreground: bool = False
    child_process: bool = False

    @field_validator("varnish_urls", "varnish_hosts_override", mode="before")
    @classmethod
    def _split_list(cls, value: Any) -> Any:
        """Accept comma separated strings as well as lists."""
        if value is None:
            return []
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @classmethod
    def from_env(cls) -> Settings:
        """Create settings from PURGEMAN_* environment variables."""
        try:
            return cls()
        except ValidationError as e:
            raise ConfigurationError(f"Env Read Error - {e}") from e

    @classmethod
    def from_yaml(cls, yaml_bytes: bytes | str) -> Settings:
        """Create settings from a YAML document.

        Environment variables are not consulted; fields missing from the
        document keep their defaults.
        """
        try:
            data = yaml.safe_load(yaml_bytes)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"YAML Unmarshal Error - {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("YAML Unmarshal Error - document is not a mapping")

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"YAML Unmarshal Error - {e}") from e

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> Settings:
        """Create settings from a local YAML file."""
        abs_path = Path(path).expanduser().resolve()
        if not abs_path.exists():
            raise ConfigurationError(f"failed to access the local yaml file {abs_path}")
        if not abs_path.is_file():
            raise ConfigurationError(f"local yaml file {abs_path} is not a file")

        try:
            content = abs_path.read_bytes()
        except OSError as e:
            raise ConfigurationError(f"failed to read the local yaml file {abs_path}") from e

        return cls.from_yaml(content)

    def to_yaml(self) -> bytes:
        """Serialize to YAML, the form handed to a background child."""
        return yaml.safe_dump(self.model_dump(mode="json"), sort_keys=False).encode("utf-8")

    def validate_config(self) -> None:
        """Check that every value required to run the service is set.

        Raises:
            ConfigurationError: On the first missing or invalid value.
        """
        if not self.amqp_host:
            raise ConfigurationError("AMQP hostname must be given")
        if self.amqp_port <= 0:
            raise ConfigurationError("AMQP port must be given")
        if not self.amqp_vhost:
            raise ConfigurationError("AMQP vhost must be given")
        if not self.amqp_exchange and not self.amqp_queue:
            raise ConfigurationError("either AMQP exchange or AMQP Queue must be given")
        if not self.amqp_username:
            raise ConfigurationError("AMQP username must be given")
        if not self.amqp_password:
            raise ConfigurationError("AMQP password must be given")

        if not self.irods_host:
            raise ConfigurationError("IRODS hostname must be given")
        if self.irods_port <= 0:
            raise ConfigurationError("IRODS port must be given")
        if not self.irods_username:
            raise ConfigurationError("IRODS username must be given")
        if not self.irods_password:
            raise ConfigurationError("IRODS password must be given")
        if not self.irods_zone:
            raise ConfigurationError("IRODS zone must be given")

        if not self.varnish_urls:
            raise ConfigurationError("Varnish URL Prefix is not given")

        if self.retry_interval < 0:
            raise ConfigurationError("retry interval must not be negative")
        if self.max_concurrent_handlers < 0:
            raise ConfigurationError("max concurrent handlers must not be negative")

    def cache_targets(self) -> list[CacheTarget]:
        """Build cache targets, aligning host overrides by index."""
        targets = []
        for idx, url_prefix in enumerate(self.varnish_urls):
            host_override = None
            if idx < len(self.varnish_hosts_override):
                host_override = self.varnish_hosts_override[idx] or None
            targets.append(CacheTarget(url_prefix=url_prefix, host_override=host_override))
        return targets
