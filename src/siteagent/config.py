"""Configuration management with validation.

Configuration is read from the environment once at startup and validated
eagerly so that a misconfigured agent fails before it dials anything.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10
DEFAULT_CERT_CHECK_INTERVAL_SECONDS = 30
DEFAULT_SITE_CONTROLLER_CODEC = "protobuf"
SITE_CONTROLLER_CODECS = ("protobuf", "json")
MIN_CERT_CHECK_INTERVAL_SECONDS = 1
MAX_CERT_CHECK_INTERVAL_SECONDS = 3600

DEFAULT_TEMPORAL_PORT = 7233
DEFAULT_INVENTORY_SCHEDULE = "@every 3m"

# Number of items fetched from the Site Controller per call
DEFAULT_SITE_PAGE_SIZE = 100
# Number of items sent to the cloud per published inventory page
DEFAULT_CLOUD_PAGE_SIZE = 25
MAX_PAGE_SIZE = 1000

DEFAULT_METRICS_PORT = 9090
MAX_OVERRIDES_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max override file

VALID_SITE_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_ADDRESS_PATTERN = r"^[A-Za-z0-9.\-\[\]:]+:[0-9]{1,5}$"


@dataclass(frozen=True)
class SiteControllerConfig:
    """Connection parameters for the local Site Controller gRPC service.

    Mutual TLS is the default. ``skip_server_auth`` exists for test
    environments only and drops the server CA bundle from the handshake.

    Messages use the protobuf codec, loaded from the compiled descriptor
    set at ``descriptor_set_path``. ``codec="json"`` is for controllers
    that register a JSON codec and for local fakes.
    """

    address: str = ""
    secure: bool = True
    server_ca_path: Path | None = None
    client_cert_path: Path | None = None
    client_key_path: Path | None = None
    skip_server_auth: bool = False
    connect_timeout_seconds: int = DEFAULT_CONNECT_TIMEOUT_SECONDS
    cert_check_interval_seconds: int = DEFAULT_CERT_CHECK_INTERVAL_SECONDS
    codec: str = DEFAULT_SITE_CONTROLLER_CODEC
    descriptor_set_path: Path | None = None

    def validate(self) -> list[str]:
        errors: list[str] = []

        if not self.address:
            errors.append("SITE_CONTROLLER_ADDRESS is required")
        elif not re.match(VALID_ADDRESS_PATTERN, self.address):
            errors.append(f"SITE_CONTROLLER_ADDRESS must be host:port: {self.address}")

        if self.secure:
            if self.client_cert_path is None:
                errors.append("SITE_CONTROLLER_CLIENT_CERT_PATH is required when secure")
            if self.client_key_path is None:
                errors.append("SITE_CONTROLLER_CLIENT_KEY_PATH is required when secure")
            if self.server_ca_path is None and not self.skip_server_auth:
                errors.append("SITE_CONTROLLER_SERVER_CA_PATH is required when secure")

        if self.codec not in SITE_CONTROLLER_CODECS:
            errors.append(
                f"SITE_CONTROLLER_CODEC must be one of {', '.join(SITE_CONTROLLER_CODECS)}: {self.codec}"
            )
        elif self.codec == "protobuf":
            if self.descriptor_set_path is None:
                errors.append("SITE_CONTROLLER_DESCRIPTOR_SET is required for the protobuf codec")
            elif not self.descriptor_set_path.exists():
                errors.append(f"Descriptor set does not exist: {self.descriptor_set_path}")

        if self.connect_timeout_seconds < 1:
            errors.append("SITE_CONTROLLER_CONNECT_TIMEOUT must be at least 1 second")

        if not (
            MIN_CERT_CHECK_INTERVAL_SECONDS
            <= self.cert_check_interval_seconds
            <= MAX_CERT_CHECK_INTERVAL_SECONDS
        ):
            errors.append(
                f"CERT_CHECK_INTERVAL must be between {MIN_CERT_CHECK_INTERVAL_SECONDS} "
                f"and {MAX_CERT_CHECK_INTERVAL_SECONDS} seconds"
            )

        return errors


@dataclass(frozen=True)
class TemporalConfig:
    """Cloud workflow engine endpoints.

    The subscribe namespace/queue carries operation requests from the cloud,
    the publish namespace/queue carries results and inventory back.
    """

    host: str = ""
    port: int = DEFAULT_TEMPORAL_PORT
    publish_namespace: str = ""
    subscribe_namespace: str = ""
    publish_queue: str = ""
    subscribe_queue: str = ""
    enable_tls: bool = False
    ca_cert_path: Path | None = None
    client_cert_path: Path | None = None
    client_key_path: Path | None = None
    server_name: str | None = None
    inventory_schedule: str = DEFAULT_INVENTORY_SCHEDULE

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"

    def validate(self) -> list[str]:
        errors: list[str] = []

        if not self.host:
            errors.append("TEMPORAL_HOST is required")
        if not (0 < self.port < 65536):
            errors.append(f"TEMPORAL_PORT must be a valid port: {self.port}")
        for name, value in (
            ("TEMPORAL_PUBLISH_NAMESPACE", self.publish_namespace),
            ("TEMPORAL_SUBSCRIBE_NAMESPACE", self.subscribe_namespace),
            ("TEMPORAL_PUBLISH_QUEUE", self.publish_queue),
            ("TEMPORAL_SUBSCRIBE_QUEUE", self.subscribe_queue),
        ):
            if not value:
                errors.append(f"{name} is required")

        if self.enable_tls:
            if self.ca_cert_path is None:
                errors.append("TEMPORAL_CA_CERT_PATH is required when TLS is enabled")
            if self.client_cert_path is None or self.client_key_path is None:
                errors.append(
                    "TEMPORAL_CLIENT_CERT_PATH and TEMPORAL_CLIENT_KEY_PATH are required "
                    "when TLS is enabled"
                )

        if not self.inventory_schedule:
            errors.append("TEMPORAL_INVENTORY_SCHEDULE cannot be empty")

        return errors


@dataclass(frozen=True)
class InventoryConfig:
    """Page sizes for inventory discovery."""

    site_page_size: int = DEFAULT_SITE_PAGE_SIZE
    cloud_page_size: int = DEFAULT_CLOUD_PAGE_SIZE

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not (1 <= self.site_page_size <= MAX_PAGE_SIZE):
            errors.append(f"INVENTORY_SITE_PAGE_SIZE must be between 1 and {MAX_PAGE_SIZE}")
        if not (1 <= self.cloud_page_size <= MAX_PAGE_SIZE):
            errors.append(f"INVENTORY_CLOUD_PAGE_SIZE must be between 1 and {MAX_PAGE_SIZE}")
        return errors


@dataclass(frozen=True)
class Config:
    """Site agent configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    site_id: str

    site_controller: SiteControllerConfig = field(default_factory=SiteControllerConfig)
    temporal: TemporalConfig = field(default_factory=TemporalConfig)
    inventory: InventoryConfig = field(default_factory=InventoryConfig)

    metrics_port: int = DEFAULT_METRICS_PORT
    overrides_path: Path | None = None
    dev_mode: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.site_id:
            errors.append("SITE_ID is required")
        elif not re.match(VALID_SITE_ID_PATTERN, self.site_id.lower()):
            errors.append(f"SITE_ID must be a valid UUID: {self.site_id}")

        errors.extend(self.site_controller.validate())
        errors.extend(self.temporal.validate())
        errors.extend(self.inventory.validate())

        if not (0 <= self.metrics_port < 65536):
            errors.append(f"METRICS_PORT must be a valid port or 0: {self.metrics_port}")

        if self.overrides_path is not None and not self.overrides_path.exists():
            errors.append(f"Overrides file does not exist: {self.overrides_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            SITE_ID: UUID of the site this agent serves
            SITE_CONTROLLER_ADDRESS: host:port of the Site Controller
            SITE_CONTROLLER_SECURE: Use mutual TLS (default: true)
            SITE_CONTROLLER_SERVER_CA_PATH: Server CA bundle
            SITE_CONTROLLER_CLIENT_CERT_PATH: Client certificate
            SITE_CONTROLLER_CLIENT_KEY_PATH: Client private key
            SITE_CONTROLLER_SKIP_SERVER_AUTH: Skip server verification (test only)
            SITE_CONTROLLER_CONNECT_TIMEOUT: Seconds to wait for the channel (default: 10)
            SITE_CONTROLLER_CODEC: protobuf or json (default: protobuf)
            SITE_CONTROLLER_DESCRIPTOR_SET: Compiled descriptor set for the protobuf codec
            CERT_CHECK_INTERVAL: Seconds between certificate checks (default: 30)
            TEMPORAL_HOST / TEMPORAL_PORT: Cloud workflow engine endpoint
            TEMPORAL_PUBLISH_NAMESPACE / TEMPORAL_PUBLISH_QUEUE: Site to cloud channel
            TEMPORAL_SUBSCRIBE_NAMESPACE / TEMPORAL_SUBSCRIBE_QUEUE: Cloud to site channel
            TEMPORAL_ENABLE_TLS: Enable TLS to the workflow engine (default: false)
            TEMPORAL_CA_CERT_PATH / TEMPORAL_CLIENT_CERT_PATH / TEMPORAL_CLIENT_KEY_PATH
            TEMPORAL_SERVER_NAME: TLS server name override
            TEMPORAL_INVENTORY_SCHEDULE: Inventory schedule (default: @every 3m)
            INVENTORY_SITE_PAGE_SIZE: Items per Site Controller fetch (default: 100)
            INVENTORY_CLOUD_PAGE_SIZE: Items per published page (default: 25)
            METRICS_PORT: Prometheus port, 0 disables (default: 9090)
            SITE_AGENT_OVERRIDES: Optional YAML override file
            DEV_MODE: Development mode (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        site_controller = SiteControllerConfig(
            address=os.environ.get("SITE_CONTROLLER_ADDRESS", ""),
            secure=get_bool("SITE_CONTROLLER_SECURE", True),
            server_ca_path=get_path("SITE_CONTROLLER_SERVER_CA_PATH"),
            client_cert_path=get_path("SITE_CONTROLLER_CLIENT_CERT_PATH"),
            client_key_path=get_path("SITE_CONTROLLER_CLIENT_KEY_PATH"),
            skip_server_auth=get_bool("SITE_CONTROLLER_SKIP_SERVER_AUTH", False),
            connect_timeout_seconds=get_int(
                "SITE_CONTROLLER_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT_SECONDS
            ),
            cert_check_interval_seconds=get_int(
                "CERT_CHECK_INTERVAL", DEFAULT_CERT_CHECK_INTERVAL_SECONDS
            ),
            codec=os.environ.get("SITE_CONTROLLER_CODEC", DEFAULT_SITE_CONTROLLER_CODEC).lower(),
            descriptor_set_path=get_path("SITE_CONTROLLER_DESCRIPTOR_SET"),
        )

        temporal = TemporalConfig(
            host=os.environ.get("TEMPORAL_HOST", ""),
            port=get_int("TEMPORAL_PORT", DEFAULT_TEMPORAL_PORT),
            publish_namespace=os.environ.get("TEMPORAL_PUBLISH_NAMESPACE", ""),
            subscribe_namespace=os.environ.get("TEMPORAL_SUBSCRIBE_NAMESPACE", ""),
            publish_queue=os.environ.get("TEMPORAL_PUBLISH_QUEUE", ""),
            subscribe_queue=os.environ.get("TEMPORAL_SUBSCRIBE_QUEUE", ""),
            enable_tls=get_bool("TEMPORAL_ENABLE_TLS", False),
            ca_cert_path=get_path("TEMPORAL_CA_CERT_PATH"),
            client_cert_path=get_path("TEMPORAL_CLIENT_CERT_PATH"),
            client_key_path=get_path("TEMPORAL_CLIENT_KEY_PATH"),
            server_name=os.environ.get("TEMPORAL_SERVER_NAME") or None,
            inventory_schedule=os.environ.get(
                "TEMPORAL_INVENTORY_SCHEDULE", DEFAULT_INVENTORY_SCHEDULE
            ),
        )

        inventory = InventoryConfig(
            site_page_size=get_int("INVENTORY_SITE_PAGE_SIZE", DEFAULT_SITE_PAGE_SIZE),
            cloud_page_size=get_int("INVENTORY_CLOUD_PAGE_SIZE", DEFAULT_CLOUD_PAGE_SIZE),
        )

        return cls(
            site_id=os.environ.get("SITE_ID", ""),
            site_controller=site_controller,
            temporal=temporal,
            inventory=inventory,
            metrics_port=get_int("METRICS_PORT", DEFAULT_METRICS_PORT),
            overrides_path=get_path("SITE_AGENT_OVERRIDES"),
            dev_mode=get_bool("DEV_MODE", False),
        )
