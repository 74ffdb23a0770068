"""
Configuration module for the Prefix Gateway.

Two sources feed the gateway:

- Runtime settings (Pydantic Settings): where the route document lives,
  bind host/port, upstream timeout, log level. Loaded from environment
  variables or a .env file.
- The route document (JSON): listen port, prefix -> target mapping and
  optional egress proxies. Parsed and validated here into an immutable
  GatewayConfig.

Any problem with either is a ConfigurationError and must stop the process
before it starts listening.

Route document format:
    {
      "port": "8080",
      "api_mapping": {
        "/svc/": "http://backend.local/base",
        "/api/": {
          "target_url": "https://api.example.com/",
          "proxy": {"type": "socks5", "address": "127.0.0.1:1080"}
        }
      },
      "proxy": {"type": "http", "url": "http://proxy.local:3128"}
    }
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError
from .models import EgressConfig, EgressKind, GatewayConfig, Route, RouteTable

logger = logging.getLogger(__name__)

SUPPORTED_PROXY_TYPES = ("http", "socks5")


class Settings(BaseSettings):
    """
    Runtime settings loaded from environment variables.
    """

    GATEWAY_CONFIG_FILE: str = Field(
        default="api.json",
        description="Path to the JSON route document",
    )

    GATEWAY_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the gateway server",
    )

    GATEWAY_PORT: Optional[int] = Field(
        default=None,
        description="Overrides the route document's port when set",
        ge=1,
        le=65535,
    )

    UPSTREAM_TIMEOUT_SECONDS: Optional[float] = Field(
        default=None,
        description="Upstream timeout in seconds; unset means no timeout",
        gt=0,
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}, got: {v}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """
    Get or create the cached Settings instance.

    Raises:
        ValidationError: If an environment variable holds an invalid value
    """
    return Settings()


# =============================================================================
# Route Document Schema
# =============================================================================

class ProxyDescriptor(BaseModel):
    """
    Egress proxy as written in the route document.

    The address may be given as ``address`` or, for older documents, as
    ``url``; ``address`` wins when both are set.
    """

    model_config = ConfigDict(extra="ignore")

    type: StrictStr
    address: Optional[StrictStr] = None
    url: Optional[StrictStr] = None

    @property
    def resolved_address(self) -> str:
        return self.address or self.url or ""


class TargetDescriptor(BaseModel):
    """Object form of an api_mapping value."""

    model_config = ConfigDict(extra="ignore")

    target_url: StrictStr = ""
    proxy: Optional[ProxyDescriptor] = None


class RouteDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    port: Optional[Union[StrictStr, int]] = None
    api_mapping: Dict[str, Union[StrictStr, TargetDescriptor]] = Field(default_factory=dict)
    proxy: Optional[ProxyDescriptor] = None


# =============================================================================
# Loading & Validation
# =============================================================================

def build_egress(descriptor: ProxyDescriptor, where: str) -> EgressConfig:
    """
    Validate a proxy descriptor and turn it into an EgressConfig.

    Raises:
        ConfigurationError: On unsupported type, empty or unparseable address
    """
    address = descriptor.resolved_address
    if descriptor.type not in SUPPORTED_PROXY_TYPES or not address:
        raise ConfigurationError(
            f"Invalid {where} proxy configuration: type={descriptor.type}, address/url={address}"
        )

    kind = EgressKind(descriptor.type)
    try:
        return EgressConfig(kind=kind, address=address)
    except ValidationError as e:
        reason = "; ".join(err["msg"] for err in e.errors())
        raise ConfigurationError(
            f"Invalid {where} {kind.value} proxy address {address!r}: {reason}"
        ) from e


def parse_port(value: Union[str, int, None]) -> int:
    if value is None or value == "":
        raise ConfigurationError("Listen port is not configured")
    try:
        port = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid listen port: {value!r}") from e
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"Listen port out of range: {port}")
    return port


def build_gateway_config(data: object, port_override: Optional[int] = None) -> GatewayConfig:
    """
    Validate a decoded route document and build the GatewayConfig.

    Args:
        data: Decoded JSON document
        port_override: Listen port taking precedence over the document's

    Raises:
        ConfigurationError: If any routing invariant is violated
    """
    try:
        document = RouteDocument.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Failed to parse configuration: {e}") from e

    global_egress = None
    if document.proxy is not None:
        global_egress = build_egress(document.proxy, "global")

    routes = []
    for prefix, target in document.api_mapping.items():
        if isinstance(target, str):
            target_url, proxy = target, None
        else:
            target_url, proxy = target.target_url, target.proxy

        if not prefix or not target_url:
            raise ConfigurationError(
                f"Invalid API mapping: prefix={prefix!r}, target_url cannot be empty"
            )

        egress = build_egress(proxy, f"prefix {prefix}") if proxy is not None else None
        routes.append(Route(prefix=prefix, target_base_url=target_url, egress=egress))

    listen_port = port_override if port_override is not None else parse_port(document.port)

    return GatewayConfig(
        listen_port=listen_port,
        routes=RouteTable(routes),
        global_egress=global_egress,
    )


def load_gateway_config(path: Union[str, Path], port_override: Optional[int] = None) -> GatewayConfig:
    """
    Read, parse and validate the route document at ``path``.

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read configuration file {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Failed to parse JSON in {path}: {e}") from e

    config = build_gateway_config(data, port_override=port_override)
    logger.info(
        "Loaded configuration successfully",
        extra={
            "config_file": str(path),
            "routes": len(config.routes),
            "global_egress": config.global_egress.kind.value if config.global_egress else "direct",
        },
    )
    return config
