#!/usr/bin/env python3
"""Configuration Manager module: provider settings and declared resources."""

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping

import yaml

from .errors import ConfigurationError, MissingCredentialsError
from .ip_allocator import DEFAULT_POOL_END, DEFAULT_POOL_START
from .order_resource import AuctionOrder, ServerOrder, order_from_config
from .print_manager import mask_secret
from .robot_client import DEFAULT_BASE_URL, DEFAULT_TIMEOUT_SECONDS
from .server_resource import ManagedServer
from .utilities import build_record
from .vswitch_resource import VSwitchRecord

DEFAULT_STATE_FILE = "hrobot-state.yaml"
USERNAME_ENV = "HROBOT_USERNAME"
PASSWORD_ENV = "HROBOT_PASSWORD"
TOP_LEVEL_SECTIONS = ("provider", "pipeline", "servers", "orders", "auction_orders", "vswitches")


@dataclass
class ProviderConfig:
    username: str = ""
    password: str = field(default="", repr=False)
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    state_file: str = DEFAULT_STATE_FILE
    cache_dir: str = ""
    seed_from_terraform: bool = False

    def resolve_credentials(self, environ: Mapping[str, str] = os.environ) -> "ProviderConfig":
        """Fill missing credentials from HROBOT_USERNAME / HROBOT_PASSWORD.

        Raises:
            MissingCredentialsError: If either credential is still unset
        """
        self.username = self.username or environ.get(USERNAME_ENV, "")
        self.password = self.password or environ.get(PASSWORD_ENV, "")
        if not self.username or not self.password:
            raise MissingCredentialsError(
                "Missing credentials",
                f"Set provider.username/provider.password or {USERNAME_ENV}/{PASSWORD_ENV} "
                f"(username: {self.username or '<unset>'}, password: {mask_secret(self.password)})",
            )
        return self


@dataclass
class NetworkSettings:
    vlan_id: int = 4001
    mtu: int = 1400
    prefix_length: int = 24
    gateway: str = "10.1.0.1"
    routed_network: str = "10.0.0.0/16"
    probe_ip: str = ""
    pool_start: str = DEFAULT_POOL_START
    pool_end: str = DEFAULT_POOL_END


@dataclass
class PipelineSettings:
    ssh_user: str = "root"
    ssh_port: int = 22
    rescue_wait_minutes: float = 20
    os_wait_minutes: float = 20
    os_wait_extension_minutes: float = 15
    ssh_connect_timeout_seconds: float = 180
    reboot_settle_seconds: float = 10
    poll_interval_seconds: float = 5
    attempt_timeout_seconds: float = 5
    network: NetworkSettings = field(default_factory=NetworkSettings)

    @classmethod
    def from_config(cls, data) -> "PipelineSettings":
        data = dict(data or {})
        network = build_record(NetworkSettings, data.pop("network", None), "pipeline.network")
        settings = build_record(cls, data, "pipeline")
        settings.network = network
        return settings


@dataclass
class DeclaredConfiguration:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    servers: Dict[str, ManagedServer] = field(default_factory=dict)
    orders: Dict[str, ServerOrder] = field(default_factory=dict)
    auction_orders: Dict[str, AuctionOrder] = field(default_factory=dict)
    vswitches: Dict[str, VSwitchRecord] = field(default_factory=dict)


def _section(data, name):
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError("invalid configuration", f"'{name}' must be a mapping keyed by resource name")
    return value


def parse_configuration(data) -> DeclaredConfiguration:
    """Build a DeclaredConfiguration from an already-parsed YAML document.

    Raises:
        ConfigurationError: On unknown sections or keys and missing required keys
    """
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigurationError("invalid configuration", "The configuration document must be a mapping")
    unknown = sorted(set(data) - set(TOP_LEVEL_SECTIONS))
    if unknown:
        raise ConfigurationError("invalid configuration", f"Unknown section(s): {', '.join(unknown)}")

    declared = DeclaredConfiguration(
        provider=build_record(ProviderConfig, data.get("provider"), "provider"),
        pipeline=PipelineSettings.from_config(data.get("pipeline")),
    )
    for key, value in _section(data, "servers").items():
        declared.servers[key] = ManagedServer.from_config(key, value)
    for key, value in _section(data, "orders").items():
        declared.orders[key] = order_from_config(ServerOrder, "orders", key, value)
    for key, value in _section(data, "auction_orders").items():
        declared.auction_orders[key] = order_from_config(AuctionOrder, "auction_orders", key, value)
    for key, value in _section(data, "vswitches").items():
        declared.vswitches[key] = VSwitchRecord.from_config(key, value)

    numbers = {}
    for key, server in declared.servers.items():
        if server.server_number in numbers:
            raise ConfigurationError(
                "invalid configuration",
                f"servers.{key} and servers.{numbers[server.server_number]} share server_number {server.server_number}",
            )
        numbers[server.server_number] = key
    return declared


def load_configuration(path: str, printer=None) -> DeclaredConfiguration:
    """Read and validate the declared configuration file.

    Args:
        path: Path to the YAML configuration
        printer: PrintManager instance for output

    Returns:
        DeclaredConfiguration: Provider settings, pipeline settings and declared resources

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    if not os.path.exists(path):
        raise ConfigurationError("configuration not found", f"No configuration file at {path}")
    try:
        with open(path, "r", encoding="utf-8") as config_file:
            data = yaml.safe_load(config_file)
    except yaml.YAMLError as e:
        raise ConfigurationError("invalid configuration", f"{path}: {e}") from e

    declared = parse_configuration(data)
    if printer:
        printer.print_info(
            f"Loaded {path}: {len(declared.servers)} server(s), {len(declared.orders)} order(s), "
            f"{len(declared.auction_orders)} auction order(s), {len(declared.vswitches)} vSwitch(es)"
        )
    return declared