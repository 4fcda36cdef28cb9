#!/usr/bin/env python3
"""
Hetzner Robot Provisioner - Modular Components.

This package provisions bare-metal servers through the Hetzner Robot
webservice: it orders servers, boots them into the rescue system, images
encrypted two-drive RAID installs over SSH and configures the private network
and an optional cluster agent on first boot.

Modules:
- print_manager: Handles all output formatting and printing
- errors: Structured two-part error taxonomy
- utilities: Reachability waiter, runtime formatting and computed names
- ip_allocator: Private IP pool shared by concurrent server creations
- ssh_session: SSH/SFTP remote session
- disk_prober: Disk discovery in the rescue system
- payload_builder: Autosetup directive and host script rendering
- pipeline: Provisioning pipeline state machine
- robot_client: Robot webservice API client
- transaction_cache: Order transaction and server list caches
- server_resource: Managed server lifecycle
- order_resource: Server and auction order lifecycle
- vswitch_resource: vSwitch lifecycle
- state_store: Persisted resource state
- configuration_manager: Provider settings and declared configuration
- orchestrator: Apply/destroy orchestration
- arguments_parser: Command-line argument parsing
"""

from .arguments_parser import ArgumentsParser
from .configuration_manager import (
    DeclaredConfiguration,
    NetworkSettings,
    PipelineSettings,
    ProviderConfig,
    load_configuration,
)
from .disk_prober import DiskProber
from .errors import (
    ConfigurationError,
    ErrorKind,
    ProvisioningError,
    RobotAPIError,
)
from .ip_allocator import PrivateIPAllocator
from .order_resource import OrderResource, read_order_transaction
from .orchestrator import ProvisioningOrchestrator
from .pipeline import PipelineState, ProvisioningPipeline
from .print_manager import PrintManager, printer, DEBUG_MODE
from .robot_client import RobotClient
from .server_resource import ManagedServer, ServerResource
from .state_store import StateStore, terraform_local_ips
from .transaction_cache import (
    MARKET_TRANSACTION_CACHE_FILE,
    TRANSACTION_CACHE_FILE,
    ServerListCache,
    TransactionCache,
    default_cache_path,
)
from .utilities import ReachabilityWaiter, format_runtime
from .vswitch_resource import VSwitchResource

__all__ = [
    "ArgumentsParser",
    "DeclaredConfiguration",
    "NetworkSettings",
    "PipelineSettings",
    "ProviderConfig",
    "load_configuration",
    "DiskProber",
    "ConfigurationError",
    "ErrorKind",
    "ProvisioningError",
    "RobotAPIError",
    "PrivateIPAllocator",
    "OrderResource",
    "read_order_transaction",
    "ProvisioningOrchestrator",
    "PipelineState",
    "ProvisioningPipeline",
    "PrintManager",
    "printer",
    "DEBUG_MODE",
    "RobotClient",
    "ManagedServer",
    "ServerResource",
    "StateStore",
    "terraform_local_ips",
    "MARKET_TRANSACTION_CACHE_FILE",
    "TRANSACTION_CACHE_FILE",
    "ServerListCache",
    "TransactionCache",
    "default_cache_path",
    "ReachabilityWaiter",
    "format_runtime",
    "VSwitchResource",
]
