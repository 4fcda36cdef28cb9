#!/usr/bin/env python3
"""Lifecycle resource model for one managed bare-metal server."""

import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from .errors import ConfigurationError, ImmutableFieldError, ProvisioningError, RobotAPIError
from .payload_builder import cluster_parameters
from .pipeline import ProvisioningTarget
from .print_manager import printer as default_printer
from .utilities import build_record, compute_names, generate_name_hash

COMPUTED_FIELDS = ("id", "local_ip", "server_name", "robot_name")
IMMUTABLE_FIELDS = ("server_number", "server_ip")
INSTALL_FIELDS = (
    "arch",
    "encryption_passphrase",
    "raid_level",
    "no_uefi",
    "rescue_authorized_key_fingerprints",
    "node_labels",
    "taints",
    "cluster_token",
    "cluster_url",
    "extra_script",
)
REQUIRED_FIELDS = ("server_number", "server_ip", "arch", "encryption_passphrase", "rescue_authorized_key_fingerprints")
CANCELLED_SERVER_NAME = "cancelled"


@dataclass
class ManagedServer:
    """Declared configuration plus derived state of one server.

    ``local_ip``, ``server_name``, ``robot_name`` and ``id`` are computed by
    the resource and never declared. ``local_ip`` is frozen once assigned.
    """

    name: str
    server_number: int
    server_ip: str
    arch: str
    encryption_passphrase: str = field(repr=False)
    rescue_authorized_key_fingerprints: List[str] = field(default_factory=list)
    raid_level: int = 1
    no_uefi: bool = False
    node_labels: List[Dict[str, str]] = field(default_factory=list)
    taints: List[str] = field(default_factory=list)
    cluster_token: str = field(default="", repr=False)
    cluster_url: str = ""
    extra_script: str = ""
    description: str = ""
    vswitch_id: Optional[int] = None
    version: int = 1
    id: str = ""
    local_ip: str = ""
    server_name: str = ""
    robot_name: str = ""

    @classmethod
    def from_config(cls, key: str, data: Dict[str, Any]) -> "ManagedServer":
        """Build a declared server from its configuration mapping.

        ``name`` defaults to the resource key.

        Raises:
            ConfigurationError: On unknown, computed or missing keys and malformed labels
        """
        where = f"servers.{key}"
        data = dict(data or {})
        declared_computed = sorted(name for name in COMPUTED_FIELDS if name in data)
        if declared_computed:
            raise ConfigurationError(
                "invalid configuration", f"Computed key(s) cannot be declared in {where}: {', '.join(declared_computed)}"
            )
        data.setdefault("name", key)
        server = build_record(cls, data, where, required=REQUIRED_FIELDS)
        for label in server.node_labels:
            if not isinstance(label, dict) or set(label) != {"name", "value"}:
                raise ConfigurationError(
                    "invalid configuration", f"node_labels in {where} must be mappings with 'name' and 'value'"
                )
        return server

    @classmethod
    def from_state(cls, key: str, data: Dict[str, Any]) -> "ManagedServer":
        return build_record(cls, data, f"state servers.{key}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def changed_fields(self, other: "ManagedServer", names) -> List[str]:
        return [name for name in names if getattr(self, name) != getattr(other, name)]


def provisioning_target(server: ManagedServer) -> ProvisioningTarget:
    return ProvisioningTarget(
        server_number=int(server.server_number),
        server_ip=server.server_ip,
        hostname=server.server_name,
        arch=server.arch,
        passphrase=server.encryption_passphrase,
        local_ip=server.local_ip,
        fingerprints=list(server.rescue_authorized_key_fingerprints),
        raid_level=int(server.raid_level),
        no_uefi=bool(server.no_uefi),
        extra_script=server.extra_script or "",
        cluster=cluster_parameters(
            server.cluster_url,
            server.cluster_token,
            labels=[(label["name"], str(label["value"])) for label in server.node_labels],
            taints=server.taints,
        ),
    )


class ServerResource:
    """Create/read/update/delete semantics of a managed server.

    Creation allocates a private address and runs the full provisioning
    pipeline. Updates run the pipeline again only when ``version`` changes,
    keeping ``local_ip`` and ``id``. Deletion always succeeds: the address is
    returned to the pool and cancellation is requested on a best-effort basis.
    """

    def __init__(
        self,
        client,
        allocator,
        pipeline,
        server_list_cache=None,
        printer=None,
        name_hash: Callable[[], str] = generate_name_hash,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.allocator = allocator
        self.pipeline = pipeline
        self.server_list_cache = server_list_cache
        self.printer = printer or default_printer
        self.name_hash = name_hash
        self.clock = clock

    def _set_server_name(self, server: ManagedServer, summary: str) -> None:
        try:
            self.client.set_server_name(int(server.server_number), server.robot_name)
        except RobotAPIError as e:
            raise ProvisioningError(summary, str(e)) from e
        self.printer.print_fields("Set server name", server_number=server.server_number, robot_name=server.robot_name)

    def _attach_vswitch(self, server: ManagedServer, summary: str) -> None:
        try:
            self.client.add_server_to_vswitch(int(server.vswitch_id), server.server_ip)
        except RobotAPIError as e:
            raise ProvisioningError(summary, str(e)) from e
        self.printer.print_fields(
            "Added server to vSwitch", server_number=server.server_number, vswitch_id=server.vswitch_id
        )

    def create(self, declared: ManagedServer) -> ManagedServer:
        """Provision a newly declared server.

        Returns:
            ManagedServer: The state to persist

        Raises:
            ProvisioningError: From name assignment, vSwitch attach or the pipeline
        """
        server = replace(declared)
        server.server_name, server.robot_name = compute_names(server.name, self.name_hash())
        server.local_ip = self.allocator.acquire()
        self.printer.print_fields(
            "Assigned private IP", server_number=server.server_number, local_ip=server.local_ip
        )
        try:
            target = provisioning_target(server)
            self.pipeline.preflight(target)
            self._set_server_name(server, "set server name failed")
            if server.vswitch_id:
                self._attach_vswitch(server, "add server to vswitch failed")
            self.pipeline.run(target)
        except Exception:
            self.allocator.release(server.local_ip)
            self.printer.print_info(f"Released private IP {server.local_ip} after failed create")
            raise
        server.id = f"configuration-{int(self.clock())}"
        return server

    def read(self, state: ManagedServer) -> Optional[ManagedServer]:
        """Refresh persisted state; returns None when the server no longer exists."""
        if self.server_list_cache is None:
            return state
        try:
            found = self.server_list_cache.get(int(state.server_number))
        except RobotAPIError as e:
            raise ProvisioningError("read server failed", str(e)) from e
        if found is None:
            self.printer.print_warning(f"Server {state.server_number} no longer exists in Robot, dropping from state")
            if state.local_ip:
                self.allocator.release(state.local_ip)
                self.printer.print_fields(
                    "Released private IP", server_number=state.server_number, local_ip=state.local_ip
                )
            return None
        return state

    def update(self, prior: ManagedServer, declared: ManagedServer) -> ManagedServer:
        """Apply a changed declaration to an existing server.

        Raises:
            ImmutableFieldError: If server_number or server_ip changed
            ProvisioningError: From rename, vSwitch attach or a version-triggered pipeline run
        """
        changed_identity = prior.changed_fields(declared, IMMUTABLE_FIELDS)
        if changed_identity:
            raise ImmutableFieldError(
                "requires replacement",
                f"{', '.join(changed_identity)} cannot change on server {prior.server_number}; "
                "destroy and re-create the resource",
            )

        server = replace(
            declared,
            id=prior.id,
            local_ip=prior.local_ip,
            server_name=prior.server_name,
            robot_name=prior.robot_name,
        )
        name_changed = declared.name != prior.name
        version_changed = declared.version != prior.version

        acquired = False
        if not server.local_ip:
            server.local_ip = self.allocator.acquire()
            acquired = True
        try:
            if name_changed or version_changed or not server.robot_name:
                server.server_name, server.robot_name = compute_names(server.name, self.name_hash())
            if version_changed:
                self.pipeline.preflight(provisioning_target(server))
            if server.robot_name != prior.robot_name:
                self._set_server_name(server, "update server name failed")
            if server.vswitch_id and server.vswitch_id != prior.vswitch_id:
                self._attach_vswitch(server, "update server vswitch failed")
            if version_changed:
                self.printer.print_info(
                    f"Version changed {prior.version} -> {server.version}, reinstalling server {server.server_number}"
                )
                self.pipeline.run(provisioning_target(server))
        except Exception:
            if acquired:
                self.allocator.release(server.local_ip)
            raise

        if not version_changed:
            pending = prior.changed_fields(declared, INSTALL_FIELDS)
            if pending:
                self.printer.print_warning(
                    f"Changed {', '.join(pending)} on server {server.server_number} "
                    "take effect on the next version bump"
                )
        return server

    def delete(self, state: ManagedServer) -> List[str]:
        """Release the private address and request cancellation.

        Returns:
            List[str]: Warnings for best-effort steps that failed
        """
        warnings = []
        if state.local_ip:
            self.allocator.release(state.local_ip)
            self.printer.print_fields(
                "Released private IP", server_number=state.server_number, local_ip=state.local_ip
            )
        if not state.server_number:
            message = (
                "Removed from state without a server number; cancel the server manually in Robot if one was ordered"
            )
            self.printer.print_warning(message)
            return [message]

        for action, call in (
            ("rename server", lambda: self.client.set_server_name(int(state.server_number), CANCELLED_SERVER_NAME)),
            ("cancel server", lambda: self.client.cancel_server(int(state.server_number), "")),
        ):
            try:
                call()
            except RobotAPIError as e:
                message = f"Failed to {action} {state.server_number}: {e}"
                self.printer.print_warning(message)
                warnings.append(message)
        if not warnings:
            self.printer.print_success(
                f"Server {state.server_number} scheduled for cancellation at the end of the billing period"
            )
        return warnings
