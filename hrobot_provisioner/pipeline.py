#!/usr/bin/env python3
"""Provisioning pipeline: rescue, imaging and first-boot configuration of one server."""

import socket
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence

import paramiko

from . import ssh_session
from .disk_prober import DiskProber
from .errors import (
    ConfigurationError,
    ErrorKind,
    PipelineCancelled,
    ProvisioningError,
    ReachabilityTimeout,
    RemoteCommandError,
    RobotAPIError,
    SessionConnectError,
)
from .payload_builder import (
    ClusterJoinParameters,
    FirstBootParameters,
    ImagingParameters,
    build_cluster_join_script,
    build_first_boot_script,
    build_gateway_wait_script,
    build_imaging_directive,
    build_post_install_script,
)
from .print_manager import mask_secret
from .print_manager import printer as default_printer
from .utilities import ReachabilityWaiter, format_runtime

SETUP_CONF_PATH = "/root/setup.conf"
POST_INSTALL_PATH = "/root/post-install.sh"
FIRST_BOOT_PATH = "/root/initialize.sh"
INSTALLIMAGE_COMMAND = f"/root/.oldroot/nfs/install/installimage -a -c {SETUP_CONF_PATH} -x {POST_INSTALL_PATH}"
REBOOT_COMMAND = "reboot || systemctl reboot || shutdown -r now || true"

# Errors raised by collaborators that a state converts into its own summary
COLLABORATOR_ERRORS = (RobotAPIError, SessionConnectError, RemoteCommandError, paramiko.SSHException, OSError)


class PipelineState(Enum):
    RESCUE_ACTIVATE = "Activating rescue system"
    HARD_RESET = "Resetting server into rescue system"
    WAIT_RESCUE_REACHABLE = "Waiting for rescue system SSH"
    SESSION_OPEN = "Opening rescue SSH session"
    PROBE_DISKS = "Detecting disks"
    UPLOAD_PAYLOADS = "Uploading autosetup and post-install script"
    RUN_IMAGING = "Running installimage"
    REBOOT = "Rebooting into installed system"
    WAIT_OS_REACHABLE = "Waiting for installed system SSH"
    FIRST_BOOT = "Running first-boot configuration"


# Summary reported when a collaborator error escapes the state unclassified
STATE_SUMMARIES = {
    PipelineState.RESCUE_ACTIVATE: "activate rescue failed",
    PipelineState.HARD_RESET: "reset failed",
    PipelineState.WAIT_RESCUE_REACHABLE: "rescue ssh timeout",
    PipelineState.SESSION_OPEN: "ssh connect",
    PipelineState.PROBE_DISKS: "disk detection failed",
    PipelineState.UPLOAD_PAYLOADS: "upload failed",
    PipelineState.RUN_IMAGING: "installimage failed",
    PipelineState.REBOOT: "reboot failed",
    PipelineState.WAIT_OS_REACHABLE: "os ssh timeout",
    PipelineState.FIRST_BOOT: "first boot failed",
}


@dataclass
class ProvisioningTarget:
    """Everything the pipeline needs to (re)install one server."""

    server_number: int
    server_ip: str
    hostname: str
    arch: str
    passphrase: str
    local_ip: str
    fingerprints: Sequence[str]
    raid_level: int = 1
    no_uefi: bool = False
    extra_script: str = ""
    cluster: Optional[ClusterJoinParameters] = None

    def __repr__(self):
        return (
            f"ProvisioningTarget(server_number={self.server_number}, server_ip={self.server_ip!r}, "
            f"hostname={self.hostname!r}, local_ip={self.local_ip!r}, passphrase={mask_secret(self.passphrase)!r})"
        )


@dataclass
class PipelineResult:
    server_number: int
    completed_states: List[PipelineState] = field(default_factory=list)
    disks: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    runtime: str = ""


class _PipelineRun:
    """Mutable per-run context passed between states."""

    def __init__(self, target: ProvisioningTarget, result: PipelineResult) -> None:
        self.target = target
        self.result = result
        self.rescue_session = None
        self.os_session = None


def _command_detail(error: RemoteCommandError) -> str:
    output = "\n".join(part.strip() for part in (error.stdout, error.stderr) if part and part.strip())
    return f"{error}\n{output}" if output else str(error)


class ProvisioningPipeline:
    """Sequences the remote operations that turn an ordered server into a configured node.

    States run strictly in order. The first fatal state raises a
    ``ProvisioningError`` whose ``stage`` names the failed state; nothing that
    already happened is rolled back. A shared ``cancel_event`` is checked
    between states, never in the middle of one.
    """

    def __init__(
        self,
        client,
        settings,
        printer=None,
        waiter: Optional[ReachabilityWaiter] = None,
        connect: Callable[..., Any] = ssh_session.connect,
        disk_prober: Optional[DiskProber] = None,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            client: RobotClient used for rescue activation and reset
            settings: PipelineSettings with timeouts and network parameters
            printer: PrintManager instance for output
            waiter: ReachabilityWaiter, built from ``settings`` when omitted
            connect: Session factory with the signature of ``ssh_session.connect``
            disk_prober: DiskProber instance
            sleep: Sleep function used for the post-reboot settle time
            cancel_event: Event that stops the pipeline at the next state boundary
        """
        self.client = client
        self.settings = settings
        self.printer = printer or default_printer
        self.waiter = waiter or ReachabilityWaiter(
            poll_interval=settings.poll_interval_seconds,
            attempt_timeout=settings.attempt_timeout_seconds,
            printer=self.printer,
        )
        self.connect = connect
        self.disk_prober = disk_prober or DiskProber(printer=self.printer)
        self.sleep = sleep
        self.cancel_event = cancel_event or threading.Event()
        self.states = [
            (PipelineState.RESCUE_ACTIVATE, self._activate_rescue),
            (PipelineState.HARD_RESET, self._hard_reset),
            (PipelineState.WAIT_RESCUE_REACHABLE, self._wait_rescue_reachable),
            (PipelineState.SESSION_OPEN, self._open_rescue_session),
            (PipelineState.PROBE_DISKS, self._probe_disks),
            (PipelineState.UPLOAD_PAYLOADS, self._upload_payloads),
            (PipelineState.RUN_IMAGING, self._run_imaging),
            (PipelineState.REBOOT, self._reboot),
            (PipelineState.WAIT_OS_REACHABLE, self._wait_os_reachable),
            (PipelineState.FIRST_BOOT, self._first_boot),
        ]

    def preflight(self, target: ProvisioningTarget) -> None:
        """Validate the target before any remote call is made.

        Raises:
            ConfigurationError: If no key fingerprints are set or a payload parameter is invalid
        """
        if not target.fingerprints:
            raise ConfigurationError(
                "no ssh keys", "At least one rescue_authorized_key_fingerprint is required for SSH access"
            )
        # Drives are unknown until the disks are probed; any two valid paths do here
        self._imaging_parameters(target, ["/dev/sda", "/dev/sdb"]).validate()
        self._first_boot_parameters(target).validate()
        if target.cluster is not None:
            target.cluster.validate()

    def run(self, target: ProvisioningTarget) -> PipelineResult:
        """Run every state in order.

        Returns:
            PipelineResult: Completed states, detected disks and best-effort warnings

        Raises:
            ProvisioningError: From the first fatal state, with ``stage`` set
        """
        self.preflight(target)
        start_time = time.time()
        result = PipelineResult(server_number=target.server_number)
        run = _PipelineRun(target, result)
        total = len(self.states)
        self.printer.print_fields(
            "Starting provisioning pipeline",
            server_number=target.server_number,
            server_ip=target.server_ip,
            local_ip=target.local_ip,
        )
        try:
            for step_num, (state, handler) in enumerate(self.states, start=1):
                self._run_state(step_num, total, state, handler, run)
                result.completed_states.append(state)
        finally:
            for session in (run.rescue_session, run.os_session):
                if session is not None:
                    session.close()
        result.runtime = format_runtime(start_time, time.time())
        self.printer.print_success(f"Server {target.server_number} provisioned in {result.runtime}")
        return result

    def _run_state(self, step_num, total, state, handler, run) -> None:
        if self.cancel_event.is_set():
            error = PipelineCancelled("pipeline cancelled", f"Cancelled before state '{state.value}'")
            error.stage = state
            raise error

        self.printer.print_step(step_num, total, state.value)
        try:
            handler(run)
        except ProvisioningError as e:
            if e.stage is None:
                e.stage = state
            self.printer.print_error(f"{state.value} failed: {e.summary}")
            raise
        except RemoteCommandError as e:
            error = ProvisioningError(STATE_SUMMARIES[state], _command_detail(e), ErrorKind.REMOTE_COMMAND)
            error.stage = state
            self.printer.print_error(f"{state.value} failed: {error.summary}")
            raise error from e
        except COLLABORATOR_ERRORS as e:
            error = ProvisioningError(STATE_SUMMARIES[state], str(e))
            error.stage = state
            self.printer.print_error(f"{state.value} failed: {error.summary}")
            raise error from e

    # Parameter records

    def _imaging_parameters(self, target: ProvisioningTarget, disks: Sequence[str]) -> ImagingParameters:
        return ImagingParameters(
            hostname=target.hostname,
            arch=target.arch,
            passphrase=target.passphrase,
            drive1=disks[0],
            drive2=disks[1],
            raid_level=target.raid_level,
            no_uefi=target.no_uefi,
        )

    def _first_boot_parameters(self, target: ProvisioningTarget) -> FirstBootParameters:
        network = self.settings.network
        return FirstBootParameters(
            local_ip=target.local_ip,
            gateway=network.gateway,
            routed_network=network.routed_network,
            vlan_id=network.vlan_id,
            mtu=network.mtu,
            prefix_length=network.prefix_length,
            extra_script=target.extra_script or "",
        )

    def _open_session(self, host: str):
        return self.connect(
            host,
            self.settings.ssh_user,
            ssh_session.AgentAuth(),
            timeout=self.settings.ssh_connect_timeout_seconds,
            port=self.settings.ssh_port,
            printer=self.printer,
        )

    # States

    def _activate_rescue(self, run: _PipelineRun) -> None:
        target = run.target
        self.printer.print_fields(
            "Activating rescue mode", server_number=target.server_number, authorized_keys=len(target.fingerprints)
        )
        self.client.activate_rescue(target.server_number, list(target.fingerprints), os_name="linux")
        self.printer.print_success("Rescue mode activated")

    def _hard_reset(self, run: _PipelineRun) -> None:
        self.client.reset(run.target.server_number, "hw")
        self.printer.print_success("Hardware reset requested")

    def _wait_rescue_reachable(self, run: _PipelineRun) -> None:
        try:
            self.waiter.wait_until_reachable(
                run.target.server_ip, self.settings.ssh_port, self.settings.rescue_wait_minutes * 60
            )
        except ReachabilityTimeout as e:
            raise ReachabilityTimeout("rescue ssh timeout", e.detail) from e
        self.printer.print_success(f"Rescue system reachable on {run.target.server_ip}")

    def _open_rescue_session(self, run: _PipelineRun) -> None:
        run.rescue_session = self._open_session(run.target.server_ip)
        self.printer.print_success("SSH connection established")

    def _probe_disks(self, run: _PipelineRun) -> None:
        try:
            disks = self.disk_prober.probe(run.rescue_session)
        except RemoteCommandError as e:
            raise ProvisioningError(
                "disk detection failed", f"Failed to detect disks: {_command_detail(e)}", ErrorKind.REMOTE_COMMAND
            ) from e
        run.result.disks = list(disks)

    def _upload_payloads(self, run: _PipelineRun) -> None:
        session = run.rescue_session
        params = self._imaging_parameters(run.target, run.result.disks)
        directive = build_imaging_directive(params)
        post_install = build_post_install_script(params)

        try:
            session.upload(SETUP_CONF_PATH, directive.encode("utf-8"), 0o600)
        except COLLABORATOR_ERRORS as e:
            raise ProvisioningError("upload autosetup", str(e)) from e
        self.printer.print_info(f"Uploaded autosetup configuration ({len(directive)} bytes)")

        try:
            session.upload(POST_INSTALL_PATH, post_install.encode("utf-8"), 0o700)
        except COLLABORATOR_ERRORS as e:
            raise ProvisioningError("upload post-install", str(e)) from e
        self.printer.print_info(f"Uploaded post-install script ({len(post_install)} bytes)")

        try:
            session.run(f"chmod +x {POST_INSTALL_PATH} || true")
        except RemoteCommandError as e:
            self._warn(run, f"Failed to set post-install script permissions: {e}")

    def _run_imaging(self, run: _PipelineRun) -> None:
        output = run.rescue_session.run(INSTALLIMAGE_COMMAND)
        self.printer.print_action(output)
        self.printer.print_success("installimage completed")

    def _reboot(self, run: _PipelineRun) -> None:
        try:
            run.rescue_session.run(REBOOT_COMMAND)
        except (RemoteCommandError, paramiko.SSHException, socket.error) as e:
            self._warn(run, f"Failed to issue reboot command: {e}")
        run.rescue_session.close()
        run.rescue_session = None

    def _wait_os_reachable(self, run: _PipelineRun) -> None:
        self.sleep(self.settings.reboot_settle_seconds)
        try:
            self.waiter.wait_with_extension(
                run.target.server_ip,
                self.settings.ssh_port,
                self.settings.os_wait_minutes * 60,
                self.settings.os_wait_extension_minutes * 60,
            )
        except ReachabilityTimeout as e:
            raise ReachabilityTimeout("os ssh timeout", e.detail) from e
        self.printer.print_success(f"Installed system reachable on {run.target.server_ip}")

    def _first_boot(self, run: _PipelineRun) -> None:
        target = run.target
        try:
            run.os_session = self._open_session(target.server_ip)
        except SessionConnectError as e:
            raise ProvisioningError("ssh connect", str(e)) from e
        session = run.os_session

        script = build_first_boot_script(self._first_boot_parameters(target))
        try:
            session.upload(FIRST_BOOT_PATH, script.encode("utf-8"), 0o700)
        except COLLABORATOR_ERRORS as e:
            raise ProvisioningError("upload initialize", str(e)) from e
        try:
            session.run(f"chmod +x {FIRST_BOOT_PATH} && {FIRST_BOOT_PATH}")
            self.printer.print_success(f"Private network configured with {target.local_ip}")
        except RemoteCommandError as e:
            self._warn(run, f"First-boot script failed: {e}")

        if target.cluster is None:
            self.printer.print_info("Cluster parameters not provided, skipping cluster join")
            return

        probe_ip = self.settings.network.probe_ip or self.settings.network.gateway
        self.printer.print_info(f"Checking private network connectivity to {probe_ip}")
        try:
            session.run(build_gateway_wait_script(probe_ip))
        except RemoteCommandError as e:
            raise ProvisioningError("ping check failed", _command_detail(e), ErrorKind.REMOTE_COMMAND) from e

        self.printer.print_info(f"Joining cluster at {target.cluster.url}")
        try:
            session.run(build_cluster_join_script(target.cluster))
        except RemoteCommandError as e:
            raise ProvisioningError("k3s installation failed", _command_detail(e), ErrorKind.REMOTE_COMMAND) from e
        self.printer.print_success("Cluster join completed")

    def _warn(self, run: _PipelineRun, message: str) -> None:
        self.printer.print_warning(message)
        run.result.warnings.append(message)
