#!/usr/bin/env python3
"""Payload Builder module: renders the imaging directive and host scripts.

Every payload is built from a small typed parameter record that is validated
before any substitution happens. Shell values are quoted with ``shlex.quote``
and templates use ``@@NAME@@`` placeholders, substituted in a single pass so a
substituted value is never expanded again.
"""

import ipaddress
import os
import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import TemplateParameterError

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
TEMPLATE_DELIMITER = "@@"
PLACEHOLDER_PATTERN = re.compile(r"@@([A-Z0-9_]+)@@")

SUPPORTED_ARCHITECTURES = ("amd64", "arm64")
SUPPORTED_RAID_LEVELS = (0, 1)
IMAGE_PATH_TEMPLATE = "/root/images/Ubuntu-2404-noble-{arch}-base.tar.gz"

HOSTNAME_PATTERN = re.compile(
    r"^(?=.{1,253}$)[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)
DEVICE_PATTERN = re.compile(r"^/dev/[A-Za-z0-9/_-]+$")
LABEL_NAME_PATTERN = re.compile(r"^([A-Za-z0-9.-]+/)?[A-Za-z0-9]([A-Za-z0-9._-]*[A-Za-z0-9])?$")
TAINT_PATTERN = re.compile(r"^[A-Za-z0-9./_-]+(=[A-Za-z0-9._-]*)?:(NoSchedule|PreferNoSchedule|NoExecute)$")

CLUSTER_INSTALLER_URL = "https://get.k3s.io"
GATEWAY_WAIT_ATTEMPTS = 60
GATEWAY_WAIT_INTERVAL = 5


def _reject_unsafe_text(name: str, value: str, allow_newlines: bool = False) -> None:
    if TEMPLATE_DELIMITER in value:
        raise TemplateParameterError("invalid template parameter", f"{name} must not contain '{TEMPLATE_DELIMITER}'")
    if "\x00" in value:
        raise TemplateParameterError("invalid template parameter", f"{name} must not contain NUL bytes")
    if not allow_newlines and ("\n" in value or "\r" in value):
        raise TemplateParameterError("invalid template parameter", f"{name} must be a single line")


def _validate_ipv4(name: str, value: str) -> None:
    try:
        ipaddress.IPv4Address(value)
    except ValueError as e:
        raise TemplateParameterError("invalid template parameter", f"{name}: {e}") from e


def load_template(name: str) -> str:
    with open(os.path.join(TEMPLATE_DIR, name), "r", encoding="utf-8") as template_file:
        return template_file.read()


def render_template(template: str, values: Dict[str, str]) -> str:
    """Substitute ``@@NAME@@`` placeholders in a single pass.

    Args:
        template: Template text
        values: Placeholder name to already-quoted replacement text

    Returns:
        str: Rendered text

    Raises:
        TemplateParameterError: If the template references a name not in ``values``
    """
    missing = sorted({name for name in PLACEHOLDER_PATTERN.findall(template) if name not in values})
    if missing:
        raise TemplateParameterError("template parameter missing", f"No value for: {', '.join(missing)}")
    return PLACEHOLDER_PATTERN.sub(lambda match: values[match.group(1)], template)


@dataclass(frozen=True)
class ImagingParameters:
    """Inputs of the installimage autosetup directive and the post-install hook."""

    hostname: str
    arch: str
    passphrase: str
    drive1: str
    drive2: str
    raid_level: int = 1
    no_uefi: bool = False

    def __repr__(self):
        return (
            f"ImagingParameters(hostname={self.hostname!r}, arch={self.arch!r}, passphrase='***', "
            f"drive1={self.drive1!r}, drive2={self.drive2!r}, raid_level={self.raid_level}, no_uefi={self.no_uefi})"
        )

    def validate(self) -> None:
        if not HOSTNAME_PATTERN.match(self.hostname or ""):
            raise TemplateParameterError("invalid hostname", f"'{self.hostname}' is not a valid hostname")
        if self.arch not in SUPPORTED_ARCHITECTURES:
            raise TemplateParameterError(
                "invalid architecture", f"arch must be one of {', '.join(SUPPORTED_ARCHITECTURES)}, got '{self.arch}'"
            )
        if self.raid_level not in SUPPORTED_RAID_LEVELS:
            raise TemplateParameterError(
                "invalid raid level", f"raid_level must be 0 or 1 for a two-drive layout, got {self.raid_level}"
            )
        for name, drive in (("drive1", self.drive1), ("drive2", self.drive2)):
            if not DEVICE_PATTERN.match(drive or ""):
                raise TemplateParameterError("invalid drive", f"{name} must be a /dev/ path, got '{drive}'")
        if self.drive1 == self.drive2:
            raise TemplateParameterError("invalid drive", f"drive1 and drive2 are both {self.drive1}")
        if not self.passphrase:
            raise TemplateParameterError("invalid passphrase", "The encryption passphrase must not be empty")
        _reject_unsafe_text("passphrase", self.passphrase)
        if self.passphrase != self.passphrase.strip():
            raise TemplateParameterError(
                "invalid passphrase", "The encryption passphrase must not start or end with whitespace"
            )


@dataclass(frozen=True)
class FirstBootParameters:
    """Inputs of the first-boot network/performance script."""

    local_ip: str
    gateway: str
    routed_network: str
    vlan_id: int = 4001
    mtu: int = 1400
    prefix_length: int = 24
    extra_script: str = ""

    def validate(self) -> None:
        _validate_ipv4("local_ip", self.local_ip)
        _validate_ipv4("gateway", self.gateway)
        try:
            ipaddress.IPv4Network(self.routed_network)
        except ValueError as e:
            raise TemplateParameterError("invalid template parameter", f"routed_network: {e}") from e
        if not 1 <= int(self.vlan_id) <= 4094:
            raise TemplateParameterError("invalid template parameter", f"vlan_id out of range: {self.vlan_id}")
        if not 576 <= int(self.mtu) <= 9000:
            raise TemplateParameterError("invalid template parameter", f"mtu out of range: {self.mtu}")
        if not 1 <= int(self.prefix_length) <= 32:
            raise TemplateParameterError(
                "invalid template parameter", f"prefix_length out of range: {self.prefix_length}"
            )
        _reject_unsafe_text("extra_script", self.extra_script or "", allow_newlines=True)


@dataclass(frozen=True)
class ClusterJoinParameters:
    """Inputs of the node agent join command."""

    url: str
    token: str
    labels: Sequence[Tuple[str, str]] = field(default_factory=tuple)
    taints: Sequence[str] = field(default_factory=tuple)

    def __repr__(self):
        return f"ClusterJoinParameters(url={self.url!r}, token='***', labels={self.labels!r}, taints={self.taints!r})"

    def validate(self) -> None:
        if not self.url.startswith(("https://", "http://")):
            raise TemplateParameterError("invalid cluster url", f"'{self.url}' is not an http(s) URL")
        _reject_unsafe_text("cluster url", self.url)
        if not self.token:
            raise TemplateParameterError("invalid cluster token", "The cluster token must not be empty")
        _reject_unsafe_text("cluster token", self.token)
        for name, value in self.labels:
            if not LABEL_NAME_PATTERN.match(name or ""):
                raise TemplateParameterError("invalid node label", f"'{name}' is not a valid label name")
            _reject_unsafe_text(f"label {name}", value or "")
        for taint in self.taints:
            if not TAINT_PATTERN.match(taint or ""):
                raise TemplateParameterError("invalid taint", f"'{taint}' is not of the form key[=value]:Effect")


def build_imaging_directive(params: ImagingParameters) -> str:
    """Render the installimage autosetup directive.

    The layout is a two-drive software RAID with an encrypted root. An EFI
    system partition is added unless ``no_uefi`` is set.
    """
    params.validate()
    lines = [
        f"CRYPTPASSWORD {params.passphrase}",
        f"DRIVE1 {params.drive1}",
        f"DRIVE2 {params.drive2}",
        "SWRAID 1",
        f"SWRAIDLEVEL {params.raid_level}",
        "BOOTLOADER grub",
    ]
    if not params.no_uefi:
        lines.append("PART /boot/efi esp 512M")
    lines.extend(
        [
            "PART /boot ext4 1G",
            "PART /     ext4 all crypt",
            f"IMAGE {IMAGE_PATH_TEMPLATE.format(arch=params.arch)}",
            f"HOSTNAME {params.hostname}",
        ]
    )
    return "\n".join(lines) + "\n"


def build_post_install_script(params: ImagingParameters) -> str:
    """Render the post-install hook that adds a keyfile unlock factor to the LUKS root."""
    params.validate()
    return render_template(load_template("post-install.sh"), {"CRYPT_PASSWORD": shlex.quote(params.passphrase)})


def build_first_boot_script(params: FirstBootParameters) -> str:
    params.validate()
    values = {
        "LOCAL_IP": shlex.quote(params.local_ip),
        "PREFIX_LENGTH": str(int(params.prefix_length)),
        "VLAN_ID": str(int(params.vlan_id)),
        "VLAN_MTU": str(int(params.mtu)),
        "GATEWAY_IP": shlex.quote(params.gateway),
        "ROUTED_NETWORK": shlex.quote(params.routed_network),
        "EXTRA_SCRIPT": params.extra_script or "",
    }
    return render_template(load_template("first-boot.sh"), values)


def build_gateway_wait_script(
    probe_ip: str, attempts: int = GATEWAY_WAIT_ATTEMPTS, interval: int = GATEWAY_WAIT_INTERVAL
) -> str:
    """Render a script that pings ``probe_ip`` until it answers or ``attempts`` run out."""
    _validate_ipv4("probe_ip", probe_ip)
    return "\n".join(
        [
            "#!/bin/bash",
            "PING_COUNT=0",
            f"MAX_PING_ATTEMPTS={int(attempts)}",
            f'echo "Waiting for ping to {probe_ip} to succeed..."',
            f"while ! ping -c 1 -W 2 {probe_ip} > /dev/null 2>&1; do",
            "    PING_COUNT=$((PING_COUNT + 1))",
            '    if [ "$PING_COUNT" -ge "$MAX_PING_ATTEMPTS" ]; then',
            f'        echo "Error: Failed to ping {probe_ip} after $MAX_PING_ATTEMPTS attempts"',
            "        exit 1",
            "    fi",
            '    echo "Attempt $PING_COUNT/$MAX_PING_ATTEMPTS: Waiting for network connectivity..."',
            f"    sleep {int(interval)}",
            "done",
            f'echo "Successfully pinged {probe_ip}, network is ready"',
            "",
        ]
    )


def build_cluster_join_arguments(params: ClusterJoinParameters) -> List[str]:
    """Build the installer arguments for labels and taints."""
    arguments = ["--kubelet-arg=" + shlex.quote("--cloud-provider=external")]
    for name, value in params.labels:
        arguments.append("--node-label " + shlex.quote(f"{name}={value}"))
    if params.taints:
        arguments.append("--kubelet-arg=" + shlex.quote("register-with-taints=" + ",".join(params.taints)))
    return arguments


def build_cluster_join_script(params: ClusterJoinParameters) -> str:
    params.validate()
    lines = [
        "set -e",
        "echo 'Installing K3S agent...'",
        f"curl -sfL {CLUSTER_INSTALLER_URL} | K3S_URL={shlex.quote(params.url)} K3S_TOKEN={shlex.quote(params.token)} \\",
        "  sh -s - \\",
    ]
    arguments = build_cluster_join_arguments(params)
    for index, argument in enumerate(arguments):
        suffix = " \\" if index < len(arguments) - 1 else ""
        lines.append(f"  {argument}{suffix}")
    lines.append("echo 'K3S installation completed'")
    return "\n".join(lines) + "\n"


def cluster_parameters(
    url: Optional[str], token: Optional[str], labels=None, taints=None
) -> Optional[ClusterJoinParameters]:
    """Return join parameters when both URL and token are set, otherwise None."""
    if not url or not token:
        return None
    return ClusterJoinParameters(
        url=url,
        token=token,
        labels=tuple((name, value) for name, value in (labels or ())),
        taints=tuple(taints or ()),
    )
