#!/usr/bin/env python3
"""Persisted state of the managed resources."""

import json
import os
import shutil
import subprocess
import tempfile
import threading
from typing import Any, Callable, Dict, List, Optional

import yaml

from .errors import ConfigurationError
from .print_manager import printer as default_printer

STATE_SECTIONS = ("servers", "orders", "auction_orders", "vswitches")
TERRAFORM_RESOURCE_TYPE = "hrobot_configuration"


class StateStore:
    """YAML file holding one mapping per resource kind, keyed by resource name.

    Writes go through a temporary file and ``os.replace`` so an interrupted
    run never leaves a truncated state file behind.
    """

    def __init__(self, path: str, printer=None) -> None:
        self.path = path
        self.printer = printer or default_printer
        self._lock = threading.RLock()
        self._state: Dict[str, Dict[str, Any]] = {section: {} for section in STATE_SECTIONS}

    def load(self) -> "StateStore":
        """Read the state file; a missing file is an empty state.

        Raises:
            ConfigurationError: If the file cannot be parsed
        """
        if not os.path.exists(self.path):
            self.printer.print_info(f"No state file at {self.path}, starting empty")
            return self
        try:
            with open(self.path, "r", encoding="utf-8") as state_file:
                data = yaml.safe_load(state_file) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError("invalid state file", f"{self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError("invalid state file", f"{self.path} must contain a mapping")
        unknown = sorted(set(data) - set(STATE_SECTIONS))
        if unknown:
            raise ConfigurationError("invalid state file", f"Unknown section(s) in {self.path}: {', '.join(unknown)}")
        with self._lock:
            for section in STATE_SECTIONS:
                self._state[section] = dict(data.get(section) or {})
        return self

    def save(self) -> None:
        with self._lock:
            snapshot = {section: dict(self._state[section]) for section in STATE_SECTIONS}
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=directory, prefix=".hrobot-state-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as temp_file:
                    yaml.safe_dump(snapshot, temp_file, default_flow_style=False, sort_keys=True)
                os.chmod(temp_path, 0o600)
                os.replace(temp_path, self.path)
            except BaseException:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise

    def section(self, kind: str) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {key: dict(value) for key, value in self._state[kind].items()}

    def get(self, kind: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._state[kind].get(key)
            return dict(value) if value is not None else None

    def put(self, kind: str, key: str, record: Dict[str, Any]) -> None:
        """Store a record and write the state file immediately."""
        with self._lock:
            self._state[kind][key] = dict(record)
            self.save()

    def remove(self, kind: str, key: str) -> None:
        with self._lock:
            if self._state[kind].pop(key, None) is not None:
                self.save()

    def scan_local_ips(self) -> List[str]:
        """Collect every private address assigned to a persisted server."""
        with self._lock:
            return [record["local_ip"] for record in self._state["servers"].values() if record.get("local_ip")]


def extract_terraform_local_ips(state_document: Dict[str, Any]) -> List[str]:
    addresses = []
    for resource in state_document.get("resources") or []:
        if resource.get("type") != TERRAFORM_RESOURCE_TYPE:
            continue
        for instance in resource.get("instances") or []:
            local_ip = (instance.get("attributes") or {}).get("local_ip")
            if local_ip:
                addresses.append(local_ip)
    return addresses


def terraform_local_ips(
    working_dir: Optional[str] = None,
    run: Callable[..., Any] = subprocess.run,
    which: Callable[[str], Optional[str]] = shutil.which,
    printer=None,
) -> List[str]:
    """Pull the OpenTofu/Terraform state and return the assigned private addresses.

    Tries ``tofu`` first, then ``terraform``. Missing binaries or a failed pull
    yield an empty list with a warning; seeding from this source is optional.
    """
    printer = printer or default_printer
    for binary in ("tofu", "terraform"):
        executable = which(binary)
        if not executable:
            continue
        printer.print_action(f"Running: {executable} state pull")
        try:
            result = run(
                [executable, "state", "pull"],
                cwd=working_dir,
                capture_output=True,
                text=True,
                timeout=60,
                check=True,
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            printer.print_warning(f"{binary} state pull failed: {e}")
            continue
        if not result.stdout.strip():
            return []
        try:
            return extract_terraform_local_ips(json.loads(result.stdout))
        except ValueError as e:
            printer.print_warning(f"Could not parse {binary} state: {e}")
            return []
    printer.print_warning("Neither tofu nor terraform found, skipping state seeding")
    return []
