#!/usr/bin/env python3
"""vSwitch resource."""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError, ProvisioningError, RobotAPIError
from .print_manager import printer as default_printer
from .utilities import build_record


@dataclass
class VSwitchRecord:
    name: str
    vlan: int
    id: int = 0

    @classmethod
    def from_config(cls, key: str, data: Dict[str, Any]) -> "VSwitchRecord":
        data = dict(data or {})
        if "id" in data:
            raise ConfigurationError("invalid configuration", f"Computed key 'id' cannot be declared in vswitches.{key}")
        data.setdefault("name", key)
        record = build_record(cls, data, f"vswitches.{key}", required=("vlan",))
        if not 4000 <= int(record.vlan) <= 4091:
            raise ConfigurationError(
                "invalid configuration", f"vswitches.{key}: vlan must be between 4000 and 4091, got {record.vlan}"
            )
        return record

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class VSwitchResource:
    def __init__(self, client, printer=None) -> None:
        self.client = client
        self.printer = printer or default_printer

    def create(self, declared: VSwitchRecord) -> VSwitchRecord:
        try:
            vswitch = self.client.create_vswitch(int(declared.vlan), declared.name)
        except RobotAPIError as e:
            raise ProvisioningError("create vswitch failed", str(e)) from e
        self.printer.print_fields("Created vSwitch", vswitch_id=vswitch.id, vlan=vswitch.vlan, name=vswitch.name)
        return VSwitchRecord(name=vswitch.name, vlan=vswitch.vlan, id=vswitch.id)

    def read(self, state: VSwitchRecord) -> Optional[VSwitchRecord]:
        """Refresh a vSwitch; returns None when it no longer exists or was cancelled."""
        try:
            vswitch = self.client.get_vswitch(int(state.id))
        except RobotAPIError as e:
            if e.not_found:
                self.printer.print_warning(f"vSwitch {state.id} not found, dropping from state")
                return None
            raise ProvisioningError("read vswitch failed", str(e)) from e
        if vswitch.cancelled:
            self.printer.print_warning(f"vSwitch {state.id} is cancelled, dropping from state")
            return None
        return VSwitchRecord(name=vswitch.name or state.name, vlan=vswitch.vlan or state.vlan, id=state.id)

    def update(self, prior: VSwitchRecord, declared: VSwitchRecord) -> VSwitchRecord:
        try:
            vswitch = self.client.update_vswitch(int(prior.id), int(declared.vlan), declared.name)
        except RobotAPIError as e:
            raise ProvisioningError("update vswitch failed", str(e)) from e
        self.printer.print_fields("Updated vSwitch", vswitch_id=prior.id, vlan=vswitch.vlan, name=vswitch.name)
        return VSwitchRecord(name=vswitch.name, vlan=vswitch.vlan, id=prior.id)

    def delete(self, state: VSwitchRecord) -> List[str]:
        try:
            self.client.delete_vswitch(int(state.id))
        except RobotAPIError as e:
            if not e.not_found:
                raise ProvisioningError("delete vswitch failed", str(e)) from e
            self.printer.print_info(f"vSwitch {state.id} already gone")
            return []
        self.printer.print_success(f"vSwitch {state.id} cancelled")
        return []
