#!/usr/bin/env python3
"""Robot webservice client: the remote-management API verbs used by the provisioner."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote

import requests

from .errors import RobotAPIError
from .print_manager import printer as default_printer

DEFAULT_BASE_URL = "https://robot-ws.your-server.de"
DEFAULT_TIMEOUT_SECONDS = 30

STATUS_IN_PROCESS = "in process"
STATUS_READY = "ready"
STATUS_CANCELLED = "cancelled"


def _locations(value) -> List[str]:
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str)]
    return []


@dataclass
class Product:
    id: Any = 0
    name: str = ""
    description: List[str] = field(default_factory=list)
    traffic: str = ""
    location: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Product":
        return cls(
            id=data.get("id", 0),
            name=data.get("name") or "",
            description=list(data.get("description") or []),
            traffic=data.get("traffic") or "",
            location=_locations(data.get("location")),
        )


@dataclass
class Transaction:
    """An order transaction. ``status`` is one of "in process", "ready", "cancelled"."""

    id: str
    status: str = ""
    date: str = ""
    server_number: Optional[int] = None
    server_ip: str = ""
    product_id: Any = None
    product: Optional[Product] = None
    addons: List[str] = field(default_factory=list)

    @property
    def in_process(self) -> bool:
        return self.status == STATUS_IN_PROCESS

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Transaction":
        # product is either a bare id or a full product object
        raw_product = data.get("product")
        product = None
        product_id = None
        if isinstance(raw_product, dict):
            product = Product.from_api(raw_product)
            product_id = product.id
        elif raw_product is not None:
            product_id = raw_product
        server_number = data.get("server_number")
        return cls(
            id=str(data.get("id", "")),
            status=data.get("status") or "",
            date=data.get("date") or "",
            server_number=int(server_number) if server_number is not None else None,
            server_ip=data.get("server_ip") or "",
            product_id=product_id,
            product=product,
            addons=list(data.get("addons") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.product is None:
            data["product"] = self.product_id
        data.pop("product_id")
        return data


@dataclass
class Rescue:
    server_ip: str = ""
    active: bool = False
    password: str = ""
    authorized_key_fingerprints: List[str] = field(default_factory=list)

    def __repr__(self):
        return (
            f"Rescue(server_ip={self.server_ip!r}, active={self.active}, password='***', "
            f"authorized_key_fingerprints={self.authorized_key_fingerprints!r})"
        )

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Rescue":
        fingerprints = []
        for entry in data.get("authorized_key") or []:
            fingerprint = (entry.get("key") or {}).get("fingerprint")
            if fingerprint:
                fingerprints.append(fingerprint)
        return cls(
            server_ip=data.get("server_ip") or "",
            active=bool(data.get("active")),
            password=data.get("password") or "",
            authorized_key_fingerprints=fingerprints,
        )


@dataclass
class Server:
    server_number: int
    server_name: str = ""
    server_ip: str = ""
    status: str = ""
    product: str = ""
    location: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Server":
        return cls(
            server_number=int(data.get("server_number", 0)),
            server_name=data.get("server_name") or "",
            server_ip=data.get("server_ip") or "",
            status=data.get("status") or "",
            product=data.get("product") or "",
            location=data.get("dc") or data.get("location") or "",
        )


@dataclass
class VSwitch:
    id: int
    vlan: int = 0
    name: str = ""
    cancelled: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "VSwitch":
        # Responses come both bare and wrapped in {"vswitch": {...}}
        if "vswitch" in data and isinstance(data["vswitch"], dict):
            data = data["vswitch"]
        return cls(
            id=int(data.get("id", 0)),
            vlan=int(data.get("vlan") or 0),
            name=data.get("name") or "",
            cancelled=bool(data.get("cancelled", False)),
        )


class RobotClient:
    """HTTP client for the Robot webservice.

    Requests are form-encoded with HTTP basic auth; list parameters are sent as
    repeated ``key[]`` fields. Every non-accepted status is raised as a
    ``RobotAPIError`` carrying the structured status/code pair.
    """

    def __init__(
        self,
        username: str,
        password: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        printer=None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (username, password)
        self.printer = printer or default_printer

    def __repr__(self):
        return f"<RobotClient {self.base_url}>"

    def _request(
        self,
        method: str,
        path: str,
        form: Optional[Sequence[Tuple[str, Any]]] = None,
        accepted: Iterable[int] = (200,),
    ) -> Any:
        """Send one request and return the decoded JSON body.

        Args:
            method: HTTP method
            path: Path below the base URL
            form: Form fields as (key, value) pairs, repeated keys allowed
            accepted: Status codes that count as success

        Returns:
            Decoded response body (dict or list), empty dict when the body is empty

        Raises:
            RobotAPIError: On transport failures and non-accepted responses
        """
        url = f"{self.base_url}{path}"
        self.printer.print_action(f"{method} {url}")
        try:
            response = self.session.request(method, url, data=list(form) if form else None, timeout=self.timeout)
        except requests.RequestException as e:
            raise RobotAPIError(0, "", str(e)) from e

        if response.status_code not in tuple(accepted):
            self.printer.print_action(f"API request failed with status {response.status_code}: {response.text}")
            try:
                body = response.json()
                error = (body.get("error") or {}) if isinstance(body, dict) else {}
            except ValueError:
                error = {}
            if error.get("message"):
                raise RobotAPIError(
                    int(error.get("status") or response.status_code), error.get("code") or "", error["message"]
                )
            raise RobotAPIError(response.status_code, "", response.text)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise RobotAPIError(response.status_code, "", f"invalid JSON response: {e}") from e

    # Orders

    @staticmethod
    def _order_form(product_id, dist=None, location=None, password=None, keys=None, addons=None, test=False):
        form = [("product_id", str(product_id))]
        if dist is not None:
            form.append(("dist", dist))
        if location is not None:
            form.append(("location", location))
        if password is not None:
            form.append(("password", password))
        form.extend(("authorized_key[]", key) for key in keys or ())
        form.extend(("addon[]", addon) for addon in addons or ())
        if test:
            form.append(("test", "true"))
        return form

    def order_server(
        self,
        product_id: str,
        dist: Optional[str] = None,
        location: Optional[str] = None,
        password: Optional[str] = None,
        keys: Optional[List[str]] = None,
        addons: Optional[List[str]] = None,
        test: bool = False,
    ) -> Transaction:
        form = self._order_form(product_id, dist, location, password, keys, addons, test)
        body = self._request("POST", "/order/server/transaction", form, accepted=(200, 201))
        return Transaction.from_api(body.get("transaction") or {})

    def get_order_transaction(self, transaction_id: str) -> Transaction:
        body = self._request("GET", f"/order/server/transaction/{quote(transaction_id, safe='')}")
        return Transaction.from_api(body.get("transaction") or {})

    def order_market_server(
        self,
        product_id: int,
        dist: Optional[str] = None,
        password: Optional[str] = None,
        keys: Optional[List[str]] = None,
        addons: Optional[List[str]] = None,
        test: bool = False,
    ) -> Transaction:
        """Order a server from the server market (auction)."""
        form = self._order_form(product_id, dist, None, password, keys, addons, test)
        body = self._request("POST", "/order/server_market/transaction", form, accepted=(200, 201))
        return Transaction.from_api(body.get("transaction") or {})

    def get_market_order_transaction(self, transaction_id: str) -> Transaction:
        body = self._request(
            "GET", f"/order/server_market/transaction/{quote(transaction_id, safe='')}"
        )
        return Transaction.from_api(body.get("transaction") or {})

    # Boot and reset

    def activate_rescue(self, server_number: int, fingerprints: Sequence[str], os_name: str = "linux") -> Rescue:
        form = [("os", os_name)]
        form.extend(("authorized_key[]", fingerprint) for fingerprint in fingerprints)
        body = self._request("POST", f"/boot/{int(server_number)}/rescue", form)
        return Rescue.from_api(body.get("rescue") or {})

    def reset(self, server_number: int, kind: str = "hw") -> None:
        self._request("POST", f"/reset/{int(server_number)}", [("type", kind or "hw")])

    # Servers

    def cancel_server(self, server_number: int, cancel_date: str = "") -> None:
        """Request cancellation; an empty date means the end of the billing period."""
        form = [("cancellation_date", cancel_date)] if cancel_date else None
        self._request("DELETE", f"/server/{int(server_number)}/cancellation", form)

    def set_server_name(self, server_number: int, name: str) -> None:
        self._request("POST", f"/server/{int(server_number)}", [("server_name", name)])

    def list_all_servers(self) -> List[Server]:
        body = self._request("GET", "/server")
        # The endpoint returns a list of {"server": {...}} envelopes
        if isinstance(body, list):
            return [Server.from_api(entry.get("server") or entry) for entry in body]
        return [Server.from_api(entry) for entry in body.get("server") or []]

    # vSwitches

    def add_server_to_vswitch(self, vswitch_id: int, server_ip: str) -> None:
        self._request("POST", f"/vswitch/{int(vswitch_id)}/server", [("server[]", server_ip)], accepted=(200, 201))

    def create_vswitch(self, vlan: int, name: str) -> VSwitch:
        body = self._request("POST", "/vswitch", [("vlan", str(vlan)), ("name", name)], accepted=(200, 201))
        vswitch = VSwitch.from_api(body)
        # Fall back to the sent values when the response omits them
        vswitch.vlan = vswitch.vlan or vlan
        vswitch.name = vswitch.name or name
        return vswitch

    def get_vswitch(self, vswitch_id: int) -> VSwitch:
        return VSwitch.from_api(self._request("GET", f"/vswitch/{int(vswitch_id)}"))

    def list_vswitches(self) -> List[VSwitch]:
        body = self._request("GET", "/vswitch")
        entries = body if isinstance(body, list) else body.get("vswitch") or []
        return [VSwitch.from_api(entry) for entry in entries]

    def update_vswitch(self, vswitch_id: int, vlan: int, name: str) -> VSwitch:
        body = self._request("POST", f"/vswitch/{int(vswitch_id)}", [("vlan", str(vlan)), ("name", name)])
        vswitch = VSwitch.from_api(body) if body else VSwitch(id=int(vswitch_id))
        vswitch.id = vswitch.id or int(vswitch_id)
        vswitch.vlan = vswitch.vlan or vlan
        vswitch.name = vswitch.name or name
        return vswitch

    def delete_vswitch(self, vswitch_id: int) -> None:
        self._request("DELETE", f"/vswitch/{int(vswitch_id)}?cancellation_date=now")
