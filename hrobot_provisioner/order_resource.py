#!/usr/bin/env python3
"""Server order and server market (auction) order resources."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError, ImmutableFieldError, ProvisioningError, RobotAPIError
from .print_manager import printer as default_printer
from .robot_client import Transaction
from .utilities import build_record

ORDER_COMPUTED_FIELDS = ("id", "transaction_id", "status", "server_number", "server_ip")


@dataclass
class ServerOrder:
    product_id: str
    dist: Optional[str] = None
    location: Optional[str] = None
    authorized_key_fingerprints: List[str] = field(default_factory=list)
    password: Optional[str] = field(default=None, repr=False)
    addons: List[str] = field(default_factory=list)
    test: bool = False
    id: str = ""
    transaction_id: str = ""
    status: str = ""
    server_number: Optional[int] = None
    server_ip: str = ""

    def order_arguments(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "dist": self.dist,
            "location": self.location,
            "password": self.password,
            "keys": list(self.authorized_key_fingerprints),
            "addons": list(self.addons),
            "test": bool(self.test),
        }


@dataclass
class AuctionOrder:
    product_id: int
    dist: Optional[str] = None
    authorized_key_fingerprints: List[str] = field(default_factory=list)
    password: Optional[str] = field(default=None, repr=False)
    addons: List[str] = field(default_factory=list)
    test: bool = False
    id: str = ""
    transaction_id: str = ""
    status: str = ""
    server_number: Optional[int] = None
    server_ip: str = ""

    def order_arguments(self) -> Dict[str, Any]:
        return {
            "product_id": int(self.product_id),
            "dist": self.dist,
            "password": self.password,
            "keys": list(self.authorized_key_fingerprints),
            "addons": list(self.addons),
            "test": bool(self.test),
        }


def _apply_transaction(record, transaction: Transaction):
    record.id = transaction.id
    record.transaction_id = transaction.id
    record.status = transaction.status
    record.server_number = transaction.server_number
    record.server_ip = transaction.server_ip
    return record


def order_from_config(record_class, section: str, key: str, data: Dict[str, Any]):
    declared = sorted(name for name in ORDER_COMPUTED_FIELDS if name in (data or {}))
    if declared:
        raise ConfigurationError(
            "invalid configuration", f"Computed key(s) cannot be declared in {section}.{key}: {', '.join(declared)}"
        )
    return build_record(record_class, data, f"{section}.{key}", required=("product_id",))


def order_to_dict(record) -> Dict[str, Any]:
    return asdict(record)


class OrderResource:
    """Order lifecycle backed by the transaction cache.

    Reads trust cached terminal transactions and only call the API while the
    cached status is "in process". Orders cannot be updated; deleting one
    only forgets it, cancellation belongs to the managed server.
    """

    def __init__(self, client, cache, market: bool = False, printer=None) -> None:
        self.client = client
        self.cache = cache
        self.market = market
        self.printer = printer or default_printer
        self.label = "auction order" if market else "order"

    def _fetch(self, transaction_id: str) -> Transaction:
        if self.market:
            return self.client.get_market_order_transaction(transaction_id)
        return self.client.get_order_transaction(transaction_id)

    def create(self, declared):
        record = type(declared)(**asdict(declared))
        try:
            if self.market:
                transaction = self.client.order_market_server(**record.order_arguments())
            else:
                transaction = self.client.order_server(**record.order_arguments())
        except RobotAPIError as e:
            raise ProvisioningError("order failed", str(e)) from e
        self.cache.set(transaction)
        self.printer.print_fields(f"Created {self.label}", transaction_id=transaction.id, status=transaction.status)
        return _apply_transaction(record, transaction)

    def read(self, state):
        """Refresh an order from cache or API; returns None when the transaction is gone.

        Raises:
            ProvisioningError: On API errors other than not-found
        """
        if not state.id:
            return None
        cached = self.cache.get(state.id)
        if cached is not None and not self.cache.needs_refresh(cached):
            self.printer.print_action(f"Using cached transaction {state.id} ({cached.status})")
            return _apply_transaction(state, cached)

        if cached is not None:
            self.printer.print_action(f"Refreshing transaction {state.id} (status is {cached.status})")
        else:
            self.printer.print_action(f"No cached data for transaction {state.id}, fetching")
        try:
            transaction = self._fetch(state.id)
        except RobotAPIError as e:
            if e.not_found:
                self.printer.print_warning(f"Transaction {state.id} not found, dropping {self.label} from state")
                self.cache.remove(state.id)
                return None
            raise ProvisioningError("read transaction", str(e)) from e
        self.cache.set(transaction)
        return _apply_transaction(state, transaction)

    def update(self, prior, declared):
        raise ImmutableFieldError("Update Not Supported", "Order is immutable; destroy and re-create if needed.")

    def delete(self, state) -> List[str]:
        self.printer.print_info(f"{self.label.capitalize()} {state.id} removed from state")
        return []


def read_order_transaction(client, transaction_id: str, market: bool = False) -> Transaction:
    """Uncached read of a single order transaction."""
    try:
        if market:
            return client.get_market_order_transaction(transaction_id)
        return client.get_order_transaction(transaction_id)
    except RobotAPIError as e:
        raise ProvisioningError("read transaction", str(e)) from e
