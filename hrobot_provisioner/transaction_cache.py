#!/usr/bin/env python3
"""Order transaction cache and bulk server list cache.

Both caches only save API calls against the rate-limited Robot webservice;
losing them never changes behaviour, so disk errors are reported as warnings.
"""

import json
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .print_manager import printer as default_printer
from .robot_client import Server, Transaction

CACHE_TTL = timedelta(minutes=5)
TRANSACTION_CACHE_FILE = "transaction-cache.json"
MARKET_TRANSACTION_CACHE_FILE = "market-transaction-cache.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_cache_path(filename: str, cache_dir: Optional[str] = None) -> str:
    """Resolve a cache file path.

    Uses ``cache_dir`` when given, otherwise ``.cache/`` under the working
    directory, falling back to the system temp directory when the working
    directory is unavailable.
    """
    if cache_dir:
        return os.path.join(cache_dir, filename)
    try:
        base_dir = os.path.join(os.getcwd(), ".cache")
    except OSError:
        return os.path.join(tempfile.gettempdir(), f"hrobot-provisioner-{filename}")
    return os.path.join(base_dir, filename)


def _format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TransactionCache:
    """Thread-safe map of transaction id to (transaction, last_updated).

    The on-disk format is a JSON object keyed by transaction id with
    ``{"transaction": {...}, "last_updated": "<RFC3339>"}`` values. Entries
    older than the TTL are discarded when the file is loaded. Once loaded, an
    entry is trusted until it is replaced; callers decide freshness with
    ``needs_refresh``.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        ttl: timedelta = CACHE_TTL,
        now: Callable[[], datetime] = _utcnow,
        printer=None,
    ) -> None:
        self.path = path
        self.ttl = ttl
        self.now = now
        self.printer = printer or default_printer
        self._entries: Dict[str, Tuple[Transaction, datetime]] = {}
        self._lock = threading.RLock()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def load(self) -> int:
        """Load non-expired entries from disk.

        Returns:
            int: Number of entries loaded
        """
        if not self.path or not os.path.exists(self.path):
            return 0
        try:
            with open(self.path, "r", encoding="utf-8") as cache_file:
                disk_cache = json.load(cache_file)
        except (OSError, ValueError) as e:
            self.printer.print_warning(f"Ignoring unreadable transaction cache {self.path}: {e}")
            return 0
        if not isinstance(disk_cache, dict):
            self.printer.print_warning(f"Ignoring malformed transaction cache {self.path}")
            return 0

        now = self.now()
        loaded = 0
        with self._lock:
            for transaction_id, entry in disk_cache.items():
                try:
                    last_updated = _parse_timestamp(entry["last_updated"])
                    transaction = Transaction.from_api(entry["transaction"])
                except (KeyError, TypeError, ValueError):
                    continue
                if now - last_updated <= self.ttl:
                    self._entries[transaction_id] = (transaction, last_updated)
                    loaded += 1
        self.printer.print_action(f"Loaded {loaded} cached transaction(s) from {self.path}")
        return loaded

    def save(self) -> None:
        """Write the cache atomically with mode 0600."""
        if not self.path:
            return
        with self._lock:
            payload = {
                transaction_id: {"transaction": transaction.to_dict(), "last_updated": _format_timestamp(updated)}
                for transaction_id, (transaction, updated) in self._entries.items()
            }
            directory = os.path.dirname(self.path) or "."
            try:
                os.makedirs(directory, mode=0o755, exist_ok=True)
                fd, temp_path = tempfile.mkstemp(dir=directory, prefix=".transaction-cache-")
                with os.fdopen(fd, "w", encoding="utf-8") as temp_file:
                    json.dump(payload, temp_file)
                os.chmod(temp_path, 0o600)
                os.replace(temp_path, self.path)
            except OSError as e:
                self.printer.print_warning(f"Could not write transaction cache {self.path}: {e}")

    def get(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            entry = self._entries.get(transaction_id)
        return entry[0] if entry else None

    def set(self, transaction: Transaction) -> None:
        with self._lock:
            self._entries[transaction.id] = (transaction, self.now())
        self.save()

    def remove(self, transaction_id: str) -> None:
        with self._lock:
            removed = self._entries.pop(transaction_id, None)
        if removed is not None:
            self.save()

    @staticmethod
    def needs_refresh(transaction: Optional[Transaction]) -> bool:
        """Only "in process" transactions are re-fetched; other statuses are final."""
        return transaction is None or transaction.in_process


class ServerListCache:
    """Fetches the bulk server list at most once per process."""

    def __init__(self, client, printer=None) -> None:
        self.client = client
        self.printer = printer or default_printer
        self._servers: Optional[List[Server]] = None
        self._lock = threading.Lock()

    def servers(self) -> List[Server]:
        if self._servers is not None:
            return self._servers
        with self._lock:
            if self._servers is None:
                self.printer.print_action("Fetching server list from Robot")
                self._servers = self.client.list_all_servers()
                self.printer.print_info(f"Fetched {len(self._servers)} server(s) from Robot")
        return self._servers

    def get(self, server_number: int) -> Optional[Server]:
        for server in self.servers():
            if server.server_number == int(server_number):
                return server
        return None

    def invalidate(self) -> None:
        with self._lock:
            self._servers = None
