#!/usr/bin/env python3
"""Utilities module for the Hetzner Robot provisioner."""

import secrets
import socket
import time
from dataclasses import fields
from typing import Callable, Optional, Tuple

from .errors import ConfigurationError, ReachabilityTimeout
from .print_manager import printer as default_printer


def format_runtime(start_time, end_time):
    """
    Format runtime duration in a human-readable way.

    Args:
        start_time (float): Start timestamp from time.time()
        end_time (float): End timestamp from time.time()

    Returns:
        str: Formatted runtime string (e.g., "5m 23s", "1h 15m 30s")
    """
    total_seconds = int(end_time - start_time)

    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60

    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    elif minutes > 0:
        return f"{minutes}m {seconds}s"
    else:
        return f"{seconds}s"


def first_non_empty(*values):
    """Return the first truthy value, or an empty string."""
    for value in values:
        if value:
            return value
    return ""


def generate_name_hash() -> str:
    """Generate a random 6-character hex suffix for computed server names.

    The suffix is random rather than derived from the inputs: it changes only
    because callers regenerate it when the base name or version changes.
    """
    return secrets.token_hex(3)


def compute_names(name: str, name_hash: str) -> Tuple[str, str]:
    """Build the (server_name, robot_name) pair from a base name and hash suffix."""
    computed = f"{name}-{name_hash}"
    return computed, computed


def _try_connect(host: str, port: int, timeout: float) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class ReachabilityWaiter:
    """Polls a TCP endpoint at a fixed interval until it accepts a connection.

    This is a plain fixed-interval poll: it is used to wait for a machine to
    finish booting, which takes a bounded and roughly known time.
    """

    def __init__(
        self,
        poll_interval: float = 5,
        attempt_timeout: float = 5,
        connect: Optional[Callable[[str, int, float], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        printer=None,
    ) -> None:
        """Initialize the waiter.

        Args:
            poll_interval: Seconds to sleep between connection attempts
            attempt_timeout: Per-attempt connection timeout in seconds
            connect: Callable(host, port, timeout) -> bool, defaults to a TCP connect
            clock: Monotonic clock used for the deadline
            sleep: Sleep function used between attempts
            printer: PrintManager instance for output
        """
        self.poll_interval = poll_interval
        self.attempt_timeout = attempt_timeout
        self.connect = connect or _try_connect
        self.clock = clock
        self.sleep = sleep
        self.printer = printer or default_printer

    def wait_until_reachable(self, host: str, port: int, timeout_seconds: float) -> int:
        """Wait until host:port accepts a TCP connection.

        Attempt and sleep durations are clamped to the time remaining, so a
        timeout is reported no earlier than ``timeout_seconds`` and no later
        than one poll interval after it.

        Args:
            host: Hostname or IP address
            port: TCP port
            timeout_seconds: Overall deadline in seconds

        Returns:
            Number of connection attempts made

        Raises:
            ReachabilityTimeout: If the deadline elapses without a successful connection
        """
        endpoint = f"{host}:{port}"
        deadline = self.clock() + timeout_seconds
        attempts = 0
        self.printer.print_action(f"Polling {endpoint} every {self.poll_interval}s (timeout {timeout_seconds}s)")

        while True:
            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            attempts += 1
            if self.connect(host, port, min(self.attempt_timeout, remaining)):
                self.printer.print_action(f"{endpoint} reachable after {attempts} attempt(s)")
                return attempts
            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            self.sleep(min(self.poll_interval, remaining))

        raise ReachabilityTimeout("timeout", f"timeout waiting for {endpoint}")

    def wait_with_extension(self, host: str, port: int, timeout_seconds: float, extension_seconds: float) -> int:
        """Wait with a primary timeout, then one extended attempt before failing.

        Raises:
            ReachabilityTimeout: If both the primary and the extended wait time out
        """
        try:
            return self.wait_until_reachable(host, port, timeout_seconds)
        except ReachabilityTimeout as first:
            self.printer.print_warning(
                f"{host}:{port} not reachable after {format_runtime(0, timeout_seconds)}, "
                f"retrying with extended timeout of {format_runtime(0, extension_seconds)}"
            )
            try:
                return self.wait_until_reachable(host, port, extension_seconds)
            except ReachabilityTimeout as second:
                raise ReachabilityTimeout("timeout", f"{first.detail} / {second.detail}") from second


def build_record(record_class, data, where, required=()):
    """Build a dataclass record from a mapping, rejecting unknown keys.

    Args:
        record_class: Dataclass type to instantiate
        data: Mapping of field name to value (None is treated as empty)
        where: Location used in error messages, e.g. "servers.worker-1"
        required: Field names that must be present and non-empty

    Returns:
        An instance of ``record_class``

    Raises:
        ConfigurationError: On unknown keys, missing required keys or a non-mapping
    """
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigurationError("invalid configuration", f"{where} must be a mapping, got {type(data).__name__}")
    known = {item.name for item in fields(record_class)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError("invalid configuration", f"Unknown key(s) in {where}: {', '.join(unknown)}")
    missing = [name for name in required if data.get(name) in (None, "", [])]
    if missing:
        raise ConfigurationError("invalid configuration", f"Missing required key(s) in {where}: {', '.join(missing)}")
    return record_class(**{key: value for key, value in data.items() if value is not None})
