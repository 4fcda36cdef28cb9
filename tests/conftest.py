#!/usr/bin/env python3
"""
Shared pytest configuration and fixtures for all tests.
"""

import os
import sys
from typing import Any, Dict, List
from unittest.mock import Mock

import pytest

# Add the parent directory to Python path so we can import modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from hrobot_provisioner.configuration_manager import NetworkSettings, PipelineSettings  # noqa: E402
from hrobot_provisioner.errors import RemoteCommandError  # noqa: E402
from hrobot_provisioner.server_resource import ManagedServer  # noqa: E402

TWO_DISK_LISTING = "sda  1.8T disk\nsdb  1.8T disk\n"


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Setup test environment automatically for all tests"""
    parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    if parent_dir not in sys.path:
        sys.path.insert(0, parent_dir)


@pytest.fixture
def mock_printer() -> Mock:
    """Mock printer for testing output operations.

    Returns:
        Mock: Mock printer instance with all required methods.
    """
    printer = Mock()
    printer.print_header = Mock()
    printer.print_info = Mock()
    printer.print_action = Mock()
    printer.print_success = Mock()
    printer.print_error = Mock()
    printer.print_warning = Mock()
    printer.print_step = Mock()
    printer.print_fields = Mock()
    return printer


class FakeClock:
    """Monotonic clock that only advances when ``sleep`` is called."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


class FakeSession:
    """In-memory stand-in for RemoteSession.

    ``responses`` maps a command prefix to either the stdout to return or an
    exception instance to raise. Unmatched commands return an empty string.
    """

    def __init__(self, host: str, responses: Dict[str, Any] = None, upload_errors: Dict[str, Exception] = None):
        self.host = host
        self.responses = responses or {}
        self.upload_errors = upload_errors or {}
        self.commands: List[str] = []
        self.uploads: Dict[str, Any] = {}
        self.closed = False

    def run(self, command: str, timeout=None) -> str:
        self.commands.append(command)
        for prefix, response in self.responses.items():
            if command.startswith(prefix):
                if isinstance(response, Exception):
                    raise response
                return response
        return ""

    def upload(self, remote_path: str, data: bytes, mode: int) -> None:
        if remote_path in self.upload_errors:
            raise self.upload_errors[remote_path]
        self.uploads[remote_path] = (data, mode)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def session_factory():
    """Factory fixture returning a connect() replacement and the sessions it opened.

    Each call to connect pops the next plan: a response map, a prepared
    FakeSession, or an exception to raise. The default is a healthy two-disk
    rescue system followed by an installed OS.
    """

    def _create(plans=None):
        plans = list(plans or [{"lsblk": TWO_DISK_LISTING}, {}])
        opened: List[FakeSession] = []

        def connect(host, user, auth, timeout=None, port=22, printer=None):
            responses = plans.pop(0) if plans else {}
            if isinstance(responses, Exception):
                raise responses
            if isinstance(responses, FakeSession):
                session = responses
            else:
                session = FakeSession(host, responses)
            opened.append(session)
            return session

        return connect, opened

    return _create


@pytest.fixture
def pipeline_settings() -> PipelineSettings:
    return PipelineSettings(
        rescue_wait_minutes=1,
        os_wait_minutes=1,
        os_wait_extension_minutes=1,
        reboot_settle_seconds=0,
        network=NetworkSettings(),
    )


@pytest.fixture
def mock_waiter() -> Mock:
    waiter = Mock()
    waiter.wait_until_reachable = Mock(return_value=1)
    waiter.wait_with_extension = Mock(return_value=1)
    return waiter


@pytest.fixture
def mock_client() -> Mock:
    """Mock RobotClient with every verb the resources call."""
    client = Mock()
    client.activate_rescue = Mock()
    client.reset = Mock()
    client.set_server_name = Mock()
    client.cancel_server = Mock()
    client.add_server_to_vswitch = Mock()
    return client


@pytest.fixture
def server_factory():
    """Factory fixture for declared ManagedServer records."""

    def _create(**overrides) -> ManagedServer:
        values = {
            "name": "worker",
            "server_number": 2345678,
            "server_ip": "203.0.113.10",
            "arch": "amd64",
            "encryption_passphrase": "correct horse battery staple",
            "rescue_authorized_key_fingerprints": ["aa:bb:cc:dd"],
        }
        values.update(overrides)
        return ManagedServer(**values)

    return _create


@pytest.fixture
def command_failure():
    """Factory for RemoteCommandError instances."""

    def _create(command="false", exit_status=1, stdout="", stderr="boom"):
        return RemoteCommandError(command, exit_status, stdout, stderr)

    return _create
