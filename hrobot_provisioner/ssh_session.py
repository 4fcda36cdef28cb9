#!/usr/bin/env python3
"""Remote command and file transfer session over SSH/SFTP."""

import socket
from typing import Any, Dict, Optional, Tuple

import paramiko

from .errors import RemoteCommandError, SessionConnectError
from .print_manager import printer as default_printer

DEFAULT_CONNECT_TIMEOUT = 180


class AgentAuth:
    """Authenticate with the keys offered by the local SSH agent."""

    def connect_kwargs(self) -> Dict[str, Any]:
        return {"allow_agent": True, "look_for_keys": False}

    def __repr__(self):
        return "<AgentAuth>"


class PasswordAuth:
    """Authenticate with a password, e.g. the one-time rescue password."""

    def __init__(self, password: str) -> None:
        if not password:
            raise ValueError("Password authentication requires a non-empty password")
        self._password = password

    def connect_kwargs(self) -> Dict[str, Any]:
        return {"password": self._password, "allow_agent": False, "look_for_keys": False}

    def __repr__(self):
        return "<PasswordAuth ***>"


class RemoteSession:
    """An authenticated SSH connection exposing run/upload/close.

    Host keys are never verified: rescue systems are ephemeral and have no
    prior trust anchor.
    """

    def __init__(self, client: paramiko.SSHClient, host: str, user: str, printer=None) -> None:
        self._client = client
        self.host = host
        self.user = user
        self.printer = printer or default_printer
        self._closed = False

    def __repr__(self):
        return f"<RemoteSession {self.user}@{self.host}>"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def run(self, command: str, timeout: Optional[float] = None) -> str:
        """Run a command and return its stdout.

        Raises:
            RemoteCommandError: If the command exits non-zero (stderr is attached)
        """
        if "\n" in command.strip():
            self.printer.print_action(f"Run on {self}:\n{command}")
        else:
            self.printer.print_action(f"Run on {self}: {command}")
        _stdin, stdout, stderr = self._client.exec_command(command, timeout=timeout)
        output = stdout.read().decode("utf-8", errors="replace")
        errors = stderr.read().decode("utf-8", errors="replace")
        exit_status = stdout.channel.recv_exit_status()
        if exit_status != 0:
            raise RemoteCommandError(command, exit_status, output, errors)
        return output

    def upload(self, remote_path: str, data: bytes, mode: int) -> None:
        """Write ``data`` to ``remote_path`` and set its permission bits."""
        self.printer.print_action(f"Uploading {len(data)} bytes to {self.host}:{remote_path} (mode {oct(mode)})")
        sftp = self._client.open_sftp()
        try:
            with sftp.open(remote_path, "wb") as remote_file:
                remote_file.write(data)
            sftp.chmod(remote_path, mode)
        finally:
            sftp.close()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._client.close()


def connect(
    host: str,
    user: str,
    auth,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
    port: int = 22,
    printer=None,
) -> RemoteSession:
    """Open a remote session.

    Args:
        host: Hostname or IP address
        user: Remote user name
        auth: AgentAuth or PasswordAuth
        timeout: Connect, banner and auth timeout in seconds
        port: SSH port
        printer: PrintManager instance for output

    Raises:
        SessionConnectError: If the connection or authentication fails
    """
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.MissingHostKeyPolicy())  # Ignore completely.
    try:
        client.connect(
            host,
            port=port,
            username=user,
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            **auth.connect_kwargs(),
        )
    except paramiko.AuthenticationException as e:
        client.close()
        raise SessionConnectError(f"Authentication to {user}@{host}:{port} failed using {auth!r}: {e}") from e
    except (paramiko.SSHException, socket.error) as e:
        client.close()
        raise SessionConnectError(f"Cannot connect to {user}@{host}:{port}: {e}") from e
    return RemoteSession(client, host, user, printer=printer)


def split_output(output: str) -> Tuple[str, ...]:
    """Split command output into stripped, non-empty lines."""
    return tuple(line.strip() for line in output.splitlines() if line.strip())
