#!/usr/bin/env python3
"""Error taxonomy for provisioning operations.

Every failure the provisioner reports carries two parts: a short, stable
``summary`` (e.g. ``"invalid disk count"``) and a human-readable ``detail``
string with the raw cause. The ``kind`` classifies the failure so callers can
tell configuration mistakes from remote failures without parsing messages.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    CONFIGURATION = "configuration"
    REMOTE_API = "remote_api"
    REMOTE_COMMAND = "remote_command"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ProvisioningError(Exception):
    """Fatal error with a short summary and a detailed message."""

    kind = ErrorKind.REMOTE_API

    def __init__(self, summary: str, detail: str = "", kind: Optional[ErrorKind] = None) -> None:
        super().__init__(f"{summary}: {detail}" if detail else summary)
        self.summary = summary
        self.detail = detail
        if kind is not None:
            self.kind = kind
        # Set by the pipeline step runner when the error escapes a state
        self.stage = None


class ConfigurationError(ProvisioningError):
    kind = ErrorKind.CONFIGURATION


class MissingCredentialsError(ConfigurationError):
    pass


class IPPoolExhausted(ConfigurationError):
    pass


class ImmutableFieldError(ConfigurationError):
    pass


class DiskLayoutError(ConfigurationError):
    pass


class TemplateParameterError(ConfigurationError):
    pass


class ReachabilityTimeout(ProvisioningError):
    kind = ErrorKind.TIMEOUT


class PipelineCancelled(ProvisioningError):
    kind = ErrorKind.CANCELLED


class RobotAPIError(Exception):
    """Non-success response from the Robot webservice."""

    def __init__(self, status_code: int, code: str = "", message: str = "") -> None:
        if code and message:
            text = f"robot: {code}: {message}"
        elif not status_code:
            text = f"robot: request failed: {message}"
        else:
            text = f"robot: unexpected {status_code}: {message}"
        super().__init__(text)
        self.status_code = status_code
        self.code = code
        self.message = message

    @property
    def not_found(self) -> bool:
        return self.status_code == 404 or self.code.upper().endswith("NOT_FOUND")


class SessionConnectError(Exception):
    """The remote shell could not be opened."""


class RemoteCommandError(Exception):
    """A remote command exited with a non-zero status."""

    def __init__(self, command: str, exit_status: int, stdout: str = "", stderr: str = "") -> None:
        message = f"Command exited with status {exit_status}"
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)
        self.command = command
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr
