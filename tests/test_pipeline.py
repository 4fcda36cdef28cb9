#!/usr/bin/env python3
"""
Tests for the provisioning pipeline.

Every collaborator is replaced: the Robot client and the reachability waiter
are mocks, and SSH sessions are in-memory FakeSession objects, so the state
machine runs without network access or real sleeps.
"""

import os
import sys
import threading
from unittest.mock import Mock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import TWO_DISK_LISTING, FakeSession  # noqa: E402
from hrobot_provisioner.errors import (  # noqa: E402
    ConfigurationError,
    DiskLayoutError,
    ErrorKind,
    PipelineCancelled,
    ProvisioningError,
    ReachabilityTimeout,
    RobotAPIError,
    SessionConnectError,
    TemplateParameterError,
)
from hrobot_provisioner.payload_builder import ClusterJoinParameters  # noqa: E402
from hrobot_provisioner.pipeline import (  # noqa: E402
    FIRST_BOOT_PATH,
    INSTALLIMAGE_COMMAND,
    POST_INSTALL_PATH,
    REBOOT_COMMAND,
    SETUP_CONF_PATH,
    PipelineState,
    ProvisioningPipeline,
    ProvisioningTarget,
)


def make_target(**overrides) -> ProvisioningTarget:
    values = {
        "server_number": 2345678,
        "server_ip": "203.0.113.10",
        "hostname": "worker-a1b2c3",
        "arch": "amd64",
        "passphrase": "correct horse battery staple",
        "local_ip": "10.1.0.2",
        "fingerprints": ["aa:bb:cc:dd"],
    }
    values.update(overrides)
    return ProvisioningTarget(**values)


@pytest.fixture
def build_pipeline(mock_client, pipeline_settings, mock_printer, mock_waiter, session_factory):
    """Factory returning (pipeline, opened_sessions) for a list of session plans."""

    def _create(plans=None, cancel_event=None):
        connect, opened = session_factory(plans)
        pipeline = ProvisioningPipeline(
            mock_client,
            pipeline_settings,
            printer=mock_printer,
            waiter=mock_waiter,
            connect=connect,
            sleep=Mock(),
            cancel_event=cancel_event,
        )
        return pipeline, opened

    return _create


class TestHappyPath:
    """A healthy server runs through every state in order."""

    def test_all_states_complete_in_order(self, build_pipeline, mock_client) -> None:
        pipeline, opened = build_pipeline()

        result = pipeline.run(make_target())

        assert result.completed_states == list(PipelineState)
        assert result.disks == ["/dev/sda", "/dev/sdb"]
        assert result.warnings == []
        mock_client.activate_rescue.assert_called_once_with(2345678, ["aa:bb:cc:dd"], os_name="linux")
        mock_client.reset.assert_called_once_with(2345678, "hw")

    def test_rescue_session_receives_payloads_and_commands(self, build_pipeline) -> None:
        """Test the rescue host sees lsblk, both uploads, installimage and reboot.

        The autosetup directive is written with mode 0600 because it carries
        the encryption passphrase.
        """
        pipeline, opened = build_pipeline()

        pipeline.run(make_target())

        rescue, installed = opened
        assert rescue.commands[0].startswith("lsblk")
        assert INSTALLIMAGE_COMMAND in rescue.commands
        assert rescue.commands[-1] == REBOOT_COMMAND
        directive, directive_mode = rescue.uploads[SETUP_CONF_PATH]
        assert directive_mode == 0o600
        assert b"DRIVE1 /dev/sda" in directive
        assert b"DRIVE2 /dev/sdb" in directive
        assert b"HOSTNAME worker-a1b2c3" in directive
        assert rescue.uploads[POST_INSTALL_PATH][1] == 0o700

    def test_first_boot_runs_on_installed_system(self, build_pipeline, mock_printer) -> None:
        pipeline, opened = build_pipeline()

        pipeline.run(make_target())

        installed = opened[1]
        script, mode = installed.uploads[FIRST_BOOT_PATH]
        assert mode == 0o700
        assert b"10.1.0.2" in script
        assert installed.commands == [f"chmod +x {FIRST_BOOT_PATH} && {FIRST_BOOT_PATH}"]
        mock_printer.print_info.assert_any_call("Cluster parameters not provided, skipping cluster join")

    def test_sessions_closed_and_waits_use_settings(self, build_pipeline, mock_waiter) -> None:
        pipeline, opened = build_pipeline()

        pipeline.run(make_target())

        assert all(session.closed for session in opened)
        mock_waiter.wait_until_reachable.assert_called_once_with("203.0.113.10", 22, 60)
        mock_waiter.wait_with_extension.assert_called_once_with("203.0.113.10", 22, 60, 60)
        pipeline.sleep.assert_called_once_with(0)

    def test_progress_reported_per_state(self, build_pipeline, mock_printer) -> None:
        pipeline, _ = build_pipeline()

        pipeline.run(make_target())

        assert mock_printer.print_step.call_count == 10
        mock_printer.print_step.assert_any_call(1, 10, PipelineState.RESCUE_ACTIVATE.value)
        mock_printer.print_step.assert_any_call(10, 10, PipelineState.FIRST_BOOT.value)


class TestPreflight:
    def test_missing_fingerprints_fail_before_any_call(self, build_pipeline, mock_client) -> None:
        pipeline, opened = build_pipeline()

        with pytest.raises(ConfigurationError) as exc_info:
            pipeline.run(make_target(fingerprints=[]))

        assert exc_info.value.summary == "no ssh keys"
        mock_client.activate_rescue.assert_not_called()
        assert opened == []

    @pytest.mark.parametrize(
        "overrides",
        [
            {"passphrase": "contains @@DELIMITER@@"},
            {"passphrase": "two\nlines"},
            {"arch": "riscv64"},
            {"hostname": "bad_host_name"},
            {"local_ip": "10.1.0.999"},
        ],
    )
    def test_invalid_payload_parameters_rejected_up_front(self, build_pipeline, mock_client, overrides) -> None:
        pipeline, _ = build_pipeline()

        with pytest.raises(TemplateParameterError):
            pipeline.run(make_target(**overrides))

        mock_client.activate_rescue.assert_not_called()


class TestDiskLayout:
    def test_three_disks_fail_before_any_upload(self, build_pipeline) -> None:
        """Test that a disk count other than two is fatal before imaging.

        The error names the literal count and no payload reaches the host.
        """
        listing = "sda 1.8T disk\nsdb 1.8T disk\nsdc 1.8T disk\n"
        pipeline, opened = build_pipeline([{"lsblk": listing}])

        with pytest.raises(DiskLayoutError) as exc_info:
            pipeline.run(make_target())

        error = exc_info.value
        assert error.summary == "invalid disk count"
        assert "found 3 disks" in error.detail
        assert error.stage is PipelineState.PROBE_DISKS
        rescue = opened[0]
        assert rescue.uploads == {}
        assert len(rescue.commands) == 1
        assert rescue.closed

    def test_loop_devices_are_ignored(self, build_pipeline) -> None:
        listing = TWO_DISK_LISTING + "loop0 100M loop\nsr0 1024M rom\n"
        pipeline, _ = build_pipeline([{"lsblk": listing}, {}])

        result = pipeline.run(make_target())

        assert result.disks == ["/dev/sda", "/dev/sdb"]

    def test_listing_failure_reported_as_detection_failure(self, build_pipeline, command_failure) -> None:
        pipeline, _ = build_pipeline([{"lsblk": command_failure("lsblk", 127, stderr="not found")}])

        with pytest.raises(ProvisioningError) as exc_info:
            pipeline.run(make_target())

        assert exc_info.value.summary == "disk detection failed"
        assert exc_info.value.kind is ErrorKind.REMOTE_COMMAND


class TestFailures:
    """Fatal states stop the run and carry their stage."""

    def test_rescue_activation_api_error(self, build_pipeline, mock_client) -> None:
        mock_client.activate_rescue.side_effect = RobotAPIError(409, "RESCUE_ALREADY_ACTIVE", "already active")
        pipeline, _ = build_pipeline()

        with pytest.raises(ProvisioningError) as exc_info:
            pipeline.run(make_target())

        assert exc_info.value.summary == "activate rescue failed"
        assert exc_info.value.stage is PipelineState.RESCUE_ACTIVATE
        assert "RESCUE_ALREADY_ACTIVE" in exc_info.value.detail
        mock_client.reset.assert_not_called()

    def test_rescue_never_reachable(self, build_pipeline, mock_waiter) -> None:
        mock_waiter.wait_until_reachable.side_effect = ReachabilityTimeout(
            "timeout", "timeout waiting for 203.0.113.10:22"
        )
        pipeline, opened = build_pipeline()

        with pytest.raises(ReachabilityTimeout) as exc_info:
            pipeline.run(make_target())

        assert exc_info.value.summary == "rescue ssh timeout"
        assert exc_info.value.stage is PipelineState.WAIT_RESCUE_REACHABLE
        assert opened == []

    def test_rescue_session_refused(self, build_pipeline) -> None:
        pipeline, _ = build_pipeline([SessionConnectError("Cannot connect to root@203.0.113.10:22")])

        with pytest.raises(ProvisioningError) as exc_info:
            pipeline.run(make_target())

        assert exc_info.value.summary == "ssh connect"
        assert exc_info.value.stage is PipelineState.SESSION_OPEN

    def test_autosetup_upload_failure(self, build_pipeline) -> None:
        session = FakeSession(
            "203.0.113.10", {"lsblk": TWO_DISK_LISTING}, upload_errors={SETUP_CONF_PATH: OSError("No space left")}
        )
        pipeline, _ = build_pipeline([session])

        with pytest.raises(ProvisioningError) as exc_info:
            pipeline.run(make_target())

        assert exc_info.value.summary == "upload autosetup"
        assert exc_info.value.stage is PipelineState.UPLOAD_PAYLOADS
        assert session.closed

    def test_imaging_failure_short_circuits(self, build_pipeline, mock_waiter, command_failure) -> None:
        failure = command_failure(INSTALLIMAGE_COMMAND, 1, stdout="partitioning", stderr="mdadm: error")
        pipeline, opened = build_pipeline([{"lsblk": TWO_DISK_LISTING, "/root/.oldroot": failure}])

        with pytest.raises(ProvisioningError) as exc_info:
            pipeline.run(make_target())

        error = exc_info.value
        assert error.summary == "installimage failed"
        assert error.kind is ErrorKind.REMOTE_COMMAND
        assert error.stage is PipelineState.RUN_IMAGING
        assert "mdadm: error" in error.detail
        assert REBOOT_COMMAND not in opened[0].commands
        mock_waiter.wait_with_extension.assert_not_called()
        assert len(opened) == 1

    def test_installed_system_never_reachable(self, build_pipeline, mock_waiter) -> None:
        mock_waiter.wait_with_extension.side_effect = ReachabilityTimeout("timeout", "a / b")
        pipeline, opened = build_pipeline()

        with pytest.raises(ReachabilityTimeout) as exc_info:
            pipeline.run(make_target())

        assert exc_info.value.summary == "os ssh timeout"
        assert exc_info.value.stage is PipelineState.WAIT_OS_REACHABLE
        assert len(opened) == 1


class TestBestEffortSteps:
    def test_reboot_failure_is_a_warning(self, build_pipeline, mock_printer, command_failure) -> None:
        pipeline, _ = build_pipeline([{"lsblk": TWO_DISK_LISTING, "reboot": command_failure("reboot", 255)}, {}])

        result = pipeline.run(make_target())

        assert PipelineState.FIRST_BOOT in result.completed_states
        assert len(result.warnings) == 1
        assert "reboot" in result.warnings[0]
        mock_printer.print_warning.assert_called()

    def test_first_boot_script_failure_is_a_warning(self, build_pipeline, command_failure) -> None:
        pipeline, _ = build_pipeline([{"lsblk": TWO_DISK_LISTING}, {"chmod": command_failure("chmod", 1)}])

        result = pipeline.run(make_target())

        assert result.completed_states == list(PipelineState)
        assert result.warnings[0].startswith("First-boot script failed")


class TestClusterJoin:
    def _cluster_target(self):
        cluster = ClusterJoinParameters(
            url="https://10.1.0.1:6443",
            token="K10secret::server:abc",
            labels=(("node-role", "worker"),),
            taints=("dedicated=db:NoSchedule",),
        )
        return make_target(cluster=cluster)

    def test_join_runs_after_gateway_probe(self, build_pipeline) -> None:
        pipeline, opened = build_pipeline()

        pipeline.run(self._cluster_target())

        installed = opened[1]
        assert len(installed.commands) == 3
        ping, join = installed.commands[1], installed.commands[2]
        assert "ping -c 1 -W 2 10.1.0.1" in ping
        assert "K3S_URL=https://10.1.0.1:6443" in join
        assert "--node-label node-role=worker" in join
        assert "register-with-taints=dedicated=db:NoSchedule" in join

    def test_gateway_probe_failure_is_fatal(self, build_pipeline, command_failure) -> None:
        pipeline, opened = build_pipeline([{"lsblk": TWO_DISK_LISTING}, {"#!/bin/bash": command_failure("ping", 1)}])

        with pytest.raises(ProvisioningError) as exc_info:
            pipeline.run(self._cluster_target())

        assert exc_info.value.summary == "ping check failed"
        assert exc_info.value.stage is PipelineState.FIRST_BOOT
        assert not any(command.startswith("set -e") for command in opened[1].commands)

    def test_join_failure_is_fatal(self, build_pipeline, command_failure) -> None:
        pipeline, _ = build_pipeline([{"lsblk": TWO_DISK_LISTING}, {"set -e": command_failure("k3s", 1)}])

        with pytest.raises(ProvisioningError) as exc_info:
            pipeline.run(self._cluster_target())

        assert exc_info.value.summary == "k3s installation failed"


class TestCancellation:
    def test_cancel_before_start(self, build_pipeline, mock_client) -> None:
        event = threading.Event()
        event.set()
        pipeline, _ = build_pipeline(cancel_event=event)

        with pytest.raises(PipelineCancelled) as exc_info:
            pipeline.run(make_target())

        assert exc_info.value.stage is PipelineState.RESCUE_ACTIVATE
        assert exc_info.value.kind is ErrorKind.CANCELLED
        mock_client.activate_rescue.assert_not_called()

    def test_cancel_between_states(self, build_pipeline, mock_client) -> None:
        """Test that cancellation is honoured at the next state boundary.

        The running state completes; the next one never starts.
        """
        event = threading.Event()
        mock_client.activate_rescue.side_effect = lambda *args, **kwargs: event.set()
        pipeline, _ = build_pipeline(cancel_event=event)

        with pytest.raises(PipelineCancelled) as exc_info:
            pipeline.run(make_target())

        assert exc_info.value.stage is PipelineState.HARD_RESET
        mock_client.activate_rescue.assert_called_once()
        mock_client.reset.assert_not_called()
