#!/usr/bin/env python3
"""
Tests for command-line argument parsing.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from hrobot_provisioner import print_manager  # noqa: E402
from hrobot_provisioner.arguments_parser import ArgumentsParser  # noqa: E402


@pytest.fixture(autouse=True)
def restore_debug_mode():
    original = print_manager.DEBUG_MODE
    yield
    print_manager.DEBUG_MODE = original


class TestArgumentsParser:
    def test_apply_defaults(self) -> None:
        args = ArgumentsParser.parse_arguments(["apply"])

        assert args.command == "apply"
        assert args.config == "hrobot.yaml"
        assert args.parallelism == 1
        assert print_manager.DEBUG_MODE is False

    def test_debug_flag_sets_global_mode(self) -> None:
        args = ArgumentsParser.parse_arguments(["--debug", "--config", "prod.yaml", "apply", "--parallelism", "4"])

        assert args.config == "prod.yaml"
        assert args.parallelism == 4
        assert print_manager.DEBUG_MODE is True

    def test_parallelism_must_be_positive(self) -> None:
        with pytest.raises(SystemExit):
            ArgumentsParser.parse_arguments(["apply", "--parallelism", "0"])

    def test_destroy_targets(self) -> None:
        args = ArgumentsParser.parse_arguments(["destroy", "--target", "servers.a", "--target", "servers.b"])

        assert args.target == ["servers.a", "servers.b"]

    def test_transaction_lookup(self) -> None:
        args = ArgumentsParser.parse_arguments(["transaction", "B20260301-1", "--market"])

        assert args.transaction_id == "B20260301-1"
        assert args.market is True

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            ArgumentsParser.parse_arguments([])
