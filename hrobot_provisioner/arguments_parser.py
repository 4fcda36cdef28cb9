#!/usr/bin/env python3
"""Arguments Parser module for the Hetzner Robot provisioner."""

import argparse

from . import print_manager


class ArgumentsParser:
    """Handles command-line argument parsing for provisioning operations"""

    @staticmethod
    def build_parser():
        parser = argparse.ArgumentParser(
            description="Provision Hetzner Robot bare-metal servers from a declared configuration"
        )
        parser.add_argument(
            "--config",
            type=str,
            default="hrobot.yaml",
            help="Path to the declared configuration file (default: hrobot.yaml)",
        )
        parser.add_argument(
            "--debug",
            action="store_true",
            help="Enable debug output (shows API calls and remote commands)",
        )

        subparsers = parser.add_subparsers(dest="command", required=True)

        apply_parser = subparsers.add_parser("apply", help="Create, update and delete resources to match the configuration")
        apply_parser.add_argument(
            "--parallelism",
            type=int,
            default=1,
            help="Maximum number of servers provisioned concurrently (default: 1)",
        )

        destroy_parser = subparsers.add_parser("destroy", help="Delete persisted resources")
        destroy_parser.add_argument(
            "--target",
            action="append",
            default=[],
            help="Restrict to a resource label such as servers.worker-1 (repeatable)",
        )

        subparsers.add_parser("servers", help="List all servers of the Robot account")

        transaction_parser = subparsers.add_parser("transaction", help="Show one order transaction (uncached)")
        transaction_parser.add_argument("transaction_id", type=str, help="Order transaction id")
        transaction_parser.add_argument(
            "--market",
            action="store_true",
            help="Look up a server market (auction) transaction",
        )
        return parser

    @staticmethod
    def parse_arguments(argv=None):
        """
        Parse command-line arguments and return configuration

        Returns:
            argparse.Namespace: Parsed arguments
        """
        parser = ArgumentsParser.build_parser()
        args = parser.parse_args(argv)

        if getattr(args, "parallelism", 1) < 1:
            parser.error("--parallelism must be at least 1")

        # Set global debug mode
        print_manager.DEBUG_MODE = args.debug

        return args
