#!/usr/bin/env python3
"""
Hetzner Robot Provisioner

This is the main entry point for the Hetzner Robot Provisioner. It loads the
declared configuration, wires the modular components together and runs the
requested command.
"""

import signal
import sys
import threading

from hrobot_provisioner import (
    MARKET_TRANSACTION_CACHE_FILE,
    TRANSACTION_CACHE_FILE,
    ArgumentsParser,
    OrderResource,
    PrivateIPAllocator,
    ProvisioningError,
    ProvisioningOrchestrator,
    ProvisioningPipeline,
    ReachabilityWaiter,
    RobotAPIError,
    RobotClient,
    ServerListCache,
    ServerResource,
    StateStore,
    TransactionCache,
    VSwitchResource,
    default_cache_path,
    format_runtime,
    load_configuration,
    printer,
    read_order_transaction,
    terraform_local_ips,
)


def build_dependencies(declared, cancel_event):
    """
    Construct every collaborator from the declared configuration.

    Args:
        declared: DeclaredConfiguration loaded from the config file
        cancel_event: threading.Event set on SIGINT

    Returns:
        dict: Dependencies for ProvisioningOrchestrator plus the client and server list cache
    """
    provider = declared.provider.resolve_credentials()
    settings = declared.pipeline

    client = RobotClient(
        provider.username,
        provider.password,
        base_url=provider.base_url,
        timeout=provider.timeout_seconds,
        printer=printer,
    )

    state_store = StateStore(provider.state_file, printer=printer).load()

    allocator = PrivateIPAllocator(settings.network.pool_start, settings.network.pool_end, printer=printer)
    in_use = state_store.scan_local_ips()
    if provider.seed_from_terraform:
        in_use.extend(terraform_local_ips(printer=printer))
    allocator.seed(in_use)

    cache_dir = provider.cache_dir or None
    order_cache = TransactionCache(default_cache_path(TRANSACTION_CACHE_FILE, cache_dir), printer=printer)
    market_cache = TransactionCache(default_cache_path(MARKET_TRANSACTION_CACHE_FILE, cache_dir), printer=printer)
    order_cache.load()
    market_cache.load()

    server_list_cache = ServerListCache(client, printer=printer)
    waiter = ReachabilityWaiter(
        poll_interval=settings.poll_interval_seconds,
        attempt_timeout=settings.attempt_timeout_seconds,
        printer=printer,
    )
    pipeline = ProvisioningPipeline(client, settings, printer=printer, waiter=waiter, cancel_event=cancel_event)

    return {
        "printer": printer,
        "format_runtime": format_runtime,
        "state_store": state_store,
        "cancel_event": cancel_event,
        "server_resource": ServerResource(
            client, allocator, pipeline, server_list_cache=server_list_cache, printer=printer
        ),
        "order_resource": OrderResource(client, order_cache, printer=printer),
        "auction_order_resource": OrderResource(client, market_cache, market=True, printer=printer),
        "vswitch_resource": VSwitchResource(client, printer=printer),
        "client": client,
        "server_list_cache": server_list_cache,
    }


def show_servers(server_list_cache):
    printer.print_header("Robot servers")
    for server in server_list_cache.servers():
        printer.print_fields(
            server.server_name or "<unnamed>",
            server_number=server.server_number,
            server_ip=server.server_ip,
            status=server.status,
            product=server.product,
            location=server.location,
        )


def show_transaction(client, transaction_id, market=False):
    transaction = read_order_transaction(client, transaction_id, market=market)
    printer.print_header(f"Transaction {transaction.id}")
    printer.print_fields(
        "Order transaction",
        status=transaction.status,
        server_number=transaction.server_number,
        server_ip=transaction.server_ip or None,
        product=transaction.product_id,
    )


def main():
    """
    Main function to run the requested provisioning command.

    Commands:
        apply: converge Robot resources onto the declared configuration
        destroy: delete persisted resources (servers are scheduled for cancellation)
        servers: list every server of the account
        transaction: show one order transaction without the cache

    Returns:
        int: Process exit code
    """
    args = ArgumentsParser.parse_arguments()
    cancel_event = threading.Event()

    def _request_cancel(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        printer.print_warning("Cancellation requested, stopping at the next pipeline state boundary")
        cancel_event.set()

    signal.signal(signal.SIGINT, _request_cancel)

    try:
        declared = load_configuration(args.config, printer=printer)
        dependencies = build_dependencies(declared, cancel_event)

        if args.command == "servers":
            show_servers(dependencies["server_list_cache"])
            return 0
        if args.command == "transaction":
            show_transaction(dependencies["client"], args.transaction_id, market=args.market)
            return 0

        orchestrator = ProvisioningOrchestrator(**dependencies)
        if args.command == "apply":
            printer.print_header("Hetzner Robot provisioning")
            summary = orchestrator.apply(declared, parallelism=args.parallelism)
        else:
            printer.print_header("Hetzner Robot teardown")
            summary = orchestrator.destroy(keys=args.target or None)
        return 0 if summary.succeeded else 1
    except ProvisioningError as e:
        printer.print_error(e.summary)
        if e.detail:
            printer.print_error(e.detail)
        return 1
    except RobotAPIError as e:
        printer.print_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
