#!/usr/bin/env python3
"""Orchestrator module: applies declared resources against persisted state."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import PipelineCancelled, ProvisioningError
from .order_resource import ORDER_COMPUTED_FIELDS, AuctionOrder, ServerOrder
from .server_resource import COMPUTED_FIELDS, ManagedServer
from .utilities import build_record
from .vswitch_resource import VSwitchRecord

# Apply order; deletion runs in reverse
RESOURCE_KINDS = ("vswitches", "orders", "auction_orders", "servers")


@dataclass
class ApplySummary:
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    failed: Dict[str, ProvisioningError] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    runtime: str = ""

    @property
    def succeeded(self) -> bool:
        return not self.failed


@dataclass
class _KindHandler:
    resource: Any
    from_state: Callable[[str, Dict[str, Any]], Any]
    computed_fields: Tuple[str, ...]


def declared_view(record, computed_fields) -> Dict[str, Any]:
    """Return the declared (non-computed) fields of a record."""
    return {key: value for key, value in asdict(record).items() if key not in computed_fields}


class ProvisioningOrchestrator:
    """
    Drives create/read/update/delete of every declared resource, the way a
    declarative tool would: refresh persisted state, create what is missing,
    update what changed and delete what is no longer declared.
    """

    def __init__(self, **dependencies: Any) -> None:
        """
        Initialize the orchestrator with all required dependencies.

        Args:
            **dependencies: All required dependencies including:
                - printer: PrintManager instance for output formatting
                - format_runtime: Function to format time durations
                - state_store: StateStore holding persisted resources
                - server_resource: ServerResource for managed servers
                - order_resource: OrderResource for server orders
                - auction_order_resource: OrderResource for server market orders
                - vswitch_resource: VSwitchResource
                - cancel_event: threading.Event shared with the pipeline (optional)
        """
        self.printer = dependencies["printer"]
        self.format_runtime = dependencies["format_runtime"]
        self.state_store = dependencies["state_store"]
        self.cancel_event = dependencies.get("cancel_event") or threading.Event()
        self._summary_lock = threading.Lock()

        self.handlers = {
            "vswitches": _KindHandler(
                dependencies["vswitch_resource"],
                lambda key, data: build_record(VSwitchRecord, data, f"state vswitches.{key}"),
                ("id",),
            ),
            "orders": _KindHandler(
                dependencies["order_resource"],
                lambda key, data: build_record(ServerOrder, data, f"state orders.{key}"),
                ORDER_COMPUTED_FIELDS,
            ),
            "auction_orders": _KindHandler(
                dependencies["auction_order_resource"],
                lambda key, data: build_record(AuctionOrder, data, f"state auction_orders.{key}"),
                ORDER_COMPUTED_FIELDS,
            ),
            "servers": _KindHandler(dependencies["server_resource"], ManagedServer.from_state, COMPUTED_FIELDS),
        }

    def _record_failure(self, summary: ApplySummary, label: str, error: ProvisioningError) -> None:
        with self._summary_lock:
            summary.failed[label] = error
        stage = f" during '{error.stage.value}'" if getattr(error.stage, "value", None) else ""
        self.printer.print_error(f"{label} failed{stage}: {error.summary}")
        if error.detail:
            self.printer.print_error(error.detail)

    def _append(self, summary: ApplySummary, bucket: str, label: str) -> None:
        with self._summary_lock:
            getattr(summary, bucket).append(label)

    def refresh(self, kind: str, summary: ApplySummary) -> Dict[str, Any]:
        """Read every persisted resource of a kind, dropping the ones that vanished.

        Returns:
            dict: Resource key to refreshed record
        """
        handler = self.handlers[kind]
        records = {}
        for key, data in self.state_store.section(kind).items():
            label = f"{kind}.{key}"
            record = handler.from_state(key, data)
            try:
                refreshed = handler.resource.read(record)
            except ProvisioningError as e:
                self._record_failure(summary, label, e)
                records[key] = record
                continue
            if refreshed is None:
                self.state_store.remove(kind, key)
                self._append(summary, "dropped", label)
                continue
            if asdict(refreshed) != data:
                self.state_store.put(kind, key, asdict(refreshed))
            records[key] = refreshed
        return records

    def _apply_one(self, kind: str, key: str, declared, prior, summary: ApplySummary) -> None:
        handler = self.handlers[kind]
        label = f"{kind}.{key}"
        if label in summary.failed:
            return
        if self.cancel_event.is_set():
            self._record_failure(summary, label, PipelineCancelled("cancelled", f"Skipped {label} after cancellation"))
            return
        try:
            if prior is None:
                self.printer.print_info(f"Creating {label}")
                result = handler.resource.create(declared)
                bucket = "created"
            elif declared_view(prior, handler.computed_fields) != declared_view(declared, handler.computed_fields):
                self.printer.print_info(f"Updating {label}")
                result = handler.resource.update(prior, declared)
                bucket = "updated"
            else:
                self._append(summary, "unchanged", label)
                return
        except ProvisioningError as e:
            self._record_failure(summary, label, e)
            return
        self.state_store.put(kind, key, asdict(result))
        self._append(summary, bucket, label)
        self.printer.print_success(f"{label} {bucket}")

    def _delete_one(self, kind: str, key: str, record, summary: ApplySummary) -> None:
        label = f"{kind}.{key}"
        # Refresh failed; the persisted record is stale
        if label in summary.failed:
            return
        self.printer.print_info(f"Deleting {label}")
        try:
            warnings = self.handlers[kind].resource.delete(record)
        except ProvisioningError as e:
            self._record_failure(summary, label, e)
            return
        self.state_store.remove(kind, key)
        with self._summary_lock:
            summary.warnings.extend(warnings or [])
            summary.deleted.append(label)

    def apply(self, declared, parallelism: int = 1) -> ApplySummary:
        """
        Converge persisted state onto the declared configuration.

        Args:
            declared: DeclaredConfiguration with the resources to manage
            parallelism: Maximum number of servers provisioned concurrently

        Returns:
            ApplySummary: What was created, updated, deleted or failed
        """
        start_time = time.time()
        summary = ApplySummary()
        total_steps = len(RESOURCE_KINDS) + 1
        persisted = {}

        for step_num, kind in enumerate(RESOURCE_KINDS, start=1):
            self.printer.print_step(step_num, total_steps, f"Applying {kind.replace('_', ' ')}")
            persisted[kind] = self.refresh(kind, summary)
            wanted = getattr(declared, kind)
            if kind == "servers" and parallelism > 1 and len(wanted) > 1:
                with ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="provision") as executor:
                    futures = [
                        executor.submit(self._apply_one, kind, key, record, persisted[kind].get(key), summary)
                        for key, record in wanted.items()
                    ]
                    for future in futures:
                        future.result()
            else:
                for key, record in wanted.items():
                    self._apply_one(kind, key, record, persisted[kind].get(key), summary)

        self.printer.print_step(total_steps, total_steps, "Removing resources no longer declared")
        for kind in reversed(RESOURCE_KINDS):
            for key, record in persisted[kind].items():
                if key not in getattr(declared, kind):
                    self._delete_one(kind, key, record, summary)

        summary.runtime = self.format_runtime(start_time, time.time())
        self.print_summary("Apply", summary)
        return summary

    def destroy(self, keys: Optional[List[str]] = None) -> ApplySummary:
        """
        Delete persisted resources, servers first.

        Args:
            keys: Optional "kind.key" labels to restrict the destroy to

        Returns:
            ApplySummary: What was deleted or failed
        """
        start_time = time.time()
        summary = ApplySummary()
        for kind in reversed(RESOURCE_KINDS):
            handler = self.handlers[kind]
            for key, data in self.state_store.section(kind).items():
                if keys and f"{kind}.{key}" not in keys:
                    continue
                self._delete_one(kind, key, handler.from_state(key, data), summary)
        summary.runtime = self.format_runtime(start_time, time.time())
        self.print_summary("Destroy", summary)
        return summary

    def print_summary(self, operation: str, summary: ApplySummary) -> None:
        if summary.succeeded:
            self.printer.print_header(f"{operation} completed successfully!")
        else:
            self.printer.print_header(f"{operation} finished with {len(summary.failed)} failure(s)")
        for bucket in ("created", "updated", "deleted", "dropped"):
            labels = getattr(summary, bucket)
            if labels:
                self.printer.print_info(f"{bucket.capitalize()}: {', '.join(labels)}")
        if summary.unchanged:
            self.printer.print_info(f"Unchanged: {len(summary.unchanged)}")
        for warning in summary.warnings:
            self.printer.print_warning(warning)
        for label, error in summary.failed.items():
            self.printer.print_error(f"{label}: {error.summary}")
        self.printer.print_info(f"Total runtime: {summary.runtime}")
