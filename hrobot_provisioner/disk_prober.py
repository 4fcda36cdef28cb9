#!/usr/bin/env python3
"""Disk topology probing for the rescue system."""

from typing import List

from .errors import DiskLayoutError
from .ssh_session import split_output

DISK_LISTING_COMMAND = "lsblk -d -n -o NAME,SIZE,TYPE"
EXPECTED_DISK_COUNT = 2


def parse_disk_listing(output: str) -> List[str]:
    """Parse ``lsblk -d -n -o NAME,SIZE,TYPE`` output into disk device paths.

    Only rows whose TYPE column is ``disk`` are kept, so loop devices and
    optical drives are dropped; ``-d`` already suppresses partitions. Order
    is preserved as reported by lsblk.

    Raises:
        DiskLayoutError: If a row cannot be parsed
    """
    disks = []
    for line in split_output(output):
        fields = line.split()
        if len(fields) < 2:
            raise DiskLayoutError("disk parsing error", f"Could not parse disk line: {line}")
        if fields[-1] != "disk":
            continue
        disks.append(f"/dev/{fields[0]}")
    return disks


class DiskProber:
    """Lists the physical disks of a host and enforces the expected count."""

    def __init__(self, expected_count: int = EXPECTED_DISK_COUNT, printer=None) -> None:
        self.expected_count = expected_count
        self.printer = printer

    def probe(self, session) -> List[str]:
        """Return the disk device paths of the host behind ``session``.

        The imaging layout is a two-drive mirror, so any other count is a
        configuration error carrying the literal count and raw listing.

        Raises:
            DiskLayoutError: If the count differs from ``expected_count``
            RemoteCommandError: If the listing command fails
        """
        output = session.run(DISK_LISTING_COMMAND)
        disks = parse_disk_listing(output)
        if len(disks) != self.expected_count:
            raise DiskLayoutError(
                "invalid disk count",
                f"Expected exactly {self.expected_count} disks, found {len(disks)} disks: {output}",
            )
        if self.printer:
            self.printer.print_info(f"Detected disks: {', '.join(disks)}")
        return disks
