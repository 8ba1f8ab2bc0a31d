"""
Partition planning for the CFexpress card.

Maps a card's byte capacity to one of four fixed layouts and renders the
operations that create it. Pure: nothing here touches a device.

Layouts, selected on whole GiB (capacity // GiB), highest band first:

    >= 900 GiB  "1T"    rootfs: rest
    >= 450 GiB  "512G"  rootfs: 128G, models: 256G, app: rest
    >= 220 GiB  "256G"  rootfs: 64G,  models: 128G, app: rest
    >= 100 GiB  "128G"  rootfs: 64G,  models: rest

Cards of 2 TiB or more get a GPT label; an MBR table cannot address past
that point.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from rm01_flasher.core.errors import InsufficientCapacity

logger = logging.getLogger(__name__)

GIB = 1024 ** 3
MINIMUM_GIB = 100

# Linux partition type for sfdisk scripts, per table type
LINUX_TYPE = "83"
LINUX_GPT_TYPE = "L"
GPT_MIN_BYTES = 2 * 1024 ** 4

# (minimum GiB, tag, [(label, size GiB or None for the rest)])
BANDS: List[Tuple[int, str, List[Tuple[str, Optional[int]]]]] = [
    (900, "1T", [("rootfs", None)]),
    (450, "512G", [("rootfs", 128), ("models", 256), ("app", None)]),
    (220, "256G", [("rootfs", 64), ("models", 128), ("app", None)]),
    (MINIMUM_GIB, "128G", [("rootfs", 64), ("models", None)]),
]


@dataclass
class PartitionSpec:
    """One partition of a scheme; ``size_gib`` None means the remaining space."""
    label: str
    size_gib: Optional[int] = None

    @property
    def is_remainder(self) -> bool:
        return self.size_gib is None


@dataclass
class PartitionScheme:
    """
    Capacity band plus its ordered partition list.

    Sizes are laid out from the start of the device. Exactly one partition,
    the last, takes the remainder.
    """
    tag: str
    capacity_bytes: int
    partitions: List[PartitionSpec] = field(default_factory=list)

    @property
    def declared_bytes(self) -> int:
        return sum(p.size_gib * GIB for p in self.partitions if not p.is_remainder)

    @property
    def table(self) -> str:
        return "gpt" if self.capacity_bytes >= GPT_MIN_BYTES else "dos"

    def describe(self) -> str:
        parts = ", ".join(
            f"{p.label} {'rest' if p.is_remainder else str(p.size_gib) + 'G'}"
            for p in self.partitions
        )
        return f"{self.tag}: {parts}"


@dataclass
class PartitionOperation:
    """Create partition ``number``; ``size_gib`` None uses the remaining space."""
    number: int
    label: str
    size_gib: Optional[int] = None
    type_code: str = LINUX_TYPE

    @property
    def uses_remaining_space(self) -> bool:
        return self.size_gib is None

    def describe(self) -> str:
        size = "remaining space" if self.uses_remaining_space else f"{self.size_gib}G"
        return f"partition {self.number} ({self.label}): {size}"


def select_scheme(capacity_bytes: int, label_prefix: str = "") -> PartitionScheme:
    """
    Pick the layout for a card of ``capacity_bytes``.

    Args:
        capacity_bytes: Card size in bytes
        label_prefix: Prepended to every label ("rm01" gives "rm01rootfs")

    Raises:
        InsufficientCapacity: Below 100 GiB
    """
    size_gib = capacity_bytes // GIB
    for minimum, tag, layout in BANDS:
        if size_gib >= minimum:
            scheme = PartitionScheme(
                tag=tag,
                capacity_bytes=capacity_bytes,
                partitions=[PartitionSpec(f"{label_prefix}{label}", size) for label, size in layout],
            )
            logger.info(f"Card is {size_gib} GiB, using {scheme.describe()} ({scheme.table} label)")
            return scheme

    raise InsufficientCapacity(capacity_bytes, MINIMUM_GIB)


def emit_partition_operations(scheme: PartitionScheme) -> List[PartitionOperation]:
    """Operations in creation order, partition 1 first."""
    type_code = LINUX_GPT_TYPE if scheme.table == "gpt" else LINUX_TYPE
    operations = []
    for number, spec in enumerate(scheme.partitions, start=1):
        last = number == len(scheme.partitions)
        operations.append(PartitionOperation(
            number=number,
            label=spec.label,
            size_gib=None if last else spec.size_gib,
            type_code=type_code,
        ))
    return operations


def expected_labels(scheme: PartitionScheme) -> List[str]:
    return [spec.label for spec in scheme.partitions]


def render_sfdisk_script(operations: List[PartitionOperation], table: str = "dos") -> str:
    """
    Render the ``sfdisk`` input for ``operations``.

    With no operations the script only writes an empty table.
    """
    lines = [f"label: {table}", ""]
    for op in operations:
        size = "" if op.uses_remaining_space else f"size={op.size_gib}GiB, "
        lines.append(f"{size}type={op.type_code}")
    return "\n".join(lines).rstrip("\n") + "\n"
