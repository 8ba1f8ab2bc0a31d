"""Storage layer - partition planning and removable card operations."""

from .planner import (
    GIB,
    MINIMUM_GIB,
    PartitionSpec,
    PartitionScheme,
    PartitionOperation,
    select_scheme,
    emit_partition_operations,
    expected_labels,
    render_sfdisk_script,
)
from .block_device import BlockDevice, LabelCheck, DiskInfo, partition_path

__all__ = [
    "GIB",
    "MINIMUM_GIB",
    "PartitionSpec",
    "PartitionScheme",
    "PartitionOperation",
    "select_scheme",
    "emit_partition_operations",
    "expected_labels",
    "render_sfdisk_script",
    "BlockDevice",
    "LabelCheck",
    "DiskInfo",
    "partition_path",
]
