"""
Block device operations for removable cards.

Everything goes through ExternalToolRunner (lsblk, umount, sfdisk,
partprobe, mkfs, blkid) so tests can inject a fake runner.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from rm01_flasher.core.errors import (
    ExternalToolFailure,
    PreconditionUnmet,
    VerificationMismatch,
)
from rm01_flasher.hardware.runner import ExternalToolRunner
from .planner import PartitionOperation, render_sfdisk_script

logger = logging.getLogger(__name__)


def partition_path(disk: str, number: int) -> str:
    """Device path of partition ``number`` (``/dev/sdd`` -> ``/dev/sdd1``)."""
    return f"{disk}{number}"


@dataclass
class LabelCheck:
    """Read-back of one partition after formatting."""
    partition: str
    expected_label: str
    actual_label: str = ""
    expected_fstype: Optional[str] = None
    actual_fstype: str = ""

    @property
    def ok(self) -> bool:
        if self.actual_label != self.expected_label:
            return False
        return self.expected_fstype is None or self.actual_fstype == self.expected_fstype

    def describe(self) -> str:
        mark = "OK" if self.ok else "MISMATCH"
        text = f"{self.partition}: label '{self.actual_label or '-'}' (expected '{self.expected_label}')"
        if self.expected_fstype is not None:
            text += f", type '{self.actual_fstype or '-'}' (expected '{self.expected_fstype}')"
        return f"[{mark}] {text}"


@dataclass
class DiskInfo:
    path: str
    size_bytes: int = 0
    model: str = ""
    mountpoints: Dict[str, str] = field(default_factory=dict)


class BlockDevice:
    """
    One removable disk.

    Args:
        path: Whole-disk device path (e.g. "/dev/sdd")
        runner: Tool runner; privileged calls use its escalation prefix
        sleep: Used for settle delays after table writes and unmounts
        exists: Replaces the block-device existence check
    """

    def __init__(
        self,
        path: str,
        runner: Optional[ExternalToolRunner] = None,
        sleep: Callable[[float], None] = time.sleep,
        exists: Optional[Callable[[str], bool]] = None,
    ):
        self.path = path
        self.runner = runner or ExternalToolRunner()
        self.sleep = sleep
        self._exists = exists or (lambda p: Path(p).is_block_device())

    def __repr__(self) -> str:
        return f"BlockDevice({self.path!r})"

    def partition(self, number: int) -> str:
        return partition_path(self.path, number)

    def present(self) -> bool:
        return self._exists(self.path)

    def partition_present(self, number: int) -> bool:
        return self._exists(self.partition(number))

    def require_present(self) -> None:
        if not self.present():
            raise PreconditionUnmet(
                f"Device {self.path} not found",
                details={"device": self.path},
            )

    def capacity_bytes(self) -> int:
        """
        Raises:
            ExternalToolFailure: lsblk failed or printed no size
        """
        result = self.runner.run("lsblk", ["-b", "-n", "-d", "-o", "SIZE", self.path])
        result.raise_for_status(f"Cannot read capacity of {self.path}")
        tokens = result.stdout.split()
        if not tokens or not tokens[0].isdigit():
            raise ExternalToolFailure(
                f"Unexpected lsblk output for {self.path}",
                exit_code=result.exit_code,
                output=result.output,
            )
        return int(tokens[0])

    def info(self) -> DiskInfo:
        """Size, model and mounted partitions; fields stay empty if lsblk fails."""
        info = DiskInfo(path=self.path)
        result = self.runner.run(
            "lsblk", ["-J", "-b", "-o", "NAME,PATH,SIZE,MODEL,MOUNTPOINT", self.path]
        )
        if not result.ok:
            logger.warning(f"lsblk failed for {self.path}: {result.tail(2)}")
            return info
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            logger.warning(f"Cannot parse lsblk output for {self.path}: {e}")
            return info

        for disk in data.get("blockdevices", []):
            info.size_bytes = int(disk.get("size") or 0)
            info.model = (disk.get("model") or "").strip()
            for node in [disk] + list(disk.get("children", []) or []):
                mountpoint = node.get("mountpoint")
                if mountpoint:
                    info.mountpoints[node.get("path") or f"/dev/{node.get('name')}"] = mountpoint
        return info

    def mounted_partitions(self) -> Dict[str, str]:
        return self.info().mountpoints

    def unmount_all(self) -> List[str]:
        """
        Unmount every mounted partition of this disk. Best effort.

        Returns:
            Partitions that stayed mounted
        """
        still_mounted = []
        for node, mountpoint in self.mounted_partitions().items():
            logger.info(f"Unmounting {node} ({mountpoint})")
            result = self.runner.run("umount", [node], privileged=True)
            if not result.ok:
                logger.warning(f"Could not unmount {node}: {result.tail(2)}")
                still_mounted.append(node)
        return still_mounted

    def write_partition_table(self, operations: List[PartitionOperation], table: str = "dos") -> None:
        """
        Replace the partition table. An empty ``operations`` list wipes it.

        Raises:
            ExternalToolFailure: sfdisk failed
        """
        script = render_sfdisk_script(operations, table=table)
        what = "empty partition table" if not operations else f"{len(operations)} partition(s)"
        logger.info(f"Writing {what} to {self.path}")
        result = self.runner.run(
            "sfdisk", ["--wipe", "always", self.path], privileged=True, input_text=script
        )
        result.raise_for_status(f"Failed to write partition table on {self.path}")

    def reread(self, settle: float = 0.0) -> None:
        """Ask the kernel to re-read the table. Failure is a warning."""
        result = self.runner.run("partprobe", [self.path], privileged=True)
        if not result.ok:
            logger.warning(f"partprobe {self.path} failed: {result.tail(2)}")
        if settle:
            self.sleep(settle)

    def format_ext4(self, number: int, label: str) -> None:
        node = self.partition(number)
        logger.info(f"Formatting {node} as ext4 ({label})")
        result = self.runner.run(
            "mkfs.ext4", ["-F", "-L", label, node], privileged=True, stream=True
        )
        result.raise_for_status(f"Failed to format {node}")

    def format_fat32(self, number: int, label: str) -> None:
        node = self.partition(number)
        logger.info(f"Formatting {node} as FAT32 ({label})")
        result = self.runner.run(
            "mkfs.fat", ["-F", "32", "-n", label, node], privileged=True, stream=True
        )
        result.raise_for_status(f"Failed to format {node}")

    def read_label(self, node: str) -> str:
        result = self.runner.run("blkid", ["-s", "LABEL", "-o", "value", node], privileged=True)
        return result.stdout.strip() if result.ok else ""

    def read_fstype(self, node: str) -> str:
        result = self.runner.run("blkid", ["-s", "TYPE", "-o", "value", node], privileged=True)
        return result.stdout.strip() if result.ok else ""

    def mount(self, number: int, mountpoint: Path) -> None:
        node = self.partition(number)
        result = self.runner.run("mount", [node, mountpoint], privileged=True)
        result.raise_for_status(f"Failed to mount {node} at {mountpoint}")

    def unmount(self, target) -> bool:
        result = self.runner.run("umount", [target], privileged=True)
        if not result.ok:
            logger.warning(f"Could not unmount {target}: {result.tail(2)}")
        return result.ok

    def copy_tree_into(self, source: Path, mountpoint: Path) -> None:
        """Copy the contents of ``source`` onto a mounted partition, then sync."""
        entries = sorted(Path(source).iterdir())
        if not entries:
            raise PreconditionUnmet(f"Nothing to copy in {source}", details={"source": str(source)})
        result = self.runner.run(
            "cp", ["-r"] + [str(e) for e in entries] + [f"{mountpoint}/"], privileged=True
        )
        result.raise_for_status(f"Failed to copy {source} to {mountpoint}")
        self.runner.run("sync")

    def set_ext4_label(self, number: int, label: str) -> bool:
        node = self.partition(number)
        result = self.runner.run("e2label", [node, label], privileged=True)
        if not result.ok:
            logger.warning(f"Could not set label {label} on {node}: {result.tail(2)}")
        return result.ok

    def verify_labels(
        self,
        labels: List[str],
        fstype: Optional[str] = None,
    ) -> List[LabelCheck]:
        """
        Check every partition against ``labels`` (partition 1 first).

        All partitions are checked even after a mismatch.

        Raises:
            VerificationMismatch: Listing each partition that did not match
        """
        checks = []
        for number, label in enumerate(labels, start=1):
            node = self.partition(number)
            check = LabelCheck(
                partition=node,
                expected_label=label,
                actual_label=self.read_label(node),
                expected_fstype=fstype,
                actual_fstype=self.read_fstype(node) if fstype is not None else "",
            )
            (logger.info if check.ok else logger.error)(check.describe())
            checks.append(check)

        mismatches = [c.describe() for c in checks if not c.ok]
        if mismatches:
            raise VerificationMismatch(
                f"{len(mismatches)} of {len(checks)} partition(s) on {self.path} failed verification",
                mismatches=mismatches,
                details={"device": self.path},
            )
        return checks
