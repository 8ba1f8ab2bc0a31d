"""
robOS firmware artifacts.

Downloads and unpacks the ESP32-S3 release archive and fetches the TF card
content from the robOS repository. Everything lands under the configured
base directory; presence of the files is the only state kept between runs.
"""

import logging
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import List, Optional, Tuple

from rm01_flasher.config import FlasherConfig
from rm01_flasher.core.errors import PreconditionUnmet, VerificationMismatch
from rm01_flasher.hardware.runner import ExternalToolRunner

logger = logging.getLogger(__name__)

# (flash offset, path relative to the build dir), in esptool argument order
FLASH_IMAGES: List[Tuple[str, str]] = [
    ("0x0", "bootloader/bootloader.bin"),
    ("0x10000", "robOS.bin"),
    ("0x8000", "partition_table/partition-table.bin"),
]


class FirmwareStore:
    """Local copy of the robOS release and TF card content."""

    def __init__(self, config: FlasherConfig, runner: Optional[ExternalToolRunner] = None):
        self.config = config
        self.runner = runner or ExternalToolRunner()

    @property
    def archive(self) -> Path:
        return self.config.firmware_archive

    @property
    def build_dir(self) -> Path:
        return self.config.firmware_build_dir

    def archive_present(self) -> bool:
        return self.archive.is_file()

    def extracted(self) -> bool:
        """The build dir exists. A partial extraction also counts."""
        return self.build_dir.is_dir()

    def download(self) -> Path:
        """
        Fetch the release archive with wget.

        Downloads to a ``.part`` file first so an interrupted download is
        never mistaken for a complete archive.
        """
        self.archive.parent.mkdir(parents=True, exist_ok=True)
        partial = self.archive.with_name(self.archive.name + ".part")
        logger.info(f"Downloading robOS {self.config.firmware_version}...")
        result = self.runner.run(
            "wget", ["-O", partial, self.config.firmware_url], stream=True
        )
        if not result.ok:
            partial.unlink(missing_ok=True)
        result.raise_for_status("robOS firmware download failed")
        partial.replace(self.archive)
        logger.info(f"Saved {self.archive}")
        return self.archive

    def extract(self) -> Path:
        """
        Unpack the archive into the firmware dir and check ``build/flash_args``.

        Raises:
            PreconditionUnmet: Archive missing or not a zip file
            VerificationMismatch: Unpacked tree lacks flash_args
        """
        if not self.archive_present():
            raise PreconditionUnmet(
                f"Firmware archive not found: {self.archive}",
                details={"archive": str(self.archive)},
            )
        logger.info(f"Extracting {self.archive.name}...")
        try:
            with zipfile.ZipFile(self.archive) as archive:
                archive.extractall(self.config.firmware_dir)
        except zipfile.BadZipFile as e:
            raise PreconditionUnmet(
                f"Firmware archive is corrupt: {e}",
                details={"archive": str(self.archive)},
            )

        flash_args = self.build_dir / "flash_args"
        if not flash_args.is_file():
            raise VerificationMismatch(
                "Firmware extracted but build/flash_args is missing",
                mismatches=[f"missing {flash_args}"],
            )
        logger.info("Firmware files verified")
        return self.build_dir

    def verify(self) -> bool:
        return (self.build_dir / "flash_args").is_file()

    def missing_images(self) -> List[str]:
        return [name for _, name in FLASH_IMAGES if not (self.build_dir / name).is_file()]

    def clear(self) -> None:
        """Remove archive and build dir so the next run fetches them again."""
        if self.archive_present():
            self.archive.unlink()
        if self.extracted():
            shutil.rmtree(self.build_dir)
        logger.info("Cleared local robOS firmware")

    # TF card content

    @property
    def sdcard_dir(self) -> Path:
        return self.config.sdcard_dir

    def sdcard_present(self) -> bool:
        return self.sdcard_dir.is_dir() and any(self.sdcard_dir.iterdir())

    def fetch_sdcard_content(self) -> Path:
        """
        Shallow-clone the robOS repo and copy its ``sdcard/`` directory.

        Any previous local copy is replaced.
        """
        with tempfile.TemporaryDirectory(prefix="robos-") as tmp:
            checkout = Path(tmp) / "robOS"
            result = self.runner.run(
                "git", ["clone", "--depth", "1", self.config.sdcard_repo_url, checkout],
                stream=True,
            )
            result.raise_for_status("robOS repository clone failed")

            source = checkout / "sdcard"
            if not source.is_dir():
                raise PreconditionUnmet(
                    "robOS repository has no sdcard directory",
                    details={"repo": self.config.sdcard_repo_url},
                )
            if self.sdcard_dir.exists():
                shutil.rmtree(self.sdcard_dir)
            shutil.copytree(source, self.sdcard_dir)

        count = sum(1 for _ in self.sdcard_dir.rglob("*"))
        logger.info(f"Copied sdcard content ({count} entries) to {self.sdcard_dir}")
        return self.sdcard_dir
