"""Wrappers around the external image generators.

Each generator receives a finished staging directory and writes exactly one
artifact. Output goes to ``<output>.work`` first and is renamed into place
only after the tool succeeds, so an interrupted build never leaves a
half-written image under the final name.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from acorn_builder.artifacts.command_runners import run_checked_command, run_checked_to_file
from acorn_builder.cache.fingerprint import file_digest
from acorn_builder.config.settings import get_int, get_setting
from acorn_builder.exceptions import GeneratorError
from acorn_builder.logging import LoggerFactory

log = LoggerFactory.for_artifacts()


def _clamp_times(root: Path, epoch: int) -> None:
    """Set every mtime under ``root`` to ``epoch`` (symlinks included)."""
    for current, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            os.utime(Path(current) / name, (epoch, epoch), follow_symlinks=False)
    os.utime(root, (epoch, epoch))


class ImageGenerator:
    """Base class: subclasses provide ``tool``, ``params()`` and ``build()``."""

    stage_id = "image"
    tool = ""

    def __init__(self, source_date_epoch: int | None = None):
        self.source_date_epoch = (
            get_int("source_date_epoch", 0) if source_date_epoch is None else source_date_epoch
        )

    def params(self) -> dict[str, Any]:
        """Declared parameters; part of the stage fingerprint."""
        return {"tool": self.tool, "source_date_epoch": self.source_date_epoch}

    def env(self) -> dict[str, str]:
        return {"SOURCE_DATE_EPOCH": str(self.source_date_epoch)}

    def build(self, source: Path, work: Path) -> None:
        raise NotImplementedError

    def generate(self, source: Path, output: Path) -> Path:
        """Build ``output`` from the staging directory ``source``.

        Raises:
            GeneratorError: The tool failed or produced nothing
        """
        source = Path(source)
        output = Path(output)
        if not source.is_dir():
            raise GeneratorError(self.stage_id, [self.tool], f"staging directory {source} not found")
        output.parent.mkdir(parents=True, exist_ok=True)
        work = output.with_name(f"{output.name}.work")
        work.unlink(missing_ok=True)
        log.info(f"Generating {output.name} with {self.tool}")
        try:
            self.build(source, work)
            if not work.is_file() or work.stat().st_size == 0:
                raise GeneratorError(self.stage_id, [self.tool], f"{self.tool} produced no output")
            os.replace(work, output)
        finally:
            work.unlink(missing_ok=True)
        log.success(f"Created {output} ({output.stat().st_size // 1024} KB)")
        return output


class SquashfsGenerator(ImageGenerator):
    """Root filesystem image via mksquashfs."""

    stage_id = "rootfs-squashfs"
    tool = "mksquashfs"

    def __init__(
        self,
        compression: str | None = None,
        block_size: str | None = None,
        source_date_epoch: int | None = None,
    ):
        super().__init__(source_date_epoch)
        self.compression = compression or get_setting("squashfs_compression", "zstd")
        self.block_size = block_size or get_setting("squashfs_block_size", "1M")

    def params(self) -> dict[str, Any]:
        params = super().params()
        params.update({"compression": self.compression, "block_size": self.block_size})
        return params

    def command(self, source: Path, work: Path) -> list[str]:
        epoch = str(self.source_date_epoch)
        return [
            self.tool,
            str(source),
            str(work),
            "-comp",
            self.compression,
            "-b",
            self.block_size,
            "-no-xattrs",
            "-noappend",
            "-all-root",
            "-mkfs-time",
            epoch,
            "-all-time",
            epoch,
        ]

    def build(self, source: Path, work: Path) -> None:
        run_checked_command(self.command(source, work), stage_id=self.stage_id, env=self.env())


class InitramfsGenerator(ImageGenerator):
    """gzip-compressed newc cpio archive."""

    stage_id = "initramfs"
    tool = "cpio"

    def params(self) -> dict[str, Any]:
        params = super().params()
        params.update({"format": "newc", "compressor": "gzip -n -9"})
        return params

    @staticmethod
    def file_list(source: Path) -> str:
        """Sorted relative paths, one per line, as cpio reads them."""
        entries = []
        for current, dirnames, filenames in os.walk(source):
            dirnames.sort()
            base = Path(current)
            for name in sorted(dirnames + filenames):
                entries.append((base / name).relative_to(source).as_posix())
        return "\n".join(sorted(entries)) + "\n"

    def build(self, source: Path, work: Path) -> None:
        _clamp_times(source, self.source_date_epoch)
        archive = work.with_name(f"{work.name}.cpio")
        try:
            with open(archive, "wb") as handle:
                run_checked_to_file(
                    ["cpio", "-o", "-H", "newc", "--reproducible", "--quiet"],
                    handle,
                    self.file_list(source),
                    stage_id=self.stage_id,
                    cwd=source,
                    env=self.env(),
                )
            with open(work, "wb") as handle:
                run_checked_to_file(
                    ["gzip", "-n", "-9", "-c", str(archive)],
                    handle,
                    stage_id=self.stage_id,
                    env=self.env(),
                )
        finally:
            archive.unlink(missing_ok=True)


class IsoGenerator(ImageGenerator):
    """Bootable ISO via grub-mkrescue."""

    stage_id = "iso"
    tool = "grub-mkrescue"

    def __init__(self, label: str | None = None, source_date_epoch: int | None = None):
        super().__init__(source_date_epoch)
        self.label = label or get_setting("iso_label", "ACORNOS")

    def params(self) -> dict[str, Any]:
        params = super().params()
        params["label"] = self.label
        return params

    def command(self, source: Path, work: Path) -> list[str]:
        return [self.tool, "-o", str(work), str(source), "--", "-volid", self.label]

    def build(self, source: Path, work: Path) -> None:
        _clamp_times(source, self.source_date_epoch)
        run_checked_command(self.command(source, work), stage_id=self.stage_id, env=self.env())


def write_checksum(path: Path) -> Path:
    """Write ``<path>.sha256`` in sha256sum format next to ``path``."""
    path = Path(path)
    checksum = path.with_name(f"{path.name}.sha256")
    tmp = checksum.with_name(f"{checksum.name}.work")
    tmp.write_text(f"{file_digest(path)}  {path.name}\n", encoding="utf-8")
    os.replace(tmp, checksum)
    log.debug(f"Wrote checksum {checksum}")
    return checksum
