"""
Packager - writes partitioned packages to the output directory.

For every package:
    <output>/<name>/        payload tree (owned paths only)
    <output>/<name>.json    manifest (identity, metadata, depends, paths)

Payload files are hard-linked from the staging tree when possible and copied
otherwise. All timestamps in the payload are pinned to the build time so that
two builds of the same inputs produce identical trees.
"""

import json
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Iterable, Optional

from hob.schemas import Package
from hob.staging import StagingTree

logger = logging.getLogger(__name__)


def default_build_time() -> int:
    """SOURCE_DATE_EPOCH if set, otherwise now."""
    epoch = os.environ.get("SOURCE_DATE_EPOCH")
    if epoch:
        return int(epoch)
    return int(time.time())


def pin_timestamps(root: Path, timestamp: float) -> None:
    """Set atime/mtime of every entry under root (root included) without following symlinks."""
    follow_ok = os.utime in os.supports_follow_symlinks
    for dirpath, dirnames, filenames in os.walk(root, topdown=False):
        for name in filenames + dirnames:
            path = os.path.join(dirpath, name)
            if os.path.islink(path):
                if follow_ok:
                    os.utime(path, (timestamp, timestamp), follow_symlinks=False)
                continue
            os.utime(path, (timestamp, timestamp))
    os.utime(root, (timestamp, timestamp))


class Packager:
    """
    Emits package payloads and manifests.

    Usage:
        packager = Packager(output_dir)
        manifests = packager.emit(result.packages, staging)
    """

    def __init__(self, output_dir: Path | str):
        self.output_dir = Path(output_dir)

    def emit(
        self,
        packages: Iterable[Package],
        staging: StagingTree,
        build_time: Optional[int] = None,
    ) -> list[Path]:
        """
        Write every package.

        Returns:
            Manifest paths, in package order
        """
        build_time = default_build_time() if build_time is None else build_time
        self.output_dir.mkdir(parents=True, exist_ok=True)

        manifests = []
        for package in packages:
            payload = self.output_dir / package.name
            if payload.is_symlink() or payload.is_file():
                payload.unlink()
            elif payload.exists():
                shutil.rmtree(payload)
            payload.mkdir(parents=True)

            for path in package.paths:
                self._copy_entry(staging, path, payload / path)

            pin_timestamps(payload, build_time)

            manifest = self.output_dir / f"{package.name}.json"
            data = {**package.to_dict(), "build_time": build_time}
            manifest.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n")
            manifests.append(manifest)
            logger.info(f"emitted {package.identity} -> {payload}")

        return manifests

    @staticmethod
    def _copy_entry(staging: StagingTree, path: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        if staging.is_symlink(path):
            os.symlink(staging.readlink(path), dest)
            return
        if staging.is_dir(path):
            dest.mkdir(exist_ok=True)
            return

        real = staging.real_path(path)
        if real is None:
            dest.write_bytes(staging.read_bytes(path))
            dest.chmod(staging.file_mode(path))
            return
        try:
            os.link(real, dest)
        except OSError:
            shutil.copy2(real, dest)
