"""
Extraction of fetched artifacts into a recipe's source root.

Tarballs (.tar, .tar.gz/.tgz, .tar.xz/.txz, .tar.bz2/.tbz2) are unpacked with
tarfile's "data" filter, zip files with zipfile (members escaping the root
are rejected). Anything else is copied into the source root under its
artifact file name.
"""

import logging
import shutil
import tarfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Iterable

from hob.errors import ExtractionError
from hob.fetcher import FetchedArtifact

logger = logging.getLogger(__name__)

TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz2", ".tbz")
ZIP_SUFFIXES = (".zip",)


def archive_kind(file_name: str) -> str:
    """Return "tar", "zip" or "file" for an artifact name."""
    lower = file_name.lower()
    if lower.endswith(TAR_SUFFIXES):
        return "tar"
    if lower.endswith(ZIP_SUFFIXES):
        return "zip"
    return "file"


class Extractor:
    """Unpacks verified artifacts into a source root."""

    def extract(self, artifacts: Iterable[FetchedArtifact], source_root: Path) -> None:
        """
        Extract every artifact into source_root, in declaration order.

        Raises:
            ExtractionError: If an artifact cannot be unpacked
        """
        source_root.mkdir(parents=True, exist_ok=True)
        for artifact in artifacts:
            name = artifact.spec.local_name
            kind = archive_kind(name)
            logger.debug(f"extracting {name} ({kind}) into {source_root}")
            try:
                if kind == "tar":
                    self._extract_tar(artifact.path, source_root)
                elif kind == "zip":
                    self._extract_zip(artifact.path, source_root)
                else:
                    shutil.copyfile(artifact.path, source_root / name)
            except ExtractionError:
                raise
            except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
                raise ExtractionError(f"Failed to extract {name}: {e}", phase="extract")

    @staticmethod
    def _extract_tar(path: Path, dest: Path) -> None:
        with tarfile.open(path, "r:*") as archive:
            archive.extractall(dest, filter="data")

    @staticmethod
    def _extract_zip(path: Path, dest: Path) -> None:
        with zipfile.ZipFile(path) as archive:
            for member in archive.namelist():
                parts = PurePosixPath(member).parts
                if PurePosixPath(member).is_absolute() or ".." in parts:
                    raise ExtractionError(
                        f"Refusing to extract {member!r} from {path.name}: path escapes the source root",
                        phase="extract",
                    )
            archive.extractall(dest)
