"""
Staging trees - the install root a recipe build writes into.

A StagingTree is an explicit value handed to the interpreter, the style's
install phase and the partitioner. Paths are POSIX-style and relative to the
staging root. Two implementations share one interface:

- FsStagingTree: a real directory on disk (used for builds)
- MemoryStagingTree: a dict of entries (used for dry runs and tests)

entries() returns the leaves of the tree: regular files, symlinks and empty
directories. These are the units that get partitioned into packages.
"""

import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional

from hob.errors import PathConflict


FILE = "file"
DIR = "dir"
SYMLINK = "symlink"


def normalize_path(path: str) -> str:
    """
    Normalize a staging path to a clean relative POSIX path.

    Absolute paths are re-rooted at the staging root. ".." components that
    would climb above the root raise PathConflict.
    """
    parts: list[str] = []
    for part in PurePosixPath(path).parts:
        if part in ("/", "", "."):
            continue
        if part == "..":
            if not parts:
                raise PathConflict(path, "path escapes the staging root")
            parts.pop()
            continue
        parts.append(part)
    return "/".join(parts)


class StagingTree(ABC):
    """Interface shared by staging tree implementations."""

    @abstractmethod
    def make_dir(self, path: str) -> None:
        """Create a directory and its parents; no-op if it exists."""
        ...

    @abstractmethod
    def symlink(self, target: str, link_path: str) -> None:
        """Create a symlink at link_path whose content is target (parents created)."""
        ...

    @abstractmethod
    def remove(self, path: str) -> bool:
        """Remove a file, symlink or directory tree. Returns False if missing."""
        ...

    @abstractmethod
    def write_file(self, path: str, data: bytes, mode: int = 0o644) -> None:
        ...

    @abstractmethod
    def lexists(self, path: str) -> bool:
        """True if path exists, without following a final symlink."""
        ...

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        """True if path is a real directory (symlinks are not followed)."""
        ...

    @abstractmethod
    def is_symlink(self, path: str) -> bool:
        ...

    @abstractmethod
    def readlink(self, path: str) -> str:
        ...

    @abstractmethod
    def read_bytes(self, path: str) -> bytes:
        ...

    @abstractmethod
    def entries(self) -> list[str]:
        """Sorted leaf entries: regular files, symlinks and empty directories."""
        ...

    @abstractmethod
    def real_path(self, path: str) -> Optional[Path]:
        """Filesystem location of path, None for in-memory trees."""
        ...

    def file_mode(self, path: str) -> int:
        return 0o644


class FsStagingTree(StagingTree):
    """Staging tree backed by a private directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"FsStagingTree({str(self.root)!r})"

    def _abs(self, path: str) -> Path:
        rel = normalize_path(path)
        return self.root / rel if rel else self.root

    def _check_parents(self, path: str, require_dirs: bool = True) -> None:
        # refuse to reach entries through a symlinked parent
        rel = normalize_path(path)
        current = self.root
        for part in rel.split("/")[:-1]:
            current = current / part
            if current.is_symlink():
                raise PathConflict(path, f"parent {current.relative_to(self.root)} is a symlink")
            if not current.exists():
                return
            if require_dirs and not current.is_dir():
                raise PathConflict(path, f"parent {current.relative_to(self.root)} is not a directory")

    def _resolve(self, path: str) -> Path:
        """Location of path inside the root; no parent may be a symlink."""
        self._check_parents(path, require_dirs=False)
        return self._abs(path)

    def make_dir(self, path: str) -> None:
        self._check_parents(path)
        target = self._abs(path)
        if target.is_symlink() or (target.exists() and not target.is_dir()):
            raise PathConflict(path, "exists and is not a directory")
        target.mkdir(parents=True, exist_ok=True)

    def symlink(self, target: str, link_path: str) -> None:
        self._check_parents(link_path)
        link = self._abs(link_path)
        link.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(target, link)

    def remove(self, path: str) -> bool:
        target = self._resolve(path)
        if target == self.root:
            raise PathConflict(path, "refusing to remove the staging root")
        if target.is_symlink() or target.is_file():
            target.unlink()
            return True
        if target.is_dir():
            shutil.rmtree(target)
            return True
        return False

    def write_file(self, path: str, data: bytes, mode: int = 0o644) -> None:
        self._check_parents(path)
        target = self._abs(path)
        if target.is_symlink():
            raise PathConflict(path, "exists and is a symlink")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        target.chmod(mode)

    def lexists(self, path: str) -> bool:
        return os.path.lexists(self._resolve(path))

    def is_dir(self, path: str) -> bool:
        target = self._resolve(path)
        return target.is_dir() and not target.is_symlink()

    def is_symlink(self, path: str) -> bool:
        return self._resolve(path).is_symlink()

    def readlink(self, path: str) -> str:
        return os.readlink(self._resolve(path))

    def read_bytes(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def file_mode(self, path: str) -> int:
        return self._resolve(path).lstat().st_mode & 0o7777

    def entries(self) -> list[str]:
        found = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            current = Path(dirpath)
            rel_dir = current.relative_to(self.root).as_posix()
            prefix = "" if rel_dir == "." else f"{rel_dir}/"

            # os.walk lists symlinks to directories as dirnames
            real_dirs = []
            for name in dirnames:
                if (current / name).is_symlink():
                    found.append(prefix + name)
                else:
                    real_dirs.append(name)
            dirnames[:] = real_dirs

            found.extend(prefix + name for name in filenames)
            if not dirnames and not filenames and prefix:
                found.append(rel_dir)
        return sorted(found)

    def real_path(self, path: str) -> Optional[Path]:
        return self._abs(path)


class MemoryStagingTree(StagingTree):
    """
    Staging tree held in memory.

    Maps normalized paths to (kind, payload, mode); directories are explicit
    entries so that empty directories survive.
    """

    def __init__(self):
        self._nodes: dict[str, tuple[str, object, int]] = {}

    def __repr__(self) -> str:
        return f"MemoryStagingTree({len(self._nodes)} nodes)"

    def _check_parents(self, path: str) -> None:
        parts = path.split("/")[:-1]
        for i in range(1, len(parts) + 1):
            parent = "/".join(parts[:i])
            if self._nodes.get(parent, (None,))[0] == SYMLINK:
                raise PathConflict(path, f"parent {parent} is a symlink")

    def _ensure_parents(self, path: str) -> None:
        parts = path.split("/")[:-1]
        current = ""
        for part in parts:
            current = f"{current}/{part}" if current else part
            node = self._nodes.get(current)
            if node is None:
                self._nodes[current] = (DIR, None, 0o755)
            elif node[0] != DIR:
                raise PathConflict(path, f"parent {current} is not a directory")

    def make_dir(self, path: str) -> None:
        rel = normalize_path(path)
        if not rel:
            return
        node = self._nodes.get(rel)
        if node is not None and node[0] != DIR:
            raise PathConflict(path, "exists and is not a directory")
        self._ensure_parents(rel)
        self._nodes[rel] = (DIR, None, 0o755)

    def symlink(self, target: str, link_path: str) -> None:
        rel = normalize_path(link_path)
        if rel in self._nodes:
            raise FileExistsError(f"File exists: {link_path}")
        self._ensure_parents(rel)
        self._nodes[rel] = (SYMLINK, target, 0o777)

    def remove(self, path: str) -> bool:
        rel = normalize_path(path)
        if not rel:
            raise PathConflict(path, "refusing to remove the staging root")
        self._check_parents(rel)
        if rel not in self._nodes:
            return False
        prefix = f"{rel}/"
        for key in [k for k in self._nodes if k == rel or k.startswith(prefix)]:
            del self._nodes[key]
        return True

    def write_file(self, path: str, data: bytes, mode: int = 0o644) -> None:
        rel = normalize_path(path)
        node = self._nodes.get(rel)
        if node is not None and node[0] == DIR:
            raise IsADirectoryError(f"Is a directory: {path}")
        if node is not None and node[0] == SYMLINK:
            raise PathConflict(path, "exists and is a symlink")
        self._ensure_parents(rel)
        self._nodes[rel] = (FILE, bytes(data), mode)

    def lexists(self, path: str) -> bool:
        rel = normalize_path(path)
        self._check_parents(rel)
        return not rel or rel in self._nodes

    def is_dir(self, path: str) -> bool:
        rel = normalize_path(path)
        self._check_parents(rel)
        return not rel or self._nodes.get(rel, (None,))[0] == DIR

    def is_symlink(self, path: str) -> bool:
        rel = normalize_path(path)
        self._check_parents(rel)
        return self._nodes.get(rel, (None,))[0] == SYMLINK

    def _get(self, path: str, kind: str) -> object:
        rel = normalize_path(path)
        self._check_parents(rel)
        node = self._nodes.get(rel)
        if node is None:
            raise FileNotFoundError(f"No such file or directory: {path}")
        if node[0] != kind:
            raise OSError(f"{path} is a {node[0]}, not a {kind}")
        return node[1]

    def readlink(self, path: str) -> str:
        return self._get(path, SYMLINK)

    def read_bytes(self, path: str) -> bytes:
        return self._get(path, FILE)

    def file_mode(self, path: str) -> int:
        return self._nodes[normalize_path(path)][2]

    def entries(self) -> list[str]:
        parents = set()
        for key in self._nodes:
            parts = key.split("/")
            for i in range(1, len(parts)):
                parents.add("/".join(parts[:i]))
        return sorted(
            key for key, (kind, _, _) in self._nodes.items()
            if kind != DIR or key not in parents
        )

    def real_path(self, path: str) -> Optional[Path]:
        return None
