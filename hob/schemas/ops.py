"""
InstallOp enum defining the playbook action language.

Actions are replayed in order by a stage playbook (configure, build or
install):
- .default     -> DEFAULT: the build style's own phase for that stage
- dir          -> MAKE_DIR: ensure a directory exists
- link         -> LINK: create a symlink with a literal target
- rm           -> REMOVE: delete a file or directory tree (tolerant)
- make         -> MAKE: run make -jN in the source directory
- make-install -> MAKE_INSTALL: run make DESTDIR=<staging> install
- cc           -> CC: compile inputs into one output in the source directory
- bin          -> BIN: copy a built program into usr/bin
- man          -> MAN: copy a manual page into usr/share/man/man<N>
"""

from enum import Enum


class InstallOp(str, Enum):
    """
    Enumeration of all valid playbook actions.

    The value is the keyword used in recipe documents.
    """
    DEFAULT = ".default"
    MAKE_DIR = "dir"
    LINK = "link"
    REMOVE = "rm"
    MAKE = "make"
    MAKE_INSTALL = "make-install"
    CC = "cc"
    BIN = "bin"
    MAN = "man"

    @property
    def takes_arguments(self) -> bool:
        return self not in (InstallOp.DEFAULT, InstallOp.MAKE, InstallOp.MAKE_INSTALL)

    @classmethod
    def from_string(cls, value: str) -> "InstallOp":
        """Parse an InstallOp from its keyword."""
        for op in cls:
            if op.value == value:
                return op
        raise ValueError(f"Unknown install operation: {value}")
