"""Shared fixtures: fake network transport, recording tool runner, musl recipe."""

import hashlib
import io
import tarfile
import threading
from pathlib import Path

import pytest

from hob.errors import FetchError
from hob.executor import RecipeExecutor
from hob.fetcher import ArtifactCache, ArtifactFetcher
from hob.parser import parse_document
from hob.styles import ToolResult

MUSL_URL = "https://musl.libc.org/releases/musl-1.2.3.tar.gz"


def elf_header(e_type: int) -> bytes:
    """Minimal little-endian ELF64 header with the given e_type."""
    return b"\x7fELF" + bytes([2, 1, 1, 0]) + b"\x00" * 8 + e_type.to_bytes(2, "little") + b"\x00" * 46


MUSL_INSTALL_FILES = {
    "usr/lib/libc.so": elf_header(3),
    "usr/lib/libc.a": b"!<arch>\n" + b"\x00" * 16,
    "usr/include/stdio.h": b"/* stdio */\n",
}


class FakeTransport:
    """In-memory transport: url -> bytes, with optional transient failures."""

    def __init__(self, content: dict[str, bytes], failures: int = 0):
        self.content = dict(content)
        self.failures = failures
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def open(self, url):
        with self._lock:
            self.calls.append(url)
            fail = self.failures > 0
            if fail:
                self.failures -= 1
        if fail:
            raise FetchError(url, "connection reset")
        if url not in self.content:
            raise FetchError(url, "HTTP 404")
        data = self.content[url]
        for i in range(0, len(data), 7):
            yield data[i:i + 7]


class RecordingRunner:
    """
    ToolRunner stand-in that records every command.

    An install command (one carrying DESTDIR=) writes install_files into the
    destination. Commands whose argv contains fail_on exit with status 2.
    """

    def __init__(self, install_files: dict[str, bytes] | None = None, fail_on: str | None = None):
        self.install_files = dict(install_files or {})
        self.fail_on = fail_on
        self.calls: list[tuple[str, ...]] = []
        self.envs: list[dict[str, str]] = []
        self._lock = threading.Lock()

    def run(self, argv, cwd, env=None, timeout=None, cancel_event=None):
        with self._lock:
            self.calls.append(tuple(argv))
            self.envs.append(dict(env or {}))
        if self.fail_on is not None and self.fail_on in argv:
            return ToolResult(tuple(argv), 2, "make: *** [all] Error 2")
        destdirs = [a.split("=", 1)[1] for a in argv if a.startswith("DESTDIR=")]
        if destdirs and "install" in argv:
            for rel, data in self.install_files.items():
                target = Path(destdirs[0]) / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
        return ToolResult(tuple(argv), 0, "")

    @property
    def programs(self) -> list[str]:
        return [argv[0] for argv in self.calls]


def make_tarball(files: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as archive:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            info.mtime = 0
            archive.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def musl_recipe_text(digest: str) -> str:
    return f'''
recipe "musl" {{
    version "1.2.3"
    revision 1
    description "the musl c library"
    license "MIT"
    style "configure" {{
        configure-args "--enable-wrapper=no"
    }}
    artifacts {{
        fetch {{
            url "https://musl.libc.org/releases/{{{{name}}}}-{{{{version}}}}.tar.gz"
            sha256 "{digest}"
        }}
    }}
    install {{
        make-install
        link "usr/lib" "lib"
        rm "lib"
        link "../lib/libc.so" "usr/bin/ldd"
        link "true" "usr/bin/ldconfig"
    }}
    side "{{{{name}}}}-devel" {{
        description "development files for {{{{name}}}}"
        depends "{{{{self-ref}}}}"
        claim "usr/include" "usr/lib/*.o" "usr/lib/*.a"
    }}
}}
'''


@pytest.fixture
def musl_tarball() -> bytes:
    return make_tarball({
        "musl-1.2.3/configure": b"#!/bin/sh\nexit 0\n",
        "musl-1.2.3/Makefile": b"all:\n",
    })


@pytest.fixture
def musl_digest(musl_tarball) -> str:
    return hashlib.sha256(musl_tarball).hexdigest()


@pytest.fixture
def musl_recipe(musl_digest):
    return parse_document(musl_recipe_text(musl_digest), filename="musl.hob")[0]


@pytest.fixture
def fake_transport(musl_tarball) -> FakeTransport:
    return FakeTransport({MUSL_URL: musl_tarball})


@pytest.fixture
def recording_runner() -> RecordingRunner:
    return RecordingRunner(install_files=MUSL_INSTALL_FILES)


@pytest.fixture
def make_executor(tmp_path, fake_transport, recording_runner):
    """Factory for executors wired to the fake transport and recording runner."""

    def factory(transport=None, runner=None, **kwargs) -> RecipeExecutor:
        fetcher = ArtifactFetcher(
            transport=transport or fake_transport,
            cache=ArtifactCache(tmp_path / "cache"),
        )
        return RecipeExecutor(
            work_root=tmp_path / "work",
            output_dir=tmp_path / "out",
            fetcher=fetcher,
            runner=runner or recording_runner,
            **kwargs,
        )

    return factory
