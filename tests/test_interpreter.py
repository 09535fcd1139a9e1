"""Tests for the install-operation interpreter."""

import threading

import pytest

from conftest import RecordingRunner
from hob.errors import BuildCancelled, InstallOperationError, PathConflict, PhaseExecutionError
from hob.interpreter import InstallInterpreter
from hob.schemas import InstallOperation as Op
from hob.schemas import Recipe
from hob.staging import FsStagingTree, MemoryStagingTree
from hob.styles import PhaseContext, StyleDriver


@pytest.fixture(params=["fs", "memory"])
def staging(request, tmp_path):
    if request.param == "fs":
        return FsStagingTree(tmp_path / "dest")
    return MemoryStagingTree()


def make_ctx(tmp_path, staging, runner=None, style="make", cancel_event=None, options=None, dry_run=False):
    return PhaseContext(
        recipe=Recipe(name="musl", version="1.2.3", style=style, options=options or {}),
        staging=staging,
        source_dir=tmp_path,
        runner=runner or RecordingRunner(),
        cancel_event=cancel_event,
        dry_run=dry_run,
    )


@pytest.fixture
def interpreter():
    return InstallInterpreter(StyleDriver())


class TestInstallInterpreter:
    """Tests for replaying install operations."""

    def test_operations_in_order(self, tmp_path, staging, interpreter):
        staging.write_file("usr/lib/libc.so", b"elf")
        ops = [
            Op.make_dir("usr/bin"),
            Op.link("usr/lib", "lib"),
            Op.remove("lib"),
            Op.link("../lib/libc.so", "usr/bin/ldd"),
            Op.link("true", "usr/bin/ldconfig"),
        ]
        count = interpreter.run(ops, staging, make_ctx(tmp_path, staging))
        assert count == 5
        assert staging.entries() == ["usr/bin/ldconfig", "usr/bin/ldd", "usr/lib/libc.so"]
        assert staging.readlink("usr/bin/ldd") == "../lib/libc.so"

    def test_order_matters(self, tmp_path, staging, interpreter):
        ops = [Op.remove("lib"), Op.link("usr/lib", "lib")]
        interpreter.run(ops, staging, make_ctx(tmp_path, staging))
        assert staging.is_symlink("lib")

    def test_make_dir_idempotent(self, tmp_path, staging, interpreter):
        ops = [Op.make_dir("usr/bin"), Op.make_dir("usr/bin")]
        assert interpreter.run(ops, staging, make_ctx(tmp_path, staging)) == 2
        assert staging.entries() == ["usr/bin"]

    def test_make_dir_over_file(self, tmp_path, staging, interpreter):
        staging.write_file("usr/bin", b"")
        with pytest.raises(PathConflict):
            interpreter.run([Op.make_dir("usr/bin")], staging, make_ctx(tmp_path, staging))

    def test_link_over_existing_path(self, tmp_path, staging, interpreter):
        staging.write_file("usr/bin/ldd", b"#!/bin/sh")
        with pytest.raises(PathConflict, match="already exists"):
            interpreter.run([Op.link("../lib/libc.so", "usr/bin/ldd")], staging, make_ctx(tmp_path, staging))
        assert staging.read_bytes("usr/bin/ldd") == b"#!/bin/sh"

    def test_identical_link_is_noop(self, tmp_path, staging, interpreter):
        ops = [Op.link("true", "usr/bin/ldconfig"), Op.link("true", "usr/bin/ldconfig")]
        assert interpreter.run(ops, staging, make_ctx(tmp_path, staging)) == 2

    def test_link_with_other_target_conflicts(self, tmp_path, staging, interpreter):
        ops = [Op.link("true", "usr/bin/ldconfig"), Op.link("false", "usr/bin/ldconfig")]
        with pytest.raises(PathConflict):
            interpreter.run(ops, staging, make_ctx(tmp_path, staging))

    def test_remove_missing_is_fine(self, tmp_path, staging, interpreter):
        assert interpreter.run([Op.remove("usr/share/info")], staging, make_ctx(tmp_path, staging)) == 1

    def test_escape_rejected(self, tmp_path, staging, interpreter):
        with pytest.raises(PathConflict, match="escapes"):
            interpreter.run([Op.make_dir("../outside")], staging, make_ctx(tmp_path, staging))

    def test_remove_root_rejected(self, tmp_path, staging, interpreter):
        with pytest.raises(PathConflict):
            interpreter.run([Op.remove("/")], staging, make_ctx(tmp_path, staging))

    def test_remove_through_link_to_host_refused(self, tmp_path):
        host = tmp_path / "host"
        host.mkdir()
        (host / "precious.txt").write_text("keep me")
        staging = FsStagingTree(tmp_path / "dest")
        InstallInterpreter.link(staging, str(host), "escape")
        with pytest.raises(PathConflict, match="symlink"):
            InstallInterpreter.remove(staging, "escape/precious.txt")
        assert (host / "precious.txt").read_text() == "keep me"

    def test_make_dir_through_link_to_host_refused(self, tmp_path, interpreter):
        host = tmp_path / "host"
        host.mkdir()
        staging = FsStagingTree(tmp_path / "dest")
        ops = [Op.link(str(host), "escape"), Op.make_dir("escape/bin")]
        with pytest.raises(PathConflict):
            interpreter.run(ops, staging, make_ctx(tmp_path, staging))
        assert not (host / "bin").exists()

    def test_stops_at_first_failure(self, tmp_path, staging, interpreter):
        staging.write_file("usr/bin/ldd", b"")
        ops = [Op.link("x", "usr/bin/ldd"), Op.make_dir("never")]
        with pytest.raises(PathConflict):
            interpreter.run(ops, staging, make_ctx(tmp_path, staging))
        assert not staging.lexists("never")

    def test_default_runs_style_install(self, tmp_path, interpreter):
        staging = FsStagingTree(tmp_path / "dest")
        runner = RecordingRunner(install_files={"usr/lib/libc.so": b"elf"})
        ops = [Op.make_dir("usr/bin"), Op.default(), Op.link("../lib/libc.so", "usr/bin/ldd")]
        interpreter.run(ops, staging, make_ctx(tmp_path, staging, runner=runner))
        assert runner.calls == [("make", f"DESTDIR={tmp_path / 'dest'}", "install")]
        assert staging.entries() == ["usr/bin/ldd", "usr/lib/libc.so"]

    def test_style_install_failure(self, tmp_path, staging, interpreter):
        runner = RecordingRunner(fail_on="install")
        with pytest.raises(PhaseExecutionError) as exc_info:
            interpreter.run([Op.default()], staging, make_ctx(tmp_path, staging, runner=runner))
        assert exc_info.value.phase == "install"

    def test_filesystem_error_wrapped(self, tmp_path, interpreter):
        class BrokenTree(MemoryStagingTree):
            def make_dir(self, path):
                raise PermissionError(13, "Permission denied", path)

        staging = BrokenTree()
        with pytest.raises(InstallOperationError) as exc_info:
            interpreter.run([Op.link("a", "b"), Op.make_dir("usr")], staging, make_ctx(tmp_path, staging))
        assert exc_info.value.index == 1
        assert isinstance(exc_info.value.cause, PermissionError)

    def test_cancelled(self, tmp_path, staging, interpreter):
        event = threading.Event()
        event.set()
        with pytest.raises(BuildCancelled):
            interpreter.run([Op.make_dir("usr")], staging, make_ctx(tmp_path, staging, cancel_event=event))
        assert staging.entries() == []


class TestPlaybookActions:
    """Tests for the tool-running and copy actions of stage playbooks."""

    def test_default_in_build_stage(self, tmp_path, interpreter):
        staging = MemoryStagingTree()
        runner = RecordingRunner()
        interpreter.run([Op.default()], staging, make_ctx(tmp_path, staging, runner=runner), stage="build")
        assert runner.calls == [("make", "-j1")]

    def test_default_skipped_when_style_lacks_stage(self, tmp_path, interpreter):
        staging = MemoryStagingTree()
        runner = RecordingRunner()
        ops = [Op.default(), Op.make_dir("etc")]
        ctx = make_ctx(tmp_path, staging, runner=runner)
        assert interpreter.run(ops, staging, ctx, stage="configure") == 2
        assert runner.calls == []
        assert staging.entries() == ["etc"]

    def test_make_and_make_install(self, tmp_path, interpreter):
        staging = FsStagingTree(tmp_path / "dest")
        runner = RecordingRunner()
        ctx = make_ctx(tmp_path, staging, runner=runner, style="noop")
        interpreter.run([Op.make()], staging, ctx, stage="build")
        interpreter.run([Op.make_install()], staging, ctx)
        assert runner.calls == [("make", "-j1"), ("make", f"DESTDIR={tmp_path / 'dest'}", "install")]

    def test_make_uses_make_env(self, tmp_path, interpreter):
        staging = MemoryStagingTree()
        runner = RecordingRunner()
        ctx = make_ctx(tmp_path, staging, runner=runner, options={"make-env": ["CC=musl-gcc"]})
        interpreter.run([Op.make()], staging, ctx, stage="build")
        assert runner.envs == [{"CC": "musl-gcc"}]

    def test_cc(self, tmp_path, interpreter):
        staging = MemoryStagingTree()
        runner = RecordingRunner()
        ctx = make_ctx(tmp_path, staging, runner=runner, options={"cc-flags": "-O2"})
        interpreter.run([Op.cc(["hello.c", "util.c"], "hello")], staging, ctx, stage="build")
        assert runner.calls == [("cc", "-o", "hello", "-O2", "hello.c", "util.c")]

    def test_cc_failure_names_stage(self, tmp_path, interpreter):
        staging = MemoryStagingTree()
        runner = RecordingRunner(fail_on="hello.c")
        with pytest.raises(PhaseExecutionError) as exc_info:
            interpreter.run([Op.cc(["hello.c"], "hello")], staging,
                            make_ctx(tmp_path, staging, runner=runner), stage="build")
        assert exc_info.value.phase == "build"

    def test_bin(self, tmp_path, staging, interpreter):
        (tmp_path / "build").mkdir()
        (tmp_path / "build" / "hello").write_bytes(b"\x7fELF")
        interpreter.run([Op.bin("build/hello")], staging, make_ctx(tmp_path, staging))
        assert staging.entries() == ["usr/bin/hello"]
        assert staging.read_bytes("usr/bin/hello") == b"\x7fELF"
        assert staging.file_mode("usr/bin/hello") == 0o755

    def test_man(self, tmp_path, staging, interpreter):
        (tmp_path / "hello.1").write_text(".TH HELLO 1")
        (tmp_path / "hello.conf.5").write_text(".TH HELLO.CONF 5")
        ops = [Op.man("hello.1"), Op.man("hello.conf.5")]
        interpreter.run(ops, staging, make_ctx(tmp_path, staging))
        assert staging.entries() == [
            "usr/share/man/man1/hello.1",
            "usr/share/man/man5/hello.conf.5",
        ]
        assert staging.file_mode("usr/share/man/man1/hello.1") == 0o644

    @pytest.mark.parametrize("source", ["../hello", "/etc/passwd"])
    def test_copy_outside_source_rejected(self, tmp_path, staging, interpreter, source):
        with pytest.raises(PathConflict, match="escapes the source directory"):
            interpreter.run([Op.bin(source)], staging, make_ctx(tmp_path, staging))
        assert staging.entries() == []

    def test_copy_over_existing_rejected(self, tmp_path, staging, interpreter):
        (tmp_path / "hello").write_bytes(b"new")
        staging.write_file("usr/bin/hello", b"old")
        with pytest.raises(PathConflict, match="already exists"):
            interpreter.run([Op.bin("hello")], staging, make_ctx(tmp_path, staging))
        assert staging.read_bytes("usr/bin/hello") == b"old"

    def test_missing_source_wrapped(self, tmp_path, staging, interpreter):
        with pytest.raises(InstallOperationError) as exc_info:
            interpreter.run([Op.make_dir("usr"), Op.bin("hello")], staging, make_ctx(tmp_path, staging))
        assert exc_info.value.index == 1
        assert isinstance(exc_info.value.cause, FileNotFoundError)

    def test_dry_run_writes_placeholder(self, tmp_path, staging, interpreter, caplog):
        caplog.set_level("INFO")
        ctx = make_ctx(tmp_path, staging, dry_run=True)
        interpreter.run([Op.bin("hello")], staging, ctx)
        assert staging.read_bytes("usr/bin/hello") == b""
        assert "[dry-run] would copy hello to usr/bin/hello" in caplog.text
