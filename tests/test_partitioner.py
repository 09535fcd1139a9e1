"""Tests for splitting a staging tree into packages."""

import pytest

from hob.errors import ClaimConflictError
from hob.partitioner import ClaimPattern, partition
from hob.schemas import Recipe, SidePackage
from hob.staging import MemoryStagingTree


def musl_tree() -> MemoryStagingTree:
    tree = MemoryStagingTree()
    tree.write_file("usr/include/stdio.h", b"")
    tree.write_file("usr/include/sys/types.h", b"")
    tree.write_file("usr/lib/libc.so", b"")
    tree.write_file("usr/lib/libc.a", b"")
    tree.write_file("usr/lib/crt1.o", b"")
    tree.symlink("../lib/libc.so", "usr/bin/ldd")
    tree.make_dir("var/empty")
    return tree


def recipe_with(*sides: SidePackage, **kwargs) -> Recipe:
    return Recipe(name="musl", version="1.2.3", revision=1, depends=("linux-headers",), sides=sides, **kwargs)


class TestClaimPattern:
    """Tests for claim glob matching."""

    @pytest.mark.parametrize("pattern, path, expected", [
        ("usr/include", "usr/include/stdio.h", True),
        ("usr/include", "usr/include/sys/types.h", True),
        ("usr/include", "usr/includes/x.h", False),
        ("usr/lib/*.a", "usr/lib/libc.a", True),
        ("usr/lib/*.a", "usr/lib/sub/libc.a", False),
        ("usr/lib/lib?.a", "usr/lib/libc.a", True),
        ("usr/lib/[lL]ibc.so", "usr/lib/libc.so", True),
        ("usr/share/**/man", "usr/share/a/b/man/man1/ls.1", True),
        ("**/*.la", "usr/lib/libz.la", True),
        ("**", "anything/at/all", True),
        ("/usr/include/", "usr/include/stdio.h", True),
        ("", "usr", False),
    ])
    def test_matches(self, pattern, path, expected):
        assert ClaimPattern(pattern).matches(path) is expected


class TestPartition:
    """Tests for partition()."""

    def test_no_sides(self):
        tree = musl_tree()
        result = partition(recipe_with(), tree)
        assert len(result.packages) == 1
        assert result.main.paths == tuple(tree.entries())

    def test_musl_split(self):
        devel = SidePackage("musl-devel", depends=("musl@1.2.3-1",),
                            claims=("usr/include", "usr/lib/*.o", "usr/lib/*.a"))
        result = partition(recipe_with(devel, description="the musl c library"), musl_tree())

        main, dev = result.packages
        assert main.name == "musl"
        assert main.paths == ("usr/bin/ldd", "usr/lib/libc.so", "var/empty")
        assert dev.paths == (
            "usr/include/stdio.h", "usr/include/sys/types.h", "usr/lib/crt1.o", "usr/lib/libc.a",
        )
        assert dev.is_main is False
        assert dev.origin == "musl"
        assert dev.description == "the musl c library"
        assert dev.depends == ("linux-headers", "musl@1.2.3-1")
        assert result.owner_of("usr/lib/libc.a") == "musl-devel"
        assert result.get("musl-devel") is dev

    def test_every_entry_owned_once(self):
        sides = (
            SidePackage("musl-devel", claims=("usr/include",)),
            SidePackage("musl-static", claims=("usr/lib/*.a", "usr/lib/*.o")),
        )
        tree = musl_tree()
        result = partition(recipe_with(*sides), tree)
        owned = [path for package in result.packages for path in package.paths]
        assert sorted(owned) == tree.entries()
        assert len(owned) == len(set(owned))

    def test_empty_side_still_emitted(self):
        result = partition(recipe_with(SidePackage("musl-doc", claims=("usr/share/man",))), musl_tree())
        assert result.get("musl-doc").paths == ()

    def test_strict_conflict(self):
        sides = (
            SidePackage("musl-devel", claims=("usr/lib/*.a",)),
            SidePackage("musl-static", claims=("usr/lib/libc.a",)),
        )
        with pytest.raises(ClaimConflictError) as exc_info:
            partition(recipe_with(*sides), musl_tree())
        assert exc_info.value.path == "usr/lib/libc.a"
        assert exc_info.value.sides == ["musl-devel", "musl-static"]

    def test_first_precedence(self):
        sides = (
            SidePackage("musl-devel", claims=("usr/lib/*.a",)),
            SidePackage("musl-static", claims=("usr/lib/libc.a", "usr/lib/*.o")),
        )
        result = partition(recipe_with(*sides), musl_tree(), precedence="first")
        assert result.owner_of("usr/lib/libc.a") == "musl-devel"
        assert result.get("musl-static").paths == ("usr/lib/crt1.o",)

    def test_deterministic(self):
        side = SidePackage("musl-devel", claims=("usr/include",))
        assert partition(recipe_with(side), musl_tree()) == partition(recipe_with(side), musl_tree())

    def test_unknown_precedence(self):
        with pytest.raises(ValueError):
            partition(recipe_with(), musl_tree(), precedence="last")
