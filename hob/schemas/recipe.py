"""
Recipe schema - the declarative description of one build.

A Recipe is parsed once per invocation and is immutable afterwards. String
fields may contain {{placeholder}} templates; hob.compiler resolves them into
a new Recipe before any other component reads the values.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlparse

from hob.errors import ParseError

from .ops import InstallOp


def _digest_size(algorithm: str) -> Optional[int]:
    """Return the digest size in bytes for a hashlib algorithm, None if unsupported."""
    try:
        h = hashlib.new(algorithm)
    except (ValueError, TypeError):
        return None
    # shake_* have variable length digests
    if h.digest_size == 0:
        return None
    return h.digest_size


# Stages a recipe may override with a playbook, in execution order
STAGES = ("configure", "build", "install")
PLAYBOOK_STAGES = ("configure", "build")

SUPPORTED_HASHES = ("sha256", "sha512", "sha384", "sha1", "blake2b", "blake2s", "md5")


@dataclass(frozen=True)
class HashSpec:
    """
    Declared content hash of an artifact.

    algorithm: hashlib algorithm name (sha256, sha512, ...)
    digest: lowercase hex digest
    """
    algorithm: str
    digest: str

    def __post_init__(self):
        if self.algorithm not in SUPPORTED_HASHES:
            raise ParseError(
                f"Unsupported hash algorithm '{self.algorithm}'. "
                f"Supported: {', '.join(SUPPORTED_HASHES)}"
            )
        size = _digest_size(self.algorithm)
        digest = self.digest.lower()
        try:
            raw = bytes.fromhex(digest)
        except ValueError:
            raise ParseError(f"Invalid hex string for {self.algorithm}: {self.digest!r}")
        if size is not None and len(raw) != size:
            raise ParseError(
                f"Expected {size} byte long hex string for {self.algorithm}, got {len(raw)} bytes"
            )
        object.__setattr__(self, "digest", digest)

    @property
    def key(self) -> str:
        """Cache key for content addressed storage."""
        return f"{self.algorithm}:{self.digest}"

    def new_hasher(self):
        """Create a fresh hashlib object for this algorithm."""
        return hashlib.new(self.algorithm)


@dataclass(frozen=True)
class FetchSpec:
    """
    A source artifact to retrieve and verify.

    Attributes:
        url: Source URL (may contain placeholders)
        hash: Declared digest the fetched bytes must match
        file_name: Local file name; defaults to the last URL path segment
    """
    url: str
    hash: HashSpec
    file_name: Optional[str] = None

    @property
    def local_name(self) -> str:
        """File name used when storing the artifact."""
        if self.file_name:
            return self.file_name
        path = urlparse(self.url).path if "://" in self.url else self.url.split("?")[0]
        name = path.rstrip("/").rsplit("/", 1)[-1]
        return name or "artifact"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"url": self.url, self.hash.algorithm: self.hash.digest}
        if self.file_name:
            data["name"] = self.file_name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FetchSpec":
        if "url" not in data:
            raise ParseError("fetch artifact requires an url to be given")

        hash_spec = None
        if "hash" in data:
            declared = data["hash"]
            if isinstance(declared, dict):
                hash_spec = HashSpec(algorithm=declared["algorithm"], digest=str(declared["digest"]))
            elif isinstance(declared, str) and ":" in declared:
                algo, digest = declared.split(":", 1)
                hash_spec = HashSpec(algorithm=algo, digest=digest)
            else:
                raise ParseError(f"Invalid hash declaration: {declared!r}")
        else:
            for algo in SUPPORTED_HASHES:
                if algo in data:
                    if hash_spec is not None:
                        raise ParseError(f"Artifact {data['url']} declares more than one hash")
                    hash_spec = HashSpec(algorithm=algo, digest=str(data[algo]))

        if hash_spec is None:
            raise ParseError(f"Artifact {data['url']} has no declared hash")

        return cls(url=data["url"], hash=hash_spec, file_name=data.get("name"))


@dataclass(frozen=True)
class InstallOperation:
    """
    One action of a stage playbook.

    Only the fields relevant to the op are set:
    - MAKE_DIR, REMOVE, BIN, MAN: path
    - LINK: target (literal symlink content), link_path
    - CC: inputs, output
    - DEFAULT, MAKE, MAKE_INSTALL: nothing
    """
    op: InstallOp
    path: Optional[str] = None
    target: Optional[str] = None
    link_path: Optional[str] = None
    inputs: tuple[str, ...] = field(default_factory=tuple)
    output: Optional[str] = None

    def __post_init__(self):
        if self.op in (InstallOp.MAKE_DIR, InstallOp.REMOVE, InstallOp.BIN, InstallOp.MAN) and not self.path:
            raise ParseError(f"'{self.op.value}' requires a path")
        if self.op == InstallOp.LINK and (not self.target or not self.link_path):
            raise ParseError("link needs 2 arguments, target and link path")
        if self.op == InstallOp.CC and (not self.inputs or not self.output):
            raise ParseError("cc needs at least one input and an output=")
        if self.op == InstallOp.MAN and "{{" not in self.path and self.man_section is None:
            raise ParseError(f"invalid man file {self.path}, should end with .<digit>")

    @property
    def man_section(self) -> Optional[str]:
        """Section digits of a man page path (foo.1 -> "1"), None if it has none."""
        if self.path is None or "." not in self.path:
            return None
        ext = self.path.rsplit(".", 1)[1]
        return ext if ext.isdigit() else None

    @classmethod
    def default(cls) -> "InstallOperation":
        return cls(op=InstallOp.DEFAULT)

    @classmethod
    def make_dir(cls, path: str) -> "InstallOperation":
        return cls(op=InstallOp.MAKE_DIR, path=path)

    @classmethod
    def link(cls, target: str, link_path: str) -> "InstallOperation":
        return cls(op=InstallOp.LINK, target=target, link_path=link_path)

    @classmethod
    def remove(cls, path: str) -> "InstallOperation":
        return cls(op=InstallOp.REMOVE, path=path)

    @classmethod
    def make(cls) -> "InstallOperation":
        return cls(op=InstallOp.MAKE)

    @classmethod
    def make_install(cls) -> "InstallOperation":
        return cls(op=InstallOp.MAKE_INSTALL)

    @classmethod
    def cc(cls, inputs: list[str], output: str) -> "InstallOperation":
        return cls(op=InstallOp.CC, inputs=tuple(inputs), output=output)

    @classmethod
    def bin(cls, path: str) -> "InstallOperation":
        return cls(op=InstallOp.BIN, path=path)

    @classmethod
    def man(cls, path: str) -> "InstallOperation":
        return cls(op=InstallOp.MAN, path=path)

    def __str__(self) -> str:
        if self.op == InstallOp.LINK:
            return f"link {self.target} {self.link_path}"
        if self.op == InstallOp.CC:
            return f"cc {' '.join(self.inputs)} output={self.output}"
        if not self.op.takes_arguments:
            return self.op.value
        return f"{self.op.value} {self.path}"

    def to_dict(self) -> Any:
        if not self.op.takes_arguments:
            return self.op.value
        if self.op == InstallOp.LINK:
            return {"link": [self.target, self.link_path]}
        if self.op == InstallOp.CC:
            return {"cc": {"inputs": list(self.inputs), "output": self.output}}
        return {self.op.value: self.path}

    @classmethod
    def from_dict(cls, data: Any) -> list["InstallOperation"]:
        """
        Parse one playbook entry. Returns a list since `dir`, `rm`, `bin`
        and `man` accept several paths.

        Accepted shapes:
            ".default" / "make" / "make-install"
            {"dir": "usr/lib"} / {"dir": ["a", "b"]}
            {"rm": "lib"}
            {"link": ["../lib/libc.so", "usr/bin/ldd"]}
            {"cc": {"inputs": ["hello.c"], "output": "hello"}}
            {"bin": "hello"} / {"man": ["hello.1", "hello.conf.5"]}
        """
        if isinstance(data, str):
            try:
                op = InstallOp.from_string(data)
            except ValueError as e:
                raise ParseError(str(e))
            if op.takes_arguments:
                raise ParseError(f"'{data}' requires arguments")
            return [cls(op=op)]

        if not isinstance(data, dict) or len(data) != 1:
            raise ParseError(f"Invalid install operation: {data!r}")

        (keyword, args), = data.items()
        try:
            op = InstallOp.from_string(keyword)
        except ValueError as e:
            raise ParseError(str(e))

        if not op.takes_arguments:
            return [cls(op=op)]
        if op == InstallOp.LINK:
            if not isinstance(args, (list, tuple)) or len(args) != 2:
                raise ParseError("link needs 2 arguments, target and link path")
            return [cls.link(str(args[0]), str(args[1]))]
        if op == InstallOp.CC:
            if not isinstance(args, dict):
                raise ParseError(f"Invalid cc operation: {args!r}")
            inputs = args.get("inputs", [])
            if isinstance(inputs, str):
                inputs = [inputs]
            return [cls.cc([str(i) for i in inputs], args.get("output"))]

        paths = args if isinstance(args, (list, tuple)) else [args]
        return [cls(op=op, path=str(p)) for p in paths]


@dataclass(frozen=True)
class SidePackage:
    """
    A secondary output package carved out of the staging tree.

    Attributes:
        name: Package name (may contain placeholders)
        description: Description; None means inherit the recipe description
        depends: Declared dependency references
        claims: Ordered glob patterns selecting owned paths
        extends_depends: When true, the recipe-level depends come first
    """
    name: str
    description: Optional[str] = None
    depends: tuple[str, ...] = field(default_factory=tuple)
    claims: tuple[str, ...] = field(default_factory=tuple)
    extends_depends: bool = True

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name}
        if self.description is not None:
            data["description"] = self.description
        if self.depends:
            data["depends"] = list(self.depends)
        if not self.extends_depends:
            data["extends_depends"] = False
        data["claim"] = list(self.claims)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SidePackage":
        if "name" not in data:
            raise ParseError("side package requires a name")
        claims = data.get("claim", data.get("claims", []))
        if isinstance(claims, str):
            claims = [claims]
        depends = data.get("depends", [])
        if isinstance(depends, str):
            depends = [depends]
        return cls(
            name=data["name"],
            description=data.get("description"),
            depends=tuple(depends),
            claims=tuple(claims),
            extends_depends=data.get("extends_depends", True),
        )


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


@dataclass(frozen=True)
class Recipe:
    """
    A recipe - the declarative specification of one package build.

    Attributes:
        name: Main package name
        version: Upstream version string
        revision: Packaging revision
        style: Name of the build style driving the phases
        description: Human readable description
        home: Upstream homepage
        maintainers: Maintainer contacts
        licenses: SPDX license identifiers
        depends: Dependencies of the main package (side packages inherit them)
        provides: Extra package names satisfied by the main package
        source_dir: Directory inside the extracted sources to build in
        options: Style options (strip, configure-args, make-args, jobs, ...)
        artifacts: Source artifacts to fetch and verify
        install: Install-stage playbook (empty: run the style install)
        playbooks: Playbooks overriding the configure and build stages
        sides: Side packages, in declaration order
    """
    name: str
    version: str
    revision: int = 0
    style: str = "noop"
    description: str = ""
    home: Optional[str] = None
    maintainers: tuple[str, ...] = field(default_factory=tuple)
    licenses: tuple[str, ...] = field(default_factory=tuple)
    depends: tuple[str, ...] = field(default_factory=tuple)
    provides: tuple[str, ...] = field(default_factory=tuple)
    source_dir: Optional[str] = None
    options: dict[str, Any] = field(default_factory=dict)
    artifacts: tuple[FetchSpec, ...] = field(default_factory=tuple)
    install: tuple[InstallOperation, ...] = field(default_factory=tuple)
    sides: tuple[SidePackage, ...] = field(default_factory=tuple)
    playbooks: dict[str, tuple[InstallOperation, ...]] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            raise ParseError("recipe requires a name")
        if not self.version:
            raise ParseError("recipe missing version", recipe=self.name)
        if not isinstance(self.revision, int) or isinstance(self.revision, bool) or self.revision < 0:
            raise ParseError(f"revision must be a non-negative integer, got {self.revision!r}",
                             recipe=self.name)

        side_names = [s.name for s in self.sides]
        if len(side_names) != len(set(side_names)):
            duplicates = {n for n in side_names if side_names.count(n) > 1}
            raise ParseError(f"Duplicate side package names: {sorted(duplicates)}", recipe=self.name)
        if self.name in side_names:
            raise ParseError(f"side package '{self.name}' has the same name as the main package",
                             recipe=self.name)

        for stage in self.playbooks:
            if stage not in PLAYBOOK_STAGES:
                raise ParseError(f"unknown stage '{stage}', expected one of {', '.join(PLAYBOOK_STAGES)}",
                                 recipe=self.name)
        for stage in STAGES:
            actions = self.install if stage == "install" else self.playbooks.get(stage, ())
            if sum(1 for op in actions if op.op == InstallOp.DEFAULT) > 1:
                raise ParseError(f".default called twice in {stage} block", recipe=self.name)

    @property
    def identity(self) -> str:
        """Main package identity: name@version-revision."""
        return f"{self.name}@{self.version}-{self.revision}"

    @property
    def source_dir_name(self) -> str:
        return self.source_dir or f"{self.name}-{self.version}"

    @property
    def install_sequence(self) -> tuple[InstallOperation, ...]:
        """The replay log to execute; an empty install block means the style default."""
        if not self.install:
            return (InstallOperation.default(),)
        return self.install

    def playbook(self, stage: str) -> Optional[tuple[InstallOperation, ...]]:
        """Actions overriding a stage, None when the style phase runs unchanged."""
        if stage == "install":
            return self.install_sequence
        return self.playbooks.get(stage)

    def side_description(self, side: SidePackage) -> str:
        return self.description if side.description is None else side.description

    def side_depends(self, side: SidePackage) -> tuple[str, ...]:
        if side.extends_depends:
            return tuple(self.depends) + tuple(side.depends)
        return tuple(side.depends)

    def get_side(self, name: str) -> Optional[SidePackage]:
        """Get a side package by name."""
        for side in self.sides:
            if side.name == name:
                return side
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/YAML output."""
        return {
            "name": self.name,
            "version": self.version,
            "revision": self.revision,
            "style": self.style,
            "description": self.description,
            **({"home": self.home} if self.home else {}),
            **({"maintainer": list(self.maintainers)} if self.maintainers else {}),
            **({"license": list(self.licenses)} if self.licenses else {}),
            **({"depends": list(self.depends)} if self.depends else {}),
            **({"provides": list(self.provides)} if self.provides else {}),
            **({"source_dir": self.source_dir} if self.source_dir else {}),
            "options": dict(self.options),
            "artifacts": [a.to_dict() for a in self.artifacts],
            "install": [op.to_dict() for op in self.install],
            **({"stages": {stage: [op.to_dict() for op in ops] for stage, ops in self.playbooks.items()}}
               if self.playbooks else {}),
            "sides": [s.to_dict() for s in self.sides],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipe":
        """Deserialize from dictionary."""
        if not isinstance(data, dict):
            raise ParseError(f"Recipe must be a mapping, got {type(data).__name__}")

        name = data.get("name")
        try:
            install: list[InstallOperation] = []
            for entry in data.get("install", []) or []:
                install.extend(InstallOperation.from_dict(entry))

            playbooks: dict[str, tuple[InstallOperation, ...]] = {}
            for stage, entries in (data.get("stages", {}) or {}).items():
                ops: list[InstallOperation] = []
                for entry in entries or []:
                    ops.extend(InstallOperation.from_dict(entry))
                playbooks[stage] = tuple(ops)

            return cls(
                name=name,
                version=str(data["version"]) if "version" in data else "",
                revision=data.get("revision", 0),
                style=data.get("style", "noop"),
                description=data.get("description", ""),
                home=data.get("home"),
                maintainers=tuple(_as_list(data.get("maintainer", data.get("maintainers")))),
                licenses=tuple(_as_list(data.get("license", data.get("licenses")))),
                depends=tuple(_as_list(data.get("depends"))),
                provides=tuple(_as_list(data.get("provides"))),
                source_dir=data.get("source_dir"),
                options=dict(data.get("options", {}) or {}),
                artifacts=tuple(FetchSpec.from_dict(a) for a in data.get("artifacts", []) or []),
                install=tuple(install),
                playbooks=playbooks,
                sides=tuple(SidePackage.from_dict(s) for s in data.get("sides", []) or []),
            )
        except ParseError as e:
            raise e.with_context(recipe=name)
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(f"Invalid recipe: {e}", recipe=name)
