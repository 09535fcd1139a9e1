"""
Built-in build styles.

- noop: runs no tools; the install-operation log does all the work
- configure: ./configure --prefix=/usr, make -jN, make DESTDIR=... install
- gnu-configure: configure plus --build/--host when the options give them
- make: plain make without a configure step

Options read by the configure family:
    configure-script  (default ./configure)
    configure-args    extra configure arguments
    make-command      (default make)
    make-args         extra make arguments for the build phase
    make-install-args extra make arguments for the install phase
    make-env          environment for make (mapping or KEY=VALUE list)
    make-use-env      export cc-flags/cxx-flags to make as CFLAGS/CXXFLAGS
    prefix            (default /usr)

The make and cc playbook actions build their command lines with the same
helpers, plus:
    cc-command        (default cc)
    cc-flags          flags placed before the inputs of `cc`
    cxx-flags         only used through make-use-env
"""

from typing import Optional

from .base import BuildStyle, PhaseContext, option_env, option_flag, option_list
from .runner import ToolResult


def make_command(ctx: PhaseContext) -> str:
    return str(ctx.option("make-command", "make"))


def make_env(ctx: PhaseContext) -> dict[str, str]:
    """Environment for make invocations."""
    env = option_env(ctx.option("make-env"))
    if option_flag(ctx.option("make-use-env"), default=False):
        for option, variable in (("cc-flags", "CFLAGS"), ("cxx-flags", "CXXFLAGS")):
            flags = option_list(ctx.option(option))
            if flags:
                env.setdefault(variable, " ".join(flags))
    return env


def make_build_argv(ctx: PhaseContext) -> list[str]:
    return [make_command(ctx), f"-j{ctx.jobs}", *option_list(ctx.option("make-args"))]


def make_install_argv(ctx: PhaseContext) -> list[str]:
    return [
        make_command(ctx),
        f"DESTDIR={ctx.destdir}",
        *option_list(ctx.option("make-install-args")),
        "install",
    ]


def cc_argv(ctx: PhaseContext, inputs: tuple[str, ...], output: str) -> list[str]:
    cc = str(ctx.option("cc-command", "cc"))
    return [cc, "-o", output, *option_list(ctx.option("cc-flags")), *inputs]


class NoOpStyle(BuildStyle):
    """Style that never invokes a tool."""

    name = "noop"
    phases = ("install",)
    post_install = ()

    def phase_install(self, ctx: PhaseContext) -> Optional[ToolResult]:
        return None


class MakeStyle(BuildStyle):
    """Plain make build."""

    name = "make"
    phases = ("prepare", "build", "install")
    post_install = ("strip",)

    def phase_prepare(self, ctx: PhaseContext) -> Optional[ToolResult]:
        return None

    def phase_build(self, ctx: PhaseContext) -> Optional[ToolResult]:
        return ctx.run(make_build_argv(ctx), env=make_env(ctx))

    def phase_install(self, ctx: PhaseContext) -> Optional[ToolResult]:
        return ctx.run(make_install_argv(ctx), env=make_env(ctx))


class ConfigureStyle(MakeStyle):
    """Autoconf-style configure script followed by make."""

    name = "configure"
    phases = ("prepare", "configure", "build", "install")
    post_install = ("strip",)

    def configure_args(self, ctx: PhaseContext) -> list[str]:
        prefix = str(ctx.option("prefix", "/usr"))
        return [f"--prefix={prefix}", *option_list(ctx.option("configure-args"))]

    def phase_configure(self, ctx: PhaseContext) -> Optional[ToolResult]:
        script = str(ctx.option("configure-script", "./configure"))
        return ctx.run([script, *self.configure_args(ctx)])


class GnuConfigureStyle(ConfigureStyle):
    """GNU configure with optional --build/--host triplets."""

    name = "gnu-configure"

    def configure_args(self, ctx: PhaseContext) -> list[str]:
        args = super().configure_args(ctx)
        for key in ("build", "host"):
            value = ctx.option(key)
            if value:
                args.append(f"--{key}={value}")
        return args
