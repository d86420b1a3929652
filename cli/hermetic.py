import subprocess
import shlex
import os
from pathlib import Path
from typing import Sequence, TypeAlias

import click


def mk_env_for(env_ext=None) -> dict[str, str]:
    env = os.environ.copy()

    if env_ext is not None:
        env = {**env, **env_ext}

    return env


RunSpec: TypeAlias = str | Sequence[str | bytes | os.PathLike[str] | os.PathLike[bytes]]


def shellize(cmd: RunSpec) -> str:
    if isinstance(cmd, str):
        return cmd
    else:
        return " ".join(shlex.quote(os.fsdecode(x)) for x in cmd)


def show_cmds() -> bool:
    return os.environ.get("COVRUN_SHOW_CMDS", "0") != "0"


def common_helper_for_run(cmd: RunSpec, cmd_cwd: Path | str | None = None):
    def print_cmd_only():
        click.echo(f": {shellize(cmd)}")

    def print_cmd_within(cdpath: Path):
        click.echo(f": ( cd {cdpath.as_posix()} ; {shellize(cmd)} )")

    if not show_cmds():
        return

    if os.environ.get("PWD") is None or cmd_cwd is None:
        print_cmd_only()
        return

    invoked_from = Path(os.environ["PWD"]).resolve()
    cmd_cwd = Path(cmd_cwd).resolve()
    if cmd_cwd == invoked_from:
        print_cmd_only()
    else:
        try:
            cdpath = cmd_cwd.relative_to(invoked_from)
            print_cmd_within(cdpath)
        except ValueError:
            print_cmd_within(cmd_cwd)


def run(
    cmd: RunSpec, check=False, env_ext=None, timeout_s: float | None = None, **kwargs
) -> subprocess.CompletedProcess:
    """Run `cmd`, waiting at most `timeout_s` seconds (None: forever).

    On timeout the child is killed and `subprocess.TimeoutExpired` propagates.
    """
    common_helper_for_run(cmd, kwargs.get("cwd", None))

    return subprocess.run(
        cmd,
        check=check,
        env=mk_env_for(env_ext),
        timeout=timeout_s,
        **kwargs,
    )


def running_in_ci() -> bool:
    return os.environ.get("CI") in ("true", "1")


def implicit_cargo_toolchain_arg(args: Sequence[str], toolchain_spec: str | None) -> list[str]:
    if args and args[0].startswith("+"):
        # If the first argument is a toolchain specifier, we don't need
        # to add our own.
        return []

    if not toolchain_spec:
        # Without an explicit toolchain, rustup picks the directory's
        # rust-toolchain.toml (if any) or the default toolchain.
        return []

    return ["+" + toolchain_spec.removeprefix("+")]


def cargo_command(cargo: str, args: Sequence[str], toolchain_spec: str | None) -> list[str]:
    return [cargo, *implicit_cargo_toolchain_arg(args, toolchain_spec), *args]


def cargo_encoded_rustflags_env_ext(extra_flags: Sequence[str]) -> dict[str, str]:
    # Per https://doc.rust-lang.org/cargo/reference/config.html#buildrustflags
    # we cannot reliably use --config because RUSTFLAGS takes precedence and
    # settings are not merged. So we look up the value of RUSTFLAGS, if any,
    # and add it to CARGO_ENCODED_RUSTFLAGS, which takes precedence over
    # RUSTFLAGS itself. If the caller already set CARGO_ENCODED_RUSTFLAGS,
    # that is what cargo would have used, so we extend it instead.
    encoded = os.environ.get("CARGO_ENCODED_RUSTFLAGS")
    if encoded is not None:
        rustflags_parts = [part for part in encoded.split("\x1f") if part]
    else:
        rustflags_parts = os.environ.get("RUSTFLAGS", "").split()
    rustflags_parts.extend(extra_flags)
    return {
        "CARGO_ENCODED_RUSTFLAGS": "\x1f".join(rustflags_parts),
    }
