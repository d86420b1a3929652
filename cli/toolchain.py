import shutil
import subprocess
from pathlib import Path
from typing import Callable, TypeAlias

import hermetic
from coverage_config import CoverageConfig
from coverage_errors import ToolchainNotFound

Runner: TypeAlias = Callable[..., subprocess.CompletedProcess]


def rust_sysroot(cfg: CoverageConfig, runner: Runner = hermetic.run) -> Path | None:
    cmd = [
        "rustc",
        *hermetic.implicit_cargo_toolchain_arg([], cfg.cargo_toolchain),
        "--print",
        "sysroot",
    ]
    try:
        cp = runner(cmd, check=False, cwd=cfg.workdir, capture_output=True)
    except OSError:
        return None
    if cp.returncode != 0:
        return None
    sysroot = cp.stdout.decode("utf-8").strip()
    return Path(sysroot) if sysroot else None


def llvm_tools_dir_in_sysroot(sysroot: Path) -> Path | None:
    # Rust code emits profile data tied to its own version of LLVM, so the
    # `llvm-tools` component of the same toolchain is the best match when
    # it is installed. It lives at lib/rustlib/<host triple>/bin.
    candidates = sorted(
        p.parent
        for p in sysroot.glob("lib/rustlib/*/bin/llvm-profdata")
        if (p.parent / "llvm-cov").is_file()
    )
    if not candidates:
        return None
    return candidates[0]


def resolve_llvm_tools(cfg: CoverageConfig, runner: Runner = hermetic.run) -> tuple[str, str]:
    """Paths for (llvm-profdata, llvm-cov).

    Explicit configuration wins, then the Rust toolchain's llvm-tools
    component, then whatever is on PATH."""
    if cfg.llvm_profdata and cfg.llvm_cov:
        return cfg.llvm_profdata, cfg.llvm_cov

    tools_dir = None
    sysroot = rust_sysroot(cfg, runner)
    if sysroot is not None:
        tools_dir = llvm_tools_dir_in_sysroot(sysroot)

    def locate(configured: str | None, name: str) -> str:
        if configured:
            return configured
        if tools_dir is not None:
            return (tools_dir / name).as_posix()
        found = shutil.which(name)
        if found is None:
            raise ToolchainNotFound(
                "resolve-toolchain",
                f"Could not find `{name}`; install it with "
                + "`rustup component add llvm-tools-preview`, put it on PATH, "
                + "or set COVRUN_LLVM_PROFDATA / COVRUN_LLVM_COV.",
            )
        return found

    return locate(cfg.llvm_profdata, "llvm-profdata"), locate(cfg.llvm_cov, "llvm-cov")
