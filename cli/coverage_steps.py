"""
The coverage run, as an ordered list of typed steps.

Each `Step` declares which artifacts (see `constants.ARTIFACT_*`) it consumes,
produces and deletes, and which `CoverageError` subclass it raises when it
fails. Steps with no failure kind are best-effort: their problems become
`StepWarning`s instead.

Steps communicate through a `StepContext`, which also carries the subprocess
runner and viewer launcher, so tests can substitute both.
"""

import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, TypeAlias

import click

import constants
import hermetic
import toolchain
from coverage_config import CoverageConfig
from coverage_errors import (
    CoverageError,
    MergeFailed,
    NoBinariesFound,
    NoFragmentsProduced,
    ReportGenerationFailed,
    StaleArtifactsRemain,
    StepWarning,
    TestRunFailed,
    ToolchainNotFound,
)
from run_tracking import StepTracker

Runner: TypeAlias = Callable[..., subprocess.CompletedProcess]
Launcher: TypeAlias = Callable[[str], int]


@dataclass
class StepContext:
    config: CoverageConfig
    runner: Runner
    launcher: Launcher
    tracker: StepTracker
    llvm_profdata: str | None = None
    llvm_cov: str | None = None
    fragments: list[Path] = field(default_factory=list)
    binaries: list[Path] = field(default_factory=list)


@dataclass(frozen=True)
class Step:
    name: str
    action: Callable[[StepContext], None]
    consumes: tuple[str, ...] = ()
    produces: tuple[str, ...] = ()
    deletes: tuple[str, ...] = ()
    failure: type[CoverageError] | None = None


def _decode(output: bytes | str | None) -> str | None:
    if output is None:
        return None
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


def run_tool(
    ctx: StepContext,
    step: str,
    failure: type[CoverageError],
    cmd: hermetic.RunSpec,
    capture_output: bool = True,
    **kwargs,
) -> subprocess.CompletedProcess:
    """Run one external tool for `step`, translating any way it can go wrong into `failure`."""
    cfg = ctx.config
    try:
        cp = ctx.runner(
            cmd,
            check=False,
            cwd=cfg.workdir,
            timeout_s=cfg.step_timeout_s,
            capture_output=capture_output,
            **kwargs,
        )
    except subprocess.TimeoutExpired as e:
        raise failure(
            step,
            f"`{hermetic.shellize(cmd)}` did not finish within {cfg.step_timeout_s} s",
            output=_decode(e.stderr),
        ) from e
    except OSError as e:
        # Missing, not executable, or not a valid executable at all.
        raise failure(step, f"Could not run `{hermetic.shellize(cmd)}`: {e}") from e

    ctx.tracker.update_sub(cp)
    stderr = _decode(cp.stderr) if capture_output else None
    if cp.returncode != 0:
        raise failure(
            step, f"`{hermetic.shellize(cmd)}` failed", returncode=cp.returncode, output=stderr
        )
    if stderr:
        # llvm-cov in particular reports mismatched profile data this way.
        click.echo(stderr.rstrip("\n"), err=True)
    return cp


def resolve_toolchain(ctx: StepContext):
    ctx.llvm_profdata, ctx.llvm_cov = toolchain.resolve_llvm_tools(ctx.config, ctx.runner)


def resolved_tool(path: str | None, tool: str, step: str) -> str:
    if path is None:
        raise ToolchainNotFound(step, f"{tool} was not located; run resolve-toolchain first")
    return path


def remove_stale_artifacts(ctx: StepContext):
    cfg = ctx.config
    for path in [*cfg.fragment_paths(), cfg.merged_profile_path()]:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StaleArtifactsRemain(
                "remove-stale", f"Could not delete stale {path.name}: {e}"
            ) from e


def run_tests(ctx: StepContext):
    cfg = ctx.config
    cmd = hermetic.cargo_command(cfg.cargo, ["test", *cfg.test_args], cfg.cargo_toolchain)
    env_ext = {
        **hermetic.cargo_encoded_rustflags_env_ext(cfg.instrument_flags),
        # Without this, each test binary drops default.profraw into its own
        # package directory, and they overwrite each other.
        "LLVM_PROFILE_FILE": cfg.llvm_profile_file().as_posix(),
    }
    # Test output goes straight to the terminal, as it would without us.
    run_tool(ctx, "run-tests", TestRunFailed, cmd, capture_output=False, env_ext=env_ext)


def collect_fragments(ctx: StepContext):
    cfg = ctx.config
    ctx.fragments = cfg.fragment_paths()
    if not ctx.fragments:
        raise NoFragmentsProduced(
            "collect-fragments",
            f"The test run left no {cfg.fragment_glob} files in {cfg.workdir}; "
            + f"instrumentation ({' '.join(cfg.instrument_flags)}) did not take effect.",
        )


def merge_fragments(ctx: StepContext):
    cfg = ctx.config
    llvm_profdata = resolved_tool(ctx.llvm_profdata, "llvm-profdata", "merge-profile")
    profile = cfg.merged_profile_path()
    cmd = [
        llvm_profdata,
        "merge",
        "-sparse",
        *[p.as_posix() for p in ctx.fragments],
        "-o",
        profile.as_posix(),
    ]
    run_tool(ctx, "merge-profile", MergeFailed, cmd)
    if not profile.is_file():
        raise MergeFailed("merge-profile", f"llvm-profdata did not write {profile.name}")


def discover_test_binaries(cfg: CoverageConfig) -> list[Path]:
    return sorted(
        p
        for p in cfg.build_output_path().glob(cfg.binary_glob)
        if p.is_file()
        and os.access(p, os.X_OK)
        and p.suffix not in constants.NON_BINARY_SUFFIXES
    )


def find_binaries(ctx: StepContext):
    cfg = ctx.config
    ctx.binaries = discover_test_binaries(cfg)
    if not ctx.binaries:
        raise NoBinariesFound(
            "find-binaries",
            "No executable test binaries match "
            + cfg.artifact_pattern(constants.ARTIFACT_TEST_BINARIES),
        )


def report_command(cfg: CoverageConfig, llvm_cov: str, binaries: list[Path]) -> list[str] | str:
    """The `llvm-cov show` invocation, as an argv list, or as a shell command line
    when binaries are named by an in-place wildcard rather than listed."""
    options = []
    if cfg.demangler:
        options.append(f"-Xdemangler={cfg.demangler}")
    options += [
        f"-output-dir={cfg.report_dir_path().as_posix()}",
        f"-instr-profile={cfg.merged_profile_path().as_posix()}",
        "-show-line-counts-or-regions",
        "-show-instantiations",
        "-format=html",
        *[f"-ignore-filename-regex={regex}" for regex in cfg.ignore_filename_regexes],
    ]
    source_root = cfg.source_root_path().as_posix()

    if cfg.explicit_objects:
        # llvm-cov takes the first positional argument as the covered binary,
        # any others must be given with -object, and later positionals are sources.
        first, *rest = binaries
        objects = [first.as_posix()]
        for binary in rest:
            objects += ["-object", binary.as_posix()]
        return [llvm_cov, "show", *objects, *options, source_root]

    wildcard = shlex.quote(cfg.build_output_path().as_posix()) + "/" + cfg.binary_glob
    return " ".join([
        hermetic.shellize([llvm_cov, "show"]),
        wildcard,
        hermetic.shellize([*options, source_root]),
    ])


def generate_report(ctx: StepContext):
    cfg = ctx.config
    llvm_cov = resolved_tool(ctx.llvm_cov, "llvm-cov", "generate-report")
    cmd = report_command(cfg, llvm_cov, ctx.binaries)
    if isinstance(cmd, str):
        # The shell expands the glob without our executable filter, so count what it will see.
        expanded = list(cfg.build_output_path().glob(cfg.binary_glob))
        if len(expanded) > 1:
            click.echo(
                f"WARNING: {cfg.binary_glob} matches {len(expanded)} files; llvm-cov will "
                + "treat all but the first as source filters. Use explicit objects instead.",
                err=True,
            )
    run_tool(ctx, "generate-report", ReportGenerationFailed, cmd, shell=isinstance(cmd, str))
    if not cfg.report_index_path().is_file():
        raise ReportGenerationFailed(
            "generate-report",
            f"llvm-cov did not produce {cfg.artifact_pattern(constants.ARTIFACT_REPORT)}",
        )


def remove_intermediates(ctx: StepContext):
    cfg = ctx.config
    problems = []
    for path in [*cfg.fragment_paths(), cfg.merged_profile_path()]:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            problems.append(f"{path.name} ({e.strerror or e})")
    if problems:
        ctx.tracker.warn(
            StepWarning(
                kind="CleanupWarning",
                step="remove-intermediates",
                message="Could not delete " + ", ".join(problems),
            )
        )


def open_report(ctx: StepContext):
    cfg = ctx.config
    if not cfg.open_report:
        ctx.tracker.skip("disabled")
        return
    if hermetic.running_in_ci():
        ctx.tracker.skip("running in CI")
        return

    index = cfg.report_index_path()
    try:
        returncode = ctx.launcher(str(index))
    except OSError as e:
        message = f"Could not open {index}: {e}"
    else:
        if returncode == 0:
            return
        message = f"Viewer for {index} exited with code {returncode}"
    ctx.tracker.warn(StepWarning(kind="ViewerLaunchWarning", step="open-report", message=message))


FRAGMENTS = constants.ARTIFACT_FRAGMENTS
MERGED_PROFILE = constants.ARTIFACT_MERGED_PROFILE
TEST_BINARIES = constants.ARTIFACT_TEST_BINARIES
REPORT = constants.ARTIFACT_REPORT

# fmt: off
STEPS: list[Step] = [
    Step("resolve-toolchain", resolve_toolchain, failure=ToolchainNotFound),
    Step("remove-stale", remove_stale_artifacts,
         deletes=(FRAGMENTS, MERGED_PROFILE), failure=StaleArtifactsRemain),
    Step("run-tests", run_tests,
         produces=(FRAGMENTS, TEST_BINARIES), failure=TestRunFailed),
    Step("collect-fragments", collect_fragments,
         consumes=(FRAGMENTS,), failure=NoFragmentsProduced),
    Step("merge-profile", merge_fragments,
         consumes=(FRAGMENTS,), produces=(MERGED_PROFILE,), failure=MergeFailed),
    Step("find-binaries", find_binaries,
         consumes=(TEST_BINARIES,), failure=NoBinariesFound),
    Step("generate-report", generate_report,
         consumes=(MERGED_PROFILE, TEST_BINARIES), produces=(REPORT,),
         failure=ReportGenerationFailed),
    Step("remove-intermediates", remove_intermediates,
         deletes=(FRAGMENTS, MERGED_PROFILE)),
    Step("open-report", open_report, consumes=(REPORT,)),
]
# fmt: on
