import sys
from pathlib import Path

import click

import orchestrator
import repo_root
from coverage_config import CoverageConfig, load_config
from coverage_errors import CoverageError


def fail(e: CoverageError):
    click.echo(f"ERROR: {e}", err=True)
    if e.output:
        click.echo(e.output.rstrip("\n"), err=True)
    sys.exit(e.exit_code)


def config_for(workdir: Path | None, **overrides) -> CoverageConfig:
    if workdir is None:
        workdir = repo_root.find_repo_root_dir_Path()
    try:
        return load_config(workdir, overrides)
    except CoverageError as e:
        fail(e)
        raise  # unreachable; sys.exit() raised already


workdir_option = click.option(
    "--workdir",
    type=click.Path(exists=True, file_okay=False, dir_okay=True, path_type=Path),
    help="Cargo project to measure (default: nearest directory with a Cargo.toml).",
)


@click.group()
def cli():
    pass


@cli.command("run")
@workdir_option
@click.option("--no-open", is_flag=True, help="Don't open the report when done.")
@click.option(
    "--explicit-objects/--wildcard-objects",
    default=None,
    help="Pass each test binary to llvm-cov, or a shell wildcard for them (default: explicit).",
)
@click.option(
    "--timeout",
    "step_timeout_s",
    type=float,
    help="Seconds to wait for each external tool; 0 waits forever (default: 3600).",
)
@click.option(
    "--record",
    "record_path",
    type=click.Path(dir_okay=False, path_type=Path, resolve_path=True),
    help="Write a JSON record of the run's steps to this file.",
)
@click.argument("test_args", nargs=-1)
def run_coverage(workdir, no_open, explicit_objects, step_timeout_s, record_path, test_args):
    """Run the tests with coverage instrumentation and render an HTML report.

    TEST_ARGS are passed to `cargo test`; put them after `--`.
    """
    cfg = config_for(
        workdir,
        open_report=False if no_open else None,
        explicit_objects=explicit_objects,
        step_timeout_s=step_timeout_s,
        record_path=record_path,
        test_args=list(test_args) or None,
    )
    try:
        outcome = orchestrator.do_run_coverage(cfg)
    except CoverageError as e:
        fail(e)
    click.echo(orchestrator.report_summary(outcome))


@cli.command()
@workdir_option
def plan(workdir):
    """Show the steps a run would take, without running anything."""
    cfg = config_for(workdir)
    click.echo(f"Working directory: {cfg.workdir}")
    for line in orchestrator.do_plan(cfg):
        click.echo(line)


@cli.command()
@workdir_option
def clean(workdir):
    """Delete coverage fragments, the merged profile and the report."""
    cfg = config_for(workdir)
    removed = orchestrator.do_clean(cfg)
    for path in removed:
        click.echo(f"removed {path.relative_to(cfg.workdir).as_posix()}")
    if not removed:
        click.echo("Nothing to clean.")


if __name__ == "__main__":
    cli()
