import shutil
from dataclasses import dataclass
from pathlib import Path

import click

import hermetic
from coverage_config import CoverageConfig
from coverage_errors import StepWarning
from coverage_steps import STEPS, Launcher, Runner, Step, StepContext
from run_record import RunRecord
from run_tracking import StepTracker


@dataclass
class RunOutcome:
    report_index: Path
    warnings: list[StepWarning]
    record: RunRecord


def do_run_coverage(
    cfg: CoverageConfig,
    runner: Runner = hermetic.run,
    launcher: Launcher = click.launch,
    steps: list[Step] = STEPS,
) -> RunOutcome:
    """Run `steps` in order, stopping at the first one that raises.

    Fatal failures propagate as `CoverageError` subclasses, leaving whatever
    artifacts exist at that point in place for inspection. If the config has a
    `record_path`, the run record is written there either way.
    """
    tracker = StepTracker(cfg.workdir, cfg.report_index_path())
    ctx = StepContext(config=cfg, runner=runner, launcher=launcher, tracker=tracker)
    try:
        for step in steps:
            with tracker.tracking(step.name):
                step.action(ctx)
    finally:
        record = tracker.finalize()
        if cfg.record_path is not None:
            cfg.record_path.parent.mkdir(parents=True, exist_ok=True)
            cfg.record_path.write_text(record.to_json(indent=2), encoding="utf-8")

    for warning in record.warnings:
        click.echo(f"WARNING: [{warning.step}] {warning.message}", err=True)
    return RunOutcome(
        report_index=cfg.report_index_path(), warnings=record.warnings, record=record
    )


def do_plan(cfg: CoverageConfig, steps: list[Step] = STEPS) -> list[str]:
    """Human-readable description of what a run would do, one line per step."""

    def patterns(artifacts: tuple[str, ...]) -> str:
        return ", ".join(cfg.artifact_pattern(a) for a in artifacts)

    lines = []
    for n, step in enumerate(steps, start=1):
        parts = [f"{n}. {step.name}"]
        if step.consumes:
            parts.append(f"reads {patterns(step.consumes)}")
        if step.produces:
            parts.append(f"writes {patterns(step.produces)}")
        if step.deletes:
            parts.append(f"deletes {patterns(step.deletes)}")
        if step.failure is not None:
            parts.append(f"fails with {step.failure.__name__}")
        else:
            parts.append("best-effort")
        lines.append("; ".join(parts))
    return lines


def do_clean(cfg: CoverageConfig) -> list[Path]:
    """Delete fragments, the merged profile and the report; returns what was removed.

    The report directory itself is kept (only its contents are removed), so
    that browsers and editors pointed at it don't lose their place. Anything
    that can't be deleted is reported as a `CleanupWarning` and skipped."""
    removed = []
    problems = []

    def remove(path: Path, tree: bool = False):
        try:
            if tree and path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as e:
            problems.append(f"{path.name} ({e.strerror or e})")
        else:
            removed.append(path)

    for path in [*cfg.fragment_paths(), cfg.merged_profile_path()]:
        if path.exists():
            remove(path)

    report_dir = cfg.report_dir_path()
    if report_dir.is_dir():
        for item in report_dir.iterdir():
            remove(item, tree=True)

    if problems:
        warning = StepWarning(
            kind="CleanupWarning", step="clean", message="Could not delete " + ", ".join(problems)
        )
        click.echo(f"WARNING: [{warning.step}] {warning.message}", err=True)
    return removed


def report_summary(outcome: RunOutcome) -> str:
    steps = ", ".join(f"{s.name} {s.elapsed_ms} ms" for s in outcome.record.steps)
    return f"Coverage report: {outcome.report_index} ({steps})"

