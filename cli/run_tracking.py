import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from subprocess import CompletedProcess

import run_record
from coverage_errors import CoverageError, StepWarning


@dataclass
class Interval:
    start_ns: int
    end_ns: int

    def duration_ns(self) -> int:
        """Duration in nanoseconds"""
        return self.end_ns - self.start_ns

    def duration_ms_int(self) -> int:
        """Duration in milliseconds (rounded down)"""
        return self.duration_ns() // 1_000_000


class StepTracker:
    def __init__(self, workdir: Path, report_index: Path):
        self._workdir = workdir
        self._report_index = report_index
        self._current_step: run_record.StepRecord | None = None
        self._results: list[run_record.StepRecord] = []
        self._warnings: list[StepWarning] = []
        self._failure_kind: str | None = None
        self._start_unix_timestamp = int(time.time())
        self._start_time_ns = time.monotonic_ns()

    @contextmanager
    def tracking(self, step_name: str):
        """Context manager to track timing and outcome for a named step.

        Any exception escaping the block marks the step (and the run) failed, then
        propagates. The failure kind is the `CoverageError` kind, or the exception
        class name for anything else."""
        start_time = time.monotonic_ns()
        self._current_step = run_record.StepRecord(
            name=step_name,
            start_unix_timestamp=int(time.time()),
            elapsed_ms=0,  # Will be set after the context manager exits
            exit_code=None,
            outcome="ok",
            message=None,
        )

        try:
            yield self
        except CoverageError as e:
            self._current_step.outcome = "failed"
            self._current_step.message = e.message
            if e.returncode is not None:
                self._current_step.exit_code = e.returncode
            self._failure_kind = e.kind
            raise
        except BaseException as e:
            # Anything else is a crash (or an interrupt); the run still failed.
            self._current_step.outcome = "failed"
            self._current_step.message = f"{type(e).__name__}: {e}"
            self._failure_kind = type(e).__name__
            raise
        finally:
            end_time = time.monotonic_ns()
            interval = Interval(start_time, end_time)
            self._current_step.elapsed_ms = interval.duration_ms_int()
            self._results.append(self._current_step)
            self._current_step = None

    def update_sub(self, cp: CompletedProcess):
        """Update the current step with a subprocess result"""
        if self._current_step is None:
            raise RuntimeError("No current step to update")
        self._current_step.exit_code = cp.returncode

    def warn(self, warning: StepWarning):
        if self._current_step is None:
            raise RuntimeError("No current step to warn about")
        self._current_step.outcome = "warning"
        self._current_step.message = warning.message
        self._warnings.append(warning)

    def skip(self, reason: str):
        if self._current_step is None:
            raise RuntimeError("No current step to skip")
        self._current_step.outcome = "skipped"
        self._current_step.message = reason

    @property
    def warnings(self) -> list[StepWarning]:
        return list(self._warnings)

    def finalize(self) -> run_record.RunRecord:
        if self._current_step is not None:
            raise RuntimeError("Current step is not finalized")

        return run_record.RunRecord(
            workdir=self._workdir.as_posix(),
            report_index=self._report_index.as_posix(),
            start_unix_timestamp=self._start_unix_timestamp,
            elapsed_ms=Interval(self._start_time_ns, time.monotonic_ns()).duration_ms_int(),
            succeeded=self._failure_kind is None,
            failure_kind=self._failure_kind,
            steps=list(self._results),
            warnings=list(self._warnings),
        )
