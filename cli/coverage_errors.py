from dataclasses import dataclass
from typing import Literal, TypeAlias

from dataclasses_json import dataclass_json

from constants import EXIT_CODES


class CoverageError(Exception):
    """A fatal failure of one step of a coverage run.

    The first one raised halts the run. `step` names the step that failed;
    `returncode` and `output` carry what the external tool reported, when
    there was a tool involved.
    """

    def __init__(
        self,
        step: str,
        message: str,
        returncode: int | None = None,
        output: str | None = None,
    ):
        super().__init__(message)
        self.step = step
        self.message = message
        self.returncode = returncode
        self.output = output

    @property
    def kind(self) -> str:
        return type(self).__name__

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.kind, 1)

    def __str__(self) -> str:
        if self.returncode is None:
            return f"[{self.step}] {self.message}"
        return f"[{self.step}] {self.message} (exit code {self.returncode})"


class ConfigError(CoverageError):
    pass


class ToolchainNotFound(CoverageError):
    pass


class StaleArtifactsRemain(CoverageError):
    pass


class TestRunFailed(CoverageError):
    __test__ = False  # not a pytest test class, despite the name


class NoFragmentsProduced(CoverageError):
    pass


class MergeFailed(CoverageError):
    pass


class NoBinariesFound(CoverageError):
    pass


class ReportGenerationFailed(CoverageError):
    pass


WarningKind: TypeAlias = Literal["CleanupWarning", "ViewerLaunchWarning"]


@dataclass_json
@dataclass
class StepWarning:
    """Non-fatal problems; reported, but they don't change the run's outcome."""

    kind: WarningKind
    step: str
    message: str
