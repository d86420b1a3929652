from dataclasses import dataclass
from typing import Literal, TypeAlias

from dataclasses_json import dataclass_json, DataClassJsonMixin

from coverage_errors import StepWarning

StepOutcome: TypeAlias = Literal["ok", "failed", "warning", "skipped"]


@dataclass_json
@dataclass
class StepRecord:
    name: str
    start_unix_timestamp: int
    elapsed_ms: int
    exit_code: int | None  # of the step's external tool, if it ran one
    outcome: StepOutcome
    message: str | None


@dataclass
class RunRecord(DataClassJsonMixin):  # mixin for better type inference
    workdir: str
    report_index: str
    start_unix_timestamp: int
    elapsed_ms: int
    succeeded: bool
    failure_kind: str | None
    steps: list[StepRecord]
    warnings: list[StepWarning]
