import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path

import cargo_workspace_helpers
import constants
from coverage_errors import ConfigError


@dataclass
class CoverageConfig:
    """Everything a coverage run needs to know, made explicit.

    Relative paths (build output dir, report dir, source root) are relative to
    `workdir`. `llvm_profdata`/`llvm_cov` may be left as None, in which case
    they are located at the start of the run (see `toolchain`).
    """

    workdir: Path
    cargo: str = "cargo"
    cargo_toolchain: str | None = None
    llvm_profdata: str | None = None
    llvm_cov: str | None = None
    build_output_dir: str = constants.BUILD_OUTPUT_DIR
    report_dir: str = constants.REPORT_DIR
    profile_name: str = ""
    fragment_glob: str = constants.FRAGMENT_GLOB
    binary_glob: str = constants.BINARY_GLOB
    explicit_objects: bool = True
    instrument_flags: list[str] = field(
        default_factory=lambda: list(constants.INSTRUMENT_COVERAGE_FLAGS)
    )
    demangler: str | None = constants.DEMANGLER
    ignore_filename_regexes: list[str] = field(
        default_factory=lambda: list(constants.IGNORE_FILENAME_REGEXES)
    )
    source_root: str = constants.SOURCE_ROOT
    test_args: list[str] = field(default_factory=list)
    step_timeout_s: float | None = constants.STEP_TIMEOUT_S
    open_report: bool = True
    record_path: Path | None = None

    def __post_init__(self):
        self.workdir = Path(self.workdir)
        if not self.profile_name:
            self.profile_name = default_profile_stem(self.workdir) + constants.PROFDATA_SUFFIX
        if self.step_timeout_s is not None and self.step_timeout_s <= 0:
            self.step_timeout_s = None

    def merged_profile_path(self) -> Path:
        return self.workdir / self.profile_name

    def fragment_stem(self) -> str:
        return Path(self.profile_name).stem

    def llvm_profile_file(self) -> Path:
        return self.workdir / constants.FRAGMENT_NAME_TEMPLATE.format(stem=self.fragment_stem())

    def fragment_paths(self) -> list[Path]:
        return sorted(p for p in self.workdir.glob(self.fragment_glob) if p.is_file())

    def build_output_path(self) -> Path:
        return self.workdir / self.build_output_dir

    def report_dir_path(self) -> Path:
        return self.workdir / self.report_dir

    def report_index_path(self) -> Path:
        return self.report_dir_path() / constants.REPORT_ENTRY_PAGE

    def source_root_path(self) -> Path:
        return self.workdir / self.source_root

    def artifact_pattern(self, artifact: str) -> str:
        """Workdir-relative path or glob for one of the `constants.ARTIFACT_*` names."""
        match artifact:
            case constants.ARTIFACT_FRAGMENTS:
                return self.fragment_glob
            case constants.ARTIFACT_MERGED_PROFILE:
                return self.profile_name
            case constants.ARTIFACT_TEST_BINARIES:
                return f"{self.build_output_dir}/{self.binary_glob}"
            case constants.ARTIFACT_REPORT:
                return f"{self.report_dir}/{constants.REPORT_ENTRY_PAGE}"
            case _:
                raise ValueError(f"Unknown artifact: {artifact}")


def default_profile_stem(workdir: Path) -> str:
    name = cargo_workspace_helpers.root_package_name(workdir)
    if name:
        return name
    packages = cargo_workspace_helpers.packages_for_cargo_workspace(workdir)
    if len(packages) == 1:
        return packages[0]
    return workdir.resolve().name or "coverage"


# Settable from Cargo.toml metadata, keyed by kebab-case name.
_CARGO_TOML_FIELDS = {
    f.name.replace("_", "-"): f
    for f in dataclasses.fields(CoverageConfig)
    if f.name not in ("workdir", "record_path")
}

_ENV_VARS = {
    "COVRUN_CARGO": "cargo",
    "COVRUN_CARGO_TOOLCHAIN_SPEC": "cargo_toolchain",
    "COVRUN_LLVM_PROFDATA": "llvm_profdata",
    "COVRUN_LLVM_COV": "llvm_cov",
    "COVRUN_STEP_TIMEOUT_S": "step_timeout_s",
}


def _value_matches(value, ftype) -> bool:
    if ftype is bool:
        return isinstance(value, bool)
    if ftype == list[str]:
        return isinstance(value, list) and all(isinstance(x, str) for x in value)
    if ftype == float | None:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return isinstance(value, str)


def settings_from_cargo_toml(workdir: Path) -> dict:
    settings = {}
    for key, value in cargo_workspace_helpers.coverage_metadata(workdir).items():
        if key not in _CARGO_TOML_FIELDS:
            raise ConfigError(
                "config",
                f"Unknown key '{key}' in [metadata.{constants.CARGO_METADATA_KEY}]; "
                + "expected one of "
                + ", ".join(sorted(_CARGO_TOML_FIELDS)),
            )
        f = _CARGO_TOML_FIELDS[key]
        if not _value_matches(value, f.type):
            raise ConfigError("config", f"Bad value for '{key}': {value!r}")
        settings[f.name] = value
    return settings


def settings_from_env() -> dict:
    settings: dict = {}
    for var, name in _ENV_VARS.items():
        value = os.environ.get(var)
        if value is None:
            continue
        if name == "step_timeout_s":
            try:
                settings[name] = float(value)
            except ValueError:
                raise ConfigError(
                    "config", f"{var} must be a number of seconds, not {value!r}"
                ) from None
        else:
            settings[name] = value
    return settings


def load_config(workdir: Path, overrides: dict | None = None) -> CoverageConfig:
    """Defaults, then Cargo.toml metadata, then COVRUN_* env vars, then `overrides`.

    `overrides` entries whose value is None are ignored, so command-line
    options that weren't given can be passed through as-is.
    """
    workdir = Path(workdir).resolve()
    if not workdir.is_dir():
        raise ConfigError("config", f"Working directory not found: {workdir}")

    settings = settings_from_cargo_toml(workdir)
    settings.update(settings_from_env())
    settings.update({k: v for k, v in (overrides or {}).items() if v is not None})
    return CoverageConfig(workdir=workdir, **settings)
