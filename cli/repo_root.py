import os
from pathlib import Path


def find_repo_root_dir_Path(start: Path | None = None) -> Path:
    """The nearest directory at or above `start` (default: cwd) holding a Cargo.toml.

    `COVRUN_ROOT` overrides the search. If no Cargo.toml is found, `start` itself
    is returned, so that tool errors (rather than ours) explain what's missing.
    """
    override = os.environ.get("COVRUN_ROOT")
    if override:
        return Path(override).resolve()

    start = (start or Path.cwd()).resolve()
    for candidate in [start, *start.parents]:
        if (candidate / "Cargo.toml").is_file():
            return candidate
    return start
