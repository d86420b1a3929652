import tomllib
from pathlib import Path

from constants import CARGO_METADATA_KEY
from coverage_errors import ConfigError


def load_cargo_toml(workspace_root: Path) -> dict:
    cargo_toml_path = workspace_root / "Cargo.toml"
    if not cargo_toml_path.is_file():
        return {}
    with cargo_toml_path.open("rb") as f:
        try:
            return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError("config", f"Could not parse {cargo_toml_path}: {e}") from e


def packages_for_cargo_workspace(
    workspace_root: Path,
) -> list[str]:
    ct = load_cargo_toml(workspace_root)

    if "workspace" not in ct:
        if "package" not in ct:
            return []
        return [ct["package"]["name"]]

    package_names = []
    if "package" in ct:
        package_names.append(ct["package"]["name"])

    member_names = ct["workspace"].get("members", [])
    for member in member_names:
        # Members may be globs, like "crates/*".
        for member_dir in sorted(workspace_root.glob(member)):
            member_ct = load_cargo_toml(member_dir)
            if "package" in member_ct:
                package_names.append(member_ct["package"]["name"])
    return package_names


def root_package_name(workspace_root: Path) -> str | None:
    """Name of the package defined by the root Cargo.toml itself, if any.

    Virtual workspaces have a `[workspace]` table but no `[package]`."""
    ct = load_cargo_toml(workspace_root)
    if "package" not in ct:
        return None
    return ct["package"].get("name")


def coverage_metadata(workspace_root: Path) -> dict:
    """The `[package.metadata.run-coverage]` table, or the `[workspace.metadata...]`
    one for virtual workspaces. Empty if neither exists."""
    ct = load_cargo_toml(workspace_root)
    for table in ("package", "workspace"):
        metadata = ct.get(table, {}).get("metadata", {})
        if CARGO_METADATA_KEY in metadata:
            settings = metadata[CARGO_METADATA_KEY]
            if not isinstance(settings, dict):
                raise ConfigError(
                    "config",
                    f"[{table}.metadata.{CARGO_METADATA_KEY}] must be a table, not {settings!r}",
                )
            return settings
    return {}
