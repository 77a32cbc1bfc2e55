"""Project manifest inspection for the builder stage.

The executable project and the library it depends on arrive as raw trees, so
the project's manifest has to reference the library through a ``path``
dependency. These helpers read that manifest and check every path dependency
against the builder context before the compiler runs, so a mismatched path
fails up front instead of picking up a stale copy from somewhere else.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Tuple

import structlog

try:  # pragma: no cover - tomllib is stdlib from 3.11 onwards
    import tomllib  # type: ignore
except ModuleNotFoundError:  # pragma: no cover - fallback for 3.10
    import tomli as tomllib  # type: ignore

from .errors import ManifestError

logger = structlog.get_logger(__name__)

DEPENDENCY_TABLES = ("dependencies", "dev-dependencies", "build-dependencies")


@dataclass(frozen=True)
class PathDependency:
    name: str
    table: str
    declared: str
    resolved: Path


def load_manifest(manifest_path: Path) -> Dict[str, Any]:
    if not manifest_path.is_file():
        raise ManifestError(f"Build manifest not found: {manifest_path}")
    try:
        return tomllib.loads(manifest_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ManifestError(f"Build manifest {manifest_path} is not valid TOML: {exc}") from exc


def _dependency_tables(manifest: Mapping[str, Any]) -> Iterator[Tuple[str, Mapping[str, Any]]]:
    for table in DEPENDENCY_TABLES:
        section = manifest.get(table)
        if isinstance(section, dict):
            yield table, section

    targets = manifest.get("target", {})
    if isinstance(targets, dict):
        for target_name, target_section in sorted(targets.items()):
            if not isinstance(target_section, dict):
                continue
            for table in DEPENDENCY_TABLES:
                section = target_section.get(table)
                if isinstance(section, dict):
                    yield f"target.{target_name}.{table}", section

    workspace = manifest.get("workspace", {})
    if isinstance(workspace, dict) and isinstance(workspace.get("dependencies"), dict):
        yield "workspace.dependencies", workspace["dependencies"]


def path_dependencies(manifest_path: Path) -> List[PathDependency]:
    """Return every dependency declared with a ``path`` key, resolved on disk."""

    manifest = load_manifest(manifest_path)
    project_dir = manifest_path.parent
    found: List[PathDependency] = []
    for table, section in _dependency_tables(manifest):
        for name, declaration in sorted(section.items()):
            if not isinstance(declaration, dict) or "path" not in declaration:
                continue
            declared = str(declaration["path"])
            resolved = (project_dir / declared).resolve()
            found.append(PathDependency(name=name, table=table, declared=declared, resolved=resolved))
    return found


def verify_path_dependencies(manifest_path: Path, context_root: Path) -> List[PathDependency]:
    """Check that each path dependency points at a manifest inside the context.

    Raises ManifestError listing every dependency that escapes the context or
    does not resolve to a project directory.
    """

    context_root = context_root.resolve()
    dependencies = path_dependencies(manifest_path)
    problems: List[str] = []
    for dependency in dependencies:
        try:
            dependency.resolved.relative_to(context_root)
        except ValueError:
            problems.append(
                f"{dependency.table}.{dependency.name}: path '{dependency.declared}' resolves outside "
                f"the build context ({dependency.resolved})"
            )
            continue
        if not (dependency.resolved / manifest_path.name).is_file():
            problems.append(
                f"{dependency.table}.{dependency.name}: path '{dependency.declared}' does not contain "
                f"a {manifest_path.name} ({dependency.resolved})"
            )

    if problems:
        logger.error("manifest_path_mismatch", manifest=str(manifest_path), problems=problems)
        raise ManifestError("Path dependency mismatch in " + str(manifest_path) + ":\n  " + "\n  ".join(problems))

    logger.debug(
        "manifest_verified",
        manifest=str(manifest_path),
        path_dependencies=[dependency.name for dependency in dependencies],
    )
    return dependencies


def require_path_dependencies(
    manifest_path: Path, dependencies: List[PathDependency], required: Mapping[str, Path]
) -> None:
    """Check that every supplied library tree is referenced through a path dependency.

    A library pulled by registry version would build against a published copy
    instead of the tree that was handed in.
    """

    resolved = {dependency.resolved for dependency in dependencies}
    missing = [
        f"{name} (expected a path dependency on {location})"
        for name, location in sorted(required.items())
        if location.resolve() not in resolved
    ]
    if missing:
        logger.error("manifest_missing_path_dependency", manifest=str(manifest_path), missing=missing)
        raise ManifestError(
            f"{manifest_path} does not depend by path on the supplied source trees:\n  " + "\n  ".join(missing)
        )


def default_artifact(manifest_path: Path) -> str:
    """Derive the release binary location from the single [[bin]] target or the package name."""

    manifest = load_manifest(manifest_path)
    binaries = manifest.get("bin")
    if isinstance(binaries, list) and len(binaries) == 1 and isinstance(binaries[0], dict):
        bin_name = binaries[0].get("name")
        if bin_name:
            return f"target/release/{bin_name}"
    package = manifest.get("package", {})
    name = package.get("name") if isinstance(package, dict) else None
    if not name:
        raise ManifestError(
            f"Cannot derive the artifact path: {manifest_path} has no [package] name; set builder.artifact"
        )
    return f"target/release/{name}"
