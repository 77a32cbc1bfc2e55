"""Runtime image assembly, inspection and invocation.

An image is a directory holding ``rootfs/`` (the minimal base plus the one
transferred artifact), ``config.json`` (entrypoint, default arguments,
environment) and ``manifest.json`` (artifact digest and file listing).
"""

from __future__ import annotations

import os
import shutil
import subprocess
import tarfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog

from .errors import ArtifactNotFoundError, ImageError
from .models import DEFAULT_PATH, ImageConfig, PackageConfig
from .utils import dump_json, ensure_directory, load_json, remove_path, sha256_file

logger = structlog.get_logger(__name__)

CONFIG_FILE = "config.json"
MANIFEST_FILE = "manifest.json"
ROOTFS_DIR = "rootfs"


@dataclass
class RuntimeImage:
    path: Path
    config: ImageConfig
    manifest: Dict[str, Any]

    @property
    def rootfs(self) -> Path:
        return self.path / ROOTFS_DIR

    @property
    def artifact_digest(self) -> str:
        return self.manifest["artifact"]["sha256"]


def _staging_path(dest: Path) -> Path:
    return dest.with_name(dest.name + ".partial")


def list_files(rootfs: Path) -> List[str]:
    """Return the sorted relative paths of every file and symlink in ``rootfs``."""

    entries: List[str] = []
    for dirpath, dirnames, filenames in os.walk(rootfs):
        dirnames.sort()
        base = Path(dirpath)
        for name in sorted(filenames):
            entries.append((base / name).relative_to(rootfs).as_posix())
        for name in dirnames:
            if (base / name).is_symlink():
                entries.append((base / name).relative_to(rootfs).as_posix())
    return sorted(entries)


def assemble_image(dest: Path, artifact: Path, package: PackageConfig) -> RuntimeImage:
    """Build a runtime image at ``dest`` containing only ``artifact`` on top of the base.

    The image is staged next to ``dest`` and moved into place only once it is
    complete, so a failure never leaves a usable image behind.
    """

    staging = _staging_path(dest)
    remove_path(staging)
    try:
        rootfs = staging / ROOTFS_DIR
        if package.base_rootfs is not None:
            if not package.base_rootfs.is_dir():
                raise ImageError(f"Base root filesystem not found: {package.base_rootfs}")
            shutil.copytree(package.base_rootfs, rootfs, symlinks=True)
        else:
            ensure_directory(rootfs)

        if not artifact.is_file():
            raise ArtifactNotFoundError(str(artifact), stage="package")

        install_dir = ensure_directory(rootfs / package.install_dir)
        target = install_dir / artifact.name
        shutil.copyfile(artifact, target)
        target.chmod(artifact.stat().st_mode & 0o777 | 0o755)

        env = {"PATH": DEFAULT_PATH}
        env.update(package.env)
        config = ImageConfig(
            entrypoint=list(package.entrypoint) or [artifact.name],
            cmd=list(package.cmd),
            env=env,
            base_image=package.base_image,
        )
        manifest = {
            "artifact": {
                "path": "/" + target.relative_to(rootfs).as_posix(),
                "sha256": sha256_file(target),
                "size": target.stat().st_size,
            },
            "base_image": package.base_image,
            "files": list_files(rootfs),
        }
        dump_json(staging / CONFIG_FILE, config.to_dict())
        dump_json(staging / MANIFEST_FILE, manifest)

        remove_path(dest)
        staging.rename(dest)
    except BaseException:
        remove_path(staging)
        raise

    logger.info("image_assembled", image=str(dest), artifact=manifest["artifact"]["path"])
    return RuntimeImage(path=dest, config=config, manifest=manifest)


def load_image(path: Path) -> RuntimeImage:
    config_path = path / CONFIG_FILE
    manifest_path = path / MANIFEST_FILE
    if not config_path.is_file() or not manifest_path.is_file():
        raise ImageError(f"No runtime image at {path}")
    return RuntimeImage(
        path=path,
        config=ImageConfig.from_dict(load_json(config_path)),
        manifest=load_json(manifest_path),
    )


def resolve_argv(config: ImageConfig, args: Optional[Sequence[str]] = None) -> List[str]:
    """Combine the entrypoint with caller arguments or, when none are given, the defaults.

    Caller arguments replace the default list; they are never merged with it.
    """

    if not config.entrypoint:
        raise ImageError("Image has no entrypoint configured")
    arguments = list(args) if args else list(config.cmd)
    return list(config.entrypoint) + arguments


def resolve_executable(image: RuntimeImage, name: str) -> Path:
    """Locate ``name`` inside the image, searching the image PATH for bare names."""

    if "/" in name:
        candidates = [image.rootfs / PurePosixPath(name.lstrip("/"))]
    else:
        search_path = image.config.env.get("PATH", DEFAULT_PATH)
        candidates = [
            image.rootfs / PurePosixPath(entry.lstrip("/")) / name
            for entry in search_path.split(":")
            if entry
        ]
    for candidate in candidates:
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate
    raise ImageError(f"Executable '{name}' not found in image {image.path}")


def run_image(
    image: RuntimeImage,
    args: Optional[Sequence[str]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
) -> int:
    """Execute the image entrypoint and return its exit status.

    Output is not captured; the executable writes straight to the caller's
    streams.
    """

    argv = resolve_argv(image.config, args)
    executable = resolve_executable(image, argv[0])
    process_env = os.environ.copy()
    process_env.update({key: value for key, value in image.config.env.items() if key != "PATH"})
    if env:
        process_env.update(env)

    logger.info("image_run", image=str(image.path), argv=argv)
    completed = subprocess.run(
        [str(executable), *argv[1:]],
        cwd=str(cwd) if cwd else None,
        env=process_env,
        check=False,
    )
    return completed.returncode


def _normalise(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def export_image(image: RuntimeImage, dest: Path) -> Path:
    """Write the image to a reproducible tar archive and return its path."""

    ensure_directory(dest.parent)
    with tarfile.open(dest, "w", format=tarfile.PAX_FORMAT) as archive:
        for name in (CONFIG_FILE, MANIFEST_FILE):
            archive.add(image.path / name, arcname=name, filter=_normalise)
        archive.add(image.rootfs, arcname=ROOTFS_DIR, recursive=False, filter=_normalise)
        for dirpath, dirnames, filenames in os.walk(image.rootfs):
            dirnames.sort()
            base = Path(dirpath)
            for name in sorted(dirnames + filenames):
                entry = base / name
                arcname = (PurePosixPath(ROOTFS_DIR) / entry.relative_to(image.rootfs).as_posix()).as_posix()
                archive.add(entry, arcname=arcname, recursive=False, filter=_normalise)
    logger.info("image_exported", image=str(image.path), archive=str(dest))
    return dest
