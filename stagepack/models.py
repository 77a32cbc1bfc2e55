from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional

from .errors import ConfigError

DEFAULT_BUILD_COMMAND = ["cargo", "build", "--release"]
DEFAULT_MANIFEST = "Cargo.toml"
DEFAULT_INSTALL_DIR = "usr/local/bin"
DEFAULT_IGNORE = [".git", "target"]
DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


def _require(data: Dict[str, Any], key: str, owner: str) -> Any:
    if key not in data or data[key] in (None, ""):
        raise ConfigError(f"{owner}: missing required field '{key}'")
    return data[key]


def _relative_posix(value: str, owner: str, key: str) -> str:
    """Normalise an in-context location and reject ones that leave the context."""

    path = PurePosixPath(str(value).lstrip("/"))
    if not path.parts or ".." in path.parts:
        raise ConfigError(f"{owner}: '{key}' must be a relative path inside the context, got {value!r}")
    return path.as_posix()


def _string_list(value: Any, owner: str, key: str) -> List[str]:
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ConfigError(f"{owner}: '{key}' must be a list of strings")
    return [str(item) for item in value]



def _string_map(value: Any, owner: str, key: str) -> Dict[str, str]:
    if not isinstance(value, dict):
        raise ConfigError(f"{owner}: '{key}' must be a mapping of strings")
    return {str(k): str(v) for k, v in value.items()}

@dataclass
class SourceTree:
    """A host directory copied into the builder context at a fixed location."""

    name: str
    path: Path
    dest: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "SourceTree":
        name = str(_require(data, "name", "source"))
        owner = f"source '{name}'"
        path = Path(_require(data, "path", owner)).expanduser()
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        dest = _relative_posix(data.get("dest", name), owner, "dest")
        return cls(name=name, path=path, dest=dest)


@dataclass
class BuildConfig:
    """Builder stage definition: sources, project root and release command."""

    sources: List[SourceTree]
    workdir: str
    image: str = "rust:latest"
    command: List[str] = field(default_factory=lambda: list(DEFAULT_BUILD_COMMAND))
    manifest: str = DEFAULT_MANIFEST
    artifact: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    ignore: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE))

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "BuildConfig":
        raw_sources = _require(data, "sources", "builder")
        if not isinstance(raw_sources, list):
            raise ConfigError("builder: 'sources' must be a list")
        sources = [SourceTree.from_dict(entry, base_dir) for entry in raw_sources]

        destinations = [source.dest for source in sources]
        if len(set(destinations)) != len(destinations):
            raise ConfigError("builder: source destinations must be unique")

        workdir = _relative_posix(_require(data, "workdir", "builder"), "builder", "workdir")
        artifact = data.get("artifact")
        if artifact is not None:
            artifact = _relative_posix(artifact, "builder", "artifact")
        command = _string_list(data.get("command", DEFAULT_BUILD_COMMAND), "builder", "command")
        if not command:
            raise ConfigError("builder: 'command' must not be empty")
        return cls(
            sources=sources,
            workdir=workdir,
            image=data.get("image", "rust:latest"),
            command=command,
            manifest=data.get("manifest", DEFAULT_MANIFEST),
            artifact=artifact,
            env=_string_map(data.get("env", {}), "builder", "env"),
            ignore=_string_list(data.get("ignore", DEFAULT_IGNORE), "builder", "ignore"),
        )


@dataclass
class PackageConfig:
    """Packaging stage definition: minimal base, install location and invocation."""

    base_image: str = "debian:buster-slim"
    base_rootfs: Optional[Path] = None
    install_dir: str = DEFAULT_INSTALL_DIR
    entrypoint: List[str] = field(default_factory=list)
    cmd: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "PackageConfig":
        base_rootfs = data.get("base_rootfs")
        if base_rootfs is not None:
            base_rootfs = Path(base_rootfs).expanduser()
            if not base_rootfs.is_absolute() and base_dir is not None:
                base_rootfs = base_dir / base_rootfs
        return cls(
            base_image=data.get("base_image", "debian:buster-slim"),
            base_rootfs=base_rootfs,
            install_dir=_relative_posix(data.get("install_dir", DEFAULT_INSTALL_DIR), "package", "install_dir"),
            entrypoint=_string_list(data.get("entrypoint", []), "package", "entrypoint"),
            cmd=_string_list(data.get("cmd", []), "package", "cmd"),
            env=_string_map(data.get("env", {}), "package", "env"),
        )


@dataclass
class PipelineSpec:
    """A named build-then-package pipeline sourced from the catalog."""

    id: str
    builder: BuildConfig
    package: PackageConfig = field(default_factory=PackageConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "PipelineSpec":
        pipeline_id = str(_require(data, "id", "pipeline"))
        raw_builder = _require(data, "builder", f"pipeline '{pipeline_id}'")
        if not isinstance(raw_builder, dict):
            raise ConfigError(f"pipeline '{pipeline_id}': 'builder' must be a mapping")
        try:
            builder = BuildConfig.from_dict(raw_builder, base_dir)
            package = PackageConfig.from_dict(data.get("package") or {}, base_dir)
        except ConfigError as exc:
            raise ConfigError(f"pipeline '{pipeline_id}': {exc}") from exc
        return cls(id=pipeline_id, builder=builder, package=package)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "builder": {
                "image": self.builder.image,
                "sources": [
                    {"name": s.name, "path": str(s.path), "dest": s.dest} for s in self.builder.sources
                ],
                "workdir": self.builder.workdir,
                "command": list(self.builder.command),
                "manifest": self.builder.manifest,
                "artifact": self.builder.artifact,
                "env": dict(self.builder.env),
                "ignore": list(self.builder.ignore),
            },
            "package": {
                "base_image": self.package.base_image,
                "base_rootfs": str(self.package.base_rootfs) if self.package.base_rootfs else None,
                "install_dir": self.package.install_dir,
                "entrypoint": list(self.package.entrypoint),
                "cmd": list(self.package.cmd),
                "env": dict(self.package.env),
            },
        }


@dataclass
class StageResult:
    """Summary emitted by a pipeline stage."""

    name: str
    status: str
    details: Dict[str, Any]

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.name, "status": self.status, "details": self.details}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageResult":
        return cls(
            name=data.get("stage", ""),
            status=data.get("status", "unknown"),
            details=data.get("details", {}),
        )


@dataclass
class ImageConfig:
    """Invocation settings stored alongside a runtime image."""

    entrypoint: List[str]
    cmd: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    base_image: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entrypoint": list(self.entrypoint),
            "cmd": list(self.cmd),
            "env": dict(self.env),
            "base_image": self.base_image,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageConfig":
        return cls(
            entrypoint=list(data.get("entrypoint", [])),
            cmd=list(data.get("cmd", [])),
            env=dict(data.get("env", {})),
            base_image=data.get("base_image", ""),
        )
