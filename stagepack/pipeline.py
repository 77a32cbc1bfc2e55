from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from .errors import ArtifactNotFoundError, BuildError, ManifestError, StagepackError
from .image import RuntimeImage, assemble_image, load_image
from .manifest import default_artifact, require_path_dependencies, verify_path_dependencies
from .models import PipelineSpec, StageResult
from .utils import copy_tree, dump_json, ensure_directory, load_json, remove_path, run_command, sha256_file, sha256_tree

logger = structlog.get_logger(__name__)


class Stage(Enum):
    BUILD = auto()
    PACKAGE = auto()

    @classmethod
    def ordered(cls) -> Iterable["Stage"]:
        return (cls.BUILD, cls.PACKAGE)


@dataclass
class PipelineContext:
    spec: PipelineSpec
    workspace: Path

    def __post_init__(self) -> None:
        self.workspace = Path(self.workspace)
        ensure_directory(self.workspace)

    @property
    def build_dir(self) -> Path:
        return self.workspace / "build" / self.spec.id

    @property
    def context_dir(self) -> Path:
        """Root of the builder stage filesystem; source trees are copied below it."""
        return self.build_dir / "context"

    @property
    def project_dir(self) -> Path:
        return self.context_dir / self.spec.builder.workdir

    @property
    def manifest_path(self) -> Path:
        return self.project_dir / self.spec.builder.manifest

    @property
    def state_dir(self) -> Path:
        return ensure_directory(self.workspace / "state" / self.spec.id)

    @property
    def logs_dir(self) -> Path:
        return ensure_directory(self.workspace / "logs" / self.spec.id)

    @property
    def image_dir(self) -> Path:
        return self.workspace / "images" / self.spec.id

    def stage_output(self, stage: Stage) -> Path:
        return self.state_dir / f"{stage.name.lower()}.json"

    def stage_result(self, stage: Stage) -> Optional[StageResult]:
        output = self.stage_output(stage)
        if not output.exists():
            return None
        return StageResult.from_dict(load_json(output))

    def prepare_build_context(self) -> List[Path]:
        """Recreate the builder context and copy every source tree to its location."""

        remove_path(self.context_dir)
        ensure_directory(self.context_dir)
        copied: List[Path] = []
        for source in self.spec.builder.sources:
            if not source.path.is_dir():
                raise ManifestError(f"Source tree '{source.name}' not found: {source.path}")
            copied.append(
                copy_tree(source.path, self.context_dir / source.dest, exclude=self.spec.builder.ignore)
            )
        return copied

    def library_locations(self) -> Dict[str, Path]:
        """Context locations of every source tree other than the one holding the project."""

        workdir = PurePosixPath(self.spec.builder.workdir)
        owners = [
            source for source in self.spec.builder.sources
            if workdir == PurePosixPath(source.dest) or PurePosixPath(source.dest) in workdir.parents
        ]
        project = max(owners, key=lambda source: len(PurePosixPath(source.dest).parts), default=None)
        return {
            source.name: self.context_dir / source.dest
            for source in self.spec.builder.sources
            if source is not project
        }

    def fingerprint(self, stage: Stage) -> Optional[str]:
        """Digest of everything a stage consumes; None when its input is not available yet."""

        digest = hashlib.sha256()
        if stage is Stage.BUILD:
            builder = self.spec.to_dict()["builder"]
            builder["sources"] = [
                {"name": source.name, "dest": source.dest} for source in self.spec.builder.sources
            ]
            digest.update(json.dumps(builder, sort_keys=True).encode("utf-8"))
            for source in self.spec.builder.sources:
                if not source.path.is_dir():
                    return None
                digest.update(sha256_tree(source.path, exclude=self.spec.builder.ignore).encode("ascii"))
            return digest.hexdigest()

        build = self.stage_result(Stage.BUILD)
        if build is None or not build.completed:
            return None
        digest.update(build.details["artifact_sha256"].encode("ascii"))
        digest.update(json.dumps(self.spec.to_dict()["package"], sort_keys=True).encode("utf-8"))
        base_rootfs = self.spec.package.base_rootfs
        if base_rootfs is not None and base_rootfs.is_dir():
            digest.update(sha256_tree(base_rootfs).encode("ascii"))
        return digest.hexdigest()


StageHandler = Callable[[PipelineContext], StageResult]


def _stage_build(context: PipelineContext) -> StageResult:
    builder = context.spec.builder
    log = logger.bind(pipeline=context.spec.id, stage="build")
    fingerprint = context.fingerprint(Stage.BUILD)

    context.prepare_build_context()
    if not context.project_dir.is_dir():
        raise ManifestError(
            f"Build workdir '{builder.workdir}' is not inside any copied source tree"
        )
    dependencies = verify_path_dependencies(context.manifest_path, context.context_dir)
    require_path_dependencies(context.manifest_path, dependencies, context.library_locations())
    artifact_relative = builder.artifact or default_artifact(context.manifest_path)

    log_path = context.logs_dir / "build.log"
    log.info("build_started", command=builder.command, workdir=str(context.project_dir))
    build_start = time.perf_counter()
    try:
        result = run_command(builder.command, cwd=context.project_dir, env=builder.env, check=False)
    except FileNotFoundError as exc:
        raise BuildError(
            f"Build command not found: {builder.command[0]}",
            returncode=127,
            stderr=f"{exc}\n",
        ) from exc
    duration = time.perf_counter() - build_start
    log_path.write_text(result.stdout + result.stderr)

    if result.returncode != 0:
        log.error("build_failed", returncode=result.returncode, log=str(log_path))
        raise BuildError(
            f"Build command {' '.join(builder.command)} failed with exit code {result.returncode}",
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    artifact = context.project_dir / artifact_relative
    if not artifact.is_file():
        log.error("artifact_missing", artifact=str(artifact))
        raise ArtifactNotFoundError(str(artifact), stage="build")

    details: Dict[str, object] = {
        "artifact_path": str(artifact),
        "artifact_sha256": sha256_file(artifact),
        "artifact_size": artifact.stat().st_size,
        "builder_image": builder.image,
        "command": list(builder.command),
        "path_dependencies": {dep.name: dep.declared for dep in dependencies},
        "fingerprint": fingerprint,
        "duration_s": round(duration, 3),
        "log": str(log_path),
    }
    log.info("build_completed", artifact=str(artifact), duration_s=details["duration_s"])
    return StageResult("build", "completed", details)


def _stage_package(context: PipelineContext) -> StageResult:
    build = context.stage_result(Stage.BUILD)
    if build is None or not build.completed:
        raise StagepackError("Build stage must complete before packaging.")

    fingerprint = context.fingerprint(Stage.PACKAGE)
    artifact = Path(build.details["artifact_path"])
    image = assemble_image(context.image_dir, artifact, context.spec.package)

    package_details = {
        "image_path": str(image.path),
        "artifact": image.manifest["artifact"],
        "entrypoint": image.config.entrypoint,
        "cmd": image.config.cmd,
        "base_image": image.config.base_image,
        "file_count": len(image.manifest["files"]),
        "fingerprint": fingerprint,
    }
    return StageResult("package", "completed", package_details)


_STAGE_HANDLERS: Dict[Stage, StageHandler] = {
    Stage.BUILD: _stage_build,
    Stage.PACKAGE: _stage_package,
}


class BuildPipeline:
    """Runs the builder stage and then the packaging stage for one pipeline."""

    def __init__(self, context: PipelineContext) -> None:
        self.context = context

    def run_until(self, target_stage: Stage, *, force: bool = False) -> StageResult:
        last_result: Optional[StageResult] = None
        for stage in Stage.ordered():
            last_result = self.run_stage(stage, force=force)
            if stage is target_stage:
                break
        assert last_result is not None
        return last_result

    def _reusable(self, stage: Stage) -> Optional[StageResult]:
        cached = self.context.stage_result(stage)
        if cached is None or not cached.completed:
            return None
        if cached.details.get("fingerprint") != self.context.fingerprint(stage):
            return None
        if stage is Stage.BUILD:
            artifact = Path(cached.details["artifact_path"])
            if not artifact.is_file() or sha256_file(artifact) != cached.details["artifact_sha256"]:
                return None
        if stage is Stage.PACKAGE and not (self.context.image_dir / "config.json").is_file():
            return None
        return cached

    def run_stage(self, stage: Stage, *, force: bool = False) -> StageResult:
        log = logger.bind(pipeline=self.context.spec.id, stage=stage.name.lower())
        if not force:
            cached = self._reusable(stage)
            if cached is not None:
                log.info("stage_cached")
                return cached

        stage_output = self.context.stage_output(stage)
        remove_path(stage_output)
        handler = _STAGE_HANDLERS[stage]
        log.info("stage_started")
        try:
            result = handler(self.context)
        except StagepackError as exc:
            failed = StageResult(stage.name.lower(), "failed", {"message": str(exc), "error": type(exc).__name__})
            dump_json(stage_output, failed.to_dict())
            log.error("stage_failed", error=type(exc).__name__)
            raise
        dump_json(stage_output, result.to_dict())
        log.info("stage_completed")
        return result

    def image(self) -> RuntimeImage:
        return load_image(self.context.image_dir)

    def status(self) -> Dict[str, str]:
        statuses: Dict[str, str] = {}
        for stage in Stage.ordered():
            result = self.context.stage_result(stage)
            if result is not None:
                statuses[stage.name.lower()] = result.status
        return statuses

    def clean(self) -> None:
        for path in (
            self.context.build_dir,
            self.context.image_dir,
            self.context.image_dir.with_name(self.context.image_dir.name + ".partial"),
            self.context.workspace / "state" / self.context.spec.id,
        ):
            remove_path(path)
        logger.info("pipeline_cleaned", pipeline=self.context.spec.id)
