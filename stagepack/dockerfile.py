"""Render a pipeline as a multi-stage Dockerfile and hand it to ``docker build``."""

from __future__ import annotations

import json
import shlex
from pathlib import Path, PurePosixPath
from typing import List, Optional

import structlog

from .errors import BuildError, ConfigError
from .models import PipelineSpec
from .utils import CommandError, run_command

logger = structlog.get_logger(__name__)

BUILDER_STAGE = "builder"


def _exec_form(values: List[str]) -> str:
    return json.dumps(values)


def render_dockerfile(spec: PipelineSpec, *, artifact: Optional[str] = None) -> str:
    """Return the Dockerfile equivalent of ``spec``.

    ``COPY`` sources are the source trees' names relative to the docker build
    context, which is expected to hold one directory per source tree.
    """

    builder = spec.builder
    package = spec.package
    artifact = artifact or builder.artifact
    if not artifact:
        raise ConfigError(f"pipeline '{spec.id}': an explicit builder.artifact is required to render a Dockerfile")

    workdir = PurePosixPath("/") / builder.workdir
    artifact_path = workdir / artifact
    entrypoint = package.entrypoint or [artifact_path.name]

    lines = [f"FROM {builder.image} AS {BUILDER_STAGE}", ""]
    for source in builder.sources:
        lines.append(f"COPY ./{source.name} /{source.dest}")
        lines.append("")
    for key, value in sorted(builder.env.items()):
        lines.append(f"ENV {key}={json.dumps(value)}")
    lines.append(f"WORKDIR {workdir}")
    lines.append("")
    lines.append(f"RUN {shlex.join(builder.command)}")
    lines.append("")
    lines.append(f"FROM {package.base_image}")
    lines.append("")
    lines.append(f"COPY --from={BUILDER_STAGE} {artifact_path} /{package.install_dir}")
    lines.append("")
    for key, value in sorted(package.env.items()):
        lines.append(f"ENV {key}={json.dumps(value)}")
    lines.append(f"ENTRYPOINT {_exec_form(entrypoint)}")
    if package.cmd:
        lines.append("")
        lines.append(f"CMD {_exec_form(package.cmd)}")
    return "\n".join(lines) + "\n"


def docker_build(spec: PipelineSpec, context_dir: Path, tag: str, *, artifact: Optional[str] = None) -> str:
    """Build the rendered Dockerfile with the docker CLI and return the tool output."""

    dockerfile = render_dockerfile(spec, artifact=artifact)
    command = ["docker", "build", "-f", "-", "-t", tag, str(context_dir)]
    logger.info("docker_build_started", pipeline=spec.id, tag=tag, context=str(context_dir))
    try:
        result = run_command(command, input_text=dockerfile)
    except CommandError as exc:
        raise BuildError(
            f"docker build failed for pipeline '{spec.id}'",
            returncode=exc.returncode,
            stdout=exc.stdout,
            stderr=exc.stderr,
        ) from exc
    logger.info("docker_build_completed", pipeline=spec.id, tag=tag)
    return result.stdout
