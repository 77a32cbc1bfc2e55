from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from stagepack import dockerfile as dockerfile_module
from stagepack.dockerfile import docker_build, render_dockerfile
from stagepack.errors import BuildError, ConfigError
from stagepack.models import PipelineSpec
from stagepack.utils import CommandError

DATAFUSION_PIPELINE = {
    "id": "datafusion-cli",
    "builder": {
        "image": "rust:latest",
        "sources": [
            {"name": "datafusion", "path": "/src/datafusion", "dest": "usr/src/datafusion"},
            {"name": "datafusion-cli", "path": "/src/datafusion-cli", "dest": "usr/src/datafusion-cli"},
        ],
        "workdir": "usr/src/datafusion-cli",
        "artifact": "target/release/datafusion-cli",
    },
    "package": {
        "base_image": "debian:buster-slim",
        "entrypoint": ["datafusion-cli"],
        "cmd": ["--data-path", "/data"],
    },
}

EXPECTED = """FROM rust:latest AS builder

COPY ./datafusion /usr/src/datafusion

COPY ./datafusion-cli /usr/src/datafusion-cli

WORKDIR /usr/src/datafusion-cli

RUN cargo build --release

FROM debian:buster-slim

COPY --from=builder /usr/src/datafusion-cli/target/release/datafusion-cli /usr/local/bin

ENTRYPOINT ["datafusion-cli"]

CMD ["--data-path", "/data"]
"""


def test_render_two_stage_dockerfile() -> None:
    spec = PipelineSpec.from_dict(DATAFUSION_PIPELINE)
    assert render_dockerfile(spec) == EXPECTED


def test_render_requires_artifact_path() -> None:
    data = {**DATAFUSION_PIPELINE, "builder": {**DATAFUSION_PIPELINE["builder"], "artifact": None}}
    spec = PipelineSpec.from_dict(data)
    with pytest.raises(ConfigError):
        render_dockerfile(spec)
    assert "target/release/app" in render_dockerfile(spec, artifact="target/release/app")


def test_render_without_default_arguments_omits_cmd() -> None:
    data = {**DATAFUSION_PIPELINE, "package": {"base_image": "debian:buster-slim"}}
    rendered = render_dockerfile(PipelineSpec.from_dict(data))
    assert 'ENTRYPOINT ["datafusion-cli"]' in rendered
    assert "CMD" not in rendered


def test_docker_build_feeds_dockerfile_on_stdin(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    seen = {}

    def fake_run_command(command, **kwargs):
        seen["command"] = command
        seen["input_text"] = kwargs.get("input_text")
        return subprocess.CompletedProcess(command, 0, stdout="built\n", stderr="")

    monkeypatch.setattr(dockerfile_module, "run_command", fake_run_command)
    spec = PipelineSpec.from_dict(DATAFUSION_PIPELINE)

    assert docker_build(spec, tmp_path, "datafusion-cli:dev") == "built\n"
    assert seen["command"] == ["docker", "build", "-f", "-", "-t", "datafusion-cli:dev", str(tmp_path)]
    assert seen["input_text"] == EXPECTED


def test_docker_build_failure_keeps_tool_output(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def failing_run_command(command, **kwargs):
        raise CommandError(command, 1, "step 4/9\n", "error: could not compile\n")

    monkeypatch.setattr(dockerfile_module, "run_command", failing_run_command)
    spec = PipelineSpec.from_dict(DATAFUSION_PIPELINE)

    with pytest.raises(BuildError) as exc_info:
        docker_build(spec, tmp_path, "datafusion-cli:dev")
    assert exc_info.value.returncode == 1
    assert exc_info.value.stderr == "error: could not compile\n"


def test_render_quotes_build_arguments() -> None:
    data = {
        **DATAFUSION_PIPELINE,
        "builder": {**DATAFUSION_PIPELINE["builder"], "command": ["cargo", "build", "--features", "a b;c"]},
    }
    rendered = render_dockerfile(PipelineSpec.from_dict(data))
    assert "RUN cargo build --features 'a b;c'\n" in rendered
