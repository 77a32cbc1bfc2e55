from __future__ import annotations

import sys
import textwrap
from pathlib import Path
from typing import Any, Callable, Dict

import pytest
import structlog
import yaml

from stagepack.models import PipelineSpec
from stagepack.pipeline import BuildPipeline, PipelineContext

BUILD_SCRIPT = textwrap.dedent(
    """
    import pathlib

    # Stands in for the compiler: needs the library next door, emits one binary.
    pathlib.Path("../lib/Cargo.toml").read_text()
    out = pathlib.Path("target/release")
    out.mkdir(parents=True, exist_ok=True)
    (out / "app.o").write_text("intermediate object")
    binary = out / "app"
    binary.write_text('#!/bin/sh\\necho "app $*"\\n')
    binary.chmod(0o755)
    """
)


@pytest.fixture(autouse=True)
def configure_structlog_for_tests() -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def source_trees(tmp_path: Path) -> Path:
    """Create a library tree and an executable project depending on it by path."""

    root = tmp_path / "sources"
    lib = root / "lib"
    app = root / "app"
    (lib / "src").mkdir(parents=True)
    (app / "src").mkdir(parents=True)
    (lib / "Cargo.toml").write_text('[package]\nname = "lib"\nversion = "0.1.0"\n')
    (lib / "src" / "lib.rs").write_text("pub fn answer() -> u32 { 42 }\n")
    (app / "Cargo.toml").write_text(
        '[package]\nname = "app"\nversion = "0.1.0"\n\n[dependencies]\nlib = { path = "../lib" }\n'
    )
    (app / "src" / "main.rs").write_text("fn main() {}\n")
    (app / "build.py").write_text(BUILD_SCRIPT)
    return root


@pytest.fixture
def pipeline_dict(source_trees: Path) -> Dict[str, Any]:
    return {
        "id": "app",
        "builder": {
            "image": "rust:latest",
            "sources": [
                {"name": "lib", "path": str(source_trees / "lib"), "dest": "usr/src/lib"},
                {"name": "app", "path": str(source_trees / "app"), "dest": "usr/src/app"},
            ],
            "workdir": "usr/src/app",
            "command": [sys.executable, "build.py"],
        },
        "package": {
            "base_image": "debian:buster-slim",
            "cmd": ["--data-path", "/data"],
        },
    }


@pytest.fixture
def make_pipeline(tmp_path: Path, pipeline_dict: Dict[str, Any]) -> Callable[..., BuildPipeline]:
    def factory(**builder_overrides: Any) -> BuildPipeline:
        data = dict(pipeline_dict)
        data["builder"] = {**pipeline_dict["builder"], **builder_overrides}
        spec = PipelineSpec.from_dict(data)
        return BuildPipeline(PipelineContext(spec=spec, workspace=tmp_path / "workspace"))

    return factory


@pytest.fixture
def catalog_file(tmp_path: Path, pipeline_dict: Dict[str, Any]) -> Path:
    path = tmp_path / "pipelines.yaml"
    path.write_text(yaml.safe_dump({"version": 1, "pipelines": [pipeline_dict]}))
    return path
