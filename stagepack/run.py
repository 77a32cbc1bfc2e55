from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

import structlog

from .catalog import PipelineCatalog
from .dockerfile import docker_build, render_dockerfile
from .errors import BuildError, StagepackError
from .image import export_image, run_image
from .observability import configure_logging
from .pipeline import BuildPipeline, PipelineContext, Stage

logger = structlog.get_logger(__name__)


def _load_pipeline(args: argparse.Namespace) -> BuildPipeline:
    catalog = PipelineCatalog.from_file(args.catalog)
    spec = catalog.get(args.pipeline_id)
    context = PipelineContext(spec=spec, workspace=Path(args.workspace))
    return BuildPipeline(context)


def cmd_list(args: argparse.Namespace) -> int:
    catalog = PipelineCatalog.from_file(args.catalog)
    for spec in catalog.iter_pipelines():
        print(f"{spec.id}\t{spec.builder.image}\t{spec.package.base_image}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    pipeline = _load_pipeline(args)
    print(json.dumps(pipeline.status(), indent=2))
    return 0


def _run_to_stage(args: argparse.Namespace, stage: Stage) -> int:
    pipeline = _load_pipeline(args)
    result = pipeline.run_until(stage, force=args.force)
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    pipeline = _load_pipeline(args)
    arguments = list(args.args)
    if arguments and arguments[0] == "--":
        arguments = arguments[1:]
    return run_image(pipeline.image(), arguments)


def cmd_inspect(args: argparse.Namespace) -> int:
    image = _load_pipeline(args).image()
    payload = {"path": str(image.path), "config": image.config.to_dict(), "manifest": image.manifest}
    print(json.dumps(payload, indent=2))
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    pipeline = _load_pipeline(args)
    output = Path(args.output) if args.output else pipeline.context.workspace / f"{pipeline.context.spec.id}.tar"
    print(export_image(pipeline.image(), output))
    return 0


def cmd_dockerfile(args: argparse.Namespace) -> int:
    spec = PipelineCatalog.from_file(args.catalog).get(args.pipeline_id)
    sys.stdout.write(render_dockerfile(spec))
    return 0


def cmd_docker_build(args: argparse.Namespace) -> int:
    spec = PipelineCatalog.from_file(args.catalog).get(args.pipeline_id)
    context_dir = Path(args.context) if args.context else Path(args.catalog).resolve().parent
    sys.stdout.write(docker_build(spec, context_dir, args.tag or f"{spec.id}:latest"))
    return 0


def cmd_clean(args: argparse.Namespace) -> int:
    _load_pipeline(args).clean()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build a native executable and package it into a minimal runtime image")
    parser.add_argument(
        "--catalog",
        default=os.environ.get("STAGEPACK_CATALOG", "pipelines.yaml"),
        help="Path to the pipeline catalog file.",
    )
    parser.add_argument(
        "--workspace",
        default=os.environ.get("STAGEPACK_WORKSPACE", ".stagepack"),
        help="Directory used for build contexts, state, logs, and images.",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("STAGEPACK_LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
    )
    parser.add_argument(
        "--log-format",
        default=os.environ.get("STAGEPACK_LOG_FORMAT", "console"),
        choices=["console", "json"],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List pipelines in the catalog")
    list_parser.set_defaults(func=cmd_list)

    def add_pipeline_parser(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--pipeline-id", required=True)
        return sub

    add_pipeline_parser("status", "Show stage status for a pipeline").set_defaults(func=cmd_status)

    for command, stage in (("build", Stage.BUILD), ("package", Stage.PACKAGE)):
        stage_parser = add_pipeline_parser(command, f"Run pipeline stage: {command}")
        stage_parser.add_argument("--force", action="store_true", help="Ignore cached stage results.")
        stage_parser.set_defaults(func=lambda args, stage=stage: _run_to_stage(args, stage))

    run_parser = add_pipeline_parser("run", "Run the packaged executable")
    run_parser.add_argument(
        "args",
        nargs=argparse.REMAINDER,
        help="Arguments replacing the image's default argument list.",
    )
    run_parser.set_defaults(func=cmd_run)

    add_pipeline_parser("inspect", "Show image configuration and file listing").set_defaults(func=cmd_inspect)

    export_parser = add_pipeline_parser("export", "Write the image to a reproducible tar archive")
    export_parser.add_argument("--output", help="Archive path (default: <workspace>/<id>.tar).")
    export_parser.set_defaults(func=cmd_export)

    add_pipeline_parser("dockerfile", "Print the equivalent multi-stage Dockerfile").set_defaults(
        func=cmd_dockerfile
    )

    docker_parser = add_pipeline_parser("docker-build", "Build the pipeline with docker")
    docker_parser.add_argument("--tag", help="Image tag (default: <id>:latest).")
    docker_parser.add_argument("--context", help="Docker build context (default: catalog directory).")
    docker_parser.set_defaults(func=cmd_docker_build)

    add_pipeline_parser("clean", "Remove build context, state, and image").set_defaults(func=cmd_clean)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(log_level=args.log_level, json_format=args.log_format == "json")
    try:
        return args.func(args)
    except BuildError as exc:
        # Tool diagnostics go out unchanged.
        sys.stdout.write(exc.stdout)
        sys.stderr.write(exc.stderr)
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except StagepackError as exc:
        logger.debug("command_failed", command=args.command, error=type(exc).__name__)
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
