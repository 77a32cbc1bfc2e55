"""Two-stage pipeline: compile an executable, then package it into a minimal runtime image."""

from .catalog import PipelineCatalog
from .pipeline import BuildPipeline, PipelineContext, Stage

__all__ = ["PipelineCatalog", "BuildPipeline", "PipelineContext", "Stage"]
