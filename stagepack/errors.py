"""Exception hierarchy for stagepack.

- StagepackError: base for every pipeline failure
- CatalogError / ConfigError: the pipeline definition cannot be loaded
- ManifestError: the project manifest is missing or its path dependencies
  do not resolve inside the builder context
- BuildError: the build command exited with a non-zero status
- ArtifactNotFoundError: the compiled artifact is absent at its contract path
- ImageError: a packaged image is missing or malformed
"""

from __future__ import annotations

from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


class StagepackError(RuntimeError):
    """Base class for all pipeline errors."""

    exit_code = 1


class CatalogError(StagepackError):
    """Raised when the pipeline catalog cannot be parsed."""


class ConfigError(StagepackError):
    """Raised when a pipeline definition is missing fields or has invalid values."""


class ManifestError(StagepackError):
    """Raised when the project manifest does not match the builder context."""


class BuildError(StagepackError):
    """Raised when the release build command fails.

    The tool's output is kept verbatim so callers can surface it unchanged.
    """

    def __init__(self, message: str, *, returncode: int, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = returncode if returncode > 0 else 1
        logger.error("build_error", message=message, returncode=returncode)


class ArtifactNotFoundError(StagepackError):
    """Raised when the compiled artifact does not exist where it was promised."""

    def __init__(self, path: str, *, stage: Optional[str] = None) -> None:
        where = f" ({stage} stage)" if stage else ""
        super().__init__(f"Compiled artifact not found{where}: {path}")
        self.path = path
        self.stage = stage


class ImageError(StagepackError):
    """Raised when a runtime image cannot be loaded or executed."""
