from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

import yaml

from .errors import CatalogError, ConfigError
from .models import PipelineSpec


@dataclass
class PipelineCatalog:
    """Loader for the pipeline catalog file.

    Relative source and base paths are resolved against the catalog's directory.
    """

    path: Path
    _cache: Optional[Dict[str, PipelineSpec]] = None

    @classmethod
    def from_file(cls, path: str | Path) -> "PipelineCatalog":
        return cls(path=Path(path))

    def _load(self) -> Dict[str, PipelineSpec]:
        if self._cache is not None:
            return self._cache

        try:
            raw_text = self.path.read_text()
        except FileNotFoundError as exc:
            raise CatalogError(f"Catalog file not found: {self.path}") from exc

        try:
            raw_data = json.loads(raw_text)
        except json.JSONDecodeError:
            try:
                raw_data = yaml.safe_load(raw_text)
            except yaml.YAMLError as exc:
                raise CatalogError(f"Catalog {self.path} is neither JSON nor YAML: {exc}") from exc

        if not isinstance(raw_data, dict) or not isinstance(raw_data.get("pipelines"), list):
            raise CatalogError("Catalog must contain a top-level 'pipelines' list")

        base_dir = self.path.resolve().parent
        specs: Dict[str, PipelineSpec] = {}
        for entry in raw_data["pipelines"]:
            if not isinstance(entry, dict):
                raise CatalogError("Each catalog entry must be a mapping")
            try:
                spec = PipelineSpec.from_dict(entry, base_dir)
            except ConfigError as exc:
                raise CatalogError(f"Invalid catalog entry in {self.path}: {exc}") from exc
            if spec.id in specs:
                raise CatalogError(f"Duplicate pipeline id: {spec.id}")
            specs[spec.id] = spec

        self._cache = specs
        return specs

    def iter_pipelines(self) -> Iterable[PipelineSpec]:
        return self._load().values()

    def get(self, pipeline_id: str) -> PipelineSpec:
        try:
            return self._load()[pipeline_id]
        except KeyError as exc:
            raise CatalogError(f"Unknown pipeline id: {pipeline_id}") from exc

    def __len__(self) -> int:
        return len(self._load())

    def __contains__(self, pipeline_id: str) -> bool:
        return pipeline_id in self._load()
