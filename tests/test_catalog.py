from pathlib import Path

import pytest

from stagepack.catalog import PipelineCatalog
from stagepack.errors import CatalogError


def test_catalog_loads_json_yaml_subset(tmp_path: Path) -> None:
    catalog_path = tmp_path / "pipelines.yaml"
    catalog_path.write_text(
        """
{
  \"version\": 1,
  \"pipelines\": [
    {\"id\": \"demo\", \"builder\": {\"sources\": [{\"name\": \"demo\", \"path\": \"demo\"}], \"workdir\": \"demo\"}}
  ]
}
"""
    )
    catalog = PipelineCatalog.from_file(catalog_path)
    spec = catalog.get("demo")
    assert spec.id == "demo"
    assert spec.builder.sources[0].path == tmp_path.resolve() / "demo"
    assert spec.builder.command == ["cargo", "build", "--release"]
    assert "demo" in catalog
    assert len(catalog) == 1


def test_catalog_loads_yaml(catalog_file: Path) -> None:
    catalog = PipelineCatalog.from_file(catalog_file)
    spec = catalog.get("app")
    assert [source.dest for source in spec.builder.sources] == ["usr/src/lib", "usr/src/app"]
    assert spec.package.cmd == ["--data-path", "/data"]
    assert [s.id for s in catalog.iter_pipelines()] == ["app"]


def test_catalog_resolves_relative_paths_against_its_directory(tmp_path: Path) -> None:
    catalog_path = tmp_path / "conf" / "pipelines.yaml"
    catalog_path.parent.mkdir()
    catalog_path.write_text(
        """
pipelines:
  - id: cli
    builder:
      sources:
        - {name: cli, path: ../src/cli, dest: usr/src/cli}
      workdir: usr/src/cli
    package:
      base_rootfs: rootfs
"""
    )
    spec = PipelineCatalog.from_file(catalog_path).get("cli")
    assert spec.builder.sources[0].path.resolve() == (tmp_path / "src" / "cli").resolve()
    assert spec.package.base_rootfs == tmp_path.resolve() / "conf" / "rootfs"


def test_catalog_unknown_id(catalog_file: Path) -> None:
    with pytest.raises(CatalogError, match="Unknown pipeline id"):
        PipelineCatalog.from_file(catalog_file).get("nope")


@pytest.mark.parametrize(
    "text, message",
    [
        ("repos: []\n", "top-level 'pipelines'"),
        ("pipelines:\n  - id: x\n", "missing required field 'builder'"),
        ("pipelines: [\n", "neither JSON nor YAML"),
    ],
)
def test_catalog_rejects_malformed_files(tmp_path: Path, text: str, message: str) -> None:
    path = tmp_path / "pipelines.yaml"
    path.write_text(text)
    with pytest.raises(CatalogError, match=message):
        PipelineCatalog.from_file(path).get("x")


def test_catalog_rejects_duplicate_ids(tmp_path: Path) -> None:
    entry = "  - {id: a, builder: {sources: [{name: a, path: a}], workdir: a}}\n"
    path = tmp_path / "pipelines.yaml"
    path.write_text("pipelines:\n" + entry + entry)
    with pytest.raises(CatalogError, match="Duplicate pipeline id"):
        len(PipelineCatalog.from_file(path))


def test_catalog_missing_file(tmp_path: Path) -> None:
    with pytest.raises(CatalogError, match="not found"):
        PipelineCatalog.from_file(tmp_path / "absent.yaml").get("x")
