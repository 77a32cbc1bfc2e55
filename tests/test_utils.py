from __future__ import annotations

import sys
from pathlib import Path

import pytest

from stagepack.utils import CommandError, copy_tree, remove_path, run_command, sha256_file, sha256_tree


def test_run_command_raises_with_output() -> None:
    with pytest.raises(CommandError) as exc_info:
        run_command([sys.executable, "-c", "import sys; print('out'); sys.exit(2)"])
    assert exc_info.value.returncode == 2
    assert exc_info.value.stdout == "out\n"


def test_run_command_passes_env_and_stdin(tmp_path: Path) -> None:
    result = run_command(
        [sys.executable, "-c", "import os, sys; print(os.environ['STAGE'] + sys.stdin.read())"],
        cwd=tmp_path,
        env={"STAGE": "build:"},
        input_text="ok",
    )
    assert result.stdout == "build:ok\n"


def test_sha256_tree_ignores_excluded_components(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.rs").write_text("fn main() {}\n")
    before = sha256_tree(tmp_path, exclude=["target"])

    (tmp_path / "target" / "release").mkdir(parents=True)
    (tmp_path / "target" / "release" / "app").write_text("binary")
    assert sha256_tree(tmp_path, exclude=["target"]) == before

    (tmp_path / "src" / "main.rs").write_text("fn main() { }\n")
    assert sha256_tree(tmp_path, exclude=["target"]) != before


def test_copy_tree_skips_excluded_and_remove_path(tmp_path: Path) -> None:
    source = tmp_path / "src"
    (source / ".git").mkdir(parents=True)
    (source / ".git" / "HEAD").write_text("ref")
    (source / "Cargo.toml").write_text("[package]\n")

    dest = copy_tree(source, tmp_path / "ctx" / "usr" / "src" / "app", exclude=[".git"])

    assert sorted(p.name for p in dest.iterdir()) == ["Cargo.toml"]
    assert sha256_file(dest / "Cargo.toml") == sha256_file(source / "Cargo.toml")

    remove_path(tmp_path / "ctx")
    remove_path(tmp_path / "ctx")
    assert not (tmp_path / "ctx").exists()


def test_copy_tree_overlays_existing_destination(tmp_path: Path) -> None:
    outer = tmp_path / "lib"
    inner = tmp_path / "app"
    outer.mkdir()
    inner.mkdir()
    (outer / "Cargo.toml").write_text("[package]\nname = 'lib'\n")
    (inner / "main.rs").write_text("fn main() {}\n")
    context = tmp_path / "ctx"

    copy_tree(inner, context / "usr" / "src" / "lib" / "app")
    copy_tree(outer, context / "usr" / "src" / "lib")

    assert (context / "usr" / "src" / "lib" / "Cargo.toml").is_file()
    assert (context / "usr" / "src" / "lib" / "app" / "main.rs").is_file()
