from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from phaseflow.cli import app
from phaseflow.cli_utils.definitions import looks_like_definition
from phaseflow.cli_utils.fs import _format_path, _load_gitignore_patterns, _should_ignore_path

from fixtures.workflows import gate_retry


def _write_definition(path: Path) -> None:
    path.write_text(gate_retry().model_dump_json(), encoding="utf-8")


def test_load_gitignore_patterns_reads_patterns(tmp_path):
    (tmp_path / ".gitignore").write_text("ignored.yaml\n", encoding="utf-8")

    patterns = _load_gitignore_patterns(tmp_path)

    assert "ignored.yaml" in patterns


def test_should_ignore_path_matches_patterns(tmp_path):
    target = tmp_path / "ignored.yaml"
    target.write_text("", encoding="utf-8")

    assert _should_ignore_path(target, {"ignored.yaml"}, tmp_path) is True
    assert _should_ignore_path(target, {"other.yaml"}, tmp_path) is False


def test_should_ignore_path_matches_directories(tmp_path):
    target = tmp_path / "build" / "flow.yaml"

    assert _should_ignore_path(target, {"build/"}, tmp_path) is True


def test_format_path_relative(tmp_path):
    assert _format_path(tmp_path / "a" / "b.yaml", tmp_path) == "./a/b.yaml"


def test_looks_like_definition(tmp_path):
    definition = tmp_path / "flow.json"
    _write_definition(definition)
    other = tmp_path / "settings.yaml"
    other.write_text("retry:\n  max_attempts: 2\n", encoding="utf-8")

    assert looks_like_definition(definition) is True
    assert looks_like_definition(other) is False


def test_workflow_discover_lists_definitions(tmp_path):
    _write_definition(tmp_path / "flow.json")
    nested = tmp_path / "nested"
    nested.mkdir()
    broken = json.loads(gate_retry().model_dump_json())
    broken["edges"].append({"source": "3", "target": "ghost"})
    (nested / "broken.json").write_text(json.dumps(broken), encoding="utf-8")
    (tmp_path / "notes.yaml").write_text("title: notes\n", encoding="utf-8")

    result = CliRunner().invoke(app, ["workflow", "discover", "--path", str(tmp_path)])

    assert result.exit_code == 0, f"Command failed: {result.output}"
    assert "./flow.json - gate-retry@1.0.0 (valid)" in result.output
    assert "./nested/broken.json - invalid" in result.output
    assert "notes.yaml" not in result.output


def test_workflow_discover_respects_gitignore(tmp_path):
    ignored = tmp_path / "ignored"
    ignored.mkdir()
    _write_definition(ignored / "flow.json")
    (tmp_path / ".gitignore").write_text("ignored/\n", encoding="utf-8")
    runner = CliRunner()

    result = runner.invoke(app, ["workflow", "discover", "--path", str(tmp_path)])
    assert "No workflow definitions discovered." in result.output

    result = runner.invoke(
        app, ["workflow", "discover", "--path", str(tmp_path), "--no-respect-gitignore"]
    )
    assert "./ignored/flow.json" in result.output


def test_workflow_discover_missing_path(tmp_path):
    result = CliRunner().invoke(app, ["workflow", "discover", "--path", str(tmp_path / "nope")])

    assert result.exit_code == 1
    assert "Specified path does not exist" in result.output
