from typer.testing import CliRunner

from hubflow.cli import app

runner = CliRunner()


def _isolate(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("HUBFLOW_CONFIG", raising=False)
    monkeypatch.delenv("HUBFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


def test_definitions_list_shows_builtin_catalog(tmp_path, monkeypatch):
    _isolate(tmp_path, monkeypatch)
    result = runner.invoke(app, ["definitions", "list"])
    assert result.exit_code == 0, result.output
    assert "provider_setup" in result.output
    assert "smart_share_verification" in result.output

    result = runner.invoke(app, ["definitions", "list", "--category", "risk"])
    assert result.exit_code == 0, result.output
    assert result.output.strip().splitlines() == ["risk_assessment\trisk\tRisk Assessment"]


def test_definitions_show_and_missing(tmp_path, monkeypatch):
    _isolate(tmp_path, monkeypatch)
    result = runner.invoke(app, ["definitions", "show", "provider_setup"])
    assert result.exit_code == 0, result.output
    assert "detect_provider [ai_action]" in result.output
    assert "(entry)" in result.output
    assert "<- detect_provider" in result.output

    result = runner.invoke(app, ["definitions", "show", "nope"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_definitions_suggest_orders_by_priority(tmp_path, monkeypatch):
    _isolate(tmp_path, monkeypatch)
    result = runner.invoke(app, ["definitions", "suggest", "--context", "{}"])
    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    priorities = [int(line.split("\t")[1].split("=")[1]) for line in lines]
    assert priorities == sorted(priorities, reverse=True)

    result = runner.invoke(app, ["definitions", "suggest", "--context", "[1, 2]"])
    assert result.exit_code == 1


def test_definitions_validate(tmp_path, monkeypatch):
    _isolate(tmp_path, monkeypatch)
    good = tmp_path / "good.yaml"
    good.write_text(
        """
workflows:
  - id: ok
    name: Ok
    category: inbox
    entry_step_id: a
    steps:
      - id: a
        type: wait
        config: {duration_ms: 0}
"""
    )
    bad = tmp_path / "bad.yaml"
    bad.write_text(
        """
workflows:
  - id: loop
    name: Loop
    category: inbox
    entry_step_id: a
    steps:
      - id: a
        type: wait
        config: {duration_ms: 0}
      - id: b
        type: wait
        config: {duration_ms: 0}
        dependencies: [a, c]
      - id: c
        type: wait
        config: {duration_ms: 0}
        dependencies: [b]
"""
    )
    result = runner.invoke(app, ["definitions", "validate", str(good)])
    assert result.exit_code == 0, result.output
    assert "ok: ok" in result.output

    result = runner.invoke(app, ["definitions", "validate", str(bad)])
    assert result.exit_code == 1
    assert "loop: INVALID" in result.output
    assert "dependency cycle" in result.output

    result = runner.invoke(app, ["definitions", "validate", str(tmp_path / "missing.yaml")])
    assert result.exit_code == 1
