# tests/unit/test_cli.py

from __future__ import annotations
import sys
from pathlib import Path
import pytest
from textwrap import dedent
from typer.testing import CliRunner

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from llmgate.cli import app  # type: ignore

runner = CliRunner()


@pytest.fixture
def cfg(tmp_path: Path) -> Path:
    p = tmp_path / "config" / "default.yaml"
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(dedent("""
        gateway:
          active_provider: echo
          enabled: [echo, openai]
        runtime:
          stream: true
        secrets:
          method: memory
        providers:
          echo: { token_delay: 0 }
        logging:
          level: ERROR
    """).lstrip("\n"), encoding="utf-8")
    return p


def test_repl_streams_a_reply_and_exits(cfg: Path):
    result = runner.invoke(app, ["--config", str(cfg)], input="hello\n/exit\n")
    assert result.exit_code == 0, result.output
    assert "llmgate chat (echo)" in result.output
    assert "Lorem ipsum" in result.output
    assert "Bye." in result.output


def test_repl_commands(cfg: Path):
    script = "/help\n/models\n/use nope\n/use openai\n/model gpt-4o-mini\n/clear\n"
    result = runner.invoke(app, ["--config", str(cfg), "chat"], input=script)
    assert result.exit_code == 0, result.output
    assert "/use <provider>" in result.output
    assert "* echo-lorem" in result.output
    assert "Unknown provider 'nope'" in result.output
    assert "Using openai (gpt-4o)." in result.output
    assert "Model set to gpt-4o-mini." in result.output
    assert "History cleared." in result.output
    # stdin ran out: EOF ends the loop
    assert result.output.rstrip().endswith("Bye.")


def test_repl_reports_missing_credentials(cfg: Path):
    result = runner.invoke(app, ["--config", str(cfg)], input="/use openai\nhello\n/exit\n")
    assert result.exit_code == 0, result.output
    assert "[openai] openai API key not configured." in result.output


def test_providers_table(cfg: Path):
    result = runner.invoke(app, ["--config", str(cfg), "providers"])
    assert result.exit_code == 0, result.output
    assert "* echo" in result.output
    assert "openai" in result.output


def test_models_command(cfg: Path):
    result = runner.invoke(app, ["--config", str(cfg), "models", "openai"])
    assert result.exit_code == 0, result.output
    assert "* gpt-4o" in result.output

    result = runner.invoke(app, ["--config", str(cfg), "models", "mystery"])
    assert result.exit_code == 1


def test_set_and_delete_key(cfg: Path):
    result = runner.invoke(app, ["--config", str(cfg), "set-key", "openai-api-key", "--value", "sk-x"])
    assert result.exit_code == 0, result.output
    assert "Saved openai-api-key." in result.output

    result = runner.invoke(app, ["--config", str(cfg), "delete-key", "openai-api-key"])
    assert result.exit_code == 0, result.output
    assert "Deleted openai-api-key." in result.output


def test_unknown_key_rejected(cfg: Path):
    result = runner.invoke(app, ["--config", str(cfg), "set-key", "nope", "--value", "x"])
    assert result.exit_code == 1


def test_compare_needs_two_providers(cfg: Path):
    result = runner.invoke(app, ["--config", str(cfg), "compare", "hi", "-p", "echo"])
    assert result.exit_code == 1


def test_backup_without_credentials_fails(cfg: Path, tmp_path: Path):
    source = tmp_path / "history.json"
    source.write_text("{}", encoding="utf-8")
    result = runner.invoke(app, ["--config", str(cfg), "backup", str(source)])
    assert result.exit_code == 1


def test_bare_model_command_shows_current_model(cfg: Path):
    result = runner.invoke(app, ["--config", str(cfg)], input="/model\n/model   \n/exit\n")
    assert result.exit_code == 0, result.output
    assert result.output.count("Current model: echo-lorem. Usage: /model <name>") == 2
    assert "Lorem" not in result.output
