# tests/unit/test_config_loader.py

from __future__ import annotations
import sys
from pathlib import Path
import pytest
from textwrap import dedent

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from llmgate.config_loader import load_config, ConfigError  # type: ignore


def write_yaml(p: Path, text: str) -> Path:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(dedent(text).lstrip("\n").rstrip() + "\n", encoding="utf-8")
    return p


def test_load_config_ok(tmp_path: Path):
    cfg = write_yaml(
        tmp_path / "config" / "default.yaml",
        """
        gateway: { active_provider: ANTHROPIC, enabled: [Anthropic, echo] }
        runtime: { stream: true }
        secrets: { method: ENV }
        logging: { level: info, file: logs/gw.log }
        """,
    )
    data = load_config(cfg)
    assert data["gateway"]["active_provider"] == "anthropic"   # normalised
    assert data["gateway"]["enabled"] == ["anthropic", "echo"]
    assert data["secrets"]["method"] == ["env"]
    assert data["logging"]["level"] == "INFO"
    # loader leaves paths as provided (bootstrap resolves them)
    assert data["logging"]["file"] == "logs/gw.log"


def test_defaults_for_optional_sections(tmp_path: Path):
    cfg = write_yaml(
        tmp_path / "c.yaml",
        """
        gateway: { active_provider: echo }
        runtime: { stream: false }
        """,
    )
    data = load_config(cfg)
    assert data["secrets"]["method"] == ["env"]
    assert data["logging"]["level"] == "WARNING"


def test_shipped_default_config_is_valid():
    shipped = Path(__file__).resolve().parents[2] / "config" / "default.yaml"
    data = load_config(shipped)
    assert data["gateway"]["active_provider"] == "anthropic"


def test_load_config_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_load_config_empty(tmp_path: Path):
    with pytest.raises(ConfigError):
        load_config(write_yaml(tmp_path / "c.yaml", "# nothing"))


def test_load_config_missing_key(tmp_path: Path):
    cfg = write_yaml(
        tmp_path / "config" / "default.yaml",
        """
        gateway: {}                # missing active_provider
        runtime: { stream: true }
        """,
    )
    with pytest.raises(ConfigError, match="gateway.active_provider"):
        load_config(cfg)


def test_load_config_type_error(tmp_path: Path):
    cfg = write_yaml(
        tmp_path / "config" / "default.yaml",
        """
        gateway: { active_provider: openai }
        runtime: { stream: "yes" }   # wrong type
        """,
    )
    with pytest.raises(ConfigError):
        load_config(cfg)


@pytest.mark.parametrize("body", [
    "gateway: { active_provider: mystery }\nruntime: { stream: true }",
    "gateway: { active_provider: echo, enabled: [echo, mystery] }\nruntime: { stream: true }",
    "gateway: { active_provider: echo }\nruntime: { stream: true }\nsecrets: { method: [env, vault] }",
    "gateway: { active_provider: echo }\nruntime: { stream: true }\nproviders: { mystery: {} }",
    "gateway: { active_provider: echo }\nruntime: { stream: true }\nlogging: { level: LOUD }",
])
def test_load_config_rejects_unknown_values(tmp_path: Path, body: str):
    with pytest.raises(ConfigError):
        load_config(write_yaml(tmp_path / "c.yaml", body))
