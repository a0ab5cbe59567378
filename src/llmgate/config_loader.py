# src/llmgate/config_loader.py

from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Iterable
import yaml

KNOWN_PROVIDERS = ("anthropic", "openai", "grok", "gemini", "huggingface", "ollama", "bedrock", "echo")
SECRET_METHODS = ("env", "keyring", "memory")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ValueError):
    pass


def _require(d: Dict[str, Any], dotted: str, typ: type) -> Any:
    cur: Any = d
    for k in dotted.split("."):
        if not isinstance(cur, dict) or k not in cur:
            raise ConfigError(f"Missing config key: {dotted}")
        cur = cur[k]
    if typ is bool and not isinstance(cur, bool):
        raise ConfigError(f"'{dotted}' must be a boolean")
    if typ is str and not isinstance(cur, str):
        raise ConfigError(f"'{dotted}' must be a string")
    return cur


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return value


def _check_ids(ids: Iterable[str], where: str) -> None:
    for pid in ids:
        if pid not in KNOWN_PROVIDERS:
            raise ConfigError(f"Unknown provider '{pid}' in {where} (expected one of {', '.join(KNOWN_PROVIDERS)}).")


def load_config(path: Path) -> Dict[str, Any]:
    if not path or not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = yaml.safe_load(path.read_text())
    if not isinstance(raw, dict) or not raw:
        raise ConfigError(f"Config is empty or invalid YAML: {path}")

    # Validate required keys (no defaults here)
    _require(raw, "gateway.active_provider", str)
    _require(raw, "runtime.stream", bool)

    # Normalise enumerations
    active = raw["gateway"]["active_provider"].strip().lower()
    _check_ids([active], "gateway.active_provider")
    raw["gateway"]["active_provider"] = active

    enabled = raw["gateway"].get("enabled")
    if enabled is not None:
        if not isinstance(enabled, list):
            raise ConfigError("'gateway.enabled' must be a list")
        enabled = [str(p).strip().lower() for p in enabled]
        _check_ids(enabled, "gateway.enabled")
        raw["gateway"]["enabled"] = enabled

    secrets = _section(raw, "secrets")
    method = secrets.get("method", "env")
    methods = [method] if isinstance(method, str) else list(method or [])
    methods = [str(m).strip().lower() for m in methods]
    if not methods:
        raise ConfigError("'secrets.method' must name at least one store")
    for m in methods:
        if m not in SECRET_METHODS:
            raise ConfigError(f"Unknown secrets.method '{m}' (expected one of {', '.join(SECRET_METHODS)}).")
    secrets["method"] = methods
    raw["secrets"] = secrets

    _check_ids(_section(raw, "providers"), "providers")
    _check_ids(_section(raw, "settings"), "settings")

    logging_cfg = _section(raw, "logging")
    level = str(logging_cfg.get("level", "WARNING")).upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f"Unknown logging.level '{level}'.")
    logging_cfg["level"] = level
    raw["logging"] = logging_cfg

    # Leave paths as provided; resolve them later in bootstrap
    return raw
