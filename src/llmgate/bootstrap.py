from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from dotenv import load_dotenv

import httpx

from .backup.s3_backup import S3BackupClient
from .config_loader import KNOWN_PROVIDERS, ConfigError, load_config
from .core.chat_session import ChatSession
from .core.models import ModelSettings
from .core.orchestrator import StreamOrchestrator
from .core.ports import SecretStore
from .core.registry import ProviderRegistry
from .core.usage import UsageLedger
from .logging_config import init_logging
from .providers.registry import AdapterCatalog
from .resilience.resilient_provider import ResiliencePolicy, ResilientProvider
from .secrets.sources import DEFAULT_SERVICE, build_secret_store

log = logging.getLogger(__name__)


def _settings_overrides(cfg: Dict[str, Any]) -> Dict[str, ModelSettings]:
    stream = cfg["runtime"]["stream"]
    configured = cfg.get("settings") or {}
    overrides = {}
    for provider_id in KNOWN_PROVIDERS:
        base = ModelSettings.default_for(provider_id)
        if not stream:
            base = base.copy(use_streaming=False)
        data = configured.get(provider_id)
        if data:
            try:
                base = ModelSettings.from_dict(data, base=base)
            except ValueError as e:
                raise ConfigError(f"settings.{provider_id}: {e}") from e
        overrides[provider_id] = base
    return overrides


def build_app(
    config_path: Path,
    *,
    secrets: Optional[SecretStore] = None,
    client: Optional[httpx.AsyncClient] = None,
    repo_root: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Composition root: load YAML, build every enabled backend (wrapped with
    resilience) into a registry, and the orchestrator/session on top of it.
    Returns: dict with cfg, paths, secrets, registry, usage, orchestrator, session, backup.
    """
    load_dotenv()
    cfg = load_config(config_path)
    config_dir = config_path.resolve().parent
    repo_root = repo_root or Path(__file__).resolve().parents[2]

    # ----- Logging -----
    log_cfg = cfg["logging"]
    log_file = log_cfg.get("file")
    if log_file:
        log_file = Path(log_file)
        log_file = log_file if log_file.is_absolute() else (repo_root / log_file)
    init_logging(log_cfg["level"], log_file)

    # ----- Secrets -----
    if secrets is None:
        secrets_cfg = cfg["secrets"]
        secrets = build_secret_store(
            secrets_cfg["method"],
            secrets_cfg.get("mapping") or {},
            service=secrets_cfg.get("keyring_service", DEFAULT_SERVICE),
        )

    # ----- Providers -----
    AdapterCatalog.ensure_imports()  # make sure built-ins register

    gateway = cfg["gateway"]
    enabled = gateway.get("enabled") or AdapterCatalog.names()
    providers_cfg = cfg.get("providers") or {}
    policy = ResiliencePolicy.from_config(cfg.get("resilience"))

    registry = ProviderRegistry(default_id=gateway["active_provider"], overrides=_settings_overrides(cfg))
    for provider_id in enabled:
        Adapter = AdapterCatalog.get(provider_id)
        inner = Adapter.create(secrets=secrets, provider_cfg=providers_cfg.get(provider_id) or {}, client=client)
        registry.register(ResilientProvider(inner, policy=policy))
    registry.initialize(gateway["active_provider"])

    # ----- Session -----
    usage = UsageLedger()
    orchestrator = StreamOrchestrator(registry, usage)
    session = ChatSession(orchestrator, context=cfg.get("context") or {})

    backup_cfg = cfg.get("backup") or {}
    backup = S3BackupClient(secrets, prefix=backup_cfg.get("prefix", "llmgate-backups/"), client=client)

    log.debug("configured backends: %s", [a.descriptor.id for a in registry.configured()])
    return {
        "cfg": cfg,
        "paths": {"config_dir": config_dir, "repo_root": repo_root},
        "secrets": secrets,
        "registry": registry,
        "usage": usage,
        "orchestrator": orchestrator,
        "session": session,
        "backup": backup,
    }
