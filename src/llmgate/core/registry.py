# src/llmgate/core/registry.py
"""
Single owner of gateway state: registered adapters, the active backend,
per-backend settings and refreshed model lists.

Every mutation goes through `_transition`, which reads the current immutable
snapshot, computes the next one and publishes it under one lock. Readers
never lock; they just take whatever snapshot is current.
"""
from __future__ import annotations
import asyncio
import logging
import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from .errors import ProviderError
from .models import ModelSettings
from .ports import Provider

log = logging.getLogger(__name__)

DEFAULT_PROVIDER_ID = "anthropic"


def _empty() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True)
class _State:
    adapters: Mapping[str, Provider] = field(default_factory=_empty)
    order: Tuple[str, ...] = ()
    initialized: bool = False
    active_id: Optional[str] = None
    settings: Optional[ModelSettings] = None
    saved_settings: Mapping[str, ModelSettings] = field(default_factory=_empty)
    models: Mapping[str, Tuple[str, ...]] = field(default_factory=_empty)


def _with(mapping: Mapping[str, Any], key: str, value: Any) -> Mapping[str, Any]:
    d = dict(mapping)
    d[key] = value
    return MappingProxyType(d)


def _without(mapping: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    d = dict(mapping)
    d.pop(key, None)
    return MappingProxyType(d)


class ProviderRegistry:
    def __init__(
        self,
        *,
        default_id: str = DEFAULT_PROVIDER_ID,
        overrides: Optional[Dict[str, ModelSettings]] = None,
    ):
        self.default_id = default_id
        # Configured per-backend settings used in place of the built-in defaults
        self._overrides: Dict[str, ModelSettings] = dict(overrides or {})
        self._state = _State()
        self._lock = threading.Lock()
        self._tasks: Set[asyncio.Task] = set()

    # ----- state plumbing -----

    def _transition(self, step: Callable[[_State], _State]) -> _State:
        with self._lock:
            nxt = step(self._state)
            self._state = nxt
            return nxt

    def _initialized(self) -> _State:
        state = self._state
        if not state.initialized:
            raise RuntimeError("ProviderRegistry.initialize() has not been called")
        return state

    def _base_settings(self, provider_id: str) -> ModelSettings:
        override = self._overrides.get(provider_id)
        return override.copy() if override else ModelSettings.default_for(provider_id)

    def _fallback_id(self, state: _State) -> Optional[str]:
        if self.default_id in state.adapters:
            return self.default_id
        return state.order[0] if state.order else None

    # ----- adapters -----

    def register(self, adapter: Provider) -> bool:
        """Adds an adapter; returns False (and changes nothing) if its id is taken."""
        provider_id = adapter.descriptor.id
        added = []

        def step(s: _State) -> _State:
            if provider_id in s.adapters:
                return s
            added.append(provider_id)
            return replace(s, adapters=_with(s.adapters, provider_id, adapter), order=s.order + (provider_id,))

        self._transition(step)
        if added:
            log.debug("registered provider %s", provider_id)
        return bool(added)

    def unregister(self, provider_id: str) -> bool:
        removed = []

        def step(s: _State) -> _State:
            if provider_id not in s.adapters:
                return s
            removed.append(provider_id)
            nxt = replace(
                s,
                adapters=_without(s.adapters, provider_id),
                order=tuple(i for i in s.order if i != provider_id),
                saved_settings=_without(s.saved_settings, provider_id),
                models=_without(s.models, provider_id),
            )
            if s.active_id == provider_id:
                new_id = self._fallback_id(nxt)
                nxt = replace(
                    nxt,
                    active_id=new_id,
                    settings=self._restore(nxt, new_id) if new_id else None,
                )
            return nxt

        self._transition(step)
        return bool(removed)

    def get(self, provider_id: str) -> Provider:
        adapters = self._state.adapters
        if provider_id not in adapters:
            raise KeyError(f"Provider '{provider_id}' not registered")
        return adapters[provider_id]

    @property
    def adapters(self) -> List[Provider]:
        state = self._state
        return [state.adapters[i] for i in state.order]

    def ids(self) -> List[str]:
        return list(self._state.order)

    # ----- active backend -----

    def initialize(self, preferred_id: Optional[str] = None) -> str:
        """
        One-time setup. Picks the preferred backend when it is registered,
        otherwise the default id, otherwise whatever registered first.
        """
        def step(s: _State) -> _State:
            if s.initialized:
                raise RuntimeError("ProviderRegistry is already initialized")
            if not s.order:
                raise RuntimeError("No providers registered")
            if preferred_id and preferred_id in s.adapters:
                active = preferred_id
            else:
                if preferred_id:
                    log.warning("Provider '%s' is not registered; falling back", preferred_id)
                active = self._fallback_id(s)
            return replace(s, initialized=True, active_id=active, settings=self._restore(s, active))

        state = self._transition(step)
        log.info("active provider: %s", state.active_id)
        self._schedule_refresh(state.active_id)
        return state.active_id

    @property
    def active_id(self) -> str:
        return self._initialized().active_id

    @property
    def active(self) -> Provider:
        state = self._initialized()
        return state.adapters[state.active_id]

    def _restore(self, s: _State, provider_id: str) -> ModelSettings:
        saved = s.saved_settings.get(provider_id)
        return saved.copy() if saved else self._base_settings(provider_id)

    def set_active(self, provider_id: str) -> None:
        """
        Switch backends. Outgoing settings are saved; incoming ones are restored
        (or defaulted). A dynamic model list refresh is kicked off in the background
        when nothing is cached yet.
        """
        self._initialized()

        def step(s: _State) -> _State:
            if provider_id not in s.adapters:
                raise KeyError(f"Provider '{provider_id}' not registered")
            if s.active_id == provider_id:
                return s
            saved = _with(s.saved_settings, s.active_id, s.settings.copy())
            incoming = saved.get(provider_id)
            return replace(
                s,
                active_id=provider_id,
                saved_settings=saved,
                settings=incoming.copy() if incoming else self._base_settings(provider_id),
            )

        self._transition(step)
        log.info("active provider: %s", provider_id)
        self._schedule_refresh(provider_id)

    def _schedule_refresh(self, provider_id: str) -> None:
        state = self._state
        adapter = state.adapters.get(provider_id)
        if adapter is None or not adapter.descriptor.dynamic_models or state.models.get(provider_id):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: callers can await refresh_models() themselves
        task = loop.create_task(self.refresh_models(provider_id))
        self._tasks.add(task)
        task.add_done_callback(self._refresh_done)

    def _refresh_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("background model refresh failed: %r", exc)

    # ----- settings -----

    @property
    def settings(self) -> ModelSettings:
        return self._initialized().settings.copy()

    def update_settings(self, **changes: Any) -> ModelSettings:
        self._initialized()

        def step(s: _State) -> _State:
            return replace(s, settings=ModelSettings.from_dict(changes, base=s.settings))

        return self._transition(step).settings.copy()

    def settings_for(self, provider_id: str) -> ModelSettings:
        state = self._initialized()
        if provider_id == state.active_id:
            return state.settings.copy()
        return self._restore(state, provider_id)

    # ----- capability queries -----

    def is_configured(self, provider_id: str) -> bool:
        adapter = self._state.adapters.get(provider_id)
        return adapter is not None and adapter.is_configured()

    def configured(self) -> List[Provider]:
        return [a for a in self.adapters if a.is_configured()]

    def cached_models(self, provider_id: str) -> List[str]:
        """Only what a refresh has published; empty until the first successful refresh."""
        return list(self._state.models.get(provider_id, ()))

    def models_for(self, provider_id: str) -> List[str]:
        adapter = self.get(provider_id)
        cached = self._state.models.get(provider_id)
        return list(cached) if cached else list(adapter.descriptor.available_models)

    async def refresh_models(self, provider_id: str) -> List[str]:
        """
        Re-query a dynamic backend's model list. A failed or empty answer leaves
        the previous list in place; the active model is moved to the first listed
        one if it disappeared.
        """
        adapter = self.get(provider_id)
        if not adapter.descriptor.dynamic_models:
            return self.models_for(provider_id)
        try:
            infos = await adapter.list_models()
        except ProviderError as e:
            log.warning("could not refresh %s models: %s", provider_id, e.message)
            return self.models_for(provider_id)

        names = tuple(m.name for m in infos if not m.is_embedding_model)
        if not names:
            log.warning("%s reported no chat models; keeping the previous list", provider_id)
            return self.models_for(provider_id)

        def step(s: _State) -> _State:
            if provider_id not in s.adapters:
                return s
            nxt = replace(s, models=_with(s.models, provider_id, names))
            if s.initialized and s.active_id == provider_id and s.settings.model_name not in names:
                log.info("%s: model %r not installed, selecting %r", provider_id, s.settings.model_name, names[0])
                nxt = replace(nxt, settings=s.settings.copy(model_name=names[0]))
            return nxt

        self._transition(step)
        return list(names)
