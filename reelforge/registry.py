"""
Service Registry and Preference Resolver.

Maps capability keys to the adapters that serve them and chooses one for a
given user:

    1. the user's preference list for the key, first id that is registered;
    2. otherwise the key's default (the descriptor marked is_default, else
       the first registered).

A preferred id that is not registered for the key is an operator
misconfiguration: it is logged and skipped, never fatal.  Resolution reads
only immutable registry state and the preference store, so concurrent
workers may call it freely.

Usage:
    registry = ServiceRegistry(preferences=InMemoryPreferenceStore())
    registry.register(AdapterDescriptor("runway", "image"), FormFlowAdapter, factory)
    descriptor = registry.resolve("image", user_id="u1")
    adapter = registry.create(descriptor.adapter_id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type

from reelforge.adapter import Adapter
from reelforge.collaborators import PreferenceStore
from reelforge.config import AdapterConfig
from reelforge.errors import RegistryError, StageUnresolvable
from reelforge.models import AdapterDescriptor, parse_capability_key

logger = logging.getLogger("reelforge.registry")

AdapterFactory = Callable[[], Adapter]


@dataclass(frozen=True)
class _Registration:
    descriptor: AdapterDescriptor
    adapter_cls: Type[Adapter]


class ServiceRegistry:
    """Capability key -> ordered adapter registrations."""

    def __init__(self, preferences: Optional[PreferenceStore] = None) -> None:
        self._preferences = preferences
        self._by_key: Dict[str, List[_Registration]] = {}
        self._factories: Dict[str, AdapterFactory] = {}
        self._classes: Dict[str, Type[Adapter]] = {}

    # -- registration -------------------------------------------------------

    def register(
        self,
        descriptor: AdapterDescriptor,
        adapter_cls: Type[Adapter],
        factory: AdapterFactory,
    ) -> None:
        """Register *adapter_cls* for ``descriptor.capability_key``.

        Raises RegistryError when the class does not declare or implement
        the capability, or when the (adapter, key) pair is already taken.
        """
        try:
            capability, _ = parse_capability_key(descriptor.capability_key)
        except ValueError as exc:
            raise RegistryError(str(exc)) from None
        if capability not in adapter_cls.capabilities:
            raise RegistryError(
                f"{adapter_cls.__name__} does not declare capability '{capability.value}'"
            )
        if capability not in adapter_cls.implemented_capabilities():
            raise RegistryError(
                f"{adapter_cls.__name__} declares '{capability.value}' but does not implement it"
            )
        known_cls = self._classes.get(descriptor.adapter_id)
        if known_cls is not None and known_cls is not adapter_cls:
            raise RegistryError(
                f"adapter id '{descriptor.adapter_id}' already registered with {known_cls.__name__}"
            )
        entries = self._by_key.setdefault(descriptor.capability_key, [])
        if any(r.descriptor.adapter_id == descriptor.adapter_id for r in entries):
            raise RegistryError(
                f"'{descriptor.adapter_id}' already registered for '{descriptor.capability_key}'"
            )
        if descriptor.is_default and any(r.descriptor.is_default for r in entries):
            raise RegistryError(f"'{descriptor.capability_key}' already has a default adapter")
        entries.append(_Registration(descriptor, adapter_cls))
        self._classes[descriptor.adapter_id] = adapter_cls
        self._factories[descriptor.adapter_id] = factory
        logger.debug("Registered %s for %s", descriptor.adapter_id, descriptor.capability_key)

    # -- queries ------------------------------------------------------------

    def keys(self) -> List[str]:
        return list(self._by_key)

    def adapter_ids(self) -> List[str]:
        return list(self._factories)

    def candidates(self, key: str) -> List[AdapterDescriptor]:
        return [r.descriptor for r in self._by_key.get(key, [])]

    def default(self, key: str) -> Optional[AdapterDescriptor]:
        entries = self.candidates(key)
        if not entries:
            return None
        return next((d for d in entries if d.is_default), entries[0])

    def resolve(self, key: str, user_id: Optional[str] = None) -> AdapterDescriptor:
        """Choose the adapter for *key* on behalf of *user_id*."""
        candidates = self.candidates(key)
        if not candidates:
            raise StageUnresolvable(key)
        if user_id and self._preferences is not None:
            pref = self._preferences.get(user_id, key)
            if pref is not None:
                by_id = {d.adapter_id: d for d in candidates}
                for adapter_id in pref.ordered_adapter_ids:
                    if adapter_id in by_id:
                        return by_id[adapter_id]
                    logger.warning(
                        "User %s prefers '%s' for %s but it is not registered; skipping",
                        user_id, adapter_id, key,
                    )
        return self.default(key)

    def create(self, adapter_id: str) -> Adapter:
        """Build a fresh, unopened adapter instance."""
        try:
            factory = self._factories[adapter_id]
        except KeyError:
            raise RegistryError(f"unknown adapter '{adapter_id}'") from None
        return factory()

    def describe(self) -> List[Dict[str, Any]]:
        rows = []
        for key, entries in self._by_key.items():
            default = self.default(key)
            for r in entries:
                rows.append({
                    "capability_key": key,
                    "adapter_id": r.descriptor.adapter_id,
                    "class": r.adapter_cls.__name__,
                    "default": default is not None and r.descriptor.adapter_id == default.adapter_id,
                    "session_key": r.descriptor.session_key,
                })
        return rows


def build_registry(
    configs: List[AdapterConfig],
    make_factory: Callable[[AdapterConfig, Type[Adapter]], AdapterFactory],
    class_for_kind: Callable[[str], Type[Adapter]],
    preferences: Optional[PreferenceStore] = None,
) -> ServiceRegistry:
    """Register every capability of every configured adapter, in file order."""
    registry = ServiceRegistry(preferences=preferences)
    for config in configs:
        adapter_cls = class_for_kind(config.kind)
        factory = make_factory(config, adapter_cls)
        for key in config.capabilities:
            registry.register(
                AdapterDescriptor(
                    adapter_id=config.adapter_id,
                    capability_key=key,
                    is_default=key in config.default_for,
                    session_key=config.session_key,
                ),
                adapter_cls,
                factory,
            )
    logger.info(
        "Registry built: %d adapter(s) across %d capability key(s)",
        len(registry.adapter_ids()), len(registry.keys()),
    )
    return registry
