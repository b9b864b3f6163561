"""tradesync.providers.registry

All adapters report for duty.

Registry responsibilities:
- @register("name", kind="...") decorator
- lookup/list helpers
- construction with a shared ProviderContext

Adapters register by being imported; `tradesync.providers` imports each
adapter module explicitly. The table is static: no package scanning.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from tradesync.core.exceptions import ConfigError
from tradesync.providers.base import ProviderAdapter, ProviderContext

_REGISTRY: dict[str, type[ProviderAdapter]] = {}


def register(name: str, *, kind: str) -> Callable[[type[Any]], type[Any]]:
    def _decorator(cls: type[Any]) -> type[Any]:
        if name in _REGISTRY and _REGISTRY[name] is not cls:
            raise ValueError(f"provider already registered: {name}")

        setattr(cls, "name", name)
        setattr(cls, "kind", kind)
        _REGISTRY[name] = cls
        return cls

    return _decorator


def get_provider(name: str) -> type[ProviderAdapter]:
    try:
        return _REGISTRY[name.lower()]
    except KeyError:
        raise ConfigError(f"unknown provider: {name}") from None


def list_providers(kind: str | None = None) -> list[str]:
    if kind is None:
        return sorted(_REGISTRY)
    return sorted(n for n, cls in _REGISTRY.items() if getattr(cls, "kind", None) == kind)


def create_provider(name: str, ctx: ProviderContext) -> ProviderAdapter:
    return get_provider(name)(ctx)
