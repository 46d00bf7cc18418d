"""Portal adapters, keyed by source."""

from everybot.adapters.base import SourceAdapter
from everybot.adapters.gratka import GratkaAdapter
from everybot.adapters.morizon import MorizonAdapter
from everybot.adapters.odwlasciciela import OdwlascicielaAdapter
from everybot.adapters.olx import OlxAdapter
from everybot.adapters.otodom import OtodomAdapter
from everybot.errors import ConfigError

ADAPTERS: dict[str, SourceAdapter] = {
    adapter.name: adapter
    for adapter in (
        OtodomAdapter(),
        OlxAdapter(),
        MorizonAdapter(),
        GratkaAdapter(),
        OdwlascicielaAdapter(),
    )
}


def get_adapter(source: str) -> SourceAdapter:
    """Return the adapter registered for ``source``."""
    adapter = ADAPTERS.get((source or "").lower())
    if adapter is None:
        raise ConfigError(f"Unsupported source: {source}")
    return adapter


__all__ = [
    "ADAPTERS",
    "GratkaAdapter",
    "MorizonAdapter",
    "OdwlascicielaAdapter",
    "OlxAdapter",
    "OtodomAdapter",
    "SourceAdapter",
    "get_adapter",
]
