# data_access/__init__.py
"""Expose the narrative store interface and its Neo4j implementation.

`Neo4jNarrativeStore` is resolved lazily so that importing the protocol does
not pull in the Neo4j driver.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

from data_access.narrative_store import NarrativeStore

_EXPORTS: dict[str, tuple[str, str]] = {
    "Neo4jNarrativeStore": ("data_access.neo4j_store", "Neo4jNarrativeStore"),
}

__all__ = ["NarrativeStore", *_EXPORTS]


def __getattr__(name: str) -> Any:
    target = _EXPORTS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    value = getattr(import_module(module_name), attr_name)
    globals()[name] = value
    return value
