"""Durable discovery graph: storage, caching, and analysis."""

from chainstate.domain.graph.cache import BoundedCache
from chainstate.domain.graph.store import GraphStore

__all__ = ["BoundedCache", "GraphStore"]
