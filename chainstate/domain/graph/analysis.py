"""
Graph analysis for chainstate.

NetworkX views over the stored discovery graph: chain validation, session
reports, and YAML / DOT / JSON exports.
"""

from __future__ import annotations

import asyncio
import json
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import networkx as nx
import yaml

from chainstate.core.models import (
    ChainStatus,
    DiscoveryChain,
    EntityNode,
    RelationshipEdge,
)
from chainstate.core.models.work import can_transition_chain
from chainstate.core.results import CoreError
from chainstate.domain.graph.store import GraphStore
from chainstate.utils.logging import get_logger, log_operation

logger = get_logger("graph.analysis")

EXPORTS_DIR = "exports"

ExportFormat = Literal["yaml", "dot", "json"]


# ============================================================================
# Result Types
# ============================================================================


@dataclass
class ChainValidation:
    """Outcome of validating one chain against the stored graph."""

    chain_id: str
    is_valid: bool = True
    missing_entities: list[str] = field(default_factory=list)
    missing_links: list[str] = field(default_factory=list)
    has_cycle: bool = False
    unprocessed_entities: list[str] = field(default_factory=list)
    suggested_status: ChainStatus = ChainStatus.COMPLETE

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["suggested_status"] = self.suggested_status.value
        return data


@dataclass
class GraphMetrics:
    node_count: int = 0
    edge_count: int = 0
    density: float = 0.0
    component_count: int = 0
    is_connected: bool = False
    average_degree: float = 0.0
    hubs: list[tuple[str, float]] = field(default_factory=list)


# ============================================================================
# Graph Construction
# ============================================================================


def build_graph(
    entities: list[EntityNode],
    relationships: list[RelationshipEdge],
) -> nx.DiGraph:
    """Directed graph of entities; edges to unknown ids still add bare nodes."""
    G = nx.DiGraph()
    for entity in entities:
        G.add_node(
            entity.id,
            type=entity.type.value,
            file_path=entity.file_path,
            priority=entity.priority,
            processed=entity.processed,
        )
    for edge in relationships:
        G.add_edge(
            edge.from_entity_id,
            edge.to_entity_id,
            id=edge.id,
            type=edge.relationship_type.value,
            strength=edge.strength,
        )
    return G


def compute_metrics(G: nx.DiGraph, top_n: int = 5) -> GraphMetrics:
    if G.number_of_nodes() == 0:
        return GraphMetrics()

    metrics = GraphMetrics(
        node_count=G.number_of_nodes(),
        edge_count=G.number_of_edges(),
        density=nx.density(G),
        component_count=nx.number_weakly_connected_components(G),
        is_connected=nx.is_weakly_connected(G),
        average_degree=sum(dict(G.degree()).values()) / G.number_of_nodes(),
    )
    centrality = nx.degree_centrality(G)
    metrics.hubs = sorted(centrality.items(), key=lambda kv: (-kv[1], kv[0]))[:top_n]
    return metrics


# ============================================================================
# Chain Validation
# ============================================================================


def validate_chain_path(
    chain: DiscoveryChain,
    G: nx.DiGraph,
    known_entities: dict[str, EntityNode],
) -> ChainValidation:
    """Check that every hop in ``chain.chain_path`` is an edge in ``G``.

    Hops are checked in either direction. Missing entities and broken hops
    make the chain partial; an empty path is blocked.
    """
    result = ChainValidation(chain_id=chain.id)
    path = chain.chain_path
    if not path:
        result.is_valid = False
        result.suggested_status = ChainStatus.BLOCKED
        return result

    result.missing_entities = [eid for eid in path if eid not in known_entities]
    result.unprocessed_entities = [
        eid for eid in path
        if eid in known_entities and not known_entities[eid].processed
    ]

    for source, target in zip(path, path[1:]):
        if not (G.has_edge(source, target) or G.has_edge(target, source)):
            result.missing_links.append(f"{source}->{target}")

    sub = G.subgraph(path)
    try:
        nx.find_cycle(sub)
        result.has_cycle = True
    except nx.NetworkXNoCycle:
        result.has_cycle = False

    if result.missing_entities or result.missing_links:
        result.is_valid = False
        result.suggested_status = ChainStatus.PARTIAL
    elif result.unprocessed_entities:
        result.suggested_status = ChainStatus.IN_PROGRESS
    return result


async def validate_chains(
    store: GraphStore,
    chain_ids: list[str] | None = None,
    apply: bool = False,
) -> list[ChainValidation]:
    """Validate stored chains; with ``apply`` persist the suggested status
    whenever the transition is legal."""
    entities = await store.get_all_entities()
    G = build_graph(entities, await store.get_all_relationships())
    known = {e.id: e for e in entities}

    chains = await store.get_all_chains()
    if chain_ids is not None:
        wanted = set(chain_ids)
        missing = wanted - {c.id for c in chains}
        if missing:
            raise CoreError.not_found("Chain", sorted(missing)[0])
        chains = [c for c in chains if c.id in wanted]

    results = []
    for chain in chains:
        validation = validate_chain_path(chain, G, known)
        results.append(validation)
        if apply:
            await _apply_status(store, chain, validation)
    return results


async def _apply_status(store: GraphStore, chain: DiscoveryChain, validation: ChainValidation) -> None:
    current = chain.completion_status
    target = validation.suggested_status
    if current == target:
        if validation.missing_links != chain.missing_links:
            await store.update_chain_status(chain.id, target, validation.missing_links)
        return

    # A pending chain has to start before it can finish
    if current == ChainStatus.PENDING and not can_transition_chain(current, target):
        await store.update_chain_status(chain.id, ChainStatus.IN_PROGRESS)
        current = ChainStatus.IN_PROGRESS

    if can_transition_chain(current, target):
        await store.update_chain_status(chain.id, target, validation.missing_links)
    else:
        logger.debug(f"Chain {chain.id}: keeping {current.value}, cannot move to {target.value}")


# ============================================================================
# Reports
# ============================================================================


async def generate_report(store: GraphStore, session_id: str) -> dict[str, Any]:
    """Build and persist ``reports/{session_id}.json``."""
    session = await store.require_session(session_id)
    entities = await store.get_all_entities()
    relationships = await store.get_all_relationships()
    chains = await store.get_all_chains()
    queue = await store.get_work_queue_stats()

    G = build_graph(entities, relationships)
    metrics = compute_metrics(G)
    known = {e.id: e for e in entities}
    validations = [validate_chain_path(c, G, known) for c in chains]

    processed = sum(1 for e in entities if e.processed)
    chain_status = Counter(c.completion_status.value for c in chains)
    completion = processed / len(entities) if entities else 0.0

    report = {
        "session_id": session_id,
        "generated_at": datetime.now(UTC).isoformat(),
        "summary": {
            "task_description": session.task_description,
            "phase": session.current_phase.value,
            "total_entities": len(entities),
            "total_relationships": len(relationships),
            "total_chains": len(chains),
        },
        "entity_statistics": {
            "by_type": dict(Counter(e.type.value for e in entities)),
            "by_priority": dict(sorted(Counter(e.priority for e in entities).items())),
            "by_discovery_method": dict(Counter(e.discovery_method.value for e in entities)),
            "processed": processed,
            "unprocessed": len(entities) - processed,
        },
        "relationship_statistics": dict(Counter(r.relationship_type.value for r in relationships)),
        "chain_analysis": {
            "by_status": dict(chain_status),
            "average_length": (
                sum(len(c.chain_path) for c in chains) / len(chains) if chains else 0.0
            ),
            "invalid_chains": [v.chain_id for v in validations if not v.is_valid],
            "chains_with_cycles": [v.chain_id for v in validations if v.has_cycle],
        },
        "graph_metrics": asdict(metrics),
        "completeness": {
            "entity_completion": round(completion, 4),
            "chains_complete": chain_status.get(ChainStatus.COMPLETE.value, 0),
        },
        "work_queue": queue,
        "recommendations": _recommendations(completion, queue, validations, metrics),
    }
    await store.save_report(session_id, report)
    log_operation(logger, "Report generated", {"session_id": session_id, "entities": len(entities)})
    return report


def _recommendations(
    completion: float,
    queue: dict[str, Any],
    validations: list[ChainValidation],
    metrics: GraphMetrics,
) -> list[str]:
    recs = []
    if completion < 0.5:
        recs.append("Less than half of discovered entities are processed; continue analysis")
    if queue.get("failed"):
        recs.append(f"Review {queue['failed']} failed work items")
    if queue.get("blocked"):
        recs.append(f"Unblock {queue['blocked']} blocked work items")
    broken = [v for v in validations if v.missing_links]
    if broken:
        recs.append(f"Resolve missing links in {len(broken)} chain(s)")
    if metrics.component_count > 1:
        recs.append(
            f"Graph has {metrics.component_count} disconnected components; map cross-component relationships"
        )
    if not recs:
        recs.append("Discovery state is consistent")
    return recs


# ============================================================================
# Exports
# ============================================================================


def _to_dot(G: nx.DiGraph, name: str = "discovery") -> str:
    lines = [f'digraph "{name}" {{', "  rankdir=LR;"]
    for node, attrs in G.nodes(data=True):
        label = f"{node}\\n{attrs['type']}" if attrs.get("type") else str(node)
        lines.append(f'  "{node}" [label="{label}"];')
    for source, target, attrs in G.edges(data=True):
        lines.append(f'  "{source}" -> "{target}" [label="{attrs.get("type", "")}"];')
    lines.append("}")
    return "\n".join(lines) + "\n"


async def export_graph(
    store: GraphStore,
    session_id: str,
    fmt: ExportFormat = "yaml",
    write: bool = True,
) -> tuple[str, Path | None]:
    """Render the discovery state and optionally write ``exports/{session_id}.{fmt}``."""
    await store.require_session(session_id)
    entities = await store.get_all_entities()
    relationships = await store.get_all_relationships()

    if fmt == "yaml":
        chains = await store.get_all_chains()
        payload = {
            "session_id": session_id,
            "entities": [e.model_dump(mode="json") for e in entities],
            "relationships": [r.model_dump(mode="json") for r in relationships],
            "chains": [c.model_dump(mode="json") for c in chains],
        }
        text = yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)
    elif fmt == "dot":
        text = _to_dot(build_graph(entities, relationships), session_id)
    elif fmt == "json":
        data = nx.node_link_data(build_graph(entities, relationships))
        text = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    else:
        raise CoreError.validation(f"Unsupported export format: {fmt}")

    path = None
    if write:
        path = store.state_dir / EXPORTS_DIR / f"{session_id}.{fmt}"
        await asyncio.to_thread(_write_text, path, text)
        log_operation(logger, "Exported graph", {"session_id": session_id, "format": fmt})
    return text, path


def _write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
