"""
Context backup archive.

Before a session's context is summarized, the full entity/relationship set
is written to ``context-backups/context-backup-{session_id}-{timestamp}.json``.
Backups are immutable; recovery only ever reads them.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections import Counter
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from chainstate.core.models import (
    BackupAnalysis,
    BackupMetadata,
    EntityFilter,
    EntityNode,
    RelationshipEdge,
    TimeRange,
)
from chainstate.domain.tokens.budget import TokenBudgetManager
from chainstate.infrastructure.persistence.record_files import write_json_file
from chainstate.utils.logging import get_logger, log_operation

logger = get_logger("recovery.backups")

BACKUP_DIR = "context-backups"
BACKUP_PREFIX = "context-backup"
_FILENAME_TIMESTAMP = re.compile(r"(\d{4}-\d{2}-\d{2})T(\d{2})-(\d{2})-(\d{2})(?:-(\d{6}))?")


class BackupContent(BaseModel):
    """Parsed body of a backup file."""

    session_id: str
    timestamp: datetime
    entities: list[EntityNode] = Field(default_factory=list)
    relationships: list[RelationshipEdge] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


def _timestamp_from_name(name: str) -> datetime | None:
    match = _FILENAME_TIMESTAMP.search(name)
    if not match:
        return None
    day, hour, minute, second, micro = match.groups()
    return datetime.fromisoformat(f"{day}T{hour}:{minute}:{second}.{micro or '000000'}+00:00")


class BackupArchive:
    """Reads and writes context backups under ``{state_dir}/context-backups``.

    Usage:
        archive = BackupArchive(state_dir, budget)
        await archive.write_backup(session_id, entities, relationships)
        backups = await archive.find_backups(session_id)
    """

    def __init__(self, state_dir: str | Path, budget: TokenBudgetManager):
        self.directory = Path(state_dir) / BACKUP_DIR
        self.budget = budget

    # ========== Writing ==========

    async def write_backup(
        self,
        session_id: str,
        entities: list[EntityNode],
        relationships: list[RelationshipEdge],
        timestamp: datetime | None = None,
    ) -> BackupMetadata:
        """Store the full context externally and return its metadata."""
        moment = timestamp or datetime.now(UTC)
        stamp = moment.strftime("%Y-%m-%dT%H-%M-%S-%f")
        path = self.directory / f"{BACKUP_PREFIX}-{session_id}-{stamp}.json"

        entity_types = dict(Counter(e.type.value for e in entities))
        payload = {
            "session_id": session_id,
            "timestamp": moment.isoformat(),
            "entities": [e.model_dump(mode="json") for e in entities],
            "relationships": [r.model_dump(mode="json") for r in relationships],
            "metadata": {
                "total_entities": len(entities),
                "total_relationships": len(relationships),
                "entity_types": entity_types,
            },
        }
        await asyncio.to_thread(write_json_file, path, payload)
        log_operation(logger, "Context backup written", {
            "session_id": session_id,
            "entities": len(entities),
            "relationships": len(relationships),
        })
        return await asyncio.to_thread(self._metadata_for, path, session_id)

    # ========== Discovery ==========

    async def find_backups(self, session_id: str) -> list[BackupMetadata]:
        """Backups whose file name contains ``session_id``, newest first.

        Unreadable files are logged and skipped.
        """
        return await asyncio.to_thread(self._find_sync, session_id)

    def _find_sync(self, session_id: str) -> list[BackupMetadata]:
        if not self.directory.exists():
            return []
        backups = []
        for path in sorted(self.directory.iterdir()):
            if not (path.is_file() and session_id in path.name and path.name.endswith(".json")):
                continue
            try:
                backups.append(self._metadata_for(path, session_id))
            except (OSError, ValueError) as exc:
                logger.warning(f"Skipping unreadable backup {path.name}: {exc}")
        return sorted(backups, key=lambda b: b.timestamp, reverse=True)

    def _metadata_for(self, path: Path, session_id: str) -> BackupMetadata:
        text = path.read_text(encoding="utf-8")
        data = json.loads(text)
        stat = path.stat()

        timestamp = None
        if isinstance(data.get("timestamp"), str):
            timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp is None:
            timestamp = _timestamp_from_name(path.name)
        if timestamp is None:
            timestamp = datetime.fromtimestamp(stat.st_mtime, UTC)
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)

        entities = data.get("entities") or []
        relationships = data.get("relationships") or []
        metadata = data.get("metadata") or {}
        entity_types = metadata.get("entity_types") or dict(
            Counter(e.get("type", "Unknown") for e in entities if isinstance(e, dict))
        )

        return BackupMetadata(
            file_path=str(path),
            session_id=session_id,
            timestamp=timestamp,
            total_entities=len(entities) or metadata.get("total_entities", 0),
            total_relationships=len(relationships) or metadata.get("total_relationships", 0),
            entity_types=entity_types,
            estimated_tokens=self.budget.estimate_text(text),
            file_size=stat.st_size,
        )

    # ========== Reading ==========

    async def load_backup(self, backup: BackupMetadata | str | Path) -> BackupContent:
        """Parse a backup file.

        Raises:
            OSError: If the file cannot be read
            json.JSONDecodeError / pydantic.ValidationError: If it is malformed
        """
        path = Path(backup.file_path if isinstance(backup, BackupMetadata) else backup)
        text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return BackupContent.model_validate_json(text)

    # ========== Analysis ==========

    async def analyze(
        self,
        session_id: str,
        entity_filter: EntityFilter | None = None,
    ) -> BackupAnalysis:
        """Aggregate statistics over a session's backups."""
        backups = await self.find_backups(session_id)
        if entity_filter is not None:
            backups = [b for b in backups if _backup_matches(b, entity_filter)]

        distribution: Counter[str] = Counter()
        for backup in backups:
            distribution.update(backup.entity_types)

        analysis = BackupAnalysis(
            available_backups=backups,
            total_files=len(backups),
            total_entities=sum(b.total_entities for b in backups),
            total_relationships=sum(b.total_relationships for b in backups),
            entity_distribution=dict(distribution),
            time_range=(
                TimeRange(
                    start=min(b.timestamp for b in backups),
                    end=max(b.timestamp for b in backups),
                )
                if backups else None
            ),
            estimated_total_tokens=sum(b.estimated_tokens for b in backups),
        )
        analysis.recommendations = self._recommendations(analysis)
        return analysis

    def _recommendations(self, analysis: BackupAnalysis) -> list[str]:
        if not analysis.total_files:
            return [
                "No backup files available for analysis",
                "Run analysis operations to generate backup files",
                "Check if token summarization has been triggered",
            ]
        recs = []
        budget = self.budget.max_tokens
        if analysis.estimated_total_tokens > budget:
            recs.append(
                f"Backups hold ~{analysis.estimated_total_tokens} tokens, more than the "
                f"{budget} budget; use selective or progressive recovery"
            )
        else:
            recs.append("All backups fit within the token budget; full recovery is safe")
        if analysis.total_files > 5:
            recs.append("Many backups exist; prefer the newest snapshots with a time-range filter")
        if analysis.entity_distribution:
            top_type, _ = Counter(analysis.entity_distribution).most_common(1)[0]
            recs.append(f"Most recovered entities will be {top_type}; filter by type to focus")
        return recs


def _backup_matches(backup: BackupMetadata, entity_filter: EntityFilter) -> bool:
    if entity_filter.time_range and not entity_filter.time_range.contains(backup.timestamp):
        return False
    if entity_filter.types:
        wanted = [t.lower() for t in entity_filter.types]
        if not any(w in t.lower() for t in backup.entity_types for w in wanted):
            return False
    return True
