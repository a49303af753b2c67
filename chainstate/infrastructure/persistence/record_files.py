"""
JSON record files for chainstate.

One ``RecordFileStore`` owns one namespace directory under the state root
(``entities/``, ``work-items/``, ...) and stores each record as
``{record_id}.json``. Blocking file I/O runs in a worker thread so the
event loop only yields at these boundaries.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any


# ============================================================================
# Synchronous helpers
# ============================================================================


def write_json_file(path: Path, data: Any) -> Path:
    """Write ``data`` to ``path`` atomically (temp file + replace)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False, default=str)
    os.replace(tmp_path, path)
    return path


def read_json_file(path: Path) -> Any | None:
    """Read a JSON file; None if it does not exist.

    Raises:
        json.JSONDecodeError: If the file exists but is malformed
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None


# ============================================================================
# Record File Store
# ============================================================================


class RecordFileStore:
    """Async JSON storage for one record namespace.

    Usage:
        store = RecordFileStore(state_dir / "entities")
        await store.write("UserService", entity.model_dump(mode="json"))
        data = await store.read("UserService")
    """

    SUFFIX = ".json"

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, record_id: str) -> Path:
        return self.directory / f"{record_id}{self.SUFFIX}"

    def ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    async def write(self, record_id: str, data: Any) -> Path:
        return await asyncio.to_thread(write_json_file, self.path_for(record_id), data)

    async def read(self, record_id: str) -> Any | None:
        return await asyncio.to_thread(read_json_file, self.path_for(record_id))

    async def exists(self, record_id: str) -> bool:
        return await asyncio.to_thread(self.path_for(record_id).exists)

    async def list_ids(self) -> list[str]:
        """Record ids in this namespace, sorted by name."""
        return await asyncio.to_thread(self._list_ids_sync)

    async def read_all(self) -> list[Any]:
        """Read every record in the namespace (sorted by id)."""
        return await asyncio.to_thread(self._read_all_sync)

    def _list_ids_sync(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(
            p.stem for p in self.directory.iterdir()
            if p.is_file() and p.suffix == self.SUFFIX
        )

    def _read_all_sync(self) -> list[Any]:
        records = []
        for record_id in self._list_ids_sync():
            data = read_json_file(self.path_for(record_id))
            if data is not None:
                records.append(data)
        return records

    def child(self, name: str) -> "RecordFileStore":
        """Store for a sub-directory (e.g. per-session checkpoints)."""
        return RecordFileStore(self.directory / name)
