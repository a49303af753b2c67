"""File-per-record JSON persistence."""

from chainstate.infrastructure.persistence.record_files import (
    RecordFileStore,
    read_json_file,
    write_json_file,
)

__all__ = ["RecordFileStore", "read_json_file", "write_json_file"]
