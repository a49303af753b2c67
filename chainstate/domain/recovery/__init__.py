"""Context backups and budget-bounded recovery."""

from chainstate.domain.recovery.backups import BackupArchive, BackupContent
from chainstate.domain.recovery.orchestrator import RecoveryOrchestrator

__all__ = ["BackupArchive", "BackupContent", "RecoveryOrchestrator"]
