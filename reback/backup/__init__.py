"""
Backup module for reback.

This module handles the core backup functionality including:
- Capture/restore adapters per element kind
- Compression
- Storage (S3 and local) and artifact placement
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, run_backup, run_restore, run_retention
from .sources import create_source, CaptureError, RestoreError
from .storage import S3Storage, LocalStorage, StorageError
from .placement import Placement, PlacementError, NothingToRestoreError
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'run_backup',
    'run_restore',
    'run_retention',
    'create_source',
    'CaptureError',
    'RestoreError',
    'S3Storage',
    'LocalStorage',
    'StorageError',
    'Placement',
    'PlacementError',
    'NothingToRestoreError',
    'RetentionManager'
]
