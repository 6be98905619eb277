"""Backup export and import."""

from kite.backup.service import BackupEnvelope, BackupService, DocumentCipher

__all__ = [
    "BackupEnvelope",
    "BackupService",
    "DocumentCipher",
]
