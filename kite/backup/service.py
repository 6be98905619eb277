"""
Backup Service

Exports the store to a versioned JSON envelope and imports it back.

Envelope:
    {"version": <schema version>, "timestamp": <iso>, "data": {<table>: [records]}}

Export pipeline: JSON -> optional cipher -> optional gzip.
Import reverses it: optional gunzip -> optional decipher -> JSON.

DESIGN DECISION: Encryption is pluggable, not built in.
The service accepts any object with encrypt/decrypt over bytes and never
touches keys. Key management belongs to the caller.
"""

import gzip
import json
import zlib
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol, Union

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from kite.audit.logger import AuditLogger
from kite.models.audit import AuditEventBuilder
from kite.models.base import utcnow
from kite.storage.interface import EntityStoreInterface, ImportFormatError
from kite.storage.schema import APP_META_TABLE, BACKUP_TABLES
from kite.sync.manager import TransactionManager


logger = structlog.get_logger(__name__)


class DocumentCipher(Protocol):
    """Whole-document encryption hook."""

    def encrypt(self, data: bytes) -> bytes:
        ...

    def decrypt(self, data: bytes) -> bytes:
        ...


class BackupEnvelope(BaseModel):
    version: int = Field(..., ge=1)
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)


class BackupService:
    """
    Usage:
        content = backup.export(compress=True)
        counts = await backup.import_backup(content, compressed=True)
    """

    def __init__(
        self,
        store: EntityStoreInterface,
        manager: TransactionManager,
        audit: AuditLogger,
    ):
        self._store = store
        self._manager = manager
        self._audit = audit

    def _importable_tables(self) -> set[str]:
        return set(self._store.table_names()) - {APP_META_TABLE}

    def build_envelope(self, tables: Optional[Iterable[str]] = None) -> BackupEnvelope:
        names = list(tables) if tables is not None else [
            t for t in BACKUP_TABLES if t in self._store.table_names()
        ]
        return BackupEnvelope(
            version=self._store.schema_version,
            data={name: self._store.scan(name) for name in names},
        )

    def export(
        self,
        tables: Optional[Iterable[str]] = None,
        compress: bool = False,
        cipher: Optional[DocumentCipher] = None,
    ) -> bytes:
        """Serialize the selected tables (entity tables and settings by default)."""
        envelope = self.build_envelope(tables)
        content = envelope.model_dump_json().encode("utf-8")
        if cipher is not None:
            content = cipher.encrypt(content)
        if compress:
            content = gzip.compress(content)

        logger.info(
            "backup_exported",
            tables={name: len(rows) for name, rows in envelope.data.items()},
            compressed=compress,
            encrypted=cipher is not None,
            size_bytes=len(content),
        )
        return content

    def _decode(
        self,
        content: Union[bytes, str],
        compressed: bool,
        cipher: Optional[DocumentCipher],
    ) -> BackupEnvelope:
        if isinstance(content, str):
            content = content.encode("utf-8")

        if compressed:
            try:
                content = gzip.decompress(content)
            except (OSError, EOFError, zlib.error) as e:
                raise ImportFormatError(f"Backup is not valid gzip data: {e}") from e

        if cipher is not None:
            try:
                content = cipher.decrypt(content)
            except Exception as e:
                raise ImportFormatError(f"Backup could not be decrypted: {e}") from e

        try:
            document = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ImportFormatError(f"Backup is not valid JSON: {e}") from e

        if not isinstance(document, dict) or not document.get("version") or "data" not in document:
            raise ImportFormatError("Invalid backup file format: version and data are required")
        if not isinstance(document["version"], int) or isinstance(document["version"], bool):
            raise ImportFormatError(f"Invalid backup version: {document['version']!r}")
        if document["version"] > self._store.schema_version:
            raise ImportFormatError(
                f"Backup file is from a newer version "
                f"({document['version']} > {self._store.schema_version})"
            )

        try:
            envelope = BackupEnvelope.model_validate(document)
        except PydanticValidationError as e:
            raise ImportFormatError(f"Invalid backup file format: {e}") from e

        unknown = set(envelope.data) - self._importable_tables()
        if unknown:
            raise ImportFormatError(f"Backup contains unknown tables: {sorted(unknown)}")
        for name, records in envelope.data.items():
            if any(not isinstance(r.get("id"), str) for r in records):
                raise ImportFormatError(f"Every record in {name} needs a string id")
        return envelope

    async def import_backup(
        self,
        content: Union[bytes, str],
        merge: bool = False,
        compressed: bool = False,
        cipher: Optional[DocumentCipher] = None,
        actor: Optional[str] = None,
    ) -> dict[str, int]:
        """
        Load a backup in one atomic unit.

        merge=False replaces every table present in the backup; merge=True
        upserts into existing rows. Returns the record count per table.

        Raises:
            ImportFormatError: Undecodable, incomplete, newer or unknown-table backup.
        """
        envelope = self._decode(content, compressed, cipher)
        counts = {name: len(records) for name, records in envelope.data.items()}
        notifier = self._manager.notifier

        async def _import() -> None:
            for name, records in envelope.data.items():
                if not merge:
                    self._store.clear(name)
                self._store.bulk_put(name, records)
                self._store.after_commit(lambda name=name: notifier.publish(name, "import"))
            self._audit.record(AuditEventBuilder.imported(counts, merge, actor))

        await self._manager.execute(_import)
        logger.info("backup_imported", tables=counts, merge=merge, version=envelope.version)
        return counts
