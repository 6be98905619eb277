"""
Settings Repository

Key/value application settings. Not audited; kept out of reset_data().
"""

from typing import Any, Optional

from kite.models.base import utcnow
from kite.storage.interface import EntityStoreInterface


SETTINGS_TABLE = "settings"


class SettingsRepository:
    """Simple key/value access to the settings table."""

    def __init__(self, store: EntityStoreInterface):
        self._store = store

    async def get(self, key: str, default: Any = None) -> Any:
        record = self._store.get(SETTINGS_TABLE, key)
        return record["value"] if record else default

    async def set(self, key: str, value: Any) -> None:
        existing = self._store.get(SETTINGS_TABLE, key)
        now = utcnow().isoformat()
        self._store.put(SETTINGS_TABLE, {
            "id": key,
            "value": value,
            "created_at": existing["created_at"] if existing else now,
            "updated_at": now,
        })

    async def delete(self, key: str) -> bool:
        return self._store.delete(SETTINGS_TABLE, key)

    async def all(self) -> dict[str, Any]:
        return {record["id"]: record["value"] for record in self._store.scan(SETTINGS_TABLE)}

    async def get_many(self, keys: list[str]) -> dict[str, Optional[Any]]:
        return {key: await self.get(key) for key in keys}
