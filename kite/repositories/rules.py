"""
Rule Repository
"""

from typing import Iterable, Optional

from kite.models.entities import Rule
from kite.repositories.base import BaseRepository
from kite.rules.engine import RuleEngine, order_rules
from kite.storage.interface import ValidationError


class RuleRepository(BaseRepository[Rule]):
    model = Rule
    table = "rules"
    soft_delete = False

    async def get_enabled(self) -> list[Rule]:
        """Enabled rules in evaluation order."""
        return order_rules(self._query())

    async def engine(self) -> RuleEngine:
        return RuleEngine(self._query())

    async def reorder(self, rule_ids: Iterable[str], actor: Optional[str] = None) -> list[Rule]:
        """Set each rule's priority to its position in `rule_ids`, atomically."""
        ids = list(rule_ids)
        if len(set(ids)) != len(ids):
            raise ValidationError.single("rule_ids", "unique", "Rule ids must not repeat")

        def _reorder() -> list[Rule]:
            return [
                self._persist_update(rule_id, {"priority": index}, actor)
                for index, rule_id in enumerate(ids)
            ]

        return await self._atomic(_reorder)

    async def set_enabled(self, rule_id: str, enabled: bool, actor: Optional[str] = None) -> Rule:
        return await self.update(rule_id, {"enabled": enabled}, actor=actor)
