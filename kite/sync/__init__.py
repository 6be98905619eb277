"""
Sync Package

Atomic unit management, the read cache, the change notification channel,
the offline write queue and the optimistic update protocol.
"""

from kite.sync.cache import QueryCache, make_cache_key
from kite.sync.events import ChangeEvent, ChangeNotifier, ChangeStream
from kite.sync.manager import TransactionManager
from kite.sync.optimistic import ChangeState, OptimisticView, TentativeChange
from kite.sync.queue import OfflineQueue

__all__ = [
    "ChangeEvent",
    "ChangeNotifier",
    "ChangeState",
    "ChangeStream",
    "OfflineQueue",
    "OptimisticView",
    "QueryCache",
    "TentativeChange",
    "TransactionManager",
    "make_cache_key",
]
