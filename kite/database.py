"""
Database

Composition root: builds one store and wires every service and
repository around it.

DESIGN DECISION: No module-level handle.
Each Database owns its store, cache, notifier and queue, so tests (and
applications) can hold several isolated instances side by side.
"""

from typing import Any, Optional

import structlog

from kite.audit.logger import AuditLogger
from kite.backup.service import BackupService
from kite.budgeting.ledger import BudgetLedgerCalculator
from kite.config.settings import Settings, get_settings
from kite.models.audit import AuditEventBuilder
from kite.models.queries import DatabaseStats, IntegrityReport, TableStats
from kite.repositories import (
    AccountRepository,
    BudgetRepository,
    CategoryRepository,
    RepositoryContext,
    RuleRepository,
    SettingsRepository,
    SubscriptionRepository,
    TransactionRepository,
)
from kite.storage.schema import DATA_TABLES
from kite.storage.sqlite_store import SQLiteEntityStore
from kite.sync.cache import QueryCache
from kite.sync.events import ChangeNotifier
from kite.sync.manager import TransactionManager
from kite.sync.queue import OfflineQueue, SyncProcessor


logger = structlog.get_logger(__name__)


class Database:
    """
    Usage:
        db = Database()                       # store from settings
        db = Database(SQLiteEntityStore())    # explicit store
        account = await db.accounts.create({"name": "Checking", ...})
    """

    def __init__(
        self,
        store: Optional[SQLiteEntityStore] = None,
        settings: Optional[Settings] = None,
        online: bool = True,
        sync_processor: Optional[SyncProcessor] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or SQLiteEntityStore(
            self.settings.store.path,
            busy_timeout=self.settings.store.busy_timeout_seconds,
            app_version=self.settings.app.app_version,
        )

        self.notifier = ChangeNotifier()
        self.cache = QueryCache(default_ttl=self.settings.cache.default_ttl_seconds)
        self.manager = TransactionManager(
            self.store,
            settings=self.settings.transaction,
            cache=self.cache,
            notifier=self.notifier,
        )
        self.audit = AuditLogger(self.store)
        self.sync_queue = OfflineQueue(
            self.store,
            settings=self.settings.sync,
            processor=sync_processor,
            online=online,
        )

        ctx = RepositoryContext(
            store=self.store,
            manager=self.manager,
            audit=self.audit,
            sync_queue=self.sync_queue,
            settings=self.settings.repository,
            cache_settings=self.settings.cache,
        )
        self.accounts = AccountRepository(ctx)
        self.categories = CategoryRepository(ctx)
        self.budgets = BudgetRepository(ctx)
        self.rules = RuleRepository(ctx)
        self.subscriptions = SubscriptionRepository(ctx)
        self.transactions = TransactionRepository(ctx, accounts=self.accounts, rules=self.rules)
        self.app_settings = SettingsRepository(self.store)

        self.budget_ledger = BudgetLedgerCalculator(self.transactions, self.budgets)
        self.backup = BackupService(self.store, self.manager, self.audit)

        logger.info(
            "database_opened",
            path=self.store.path,
            schema_version=self.store.schema_version,
        )

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def schema_version(self) -> int:
        return self.store.schema_version

    def migration_history(self) -> list[str]:
        return self.store.migration_history()

    def close(self) -> None:
        self.cache.clear()
        self.store.close()

    async def reset_data(self) -> str:
        """
        Clear every data table (settings and app metadata survive).

        Returns the migration name recorded for the reset.
        """
        migration = self.store.reset_data()
        self.audit.record(AuditEventBuilder.data_reset(migration))
        self.cache.clear()
        for table in DATA_TABLES:
            self.notifier.publish(table, "reset")
        return migration

    async def verify_integrity(self) -> IntegrityReport:
        """
        Check for orphaned transactions, duplicate candidates and balance drift.

        Reports problems only; nothing is repaired.
        """
        report = IntegrityReport()
        account_ids = {a["id"] for a in self.store.scan("accounts")}
        category_ids = {c["id"] for c in self.store.scan("categories")}

        for txn in await self.transactions.find_all():
            if txn.account_id not in account_ids or (
                txn.category_id is not None and txn.category_id not in category_ids
            ):
                report.orphaned_transaction_ids.append(txn.id)
        if report.orphaned_transaction_ids:
            report.issues.append(
                f"Found {len(report.orphaned_transaction_ids)} orphaned transactions"
            )
            report.recommendations.append("Reassign or delete orphaned transactions")

        groups = await self.transactions.detect_duplicates()
        report.duplicate_groups = len(groups)
        if groups:
            report.issues.append(f"Found {len(groups)} duplicate transaction groups")
            report.recommendations.append("Merge or remove duplicate transactions")

        mismatches = await self.transactions.validate_balances()
        if mismatches:
            report.issues.append(f"Found {len(mismatches)} accounts with balance drift")
            report.recommendations.append("Review account balances against transactions")

        report.valid = not report.issues
        logger.info("integrity_verified", valid=report.valid, issues=len(report.issues))
        return report

    async def get_stats(self) -> DatabaseStats:
        tables = [
            TableStats(name=name, count=self.store.count(name))
            for name in self.store.table_names()
        ]
        lookups = self.cache.hits + self.cache.misses
        return DatabaseStats(
            tables=tables,
            total_records=sum(t.count for t in tables),
            schema_version=self.store.schema_version,
            cache_entries=len(self.cache),
            cache_hit_rate=self.cache.hits / lookups if lookups else 0.0,
            pending_syncs=len(self.sync_queue.pending()),
            failed_syncs=len(self.sync_queue.failed()),
        )
