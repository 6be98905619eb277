"""
Transaction Repository

The richest repository: search and filtering, statistics, spending
pattern analysis, duplicate detection and merge, rule-driven
auto-categorization, running balances and batched imports.

DESIGN DECISION: Search works over a full soft-delete-aware scan.
Filters combine arbitrarily (sets, ranges, free text) and embedded data
volumes are small, so one predicate over every row beats a query planner.
Results are cached briefly and the cache is dropped on every committed
write to the table.
"""

from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal
from math import ceil
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from pydantic import BaseModel

from kite.audit.logger import create_correlation_id
from kite.budgeting.months import month_bounds, month_key, shift_month
from kite.models.audit import AuditEventBuilder
from kite.models.base import to_naive_utc, utcnow
from kite.models.entities import Transaction, TransactionType
from kite.models.queries import (
    BalanceMismatch,
    ImportResult,
    ImportRowError,
    MonthlySummary,
    OrderDirection,
    Period,
    QueryOptions,
    RunningBalanceEntry,
    SpendingPatterns,
    TransactionFilters,
    TransactionStats,
)
from kite.repositories.accounts import AccountRepository
from kite.repositories.base import BaseRepository, ProgressCallback, RepositoryContext
from kite.repositories.relationships import BelongsTo, BelongsToMany
from kite.repositories.rules import RuleRepository
from kite.repositories.validation import References
from kite.rules.engine import build_patch
from kite.storage.interface import NotFoundError, StorageError, ValidationError
from kite.sync.cache import make_cache_key


Predicate = Callable[[Transaction], bool]


def build_predicate(filters: TransactionFilters) -> Predicate:
    """Compose every set filter into one AND-ed predicate."""
    checks: list[Predicate] = []

    if filters.account_ids is not None:
        accounts = set(filters.account_ids)
        checks.append(lambda t: t.account_id in accounts)
    if filters.category_ids is not None:
        categories = set(filters.category_ids)
        checks.append(lambda t: t.category_id in categories)
    if filters.date_from is not None:
        checks.append(lambda t: t.date >= filters.date_from)
    if filters.date_to is not None:
        checks.append(lambda t: t.date <= filters.date_to)
    if filters.amount_min is not None:
        checks.append(lambda t: abs(t.amount) >= filters.amount_min)
    if filters.amount_max is not None:
        checks.append(lambda t: abs(t.amount) <= filters.amount_max)
    if filters.type == TransactionType.INCOME:
        checks.append(lambda t: t.amount > 0)
    elif filters.type == TransactionType.EXPENSE:
        checks.append(lambda t: t.amount < 0)
    elif filters.type == TransactionType.TRANSFER:
        checks.append(lambda t: t.is_transfer)
    if filters.merchants is not None:
        merchants = {m.lower() for m in filters.merchants}
        checks.append(lambda t: (t.merchant or "").lower() in merchants)
    if filters.tags:
        tags = set(filters.tags)
        checks.append(lambda t: bool(tags.intersection(t.tags)))
    if filters.is_recurring is not None:
        checks.append(lambda t: t.is_recurring == filters.is_recurring)
    if filters.search_text:
        needle = filters.search_text.lower()
        checks.append(lambda t: any(
            needle in (text or "").lower() for text in (t.description, t.merchant, t.notes)
        ))

    return lambda t: all(check(t) for check in checks)


class TransactionRepository(BaseRepository[Transaction]):
    model = Transaction
    table = "transactions"
    soft_delete = True
    validation_rules = (
        References("account_id", table="accounts", required=True),
        References("category_id", table="categories"),
    )
    relationships = {
        "account": BelongsTo(table="accounts", local_key="account_id"),
        "category": BelongsTo(table="categories", local_key="category_id"),
        "merged_from": BelongsToMany(
            table="transactions", local_ids="metadata.merged_from", include_deleted=True
        ),
    }

    def __init__(self, ctx: RepositoryContext, accounts: AccountRepository, rules: RuleRepository):
        super().__init__(ctx)
        self._accounts = accounts
        self._rules = rules

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get_by_account(self, account_id: str) -> list[Transaction]:
        return self._order(self._query({"account_id": account_id}), ["date"], OrderDirection.ASC)

    async def get_by_category(self, category_id: str) -> list[Transaction]:
        return self._order(self._query({"category_id": category_id}), ["date"], OrderDirection.ASC)

    async def get_by_date_range(
        self,
        start: datetime,
        end: datetime,
        include_end: bool = True,
    ) -> list[Transaction]:
        """Range query over the date index, oldest first."""
        start, end = to_naive_utc(start), to_naive_utc(end)
        records = self._store.where_between(self.table, "date", start, end, include_upper=include_end)
        return [t for t in map(self._from_record, records) if not t.is_deleted]

    # =========================================================================
    # SEARCH
    # =========================================================================

    async def search(
        self,
        filters: Optional[TransactionFilters] = None,
        options: Optional[QueryOptions] = None,
    ) -> list[Transaction]:
        """
        Filter transactions. Newest first unless options say otherwise.

        Cached for the configured search TTL, keyed by filters and options.
        Searches with a `having` predicate always run fresh.
        """
        filters = filters or TransactionFilters()
        options = options or QueryOptions()
        if options.having is not None:
            return await self._search(filters, options)
        key = make_cache_key(self.table, "search", {
            "filters": filters.model_dump(mode="json"),
            "options": options.cache_payload(),
        })
        return await self._ctx.cache.get_or_load(
            key,
            lambda: self._search(filters, options),
            self._ctx.cache_settings.search_ttl_seconds,
        )

    async def _search(self, filters: TransactionFilters, options: QueryOptions) -> list[Transaction]:
        predicate = build_predicate(filters)
        matched = [t for t in self._query(options.where, options.with_deleted) if predicate(t)]
        if options.having is not None:
            matched = [t for t in matched if options.having(t)]

        if options.order_fields:
            matched = self._order(matched, options.order_fields, options.order_direction)
        else:
            matched = self._order(matched, ["date"], OrderDirection.DESC)

        end = options.offset + options.limit if options.limit is not None else None
        matched = matched[options.offset:end]
        if options.include:
            matched = [self.load_relationships(t, options.include) for t in matched]
        return matched

    # =========================================================================
    # STATISTICS & PATTERNS
    # =========================================================================

    async def get_statistics(
        self,
        filters: Optional[TransactionFilters] = None,
        period: Optional[Period] = None,
    ) -> TransactionStats:
        """
        Totals, extremes and averages over the filtered transactions.

        Daily and monthly averages divide net flow by the period's day
        count (30 when no period is given).
        """
        filters = filters or TransactionFilters()
        if period is not None:
            filters = filters.model_copy(update={"date_from": period.start, "date_to": period.end})
        transactions = await self._search(filters, QueryOptions())

        income = [t for t in transactions if t.amount > 0]
        expenses = [t for t in transactions if t.amount < 0]
        total_income = sum((t.amount for t in income), Decimal("0"))
        total_expenses = sum((-t.amount for t in expenses), Decimal("0"))
        net_flow = total_income - total_expenses

        if period is not None:
            day_count = max(1, ceil((period.end - period.start).total_seconds() / 86400))
        else:
            day_count = 30

        stats = TransactionStats(
            total_income=total_income,
            total_expenses=total_expenses,
            net_flow=net_flow,
            transaction_count=len(transactions),
            day_count=day_count,
            daily_average=net_flow / day_count,
            monthly_average=net_flow / (Decimal(day_count) / 30),
        )
        if transactions:
            stats.average_transaction = (
                sum((abs(t.amount) for t in transactions), Decimal("0")) / len(transactions)
            )
        if income:
            stats.largest_income = max(income, key=lambda t: t.amount)
        if expenses:
            stats.largest_expense = min(expenses, key=lambda t: t.amount)

        merchants = Counter(t.merchant for t in transactions if t.merchant)
        if merchants:
            stats.most_frequent_merchant = merchants.most_common(1)[0][0]
        categories = Counter(t.category_id for t in transactions if t.category_id)
        if categories:
            stats.most_used_category = categories.most_common(1)[0][0]
        return stats

    async def analyze_spending_patterns(
        self, filters: Optional[TransactionFilters] = None
    ) -> SpendingPatterns:
        """Expense totals by weekday (Monday=0) and by hour."""
        transactions = await self._search(filters or TransactionFilters(), QueryOptions())
        patterns = SpendingPatterns()
        for t in transactions:
            if t.amount >= 0:
                continue
            day, hour = t.date.weekday(), t.date.hour
            patterns.by_day_of_week[day] = patterns.by_day_of_week.get(day, Decimal("0")) - t.amount
            patterns.by_hour[hour] = patterns.by_hour.get(hour, Decimal("0")) - t.amount
        if patterns.by_day_of_week:
            patterns.busiest_day = max(patterns.by_day_of_week, key=patterns.by_day_of_week.get)
        if patterns.by_hour:
            patterns.busiest_hour = max(patterns.by_hour, key=patterns.by_hour.get)
        return patterns

    async def get_monthly_summaries(
        self,
        account_id: Optional[str] = None,
        months: int = 12,
        reference: Optional[datetime] = None,
    ) -> list[MonthlySummary]:
        """One summary per month, oldest first, ending at the reference month."""
        last = month_key(to_naive_utc(reference) if reference is not None else utcnow())
        keys = [shift_month(last, -offset) for offset in range(months - 1, -1, -1)]
        summaries = {key: MonthlySummary(month=key) for key in keys}

        start, _ = month_bounds(keys[0])
        _, end = month_bounds(keys[-1])
        for t in await self.get_by_date_range(start, end, include_end=False):
            if account_id is not None and t.account_id != account_id:
                continue
            summary = summaries[month_key(t.date)]
            summary.transaction_count += 1
            if t.amount > 0:
                summary.income += t.amount
            else:
                summary.expenses -= t.amount
        for summary in summaries.values():
            summary.net = summary.income - summary.expenses
        return list(summaries.values())

    async def get_spending_by_category(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict[Optional[str], Decimal]:
        """Absolute expense totals per category id (None for uncategorized)."""
        filters = TransactionFilters(date_from=start, date_to=end, type=TransactionType.EXPENSE)
        totals: dict[Optional[str], Decimal] = {}
        for t in await self._search(filters, QueryOptions()):
            totals[t.category_id] = totals.get(t.category_id, Decimal("0")) - t.amount
        return totals

    # =========================================================================
    # DUPLICATES
    # =========================================================================

    async def detect_duplicates(self, threshold_ms: Optional[int] = None) -> list[list[Transaction]]:
        """
        Group duplicate candidates.

        Two transactions are candidates when account, signed amount and
        merchant are equal and their dates are within the threshold. One
        pass over date-sorted rows; each row joins at most one group.
        """
        if threshold_ms is None:
            threshold_ms = self._ctx.settings.duplicate_threshold_ms
        threshold = timedelta(milliseconds=threshold_ms)

        transactions = sorted(self._query(), key=lambda t: (t.date, t.created_at, t.id))
        processed: set[str] = set()
        groups = []
        for i, anchor in enumerate(transactions):
            if anchor.id in processed:
                continue
            group = [anchor]
            for other in transactions[i + 1:]:
                if other.date - anchor.date > threshold:
                    break
                if other.id in processed:
                    continue
                if (
                    other.account_id == anchor.account_id
                    and other.amount == anchor.amount
                    and (other.merchant or "") == (anchor.merchant or "")
                ):
                    group.append(other)
            if len(group) > 1:
                processed.update(t.id for t in group)
                groups.append(group)
        return groups

    async def merge_duplicates(
        self,
        group: Iterable[Union[Transaction, str]],
        keep_first: bool = True,
        actor: Optional[str] = None,
    ) -> Transaction:
        """
        Collapse a duplicate group into one transaction.

        Keeps the earliest (keep_first) or latest record, unions tags and
        notes from the whole group, records merged_from/merged_at in
        metadata and soft-deletes the rest, all in one atomic unit.

        Raises:
            ValidationError: Fewer than 2 distinct transactions given.
        """
        ids = list(dict.fromkeys(t.id if isinstance(t, Transaction) else t for t in group))
        if len(ids) < 2:
            raise ValidationError.single(
                "group", "min_items", "At least 2 transactions are required to merge", len(ids)
            )
        correlation_id = create_correlation_id()

        def _merge() -> Transaction:
            members = sorted((self._load(i) for i in ids), key=lambda t: (t.date, t.created_at))
            keep = members[0] if keep_first else members[-1]
            others = [t for t in members if t.id != keep.id]

            tags: list[str] = []
            notes: list[str] = []
            for t in [keep] + others:
                tags.extend(tag for tag in t.tags if tag not in tags)
                if t.notes and t.notes not in notes:
                    notes.append(t.notes)

            metadata = dict(keep.metadata)
            metadata["merged_from"] = list(metadata.get("merged_from", [])) + [t.id for t in others]
            metadata["merged_at"] = utcnow().isoformat()

            merged = self._persist_update(
                keep.id,
                {"tags": tags, "notes": "\n".join(notes) or None, "metadata": metadata},
                actor,
                correlation_id=correlation_id,
            )
            for t in others:
                self._persist_delete(t.id, actor, correlation_id=correlation_id)
            self._audit.record(AuditEventBuilder.merged(
                self.table, keep.id, [t.id for t in others], actor, correlation_id
            ))
            return merged

        merged = await self._atomic(_merge)
        self._logger.info("duplicates_merged", kept=merged.id, merged=len(ids) - 1, actor=actor)
        return merged

    # =========================================================================
    # AUTO-CATEGORIZATION
    # =========================================================================

    async def auto_categorize(self, ids: Optional[Iterable[str]] = None, actor: Optional[str] = None) -> int:
        """
        Apply enabled rules and persist the outcomes.

        With ids, every listed live transaction is evaluated; without,
        every transaction lacking a category. Returns how many changed.
        """
        engine = await self._rules.engine()
        if not engine.rules:
            return 0
        target_ids = list(ids) if ids is not None else None

        def _categorize() -> int:
            if target_ids is None:
                targets = [t for t in self._query() if t.category_id is None]
            else:
                targets = []
                for record_id in target_ids:
                    try:
                        targets.append(self._load(record_id))
                    except NotFoundError:
                        self._logger.warning("auto_categorize_skipped", record_id=record_id)

            changed = 0
            for transaction in targets:
                patch = build_patch(transaction, engine.evaluate(transaction))
                if patch:
                    self._persist_update(transaction.id, patch, actor)
                    changed += 1
            return changed

        changed = await self._atomic(_categorize)
        self._logger.info("auto_categorized", changed=changed, actor=actor)
        return changed

    # =========================================================================
    # BALANCES
    # =========================================================================

    async def calculate_running_balance(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[RunningBalanceEntry]:
        """
        Running balance per transaction, oldest first.

        Starts from the account's stored balance, or, when `start` is
        given, from the sum of all transactions strictly before it.
        """
        start = to_naive_utc(start) if start is not None else None
        end = to_naive_utc(end) if end is not None else None
        account = await self._accounts.get(account_id)
        transactions = sorted(
            self._query({"account_id": account_id}), key=lambda t: (t.date, t.created_at)
        )
        if start is not None:
            balance = sum((t.amount for t in transactions if t.date < start), Decimal("0"))
            transactions = [t for t in transactions if t.date >= start]
        else:
            balance = account.balance
        if end is not None:
            transactions = [t for t in transactions if t.date <= end]

        entries = []
        for t in transactions:
            balance += t.amount
            entries.append(RunningBalanceEntry(transaction=t, balance=balance))
        return entries

    async def validate_balances(self, account_ids: Optional[Iterable[str]] = None) -> list[BalanceMismatch]:
        """
        Compare stored balances with the sum of each account's
        transactions. Drift beyond the tolerance is logged, never corrected.
        """
        tolerance = self._ctx.settings.amount_tolerance
        if account_ids is None:
            accounts = await self._accounts.find_all()
        else:
            accounts = [await self._accounts.get(i) for i in dict.fromkeys(account_ids)]

        mismatches = []
        for account in accounts:
            calculated = sum(
                (t.amount for t in self._query({"account_id": account.id})), Decimal("0")
            )
            if abs(account.balance - calculated) > tolerance:
                mismatch = BalanceMismatch(
                    account_id=account.id,
                    stored_balance=account.balance,
                    calculated_balance=calculated,
                )
                self._logger.warning(
                    "balance_drift_detected",
                    account_id=account.id,
                    stored=str(account.balance),
                    calculated=str(calculated),
                    drift=str(mismatch.drift),
                )
                mismatches.append(mismatch)
        return mismatches

    # =========================================================================
    # IMPORT
    # =========================================================================

    def _is_known_duplicate(self, candidate: Transaction, threshold: timedelta) -> bool:
        tolerance = self._ctx.settings.amount_tolerance
        for existing in self._query({"account_id": candidate.account_id}):
            if (
                abs(existing.date - candidate.date) <= threshold
                and abs(abs(existing.amount) - abs(candidate.amount)) <= tolerance
            ):
                return True
        return False

    def _import_row(
        self,
        payload: dict[str, Any],
        check_duplicates: bool,
        threshold: timedelta,
        actor: Optional[str],
        correlation_id: str,
    ) -> Optional[Transaction]:
        """Create one row, or return None if it duplicates a stored transaction."""
        if check_duplicates:
            candidate = self._build(payload)
            if self._is_known_duplicate(candidate, threshold):
                return None
        return self._persist_new(payload, actor, correlation_id)

    async def import_transactions(
        self,
        rows: Iterable[Union[Mapping[str, Any], BaseModel]],
        detect_duplicates: bool = False,
        auto_categorize: bool = False,
        validate_balances: bool = False,
        actor: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ImportResult:
        """
        Import rows in batches.

        Each row commits on its own, so one bad row does not discard the
        rest. Known duplicates are skipped and counted apart from errors.
        """
        payloads = [self._coerce_input(row) for row in rows]
        total = len(payloads)
        size = self._ctx.settings.import_batch_size
        threshold = timedelta(milliseconds=self._ctx.settings.duplicate_threshold_ms)
        correlation_id = create_correlation_id()
        result = ImportResult()

        for start in range(0, total, size):
            for index, payload in enumerate(payloads[start:start + size], start=start):
                try:
                    created = await self._atomic(
                        lambda payload=payload: self._import_row(
                            payload, detect_duplicates, threshold, actor, correlation_id
                        )
                    )
                except StorageError as e:
                    result.errors.append(ImportRowError(index=index, error=str(e), row=payload))
                    continue
                if created is None:
                    result.duplicates += 1
                else:
                    result.imported += 1
                    result.transaction_ids.append(created.id)
            if on_progress is not None:
                on_progress(min(start + size, total), total)

        if auto_categorize and result.transaction_ids:
            result.categorized = await self.auto_categorize(result.transaction_ids, actor=actor)

        if validate_balances and result.transaction_ids:
            touched = {
                self._load(record_id).account_id for record_id in result.transaction_ids
            }
            result.balance_mismatches = await self.validate_balances(sorted(touched))

        self._logger.info(
            "transactions_imported",
            imported=result.imported,
            duplicates=result.duplicates,
            errors=len(result.errors),
            correlation_id=correlation_id,
        )
        return result
