"""
Kite - Local-First Personal Finance Data Layer

An embedded, transactional data layer for a personal-finance tracker:
validated and audited repositories, rule-driven auto-categorization,
duplicate detection and a month-over-month budget ledger.

DESIGN PRINCIPLES:
1. Every write is atomic and auditable
2. Fail early, fail visibly
3. No silent resurrection of deleted data
4. Storage is injected, never global
"""

__version__ = "1.0.0"
__author__ = "Kite Team"

from kite.database import Database

__all__ = ["Database", "__version__"]
