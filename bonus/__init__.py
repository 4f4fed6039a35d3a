"""
Bonus Point Ledger for the Wellness Center

This module provides:
- Per-user bonus balance kept in step with a transaction log
- Booking, referral, redemption and manual reward triggers
- Transaction lifecycle: pending → completed → cancelled
- Atomic writes over in-memory or SQLAlchemy storage
- Balance reconciliation against the log
"""

from .models import (
    TransactionKind,
    TransactionStatus,
    BonusSettings,
    BonusTransaction,
    UserSummary,
)
from .service import BonusService
from .storage import InMemoryStorage, SqlAlchemyStorage

__all__ = [
    "TransactionKind",
    "TransactionStatus",
    "BonusSettings",
    "BonusTransaction",
    "UserSummary",
    "BonusService",
    "InMemoryStorage",
    "SqlAlchemyStorage",
]
