"""
Affiliate Attribution and Commission Ledger

This package provides:
- Affiliate applications, referral codes and approval lifecycle
- Click tracking with last-click cookie attribution
- Idempotent conversion recording (one conversion per order)
- Append-only commission ledger with capped refund reversals
- Payout batching: pending → approved → paid
"""

from .models import (
    Affiliate,
    AffiliateStatus,
    Conversion,
    EntryKind,
    LedgerEntry,
    Payout,
    PayoutStatus,
)
from .conversions import ConversionRecorder
from .db import Database
from .ledger import CommissionLedger
from .payouts import PayoutBatchGenerator
from .registry import AffiliateRegistry
from .tracker import AttributionTracker

__all__ = [
    "Affiliate",
    "AffiliateStatus",
    "Conversion",
    "EntryKind",
    "LedgerEntry",
    "Payout",
    "PayoutStatus",
    "AffiliateRegistry",
    "AttributionTracker",
    "CommissionLedger",
    "ConversionRecorder",
    "PayoutBatchGenerator",
    "Database",
]
