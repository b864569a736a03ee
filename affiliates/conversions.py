"""Turns completed orders into idempotent, attributed conversions."""

from typing import Optional

from sqlalchemy.exc import IntegrityError

from affiliates.db import Database
from affiliates.ledger import CommissionLedger
from affiliates.logging_config import get_logger
from affiliates.models import (
    Conversion,
    ConversionRequest,
    ConversionResult,
    EntryKind,
    LedgerEntry,
    validated,
)
from affiliates.registry import AffiliateRegistry
from affiliates.tables import ConversionRecord, LedgerEntryRecord, utcnow

logger = get_logger(__name__)

BPS_DENOMINATOR = 10_000


def compute_commission(revenue_cents: int, commission_bps: int) -> int:
    """Commission in minor units, always rounded down."""
    return revenue_cents * commission_bps // BPS_DENOMINATOR


class ConversionRecorder:
    def __init__(self, db: Database, registry: AffiliateRegistry, ledger: CommissionLedger):
        self.db = db
        self.registry = registry
        self.ledger = ledger

    def record(self, order_id: str, revenue_cents: int, cookie_code: Optional[str]) -> ConversionResult:
        """Record a completed order against the affiliate named by the attribution cookie.

        Re-submitting a known order id returns the stored conversion untouched.
        Orders without an active approved affiliate are unattributed and leave
        no rows behind.
        """
        request = validated(
            ConversionRequest,
            order_id=order_id,
            revenue_cents=revenue_cents,
            cookie_code=cookie_code,
        )

        existing = self._existing(request.order_id)
        if existing:
            return existing

        affiliate = self.registry.get_by_code(request.cookie_code)
        if affiliate is None or not affiliate.is_active(utcnow()):
            logger.info(
                "conversion_unattributed",
                order_id=request.order_id,
                code=request.cookie_code,
                affiliate_id=affiliate.id if affiliate else None,
            )
            return ConversionResult(
                attributed=False,
                created=False,
                message="Order is unattributed",
            )

        commission = compute_commission(request.revenue_cents, affiliate.commission_bps)

        try:
            with self.db.session() as session:
                record = ConversionRecord(
                    affiliate_id=affiliate.id,
                    order_id=request.order_id,
                    revenue_cents=request.revenue_cents,
                    commission_cents=commission,
                )
                session.add(record)
                session.flush()

                entry = self.ledger.add_entry(
                    session,
                    affiliate.id,
                    commission,
                    EntryKind.COMMISSION,
                    reference=f"conversion-{record.id}",
                    conversion_id=record.id,
                )
                conversion = Conversion.model_validate(record)
                ledger_entry = LedgerEntry.model_validate(entry)
        except IntegrityError:
            # A concurrent delivery of the same order committed first
            existing = self._existing(request.order_id)
            if existing is None:
                raise
            return existing

        logger.info(
            "conversion_recorded",
            order_id=conversion.order_id,
            affiliate_id=conversion.affiliate_id,
            revenue_cents=conversion.revenue_cents,
            commission_cents=conversion.commission_cents,
        )
        return ConversionResult(
            conversion=conversion,
            ledger_entry=ledger_entry,
            attributed=True,
            created=True,
            message="Conversion recorded",
        )

    def get_by_order(self, order_id: str) -> Optional[Conversion]:
        with self.db.session() as session:
            record = session.query(ConversionRecord).filter(
                ConversionRecord.order_id == order_id
            ).first()
            return Conversion.model_validate(record) if record else None

    def list_for_affiliate(self, affiliate_id: int, limit: int = 50) -> list[Conversion]:
        """Most recent conversions first."""
        with self.db.session() as session:
            records = session.query(ConversionRecord).filter(
                ConversionRecord.affiliate_id == affiliate_id
            ).order_by(ConversionRecord.created_at.desc(), ConversionRecord.id.desc()).limit(limit).all()
            return [Conversion.model_validate(r) for r in records]

    def _existing(self, order_id: str) -> Optional[ConversionResult]:
        with self.db.session() as session:
            record = session.query(ConversionRecord).filter(
                ConversionRecord.order_id == order_id
            ).first()
            if record is None:
                return None

            entry = session.query(LedgerEntryRecord).filter(
                LedgerEntryRecord.conversion_id == record.id,
                LedgerEntryRecord.kind == EntryKind.COMMISSION.value,
            ).first()
            return ConversionResult(
                conversion=Conversion.model_validate(record),
                ledger_entry=LedgerEntry.model_validate(entry) if entry else None,
                attributed=True,
                created=False,
                message="Conversion already recorded (idempotent return)",
            )
