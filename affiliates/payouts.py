"""Payout batching and the payout approval lifecycle."""

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from affiliates.db import Database
from affiliates.errors import AllocationConflictError, NotFoundError, StateError
from affiliates.logging_config import get_logger
from affiliates.models import (
    AffiliateStatus,
    ExportFilter,
    ExportRow,
    GeneratePayoutRequest,
    MarkPaidRequest,
    Payout,
    PayoutStatus,
    validated,
)
from affiliates.tables import (
    AffiliateRecord,
    ConversionRecord,
    LedgerEntryRecord,
    PayoutRecord,
    utcnow,
)

logger = get_logger(__name__)


class PayoutBatchGenerator:
    def __init__(self, db: Database):
        self.db = db

    def generate(self, affiliate_id: int, period_start: datetime, period_end: datetime) -> Optional[Payout]:
        """Allocate the affiliate's unallocated entries in [period_start, period_end) to a new payout.

        Selection, payout creation and allocation commit together. Returns None
        when the entries sum to zero or less; running again with no new
        activity therefore creates nothing.

        Raises:
            NotFoundError: unknown affiliate
            AllocationConflictError: a concurrent run allocated some of the entries first
        """
        request = validated(
            GeneratePayoutRequest,
            affiliate_id=affiliate_id,
            period_start=period_start,
            period_end=period_end,
        )

        with self.db.session() as session:
            if session.get(AffiliateRecord, request.affiliate_id) is None:
                raise NotFoundError(f"Affiliate {request.affiliate_id} not found")

            entries = session.query(LedgerEntryRecord).filter(
                LedgerEntryRecord.affiliate_id == request.affiliate_id,
                LedgerEntryRecord.payout_id.is_(None),
                LedgerEntryRecord.created_at >= request.period_start,
                LedgerEntryRecord.created_at < request.period_end,
            ).order_by(LedgerEntryRecord.id).with_for_update().all()

            total = sum(e.amount_cents for e in entries)
            if total <= 0:
                logger.info(
                    "payout_skipped",
                    affiliate_id=request.affiliate_id,
                    entries=len(entries),
                    total_cents=total,
                )
                return None

            payout = PayoutRecord(
                affiliate_id=request.affiliate_id,
                period_start=request.period_start,
                period_end=request.period_end,
                total_cents=total,
                status=PayoutStatus.PENDING.value,
            )
            session.add(payout)
            session.flush()

            entry_ids = [e.id for e in entries]
            allocated = session.query(LedgerEntryRecord).filter(
                LedgerEntryRecord.id.in_(entry_ids),
                LedgerEntryRecord.payout_id.is_(None),
            ).update({LedgerEntryRecord.payout_id: payout.id}, synchronize_session=False)
            if allocated != len(entry_ids):
                raise AllocationConflictError(
                    f"{len(entry_ids) - allocated} entries were allocated by a concurrent run"
                )

            result = Payout.model_validate(payout)

        logger.info(
            "payout_generated",
            payout_id=result.id,
            affiliate_id=result.affiliate_id,
            total_cents=result.total_cents,
            entries=len(entry_ids),
        )
        return result

    def generate_batch(self, period_start: datetime, period_end: datetime) -> list[Payout]:
        """Run ``generate`` for every affiliate with unallocated entries in the period."""
        request = validated(GeneratePayoutRequest, period_start=period_start, period_end=period_end)

        with self.db.session() as session:
            affiliate_ids = [row[0] for row in session.query(LedgerEntryRecord.affiliate_id).filter(
                LedgerEntryRecord.payout_id.is_(None),
                LedgerEntryRecord.created_at >= request.period_start,
                LedgerEntryRecord.created_at < request.period_end,
            ).distinct().order_by(LedgerEntryRecord.affiliate_id).all()]

        payouts = []
        for affiliate_id in affiliate_ids:
            payout = self.generate(affiliate_id, request.period_start, request.period_end)
            if payout is not None:
                payouts.append(payout)

        logger.info("payout_batch_generated", affiliates=len(affiliate_ids), payouts=len(payouts))
        return payouts

    def approve(self, payout_id: int) -> Payout:
        with self.db.session() as session:
            record = self._load(session, payout_id)
            if not Payout.model_validate(record).can_approve():
                raise StateError(f"Cannot approve payout in {record.status} state")

            record.status = PayoutStatus.APPROVED.value
            record.approved_at = utcnow()
            session.flush()
            payout = Payout.model_validate(record)

        logger.info("payout_approved", payout_id=payout_id, total_cents=payout.total_cents)
        return payout

    def mark_paid(self, payout_id: int, reference: Optional[str] = None) -> Payout:
        """Mark an approved payout as paid. Paid is terminal."""
        request = validated(MarkPaidRequest, reference=reference)

        with self.db.session() as session:
            record = self._load(session, payout_id)
            if not Payout.model_validate(record).can_mark_paid():
                raise StateError(
                    f"Cannot mark payout paid in {record.status} state. Only approved payouts can be paid."
                )

            record.status = PayoutStatus.PAID.value
            record.paid_at = utcnow()
            record.reference = request.reference
            session.flush()
            payout = Payout.model_validate(record)

        logger.info("payout_paid", payout_id=payout_id, total_cents=payout.total_cents, reference=payout.reference)
        return payout

    def get(self, payout_id: int) -> Payout:
        with self.db.session() as session:
            return Payout.model_validate(self._load(session, payout_id, for_update=False))

    def list_for_affiliate(self, affiliate_id: int, limit: int = 20) -> list[Payout]:
        """Most recent payouts first."""
        with self.db.session() as session:
            records = session.query(PayoutRecord).filter(
                PayoutRecord.affiliate_id == affiliate_id
            ).order_by(PayoutRecord.created_at.desc(), PayoutRecord.id.desc()).limit(limit).all()
            return [Payout.model_validate(r) for r in records]

    def export_rows(self, export_filter: Optional[ExportFilter] = None) -> list[ExportRow]:
        """Per-affiliate order count and revenue for the window, by affiliate id ascending."""
        export_filter = export_filter or ExportFilter()

        join_on = [ConversionRecord.affiliate_id == AffiliateRecord.id]
        if export_filter.start is not None:
            join_on.append(ConversionRecord.created_at >= export_filter.start)
        if export_filter.end is not None:
            join_on.append(ConversionRecord.created_at < export_filter.end)

        with self.db.session() as session:
            query = session.query(
                AffiliateRecord.id,
                AffiliateRecord.name,
                AffiliateRecord.email,
                AffiliateRecord.code,
                func.count(ConversionRecord.id),
                func.coalesce(func.sum(ConversionRecord.revenue_cents), 0),
            ).outerjoin(ConversionRecord, and_(*join_on))
            if export_filter.status is not None:
                query = query.filter(AffiliateRecord.status == AffiliateStatus(export_filter.status).value)
            rows = query.group_by(
                AffiliateRecord.id,
                AffiliateRecord.name,
                AffiliateRecord.email,
                AffiliateRecord.code,
            ).order_by(AffiliateRecord.id.asc()).all()

        return [
            ExportRow(
                affiliate_id=affiliate_id,
                name=name,
                email=email,
                code=code,
                order_count=order_count,
                revenue_amount=int(revenue),
            )
            for affiliate_id, name, email, code, order_count, revenue in rows
        ]

    def _load(self, session: Session, payout_id: int, for_update: bool = True) -> PayoutRecord:
        query = session.query(PayoutRecord).filter(PayoutRecord.id == payout_id)
        if for_update:
            query = query.with_for_update()
        record = query.first()
        if record is None:
            raise NotFoundError(f"Payout {payout_id} not found")
        return record
