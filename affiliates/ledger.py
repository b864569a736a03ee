"""Commission ledger.

Append-only signed entries per affiliate. Balances and statements are always
summed from stored entries; nothing here caches a running total.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from affiliates.db import Database
from affiliates.errors import FullyReversedError, IdempotencyConflictError, NotFoundError
from affiliates.logging_config import get_logger
from affiliates.models import (
    AffiliateSummary,
    Balance,
    EntryKind,
    LedgerAppendRequest,
    LedgerEntry,
    PayoutStatus,
    RefundRequest,
    ReversalResult,
    Statement,
    StatementLine,
    naive_utc,
    validated,
)
from affiliates.tables import (
    AffiliateRecord,
    ClickRecord,
    ConversionRecord,
    LedgerEntryRecord,
    PayoutRecord,
)

logger = get_logger(__name__)


class CommissionLedger:
    def __init__(self, db: Database):
        self.db = db

    def add_entry(
        self,
        session: Session,
        affiliate_id: int,
        amount_cents: int,
        kind: EntryKind,
        reference: str,
        conversion_id: Optional[int] = None,
    ) -> LedgerEntryRecord:
        """Insert an entry inside the caller's unit of work."""
        request = validated(
            LedgerAppendRequest,
            affiliate_id=affiliate_id,
            amount_cents=amount_cents,
            kind=kind,
            reference=reference,
        )
        entry = LedgerEntryRecord(
            affiliate_id=request.affiliate_id,
            conversion_id=conversion_id,
            reference=request.reference,
            amount_cents=request.amount_cents,
            kind=request.kind.value,
        )
        session.add(entry)
        session.flush()
        return entry

    def append(
        self,
        affiliate_id: int,
        amount_cents: int,
        kind: EntryKind,
        reference: str,
        conversion_id: Optional[int] = None,
    ) -> LedgerEntry:
        with self.db.session() as session:
            if session.get(AffiliateRecord, affiliate_id) is None:
                raise NotFoundError(f"Affiliate {affiliate_id} not found")
            entry = self.add_entry(session, affiliate_id, amount_cents, kind, reference, conversion_id)
            result = LedgerEntry.model_validate(entry)

        logger.info(
            "ledger_entry_appended",
            affiliate_id=affiliate_id,
            kind=result.kind.value,
            amount_cents=result.amount_cents,
            reference=result.reference,
        )
        return result

    def balance(self, affiliate_id: int) -> Balance:
        """Payable balance: the sum of entries not yet allocated to a payout."""
        with self.db.session() as session:
            total, count, last_at = session.query(
                func.coalesce(func.sum(LedgerEntryRecord.amount_cents), 0),
                func.count(LedgerEntryRecord.id),
                func.max(LedgerEntryRecord.created_at),
            ).filter(
                LedgerEntryRecord.affiliate_id == affiliate_id,
                LedgerEntryRecord.payout_id.is_(None),
            ).one()

        return Balance(
            affiliate_id=affiliate_id,
            balance_cents=int(total),
            unallocated_entries=count,
            last_entry_at=last_at,
        )

    def reverse_for_refund(
        self,
        order_id: str,
        refund_amount_cents: int,
        refund_id: Optional[str] = None,
    ) -> ReversalResult:
        """Take back commission for a refunded order.

        The reversal is proportional to the refunded share of revenue, rounded
        down, and capped so that all reversals against the conversion never
        exceed its original commission. A repeated ``refund_id`` returns the
        reversal already applied.

        Raises:
            NotFoundError: no conversion for this order (the order was unattributed)
            FullyReversedError: the conversion's commission is already fully reversed
            IdempotencyConflictError: the refund id was used for a different order
        """
        request = validated(
            RefundRequest,
            order_id=order_id,
            refund_amount_cents=refund_amount_cents,
            refund_id=refund_id,
        )

        try:
            result = self._reverse(request)
        except IntegrityError:
            # Concurrent delivery of the same refund id won the insert
            if request.refund_id is None:
                raise
            result = self._existing_reversal(request)
            if result is None:
                raise

        logger.info(
            "refund_reversal_applied",
            order_id=request.order_id,
            requested_cents=request.refund_amount_cents,
            applied_cents=result.applied_cents,
        )
        return result

    def _reverse(self, request: RefundRequest) -> ReversalResult:
        with self.db.session() as session:
            conversion = session.query(ConversionRecord).filter(
                ConversionRecord.order_id == request.order_id
            ).with_for_update().first()
            if conversion is None:
                raise NotFoundError(f"No attributed conversion for order {request.order_id}")

            if request.refund_id is not None:
                existing = self._find_reversal(session, request.refund_id)
                if existing is not None:
                    return self._duplicate_result(request, existing, conversion.id)

            if conversion.commission_cents == 0:
                return ReversalResult(
                    order_id=request.order_id,
                    requested_cents=request.refund_amount_cents,
                    applied_cents=0,
                    message="Conversion carried no commission",
                )

            already_reversed = -session.query(
                func.coalesce(func.sum(LedgerEntryRecord.amount_cents), 0)
            ).filter(
                LedgerEntryRecord.conversion_id == conversion.id,
                LedgerEntryRecord.kind == EntryKind.REVERSAL.value,
            ).scalar()
            remaining = conversion.commission_cents - already_reversed
            if remaining <= 0:
                raise FullyReversedError(
                    f"Commission for order {request.order_id} is already fully reversed"
                )

            proportional = conversion.commission_cents * request.refund_amount_cents // conversion.revenue_cents
            applied = min(proportional, remaining)
            if applied == 0:
                return ReversalResult(
                    order_id=request.order_id,
                    requested_cents=request.refund_amount_cents,
                    applied_cents=0,
                    message="Refund too small to reverse any commission",
                )

            entry = self.add_entry(
                session,
                conversion.affiliate_id,
                -applied,
                EntryKind.REVERSAL,
                reference=request.refund_id or f"refund-{uuid4()}",
                conversion_id=conversion.id,
            )
            return ReversalResult(
                order_id=request.order_id,
                requested_cents=request.refund_amount_cents,
                applied_cents=applied,
                ledger_entry=LedgerEntry.model_validate(entry),
                message="Reversal capped at remaining commission" if applied < proportional
                else "Reversal applied",
            )

    def _find_reversal(self, session: Session, refund_id: str) -> Optional[LedgerEntryRecord]:
        return session.query(LedgerEntryRecord).filter(
            LedgerEntryRecord.kind == EntryKind.REVERSAL.value,
            LedgerEntryRecord.reference == refund_id,
        ).first()

    def _existing_reversal(self, request: RefundRequest) -> Optional[ReversalResult]:
        with self.db.session() as session:
            existing = self._find_reversal(session, request.refund_id)
            if existing is None:
                return None
            conversion_id = session.query(ConversionRecord.id).filter(
                ConversionRecord.order_id == request.order_id
            ).scalar()
            return self._duplicate_result(request, existing, conversion_id)

    def _duplicate_result(
        self,
        request: RefundRequest,
        entry: LedgerEntryRecord,
        conversion_id: Optional[int],
    ) -> ReversalResult:
        # Refund ids are unique across the ledger, not per order
        if entry.conversion_id != conversion_id:
            raise IdempotencyConflictError(
                f"Refund id {request.refund_id} was already applied to a different order"
            )
        return ReversalResult(
            order_id=request.order_id,
            requested_cents=request.refund_amount_cents,
            applied_cents=-entry.amount_cents,
            ledger_entry=LedgerEntry.model_validate(entry),
            message="Refund already applied (idempotent return)",
        )

    def entries_for_conversion(self, conversion_id: int) -> list[LedgerEntry]:
        with self.db.session() as session:
            entries = session.query(LedgerEntryRecord).filter(
                LedgerEntryRecord.conversion_id == conversion_id
            ).order_by(LedgerEntryRecord.id).all()
            return [LedgerEntry.model_validate(e) for e in entries]

    def statement(
        self,
        affiliate_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Statement:
        """Entries in [start, end) in insertion order with a running balance.

        The running balance covers every entry, allocated or not, starting from
        the sum of everything before ``start``.
        """
        start, end = naive_utc(start), naive_utc(end)

        with self.db.session() as session:
            opening = 0
            if start is not None:
                opening = session.query(
                    func.coalesce(func.sum(LedgerEntryRecord.amount_cents), 0)
                ).filter(
                    LedgerEntryRecord.affiliate_id == affiliate_id,
                    LedgerEntryRecord.created_at < start,
                ).scalar()

            query = session.query(LedgerEntryRecord).filter(LedgerEntryRecord.affiliate_id == affiliate_id)
            if start is not None:
                query = query.filter(LedgerEntryRecord.created_at >= start)
            if end is not None:
                query = query.filter(LedgerEntryRecord.created_at < end)
            entries = query.order_by(LedgerEntryRecord.created_at, LedgerEntryRecord.id).all()

            running = int(opening)
            lines = []
            for entry in entries:
                running += entry.amount_cents
                lines.append(StatementLine(
                    entry=LedgerEntry.model_validate(entry),
                    running_balance_cents=running,
                ))

        return Statement(
            affiliate_id=affiliate_id,
            start=start,
            end=end,
            opening_balance_cents=int(opening),
            lines=lines,
            closing_balance_cents=running,
        )

    def summary(self, affiliate_id: int) -> AffiliateSummary:
        with self.db.session() as session:
            affiliate = session.get(AffiliateRecord, affiliate_id)
            if affiliate is None:
                raise NotFoundError(f"Affiliate {affiliate_id} not found")

            clicks = session.query(func.count(ClickRecord.id)).filter(
                ClickRecord.affiliate_id == affiliate_id
            ).scalar()
            conversion_count, revenue, commission = session.query(
                func.count(ConversionRecord.id),
                func.coalesce(func.sum(ConversionRecord.revenue_cents), 0),
                func.coalesce(func.sum(ConversionRecord.commission_cents), 0),
            ).filter(ConversionRecord.affiliate_id == affiliate_id).one()
            reversed_total = session.query(
                func.coalesce(func.sum(LedgerEntryRecord.amount_cents), 0)
            ).filter(
                LedgerEntryRecord.affiliate_id == affiliate_id,
                LedgerEntryRecord.kind == EntryKind.REVERSAL.value,
            ).scalar()
            payout_totals = dict(session.query(
                PayoutRecord.status,
                func.coalesce(func.sum(PayoutRecord.total_cents), 0),
            ).filter(PayoutRecord.affiliate_id == affiliate_id).group_by(PayoutRecord.status).all())

            summary = AffiliateSummary(
                affiliate_id=affiliate_id,
                code=affiliate.code,
                commission_bps=affiliate.commission_bps,
                clicks=clicks,
                conversion_count=conversion_count,
                revenue_cents=int(revenue),
                commission_cents=int(commission),
                reversed_cents=-int(reversed_total),
                balance_cents=0,
                pending_payout_cents=int(payout_totals.get(PayoutStatus.PENDING.value, 0)),
                approved_payout_cents=int(payout_totals.get(PayoutStatus.APPROVED.value, 0)),
                paid_payout_cents=int(payout_totals.get(PayoutStatus.PAID.value, 0)),
            )

        summary.balance_cents = self.balance(affiliate_id).balance_cents
        return summary
