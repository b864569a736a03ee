"""Database tables for affiliates, clicks, conversions, ledger entries and payouts."""

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AffiliateRecord(Base):
    """Affiliate application and, once approved, referral partner."""
    __tablename__ = "affiliates"
    __table_args__ = (
        UniqueConstraint("code", name="uq_affiliates_code"),
        Index("ix_affiliates_status", "status"),
    )

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    email = Column(String(320), nullable=False, index=True)
    social_handle = Column(String(200), nullable=True)
    audience_size = Column(String(100), nullable=True)
    channels = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default="pending")
    code = Column(String(20), nullable=True)  # Assigned on first approval
    commission_bps = Column(Integer, nullable=False)

    approved_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    declined_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<AffiliateRecord(id={self.id}, code={self.code}, status={self.status})>"


class ClickRecord(Base):
    __tablename__ = "affiliate_clicks"

    id = Column(Integer, primary_key=True)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=True, index=True)
    code = Column(String(64), nullable=True)
    landing_path = Column(String(512), nullable=True)
    referrer = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ConversionRecord(Base):
    """One attributed order. The unique order id is what makes recording idempotent."""
    __tablename__ = "affiliate_conversions"
    __table_args__ = (
        UniqueConstraint("order_id", name="uq_affiliate_conversions_order_id"),
        Index("ix_affiliate_conversions_affiliate_created", "affiliate_id", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False)
    order_id = Column(String(128), nullable=False)
    revenue_cents = Column(BigInteger, nullable=False)
    commission_cents = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class LedgerEntryRecord(Base):
    """Signed commission movement. Only payout_id is ever written after insert."""
    __tablename__ = "affiliate_ledger_entries"
    __table_args__ = (
        UniqueConstraint("kind", "reference", name="uq_affiliate_ledger_entries_kind_reference"),
        Index("ix_affiliate_ledger_entries_unallocated", "affiliate_id", "payout_id", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False)
    conversion_id = Column(Integer, ForeignKey("affiliate_conversions.id"), nullable=True, index=True)
    reference = Column(String(128), nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    kind = Column(String(20), nullable=False)
    payout_id = Column(Integer, ForeignKey("affiliate_payouts.id"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class PayoutRecord(Base):
    __tablename__ = "affiliate_payouts"
    __table_args__ = (
        Index("ix_affiliate_payouts_affiliate_created", "affiliate_id", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    total_cents = Column(BigInteger, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    reference = Column(String(255), nullable=True)  # External transfer reference
    approved_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
