"""Request, record and result models shared by the services and the HTTP API."""

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from affiliates.errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_BPS = 10_000


class AffiliateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class EntryKind(str, Enum):
    COMMISSION = "commission"
    REVERSAL = "reversal"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class RequestModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


def validated(model: type[RequestModel], **values) -> RequestModel:
    """Build a request model, turning pydantic failures into the service ValidationError."""
    try:
        return model(**values)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(details) from e


# ==================== REQUESTS ====================


class ApplyRequest(RequestModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., max_length=320)
    social_handle: Optional[str] = Field(default=None, max_length=200)
    audience_size: Optional[str] = Field(default=None, max_length=100)
    channels: Optional[str] = None
    notes: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Jane Creator",
            "email": "jane@example.com",
            "socialHandle": "@janecreates",
            "audienceSize": "10k-50k",
        }
    })

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        if not EMAIL_PATTERN.match(value):
            raise ValueError("a valid email address is required")
        return value.lower()

    @field_validator("social_handle", "audience_size", "channels", "notes")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class AffiliateUpdateRequest(RequestModel):
    status: Optional[AffiliateStatus] = None
    commission_bps: Optional[int] = Field(default=None, ge=0, le=MAX_BPS)

    @model_validator(mode="after")
    def _require_change(self):
        if self.status is None and self.commission_bps is None:
            raise ValueError("No changes provided")
        return self


class ConversionRequest(RequestModel):
    order_id: str = Field(..., min_length=1, max_length=128)
    revenue_cents: int = Field(..., ge=0)
    cookie_code: Optional[str] = Field(default=None, max_length=64)

    model_config = ConfigDict(json_schema_extra={
        "example": {"orderId": "O1", "revenueCents": 10000, "cookieCode": "JANE001"}
    })


class RefundRequest(RequestModel):
    order_id: str = Field(..., min_length=1, max_length=128)
    refund_amount_cents: int = Field(..., gt=0)
    refund_id: Optional[str] = Field(default=None, min_length=1, max_length=128)


class LedgerAppendRequest(RequestModel):
    affiliate_id: int
    amount_cents: int
    kind: EntryKind
    reference: str = Field(..., min_length=1, max_length=128)

    @model_validator(mode="after")
    def _check_sign(self):
        if self.kind == EntryKind.COMMISSION and self.amount_cents < 0:
            raise ValueError("commission entries cannot be negative")
        if self.kind == EntryKind.REVERSAL and self.amount_cents > 0:
            raise ValueError("reversal entries cannot be positive")
        return self


class PeriodRequest(RequestModel):
    period_start: datetime
    period_end: datetime

    @field_validator("period_start", "period_end")
    @classmethod
    def _to_naive_utc(cls, value: datetime) -> datetime:
        return naive_utc(value)

    @model_validator(mode="after")
    def _check_order(self):
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self


class GeneratePayoutRequest(PeriodRequest):
    affiliate_id: Optional[int] = None


class MarkPaidRequest(RequestModel):
    reference: Optional[str] = Field(default=None, max_length=255)


class ExportFilter(RequestModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    status: Optional[AffiliateStatus] = AffiliateStatus.APPROVED

    @field_validator("start", "end")
    @classmethod
    def _to_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)


# ==================== RECORDS ====================


class Affiliate(ApiModel):
    id: int
    name: str
    email: str
    social_handle: Optional[str] = None
    audience_size: Optional[str] = None
    channels: Optional[str] = None
    notes: Optional[str] = None
    status: AffiliateStatus
    code: Optional[str] = None
    commission_bps: int
    approved_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    def is_active(self, now: datetime) -> bool:
        if self.status != AffiliateStatus.APPROVED:
            return False
        return self.expires_at is None or self.expires_at > now


class Click(ApiModel):
    id: int
    affiliate_id: Optional[int] = None
    code: Optional[str] = None
    landing_path: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class Conversion(ApiModel):
    id: int
    affiliate_id: int
    order_id: str
    revenue_cents: int
    commission_cents: int
    created_at: datetime


class LedgerEntry(ApiModel):
    id: int
    affiliate_id: int
    conversion_id: Optional[int] = None
    reference: str
    amount_cents: int
    kind: EntryKind
    payout_id: Optional[int] = None
    created_at: datetime

    @property
    def is_allocated(self) -> bool:
        return self.payout_id is not None


class Payout(ApiModel):
    id: int
    affiliate_id: int
    period_start: datetime
    period_end: datetime
    total_cents: int
    status: PayoutStatus
    reference: Optional[str] = None
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    def can_approve(self) -> bool:
        return self.status == PayoutStatus.PENDING

    def can_mark_paid(self) -> bool:
        return self.status == PayoutStatus.APPROVED


class AttributionToken(ApiModel):
    """Attribution handed from a click to a later conversion, carried as a cookie."""
    code: str
    affiliate_id: int
    max_age_seconds: int
    issued_at: datetime

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.max_age_seconds)


# ==================== RESULTS ====================


class ConversionResult(ApiModel):
    conversion: Optional[Conversion] = None
    ledger_entry: Optional[LedgerEntry] = None
    attributed: bool
    created: bool
    message: str


class ReversalResult(ApiModel):
    order_id: str
    requested_cents: int
    applied_cents: int
    ledger_entry: Optional[LedgerEntry] = None
    message: str


class Balance(ApiModel):
    affiliate_id: int
    balance_cents: int
    unallocated_entries: int
    last_entry_at: Optional[datetime] = None


class StatementLine(ApiModel):
    entry: LedgerEntry
    running_balance_cents: int


class Statement(ApiModel):
    affiliate_id: int
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    opening_balance_cents: int
    lines: list[StatementLine]
    closing_balance_cents: int


class AffiliateSummary(ApiModel):
    affiliate_id: int
    code: Optional[str] = None
    commission_bps: int
    clicks: int
    conversion_count: int
    revenue_cents: int
    commission_cents: int
    reversed_cents: int
    balance_cents: int
    pending_payout_cents: int
    approved_payout_cents: int
    paid_payout_cents: int


class PayoutBatch(ApiModel):
    payouts: list[Payout]
    created: int


class ExportRow(ApiModel):
    affiliate_id: int
    name: str
    email: str
    code: Optional[str] = None
    order_count: int
    revenue_amount: int
