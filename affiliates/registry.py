"""Affiliate identity, referral codes and the approval lifecycle."""

import re
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from affiliates.db import Database
from affiliates.errors import NotFoundError, ValidationError
from affiliates.logging_config import get_logger
from affiliates.models import (
    Affiliate,
    AffiliateStatus,
    AffiliateUpdateRequest,
    ApplyRequest,
    validated,
)
from affiliates.notifications import Dispatch, Notifier, deliver, run_inline
from affiliates.settings import Settings
from affiliates.tables import AffiliateRecord, utcnow

logger = get_logger(__name__)

CODE_MAX_LENGTH = 20
CODE_SUFFIX_ATTEMPTS = 100
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def format_code(raw: Optional[str]) -> str:
    """Normalize a referral code: alphanumerics only, upper case."""
    return _NON_ALNUM.sub("", raw or "").upper()


def code_seed(name: str, email: str, social_handle: Optional[str] = None) -> str:
    """Base for a new referral code.

    Prefers the social handle, otherwise first name plus the email's local part.
    """
    if social_handle and format_code(social_handle):
        return format_code(social_handle)
    first_name = (name.split() or [""])[0]
    local_part = email.split("@")[0]
    return format_code(f"{first_name}{local_part}") or "AFFILIATE"


def _parse_status(status) -> AffiliateStatus:
    try:
        return AffiliateStatus(status)
    except ValueError:
        allowed = ", ".join(s.value for s in AffiliateStatus)
        raise ValidationError(f"Invalid status {status!r}; expected one of: {allowed}")


class AffiliateRegistry:
    def __init__(self, db: Database, settings: Settings, notifier: Optional[Notifier] = None):
        self.db = db
        self.settings = settings
        self.notifier = notifier

    def apply(
        self,
        name: str,
        email: str,
        social_handle: Optional[str] = None,
        audience_size: Optional[str] = None,
        channels: Optional[str] = None,
        notes: Optional[str] = None,
        dispatch: Optional[Dispatch] = None,
    ) -> Affiliate:
        """Record a new affiliate application in pending status.

        Raises:
            ValidationError: empty name or malformed email
        """
        request = validated(
            ApplyRequest,
            name=name,
            email=email,
            social_handle=social_handle,
            audience_size=audience_size,
            channels=channels,
            notes=notes,
        )

        with self.db.session() as session:
            record = AffiliateRecord(
                name=request.name,
                email=request.email,
                social_handle=request.social_handle,
                audience_size=request.audience_size,
                channels=request.channels,
                notes=request.notes,
                status=AffiliateStatus.PENDING.value,
                commission_bps=self.settings.default_commission_bps,
            )
            session.add(record)
            session.flush()
            affiliate = Affiliate.model_validate(record)

        logger.info("affiliate_application_created", affiliate_id=affiliate.id, email=affiliate.email)
        self._notify("application_received", affiliate, dispatch)
        return affiliate

    def set_status(self, affiliate_id: int, status, dispatch: Optional[Dispatch] = None) -> Affiliate:
        """Move an affiliate to a new status.

        Setting the current status again is a no-op. The first approval assigns
        the referral code; later revocation keeps it.

        Raises:
            ValidationError: status is not one of pending, approved, declined
            NotFoundError: no affiliate with this id
        """
        return self._change(affiliate_id, _parse_status(status), None, dispatch)

    def update(self, affiliate_id: int, status=None, commission_bps: Optional[int] = None,
               dispatch: Optional[Dispatch] = None) -> Affiliate:
        """Admin update: status and/or commission rate, committed together."""
        request = validated(AffiliateUpdateRequest, status=status, commission_bps=commission_bps)
        return self._change(affiliate_id, request.status, request.commission_bps, dispatch)

    def set_commission_rate(self, affiliate_id: int, commission_bps: int) -> Affiliate:
        """Change the rate applied to this affiliate's future conversions."""
        request = validated(AffiliateUpdateRequest, commission_bps=commission_bps)
        return self._change(affiliate_id, None, request.commission_bps, None)

    def _change(
        self,
        affiliate_id: int,
        new_status: Optional[AffiliateStatus],
        commission_bps: Optional[int],
        dispatch: Optional[Dispatch],
    ) -> Affiliate:
        for attempt in range(3):
            try:
                affiliate, status_changed = self._apply_changes(affiliate_id, new_status, commission_bps)
                break
            except IntegrityError:
                # Another approval claimed the same generated code first
                logger.warning("affiliate_code_collision", affiliate_id=affiliate_id, attempt=attempt)
        else:
            raise ValidationError("Could not assign a unique referral code, retry later")

        if status_changed:
            logger.info(
                "affiliate_status_changed",
                affiliate_id=affiliate.id,
                status=affiliate.status.value,
                code=affiliate.code,
            )
            if new_status == AffiliateStatus.APPROVED:
                self._notify("affiliate_approved", affiliate, dispatch)
        return affiliate

    def _apply_changes(
        self,
        affiliate_id: int,
        new_status: Optional[AffiliateStatus],
        commission_bps: Optional[int],
    ) -> tuple[Affiliate, bool]:
        with self.db.session() as session:
            record = self._load(session, affiliate_id, for_update=True)
            now = utcnow()

            if commission_bps is not None and record.commission_bps != commission_bps:
                record.commission_bps = commission_bps
                record.updated_at = now
                logger.info(
                    "affiliate_commission_rate_changed",
                    affiliate_id=affiliate_id,
                    commission_bps=commission_bps,
                )

            status_changed = new_status is not None and record.status != new_status.value
            if status_changed:
                record.status = new_status.value
                record.updated_at = now
                if new_status == AffiliateStatus.APPROVED:
                    if not record.code:
                        record.code = self._generate_code(session, record)
                    record.approved_at = now
                    if self.settings.affiliate_term_days:
                        record.expires_at = now + timedelta(days=self.settings.affiliate_term_days)
                elif new_status == AffiliateStatus.DECLINED:
                    record.declined_at = now

            session.flush()
            return Affiliate.model_validate(record), status_changed

    def get_by_id(self, affiliate_id: int) -> Optional[Affiliate]:
        with self.db.session() as session:
            record = session.get(AffiliateRecord, affiliate_id)
            return Affiliate.model_validate(record) if record else None

    def get(self, affiliate_id: int) -> Affiliate:
        affiliate = self.get_by_id(affiliate_id)
        if affiliate is None:
            raise NotFoundError(f"Affiliate {affiliate_id} not found")
        return affiliate

    def get_by_code(self, code: Optional[str]) -> Optional[Affiliate]:
        normalized = format_code(code)
        if not normalized:
            return None

        with self.db.session() as session:
            record = session.query(AffiliateRecord).filter(
                AffiliateRecord.code == normalized
            ).first()
            return Affiliate.model_validate(record) if record else None

    def get_by_email(self, email: Optional[str]) -> Optional[Affiliate]:
        """Most recent application for this email, if any."""
        normalized = (email or "").strip().lower()
        if not normalized:
            return None

        with self.db.session() as session:
            record = session.query(AffiliateRecord).filter(
                AffiliateRecord.email == normalized
            ).order_by(AffiliateRecord.created_at.desc(), AffiliateRecord.id.desc()).first()
            return Affiliate.model_validate(record) if record else None

    def list_affiliates(self, status=None, limit: Optional[int] = None) -> list[Affiliate]:
        """Affiliates newest first, optionally filtered by status."""
        with self.db.session() as session:
            query = session.query(AffiliateRecord)
            if status is not None:
                query = query.filter(AffiliateRecord.status == _parse_status(status).value)
            query = query.order_by(AffiliateRecord.created_at.desc(), AffiliateRecord.id.desc())
            if limit:
                query = query.limit(limit)
            return [Affiliate.model_validate(r) for r in query.all()]

    def _load(self, session: Session, affiliate_id: int, for_update: bool = False) -> AffiliateRecord:
        query = session.query(AffiliateRecord).filter(AffiliateRecord.id == affiliate_id)
        if for_update:
            query = query.with_for_update()
        record = query.first()
        if record is None:
            raise NotFoundError(f"Affiliate {affiliate_id} not found")
        return record

    def _generate_code(self, session: Session, record: AffiliateRecord) -> str:
        base = code_seed(record.name, record.email, record.social_handle)[: CODE_MAX_LENGTH - 3]
        for attempt in range(1, CODE_SUFFIX_ATTEMPTS + 1):
            code = f"{base}{attempt:03d}"
            taken = session.query(AffiliateRecord.id).filter(AffiliateRecord.code == code).first()
            if not taken:
                return code
        return format_code(secrets.token_hex(4))

    def _notify(self, event: str, affiliate: Affiliate, dispatch: Optional[Dispatch]) -> None:
        if self.notifier is None:
            return
        (dispatch or run_inline)(deliver, getattr(self.notifier, event), affiliate)
