"""Referral click tracking and attribution token issuance.

Tracking is best effort: a failed lookup or click write never stops the
visitor's redirect. Each resolved click issues a fresh token, so the most
recent click before purchase wins attribution.
"""

from typing import Optional

from affiliates.db import Database
from affiliates.errors import StorageUnavailable
from affiliates.logging_config import get_logger
from affiliates.models import Affiliate, AttributionToken
from affiliates.notifications import Dispatch, run_inline
from affiliates.registry import AffiliateRegistry, format_code
from affiliates.settings import Settings
from affiliates.tables import ClickRecord, utcnow

logger = get_logger(__name__)

MAX_LANDING_PATH = 512
MAX_CODE_LENGTH = 64


class AttributionTracker:
    def __init__(self, db: Database, registry: AffiliateRegistry, settings: Settings):
        self.db = db
        self.registry = registry
        self.settings = settings

    def resolve(self, code: Optional[str]) -> Optional[Affiliate]:
        """Affiliate owning this referral code, or None when unknown or the store is down."""
        try:
            return self.registry.get_by_code(code)
        except StorageUnavailable:
            logger.warning("referral_code_lookup_failed", code=code, exc_info=True)
            return None

    def record_click(
        self,
        code: Optional[str],
        landing_path: Optional[str] = "/",
        referrer: Optional[str] = None,
        user_agent: Optional[str] = None,
        dispatch: Optional[Dispatch] = None,
    ) -> Optional[AttributionToken]:
        """Record a referral visit and return the token to set as the attribution cookie.

        Unknown codes return None and the click is stored without an affiliate.
        The write goes through ``dispatch`` (inline by default) and its
        failures are logged, never raised.
        """
        affiliate = self.resolve(code)

        click = {
            "affiliate_id": affiliate.id if affiliate else None,
            "code": (affiliate.code if affiliate else format_code(code))[:MAX_CODE_LENGTH] or None,
            "landing_path": (landing_path or "/")[:MAX_LANDING_PATH],
            "referrer": referrer,
            "user_agent": user_agent,
        }
        (dispatch or run_inline)(self._write_click, **click)

        if affiliate is None:
            logger.info("referral_code_unresolved", code=code)
            return None

        return self.issue_token(affiliate)

    def issue_token(self, affiliate: Affiliate) -> AttributionToken:
        return AttributionToken(
            code=affiliate.code,
            affiliate_id=affiliate.id,
            max_age_seconds=self.settings.attribution_window_seconds,
            issued_at=utcnow(),
        )

    def _write_click(self, **click) -> None:
        try:
            with self.db.session() as session:
                session.add(ClickRecord(**click))
        except Exception:
            logger.warning(
                "click_record_failed",
                affiliate_id=click.get("affiliate_id"),
                code=click.get("code"),
                exc_info=True,
            )
            return

        logger.debug("click_recorded", affiliate_id=click.get("affiliate_id"), code=click.get("code"))

