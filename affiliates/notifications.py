"""Outbound notifications about affiliate applications.

Delivery itself belongs to an external collaborator; this module only
defines the seam and dispatches to it off the request's critical path.
"""

from typing import Any, Callable, Optional, Protocol

from affiliates.logging_config import get_logger
from affiliates.models import Affiliate

logger = get_logger(__name__)

# Same call shape as BackgroundTasks.add_task: dispatch(func, *args, **kwargs)
Dispatch = Callable[..., Any]


class Notifier(Protocol):
    def application_received(self, affiliate: Affiliate) -> None:
        ...

    def affiliate_approved(self, affiliate: Affiliate) -> None:
        ...


class LogNotifier:
    """Notifier that only records what would have been sent."""

    def __init__(self, site_url: str):
        self.site_url = site_url.rstrip("/")

    def referral_link(self, affiliate: Affiliate) -> Optional[str]:
        if not affiliate.code:
            return None
        return f"{self.site_url}/r/{affiliate.code}"

    def application_received(self, affiliate: Affiliate) -> None:
        logger.info(
            "affiliate_application_notification",
            affiliate_id=affiliate.id,
            name=affiliate.name,
            email=affiliate.email,
        )

    def affiliate_approved(self, affiliate: Affiliate) -> None:
        if not affiliate.email or not affiliate.code:
            logger.warning("affiliate_approval_notification_skipped", affiliate_id=affiliate.id)
            return
        logger.info(
            "affiliate_approval_notification",
            affiliate_id=affiliate.id,
            email=affiliate.email,
            code=affiliate.code,
            link=self.referral_link(affiliate),
            expires_at=affiliate.expires_at.isoformat() if affiliate.expires_at else None,
        )


def run_inline(func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    func(*args, **kwargs)


def deliver(send: Callable[[Affiliate], None], affiliate: Affiliate) -> None:
    """Call a notifier method, logging instead of raising on failure."""
    try:
        send(affiliate)
    except Exception:
        logger.warning(
            "notification_failed",
            notification=getattr(send, "__name__", repr(send)),
            affiliate_id=affiliate.id,
            exc_info=True,
        )
