import pytest

from affiliates.conversions import ConversionRecorder
from affiliates.db import Database
from affiliates.ledger import CommissionLedger
from affiliates.models import Affiliate
from affiliates.payouts import PayoutBatchGenerator
from affiliates.registry import AffiliateRegistry
from affiliates.settings import Settings
from affiliates.tracker import AttributionTracker

ADMIN_TOKEN = "test-admin-token"


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, Affiliate]] = []

    def application_received(self, affiliate: Affiliate) -> None:
        self.sent.append(("application_received", affiliate))

    def affiliate_approved(self, affiliate: Affiliate) -> None:
        self.sent.append(("affiliate_approved", affiliate))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'affiliates.db'}",
        admin_api_token=ADMIN_TOKEN,
        default_commission_bps=1000,
        affiliate_term_days=60,
        attribution_window_days=30,
        storage_retry_attempts=1,
    )


@pytest.fixture
def db(settings):
    database = Database(settings.database_url, timeout_seconds=settings.store_timeout_seconds).open()
    database.create_tables()
    yield database
    database.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def registry(db, settings, notifier):
    return AffiliateRegistry(db, settings, notifier)


@pytest.fixture
def tracker(db, registry, settings):
    return AttributionTracker(db, registry, settings)


@pytest.fixture
def ledger(db):
    return CommissionLedger(db)


@pytest.fixture
def recorder(db, registry, ledger):
    return ConversionRecorder(db, registry, ledger)


@pytest.fixture
def payouts(db):
    return PayoutBatchGenerator(db)


@pytest.fixture
def approved_affiliate(registry):
    """Factory for approved affiliates with a referral code."""
    def make(name="Jane Creator", email="jane@example.com", social_handle=None):
        affiliate = registry.apply(name=name, email=email, social_handle=social_handle)
        return registry.set_status(affiliate.id, "approved")
    return make
