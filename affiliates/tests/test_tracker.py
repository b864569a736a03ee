"""
Unit Tests for Click Tracking and Attribution Tokens
"""

from contextlib import contextmanager

import pytest

from affiliates.errors import StorageUnavailable
from affiliates.tables import ClickRecord
from affiliates.tracker import AttributionTracker


class UnavailableDatabase:
    @contextmanager
    def session(self):
        raise StorageUnavailable("store is down")
        yield


class UnavailableRegistry:
    def get_by_code(self, code):
        raise StorageUnavailable("store is down")


def stored_clicks(db):
    with db.session() as session:
        return [
            (c.affiliate_id, c.code, c.landing_path)
            for c in session.query(ClickRecord).order_by(ClickRecord.id).all()
        ]


class TestRecordClick:
    """Tests for recording referral visits."""

    def test_known_code_issues_token(self, tracker, db, approved_affiliate):
        """Test that a resolved click is stored and issues a token."""
        affiliate = approved_affiliate()

        token = tracker.record_click(affiliate.code.lower(), landing_path="/pricing")

        assert token.code == affiliate.code
        assert token.affiliate_id == affiliate.id
        assert token.max_age_seconds == 30 * 24 * 60 * 60
        assert token.expires_at > token.issued_at
        assert stored_clicks(db) == [(affiliate.id, affiliate.code, "/pricing")]

    def test_unknown_code_stores_unresolved_click(self, tracker, db):
        """Test that an unknown code gives no token but still records the visit."""
        token = tracker.record_click("zzz")

        assert token is None
        assert stored_clicks(db) == [(None, "ZZZ", "/")]

    def test_each_click_issues_fresh_token(self, tracker, approved_affiliate):
        """Test that the latest click wins attribution."""
        first = approved_affiliate()
        second = approved_affiliate(name="Sam", email="sam@example.com")

        tracker.record_click(first.code)
        token = tracker.record_click(second.code)

        assert token.affiliate_id == second.id

    def test_write_goes_through_dispatch(self, tracker, db, approved_affiliate):
        """Test that the click write is handed to the dispatcher."""
        affiliate = approved_affiliate()
        queued = []

        token = tracker.record_click(affiliate.code, dispatch=lambda func, **kwargs: queued.append((func, kwargs)))

        assert token is not None
        assert stored_clicks(db) == []
        assert len(queued) == 1

        func, kwargs = queued[0]
        func(**kwargs)
        assert stored_clicks(db) == [(affiliate.id, affiliate.code, "/")]

    def test_write_failure_is_swallowed(self, registry, settings, approved_affiliate):
        """Test that a failed click write does not stop the redirect."""
        affiliate = approved_affiliate()
        tracker = AttributionTracker(UnavailableDatabase(), registry, settings)

        token = tracker.record_click(affiliate.code)

        assert token.affiliate_id == affiliate.id

    def test_lookup_failure_treated_as_unknown(self, settings):
        """Test that a store outage during lookup yields no token."""
        tracker = AttributionTracker(UnavailableDatabase(), UnavailableRegistry(), settings)

        assert tracker.resolve("JANE001") is None
        assert tracker.record_click("JANE001") is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
