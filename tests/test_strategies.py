"""Tests for the per-tier click selectors."""

from datetime import timedelta

from clickmatch.core.identity import email_hash, phone_hash
from clickmatch.core.strategies import (
    default_strategies,
    identity_selector,
    last_touch,
    probabilistic_selector,
    select_exact_id,
)
from clickmatch.core.types import ConfidenceTier

from fakes import make_click, make_purchase

IDENTITY = identity_selector(timedelta(days=30))
PROBABILISTIC = probabilistic_selector(timedelta(hours=24))


class TestLastTouch:
    def test_most_recent_wins(self):
        old = make_click("a", before=timedelta(days=3))
        new = make_click("b", before=timedelta(days=1))
        assert last_touch([old, new]) == new

    def test_tie_goes_to_smaller_id(self):
        c2 = make_click("c2", before=timedelta(hours=2))
        c1 = make_click("c1", before=timedelta(hours=2))
        assert last_touch([c2, c1]) == c1

    def test_empty(self):
        assert last_touch([]) is None


class TestExactId:
    def test_matches_gclid(self):
        click = make_click("c1", ad_click_id="gclid-xyz")
        purchase = make_purchase("p1", ad_click_id="gclid-xyz")
        assert select_exact_id(purchase, [click], set()) == click

    def test_matches_internal_id(self):
        click = make_click("c1")
        purchase = make_purchase("p1", ad_click_id="c1")
        assert select_exact_id(purchase, [click], set()) == click

    def test_claimed_by_other_purchase_is_skipped(self):
        click = make_click("c1", matched_purchase_id="p9")
        purchase = make_purchase("p1", ad_click_id="c1")
        assert select_exact_id(purchase, [click], set()) is None

    def test_own_claim_is_still_eligible(self):
        click = make_click("c1", matched_purchase_id="p1")
        purchase = make_purchase("p1", ad_click_id="c1")
        assert select_exact_id(purchase, [click], set()) == click

    def test_excluded(self):
        click = make_click("c1")
        purchase = make_purchase("p1", ad_click_id="c1")
        assert select_exact_id(purchase, [click], {"c1"}) is None

    def test_no_click_id(self):
        assert select_exact_id(make_purchase("p1"), [make_click("c1")], set()) is None


class TestIdentity:
    def test_email_within_window(self):
        click = make_click("c1", before=timedelta(days=5), email_hash=email_hash("a@x.com"))
        purchase = make_purchase("p2", email="A@X.com ")
        assert IDENTITY(purchase, [click], set()) == click

    def test_phone_within_window(self):
        click = make_click("c1", before=timedelta(days=2), phone_hash=phone_hash("+15551234567"))
        purchase = make_purchase("p2", phone="(555) 123-4567")
        assert IDENTITY(purchase, [click], set()) == click

    def test_outside_window(self):
        click = make_click("c1", before=timedelta(days=31), email_hash=email_hash("a@x.com"))
        assert IDENTITY(make_purchase("p2", email="a@x.com"), [click], set()) is None

    def test_window_boundary_inclusive(self):
        edge = make_click("c1", before=timedelta(days=30), email_hash=email_hash("a@x.com"))
        same_instant = make_click("c2", before=timedelta(0), email_hash=email_hash("a@x.com"))
        purchase = make_purchase("p2", email="a@x.com")
        assert IDENTITY(purchase, [edge], set()) == edge
        assert IDENTITY(purchase, [same_instant], set()) == same_instant

    def test_click_after_purchase_ignored(self):
        later = make_click("c1", before=timedelta(minutes=-5), email_hash=email_hash("a@x.com"))
        assert IDENTITY(make_purchase("p2", email="a@x.com"), [later], set()) is None

    def test_last_touch_among_matches(self):
        h = email_hash("a@x.com")
        older = make_click("c1", before=timedelta(days=10), email_hash=h)
        newer = make_click("c2", before=timedelta(days=1), email_hash=h)
        assert IDENTITY(make_purchase("p2", email="a@x.com"), [older, newer], set()) == newer

    def test_no_identity(self):
        click = make_click("c1", email_hash=email_hash("a@x.com"))
        assert IDENTITY(make_purchase("p2"), [click], set()) is None


class TestProbabilistic:
    def test_same_ip_within_window(self):
        click = make_click("c1", before=timedelta(hours=3), ip_address="1.2.3.4")
        purchase = make_purchase("p3", ip_address="1.2.3.4")
        assert PROBABILISTIC(purchase, [click], set()) == click

    def test_beyond_window(self):
        click = make_click("c1", before=timedelta(hours=25), ip_address="1.2.3.4")
        assert PROBABILISTIC(make_purchase("p3", ip_address="1.2.3.4"), [click], set()) is None

    def test_different_ip(self):
        click = make_click("c1", ip_address="5.6.7.8")
        assert PROBABILISTIC(make_purchase("p3", ip_address="1.2.3.4"), [click], set()) is None

    def test_not_used_when_purchase_has_identity(self):
        click = make_click("c1", ip_address="1.2.3.4")
        purchase = make_purchase("p3", ip_address="1.2.3.4", email="nobody@x.com")
        assert PROBABILISTIC(purchase, [click], set()) is None


def test_default_strategies_in_precedence_order(settings):
    tiers = [s.tier for s in default_strategies(settings)]
    assert tiers == [ConfidenceTier.EXACT_ID, ConfidenceTier.IDENTITY, ConfidenceTier.PROBABILISTIC]


def test_tier_ordering():
    assert ConfidenceTier.EXACT_ID > ConfidenceTier.IDENTITY > ConfidenceTier.PROBABILISTIC > ConfidenceTier.NONE
    assert ConfidenceTier.at_least(ConfidenceTier.IDENTITY) == [ConfidenceTier.IDENTITY, ConfidenceTier.EXACT_ID]
