"""Tests for the HTTP surface — request validation, status codes, response shapes."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from clickmatch.api.sync import get_platform_client
from clickmatch.config import get_settings
from clickmatch.core.identity import email_hash
from clickmatch.core.platform import UploadOutcome
from clickmatch.main import app
from clickmatch.middleware.auth import APIKey, AuthContext, require_secret_key
from clickmatch.middleware.rate_limit import check_rate_limit, reset_rate_limits
from clickmatch.models.database import get_db
from clickmatch.models.store import get_store

from fakes import FakePlatformClient, InMemoryStore, make_click

PURCHASED_AT = "2026-03-01T12:00:00Z"


@pytest.fixture
def store():
    return InMemoryStore(clicks=[
        make_click("c1"),
        make_click("c2", before=timedelta(days=5), email_hash=email_hash("a@x.com")),
    ])


@pytest.fixture
def platform():
    return FakePlatformClient(outcomes={"p2": UploadOutcome.RETRYABLE_FAILURE})


@pytest.fixture
def client(store, platform):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_platform_client] = lambda: platform
    app.dependency_overrides[require_secret_key] = lambda: AuthContext(key_id=1, name="test")
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestMatchEndpoint:
    def test_single_purchase(self, client, store):
        resp = client.post("/v1/match", json={"purchase": {"id": "p1", "clickId": "c1", "purchasedAt": PURCHASED_AT}})
        assert resp.status_code == 200
        assert resp.json() == {"matchedClickId": "c1", "confidence": "EXACT_ID"}
        assert store.claim_owner("c1") == "p1"

    def test_batch_keeps_input_order(self, client):
        resp = client.post("/v1/match", json={"purchases": [
            {"id": "p2", "email": "A@X.com ", "purchasedAt": PURCHASED_AT},
            {"id": "p3", "purchasedAt": PURCHASED_AT},
            {"id": "p1", "clickId": "c1", "purchasedAt": PURCHASED_AT},
        ]})
        assert resp.status_code == 200
        assert resp.json() == [
            {"matchedClickId": "c2", "confidence": "IDENTITY"},
            {"matchedClickId": None, "confidence": "NONE"},
            {"matchedClickId": "c1", "confidence": "EXACT_ID"},
        ]

    def test_repeat_call_returns_same_result(self, client):
        body = {"purchase": {"id": "p1", "clickId": "c1", "purchasedAt": PURCHASED_AT}}
        first = client.post("/v1/match", json=body).json()
        assert client.post("/v1/match", json=body).json() == first

    def test_missing_purchase(self, client):
        resp = client.post("/v1/match", json={})
        assert resp.status_code == 400

    def test_both_forms_rejected(self, client):
        purchase = {"id": "p1", "purchasedAt": PURCHASED_AT}
        resp = client.post("/v1/match", json={"purchase": purchase, "purchases": [purchase]})
        assert resp.status_code == 400

    @pytest.mark.parametrize("purchase", [
        {"clickId": "c1"},
        {"id": ""},
        {"id": "p1", "purchasedAt": "not-a-date"},
        {"id": "p1", "value": "lots"},
    ])
    def test_malformed_purchase(self, client, purchase):
        resp = client.post("/v1/match", json={"purchase": purchase})
        assert resp.status_code == 422

    def test_store_unavailable(self, client, store):
        store.fail_on.add("save_purchases")
        resp = client.post("/v1/match", json={"purchase": {"id": "p1", "purchasedAt": PURCHASED_AT}})
        assert resp.status_code == 503

    def test_pending(self, client, store):
        client.post("/v1/match", json={"purchase": {"id": "p9", "clickId": "late", "purchasedAt": PURCHASED_AT}})
        store.clicks["c9"] = make_click("c9", ad_click_id="late")

        resp = client.post("/v1/match/pending", json={"limit": 10})
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        assert body["byTier"]["EXACT_ID"] == 1


class TestSyncEndpoint:
    def _seed(self, client):
        client.post("/v1/match", json={"purchases": [
            {"id": "p1", "clickId": "c1", "purchasedAt": PURCHASED_AT, "value": "10.00"},
            {"id": "p2", "email": "a@x.com", "purchasedAt": PURCHASED_AT},
        ]})

    def test_sync_report(self, client, platform):
        self._seed(client)
        resp = client.post("/v1/sync", json={"maxSize": 50})
        assert resp.status_code == 200
        assert resp.json() == {"attempted": 2, "succeeded": 1, "failed": 1, "skipped": 0}
        assert len(platform.calls) == 1

    def test_sync_without_body(self, client):
        self._seed(client)
        resp = client.post("/v1/sync")
        assert resp.status_code == 200
        assert resp.json()["attempted"] == 2

    def test_invalid_max_size(self, client):
        assert client.post("/v1/sync", json={"maxSize": 0}).status_code == 422
        assert client.post("/v1/sync", json={"maxSize": "many"}).status_code == 422

    def test_store_unavailable(self, client, store):
        store.fail_on.add("expire_exhausted_syncs")
        assert client.post("/v1/sync", json={}).status_code == 503

    def test_status(self, client):
        self._seed(client)
        client.post("/v1/sync", json={})
        resp = client.get("/v1/sync/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["counts"]["SYNCED"] == 1
        assert body["counts"]["FAILED_RETRYABLE"] == 1
        assert body["total"] == 2


class TestAuth:
    def test_missing_key_rejected(self, store):
        app.dependency_overrides[get_store] = lambda: store
        try:
            resp = TestClient(app).post("/v1/match", json={"purchase": {"id": "p1"}})
        finally:
            app.dependency_overrides.clear()
        assert resp.status_code == 401

    def test_rate_limit(self):
        reset_rate_limits()
        for _ in range(3):
            check_rate_limit("apikey:test", 3)
        with pytest.raises(HTTPException) as exc:
            check_rate_limit("apikey:test", 3)
        assert exc.value.status_code == 429
        reset_rate_limits()


class TestAdmin:
    def test_wrong_setup_key(self):
        resp = TestClient(app).post("/admin/api-keys", json={"setup_key": "nope"})
        assert resp.status_code == 403

    def test_issues_key_once(self):
        session = MagicMock()
        session.commit = AsyncMock()

        async def fake_db():
            yield session

        app.dependency_overrides[get_db] = fake_db
        try:
            resp = TestClient(app).post("/admin/api-keys", json={"setup_key": "test-setup-key", "name": "cron"})
        finally:
            app.dependency_overrides.clear()

        assert resp.status_code == 200
        raw = resp.json()["secret_key"]
        assert raw.startswith("cm_sec_")
        [stored] = [call.args[0] for call in session.add.call_args_list]
        assert isinstance(stored, APIKey)
        assert stored.key_hash != raw
        assert stored.name == "cron"


def test_health_and_headers():
    resp = TestClient(app).get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_app_title_from_settings():
    assert app.title == get_settings().app_name == "Clickmatch"
