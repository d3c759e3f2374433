"""Tests for the Google Ads conversion client — request shape and response classification."""

import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from clickmatch.config import Settings
from clickmatch.core.errors import PlatformPermanentError, PlatformTransientError
from clickmatch.core.google_ads import (
    GoogleAdsConversionClient,
    classify_error_code,
    format_conversion_time,
    parse_upload_response,
)
from clickmatch.core.platform import ConversionPayload, UploadOutcome, idempotency_token


def _payload(ref: str, **fields) -> ConversionPayload:
    fields.setdefault("ad_click_id", f"gclid-{ref}")
    fields.setdefault("conversion_time", datetime(2026, 3, 1, 12, 30, 5, tzinfo=timezone.utc))
    fields.setdefault("value", Decimal("19.99"))
    fields.setdefault("currency", "USD")
    return ConversionPayload(record_ref=ref, idempotency_token=idempotency_token(ref), **fields)


def _error(index: int, code: str, family: str = "conversionUploadError") -> dict:
    return {
        "errorCode": {family: code},
        "message": f"{code} happened",
        "location": {"fieldPathElements": [{"fieldName": "conversions", "index": index}]},
    }


def _partial(*errors) -> dict:
    return {"code": 3, "message": "partial failure", "details": [{"errors": list(errors)}]}


def _client(handler, **overrides) -> GoogleAdsConversionClient:
    return GoogleAdsConversionClient(Settings(**overrides), transport=httpx.MockTransport(handler))


class TestHelpers:
    def test_conversion_time_format(self):
        moment = datetime(2026, 3, 1, 7, 30, 5, tzinfo=timezone.utc)
        assert format_conversion_time(moment) == "2026-03-01 07:30:05+00:00"

    def test_conversion_time_from_naive(self):
        assert format_conversion_time(datetime(2026, 3, 1, 7, 30, 5)) == "2026-03-01 07:30:05+00:00"

    def test_classification(self):
        assert classify_error_code("EXPIRED_EVENT") == UploadOutcome.PERMANENT_FAILURE
        assert classify_error_code("TOO_RECENT_EVENT") == UploadOutcome.RETRYABLE_FAILURE
        assert classify_error_code("ORDER_ID_ALREADY_IN_USE") == UploadOutcome.SUCCESS
        assert classify_error_code("SOMETHING_NEW") == UploadOutcome.RETRYABLE_FAILURE


class TestParseResponse:
    def test_all_accepted(self):
        batch = [_payload("p1"), _payload("p2")]
        body = {"results": [{"gclid": "gclid-p1"}, {"gclid": "gclid-p2"}]}
        outcomes = parse_upload_response(body, batch)
        assert [o.outcome for o in outcomes] == [UploadOutcome.SUCCESS, UploadOutcome.SUCCESS]
        assert outcomes[0].detail == idempotency_token("p1")

    def test_partial_failure_by_index(self):
        batch = [_payload("p1"), _payload("p2"), _payload("p3")]
        body = {
            "results": [{"gclid": "gclid-p1"}, {}, {}],
            "partialFailureError": _partial(_error(1, "UNPARSEABLE_GCLID"), _error(2, "TOO_RECENT_EVENT")),
        }
        outcomes = parse_upload_response(body, batch)

        assert [o.record_ref for o in outcomes] == ["p1", "p2", "p3"]
        assert [o.outcome for o in outcomes] == [
            UploadOutcome.SUCCESS,
            UploadOutcome.PERMANENT_FAILURE,
            UploadOutcome.RETRYABLE_FAILURE,
        ]
        assert "UNPARSEABLE_GCLID" in outcomes[1].detail

    def test_replayed_order_id_counts_as_success(self):
        batch = [_payload("p1")]
        body = {"results": [{}], "partialFailureError": _partial(_error(0, "ORDER_ID_ALREADY_IN_USE"))}
        [outcome] = parse_upload_response(body, batch)
        assert outcome.outcome == UploadOutcome.SUCCESS
        assert outcome.detail == idempotency_token("p1")

    def test_permanent_beats_retryable_on_same_row(self):
        batch = [_payload("p1")]
        body = {
            "results": [{}],
            "partialFailureError": _partial(_error(0, "TOO_RECENT_EVENT"), _error(0, "EXPIRED_EVENT")),
        }
        [outcome] = parse_upload_response(body, batch)
        assert outcome.outcome == UploadOutcome.PERMANENT_FAILURE

    def test_missing_result_is_retryable(self):
        [outcome] = parse_upload_response({}, [_payload("p1")])
        assert outcome.outcome == UploadOutcome.RETRYABLE_FAILURE


class TestUpload:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"results": [{"gclid": "gclid-p1"}]})

        client = _client(handler, google_ads_login_customer_id="999-000-1111")
        payload = _payload("p1", hashed_email="e" * 64, hashed_phone="f" * 64)
        [outcome] = await client.upload_conversions([payload])

        assert outcome.outcome == UploadOutcome.SUCCESS
        assert seen["url"] == "https://googleads.googleapis.com/v17/customers/1234567890:uploadClickConversions"
        assert seen["headers"]["authorization"] == "Bearer access-token"
        assert seen["headers"]["developer-token"] == "dev-token"
        assert seen["headers"]["login-customer-id"] == "9990001111"

        body = seen["body"]
        assert body["partialFailure"] is True
        [conversion] = body["conversions"]
        assert conversion["gclid"] == "gclid-p1"
        assert conversion["conversionAction"] == "customers/1234567890/conversionActions/555"
        assert conversion["conversionDateTime"] == "2026-03-01 12:30:05+00:00"
        assert conversion["conversionValue"] == 19.99
        assert conversion["orderId"] == idempotency_token("p1")
        assert conversion["userIdentifiers"] == [{"hashedEmail": "e" * 64}, {"hashedPhoneNumber": "f" * 64}]
        assert conversion["consent"] == {"adUserData": "GRANTED", "adPersonalization": "GRANTED"}

    @pytest.mark.asyncio
    async def test_no_identifiers_when_unhashed(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"results": [{}]})

        await _client(handler).upload_conversions([_payload("p1")])
        assert "userIdentifiers" not in seen["body"]["conversions"][0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 429, 500, 503])
    async def test_transient_statuses(self, status):
        client = _client(lambda request: httpx.Response(status, json={"error": {}}))
        with pytest.raises(PlatformTransientError):
            await client.upload_conversions([_payload("p1")])

    @pytest.mark.asyncio
    async def test_bad_request_is_permanent(self):
        client = _client(lambda request: httpx.Response(400, json={"error": {"message": "bad"}}))
        with pytest.raises(PlatformPermanentError):
            await client.upload_conversions([_payload("p1")])

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(PlatformTransientError):
            await _client(handler).upload_conversions([_payload("p1")])

    @pytest.mark.asyncio
    async def test_non_json_body_is_transient(self):
        client = _client(lambda request: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(PlatformTransientError):
            await client.upload_conversions([_payload("p1")])

    @pytest.mark.asyncio
    async def test_unconfigured_account_is_permanent(self):
        client = _client(lambda request: httpx.Response(200, json={}), google_ads_customer_id="")
        with pytest.raises(PlatformPermanentError):
            await client.upload_conversions([_payload("p1")])

    @pytest.mark.asyncio
    async def test_token_provider(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, json={"results": [{"gclid": "x"}]})

        async def provider():
            return "fresh-token"

        client = GoogleAdsConversionClient(
            Settings(), token_provider=provider, transport=httpx.MockTransport(handler)
        )
        await client.upload_conversions([_payload("p1")])
        assert seen["auth"] == "Bearer fresh-token"

    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_call(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert await _client(handler).upload_conversions([]) == []
