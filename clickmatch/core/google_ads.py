"""
Google Ads enhanced conversion upload over the REST API.

POST /{version}/customers/{customer_id}:uploadClickConversions
  - partialFailure=true: good rows are accepted even if others fail
  - orderId = our idempotency token, so a replayed upload is recognised
  - hashed email/phone as userIdentifiers (enhanced conversions)

Per-record outcomes come from partialFailureError.details[].errors[], whose
location points at conversions[index]. OAuth token minting lives outside this
service; callers hand us an access token or an async provider.
"""

from datetime import timezone
from typing import Awaitable, Callable, Sequence

import httpx

from clickmatch.config import Settings, get_settings
from clickmatch.core.errors import PlatformPermanentError, PlatformTransientError
from clickmatch.core.platform import ConversionPayload, RecordResult, UploadOutcome

import structlog

logger = structlog.get_logger()

GOOGLE_ADS_BASE_URL = "https://googleads.googleapis.com"

# conversionUploadError codes worth retrying later
RETRYABLE_ERROR_CODES: set[str] = {
    "TOO_RECENT_EVENT",                 # gclid not processed yet, retry in a few hours
    "EVENT_NOT_FOUND",
    "TOO_RECENT_CONVERSION_ACTION",
    "CONCURRENT_MODIFICATION",
    "INTERNAL_ERROR",
    "TRANSIENT_ERROR",
    "RESOURCE_EXHAUSTED",
    "RESOURCE_TEMPORARILY_EXHAUSTED",
}

PERMANENT_ERROR_CODES: set[str] = {
    "UNPARSEABLE_GCLID",
    "CONVERSION_PRECEDES_EVENT",
    "EXPIRED_EVENT",
    "INVALID_CONVERSION_ACTION",
    "CLICK_CONVERSION_ALREADY_EXISTS",
    "DUPLICATE_ORDER_ID",
    "INVALID_USER_IDENTIFIER",
    "ORDER_ID_CONTAINS_PII",
    "GBRAID_WBRAID_BOTH_SET",
    "CONVERSION_TRACKING_NOT_ENABLED_AT_IMPRESSION_TIME",
}

# The platform already holds this order id: our own earlier upload whose response was lost
REPLAY_ERROR_CODES: set[str] = {
    "ORDER_ID_ALREADY_IN_USE",
}


def format_conversion_time(moment) -> str:
    """'yyyy-mm-dd hh:mm:ss+00:00' as the API wants it."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S") + "+00:00"


def normalize_customer_id(customer_id: str) -> str:
    return "".join(ch for ch in (customer_id or "") if ch.isdigit())


def classify_error_code(code: str | None) -> UploadOutcome:
    if code in REPLAY_ERROR_CODES:
        return UploadOutcome.SUCCESS
    if code in PERMANENT_ERROR_CODES:
        return UploadOutcome.PERMANENT_FAILURE
    return UploadOutcome.RETRYABLE_FAILURE


def _error_code(error: dict) -> str | None:
    codes = error.get("errorCode") or {}
    # {"conversionUploadError": "EXPIRED_EVENT"}, one key per error family
    for value in codes.values():
        if isinstance(value, str):
            return value
    return None


def _error_index(error: dict) -> int | None:
    elements = (error.get("location") or {}).get("fieldPathElements") or []
    for element in elements:
        if element.get("fieldName") == "conversions" and "index" in element:
            try:
                return int(element["index"])
            except (TypeError, ValueError):
                return None
    return None


def parse_upload_response(body: dict, batch: Sequence[ConversionPayload]) -> list[RecordResult]:
    """Turn an uploadClickConversions response into one RecordResult per payload."""
    errors_by_index: dict[int, list[dict]] = {}
    partial = body.get("partialFailureError") or {}
    for detail in partial.get("details") or []:
        for error in detail.get("errors") or []:
            index = _error_index(error)
            if index is not None:
                errors_by_index.setdefault(index, []).append(error)

    results = body.get("results") or []
    outcomes: list[RecordResult] = []
    for index, payload in enumerate(batch):
        errors = errors_by_index.get(index)
        if errors:
            classified = [classify_error_code(_error_code(e)) for e in errors]
            if UploadOutcome.PERMANENT_FAILURE in classified:
                outcome = UploadOutcome.PERMANENT_FAILURE
            elif all(c == UploadOutcome.SUCCESS for c in classified):
                outcome = UploadOutcome.SUCCESS
            else:
                outcome = UploadOutcome.RETRYABLE_FAILURE
            detail = "; ".join(
                f"{_error_code(e) or 'UNKNOWN'}: {e.get('message', '')}".strip() for e in errors
            )
            if outcome == UploadOutcome.SUCCESS:
                detail = payload.idempotency_token
            outcomes.append(RecordResult(payload.record_ref, outcome, detail))
            continue

        accepted = index < len(results) and bool(results[index])
        if accepted:
            outcomes.append(RecordResult(payload.record_ref, UploadOutcome.SUCCESS, payload.idempotency_token))
        elif partial:
            # Batch had failures but none located at this row; unknown → retry
            outcomes.append(RecordResult(
                payload.record_ref,
                UploadOutcome.RETRYABLE_FAILURE,
                partial.get("message") or "no result for record",
            ))
        else:
            outcomes.append(RecordResult(payload.record_ref, UploadOutcome.RETRYABLE_FAILURE, "no result for record"))
    return outcomes


class GoogleAdsConversionClient:
    """PlatformClient for Google Ads click conversions."""

    def __init__(
        self,
        settings: Settings | None = None,
        access_token: str | None = None,
        token_provider: Callable[[], Awaitable[str]] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.customer_id = normalize_customer_id(self.settings.google_ads_customer_id)
        self.login_customer_id = normalize_customer_id(self.settings.google_ads_login_customer_id)
        self._access_token = access_token or self.settings.google_ads_access_token
        self._token_provider = token_provider
        self._transport = transport

    @property
    def conversion_action(self) -> str:
        action_id = self.settings.google_ads_conversion_action_id
        if action_id.startswith("customers/"):
            return action_id
        return f"customers/{self.customer_id}/conversionActions/{action_id}"

    @property
    def upload_url(self) -> str:
        version = self.settings.google_ads_api_version
        return f"{GOOGLE_ADS_BASE_URL}/{version}/customers/{self.customer_id}:uploadClickConversions"

    def format_conversion(self, payload: ConversionPayload) -> dict:
        identifiers = []
        if payload.hashed_email:
            identifiers.append({"hashedEmail": payload.hashed_email})
        if payload.hashed_phone:
            identifiers.append({"hashedPhoneNumber": payload.hashed_phone})

        conversion = {
            "gclid": payload.ad_click_id,
            "conversionAction": self.conversion_action,
            "conversionDateTime": format_conversion_time(payload.conversion_time),
            "conversionValue": float(payload.value),
            "currencyCode": payload.currency or self.settings.google_ads_currency,
            "orderId": payload.idempotency_token,
            "consent": {"adUserData": "GRANTED", "adPersonalization": "GRANTED"},
        }
        if identifiers:
            conversion["userIdentifiers"] = identifiers
        return conversion

    async def _headers(self) -> dict[str, str]:
        token = await self._token_provider() if self._token_provider else self._access_token
        if not token:
            raise PlatformTransientError("no Google Ads access token available")
        headers = {
            "Authorization": f"Bearer {token}",
            "developer-token": self.settings.google_ads_developer_token,
            "Content-Type": "application/json",
        }
        if self.login_customer_id:
            headers["login-customer-id"] = self.login_customer_id
        return headers

    async def upload_conversions(self, batch: Sequence[ConversionPayload]) -> list[RecordResult]:
        if not batch:
            return []
        if not self.customer_id or not self.settings.google_ads_conversion_action_id:
            raise PlatformPermanentError("Google Ads customer id / conversion action not configured")

        body = {
            "conversions": [self.format_conversion(p) for p in batch],
            "partialFailure": True,
            "validateOnly": False,
        }
        headers = await self._headers()

        async with httpx.AsyncClient(transport=self._transport) as client:
            try:
                resp = await client.post(
                    self.upload_url,
                    headers=headers,
                    json=body,
                    timeout=self.settings.platform_timeout_seconds,
                )
            except httpx.TimeoutException as e:
                raise PlatformTransientError(f"Google Ads timed out: {e}") from e
            except httpx.RequestError as e:
                raise PlatformTransientError(f"Cannot reach Google Ads: {e}") from e

        if resp.status_code in (401, 403, 429) or resp.status_code >= 500:
            logger.warning("google_ads_upload_rejected", status=resp.status_code, body=resp.text[:500])
            raise PlatformTransientError(f"Google Ads returned {resp.status_code}")
        if resp.status_code != 200:
            logger.warning("google_ads_upload_failed", status=resp.status_code, body=resp.text[:500])
            raise PlatformPermanentError(f"Google Ads returned {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise PlatformTransientError("Google Ads returned a non-JSON body") from e

        outcomes = parse_upload_response(payload, batch)
        logger.info(
            "google_ads_upload_complete",
            sent=len(batch),
            accepted=sum(1 for o in outcomes if o.outcome == UploadOutcome.SUCCESS),
            partial_failure=bool(payload.get("partialFailureError")),
        )
        return outcomes
