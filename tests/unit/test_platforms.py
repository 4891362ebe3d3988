"""Unit tests for platform forwarders, the retry loop and credential checks."""

from __future__ import annotations

import hashlib
import json

import pytest

from healthtrack.config import ForwarderConfig
from healthtrack.http import HTTPResponse
from healthtrack.observability import latency_metrics_snapshot
from healthtrack.platforms import ForwardEvent
from healthtrack.platforms import GA4Forwarder
from healthtrack.platforms import LinkedInForwarder
from healthtrack.platforms import MetaForwarder
from healthtrack.platforms import PlatformForwarder
from healthtrack.platforms import TikTokForwarder
from healthtrack.platforms import build_forwarder
from healthtrack.platforms import check_platform_credentials
from healthtrack.platforms.ga4 import filter_params
from healthtrack.platforms.ga4 import sanitize_event_name
from healthtrack.platforms.linkedin import conversion_value
from healthtrack.platforms.meta import map_custom_data
from healthtrack.platforms.meta import map_event_name as meta_event_name
from healthtrack.platforms.tiktok import map_event_name as tiktok_event_name

_FAST = ForwarderConfig(max_retries=3, retry_delay_seconds=0, timeout_seconds=1)

_GA4 = {"measurement_id": "G-TEST123", "api_secret": "secret"}
_META = {"pixel_id": "123", "access_token": "tok"}
_TIKTOK = {"pixel_code": "PIX", "access_token": "tok"}
_LINKEDIN = {"conversion_id": "987", "access_token": "tok"}


def _event(
    event_type: str = "custom_event",
    event_name: str = "cta_click",
    *,
    session_id: str = "sess-1",
    properties: dict | None = None,
) -> ForwardEvent:
    return ForwardEvent(
        event_type=event_type,
        event_name=event_name,
        properties=properties or {},
        session_id=session_id,
        page_url="https://clinic.example.com/services",
        referrer="https://www.google.com/search",
        timestamp="2026-03-01T12:00:00.000Z",
    )


def _json(body: dict) -> str:
    return json.dumps(body)


# ---------------------------------------------------------------------------
# Shared behaviour
# ---------------------------------------------------------------------------


class TestForwarderBase:
    def test_event_id_is_deterministic(self):
        event = _event()
        raw = "sess-1_custom_event_cta_click_2026-03-01T12:00:00.000Z"
        assert PlatformForwarder.event_id(event) == hashlib.sha256(raw.encode()).hexdigest()[:32]
        assert PlatformForwarder.event_id(event) == PlatformForwarder.event_id(_event())

    def test_event_id_changes_with_timestamp(self):
        other = _event().model_copy(update={"timestamp": "2026-03-01T12:00:01.000Z"})
        assert PlatformForwarder.event_id(_event()) != PlatformForwarder.event_id(other)

    def test_hashed_session_id_is_salted_and_case_insensitive(self):
        forwarder = MetaForwarder(_META, salt="org-salt")
        expected = hashlib.sha256(b"org-saltabc").hexdigest()
        assert forwarder.hashed_session_id("ABC") == expected
        assert MetaForwarder(_META, salt="other").hashed_session_id("abc") != expected

    async def test_unconfigured_forwarder_fails_without_network(self, http_transport_factory):
        http = http_transport_factory()
        forwarder = MetaForwarder({"pixel_id": "123"}, transport=http)
        result = await forwarder.send_events([_event()])
        assert not result.success
        assert result.errors == ["Meta CAPI not configured"]
        assert http.calls == []

    async def test_retries_then_succeeds(self, http_transport_factory, network_error):
        http = http_transport_factory(network_error, HTTPResponse(200, _json({"events_received": 1})))
        forwarder = MetaForwarder(_META, config=_FAST, transport=http)
        result = await forwarder.send_events([_event()])
        assert result.success
        assert result.event_count == 1
        assert len(http.calls) == 2

    async def test_gives_up_after_max_retries(self, http_transport_factory, network_error):
        http = http_transport_factory(network_error)
        forwarder = GA4Forwarder(_GA4, config=_FAST, transport=http)
        result = await forwarder.send_events([_event()])
        assert not result.success
        assert result.errors == ["network error: connection refused"]
        assert len(http.calls) == 3

    async def test_client_errors_are_not_retried(self, http_transport_factory):
        http = http_transport_factory(HTTPResponse(400, ""))
        forwarder = GA4Forwarder(_GA4, config=_FAST, transport=http)
        result = await forwarder.send_events([_event()])
        assert result.errors == ["GA4 returned status 400"]
        assert len(http.calls) == 1

    async def test_send_records_latency(self, http_transport_factory):
        forwarder = GA4Forwarder(_GA4, config=_FAST, transport=http_transport_factory())
        await forwarder.send_events([_event()])
        assert latency_metrics_snapshot()["forward.ga4"]["count"] == 1

    def test_build_forwarder_rejects_unknown_platform(self):
        with pytest.raises(ValueError, match="Unknown platform: snapchat"):
            build_forwarder("snapchat")

    def test_build_forwarder_passes_salt(self):
        forwarder = build_forwarder("tiktok", _TIKTOK, salt="s")
        assert isinstance(forwarder, TikTokForwarder)
        assert forwarder.salt == "s"
        assert forwarder.is_configured()


# ---------------------------------------------------------------------------
# GA4
# ---------------------------------------------------------------------------


class TestGA4:
    def test_sanitize_event_name(self):
        assert sanitize_event_name("Book Now!") == "book_now_"
        assert sanitize_event_name("123start") == "start"
        assert sanitize_event_name("999") == "custom_event"
        assert len(sanitize_event_name("x" * 80)) == 40

    def test_filter_params_keeps_scalars(self):
        params = filter_params(
            {
                "Button Label": "x" * 150,
                "count": 2,
                "nested": {"a": 1},
                "items": [1],
                "missing": None,
                "conversion_value": 10,
                "currency": "EUR",
            }
        )
        assert params == {"button_label": "x" * 100, "count": 2}

    def test_maps_page_view(self):
        forwarder = GA4Forwarder(_GA4)
        mapped = forwarder.map_event(_event("page_view", "page_view"))
        assert mapped["name"] == "page_view"
        assert mapped["params"]["page_location"] == "https://clinic.example.com/services"
        assert mapped["params"]["page_referrer"] == "https://www.google.com/search"

    def test_maps_conversion_value(self):
        forwarder = GA4Forwarder(_GA4)
        mapped = forwarder.map_event(
            _event("conversion", "booked", properties={"conversion_value": 99.5})
        )
        assert mapped == {"name": "booked", "params": {"value": 99.5, "currency": "USD"}}

    async def test_one_request_per_client(self, http_transport_factory):
        http = http_transport_factory(HTTPResponse(204, ""))
        forwarder = GA4Forwarder(_GA4, salt="salt", config=_FAST, transport=http)
        result = await forwarder.send_events(
            [_event(session_id="a"), _event(session_id="b"), _event(session_id="a")]
        )
        assert result.success
        assert result.event_count == 3
        assert len(http.calls) == 2
        body = http.calls[0]["json"]
        assert body["non_personalized_ads"] is True
        assert body["client_id"] == hashlib.sha256(b"salta").hexdigest()
        assert len(body["events"]) == 2
        assert "measurement_id=G-TEST123" in http.calls[0]["url"]

    async def test_partial_delivery_is_tracked_per_event(self, http_transport_factory):
        http = http_transport_factory(HTTPResponse(204, ""), HTTPResponse(400, ""))
        forwarder = GA4Forwarder(_GA4, config=_FAST, transport=http)
        result = await forwarder.send_events(
            [_event(session_id="a"), _event(session_id="b"), _event(session_id="a")]
        )
        assert not result.success
        assert result.event_count == 2
        assert result.errors == ["GA4 returned status 400"]
        assert [result.event_delivered(i) for i in range(3)] == [True, False, True]

    async def test_validate_reports_messages(self, http_transport_factory):
        http = http_transport_factory(
            HTTPResponse(200, _json({"validationMessages": [{"description": "Bad secret"}]}))
        )
        check = await GA4Forwarder(_GA4, transport=http).validate_credentials()
        assert not check.valid
        assert check.message == "Bad secret"
        assert "/debug/mp/collect" in http.calls[0]["url"]

    async def test_validate_success(self, http_transport_factory):
        http = http_transport_factory(HTTPResponse(200, _json({"validationMessages": []})))
        check = await GA4Forwarder(_GA4, transport=http).validate_credentials()
        assert check.valid


# ---------------------------------------------------------------------------
# Meta
# ---------------------------------------------------------------------------


class TestMeta:
    @pytest.mark.parametrize(
        "event_type, name, expected",
        [
            ("page_view", "page_view", "PageView"),
            ("custom_event", "cta", "ViewContent"),
            ("conversion", "order_complete", "Purchase"),
            ("conversion", "contact_form_submit", "Lead"),
            ("conversion", "signup", "CompleteRegistration"),
            ("conversion", "contact_us", "Contact"),
            ("conversion", "appointment_booked", "Schedule"),
            ("conversion", "something_else", "Lead"),
        ],
    )
    def test_event_name_mapping(self, event_type, name, expected):
        assert meta_event_name(_event(event_type, name)) == expected

    def test_custom_data(self):
        assert map_custom_data({"conversion_value": 50}) == {"value": 50, "currency": "USD"}
        assert map_custom_data({"conversion_value": 5, "currency": "EUR"}) == {
            "value": 5,
            "currency": "EUR",
        }
        assert map_custom_data({}) == {}

    async def test_payload_has_no_advanced_matching(self, http_transport_factory):
        http = http_transport_factory(HTTPResponse(200, _json({"events_received": 1})))
        forwarder = MetaForwarder(_META, salt="s", config=_FAST, transport=http)
        await forwarder.send_events([_event("conversion", "purchase", properties={"conversion_value": 10})])

        data = http.calls[0]["json"]["data"][0]
        assert data["event_name"] == "Purchase"
        assert data["action_source"] == "website"
        assert data["event_time"] == 1772366400
        assert set(data["user_data"]) == {"external_id"}
        assert data["custom_data"] == {"value": 10, "currency": "USD"}
        assert "/v18.0/123/events?access_token=tok" in http.calls[0]["url"]

    async def test_error_body_is_reported(self, http_transport_factory):
        http = http_transport_factory(
            HTTPResponse(
                400,
                _json({"error": {"type": "OAuthException", "message": "Bad token", "code": 190, "fbtrace_id": "T1"}}),
            )
        )
        result = await MetaForwarder(_META, config=_FAST, transport=http).send_events([_event()])
        assert result.errors == ["OAuthException: Bad token"]
        assert result.trace_id == "T1"
        assert len(http.calls) == 1

    async def test_rate_limit_code_is_retried(self, http_transport_factory):
        http = http_transport_factory(
            HTTPResponse(400, _json({"error": {"type": "OAuthException", "message": "slow", "code": 17}})),
            HTTPResponse(200, _json({"events_received": 1})),
        )
        result = await MetaForwarder(_META, config=_FAST, transport=http).send_events([_event()])
        assert result.success
        assert len(http.calls) == 2

    async def test_validate_uses_test_event_code(self, http_transport_factory):
        http = http_transport_factory(HTTPResponse(200, _json({"events_received": 1})))
        check = await MetaForwarder(_META, transport=http).validate_credentials()
        assert check.valid
        assert http.calls[0]["json"]["test_event_code"] == "TEST_VALIDATION"


# ---------------------------------------------------------------------------
# TikTok
# ---------------------------------------------------------------------------


class TestTikTok:
    def test_event_name_mapping(self):
        assert tiktok_event_name(_event("conversion", "payment_done")) == "CompletePayment"
        assert tiktok_event_name(_event("conversion", "appointment")) == "SubmitForm"
        assert tiktok_event_name(_event("page_view", "page_view")) == "PageView"

    async def test_sends_with_access_token_header(self, http_transport_factory):
        http = http_transport_factory(HTTPResponse(200, _json({"code": 0, "request_id": "R1"})))
        forwarder = TikTokForwarder(_TIKTOK, config=_FAST, transport=http)
        result = await forwarder.send_events([_event()])
        assert result.success
        assert result.trace_id == "R1"
        call = http.calls[0]
        assert call["headers"] == {"Access-Token": "tok"}
        assert call["json"]["pixel_code"] == "PIX"
        assert call["json"]["event_source"] == "web"

    async def test_error_code_is_reported(self, http_transport_factory):
        http = http_transport_factory(HTTPResponse(200, _json({"code": 40001, "message": "no"})))
        result = await TikTokForwarder(_TIKTOK, config=_FAST, transport=http).send_events([_event()])
        assert result.errors == ["TikTok error 40001: no"]
        assert len(http.calls) == 1


# ---------------------------------------------------------------------------
# LinkedIn
# ---------------------------------------------------------------------------


class TestLinkedIn:
    def test_conversion_value_rejects_non_finite(self):
        assert conversion_value({"conversion_value": "inf"}) is None
        assert conversion_value({"conversion_value": float("nan")}) is None
        assert conversion_value({"conversion_value": "-Infinity"}) is None
        assert conversion_value({"conversion_value": "12.5", "currency": "EUR"}) == {
            "currencyCode": "EUR",
            "amount": "12.50",
        }

    async def test_only_conversions_are_sent(self, http_transport_factory):
        http = http_transport_factory(HTTPResponse(201, ""))
        forwarder = LinkedInForwarder(_LINKEDIN, config=_FAST, transport=http)
        result = await forwarder.send_events(
            [
                _event("page_view", "page_view"),
                _event("conversion", "lead", properties={"conversion_value": 12}),
            ]
        )
        assert result.success
        assert result.event_count == 1
        element = http.calls[0]["json"]["elements"][0]
        assert element["conversion"] == "urn:li:lyndaConversion:987"
        assert element["conversionValue"] == {"currencyCode": "USD", "amount": "12.00"}
        assert element["user"]["userIds"][0]["idType"] == "ACXIOM_ID"
        assert http.calls[0]["headers"]["LinkedIn-Version"] == "202401"

    async def test_no_conversions_means_no_request(self, http_transport_factory):
        http = http_transport_factory()
        forwarder = LinkedInForwarder(_LINKEDIN, config=_FAST, transport=http)
        result = await forwarder.send_events([_event()])
        assert result.success
        assert result.event_count == 0
        assert http.calls == []

    async def test_validate_rejects_expired_token(self, http_transport_factory):
        http = http_transport_factory(HTTPResponse(401, ""))
        check = await LinkedInForwarder(_LINKEDIN, transport=http).validate_credentials()
        assert not check.valid
        assert check.message == "Invalid or expired access token"
        assert http.calls[0]["method"] == "GET"


# ---------------------------------------------------------------------------
# Credential checks
# ---------------------------------------------------------------------------


class TestCredentialChecks:
    async def test_unknown_platform(self):
        check = await check_platform_credentials("snapchat", {})
        assert check.message == "Unknown platform"

    async def test_missing_fields(self):
        check = await check_platform_credentials("meta", {"pixel_id": "1"})
        assert not check.valid
        assert check.message == "Pixel ID and Access Token are required"

    async def test_ga4_prefix(self, http_transport_factory):
        http = http_transport_factory()
        check = await check_platform_credentials(
            "ga4", {"measurement_id": "UA-1", "api_secret": "s"}, transport=http
        )
        assert check.message == "Measurement ID must start with G-"
        assert http.calls == []

    @pytest.mark.parametrize(
        "customer_id, valid",
        [("123-456-7890", True), ("1234567890", True), ("12345", False), ("", False)],
    )
    async def test_google_ads_format(self, customer_id, valid):
        check = await check_platform_credentials("google_ads", {"customer_id": customer_id})
        assert check.valid is valid

    async def test_probes_platform(self, http_transport_factory):
        http = http_transport_factory(HTTPResponse(200, _json({"code": 0})))
        check = await check_platform_credentials("tiktok", _TIKTOK, transport=http)
        assert check.valid
        assert http.calls[0]["json"]["test_event_code"] == "TEST"
