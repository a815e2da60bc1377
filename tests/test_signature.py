"""Tests for webhook signature verification.

Covers:
- Valid Mercado Pago x-signature accepted
- Any tampering (digest, ts, request id, body id) rejected
- Missing header parts, request id, secret, or id rejected
- Canonical id discovery (data.id, merchant order keys, resource URL, query string)
- Large ids keep full precision
- Stripe verification maps SDK failures to SignatureInvalid
"""

import json
from unittest.mock import patch

import pytest
import stripe
from werkzeug.datastructures import MultiDict

from app.errors import SignatureInvalid
from app.services.signature_service import (
    compute_signature,
    extract_canonical_id,
    parse_signature_header,
    verify_signature,
    verify_stripe_event,
)

SECRET = "mp_webhook_secret_test"


def _header(canonical_id, request_id="req-1", ts="1760000000", secret=SECRET):
    return f"ts={ts},v1={compute_signature(secret, canonical_id, request_id, ts)}"


class TestParseHeader:

    def test_parses_ts_and_v1(self):
        assert parse_signature_header("ts=1704908010,v1=abc123") == ("1704908010", "abc123")

    def test_tolerates_spaces_and_order(self):
        assert parse_signature_header(" v1=ff , ts=1 ") == ("1", "ff")

    def test_missing_parts_are_none(self):
        assert parse_signature_header("ts=1") == ("1", None)
        assert parse_signature_header("") == (None, None)
        assert parse_signature_header(None) == (None, None)


class TestVerifySignature:

    def test_valid_signature_accepted(self):
        body = json.dumps({"id": 1, "type": "payment", "data": {"id": "123456"}})
        assert verify_signature(body, _header("123456"), "req-1", SECRET) is True

    def test_uppercase_digest_accepted(self):
        body = json.dumps({"data": {"id": "123456"}})
        digest = compute_signature(SECRET, "123456", "req-1", "1760000000")
        header = f"ts=1760000000,v1={digest.upper()}"
        assert verify_signature(body, header, "req-1", SECRET) is True

    def test_single_character_flip_rejected(self):
        body = json.dumps({"data": {"id": "123456"}})
        header = _header("123456")
        last = header[-1]
        flipped = header[:-1] + ("0" if last != "0" else "1")
        assert verify_signature(body, flipped, "req-1", SECRET) is False

    def test_different_request_id_rejected(self):
        body = json.dumps({"data": {"id": "123456"}})
        assert verify_signature(body, _header("123456"), "req-2", SECRET) is False

    def test_different_ts_rejected(self):
        body = json.dumps({"data": {"id": "123456"}})
        header = _header("123456").replace("ts=1760000000", "ts=1760000001")
        assert verify_signature(body, header, "req-1", SECRET) is False

    def test_body_id_swapped_rejected(self):
        body = json.dumps({"data": {"id": "999999"}})
        assert verify_signature(body, _header("123456"), "req-1", SECRET) is False

    def test_wrong_secret_rejected(self):
        body = json.dumps({"data": {"id": "123456"}})
        header = _header("123456", secret="someone-else")
        assert verify_signature(body, header, "req-1", SECRET) is False

    @pytest.mark.parametrize("header", [
        "ts=1760000000",
        "v1=deadbeef",
        "",
        None,
    ])
    def test_incomplete_header_rejected(self, header):
        body = json.dumps({"data": {"id": "123456"}})
        assert verify_signature(body, header, "req-1", SECRET) is False

    def test_missing_request_id_rejected(self):
        body = json.dumps({"data": {"id": "123456"}})
        assert verify_signature(body, _header("123456"), None, SECRET) is False

    def test_missing_secret_rejected(self):
        body = json.dumps({"data": {"id": "123456"}})
        assert verify_signature(body, _header("123456"), "req-1", None) is False

    def test_non_hex_digest_rejected(self):
        body = json.dumps({"data": {"id": "123456"}})
        header = "ts=1760000000,v1=" + "z" * 64
        assert verify_signature(body, header, "req-1", SECRET) is False

    def test_no_id_anywhere_rejected(self):
        body = json.dumps({"type": "payment"})
        assert verify_signature(body, _header("123456"), "req-1", SECRET) is False

    def test_non_object_body_rejected(self):
        assert verify_signature("[1, 2]", _header("1"), "req-1", SECRET) is False
        assert verify_signature("not json", _header("1"), "req-1", SECRET) is False

    def test_skip_flag_accepts_anything(self):
        assert verify_signature("{}", None, None, None, skip_verification=True) is True


class TestCanonicalId:

    def test_resource_url_fallback(self):
        body = json.dumps({
            "resource": "https://api.mercadolibre.com/merchant_orders/31234567890",
            "topic": "merchant_order",
        })
        assert verify_signature(body, _header("31234567890"), "req-1", SECRET) is True

    def test_query_string_fallback(self):
        body = json.dumps({"id": 5, "type": "payment"})
        query = MultiDict([("data.id", "123456"), ("type", "payment")])
        assert verify_signature(
            body, _header("123456"), "req-1", SECRET, query_params=query
        ) is True

    def test_query_dict_with_nested_keys(self):
        assert extract_canonical_id({}, {"data": {"id": ["77"]}}) == "77"

    def test_merchant_order_keys(self):
        assert extract_canonical_id({"merchant_order_id": 31}) == "31"
        assert extract_canonical_id({"data": {"merchant_order_id": "32"}}) == "32"
        assert extract_canonical_id({"merchant_order": {"id": 33}}) == "33"
        assert extract_canonical_id({"order": {"id": "34"}}) == "34"

    def test_body_takes_priority_over_query(self):
        query = MultiDict([("data.id", "2")])
        assert extract_canonical_id({"data": {"id": "1"}}, query) == "1"

    def test_big_integer_id_keeps_precision(self):
        body = '{"type": "payment", "data": {"id": 12345678901234567890}}'
        assert verify_signature(
            body, _header("12345678901234567890"), "req-1", SECRET
        ) is True


class TestStripeVerification:

    @patch("app.services.signature_service.stripe.Webhook.construct_event")
    def test_returns_constructed_event(self, mock_construct, app):
        mock_construct.return_value = {"id": "evt_1"}
        assert verify_stripe_event("{}", "t=1,v1=x") == {"id": "evt_1"}
        mock_construct.assert_called_once_with("{}", "t=1,v1=x", "whsec_test_fake")

    @patch("app.services.signature_service.stripe.Webhook.construct_event")
    def test_bad_signature_raises(self, mock_construct, app):
        mock_construct.side_effect = stripe.SignatureVerificationError("bad", "sig")
        with pytest.raises(SignatureInvalid):
            verify_stripe_event("{}", "bad")

    @patch("app.services.signature_service.stripe.Webhook.construct_event")
    def test_bad_payload_raises(self, mock_construct, app):
        mock_construct.side_effect = ValueError("Invalid payload")
        with pytest.raises(SignatureInvalid):
            verify_stripe_event("nope", "t=1,v1=x")

    def test_missing_secret_raises(self, app):
        original = app.config["STRIPE_WEBHOOK_SECRET"]
        app.config["STRIPE_WEBHOOK_SECRET"] = None
        try:
            with pytest.raises(SignatureInvalid):
                verify_stripe_event("{}", "t=1,v1=x")
        finally:
            app.config["STRIPE_WEBHOOK_SECRET"] = original
