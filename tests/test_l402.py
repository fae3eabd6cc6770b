"""Tests for the L402 protocol module."""

import pytest

from lightning_proxy.l402 import (
    format_challenge,
    format_challenge_body,
    parse_authorization,
)


class TestFormatChallenge:
    def test_basic_format(self):
        result = format_challenge("L402", "eyJpZCI...", "lnbc50n1pj...", "abc123", 5000)
        assert result == (
            'L402 macaroon="eyJpZCI...", invoice="lnbc50n1pj...", '
            'payment_hash="abc123", amount_msat="5000"'
        )

    def test_lsat_scheme(self):
        result = format_challenge("LSAT", "mac", "lnbc1", "hash", 1000)
        assert result.startswith("LSAT ")
        assert 'macaroon="mac"' in result
        assert 'invoice="lnbc1"' in result


class TestFormatChallengeBody:
    def test_includes_all_fields(self):
        body = format_challenge_body(
            scheme="L402",
            invoice="lnbc50n1...",
            macaroon="eyJpZCI...",
            payment_hash="abc123",
            amount_msat=5000,
            service="premium",
        )
        assert body["status"] == 402
        assert body["message"] == "Payment Required"
        assert body["invoice"] == "lnbc50n1..."
        assert body["macaroon"] == "eyJpZCI..."
        assert body["paymentHash"] == "abc123"
        assert body["amountMsat"] == 5000
        assert body["service"] == "premium"
        assert body["protocol"] == "L402"
        assert "error" not in body
        assert "L402 <macaroon>:<preimage>" in body["instructions"]["step3"]

    def test_error_detail(self):
        body = format_challenge_body(
            scheme="L402",
            invoice="lnbc...",
            macaroon="eyJ...",
            payment_hash="abc",
            amount_msat=1000,
            service="premium",
            error="expires_at: expired",
        )
        assert body["error"] == "expires_at: expired"


class TestParseAuthorization:
    def test_valid_l402_header(self):
        result = parse_authorization("L402 eyJpZCI6ImFiYzEyMyJ9:deadbeef0123")
        assert result is not None
        assert result.macaroon == "eyJpZCI6ImFiYzEyMyJ9"
        assert result.preimage == "deadbeef0123"

    def test_lsat_scheme_accepted(self):
        result = parse_authorization("LSAT mac123:pre456")
        assert result is not None
        assert result.macaroon == "mac123"
        assert result.preimage == "pre456"

    def test_case_insensitive_prefix(self):
        result = parse_authorization("l402 mac123:pre456")
        assert result is not None
        assert result.macaroon == "mac123"

    def test_with_whitespace(self):
        result = parse_authorization("  L402   mac:pre  ")
        assert result is not None
        assert result.macaroon == "mac"
        assert result.preimage == "pre"

    @pytest.mark.parametrize("header", [
        "L402 macaroonwithoutpreimage",
        "L402 :preimage",
        "L402 macaroon:",
        "Bearer token123",
        "L402",
        "",
        None,
        12345,
    ])
    def test_rejected(self, header):
        assert parse_authorization(header) is None

    def test_multiple_colons(self):
        result = parse_authorization("L402 mac:pre:extra:colons")
        assert result is not None
        assert result.macaroon == "mac"
        assert result.preimage == "pre:extra:colons"
