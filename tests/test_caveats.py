"""Tests for caveat parsing and evaluation."""

import time

import pytest

from lightning_proxy.caveats import (
    RequestContext,
    evaluate,
    format_caveat,
    parse_caveat,
)
from lightning_proxy.errors import MalformedCaveat


def ctx(**kwargs):
    defaults = {"service": "premium", "method": "GET", "client_ip": "10.0.0.1"}
    defaults.update(kwargs)
    return RequestContext(**defaults)


class TestParseCaveat:
    def test_integer_values(self):
        assert parse_caveat("expires_at = 1700000000").value == 1700000000
        assert parse_caveat("quota = 5").value == 5

    def test_capabilities_set(self):
        caveat = parse_caveat("capabilities = read, write")
        assert caveat.value == frozenset({"read", "write"})

    def test_raw_preserved(self):
        assert str(parse_caveat("service = premium")) == "service = premium"

    @pytest.mark.parametrize("raw", [
        "service=premium",
        "service = ",
        "color = blue",
        "expires_at = tomorrow",
        "quota = many",
    ])
    def test_malformed(self, raw):
        with pytest.raises(MalformedCaveat):
            parse_caveat(raw)

    def test_format(self):
        assert format_caveat("quota", 10) == "quota = 10"
        assert format_caveat("capabilities", ["write", "read"]) == "capabilities = read,write"
        with pytest.raises(MalformedCaveat):
            format_caveat("color", "blue")


class TestEvaluate:
    def test_empty_passes(self):
        result = evaluate([], ctx())
        assert result.valid is True
        assert result.capabilities == ()

    def test_expiry(self):
        future = int(time.time()) + 3600
        past = int(time.time()) - 100
        assert evaluate([f"expires_at = {future}"], ctx()).valid is True

        result = evaluate([f"expires_at = {past}"], ctx())
        assert result.valid is False
        assert result.name == "expires_at"
        assert result.detail == "expired"

    def test_expiry_uses_context_clock(self):
        assert evaluate(["expires_at = 100"], ctx(now=50)).valid is True
        assert evaluate(["expires_at = 100"], ctx(now=150)).valid is False

    def test_service_scope(self):
        assert evaluate(["service = premium"], ctx()).valid is True
        result = evaluate(["service = premium"], ctx(service="basic"))
        assert result.valid is False
        assert "wrong service" in result.detail

    def test_method_case_insensitive(self):
        assert evaluate(["method = GET"], ctx(method="get")).valid is True
        assert evaluate(["method = GET"], ctx(method="POST")).valid is False

    def test_ip(self):
        assert evaluate(["ip = 10.0.0.1"], ctx()).valid is True
        assert evaluate(["ip = 10.0.0.2"], ctx()).valid is False

    def test_capabilities_intersect(self):
        result = evaluate(
            ["capabilities = read,write,admin", "capabilities = write,read"],
            ctx(),
        )
        assert result.valid is True
        assert result.capabilities == ("read", "write")

    def test_disjoint_capabilities_fail(self):
        result = evaluate(["capabilities = read", "capabilities = write"], ctx())
        assert result.valid is False
        assert result.name == "capabilities"

    def test_quota(self):
        assert evaluate(["quota = 3"], ctx()).valid is True
        assert evaluate(["quota = 3"], ctx(consumed=2)).valid is True
        result = evaluate(["quota = 3"], ctx(consumed=3))
        assert result.valid is False
        assert "quota exhausted" in result.detail

    def test_one_failure_denies_all(self):
        """Conjunctive: any failing caveat denies, however many others pass."""
        future = int(time.time()) + 3600
        passing = [
            "service = premium",
            f"expires_at = {future}",
            "method = GET",
            "capabilities = read",
            "quota = 10",
        ]
        assert evaluate(passing, ctx(consumed=0)).valid is True

        for i in range(len(passing) + 1):
            caveats = passing[:i] + ["ip = 192.168.1.1"] + passing[i:]
            result = evaluate(caveats, ctx(consumed=0))
            assert result.valid is False
            assert result.name == "ip"

    def test_first_failure_reported(self):
        result = evaluate(["service = basic", "method = POST"], ctx())
        assert result.name == "service"

    def test_malformed_raises(self):
        with pytest.raises(MalformedCaveat):
            evaluate(["nonsense"], ctx())
