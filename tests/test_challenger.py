"""Tests for the wallet and LND challengers."""

import asyncio
import base64
import json
from dataclasses import dataclass
from typing import Optional
from unittest.mock import AsyncMock

import httpx
import pytest

from lightning_proxy.challenger import (
    LndChallenger,
    SettlementState,
    WalletChallenger,
)
from lightning_proxy.errors import ChallengerError


PAYMENT_HASH = "b1b2c3d4e5f6a1b2c3d4e5f6a1b2c3d4e5f6a1b2c3d4e5f6a1b2c3d4e5f6b1b2"


@dataclass
class FakeInvoiceResult:
    invoice: str = "lnbc20n1pjqtest..."
    payment_hash: str = PAYMENT_HASH


@dataclass
class FakeLookupResult:
    paid: bool = False
    preimage: Optional[str] = None
    settled_at: Optional[int] = None


def make_fake_wallet():
    """Create a mock wallet for testing."""
    wallet = AsyncMock()
    wallet.create_invoice = AsyncMock(return_value=FakeInvoiceResult())
    wallet.lookup_invoice = AsyncMock(return_value=FakeLookupResult())
    return wallet


class TestWalletChallenger:
    def test_requires_create_invoice_method(self):
        with pytest.raises(ValueError, match="create_invoice"):
            WalletChallenger(object())

    def test_requires_lookup_invoice_method(self):
        class InvoiceOnly:
            async def create_invoice(self, **kwargs):
                return FakeInvoiceResult()

        with pytest.raises(ValueError, match="lookup_invoice"):
            WalletChallenger(InvoiceOnly())

    @pytest.mark.asyncio
    async def test_new_obligation(self):
        wallet = make_fake_wallet()
        challenger = WalletChallenger(wallet, invoice_expiry=600)
        obligation = await challenger.new_obligation("premium", 5)

        assert obligation.payment_hash == PAYMENT_HASH
        assert obligation.invoice == "lnbc20n1pjqtest..."
        assert obligation.amount_msat == 5000
        assert obligation.expires_at is not None
        wallet.create_invoice.assert_awaited_once_with(
            amount_sats=5, description="premium", expiry=600,
        )

    @pytest.mark.asyncio
    async def test_incomplete_invoice(self):
        wallet = make_fake_wallet()
        wallet.create_invoice = AsyncMock(return_value=FakeInvoiceResult(payment_hash=""))
        with pytest.raises(ChallengerError, match="incomplete"):
            await WalletChallenger(wallet).new_obligation("premium", 5)

    @pytest.mark.asyncio
    async def test_wallet_error(self):
        wallet = make_fake_wallet()
        wallet.create_invoice = AsyncMock(side_effect=RuntimeError("NWC error"))
        with pytest.raises(ChallengerError, match="NWC error"):
            await WalletChallenger(wallet).new_obligation("premium", 5)

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def hang(**kwargs):
            await asyncio.sleep(10)

        wallet = make_fake_wallet()
        wallet.create_invoice = hang
        with pytest.raises(ChallengerError, match="timed out"):
            await WalletChallenger(wallet, timeout=0.05).new_obligation("premium", 5)

    @pytest.mark.asyncio
    async def test_verify_settlement(self):
        wallet = make_fake_wallet()
        challenger = WalletChallenger(wallet)
        assert await challenger.verify_settlement(PAYMENT_HASH) is SettlementState.PENDING

        wallet.lookup_invoice = AsyncMock(return_value=FakeLookupResult(paid=True))
        assert await challenger.verify_settlement(PAYMENT_HASH) is SettlementState.SETTLED

    @pytest.mark.asyncio
    async def test_unknown_invoice(self):
        wallet = make_fake_wallet()
        wallet.lookup_invoice = AsyncMock(return_value=None)
        with pytest.raises(ChallengerError, match="no invoice"):
            await WalletChallenger(wallet).verify_settlement(PAYMENT_HASH)

    @pytest.mark.asyncio
    async def test_invoice_without_fields(self):
        wallet = make_fake_wallet()
        wallet.create_invoice = AsyncMock(return_value=object())
        with pytest.raises(ChallengerError, match="incomplete"):
            await WalletChallenger(wallet).new_obligation("premium", 5)


def lnd_client(handler):
    return httpx.AsyncClient(
        base_url="https://lnd.test:8080",
        transport=httpx.MockTransport(handler),
    )


class TestLndChallenger:
    def test_requires_macaroon(self):
        with pytest.raises(ValueError, match="macaroon"):
            LndChallenger("lnd.test:8080", "")

    @pytest.mark.asyncio
    async def test_new_obligation(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "r_hash": base64.b64encode(bytes.fromhex(PAYMENT_HASH)).decode(),
                "payment_request": "lnbc50n1lnd",
            })

        challenger = LndChallenger("lnd.test:8080", "0201", client=lnd_client(handler))
        obligation = await challenger.new_obligation("premium", 5)

        assert seen["path"] == "/v1/invoices"
        assert seen["body"]["value"] == "5"
        assert seen["body"]["memo"] == "LSAT premium"
        assert obligation.payment_hash == PAYMENT_HASH
        assert obligation.invoice == "lnbc50n1lnd"
        assert obligation.amount_msat == 5000

    @pytest.mark.asyncio
    async def test_lnd_error_status(self):
        def handler(request):
            return httpx.Response(500, text="internal")

        challenger = LndChallenger("lnd.test:8080", "0201", client=lnd_client(handler))
        with pytest.raises(ChallengerError, match="500"):
            await challenger.new_obligation("premium", 5)

    @pytest.mark.asyncio
    async def test_lnd_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        challenger = LndChallenger("lnd.test:8080", "0201", client=lnd_client(handler))
        with pytest.raises(ChallengerError):
            await challenger.new_obligation("premium", 5)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state,expected", [
        ("SETTLED", SettlementState.SETTLED),
        ("OPEN", SettlementState.PENDING),
        ("ACCEPTED", SettlementState.PENDING),
        ("CANCELED", SettlementState.EXPIRED),
    ])
    async def test_verify_settlement(self, state, expected):
        def handler(request):
            assert request.url.path == f"/v1/invoice/{PAYMENT_HASH}"
            return httpx.Response(200, json={"state": state})

        challenger = LndChallenger("lnd.test:8080", "0201", client=lnd_client(handler))
        assert await challenger.verify_settlement(PAYMENT_HASH) is expected

    @pytest.mark.asyncio
    async def test_invalid_r_hash(self):
        def handler(request):
            return httpx.Response(200, json={
                "r_hash": "not*base64!",
                "payment_request": "lnbc50n1lnd",
            })

        challenger = LndChallenger("lnd.test:8080", "0201", client=lnd_client(handler))
        with pytest.raises(ChallengerError, match="r_hash"):
            await challenger.new_obligation("premium", 5)
