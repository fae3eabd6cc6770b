"""Tests for the minter."""

import asyncio
import hashlib
import secrets
from unittest.mock import AsyncMock

import pytest

from lightning_proxy.challenger import Challenger, Obligation, SettlementState
from lightning_proxy.config import ServiceConfig
from lightning_proxy.errors import ChallengerError, MintError, SecretStoreUnavailable, UnknownRoute
from lightning_proxy.limiter import StaticServiceLimiter
from lightning_proxy.macaroon import verify_signature
from lightning_proxy.mint import Minter, route_root_key_id
from lightning_proxy.secret_store import InMemorySecretStore


SERVICES = [
    ServiceConfig(name="premium", address="127.0.0.1:9000", price=10, timeout=3600),
    ServiceConfig(name="basic", address="127.0.0.1:9001"),
]


class FakeChallenger(Challenger):
    """Hands out invoices with random preimages and remembers them."""

    def __init__(self):
        self.preimages = {}

    async def new_obligation(self, purpose, amount_sats):
        preimage = secrets.token_hex(32)
        payment_hash = hashlib.sha256(bytes.fromhex(preimage)).hexdigest()
        self.preimages[payment_hash] = preimage
        return Obligation(
            payment_hash=payment_hash,
            amount_msat=amount_sats * 1000,
            invoice=f"lnbc{amount_sats}0n1{payment_hash[:16]}",
        )

    async def verify_settlement(self, payment_hash):
        return SettlementState.PENDING


def make_minter(challenger=None, store=None, policy="per_token"):
    return Minter(
        challenger=challenger or FakeChallenger(),
        secrets=store or InMemorySecretStore(),
        limiter=StaticServiceLimiter(SERVICES),
        root_key_policy=policy,
    )


class TestMinter:
    @pytest.mark.asyncio
    async def test_mint_binds_payment_hash(self):
        store = InMemorySecretStore()
        minter = make_minter(store=store)
        macaroon, obligation = await minter.mint("premium")

        assert macaroon.payment_hash == obligation.payment_hash
        assert obligation.amount_msat == 10000
        assert macaroon.caveats[0] == "service = premium"
        assert macaroon.caveats[1].startswith("expires_at = ")

        root_key = await store.get_secret(macaroon.root_key_id)
        assert verify_signature(root_key, macaroon) is True

    @pytest.mark.asyncio
    async def test_per_token_keys(self):
        minter = make_minter()
        a, _ = await minter.mint("premium")
        b, _ = await minter.mint("premium")
        assert a.root_key_id != b.root_key_id
        assert a.root_key_id == a.token_id

    @pytest.mark.asyncio
    async def test_per_route_keys(self):
        minter = make_minter(policy="per_route")
        a, _ = await minter.mint("premium")
        b, _ = await minter.mint("premium")
        c, _ = await minter.mint("basic")
        assert a.root_key_id == b.root_key_id == route_root_key_id("premium")
        assert c.root_key_id != a.root_key_id
        assert a.token_id != b.token_id

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            make_minter(policy="whatever")

    @pytest.mark.asyncio
    async def test_concurrent_mints_unique_hashes(self):
        minter = make_minter()
        results = await asyncio.gather(*(minter.mint("premium") for _ in range(20)))
        hashes = {obligation.payment_hash for _, obligation in results}
        assert len(hashes) == 20

    @pytest.mark.asyncio
    async def test_unknown_route(self):
        challenger = FakeChallenger()
        challenger.new_obligation = AsyncMock()
        with pytest.raises(UnknownRoute):
            await make_minter(challenger=challenger).mint("missing")
        challenger.new_obligation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_challenger_failure(self):
        challenger = FakeChallenger()
        challenger.new_obligation = AsyncMock(side_effect=ChallengerError("lnd down"))
        with pytest.raises(MintError, match="lnd down"):
            await make_minter(challenger=challenger).mint("premium")

    @pytest.mark.asyncio
    async def test_store_failure(self):
        store = InMemorySecretStore()
        store.new_secret = AsyncMock(side_effect=SecretStoreUnavailable("redis down"))
        with pytest.raises(MintError, match="redis down"):
            await make_minter(store=store).mint("premium")

    @pytest.mark.asyncio
    async def test_bad_payment_hash_from_challenger(self):
        challenger = FakeChallenger()
        challenger.new_obligation = AsyncMock(
            return_value=Obligation(payment_hash="zz", amount_msat=1000, invoice="lnbc")
        )
        with pytest.raises(MintError):
            await make_minter(challenger=challenger).mint("premium")

    @pytest.mark.asyncio
    async def test_route_key_generation(self):
        rotated = [ServiceConfig(name="premium", address="127.0.0.1:9000", key_generation=1)]
        minter = Minter(
            challenger=FakeChallenger(),
            secrets=InMemorySecretStore(),
            limiter=StaticServiceLimiter(rotated),
            root_key_policy="per_route",
        )
        macaroon, _ = await minter.mint("premium")
        assert macaroon.root_key_id == route_root_key_id("premium", 1)
        assert macaroon.root_key_id != route_root_key_id("premium", 0)
