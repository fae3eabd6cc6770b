"""
Challengers create payment obligations (Lightning invoices) and look up
whether they have been settled.

Two backends:

- WalletChallenger wraps any wallet object exposing
  create_invoice(amount_sats, description, expiry) and
  lookup_invoice(payment_hash).
- LndChallenger talks to an LND node's REST API.

Every call is bounded by a timeout. A slow or failing payment backend raises
ChallengerError; it never produces an unpaid credential.
"""

from __future__ import annotations

import abc
import asyncio
import base64
import enum
import logging
import ssl
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Optional, TypeVar

import httpx

from .errors import ChallengerError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SettlementState(enum.Enum):
    SETTLED = "settled"
    PENDING = "pending"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Obligation:
    """A payment the caller must make before their macaroon is usable."""
    payment_hash: str      # hex
    amount_msat: int
    invoice: str           # bolt11
    expires_at: Optional[int] = None


class Challenger(abc.ABC):
    """Source of payment obligations."""

    @abc.abstractmethod
    async def new_obligation(self, purpose: str, amount_sats: int) -> Obligation:
        """
        Request a fresh invoice. Each call yields a distinct payment hash.

        Raises:
            ChallengerError: the payment backend failed or timed out.
        """

    @abc.abstractmethod
    async def verify_settlement(self, payment_hash: str) -> SettlementState:
        """
        Ask the payment backend whether an invoice has been paid.

        Raises:
            ChallengerError: the payment backend failed or timed out.
        """


async def _bounded(op: Awaitable[T], timeout: float, what: str) -> T:
    try:
        return await asyncio.wait_for(op, timeout=timeout)
    except asyncio.TimeoutError:
        raise ChallengerError(f"{what} timed out after {timeout}s") from None
    except ChallengerError:
        raise
    except Exception as e:
        raise ChallengerError(f"{what} failed: {e}") from e


class WalletChallenger(Challenger):
    """Challenger over a wallet object (e.g. a Nostr Wallet Connect client)."""

    def __init__(self, wallet: Any, invoice_expiry: int = 300, timeout: float = 10.0):
        """
        Args:
            wallet: Object with async create_invoice() and lookup_invoice().
            invoice_expiry: Invoice expiry in seconds.
            timeout: Seconds allowed per wallet call.
        """
        if not hasattr(wallet, "create_invoice"):
            raise ValueError("wallet must have a create_invoice() method")
        if not hasattr(wallet, "lookup_invoice"):
            raise ValueError("wallet must have a lookup_invoice() method")
        self.wallet = wallet
        self.invoice_expiry = invoice_expiry
        self.timeout = timeout

    async def new_obligation(self, purpose: str, amount_sats: int) -> Obligation:
        result = await _bounded(
            self.wallet.create_invoice(
                amount_sats=amount_sats,
                description=purpose,
                expiry=self.invoice_expiry,
            ),
            self.timeout,
            "create_invoice",
        )

        invoice = getattr(result, "invoice", None)
        payment_hash = getattr(result, "payment_hash", None)
        if not invoice or not payment_hash:
            raise ChallengerError("Wallet returned an incomplete invoice")

        return Obligation(
            payment_hash=payment_hash,
            amount_msat=amount_sats * 1000,
            invoice=invoice,
            expires_at=int(time.time()) + self.invoice_expiry,
        )

    async def verify_settlement(self, payment_hash: str) -> SettlementState:
        result = await _bounded(
            self.wallet.lookup_invoice(payment_hash),
            self.timeout,
            "lookup_invoice",
        )
        if result is None:
            raise ChallengerError(f"Wallet has no invoice {payment_hash}")
        if getattr(result, "paid", False):
            return SettlementState.SETTLED
        if getattr(result, "expired", False):
            return SettlementState.EXPIRED
        return SettlementState.PENDING


class LndChallenger(Challenger):
    """Challenger backed by LND's REST interface."""

    def __init__(
        self,
        host: str,
        macaroon_hex: str,
        tls_cert: Optional[str] = None,
        timeout: float = 10.0,
        invoice_expiry: int = 300,
        memo: str = "LSAT",
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            host: LND REST host:port.
            macaroon_hex: Hex-encoded invoice macaroon for LND.
            tls_cert: Path to LND's TLS certificate; system CAs when omitted.
            timeout: Seconds allowed per LND call.
            invoice_expiry: Invoice expiry in seconds.
            memo: Prefix for invoice memos.
            client: Pre-built httpx client (tests inject a mock transport).
        """
        if not macaroon_hex:
            raise ValueError("LND macaroon is required")
        self.timeout = timeout
        self.invoice_expiry = invoice_expiry
        self.memo = memo

        if client is None:
            verify: Any = ssl.create_default_context(cafile=tls_cert) if tls_cert else True
            client = httpx.AsyncClient(
                base_url=f"https://{host}",
                headers={"Grpc-Metadata-macaroon": macaroon_hex},
                verify=verify,
                timeout=httpx.Timeout(timeout),
            )
        self._client = client

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        response = await _bounded(
            self._client.request(method, url, **kwargs),
            self.timeout,
            f"LND {method} {url}",
        )
        if response.status_code != 200:
            raise ChallengerError(
                f"LND {method} {url} returned {response.status_code}: {response.text}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise ChallengerError(f"LND returned invalid JSON: {e}") from e

    async def new_obligation(self, purpose: str, amount_sats: int) -> Obligation:
        data = await self._request("POST", "/v1/invoices", json={
            "value": str(amount_sats),
            "memo": f"{self.memo} {purpose}".strip(),
            "expiry": str(self.invoice_expiry),
        })

        r_hash = data.get("r_hash")
        payment_request = data.get("payment_request")
        if not r_hash or not payment_request:
            raise ChallengerError("LND returned an incomplete invoice")

        try:
            payment_hash = base64.b64decode(r_hash, validate=True).hex()
        except (TypeError, ValueError) as e:
            raise ChallengerError(f"LND returned an invalid r_hash: {e}") from e

        return Obligation(
            payment_hash=payment_hash,
            amount_msat=amount_sats * 1000,
            invoice=payment_request,
            expires_at=int(time.time()) + self.invoice_expiry,
        )

    async def verify_settlement(self, payment_hash: str) -> SettlementState:
        data = await self._request("GET", f"/v1/invoice/{payment_hash}")
        state = data.get("state")
        if state == "SETTLED":
            return SettlementState.SETTLED
        if state == "CANCELED":
            return SettlementState.EXPIRED
        return SettlementState.PENDING

    async def close(self) -> None:
        await self._client.aclose()
