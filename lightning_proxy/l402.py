"""
L402 protocol header parsing and formatting.

Implements the L402 (formerly LSAT) protocol for HTTP 402 Payment Required.

WWW-Authenticate: L402 macaroon="...", invoice="lnbc...", payment_hash="...", amount_msat="..."
Authorization: L402 <macaroon>:<preimage>

Clients written against the older LSAT name are accepted too.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

SCHEMES = ("l402", "lsat")


@dataclass
class L402Credentials:
    """Parsed L402 authorization credentials."""
    macaroon: str
    preimage: str


def format_challenge(
    scheme: str,
    macaroon: str,
    invoice: str,
    payment_hash: str,
    amount_msat: int,
) -> str:
    """
    Format a WWW-Authenticate header value for a 402 response.

    Args:
        scheme: Auth scheme name ("L402" or "LSAT").
        macaroon: Base64url-encoded macaroon.
        invoice: Bolt11 invoice string.
        payment_hash: Payment hash (hex).
        amount_msat: Invoice amount in millisatoshis.

    Returns:
        WWW-Authenticate header value.
    """
    return (
        f'{scheme} macaroon="{macaroon}", invoice="{invoice}", '
        f'payment_hash="{payment_hash}", amount_msat="{amount_msat}"'
    )


def format_challenge_body(
    scheme: str,
    invoice: str,
    macaroon: str,
    payment_hash: str,
    amount_msat: int,
    service: str,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Format a full 402 response body.

    Args:
        scheme: Auth scheme name.
        invoice: Bolt11 invoice string.
        macaroon: Base64url-encoded macaroon.
        payment_hash: Payment hash (hex).
        amount_msat: Amount in millisatoshis.
        service: Name of the service the macaroon is good for.
        error: Why a presented credential was refused, if one was.

    Returns:
        Dict suitable for JSON response.
    """
    body: Dict[str, Any] = {
        "status": 402,
        "message": "Payment Required",
        "service": service,
        "paymentHash": payment_hash,
        "invoice": invoice,
        "macaroon": macaroon,
        "amountMsat": amount_msat,
        "protocol": scheme,
        "instructions": {
            "step1": "Pay the Lightning invoice above",
            "step2": "Get the preimage from the payment receipt",
            "step3": f"Retry the request with header: Authorization: {scheme} <macaroon>:<preimage>",
        },
    }
    if error:
        body["error"] = error
    return body


def parse_authorization(auth_header: Optional[str]) -> Optional[L402Credentials]:
    """
    Parse an Authorization: L402 (or LSAT) header.

    Format: L402 <macaroon>:<preimage>

    Args:
        auth_header: Full Authorization header value.

    Returns:
        L402Credentials or None if parsing fails.
    """
    if not auth_header or not isinstance(auth_header, str):
        return None

    scheme, _, token = auth_header.strip().partition(" ")
    if scheme.lower() not in SCHEMES:
        return None

    # Macaroons are base64url, so the first colon ends the macaroon.
    macaroon, sep, preimage = token.strip().partition(":")
    if not sep or not macaroon or not preimage:
        return None

    return L402Credentials(macaroon=macaroon, preimage=preimage)
