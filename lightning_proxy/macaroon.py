"""
Macaroon implementation using chained HMAC-SHA256.

A macaroon is a bearer credential with embedded caveats.
Structure: { root_key_id, identifier, caveats, signature }

The identifier is a fixed binary layout binding the macaroon to a single
Lightning payment:

    version (uint16, big endian) | payment_hash (32 bytes) | token_id (32 bytes)

The signature is chained HMAC: HMAC(root_key, identifier), then each caveat
is folded in. Anyone holding a macaroon can append caveats (attenuate), but
removing one requires the root key.

Wire format: base64url (unpadded) JSON of
    {"root_key_id": ..., "id": <hex identifier>, "caveats": [...], "signature": <hex>}
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import json
import os
import struct
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from .caveats import Caveat, parse_caveat
from .errors import MalformedCredential

IDENTIFIER_VERSION = 0
HASH_SIZE = 32
TOKEN_ID_SIZE = 32
IDENTIFIER_SIZE = 2 + HASH_SIZE + TOKEN_ID_SIZE


@dataclass(frozen=True)
class Identifier:
    """Decoded macaroon identifier."""
    version: int
    payment_hash: bytes
    token_id: bytes


@dataclass(frozen=True)
class Macaroon:
    """An L402 macaroon. Immutable: attenuation returns a new instance."""
    root_key_id: str
    identifier: bytes
    caveats: Tuple[str, ...]
    signature: bytes

    @property
    def payment_hash(self) -> str:
        """Hex-encoded payment hash embedded in the identifier."""
        return decode_identifier(self.identifier).payment_hash.hex()

    @property
    def token_id(self) -> str:
        """Hex-encoded random token ID embedded in the identifier."""
        return decode_identifier(self.identifier).token_id.hex()

    def parsed_caveats(self) -> Tuple[Caveat, ...]:
        return tuple(parse_caveat(c) for c in self.caveats)

    def serialize(self) -> str:
        """Encode as base64url JSON for transport (no padding)."""
        payload = {
            "root_key_id": self.root_key_id,
            "id": self.identifier.hex(),
            "caveats": list(self.caveats),
            "signature": self.signature.hex(),
        }
        raw = urlsafe_b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return raw.decode("ascii").rstrip("=")


def encode_identifier(
    payment_hash: bytes,
    token_id: bytes,
    version: int = IDENTIFIER_VERSION,
) -> bytes:
    """Pack an identifier into its binary form."""
    if len(payment_hash) != HASH_SIZE:
        raise ValueError(f"payment_hash must be {HASH_SIZE} bytes")
    if len(token_id) != TOKEN_ID_SIZE:
        raise ValueError(f"token_id must be {TOKEN_ID_SIZE} bytes")
    return struct.pack(">H", version) + payment_hash + token_id


def decode_identifier(identifier: bytes) -> Identifier:
    """
    Unpack a binary identifier.

    Raises:
        MalformedCredential: wrong length or unknown version.
    """
    if len(identifier) != IDENTIFIER_SIZE:
        raise MalformedCredential(
            f"Identifier must be {IDENTIFIER_SIZE} bytes, got {len(identifier)}"
        )
    (version,) = struct.unpack(">H", identifier[:2])
    if version != IDENTIFIER_VERSION:
        raise MalformedCredential(f"Unknown identifier version {version}")
    return Identifier(
        version=version,
        payment_hash=identifier[2:2 + HASH_SIZE],
        token_id=identifier[2 + HASH_SIZE:],
    )


def _sign(root_key: bytes, identifier: bytes, caveats: Iterable[str]) -> bytes:
    sig = hmac.new(root_key, identifier, hashlib.sha256).digest()
    for caveat in caveats:
        sig = hmac.new(sig, caveat.encode("utf-8"), hashlib.sha256).digest()
    return sig


def create_macaroon(
    root_key: bytes,
    root_key_id: str,
    payment_hash: str,
    caveats: Iterable[str] = (),
    token_id: Optional[bytes] = None,
) -> Macaroon:
    """
    Create a new macaroon.

    Args:
        root_key: Signing key material from the Secret Store.
        root_key_id: ID under which root_key is stored.
        payment_hash: Hex-encoded Lightning payment hash (required).
        caveats: Initial caveats, in order.
        token_id: 32 random bytes; generated when omitted.

    Returns:
        Signed Macaroon.
    """
    if not root_key:
        raise ValueError("Macaroon root key is required")
    if not root_key_id:
        raise ValueError("root_key_id is required for macaroon")
    if not payment_hash:
        raise ValueError("payment_hash is required for macaroon")

    if token_id is None:
        token_id = os.urandom(TOKEN_ID_SIZE)

    identifier = encode_identifier(bytes.fromhex(payment_hash), token_id)
    caveats = tuple(caveats)
    for caveat in caveats:
        parse_caveat(caveat)

    return Macaroon(
        root_key_id=root_key_id,
        identifier=identifier,
        caveats=caveats,
        signature=_sign(root_key, identifier, caveats),
    )


def add_caveat(macaroon: Macaroon, caveat: str) -> Macaroon:
    """
    Attenuate a macaroon with one more caveat. Needs no key.

    Returns:
        A new Macaroon; the original is unchanged.
    """
    parse_caveat(caveat)
    signature = hmac.new(macaroon.signature, caveat.encode("utf-8"), hashlib.sha256).digest()
    return Macaroon(
        root_key_id=macaroon.root_key_id,
        identifier=macaroon.identifier,
        caveats=macaroon.caveats + (caveat,),
        signature=signature,
    )


def decode_macaroon(raw: str) -> Macaroon:
    """
    Decode a raw macaroon string back to its components.

    Args:
        raw: Base64url-encoded macaroon string.

    Raises:
        MalformedCredential: the string is not a well-formed macaroon.
    """
    if not raw or not isinstance(raw, str):
        raise MalformedCredential("Empty macaroon")

    try:
        padded = raw + "=" * (-len(raw) % 4)
        parsed = json.loads(urlsafe_b64decode(padded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise MalformedCredential(f"Invalid macaroon encoding: {e}") from None

    if not isinstance(parsed, dict):
        raise MalformedCredential("Invalid macaroon structure")

    root_key_id = parsed.get("root_key_id")
    identifier = parsed.get("id")
    signature = parsed.get("signature")
    caveats = parsed.get("caveats")

    if not isinstance(root_key_id, str) or not root_key_id:
        raise MalformedCredential("Macaroon missing root_key_id")
    if not isinstance(identifier, str) or not isinstance(signature, str):
        raise MalformedCredential("Macaroon missing id or signature")
    if not isinstance(caveats, list) or not all(isinstance(c, str) for c in caveats):
        raise MalformedCredential("Macaroon caveats must be a list of strings")

    try:
        identifier_bytes = bytes.fromhex(identifier)
        signature_bytes = bytes.fromhex(signature)
    except ValueError:
        raise MalformedCredential("Macaroon id and signature must be hex") from None

    decode_identifier(identifier_bytes)
    if len(signature_bytes) != hashlib.sha256().digest_size:
        raise MalformedCredential("Invalid macaroon signature length")

    return Macaroon(
        root_key_id=root_key_id,
        identifier=identifier_bytes,
        caveats=tuple(caveats),
        signature=signature_bytes,
    )


def verify_signature(root_key: bytes, macaroon: Macaroon) -> bool:
    """Recompute the HMAC chain and compare in constant time."""
    expected = _sign(root_key, macaroon.identifier, macaroon.caveats)
    return hmac.compare_digest(expected, macaroon.signature)


def verify_preimage(preimage: str, payment_hash: str) -> bool:
    """
    Verify that a preimage matches a payment hash.
    payment_hash = SHA256(preimage)

    Args:
        preimage: Hex-encoded preimage.
        payment_hash: Hex-encoded payment hash.

    Returns:
        True if SHA256(preimage) == payment_hash.
    """
    if not preimage or not payment_hash:
        return False
    try:
        computed = hashlib.sha256(bytes.fromhex(preimage)).digest()
        return hmac.compare_digest(computed, bytes.fromhex(payment_hash))
    except (TypeError, ValueError):
        return False
