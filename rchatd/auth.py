"""Bearer credential minting and verification.

A credential is a CBOR array ``[claims, signature]``. ``claims`` is the CBOR
encoding of ``{"sub", "name", "iat", "exp"}`` and ``signature`` is the issuer
identity's Ed25519 signature over those exact bytes. The hub only needs the
issuer's public key to verify, so credential checking never touches user
record storage.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import RNS

from .codec import decode, encode
from .errors import AuthError
from .util import normalize_id


@dataclass(frozen=True)
class VerifiedIdentity:
    user_id: str
    display_name: str


def issue_credential(
    identity: RNS.Identity,
    user_id: str,
    display_name: str | None = None,
    *,
    ttl_s: float = 24 * 3600.0,
    now: float | None = None,
) -> bytes:
    issued = float(time.time() if now is None else now)
    claims = {
        "sub": user_id,
        "name": display_name or user_id,
        "iat": int(issued),
        "exp": int(issued + float(ttl_s)),
    }
    claims_bytes = encode(claims)
    return encode([claims_bytes, identity.sign(claims_bytes)])


def load_issuer_public_key(public_key: bytes) -> RNS.Identity:
    ident = RNS.Identity(create_keys=False)
    ident.load_public_key(bytes(public_key))
    return ident


class AuthValidator:
    """Checks credentials against the issuer key. Stateless apart from the key."""

    def __init__(
        self,
        issuer: RNS.Identity,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.issuer = issuer
        self.clock = clock
        self.log = logging.getLogger("rchatd.auth")

    def validate(self, credential) -> VerifiedIdentity:
        if not isinstance(credential, (bytes, bytearray)):
            raise AuthError("credential missing")

        try:
            outer = decode(credential)
        except Exception as e:
            raise AuthError("credential is not valid CBOR") from e

        if not isinstance(outer, list) or len(outer) != 2:
            raise AuthError("malformed credential")
        claims_bytes, signature = outer
        if not isinstance(claims_bytes, bytes) or not isinstance(signature, bytes):
            raise AuthError("malformed credential")

        if not self.issuer.validate(signature, claims_bytes):
            raise AuthError("bad signature")

        try:
            claims = decode(claims_bytes)
        except Exception as e:
            raise AuthError("malformed claims") from e
        if not isinstance(claims, dict):
            raise AuthError("malformed claims")

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise AuthError("credential has no expiry")
        if float(exp) <= float(self.clock()):
            raise AuthError("credential expired")

        user_id = normalize_id(claims.get("sub"))
        if user_id is None:
            raise AuthError("credential has no subject")

        name = claims.get("name")
        display_name = name.strip() if isinstance(name, str) and name.strip() else user_id

        return VerifiedIdentity(user_id=user_id, display_name=display_name)
