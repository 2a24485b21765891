from __future__ import annotations

"""Signed-message bearer auth for Crust IPFS web3 gateways.

The gateway accepts `Authorization: Basic base64("<chain>-<address>:<sig>")`
where sig is the account's signature over its own address. We use the
substrate flavour ("sub") with a throwaway Ed25519 key per client: the
gateway only needs proof of key possession, not a funded account.
"""

import base64
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from substrateinterface.utils.ss58 import ss58_decode, ss58_encode

# Generic substrate address prefix.
SS58_FORMAT = 42


class GatewayAuth:
    def __init__(self, key: Optional[Ed25519PrivateKey] = None, *, ss58_format: int = SS58_FORMAT) -> None:
        self._key = key or Ed25519PrivateKey.generate()
        pub = self._key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        self.address = ss58_encode(pub, ss58_format=int(ss58_format))

    def header_value(self) -> str:
        sig = self._key.sign(self.address.encode("utf-8"))
        raw = f"sub-{self.address}:0x{sig.hex()}"
        return "Basic " + base64.b64encode(raw.encode("utf-8")).decode("ascii")


def verify_header_value(value: str) -> bool:
    """Check a header produced by GatewayAuth (used by tests and diagnostics)."""
    scheme, _, token = (value or "").partition(" ")
    if scheme != "Basic" or not token:
        return False
    try:
        raw = base64.b64decode(token).decode("utf-8")
        prefix, _, sig_hex = raw.partition(":")
        chain, _, address = prefix.partition("-")
        if chain != "sub" or not sig_hex.startswith("0x"):
            return False
        pub_hex = ss58_decode(address)
        pub = bytes.fromhex(pub_hex[2:] if pub_hex.startswith("0x") else pub_hex)
        Ed25519PublicKey.from_public_bytes(pub).verify(bytes.fromhex(sig_hex[2:]), address.encode("utf-8"))
        return True
    except (InvalidSignature, ValueError):
        return False
