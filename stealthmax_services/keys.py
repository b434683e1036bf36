from __future__ import annotations

"""
Deterministic key derivation.

Every subname owns a family of secp256k1 keys derived from the service's root
secret. Nothing is stored: a key is recomputed whenever it is needed.

Two modes
---------
- legacy (``counter is None``)::

      keccak256(secret || utf8(name))

  identical to Solidity ``keccak256(abi.encodePacked(bytes32 secret, string name))``,
  so registrations made by earlier deployments keep their addresses.

- counter (``counter`` is an int)::

      keccak256(secret || 0xFF || len16(c) || int_be_signed(c) || utf8(name))

  ``0xFF`` never occurs in UTF-8 text, so a counter-mode preimage can never
  equal a legacy one. The length prefix keeps the encoding injective for any
  Python int.

The root secret itself is the master identity's private key.
"""

from typing import Optional, Union

from eth_account import Account
from eth_utils import keccak

from .domain import DerivedKeypair
from .errors import ConfigurationError

# secp256k1 group order; valid private keys are 1..N-1
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

COUNTER_TAG = b"\xff"

SecretLike = Union[bytes, bytearray, str]


def normalize_secret(secret: Optional[SecretLike]) -> bytes:
    """Return the 32-byte root secret. Accepts raw bytes or hex with/without ``0x``."""
    if secret is None:
        raise ConfigurationError("PRIVATE_KEY is not set")
    if isinstance(secret, (bytes, bytearray)):
        raw = bytes(secret)
    elif isinstance(secret, str):
        s = secret.strip()
        if s[:2].lower() == "0x":
            s = s[2:]
        if len(s) != 64:
            raise ConfigurationError("PRIVATE_KEY must be 32 bytes of hex")
        try:
            raw = bytes.fromhex(s)
        except ValueError as e:
            raise ConfigurationError("PRIVATE_KEY is not valid hex") from e
    else:
        raise ConfigurationError(f"PRIVATE_KEY has unsupported type {type(secret).__name__}")
    if len(raw) != 32:
        raise ConfigurationError("PRIVATE_KEY must be 32 bytes")
    return raw


def _encode_counter(counter: int) -> bytes:
    # minimal two's-complement width, at least one byte
    width = (counter.bit_length() + 8) // 8
    body = counter.to_bytes(width, "big", signed=True)
    return len(body).to_bytes(2, "big") + body


def _preimage(secret: bytes, name: str, counter: Optional[int]) -> bytes:
    name_bytes = name.encode("utf-8", "surrogatepass")
    if counter is None:
        return secret + name_bytes
    return secret + COUNTER_TAG + _encode_counter(counter) + name_bytes


def _to_scalar(digest: bytes) -> bytes:
    # out-of-range digests are astronomically rare; re-hash until valid
    while not 0 < int.from_bytes(digest, "big") < SECP256K1_N:
        digest = keccak(digest)
    return digest


def _keypair(private_key: bytes) -> DerivedKeypair:
    acct = Account.from_key(private_key)
    return DerivedKeypair(private_key=private_key, address=acct.address)


def derive(secret: SecretLike, name: str, counter: Optional[int] = None) -> DerivedKeypair:
    """
    Derive the keypair for ``name`` (and ``counter``, when given).

    Pure and deterministic; safe to call from any task.
    """
    if not isinstance(name, str):
        raise TypeError(f"name must be str, not {type(name).__name__}")
    if counter is not None and (isinstance(counter, bool) or not isinstance(counter, int)):
        raise TypeError(f"counter must be int or None, not {type(counter).__name__}")
    root = normalize_secret(secret)
    digest = keccak(_preimage(root, name, counter))
    return _keypair(_to_scalar(digest))


def derive_address(secret: SecretLike, name: str, counter: Optional[int] = None) -> str:
    return derive(secret, name, counter).address


def master_keypair(secret: SecretLike) -> DerivedKeypair:
    """The master rollup identity signs with the root secret itself."""
    root = normalize_secret(secret)
    if not 0 < int.from_bytes(root, "big") < SECP256K1_N:
        raise ConfigurationError("PRIVATE_KEY is not a valid secp256k1 key")
    return _keypair(root)


__all__ = [
    "SECP256K1_N",
    "normalize_secret",
    "derive",
    "derive_address",
    "master_keypair",
]
