"""billchain.crypto

Ed25519 signing and verification for bill blocks.

Profile / invariants:
- Actor identities are `did:key` identifiers (Ed25519 only). The identity
  string *is* the public key, so no separate key registry is needed.
- Signatures are raw Ed25519 signatures encoded as unpadded base64url.
- `verify` never raises; malformed keys or signatures simply fail so callers
  can accumulate results.

Private keys never leave a `Signer`. The engine only asks "sign these bytes
as this identity" and "does this signature verify against this identity".
"""

from __future__ import annotations

import base64
import json
import pathlib
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from billchain.core import sha256_bytes


# Base58 implementation (bitcoin alphabet)
B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}

ED25519_MULTICODEC = bytes([0xED, 0x01])
DID_KEY_PREFIX = "did:key:z"


def b58decode(s: str) -> bytes:
    s_bytes = s.encode("ascii") if isinstance(s, str) else s
    num = 0
    for c in s_bytes:
        if c not in B58_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + B58_MAP[c]
    n_pad = 0
    for c in s_bytes:
        if c == B58_ALPHABET[0]:
            n_pad += 1
        else:
            break
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def b58encode(b: bytes) -> str:
    n_pad = 0
    for c in b:
        if c == 0:
            n_pad += 1
        else:
            break
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def hash_bytes(data: bytes) -> str:
    """SHA-256 of `data` as lowercase hex."""
    return sha256_bytes(data)


# ---------------------------------------------------------------------------
# did:key (Ed25519)
# ---------------------------------------------------------------------------


def did_key_from_ed25519_public_key(pub: bytes) -> str:
    if len(pub) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(pub)}")
    return DID_KEY_PREFIX + b58encode(ED25519_MULTICODEC + pub)


def ed25519_public_key_from_did_key(did: str) -> Ed25519PublicKey:
    """Parse a `did:key` (Ed25519) and return a cryptography public key."""

    if not isinstance(did, str) or not did.startswith(DID_KEY_PREFIX):
        raise ValueError("Only did:key:z... supported")
    decoded = b58decode(did[len(DID_KEY_PREFIX):])
    if not decoded.startswith(ED25519_MULTICODEC):
        raise ValueError("did:key multicodec prefix not recognized for Ed25519")
    raw = decoded[2:]
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


def is_well_formed_identity(identity: Any) -> bool:
    """True when `identity` decodes to an Ed25519 did:key."""
    try:
        ed25519_public_key_from_did_key(identity)
    except (ValueError, TypeError):
        return False
    return True


def verify(public_key: str, data: bytes, signature: str) -> bool:
    """Verify a base64url Ed25519 signature over `data` against a did:key."""
    try:
        pub = ed25519_public_key_from_did_key(public_key)
        sig = b64url_decode(signature)
        pub.verify(sig, data)
    except (InvalidSignature, ValueError, TypeError):
        return False
    return True


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


class Ed25519KeyPair:
    """An Ed25519 private key and its did:key identity."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        pub_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.identity = did_key_from_ed25519_public_key(pub_bytes)

    @classmethod
    def generate(cls) -> "Ed25519KeyPair":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_jwk(cls, jwk: Dict[str, Any]) -> "Ed25519KeyPair":
        """Load from an OKP/Ed25519 private JWK."""
        if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
            raise ValueError("Only OKP/Ed25519 JWK is supported")
        d = jwk.get("d")
        if not d:
            raise ValueError("JWK must include 'd' (private)")
        pair = cls(Ed25519PrivateKey.from_private_bytes(b64url_decode(d)))
        x = jwk.get("x")
        if x and did_key_from_ed25519_public_key(b64url_decode(x)) != pair.identity:
            raise ValueError("JWK 'x' does not match the private key")
        return pair

    @classmethod
    def load(cls, path: Union[str, pathlib.Path]) -> "Ed25519KeyPair":
        jwk = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
        if not isinstance(jwk, dict):
            raise ValueError("key file must be a JSON object")
        return cls.from_jwk(jwk)

    def to_jwk(self, kid: str = "key-1", include_private: bool = True) -> Dict[str, Any]:
        priv_bytes = self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        pub_bytes = self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        jwk = {
            "kty": "OKP",
            "crv": "Ed25519",
            "x": b64url_encode(pub_bytes),
            "kid": kid,
        }
        if include_private:
            jwk["d"] = b64url_encode(priv_bytes)
        return jwk

    def sign(self, data: bytes) -> str:
        return b64url_encode(self._private_key.sign(data))

    def __repr__(self) -> str:
        return f"Ed25519KeyPair(identity={self.identity!r})"


class Signer(ABC):
    """Produces signatures on behalf of identities whose keys it holds."""

    @abstractmethod
    def sign(self, identity: str, data: bytes) -> str:
        """Sign `data` as `identity`. Raises KeyError for unknown identities."""

    def holds(self, identity: str) -> bool:
        return False


class KeyRing(Signer):
    """In-memory identity -> key map."""

    def __init__(self, keys: Optional[Iterable[Ed25519KeyPair]] = None):
        self._keys: Dict[str, Ed25519KeyPair] = {}
        self._lock = threading.RLock()
        for key in keys or ():
            self.add(key)

    def add(self, key: Ed25519KeyPair) -> str:
        with self._lock:
            self._keys[key.identity] = key
        return key.identity

    def holds(self, identity: str) -> bool:
        with self._lock:
            return identity in self._keys

    def identities(self) -> List[str]:
        with self._lock:
            return sorted(self._keys)

    def sign(self, identity: str, data: bytes) -> str:
        with self._lock:
            key = self._keys.get(identity)
        if key is None:
            raise KeyError(f"no signing key held for {identity}")
        return key.sign(data)


def sign(handle: Union[Ed25519KeyPair, Signer], data: bytes, identity: Optional[str] = None) -> str:
    """Sign with either a bare key pair or a `Signer` (which needs `identity`)."""
    if isinstance(handle, Ed25519KeyPair):
        if identity is not None and identity != handle.identity:
            raise KeyError(f"key pair does not hold {identity}")
        return handle.sign(data)
    if identity is None:
        raise ValueError("identity is required when signing through a Signer")
    return handle.sign(identity, data)
