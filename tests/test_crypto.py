"""Tests for Ed25519 signing, did:key identities and key handling."""

import json

import pytest

from billchain import crypto
from billchain.core import canonical_json_bytes, sha256_bytes
from billchain.crypto import Ed25519KeyPair, KeyRing


class TestIdentities:
    """did:key encoding."""

    def test_identity_round_trips_through_did_key(self):
        """The did:key decodes back to the signing key's public key."""
        key = Ed25519KeyPair.generate()
        assert key.identity.startswith("did:key:z6Mk")
        pub = crypto.ed25519_public_key_from_did_key(key.identity)
        assert pub.public_bytes_raw() == crypto.b64url_decode(key.to_jwk()["x"])

    def test_malformed_identities_are_not_well_formed(self):
        """Garbage, wrong prefixes and truncated keys are rejected."""
        key = Ed25519KeyPair.generate()
        assert crypto.is_well_formed_identity(key.identity)
        assert not crypto.is_well_formed_identity("did:web:example.com")
        assert not crypto.is_well_formed_identity("did:key:z0OIl")
        assert not crypto.is_well_formed_identity(key.identity[:-4])
        assert not crypto.is_well_formed_identity(None)

    def test_b58_preserves_leading_zeros(self):
        data = b"\x00\x00\x01\x02"
        assert crypto.b58decode(crypto.b58encode(data)) == data


class TestSignVerify:
    """sign/verify contract."""

    def test_valid_signature_verifies(self):
        key = Ed25519KeyPair.generate()
        sig = key.sign(b"payload")
        assert crypto.verify(key.identity, b"payload", sig)

    def test_tampered_data_fails(self):
        key = Ed25519KeyPair.generate()
        sig = key.sign(b"payload")
        assert not crypto.verify(key.identity, b"payload!", sig)

    def test_wrong_key_fails(self):
        a, b = Ed25519KeyPair.generate(), Ed25519KeyPair.generate()
        assert not crypto.verify(b.identity, b"x", a.sign(b"x"))

    def test_verify_never_raises_on_garbage(self):
        """Malformed keys and signatures return False."""
        key = Ed25519KeyPair.generate()
        assert crypto.verify("not-a-did", b"x", key.sign(b"x")) is False
        assert crypto.verify(key.identity, b"x", "***") is False
        assert crypto.verify(key.identity, b"x", "") is False

    def test_keyring_signs_only_for_held_identities(self):
        key = Ed25519KeyPair.generate()
        ring = KeyRing([key])
        assert ring.holds(key.identity)
        assert crypto.verify(key.identity, b"m", ring.sign(key.identity, b"m"))
        with pytest.raises(KeyError):
            ring.sign(Ed25519KeyPair.generate().identity, b"m")

    def test_sign_helper_requires_identity_for_signers(self):
        key = Ed25519KeyPair.generate()
        with pytest.raises(ValueError):
            crypto.sign(KeyRing([key]), b"m")
        with pytest.raises(KeyError):
            crypto.sign(key, b"m", identity=Ed25519KeyPair.generate().identity)


class TestJwk:
    def test_jwk_save_and_load(self, tmp_path):
        key = Ed25519KeyPair.generate()
        path = tmp_path / "key.jwk.json"
        path.write_text(json.dumps(key.to_jwk()), encoding="utf-8")
        loaded = Ed25519KeyPair.load(path)
        assert loaded.identity == key.identity
        assert crypto.verify(key.identity, b"m", loaded.sign(b"m"))

    def test_public_jwk_cannot_sign(self):
        key = Ed25519KeyPair.generate()
        with pytest.raises(ValueError):
            Ed25519KeyPair.from_jwk(key.to_jwk(include_private=False))

    def test_mismatched_public_part_rejected(self):
        a, b = Ed25519KeyPair.generate(), Ed25519KeyPair.generate()
        jwk = a.to_jwk()
        jwk["x"] = b.to_jwk()["x"]
        with pytest.raises(ValueError):
            Ed25519KeyPair.from_jwk(jwk)


class TestCanonicalJson:
    def test_key_order_does_not_change_bytes(self):
        assert canonical_json_bytes({"b": 1, "a": [1, 2]}) == canonical_json_bytes({"a": [1, 2], "b": 1})
        assert canonical_json_bytes({"a": 1}) == b'{"a":1}'

    def test_floats_rejected(self):
        with pytest.raises(ValueError, match="Float not allowed"):
            canonical_json_bytes({"sum": 1.5})

    def test_sha256_hex(self):
        assert sha256_bytes(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        assert crypto.hash_bytes(b"abc") == sha256_bytes(b"abc")
