"""Bill blocks.

A block is one signed lifecycle event of a bill. Two byte strings are derived
from it:

- the *signing input*: canonical JSON of every field except `signature` and
  `hash`; this is what the signer signs.
- the *canonical encoding*: canonical JSON of every field except `hash`
  (the signature included); its SHA-256 is the block hash.

So the hash is a deterministic function of all other fields, and any change
to the operation, timestamp, linkage or signature changes it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Union

from billchain import crypto
from billchain.core import canonical_json_bytes, sha256_bytes
from billchain.errors import MalformedPayloadError
from billchain.operations import Operation

GENESIS_PREVIOUS_HASH = "genesis"


class IntegrityCheck(str, Enum):
    OK = "ok"
    HASH_MISMATCH = "hash_mismatch"
    BAD_SIGNATURE = "bad_signature"


@dataclass(frozen=True)
class BillBlock:
    bill_id: str
    block_number: int
    previous_hash: str
    timestamp: int
    operation: Operation
    signer_public_key: str
    signature: str
    hash: str

    @property
    def op_code(self):
        return self.operation.op_code

    def _fields(self) -> Dict[str, Any]:
        return {
            "bill_id": self.bill_id,
            "block_number": self.block_number,
            "previous_hash": self.previous_hash,
            "timestamp": self.timestamp,
            "operation": self.operation.to_dict(),
            "signer_public_key": self.signer_public_key,
        }

    def signing_input(self) -> bytes:
        return canonical_json_bytes(self._fields())

    def canonical_encoding(self) -> bytes:
        obj = self._fields()
        obj["signature"] = self.signature
        return canonical_json_bytes(obj)

    def compute_hash(self) -> str:
        return sha256_bytes(self.canonical_encoding())

    def verify_integrity(self) -> IntegrityCheck:
        """Hash first, then signature."""
        if self.compute_hash() != self.hash:
            return IntegrityCheck.HASH_MISMATCH
        if not crypto.verify(self.signer_public_key, self.signing_input(), self.signature):
            return IntegrityCheck.BAD_SIGNATURE
        return IntegrityCheck.OK

    @classmethod
    def create(
        cls,
        *,
        bill_id: str,
        block_number: int,
        previous_hash: str,
        timestamp: int,
        operation: Operation,
        signer_identity: str,
        signer: Union[crypto.Ed25519KeyPair, crypto.Signer],
    ) -> "BillBlock":
        """Sign and hash a new block. Performs no business validation."""
        unsigned = cls(
            bill_id=bill_id,
            block_number=block_number,
            previous_hash=previous_hash,
            timestamp=timestamp,
            operation=operation,
            signer_public_key=signer_identity,
            signature="",
            hash="",
        )
        signature = crypto.sign(signer, unsigned.signing_input(), identity=signer_identity)
        signed = replace(unsigned, signature=signature)
        return replace(signed, hash=signed.compute_hash())

    def to_dict(self) -> Dict[str, Any]:
        obj = self._fields()
        obj["signature"] = self.signature
        obj["hash"] = self.hash
        return obj

    @classmethod
    def from_dict(cls, data: Any) -> "BillBlock":
        if not isinstance(data, dict):
            raise MalformedPayloadError("block must be an object", field="block")
        required = {
            "bill_id": str,
            "block_number": int,
            "previous_hash": str,
            "timestamp": int,
            "signer_public_key": str,
            "signature": str,
            "hash": str,
        }
        for name, typ in required.items():
            value = data.get(name)
            if not isinstance(value, typ) or isinstance(value, bool):
                raise MalformedPayloadError(f"block.{name} must be {typ.__name__}", field=name)
        return cls(
            bill_id=data["bill_id"],
            block_number=data["block_number"],
            previous_hash=data["previous_hash"],
            timestamp=data["timestamp"],
            operation=Operation.from_dict(data.get("operation")),
            signer_public_key=data["signer_public_key"],
            signature=data["signature"],
            hash=data["hash"],
        )
