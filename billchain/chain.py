"""Bill chains: immutable, hash-linked sequences of blocks for one bill."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from billchain.block import GENESIS_PREVIOUS_HASH, BillBlock, IntegrityCheck
from billchain.core import canonical_json_bytes, sha256_bytes
from billchain.errors import IntegrityError, MalformedPayloadError
from billchain.operations import IssuePayload, OpCode


def bill_id_for_issue(payload: IssuePayload, timestamp: int) -> str:
    """BillId = sha256(canonical(issue payload + timestamp)).

    The payload carries the drawer and a random nonce, so two otherwise
    identical bills never share an id.
    """
    return sha256_bytes(canonical_json_bytes({"issue": payload.to_dict(), "timestamp": timestamp}))


@dataclass(frozen=True)
class BillChain:
    bill_id: str
    blocks: Tuple[BillBlock, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.blocks, tuple):
            object.__setattr__(self, "blocks", tuple(self.blocks))

    def __len__(self) -> int:
        return len(self.blocks)

    def __iter__(self):
        return iter(self.blocks)

    @property
    def tip(self) -> Optional[BillBlock]:
        return self.blocks[-1] if self.blocks else None

    @property
    def height(self) -> int:
        return len(self.blocks)

    def block_at(self, number: int) -> Optional[BillBlock]:
        if 1 <= number <= len(self.blocks):
            return self.blocks[number - 1]
        return None

    def append(self, block: BillBlock) -> "BillChain":
        """Return a new chain with `block` at the end. Checks linkage only."""
        tip = self.tip
        expected_number = tip.block_number + 1 if tip else 1
        expected_prev = tip.hash if tip else GENESIS_PREVIOUS_HASH
        if block.bill_id != self.bill_id:
            raise IntegrityError(f"block belongs to bill {block.bill_id}", check="linkage")
        if block.block_number != expected_number:
            raise IntegrityError(
                f"expected block number {expected_number}, got {block.block_number}",
                check="linkage",
            )
        if block.previous_hash != expected_prev:
            raise IntegrityError("previous_hash does not match chain tip", check="linkage")
        return BillChain(self.bill_id, self.blocks + (block,))

    def audit_linkage(self) -> List[str]:
        """Accumulate structural and integrity findings across the whole chain."""
        errors: List[str] = []
        if not self.blocks:
            errors.append("chain is empty")
            return errors
        prev_hash = GENESIS_PREVIOUS_HASH
        for i, block in enumerate(self.blocks):
            label = f"block[{i + 1}]"
            if block.bill_id != self.bill_id:
                errors.append(f"{label}: bill_id mismatch")
            if block.block_number != i + 1:
                errors.append(f"{label}: sequence gap (block_number={block.block_number})")
            if block.previous_hash != prev_hash:
                errors.append(f"{label}: chain break (previous_hash does not match)")
            check = block.verify_integrity()
            if check is not IntegrityCheck.OK:
                errors.append(f"{label}: {check.value}")
            prev_hash = block.hash
        first = self.blocks[0]
        if first.op_code is not OpCode.ISSUE:
            errors.append("block[1]: first block must be an issue")
        elif bill_id_for_issue(first.operation.payload, first.timestamp) != self.bill_id:
            errors.append("block[1]: bill_id is not derived from the issue block")
        return errors

    def divergence_index(self, other: "BillChain") -> int:
        """0-based index of the first position where the chains differ.

        Equal to the shorter length when one chain is a prefix of the other.
        """
        n = min(len(self.blocks), len(other.blocks))
        for i in range(n):
            if self.blocks[i].hash != other.blocks[i].hash:
                return i
        return n

    def is_prefix_of(self, other: "BillChain") -> bool:
        return len(self.blocks) <= len(other.blocks) and self.divergence_index(other) == len(self.blocks)

    def last_block_with_op(self, *op_codes: OpCode) -> Optional[BillBlock]:
        for block in reversed(self.blocks):
            if block.op_code in op_codes:
                return block
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"bill_id": self.bill_id, "blocks": [b.to_dict() for b in self.blocks]}

    @classmethod
    def from_dict(cls, data: Any) -> "BillChain":
        if not isinstance(data, dict) or not isinstance(data.get("bill_id"), str):
            raise MalformedPayloadError("chain must be an object with a bill_id", field="bill_id")
        blocks = data.get("blocks")
        if not isinstance(blocks, list):
            raise MalformedPayloadError("chain.blocks must be a list", field="blocks")
        return cls(data["bill_id"], tuple(BillBlock.from_dict(b) for b in blocks))
