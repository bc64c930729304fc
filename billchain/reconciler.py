"""Reconciliation of a peer's view of a bill with the local chain.

Single blocks are cheap to check but can only extend the tip. Anything else
(a gap, a competing block at a known height, a block that does not link to
our tip) escalates to FULL_CHAIN_REQUIRED, and the caller asks the peer for
its whole chain.

Full chains are validated end to end before they are compared. Divergent
valid chains are ranked by a `ForkChoicePolicy`; the local chain is only
replaced when the incoming chain strictly wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

from billchain.block import BillBlock, IntegrityCheck
from billchain.chain import BillChain
from billchain.errors import (
    BillChainError,
    DivergenceUnresolvedError,
    IntegrityError,
    TransitionError,
)
from billchain.observability import Layer, get_logger, timed_operation
from billchain.state import BillState
from billchain.transitions import TransitionValidator

logger = get_logger("reconciler", Layer.RECONCILER)

LENGTH = "length"
EARLIEST_TIMESTAMP = "earliest_timestamp"
LOWEST_HASH = "lowest_hash"

# Fork-choice priority. Length always ranks first so a shorter valid chain can
# never displace a longer one; the remaining order is configurable.
DEFAULT_TIE_BREAK_ORDER: Tuple[str, ...] = (LENGTH, EARLIEST_TIMESTAMP, LOWEST_HASH)


class OutcomeKind(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    NOOP = "noop"
    FULL_CHAIN_REQUIRED = "full_chain_required"


@dataclass(frozen=True)
class ReconcileOutcome:
    kind: OutcomeKind
    chain: Optional[BillChain] = None
    reason: str = ""
    error: Optional[BillChainError] = None
    replaced: bool = False
    divergence_index: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return self.kind is OutcomeKind.ACCEPTED


class ForkChoicePolicy:
    """Ranks two valid chains that diverge at a common index."""

    def __init__(self, order: Sequence[str] = DEFAULT_TIE_BREAK_ORDER):
        order = tuple(order)
        if not order or order[0] != LENGTH:
            raise ValueError("fork-choice order must start with 'length'")
        unknown = set(order) - set(DEFAULT_TIE_BREAK_ORDER)
        if unknown or len(set(order)) != len(order):
            raise ValueError(f"invalid fork-choice order: {order}")
        self.order = order

    def choose(self, local: BillChain, incoming: BillChain, index: int) -> Optional[str]:
        """Return "local", "incoming", or None when every criterion ties."""
        for criterion in self.order:
            if criterion == LENGTH:
                a, b = -len(local), -len(incoming)
            elif criterion == EARLIEST_TIMESTAMP:
                a, b = local.blocks[index].timestamp, incoming.blocks[index].timestamp
            else:
                a, b = local.blocks[index].hash, incoming.blocks[index].hash
            if a < b:
                return "local"
            if b < a:
                return "incoming"
        return None


class Reconciler:
    def __init__(
        self,
        validator: Optional[TransitionValidator] = None,
        policy: Optional[ForkChoicePolicy] = None,
    ):
        self.validator = validator or TransitionValidator()
        self.policy = policy or ForkChoicePolicy()

    def reconcile(
        self,
        local: Optional[BillChain],
        incoming: Union[BillBlock, BillChain],
        local_state: Optional[BillState] = None,
    ) -> ReconcileOutcome:
        if isinstance(incoming, BillChain):
            return self.reconcile_chain(local, incoming)
        return self.reconcile_block(local, incoming, local_state)

    # ------------------------------------------------------------------
    # single block
    # ------------------------------------------------------------------

    def reconcile_block(
        self,
        local: Optional[BillChain],
        block: BillBlock,
        local_state: Optional[BillState] = None,
    ) -> ReconcileOutcome:
        check = block.verify_integrity()
        if check is not IntegrityCheck.OK:
            error = IntegrityError(f"block {block.block_number}: {check.value}", check=check.value)
            return self._rejected(block.bill_id, error)

        if local is None or local.tip is None:
            if block.block_number != 1:
                return self._full_chain(block.bill_id, f"unknown bill, received block {block.block_number}")
            try:
                self.validator.validate(None, block, bill_id=block.bill_id)
            except TransitionError as ex:
                return self._rejected(block.bill_id, ex)
            return ReconcileOutcome(OutcomeKind.ACCEPTED, chain=BillChain(block.bill_id, (block,)))

        if block.bill_id != local.bill_id:
            error = IntegrityError(f"block belongs to bill {block.bill_id}", check="bill_id")
            return self._rejected(local.bill_id, error)

        tip = local.tip
        if block.block_number <= tip.block_number:
            known = local.block_at(block.block_number)
            if known is not None and known.hash == block.hash:
                return ReconcileOutcome(OutcomeKind.NOOP, chain=local, reason="already known")
            return self._full_chain(local.bill_id, f"competing block at height {block.block_number}")

        if block.block_number > tip.block_number + 1:
            return self._full_chain(
                local.bill_id,
                f"gap: local tip {tip.block_number}, received {block.block_number}",
            )

        if block.previous_hash != tip.hash:
            return self._full_chain(local.bill_id, f"block {block.block_number} does not link to local tip")

        state = local_state if local_state is not None else self.validator.validate_chain(local)
        try:
            self.validator.validate(state, block, bill_id=local.bill_id)
        except TransitionError as ex:
            return self._rejected(local.bill_id, ex)
        logger.info(
            f"accepted block {block.block_number}",
            operation="reconcile_block",
            bill_id=local.bill_id,
            block_number=block.block_number,
            op_code=block.op_code.value,
        )
        return ReconcileOutcome(OutcomeKind.ACCEPTED, chain=local.append(block))

    # ------------------------------------------------------------------
    # full chain
    # ------------------------------------------------------------------

    @timed_operation(logger, "reconcile_chain")
    def reconcile_chain(self, local: Optional[BillChain], incoming: BillChain) -> ReconcileOutcome:
        if local is not None and incoming.bill_id != local.bill_id:
            error = IntegrityError(f"chain belongs to bill {incoming.bill_id}", check="bill_id")
            return self._rejected(local.bill_id, error)
        try:
            self.validator.validate_chain(incoming)
        except TransitionError as ex:
            return self._rejected(incoming.bill_id, ex)

        if local is None or not local.blocks:
            return ReconcileOutcome(OutcomeKind.ACCEPTED, chain=incoming)

        index = local.divergence_index(incoming)
        if index == len(incoming):
            # identical, or incoming is a prefix of local
            return ReconcileOutcome(OutcomeKind.NOOP, chain=local, reason="incoming chain adds nothing")
        if index == len(local):
            return ReconcileOutcome(OutcomeKind.ACCEPTED, chain=incoming, divergence_index=index)

        winner = self.policy.choose(local, incoming, index)
        if winner == "incoming":
            logger.warning(
                f"replacing local chain at divergence index {index}",
                operation="fork_choice",
                bill_id=local.bill_id,
                local_height=len(local),
                incoming_height=len(incoming),
            )
            return ReconcileOutcome(
                OutcomeKind.ACCEPTED,
                chain=incoming,
                replaced=True,
                divergence_index=index,
            )
        if winner == "local":
            return ReconcileOutcome(
                OutcomeKind.NOOP,
                chain=local,
                reason="local chain wins fork choice",
                divergence_index=index,
            )

        error = DivergenceUnresolvedError(
            f"chains diverge at index {index} and tie on {', '.join(self.policy.order)}",
            bill_id=local.bill_id,
        )
        logger.critical(
            error.message,
            error_code=error.error_code,
            operation="fork_choice",
            bill_id=local.bill_id,
        )
        return ReconcileOutcome(
            OutcomeKind.REJECTED,
            chain=local,
            reason=error.message,
            error=error,
            divergence_index=index,
        )

    # ------------------------------------------------------------------

    def _rejected(self, bill_id: str, error: BillChainError) -> ReconcileOutcome:
        logger.warning(
            f"rejected inbound payload: {error.message}",
            operation="reconcile",
            error_code=error.error_code,
            bill_id=bill_id,
        )
        return ReconcileOutcome(OutcomeKind.REJECTED, reason=error.message, error=error)

    def _full_chain(self, bill_id: str, reason: str) -> ReconcileOutcome:
        logger.info(f"full chain required: {reason}", operation="reconcile", bill_id=bill_id)
        return ReconcileOutcome(OutcomeKind.FULL_CHAIN_REQUIRED, reason=reason)
