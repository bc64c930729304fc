"""Chain builder: turns an actor's intent into a signed, validated block.

The builder never emits a block the validator would refuse. Any
`TransitionError` is wrapped in `InvalidOperationError` and nothing is
returned.
"""

from __future__ import annotations

from typing import Callable, Optional, Union

from billchain.block import GENESIS_PREVIOUS_HASH, BillBlock
from billchain.chain import BillChain, bill_id_for_issue
from billchain.core import now_unix
from billchain.crypto import Ed25519KeyPair, Signer
from billchain.errors import InvalidOperationError, TransitionError
from billchain.observability import Layer, get_logger
from billchain.operations import IssuePayload, OpCode, Operation
from billchain.state import BillState
from billchain.transitions import TransitionValidator

logger = get_logger("builder", Layer.BUILDER)

SigningHandle = Union[Ed25519KeyPair, Signer]


class ChainBuilder:
    def __init__(
        self,
        validator: Optional[TransitionValidator] = None,
        clock: Callable[[], int] = now_unix,
    ):
        self.validator = validator or TransitionValidator()
        self.clock = clock

    def build_issue(
        self,
        payload: IssuePayload,
        signer: SigningHandle,
        timestamp: Optional[int] = None,
    ) -> BillChain:
        """Create block 1 for a new bill and return the one-block chain."""
        ts = self.clock() if timestamp is None else timestamp
        try:
            bill_id = bill_id_for_issue(payload, ts)
        except ValueError as ex:
            raise InvalidOperationError(f"issue payload is not canonicalizable: {ex}") from ex
        block = self._sign(
            bill_id=bill_id,
            block_number=1,
            previous_hash=GENESIS_PREVIOUS_HASH,
            timestamp=ts,
            operation=Operation(OpCode.ISSUE, payload),
            actor=payload.drawer,
            signer=signer,
        )
        self._check(None, block, bill_id)
        return BillChain(bill_id, (block,))

    def build_next(
        self,
        chain: BillChain,
        operation: Operation,
        actor: str,
        signer: SigningHandle,
        timestamp: Optional[int] = None,
        state: Optional[BillState] = None,
    ) -> BillBlock:
        """Create the block that extends `chain` with `operation`, signed as `actor`.

        `state` may be passed when the caller already folded the chain.
        """
        tip = chain.tip
        if tip is None:
            raise InvalidOperationError("cannot extend an empty chain; issue the bill first")
        if state is None:
            try:
                state = self.validator.validate_chain(chain)
            except TransitionError as ex:
                raise InvalidOperationError(f"local chain is invalid: {ex.message}", cause=ex) from ex
        ts = self.clock() if timestamp is None else timestamp
        block = self._sign(
            bill_id=chain.bill_id,
            block_number=tip.block_number + 1,
            previous_hash=tip.hash,
            timestamp=ts,
            operation=operation,
            actor=actor,
            signer=signer,
        )
        self._check(state, block, chain.bill_id, paid=self.validator.is_paid(chain.bill_id))
        return block

    def extend(
        self,
        chain: BillChain,
        operation: Operation,
        actor: str,
        signer: SigningHandle,
        timestamp: Optional[int] = None,
    ) -> BillChain:
        """`build_next` and return the extended chain value."""
        return chain.append(self.build_next(chain, operation, actor, signer, timestamp))

    def _sign(self, *, actor: str, signer: SigningHandle, **fields) -> BillBlock:
        try:
            return BillBlock.create(signer_identity=actor, signer=signer, **fields)
        except KeyError as ex:
            raise InvalidOperationError(f"no signing key for {actor}") from ex
        except ValueError as ex:
            raise InvalidOperationError(f"cannot encode block: {ex}") from ex

    def _check(
        self,
        state: Optional[BillState],
        block: BillBlock,
        bill_id: str,
        paid: bool = False,
    ) -> None:
        try:
            self.validator.validate(state, block, bill_id=bill_id, paid=paid)
        except TransitionError as ex:
            logger.warning(
                f"refused to build {block.op_code.value}: {ex.message}",
                operation="build",
                error_code=ex.error_code,
                bill_id=bill_id,
                block_number=block.block_number,
                op_code=block.op_code.value,
            )
            raise InvalidOperationError(
                f"{block.op_code.value} rejected: {ex.message}", cause=ex
            ) from ex
