"""Transition validation.

Decides whether a candidate block is a legal successor of a bill state.
Checks run in a fixed order and the first failure wins:

    1. structural      block number, previous hash, bill id      IntegrityError
    2. cryptographic   hash, signature                            IntegrityError
                       signer holds the required role             UnauthorizedActorError
    3. business        op reachable from the effective status     IllegalTransitionError
                       payload schema                             MalformedPayloadError
                       op-specific guards                         IllegalTransitionError
    4. temporal        timestamp before the previous block        warning only

The effective status is evaluated at the candidate block's own timestamp, so
every node reaches the same verdict for the same block regardless of when it
receives it. The payment oracle is not part of that verdict: it reflects the
present, not the time a block was signed, so chain replay and inbound blocks
never consult it. Only a new local action passes `paid`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from billchain.block import GENESIS_PREVIOUS_HASH, BillBlock, IntegrityCheck
from billchain.chain import BillChain, bill_id_for_issue
from billchain.errors import (
    IllegalTransitionError,
    IntegrityError,
    MalformedPayloadError,
    TransitionError,
    UnauthorizedActorError,
)
from billchain.observability import Layer, get_logger
from billchain.operations import OpCode, RecourseReason
from billchain.state import BillState, BillStatus, Deadlines

logger = get_logger("validator", Layer.VALIDATOR)

PaymentOracle = Callable[[str], bool]


class Role(str, Enum):
    DRAWER = "drawer"
    DRAWEE = "drawee"
    HOLDER = "holder"
    BUYER = "buyer"
    RECOURSEE = "recoursee"


# Statuses in which the bill is not waiting on a payment or already settled.
OPEN: FrozenSet[BillStatus] = frozenset(BillStatus) - {
    BillStatus.PAYMENT_REQUESTED,
    BillStatus.OFFERED_TO_SELL,
    BillStatus.RECOURSE_REQUESTED,
    BillStatus.PAID,
}


@dataclass(frozen=True)
class GuardContext:
    state: BillState
    block: BillBlock
    deadlines: Deadlines
    paid: bool


Guard = Callable[[GuardContext], None]


@dataclass(frozen=True)
class TransitionRule:
    allowed_from: FrozenSet[BillStatus]
    signer_role: Role
    next_status: BillStatus
    guards: Tuple[Guard, ...] = ()


# ════════════════════════════════════════════════════════════════════════════
# GUARDS
# ════════════════════════════════════════════════════════════════════════════


def _illegal(ctx: GuardContext, message: str) -> IllegalTransitionError:
    return IllegalTransitionError(
        message,
        op_code=ctx.block.op_code.value,
        status=ctx.state.status.value,
    )


def _not_accepted(ctx: GuardContext) -> None:
    if ctx.state.accepted:
        raise _illegal(ctx, "bill already accepted")


def _accepted(ctx: GuardContext) -> None:
    if not ctx.state.accepted:
        raise _illegal(ctx, "bill not accepted")


def _currency_matches_bill(ctx: GuardContext) -> None:
    currency = ctx.block.operation.payload.currency
    if currency != ctx.state.currency:
        raise MalformedPayloadError(
            f"currency {currency} differs from bill currency {ctx.state.currency}",
            field="currency",
        )


def _new_holder_differs(attr: str) -> Guard:
    def guard(ctx: GuardContext) -> None:
        if getattr(ctx.block.operation.payload, attr) == ctx.state.holder:
            raise _illegal(ctx, f"{attr} is already the holder")
    return guard


def _sale_matches_offer(ctx: GuardContext) -> None:
    offer = ctx.state.pending.payload
    sale = ctx.block.operation.payload
    for name in ("buyer", "sum", "currency", "payment_address"):
        if getattr(sale, name) != getattr(offer, name):
            raise _illegal(ctx, f"sell {name} does not match the offer")


def _recourse_matches_request(ctx: GuardContext) -> None:
    request = ctx.state.pending.payload
    recourse = ctx.block.operation.payload
    for name in ("recoursee", "sum", "currency"):
        if getattr(recourse, name) != getattr(request, name):
            raise _illegal(ctx, f"recourse {name} does not match the request")


def _recoursee_is_past_holder(ctx: GuardContext) -> None:
    p = ctx.block.operation.payload
    if p.recoursee == p.recourser or p.recoursee not in ctx.state.past_holders:
        raise _illegal(ctx, "recoursee is not a past holder")


def _recourse_reason_holds(ctx: GuardContext) -> None:
    reason = RecourseReason(ctx.block.operation.payload.reason)
    at = ctx.block.timestamp
    if reason is RecourseReason.ACCEPT:
        request = ctx.state.last_accept_request
        if request is None or not (request.rejected or request.is_expired(at, ctx.deadlines)):
            raise _illegal(ctx, "request to accept did not expire and was not rejected")
    else:
        if ctx.paid:
            raise _illegal(ctx, "bill already paid")
        request = ctx.state.last_payment_request
        if request is None or not (request.rejected or request.is_expired(at, ctx.deadlines)):
            raise _illegal(ctx, "request to pay did not expire and was not rejected")


TRANSITION_TABLE: Dict[OpCode, TransitionRule] = {
    OpCode.ACCEPT: TransitionRule(
        OPEN, Role.DRAWEE, BillStatus.ACCEPTED, (_not_accepted,)
    ),
    # Not the mirror image of ACCEPT: a drawee who already refused cannot refuse
    # again, though it may still accept. A second refusal would restart the
    # accept-recourse window.
    OpCode.REJECT_TO_ACCEPT: TransitionRule(
        OPEN - {BillStatus.ACCEPT_REJECTED}, Role.DRAWEE, BillStatus.ACCEPT_REJECTED, (_not_accepted,)
    ),
    OpCode.REQUEST_TO_ACCEPT: TransitionRule(
        OPEN - {BillStatus.ACCEPT_REQUESTED}, Role.HOLDER, BillStatus.ACCEPT_REQUESTED, (_not_accepted,)
    ),
    OpCode.REQUEST_TO_PAY: TransitionRule(
        OPEN, Role.HOLDER, BillStatus.PAYMENT_REQUESTED, (_accepted, _currency_matches_bill)
    ),
    OpCode.REJECT_TO_PAY: TransitionRule(
        frozenset({BillStatus.PAYMENT_REQUESTED}), Role.DRAWEE, BillStatus.PAYMENT_REJECTED
    ),
    OpCode.OFFER_TO_SELL: TransitionRule(
        OPEN, Role.HOLDER, BillStatus.OFFERED_TO_SELL,
        (_new_holder_differs("buyer"), _currency_matches_bill),
    ),
    OpCode.SELL: TransitionRule(
        frozenset({BillStatus.OFFERED_TO_SELL}), Role.HOLDER, BillStatus.SOLD, (_sale_matches_offer,)
    ),
    OpCode.REJECT_TO_BUY: TransitionRule(
        frozenset({BillStatus.OFFERED_TO_SELL}), Role.BUYER, BillStatus.SALE_REJECTED
    ),
    OpCode.ENDORSE: TransitionRule(
        OPEN, Role.HOLDER, BillStatus.ENDORSED, (_new_holder_differs("endorsee"),)
    ),
    OpCode.MINT: TransitionRule(
        OPEN, Role.HOLDER, BillStatus.MINTED,
        (_accepted, _new_holder_differs("mint"), _currency_matches_bill),
    ),
    OpCode.REQUEST_RECOURSE: TransitionRule(
        OPEN, Role.HOLDER, BillStatus.RECOURSE_REQUESTED,
        (_recoursee_is_past_holder, _currency_matches_bill, _recourse_reason_holds),
    ),
    OpCode.RECOURSE: TransitionRule(
        frozenset({BillStatus.RECOURSE_REQUESTED}), Role.HOLDER, BillStatus.RECOURSED,
        (_recourse_matches_request,),
    ),
    OpCode.REJECT_TO_PAY_RECOURSE: TransitionRule(
        frozenset({BillStatus.RECOURSE_REQUESTED}), Role.RECOURSEE, BillStatus.RECOURSE_REJECTED
    ),
}


# ════════════════════════════════════════════════════════════════════════════
# VALIDATOR
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TransitionResult:
    state: BillState
    warnings: Tuple[str, ...] = ()


@dataclass
class ChainAudit:
    """Every finding for one chain, for read-only audits."""

    bill_id: str
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    state: Optional[BillState] = None

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "bill_id": self.bill_id,
            "ok": self.ok,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "tip_number": self.state.tip_number if self.state else 0,
        }


class TransitionValidator:
    """Pure validation of blocks against derived bill state."""

    def __init__(
        self,
        deadlines: Optional[Deadlines] = None,
        payment_oracle: Optional[PaymentOracle] = None,
    ):
        self.deadlines = deadlines or Deadlines()
        self.payment_oracle = payment_oracle

    def is_paid(self, bill_id: str) -> bool:
        return bool(self.payment_oracle(bill_id)) if self.payment_oracle else False

    def required_signer(self, state: BillState, block: BillBlock) -> Optional[str]:
        """Identity that must sign `block`, or None when the role is vacant."""
        rule = TRANSITION_TABLE.get(block.op_code)
        if rule is None:
            return None
        role = rule.signer_role
        if role is Role.DRAWER:
            return state.drawer
        if role is Role.DRAWEE:
            return state.drawee
        if role is Role.HOLDER:
            return state.holder
        pending = state.pending
        if role is Role.BUYER and pending is not None and pending.op_code is OpCode.OFFER_TO_SELL:
            return pending.payload.buyer
        if role is Role.RECOURSEE and pending is not None and pending.op_code is OpCode.REQUEST_RECOURSE:
            return pending.payload.recoursee
        return None

    def validate(
        self,
        previous: Optional[BillState],
        block: BillBlock,
        bill_id: Optional[str] = None,
        paid: bool = False,
    ) -> TransitionResult:
        """Validate `block` as the successor of `previous` (None before issuance).

        `paid` applies the PAID overlay; callers pass `is_paid()` only for a
        block they are about to sign themselves.

        Raises a `TransitionError` subclass on the first failed check.
        """
        if previous is None:
            return self._validate_issue(block, bill_id)

        # 1. structural
        if block.op_code is OpCode.ISSUE:
            raise IllegalTransitionError(
                "issue is only valid as the first block",
                op_code=block.op_code.value,
                status=previous.status.value,
            )
        if block.bill_id != previous.bill_id:
            raise IntegrityError(f"block belongs to bill {block.bill_id}", check="bill_id")
        if block.block_number != previous.tip_number + 1:
            raise IntegrityError(
                f"expected block number {previous.tip_number + 1}, got {block.block_number}",
                check="linkage",
            )
        if block.previous_hash != previous.tip_hash:
            raise IntegrityError("previous_hash does not match chain tip", check="linkage")

        # 2. cryptographic
        self._check_integrity(block)
        rule = TRANSITION_TABLE[block.op_code]
        required = self.required_signer(previous, block)
        if required is not None and block.signer_public_key != required:
            raise UnauthorizedActorError(
                f"{block.op_code.value} must be signed by the {rule.signer_role.value}",
                signer=block.signer_public_key,
                expected_role=rule.signer_role.value,
            )
        if required is not None and block.operation.actor != block.signer_public_key:
            raise UnauthorizedActorError(
                "payload actor does not match the signer",
                signer=block.signer_public_key,
                expected_role=rule.signer_role.value,
            )

        # 3. business
        effective = previous.effective_status(block.timestamp, self.deadlines, paid=paid)
        if effective not in rule.allowed_from or required is None:
            raise IllegalTransitionError(
                f"{block.op_code.value} is not allowed from {effective.value}",
                op_code=block.op_code.value,
                status=effective.value,
            )
        block.operation.validate()
        ctx = GuardContext(state=previous, block=block, deadlines=self.deadlines, paid=paid)
        for guard in rule.guards:
            guard(ctx)

        # 4. temporal
        warnings: Tuple[str, ...] = ()
        if block.timestamp < previous.tip_timestamp:
            message = (
                f"block {block.block_number} timestamp {block.timestamp} precedes "
                f"previous block timestamp {previous.tip_timestamp}"
            )
            warnings = (message,)
            logger.warning(
                message,
                operation="validate",
                bill_id=block.bill_id,
                block_number=block.block_number,
            )

        return TransitionResult(state=previous.apply(block), warnings=warnings)

    def _validate_issue(self, block: BillBlock, bill_id: Optional[str]) -> TransitionResult:
        if block.op_code is not OpCode.ISSUE:
            raise IllegalTransitionError(
                "the first block must be an issue",
                op_code=block.op_code.value,
                status="none",
            )
        if block.block_number != 1 or block.previous_hash != GENESIS_PREVIOUS_HASH:
            raise IntegrityError("issue block must be block 1 on the genesis marker", check="linkage")
        payload = block.operation.payload
        if bill_id is not None and block.bill_id != bill_id:
            raise IntegrityError(f"block belongs to bill {block.bill_id}", check="bill_id")
        self._check_integrity(block)
        if block.signer_public_key != payload.drawer:
            raise UnauthorizedActorError(
                "issue must be signed by the drawer",
                signer=block.signer_public_key,
                expected_role=Role.DRAWER.value,
            )
        block.operation.validate()
        if block.bill_id != bill_id_for_issue(payload, block.timestamp):
            raise IntegrityError("bill_id is not derived from the issue block", check="bill_id")
        return TransitionResult(state=BillState.from_issue(block))

    @staticmethod
    def _check_integrity(block: BillBlock) -> None:
        check = block.verify_integrity()
        if check is IntegrityCheck.HASH_MISMATCH:
            raise IntegrityError(f"block {block.block_number} hash mismatch", check="hash")
        if check is IntegrityCheck.BAD_SIGNATURE:
            raise IntegrityError(f"block {block.block_number} signature invalid", check="signature")

    def validate_chain(self, chain: BillChain) -> BillState:
        """Validate a whole chain from block 1. Raises on the first failure."""
        if not chain.blocks:
            raise IntegrityError("chain is empty", check="linkage")
        state: Optional[BillState] = None
        for block in chain.blocks:
            state = self.validate(state, block, bill_id=chain.bill_id).state
        return state

    def audit_chain(self, chain: BillChain) -> ChainAudit:
        """Accumulate every finding instead of stopping at the first one."""
        audit = ChainAudit(bill_id=chain.bill_id)
        audit.errors.extend(chain.audit_linkage())
        state: Optional[BillState] = None
        for block in chain.blocks:
            try:
                result = self.validate(state, block, bill_id=chain.bill_id)
            except TransitionError as ex:
                audit.errors.append(f"block[{block.block_number}]: {ex.error_code}: {ex.message}")
                break
            state = result.state
            audit.warnings.extend(result.warnings)
        audit.state = state
        return audit
