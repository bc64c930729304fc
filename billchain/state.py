"""Derived bill state.

`BillState` is never stored. It is folded from block 1 to the tip with
`BillState.from_issue` followed by `apply` per block, and answers the
questions the validator asks: who holds the bill, who is the drawee, is a
request pending and has it expired, who held the bill before.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from billchain.block import BillBlock
from billchain.operations import OpCode

DAY_SECONDS = 24 * 60 * 60


class BillStatus(str, Enum):
    ISSUED = "issued"
    ACCEPT_REQUESTED = "accept_requested"
    ACCEPTED = "accepted"
    ACCEPT_REJECTED = "accept_rejected"
    PAYMENT_REQUESTED = "payment_requested"
    PAYMENT_REJECTED = "payment_rejected"
    OFFERED_TO_SELL = "offered_to_sell"
    SALE_REJECTED = "sale_rejected"
    SOLD = "sold"
    ENDORSED = "endorsed"
    MINTED = "minted"
    RECOURSE_REQUESTED = "recourse_requested"
    RECOURSE_REJECTED = "recourse_rejected"
    RECOURSED = "recoursed"
    EXPIRED = "expired"
    PAID = "paid"


class BillRole(str, Enum):
    """A node's relationship to a bill."""

    PAYEE = "payee"
    PAYER = "payer"
    CONTINGENT = "contingent"


STATUS_AFTER_OP: Dict[OpCode, BillStatus] = {
    OpCode.ISSUE: BillStatus.ISSUED,
    OpCode.ACCEPT: BillStatus.ACCEPTED,
    OpCode.REQUEST_TO_ACCEPT: BillStatus.ACCEPT_REQUESTED,
    OpCode.REJECT_TO_ACCEPT: BillStatus.ACCEPT_REJECTED,
    OpCode.REQUEST_TO_PAY: BillStatus.PAYMENT_REQUESTED,
    OpCode.REJECT_TO_PAY: BillStatus.PAYMENT_REJECTED,
    OpCode.ENDORSE: BillStatus.ENDORSED,
    OpCode.MINT: BillStatus.MINTED,
    OpCode.OFFER_TO_SELL: BillStatus.OFFERED_TO_SELL,
    OpCode.SELL: BillStatus.SOLD,
    OpCode.REJECT_TO_BUY: BillStatus.SALE_REJECTED,
    OpCode.REQUEST_RECOURSE: BillStatus.RECOURSE_REQUESTED,
    OpCode.RECOURSE: BillStatus.RECOURSED,
    OpCode.REJECT_TO_PAY_RECOURSE: BillStatus.RECOURSE_REJECTED,
}

REQUEST_OPS = (
    OpCode.REQUEST_TO_ACCEPT,
    OpCode.REQUEST_TO_PAY,
    OpCode.OFFER_TO_SELL,
    OpCode.REQUEST_RECOURSE,
)


@dataclass(frozen=True)
class Deadlines:
    """How long a request stays answerable, in seconds."""

    accept: int = 2 * DAY_SECONDS
    payment: int = 2 * DAY_SECONDS
    recourse: int = 2 * DAY_SECONDS

    def for_op(self, op_code: OpCode) -> int:
        if op_code is OpCode.REQUEST_TO_ACCEPT:
            return self.accept
        if op_code in (OpCode.REQUEST_TO_PAY, OpCode.OFFER_TO_SELL):
            return self.payment
        if op_code is OpCode.REQUEST_RECOURSE:
            return self.recourse
        raise ValueError(f"{op_code.value} is not a request")


@dataclass(frozen=True)
class RequestRecord:
    """A request block as seen by later blocks."""

    op_code: OpCode
    block_number: int
    timestamp: int
    payload: Any
    rejected: bool = False

    def is_expired(self, at: int, deadlines: Deadlines) -> bool:
        return self.timestamp + deadlines.for_op(self.op_code) < at

    def deadline(self, deadlines: Deadlines) -> int:
        return self.timestamp + deadlines.for_op(self.op_code)


@dataclass(frozen=True)
class Endorsement:
    """One holder change."""

    op_code: OpCode
    block_number: int
    from_holder: str
    to_holder: str
    timestamp: int


@dataclass(frozen=True)
class BillState:
    bill_id: str
    drawer: str
    drawee: str
    payee: str
    holder: str
    sum: int
    currency: str
    maturity_date: str
    issue_date: str
    country_of_issuing: str
    city_of_issuing: str
    country_of_payment: str
    city_of_payment: str
    language: str
    status: BillStatus = BillStatus.ISSUED
    accepted: bool = False
    pending: Optional[RequestRecord] = None
    last_accept_request: Optional[RequestRecord] = None
    last_payment_request: Optional[RequestRecord] = None
    endorsements: Tuple[Endorsement, ...] = ()
    past_holders: Tuple[str, ...] = ()
    participants: Tuple[str, ...] = ()
    tip_number: int = 0
    tip_hash: str = ""
    tip_timestamp: int = 0

    @classmethod
    def from_issue(cls, block: BillBlock) -> "BillState":
        p = block.operation.payload
        return cls(
            bill_id=block.bill_id,
            drawer=p.drawer,
            drawee=p.drawee,
            payee=p.payee,
            holder=p.payee,
            sum=p.sum,
            currency=p.currency,
            maturity_date=p.maturity_date,
            issue_date=p.issue_date,
            country_of_issuing=p.country_of_issuing,
            city_of_issuing=p.city_of_issuing,
            country_of_payment=p.country_of_payment,
            city_of_payment=p.city_of_payment,
            language=p.language,
            participants=_merge((), (p.drawer, p.drawee, p.payee)),
            tip_number=block.block_number,
            tip_hash=block.hash,
            tip_timestamp=block.timestamp,
        )

    def apply(self, block: BillBlock) -> "BillState":
        """Fold one already-validated block into a new state value."""
        op = block.op_code
        p = block.operation.payload
        changes: Dict[str, Any] = {
            "status": STATUS_AFTER_OP[op],
            "tip_number": block.block_number,
            "tip_hash": block.hash,
            "tip_timestamp": block.timestamp,
            "pending": None,
        }

        if op in REQUEST_OPS:
            record = RequestRecord(op, block.block_number, block.timestamp, p)
            changes["pending"] = record
            if op is OpCode.REQUEST_TO_ACCEPT:
                changes["last_accept_request"] = record
            elif op is OpCode.REQUEST_TO_PAY:
                changes["last_payment_request"] = record
        elif op is OpCode.ACCEPT:
            changes["accepted"] = True
        elif op is OpCode.REJECT_TO_ACCEPT and self.last_accept_request is not None:
            changes["last_accept_request"] = replace(self.last_accept_request, rejected=True)
        elif op is OpCode.REJECT_TO_PAY and self.last_payment_request is not None:
            changes["last_payment_request"] = replace(self.last_payment_request, rejected=True)

        new_holder = _new_holder(op, p)
        if new_holder is not None:
            changes["holder"] = new_holder
            changes["past_holders"] = _merge(self.past_holders, (self.holder,))
            changes["endorsements"] = self.endorsements + (
                Endorsement(op, block.block_number, self.holder, new_holder, block.timestamp),
            )

        changes["participants"] = _merge(self.participants, _identities_in(p))
        return replace(self, **changes)

    def effective_status(self, at: int, deadlines: Deadlines, paid: bool = False) -> BillStatus:
        """Last-op status with the expiry and payment overlays applied at time `at`."""
        if paid and self.last_payment_request is not None:
            return BillStatus.PAID
        if self.pending is not None and self.pending.is_expired(at, deadlines):
            return BillStatus.EXPIRED
        return self.status

    def active_request(self, op_code: OpCode, at: int, deadlines: Deadlines) -> Optional[RequestRecord]:
        """The pending request of kind `op_code` if it has not expired at `at`."""
        if self.pending is None or self.pending.op_code is not op_code:
            return None
        if self.pending.is_expired(at, deadlines):
            return None
        return self.pending

    def role_of(self, identity: str) -> Optional[BillRole]:
        if identity == self.drawee:
            return BillRole.PAYER
        if identity == self.holder:
            return BillRole.PAYEE
        if identity in self.participants:
            return BillRole.CONTINGENT
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bill_id": self.bill_id,
            "drawer": self.drawer,
            "drawee": self.drawee,
            "payee": self.payee,
            "holder": self.holder,
            "sum": self.sum,
            "currency": self.currency,
            "maturity_date": self.maturity_date,
            "issue_date": self.issue_date,
            "country_of_issuing": self.country_of_issuing,
            "city_of_issuing": self.city_of_issuing,
            "country_of_payment": self.country_of_payment,
            "city_of_payment": self.city_of_payment,
            "language": self.language,
            "status": self.status.value,
            "accepted": self.accepted,
            "pending": None if self.pending is None else {
                "op_code": self.pending.op_code.value,
                "block_number": self.pending.block_number,
                "timestamp": self.pending.timestamp,
            },
            "endorsements": [
                {
                    "op_code": e.op_code.value,
                    "block_number": e.block_number,
                    "from": e.from_holder,
                    "to": e.to_holder,
                    "timestamp": e.timestamp,
                }
                for e in self.endorsements
            ],
            "past_holders": list(self.past_holders),
            "participants": list(self.participants),
            "tip_number": self.tip_number,
            "tip_hash": self.tip_hash,
            "tip_timestamp": self.tip_timestamp,
        }


def _new_holder(op: OpCode, payload: Any) -> Optional[str]:
    if op is OpCode.ENDORSE:
        return payload.endorsee
    if op is OpCode.MINT:
        return payload.mint
    if op is OpCode.SELL:
        return payload.buyer
    if op is OpCode.RECOURSE:
        return payload.recoursee
    return None


def _identities_in(payload: Any) -> Tuple[str, ...]:
    return tuple(getattr(payload, name) for name in payload.IDENTITY_FIELDS)


def _merge(existing: Tuple[str, ...], new: Iterable[str]) -> Tuple[str, ...]:
    out = list(existing)
    for identity in new:
        if identity not in out:
            out.append(identity)
    return tuple(out)
