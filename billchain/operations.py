"""Bill operations: the closed set of lifecycle events a block can carry.

Each op code has exactly one payload dataclass. Payloads are plain values:
identities are did:key strings, amounts are integers in the smallest unit of
`currency`, dates are ISO `YYYY-MM-DD` strings.

`Operation.from_dict` rejects unknown op codes, unknown fields and missing
fields with `MalformedPayloadError`; `Operation.validate()` applies the
schema constraints that do not depend on bill state.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields
from datetime import date
from enum import Enum
from typing import Any, ClassVar, Dict, Tuple, Type

from billchain.core import canonical_json_bytes
from billchain.crypto import is_well_formed_identity
from billchain.errors import MalformedPayloadError


class OpCode(str, Enum):
    ISSUE = "issue"
    ACCEPT = "accept"
    REQUEST_TO_ACCEPT = "request_to_accept"
    REJECT_TO_ACCEPT = "reject_to_accept"
    REQUEST_TO_PAY = "request_to_pay"
    REJECT_TO_PAY = "reject_to_pay"
    ENDORSE = "endorse"
    MINT = "mint"
    OFFER_TO_SELL = "offer_to_sell"
    SELL = "sell"
    REJECT_TO_BUY = "reject_to_buy"
    REQUEST_RECOURSE = "request_recourse"
    RECOURSE = "recourse"
    REJECT_TO_PAY_RECOURSE = "reject_to_pay_recourse"


class RecourseReason(str, Enum):
    ACCEPT = "accept"
    PAY = "pay"


_CURRENCY_RE = re.compile(r"^[A-Za-z]{3,8}$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _is_iso_date(value: Any) -> bool:
    if not isinstance(value, str) or not _DATE_RE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class Payload:
    """Base payload. Subclasses declare which fields carry which constraint."""

    ACTOR_FIELD: ClassVar[str] = ""
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ()
    AMOUNT_FIELDS: ClassVar[Tuple[str, ...]] = ()
    CURRENCY_FIELDS: ClassVar[Tuple[str, ...]] = ()
    DATE_FIELDS: ClassVar[Tuple[str, ...]] = ()
    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = ()

    @property
    def actor(self) -> str:
        return getattr(self, self.ACTOR_FIELD) if self.ACTOR_FIELD else ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "Payload":
        if not isinstance(data, dict):
            raise MalformedPayloadError("payload must be an object", field="payload")
        names = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - names)
        if unknown:
            raise MalformedPayloadError(f"unknown payload field(s): {', '.join(unknown)}", field=unknown[0])
        missing = sorted(names - set(data))
        if missing:
            raise MalformedPayloadError(f"missing payload field(s): {', '.join(missing)}", field=missing[0])
        return cls(**data)

    def validate(self) -> None:
        # every non-amount field is a string; JSON lists and objects never are
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name not in self.AMOUNT_FIELDS and not isinstance(value, str):
                raise MalformedPayloadError(f"{f.name} must be a string", field=f.name, value=value)
        for name in self.IDENTITY_FIELDS:
            if not is_well_formed_identity(getattr(self, name)):
                raise MalformedPayloadError(f"{name} is not a well-formed identity", field=name)
        for name in self.AMOUNT_FIELDS:
            value = getattr(self, name)
            # bool is an int subclass; reject it explicitly
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise MalformedPayloadError(f"{name} must be a positive integer", field=name, value=value)
        for name in self.CURRENCY_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str) or not _CURRENCY_RE.match(value):
                raise MalformedPayloadError(f"{name} must be a currency code", field=name, value=value)
        for name in self.DATE_FIELDS:
            value = getattr(self, name)
            if not _is_iso_date(value):
                raise MalformedPayloadError(f"{name} must be a YYYY-MM-DD calendar date", field=name, value=value)
        for name in self.TEXT_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise MalformedPayloadError(f"{name} must be a non-empty string", field=name)


@dataclass(frozen=True)
class IssuePayload(Payload):
    drawer: str
    drawee: str
    payee: str
    sum: int
    currency: str
    maturity_date: str
    issue_date: str
    country_of_issuing: str
    city_of_issuing: str
    country_of_payment: str
    city_of_payment: str
    language: str
    nonce: str

    ACTOR_FIELD: ClassVar[str] = "drawer"
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("drawer", "drawee", "payee")
    AMOUNT_FIELDS: ClassVar[Tuple[str, ...]] = ("sum",)
    CURRENCY_FIELDS: ClassVar[Tuple[str, ...]] = ("currency",)
    DATE_FIELDS: ClassVar[Tuple[str, ...]] = ("maturity_date", "issue_date")
    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = (
        "country_of_issuing",
        "city_of_issuing",
        "country_of_payment",
        "city_of_payment",
        "language",
        "nonce",
    )

    def validate(self) -> None:
        super().validate()
        if self.drawee == self.payee:
            raise MalformedPayloadError("drawee cannot be the payee", field="payee")
        if self.maturity_date < self.issue_date:
            raise MalformedPayloadError("maturity date precedes issue date", field="maturity_date")


@dataclass(frozen=True)
class AcceptPayload(Payload):
    accepter: str

    ACTOR_FIELD: ClassVar[str] = "accepter"
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("accepter",)


@dataclass(frozen=True)
class RequestToAcceptPayload(Payload):
    requester: str

    ACTOR_FIELD: ClassVar[str] = "requester"
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("requester",)


@dataclass(frozen=True)
class RequestToPayPayload(Payload):
    requester: str
    currency: str

    ACTOR_FIELD: ClassVar[str] = "requester"
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("requester",)
    CURRENCY_FIELDS: ClassVar[Tuple[str, ...]] = ("currency",)


@dataclass(frozen=True)
class RejectPayload(Payload):
    """Shared by every reject op: the rejecting party and nothing else."""

    rejecter: str

    ACTOR_FIELD: ClassVar[str] = "rejecter"
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("rejecter",)


@dataclass(frozen=True)
class EndorsePayload(Payload):
    endorser: str
    endorsee: str

    ACTOR_FIELD: ClassVar[str] = "endorser"
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("endorser", "endorsee")


@dataclass(frozen=True)
class MintPayload(Payload):
    endorser: str
    mint: str
    sum: int
    currency: str

    ACTOR_FIELD: ClassVar[str] = "endorser"
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("endorser", "mint")
    AMOUNT_FIELDS: ClassVar[Tuple[str, ...]] = ("sum",)
    CURRENCY_FIELDS: ClassVar[Tuple[str, ...]] = ("currency",)


@dataclass(frozen=True)
class SalePayload(Payload):
    """Offer-to-sell and sell carry the same terms; sell must repeat the offer."""

    seller: str
    buyer: str
    sum: int
    currency: str
    payment_address: str

    ACTOR_FIELD: ClassVar[str] = "seller"
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("seller", "buyer")
    AMOUNT_FIELDS: ClassVar[Tuple[str, ...]] = ("sum",)
    CURRENCY_FIELDS: ClassVar[Tuple[str, ...]] = ("currency",)
    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = ("payment_address",)


@dataclass(frozen=True)
class RequestRecoursePayload(Payload):
    recourser: str
    recoursee: str
    sum: int
    currency: str
    reason: str

    ACTOR_FIELD: ClassVar[str] = "recourser"
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("recourser", "recoursee")
    AMOUNT_FIELDS: ClassVar[Tuple[str, ...]] = ("sum",)
    CURRENCY_FIELDS: ClassVar[Tuple[str, ...]] = ("currency",)

    def validate(self) -> None:
        super().validate()
        if self.reason not in {r.value for r in RecourseReason}:
            raise MalformedPayloadError("reason must be 'accept' or 'pay'", field="reason", value=self.reason)


@dataclass(frozen=True)
class RecoursePayload(Payload):
    recourser: str
    recoursee: str
    sum: int
    currency: str

    ACTOR_FIELD: ClassVar[str] = "recourser"
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("recourser", "recoursee")
    AMOUNT_FIELDS: ClassVar[Tuple[str, ...]] = ("sum",)
    CURRENCY_FIELDS: ClassVar[Tuple[str, ...]] = ("currency",)


PAYLOAD_TYPES: Dict[OpCode, Type[Payload]] = {
    OpCode.ISSUE: IssuePayload,
    OpCode.ACCEPT: AcceptPayload,
    OpCode.REQUEST_TO_ACCEPT: RequestToAcceptPayload,
    OpCode.REJECT_TO_ACCEPT: RejectPayload,
    OpCode.REQUEST_TO_PAY: RequestToPayPayload,
    OpCode.REJECT_TO_PAY: RejectPayload,
    OpCode.ENDORSE: EndorsePayload,
    OpCode.MINT: MintPayload,
    OpCode.OFFER_TO_SELL: SalePayload,
    OpCode.SELL: SalePayload,
    OpCode.REJECT_TO_BUY: RejectPayload,
    OpCode.REQUEST_RECOURSE: RequestRecoursePayload,
    OpCode.RECOURSE: RecoursePayload,
    OpCode.REJECT_TO_PAY_RECOURSE: RejectPayload,
}


@dataclass(frozen=True)
class Operation:
    op_code: OpCode
    payload: Payload

    def __post_init__(self) -> None:
        expected = PAYLOAD_TYPES[self.op_code]
        if type(self.payload) is not expected:
            raise MalformedPayloadError(
                f"{self.op_code.value} expects {expected.__name__}, got {type(self.payload).__name__}",
                field="payload",
            )

    @property
    def actor(self) -> str:
        return self.payload.actor

    def validate(self) -> None:
        self.payload.validate()

    def to_dict(self) -> Dict[str, Any]:
        return {"op_code": self.op_code.value, "payload": self.payload.to_dict()}

    @classmethod
    def from_dict(cls, data: Any) -> "Operation":
        if not isinstance(data, dict):
            raise MalformedPayloadError("operation must be an object", field="operation")
        try:
            canonical_json_bytes(data)
        except (TypeError, ValueError) as ex:
            raise MalformedPayloadError(f"operation is not canonical JSON: {ex}", field="payload") from ex
        try:
            op_code = OpCode(data.get("op_code"))
        except ValueError:
            raise MalformedPayloadError(f"unknown op_code {data.get('op_code')!r}", field="op_code")
        payload = PAYLOAD_TYPES[op_code].from_dict(data.get("payload"))
        return cls(op_code=op_code, payload=payload)
