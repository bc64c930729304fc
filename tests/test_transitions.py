"""Tests for the transition validator: ordering of checks, roles, table, deadlines."""

from dataclasses import replace

import pytest

from billchain.block import BillBlock
from billchain.chain import BillChain, bill_id_for_issue
from billchain.errors import (
    IllegalTransitionError,
    IntegrityError,
    InvalidOperationError,
    MalformedPayloadError,
    UnauthorizedActorError,
)
from billchain.operations import (
    AcceptPayload,
    EndorsePayload,
    MintPayload,
    OpCode,
    Operation,
    RecoursePayload,
    RejectPayload,
    RequestRecoursePayload,
    RequestToAcceptPayload,
    RequestToPayPayload,
    SalePayload,
)
from billchain.state import BillRole, BillStatus, Deadlines
from billchain.transitions import TransitionValidator

from conftest import DAY, T0, make_issue


def raw(chain: BillChain, op_code: OpCode, payload, signer_id: str, keyring, ts: int) -> BillBlock:
    """Sign a successor block without running the validator."""
    tip = chain.tip
    return BillBlock.create(
        bill_id=chain.bill_id,
        block_number=tip.block_number + 1,
        previous_hash=tip.hash,
        timestamp=ts,
        operation=Operation(op_code, payload),
        signer_identity=signer_id,
        signer=keyring,
    )


def check(validator, chain, block):
    return validator.validate(validator.validate_chain(chain), block, bill_id=chain.bill_id)


@pytest.fixture
def accepted(issued, builder, keyring, ids):
    return builder.extend(issued, Operation(OpCode.ACCEPT, AcceptPayload(ids["B"])), ids["B"], keyring, T0 + 10)


class TestScenario:
    """Issue -> Accept -> Endorse -> RequestToPay."""

    def test_state_after_four_blocks(self, validator, scenario_chain, ids):
        """Holder D, payment requested, four blocks."""
        state = validator.validate_chain(scenario_chain)
        assert len(scenario_chain) == 4
        assert state.holder == ids["D"]
        assert state.status is BillStatus.PAYMENT_REQUESTED
        assert state.accepted
        assert state.past_holders == (ids["C"],)
        assert state.participants == (ids["A"], ids["B"], ids["C"], ids["D"])
        assert [e.to_holder for e in state.endorsements] == [ids["D"]]

    def test_roles(self, validator, scenario_chain, ids):
        state = validator.validate_chain(scenario_chain)
        assert state.role_of(ids["B"]) is BillRole.PAYER
        assert state.role_of(ids["D"]) is BillRole.PAYEE
        assert state.role_of(ids["A"]) is BillRole.CONTINGENT
        assert state.role_of(ids["E"]) is None


class TestIssue:
    def test_issue_signed_by_non_drawer(self, validator, keyring, ids):
        payload = make_issue(ids)
        block = BillBlock.create(
            bill_id=bill_id_for_issue(payload, T0),
            block_number=1,
            previous_hash="genesis",
            timestamp=T0,
            operation=Operation(OpCode.ISSUE, payload),
            signer_identity=ids["C"],
            signer=keyring,
        )
        with pytest.raises(UnauthorizedActorError):
            validator.validate(None, block)

    def test_drawee_cannot_be_payee(self, builder, keyring, ids):
        with pytest.raises(InvalidOperationError) as exc:
            builder.build_issue(make_issue(ids, payee=ids["B"]), keyring, timestamp=T0)
        assert isinstance(exc.value.cause, MalformedPayloadError)

    @pytest.mark.parametrize("maturity", ["2024-99-99", "2024-02-30", "20240630"])
    def test_impossible_maturity_date(self, builder, keyring, ids, maturity):
        with pytest.raises(InvalidOperationError) as exc:
            builder.build_issue(make_issue(ids, maturity_date=maturity), keyring, timestamp=T0)
        assert exc.value.cause.field == "maturity_date"

    def test_non_string_field(self, builder, keyring, ids):
        with pytest.raises(InvalidOperationError) as exc:
            builder.build_issue(make_issue(ids, city_of_issuing={"name": "Vienna"}), keyring, timestamp=T0)
        assert exc.value.cause.field == "city_of_issuing"

    def test_bill_id_must_derive_from_issue(self, validator, keyring, ids):
        block = BillBlock.create(
            bill_id="f" * 64,
            block_number=1,
            previous_hash="genesis",
            timestamp=T0,
            operation=Operation(OpCode.ISSUE, make_issue(ids)),
            signer_identity=ids["A"],
            signer=keyring,
        )
        with pytest.raises(IntegrityError) as exc:
            validator.validate(None, block)
        assert exc.value.check == "bill_id"

    def test_first_block_must_be_issue(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.ACCEPT, AcceptPayload(ids["B"]), ids["B"], keyring, T0 + 1)
        block = replace(block, block_number=1, previous_hash="genesis")
        with pytest.raises(IllegalTransitionError):
            validator.validate(None, block)

    def test_second_issue_is_illegal(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.ISSUE, make_issue(ids), ids["A"], keyring, T0 + 1)
        with pytest.raises(IllegalTransitionError):
            check(validator, issued, block)


class TestCheckOrder:
    """Structural, then cryptographic, then business."""

    def test_wrong_block_number(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.ACCEPT, AcceptPayload(ids["B"]), ids["B"], keyring, T0 + 1)
        block = replace(block, block_number=5)
        with pytest.raises(IntegrityError) as exc:
            check(validator, issued, block)
        assert exc.value.check == "linkage"

    def test_wrong_previous_hash(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.ACCEPT, AcceptPayload(ids["B"]), ids["B"], keyring, T0 + 1)
        block = replace(block, previous_hash="0" * 64)
        with pytest.raises(IntegrityError):
            check(validator, issued, block)

    def test_bad_signature(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.ACCEPT, AcceptPayload(ids["B"]), ids["B"], keyring, T0 + 1)
        forged = replace(block, signature=keyring.sign(ids["B"], b"something else"))
        forged = replace(forged, hash=forged.compute_hash())
        with pytest.raises(IntegrityError) as exc:
            check(validator, issued, forged)
        assert exc.value.check == "signature"

    def test_hash_mismatch(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.ACCEPT, AcceptPayload(ids["B"]), ids["B"], keyring, T0 + 1)
        with pytest.raises(IntegrityError) as exc:
            check(validator, issued, replace(block, hash="a" * 64))
        assert exc.value.check == "hash"

    def test_unauthorized_before_illegal(self, validator, accepted, keyring, ids):
        """A second accept by a non-drawee fails authorization, not legality."""
        block = raw(accepted, OpCode.ACCEPT, AcceptPayload(ids["C"]), ids["C"], keyring, T0 + 20)
        with pytest.raises(UnauthorizedActorError):
            check(validator, accepted, block)


class TestAuthorization:
    def test_non_holder_cannot_endorse(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.ENDORSE, EndorsePayload(ids["D"], ids["E"]), ids["D"], keyring, T0 + 1)
        with pytest.raises(UnauthorizedActorError) as exc:
            check(validator, issued, block)
        assert exc.value.expected_role == "holder"

    def test_non_drawee_cannot_accept(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.ACCEPT, AcceptPayload(ids["C"]), ids["C"], keyring, T0 + 1)
        with pytest.raises(UnauthorizedActorError):
            check(validator, issued, block)

    def test_payload_actor_must_match_signer(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.ENDORSE, EndorsePayload(ids["A"], ids["D"]), ids["C"], keyring, T0 + 1)
        with pytest.raises(UnauthorizedActorError):
            check(validator, issued, block)


class TestAcceptance:
    def test_double_accept_is_illegal(self, validator, accepted, keyring, ids):
        block = raw(accepted, OpCode.ACCEPT, AcceptPayload(ids["B"]), ids["B"], keyring, T0 + 20)
        with pytest.raises(IllegalTransitionError):
            check(validator, accepted, block)

    def test_request_to_accept_then_reject(self, validator, builder, issued, keyring, ids):
        chain = builder.extend(
            issued, Operation(OpCode.REQUEST_TO_ACCEPT, RequestToAcceptPayload(ids["C"])), ids["C"], keyring, T0 + 5
        )
        chain = builder.extend(
            chain, Operation(OpCode.REJECT_TO_ACCEPT, RejectPayload(ids["B"])), ids["B"], keyring, T0 + 6
        )
        state = validator.validate_chain(chain)
        assert state.status is BillStatus.ACCEPT_REJECTED
        assert state.last_accept_request.rejected
        again = raw(chain, OpCode.REJECT_TO_ACCEPT, RejectPayload(ids["B"]), ids["B"], keyring, T0 + 7)
        with pytest.raises(IllegalTransitionError):
            check(validator, chain, again)
        accept = raw(chain, OpCode.ACCEPT, AcceptPayload(ids["B"]), ids["B"], keyring, T0 + 7)
        assert check(validator, chain, accept).state.status is BillStatus.ACCEPTED

    def test_request_to_accept_after_accept_is_illegal(self, validator, accepted, keyring, ids):
        block = raw(accepted, OpCode.REQUEST_TO_ACCEPT, RequestToAcceptPayload(ids["C"]), ids["C"], keyring, T0 + 20)
        with pytest.raises(IllegalTransitionError):
            check(validator, accepted, block)


class TestPayment:
    def test_request_to_pay_requires_acceptance(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.REQUEST_TO_PAY, RequestToPayPayload(ids["C"], "sat"), ids["C"], keyring, T0 + 1)
        with pytest.raises(IllegalTransitionError):
            check(validator, issued, block)

    def test_request_to_pay_currency_must_match(self, validator, accepted, keyring, ids):
        block = raw(accepted, OpCode.REQUEST_TO_PAY, RequestToPayPayload(ids["C"], "EUR"), ids["C"], keyring, T0 + 20)
        with pytest.raises(MalformedPayloadError) as exc:
            check(validator, accepted, block)
        assert exc.value.field == "currency"

    def test_reject_to_pay_within_deadline(self, validator, scenario_chain, keyring, ids):
        block = raw(scenario_chain, OpCode.REJECT_TO_PAY, RejectPayload(ids["B"]), ids["B"], keyring, T0 + 40)
        result = check(validator, scenario_chain, block)
        assert result.state.status is BillStatus.PAYMENT_REJECTED

    def test_reject_to_pay_after_expiry_is_illegal(self, validator, scenario_chain, keyring, ids):
        late = T0 + 30 + 2 * DAY + 1
        block = raw(scenario_chain, OpCode.REJECT_TO_PAY, RejectPayload(ids["B"]), ids["B"], keyring, late)
        with pytest.raises(IllegalTransitionError) as exc:
            check(validator, scenario_chain, block)
        assert exc.value.status == "expired"

    def test_endorse_blocked_while_payment_pending(self, validator, scenario_chain, keyring, ids):
        block = raw(scenario_chain, OpCode.ENDORSE, EndorsePayload(ids["D"], ids["E"]), ids["D"], keyring, T0 + 40)
        with pytest.raises(IllegalTransitionError):
            check(validator, scenario_chain, block)

    def test_endorse_allowed_after_request_expired(self, validator, scenario_chain, keyring, ids):
        late = T0 + 30 + 2 * DAY + 1
        block = raw(scenario_chain, OpCode.ENDORSE, EndorsePayload(ids["D"], ids["E"]), ids["D"], keyring, late)
        assert check(validator, scenario_chain, block).state.holder == ids["E"]

    def test_custom_deadline(self, scenario_chain, keyring, ids):
        validator = TransitionValidator(deadlines=Deadlines(payment=5))
        block = raw(scenario_chain, OpCode.REJECT_TO_PAY, RejectPayload(ids["B"]), ids["B"], keyring, T0 + 40)
        with pytest.raises(IllegalTransitionError):
            check(validator, scenario_chain, block)

    def test_paid_bill_is_terminal_for_new_blocks(self, scenario_chain, keyring, ids):
        validator = TransitionValidator(payment_oracle=lambda bill_id: True)
        state = validator.validate_chain(scenario_chain)
        assert state.effective_status(T0 + 40, validator.deadlines, paid=True) is BillStatus.PAID
        block = raw(scenario_chain, OpCode.REJECT_TO_PAY, RejectPayload(ids["B"]), ids["B"], keyring, T0 + 40)
        with pytest.raises(IllegalTransitionError) as exc:
            validator.validate(state, block, bill_id=scenario_chain.bill_id, paid=validator.is_paid(state.bill_id))
        assert exc.value.status == "paid"

    def test_replay_ignores_payment_oracle(self, builder, scenario_chain, keyring, ids):
        chain = builder.extend(
            scenario_chain, Operation(OpCode.REJECT_TO_PAY, RejectPayload(ids["B"])), ids["B"], keyring, T0 + 40
        )
        paid = TransitionValidator(payment_oracle=lambda bill_id: True)
        unpaid = TransitionValidator(payment_oracle=lambda bill_id: False)
        assert paid.validate_chain(chain) == unpaid.validate_chain(chain)
        assert paid.validate_chain(chain).status is BillStatus.PAYMENT_REJECTED
        assert paid.audit_chain(chain).ok


class TestHolderChanges:
    def test_endorse_to_current_holder_is_illegal(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.ENDORSE, EndorsePayload(ids["C"], ids["C"]), ids["C"], keyring, T0 + 1)
        with pytest.raises(IllegalTransitionError):
            check(validator, issued, block)

    def test_mint_requires_acceptance(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.MINT, MintPayload(ids["C"], ids["E"], 150_000, "sat"), ids["C"], keyring, T0 + 1)
        with pytest.raises(IllegalTransitionError):
            check(validator, issued, block)

    def test_mint_moves_holder(self, validator, accepted, keyring, ids):
        block = raw(accepted, OpCode.MINT, MintPayload(ids["C"], ids["E"], 150_000, "sat"), ids["C"], keyring, T0 + 20)
        state = check(validator, accepted, block).state
        assert state.holder == ids["E"]
        assert state.status is BillStatus.MINTED


class TestSale:
    def offer(self, builder, chain, keyring, ids, ts=T0 + 20):
        terms = SalePayload(ids["C"], ids["D"], 140_000, "sat", "bc1qpaymentaddress")
        return builder.extend(chain, Operation(OpCode.OFFER_TO_SELL, terms), ids["C"], keyring, ts), terms

    def test_sell_matching_offer(self, validator, builder, accepted, keyring, ids):
        chain, terms = self.offer(builder, accepted, keyring, ids)
        block = raw(chain, OpCode.SELL, terms, ids["C"], keyring, T0 + 30)
        state = check(validator, chain, block).state
        assert state.holder == ids["D"]
        assert state.status is BillStatus.SOLD

    def test_sell_must_match_offer(self, validator, builder, accepted, keyring, ids):
        chain, terms = self.offer(builder, accepted, keyring, ids)
        block = raw(chain, OpCode.SELL, replace(terms, sum=1), ids["C"], keyring, T0 + 30)
        with pytest.raises(IllegalTransitionError):
            check(validator, chain, block)

    def test_sell_without_offer_is_illegal(self, validator, accepted, keyring, ids):
        terms = SalePayload(ids["C"], ids["D"], 140_000, "sat", "bc1qpaymentaddress")
        block = raw(accepted, OpCode.SELL, terms, ids["C"], keyring, T0 + 30)
        with pytest.raises(IllegalTransitionError):
            check(validator, accepted, block)

    def test_only_buyer_rejects_to_buy(self, validator, builder, accepted, keyring, ids):
        chain, _ = self.offer(builder, accepted, keyring, ids)
        ok = raw(chain, OpCode.REJECT_TO_BUY, RejectPayload(ids["D"]), ids["D"], keyring, T0 + 30)
        assert check(validator, chain, ok).state.status is BillStatus.SALE_REJECTED
        bad = raw(chain, OpCode.REJECT_TO_BUY, RejectPayload(ids["E"]), ids["E"], keyring, T0 + 30)
        with pytest.raises(UnauthorizedActorError):
            check(validator, chain, bad)


class TestRecourse:
    @pytest.fixture
    def rejected(self, builder, scenario_chain, keyring, ids):
        return builder.extend(
            scenario_chain, Operation(OpCode.REJECT_TO_PAY, RejectPayload(ids["B"])), ids["B"], keyring, T0 + 40
        )

    def request(self, ids, recoursee="C", reason="pay"):
        return RequestRecoursePayload(ids["D"], ids[recoursee], 150_000, "sat", reason)

    def test_full_recourse(self, validator, builder, rejected, keyring, ids):
        chain = builder.extend(rejected, Operation(OpCode.REQUEST_RECOURSE, self.request(ids)), ids["D"], keyring, T0 + 50)
        block = raw(chain, OpCode.RECOURSE, RecoursePayload(ids["D"], ids["C"], 150_000, "sat"), ids["D"], keyring, T0 + 60)
        state = check(validator, chain, block).state
        assert state.holder == ids["C"]
        assert state.status is BillStatus.RECOURSED

    def test_recoursee_may_reject(self, validator, builder, rejected, keyring, ids):
        chain = builder.extend(rejected, Operation(OpCode.REQUEST_RECOURSE, self.request(ids)), ids["D"], keyring, T0 + 50)
        block = raw(chain, OpCode.REJECT_TO_PAY_RECOURSE, RejectPayload(ids["C"]), ids["C"], keyring, T0 + 60)
        assert check(validator, chain, block).state.status is BillStatus.RECOURSE_REJECTED

    def test_recourse_must_match_request(self, validator, builder, rejected, keyring, ids):
        chain = builder.extend(rejected, Operation(OpCode.REQUEST_RECOURSE, self.request(ids)), ids["D"], keyring, T0 + 50)
        block = raw(chain, OpCode.RECOURSE, RecoursePayload(ids["D"], ids["C"], 1, "sat"), ids["D"], keyring, T0 + 60)
        with pytest.raises(IllegalTransitionError):
            check(validator, chain, block)

    def test_recoursee_must_be_past_holder(self, validator, rejected, keyring, ids):
        block = raw(rejected, OpCode.REQUEST_RECOURSE, self.request(ids, recoursee="E"), ids["D"], keyring, T0 + 50)
        with pytest.raises(IllegalTransitionError):
            check(validator, rejected, block)

    def test_pay_reason_needs_rejected_or_expired_request(self, validator, builder, accepted, keyring, ids):
        chain = builder.extend(
            accepted, Operation(OpCode.ENDORSE, EndorsePayload(ids["C"], ids["D"])), ids["C"], keyring, T0 + 20
        )
        block = raw(chain, OpCode.REQUEST_RECOURSE, self.request(ids), ids["D"], keyring, T0 + 30)
        with pytest.raises(IllegalTransitionError):
            check(validator, chain, block)

    @pytest.mark.parametrize("reason", [["pay"], {"why": "pay"}, "later"])
    def test_reason_must_be_a_known_string(self, validator, rejected, keyring, ids, reason):
        block = raw(rejected, OpCode.REQUEST_RECOURSE, self.request(ids, reason=reason), ids["D"], keyring, T0 + 50)
        with pytest.raises(MalformedPayloadError) as exc:
            check(validator, rejected, block)
        assert exc.value.field == "reason"

    def test_pay_reason_after_expired_request(self, validator, scenario_chain, keyring, ids):
        late = T0 + 30 + 2 * DAY + 1
        block = raw(scenario_chain, OpCode.REQUEST_RECOURSE, self.request(ids), ids["D"], keyring, late)
        assert check(validator, scenario_chain, block).state.status is BillStatus.RECOURSE_REQUESTED

    def test_accept_reason_needs_rejected_request(self, validator, builder, issued, keyring, ids):
        chain = builder.extend(
            issued, Operation(OpCode.ENDORSE, EndorsePayload(ids["C"], ids["D"])), ids["C"], keyring, T0 + 5
        )
        early = raw(chain, OpCode.REQUEST_RECOURSE, self.request(ids, reason="accept"), ids["D"], keyring, T0 + 6)
        with pytest.raises(IllegalTransitionError):
            check(validator, chain, early)
        chain = builder.extend(
            chain, Operation(OpCode.REQUEST_TO_ACCEPT, RequestToAcceptPayload(ids["D"])), ids["D"], keyring, T0 + 7
        )
        chain = builder.extend(
            chain, Operation(OpCode.REJECT_TO_ACCEPT, RejectPayload(ids["B"])), ids["B"], keyring, T0 + 8
        )
        ok = raw(chain, OpCode.REQUEST_RECOURSE, self.request(ids, reason="accept"), ids["D"], keyring, T0 + 9)
        assert check(validator, chain, ok).state.pending.op_code is OpCode.REQUEST_RECOURSE


class TestTemporalAndAudit:
    def test_backdated_block_only_warns(self, validator, issued, keyring, ids):
        block = raw(issued, OpCode.ACCEPT, AcceptPayload(ids["B"]), ids["B"], keyring, T0 - 100)
        result = check(validator, issued, block)
        assert result.state.accepted
        assert len(result.warnings) == 1

    def test_audit_chain_clean(self, validator, scenario_chain):
        audit = validator.audit_chain(scenario_chain)
        assert audit.ok
        assert audit.state.tip_number == 4

    def test_audit_chain_collects_findings(self, validator, scenario_chain):
        blocks = list(scenario_chain.blocks)
        blocks[2] = replace(blocks[2], timestamp=blocks[2].timestamp + 1)
        audit = validator.audit_chain(BillChain(scenario_chain.bill_id, tuple(blocks)))
        assert not audit.ok
        assert any("hash_mismatch" in e for e in audit.errors)
        assert any("INTEGRITY_ERROR" in e for e in audit.errors)
        assert audit.state.tip_number == 2
