"""
billchain Sync Coordinator

Drives the local node: builds and commits blocks for local actions, and
applies blocks or chains received from peers.

    local action                          inbound payload
    ────────────                          ───────────────
    execute()                             on_receive() ─► bounded queue
      │  bill lock                                          │
      ├─ load chain                       process_inbound() / worker thread
      ├─ build + validate                   │  bill lock
      ├─ save (retry on StorageError)       ├─ load chain
      └─ emit BlockAppended                 ├─ reconcile
    publish to participants                 ├─ save / request full chain
      (fire-and-forget)                     └─ emit events

Mutual exclusion is per bill: two different bills never wait on each other.
A chain is always committed before it is propagated, so a crash between the
two at worst leaves peers behind; `resync` re-publishes full chains.
"""

from __future__ import annotations

import queue
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from billchain.block import BillBlock
from billchain.builder import ChainBuilder, SigningHandle
from billchain.chain import BillChain
from billchain.config import BillChainConfig, get_config
from billchain.core import now_unix
from billchain.errors import (
    BillChainError,
    DivergenceUnresolvedError,
    InvalidOperationError,
    MalformedPayloadError,
    StorageError,
)
from billchain.events import (
    BillIssued,
    BlockAppended,
    ChainReplaced,
    DivergenceAlarm,
    Event,
    EventBus,
    FullChainRequested,
    InboundRejected,
    RequestTimedOut,
)
from billchain.observability import Layer, correlation_id_var, correlation_scope, get_logger
from billchain.operations import IssuePayload, OpCode, Operation
from billchain.persistence import ChainStore
from billchain.reconciler import ForkChoicePolicy, OutcomeKind, ReconcileOutcome, Reconciler
from billchain.resilience import RetryExhaustedError, RetryPolicy
from billchain.state import BillState, BillStatus
from billchain.transitions import TransitionValidator

logger = get_logger("coordinator", Layer.SYNC)

Payload = Union[BillBlock, BillChain]


class Transport(ABC):
    """Peer-to-peer relay. Implementations serialize payloads with `to_dict()`."""

    @abstractmethod
    def publish(self, bill_id: str, participants: Sequence[str], payload: Payload) -> None:
        """Deliver `payload` to every identity in `participants`."""

    @abstractmethod
    def request_chain(self, bill_id: str, peer: str) -> None:
        """Ask `peer` to send its full chain for `bill_id`."""


class BillLocks:
    """One re-entrant lock per bill id."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, bill_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(bill_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[bill_id] = lock
            return lock

    @contextmanager
    def hold(self, bill_id: str) -> Iterator[None]:
        lock = self.lock_for(bill_id)
        with lock:
            yield


@dataclass(frozen=True)
class InboundItem:
    bill_id: str
    sender: str
    payload: Any


def parse_payload(payload: Any) -> Payload:
    """Accept a block, a chain, or their dict wire forms."""
    if isinstance(payload, (BillBlock, BillChain)):
        return payload
    if isinstance(payload, dict):
        if "blocks" in payload:
            return BillChain.from_dict(payload)
        return BillBlock.from_dict(payload)
    raise MalformedPayloadError(f"unsupported payload type {type(payload).__name__}", field="payload")


def _tip_hash(payload: Optional[Payload]) -> str:
    if isinstance(payload, BillChain):
        return payload.tip.hash if payload.tip else ""
    if isinstance(payload, BillBlock):
        return payload.hash
    return ""


class SyncCoordinator:
    def __init__(
        self,
        store: ChainStore,
        transport: Transport,
        *,
        node_identity: str = "",
        validator: Optional[TransitionValidator] = None,
        reconciler: Optional[Reconciler] = None,
        builder: Optional[ChainBuilder] = None,
        event_bus: Optional[EventBus] = None,
        retry_policy: Optional[RetryPolicy] = None,
        inbound_queue_size: int = 1024,
    ):
        self.store = store
        self.transport = transport
        self.node_identity = node_identity
        self.validator = validator or TransitionValidator()
        self.reconciler = reconciler or Reconciler(self.validator)
        self.builder = builder or ChainBuilder(self.validator)
        self.event_bus = event_bus or EventBus()
        self.retry_policy = retry_policy or RetryPolicy(retryable_exceptions=(StorageError,))
        self.locks = BillLocks()
        self._inbound: "queue.Queue[InboundItem]" = queue.Queue(maxsize=inbound_queue_size)
        self._worker: Optional[threading.Thread] = None
        self._running = threading.Event()
        # bill id -> (block number, op code) of the request already reported
        self._timeouts_sent: Dict[str, Tuple[int, str]] = {}
        self._timeouts_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        store: ChainStore,
        transport: Transport,
        config: Optional[BillChainConfig] = None,
        **kwargs: Any,
    ) -> "SyncCoordinator":
        config = config or get_config()
        payment_oracle = kwargs.pop("payment_oracle", None)
        validator = kwargs.pop("validator", None) or TransitionValidator(
            deadlines=config.build_deadlines(),
            payment_oracle=payment_oracle,
        )
        policy = ForkChoicePolicy(config.reconciler.tie_break_order.get())
        retry = RetryPolicy(
            max_attempts=config.sync.storage_retry_attempts.get(),
            base_delay_seconds=config.sync.storage_retry_base_delay.get(),
            max_delay_seconds=config.sync.storage_retry_max_delay.get(),
            retryable_exceptions=(StorageError,),
        )
        return cls(
            store,
            transport,
            validator=validator,
            reconciler=Reconciler(validator, policy),
            builder=ChainBuilder(validator),
            retry_policy=retry,
            inbound_queue_size=config.sync.inbound_queue_size.get(),
            **kwargs,
        )

    # ════════════════════════════════════════════════════════════════════
    # LOCAL ACTIONS
    # ════════════════════════════════════════════════════════════════════

    def issue(
        self,
        payload: IssuePayload,
        signer: SigningHandle,
        timestamp: Optional[int] = None,
    ) -> BillChain:
        """Create a new bill, commit its issue block, and publish it."""
        with correlation_scope():
            return self._issue(payload, signer, timestamp)

    def _issue(self, payload: IssuePayload, signer: SigningHandle, timestamp: Optional[int]) -> BillChain:
        chain = self.builder.build_issue(payload, signer, timestamp)
        block = chain.tip
        with self.locks.hold(chain.bill_id):
            if self.store.load_chain(chain.bill_id) is not None:
                raise InvalidOperationError(f"bill {chain.bill_id} already exists")
            self._save(chain.bill_id, chain)
        logger.info(
            "issued bill",
            operation="issue",
            bill_id=chain.bill_id,
            block_number=1,
            op_code=block.op_code.value,
        )
        self._emit(BillIssued(bill_id=chain.bill_id, drawer=payload.drawer, block_hash=block.hash))
        self._emit(self._appended(block, "local"))
        recipients = [p for p in (payload.drawee, payload.payee) if p != payload.drawer]
        self._publish(chain.bill_id, recipients, block)
        return chain

    def execute(
        self,
        bill_id: str,
        operation: Operation,
        actor: str,
        signer: SigningHandle,
        timestamp: Optional[int] = None,
    ) -> BillBlock:
        """Build, validate, commit and publish one block for a local actor."""
        with correlation_scope():
            return self._execute(bill_id, operation, actor, signer, timestamp)

    def _execute(
        self,
        bill_id: str,
        operation: Operation,
        actor: str,
        signer: SigningHandle,
        timestamp: Optional[int],
    ) -> BillBlock:
        with self.locks.hold(bill_id):
            chain = self.store.load_chain(bill_id)
            if chain is None:
                raise InvalidOperationError(f"unknown bill {bill_id}")
            state = self._fold(chain)
            block = self.builder.build_next(chain, operation, actor, signer, timestamp, state=state)
            self._save(bill_id, chain.append(block))
            new_state = state.apply(block)
        logger.info(
            f"committed {block.op_code.value}",
            operation="execute",
            bill_id=bill_id,
            block_number=block.block_number,
            op_code=block.op_code.value,
        )
        self._emit(self._appended(block, "local"))
        self._publish(bill_id, [p for p in new_state.participants if p != actor], block)
        return block

    # ════════════════════════════════════════════════════════════════════
    # INBOUND
    # ════════════════════════════════════════════════════════════════════

    def on_receive(self, bill_id: str, sender: str, payload: Any) -> bool:
        """Queue an inbound payload. Returns False when the queue is full."""
        try:
            self._inbound.put_nowait(InboundItem(bill_id, sender, payload))
        except queue.Full:
            logger.warning(
                "inbound queue full, dropping payload",
                operation="on_receive",
                bill_id=bill_id,
                sender=sender,
            )
            return False
        return True

    @property
    def pending_inbound(self) -> int:
        return self._inbound.qsize()

    def process_inbound(self, max_items: Optional[int] = None) -> List[ReconcileOutcome]:
        """Drain the inbound queue synchronously.

        Raises StorageError when an accepted chain cannot be committed.
        """
        outcomes: List[ReconcileOutcome] = []
        while max_items is None or len(outcomes) < max_items:
            try:
                item = self._inbound.get_nowait()
            except queue.Empty:
                break
            try:
                outcomes.append(self.handle(item.bill_id, item.sender, item.payload))
            finally:
                self._inbound.task_done()
        return outcomes

    def handle(self, bill_id: str, sender: str, payload: Any) -> ReconcileOutcome:
        """Reconcile one inbound payload against the local chain."""
        with correlation_scope():
            return self._handle(bill_id, sender, payload)

    def _handle(self, bill_id: str, sender: str, payload: Any) -> ReconcileOutcome:
        try:
            incoming = parse_payload(payload)
        except BillChainError as ex:
            return self._reject(bill_id, sender, ReconcileOutcome(OutcomeKind.REJECTED, reason=ex.message, error=ex))
        if incoming.bill_id != bill_id:
            error = MalformedPayloadError(f"payload belongs to bill {incoming.bill_id}", field="bill_id")
            return self._reject(bill_id, sender, ReconcileOutcome(OutcomeKind.REJECTED, reason=error.message, error=error))

        with self.locks.hold(bill_id):
            local = self.store.load_chain(bill_id)
            outcome = self.reconciler.reconcile(local, incoming)
            if outcome.kind is OutcomeKind.ACCEPTED:
                self._save(bill_id, outcome.chain)

        if outcome.kind is OutcomeKind.ACCEPTED:
            self._emit_accepted(bill_id, sender, local, outcome)
        elif outcome.kind is OutcomeKind.FULL_CHAIN_REQUIRED:
            self._request_chain(bill_id, sender, outcome.reason)
        elif outcome.kind is OutcomeKind.REJECTED:
            self._reject(bill_id, sender, outcome, local, incoming)
        return outcome

    def start(self) -> None:
        """Process inbound payloads on a background thread."""
        if self._worker is not None:
            return
        self._running.set()
        self._worker = threading.Thread(target=self._run, daemon=True, name="billchain-sync")
        self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._running.clear()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None

    def _run(self) -> None:
        while self._running.is_set():
            try:
                item = self._inbound.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self.handle(item.bill_id, item.sender, item.payload)
            except StorageError as ex:
                logger.error(
                    f"dropping inbound payload, commit failed: {ex.message}",
                    error_code=ex.error_code,
                    bill_id=item.bill_id,
                    sender=item.sender,
                )
            except Exception as ex:
                # the worker outlives any single payload
                logger.error(
                    f"dropping inbound payload, {type(ex).__name__}: {ex}",
                    error_code="INBOUND_FAILED",
                    exc_info=True,
                    bill_id=item.bill_id,
                    sender=item.sender,
                )
            finally:
                self._inbound.task_done()

    # ════════════════════════════════════════════════════════════════════
    # MAINTENANCE
    # ════════════════════════════════════════════════════════════════════

    def state(self, bill_id: str) -> Optional[BillState]:
        chain = self.store.load_chain(bill_id)
        return self._fold(chain) if chain is not None else None

    def effective_status(self, bill_id: str, now: Optional[int] = None) -> Optional[BillStatus]:
        """Status as of `now` with the expiry and payment overlays applied."""
        state = self.state(bill_id)
        if state is None:
            return None
        at = now_unix() if now is None else now
        return state.effective_status(at, self.validator.deadlines, paid=self.validator.is_paid(bill_id))

    def resync(self, bill_id: Optional[str] = None) -> int:
        """Re-publish full chains to their participants. Returns the number published."""
        bill_ids = [bill_id] if bill_id is not None else self.store.list_bill_ids()
        published = 0
        for bid in bill_ids:
            chain = self.store.load_chain(bid)
            if chain is None:
                continue
            state = self._fold(chain)
            self._publish(bid, [p for p in state.participants if p != self.node_identity], chain)
            published += 1
        return published

    def check_timeouts(self, now: Optional[int] = None) -> List[RequestTimedOut]:
        """Emit RequestTimedOut once per (bill, request block, request kind).

        A payment request on a bill the payment oracle reports paid never times out.
        """
        at = now_unix() if now is None else now
        emitted: List[RequestTimedOut] = []
        for bill_id in self.store.list_bill_ids():
            chain = self.store.load_chain(bill_id)
            if chain is None:
                continue
            pending = self._fold(chain).pending
            key = (pending.block_number, pending.op_code.value) if pending is not None else None
            with self._timeouts_lock:
                reported = self._timeouts_sent.get(bill_id)
                if reported is not None and reported != key:
                    # the chain moved past the reported request
                    del self._timeouts_sent[bill_id]
            if pending is None or not pending.is_expired(at, self.validator.deadlines):
                continue
            if pending.op_code is OpCode.REQUEST_TO_PAY and self.validator.is_paid(bill_id):
                continue
            with self._timeouts_lock:
                if self._timeouts_sent.get(bill_id) == key:
                    continue
                self._timeouts_sent[bill_id] = key
            event = RequestTimedOut(
                bill_id=bill_id,
                block_number=pending.block_number,
                op_code=pending.op_code.value,
                deadline=pending.deadline(self.validator.deadlines),
            )
            logger.info(
                f"{pending.op_code.value} timed out",
                operation="check_timeouts",
                bill_id=bill_id,
                block_number=pending.block_number,
            )
            self._emit(event)
            emitted.append(event)
        return emitted

    # ════════════════════════════════════════════════════════════════════
    # INTERNALS
    # ════════════════════════════════════════════════════════════════════

    def _fold(self, chain: BillChain) -> BillState:
        return self.validator.validate_chain(chain)

    def _save(self, bill_id: str, chain: BillChain) -> None:
        try:
            self.retry_policy.execute(lambda: self.store.save_chain(bill_id, chain))
        except RetryExhaustedError as ex:
            logger.error(
                f"storage retries exhausted after {ex.attempts} attempts",
                error_code=StorageError.error_code,
                bill_id=bill_id,
            )
            raise ex.last_exception from ex

    def _publish(self, bill_id: str, participants: Sequence[str], payload: Payload) -> None:
        recipients = [p for p in participants if p != self.node_identity]
        if not recipients:
            return
        try:
            self.transport.publish(bill_id, recipients, payload)
        except Exception as ex:
            # the chain is already committed; resync retransmits
            logger.warning(
                f"publish failed: {ex}",
                operation="publish",
                bill_id=bill_id,
                recipients=len(recipients),
            )

    def _request_chain(self, bill_id: str, peer: str, reason: str) -> None:
        try:
            self.transport.request_chain(bill_id, peer)
        except Exception as ex:
            logger.warning(f"full chain request failed: {ex}", operation="request_chain", bill_id=bill_id, peer=peer)
        self._emit(FullChainRequested(bill_id=bill_id, peer=peer, reason=reason))

    def _reject(
        self,
        bill_id: str,
        sender: str,
        outcome: ReconcileOutcome,
        local: Optional[BillChain] = None,
        incoming: Optional[Payload] = None,
    ) -> ReconcileOutcome:
        error = outcome.error
        error_code = error.error_code if error is not None else ""
        logger.warning(
            f"rejected payload from {sender}: {outcome.reason}",
            operation="handle",
            error_code=error_code,
            bill_id=bill_id,
        )
        self._emit(InboundRejected(bill_id=bill_id, sender=sender, reason=outcome.reason, error_code=error_code))
        if isinstance(error, DivergenceUnresolvedError):
            self._emit(DivergenceAlarm(
                bill_id=bill_id,
                sender=sender,
                local_tip=local.tip.hash if local is not None and local.tip else "",
                incoming_tip=_tip_hash(incoming),
            ))
        return outcome

    def _emit_accepted(
        self,
        bill_id: str,
        sender: str,
        local: Optional[BillChain],
        outcome: ReconcileOutcome,
    ) -> None:
        chain = outcome.chain
        if outcome.replaced:
            self._emit(ChainReplaced(
                bill_id=bill_id,
                old_height=len(local) if local is not None else 0,
                new_height=len(chain),
                divergence_index=outcome.divergence_index or 0,
                sender=sender,
            ))
            return
        start = len(local) if local is not None else 0
        for block in chain.blocks[start:]:
            self._emit(self._appended(block, sender or "peer"))

    @staticmethod
    def _appended(block: BillBlock, source: str) -> BlockAppended:
        return BlockAppended(
            bill_id=block.bill_id,
            block_number=block.block_number,
            op_code=block.op_code.value,
            block_hash=block.hash,
            source=source,
        )

    def _emit(self, event: Event) -> None:
        if event.correlation_id is None:
            event.correlation_id = correlation_id_var.get() or None
        self.event_bus.publish(event)
