"""
billchain: Electronic Bill of Exchange Chain Engine

Each bill of exchange is its own tamper-evident chain of signed lifecycle
events, replicated among the bill's parties (drawer, drawee, payee,
endorsees, buyers, recoursees). Every node validates every block it holds
and independently reaches the same history for each bill.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                          BILL CHAIN ENGINE                               │
    │                                                                          │
    │  COORDINATION                                                            │
    │    sync.py         Per-bill locks, inbound queue, commit then publish   │
    │    reconciler.py   Accept / reject / no-op / escalate, fork choice      │
    │    persistence.py  Chain store gateway (memory, JSON files)             │
    │                                                                          │
    │  RULES                                                                   │
    │    builder.py      Sign and validate new blocks for local actors        │
    │    transitions.py  Transition table, role checks, deadlines             │
    │    state.py        Bill state folded from the chain                     │
    │                                                                          │
    │  DATA                                                                    │
    │    chain.py        Immutable hash-linked block sequences                │
    │    block.py        Signing input, canonical encoding, block hash        │
    │    operations.py   Op codes and payload schemas                         │
    │    crypto.py       Ed25519 over did:key identities                      │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Core Concepts
─────────────

    Block: one signed event. Its hash covers every field but itself, the
    signature included; the signature covers every field but the hash and
    the signature.

    Holder: the party currently entitled to the bill. Starts as the payee
    and moves on endorse, mint, sell and recourse.

    Effective status: the last operation's status, overlaid with EXPIRED
    when a pending request outlived its deadline (evaluated at the candidate
    block's timestamp) and PAID when the payment oracle says so.
"""

__version__ = "0.3.0"


def __getattr__(name):
    """Lazy exports."""

    if name in ("Ed25519KeyPair", "KeyRing", "Signer", "verify", "sign"):
        from billchain import crypto
        return getattr(crypto, name)

    if name in ("OpCode", "Operation", "IssuePayload", "AcceptPayload",
                "RequestToAcceptPayload", "RequestToPayPayload", "RejectPayload",
                "EndorsePayload", "MintPayload", "SalePayload",
                "RequestRecoursePayload", "RecoursePayload", "RecourseReason"):
        from billchain import operations
        return getattr(operations, name)

    if name in ("BillBlock", "IntegrityCheck", "GENESIS_PREVIOUS_HASH"):
        from billchain import block
        return getattr(block, name)

    if name in ("BillChain", "bill_id_for_issue"):
        from billchain import chain
        return getattr(chain, name)

    if name in ("BillState", "BillStatus", "BillRole", "Deadlines"):
        from billchain import state
        return getattr(state, name)

    if name in ("TransitionValidator", "TransitionResult", "ChainAudit", "TRANSITION_TABLE"):
        from billchain import transitions
        return getattr(transitions, name)

    if name == "ChainBuilder":
        from billchain.builder import ChainBuilder
        return ChainBuilder

    if name in ("Reconciler", "ReconcileOutcome", "OutcomeKind", "ForkChoicePolicy"):
        from billchain import reconciler
        return getattr(reconciler, name)

    if name in ("ChainStore", "InMemoryChainStore", "FileChainStore"):
        from billchain import persistence
        return getattr(persistence, name)

    if name in ("SyncCoordinator", "Transport"):
        from billchain import sync
        return getattr(sync, name)

    raise AttributeError(f"module 'billchain' has no attribute '{name}'")
