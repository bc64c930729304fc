import logging
import os
import pathlib
import sys
from typing import Dict

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import billchain`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from billchain.builder import ChainBuilder  # noqa: E402
from billchain.config import get_config_manager  # noqa: E402
from billchain.crypto import Ed25519KeyPair, KeyRing  # noqa: E402
from billchain.observability import ROOT_LOGGER_NAME  # noqa: E402
from billchain.operations import (  # noqa: E402
    AcceptPayload,
    EndorsePayload,
    IssuePayload,
    OpCode,
    Operation,
    RequestToPayPayload,
)
from billchain.transitions import TransitionValidator  # noqa: E402

T0 = 1_700_000_000
DAY = 24 * 60 * 60


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless BILLCHAIN_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('BILLCHAIN_RUN_SLOW')
    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set BILLCHAIN_RUN_SLOW=1 to enable'))


@pytest.fixture(scope="session")
def keys() -> Dict[str, Ed25519KeyPair]:
    """Five parties: A drawer, B drawee, C payee, D and E later holders."""
    return {name: Ed25519KeyPair.generate() for name in "ABCDE"}


@pytest.fixture
def ids(keys) -> Dict[str, str]:
    return {name: key.identity for name, key in keys.items()}


@pytest.fixture
def keyring(keys) -> KeyRing:
    return KeyRing(keys.values())


@pytest.fixture
def validator() -> TransitionValidator:
    return TransitionValidator()


@pytest.fixture
def builder(validator) -> ChainBuilder:
    return ChainBuilder(validator, clock=lambda: T0)


@pytest.fixture(autouse=True)
def _reset_config():
    mgr = get_config_manager()
    mgr.reset()
    yield
    mgr.reset()


@pytest.fixture(autouse=True)
def _drop_log_handlers():
    yield
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        if getattr(handler, "_billchain_handler", False):
            root.removeHandler(handler)


def make_issue(ids: Dict[str, str], **overrides) -> IssuePayload:
    fields = dict(
        drawer=ids["A"],
        drawee=ids["B"],
        payee=ids["C"],
        sum=150_000,
        currency="sat",
        maturity_date="2024-06-30",
        issue_date="2023-11-14",
        country_of_issuing="AT",
        city_of_issuing="Vienna",
        country_of_payment="AT",
        city_of_payment="Vienna",
        language="en",
        nonce="n-0001",
    )
    fields.update(overrides)
    return IssuePayload(**fields)


@pytest.fixture
def issued(builder, keyring, ids):
    """Block 1 only: A issues to C, drawn on B."""
    return builder.build_issue(make_issue(ids), keyring, timestamp=T0)


@pytest.fixture
def scenario_chain(builder, keyring, ids, issued):
    """Issue(A) -> Accept(B) -> Endorse(C->D) -> RequestToPay(D)."""
    chain = builder.extend(issued, Operation(OpCode.ACCEPT, AcceptPayload(ids["B"])), ids["B"], keyring, T0 + 10)
    chain = builder.extend(
        chain, Operation(OpCode.ENDORSE, EndorsePayload(ids["C"], ids["D"])), ids["C"], keyring, T0 + 20
    )
    chain = builder.extend(
        chain, Operation(OpCode.REQUEST_TO_PAY, RequestToPayPayload(ids["D"], "sat")), ids["D"], keyring, T0 + 30
    )
    return chain
