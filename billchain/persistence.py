"""Persistence gateway for bill chains.

The engine only needs three operations: load a chain, save a chain, list
known bills. `save_chain` replaces the whole chain value for a bill; stores
never merge. Any backend failure surfaces as `StorageError`, which the sync
layer retries.

Two reference stores are provided:

- `InMemoryChainStore`: a lock-guarded dict of immutable chain values.
- `FileChainStore`: one JSON document per bill, replaced atomically.
"""

from __future__ import annotations

import json
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union

from billchain.chain import BillChain
from billchain.core import write_json_atomic
from billchain.errors import BillChainError, StorageError
from billchain.observability import Layer, get_logger

logger = get_logger("store", Layer.PERSISTENCE)

_BILL_ID_RE = re.compile(r"^[a-f0-9]{64}$")


class ChainStore(ABC):
    @abstractmethod
    def load_chain(self, bill_id: str) -> Optional[BillChain]:
        """The stored chain, or None for an unknown bill."""

    @abstractmethod
    def save_chain(self, bill_id: str, chain: BillChain) -> None:
        """Replace the stored chain for `bill_id`."""

    @abstractmethod
    def list_bill_ids(self) -> List[str]:
        ...


# =============================================================================
# IN-MEMORY
# =============================================================================


class InMemoryChainStore(ChainStore):
    """Thread-safe in-memory store. Chain values are immutable, so no copies are needed."""

    def __init__(self):
        self._data: Dict[str, BillChain] = {}
        self._lock = threading.Lock()

    def load_chain(self, bill_id: str) -> Optional[BillChain]:
        with self._lock:
            return self._data.get(bill_id)

    def save_chain(self, bill_id: str, chain: BillChain) -> None:
        if chain.bill_id != bill_id:
            raise StorageError(f"chain for {chain.bill_id} saved under {bill_id}")
        with self._lock:
            self._data[bill_id] = chain

    def list_bill_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


# =============================================================================
# FILE
# =============================================================================


class FileChainStore(ChainStore):
    """One `<bill_id>.json` file per bill under `root`."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def _path(self, bill_id: str) -> Path:
        if not _BILL_ID_RE.match(bill_id or ""):
            raise StorageError(f"invalid bill id: {bill_id!r}")
        return self.root / f"{bill_id}.json"

    def load_chain(self, bill_id: str) -> Optional[BillChain]:
        path = self._path(bill_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            chain = BillChain.from_dict(data)
        except (OSError, ValueError, BillChainError) as ex:
            raise StorageError(f"cannot load chain {bill_id}: {ex}") from ex
        if chain.bill_id != bill_id:
            raise StorageError(f"file {path.name} holds chain {chain.bill_id}")
        return chain

    def save_chain(self, bill_id: str, chain: BillChain) -> None:
        if chain.bill_id != bill_id:
            raise StorageError(f"chain for {chain.bill_id} saved under {bill_id}")
        path = self._path(bill_id)
        try:
            write_json_atomic(path, chain.to_dict())
        except (OSError, ValueError) as ex:
            raise StorageError(f"cannot save chain {bill_id}: {ex}") from ex
        logger.debug("saved chain", operation="save_chain", bill_id=bill_id, height=len(chain))

    def list_bill_ids(self) -> List[str]:
        if not self.root.exists():
            return []
        try:
            return sorted(
                p.stem for p in self.root.glob("*.json") if _BILL_ID_RE.match(p.stem)
            )
        except OSError as ex:
            raise StorageError(f"cannot list {self.root}: {ex}") from ex
