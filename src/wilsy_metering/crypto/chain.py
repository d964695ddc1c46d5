"""
Per-Tenant Hash Chain Log

Each tenant has one append-only chain. Appending is the atomic unit: reading
the head, sealing the new record against it and advancing the head happen
under the tenant's lock, so two concurrent appends can never share a
previous hash.
"""

import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import structlog

logger = structlog.get_logger()

GENESIS_HASH = "GENESIS"

# (last chain_sequence, last seal hash) or None for an empty chain
HeadLoader = Callable[[str], Optional[Tuple[int, str]]]


@dataclass(frozen=True)
class ChainHead:
    tenant_id: str
    sequence: int  # -1 when the chain is empty
    last_hash: str


@dataclass(frozen=True)
class ChainLink:
    """Result of one append."""
    tenant_id: str
    sequence: int
    previous_hash: str
    seal_hash: str


class TenantChainLog:
    """
    In-memory chain heads, recovered from the durable store on first use.

    The head loader is normally UsageRepository.chain_head. Records that are
    sealed but still buffered in the batch writer are already reflected in
    the in-memory head, so the loader is consulted only once per tenant.
    """

    def __init__(self, head_loader: Optional[HeadLoader] = None):
        self._head_loader = head_loader
        self._heads: Dict[str, ChainHead] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, tenant_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = self._locks[tenant_id] = threading.Lock()
            return lock

    def _load(self, tenant_id: str) -> ChainHead:
        head = self._heads.get(tenant_id)
        if head is not None:
            return head

        stored = self._head_loader(tenant_id) if self._head_loader else None
        if stored is None:
            head = ChainHead(tenant_id, -1, GENESIS_HASH)
        else:
            head = ChainHead(tenant_id, stored[0], stored[1])
            logger.debug("chain_head_recovered", tenant_id=tenant_id, sequence=stored[0])

        self._heads[tenant_id] = head
        return head

    def head(self, tenant_id: str) -> ChainHead:
        with self._lock_for(tenant_id):
            return self._load(tenant_id)

    def append(self, tenant_id: str, seal: Callable[[int, str], str]) -> ChainLink:
        """
        Append one link.

        seal(sequence, previous_hash) must return the new seal hash. If it
        raises, the head is left unchanged.
        """
        with self._lock_for(tenant_id):
            head = self._load(tenant_id)
            sequence = head.sequence + 1
            seal_hash = seal(sequence, head.last_hash)
            self._heads[tenant_id] = ChainHead(tenant_id, sequence, seal_hash)
            return ChainLink(tenant_id, sequence, head.last_hash, seal_hash)

    def reset(self, tenant_id: Optional[str] = None) -> None:
        """Forget cached heads so the next append reloads from the store."""
        with self._guard:
            if tenant_id is None:
                self._heads.clear()
            else:
                self._heads.pop(tenant_id, None)
