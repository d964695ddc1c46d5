"""
Integrity Sealer

Seals usage records into their tenant's hash chain and verifies chains.

    seal_hash = SHA3-512(canonical JSON of immutable fields + previous_hash)
    signature = HMAC-SHA256(key, seal_hash || usage_id)

Audit notes appended after sealing are covered by custody digests:

    hashes[i] = SHA3-512(hashes[i-1] || canonical JSON of audit_notes[i-1])

Verification failures are reported, never repaired.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from ..core.errors import IntegrityViolation
from ..core.usage import AuditNote, UsageRecord
from .chain import GENESIS_HASH, TenantChainLog
from .keys import SigningKeyring

logger = structlog.get_logger()

AuditSink = Callable[[IntegrityViolation], None]


def canonical_json(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(',', ':'))


def sha3_512_hex(data: str) -> str:
    return hashlib.sha3_512(data.encode('utf-8')).hexdigest()


def merkle_root(hashes: Sequence[str]) -> str:
    """Merkle root over seal hashes, duplicating the last leaf on odd levels."""
    if not hashes:
        return sha3_512_hex("EMPTY")

    level = list(hashes)
    while len(level) > 1:
        if len(level) % 2 == 1:
            level.append(level[-1])
        level = [sha3_512_hex(level[i] + level[i + 1]) for i in range(0, len(level), 2)]
    return level[0]


def log_audit_sink(violation: IntegrityViolation) -> None:
    """Default sink: a critical structured log event."""
    logger.critical("integrity_violation", **violation.to_dict())


@dataclass
class ChainVerification:
    valid: bool
    checked: int
    broken_at: Optional[str] = None
    reason: Optional[str] = None
    root: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "checked": self.checked,
            "broken_at": self.broken_at,
            "reason": self.reason,
            "root": self.root,
        }


class IntegritySealer:
    """Computes seals, signs them and verifies them."""

    def __init__(
        self,
        keyring: SigningKeyring,
        chain_log: Optional[TenantChainLog] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.keyring = keyring
        self.chain_log = chain_log or TenantChainLog()
        self.audit_sink = audit_sink or log_audit_sink

    @staticmethod
    def compute_seal_hash(record: UsageRecord) -> str:
        return sha3_512_hex(canonical_json(record.canonical_fields()))

    @staticmethod
    def _signing_payload(seal_hash: str, usage_id: str) -> bytes:
        return (seal_hash + usage_id).encode('utf-8')

    @staticmethod
    def _custody_digest(prior: str, note: AuditNote) -> str:
        return sha3_512_hex(prior + canonical_json(note.to_dict()))

    def seal(self, record: UsageRecord) -> UsageRecord:
        """
        Link the record into its tenant chain and sign it.

        The chain head advances only if sealing succeeds.
        """
        if record.integrity.is_sealed:
            raise IntegrityViolation(
                "Record is already sealed",
                reason="already_sealed",
                usage_id=record.usage_id,
                tenant_id=record.tenant_id,
            )

        def _seal(sequence: int, previous_hash: str) -> str:
            record.integrity.previous_hash = previous_hash
            record.integrity.chain_sequence = sequence
            seal_hash = self.compute_seal_hash(record)
            signature, key_id = self.keyring.sign(self._signing_payload(seal_hash, record.usage_id))
            record.integrity.hashes = [seal_hash]
            record.integrity.signature = signature
            record.integrity.key_id = key_id
            return seal_hash

        link = self.chain_log.append(record.tenant_id, _seal)
        logger.debug(
            "usage_record_sealed",
            usage_id=record.usage_id,
            tenant_id=record.tenant_id,
            chain_sequence=link.sequence,
        )
        return record

    def append_custody(self, record: UsageRecord, note: AuditNote) -> str:
        """Extend the custody digests after an audit note was appended."""
        digest = self._custody_digest(record.integrity.custody_head or "", note)
        record.integrity.hashes.append(digest)
        return digest

    def verify_record(self, record: UsageRecord, expected_previous: Optional[str] = None) -> Optional[str]:
        """
        Check one record. Returns None when intact, otherwise a reason code.

        expected_previous, when given, is the prior record's stored seal hash.
        """
        integrity = record.integrity
        if not integrity.is_sealed:
            return "unsealed"

        if self.compute_seal_hash(record) != integrity.seal_hash:
            return "hash_mismatch"

        # Plain copies must still agree with the sealed tokens and cost
        if record.indexed_columns and record.indexed_columns != record.indexed_column_values():
            return "hash_mismatch"

        if expected_previous is not None and integrity.previous_hash != expected_previous:
            return "previous_hash_mismatch"

        payload = self._signing_payload(integrity.seal_hash, record.usage_id)
        if not self.keyring.verify(payload, integrity.signature, integrity.key_id):
            return "signature_mismatch"

        if len(integrity.hashes) != len(record.audit_notes) + 1:
            return "custody_mismatch"
        prior = integrity.seal_hash
        for note, stored in zip(record.audit_notes, integrity.hashes[1:]):
            prior = self._custody_digest(prior, note)
            if prior != stored:
                return "custody_mismatch"

        return None

    def verify_chain(
        self,
        records: List[UsageRecord],
        anchor_hash: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> ChainVerification:
        """
        Verify a contiguous slice of a tenant chain, ordered by sequence.

        anchor_hash is the seal hash preceding the first record. It defaults
        to the genesis marker when the slice starts at sequence 0; otherwise
        the first record's previous_hash is trusted as the anchor.
        """
        if not records:
            return ChainVerification(valid=True, checked=0, root=merkle_root([]))

        if anchor_hash is None and records[0].integrity.chain_sequence == 0:
            anchor_hash = GENESIS_HASH

        expected_previous = anchor_hash
        first_sequence = records[0].integrity.chain_sequence
        seals: List[str] = []

        for index, record in enumerate(records):
            reason = None
            if record.integrity.chain_sequence != first_sequence + index:
                reason = "sequence_gap"
            else:
                reason = self.verify_record(record, expected_previous)

            if reason is not None:
                violation = IntegrityViolation(
                    f"Hash chain broken at {record.usage_id}: {reason}",
                    reason=reason,
                    usage_id=record.usage_id,
                    tenant_id=tenant_id or record.tenant_id,
                    timestamp=record.timestamp,
                    chain_sequence=record.integrity.chain_sequence,
                )
                self.audit_sink(violation)
                return ChainVerification(
                    valid=False,
                    checked=index,
                    broken_at=record.usage_id,
                    reason=reason,
                )

            expected_previous = record.integrity.seal_hash
            seals.append(record.integrity.seal_hash)

        return ChainVerification(valid=True, checked=len(records), root=merkle_root(seals))
