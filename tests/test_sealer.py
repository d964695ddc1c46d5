"""
Tests for Signing Keys, the Tenant Chain Log and the Integrity Sealer

Tests chain linking, tamper detection and custody digests.
"""

import threading
from datetime import timedelta

import pytest

from wilsy_metering.core.errors import IntegrityViolation
from wilsy_metering.core.usage import BillingStatus
from wilsy_metering.crypto.chain import GENESIS_HASH, TenantChainLog
from wilsy_metering.crypto.keys import SigningKeyring
from wilsy_metering.crypto.sealer import IntegritySealer, merkle_root, sha3_512_hex

from conftest import TEST_NOW


@pytest.fixture
def sealer(keyring, violations):
    return IntegritySealer(keyring, TenantChainLog(), audit_sink=violations.append)


@pytest.fixture
def chain(sealer, make_record):
    """Five sealed records for tenant-a."""
    return [sealer.seal(make_record(at=TEST_NOW + timedelta(minutes=i))) for i in range(5)]


class TestSigningKeyring:
    """Test HMAC key derivation and rotation."""

    def test_sign_and_verify(self, keyring):
        signature, key_id = keyring.sign(b"payload")

        assert key_id == "test-k1"
        assert len(signature) == 64
        assert keyring.verify(b"payload", signature, key_id)
        assert not keyring.verify(b"tampered", signature, key_id)

    def test_unknown_key_id_fails(self, keyring):
        signature, _ = keyring.sign(b"payload")
        assert not keyring.verify(b"payload", signature, "nobody")

    def test_different_secrets_differ(self, keyring):
        other = SigningKeyring("another-secret", "test-k1", iterations=1000)
        assert keyring.sign(b"payload")[0] != other.sign(b"payload")[0]

    def test_rotation_keeps_old_keys_verifying(self, keyring):
        old_signature, old_id = keyring.sign(b"payload")
        keyring.rotate("test-k2")
        new_signature, new_id = keyring.sign(b"payload")

        assert new_id == "test-k2"
        assert new_signature != old_signature
        assert keyring.verify(b"payload", old_signature, old_id)
        assert keyring.verify(b"payload", new_signature, new_id)

    def test_retired_key_can_be_loaded(self):
        signer = SigningKeyring("shared", "k-old", iterations=1000)
        signature, _ = signer.sign(b"payload")

        verifier = SigningKeyring("shared", "k-new", iterations=1000)
        assert not verifier.verify(b"payload", signature, "k-old")
        verifier.add_verification_key("k-old")
        assert verifier.verify(b"payload", signature, "k-old")

    def test_to_dict_has_no_key_material(self, keyring):
        data = keyring.to_dict()
        assert data["active_key_id"] == "test-k1"
        assert "test-signing-secret" not in str(data)


class TestTenantChainLog:
    """Test per-tenant chain heads."""

    def test_first_link_starts_at_genesis(self):
        log = TenantChainLog()
        link = log.append("tenant-a", lambda seq, prev: f"hash-{seq}")

        assert link.sequence == 0
        assert link.previous_hash == GENESIS_HASH
        assert log.head("tenant-a").last_hash == "hash-0"

    def test_links_follow_head(self):
        log = TenantChainLog()
        log.append("tenant-a", lambda seq, prev: "h0")
        link = log.append("tenant-a", lambda seq, prev: "h1")

        assert link.sequence == 1
        assert link.previous_hash == "h0"

    def test_tenants_are_independent(self):
        log = TenantChainLog()
        log.append("tenant-a", lambda seq, prev: "a0")
        link = log.append("tenant-b", lambda seq, prev: "b0")

        assert link.sequence == 0
        assert link.previous_hash == GENESIS_HASH

    def test_failed_seal_leaves_head(self):
        log = TenantChainLog()
        log.append("tenant-a", lambda seq, prev: "h0")

        def boom(seq, prev):
            raise RuntimeError("signer down")

        with pytest.raises(RuntimeError):
            log.append("tenant-a", boom)

        head = log.head("tenant-a")
        assert head.sequence == 0
        assert head.last_hash == "h0"

    def test_head_loaded_once_from_store(self):
        calls = []

        def loader(tenant_id):
            calls.append(tenant_id)
            return (41, "stored-hash")

        log = TenantChainLog(head_loader=loader)
        link = log.append("tenant-a", lambda seq, prev: "h42")
        log.append("tenant-a", lambda seq, prev: "h43")

        assert link.sequence == 42
        assert link.previous_hash == "stored-hash"
        assert calls == ["tenant-a"]

    def test_concurrent_appends_never_share_previous_hash(self):
        log = TenantChainLog()
        links = []
        links_lock = threading.Lock()

        def worker(n):
            for i in range(20):
                link = log.append("tenant-a", lambda seq, prev: sha3_512_hex(f"{prev}:{seq}"))
                with links_lock:
                    links.append(link)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        links.sort(key=lambda l: l.sequence)
        assert [l.sequence for l in links] == list(range(160))
        for prior, link in zip(links, links[1:]):
            assert link.previous_hash == prior.seal_hash


class TestIntegritySealer:
    """Test sealing and verification."""

    def test_seal_populates_integrity(self, sealer, make_record):
        record = sealer.seal(make_record())

        assert record.integrity.is_sealed
        assert len(record.integrity.seal_hash) == 128  # SHA3-512
        assert record.integrity.previous_hash == GENESIS_HASH
        assert record.integrity.chain_sequence == 0
        assert record.integrity.key_id == "test-k1"

    def test_records_link_to_predecessor(self, chain):
        for prior, record in zip(chain, chain[1:]):
            assert record.integrity.previous_hash == prior.integrity.seal_hash
            assert record.integrity.chain_sequence == prior.integrity.chain_sequence + 1

    def test_sealing_twice_rejected(self, sealer, make_record):
        record = sealer.seal(make_record())
        with pytest.raises(IntegrityViolation) as exc:
            sealer.seal(record)
        assert exc.value.reason == "already_sealed"

    def test_valid_chain(self, sealer, chain, violations):
        result = sealer.verify_chain(chain)

        assert result.valid
        assert result.checked == 5
        assert result.root == merkle_root([r.integrity.seal_hash for r in chain])
        assert violations == []

    def test_empty_chain_is_valid(self, sealer):
        result = sealer.verify_chain([])
        assert result.valid
        assert result.checked == 0

    def test_tampered_field_detected(self, sealer, chain, violations):
        chain[2].user_id = "someone-else"

        result = sealer.verify_chain(chain)

        assert not result.valid
        assert result.broken_at == chain[2].usage_id
        assert result.reason == "hash_mismatch"
        assert result.checked == 2
        assert len(violations) == 1
        assert violations[0].usage_id == chain[2].usage_id

    def test_removed_record_detected(self, sealer, chain):
        del chain[2]

        result = sealer.verify_chain(chain)

        assert not result.valid
        assert result.reason == "sequence_gap"

    def test_forged_signature_detected(self, sealer, chain):
        chain[1].integrity.signature = "0" * 64

        result = sealer.verify_chain(chain)

        assert result.reason == "signature_mismatch"

    def test_wrong_anchor_detected(self, sealer, chain):
        result = sealer.verify_chain(chain[2:], anchor_hash="not-the-real-predecessor")

        assert not result.valid
        assert result.reason == "previous_hash_mismatch"
        assert result.broken_at == chain[2].usage_id

    def test_slice_with_correct_anchor(self, sealer, chain):
        result = sealer.verify_chain(chain[2:], anchor_hash=chain[1].integrity.seal_hash)
        assert result.valid

    def test_status_change_does_not_break_seal(self, sealer, chain):
        chain[0].billing_status = BillingStatus.BILLED
        chain[0].invoice_id = "inv_123"
        assert sealer.verify_record(chain[0], GENESIS_HASH) is None

    def test_custody_digest_covers_notes(self, sealer, chain):
        note = chain[0].add_note("BILLED", TEST_NOW, reason="INV-1")
        sealer.append_custody(chain[0], note)

        assert len(chain[0].integrity.hashes) == 2
        assert sealer.verify_chain(chain).valid

        chain[0].audit_notes[0].reason = "INV-2"
        assert sealer.verify_record(chain[0]) == "custody_mismatch"

    def test_note_without_digest_detected(self, sealer, chain):
        chain[3].add_note("DISPUTED", TEST_NOW, reason="wrong matter")
        assert sealer.verify_record(chain[3]) == "custody_mismatch"

    def test_signatures_from_rotated_key_still_verify(self, sealer, chain, keyring, make_record):
        keyring.rotate("test-k2")
        later = sealer.seal(make_record())

        assert later.integrity.key_id == "test-k2"
        assert sealer.verify_chain(chain + [later]).valid

    def test_unsealed_record(self, sealer, make_record):
        assert sealer.verify_record(make_record()) == "unsealed"


class TestMerkleRoot:

    def test_single_leaf_is_root(self):
        assert merkle_root(["abc"]) == "abc"

    def test_order_matters(self):
        assert merkle_root(["a", "b", "c"]) != merkle_root(["c", "b", "a"])

    def test_empty(self):
        assert merkle_root([]) == sha3_512_hex("EMPTY")
