"""
vault.audit
===========

Append-only compliance audit trail.

Every logged operation becomes an entry whose leaf is appended to its own
incremental Poseidon tree, so any entry can later be proven part of a
published audit root.

Entry layout
------------
Stored in clear, and the only fields queries filter on:

    index, entry_id, timestamp, operation, subject_hash, attestation

Sealed: a canonical CBOR map of operation details (amounts, recipient,
provider, association root), encrypted with AES-GCM under a fresh 32-byte key
per entry with ``entry_id`` as associated data.

    subject_hash = H(subject, SUBJECT_TAG)
    entry_id     = sha3_256(be_u64(timestamp) | subject_hash | be_u64(index))
    leaf         = H(H(entry_id, H(timestamp, op)), H(subject_hash, digest))

where ``digest`` is sha3-256 over the sealed details and the attestation,
reduced into the field.

Disclosure
----------
`selective_disclosure` wraps one entry's key under a regulator's 32-byte key
and ships it with the entry and an inclusion proof. `open_disclosure` unwraps,
decrypts, recomputes the leaf and checks the path. Entry keys are kept under
`AUDIT_KEYS` in the same store, so whoever holds the store can disclose.

Staging
-------
`stage` prepares records without touching storage; the caller commits
`StagedAudit.writes` in the batch that records the operation itself and calls
`apply` once that batch is committed. Hold `lock` from `stage` to `apply`.
"""

from __future__ import annotations

import hashlib
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from zk.verifiers.field import from_bytes32, reduce, to_bytes32, to_hex
from zk.verifiers.poseidon import poseidon2

from .db.kv import (AUDIT, AUDIT_IDS, AUDIT_KEYS, KV, META, be_u64,
                    dumps_record, get_record, iter_records, loads_record)
from .encoding import AddressLike, normalize_address
from .errors import AuditError, StorageError
from .logging import get_logger
from .merkle import MerklePath, merkle_path, merkle_verify
from .tree import DEFAULT_HISTORY, MAX_DEPTH, IncrementalMerkleTree

log = get_logger("vault.audit")

DEFAULT_AUDIT_DEPTH = MAX_DEPTH
SUBJECT_TAG = int.from_bytes(b"vault.audit.subject", "big")
ENTRY_KEY_BYTES = 32
NONCE_BYTES = 12
_TAG_BYTES = 16
_TREE_KEY = META.key("audit_tree")


class AuditOperation(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    COMPLIANCE_CHECK = "compliance_check"
    PROVIDER_UPDATE = "provider_update"


_OP_CODES = {op: i + 1 for i, op in enumerate(AuditOperation)}


@dataclass(frozen=True)
class AuditRecord:
    """What the caller wants logged; the trail assigns index, id and time."""

    operation: AuditOperation
    subject: int
    details: Dict[str, Any] = field(default_factory=dict)
    attestation: bytes = b""


@dataclass(frozen=True)
class AuditEntry:
    index: int
    entry_id: bytes
    timestamp: int
    operation: AuditOperation
    subject_hash: int
    sealed: bytes
    attestation: bytes = b""

    @property
    def leaf(self) -> int:
        return entry_leaf(self)

    def to_record(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "id": self.entry_id,
            "timestamp": self.timestamp,
            "op": self.operation.value,
            "subject": to_bytes32(self.subject_hash),
            "sealed": self.sealed,
            "attestation": self.attestation,
            "leaf": to_bytes32(self.leaf),
        }

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "AuditEntry":
        try:
            return cls(
                index=int(rec["index"]),
                entry_id=bytes(rec["id"]),
                timestamp=int(rec["timestamp"]),
                operation=AuditOperation(rec["op"]),
                subject_hash=from_bytes32(rec["subject"]),
                sealed=bytes(rec["sealed"]),
                attestation=bytes(rec.get("attestation", b"")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"corrupt audit entry: {e}") from e

    def to_json(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "entryId": "0x" + self.entry_id.hex(),
            "timestamp": self.timestamp,
            "operation": self.operation.value,
            "subjectHash": to_hex(self.subject_hash),
            "attestation": "0x" + self.attestation.hex(),
            "leaf": to_hex(self.leaf),
        }


@dataclass(frozen=True)
class AuditInclusionProof:
    entry_id: bytes
    leaf: int
    path: MerklePath

    @property
    def root(self) -> int:
        return self.path.root

    def to_json(self) -> Dict[str, Any]:
        return {"entryId": "0x" + self.entry_id.hex(), "leaf": to_hex(self.leaf),
                "path": self.path.to_json()}


@dataclass(frozen=True)
class Disclosure:
    entry: AuditEntry
    wrapped_key: bytes
    proof: AuditInclusionProof


@dataclass
class StagedAudit:
    base_index: int
    entries: List[AuditEntry]
    writes: List[Tuple[bytes, bytes]]
    undo: List[Tuple[bytes, Optional[bytes]]]
    tree: IncrementalMerkleTree


# ---------------------------------------------------------------------------
# Hashing and sealing
# ---------------------------------------------------------------------------


def subject_hash(subject: int) -> int:
    return poseidon2(reduce(subject), SUBJECT_TAG)


def entry_id_for(timestamp: int, subject_h: int, index: int) -> bytes:
    return hashlib.sha3_256(be_u64(timestamp) + to_bytes32(subject_h) + be_u64(index)).digest()


def entry_leaf(entry: AuditEntry) -> int:
    h = hashlib.sha3_256()
    h.update(be_u64(len(entry.sealed)))
    h.update(entry.sealed)
    h.update(entry.attestation)
    digest = reduce(int.from_bytes(h.digest(), "big"))
    head = poseidon2(reduce(int.from_bytes(entry.entry_id, "big")),
                     poseidon2(entry.timestamp, _OP_CODES[entry.operation]))
    return poseidon2(head, poseidon2(entry.subject_hash, digest))


def _encrypt(key: bytes, plaintext: bytes, aad: bytes) -> bytes:
    nonce = os.urandom(NONCE_BYTES)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, aad)


def _decrypt(key: bytes, blob: bytes, aad: bytes, what: str) -> bytes:
    if len(blob) < NONCE_BYTES + _TAG_BYTES:
        raise AuditError(f"{what} is truncated", length=len(blob))
    try:
        return AESGCM(key).decrypt(blob[:NONCE_BYTES], blob[NONCE_BYTES:], aad)
    except InvalidTag as e:
        raise AuditError(f"cannot open {what}") from e


def _check_key(key: bytes, what: str) -> bytes:
    key = bytes(key)
    if len(key) != ENTRY_KEY_BYTES:
        raise AuditError(f"{what} must be {ENTRY_KEY_BYTES} bytes", length=len(key))
    return key


def verify_inclusion_proof(proof: AuditInclusionProof) -> bool:
    """True iff the proof's leaf hashes up to its own root."""
    return reduce(proof.path.leaf) == reduce(proof.leaf) and merkle_verify(proof.leaf, proof.path)


def open_disclosure(disclosure: Disclosure, regulator_key: bytes,
                    *, expected_root: Optional[int] = None) -> Dict[str, Any]:
    """
    Return the sealed details of a disclosed entry.

    Raises AuditError if the key does not open it, the entry does not match its
    inclusion proof, or the proof is for another root than `expected_root`.
    """
    entry = disclosure.entry
    proof = disclosure.proof
    if entry.entry_id != entry_id_for(entry.timestamp, entry.subject_hash, entry.index):
        raise AuditError("entry id does not match its public fields", index=entry.index)
    if (proof.entry_id != entry.entry_id or proof.path.index != entry.index
            or proof.leaf != entry.leaf or not verify_inclusion_proof(proof)):
        raise AuditError("disclosed entry does not match its inclusion proof", index=entry.index)
    if expected_root is not None and reduce(expected_root) != reduce(proof.root):
        raise AuditError("disclosure is proven against a different audit root",
                         root=to_hex(reduce(proof.root)))
    key = _decrypt(_check_key(regulator_key, "regulator key"), disclosure.wrapped_key,
                   entry.entry_id, "wrapped entry key")
    details = loads_record(_decrypt(key, entry.sealed, entry.entry_id, "sealed details"))
    if not isinstance(details, dict):
        raise AuditError("sealed details are not a map", index=entry.index)
    return details


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def deposit_record(commitment: int, amount: int, depositor: Optional[bytes] = None) -> AuditRecord:
    details: Dict[str, Any] = {"commitment": to_bytes32(commitment), "amount": int(amount)}
    if depositor is not None:
        details["depositor"] = bytes(depositor)
    return AuditRecord(AuditOperation.DEPOSIT, commitment, details)


def withdrawal_record(nullifier_hash: int, amount: int, recipient: bytes, root: int,
                      attestation: bytes = b"") -> AuditRecord:
    details = {
        "nullifier_hash": to_bytes32(nullifier_hash),
        "amount": int(amount),
        "recipient": bytes(recipient),
        "root": to_bytes32(root),
    }
    return AuditRecord(AuditOperation.WITHDRAWAL, nullifier_hash, details, bytes(attestation))


def compliance_record(nullifier_hash: int, provider: bytes, association_root: int,
                      passed: bool = True) -> AuditRecord:
    details = {
        "nullifier_hash": to_bytes32(nullifier_hash),
        "provider": bytes(provider),
        "association_root": to_bytes32(association_root),
        "passed": bool(passed),
    }
    return AuditRecord(AuditOperation.COMPLIANCE_CHECK, nullifier_hash, details)


def provider_update_record(provider: bytes, new_root: int, previous_root: int = 0) -> AuditRecord:
    details = {
        "provider": bytes(provider),
        "root": to_bytes32(new_root),
        "previous_root": to_bytes32(previous_root),
    }
    return AuditRecord(AuditOperation.PROVIDER_UPDATE, provider_subject(provider), details)


# ---------------------------------------------------------------------------
# Trail
# ---------------------------------------------------------------------------


class AuditTrail:
    """
    >>> from vault.db import open_kv
    >>> trail = AuditTrail(open_kv("memory://"), depth=8)
    >>> trail.entry_count
    0
    """

    def __init__(
        self,
        kv: KV,
        *,
        depth: int = DEFAULT_AUDIT_DEPTH,
        history_size: int = DEFAULT_HISTORY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._kv = kv
        self._clock = clock
        self.lock = threading.RLock()
        blob = kv.get(_TREE_KEY)
        if blob is None:
            self._tree = IncrementalMerkleTree(depth=depth, history_size=history_size)
        else:
            self._tree = IncrementalMerkleTree.restore(blob, expect_depth=depth)

    @property
    def root(self) -> int:
        return self._tree.root

    @property
    def depth(self) -> int:
        return self._tree.depth

    @property
    def entry_count(self) -> int:
        return self._tree.next_index

    def is_known_root(self, root: int) -> bool:
        return self._tree.is_known_root(reduce(root))

    # ---- writes --------------------------------------------------------------------------

    def stage(self, records: Iterable[AuditRecord], *, timestamp: Optional[int] = None) -> StagedAudit:
        ts = int(self._clock()) if timestamp is None else int(timestamp)
        tree = self._tree.copy()
        base = tree.next_index
        entries: List[AuditEntry] = []
        writes: List[Tuple[bytes, bytes]] = []
        undo: List[Tuple[bytes, Optional[bytes]]] = []
        for rec in records:
            index = tree.next_index
            sh = subject_hash(rec.subject)
            eid = entry_id_for(ts, sh, index)
            key = os.urandom(ENTRY_KEY_BYTES)
            entry = AuditEntry(
                index=index,
                entry_id=eid,
                timestamp=ts,
                operation=AuditOperation(rec.operation),
                subject_hash=sh,
                sealed=_encrypt(key, dumps_record(dict(rec.details)), eid),
                attestation=bytes(rec.attestation),
            )
            tree.insert(entry.leaf)
            entry_writes = [
                (AUDIT.key(be_u64(index)), dumps_record(entry.to_record())),
                (AUDIT_IDS.key(eid), be_u64(index)),
                (AUDIT_KEYS.key(be_u64(index)), key),
            ]
            writes.extend(entry_writes)
            undo.extend((k, None) for k, _ in entry_writes)
            entries.append(entry)
        writes.append((_TREE_KEY, tree.snapshot()))
        undo.append((_TREE_KEY, self._tree.snapshot()))
        return StagedAudit(base, entries, writes, undo, tree)

    def apply(self, staged: StagedAudit) -> None:
        """Adopt a staged tree once its writes are committed."""
        if staged.base_index != self._tree.next_index:
            raise AuditError("staged audit entries are stale",
                             staged=staged.base_index, current=self._tree.next_index)
        self._tree = staged.tree
        for e in staged.entries:
            log.info("audit entry logged",
                     extra={"index": e.index, "operation": e.operation.value,
                            "entry_id": e.entry_id.hex()})

    def log(self, record: AuditRecord) -> AuditEntry:
        """Stage, commit and apply a single record."""
        with self.lock:
            staged = self.stage([record])
            with self._kv.batch() as b:
                for k, v in staged.writes:
                    b.put(k, v)
            self.apply(staged)
        return staged.entries[0]

    def log_deposit(self, commitment: int, amount: int) -> AuditEntry:
        return self.log(deposit_record(commitment, amount))

    def log_withdrawal(self, nullifier_hash: int, amount: int, recipient: AddressLike,
                       root: int, attestation: bytes = b"") -> AuditEntry:
        return self.log(withdrawal_record(nullifier_hash, amount, normalize_address(recipient),
                                          root, attestation))

    def log_compliance_check(self, nullifier_hash: int, provider: AddressLike,
                             association_root: int, passed: bool = True) -> AuditEntry:
        return self.log(compliance_record(nullifier_hash, normalize_address(provider),
                                          association_root, passed))

    def log_provider_update(self, provider: AddressLike, new_root: int,
                            previous_root: int = 0) -> AuditEntry:
        return self.log(provider_update_record(normalize_address(provider), new_root, previous_root))

    # ---- reads ---------------------------------------------------------------------------

    def get_entry(self, entry_id: bytes) -> Optional[AuditEntry]:
        idx = self._kv.get(AUDIT_IDS.key(bytes(entry_id)))
        if idx is None:
            return None
        rec = get_record(self._kv, AUDIT.key(idx))
        return None if rec is None else AuditEntry.from_record(rec)

    def entries(self) -> List[AuditEntry]:
        return [AuditEntry.from_record(rec) for _, rec in iter_records(self._kv, AUDIT.raw)]

    def query(
        self,
        *,
        operation: Optional[AuditOperation] = None,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        subject: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Entries in log order matching every given filter; times are inclusive."""
        op = AuditOperation(operation) if operation is not None else None
        sh = subject_hash(subject) if subject is not None else None
        out: List[AuditEntry] = []
        for e in self.entries():
            if op is not None and e.operation != op:
                continue
            if start_time is not None and e.timestamp < start_time:
                continue
            if end_time is not None and e.timestamp > end_time:
                continue
            if sh is not None and e.subject_hash != sh:
                continue
            out.append(e)
        return out

    def inclusion_proof(self, entry_id: bytes) -> AuditInclusionProof:
        entry = self._require(entry_id)
        leaves = [from_bytes32(rec["leaf"]) for _, rec in iter_records(self._kv, AUDIT.raw)]
        if len(leaves) != self._tree.next_index or leaves[entry.index] != entry.leaf:
            raise StorageError("stored audit leaves disagree with the audit tree",
                               stored=len(leaves), tree=self._tree.next_index)
        path = merkle_path(leaves, entry.index, self._tree.depth)
        return AuditInclusionProof(entry.entry_id, entry.leaf, path)

    def verify_inclusion(self, proof: AuditInclusionProof) -> bool:
        """True iff the proof checks out against a root this trail has published."""
        return self.is_known_root(proof.root) and verify_inclusion_proof(proof)

    def selective_disclosure(self, entry_id: bytes, regulator_key: bytes) -> Disclosure:
        rkey = _check_key(regulator_key, "regulator key")
        entry = self._require(entry_id)
        key = self._kv.get(AUDIT_KEYS.key(be_u64(entry.index)))
        if key is None:
            raise AuditError("no disclosure key stored for entry", index=entry.index)
        wrapped = _encrypt(rkey, key, entry.entry_id)
        log.info("audit entry disclosed", extra={"index": entry.index,
                                                 "entry_id": entry.entry_id.hex()})
        return Disclosure(entry, wrapped, self.inclusion_proof(entry.entry_id))

    def _require(self, entry_id: bytes) -> AuditEntry:
        entry = self.get_entry(entry_id)
        if entry is None:
            raise AuditError("unknown audit entry", entry_id=bytes(entry_id).hex())
        return entry


def provider_subject(provider: AddressLike) -> int:
    """Subject value provider updates are filed under; pass to `query(subject=...)`."""
    return int.from_bytes(normalize_address(provider), "big")


__all__ = [
    "AuditOperation",
    "AuditRecord",
    "AuditEntry",
    "AuditInclusionProof",
    "AuditTrail",
    "Disclosure",
    "StagedAudit",
    "deposit_record",
    "withdrawal_record",
    "compliance_record",
    "provider_update_record",
    "provider_subject",
    "subject_hash",
    "entry_leaf",
    "verify_inclusion_proof",
    "open_disclosure",
]
