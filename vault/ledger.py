"""
vault.ledger
============

The withdrawal ledger: deposits append commitments to the incremental tree,
withdrawals spend nullifiers against a recent root after the proof checks out.

Atomicity
---------
Every mutation runs under the ledger's write lock and follows one shape:

1. run every check against the current state,
2. apply the change to a *copy* of the tree,
3. commit all records in one KV batch,
4. move funds; only then swap the in-memory tree and counters.

A failed check or a failed commit leaves state and storage as they were and
moves no value. A refused transfer reverts the committed records with a second
batch. Funds never move for a record that storage does not hold, so a retried
withdrawal cannot be paid twice. Readers take no lock; during a refused
transfer they can briefly see the records that are about to be reverted.

With an `AuditTrail` attached, its entries for the operation are part of the
same commit and the same revert. A compliant withdrawal logs the passed
compliance check and the withdrawal; rejected operations log nothing.

Withdrawal check order
----------------------
recipient -> amount -> nullifier unspent -> root known -> attestation
(when given) -> proof. The compliance variant first requires an active
provider and a valid association proof.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from zk.verifiers import VerifierMode, WithdrawalVerifier, ZKError
from zk.verifiers.field import P, from_bytes32, parse_field, to_bytes32, to_hex

from .association import AssociationRegistry, check_association_proof
from .audit import (AuditRecord, AuditTrail, StagedAudit, compliance_record,
                    deposit_record, withdrawal_record)
from .boundary import expected_attestation_hash
from .config import DepositLimits, TreeConfig, VaultConfig
from .db import open_kv
from .db.kv import (DEPOSITORS, DEPOSITS, EVENTS, KV, LEAVES, META,
                    NULLIFIERS, be_u32, be_u64, dumps_record, get_record,
                    iter_records)
from .encoding import (ZERO_ADDRESS, AddressLike, address_hex,
                       address_to_field, is_zero_address, normalize_address)
from .errors import (ConfigError, DoubleSpend, InvalidAmount,
                     InvalidAttestation, InvalidCommitment, InvalidProof,
                     InvalidRecipient, ProviderNotActive, StorageError,
                     TransferFailed, UnknownRoot, VaultError, wrap)
from .events import DepositEvent, Event, WithdrawalEvent, event_from_record
from .funds import FundsPort, InMemoryFunds
from .logging import get_logger, trace_scope
from .tree import IncrementalMerkleTree

log = get_logger("vault.ledger")

FieldInput = Union[int, str, bytes]

_TREE_KEY = META.key("tree")
_STATS_KEY = META.key("stats")
_SCHEMA_KEY = META.key("schema")
SCHEMA_VERSION = 1


@dataclass(frozen=True)
class DepositRecord:
    commitment: int
    amount: int
    timestamp: int
    leaf_index: int
    depositor: Optional[bytes] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            "commitment": to_bytes32(self.commitment),
            "amount": self.amount,
            "timestamp": self.timestamp,
            "leaf_index": self.leaf_index,
            "depositor": self.depositor,
        }

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "DepositRecord":
        dep = rec.get("depositor")
        return cls(
            commitment=from_bytes32(rec["commitment"]),
            amount=rec["amount"],
            timestamp=rec["timestamp"],
            leaf_index=rec["leaf_index"],
            depositor=bytes(dep) if dep is not None else None,
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "commitment": to_hex(self.commitment),
            "amount": str(self.amount),
            "timestamp": self.timestamp,
            "leafIndex": self.leaf_index,
            "depositor": address_hex(self.depositor) if self.depositor else None,
        }


@dataclass(frozen=True)
class DepositReceipt:
    commitment: int
    leaf_index: int
    root: int
    amount: int
    timestamp: int

    def to_json(self) -> Dict[str, Any]:
        return {
            "commitment": to_hex(self.commitment),
            "leafIndex": self.leaf_index,
            "root": to_hex(self.root),
            "amount": str(self.amount),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class WithdrawalReceipt:
    nullifier_hash: int
    recipient: bytes
    amount: int
    root: int
    timestamp: int
    mode: VerifierMode
    association_root: Optional[int] = None

    def to_json(self) -> Dict[str, Any]:
        out = {
            "nullifierHash": to_hex(self.nullifier_hash),
            "recipient": address_hex(self.recipient),
            "amount": str(self.amount),
            "root": to_hex(self.root),
            "timestamp": self.timestamp,
            "mode": self.mode.value,
        }
        if self.association_root is not None:
            out["associationRoot"] = to_hex(self.association_root)
        return out


@dataclass(frozen=True)
class LedgerStats:
    total_deposits: int = 0
    total_withdrawals: int = 0
    total_deposited: int = 0
    total_withdrawn: int = 0
    event_seq: int = 0

    def to_record(self) -> Dict[str, int]:
        return {
            "total_deposits": self.total_deposits,
            "total_withdrawals": self.total_withdrawals,
            "total_deposited": self.total_deposited,
            "total_withdrawn": self.total_withdrawn,
            "event_seq": self.event_seq,
        }

    @classmethod
    def from_record(cls, rec: Dict[str, int]) -> "LedgerStats":
        return cls(**rec)

    @property
    def pool_balance(self) -> int:
        return self.total_deposited - self.total_withdrawn


class Ledger:
    """
    >>> from vault.db import open_kv
    >>> ledger = Ledger(open_kv("memory://"))
    >>> ledger.get_next_leaf_index()
    0
    """

    def __init__(
        self,
        kv: KV,
        *,
        config: Optional[VaultConfig] = None,
        verifier: Optional[WithdrawalVerifier] = None,
        funds: Optional[FundsPort] = None,
        registry: Optional[AssociationRegistry] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._kv = kv
        self.config = config
        tree_cfg = config.tree if config is not None else TreeConfig()
        self.limits: DepositLimits = config.deposits if config is not None else DepositLimits()
        self.verifier = verifier if verifier is not None else WithdrawalVerifier()
        self.registry = registry
        self.audit = audit
        self._clock = clock
        self._lock = threading.RLock()

        blob = kv.get(_TREE_KEY)
        if blob is None:
            self._tree = IncrementalMerkleTree(depth=tree_cfg.depth, history_size=tree_cfg.history_size)
        else:
            self._tree = IncrementalMerkleTree.restore(blob, expect_depth=tree_cfg.depth)
        stats = get_record(kv, _STATS_KEY)
        self._stats = LedgerStats.from_record(stats) if stats else LedgerStats()
        # without a real port, the pool holds exactly what the ledger has recorded
        self.funds: FundsPort = funds if funds is not None else InMemoryFunds(self._stats.pool_balance)
        if kv.get(_SCHEMA_KEY) is None:
            kv.put(_SCHEMA_KEY, dumps_record(SCHEMA_VERSION))
        log.debug(
            "ledger opened",
            extra={"depth": self._tree.depth, "next_index": self._tree.next_index,
                   "mode": self.verifier.mode.value},
        )

    @classmethod
    def open(cls, config: VaultConfig, *, funds: Optional[FundsPort] = None,
             clock: Callable[[], float] = time.time) -> "Ledger":
        """Build a ledger and its collaborators from configuration."""
        vk_path = config.verifier.verifying_key_path
        if vk_path is not None:
            try:
                verifier = WithdrawalVerifier.from_vk_file(
                    str(vk_path), max_records=config.verifier.max_records)
            except ZKError as e:
                raise ConfigError(f"cannot load verifying key: {e}", path=str(vk_path)) from e
        elif config.fallback_allowed:
            verifier = WithdrawalVerifier(max_records=config.verifier.max_records)
        else:
            raise ConfigError("fallback verification is disabled and no verifying key is set",
                              network=config.network)
        kv = open_kv(config.db.uri)
        audit = AuditTrail(kv, clock=clock)
        registry = AssociationRegistry(
            kv, admin=config.association.admin, history_size=config.association.history_size,
            clock=clock, audit=audit,
        )
        return cls(kv, config=config, verifier=verifier, funds=funds,
                   registry=registry, audit=audit, clock=clock)

    def close(self) -> None:
        self._kv.close()

    # ---- deposit -------------------------------------------------------------------------

    def deposit(self, commitment: FieldInput, value: int,
                *, depositor: Optional[AddressLike] = None) -> DepositReceipt:
        with self._lock, self._audit_lock(), self._op("deposit"):
            value = int(value)
            if value >= P:
                raise InvalidAmount("deposit amount must be below the field modulus", amount=value)
            if not self.limits.contains(value):
                raise InvalidAmount(
                    "deposit outside allowed range", amount=value,
                    min_deposit=self.limits.min_deposit, max_deposit=self.limits.max_deposit,
                )
            c = _field(commitment, InvalidCommitment, "commitment")
            c32 = to_bytes32(c)
            if c == 0:
                raise InvalidCommitment("commitment must be non-zero")
            if self._kv.has(DEPOSITS.key(c32)):
                raise InvalidCommitment("commitment already deposited", commitment=to_hex(c))
            who = normalize_address(depositor) if depositor is not None else None

            tree = self._tree.copy()
            index = tree.insert(c)
            ts = int(self._clock())
            stats = LedgerStats(
                total_deposits=self._stats.total_deposits + 1,
                total_withdrawals=self._stats.total_withdrawals,
                total_deposited=self._stats.total_deposited + value,
                total_withdrawn=self._stats.total_withdrawn,
                event_seq=self._stats.event_seq + 1,
            )
            record = DepositRecord(c, value, ts, index, who)
            event = DepositEvent(commitment=c, leaf_index=index, amount=value, timestamp=ts)

            event_key = EVENTS.key(be_u64(self._stats.event_seq))
            writes = [
                (DEPOSITS.key(c32), dumps_record(record.to_record())),
                (LEAVES.key(be_u32(index)), c32),
                (event_key, dumps_record(event.to_record())),
                (_TREE_KEY, tree.snapshot()),
                (_STATS_KEY, dumps_record(stats.to_record())),
            ]
            undo: List[Tuple[bytes, Optional[bytes]]] = [
                (DEPOSITS.key(c32), None),
                (LEAVES.key(be_u32(index)), None),
                (event_key, None),
                (_TREE_KEY, self._tree.snapshot()),
                (_STATS_KEY, dumps_record(self._stats.to_record())),
            ]
            if who is not None:
                writes.append((DEPOSITORS.key(who, be_u32(index)), c32))
                undo.append((DEPOSITORS.key(who, be_u32(index)), None))
            staged = self._stage_audit([deposit_record(c, value, who)], ts, writes, undo)

            try:
                self._commit_then_move(writes, undo, self.funds.pay_in, who or ZERO_ADDRESS, value)
            except TransferFailed as e:
                if e.data.get("recorded"):
                    self._tree, self._stats = tree, stats
                    self._apply_audit(staged)
                raise

            self._tree = tree
            self._stats = stats
            self._apply_audit(staged)
            log.info(
                "deposit accepted",
                extra={"commitment": to_hex(c), "leaf_index": index,
                       "root": to_hex(tree.root), "amount": value},
            )
            return DepositReceipt(c, index, tree.root, value, ts)

    # ---- withdraw ------------------------------------------------------------------------

    def withdraw(self, nullifier_hash: FieldInput, root: FieldInput, recipient: AddressLike,
                 amount: int, proof: bytes, attestation: bytes = b"") -> WithdrawalReceipt:
        with self._lock, self._audit_lock(), self._op("withdraw"):
            return self._withdraw(nullifier_hash, root, recipient, amount, proof, attestation)

    def withdraw_with_compliance(self, nullifier_hash: FieldInput, root: FieldInput,
                                 recipient: AddressLike, amount: int, proof: bytes,
                                 association_proof: bytes, provider: AddressLike) -> WithdrawalReceipt:
        with self._lock, self._audit_lock(), self._op("withdraw_with_compliance"):
            if self.registry is None:
                raise ProviderNotActive("no association registry configured")
            try:
                active = self.registry.is_active(provider)
            except InvalidRecipient as e:
                raise ProviderNotActive(f"malformed provider id: {e.message}") from e
            if not active:
                raise ProviderNotActive(provider=_addr_preview(provider))
            r = _field(root, UnknownRoot, "root")
            assoc_root = check_association_proof(bytes(association_proof), r, provider, self.registry)
            return self._withdraw(nullifier_hash, root, recipient, amount, proof, b"",
                                  association_root=assoc_root,
                                  provider=normalize_address(provider))

    def _withdraw(self, nullifier_hash: FieldInput, root: FieldInput, recipient: AddressLike,
                  amount: int, proof: bytes, attestation: bytes,
                  *, association_root: Optional[int] = None,
                  provider: Optional[bytes] = None) -> WithdrawalReceipt:
        to = normalize_address(recipient)
        if is_zero_address(to):
            raise InvalidRecipient("recipient is the zero address")
        amount = int(amount)
        if amount <= 0:
            raise InvalidAmount("withdrawal amount must be positive", amount=amount)
        if amount >= P:
            raise InvalidAmount("withdrawal amount must be below the field modulus", amount=amount)
        nh = _field(nullifier_hash, InvalidProof, "nullifier hash")
        r = _field(root, UnknownRoot, "root")
        nh32 = to_bytes32(nh)
        if self._kv.has(NULLIFIERS.key(nh32)):
            raise DoubleSpend(nullifier_hash=to_hex(nh))
        if not self._tree.is_known_root(r):
            raise UnknownRoot(root=to_hex(r))
        if attestation:
            _check_attestation(bytes(attestation), nh, r)

        inputs = [r, nh, address_to_field(to), amount]
        result = self.verifier.check(bytes(proof), inputs)
        if not result.ok:
            raise InvalidProof(result.message or "proof rejected", mode=result.mode)

        ts = int(self._clock())
        stats = LedgerStats(
            total_deposits=self._stats.total_deposits,
            total_withdrawals=self._stats.total_withdrawals + 1,
            total_deposited=self._stats.total_deposited,
            total_withdrawn=self._stats.total_withdrawn + amount,
            event_seq=self._stats.event_seq + 1,
        )
        event = WithdrawalEvent(nullifier_hash=nh, recipient=to, amount=amount, root=r, timestamp=ts)
        spend = {"root": to_bytes32(r), "recipient": to, "amount": amount, "timestamp": ts}

        event_key = EVENTS.key(be_u64(self._stats.event_seq))
        writes = [
            (NULLIFIERS.key(nh32), dumps_record(spend)),
            (event_key, dumps_record(event.to_record())),
            (_STATS_KEY, dumps_record(stats.to_record())),
        ]
        undo = [
            (NULLIFIERS.key(nh32), None),
            (event_key, None),
            (_STATS_KEY, dumps_record(self._stats.to_record())),
        ]
        records: List[AuditRecord] = []
        if association_root is not None and provider is not None:
            records.append(compliance_record(nh, provider, association_root))
        records.append(withdrawal_record(nh, amount, to, r, bytes(attestation)))
        staged = self._stage_audit(records, ts, writes, undo)

        try:
            self._commit_then_move(writes, undo, self.funds.pay_out, to, amount)
        except TransferFailed as e:
            if e.data.get("recorded"):
                self._stats = stats
                self._apply_audit(staged)
            raise

        self._stats = stats
        self._apply_audit(staged)
        log.info(
            "withdrawal accepted",
            extra={"nullifier_hash": to_hex(nh), "root": to_hex(r),
                   "recipient": address_hex(to), "amount": amount, "mode": result.mode},
        )
        return WithdrawalReceipt(nh, to, amount, r, ts, self.verifier.mode, association_root)

    # ---- views ---------------------------------------------------------------------------

    def get_latest_root(self) -> int:
        return self._tree.root

    def get_next_leaf_index(self) -> int:
        return self._tree.next_index

    def root_history(self) -> List[int]:
        return self._tree.root_history()

    def is_nullifier_used(self, nullifier_hash: FieldInput) -> bool:
        return self._kv.has(NULLIFIERS.key(to_bytes32(parse_field(nullifier_hash))))

    def is_known_root(self, root: FieldInput) -> bool:
        return self._tree.is_known_root(parse_field(root))

    def get_deposit(self, commitment: FieldInput) -> Optional[DepositRecord]:
        rec = get_record(self._kv, DEPOSITS.key(to_bytes32(parse_field(commitment))))
        return None if rec is None else DepositRecord.from_record(rec)

    def get_user_deposits(self, depositor: AddressLike) -> List[DepositRecord]:
        who = normalize_address(depositor)
        prefix = DEPOSITORS.key(who)
        out: List[DepositRecord] = []
        for _, c32 in self._kv.iter_prefix(prefix):
            rec = self.get_deposit(c32)
            if rec is not None:
                out.append(rec)
        return out

    def get_leaves(self) -> List[int]:
        """Commitments in insertion order; enough to prepare any Merkle path."""
        return [from_bytes32(v) for _, v in self._kv.iter_prefix(LEAVES.raw)]

    def stats(self) -> LedgerStats:
        return self._stats

    def events(self, since: int = 0) -> List[Event]:
        out: List[Event] = []
        for key, rec in iter_records(self._kv, EVENTS.raw):
            seq = int.from_bytes(key[-8:], "big")
            if seq >= since:
                out.append(event_from_record(rec))
        return out

    @property
    def depth(self) -> int:
        return self._tree.depth

    @property
    def mode(self) -> VerifierMode:
        return self.verifier.mode

    # ---- internals -----------------------------------------------------------------------

    def _commit_then_move(
        self,
        writes: List[Tuple[bytes, bytes]],
        undo: List[Tuple[bytes, Optional[bytes]]],
        move: Callable[[bytes, int], None],
        who: bytes,
        amount: int,
    ) -> None:
        """
        Commit `writes`, then move funds. A refused transfer reverts the commit
        with `undo` (None deletes the key) and raises `TransferFailed`.

        A storage failure on the first commit moves nothing. When the revert
        itself fails the records stay committed and the raised error carries
        `recorded=True`; value never moves without a committed record.
        """
        with self._kv.batch() as b:
            for k, v in writes:
                b.put(k, v)
        try:
            self._move_funds(move, who, amount)
        except TransferFailed as err:
            try:
                with self._kv.batch() as b:
                    for k, prior in undo:
                        if prior is None:
                            b.delete(k)
                        else:
                            b.put(k, prior)
            except StorageError as e:
                log.error(
                    "could not revert records after a refused transfer",
                    extra={"amount": amount, "storage_error": e.message},
                )
                raise err.with_context(recorded=True) from e
            raise

    def _audit_lock(self):
        return self.audit.lock if self.audit is not None else nullcontext()

    def _stage_audit(
        self,
        records: List[AuditRecord],
        ts: int,
        writes: List[Tuple[bytes, bytes]],
        undo: List[Tuple[bytes, Optional[bytes]]],
    ) -> Optional[StagedAudit]:
        """Stage audit entries into the same commit and undo lists."""
        if self.audit is None:
            return None
        staged = self.audit.stage(records, timestamp=ts)
        writes.extend(staged.writes)
        undo.extend(staged.undo)
        return staged

    def _apply_audit(self, staged: Optional[StagedAudit]) -> None:
        if staged is not None and self.audit is not None:
            self.audit.apply(staged)

    @staticmethod
    def _move_funds(move: Callable[[bytes, int], None], who: bytes, amount: int) -> None:
        try:
            move(who, amount)
        except TransferFailed:
            raise
        except Exception as e:
            raise wrap(e, as_=TransferFailed, amount=amount) from e

    @contextmanager
    def _op(self, op: str) -> Iterator[None]:
        with trace_scope(component="ledger", op=op):
            try:
                yield
            except VaultError as e:
                log.warning(
                    "%s rejected: %s", op, e.message,
                    extra={"code": str(getattr(e.code, "value", e.code)), "data": e.data},
                )
                raise


def _field(value: FieldInput, err: type, what: str) -> int:
    try:
        return parse_field(value)
    except (ZKError, ValueError, TypeError) as e:
        raise err(f"malformed {what}: {e}") from e


def _check_attestation(blob: bytes, nullifier_hash: int, root: int) -> None:
    if len(blob) < 32:
        raise InvalidAttestation("attestation shorter than 32 bytes", length=len(blob))
    if blob[:32] != expected_attestation_hash(nullifier_hash, root):
        raise InvalidAttestation()


def _addr_preview(addr: AddressLike) -> str:
    if isinstance(addr, (bytes, bytearray)):
        return "0x" + bytes(addr).hex()
    return str(addr)


__all__ = [
    "Ledger",
    "DepositRecord",
    "DepositReceipt",
    "WithdrawalReceipt",
    "LedgerStats",
]
