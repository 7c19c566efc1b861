"""
Association (compliance) accumulator.

Two halves:

Registry (ledger side)
    `AssociationRegistry` keeps one record per provider in the KV store under
    `PROVIDERS | provider`. A provider publishes the root of its approved set
    with `update_root`; the previous root is pushed into a ring of
    `history_size` entries first, so a withdrawal prepared against a slightly
    stale root still binds. Activation and reputation are admin-only. With an
    `AuditTrail` attached, each root update is logged in the same batch.

Provider side
    `AssociationSet` curates approved commitments in the same incremental
    tree the ledger uses, refuses excluded commitments and enforces a maximum
    set size. Under `PolicyType.RESTRICTIVE` a commitment must first be
    screened in with `allow()`; `PERMISSIVE` admits anything not excluded.
    Removing a commitment rebuilds the tree from the remaining leaves in
    their original order. `publish()` pushes its root into the registry.

Association proof
    64 bytes: ``user_root(32) | association_root(32)``. The ledger accepts it
    when the first half equals the withdrawal's root and the second half is a
    canonical root the provider currently has or recently had. This binds two
    roots that are each verified elsewhere; path membership itself is expected
    inside the withdrawal proof.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from zk.verifiers.field import (from_bytes32, is_canonical_bytes, reduce, to_bytes32,
                                to_hex)

from .audit import AuditTrail, provider_update_record
from .db.kv import KV, PROVIDERS, dumps_record, get_record, iter_records
from .encoding import AddressLike, address_hex, normalize_address
from .errors import (AssociationRejected, InvalidAssociationProof,
                     NotAuthorized, ProviderNotActive)
from .logging import get_logger
from .merkle import MerklePath, merkle_path, merkle_verify
from .tree import DEFAULT_HISTORY, IncrementalMerkleTree

log = get_logger("vault.association")

ASSOCIATION_PROOF_BYTES = 64
DEFAULT_REPUTATION = 100
HIGH_REPUTATION = 80
DEFAULT_SET_DEPTH = 20
DEFAULT_MAX_SET_SIZE = 1_000_000


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass
class AssociationProvider:
    provider: bytes
    name: str
    current_root: int = 0
    root_history: List[int] = field(default_factory=list)
    reputation_score: int = DEFAULT_REPUTATION
    active: bool = True
    registered_at: int = 0

    def knows_root(self, root: int) -> bool:
        r = reduce(root)
        if r == 0:
            return False
        return r == self.current_root or r in self.root_history

    def to_record(self) -> dict:
        return {
            "provider": self.provider,
            "name": self.name,
            "current_root": to_bytes32(self.current_root),
            "root_history": [to_bytes32(r) for r in self.root_history],
            "reputation": self.reputation_score,
            "active": self.active,
            "registered_at": self.registered_at,
        }

    @classmethod
    def from_record(cls, rec: dict) -> "AssociationProvider":
        return cls(
            provider=bytes(rec["provider"]),
            name=rec["name"],
            current_root=from_bytes32(rec["current_root"]),
            root_history=[from_bytes32(r) for r in rec["root_history"]],
            reputation_score=rec["reputation"],
            active=rec["active"],
            registered_at=rec.get("registered_at", 0),
        )

    def to_json(self) -> dict:
        return {
            "provider": address_hex(self.provider),
            "name": self.name,
            "currentRoot": to_hex(self.current_root),
            "rootHistory": [to_hex(r) for r in self.root_history],
            "reputationScore": self.reputation_score,
            "active": self.active,
        }


class AssociationRegistry:
    """
    Provider lifecycle and root bookkeeping.

    `admin` may activate/deactivate providers and set reputation. A provider
    may register itself; the admin may register anyone.
    """

    def __init__(
        self,
        kv: KV,
        admin: Optional[AddressLike] = None,
        history_size: int = DEFAULT_HISTORY,
        clock: Callable[[], float] = time.time,
        audit: Optional[AuditTrail] = None,
    ) -> None:
        if history_size < 1:
            raise ValueError("history_size must be >= 1")
        self._kv = kv
        self.audit = audit
        self.admin = normalize_address(admin) if admin else None
        self.history_size = history_size
        self._clock = clock

    # ---- writes --------------------------------------------------------------------------

    def register_provider(
        self,
        caller: AddressLike,
        provider: AddressLike,
        name: str,
        initial_root: int = 0,
        reputation: int = DEFAULT_REPUTATION,
    ) -> AssociationProvider:
        who = normalize_address(caller)
        pid = normalize_address(provider)
        if who != pid and not self._is_admin(who):
            raise NotAuthorized("only the provider or the admin may register it",
                                caller=address_hex(who))
        if self.is_registered(pid):
            raise NotAuthorized("provider already registered", provider=address_hex(pid))
        rec = AssociationProvider(
            provider=pid,
            name=name,
            current_root=reduce(initial_root),
            reputation_score=int(reputation),
            active=True,
            registered_at=int(self._clock()),
        )
        self._save(rec)
        log.info("association provider registered",
                 extra={"provider": address_hex(pid), "provider_name": name})
        return rec

    def update_root(self, caller: AddressLike, new_root: int) -> None:
        """Provider-authenticated: the caller updates its own root."""
        pid = normalize_address(caller)
        rec = self._require(pid)
        root = reduce(new_root)
        previous = rec.current_root
        if previous != 0:
            rec.root_history.append(previous)
            del rec.root_history[:-self.history_size]
        rec.current_root = root
        if self.audit is None:
            self._save(rec)
        else:
            with self.audit.lock:
                staged = self.audit.stage([provider_update_record(pid, root, previous)],
                                          timestamp=int(self._clock()))
                self._save(rec, staged.writes)
                self.audit.apply(staged)
        log.info("association root updated",
                 extra={"provider": address_hex(pid), "root": to_hex(root)})

    def set_active(self, caller: AddressLike, provider: AddressLike, active: bool) -> None:
        self._require_admin(caller)
        rec = self._require(normalize_address(provider))
        rec.active = bool(active)
        self._save(rec)

    def set_reputation(self, caller: AddressLike, provider: AddressLike, score: int) -> None:
        self._require_admin(caller)
        rec = self._require(normalize_address(provider))
        rec.reputation_score = int(score)
        self._save(rec)

    # ---- reads ---------------------------------------------------------------------------

    def is_registered(self, provider: AddressLike) -> bool:
        return self._kv.has(PROVIDERS.key(normalize_address(provider)))

    def get_provider(self, provider: AddressLike) -> Optional[AssociationProvider]:
        rec = get_record(self._kv, PROVIDERS.key(normalize_address(provider)))
        return None if rec is None else AssociationProvider.from_record(rec)

    def get_provider_root(self, provider: AddressLike) -> int:
        rec = self.get_provider(provider)
        return 0 if rec is None else rec.current_root

    def is_historical_root(self, provider: AddressLike, root: int) -> bool:
        rec = self.get_provider(provider)
        return rec is not None and rec.knows_root(root)

    def is_active(self, provider: AddressLike) -> bool:
        rec = self.get_provider(provider)
        return rec is not None and rec.active

    def get_active_providers(self) -> List[AssociationProvider]:
        return [p for p in self._all() if p.active]

    def get_high_reputation_providers(self, min_score: int = HIGH_REPUTATION) -> List[AssociationProvider]:
        return [p for p in self._all() if p.active and p.reputation_score >= min_score]

    # ---- internals -----------------------------------------------------------------------

    def _all(self) -> List[AssociationProvider]:
        return [AssociationProvider.from_record(r) for _, r in iter_records(self._kv, PROVIDERS.raw)]

    def _is_admin(self, who: bytes) -> bool:
        return self.admin is not None and who == self.admin

    def _require_admin(self, caller: AddressLike) -> None:
        who = normalize_address(caller)
        if not self._is_admin(who):
            raise NotAuthorized("admin only", caller=address_hex(who))

    def _require(self, pid: bytes) -> AssociationProvider:
        rec = self.get_provider(pid)
        if rec is None:
            raise ProviderNotActive("provider not registered", provider=address_hex(pid))
        return rec

    def _save(self, rec: AssociationProvider, extra: Sequence[Tuple[bytes, bytes]] = ()) -> None:
        with self._kv.batch() as b:
            b.put(PROVIDERS.key(rec.provider), dumps_record(rec.to_record()))
            for k, v in extra:
                b.put(k, v)


# ---------------------------------------------------------------------------
# Association proof
# ---------------------------------------------------------------------------


def encode_association_proof(user_root: int, association_root: int) -> bytes:
    return to_bytes32(user_root) + to_bytes32(association_root)


def check_association_proof(
    blob: bytes, root: int, provider: AddressLike, registry: AssociationRegistry
) -> int:
    """
    Return the association root carried by `blob`, or raise
    InvalidAssociationProof.
    """
    if len(blob) < ASSOCIATION_PROOF_BYTES:
        raise InvalidAssociationProof("association proof must be 64 bytes", length=len(blob))
    if blob[:32] != to_bytes32(root):
        raise InvalidAssociationProof("association proof is bound to a different root")
    if not is_canonical_bytes(blob[32:64]):
        raise InvalidAssociationProof("association root is not a canonical field element")
    assoc_root = int.from_bytes(blob[32:64], "big")
    if not registry.is_historical_root(provider, assoc_root):
        raise InvalidAssociationProof("association root not published by provider",
                                      association_root=to_hex(assoc_root))
    return assoc_root


# ---------------------------------------------------------------------------
# Provider-side set
# ---------------------------------------------------------------------------


class PolicyType(str, Enum):
    PERMISSIVE = "permissive"
    RESTRICTIVE = "restrictive"


class ExclusionList:
    """Exact and prefix exclusions over 32-byte commitments."""

    def __init__(self, source: str = "") -> None:
        self.source = source
        self.last_update = 0
        self._exact: Set[bytes] = set()
        self._prefixes: List[bytes] = []

    def add_exact(self, commitment: Union[int, bytes]) -> None:
        self._exact.add(_as_bytes32(commitment))

    def add_prefix(self, prefix: bytes) -> None:
        if not prefix or len(prefix) > 32:
            raise ValueError("prefix must be 1..32 bytes")
        self._prefixes.append(bytes(prefix))

    def is_excluded(self, commitment: Union[int, bytes]) -> bool:
        c = _as_bytes32(commitment)
        if c in self._exact:
            return True
        return any(c.startswith(p) for p in self._prefixes)

    def __len__(self) -> int:
        return len(self._exact) + len(self._prefixes)


def _as_bytes32(x: Union[int, bytes]) -> bytes:
    if isinstance(x, int):
        return to_bytes32(x)
    if len(x) != 32:
        raise ValueError("commitment must be 32 bytes")
    return bytes(x)


class AssociationSet:
    """An ASP's curated set of approved deposit commitments."""

    def __init__(
        self,
        provider: AddressLike,
        name: str = "Default ASP",
        *,
        depth: int = DEFAULT_SET_DEPTH,
        max_set_size: int = DEFAULT_MAX_SET_SIZE,
        policy: PolicyType = PolicyType.PERMISSIVE,
        exclusions: Optional[ExclusionList] = None,
    ) -> None:
        self.provider = normalize_address(provider)
        self.name = name
        self.policy = PolicyType(policy)
        self.max_set_size = max_set_size
        self.exclusions = exclusions if exclusions is not None else ExclusionList()
        self._tree = IncrementalMerkleTree(depth=depth, history_size=1)
        self._leaves: List[int] = []
        self._index: Dict[int, int] = {}
        self._allowed: Set[int] = set()

    @property
    def root(self) -> int:
        return self._tree.root

    @property
    def depth(self) -> int:
        return self._tree.depth

    def __len__(self) -> int:
        return len(self._leaves)

    def allow(self, commitment: int) -> None:
        """Screen a commitment in; required before adding under RESTRICTIVE."""
        self._allowed.add(reduce(commitment))

    def add_commitment(self, commitment: int) -> int:
        c = reduce(commitment)
        if c in self._index:
            return self._index[c]
        if self.exclusions.is_excluded(c):
            raise AssociationRejected("commitment is excluded", commitment=to_hex(c))
        if self.policy is PolicyType.RESTRICTIVE and c not in self._allowed:
            raise AssociationRejected("commitment was not screened in", commitment=to_hex(c))
        if len(self._leaves) >= self.max_set_size:
            raise AssociationRejected("association set is full", max_set_size=self.max_set_size)
        idx = self._tree.insert(c)
        self._leaves.append(c)
        self._index[c] = idx
        return idx

    def remove_commitment(self, commitment: int) -> bool:
        """Drop a commitment and rebuild the tree; False if it was not in the set."""
        c = reduce(commitment)
        if c not in self._index:
            return False
        self._leaves.remove(c)
        self._allowed.discard(c)
        tree = IncrementalMerkleTree(depth=self._tree.depth, history_size=1)
        for leaf in self._leaves:
            tree.insert(leaf)
        self._tree = tree
        self._index = {leaf: i for i, leaf in enumerate(self._leaves)}
        return True

    def set_exclusion_list(self, exclusions: ExclusionList) -> None:
        self.exclusions = exclusions

    def is_approved(self, commitment: int) -> bool:
        c = reduce(commitment)
        return c in self._index and not self.exclusions.is_excluded(c)

    def membership_path(self, commitment: int) -> MerklePath:
        c = reduce(commitment)
        if c not in self._index:
            raise AssociationRejected("commitment not in association set", commitment=to_hex(c))
        if self.exclusions.is_excluded(c):
            raise AssociationRejected("commitment is excluded", commitment=to_hex(c))
        return merkle_path(self._leaves, self._index[c], self._tree.depth)

    def verify_membership(self, commitment: int, path: MerklePath) -> bool:
        """True iff `path` proves an admitted commitment against the current root."""
        c = reduce(commitment)
        if self.exclusions.is_excluded(c):
            return False
        return (reduce(path.leaf) == c and reduce(path.root) == self.root
                and merkle_verify(c, path))

    def publish(self, registry: AssociationRegistry) -> int:
        registry.update_root(self.provider, self.root)
        return self.root


__all__ = [
    "ASSOCIATION_PROOF_BYTES",
    "AssociationProvider",
    "AssociationRegistry",
    "AssociationSet",
    "ExclusionList",
    "PolicyType",
    "encode_association_proof",
    "check_association_proof",
]
