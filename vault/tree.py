"""
vault.tree
==========

Incremental (frontier) Merkle commitment tree with a bounded root history.

Only O(depth) state is kept: the rightmost node seen at each level (the
"filled subtrees" frontier), the next free leaf index, and a ring of the last
`history_size` roots. Each insert hashes exactly `depth` times.

Root validity
-------------
`is_known_root(r)` answers from a multiplicity-counted set that mirrors the
ring: a root stays known while at least one ring slot holds it. After a root
is published it remains known for `history_size - 1` further inserts and is
forgotten on the `history_size`-th. The zero value is never a known root.

The same class backs the ledger's commitment tree and each association
provider's approved set.
"""

from __future__ import annotations

from collections import Counter, deque
from typing import Deque, List, Optional, Tuple

import cbor2

from zk.verifiers.field import from_bytes32, reduce, to_bytes32
from zk.verifiers.poseidon import poseidon2

from .errors import StorageError, TreeFull
from .merkle import Hasher, zero_values

DEFAULT_DEPTH = 20
DEFAULT_HISTORY = 30
MAX_DEPTH = 32
_SNAPSHOT_VERSION = 1


class IncrementalMerkleTree:
    """
    >>> t = IncrementalMerkleTree(depth=4, history_size=3)
    >>> t.insert(7)
    0
    >>> t.is_known_root(t.root)
    True
    """

    __slots__ = ("depth", "history_size", "_hasher", "_zeros", "_frontier",
                 "_next_index", "_history", "_known")

    def __init__(
        self,
        depth: int = DEFAULT_DEPTH,
        history_size: int = DEFAULT_HISTORY,
        hasher: Hasher = poseidon2,
    ) -> None:
        if not 1 <= depth <= MAX_DEPTH:
            raise ValueError(f"depth must be in [1, {MAX_DEPTH}]")
        if history_size < 1:
            raise ValueError("history_size must be >= 1")
        self.depth = depth
        self.history_size = history_size
        self._hasher = hasher
        self._zeros = zero_values(depth, hasher)
        self._frontier: List[int] = list(self._zeros[:depth])
        self._next_index = 0
        self._history: Deque[int] = deque(maxlen=history_size)
        self._known: Counter = Counter()
        self._publish(self._zeros[depth])

    # ---- state ---------------------------------------------------------------------------

    @property
    def capacity(self) -> int:
        return 1 << self.depth

    @property
    def next_index(self) -> int:
        return self._next_index

    @property
    def frontier(self) -> Tuple[int, ...]:
        return tuple(self._frontier)

    @property
    def root(self) -> int:
        return self._history[-1]

    def current_root(self) -> int:
        return self._history[-1]

    def root_history(self) -> List[int]:
        """Roots still in the ring, oldest first; the last entry is current."""
        return list(self._history)

    def zero_value(self, level: int) -> int:
        return self._zeros[level]

    def is_full(self) -> bool:
        return self._next_index >= self.capacity

    def __len__(self) -> int:
        return self._next_index

    # ---- operations ----------------------------------------------------------------------

    def insert(self, leaf: int) -> int:
        """Append `leaf`; return its index. Raises TreeFull at capacity."""
        if self._next_index >= self.capacity:
            raise TreeFull(depth=self.depth, capacity=self.capacity)
        index = self._next_index
        idx = index
        node = reduce(leaf)
        h = self._hasher
        for level in range(self.depth):
            if idx & 1 == 0:
                self._frontier[level] = node
                node = h(node, self._zeros[level])
            else:
                node = h(self._frontier[level], node)
            idx >>= 1
        self._publish(node)
        self._next_index = index + 1
        return index

    def is_known_root(self, root: int) -> bool:
        r = reduce(root)
        if r == 0:
            return False
        return self._known.get(r, 0) > 0

    def _publish(self, root: int) -> None:
        if len(self._history) == self._history.maxlen:
            dropped = self._history[0]
            self._known[dropped] -= 1
            if self._known[dropped] <= 0:
                del self._known[dropped]
        self._history.append(root)
        self._known[root] += 1

    # ---- copies & persistence ------------------------------------------------------------

    def copy(self) -> "IncrementalMerkleTree":
        new = IncrementalMerkleTree.__new__(IncrementalMerkleTree)
        new.depth = self.depth
        new.history_size = self.history_size
        new._hasher = self._hasher
        new._zeros = self._zeros
        new._frontier = list(self._frontier)
        new._next_index = self._next_index
        new._history = deque(self._history, maxlen=self.history_size)
        new._known = Counter(self._known)
        return new

    def snapshot(self) -> bytes:
        """Canonical CBOR of the O(depth) state."""
        return cbor2.dumps(
            {
                "v": _SNAPSHOT_VERSION,
                "depth": self.depth,
                "history_size": self.history_size,
                "next_index": self._next_index,
                "frontier": [to_bytes32(x) for x in self._frontier],
                "history": [to_bytes32(x) for x in self._history],
            },
            canonical=True,
        )

    @classmethod
    def restore(
        cls,
        blob: bytes,
        hasher: Hasher = poseidon2,
        *,
        expect_depth: Optional[int] = None,
    ) -> "IncrementalMerkleTree":
        try:
            d = cbor2.loads(blob)
            if d.get("v") != _SNAPSHOT_VERSION:
                raise StorageError("unsupported tree snapshot version", version=d.get("v"))
            depth = int(d["depth"])
            tree = cls(depth=depth, history_size=int(d["history_size"]), hasher=hasher)
            frontier = [from_bytes32(b) for b in d["frontier"]]
            history = [from_bytes32(b) for b in d["history"]]
            next_index = int(d["next_index"])
        except (cbor2.CBORDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise StorageError(f"corrupt tree snapshot: {e}") from e
        if expect_depth is not None and depth != expect_depth:
            raise StorageError("stored tree depth differs from configuration",
                               stored=depth, configured=expect_depth)
        if len(frontier) != depth or not history or len(history) > tree.history_size:
            raise StorageError("tree snapshot has inconsistent shape")
        if not 0 <= next_index <= tree.capacity:
            raise StorageError("tree snapshot next_index out of range", next_index=next_index)
        tree._frontier = frontier
        tree._next_index = next_index
        tree._history = deque(history, maxlen=tree.history_size)
        tree._known = Counter(history)
        return tree


__all__ = ["IncrementalMerkleTree", "DEFAULT_DEPTH", "DEFAULT_HISTORY"]
