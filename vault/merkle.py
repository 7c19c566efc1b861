"""
vault.merkle
============

Reference (full-rebuild) Merkle tree over field elements.

This is the oracle the incremental tree is checked against and the code the
proof-request builder uses to produce a Merkle path for a note. Both use the
same `poseidon2` hasher and the same zero values, so a path prepared here
verifies against a root published by `vault.tree.IncrementalMerkleTree`.

Conventions
-----------
- Leaves and nodes are field elements (ints in [0, P)).
- Parent = H(left, right).
- Empty positions are filled with zero values: z0 = 0, zi = H(z(i-1), z(i-1)).
  A tree of N leaves at depth D has the same root as the 2^D-leaf tree padded
  with zeros; only the populated left part is ever hashed.
- `indices[level]` is 1 when the running node is a *right* child at that level
  (the LSB-first bits of the leaf index).

API
---
- zero_values(depth, hasher=poseidon2) -> tuple of depth+1 values
- build_layers(leaves, depth, hasher=poseidon2) -> [L0, L1, ..., LD]
- merkle_root(leaves, depth, hasher=poseidon2) -> int
- merkle_path(leaves, index, depth, hasher=poseidon2) -> MerklePath
- compute_root(leaf, siblings, indices, hasher=poseidon2) -> int
- merkle_verify(leaf, path, hasher=poseidon2) -> bool
- ReferenceTree(depth)
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, List, Sequence, Tuple

from zk.verifiers.field import reduce, to_hex
from zk.verifiers.poseidon import poseidon2

Hasher = Callable[[int, int], int]


@lru_cache(maxsize=64)
def zero_values(depth: int, hasher: Hasher = poseidon2) -> Tuple[int, ...]:
    """z0 = 0, zi = H(z(i-1), z(i-1)) for i in 1..depth."""
    if depth < 0:
        raise ValueError("depth must be >= 0")
    zs = [0]
    for _ in range(depth):
        zs.append(hasher(zs[-1], zs[-1]))
    return tuple(zs)


def build_layers(
    leaves: Sequence[int], depth: int, hasher: Hasher = poseidon2
) -> List[List[int]]:
    """
    Build every populated layer: [L0 (leaves), L1, ..., LD]. Odd layers are
    padded on the right with the zero value of that level. Empty input gives
    depth+1 empty layers.
    """
    if len(leaves) > (1 << depth):
        raise ValueError(f"{len(leaves)} leaves exceed capacity 2^{depth}")
    zeros = zero_values(depth, hasher)
    layers: List[List[int]] = [[reduce(x) for x in leaves]]
    for level in range(depth):
        cur = layers[-1]
        nxt: List[int] = []
        for i in range(0, len(cur), 2):
            right = cur[i + 1] if i + 1 < len(cur) else zeros[level]
            nxt.append(hasher(cur[i], right))
        layers.append(nxt)
    return layers


def merkle_root(leaves: Sequence[int], depth: int, hasher: Hasher = poseidon2) -> int:
    if not leaves:
        return zero_values(depth, hasher)[depth]
    return build_layers(leaves, depth, hasher)[depth][0]


@dataclass(frozen=True)
class MerklePath:
    leaf: int
    index: int
    siblings: Tuple[int, ...]
    indices: Tuple[int, ...]
    root: int

    @property
    def depth(self) -> int:
        return len(self.siblings)

    def to_json(self) -> dict:
        return {
            "leaf": to_hex(self.leaf),
            "index": self.index,
            "siblings": [to_hex(s) for s in self.siblings],
            "indices": list(self.indices),
            "root": to_hex(self.root),
        }


def _path_from_layers(
    layers: List[List[int]], index: int, depth: int, zeros: Tuple[int, ...]
) -> MerklePath:
    siblings: List[int] = []
    indices: List[int] = []
    idx = index
    for level in range(depth):
        layer = layers[level]
        sib = idx ^ 1
        siblings.append(layer[sib] if sib < len(layer) else zeros[level])
        indices.append(idx & 1)
        idx >>= 1
    return MerklePath(
        leaf=layers[0][index],
        index=index,
        siblings=tuple(siblings),
        indices=tuple(indices),
        root=layers[depth][0],
    )


def merkle_path(
    leaves: Sequence[int], index: int, depth: int, hasher: Hasher = poseidon2
) -> MerklePath:
    if not 0 <= index < len(leaves):
        raise IndexError(f"leaf index {index} out of range [0, {len(leaves)})")
    layers = build_layers(leaves, depth, hasher)
    return _path_from_layers(layers, index, depth, zero_values(depth, hasher))


def compute_root(
    leaf: int, siblings: Sequence[int], indices: Sequence[int], hasher: Hasher = poseidon2
) -> int:
    if len(siblings) != len(indices):
        raise ValueError("siblings and indices differ in length")
    node = reduce(leaf)
    for sib, bit in zip(siblings, indices):
        if bit:
            # current node is right child -> parent = H(sibling, node)
            node = hasher(reduce(sib), node)
        else:
            node = hasher(node, reduce(sib))
    return node


def merkle_verify(leaf: int, path: MerklePath, hasher: Hasher = poseidon2) -> bool:
    """True iff `leaf` hashes up to `path.root` along the path."""
    if any(bit not in (0, 1) for bit in path.indices):
        return False
    expected_bits = [(path.index >> i) & 1 for i in range(path.depth)]
    if list(path.indices) != expected_bits:
        return False
    try:
        return compute_root(leaf, path.siblings, path.indices, hasher) == reduce(path.root)
    except ValueError:
        return False


class ReferenceTree:
    """Append-only tree that rebuilds from its leaf list on demand."""

    def __init__(self, depth: int, hasher: Hasher = poseidon2) -> None:
        self.depth = depth
        self.hasher = hasher
        self.leaves: List[int] = []

    def append(self, leaf: int) -> int:
        if len(self.leaves) >= (1 << self.depth):
            raise ValueError("reference tree is full")
        self.leaves.append(reduce(leaf))
        return len(self.leaves) - 1

    def extend(self, leaves: Sequence[int]) -> None:
        for leaf in leaves:
            self.append(leaf)

    def root(self) -> int:
        return merkle_root(self.leaves, self.depth, self.hasher)

    def path(self, index: int) -> MerklePath:
        return merkle_path(self.leaves, index, self.depth, self.hasher)

    def __len__(self) -> int:
        return len(self.leaves)


__all__ = [
    "Hasher",
    "zero_values",
    "build_layers",
    "merkle_root",
    "MerklePath",
    "merkle_path",
    "compute_root",
    "merkle_verify",
    "ReferenceTree",
]
