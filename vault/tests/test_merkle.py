import pytest

from vault.merkle import (MerklePath, ReferenceTree, build_layers, compute_root,
                          merkle_path, merkle_root, merkle_verify, zero_values)
from vault.tree import IncrementalMerkleTree
from zk.verifiers.poseidon import poseidon2

LEAVES = [101, 202, 303, 404, 505]
DEPTH = 4


def test_zero_values_chain():
    zs = zero_values(3)
    assert zs[0] == 0
    assert zs[1] == poseidon2(0, 0)
    assert zs[3] == poseidon2(zs[2], zs[2])


def test_build_layers_shape():
    layers = build_layers(LEAVES, DEPTH)
    assert [len(layer) for layer in layers] == [5, 3, 2, 1, 1]
    assert layers[1][2] == poseidon2(505, 0)


@pytest.mark.parametrize("index", range(len(LEAVES)))
def test_every_path_verifies(index):
    path = merkle_path(LEAVES, index, DEPTH)
    assert path.root == merkle_root(LEAVES, DEPTH)
    assert path.depth == DEPTH
    assert list(path.indices) == [(index >> i) & 1 for i in range(DEPTH)]
    assert merkle_verify(LEAVES[index], path)
    assert not merkle_verify(LEAVES[index] + 1, path)


def test_path_root_matches_incremental_tree():
    t = IncrementalMerkleTree(depth=DEPTH, history_size=2)
    for leaf in LEAVES:
        t.insert(leaf)
    assert merkle_path(LEAVES, 3, DEPTH).root == t.root


def test_tampered_path_fails():
    path = merkle_path(LEAVES, 2, DEPTH)
    bad_sibling = MerklePath(path.leaf, path.index, (path.siblings[0] + 1,) + path.siblings[1:],
                             path.indices, path.root)
    assert not merkle_verify(LEAVES[2], bad_sibling)
    # indices that disagree with the leaf index are rejected even if they hash up
    wrong_index = MerklePath(path.leaf, 3, path.siblings, path.indices, path.root)
    assert not merkle_verify(LEAVES[2], wrong_index)
    non_binary = MerklePath(path.leaf, path.index, path.siblings, (2,) + path.indices[1:], path.root)
    assert not merkle_verify(LEAVES[2], non_binary)


def test_compute_root_right_child_order():
    # index 1 at depth 1: parent = H(sibling, leaf)
    assert compute_root(9, [4], [1]) == poseidon2(4, 9)
    assert compute_root(9, [4], [0]) == poseidon2(9, 4)
    with pytest.raises(ValueError):
        compute_root(9, [4, 5], [1])


def test_errors():
    with pytest.raises(IndexError):
        merkle_path(LEAVES, 5, DEPTH)
    with pytest.raises(ValueError):
        build_layers(list(range(5)), 2)
    tree = ReferenceTree(1)
    tree.extend([1, 2])
    with pytest.raises(ValueError):
        tree.append(3)


def test_reference_tree_and_json():
    tree = ReferenceTree(DEPTH)
    tree.extend(LEAVES)
    assert len(tree) == 5
    path = tree.path(4)
    d = path.to_json()
    assert d["index"] == 4
    assert d["root"] == "0x" + tree.root().to_bytes(32, "big").hex()
    assert len(d["siblings"]) == DEPTH
