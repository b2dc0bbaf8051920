"""Merkle inclusion proofs over ordered vote commitments."""

from .merkle_tree import (
    MerkleProofEngine,
    MerkleTree,
    MerkleProof,
    EMPTY_TREE_ROOT,
    hash_leaf,
    hash_node,
    tree_depth,
)

__all__ = [
    'MerkleProofEngine',
    'MerkleTree',
    'MerkleProof',
    'EMPTY_TREE_ROOT',
    'hash_leaf',
    'hash_node',
    'tree_depth',
]
