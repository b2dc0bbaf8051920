"""
Binary Merkle tree over the ordered commitment sequence of one election.

Leaves and inner nodes are domain separated (RFC 6962 style) and the leaf
level is padded to a power of two with the empty-node hash, so that appending,
removing or reordering commitments always changes the root.
"""

import hashlib
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

LEAF_PREFIX = b"\x00"
NODE_PREFIX = b"\x01"
EMPTY_NODE = hashlib.sha256(b"").digest()
EMPTY_TREE_ROOT = EMPTY_NODE.hex()


def normalize_commitment(commitment: str) -> str:
    if not isinstance(commitment, str):
        raise ValueError(f"Commitment must be a string, got {type(commitment).__name__}")
    return commitment.lower().strip()


def hash_leaf(commitment: str) -> bytes:
    return hashlib.sha256(LEAF_PREFIX + normalize_commitment(commitment).encode('utf-8')).digest()


def hash_node(left: bytes, right: bytes) -> bytes:
    return hashlib.sha256(NODE_PREFIX + left + right).digest()


def tree_depth(leaf_count: int) -> int:
    """Levels above the leaves for a padded tree of leaf_count leaves"""
    if leaf_count <= 1:
        return 0
    return (leaf_count - 1).bit_length()


@dataclass
class MerkleProof:
    """Audit path for one leaf, bound to the snapshot identified by root"""
    index: int
    siblings: List[str]
    root: str
    leaf_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MerkleProof':
        return cls(
            index=data['index'],
            siblings=list(data['siblings']),
            root=data['root'],
            leaf_count=data.get('leaf_count', 0)
        )


@dataclass(frozen=True)
class MerkleTree:
    leaf_count: int
    levels: Tuple[Tuple[bytes, ...], ...] = ()

    @property
    def root(self) -> str:
        if not self.levels:
            return EMPTY_TREE_ROOT
        return self.levels[-1][0].hex()

    @property
    def depth(self) -> int:
        return max(0, len(self.levels) - 1)

    def get_proof(self, index: int) -> MerkleProof:
        """Sibling hashes from leaf level up to, not including, the root"""
        if index < 0 or index >= self.leaf_count:
            raise ValueError(f"Index {index} out of bounds for {self.leaf_count} leaves")

        siblings = []
        current_index = index
        for level in self.levels[:-1]:
            siblings.append(level[current_index ^ 1].hex())
            current_index //= 2

        return MerkleProof(
            index=index,
            siblings=siblings,
            root=self.root,
            leaf_count=self.leaf_count
        )


class MerkleProofEngine:
    """Builds trees, issues inclusion proofs and verifies them"""

    def __init__(self):
        self._cache_key: Optional[Tuple[str, ...]] = None
        self._cache_tree: Optional[MerkleTree] = None
        self._lock = threading.Lock()

    def build_tree(self, commitments: Sequence[str]) -> MerkleTree:
        """Deterministic tree over the commitments in the given order"""
        key = tuple(normalize_commitment(c) for c in commitments)

        with self._lock:
            if self._cache_key == key and self._cache_tree is not None:
                return self._cache_tree

        if not key:
            tree = MerkleTree(leaf_count=0)
        else:
            leaves = [hash_leaf(c) for c in key]
            width = 1 << tree_depth(len(leaves))
            leaves.extend([EMPTY_NODE] * (width - len(leaves)))

            level = tuple(leaves)
            levels = [level]
            while len(level) > 1:
                level = tuple(hash_node(level[i], level[i + 1])
                              for i in range(0, len(level), 2))
                levels.append(level)
            tree = MerkleTree(leaf_count=len(key), levels=tuple(levels))

        logger.debug(f"Built Merkle tree over {tree.leaf_count} commitments, depth {tree.depth}")

        with self._lock:
            self._cache_key = key
            self._cache_tree = tree
        return tree

    def prove_inclusion(self, commitment: str,
                        commitments: Sequence[str]) -> Optional[MerkleProof]:
        """Proof for the first occurrence of commitment, or None if absent"""
        target = normalize_commitment(commitment)
        normalized = [normalize_commitment(c) for c in commitments]
        try:
            index = normalized.index(target)
        except ValueError:
            return None

        return self.build_tree(normalized).get_proof(index)

    @staticmethod
    def compute_root(commitment: str, index: int, siblings: Sequence[str]) -> str:
        current = hash_leaf(commitment)
        position = index
        for sibling_hex in siblings:
            sibling = bytes.fromhex(sibling_hex)
            if len(sibling) != len(EMPTY_NODE):
                raise ValueError("Sibling hash has wrong length")
            if position % 2 == 0:
                current = hash_node(current, sibling)
            else:
                current = hash_node(sibling, current)
            position //= 2
        return current.hex()

    def verify_inclusion(self, proof: Union[MerkleProof, Dict[str, Any], None],
                         commitment: str, expected_root: str) -> bool:
        """Recompute the root from the audit path; False for any malformed proof"""
        try:
            if isinstance(proof, dict):
                proof = MerkleProof.from_dict(proof)
            if not isinstance(proof, MerkleProof):
                return False

            index = proof.index
            siblings = proof.siblings
            if isinstance(index, bool) or not isinstance(index, int) or index < 0:
                return False
            if not isinstance(siblings, (list, tuple)):
                return False
            if index >= (1 << len(siblings)):
                return False
            if proof.leaf_count:
                if index >= proof.leaf_count or len(siblings) != tree_depth(proof.leaf_count):
                    return False

            expected = normalize_commitment(expected_root)
            if normalize_commitment(proof.root) != expected:
                return False

            return self.compute_root(commitment, index, siblings) == expected
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.debug(f"Rejected malformed Merkle proof: {e}")
            return False
