import hashlib

import pytest

from merkle import EMPTY_TREE_ROOT, MerkleProof, MerkleProofEngine, hash_leaf, hash_node, tree_depth


def commitments(n, tag="c"):
    return [hashlib.sha256(f"{tag}-{i}".encode()).hexdigest() for i in range(n)]


@pytest.fixture
def engine():
    return MerkleProofEngine()


class TestBuildTree:

    def test_empty_set(self, engine):
        tree = engine.build_tree([])
        assert tree.root == EMPTY_TREE_ROOT == hashlib.sha256(b"").hexdigest()
        assert tree.leaf_count == 0

    def test_single_leaf_root_is_leaf_hash(self, engine):
        [only] = commitments(1)
        assert engine.build_tree([only]).root == hash_leaf(only).hex()

    def test_two_leaves(self, engine):
        a, b = commitments(2)
        expected = hash_node(hash_leaf(a), hash_leaf(b)).hex()
        assert engine.build_tree([a, b]).root == expected

    def test_leaf_level_padded_with_empty_hash(self, engine):
        a, b, c = commitments(3)
        empty = hashlib.sha256(b"").digest()
        expected = hash_node(hash_node(hash_leaf(a), hash_leaf(b)),
                             hash_node(hash_leaf(c), empty)).hex()
        assert engine.build_tree([a, b, c]).root == expected

    def test_deterministic(self):
        items = commitments(7)
        assert MerkleProofEngine().build_tree(items).root == MerkleProofEngine().build_tree(items).root

    def test_order_insertion_and_deletion_change_root(self, engine):
        items = commitments(5)
        root = engine.build_tree(items).root

        assert engine.build_tree(list(reversed(items))).root != root
        assert engine.build_tree(items + commitments(1, "extra")).root != root
        assert engine.build_tree(items[:-1]).root != root
        # duplicating the last leaf must not collide with padding
        assert engine.build_tree(items[:3]).root != engine.build_tree(items[:3] + [items[2]]).root

    def test_cached_tree_cannot_be_mutated(self, engine):
        items = commitments(4)
        tree = engine.build_tree(items)
        proof = tree.get_proof(1)

        with pytest.raises(TypeError):
            tree.levels[0][1] = b"\x00" * 32
        with pytest.raises(AttributeError):
            tree.levels = ()

        again = engine.build_tree(items)
        assert again is tree
        assert again.get_proof(1) == proof
        assert engine.verify_inclusion(again.get_proof(1), items[1], again.root)

    def test_case_insensitive(self, engine):
        items = commitments(4)
        assert engine.build_tree(items).root == engine.build_tree([c.upper() for c in items]).root

    @pytest.mark.parametrize("n,depth", [(0, 0), (1, 0), (2, 1), (3, 2), (4, 2), (5, 3), (8, 3), (9, 4)])
    def test_tree_depth(self, n, depth):
        assert tree_depth(n) == depth

    def test_non_string_commitment_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.build_tree([b"bytes"])


class TestInclusion:

    @pytest.mark.parametrize("n", [1, 2, 3, 5, 8, 13])
    def test_every_member_verifies(self, engine, n):
        items = commitments(n)
        root = engine.build_tree(items).root

        for index, item in enumerate(items):
            proof = engine.prove_inclusion(item, items)
            assert proof.index == index
            assert proof.root == root
            assert len(proof.siblings) == tree_depth(n)
            assert engine.verify_inclusion(proof, item, root)

    def test_non_member_has_no_proof(self, engine):
        assert engine.prove_inclusion(commitments(1, "other")[0], commitments(6)) is None
        assert engine.prove_inclusion(commitments(1)[0], []) is None

    def test_proof_does_not_verify_other_commitment(self, engine):
        items = commitments(6)
        root = engine.build_tree(items).root
        proof = engine.prove_inclusion(items[2], items)
        assert not engine.verify_inclusion(proof, items[3], root)

    def test_proof_bound_to_snapshot(self, engine):
        items = commitments(6)
        proof = engine.prove_inclusion(items[0], items)
        new_root = engine.build_tree(items + commitments(1, "late")).root
        assert not engine.verify_inclusion(proof, items[0], new_root)

    def test_dict_form_verifies(self, engine):
        items = commitments(5)
        proof = engine.prove_inclusion(items[4], items)
        assert engine.verify_inclusion(proof.to_dict(), items[4], proof.root)

    def test_get_proof_bounds(self, engine):
        tree = engine.build_tree(commitments(3))
        with pytest.raises(ValueError):
            tree.get_proof(3)


class TestMalformedProofs:

    @pytest.fixture
    def valid(self, engine):
        items = commitments(6)
        proof = engine.prove_inclusion(items[1], items)
        return proof, items[1]

    def _mutated(self, proof, **changes):
        data = proof.to_dict()
        data.update(changes)
        return data

    def test_wrong_index(self, engine, valid):
        proof, item = valid
        assert not engine.verify_inclusion(self._mutated(proof, index=0), item, proof.root)

    def test_tampered_sibling(self, engine, valid):
        proof, item = valid
        siblings = list(proof.siblings)
        siblings[0] = "ff" * 32
        assert not engine.verify_inclusion(self._mutated(proof, siblings=siblings), item, proof.root)

    def test_wrong_expected_root(self, engine, valid):
        proof, item = valid
        assert not engine.verify_inclusion(proof, item, "ab" * 32)

    @pytest.mark.parametrize("changes", [
        {"index": -1},
        {"index": True},
        {"index": "1"},
        {"index": 64},
        {"siblings": "not-a-list"},
        {"siblings": ["zz" * 32, "00" * 32, "00" * 32]},
        {"siblings": ["00" * 16, "00" * 32, "00" * 32]},
        {"siblings": []},
        {"leaf_count": 2},
        {"root": None},
    ])
    def test_structural_errors_return_false(self, engine, valid, changes):
        proof, item = valid
        assert not engine.verify_inclusion(self._mutated(proof, **changes), item, proof.root)

    @pytest.mark.parametrize("proof", [None, {}, {"index": 0}, "proof", 42])
    def test_garbage_returns_false(self, engine, proof):
        assert not engine.verify_inclusion(proof, "00" * 32, EMPTY_TREE_ROOT)

    def test_proof_dataclass_round_trip(self, valid):
        proof, _ = valid
        assert MerkleProof.from_dict(proof.to_dict()) == proof
