"""Vote commitments, nullifiers and proof of knowledge."""

from .hash_commitment import (
    HashCommitment,
    Commitment,
    CommitmentProof,
    KnowledgeProof,
    hash_text,
    is_hex_digest,
)

__all__ = [
    'HashCommitment',
    'Commitment',
    'CommitmentProof',
    'KnowledgeProof',
    'hash_text',
    'is_hex_digest',
]
