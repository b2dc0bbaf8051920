"""
Vote Commitments, Nullifiers and Proof of Knowledge
===================================================

Field ordering is fixed so that independent implementations produce
byte-identical digests:

    commitment = SHA256(candidate_id || voter_secret || salt)
    nullifier  = SHA256(voter_secret || salt)
    election   = SHA256("election-" || election_id)

All inputs are UTF-8 strings, the salt is the lowercase hex encoding of 32
random bytes and every digest is rendered as lowercase hex.

The proof of knowledge is an Ed25519 signature over the commitment and the
election hash. The signing key is derived from the voter secret with
HKDF-SHA256 salted by the election hash, so only a holder of the secret can
produce a signature that verifies under the voter's public key.
"""

import hashlib
import hmac
import logging
import secrets
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from utils.utils import generate_secure_id

logger = logging.getLogger(__name__)

SALT_BYTES = 32
HASH_HEX_LENGTH = 64
PROOF_DOMAIN = b"vote-ledger/proof-of-knowledge"
KEY_DERIVATION_INFO = b"vote-ledger/voter-key"


def hash_text(data: str) -> str:
    """SHA256 of a UTF-8 string as lowercase hex"""
    return hashlib.sha256(data.encode('utf-8')).hexdigest()


def is_hex_digest(value: Any) -> bool:
    """True for a 64 character lowercase or uppercase hex string"""
    if not isinstance(value, str) or len(value) != HASH_HEX_LENGTH:
        return False
    try:
        int(value, 16)
    except ValueError:
        return False
    return True


@dataclass
class CommitmentProof:
    """Public side information published with a commitment"""
    nullifier: str
    election_id: str
    timestamp: float
    commitment_salt: str


@dataclass
class Commitment:
    commitment: str
    salt: str
    proof: CommitmentProof

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class KnowledgeProof:
    """Signature-based proof that the prover holds the voter secret"""
    proof: Dict[str, str]
    public_signals: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'proof': dict(self.proof), 'public_signals': dict(self.public_signals)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KnowledgeProof':
        return cls(proof=dict(data['proof']), public_signals=dict(data['public_signals']))


class HashCommitment:
    """Commitment and identifier primitives bound to one election"""

    def __init__(self, election_id: str, clock: Callable[[], float] = time.time):
        if not election_id:
            raise ValueError("election_id is required")
        self.election_id = election_id
        self.clock = clock
        self._election_hash = hash_text(f"election-{election_id}")

    def election_hash(self) -> str:
        return self._election_hash

    # ------------------------------------------------------------------
    # Commitments
    # ------------------------------------------------------------------

    @staticmethod
    def _normalize_salt(salt: Union[str, bytes, None]) -> str:
        if salt is None:
            return secrets.token_bytes(SALT_BYTES).hex()
        if isinstance(salt, bytes):
            return salt.hex()
        if isinstance(salt, str) and salt:
            return salt
        raise ValueError("salt must be a non-empty string or bytes")

    def commit(self, candidate_id: str, voter_secret: str,
               salt: Union[str, bytes, None] = None) -> Commitment:
        """Commit to a candidate choice; a random 32-byte salt is drawn if none is given"""
        if not candidate_id:
            raise ValueError("candidate_id is required")
        if not voter_secret:
            raise ValueError("voter_secret is required")

        salt_hex = self._normalize_salt(salt)
        commitment = hash_text(candidate_id + voter_secret + salt_hex)
        nullifier = self.compute_nullifier(voter_secret, salt_hex)

        return Commitment(
            commitment=commitment,
            salt=salt_hex,
            proof=CommitmentProof(
                nullifier=nullifier,
                election_id=self._election_hash,
                timestamp=self.clock(),
                commitment_salt=salt_hex
            )
        )

    @staticmethod
    def compute_nullifier(voter_secret: str, salt: str) -> str:
        return hash_text(voter_secret + salt)

    def verify_commitment(self, commitment: str, candidate_id: str,
                          voter_secret: str, salt: str) -> bool:
        """Recompute the commitment and compare in constant time"""
        if not all(isinstance(v, str) for v in (commitment, candidate_id, voter_secret, salt)):
            return False
        recomputed = hash_text(candidate_id + voter_secret + salt)
        return hmac.compare_digest(recomputed, commitment.lower().strip())

    def commit_many(self, items: Sequence[Tuple[str, str]],
                    workers: int = 1) -> List[Commitment]:
        """Commit a sequence of (candidate_id, voter_secret) pairs, order preserved"""
        if workers <= 1 or len(items) < 2:
            return [self.commit(candidate_id, secret) for candidate_id, secret in items]

        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(lambda item: self.commit(*item), items))

    # ------------------------------------------------------------------
    # Proof of knowledge
    # ------------------------------------------------------------------

    def _derive_private_key(self, voter_secret: str) -> Ed25519PrivateKey:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=bytes.fromhex(self._election_hash),
            info=KEY_DERIVATION_INFO
        )
        seed = hkdf.derive(voter_secret.encode('utf-8'))
        return Ed25519PrivateKey.from_private_bytes(seed)

    def public_key_for(self, voter_secret: str) -> str:
        """Hex encoded Ed25519 public key derived from a voter secret"""
        public_key = self._derive_private_key(voter_secret).public_key()
        return public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        ).hex()

    def _proof_message(self, commitment: str) -> bytes:
        return b"|".join([
            PROOF_DOMAIN,
            commitment.lower().strip().encode('utf-8'),
            self._election_hash.encode('utf-8')
        ])

    def prove_knowledge(self, voter_secret: str, commitment: str) -> KnowledgeProof:
        """Sign the commitment with the key derived from the voter secret"""
        if not voter_secret:
            raise ValueError("voter_secret is required")
        if not is_hex_digest(commitment):
            raise ValueError("commitment must be a SHA256 hex digest")

        private_key = self._derive_private_key(voter_secret)
        signature = private_key.sign(self._proof_message(commitment))
        public_key = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )

        return KnowledgeProof(
            proof={
                'scheme': 'ed25519-hkdf-sha256',
                'signature': signature.hex()
            },
            public_signals={
                'public_key': public_key.hex(),
                'commitment': commitment.lower().strip(),
                'election_id': self._election_hash
            }
        )

    def verify_knowledge(self, proof: KnowledgeProof, commitment: str,
                         expected_public_key: Optional[str] = None) -> bool:
        """Check a proof of knowledge; never raises on malformed input"""
        try:
            signals = proof.public_signals
            if signals.get('commitment') != commitment.lower().strip():
                return False
            if signals.get('election_id') != self._election_hash:
                return False
            if expected_public_key is not None and not hmac.compare_digest(
                    signals.get('public_key', ''), expected_public_key):
                return False

            public_key = Ed25519PublicKey.from_public_bytes(
                bytes.fromhex(signals['public_key']))
            public_key.verify(bytes.fromhex(
                proof.proof['signature']), self._proof_message(commitment))
            return True
        except InvalidSignature:
            logger.warning("Proof of knowledge signature rejected")
            return False
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"Malformed proof of knowledge: {e}")
            return False

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def voter_hash_for(self, voter_identity: str) -> str:
        """Election-scoped pseudonym for a voter identity"""
        if not voter_identity:
            raise ValueError("voter_identity is required")
        return hash_text(f"{self.election_id}:{voter_identity.strip().lower()}")

    @staticmethod
    def generate_session_id() -> str:
        return generate_secure_id("session")

    @staticmethod
    def generate_tx_id() -> str:
        return generate_secure_id("tx", length=24)
