"""
Vote Ledger
===========

Append-only, hash-linked record of the votes cast in one election.

The ledger owns record storage, sequence numbering and the voter-seen set.
Records are buffered and flushed in numbered batches; readers always flush
before they look. Reconciliation may change the status and confirmation
metadata of a record, which are not part of the record hash.
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from commitment.hash_commitment import Commitment, HashCommitment, hash_text
from config.config import LedgerConfig

from .errors import (
    AlreadyClosed,
    DuplicateVoter,
    ElectionNotActive,
    ElectionNotInitialized,
    InvalidCandidate,
    StoreError,
    UnknownTransaction,
    ValidationError,
)
from .events import EventBus, EventType
from .store import KeyValueStore

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


# ============================================================================
# DATA MODEL
# ============================================================================


class VoteStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


@dataclass
class Election:
    election_id: str
    name: str
    candidates: List[str]
    start_time: float
    end_time: Optional[float] = None
    is_active: bool = True
    closed_at: Optional[float] = None

    def __post_init__(self):
        if not self.election_id:
            raise ValidationError("election_id is required")
        if not self.candidates:
            raise ValidationError("An election needs at least one candidate")
        if len(set(self.candidates)) != len(self.candidates):
            raise ValidationError("Candidate ids must be unique")
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValidationError("end_time precedes start_time")

    def accepts_votes_at(self, now: float) -> bool:
        if not self.is_active or now < self.start_time:
            return False
        return self.end_time is None or now <= self.end_time

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Election':
        return cls(
            election_id=data['election_id'],
            name=data['name'],
            candidates=list(data['candidates']),
            start_time=data['start_time'],
            end_time=data.get('end_time'),
            is_active=data.get('is_active', True),
            closed_at=data.get('closed_at')
        )


@dataclass
class VoteRecord:
    voter_hash: str
    candidate_id: str
    session_id: str
    tx_id: str
    timestamp: float
    sequence_index: int
    status: VoteStatus
    commitment: str = ""
    nullifier: str = ""
    salt: str = ""
    previous_hash: str = GENESIS_HASH
    record_hash: str = ""
    batch_number: Optional[int] = None
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    confirmed_at: Optional[float] = None
    rejection_reason: Optional[str] = None

    def compute_hash(self) -> str:
        """voter_hash, timestamp, previous_hash, candidate_id, sequence_index in that order"""
        return hash_text(
            f"{self.voter_hash}{self.timestamp:.6f}{self.previous_hash}"
            f"{self.candidate_id}{self.sequence_index}"
        )

    @property
    def is_confirmed(self) -> bool:
        return self.status == VoteStatus.CONFIRMED

    def anonymize(self, prefix_length: int) -> 'AnonymizedVote':
        return AnonymizedVote(
            voter_hash=self.voter_hash[:prefix_length],
            session_id=self.session_id[:prefix_length],
            candidate_id=self.candidate_id,
            tx_id=self.tx_id,
            timestamp=self.timestamp,
            sequence_index=self.sequence_index,
            status=self.status.value,
            block_number=self.block_number
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VoteRecord':
        data = dict(data)
        data['status'] = VoteStatus(data['status'])
        return cls(**data)


@dataclass
class AnonymizedVote:
    """Public view of a record; identifiers are truncated to a fixed prefix"""
    voter_hash: str
    session_id: str
    candidate_id: str
    tx_id: str
    timestamp: float
    sequence_index: int
    status: str
    block_number: Optional[int] = None


@dataclass
class Batch:
    batch_number: int
    records: Tuple[VoteRecord, ...]

    def __len__(self):
        return len(self.records)


@dataclass
class SkippedEntry:
    index: int
    voter_hash: Optional[str]
    candidate_id: Optional[str]
    reason: str
    error_type: str


@dataclass
class BatchResult:
    successful: int = 0
    skipped: List[SkippedEntry] = field(default_factory=list)
    records: List[VoteRecord] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


@dataclass
class Page:
    records: List[AnonymizedVote]
    next_cursor: Optional[int]
    has_more: bool
    total: int


@dataclass
class VoteReceipt:
    tx_id: str
    timestamp: float
    candidate_id: str
    voter_hash: str
    session_id: str
    sequence_index: int
    commitment: str
    salt: str
    nullifier: str
    status: str
    block_number: Optional[int] = None

    @classmethod
    def from_record(cls, record: VoteRecord) -> 'VoteReceipt':
        return cls(
            tx_id=record.tx_id,
            timestamp=record.timestamp,
            candidate_id=record.candidate_id,
            voter_hash=record.voter_hash,
            session_id=record.session_id,
            sequence_index=record.sequence_index,
            commitment=record.commitment,
            salt=record.salt,
            nullifier=record.nullifier,
            status=record.status.value,
            block_number=record.block_number
        )

    def render(self) -> str:
        """Plain-text receipt suitable for download"""
        block = self.block_number if self.block_number is not None else "pending"
        lines = [
            "VOTE RECEIPT",
            "=" * 40,
            f"Transaction ID: {self.tx_id}",
            f"Session ID: {self.session_id}",
            f"Voter Hash: {self.voter_hash}",
            f"Time of Vote: {datetime.fromtimestamp(self.timestamp).isoformat()}",
            f"Candidate: {self.candidate_id}",
            f"Sequence Index: {self.sequence_index}",
            f"Block Number: {block}",
            f"Status: {self.status}",
            f"Commitment: {self.commitment}",
            f"Nullifier: {self.nullifier}",
            f"Salt: {self.salt}",
            "=" * 40,
            "This receipt proves your vote was recorded in the ledger.",
            "The commitment can be checked against the published Merkle root.",
        ]
        return "\n".join(lines) + "\n"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VoteReceipt':
        return cls(**data)


BatchEntry = Union[Tuple[str, ...], Dict[str, Any]]


# ============================================================================
# LEDGER
# ============================================================================


class VoteLedger:
    """Single-writer ledger; every mutation runs under a re-entrant lock"""

    def __init__(self, election: Election, config: Optional[LedgerConfig] = None,
                 hasher: Optional[HashCommitment] = None,
                 event_bus: Optional[EventBus] = None,
                 clock: Callable[[], float] = time.time):
        self.election = election
        self.config = config or LedgerConfig()
        self.clock = clock
        self.hasher = hasher or HashCommitment(election.election_id, clock=clock)
        self.event_bus = event_bus or EventBus()
        self._candidates: Set[str] = set(election.candidates)

        self._records: List[VoteRecord] = []
        self._buffer: List[VoteRecord] = []
        self._by_tx: Dict[str, VoteRecord] = {}
        self._voters: Set[str] = set()
        self._receipts: Dict[str, VoteReceipt] = {}

        self._next_sequence = 0
        self._batch_number = 0
        self._last_hash = GENESIS_HASH
        self._last_sync_timestamp: Optional[float] = None

        self._lock = threading.RLock()

        logger.info(f"Ledger ready for election {election.election_id} "
                    f"with candidates {election.candidates}")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _require_active(self, now: float):
        if not self.election.is_active:
            raise ElectionNotActive(f"Election {self.election.election_id} is closed")
        if not self.election.accepts_votes_at(now):
            raise ElectionNotActive(
                f"Election {self.election.election_id} is not accepting votes at {now:.3f}")

    def _validate(self, voter_hash: Any, candidate_id: Any, session_id: Any):
        for name, value in (("voter_hash", voter_hash), ("candidate_id", candidate_id),
                            ("session_id", session_id)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} must be a non-empty string")
        if candidate_id not in self._candidates:
            raise InvalidCandidate(f"Unknown candidate: {candidate_id}")

    @staticmethod
    def _coerce_entry(entry: BatchEntry) -> Tuple[Any, Any, Any, Optional[str], Optional[str]]:
        """(voter_hash, candidate_id, session_id, voter_secret, tx_id)"""
        if isinstance(entry, dict):
            return (entry.get('voter_hash'), entry.get('candidate_id'),
                    entry.get('session_id'), entry.get('voter_secret'), entry.get('tx_id'))
        if isinstance(entry, (tuple, list)) and len(entry) in (3, 4):
            voter_secret = entry[3] if len(entry) == 4 else None
            return entry[0], entry[1], entry[2], voter_secret, None
        raise ValidationError("Batch entries must be (voter_hash, candidate_id, session_id) tuples or dicts")

    @staticmethod
    def _default_secret(voter_hash: str, session_id: str) -> str:
        return f"{voter_hash}:{session_id}"

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _append(self, voter_hash: str, candidate_id: str, session_id: str,
                commitment: Commitment, tx_id: Optional[str], now: float) -> VoteRecord:
        confirmed = not self.config.require_confirmation
        record = VoteRecord(
            voter_hash=voter_hash,
            candidate_id=candidate_id,
            session_id=session_id,
            tx_id=tx_id or self.hasher.generate_tx_id(),
            timestamp=now,
            sequence_index=self._next_sequence,
            status=VoteStatus.CONFIRMED if confirmed else VoteStatus.PENDING,
            commitment=commitment.commitment,
            nullifier=commitment.proof.nullifier,
            salt=commitment.salt,
            previous_hash=self._last_hash,
            confirmed_at=now if confirmed else None
        )
        record.record_hash = record.compute_hash()

        self._next_sequence += 1
        self._last_hash = record.record_hash
        self._buffer.append(record)
        self._by_tx[record.tx_id] = record
        self._voters.add(voter_hash)
        self._receipts[record.tx_id] = VoteReceipt.from_record(record)

        self.event_bus.publish(
            EventType.VOTE_CAST,
            tx_id=record.tx_id,
            sequence_index=record.sequence_index,
            status=record.status.value
        )

        if len(self._buffer) >= self.config.batch_size:
            self._flush_locked()

        return record

    def cast_vote(self, voter_hash: str, candidate_id: str, session_id: str,
                  voter_secret: Optional[str] = None,
                  tx_id: Optional[str] = None) -> VoteRecord:
        with self._lock:
            now = self.clock()
            self._require_active(now)
            self._validate(voter_hash, candidate_id, session_id)

            if voter_hash in self._voters:
                raise DuplicateVoter(f"Voter {voter_hash[:8]} has already voted")
            if tx_id is not None and tx_id in self._by_tx:
                raise ValidationError(f"Transaction {tx_id} is already recorded")

            secret = voter_secret or self._default_secret(voter_hash, session_id)
            commitment = self.hasher.commit(candidate_id, secret)
            record = self._append(voter_hash, candidate_id, session_id, commitment, tx_id, now)

            logger.debug(f"Vote {record.sequence_index} cast for {candidate_id} (tx {record.tx_id})")
            return replace(record)

    def check_eligibility(self, voter_hash: str, candidate_id: str, session_id: str):
        """Run every check cast_vote would, without recording anything"""
        with self._lock:
            self._require_active(self.clock())
            self._validate(voter_hash, candidate_id, session_id)
            if voter_hash in self._voters:
                raise DuplicateVoter(f"Voter {voter_hash[:8]} has already voted")

    def cast_votes_batch(self, entries: Sequence[BatchEntry]) -> BatchResult:
        """
        Cast many votes in one serialized pass.

        Invalid or duplicate entries are skipped with a reason, never retried.
        Duplicates are detected against the ledger and against earlier entries
        of the same batch.
        """
        result = BatchResult()

        with self._lock:
            now = self.clock()
            self._require_active(now)

            accepted = []
            seen_in_batch: Set[str] = set()
            seen_tx: Set[str] = set()
            for index, entry in enumerate(entries):
                voter_hash = candidate_id = None
                try:
                    voter_hash, candidate_id, session_id, voter_secret, tx_id = self._coerce_entry(entry)
                    self._validate(voter_hash, candidate_id, session_id)
                    if voter_hash in self._voters or voter_hash in seen_in_batch:
                        raise DuplicateVoter(f"Voter {voter_hash[:8]} has already voted")
                    if tx_id is not None and (tx_id in self._by_tx or tx_id in seen_tx):
                        raise ValidationError(f"Transaction {tx_id} is already recorded")
                except (ValidationError, DuplicateVoter) as e:
                    result.skipped.append(SkippedEntry(
                        index=index,
                        voter_hash=voter_hash if isinstance(voter_hash, str) else None,
                        candidate_id=candidate_id if isinstance(candidate_id, str) else None,
                        reason=str(e),
                        error_type=type(e).__name__
                    ))
                    continue

                seen_in_batch.add(voter_hash)
                if tx_id is not None:
                    seen_tx.add(tx_id)
                secret = voter_secret or self._default_secret(voter_hash, session_id)
                accepted.append((voter_hash, candidate_id, session_id, secret, tx_id))

            items = [(candidate_id, secret) for _, candidate_id, _, secret, _ in accepted]
            if len(items) >= self.config.parallel_commit_threshold:
                commitments = self.hasher.commit_many(items, workers=self.config.commitment_workers)
            else:
                commitments = self.hasher.commit_many(items)

            for (voter_hash, candidate_id, session_id, _, tx_id), commitment in zip(accepted, commitments):
                record = self._append(voter_hash, candidate_id, session_id, commitment, tx_id, now)
                result.records.append(replace(record))

            result.successful = len(result.records)

        logger.info(f"Batch cast: {result.successful} recorded, {result.skipped_count} skipped")
        return result

    def _flush_locked(self) -> Optional[Batch]:
        if not self._buffer:
            return None

        self._batch_number += 1
        for record in self._buffer:
            record.batch_number = self._batch_number
        batch = Batch(batch_number=self._batch_number,
                      records=tuple(replace(r) for r in self._buffer))
        self._records.extend(self._buffer)
        self._buffer = []

        logger.info(f"Flushed batch {batch.batch_number} with {len(batch)} records")
        self.event_bus.publish(
            EventType.BATCH_FLUSHED,
            batch_number=batch.batch_number,
            size=len(batch),
            total=len(self._records)
        )
        return batch

    def flush_batch(self) -> Optional[Batch]:
        """Move buffered records into the ledger; None when nothing was buffered"""
        with self._lock:
            return self._flush_locked()

    def close_election(self) -> Election:
        with self._lock:
            if not self.election.is_active:
                raise AlreadyClosed(f"Election {self.election.election_id} is already closed")

            self._flush_locked()
            self.election.is_active = False
            self.election.closed_at = self.clock()

            logger.info(f"Election {self.election.election_id} closed with {len(self._records)} votes")
            self.event_bus.publish(
                EventType.ELECTION_CLOSED,
                election_id=self.election.election_id,
                vote_count=len(self._records),
                closed_at=self.election.closed_at
            )
            return replace(self.election, candidates=list(self.election.candidates))

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def _lookup(self, tx_id: str) -> VoteRecord:
        record = self._by_tx.get(tx_id)
        if record is None:
            raise UnknownTransaction(f"No record for transaction {tx_id}")
        return record

    def _refresh_receipt(self, record: VoteRecord):
        self._receipts[record.tx_id] = VoteReceipt.from_record(record)
        self._last_sync_timestamp = self.clock()

    def confirm(self, tx_id: str, block_number: Optional[int] = None,
                block_hash: Optional[str] = None,
                confirmed_at: Optional[float] = None) -> bool:
        """Mark a record confirmed; a late confirmation also lifts a timeout"""
        with self._lock:
            record = self._lookup(tx_id)
            if record.status == VoteStatus.CONFIRMED:
                return False
            if record.status == VoteStatus.REJECTED:
                logger.warning(f"Ignoring confirmation for rejected transaction {tx_id}")
                return False

            if record.status == VoteStatus.TIMED_OUT:
                logger.warning(f"Late confirmation for timed out transaction {tx_id}")

            record.status = VoteStatus.CONFIRMED
            record.block_number = block_number
            record.block_hash = block_hash
            record.confirmed_at = confirmed_at if confirmed_at is not None else self.clock()
            self._refresh_receipt(record)

            self.event_bus.publish(
                EventType.VOTE_CONFIRMED,
                tx_id=tx_id,
                sequence_index=record.sequence_index,
                block_number=block_number
            )
            return True

    def reject(self, tx_id: str, reason: str = "") -> bool:
        with self._lock:
            record = self._lookup(tx_id)
            if record.status in (VoteStatus.REJECTED, VoteStatus.CONFIRMED):
                return False

            record.status = VoteStatus.REJECTED
            record.rejection_reason = reason or None
            # a reverted vote frees the voter to cast again
            self._voters.discard(record.voter_hash)
            self._refresh_receipt(record)

            logger.warning(f"Transaction {tx_id} rejected: {reason}")
            self.event_bus.publish(
                EventType.VOTE_REJECTED,
                tx_id=tx_id,
                sequence_index=record.sequence_index,
                reason=reason
            )
            return True

    def mark_timed_out(self, tx_id: str) -> bool:
        with self._lock:
            record = self._lookup(tx_id)
            if record.status != VoteStatus.PENDING:
                return False

            record.status = VoteStatus.TIMED_OUT
            self._refresh_receipt(record)

            logger.warning(f"Transaction {tx_id} timed out waiting for confirmation")
            self.event_bus.publish(
                EventType.CONFIRMATION_TIMEOUT,
                tx_id=tx_id,
                sequence_index=record.sequence_index
            )
            return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> Tuple[VoteRecord, ...]:
        """Flush, then copy every record in sequence order"""
        with self._lock:
            self._flush_locked()
            return tuple(replace(r) for r in self._records)

    def confirmed_records(self) -> List[VoteRecord]:
        return [r for r in self.snapshot() if r.is_confirmed]

    def confirmed_commitments(self) -> List[str]:
        return [r.commitment for r in self.confirmed_records()]

    def get_all_votes(self, page_size: int = 50, cursor: Optional[int] = 0) -> Page:
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size <= 0:
            raise ValidationError("page_size must be a positive integer")
        if cursor is None:
            cursor = 0
        if isinstance(cursor, bool) or not isinstance(cursor, int) or cursor < 0:
            raise ValidationError("cursor must be a non-negative integer")

        with self._lock:
            self._flush_locked()
            total = len(self._records)
            if cursor > total:
                raise ValidationError(f"cursor {cursor} is past the end of the ledger ({total})")

            prefix = self.config.anonymized_prefix_length
            window = self._records[cursor:cursor + page_size]
            records = [r.anonymize(prefix) for r in window]

        end = cursor + len(records)
        next_cursor = end if end < total else None
        return Page(records=records, next_cursor=next_cursor,
                    has_more=next_cursor is not None, total=total)

    def get_record(self, tx_id: str) -> Optional[VoteRecord]:
        with self._lock:
            record = self._by_tx.get(tx_id)
            return replace(record) if record else None

    def get_receipt(self, tx_id: str) -> Optional[VoteReceipt]:
        with self._lock:
            receipt = self._receipts.get(tx_id)
            return replace(receipt) if receipt else None

    def receipts(self) -> List[VoteReceipt]:
        with self._lock:
            return [replace(r) for r in self._receipts.values()]

    def has_voted(self, voter_hash: str) -> bool:
        with self._lock:
            return voter_hash in self._voters

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """Recompute every record hash and link; returns (valid, first broken index)"""
        records = self.snapshot()
        previous = GENESIS_HASH
        for position, record in enumerate(records):
            if record.sequence_index != position:
                return False, position
            if record.previous_hash != previous or record.compute_hash() != record.record_hash:
                return False, position
            previous = record.record_hash
        return True, None

    @property
    def vote_count(self) -> int:
        with self._lock:
            return len(self._records) + len(self._buffer)

    @property
    def expected_vote_count(self) -> int:
        with self._lock:
            return self._next_sequence

    @property
    def buffered_count(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def batch_number(self) -> int:
        with self._lock:
            return self._batch_number

    @property
    def last_sync_timestamp(self) -> Optional[float]:
        return self._last_sync_timestamp

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _key(election_id: str, name: str) -> str:
        return f"{election_id}:{name}"

    def save(self, store: KeyValueStore):
        """Write the ledger under keys prefixed with the election id"""
        with self._lock:
            self._flush_locked()
            election_id = self.election.election_id

            counts = Counter(r.candidate_id for r in self._records if r.is_confirmed)
            results = {c: counts.get(c, 0) for c in self.election.candidates}

            store.set(self._key(election_id, "election"), self.election.to_dict())
            store.set(self._key(election_id, "votes"), [r.to_dict() for r in self._records])
            store.set(self._key(election_id, "results"), results)
            store.set(self._key(election_id, "last_sync_timestamp"), self._last_sync_timestamp)
            store.set(self._key(election_id, "receipts"),
                      [r.to_dict() for r in self._receipts.values()])
            store.set(self._key(election_id, "counters"), {
                'next_sequence': self._next_sequence,
                'batch_number': self._batch_number
            })
            store.flush()

        logger.info(f"Saved {len(self._records)} records for election {election_id}")

    @classmethod
    def load(cls, store: KeyValueStore, election_id: str,
             config: Optional[LedgerConfig] = None,
             hasher: Optional[HashCommitment] = None,
             event_bus: Optional[EventBus] = None,
             clock: Callable[[], float] = time.time) -> 'VoteLedger':
        """Rebuild a ledger from a store and validate the restored chain"""
        election_data = store.get(cls._key(election_id, "election"))
        if election_data is None:
            raise ElectionNotInitialized(f"No saved election {election_id}")

        try:
            election = Election.from_dict(election_data)
            records = [VoteRecord.from_dict(r) for r in store.get(cls._key(election_id, "votes"), [])]
            receipts = [VoteReceipt.from_dict(r) for r in store.get(cls._key(election_id, "receipts"), [])]
            counters = store.get(cls._key(election_id, "counters"), {})
            next_sequence = int(counters.get('next_sequence', len(records)))
            batch_number = int(counters.get('batch_number', 0))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StoreError(f"Corrupt snapshot for election {election_id}: {e}")

        ledger = cls(election, config=config, hasher=hasher, event_bus=event_bus, clock=clock)
        with ledger._lock:
            ledger._records = records
            ledger._by_tx = {r.tx_id: r for r in records}
            ledger._voters = {r.voter_hash for r in records if r.status != VoteStatus.REJECTED}
            ledger._receipts = {r.tx_id: r for r in receipts}
            for record in records:
                ledger._receipts.setdefault(record.tx_id, VoteReceipt.from_record(record))
            ledger._next_sequence = next_sequence
            ledger._batch_number = batch_number
            ledger._last_hash = records[-1].record_hash if records else GENESIS_HASH
            ledger._last_sync_timestamp = store.get(cls._key(election_id, "last_sync_timestamp"))

        if next_sequence != len(records):
            raise StoreError(
                f"Snapshot counter {next_sequence} disagrees with {len(records)} stored records")
        is_valid, broken_at = ledger.verify_chain()
        if not is_valid:
            raise StoreError(f"Restored chain is broken at record {broken_at}")

        logger.info(f"Loaded {len(records)} records for election {election_id}")
        return ledger
