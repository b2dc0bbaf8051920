"""Append-only vote ledger, its key-value stores and event bus."""

from .errors import (
    LedgerError,
    ValidationError,
    InvalidCandidate,
    DuplicateVoter,
    ElectionStateError,
    ElectionNotActive,
    AlreadyClosed,
    ElectionNotInitialized,
    UnknownTransaction,
    StoreError,
)
from .events import EventBus, EventType, Event
from .store import KeyValueStore, InMemoryStore, JsonFileStore, create_store
from .vote_ledger import (
    VoteLedger,
    VoteRecord,
    VoteStatus,
    VoteReceipt,
    Election,
    Batch,
    BatchResult,
    SkippedEntry,
    Page,
    AnonymizedVote,
    GENESIS_HASH,
)

__all__ = [
    'LedgerError',
    'ValidationError',
    'InvalidCandidate',
    'DuplicateVoter',
    'ElectionStateError',
    'ElectionNotActive',
    'AlreadyClosed',
    'ElectionNotInitialized',
    'UnknownTransaction',
    'StoreError',
    'EventBus',
    'EventType',
    'Event',
    'KeyValueStore',
    'InMemoryStore',
    'JsonFileStore',
    'create_store',
    'VoteLedger',
    'VoteRecord',
    'VoteStatus',
    'VoteReceipt',
    'Election',
    'Batch',
    'BatchResult',
    'SkippedEntry',
    'Page',
    'AnonymizedVote',
    'GENESIS_HASH',
]
