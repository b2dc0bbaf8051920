#!/usr/bin/env python3
"""
Election Service
================

Async facade over the vote ledger: commitments, batched casting, external
confirmation tracking, tallies, chain verification, Merkle inclusion proofs
and snapshots.

Casting is serialized by an asyncio lock so that the eligibility check, the
external submission and the ledger append for one voter never interleave
with another cast.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from commitment.hash_commitment import Commitment, HashCommitment, KnowledgeProof
from config.config import SystemConfig
from ledger.errors import (
    DuplicateVoter,
    ElectionNotInitialized,
    ElectionStateError,
    LedgerError,
    ValidationError,
)
from ledger.events import EventBus
from ledger.store import KeyValueStore, create_store
from ledger.vote_ledger import (
    BatchResult,
    Election,
    Page,
    SkippedEntry,
    VoteLedger,
    VoteReceipt,
    VoteRecord,
    VoteStatus,
)
from merkle.merkle_tree import MerkleProof, MerkleProofEngine
from reconciliation.reconciliation import (
    ConfirmationSource,
    ConfirmationTimeout,
    InMemoryTransactionChannel,
    JsonRpcConfirmationSource,
    ReconciliationLayer,
    TransactionSubmitter,
)
from tally.aggregator import ChainVerification, ElectionResults, ResultsAggregator
from utils.utils import PerformanceMonitor, generate_secure_id

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], None]


# ============================================================================
# SIMULATION REPORTING
# ============================================================================


@dataclass
class SimulationReport:
    """Outcome of a simulated batch run"""
    total: int
    successful: int
    failed: int
    duration_seconds: float
    throughput_votes_per_sec: float
    success_rate: float
    average_latency_ms: float
    skipped_reasons: Dict[str, int] = field(default_factory=dict)


def analyze_simulation(result: BatchResult, duration_seconds: float,
                       total: Optional[int] = None) -> SimulationReport:
    """Throughput, success rate and average latency of a batch run"""
    total = total if total is not None else result.successful + result.skipped_count
    failed = total - result.successful

    reasons: Dict[str, int] = {}
    for skipped in result.skipped:
        reasons[skipped.error_type] = reasons.get(skipped.error_type, 0) + 1

    if total == 0:
        return SimulationReport(total=0, successful=0, failed=0,
                                duration_seconds=duration_seconds,
                                throughput_votes_per_sec=0.0, success_rate=0.0,
                                average_latency_ms=0.0, skipped_reasons=reasons)

    return SimulationReport(
        total=total,
        successful=result.successful,
        failed=failed,
        duration_seconds=duration_seconds,
        throughput_votes_per_sec=result.successful / duration_seconds if duration_seconds > 0 else 0.0,
        success_rate=100.0 * result.successful / total,
        average_latency_ms=1000.0 * duration_seconds / total,
        skipped_reasons=reasons
    )


# ============================================================================
# ELECTION SERVICE
# ============================================================================


class ElectionService:
    """
    Entry point for one election.

    Without a transaction submitter votes are confirmed locally at cast time.
    With ledger_config.require_confirmation set, an InMemoryTransactionChannel
    is used unless a submitter and confirmation source are supplied, and
    reconciliation_config.rpc_url switches the confirmation source to JSON-RPC.
    """

    def __init__(self, config: Optional[SystemConfig] = None,
                 submitter: Optional[TransactionSubmitter] = None,
                 source: Optional[ConfirmationSource] = None,
                 store: Optional[KeyValueStore] = None,
                 on_timeout: Optional[Callable[[ConfirmationTimeout], None]] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or SystemConfig()
        self.clock = clock
        self.on_timeout = on_timeout
        self.event_bus = EventBus()
        self.performance_monitor = PerformanceMonitor()
        self.merkle = MerkleProofEngine()

        recon_config = self.config.reconciliation_config
        if submitter is None and self.config.ledger_config.require_confirmation:
            channel = InMemoryTransactionChannel(confirmation_depth=recon_config.confirmation_depth)
            submitter = channel
            source = source or channel
        if submitter is not None and source is None:
            if recon_config.rpc_url:
                source = JsonRpcConfirmationSource(
                    recon_config.rpc_url,
                    timeout=recon_config.rpc_timeout,
                    confirmation_depth=recon_config.confirmation_depth
                )
            elif isinstance(submitter, ConfirmationSource):
                source = submitter
            else:
                raise ValueError("A confirmation source is required alongside a transaction submitter")
        self.submitter = submitter
        self.source = source

        self.store = store or create_store(self.config.storage_config.backend,
                                           self.config.storage_config.path)

        self.hasher: Optional[HashCommitment] = None
        self.ledger: Optional[VoteLedger] = None
        self.aggregator: Optional[ResultsAggregator] = None
        self.reconciliation: Optional[ReconciliationLayer] = None
        self._lock = asyncio.Lock()

        logger.info("Election service initialized")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _attach(self, ledger: VoteLedger):
        self.ledger = ledger
        self.hasher = ledger.hasher
        self.aggregator = ResultsAggregator(ledger)
        if self.submitter is not None:
            self.reconciliation = ReconciliationLayer(
                ledger, self.submitter, self.source,
                config=self.config.reconciliation_config,
                on_timeout=self.on_timeout,
                event_bus=self.event_bus
            )
        else:
            self.reconciliation = None

    def _require_ledger(self) -> VoteLedger:
        if self.ledger is None:
            raise ElectionNotInitialized("No election has been initialized")
        return self.ledger

    async def init_election(self, election_id: Optional[str] = None,
                            name: Optional[str] = None,
                            candidates: Optional[Sequence[str]] = None,
                            start_time: Optional[float] = None,
                            end_time: Optional[float] = None) -> Election:
        async with self._lock:
            if self.ledger is not None:
                raise ElectionStateError(
                    f"Election {self.ledger.election.election_id} is already initialized")

            election = Election(
                election_id=election_id or generate_secure_id("election"),
                name=name or self.config.election_name,
                candidates=list(candidates or self.config.candidates),
                start_time=start_time if start_time is not None else self.clock(),
                end_time=end_time
            )
            ledger = VoteLedger(
                election,
                config=self.config.ledger_config,
                hasher=HashCommitment(election.election_id, clock=self.clock),
                event_bus=self.event_bus,
                clock=self.clock
            )
            self._attach(ledger)

            logger.info(f"Election {election.election_id} '{election.name}' initialized "
                        f"with {len(election.candidates)} candidates")
            return election

    async def close_election(self) -> Election:
        ledger = self._require_ledger()
        async with self._lock:
            return ledger.close_election()

    async def shutdown(self):
        """Stop confirmation watchers and close the store"""
        if self.reconciliation is not None:
            await self.reconciliation.cancel_all()
        if self.store.is_open:
            self.store.close()
        logger.info("Election service shut down")

    # ------------------------------------------------------------------
    # Casting
    # ------------------------------------------------------------------

    async def cast_vote(self, voter_hash: str, candidate_id: str,
                        session_id: Optional[str] = None,
                        voter_secret: Optional[str] = None) -> VoteRecord:
        ledger = self._require_ledger()

        with self.performance_monitor.start_operation("cast_vote"):
            async with self._lock:
                session_id = session_id or self.hasher.generate_session_id()

                if self.reconciliation is None:
                    return ledger.cast_vote(voter_hash, candidate_id, session_id,
                                            voter_secret=voter_secret)

                ledger.check_eligibility(voter_hash, candidate_id, session_id)
                tx_id = await self.reconciliation.submit(voter_hash, candidate_id, session_id)
                record = ledger.cast_vote(voter_hash, candidate_id, session_id,
                                          voter_secret=voter_secret, tx_id=tx_id)
                if record.status == VoteStatus.PENDING:
                    self.reconciliation.watch(tx_id)
                return record

    async def _submit_chunk(self, ledger: VoteLedger,
                            chunk: List[Any]) -> Dict[int, SkippedEntry]:
        """
        Attach external tx ids to the entries that would be accepted.

        Returns the entries whose submission failed, keyed by chunk position;
        they are skipped rather than cast so the ledger never holds a vote
        the external channel has not seen.
        """
        failed: Dict[int, SkippedEntry] = {}
        seen = set()
        for position, entry in enumerate(chunk):
            if not isinstance(entry, dict):
                continue
            try:
                ledger.check_eligibility(entry.get('voter_hash'), entry.get('candidate_id'),
                                         entry.get('session_id'))
            except (ValidationError, DuplicateVoter):
                continue
            if entry['voter_hash'] in seen:
                continue

            try:
                entry['tx_id'] = await self.reconciliation.submit(
                    entry['voter_hash'], entry['candidate_id'], entry['session_id'])
            except Exception as e:
                logger.warning(f"Submission for voter {entry['voter_hash'][:8]} failed: {e}")
                failed[position] = SkippedEntry(
                    index=position,
                    voter_hash=entry['voter_hash'],
                    candidate_id=entry['candidate_id'],
                    reason=f"Submission failed: {e}",
                    error_type=type(e).__name__
                )
                continue
            seen.add(entry['voter_hash'])
        return failed

    def _normalize_entry(self, entry: Any) -> Any:
        if isinstance(entry, dict):
            entry = dict(entry)
        elif isinstance(entry, (tuple, list)) and len(entry) in (2, 3, 4):
            keys = ('voter_hash', 'candidate_id', 'session_id', 'voter_secret')
            entry = dict(zip(keys, entry))
        else:
            return entry
        if not entry.get('session_id'):
            entry['session_id'] = self.hasher.generate_session_id()
        return entry

    async def cast_votes_batch(self, entries: Sequence[Any],
                               chunk_size: Optional[int] = None,
                               on_progress: Optional[ProgressCallback] = None) -> BatchResult:
        """
        Cast entries in chunks, reporting progress after each one.

        Progress phases are 'preparing', 'processing', 'error' and 'complete'.
        A chunk that fails as a whole is reported through the 'error' phase,
        its entries are recorded as skipped and the next chunk is attempted.
        """
        ledger = self._require_ledger()
        entries = list(entries)
        total = len(entries)
        chunk_size = chunk_size or self.config.ledger_config.batch_size
        if chunk_size <= 0:
            raise ValidationError("chunk_size must be positive")
        total_chunks = (total + chunk_size - 1) // chunk_size

        def report(phase: str, processed: int, chunks_done: int, error: Optional[str] = None):
            if on_progress is None:
                return
            progress = {
                'phase': phase,
                'processed_votes': processed,
                'total_votes': total,
                'percent_complete': round(100.0 * processed / total, 1) if total else 100.0,
                'processed_chunks': chunks_done,
                'total_chunks': total_chunks,
            }
            if error is not None:
                progress['error'] = error
            try:
                on_progress(progress)
            except Exception:
                logger.exception("Progress callback failed")

        combined = BatchResult()
        report('preparing', 0, 0)

        with self.performance_monitor.start_operation("cast_votes_batch", total=total):
            for chunk_index in range(total_chunks):
                start = chunk_index * chunk_size
                chunk = [self._normalize_entry(e) for e in entries[start:start + chunk_size]]

                try:
                    async with self._lock:
                        failed: Dict[int, SkippedEntry] = {}
                        if self.reconciliation is not None:
                            failed = await self._submit_chunk(ledger, chunk)
                        castable = [p for p in range(len(chunk)) if p not in failed]
                        result = ledger.cast_votes_batch([chunk[p] for p in castable])
                        if self.reconciliation is not None:
                            for record in result.records:
                                if record.status == VoteStatus.PENDING:
                                    self.reconciliation.watch(record.tx_id)
                except LedgerError as e:
                    logger.error(f"Chunk {chunk_index + 1}/{total_chunks} failed: {e}")
                    for offset in range(len(chunk)):
                        combined.skipped.append(SkippedEntry(
                            index=start + offset,
                            voter_hash=None,
                            candidate_id=None,
                            reason=str(e),
                            error_type=type(e).__name__
                        ))
                    report('error', start + len(chunk), chunk_index + 1, error=str(e))
                    continue

                combined.records.extend(result.records)
                combined.successful += result.successful
                for skipped in result.skipped:
                    skipped.index = castable[skipped.index]
                chunk_skipped = sorted(list(failed.values()) + result.skipped, key=lambda s: s.index)
                for skipped in chunk_skipped:
                    skipped.index += start
                    combined.skipped.append(skipped)

                report('processing', start + len(chunk), chunk_index + 1)
                await asyncio.sleep(0)

        report('complete', total, total_chunks)
        logger.info(f"Batch of {total} votes: {combined.successful} recorded, "
                    f"{combined.skipped_count} skipped")
        return combined

    async def flush_batch(self):
        ledger = self._require_ledger()
        async with self._lock:
            return ledger.flush_batch()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_all_votes(self, page_size: int = 50, cursor: Optional[int] = 0) -> Page:
        return self._require_ledger().get_all_votes(page_size, cursor)

    def get_results(self) -> ElectionResults:
        self._require_ledger()
        with self.performance_monitor.start_operation("get_results"):
            return self.aggregator.get_results()

    def verify_chain(self) -> ChainVerification:
        self._require_ledger()
        return self.aggregator.verify_chain_integrity()

    def get_receipt(self, tx_id: str) -> Optional[VoteReceipt]:
        return self._require_ledger().get_receipt(tx_id)

    def merkle_root(self) -> str:
        commitments = self._require_ledger().confirmed_commitments()
        return self.merkle.build_tree(commitments).root

    # ------------------------------------------------------------------
    # Commitments and proofs
    # ------------------------------------------------------------------

    def commit(self, candidate_id: str, voter_secret: str, salt: Optional[str] = None) -> Commitment:
        self._require_ledger()
        return self.hasher.commit(candidate_id, voter_secret, salt)

    def verify_commitment(self, commitment: str, candidate_id: str,
                          voter_secret: str, salt: str) -> bool:
        self._require_ledger()
        return self.hasher.verify_commitment(commitment, candidate_id, voter_secret, salt)

    def prove_knowledge(self, voter_secret: str, commitment: str) -> KnowledgeProof:
        self._require_ledger()
        return self.hasher.prove_knowledge(voter_secret, commitment)

    def verify_knowledge(self, proof: KnowledgeProof, commitment: str,
                         expected_public_key: Optional[str] = None) -> bool:
        self._require_ledger()
        return self.hasher.verify_knowledge(proof, commitment, expected_public_key)

    def prove_inclusion(self, commitment: str) -> Optional[MerkleProof]:
        """Inclusion proof over the current confirmed commitment sequence"""
        ledger = self._require_ledger()
        with self.performance_monitor.start_operation("prove_inclusion"):
            return self.merkle.prove_inclusion(commitment, ledger.confirmed_commitments())

    def verify_inclusion(self, proof: Optional[MerkleProof], commitment: str,
                         expected_root: Optional[str] = None) -> bool:
        if expected_root is None:
            expected_root = self.merkle_root()
        return self.merkle.verify_inclusion(proof, commitment, expected_root)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def save_snapshot(self):
        ledger = self._require_ledger()
        async with self._lock:
            self.store.open()
            ledger.save(self.store)

    async def load_snapshot(self, election_id: str) -> Election:
        """Replace the ledger with a stored one and resume watching its pending votes"""
        async with self._lock:
            if self.reconciliation is not None:
                await self.reconciliation.cancel_all()
            self.store.open()
            ledger = VoteLedger.load(
                self.store, election_id,
                config=self.config.ledger_config,
                hasher=HashCommitment(election_id, clock=self.clock),
                event_bus=self.event_bus,
                clock=self.clock
            )
            self._attach(ledger)

            pending = [r.tx_id for r in ledger.snapshot() if r.status == VoteStatus.PENDING]
            if pending and self.reconciliation is None:
                logger.warning(f"{len(pending)} restored votes are pending but no "
                               f"confirmation source is configured")
            elif pending:
                for tx_id in pending:
                    self.reconciliation.watch(tx_id)
                logger.info(f"Resumed confirmation tracking for {len(pending)} pending votes")
            return ledger.election

    def get_system_metrics(self) -> Dict[str, Any]:
        ledger = self.ledger
        return {
            'election_id': ledger.election.election_id if ledger else None,
            'vote_count': ledger.vote_count if ledger else 0,
            'buffered_votes': ledger.buffered_count if ledger else 0,
            'batches_flushed': ledger.batch_number if ledger else 0,
            'active_watchers': self.reconciliation.active_watchers if self.reconciliation else 0,
            'performance': self.performance_monitor.get_summary()
        }


# ============================================================================
# DEMONSTRATION
# ============================================================================


async def demonstrate_election_service():
    """Cast a handful of votes, confirm them on a simulated chain and prove inclusion"""
    print("\n" + "=" * 80)
    print("VERIFIABLE VOTE LEDGER DEMONSTRATION")
    print("=" * 80 + "\n")

    config = SystemConfig()
    config.ledger_config.require_confirmation = True
    config.reconciliation_config.poll_interval = 0.05
    config.reconciliation_config.confirmation_timeout = 1.0

    service = ElectionService(config)
    election = await service.init_election(election_id="demo_election", name="Demo Election")
    print(f"Election {election.election_id} with candidates {election.candidates}\n")

    records = []
    for i, candidate in enumerate(["A", "B", "C", "A", "B"]):
        voter_hash = service.hasher.voter_hash_for(f"voter{i}@example.com")
        record = await service.cast_vote(voter_hash, candidate)
        records.append(record)
        print(f"  voter {i}: cast for {candidate} (tx {record.tx_id[:18]}...)")

    try:
        await service.cast_vote(records[0].voter_hash, "B")
    except DuplicateVoter as e:
        print(f"  duplicate rejected: {e}")

    await service.reconciliation.wait_all()
    await service.close_election()

    results = service.get_results()
    print(f"\nResults: {results.counts} ({results.total_votes} confirmed votes)")

    verification = service.verify_chain()
    print(f"Chain verification: {verification.message}")

    proof = service.prove_inclusion(records[0].commitment)
    print(f"Inclusion proof for first vote verifies: "
          f"{service.verify_inclusion(proof, records[0].commitment)}")

    await service.shutdown()


if __name__ == "__main__":
    asyncio.run(demonstrate_election_service())
