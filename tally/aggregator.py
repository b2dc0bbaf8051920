"""
Tallying of confirmed votes and ledger integrity checks.
"""

import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional

from ledger.events import EventType
from ledger.vote_ledger import VoteLedger, VoteRecord, VoteStatus

logger = logging.getLogger(__name__)


@dataclass
class ElectionResults:
    counts: Dict[str, int]
    total_votes: int
    anomalies: List[str] = field(default_factory=list)
    last_updated: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ChainVerification:
    is_valid: bool
    vote_count: int
    expected_vote_count: int
    broken_at: Optional[int] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IntegrityMismatch:
    """Published on the event bus when chain verification fails"""
    vote_count: int
    expected_vote_count: int
    broken_at: Optional[int]
    message: str


class ResultsAggregator:
    """Read-only consumer of ledger snapshots"""

    def __init__(self, ledger: VoteLedger):
        self.ledger = ledger
        self.candidates = list(ledger.election.candidates)
        self._last_anomalies: List[str] = []

    def tally(self, records: Iterable[VoteRecord]) -> Dict[str, int]:
        """Count CONFIRMED records per configured candidate in a single pass"""
        counts = {candidate: 0 for candidate in self.candidates}
        anomalies = []

        for record in records:
            if record.status != VoteStatus.CONFIRMED:
                continue
            if record.candidate_id not in counts:
                anomalies.append(
                    f"Record {record.sequence_index} names unknown candidate {record.candidate_id!r}")
                continue
            counts[record.candidate_id] += 1

        for anomaly in anomalies:
            logger.warning(anomaly)
        self._last_anomalies = anomalies
        return counts

    @property
    def last_anomalies(self) -> List[str]:
        return list(self._last_anomalies)

    def get_results(self) -> ElectionResults:
        counts = self.tally(self.ledger.snapshot())
        results = ElectionResults(
            counts=counts,
            total_votes=sum(counts.values()),
            anomalies=self.last_anomalies
        )

        self.ledger.event_bus.publish(
            EventType.RESULTS_UPDATED,
            counts=dict(counts),
            total_votes=results.total_votes
        )
        return results

    def verify_chain_integrity(self) -> ChainVerification:
        """Valid when the stored record count matches the ledger counter and the hash chain holds"""
        records = self.ledger.snapshot()
        vote_count = len(records)
        expected = self.ledger.expected_vote_count
        chain_valid, broken_at = self.ledger.verify_chain()

        if vote_count != expected:
            message = f"Vote count {vote_count} does not match expected {expected}"
        elif not chain_valid:
            message = f"Hash chain broken at record {broken_at}"
        else:
            message = f"Chain of {vote_count} records verified"

        verification = ChainVerification(
            is_valid=chain_valid and vote_count == expected,
            vote_count=vote_count,
            expected_vote_count=expected,
            broken_at=broken_at,
            message=message
        )

        if not verification.is_valid:
            logger.warning(f"Integrity mismatch: {message}")
            mismatch = IntegrityMismatch(
                vote_count=vote_count,
                expected_vote_count=expected,
                broken_at=broken_at,
                message=message
            )
            self.ledger.event_bus.publish(EventType.INTEGRITY_MISMATCH, report=mismatch)

        return verification
