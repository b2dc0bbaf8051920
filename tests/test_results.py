import pytest

from ledger import EventType, VoteRecord, VoteStatus
from tally import IntegrityMismatch, ResultsAggregator


@pytest.fixture
def aggregator(ledger):
    return ResultsAggregator(ledger)


class TestTally:

    def test_every_candidate_starts_at_zero(self, aggregator):
        assert aggregator.tally([]) == {"A": 0, "B": 0, "C": 0}

    def test_only_confirmed_records_count(self, pending_ledger, voters):
        aggregator = ResultsAggregator(pending_ledger)
        records = pending_ledger.cast_votes_batch(
            [(voters[0], "A", "s"), (voters[1], "B", "s"), (voters[2], "B", "s")]).records
        pending_ledger.confirm(records[1].tx_id, block_number=1)
        pending_ledger.mark_timed_out(records[2].tx_id)

        assert aggregator.get_results().counts == {"A": 0, "B": 1, "C": 0}

    def test_unknown_candidate_reported_not_counted(self, aggregator):
        stray = VoteRecord(voter_hash="v", candidate_id="Z", session_id="s", tx_id="t",
                           timestamp=0.0, sequence_index=4, status=VoteStatus.CONFIRMED)

        counts = aggregator.tally([stray])

        assert "Z" not in counts
        assert sum(counts.values()) == 0
        assert aggregator.last_anomalies == ["Record 4 names unknown candidate 'Z'"]


class TestGetResults:

    def test_flushes_and_publishes(self, ledger, aggregator, voters, collected_events):
        ledger.cast_votes_batch([(v, "ABCA"[i % 4], f"s{i}") for i, v in enumerate(voters[:8])])
        assert ledger.buffered_count == 8

        results = aggregator.get_results()

        assert ledger.buffered_count == 0
        assert results.counts == {"A": 4, "B": 2, "C": 2}
        assert results.total_votes == 8
        assert results.anomalies == []
        updates = [e for e in collected_events if e.event_type == EventType.RESULTS_UPDATED]
        assert updates[-1].payload["total_votes"] == 8

    def test_to_dict(self, aggregator):
        data = aggregator.get_results().to_dict()
        assert set(data) == {"counts", "total_votes", "anomalies", "last_updated"}


class TestChainIntegrity:

    def test_valid_chain(self, ledger, aggregator, voters):
        ledger.cast_votes_batch([(v, "A", "s") for v in voters[:5]])
        verification = aggregator.verify_chain_integrity()

        assert verification.is_valid
        assert verification.vote_count == verification.expected_vote_count == 5
        assert verification.broken_at is None

    def test_empty_ledger_is_valid(self, aggregator):
        assert aggregator.verify_chain_integrity().is_valid

    def test_tampered_record_reported_not_raised(self, ledger, aggregator, voters, collected_events):
        ledger.cast_votes_batch([(v, "A", "s") for v in voters[:3]])
        ledger.flush_batch()
        ledger._records[1].candidate_id = "C"

        verification = aggregator.verify_chain_integrity()

        assert not verification.is_valid
        assert verification.broken_at == 1
        mismatches = [e for e in collected_events if e.event_type == EventType.INTEGRITY_MISMATCH]
        assert isinstance(mismatches[0].payload["report"], IntegrityMismatch)
        assert mismatches[0].payload["report"].broken_at == 1

    def test_count_mismatch(self, ledger, aggregator, voters):
        ledger.cast_vote(voters[0], "A", "s")
        ledger._next_sequence += 1

        verification = aggregator.verify_chain_integrity()

        assert not verification.is_valid
        assert verification.vote_count == 1
        assert verification.expected_vote_count == 2
        assert "does not match" in verification.message
