import asyncio

import pytest

from config.config import LedgerConfig, ReconciliationConfig, SystemConfig
from election_service import ElectionService, analyze_simulation
from ledger import (
    AlreadyClosed,
    BatchResult,
    DuplicateVoter,
    ElectionNotInitialized,
    ElectionStateError,
    InMemoryStore,
    SkippedEntry,
    VoteStatus,
)
from reconciliation import ConfirmationSource, InMemoryTransactionChannel, ReconciliationState


class NeverConfirms(ConfirmationSource):
    async def get_confirmation(self, tx_id):
        return None


def fast_config(**ledger_overrides):
    return SystemConfig(
        ledger_config=LedgerConfig(**ledger_overrides),
        reconciliation_config=ReconciliationConfig(poll_interval=0.01, confirmation_timeout=0.05)
    )


class TestLocalElection:

    def test_full_flow(self, voters):
        async def scenario():
            service = ElectionService(fast_config())
            await service.init_election(election_id="e1")

            records = [await service.cast_vote(v, c) for v, c in zip(voters, "ABCA")]
            with pytest.raises(DuplicateVoter):
                await service.cast_vote(voters[0], "B")

            results = service.get_results()
            proofs = [(r.commitment, service.prove_inclusion(r.commitment)) for r in records]
            root = service.merkle_root()
            closed = await service.close_election()
            with pytest.raises(AlreadyClosed):
                await service.close_election()
            await service.shutdown()
            return service, records, results, proofs, root, closed

        service, records, results, proofs, root, closed = asyncio.run(scenario())

        assert all(r.status == VoteStatus.CONFIRMED for r in records)
        assert results.counts == {"A": 2, "B": 1, "C": 1}
        for commitment, proof in proofs:
            assert proof.root == root
            assert service.verify_inclusion(proof, commitment)
        assert not closed.is_active
        assert service.verify_chain().is_valid
        assert service.get_receipt(records[0].tx_id).candidate_id == "A"

    def test_requires_initialization(self):
        service = ElectionService()
        with pytest.raises(ElectionNotInitialized):
            asyncio.run(service.cast_vote("v", "A"))
        with pytest.raises(ElectionNotInitialized):
            service.get_results()
        with pytest.raises(ElectionNotInitialized):
            service.get_all_votes()

    def test_initialize_once(self):
        service = ElectionService()

        async def scenario():
            election = await service.init_election(candidates=["X", "Y"])
            with pytest.raises(ElectionStateError):
                await service.init_election()
            return election

        election = asyncio.run(scenario())
        assert election.candidates == ["X", "Y"]
        assert election.election_id.startswith("election_")

    def test_commitment_operations(self):
        service = ElectionService()
        asyncio.run(service.init_election(election_id="e2"))

        commitment = service.commit("A", "secret")
        assert service.verify_commitment(commitment.commitment, "A", "secret", commitment.salt)
        assert not service.verify_commitment(commitment.commitment, "B", "secret", commitment.salt)

        proof = service.prove_knowledge("secret", commitment.commitment)
        assert service.verify_knowledge(proof, commitment.commitment)

    def test_non_member_inclusion(self):
        service = ElectionService()
        asyncio.run(service.init_election(election_id="e3"))
        assert service.prove_inclusion("00" * 32) is None
        assert not service.verify_inclusion(None, "00" * 32)


class TestConfirmedElection:

    def test_votes_confirm_through_channel(self, voters):
        async def scenario():
            service = ElectionService(fast_config(require_confirmation=True))
            await service.init_election(election_id="e4")
            records = [await service.cast_vote(v, "B") for v in voters[:3]]
            states = await service.reconciliation.wait_all()
            results = service.get_results()
            await service.shutdown()
            return records, states, results

        records, states, results = asyncio.run(scenario())

        assert all(r.status == VoteStatus.PENDING for r in records)
        assert all(r.tx_id.startswith("0x") for r in records)
        assert set(states.values()) == {ReconciliationState.CONFIRMED}
        assert results.counts["B"] == 3

    def test_duplicate_is_not_submitted(self, voters):
        channel = InMemoryTransactionChannel()

        async def scenario():
            service = ElectionService(fast_config(require_confirmation=True), submitter=channel, source=channel)
            await service.init_election(election_id="e5")
            await service.cast_vote(voters[0], "A")
            with pytest.raises(DuplicateVoter):
                await service.cast_vote(voters[0], "A")
            await service.shutdown()

        asyncio.run(scenario())
        assert len(channel.submissions) == 1

    def test_timeout_callback(self, voters):
        reports = []

        async def scenario():
            channel = InMemoryTransactionChannel()
            service = ElectionService(fast_config(require_confirmation=True), submitter=channel,
                                      source=NeverConfirms(), on_timeout=reports.append)
            await service.init_election(election_id="e6")
            record = await service.cast_vote(voters[0], "C")
            await service.reconciliation.wait_all()
            return service, record

        service, record = asyncio.run(scenario())

        assert reports[0].tx_id == record.tx_id
        assert service.ledger.get_record(record.tx_id).status == VoteStatus.TIMED_OUT
        assert service.get_results().total_votes == 0

    def test_shutdown_cancels_watchers(self, voters):
        config = SystemConfig(
            ledger_config=LedgerConfig(require_confirmation=True),
            reconciliation_config=ReconciliationConfig(poll_interval=1.0, confirmation_timeout=30.0)
        )

        async def scenario():
            channel = InMemoryTransactionChannel()
            service = ElectionService(config, submitter=channel, source=NeverConfirms())
            await service.init_election(election_id="e7")
            await service.cast_vote(voters[0], "A")
            await asyncio.sleep(0.01)
            watching = service.get_system_metrics()['active_watchers']
            await service.shutdown()
            return service, watching

        service, watching = asyncio.run(scenario())
        assert watching == 1
        assert service.reconciliation.active_watchers == 0

    def test_submitter_without_source_rejected(self):
        class SubmitOnly:
            async def submit(self, voter_hash, candidate_id, session_id):
                return "0x1"

        with pytest.raises(ValueError):
            ElectionService(fast_config(), submitter=SubmitOnly())


class TestBatchCasting:

    def test_chunks_report_progress(self, voters):
        progress = []
        entries = [(v, "AB"[i % 2]) for i, v in enumerate(voters[:5])] + [(voters[0], "A")]

        async def scenario():
            service = ElectionService(fast_config())
            await service.init_election(election_id="e8")
            return await service.cast_votes_batch(entries, chunk_size=2, on_progress=progress.append)

        result = asyncio.run(scenario())

        assert result.successful == 5
        assert [(s.index, s.error_type) for s in result.skipped] == [(5, "DuplicateVoter")]
        assert [p['phase'] for p in progress] == ['preparing', 'processing', 'processing', 'processing', 'complete']
        assert progress[1]['processed_votes'] == 2
        assert progress[-1]['percent_complete'] == 100.0
        assert progress[0]['total_chunks'] == 3

    def test_closed_election_reports_error_per_chunk(self, voters):
        progress = []

        async def scenario():
            service = ElectionService(fast_config())
            await service.init_election(election_id="e9")
            await service.close_election()
            return await service.cast_votes_batch(
                [(v, "A") for v in voters[:4]], chunk_size=2, on_progress=progress.append)

        result = asyncio.run(scenario())

        assert result.successful == 0
        assert {s.error_type for s in result.skipped} == {"ElectionNotActive"}
        assert [s.index for s in result.skipped] == [0, 1, 2, 3]
        assert [p['phase'] for p in progress] == ['preparing', 'error', 'error', 'complete']

    def test_batch_with_confirmation(self, voters):
        async def scenario():
            service = ElectionService(fast_config(require_confirmation=True))
            await service.init_election(election_id="e10")
            result = await service.cast_votes_batch(
                [(v, "C") for v in voters[:6]] + [(voters[1], "A"), ("", "A")], chunk_size=4)
            await service.reconciliation.wait_all()
            return service, result

        service, result = asyncio.run(scenario())

        assert result.successful == 6
        assert result.skipped_count == 2
        assert len(service.submitter.submissions) == 6
        assert service.get_results().counts == {"A": 0, "B": 0, "C": 6}

    def test_submission_failure_skips_only_that_entry(self, voters):
        class FlakyChannel(InMemoryTransactionChannel):
            calls = 0

            async def submit(self, voter_hash, candidate_id, session_id):
                self.calls += 1
                if self.calls == 2:
                    raise ConnectionError("rpc down")
                return await super().submit(voter_hash, candidate_id, session_id)

        channel = FlakyChannel()
        progress = []

        async def scenario():
            service = ElectionService(fast_config(require_confirmation=True), submitter=channel, source=channel)
            await service.init_election(election_id="e11b")
            result = await service.cast_votes_batch(
                [(v, "A") for v in voters[:4]], chunk_size=4, on_progress=progress.append)
            states = await service.reconciliation.wait_all()
            return service, result, states

        service, result, states = asyncio.run(scenario())

        assert result.successful == 3
        assert [(s.index, s.error_type) for s in result.skipped] == [(1, "ConnectionError")]
        assert result.skipped[0].voter_hash == voters[1]
        assert len(channel.submissions) == 3
        assert [p['phase'] for p in progress] == ['preparing', 'processing', 'complete']
        assert not service.ledger.has_voted(voters[1])
        assert service.get_results().counts["A"] == 3
        assert list(states.values()) == [ReconciliationState.CONFIRMED] * 3

    def test_failing_progress_callback_is_contained(self, voters):
        def explode(progress):
            raise RuntimeError("ui gone")

        async def scenario():
            service = ElectionService(fast_config())
            await service.init_election(election_id="e11")
            return await service.cast_votes_batch([(voters[0], "A")], on_progress=explode)

        assert asyncio.run(scenario()).successful == 1


class TestSnapshots:

    def test_save_and_load(self, voters):
        store = InMemoryStore()

        async def scenario():
            first = ElectionService(fast_config(batch_size=3), store=store)
            await first.init_election(election_id="e12")
            await first.cast_votes_batch([(v, "ABC"[i % 3]) for i, v in enumerate(voters[:7])])
            await first.save_snapshot()
            expected = first.get_results().counts

            second = ElectionService(fast_config(batch_size=3), store=store)
            election = await second.load_snapshot("e12")
            with pytest.raises(DuplicateVoter):
                await second.cast_vote(voters[0], "A")
            return expected, second, election

        expected, second, election = asyncio.run(scenario())

        assert election.election_id == "e12"
        assert second.get_results().counts == expected
        assert second.verify_chain().is_valid
        assert second.get_all_votes(page_size=100).total == 7

    def test_load_resumes_pending_confirmations(self, voters):
        store = InMemoryStore()
        reports = []

        async def scenario():
            channel = InMemoryTransactionChannel()
            first = ElectionService(fast_config(require_confirmation=True), submitter=channel,
                                    source=NeverConfirms(), store=store)
            await first.init_election(election_id="e13")
            record = await first.cast_vote(voters[0], "A")
            await first.reconciliation.cancel_all()
            await first.save_snapshot()

            second = ElectionService(fast_config(require_confirmation=True), submitter=channel,
                                     source=NeverConfirms(), store=store, on_timeout=reports.append)
            await second.load_snapshot("e13")
            watching = second.get_system_metrics()['active_watchers']
            await second.reconciliation.wait_all()
            return record, second, watching

        record, second, watching = asyncio.run(scenario())

        assert record.status == VoteStatus.PENDING
        assert watching == 1
        assert second.ledger.get_record(record.tx_id).status == VoteStatus.TIMED_OUT
        assert reports[0].tx_id == record.tx_id


class TestAnalyzeSimulation:

    def test_metrics(self):
        result = BatchResult(successful=8, skipped=[
            SkippedEntry(index=8, voter_hash=None, candidate_id=None, reason="dup", error_type="DuplicateVoter"),
            SkippedEntry(index=9, voter_hash=None, candidate_id=None, reason="bad", error_type="InvalidCandidate"),
        ])

        report = analyze_simulation(result, duration_seconds=2.0)

        assert report.total == 10
        assert report.failed == 2
        assert report.success_rate == 80.0
        assert report.throughput_votes_per_sec == 4.0
        assert report.average_latency_ms == 200.0
        assert report.skipped_reasons == {"DuplicateVoter": 1, "InvalidCandidate": 1}

    def test_empty(self):
        report = analyze_simulation(BatchResult(), duration_seconds=0.0)
        assert report.total == 0
        assert report.success_rate == 0.0
