import argparse
import asyncio
import logging
import random
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from config.config import SystemConfig, load_config
from election_service import ElectionService, analyze_simulation
from utils.utils import setup_logging, save_results, create_performance_report

logger = logging.getLogger(__name__)

# Candidate weights used by the simulated electorate
CANDIDATE_DISTRIBUTION = (0.4, 0.3, 0.3)


def pick_candidate(candidates: List[str], rng: random.Random) -> str:
    """40/30/30 split over the first three candidates, uniform beyond that"""
    if len(candidates) != len(CANDIDATE_DISTRIBUTION):
        return rng.choice(candidates)

    roll = rng.random()
    cumulative = 0.0
    for candidate, weight in zip(candidates, CANDIDATE_DISTRIBUTION):
        cumulative += weight
        if roll < cumulative:
            return candidate
    return candidates[-1]


def generate_voters(service: ElectionService, num_voters: int,
                    seed: Optional[int] = None) -> List[Dict[str, str]]:
    rng = random.Random(seed)
    candidates = service.ledger.election.candidates
    entries = []
    for i in range(num_voters):
        entries.append({
            'voter_hash': service.hasher.voter_hash_for(f"voter{i}@example.com"),
            'candidate_id': pick_candidate(candidates, rng),
            'session_id': service.hasher.generate_session_id()
        })
    return entries


def print_progress(progress: Dict[str, Any]):
    phase = progress['phase']
    if phase == 'preparing':
        print(f"Preparing to process {progress['total_votes']} votes "
              f"in {progress['total_chunks']} chunks...")
    elif phase == 'processing':
        print(f"  Processing: {progress['processed_votes']}/{progress['total_votes']} votes "
              f"({progress['percent_complete']}%) - chunk "
              f"{progress['processed_chunks']}/{progress['total_chunks']}")
    elif phase == 'error':
        print(f"  Error in chunk {progress['processed_chunks']}/{progress['total_chunks']}: "
              f"{progress['error']}. Continuing with next chunk...")
    elif phase == 'complete':
        print("  Batch complete")


async def run_simulation(config: SystemConfig, num_voters: int, chunk_size: int,
                         output: Path, seed: Optional[int] = None) -> bool:
    print("=" * 80)
    print("VERIFIABLE VOTE LEDGER - ELECTION SIMULATION")
    print("=" * 80)

    service = ElectionService(config)
    timeouts = []
    service.on_timeout = timeouts.append

    try:
        election = await service.init_election(name=config.election_name)
        print(f"\nElection: {election.name} ({election.election_id})")
        print(f"Candidates: {', '.join(election.candidates)}")
        print(f"Batch size: {config.ledger_config.batch_size}, chunk size: {chunk_size}")
        print(f"External confirmation: {'on' if config.ledger_config.require_confirmation else 'off'}\n")

        entries = generate_voters(service, num_voters, seed=seed)
        # one repeat voter to exercise duplicate rejection
        if entries:
            entries.append(dict(entries[0]))

        start = time.perf_counter()
        batch_result = await service.cast_votes_batch(
            entries, chunk_size=chunk_size, on_progress=print_progress)
        duration = time.perf_counter() - start

        if service.reconciliation is not None:
            print("\nWaiting for confirmations...")
            await service.reconciliation.wait_all()

        await service.close_election()

        results = service.get_results()
        verification = service.verify_chain()
        simulation = analyze_simulation(batch_result, duration, total=len(entries))

        print("\n" + "=" * 40)
        print("ELECTION RESULTS")
        print("=" * 40)
        for candidate, count in results.counts.items():
            print(f"  Candidate {candidate}: {count} votes")
        print(f"\nTotal confirmed votes: {results.total_votes}")
        if timeouts:
            print(f"Timed out confirmations: {len(timeouts)}")

        print(f"\nChain verification: {'PASSED' if verification.is_valid else 'FAILED'}")
        print(f"  {verification.message}")

        print("\nPerformance:")
        print(f"  Throughput: {simulation.throughput_votes_per_sec:.1f} votes/second")
        print(f"  Success rate: {simulation.success_rate:.1f}%")
        print(f"  Average latency: {simulation.average_latency_ms:.2f} ms")
        for reason, count in simulation.skipped_reasons.items():
            print(f"  Skipped ({reason}): {count}")

        inclusion = None
        if batch_result.records:
            sample = batch_result.records[0]
            proof = service.prove_inclusion(sample.commitment)
            verified = service.verify_inclusion(proof, sample.commitment)
            inclusion = {
                'tx_id': sample.tx_id,
                'commitment': sample.commitment,
                'proof': proof.to_dict() if proof else None,
                'verified': verified
            }
            print(f"\nSample inclusion proof for {sample.tx_id[:18]}...: "
                  f"{'verified' if verified else 'NOT verified'} "
                  f"({len(proof.siblings) if proof else 0} siblings)")

        report = {
            'election': election.to_dict(),
            'results': results.to_dict(),
            'chain_verification': verification.to_dict(),
            'simulation': simulation,
            'merkle_root': service.merkle_root(),
            'inclusion_proof': inclusion,
            'system_metrics': service.get_system_metrics()
        }

        report_path = output / f"{election.election_id}.json"
        summary_path = save_results(report, report_path)

        perf_report = create_performance_report(service.performance_monitor)
        perf_path = output / "performance_report.txt"
        with open(perf_path, "w") as f:
            f.write(perf_report)

        if config.storage_config.backend == "json":
            await service.save_snapshot()
            print(f"Ledger snapshot: {config.storage_config.path}")

        print(f"\nFull results saved to: {report_path}")
        print(f"Summary: {summary_path}")
        print(f"Performance report: {perf_path}")
        return verification.is_valid

    except Exception as e:
        logger.exception("Simulation failed")
        print(f"\nSimulation failed: {e}")
        return False
    finally:
        await service.shutdown()


def main():
    parser = argparse.ArgumentParser(
        description='Verifiable Vote Ledger Simulation')
    parser.add_argument('--voters', type=int, default=150,
                        help='Number of simulated voters')
    parser.add_argument('--batch-size', type=int, default=None,
                        help='Ledger batch size (overrides config)')
    parser.add_argument('--chunk-size', type=int, default=50,
                        help='Votes submitted per chunk')
    parser.add_argument('--confirm', action='store_true',
                        help='Confirm votes through the simulated transaction channel')
    parser.add_argument('--config', type=str,
                        default='config.yaml', help='Config file path')
    parser.add_argument('--output', type=str, default=None,
                        help='Directory for results (overrides config)')
    parser.add_argument('--seed', type=int, default=None,
                        help='Random seed for the simulated electorate')

    args = parser.parse_args()

    config = load_config(Path(args.config))
    if args.batch_size is not None:
        config.ledger_config.batch_size = args.batch_size
    if args.confirm:
        config.ledger_config.require_confirmation = True
        config.reconciliation_config.poll_interval = min(config.reconciliation_config.poll_interval, 0.05)
    output = Path(args.output) if args.output else config.results_dir

    setup_logging(config.log_level, log_dir=config.log_dir)

    if args.voters < 0 or args.chunk_size <= 0 or config.ledger_config.batch_size <= 0:
        parser.error("voters must be non-negative; chunk and batch sizes must be positive")

    success = asyncio.run(run_simulation(config, args.voters, args.chunk_size, output, seed=args.seed))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
