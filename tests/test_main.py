import asyncio
import json
import random
from collections import Counter

from config.config import LedgerConfig, ReconciliationConfig, StorageConfig, SystemConfig
from main import pick_candidate, run_simulation


def test_pick_candidate_distribution():
    rng = random.Random(7)
    counts = Counter(pick_candidate(["A", "B", "C"], rng) for _ in range(5000))
    assert 0.36 < counts["A"] / 5000 < 0.44
    assert 0.26 < counts["B"] / 5000 < 0.34
    assert 0.26 < counts["C"] / 5000 < 0.34


def test_pick_candidate_uniform_for_other_sizes():
    rng = random.Random(1)
    picks = {pick_candidate(["X", "Y"], rng) for _ in range(50)}
    assert picks == {"X", "Y"}


def test_local_simulation(tmp_path, capsys):
    config = SystemConfig(ledger_config=LedgerConfig(batch_size=8))

    ok = asyncio.run(run_simulation(config, num_voters=20, chunk_size=6, output=tmp_path, seed=3))

    assert ok
    reports = [p for p in tmp_path.glob("election_*.json")]
    assert len(reports) == 1
    data = json.loads(reports[0].read_text())['data']
    assert data['results']['total_votes'] == 20
    assert data['chain_verification']['is_valid']
    assert data['simulation']['skipped_reasons'] == {'DuplicateVoter': 1}
    assert data['inclusion_proof']['verified']
    assert (tmp_path / "performance_report.txt").exists()
    assert "Chain verification: PASSED" in capsys.readouterr().out


def test_confirmed_simulation_with_snapshot(tmp_path):
    config = SystemConfig(
        ledger_config=LedgerConfig(require_confirmation=True),
        reconciliation_config=ReconciliationConfig(poll_interval=0.01, confirmation_timeout=1.0),
        storage_config=StorageConfig(backend="json", path=tmp_path / "ledger.json")
    )

    ok = asyncio.run(run_simulation(config, num_voters=10, chunk_size=4, output=tmp_path / "out", seed=5))

    assert ok
    data = json.loads(next((tmp_path / "out").glob("election_*.json")).read_text())['data']
    assert data['results']['total_votes'] == 10
    snapshot = json.loads((tmp_path / "ledger.json").read_text())
    votes_key = next(k for k in snapshot if k.endswith(":votes"))
    assert {v['status'] for v in snapshot[votes_key]} == {"confirmed"}
