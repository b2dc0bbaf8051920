"""
Pytest configuration and shared fixtures.
"""

import hashlib

import pytest

from commitment.hash_commitment import HashCommitment
from config.config import LedgerConfig, ReconciliationConfig
from ledger import Election, EventBus, VoteLedger

ELECTION_ID = "test_election"


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def election(clock):
    return Election(
        election_id=ELECTION_ID,
        name="Test Election",
        candidates=["A", "B", "C"],
        start_time=clock.now
    )


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def make_ledger(election, clock, event_bus):
    """Build a ledger over the shared election with LedgerConfig overrides."""
    def _make(**overrides):
        return VoteLedger(election, config=LedgerConfig(**overrides),
                          event_bus=event_bus, clock=clock)
    return _make


@pytest.fixture
def ledger(make_ledger):
    return make_ledger()


@pytest.fixture
def pending_ledger(make_ledger):
    """Ledger whose records stay PENDING until confirmed externally."""
    return make_ledger(require_confirmation=True)


@pytest.fixture
def hasher(clock):
    return HashCommitment(ELECTION_ID, clock=clock)


@pytest.fixture
def voters():
    """Deterministic voter hashes v0..v199."""
    return [hashlib.sha256(f"voter-{i}".encode()).hexdigest() for i in range(200)]


@pytest.fixture
def fast_reconciliation_config():
    """Polls every 10ms for at most five attempts."""
    return ReconciliationConfig(poll_interval=0.01, confirmation_timeout=0.05)


@pytest.fixture
def collected_events(event_bus):
    events = []
    event_bus.subscribe(None, events.append)
    return events
