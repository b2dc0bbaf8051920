"""
Reconciliation of Pending and Confirmed Votes
=============================================

Tracks each submitted vote through

    SUBMITTED -> PENDING -> CONFIRMED | TIMED_OUT
                        \\-> REJECTED | CANCELLED

by polling an external confirmation source from a cancellable asyncio task.
Responses from the source are untrusted: they are validated before they touch
the ledger, and failures are logged and counted, never raised to the caller.
"""

import asyncio
import hashlib
import logging
import math
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import requests

from config.config import ReconciliationConfig
from ledger.errors import LedgerError, UnknownTransaction
from ledger.events import EventBus
from ledger.vote_ledger import VoteLedger, VoteStatus

logger = logging.getLogger(__name__)


# ============================================================================
# EXCEPTIONS, ENUMS AND REPORTS
# ============================================================================


class ConfirmationSourceError(Exception):
    """Raised by a confirmation source that could not answer"""
    pass


class ReconciliationState(Enum):
    SUBMITTED = "submitted"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


MAX_REASON_LENGTH = 200

TERMINAL_STATES = frozenset({
    ReconciliationState.CONFIRMED,
    ReconciliationState.TIMED_OUT,
    ReconciliationState.REJECTED,
    ReconciliationState.CANCELLED,
})


@dataclass
class Confirmation:
    tx_id: str
    confirmed: bool
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    confirmations: int = 0
    failed: bool = False
    reason: Optional[str] = None
    confirmed_at: Optional[float] = None

    @classmethod
    def validate(cls, tx_id: str, response: Any) -> Optional['Confirmation']:
        """Check an untrusted response; None means the source does not know the tx yet"""
        if response is None:
            return None
        if isinstance(response, dict):
            try:
                response = cls(**response)
            except TypeError as e:
                raise ValueError(f"Unexpected confirmation fields: {e}")
        if not isinstance(response, cls):
            raise ValueError(f"Unexpected confirmation type {type(response).__name__}")

        if response.tx_id != tx_id:
            raise ValueError(f"Confirmation for {response.tx_id} returned while polling {tx_id}")
        if not isinstance(response.confirmed, bool) or not isinstance(response.failed, bool):
            raise ValueError("confirmed and failed must be booleans")
        if response.confirmed and response.failed:
            raise ValueError("Confirmation cannot be both confirmed and failed")
        if response.confirmed:
            block_number = response.block_number
            if isinstance(block_number, bool) or not isinstance(block_number, int) or block_number < 0:
                raise ValueError(f"Invalid block number {block_number!r}")
            if response.block_hash is not None and not _is_block_hash(response.block_hash):
                raise ValueError(f"Invalid block hash {response.block_hash!r}")
        confirmed_at = response.confirmed_at
        if confirmed_at is not None and (isinstance(confirmed_at, bool) or
                                         not isinstance(confirmed_at, (int, float)) or
                                         not math.isfinite(confirmed_at) or confirmed_at < 0):
            raise ValueError(f"Invalid confirmation time {confirmed_at!r}")
        return replace(response, reason=_bounded_reason(response.reason))


def _bounded_reason(value: Any) -> Optional[str]:
    """Untrusted rejection reason as a short string"""
    if value is None:
        return None
    text = value if isinstance(value, str) else repr(value)
    return text[:MAX_REASON_LENGTH] or None


def _is_block_hash(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    digits = value[2:] if value.startswith("0x") else value
    if len(digits) != 64:
        return False
    try:
        int(digits, 16)
    except ValueError:
        return False
    return True


@dataclass
class ConfirmationTimeout:
    """Delivered to on_timeout when a vote never confirms within the window"""
    tx_id: str
    attempts: int
    elapsed: float
    sequence_index: Optional[int] = None


@dataclass
class TrackedVote:
    tx_id: str
    state: ReconciliationState
    submitted_at: float
    attempts: int = 0
    last_error: Optional[str] = None
    confirmation: Optional[Confirmation] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)


@dataclass
class MergeReport:
    received: int = 0
    applied: int = 0
    already_confirmed: int = 0
    rejected: int = 0
    pending: int = 0
    unknown: int = 0
    malformed: int = 0
    anomalies: List[str] = field(default_factory=list)


# ============================================================================
# OUTBOUND COLLABORATORS
# ============================================================================


class TransactionSubmitter(ABC):
    @abstractmethod
    async def submit(self, voter_hash: str, candidate_id: str, session_id: str) -> str:
        """Submit a vote and return its transaction id"""


class ConfirmationSource(ABC):
    @abstractmethod
    async def get_confirmation(self, tx_id: str) -> Optional[Union[Confirmation, Dict[str, Any]]]:
        """Current confirmation status of a transaction, or None if unknown"""


class InMemoryTransactionChannel(TransactionSubmitter, ConfirmationSource):
    """
    Simulated chain for demos and tests.

    Each submission is included in a new block. A transaction counts as
    confirmed once confirmation_depth blocks include or follow it. With
    auto_mine enabled every confirmation query mines one more block.
    """

    def __init__(self, confirmation_depth: int = 1, auto_mine: bool = True):
        if confirmation_depth < 1:
            raise ValueError("confirmation_depth must be at least 1")
        self.confirmation_depth = confirmation_depth
        self.auto_mine = auto_mine
        self.block_height = 0
        self.submissions: List[Dict[str, Any]] = []
        self._included: Dict[str, int] = {}
        self._failed: Dict[str, str] = {}
        self._dropped = set()
        self._lock = threading.Lock()

    @staticmethod
    def block_hash(block_number: int) -> str:
        return "0x" + hashlib.sha256(f"block-{block_number}".encode()).hexdigest()

    async def submit(self, voter_hash: str, candidate_id: str, session_id: str) -> str:
        tx_id = "0x" + secrets.token_hex(32)
        with self._lock:
            self.block_height += 1
            self._included[tx_id] = self.block_height
            self.submissions.append({
                'tx_id': tx_id,
                'voter_hash': voter_hash,
                'candidate_id': candidate_id,
                'session_id': session_id,
                'block_number': self.block_height
            })
        return tx_id

    def mine(self, blocks: int = 1) -> int:
        with self._lock:
            self.block_height += blocks
            return self.block_height

    def drop(self, tx_id: str):
        """Simulate a transaction that never confirms"""
        with self._lock:
            self._dropped.add(tx_id)

    def fail(self, tx_id: str, reason: str = "reverted"):
        with self._lock:
            self._failed[tx_id] = reason

    async def get_confirmation(self, tx_id: str) -> Optional[Confirmation]:
        if self.auto_mine:
            self.mine()

        with self._lock:
            if tx_id not in self._included or tx_id in self._dropped:
                return None
            if tx_id in self._failed:
                return Confirmation(tx_id=tx_id, confirmed=False, failed=True,
                                    reason=self._failed[tx_id])

            block_number = self._included[tx_id]
            confirmations = self.block_height - block_number + 1
            if confirmations < self.confirmation_depth:
                return Confirmation(tx_id=tx_id, confirmed=False, confirmations=confirmations)

            return Confirmation(
                tx_id=tx_id,
                confirmed=True,
                block_number=block_number,
                block_hash=self.block_hash(block_number),
                confirmations=confirmations,
                confirmed_at=time.time()
            )


class JsonRpcConfirmationSource(ConfirmationSource):
    """Ethereum JSON-RPC receipts via eth_getTransactionReceipt"""

    def __init__(self, rpc_url: str, timeout: float = 10.0, confirmation_depth: int = 1,
                 session: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.confirmation_depth = confirmation_depth
        self.session = session or requests.Session()
        self._request_id = 0

    def _call(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            raise ConfirmationSourceError(f"Malformed JSON-RPC response to {method}")
        if body.get('error'):
            raise ConfirmationSourceError(f"{method} failed: {body['error']}")
        return body.get('result')

    def fetch_receipt(self, tx_id: str) -> Optional[Confirmation]:
        receipt = self._call("eth_getTransactionReceipt", [tx_id])
        if receipt is None:
            return None
        if not isinstance(receipt, dict):
            raise ConfirmationSourceError("Receipt is not an object")

        try:
            block_number = int(receipt['blockNumber'], 16)
            status = int(receipt.get('status', '0x1'), 16)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfirmationSourceError(f"Malformed receipt for {tx_id}: {e}")

        if status == 0:
            return Confirmation(tx_id=tx_id, confirmed=False, failed=True,
                                reason="transaction reverted", block_number=block_number)

        confirmations = 1
        if self.confirmation_depth > 1:
            latest = int(self._call("eth_blockNumber", []), 16)
            confirmations = latest - block_number + 1

        return Confirmation(
            tx_id=tx_id,
            confirmed=confirmations >= self.confirmation_depth,
            block_number=block_number,
            block_hash=receipt.get('blockHash'),
            confirmations=confirmations,
            confirmed_at=time.time()
        )

    async def get_confirmation(self, tx_id: str) -> Optional[Confirmation]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.fetch_receipt, tx_id)


# ============================================================================
# RECONCILIATION LAYER
# ============================================================================


def _first(entry: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if entry.get(key) is not None:
            return entry[key]
    return None


def _has_confirmation(entry: Dict[str, Any]) -> bool:
    return (entry.get('status') == VoteStatus.CONFIRMED.value
            or entry.get('confirmed') is True
            or _first(entry, 'block_number', 'blockNumber') is not None)


class ReconciliationLayer:
    """Moves ledger records from PENDING to a terminal state using an external source"""

    def __init__(self, ledger: VoteLedger, submitter: TransactionSubmitter,
                 source: ConfirmationSource,
                 config: Optional[ReconciliationConfig] = None,
                 on_timeout: Optional[Callable[[ConfirmationTimeout], None]] = None,
                 event_bus: Optional[EventBus] = None,
                 history_limit: int = 1000):
        self.ledger = ledger
        self.submitter = submitter
        self.source = source
        self.config = config or ReconciliationConfig()
        self.on_timeout = on_timeout
        self.event_bus = event_bus or ledger.event_bus
        if history_limit < 1:
            raise ValueError("history_limit must be positive")
        self._tracked: Dict[str, TrackedVote] = {}
        self.history_limit = history_limit

    async def submit(self, voter_hash: str, candidate_id: str, session_id: str) -> str:
        tx_id = await self.submitter.submit(voter_hash, candidate_id, session_id)
        if not isinstance(tx_id, str) or not tx_id:
            raise LedgerError(f"Submitter returned an invalid transaction id: {tx_id!r}")

        self._tracked[tx_id] = TrackedVote(
            tx_id=tx_id,
            state=ReconciliationState.SUBMITTED,
            submitted_at=time.time()
        )
        self._prune_history(keep=tx_id)
        logger.debug(f"Submitted vote as transaction {tx_id}")
        return tx_id

    def watch(self, tx_id: str) -> asyncio.Task:
        """Start polling for a ledger record; must be called from a running event loop"""
        if self.ledger.get_record(tx_id) is None:
            raise UnknownTransaction(f"No record for transaction {tx_id}")

        tracked = self._tracked.get(tx_id)
        if tracked is None:
            tracked = TrackedVote(tx_id=tx_id, state=ReconciliationState.SUBMITTED,
                                  submitted_at=time.time())
            self._tracked[tx_id] = tracked
            self._prune_history(keep=tx_id)
        if tracked.task is not None and not tracked.task.done():
            return tracked.task

        tracked.state = ReconciliationState.PENDING
        tracked.task = asyncio.get_running_loop().create_task(self._poll(tracked))
        return tracked.task

    def _is_finished(self, tx_id: str, tracked: TrackedVote) -> bool:
        if tracked.task is not None:
            return tracked.task.done()
        return tracked.state in TERMINAL_STATES or self.ledger.get_record(tx_id) is None

    def _prune_history(self, keep: str):
        """Forget the oldest finished transactions beyond history_limit"""
        excess = len(self._tracked) - self.history_limit
        if excess <= 0:
            return
        finished = [tx_id for tx_id, tracked in self._tracked.items()
                    if tx_id != keep and self._is_finished(tx_id, tracked)]
        for tx_id in finished[:excess]:
            del self._tracked[tx_id]

    async def _poll(self, tracked: TrackedVote) -> ReconciliationState:
        tx_id = tracked.tx_id
        started = time.monotonic()

        try:
            for attempt in range(self.config.max_attempts):
                if attempt:
                    await asyncio.sleep(self.config.poll_interval)

                record = self.ledger.get_record(tx_id)
                if record is not None and record.status == VoteStatus.CONFIRMED:
                    tracked.state = ReconciliationState.CONFIRMED
                    return tracked.state
                if record is not None and record.status == VoteStatus.REJECTED:
                    tracked.state = ReconciliationState.REJECTED
                    return tracked.state

                tracked.attempts += 1
                try:
                    response = await asyncio.wait_for(
                        self.source.get_confirmation(tx_id), timeout=self.config.rpc_timeout)
                    confirmation = Confirmation.validate(tx_id, response)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    tracked.last_error = str(e) or type(e).__name__
                    logger.warning(f"Confirmation check {tracked.attempts} for {tx_id} failed: {tracked.last_error}")
                    continue

                if confirmation is None:
                    continue
                if confirmation.failed:
                    tracked.confirmation = confirmation
                    tracked.state = ReconciliationState.REJECTED
                    self.ledger.reject(tx_id, confirmation.reason or "rejected by source")
                    return tracked.state
                if confirmation.confirmed:
                    tracked.confirmation = confirmation
                    tracked.state = ReconciliationState.CONFIRMED
                    self.ledger.confirm(
                        tx_id,
                        block_number=confirmation.block_number,
                        block_hash=confirmation.block_hash,
                        confirmed_at=confirmation.confirmed_at
                    )
                    logger.info(f"Transaction {tx_id} confirmed in block {confirmation.block_number}")
                    return tracked.state

            return self._handle_timeout(tracked, time.monotonic() - started)
        except asyncio.CancelledError:
            tracked.state = ReconciliationState.CANCELLED
            logger.info(f"Stopped watching transaction {tx_id}")
            raise

    def _handle_timeout(self, tracked: TrackedVote, elapsed: float) -> ReconciliationState:
        tracked.state = ReconciliationState.TIMED_OUT
        self.ledger.mark_timed_out(tracked.tx_id)

        record = self.ledger.get_record(tracked.tx_id)
        report = ConfirmationTimeout(
            tx_id=tracked.tx_id,
            attempts=tracked.attempts,
            elapsed=elapsed,
            sequence_index=record.sequence_index if record else None
        )
        if self.on_timeout is not None:
            try:
                self.on_timeout(report)
            except Exception:
                logger.exception(f"on_timeout callback failed for {tracked.tx_id}")
        return tracked.state

    def cancel(self, tx_id: str) -> bool:
        tracked = self._tracked.get(tx_id)
        if tracked is None or tracked.task is None or tracked.task.done():
            return False
        tracked.task.cancel()
        tracked.state = ReconciliationState.CANCELLED
        return True

    async def cancel_all(self):
        tasks = []
        for tracked in self._tracked.values():
            if tracked.task is not None and not tracked.task.done():
                tracked.task.cancel()
                tracked.state = ReconciliationState.CANCELLED
                tasks.append(tracked.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} confirmation watchers")

    async def wait(self, tx_id: str) -> Optional[ReconciliationState]:
        tracked = self._tracked.get(tx_id)
        if tracked is None:
            return None
        if tracked.task is not None:
            await asyncio.gather(tracked.task, return_exceptions=True)
        return tracked.state

    async def wait_all(self) -> Dict[str, ReconciliationState]:
        tasks = [t.task for t in self._tracked.values() if t.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return {tx_id: t.state for tx_id, t in self._tracked.items()}

    def state(self, tx_id: str) -> Optional[ReconciliationState]:
        tracked = self._tracked.get(tx_id)
        return tracked.state if tracked else None

    def tracked(self, tx_id: str) -> Optional[TrackedVote]:
        tracked = self._tracked.get(tx_id)
        return replace(tracked) if tracked else None

    @property
    def active_watchers(self) -> int:
        return sum(1 for t in self._tracked.values()
                   if t.task is not None and not t.task.done())

    # ------------------------------------------------------------------
    # Cache merging
    # ------------------------------------------------------------------

    @staticmethod
    def merge_caches(*caches: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Deduplicate vote entries from several observers by tx_id.

        An entry carrying confirmation metadata wins over one without;
        otherwise the last writer wins. Entries without a tx_id are dropped.
        """
        merged: Dict[str, Dict[str, Any]] = {}
        for cache in caches:
            for entry in cache or []:
                if not isinstance(entry, dict):
                    continue
                tx_id = _first(entry, 'tx_id', 'txId')
                if not isinstance(tx_id, str) or not tx_id:
                    continue

                current = merged.get(tx_id)
                if current is not None and _has_confirmation(current) and not _has_confirmation(entry):
                    continue
                merged[tx_id] = dict(entry)
        return list(merged.values())

    def apply_external(self, entries: Iterable[Any]) -> MergeReport:
        """Apply confirmations reported by an untrusted observer"""
        report = MergeReport()
        valid = []
        for entry in entries:
            report.received += 1
            tx_id = _first(entry, 'tx_id', 'txId') if isinstance(entry, dict) else None
            if not isinstance(tx_id, str) or not tx_id:
                report.malformed += 1
                report.anomalies.append(f"Entry without transaction id: {entry!r:.80}")
                continue
            valid.append(entry)

        for entry in self.merge_caches(valid):
            tx_id = _first(entry, 'tx_id', 'txId')
            record = self.ledger.get_record(tx_id)
            if record is None:
                report.unknown += 1
                report.anomalies.append(f"Unknown transaction {tx_id}")
                continue

            voter_hash = _first(entry, 'voter_hash', 'voterHash')
            candidate_id = _first(entry, 'candidate_id', 'candidateId', 'candidate')
            if (voter_hash is not None and voter_hash != record.voter_hash) or \
                    (candidate_id is not None and candidate_id != record.candidate_id):
                report.malformed += 1
                report.anomalies.append(f"Transaction {tx_id} does not match the ledger record")
                continue

            if entry.get('status') == VoteStatus.REJECTED.value:
                if self.ledger.reject(tx_id, _bounded_reason(entry.get('rejection_reason')) or "reported by observer"):
                    report.rejected += 1
                continue

            if not _has_confirmation(entry):
                report.pending += 1
                continue

            try:
                confirmation = Confirmation.validate(tx_id, Confirmation(
                    tx_id=tx_id,
                    confirmed=True,
                    block_number=_first(entry, 'block_number', 'blockNumber'),
                    block_hash=_first(entry, 'block_hash', 'blockHash'),
                    confirmed_at=entry.get('confirmed_at')
                ))
            except ValueError as e:
                report.malformed += 1
                report.anomalies.append(f"Transaction {tx_id}: {e}")
                continue

            if self.ledger.confirm(tx_id, block_number=confirmation.block_number,
                                   block_hash=confirmation.block_hash,
                                   confirmed_at=confirmation.confirmed_at):
                report.applied += 1
                tracked = self._tracked.get(tx_id)
                if tracked is not None:
                    tracked.confirmation = confirmation
            elif record.status == VoteStatus.CONFIRMED:
                report.already_confirmed += 1
            else:
                report.anomalies.append(
                    f"Confirmation reported for {record.status.value} transaction {tx_id}")

        if report.anomalies:
            logger.warning(f"External merge reported {len(report.anomalies)} anomalies")
        logger.info(f"Applied {report.applied} external confirmations from {report.received} entries")
        return report
