"""Confirmation tracking and cache merging for submitted votes."""

from .reconciliation import (
    ReconciliationLayer,
    ReconciliationState,
    Confirmation,
    ConfirmationTimeout,
    ConfirmationSourceError,
    TrackedVote,
    MergeReport,
    TransactionSubmitter,
    ConfirmationSource,
    InMemoryTransactionChannel,
    JsonRpcConfirmationSource,
)

__all__ = [
    'ReconciliationLayer',
    'ReconciliationState',
    'Confirmation',
    'ConfirmationTimeout',
    'ConfirmationSourceError',
    'TrackedVote',
    'MergeReport',
    'TransactionSubmitter',
    'ConfirmationSource',
    'InMemoryTransactionChannel',
    'JsonRpcConfirmationSource',
]
