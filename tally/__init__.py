"""Election tallies and chain verification."""

from .aggregator import ResultsAggregator, ElectionResults, ChainVerification, IntegrityMismatch

__all__ = [
    'ResultsAggregator',
    'ElectionResults',
    'ChainVerification',
    'IntegrityMismatch',
]
