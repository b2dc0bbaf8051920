"""Exception hierarchy for ledger operations."""


class LedgerError(Exception):
    """Base exception for ledger operations"""
    pass


class ValidationError(LedgerError):
    """Raised for malformed input such as empty identifiers"""
    pass


class InvalidCandidate(ValidationError):
    """Raised when a candidate is not part of the election"""
    pass


class DuplicateVoter(LedgerError):
    """Raised when a voter already has a record in this election"""
    pass


class ElectionStateError(LedgerError):
    """Raised when the election lifecycle forbids an operation"""
    pass


class ElectionNotActive(ElectionStateError):
    """Raised when the election is closed or outside its voting window"""
    pass


class AlreadyClosed(ElectionStateError):
    """Raised when closing an election twice"""
    pass


class ElectionNotInitialized(ElectionStateError):
    """Raised when no election has been initialized"""
    pass


class UnknownTransaction(LedgerError):
    """Raised when a tx_id does not belong to any ledger record"""
    pass


class StoreError(LedgerError):
    """Raised when the key-value store cannot be read or written"""
    pass
