"""Configuration management for the vote ledger."""

from .config import (
    SystemConfig,
    LedgerConfig,
    ReconciliationConfig,
    StorageConfig,
    load_config,
    save_config,
)

__all__ = ['SystemConfig', 'LedgerConfig', 'ReconciliationConfig',
           'StorageConfig', 'load_config', 'save_config']
