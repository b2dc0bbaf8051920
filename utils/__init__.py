"""Utilities for the vote ledger."""

from .utils import (
    setup_logging,
    save_results,
    PerformanceMonitor,
    create_performance_report,
    get_system_info,
    generate_secure_id,
    to_serializable,
    format_duration,
)

__all__ = [
    'setup_logging',
    'save_results',
    'PerformanceMonitor',
    'create_performance_report',
    'get_system_info',
    'generate_secure_id',
    'to_serializable',
    'format_duration',
]
