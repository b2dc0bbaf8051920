"""
Utilities for the Vote Ledger
Logging setup, performance monitoring, identifiers and result export
"""

import logging
import json
import time
import secrets
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, List, Optional
import platform
from dataclasses import dataclass, asdict, field
from enum import Enum

import numpy as np
import psutil

logger = logging.getLogger(__name__)


@dataclass
class PerformanceMetrics:
    operation: str
    duration_seconds: float
    cpu_percent: float
    memory_mb: float
    timestamp: float
    additional_data: Dict[str, Any] = field(default_factory=dict)


def setup_logging(log_level: str = "INFO", log_file: Optional[Path] = None,
                  log_dir: Path = Path("logs")):
    """Install file and console handlers on the root logger"""
    if log_file is None:
        log_file = Path(log_dir) / \
            f"vote_ledger_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Clear existing handlers to avoid duplicates
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logger.info(f"Logging initialized. Log file: {log_file}")

    return logging.getLogger("vote_ledger")


class PerformanceMonitor:
    """Collects timing, CPU and memory samples per named operation"""

    def __init__(self):
        self.metrics: List[PerformanceMetrics] = []
        self.process = psutil.Process()

    def start_operation(self, operation_name: str, **additional_data) -> 'OperationContext':
        """Start monitoring an operation - returns context manager"""
        return OperationContext(self, operation_name, additional_data)

    def record_metric(self, metric: PerformanceMetrics):
        self.metrics.append(metric)

    def get_summary(self) -> Dict[str, Any]:
        """Per-operation statistics"""
        if not self.metrics:
            return {
                'total_operations': 0,
                'total_duration': 0.0,
                'operations': {}
            }

        operation_groups: Dict[str, List[PerformanceMetrics]] = {}
        for metric in self.metrics:
            operation_groups.setdefault(metric.operation, []).append(metric)

        summary = {
            'total_operations': len(self.metrics),
            'operations': {}
        }

        for op_name, metrics in operation_groups.items():
            durations = np.array([m.duration_seconds for m in metrics])
            cpu_usages = [m.cpu_percent for m in metrics if m.cpu_percent > 0]
            memory_usages = [m.memory_mb for m in metrics if m.memory_mb > 0]
            total = float(durations.sum())

            summary['operations'][op_name] = {
                'count': len(metrics),
                'total_duration': total,
                'avg_duration': float(durations.mean()),
                'min_duration': float(durations.min()),
                'max_duration': float(durations.max()),
                'std_duration': float(durations.std()) if len(durations) > 1 else 0.0,
                'p95_duration': float(np.percentile(durations, 95)),
                'avg_cpu_percent': float(np.mean(cpu_usages)) if cpu_usages else 0.0,
                'avg_memory_mb': float(np.mean(memory_usages)) if memory_usages else 0.0,
                'peak_memory_mb': max(memory_usages) if memory_usages else 0.0,
                'throughput_ops_per_sec': len(metrics) / total if total > 0 else 0.0
            }

        summary['total_duration'] = sum(
            op_data['total_duration']
            for op_data in summary['operations'].values()
        )

        return summary

    def save_metrics(self, filepath: Path):
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        metrics_data = {
            'metrics': [asdict(m) for m in self.metrics],
            'summary': self.get_summary(),
            'system_info': get_system_info(),
            'timestamp': datetime.now().isoformat()
        }

        with open(filepath, 'w') as f:
            json.dump(metrics_data, f, indent=2, default=str)

    def reset(self):
        self.metrics.clear()


class OperationContext:
    """Context manager for performance monitoring"""

    def __init__(self, monitor: PerformanceMonitor, operation_name: str,
                 additional_data: Optional[Dict[str, Any]] = None):
        self.monitor = monitor
        self.operation_name = operation_name
        self.additional_data = dict(additional_data or {})
        self.start_time = 0.0
        self.start_memory = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        try:
            # First call primes psutil's CPU counter
            self.monitor.process.cpu_percent()
            self.start_memory = self.monitor.process.memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            logger.debug(f"Performance monitoring error: {e}")
            self.start_memory = 0.0
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.perf_counter() - self.start_time

        try:
            cpu = self.monitor.process.cpu_percent()
            end_memory = self.monitor.process.memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            logger.debug(f"Performance monitoring error: {e}")
            cpu = 0.0
            end_memory = self.start_memory

        self.additional_data['exception'] = exc_type is not None
        self.monitor.record_metric(PerformanceMetrics(
            operation=self.operation_name,
            duration_seconds=duration,
            cpu_percent=cpu,
            memory_mb=max(self.start_memory, end_memory),
            timestamp=time.time(),
            additional_data=self.additional_data
        ))
        return False


def get_system_info() -> Dict[str, Any]:
    """Host information attached to saved results"""
    info = {
        'platform': platform.platform(),
        'python_version': platform.python_version(),
        'machine': platform.machine(),
        'timestamp': datetime.now().isoformat()
    }

    try:
        vm = psutil.virtual_memory()
        info.update({
            'cpu_count_physical': psutil.cpu_count(logical=False),
            'cpu_count_logical': psutil.cpu_count(logical=True),
            'total_memory_gb': round(vm.total / 1024 / 1024 / 1024, 2),
            'available_memory_gb': round(vm.available / 1024 / 1024 / 1024, 2),
        })
    except psutil.Error as e:
        logger.debug(f"System info error: {e}")
        info['psutil_error'] = str(e)

    return info


def generate_secure_id(prefix: str = "", length: int = 16) -> str:
    """Random identifier: optional prefix, millisecond timestamp, random hex"""
    random_part = secrets.token_hex(length // 2)
    timestamp = int(time.time() * 1000)

    if prefix:
        return f"{prefix}_{timestamp}_{random_part}"
    return f"{timestamp}_{random_part}"


def to_serializable(obj):
    """Convert ledger objects into JSON-friendly structures"""
    if hasattr(obj, 'to_dict'):
        return to_serializable(obj.to_dict())
    if hasattr(obj, '__dataclass_fields__'):
        return to_serializable(asdict(obj))
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {str(k): to_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [to_serializable(item) for item in obj]
    if isinstance(obj, (np.integer, np.floating)):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, bytes):
        return obj.hex()
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    return obj


def save_results(results: Dict[str, Any], filepath: Path) -> Path:
    """Save results to JSON plus a human readable summary next to it"""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    enhanced_results = {
        'metadata': {
            'generated_at': datetime.now().isoformat(),
            'system_info': get_system_info(),
            'file_path': str(filepath)
        },
        'data': to_serializable(results)
    }

    with open(filepath, 'w') as f:
        json.dump(enhanced_results, f, indent=2, default=str)

    summary_path = filepath.parent / f"{filepath.stem}_summary.txt"
    with open(summary_path, 'w') as f:
        f.write(create_results_summary(results))

    logger.info(f"Results saved to {filepath}")
    logger.info(f"Summary saved to {summary_path}")
    return summary_path


def create_results_summary(results: Dict[str, Any]) -> str:
    """Human-readable summary of an election run"""
    summary = []
    summary.append("=" * 80)
    summary.append("VOTE LEDGER - ELECTION SUMMARY")
    summary.append("=" * 80)
    summary.append(
        f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    summary.append("")

    if 'election' in results:
        election = to_serializable(results['election'])
        summary.append("ELECTION:")
        for key in ('election_id', 'name', 'candidates', 'is_active'):
            if key in election:
                summary.append(f"  {key}: {election[key]}")
        summary.append("")

    if 'results' in results:
        tally = to_serializable(results['results'])
        counts = tally.get('counts', {})
        total_votes = tally.get('total_votes', sum(counts.values()))
        summary.append("ELECTION TALLY:")
        for candidate_id, count in counts.items():
            percentage = (count / total_votes * 100) if total_votes > 0 else 0
            summary.append(
                f"  Candidate {candidate_id}: {count} votes ({percentage:.1f}%)")
        summary.append(f"  Total Votes: {total_votes}")
        if tally.get('anomalies'):
            summary.append(f"  Anomalies: {len(tally['anomalies'])}")
        summary.append("")

    if 'chain_verification' in results:
        verification = to_serializable(results['chain_verification'])
        status = "PASSED" if verification.get('is_valid') else "FAILED"
        summary.append("CHAIN VERIFICATION:")
        summary.append(f"  Status: {status}")
        summary.append(
            f"  Votes: {verification.get('vote_count')} / expected {verification.get('expected_vote_count')}")
        summary.append("")

    if 'simulation' in results:
        summary.append("SIMULATION:")
        for key, value in to_serializable(results['simulation']).items():
            if isinstance(value, float):
                summary.append(f"  {key}: {value:.4f}")
            else:
                summary.append(f"  {key}: {value}")
        summary.append("")

    summary.append("=" * 80)
    return "\n".join(summary)


def create_performance_report(metrics: PerformanceMonitor) -> str:
    """Create detailed performance report from metrics"""
    summary = metrics.get_summary()

    report = []
    report.append("=" * 80)
    report.append("VOTE LEDGER - PERFORMANCE REPORT")
    report.append("=" * 80)
    report.append(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    report.append(f"Total Operations: {summary.get('total_operations', 0)}")
    report.append(f"Total Duration: {summary.get('total_duration', 0):.3f}s")
    report.append("")

    if summary['operations']:
        report.append("OPERATION BREAKDOWN:")
        report.append("-" * 60)

        for op_name, op_data in summary['operations'].items():
            report.append(f"\n{op_name.upper()}:")
            report.append(f"  Executions: {op_data['count']}")
            report.append(f"  Total Time: {format_duration(op_data['total_duration'])}")
            report.append(f"  Average Time: {op_data['avg_duration']:.4f}s")
            report.append(
                f"  Min/Max Time: {op_data['min_duration']:.4f}s / {op_data['max_duration']:.4f}s")
            report.append(f"  P95: {op_data['p95_duration']:.4f}s")
            report.append(
                f"  Throughput: {op_data['throughput_ops_per_sec']:.2f} ops/sec")
            if op_data['avg_memory_mb'] > 0:
                report.append(
                    f"  Peak Memory: {op_data['peak_memory_mb']:.1f} MB")
    else:
        report.append("No performance data available.")

    report.append("")
    report.append("=" * 80)
    return "\n".join(report)


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format"""
    if seconds < 1:
        return f"{seconds*1000:.1f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = seconds % 60
        return f"{hours}h {minutes}m {secs:.1f}s"


__all__ = [
    'PerformanceMetrics',
    'PerformanceMonitor',
    'OperationContext',
    'setup_logging',
    'get_system_info',
    'generate_secure_id',
    'to_serializable',
    'save_results',
    'create_results_summary',
    'create_performance_report',
    'format_duration',
]
