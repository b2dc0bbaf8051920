import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CANDIDATES = ["A", "B", "C"]


@dataclass
class LedgerConfig:
    batch_size: int = 100
    anonymized_prefix_length: int = 8
    require_confirmation: bool = False
    commitment_workers: int = 4
    parallel_commit_threshold: int = 64

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.anonymized_prefix_length <= 0:
            raise ValueError("anonymized_prefix_length must be positive")
        if self.commitment_workers <= 0:
            raise ValueError("commitment_workers must be positive")


@dataclass
class ReconciliationConfig:
    poll_interval: float = 2.0
    confirmation_timeout: float = 600.0
    confirmation_depth: int = 1
    rpc_url: Optional[str] = None
    rpc_timeout: float = 10.0

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.confirmation_timeout < self.poll_interval:
            raise ValueError(
                "confirmation_timeout must be at least one poll_interval")
        if self.confirmation_depth < 1:
            raise ValueError("confirmation_depth must be at least 1")

    @property
    def max_attempts(self) -> int:
        """Number of polls that fit in the confirmation window"""
        return max(1, int(self.confirmation_timeout / self.poll_interval + 1e-9))


@dataclass
class StorageConfig:
    backend: str = "memory"
    path: Path = field(default_factory=lambda: Path("data/ledger.json"))

    def __post_init__(self):
        self.path = Path(self.path)
        if self.backend not in ("memory", "json"):
            raise ValueError(f"Unknown storage backend: {self.backend}")


@dataclass
class SystemConfig:
    election_name: str = "General Election"
    candidates: List[str] = field(
        default_factory=lambda: list(DEFAULT_CANDIDATES))

    ledger_config: LedgerConfig = field(default_factory=LedgerConfig)
    reconciliation_config: ReconciliationConfig = field(
        default_factory=ReconciliationConfig)
    storage_config: StorageConfig = field(default_factory=StorageConfig)

    log_dir: Path = field(default_factory=lambda: Path("logs"))
    results_dir: Path = field(default_factory=lambda: Path("election_results"))
    log_level: str = "INFO"
    enable_benchmarking: bool = True

    def __post_init__(self):
        self.log_dir = Path(self.log_dir)
        self.results_dir = Path(self.results_dir)
        if not self.candidates:
            raise ValueError("At least one candidate is required")
        if len(set(self.candidates)) != len(self.candidates):
            raise ValueError("Candidate ids must be unique")


def load_config(config_path: Optional[Path] = None) -> SystemConfig:
    """Load configuration from a YAML file or return defaults"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    if not config_path.exists():
        return SystemConfig()

    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        ledger_data = config_data.get('ledger', {})
        ledger_config = LedgerConfig(
            batch_size=ledger_data.get('batch_size', 100),
            anonymized_prefix_length=ledger_data.get(
                'anonymized_prefix_length', 8),
            require_confirmation=ledger_data.get(
                'require_confirmation', False),
            commitment_workers=ledger_data.get('commitment_workers', 4),
            parallel_commit_threshold=ledger_data.get(
                'parallel_commit_threshold', 64)
        )

        recon_data = config_data.get('reconciliation', {})
        reconciliation_config = ReconciliationConfig(
            poll_interval=recon_data.get('poll_interval', 2.0),
            confirmation_timeout=recon_data.get('confirmation_timeout', 600.0),
            confirmation_depth=recon_data.get('confirmation_depth', 1),
            rpc_url=recon_data.get('rpc_url'),
            rpc_timeout=recon_data.get('rpc_timeout', 10.0)
        )

        storage_data = config_data.get('storage', {})
        storage_config = StorageConfig(
            backend=storage_data.get('backend', 'memory'),
            path=Path(storage_data.get('path', 'data/ledger.json'))
        )

        return SystemConfig(
            election_name=config_data.get('election_name', 'General Election'),
            candidates=[str(c) for c in config_data.get(
                'candidates', DEFAULT_CANDIDATES)],
            ledger_config=ledger_config,
            reconciliation_config=reconciliation_config,
            storage_config=storage_config,
            log_dir=Path(config_data.get('log_dir', 'logs')),
            results_dir=Path(config_data.get(
                'results_dir', 'election_results')),
            log_level=config_data.get('log_level', 'INFO'),
            enable_benchmarking=config_data.get('enable_benchmarking', True)
        )
    except (OSError, yaml.YAMLError, TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Could not load config file {config_path}: {e}")
        logger.warning("Using default configuration")

    return SystemConfig()


def save_config(config: SystemConfig, config_path: Optional[Path] = None):
    """Save configuration to YAML file"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    config_data = {
        'election_name': config.election_name,
        'candidates': list(config.candidates),
        'ledger': {
            'batch_size': config.ledger_config.batch_size,
            'anonymized_prefix_length': config.ledger_config.anonymized_prefix_length,
            'require_confirmation': config.ledger_config.require_confirmation,
            'commitment_workers': config.ledger_config.commitment_workers,
            'parallel_commit_threshold': config.ledger_config.parallel_commit_threshold
        },
        'reconciliation': {
            'poll_interval': config.reconciliation_config.poll_interval,
            'confirmation_timeout': config.reconciliation_config.confirmation_timeout,
            'confirmation_depth': config.reconciliation_config.confirmation_depth,
            'rpc_url': config.reconciliation_config.rpc_url,
            'rpc_timeout': config.reconciliation_config.rpc_timeout
        },
        'storage': {
            'backend': config.storage_config.backend,
            'path': str(config.storage_config.path)
        },
        'log_dir': str(config.log_dir),
        'results_dir': str(config.results_dir),
        'log_level': config.log_level,
        'enable_benchmarking': config.enable_benchmarking
    }

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f:
        yaml.dump(config_data, f, default_flow_style=False)
