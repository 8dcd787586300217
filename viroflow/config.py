"""Configuration for the aggregation stage."""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def setup_logging(log_level: str, log_file: Optional[str] = None) -> Optional[str]:
    """Setup logging configuration with optional file output."""
    # Clear any existing handlers
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        return log_file

    return None


@dataclass
class AggregationConfig:
    """Thresholds, resources and tool executables for a viroflow run.

    Attributes:
        ani_threshold: Minimum identity (fraction) for a clustering edge (default: 0.95)
        min_coverage: Minimum aligned fraction of the query for an edge (default: 0.85)
        strict_parsing: Abort on the first malformed similarity record instead of skipping it
        threads: Threads handed to each external tool invocation (default: 16)
        parallel_samples: Samples quantified concurrently (default: 1)
        dereplication_identity: cd-hit-est identity for pooled dereplication (default: 0.99)
        min_covered_fraction: coverm --min-covered-fraction (default: 0.60)
        abundance_suffix: File suffix of per-sample quantification tables
    """
    ani_threshold: float = 0.95
    min_coverage: float = 0.85
    strict_parsing: bool = False
    threads: int = 16
    parallel_samples: int = 1
    dereplication_identity: float = 0.99
    min_covered_fraction: float = 0.60
    abundance_suffix: str = '.tpm.txt'

    cdhit: str = 'cd-hit-est'
    fastani: str = 'fastANI'
    bowtie2_build: str = 'bowtie2-build'
    bowtie2: str = 'bowtie2'
    samtools: str = 'samtools'
    coverm: str = 'coverm'

    def validate(self) -> None:
        """Raise ValueError for any setting outside its allowed range."""
        for name in ('ani_threshold', 'min_coverage', 'dereplication_identity', 'min_covered_fraction'):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise ValueError(f"{name} must be a number, got {value!r}")
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1, got {value}")
        if self.threads < 1:
            raise ValueError(f"threads must be at least 1, got {self.threads}")
        if self.parallel_samples < 1:
            raise ValueError(f"parallel_samples must be at least 1, got {self.parallel_samples}")
        if not self.abundance_suffix:
            raise ValueError("abundance_suffix must not be empty")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_args(cls, args) -> 'AggregationConfig':
        """Create config from command-line arguments.

        Attributes missing from ``args`` keep their defaults, so the same
        method serves every entry point.
        """
        defaults = cls()
        values = {}
        for name in defaults.to_dict():
            values[name] = getattr(args, name, getattr(defaults, name))
        return cls(**values)
