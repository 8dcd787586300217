"""Shared data structures for viroflow aggregation."""

from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Tuple

import numpy as np


class SequenceRecord(NamedTuple):
    """A dereplicated viral sequence."""
    seq_id: str
    length: int
    sample: str  # Originating sample, taken from the identifier prefix


class SimilarityRecord(NamedTuple):
    """One raw comparison line from the similarity tool (fastANI layout)."""
    query_id: str
    reference_id: str
    identity: float  # Percent identity, 0-100
    aligned_fragments: float
    total_fragments: float  # Query fragments; coverage denominator

    @property
    def coverage(self) -> float:
        return self.aligned_fragments / self.total_fragments


class SimilarityEdge(NamedTuple):
    """Undirected edge between two sequences that passed the thresholds."""
    id_a: str
    id_b: str
    identity: float
    coverage: float

    def canonical(self) -> Tuple[str, str]:
        return (self.id_a, self.id_b) if self.id_a <= self.id_b else (self.id_b, self.id_a)


@dataclass
class FilterStats:
    """Counts collected while filtering similarity records.

    Attributes:
        total: Non-blank, non-comment lines seen
        accepted: Unique undirected edges emitted
        below_threshold: Records failing the identity or coverage threshold
        self_pairs: Records comparing a sequence with itself
        duplicates: Qualifying records for an edge already emitted (e.g. b vs a)
        malformed: Records that could not be parsed
        unknown_ids: Qualifying records naming a sequence outside the sequence set
        malformed_lines: Line numbers of the first few malformed records
    """
    total: int = 0
    accepted: int = 0
    below_threshold: int = 0
    self_pairs: int = 0
    duplicates: int = 0
    malformed: int = 0
    unknown_ids: int = 0
    malformed_lines: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "accepted": self.accepted,
            "below_threshold": self.below_threshold,
            "self_pairs": self.self_pairs,
            "duplicates": self.duplicates,
            "malformed": self.malformed,
            "unknown_ids": self.unknown_ids,
        }


class Cluster(NamedTuple):
    """A connected component of the similarity graph."""
    cluster_id: int
    members: Tuple[str, ...]  # Sorted

    @property
    def label(self) -> str:
        return f"vOTU_{self.cluster_id}"


class AbundanceTable(NamedTuple):
    """Per-sample quantification: representative_id -> value, in file order."""
    sample_id: str
    values: Dict[str, float]
    path: Optional[str] = None


class AbundanceMatrix(NamedTuple):
    """Dense representative x sample matrix; absent cells hold 0.0."""
    row_ids: List[str]
    sample_ids: List[str]
    values: np.ndarray

    def get(self, row_id: str, sample_id: str) -> float:
        row = self.row_ids.index(row_id)
        col = self.sample_ids.index(sample_id)
        return float(self.values[row, col])

    @property
    def is_empty(self) -> bool:
        return len(self.row_ids) == 0
