"""Similarity edge filtering.

Reads pairwise comparison records in fastANI layout::

    query_id  reference_id  percent_identity  aligned_fragments  total_fragments

and keeps the pairs that meet both the identity and the coverage threshold.
Coverage is ``aligned_fragments / total_fragments``; fastANI counts fragments
of the query, so coverage is query-relative. A pair reported in both
directions is one logical edge, and it qualifies if either direction does.
"""

import logging
import math
from typing import Iterable, List, Optional, Set, Tuple

from viroflow.config import AggregationConfig
from viroflow.types import FilterStats, SimilarityEdge, SimilarityRecord

# Number of malformed line numbers kept for the end-of-stage summary
MAX_REPORTED_MALFORMED = 10


def parse_similarity_line(line: str) -> SimilarityRecord:
    """Parse one comparison line. Raises ValueError if it is malformed."""
    fields = line.split()
    if len(fields) < 5:
        raise ValueError(f"expected at least 5 fields, found {len(fields)}")

    query_id, reference_id = fields[0], fields[1]
    try:
        identity = float(fields[2])
        aligned = float(fields[3])
        total = float(fields[4])
    except ValueError:
        raise ValueError(f"non-numeric identity or fragment count: {' '.join(fields[2:5])}")
    if not all(math.isfinite(v) for v in (identity, aligned, total)):
        raise ValueError(f"non-finite identity or fragment count: {' '.join(fields[2:5])}")

    if not 0.0 <= identity <= 100.0:
        raise ValueError(f"percent identity out of range: {identity}")
    if total <= 0:
        raise ValueError(f"total fragment count must be positive, got {total}")
    if aligned < 0 or aligned > total:
        raise ValueError(f"aligned fragment count {aligned} outside 0..{total}")

    return SimilarityRecord(query_id, reference_id, identity, aligned, total)


def passes_thresholds(record: SimilarityRecord, config: AggregationConfig) -> bool:
    return (record.identity / 100.0 >= config.ani_threshold
            and record.coverage >= config.min_coverage)


def filter_similarity_records(lines: Iterable[str],
                              config: AggregationConfig,
                              known_ids: Optional[Set[str]] = None) -> Tuple[List[SimilarityEdge], FilterStats]:
    """
    Filter raw comparison lines down to qualifying undirected edges.

    Malformed lines are skipped and counted unless ``config.strict_parsing`` is
    set, in which case the first one raises ValueError. When ``known_ids`` is
    given, qualifying edges naming any other identifier are dropped.

    Returns:
        Tuple of (edges in first-seen order, filter statistics)
    """
    stats = FilterStats()
    edges: List[SimilarityEdge] = []
    seen: Set[Tuple[str, str]] = set()

    for line_number, line in enumerate(lines, start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue
        stats.total += 1

        try:
            record = parse_similarity_line(stripped)
        except ValueError as e:
            if config.strict_parsing:
                raise ValueError(f"Malformed similarity record at line {line_number}: {e}")
            stats.malformed += 1
            if len(stats.malformed_lines) < MAX_REPORTED_MALFORMED:
                stats.malformed_lines.append(line_number)
            logging.debug(f"Skipping malformed similarity record at line {line_number}: {e}")
            continue

        if record.query_id == record.reference_id:
            stats.self_pairs += 1
            continue

        if not passes_thresholds(record, config):
            stats.below_threshold += 1
            continue

        if known_ids is not None and (record.query_id not in known_ids
                                      or record.reference_id not in known_ids):
            stats.unknown_ids += 1
            continue

        edge = SimilarityEdge(record.query_id, record.reference_id,
                              record.identity, record.coverage)
        key = edge.canonical()
        if key in seen:
            stats.duplicates += 1
            continue
        seen.add(key)
        edges.append(edge)

    stats.accepted = len(edges)
    return edges, stats


def log_filter_summary(stats: FilterStats) -> None:
    logging.info(f"Filtered {stats.total} similarity records: {stats.accepted} edges accepted, "
                 f"{stats.below_threshold} below threshold, {stats.self_pairs} self-comparisons, "
                 f"{stats.duplicates} reverse/duplicate comparisons")
    if stats.malformed:
        shown = ', '.join(str(n) for n in stats.malformed_lines)
        more = ", ..." if stats.malformed > len(stats.malformed_lines) else ""
        logging.warning(f"Skipped {stats.malformed} malformed similarity records (lines {shown}{more})")
    if stats.unknown_ids:
        logging.warning(f"Dropped {stats.unknown_ids} qualifying comparisons naming sequences "
                        f"absent from the sequence set")


def read_similarity_file(path: str,
                         config: AggregationConfig,
                         known_ids: Optional[Set[str]] = None) -> Tuple[List[SimilarityEdge], FilterStats]:
    """Filter a similarity results file. A missing file raises FileNotFoundError."""
    logging.info(f"Reading similarity results from {path} "
                 f"(ANI >= {config.ani_threshold:.2f}, coverage >= {config.min_coverage:.2f})")
    with open(path, 'r') as f:
        edges, stats = filter_similarity_records(f, config, known_ids)
    log_filter_summary(stats)
    return edges, stats
