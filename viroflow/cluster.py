#!/usr/bin/env python3
"""
vOTU clustering: connected components of the similarity graph.

Every dereplicated sequence is a node, every qualifying similarity edge joins
two nodes, and each connected component is one vOTU. Sequences without a
qualifying edge form singleton vOTUs.
"""

import argparse
import json
import logging
import os
import sys
from collections import Counter, defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, NamedTuple, Optional

try:
    from viroflow import __version__
except ImportError:
    __version__ = "dev"

from viroflow.config import AggregationConfig, LOG_LEVELS, setup_logging
from viroflow.edges import read_similarity_file
from viroflow.representatives import (
    select_representatives,
    write_representative_sequences,
    write_votu_summary,
)
from viroflow.sequences import build_sequence_records, load_sequences, sequence_lengths
from viroflow.types import Cluster, FilterStats, SimilarityEdge

CLUSTER_MAP_NAME = "votu_cluster_map.tsv"
REPRESENTATIVES_NAME = "vOTUs_representatives.fa"
SUMMARY_NAME = "votu_summary.tsv"
METADATA_NAME = "clustering_metadata.json"


class UnionFind:
    """Disjoint-set forest with path compression and union by rank."""

    def __init__(self, items: Iterable[str] = ()):
        self.parent: Dict[str, str] = {}
        self.rank: Dict[str, int] = {}
        for item in items:
            self.add(item)

    def __contains__(self, item: str) -> bool:
        return item in self.parent

    def __len__(self) -> int:
        return len(self.parent)

    def add(self, item: str) -> None:
        if item not in self.parent:
            self.parent[item] = item
            self.rank[item] = 0

    def find(self, item: str) -> str:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        # Path compression
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: str, b: str) -> bool:
        """Merge the sets holding a and b. Returns False if already joined."""
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return False
        if self.rank[root_a] < self.rank[root_b]:
            root_a, root_b = root_b, root_a
        self.parent[root_b] = root_a
        if self.rank[root_a] == self.rank[root_b]:
            self.rank[root_a] += 1
        return True

    def groups(self) -> List[List[str]]:
        members: Dict[str, List[str]] = defaultdict(list)
        for item in self.parent:
            members[self.find(item)].append(item)
        return list(members.values())


def build_clusters(seq_ids: Iterable[str], edges: Iterable[SimilarityEdge]) -> List[Cluster]:
    """
    Partition sequences into connected components.

    Clusters are numbered 1..K in ascending order of their smallest member
    identifier, and members are sorted, so the result depends only on the
    set of identifiers and the set of edges.

    Raises:
        ValueError: An edge names an identifier outside ``seq_ids``
    """
    forest = UnionFind(seq_ids)
    merges = 0
    for edge in edges:
        for seq_id in (edge.id_a, edge.id_b):
            if seq_id not in forest:
                raise ValueError(f"Edge {edge.id_a} - {edge.id_b} names unknown sequence '{seq_id}'")
        if forest.union(edge.id_a, edge.id_b):
            merges += 1
    logging.debug(f"Union-find: {len(forest)} nodes, {merges} merging edges")

    components = sorted(tuple(sorted(group)) for group in forest.groups())
    return [Cluster(cluster_id, members) for cluster_id, members in enumerate(components, start=1)]


def cluster_assignments(clusters: List[Cluster]) -> Dict[str, int]:
    return {seq_id: cluster.cluster_id for cluster in clusters for seq_id in cluster.members}


def write_cluster_map(clusters: List[Cluster], output_file: str) -> None:
    """Write sequence_id -> vOTU label, one row per sequence including singletons."""
    with open(output_file, 'w') as f:
        f.write("sequence_id\tvOTU\n")
        for cluster in clusters:
            for seq_id in cluster.members:
                f.write(f"{seq_id}\t{cluster.label}\n")
    logging.info(f"Wrote cluster map to {output_file}")


class ClusteringResult(NamedTuple):
    clusters: List[Cluster]
    representatives: Dict[int, str]
    filter_stats: FilterStats
    cluster_map: str
    representatives_fasta: str
    summary: str


def write_clustering_metadata(output_file: str, config: AggregationConfig,
                              sequences_file: str, similarity_file: str,
                              result_counts: Dict[str, int], filter_stats: FilterStats) -> None:
    metadata = {
        "version": __version__,
        "timestamp": datetime.now().isoformat(),
        "parameters": {
            "ani_threshold": config.ani_threshold,
            "min_coverage": config.min_coverage,
            "strict_parsing": config.strict_parsing,
            "coverage_denominator": "query",
            "representative_order": "length desc, identifier asc",
        },
        "sequences_file": os.path.abspath(sequences_file),
        "similarity_file": os.path.abspath(similarity_file),
        "filter_stats": filter_stats.to_dict(),
        "results": result_counts,
    }
    with open(output_file, 'w') as f:
        json.dump(metadata, f, indent=2)
    logging.debug(f"Wrote clustering metadata to {output_file}")


def run_clustering(sequences_file: str,
                   similarity_file: str,
                   output_dir: str,
                   config: AggregationConfig,
                   known_samples: Optional[List[str]] = None) -> ClusteringResult:
    """Filter edges, cluster, select representatives and write all clustering outputs."""
    records = load_sequences(sequences_file)
    lengths = sequence_lengths(records)
    if not records:
        logging.warning(f"No sequences found in {sequences_file}. Writing empty cluster outputs.")

    sequences = build_sequence_records(lengths, known_samples)
    per_sample = Counter(seq.sample or "unknown" for seq in sequences.values())
    for sample in sorted(per_sample):
        logging.debug(f"  {sample}: {per_sample[sample]} sequences")

    edges, stats = read_similarity_file(similarity_file, config, known_ids=set(records))
    clusters = build_clusters(records, edges)
    representatives = select_representatives(clusters, lengths)

    singletons = sum(1 for cluster in clusters if len(cluster.members) == 1)
    logging.info(f"Clustered {len(records)} sequences into {len(clusters)} vOTUs "
                 f"({singletons} singletons)")

    os.makedirs(output_dir, exist_ok=True)
    cluster_map = os.path.join(output_dir, CLUSTER_MAP_NAME)
    representatives_fasta = os.path.join(output_dir, REPRESENTATIVES_NAME)
    summary = os.path.join(output_dir, SUMMARY_NAME)

    write_cluster_map(clusters, cluster_map)
    write_representative_sequences(representatives, records, representatives_fasta)
    write_votu_summary(clusters, representatives, sequences, summary)
    write_clustering_metadata(
        os.path.join(output_dir, METADATA_NAME), config, sequences_file, similarity_file,
        {"sequences": len(records), "edges": len(edges), "votus": len(clusters), "singletons": singletons},
        stats,
    )

    return ClusteringResult(clusters, representatives, stats, cluster_map, representatives_fasta, summary)


def add_threshold_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--ani-threshold", type=float, default=0.95,
                        help="Minimum identity (fraction) for a clustering edge (default: 0.95)")
    parser.add_argument("--min-coverage", type=float, default=0.85,
                        help="Minimum aligned fraction of the query sequence (default: 0.85)")
    parser.add_argument("--strict-parsing", action="store_true",
                        help="Abort on the first malformed similarity record instead of skipping it")


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Cluster dereplicated viral sequences into vOTUs from pairwise ANI results"
    )
    parser.add_argument("sequences", help="Dereplicated viral sequences (FASTA)")
    parser.add_argument("similarity", help="Pairwise similarity results (fastANI output)")
    parser.add_argument("-O", "--output-dir", default="02_clustering",
                        help="Output directory (default: 02_clustering)")
    add_threshold_arguments(parser)
    parser.add_argument("--samples", type=str, default=None,
                        help="Comma-separated sample IDs, used to resolve sequence identifier prefixes")
    parser.add_argument("--log-level", default="INFO", choices=LOG_LEVELS)
    parser.add_argument("--version", action="version", version=f"viroflow {__version__}")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_arguments(argv)
    setup_logging(args.log_level)

    config = AggregationConfig.from_args(args)
    try:
        config.validate()
    except ValueError as e:
        logging.error(f"Invalid configuration: {e}")
        sys.exit(1)

    known_samples = [s for s in args.samples.split(",") if s] if args.samples else None

    try:
        result = run_clustering(args.sequences, args.similarity, args.output_dir, config, known_samples)
    except (OSError, ValueError) as e:
        logging.error(f"Clustering failed: {e}")
        sys.exit(1)

    logging.info(f"Clustering complete. Found {len(result.clusters)} vOTUs.")


if __name__ == "__main__":
    main()
