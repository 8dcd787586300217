"""Representative selection for vOTU clusters.

Each cluster is represented by its longest member; equal lengths are broken by
the lexicographically smallest identifier. The order is total, so the choice
never depends on input order.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from Bio import SeqIO
from Bio.SeqRecord import SeqRecord

from viroflow.types import Cluster, SequenceRecord


def select_representative(members: Iterable[str], lengths: Mapping[str, int]) -> str:
    """Pick the member ranked first under (length desc, identifier asc)."""
    best_id: Optional[str] = None
    best_length = 0
    for seq_id in members:
        try:
            length = lengths[seq_id]
        except KeyError:
            raise ValueError(f"No sequence length known for '{seq_id}'")
        if best_id is None or length > best_length or (length == best_length and seq_id < best_id):
            best_id = seq_id
            best_length = length
    if best_id is None:
        raise ValueError("Cannot select a representative from an empty cluster")
    return best_id


def select_representatives(clusters: List[Cluster], lengths: Mapping[str, int]) -> Dict[int, str]:
    """Map cluster_id -> representative_id, in cluster order."""
    representatives = {}
    for cluster in clusters:
        representatives[cluster.cluster_id] = select_representative(cluster.members, lengths)
    return representatives


def write_representative_sequences(representatives: Dict[int, str],
                                   records: Mapping[str, SeqRecord],
                                   output_file: str) -> int:
    """Write one FASTA entry per cluster in cluster-id order, identifiers unchanged."""
    ordered = [records[representatives[cluster_id]] for cluster_id in sorted(representatives)]
    with open(output_file, 'w') as f:
        count = SeqIO.write(ordered, f, "fasta")
    logging.info(f"Wrote {count} representative sequences to {output_file}")
    return count


def summarize_cluster(cluster: Cluster,
                      representative: str,
                      sequences: Mapping[str, SequenceRecord]) -> Tuple[str, str, int, int, int, str]:
    samples = sorted({sequences[seq_id].sample for seq_id in cluster.members} - {""})
    return (cluster.label, representative, sequences[representative].length,
            len(cluster.members), len(samples), ",".join(samples))


def write_votu_summary(clusters: List[Cluster],
                       representatives: Dict[int, str],
                       sequences: Mapping[str, SequenceRecord],
                       output_file: str) -> None:
    """Write one row per vOTU: label, representative, its length, size and member samples."""
    with open(output_file, 'w') as f:
        f.write("vOTU\trepresentative\trepresentative_length\tsize\tn_samples\tsamples\n")
        for cluster in clusters:
            row = summarize_cluster(cluster, representatives[cluster.cluster_id], sequences)
            f.write("\t".join(str(value) for value in row) + "\n")
    logging.debug(f"Wrote vOTU summary to {output_file}")
