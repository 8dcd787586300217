"""FASTA input/output and per-sequence bookkeeping."""

import glob
import logging
import os
from typing import Dict, Iterable, List, Optional

from Bio import SeqIO
from Bio.SeqRecord import SeqRecord

from viroflow.types import SequenceRecord

VIRAL_FASTA_SUFFIX = "_final_viruses.fna"


def sample_from_identifier(seq_id: str, known_samples: Optional[Iterable[str]] = None) -> str:
    """
    Recover the originating sample from a ``<sample>_<contig>`` identifier.

    With ``known_samples`` the longest matching sample wins, which handles
    sample names that themselves contain underscores. Without it the text
    before the first underscore is used.
    """
    if known_samples:
        best = ""
        for sample in known_samples:
            if seq_id.startswith(f"{sample}_") and len(sample) > len(best):
                best = sample
        if best:
            return best
    if "_" in seq_id:
        return seq_id.split("_", 1)[0]
    return ""


def load_sequences(fasta_file: str) -> Dict[str, SeqRecord]:
    """Load a FASTA file keyed by identifier, preserving file order.

    Raises:
        FileNotFoundError: The file does not exist
        ValueError: An identifier occurs twice or a sequence is empty
    """
    records: Dict[str, SeqRecord] = {}
    with open(fasta_file, 'r') as f:
        for record in SeqIO.parse(f, "fasta"):
            if record.id in records:
                raise ValueError(f"Duplicate sequence identifier '{record.id}' in {fasta_file}")
            if len(record.seq) == 0:
                raise ValueError(f"Sequence '{record.id}' in {fasta_file} is empty")
            records[record.id] = record
    logging.info(f"Loaded {len(records)} sequences from {fasta_file}")
    return records


def sequence_lengths(records: Dict[str, SeqRecord]) -> Dict[str, int]:
    return {seq_id: len(record.seq) for seq_id, record in records.items()}


def build_sequence_records(lengths: Dict[str, int],
                           known_samples: Optional[Iterable[str]] = None) -> Dict[str, SequenceRecord]:
    samples = list(known_samples) if known_samples else None
    return {seq_id: SequenceRecord(seq_id, length, sample_from_identifier(seq_id, samples))
            for seq_id, length in lengths.items()}


def find_viral_fasta_files(input_dir: str) -> List[str]:
    """Find every per-sample ``*_final_viruses.fna`` below ``input_dir``, sorted."""
    pattern = os.path.join(input_dir, "**", f"*{VIRAL_FASTA_SUFFIX}")
    return sorted(glob.glob(pattern, recursive=True))


def pool_fasta_files(fasta_files: List[str], output_file: str) -> int:
    """Concatenate FASTA files into one. Returns the number of records written."""
    def records():
        for fasta_file in fasta_files:
            logging.debug(f"Pooling sequences from {fasta_file}")
            with open(fasta_file, 'r') as f:
                yield from SeqIO.parse(f, "fasta")

    with open(output_file, 'w') as out:
        count = SeqIO.write(records(), out, "fasta")
    logging.info(f"Pooled {count} sequences from {len(fasta_files)} files into {output_file}")
    return count


def split_fasta(fasta_file: str, output_dir: str) -> Dict[str, str]:
    """
    Write every record to its own FASTA file, for tools that treat a file as one genome.

    Files are numbered rather than named after identifiers, which may contain
    path separators.

    Returns:
        Ordered mapping of written file path -> sequence identifier
    """
    os.makedirs(output_dir, exist_ok=True)
    genome_files: Dict[str, str] = {}
    with open(fasta_file, 'r') as f:
        for index, record in enumerate(SeqIO.parse(f, "fasta"), start=1):
            path = os.path.abspath(os.path.join(output_dir, f"seq_{index:07d}.fna"))
            with open(path, 'w') as out:
                SeqIO.write(record, out, "fasta")
            genome_files[path] = record.id
    logging.debug(f"Split {len(genome_files)} sequences from {fasta_file} into {output_dir}")
    return genome_files
