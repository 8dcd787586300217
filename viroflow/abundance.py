#!/usr/bin/env python3
"""
Abundance matrix assembly.

Merges per-sample quantification tables (representative_id -> TPM) into one
dense representative x sample matrix. A representative missing from a
sample's table was not detected above the quantifier's reporting threshold,
so its cell is 0.0.

Row order: representatives in the order they are first encountered, scanning
tables in column order and rows in file order. A ``row_order`` list (e.g. the
representative FASTA order) puts those identifiers first. Columns follow the
order of the tables given; ``find_abundance_tables`` sorts them by sample ID.
"""

import argparse
import glob
import logging
import os
import sys
import tempfile
from typing import Dict, Iterable, List, Optional

import numpy as np
from Bio import SeqIO

try:
    from viroflow import __version__
except ImportError:
    __version__ = "dev"

from viroflow.config import LOG_LEVELS, setup_logging
from viroflow.types import AbundanceMatrix, AbundanceTable

MATRIX_NAME = "vOTU_abundance_matrix_tpm.tsv"
INDEX_HEADER = "vOTU"


def sample_id_from_path(path: str, suffix: str = ".tpm.txt") -> str:
    """Derive the sample ID from a table's file name."""
    name = os.path.basename(path)
    if suffix and name.endswith(suffix) and len(name) > len(suffix):
        return name[:-len(suffix)]
    return os.path.splitext(name)[0]


def read_abundance_table(path: str, sample_id: Optional[str] = None,
                         suffix: str = ".tpm.txt") -> AbundanceTable:
    """
    Read one per-sample quantification table.

    The first line is a header. Each following line holds the representative
    ID and its value; any further columns are ignored.

    Raises:
        FileNotFoundError: The table does not exist
        ValueError: A value is non-numeric or negative, or an ID repeats
    """
    if sample_id is None:
        sample_id = sample_id_from_path(path, suffix)

    values: Dict[str, float] = {}
    with open(path, 'r') as f:
        header = f.readline()
        if not header:
            logging.warning(f"Abundance table {path} is empty (no header)")
        for line_number, line in enumerate(f, start=2):
            line = line.rstrip('\r\n')
            if not line.strip():
                continue
            fields = line.split('\t')
            if len(fields) < 2:
                raise ValueError(f"{path}:{line_number}: expected 2 tab-separated columns")
            rep_id = fields[0]
            try:
                value = float(fields[1])
            except ValueError:
                raise ValueError(f"{path}:{line_number}: non-numeric value '{fields[1]}' for {rep_id}")
            if not np.isfinite(value) or value < 0:
                raise ValueError(f"{path}:{line_number}: invalid abundance {fields[1]} for {rep_id}")
            if rep_id in values:
                raise ValueError(f"{path}:{line_number}: duplicate entry for {rep_id}")
            values[rep_id] = value

    logging.debug(f"Read {len(values)} abundance values for sample {sample_id} from {path}")
    return AbundanceTable(sample_id, values, path)


def find_abundance_tables(directory: str, suffix: str = ".tpm.txt",
                          expected_samples: Optional[Iterable[str]] = None) -> List[str]:
    """
    Locate per-sample tables, sorted by sample ID.

    With ``expected_samples`` every expected sample must have a table;
    otherwise FileNotFoundError lists the missing ones so no partial matrix
    is produced.
    """
    if not os.path.isdir(directory):
        raise FileNotFoundError(f"Abundance directory not found: {directory}")

    paths = glob.glob(os.path.join(directory, f"*{suffix}"))
    by_sample = {sample_id_from_path(p, suffix): p for p in paths}

    if expected_samples is not None:
        expected = list(expected_samples)
        missing = [s for s in expected if s not in by_sample]
        if missing:
            raise FileNotFoundError(
                f"Missing quantification table for {len(missing)} sample(s): {', '.join(missing)}"
            )
        unexpected = sorted(set(by_sample) - set(expected))
        if unexpected:
            logging.warning(f"Ignoring tables for unexpected samples: {', '.join(unexpected)}")
        return [by_sample[s] for s in sorted(expected)]

    return [by_sample[s] for s in sorted(by_sample)]


def assemble_abundance_matrix(tables: List[AbundanceTable],
                              row_order: Optional[List[str]] = None) -> AbundanceMatrix:
    """Outer-join the tables over representative IDs, filling absent cells with 0.0."""
    sample_ids = [table.sample_id for table in tables]
    if len(set(sample_ids)) != len(sample_ids):
        duplicated = sorted({s for s in sample_ids if sample_ids.count(s) > 1})
        raise ValueError(f"Duplicate sample IDs: {', '.join(duplicated)}")

    seen: Dict[str, int] = {}
    for table in tables:
        for rep_id in table.values:
            seen.setdefault(rep_id, len(seen))

    row_ids = list(seen)
    if row_order:
        # Listed IDs first in the given order, the rest keep first-seen order
        rank = {rep_id: i for i, rep_id in reversed(list(enumerate(row_order)))}
        row_ids.sort(key=lambda rep_id: (rep_id not in rank, rank.get(rep_id, 0), seen[rep_id]))
    row_index = {rep_id: i for i, rep_id in enumerate(row_ids)}

    values = np.zeros((len(row_index), len(tables)), dtype=np.float64)
    for col, table in enumerate(tables):
        for rep_id, value in table.values.items():
            values[row_index[rep_id], col] = value

    return AbundanceMatrix(row_ids, sample_ids, values)


def format_value(value: float) -> str:
    # Adding 0.0 turns -0.0 into 0.0
    return np.format_float_positional(value + 0.0, trim='-')


def write_abundance_matrix(matrix: AbundanceMatrix, output_file: str) -> None:
    """Write the matrix as TSV. The file appears only once it is complete."""
    output_dir = os.path.dirname(os.path.abspath(output_file))
    fd, tmp_path = tempfile.mkstemp(dir=output_dir, prefix=".matrix-", suffix=".tmp")
    try:
        with os.fdopen(fd, 'w') as f:
            f.write("\t".join([INDEX_HEADER] + matrix.sample_ids) + "\n")
            for row, rep_id in enumerate(matrix.row_ids):
                cells = [format_value(v) for v in matrix.values[row]]
                f.write("\t".join([rep_id] + cells) + "\n")
        os.replace(tmp_path, output_file)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
    logging.info(f"Wrote {len(matrix.row_ids)} x {len(matrix.sample_ids)} abundance matrix to {output_file}")


def read_row_order(fasta_file: str) -> List[str]:
    with open(fasta_file, 'r') as f:
        return [record.id for record in SeqIO.parse(f, "fasta")]


def build_abundance_matrix(table_paths: List[str], output_file: str,
                           suffix: str = ".tpm.txt",
                           row_order: Optional[List[str]] = None) -> AbundanceMatrix:
    """Read every table first, then assemble and write the matrix."""
    tables = [read_abundance_table(path, suffix=suffix) for path in table_paths]
    matrix = assemble_abundance_matrix(tables, row_order)
    if matrix.is_empty:
        logging.warning("No representatives were quantified in any sample; writing an empty matrix")
    write_abundance_matrix(matrix, output_file)
    return matrix


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Merge per-sample vOTU quantification tables into one abundance matrix"
    )
    parser.add_argument("tables", nargs="*",
                        help="Per-sample quantification tables (default: all tables in --input-dir)")
    parser.add_argument("-i", "--input-dir", default=None,
                        help="Directory of per-sample tables named <sample><suffix>")
    parser.add_argument("-o", "--output", default=MATRIX_NAME,
                        help=f"Output matrix file (default: {MATRIX_NAME})")
    parser.add_argument("--suffix", dest="abundance_suffix", default=".tpm.txt",
                        help="Table file suffix removed to obtain the sample ID (default: .tpm.txt)")
    parser.add_argument("--samples", type=str, default=None,
                        help="Comma-separated sample IDs that must all have a table")
    parser.add_argument("--representatives", default=None,
                        help="Representative FASTA; its order is used for matrix rows")
    parser.add_argument("--log-level", default="INFO", choices=LOG_LEVELS)
    parser.add_argument("--version", action="version", version=f"viroflow {__version__}")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_arguments(argv)
    setup_logging(args.log_level)

    if not args.tables and not args.input_dir:
        logging.error("Provide quantification tables or --input-dir")
        sys.exit(1)

    expected = [s for s in args.samples.split(",") if s] if args.samples else None

    try:
        if args.tables:
            table_paths = list(args.tables)
            missing = [p for p in table_paths if not os.path.isfile(p)]
            if missing:
                raise FileNotFoundError(f"Quantification table not found: {', '.join(missing)}")
            if expected is not None:
                found = {sample_id_from_path(p, args.abundance_suffix) for p in table_paths}
                absent = [s for s in expected if s not in found]
                if absent:
                    raise FileNotFoundError(f"No quantification table given for: {', '.join(absent)}")
        else:
            table_paths = find_abundance_tables(args.input_dir, args.abundance_suffix, expected)
        row_order = read_row_order(args.representatives) if args.representatives else None
        build_abundance_matrix(table_paths, args.output, args.abundance_suffix, row_order)
    except (OSError, ValueError) as e:
        logging.error(f"Abundance matrix assembly failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
