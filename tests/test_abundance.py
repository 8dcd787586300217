#!/usr/bin/env python3
"""
Tests for abundance matrix assembly.

Tests focus on:
- Zero-fill of representatives missing from a sample
- Stable row and column order
- Hard failure on missing or invalid per-sample tables
"""

import os
import subprocess
import sys
import tempfile

import numpy as np
import pytest

from viroflow.abundance import (
    assemble_abundance_matrix,
    build_abundance_matrix,
    find_abundance_tables,
    read_abundance_table,
    sample_id_from_path,
    write_abundance_matrix,
)
from viroflow.types import AbundanceTable


def write_table(path, rows, header="Contig\tsample.bam TPM"):
    with open(path, "w") as f:
        f.write(header + "\n")
        for rep_id, value in rows:
            f.write(f"{rep_id}\t{value}\n")


def test_zero_fill_for_absent_representatives():
    tables = [
        AbundanceTable("A", {"rep1": 5.0, "rep2": 0.2}),
        AbundanceTable("B", {"rep2": 1.1, "rep3": 9.9}),
    ]

    matrix = assemble_abundance_matrix(tables)

    assert set(matrix.row_ids) == {"rep1", "rep2", "rep3"}
    assert matrix.sample_ids == ["A", "B"]
    assert matrix.get("rep1", "B") == 0.0
    assert matrix.get("rep3", "A") == 0.0
    assert matrix.get("rep2", "B") == pytest.approx(1.1)
    assert not np.isnan(matrix.values).any()


def test_rows_in_first_encountered_order():
    tables = [
        AbundanceTable("A", {"rep9": 1.0, "rep1": 2.0}),
        AbundanceTable("B", {"rep5": 3.0, "rep1": 4.0}),
    ]
    matrix = assemble_abundance_matrix(tables)
    assert matrix.row_ids == ["rep9", "rep1", "rep5"]


def test_row_order_override_keeps_row_set():
    tables = [
        AbundanceTable("A", {"rep2": 1.0, "rep3": 2.0}),
        AbundanceTable("B", {"extra": 3.0}),
    ]
    matrix = assemble_abundance_matrix(tables, row_order=["rep3", "rep1", "rep2"])

    # rep1 was never quantified, so it is not a row; unlisted IDs come last
    assert matrix.row_ids == ["rep3", "rep2", "extra"]
    assert matrix.get("extra", "A") == 0.0


def test_duplicate_sample_ids_rejected():
    with pytest.raises(ValueError, match="Duplicate sample"):
        assemble_abundance_matrix([AbundanceTable("A", {}), AbundanceTable("A", {})])


def test_no_tables_gives_empty_matrix():
    matrix = assemble_abundance_matrix([])
    assert matrix.is_empty
    assert matrix.values.shape == (0, 0)


def test_sample_id_from_path():
    assert sample_id_from_path("/x/per_sample_tpm/S1.tpm.txt") == "S1"
    assert sample_id_from_path("gut.day2.tpm.txt") == "gut.day2"
    assert sample_id_from_path("S3.tsv") == "S3"


class TestReadAbundanceTable:

    def test_reads_values_and_skips_header(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "S1.tpm.txt")
            write_table(path, [("rep1", "12.5"), ("rep2", "0")])
            table = read_abundance_table(path)

        assert table.sample_id == "S1"
        assert table.values == {"rep1": 12.5, "rep2": 0.0}

    def test_header_only_table_is_valid(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "S1.tpm.txt")
            write_table(path, [])
            assert read_abundance_table(path).values == {}

    def test_non_numeric_value_rejected(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "S1.tpm.txt")
            write_table(path, [("rep1", "high")])
            with pytest.raises(ValueError, match="S1.tpm.txt:2"):
                read_abundance_table(path)

    def test_negative_value_rejected(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "S1.tpm.txt")
            write_table(path, [("rep1", "-1.0")])
            with pytest.raises(ValueError):
                read_abundance_table(path)

    @pytest.mark.parametrize("value", ["inf", "-inf", "nan"])
    def test_non_finite_value_rejected(self, value):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "S1.tpm.txt")
            write_table(path, [("rep1", value)])
            with pytest.raises(ValueError, match="S1.tpm.txt:2"):
                read_abundance_table(path)

    def test_negative_zero_written_as_zero(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "S1.tpm.txt")
            write_table(path, [("rep1", "-0.0")])
            matrix = assemble_abundance_matrix([read_abundance_table(path)])
            out = os.path.join(tmpdir, "matrix.tsv")
            write_abundance_matrix(matrix, out)
            with open(out) as f:
                assert f.read().splitlines() == ["vOTU\tS1", "rep1\t0"]

    def test_duplicate_identifier_rejected(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "S1.tpm.txt")
            write_table(path, [("rep1", "1"), ("rep1", "2")])
            with pytest.raises(ValueError, match="duplicate"):
                read_abundance_table(path)

    def test_missing_table_is_an_error(self):
        with pytest.raises(FileNotFoundError):
            read_abundance_table("/nonexistent/S1.tpm.txt")


class TestFindAbundanceTables:

    def test_sorted_by_sample(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            for sample in ("S2", "S10", "S1"):
                write_table(os.path.join(tmpdir, f"{sample}.tpm.txt"), [])
            paths = find_abundance_tables(tmpdir)

        assert [os.path.basename(p) for p in paths] == ["S1.tpm.txt", "S10.tpm.txt", "S2.tpm.txt"]

    def test_missing_expected_sample_is_fatal(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            write_table(os.path.join(tmpdir, "S1.tpm.txt"), [])
            with pytest.raises(FileNotFoundError, match="S2"):
                find_abundance_tables(tmpdir, expected_samples=["S1", "S2"])

    def test_missing_directory(self):
        with pytest.raises(FileNotFoundError):
            find_abundance_tables("/nonexistent/per_sample_tpm")


def test_write_abundance_matrix_format():
    tables = [
        AbundanceTable("A", {"rep1": 5.0, "rep2": 0.2}),
        AbundanceTable("B", {"rep2": 1.1, "rep3": 9.9}),
    ]
    matrix = assemble_abundance_matrix(tables)

    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "matrix.tsv")
        write_abundance_matrix(matrix, path)
        with open(path) as f:
            lines = f.read().splitlines()
        leftovers = [n for n in os.listdir(tmpdir) if n != "matrix.tsv"]

    assert lines == [
        "vOTU\tA\tB",
        "rep1\t5\t0",
        "rep2\t0.2\t1.1",
        "rep3\t0\t9.9",
    ]
    assert leftovers == []


def test_build_abundance_matrix_from_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        write_table(os.path.join(tmpdir, "A.tpm.txt"), [("rep1", "5.0"), ("rep2", "0.2")])
        write_table(os.path.join(tmpdir, "B.tpm.txt"), [("rep2", "1.1"), ("rep3", "9.9")])
        output = os.path.join(tmpdir, "matrix.tsv")

        matrix = build_abundance_matrix(find_abundance_tables(tmpdir), output)

        assert matrix.sample_ids == ["A", "B"]
        assert os.path.exists(output)


class TestMatrixCommandLine:

    def test_missing_expected_sample_writes_no_matrix(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            write_table(os.path.join(tmpdir, "A.tpm.txt"), [("rep1", "1")])
            output = os.path.join(tmpdir, "matrix.tsv")

            result = subprocess.run([
                sys.executable, '-m', 'viroflow.abundance',
                '-i', tmpdir, '--samples', 'A,B', '-o', output,
            ], capture_output=True, text=True)

            assert result.returncode == 1
            assert "Missing quantification table" in result.stderr
            assert not os.path.exists(output)

    def test_explicit_tables(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            a = os.path.join(tmpdir, "A.tpm.txt")
            b = os.path.join(tmpdir, "B.tpm.txt")
            write_table(a, [("rep1", "1")])
            write_table(b, [("rep2", "2")])
            output = os.path.join(tmpdir, "matrix.tsv")

            result = subprocess.run([
                sys.executable, '-m', 'viroflow.abundance', a, b, '-o', output,
            ], capture_output=True, text=True)

            assert result.returncode == 0, result.stderr
            with open(output) as f:
                assert f.read() == "vOTU\tA\tB\nrep1\t1\t0\nrep2\t0\t2\n"
