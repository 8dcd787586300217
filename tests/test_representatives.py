#!/usr/bin/env python3
"""
Tests for vOTU representative selection.
"""

import os
import tempfile

import pytest
from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

from viroflow.cluster import build_clusters
from viroflow.representatives import (
    select_representative,
    select_representatives,
    write_representative_sequences,
    write_votu_summary,
)
from viroflow.sequences import build_sequence_records
from viroflow.types import Cluster, SimilarityEdge


def test_longest_wins_with_identifier_tie_break():
    """Two members tie at 12000 bp; the lexicographically smaller ID wins."""
    lengths = {"seq_c": 5000, "seq_a": 12000, "seq_b": 12000}
    assert select_representative(["seq_c", "seq_a", "seq_b"], lengths) == "seq_a"


def test_tie_break_independent_of_member_order():
    lengths = {"seq_c": 5000, "seq_a": 12000, "seq_b": 12000}
    for members in (["seq_b", "seq_a", "seq_c"], ["seq_c", "seq_b", "seq_a"], ["seq_a", "seq_b"]):
        assert select_representative(members, lengths) == "seq_a"


def test_strictly_longest_beats_smaller_identifier():
    lengths = {"aaa": 9000, "zzz": 9001}
    assert select_representative(["aaa", "zzz"], lengths) == "zzz"


def test_singleton():
    assert select_representative(["only"], {"only": 3000}) == "only"


def test_empty_cluster_rejected():
    with pytest.raises(ValueError):
        select_representative([], {})


def test_missing_length_rejected():
    with pytest.raises(ValueError, match="b"):
        select_representative(["a", "b"], {"a": 100})


def test_round_trip_scenario():
    """A(10000) and B(11000) share an edge, C(3000) is isolated."""
    lengths = {"A": 10000, "B": 11000, "C": 3000}
    clusters = build_clusters(lengths, [SimilarityEdge("A", "B", 97.0, 0.95)])

    representatives = select_representatives(clusters, lengths)

    assert [c.members for c in clusters] == [("A", "B"), ("C",)]
    assert representatives == {1: "B", 2: "C"}


def test_selection_is_idempotent():
    lengths = {f"s{i}": 1000 + (i % 4) * 10 for i in range(40)}
    clusters = [Cluster(1, tuple(sorted(lengths)[:20])), Cluster(2, tuple(sorted(lengths)[20:]))]

    first = select_representatives(clusters, lengths)
    second = select_representatives(clusters, lengths)

    assert first == second
    assert list(first) == [1, 2]


def test_write_representative_sequences_in_cluster_order():
    records = {
        "S1_x": SeqRecord(Seq("ACGT" * 10), id="S1_x", description="S1_x len=40"),
        "S2_y": SeqRecord(Seq("ACGT" * 5), id="S2_y", description="S2_y len=20"),
    }
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "reps.fa")
        count = write_representative_sequences({2: "S1_x", 1: "S2_y"}, records, path)
        written = list(SeqIO.parse(path, "fasta"))

    assert count == 2
    assert [r.id for r in written] == ["S2_y", "S1_x"]
    assert str(written[1].seq) == "ACGT" * 10


def test_write_votu_summary():
    lengths = {"S1_a": 500, "S2_b": 700, "S2_c": 100}
    clusters = build_clusters(lengths, [SimilarityEdge("S1_a", "S2_b", 99.0, 1.0)])
    representatives = select_representatives(clusters, lengths)
    sequences = build_sequence_records(lengths, ["S1", "S2"])

    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "votu_summary.tsv")
        write_votu_summary(clusters, representatives, sequences, path)
        with open(path) as f:
            lines = f.read().splitlines()

    assert lines == [
        "vOTU\trepresentative\trepresentative_length\tsize\tn_samples\tsamples",
        "vOTU_1\tS2_b\t700\t2\t2\tS1,S2",
        "vOTU_2\tS2_c\t100\t1\t1\tS2",
    ]
