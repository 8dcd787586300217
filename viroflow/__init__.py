"""
Viroflow: multi-sample vOTU clustering and abundance aggregation for viral metagenomes.

Clusters viral contigs pooled from many samples into species-level vOTUs,
picks one representative per vOTU and merges per-sample quantification into
a single abundance matrix.
"""

__version__ = "0.1.0"

from .pipeline import main as viroflow_main
from .cluster import main as cluster_main
from .abundance import main as matrix_main

__all__ = ["viroflow_main", "cluster_main", "matrix_main", "__version__"]
