#!/usr/bin/env python3
"""
Viroflow multi-sample aggregation driver.

Pools the viral sequences found by the per-sample runs, clusters them into
vOTUs and builds the vOTU abundance matrix across all samples:

    01_aggregation/       pooled and dereplicated sequences
    02_clustering/        fastANI results, cluster map, representatives
    03_abundance_index/   bowtie2 index of the representatives
    04_abundance/         per-sample BAM/TPM files and the final matrix

Dereplication, ANI, mapping and quantification are delegated to cd-hit-est,
fastANI, bowtie2/samtools and coverm.
"""

import argparse
import logging
import os
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, NamedTuple, Optional

from tqdm import tqdm

try:
    from viroflow import __version__
except ImportError:
    __version__ = "dev"

from viroflow.abundance import MATRIX_NAME, build_abundance_matrix, find_abundance_tables
from viroflow.cluster import ClusteringResult, add_threshold_arguments, run_clustering
from viroflow.config import AggregationConfig, LOG_LEVELS, setup_logging
from viroflow.sequences import find_viral_fasta_files, pool_fasta_files, split_fasta
from viroflow.types import AbundanceMatrix

SAMPLE_DIR_SUFFIX = "_analysis"


class SampleInput(NamedTuple):
    """Host-removed reads of one per-sample analysis directory."""
    sample_id: str
    read1: str
    read2: Optional[str] = None  # None for single-end

    @property
    def paired(self) -> bool:
        return self.read2 is not None


def discover_samples(input_dir: str) -> List[SampleInput]:
    """
    Find ``<sample>_analysis`` directories and their host-removed reads.

    Raises:
        FileNotFoundError: A sample directory has no host-removed reads
    """
    samples = []
    for name in sorted(os.listdir(input_dir)):
        sample_dir = os.path.join(input_dir, name)
        if not name.endswith(SAMPLE_DIR_SUFFIX) or not os.path.isdir(sample_dir):
            continue
        sample_id = name[:-len(SAMPLE_DIR_SUFFIX)]
        rmhost_dir = os.path.join(sample_dir, "02_rmhost")
        read1 = os.path.join(rmhost_dir, "rmhost_1.fastq.gz")
        read2 = os.path.join(rmhost_dir, "rmhost_2.fastq.gz")
        single = os.path.join(rmhost_dir, "rmhost.fastq.gz")

        if os.path.isfile(read1) and os.path.isfile(read2):
            samples.append(SampleInput(sample_id, read1, read2))
        elif os.path.isfile(single):
            samples.append(SampleInput(sample_id, single))
        elif os.path.isfile(read1):
            samples.append(SampleInput(sample_id, read1))
        else:
            raise FileNotFoundError(f"No host-removed reads for sample {sample_id} in {rmhost_dir}")
    return samples


def run_command(cmd: List[str], description: str, stdout_path: Optional[str] = None) -> None:
    """Run an external tool, optionally capturing stdout to a file."""
    logging.debug(f"Running {description}: {' '.join(cmd)}")
    try:
        if stdout_path:
            tmp_path = f"{stdout_path}.partial"
            with open(tmp_path, 'w') as out:
                subprocess.run(cmd, stdout=out, stderr=subprocess.PIPE, text=True, check=True)
            os.replace(tmp_path, stdout_path)
        else:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
            logging.debug(f"{description} stdout: {result.stdout}")
    except subprocess.CalledProcessError as e:
        logging.error(f"{description} failed with return code {e.returncode}")
        logging.error(f"Command: {' '.join(cmd)}")
        logging.error(f"Stderr: {e.stderr}")
        if stdout_path and os.path.exists(f"{stdout_path}.partial"):
            os.unlink(f"{stdout_path}.partial")
        raise


def run_piped(commands: List[List[str]], description: str, stderr_path: str) -> None:
    """
    Run ``cmd1 | cmd2 | ...``; stderr of every stage goes to ``stderr_path``.

    Every started stage is waited on before returning or raising. If a stage
    cannot be started, the stages already running are killed.
    """
    logging.debug(f"Running {description}: {' | '.join(' '.join(c) for c in commands)}")
    processes = []
    failures = []
    upstream = None
    with open(stderr_path, 'w') as err:
        try:
            for i, cmd in enumerate(commands):
                last = i == len(commands) - 1
                proc = subprocess.Popen(cmd, stdin=upstream,
                                        stdout=None if last else subprocess.PIPE, stderr=err)
                processes.append((cmd, proc))
                if upstream is not None:
                    upstream.close()  # Let the upstream process receive SIGPIPE
                upstream = proc.stdout

            for cmd, proc in processes:
                returncode = proc.wait()
                if returncode != 0:
                    failures.append((cmd, returncode))
        finally:
            if upstream is not None:
                upstream.close()
            for _, proc in processes:
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()

    if failures:
        for cmd, returncode in failures:
            logging.error(f"{description} failed with return code {returncode}")
            logging.error(f"Command: {' '.join(cmd)}")
        logging.error(f"See {stderr_path} for details")
        cmd, returncode = failures[0]
        raise subprocess.CalledProcessError(returncode, cmd)


def relabel_ani_results(raw_file: str, output_file: str, genome_files: Dict[str, str]) -> int:
    """Replace fastANI genome paths in the first two columns with sequence IDs."""
    count = 0
    with open(raw_file, 'r') as src, open(output_file, 'w') as dst:
        for line in src:
            fields = line.rstrip('\n').split('\t')
            if len(fields) >= 2:
                fields[0] = genome_files.get(fields[0], fields[0])
                fields[1] = genome_files.get(fields[1], fields[1])
            dst.write('\t'.join(fields) + '\n')
            count += 1
    logging.debug(f"Relabelled {count} fastANI records into {output_file}")
    return count


class ViroflowPipeline:
    """Runs the aggregation stage for every sample under ``input_dir``."""

    def __init__(self, input_dir: str, output_dir: str, config: AggregationConfig,
                 skip_dereplication: bool = False, resume: bool = False):
        self.input_dir = input_dir
        self.output_dir = output_dir
        self.config = config
        self.skip_dereplication = skip_dereplication
        self.resume = resume

        self.aggregate_dir = os.path.join(output_dir, "01_aggregation")
        self.clustering_dir = os.path.join(output_dir, "02_clustering")
        self.index_dir = os.path.join(output_dir, "03_abundance_index")
        self.abundance_dir = os.path.join(output_dir, "04_abundance")
        self.tpm_dir = os.path.join(self.abundance_dir, "per_sample_tpm")

        self.pooled_fasta = os.path.join(self.aggregate_dir, "all_samples_viruses.fna")
        self.dereplicated_fasta = os.path.join(self.aggregate_dir, "all_viruses_dereplicated.fna")
        self.fastani_results = os.path.join(self.clustering_dir, "fastani_results.txt")
        self.index_prefix = os.path.join(self.index_dir, "vOTUs_db")
        self.matrix_file = os.path.join(self.abundance_dir, MATRIX_NAME)

    def _reuse(self, path: str) -> bool:
        if self.resume and os.path.isfile(path) and os.path.getsize(path) > 0:
            logging.info(f"Reusing existing {path}")
            return True
        return False

    # --- 1. Aggregate and dereplicate ---

    def aggregate_and_dereplicate(self) -> str:
        logging.info("[1/3] Aggregating and dereplicating all viral sequences...")
        os.makedirs(self.aggregate_dir, exist_ok=True)

        fasta_files = find_viral_fasta_files(self.input_dir)
        if not fasta_files:
            raise FileNotFoundError(f"No *_final_viruses.fna files found under {self.input_dir}")

        pooled = pool_fasta_files(fasta_files, self.pooled_fasta)
        if pooled == 0:
            logging.warning("Per-sample viral sequence files contain no sequences")
            open(self.dereplicated_fasta, 'w').close()
            return self.dereplicated_fasta

        if self.skip_dereplication:
            logging.info("Dereplication skipped; using pooled sequences as-is")
            return self.pooled_fasta

        if not self._reuse(self.dereplicated_fasta):
            self.run_dereplication(self.pooled_fasta, self.dereplicated_fasta)
        logging.info(f"Aggregation complete. Dereplicated sequences at {self.dereplicated_fasta}")
        return self.dereplicated_fasta

    def run_dereplication(self, input_fasta: str, output_fasta: str) -> None:
        cmd = [
            self.config.cdhit,
            "-i", input_fasta,
            "-o", output_fasta,
            "-c", str(self.config.dereplication_identity),
            "-n", "10",
            "-M", "0",
            "-T", str(self.config.threads),
        ]
        run_command(cmd, "cd-hit-est")

    # --- 2. Cluster into vOTUs ---

    def cluster_votus(self, sequences_fasta: str, known_samples: List[str]) -> ClusteringResult:
        logging.info("[2/3] Performing species clustering (vOTUs)...")
        os.makedirs(self.clustering_dir, exist_ok=True)

        if not self._reuse(self.fastani_results):
            self.run_ani(sequences_fasta, self.fastani_results)

        result = run_clustering(sequences_fasta, self.fastani_results, self.clustering_dir,
                                self.config, known_samples)
        logging.info(f"Clustering complete. Found {len(result.clusters)} vOTUs.")
        return result

    def run_ani(self, sequences_fasta: str, output_file: str) -> None:
        """All-vs-all fastANI over the dereplicated sequences, one genome file per sequence."""
        genome_dir = os.path.join(self.clustering_dir, "fastani_genomes")
        genome_files = split_fasta(sequences_fasta, genome_dir)
        if not genome_files:
            open(output_file, 'w').close()
            return

        list_file = os.path.join(self.clustering_dir, "fastani_inputs.txt")
        with open(list_file, 'w') as f:
            for path in genome_files:
                f.write(path + "\n")

        raw_output = os.path.join(self.clustering_dir, "fastani_raw.txt")
        cmd = [
            self.config.fastani,
            "--ql", list_file,
            "--rl", list_file,
            "--minFraction", "0",
            "-o", raw_output,
            "-t", str(self.config.threads),
        ]
        run_command(cmd, "fastANI")
        relabel_ani_results(raw_output, output_file, genome_files)

    # --- 3. Calculate abundance ---

    def build_index(self, representatives_fasta: str) -> None:
        os.makedirs(self.index_dir, exist_ok=True)
        # bowtie2-build writes .bt2l files for large references
        if any(self._reuse(f"{self.index_prefix}.1.{ext}") for ext in ("bt2", "bt2l")):
            return
        run_command([self.config.bowtie2_build, "--threads", str(self.config.threads),
                     representatives_fasta, self.index_prefix], "bowtie2-build")

    def quantify_sample(self, sample: SampleInput) -> str:
        """Map one sample's reads to the representatives and write its TPM table."""
        tpm_file = os.path.join(self.tpm_dir, f"{sample.sample_id}{self.config.abundance_suffix}")
        if self._reuse(tpm_file):
            return tpm_file

        bam_file = os.path.join(self.tpm_dir, f"{sample.sample_id}.bam")
        threads = str(self.config.threads)
        if sample.paired:
            reads = ["-1", sample.read1, "-2", sample.read2]
        else:
            reads = ["-U", sample.read1]

        try:
            run_piped(
                [
                    [self.config.bowtie2, "-p", threads, "-x", self.index_prefix] + reads + ["--very-sensitive"],
                    [self.config.samtools, "view", "-bS", "-"],
                    [self.config.samtools, "sort", "-@", threads, "-o", bam_file, "-"],
                ],
                f"read mapping for {sample.sample_id}",
                os.path.join(self.tpm_dir, f"{sample.sample_id}.mapping.log"),
            )
        except (OSError, subprocess.CalledProcessError):
            if os.path.exists(bam_file):
                os.unlink(bam_file)
            raise
        run_command(
            [self.config.coverm, "contig", "-b", bam_file, "-m", "tpm",
             "--min-covered-fraction", str(self.config.min_covered_fraction), "-t", threads],
            f"coverm for {sample.sample_id}",
            stdout_path=tpm_file,
        )
        return tpm_file

    def calculate_abundance(self, samples: List[SampleInput],
                            representatives_fasta: str,
                            row_order: List[str]) -> AbundanceMatrix:
        logging.info("[3/3] Calculating relative abundance...")
        os.makedirs(self.tpm_dir, exist_ok=True)

        if row_order:
            self.build_index(representatives_fasta)
            with ThreadPoolExecutor(max_workers=self.config.parallel_samples) as executor:
                list(tqdm(
                    executor.map(self.quantify_sample, samples),
                    total=len(samples),
                    desc="Quantifying samples",
                    unit="sample",
                ))
        else:
            logging.warning("No vOTU representatives; writing empty per-sample tables")
            for sample in samples:
                tpm_file = os.path.join(self.tpm_dir, f"{sample.sample_id}{self.config.abundance_suffix}")
                with open(tpm_file, 'w') as f:
                    f.write("Contig\tTPM\n")

        # Every sample must have finished before the matrix is assembled
        logging.info("Aggregating abundance results into a matrix...")
        table_paths = find_abundance_tables(
            self.tpm_dir, self.config.abundance_suffix,
            expected_samples=[s.sample_id for s in samples],
        )
        matrix = build_abundance_matrix(table_paths, self.matrix_file,
                                        self.config.abundance_suffix, row_order)
        logging.info("Abundance calculation complete.")
        return matrix

    def run(self) -> AbundanceMatrix:
        logging.info("--- Viroflow aggregation stage initialized ---")
        if not os.path.isdir(self.input_dir):
            raise FileNotFoundError(f"Input directory not found: {self.input_dir}")
        os.makedirs(self.output_dir, exist_ok=True)

        samples = discover_samples(self.input_dir)
        if not samples:
            raise FileNotFoundError(f"No *{SAMPLE_DIR_SUFFIX} sample directories found in {self.input_dir}")
        logging.info(f"Found {len(samples)} samples: {', '.join(s.sample_id for s in samples)}")

        sequences = self.aggregate_and_dereplicate()
        result = self.cluster_votus(sequences, [s.sample_id for s in samples])
        row_order = [result.representatives[cid] for cid in sorted(result.representatives)]
        matrix = self.calculate_abundance(samples, result.representatives_fasta, row_order)

        logging.info("--- Viroflow aggregation stage finished ---")
        logging.info(f"Key output files are located in: {self.output_dir}")
        return matrix


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Cluster viral sequences from all samples into vOTUs and build the abundance matrix"
    )
    parser.add_argument("-i", "--input-dir", required=True,
                        help="Directory containing all <sample>_analysis folders")
    parser.add_argument("-o", "--output-dir", required=True,
                        help="Directory where combined results are written")
    add_threshold_arguments(parser)
    parser.add_argument("--threads", type=int, default=16,
                        help="Threads per external tool invocation (default: 16)")
    parser.add_argument("--parallel-samples", type=int, default=1,
                        help="Samples mapped and quantified concurrently (default: 1)")
    parser.add_argument("--dereplication-identity", type=float, default=0.99,
                        help="cd-hit-est identity for dereplication (default: 0.99)")
    parser.add_argument("--skip-dereplication", action="store_true",
                        help="Cluster the pooled sequences without cd-hit-est dereplication")
    parser.add_argument("--min-covered-fraction", type=float, default=0.60,
                        help="coverm minimum covered fraction (default: 0.60)")
    parser.add_argument("--resume", action="store_true",
                        help="Reuse existing dereplication, fastANI, index and per-sample outputs")

    tools = parser.add_argument_group("external tools")
    tools.add_argument("--cdhit", default="cd-hit-est")
    tools.add_argument("--fastani", default="fastANI")
    tools.add_argument("--bowtie2-build", dest="bowtie2_build", default="bowtie2-build")
    tools.add_argument("--bowtie2", default="bowtie2")
    tools.add_argument("--samtools", default="samtools")
    tools.add_argument("--coverm", default="coverm")

    parser.add_argument("--log-level", default="INFO", choices=LOG_LEVELS)
    parser.add_argument("--log-file", default=None, help="Also write the log to this file")
    parser.add_argument("--version", action="version", version=f"viroflow {__version__}")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_arguments(argv)
    setup_logging(args.log_level, args.log_file)

    config = AggregationConfig.from_args(args)
    try:
        config.validate()
    except ValueError as e:
        logging.error(f"Invalid configuration: {e}")
        sys.exit(1)

    if not os.path.isdir(args.input_dir):
        logging.error(f"Input directory not found: {args.input_dir}")
        sys.exit(1)

    pipeline = ViroflowPipeline(args.input_dir, args.output_dir, config,
                                skip_dereplication=args.skip_dereplication,
                                resume=args.resume)
    try:
        pipeline.run()
    except (OSError, ValueError, subprocess.CalledProcessError) as e:
        logging.error(f"Aggregation stage failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
