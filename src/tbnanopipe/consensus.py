"""Consensus genome per sample.

Runs independently of the annotation branch, from the same BAM:

1. ``bcftools mpileup | bcftools call -m --ploidy 1`` produces haploid calls.
2. Per-base depth is read from the BAM with pysam.
3. SNP calls with ``QUAL >= min_qual`` are substituted into the reference.
4. Positions of low-quality calls and positions with ``depth < min_depth``
   become ``N``.

Indels are never substituted, so the consensus has the reference length.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import pysam

from .external import ToolInvocation, ToolRunner
from .models import ConsensusSequence, VariantRecord, VariantSet
from .utils import write_fasta
from .validation import ensure_bam_index, ensure_faidx, require_resource
from .vcfio import read_variant_set

logger = logging.getLogger(__name__)


DEFAULT_MIN_DEPTH = 3
DEFAULT_MIN_QUAL = 20.0

_MPILEUP_ANNOTATIONS = "FORMAT/AD,FORMAT/DP"


def build_consensus_invocations(
    *,
    bam: Path,
    ref_fa: Path,
    out_vcf: Path,
    bcftools: str = "bcftools",
) -> Tuple[ToolInvocation, ToolInvocation]:
    """``bcftools mpileup ... | bcftools call ...`` as a producer/consumer pair."""
    producer = ToolInvocation(
        stage="consensus_call",
        argv=(bcftools, "mpileup", "-f", str(ref_fa), "-a", _MPILEUP_ANNOTATIONS, "-Ou", str(bam)),
        inputs=(Path(bam), Path(ref_fa)),
    )
    consumer = ToolInvocation(
        stage="consensus_call",
        argv=(bcftools, "call", "-m", "--ploidy", "1", "-Oz", "-o", str(out_vcf), "-"),
        outputs=(Path(out_vcf),),
    )
    return producer, consumer


def read_reference(ref_fa: str | Path) -> Dict[str, str]:
    """Contig name -> upper-case sequence, in FASTA order."""
    ensure_faidx(ref_fa)
    with pysam.FastaFile(str(ref_fa)) as fa:
        return {name: fa.fetch(name).upper() for name in fa.references}


def read_depth(bam_path: str | Path, contigs: Mapping[str, int]) -> Dict[str, np.ndarray]:
    """Per-base depth (A+C+G+T) for each contig; zeros for contigs absent from the BAM."""
    ensure_bam_index(bam_path)
    depth: Dict[str, np.ndarray] = {}
    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        present = set(bam.references)
        for name, length in contigs.items():
            if name not in present or length == 0:
                depth[name] = np.zeros(length, dtype=np.int64)
                continue
            cov = bam.count_coverage(name, 0, length, quality_threshold=0, read_callback="all")
            depth[name] = np.asarray(cov, dtype=np.int64).sum(axis=0)
    return depth


def _called_allele(rec: VariantRecord) -> Optional[int]:
    """Allele index of the (single) sample's haploid call; 1 when no genotype."""
    for call in rec.samples.values():
        gt = call.fields.get("GT")
        if gt:
            return gt[0]
    return 1


def _variant_alts(rec: VariantRecord) -> List[str]:
    return [a for a in rec.alts if a not in (".", "<*>")]


def build_consensus(
    *,
    sample_id: str,
    reference: Mapping[str, str],
    calls: VariantSet,
    depth: Mapping[str, np.ndarray],
    min_depth: int = DEFAULT_MIN_DEPTH,
    min_qual: float = DEFAULT_MIN_QUAL,
) -> ConsensusSequence:
    """Apply calls and masks to the reference, one segment per contig."""
    by_contig: Dict[str, List[VariantRecord]] = {}
    for rec in calls.records:
        by_contig.setdefault(rec.chrom, []).append(rec)

    segments: List[Tuple[str, str]] = []
    n_sub = 0
    n_masked = 0
    for contig, ref_seq in reference.items():
        seq = np.frombuffer(ref_seq.encode("ascii"), dtype="S1").copy()
        masked = np.zeros(len(seq), dtype=bool)
        substituted = np.zeros(len(seq), dtype=bool)

        for rec in by_contig.get(contig, ()):
            alts = _variant_alts(rec)
            if not alts:
                continue
            i = rec.pos - 1
            allele = _called_allele(rec)
            if allele == 0:
                continue
            low_qual = rec.qual is None or rec.qual < min_qual
            if low_qual or allele is None:
                masked[i : i + len(rec.ref)] = True
                continue
            alt = rec.alts[allele - 1] if allele <= len(rec.alts) else alts[0]
            if len(rec.ref) == 1 and len(alt) == 1 and alt in "ACGTN":
                seq[i] = alt.encode("ascii")
                substituted[i] = True

        d = depth.get(contig)
        if d is None:
            d = np.zeros(len(seq), dtype=np.int64)
        masked |= d[: len(seq)] < min_depth
        seq[masked] = b"N"

        n_sub += int(np.count_nonzero(substituted & ~masked))
        n_masked += int(np.count_nonzero(masked))
        segments.append((contig, seq.tobytes().decode("ascii")))

    return ConsensusSequence(
        sample_id=sample_id,
        segments=tuple(segments),
        substitutions=n_sub,
        ambiguous=n_masked,
    )


class ConsensusBuilder:
    """Calls, filters and substitutes variants into the reference for one sample."""

    def __init__(
        self,
        *,
        runner: ToolRunner,
        ref_fa: str | Path,
        min_depth: int = DEFAULT_MIN_DEPTH,
        min_qual: float = DEFAULT_MIN_QUAL,
        bcftools: str = "bcftools",
    ) -> None:
        self.runner = runner
        self.ref_fa = Path(ref_fa)
        self.min_depth = int(min_depth)
        self.min_qual = float(min_qual)
        self.bcftools = bcftools

    def run(
        self,
        *,
        sample_id: str,
        bam: str | Path,
        calls_vcf: str | Path,
        out_fasta: str | Path,
    ) -> ConsensusSequence:
        ref_fa = require_resource("reference", self.ref_fa)
        bam, calls_vcf, out_fasta = Path(bam), Path(calls_vcf), Path(out_fasta)
        ensure_faidx(ref_fa)

        producer, consumer = build_consensus_invocations(
            bam=bam,
            ref_fa=ref_fa,
            out_vcf=calls_vcf,
            bcftools=self.bcftools,
        )
        self.runner.pipe(producer, consumer)

        reference = read_reference(ref_fa)
        cons = build_consensus(
            sample_id=sample_id,
            reference=reference,
            calls=read_variant_set(calls_vcf),
            depth=read_depth(bam, {k: len(v) for k, v in reference.items()}),
            min_depth=self.min_depth,
            min_qual=self.min_qual,
        )
        write_fasta(out_fasta, cons.fasta_records())
        logger.info(
            "Consensus %s: %d substitutions, %d masked positions",
            sample_id,
            cons.substitutions,
            cons.ambiguous,
        )
        return cons
