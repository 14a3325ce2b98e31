"""Phasing with a read-count guard.

whatshap misbehaves on BAMs without aligned reads, so the coordinator first
counts aligned reads and then runs one of two states:

- ``NEEDS_PHASING`` (read count > 0): invoke ``whatshap phase``.
- ``FALLBACK`` (read count == 0): copy the pre-built template call set.

Both states leave a phased VCF at the same path.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Callable, Dict

import pysam

from .external import ToolInvocation, ToolRunner
from .models import PhaseDecision, PhaseState
from .validation import ensure_bam_index, require_resource
from .vcfio import read_variant_set, write_variant_set

logger = logging.getLogger(__name__)


def count_aligned_reads(bam_path: str | Path) -> int:
    """Number of mapped reads according to the BAM index statistics."""
    bam_path = Path(bam_path)
    ensure_bam_index(bam_path)
    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        return int(bam.mapped)


def decide_phase(read_count: int) -> PhaseDecision:
    state = PhaseState.NEEDS_PHASING if read_count > 0 else PhaseState.FALLBACK
    return PhaseDecision(read_count=int(read_count), state=state)


def build_whatshap_invocation(
    *,
    vcf: Path,
    bam: Path,
    ref_fa: Path,
    out_vcf: Path,
    whatshap: str = "whatshap",
) -> ToolInvocation:
    argv = (
        whatshap,
        "phase",
        "--reference",
        str(ref_fa),
        "--ignore-read-groups",
        "-o",
        str(out_vcf),
        str(vcf),
        str(bam),
    )
    return ToolInvocation(stage="phase", argv=argv, inputs=(vcf, bam), outputs=(out_vcf,))


class PhasingCoordinator:
    """Decides between real phasing and the template substitute for one sample."""

    def __init__(
        self,
        *,
        runner: ToolRunner,
        ref_fa: str | Path,
        template: str | Path,
        whatshap: str = "whatshap",
    ) -> None:
        self.runner = runner
        self.ref_fa = Path(ref_fa)
        self.template = Path(template)
        self.whatshap = whatshap
        self._handlers: Dict[PhaseState, Callable[[Path, Path, Path], None]] = {
            PhaseState.NEEDS_PHASING: self._phase,
            PhaseState.FALLBACK: self._fallback,
        }

    def run(self, *, snps_vcf: str | Path, bam: str | Path, out_vcf: str | Path) -> PhaseDecision:
        snps_vcf, bam, out_vcf = Path(snps_vcf), Path(bam), Path(out_vcf)
        decision = decide_phase(count_aligned_reads(bam))
        logger.info("Phase decision: %s (aligned reads=%d)", decision.state.value, decision.read_count)
        self._handlers[decision.state](snps_vcf, bam, out_vcf)
        return decision

    def _phase(self, snps_vcf: Path, bam: Path, out_vcf: Path) -> None:
        inv = build_whatshap_invocation(
            vcf=snps_vcf,
            bam=bam,
            ref_fa=self.ref_fa,
            out_vcf=out_vcf,
            whatshap=self.whatshap,
        )
        self.runner.run(inv)

    def _fallback(self, snps_vcf: Path, bam: Path, out_vcf: Path) -> None:
        require_resource("template", self.template)
        out_vcf.parent.mkdir(parents=True, exist_ok=True)
        if self.template.suffix == out_vcf.suffix:
            shutil.copyfile(self.template, out_vcf)
        else:
            write_variant_set(read_variant_set(self.template), out_vcf)
        logger.info("No aligned reads; substituted template %s", self.template)
