from __future__ import annotations

from pathlib import Path

from .external import ToolInvocation


def build_codon_invocation(
    *,
    phased_vcf: Path,
    genbank: Path,
    out_vcf: Path,
    vcf_annotator: str = "vcf-annotator",
) -> ToolInvocation:
    """``vcf-annotator <vcf> <genbank> > out_vcf``.

    vcf-annotator writes the annotated VCF to stdout only, hence the redirect.
    It adds codon-level INFO fields (Gene, LocusTag, AminoAcidChange, ...).
    """
    return ToolInvocation(
        stage="codon",
        argv=(vcf_annotator, str(phased_vcf), str(genbank)),
        stdout=Path(out_vcf),
        inputs=(Path(phased_vcf), Path(genbank)),
        outputs=(Path(out_vcf),),
    )
