from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional

import pysam

logger = logging.getLogger(__name__)


class MissingResourceError(FileNotFoundError):
    """A required input (reference, database, template, reads) is absent."""

    def __init__(self, name: str, path: Optional[str | Path], message: Optional[str] = None) -> None:
        self.name = name
        self.path = None if path is None else Path(path)
        if message is None:
            if path is None:
                message = f"Required resource '{name}' is not configured."
            else:
                message = f"Required resource '{name}' not found: {path}"
        super().__init__(message)


def require_resource(name: str, path: Optional[str | Path]) -> Path:
    """Return ``path`` as a Path, raising MissingResourceError if it does not exist."""
    if path is None or not Path(path).exists():
        raise MissingResourceError(name, path)
    return Path(path)


def require_resources(resources: Mapping[str, Optional[str | Path]]) -> None:
    """Check several named resources, reporting every missing one at once."""
    missing = [name for name, p in resources.items() if p is None or not Path(p).exists()]
    if not missing:
        return
    if len(missing) == 1:
        raise MissingResourceError(missing[0], resources[missing[0]])
    lines = [f"  - {name}: {resources[name]}" for name in missing]
    raise MissingResourceError(
        missing[0],
        resources[missing[0]],
        "Required resources not found:\n" + "\n".join(lines),
    )


def check_bam_index(bam_path: str | Path) -> None:
    """Ensure a BAM has an index; raise ValueError with fix instructions."""
    bam = Path(bam_path)
    bai1 = bam.with_suffix(bam.suffix + ".bai")
    bai2 = bam.with_suffix(".bai")
    if bai1.exists() or bai2.exists():
        return
    raise ValueError("BAM is not indexed. Run: samtools index " + str(bam))


def ensure_bam_index(bam_path: str | Path) -> None:
    """Index a BAM with pysam if no ``.bai`` is present."""
    try:
        check_bam_index(bam_path)
    except ValueError:
        logger.info("Indexing BAM %s", bam_path)
        pysam.index(str(bam_path))


def check_vcf_index(vcf_path: str | Path) -> None:
    """Ensure a bgzipped VCF has a tabix index; raise ValueError with fix instructions."""
    vcf = Path(vcf_path)
    if vcf.suffixes[-2:] == [".vcf", ".gz"]:
        tbi = vcf.with_suffix(vcf.suffix + ".tbi")
        csi = vcf.with_suffix(vcf.suffix + ".csi")
        if not tbi.exists() and not csi.exists():
            raise ValueError(
                "VCF is not bgzip/tabix indexed. Run: tabix -p vcf " + str(vcf)
            )
    elif vcf.suffix == ".vcf":
        raise ValueError(
            "Annotation databases must be bgzipped and indexed. Run: bgzip "
            + str(vcf)
            + "; tabix -p vcf "
            + str(vcf)
            + ".gz"
        )


def ensure_faidx(fasta: str | Path) -> Path:
    """Create ``<fasta>.fai`` with pysam if missing."""
    fasta = Path(fasta)
    fai = fasta.with_name(fasta.name + ".fai")
    if not fai.exists():
        logger.info("Indexing reference %s", fasta)
        pysam.faidx(str(fasta))
    return fai
