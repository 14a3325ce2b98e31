from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..external import ToolInvocation, ToolRunner
from ..utils import ensure_outdir
from ..validation import ensure_faidx, require_resource

logger = logging.getLogger(__name__)


_SUPPORTED_PRESETS = {
    # Traditional ONT noisy long reads.
    "map-ont",
    # Designed for accurate long reads (e.g., Q20+ ONT, Dorado).
    "lr:hq",
    "lr:hqae",
}


def read_group_line(sample_id: str) -> str:
    """``@RG`` header line for minimap2 ``-R``; minimap2 expands the ``\\t`` escapes."""
    return f"@RG\\tID:{sample_id}\\tSM:{sample_id}\\tPL:ONT"


def build_alignment_invocations(
    *,
    fastq: Sequence[str | Path],
    ref_fa: str | Path,
    out_bam: str | Path,
    sample_id: str,
    threads: int = 4,
    minimap2_preset: str = "map-ont",
    sort_mem: str = "1G",
    minimap2: str = "minimap2",
    samtools: str = "samtools",
    extra_minimap2_args: Optional[List[str]] = None,
) -> Dict[str, ToolInvocation]:
    """Build minimap2/samtools invocations for ONT alignment.

    Returns
    -------
    dict
        ``minimap2`` and ``samtools_sort`` (run as a pipe) and ``samtools_index``.
    """
    ref_fa = Path(ref_fa)
    out_bam = Path(out_bam)
    fastq_paths = [Path(x) for x in fastq]

    if len(fastq_paths) == 0:
        raise ValueError("At least one FASTQ file is required")
    if minimap2_preset not in _SUPPORTED_PRESETS:
        raise ValueError(
            f"Unsupported minimap2_preset='{minimap2_preset}'. Supported: {sorted(_SUPPORTED_PRESETS)}"
        )

    producer = ToolInvocation(
        stage="align",
        argv=tuple(
            [
                minimap2,
                "-a",
                "-x",
                minimap2_preset,
                "-t",
                str(int(threads)),
                "-R",
                read_group_line(sample_id),
                "--secondary=no",
                "--MD",
                str(ref_fa),
            ]
            + [str(p) for p in fastq_paths]
            + list(map(str, extra_minimap2_args or []))
        ),
        inputs=tuple([ref_fa] + fastq_paths),
    )

    tmp_prefix = str(out_bam.with_suffix("")) + ".tmp"
    consumer = ToolInvocation(
        stage="align",
        argv=(
            samtools,
            "sort",
            "-@",
            str(int(threads)),
            "-m",
            str(sort_mem),
            "-T",
            tmp_prefix,
            "-o",
            str(out_bam),
            "-",
        ),
        outputs=(out_bam,),
    )

    index = ToolInvocation(
        stage="align",
        argv=(samtools, "index", str(out_bam)),
        inputs=(out_bam,),
        outputs=(Path(str(out_bam) + ".bai"),),
    )

    return {"minimap2": producer, "samtools_sort": consumer, "samtools_index": index}


def align_reads(
    runner: ToolRunner,
    *,
    fastq: Sequence[str | Path],
    ref_fa: str | Path,
    out_bam: str | Path,
    sample_id: str,
    threads: int = 4,
    minimap2_preset: str = "map-ont",
    minimap2: str = "minimap2",
    samtools: str = "samtools",
) -> Dict[str, object]:
    """Align ONT reads to the reference and produce a sorted, indexed, read-group tagged BAM."""
    t0 = time.time()
    ref_fa = require_resource("reference", ref_fa)
    for i, fq in enumerate(fastq):
        require_resource(f"reads[{i}]", fq)

    invs = build_alignment_invocations(
        fastq=fastq,
        ref_fa=ref_fa,
        out_bam=out_bam,
        sample_id=sample_id,
        threads=threads,
        minimap2_preset=minimap2_preset,
        minimap2=minimap2,
        samtools=samtools,
    )

    ensure_outdir(Path(out_bam).parent)
    ensure_faidx(ref_fa)

    logger.info("Aligning %d FASTQ file(s) with minimap2 (%s)", len(fastq), minimap2_preset)
    runner.pipe(invs["minimap2"], invs["samtools_sort"])
    runner.run(invs["samtools_index"])

    return {
        "out_bam": str(out_bam),
        "fastq": [str(p) for p in fastq],
        "minimap2_preset": minimap2_preset,
        "read_group": read_group_line(sample_id),
        "runtime_seconds": float(time.time() - t0),
    }
