"""Nanopore-specific tool wrappers.

- align FASTQ -> sorted/indexed, read-group tagged BAM (minimap2 + samtools)
- call variants with Clair3 (native install or the upstream Docker image)

Both return :class:`~tbnanopipe.external.ToolInvocation` objects executed by a
:class:`~tbnanopipe.external.ToolRunner`.
"""

from __future__ import annotations

__all__ = [
    "align_reads",
    "call_variants",
]

from .align import align_reads
from .calling import call_variants
