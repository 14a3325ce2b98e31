"""tbnanopipe: per-sample variant processing for M. tuberculosis long-read data.

Public API is intentionally small; most users should use the CLI:

    tbnanopipe run --sample-id S1 --bam S1.bam --ref h37rv.fa ... --outdir results/

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
