from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict

from matplotlib.figure import Figure

logger = logging.getLogger(__name__)

# Tick and text layout share module-level state inside matplotlib (mathtext
# parser, font cache); batch workers render one figure at a time.
_RENDER_LOCK = threading.Lock()


def plot_database_counts(
    *,
    counts: Dict[str, Dict[str, int]],
    out_png: str | Path,
    title: str = "Annotated vs canonical records per database",
) -> None:
    """Grouped bars: ``counts[category] = {"annotated": n, "matched": n, "canonical": n}``."""
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    labels = list(counts)
    series = ("annotated", "matched", "canonical")
    width = 0.8 / len(series)

    with _RENDER_LOCK:
        fig = Figure(figsize=(6.4, 4.0))
        ax = fig.add_subplot(1, 1, 1)
        for j, name in enumerate(series):
            xs = [i + (j - 1) * width for i in range(len(labels))]
            ys = [int(counts[label].get(name, 0)) for label in labels]
            ax.bar(xs, ys, width=width, label=name)
        ax.set_xticks(range(len(labels)))
        ax.set_xticklabels(labels)
        ax.set_ylabel("Record count")
        ax.set_title(title)
        ax.legend()
        fig.tight_layout()
        fig.savefig(out_png, dpi=160)


def plot_consensus_composition(
    *,
    length: int,
    substitutions: int,
    ambiguous: int,
    out_png: str | Path,
    title: str = "Consensus composition",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    labels = ["Reference", "Substituted", "Masked (N)"]
    values = [max(int(length) - int(substitutions) - int(ambiguous), 0), int(substitutions), int(ambiguous)]

    with _RENDER_LOCK:
        fig = Figure(figsize=(6.4, 4.0))
        ax = fig.add_subplot(1, 1, 1)
        ax.bar(labels, values)
        ax.set_yscale("symlog")
        ax.set_ylabel("Positions")
        ax.set_title(title)
        fig.tight_layout()
        fig.savefig(out_png, dpi=160)
