from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, List, Tuple

logger = logging.getLogger(__name__)


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def write_json(path: str | Path, obj: Any) -> None:
    """Write ``obj`` as JSON; readers never see a partially written file."""
    path = Path(path)
    tmp = path.with_name(f".{path.name}.tmp")
    with open(tmp, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True, default=str)
    replace_atomically(tmp, path)


def read_json(path: str | Path) -> Any:
    with open(path, "rt", encoding="utf-8") as f:
        return json.load(f)


def write_fasta(path: str | Path, records: Iterable[Tuple[str, str]], *, width: int = 60) -> None:
    lines: List[str] = []
    for name, seq in records:
        lines.append(f">{name}")
        for i in range(0, len(seq), width):
            lines.append(seq[i : i + width])
    path = Path(path)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text("\n".join(lines) + "\n", encoding="utf-8")
    replace_atomically(tmp, path)


def replace_atomically(tmp: str | Path, final: str | Path) -> Path:
    """Move a finished temporary file into place (same filesystem)."""
    os.replace(str(tmp), str(final))
    return Path(final)
