from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

from .annotation import CANONICAL_MARKER, ORIGIN_FIELD, SOURCE_FIELD, DatabaseCategory
from .models import VariantRecord, VariantSet, VcfSchema

logger = logging.getLogger(__name__)


FINAL_TABLE_COLUMNS: Sequence[str] = (
    "sample",
    "chrom",
    "pos",
    "ref",
    "alt",
    "qual",
    "source_db",
    "gene",
    "aa",
    "effect",
    "annotation",
)

_CATEGORY_FIELDS: Dict[str, Sequence[str]] = {
    DatabaseCategory.ANTIBIOTICS.value: ("DRUG",),
    DatabaseCategory.WHO.value: ("WHO_DRUG", "WHO_GRADE"),
    DatabaseCategory.LINEAGES.value: ("LINEAGE",),
}


def is_canonical(rec: VariantRecord) -> bool:
    value = rec.info.get(ORIGIN_FIELD)
    if isinstance(value, tuple):
        value = value[0] if value else None
    return value == CANONICAL_MARKER


def canonical_filter(vs: VariantSet) -> VariantSet:
    """Keep records whose origin tag is the canonical marker. May return an empty set."""
    return vs.replace(records=[r for r in vs.records if is_canonical(r)])


def _merge_schemas(schemas: Sequence[VcfSchema]) -> VcfSchema:
    merged = schemas[0].copy()
    merged.meta = []
    for s in schemas[1:]:
        for name, length in s.contigs.items():
            merged.ensure_contig(name, length)
        for decl in s.info.values():
            merged.ensure_info(decl)
        for decl in s.formats.values():
            merged.ensure_format(decl)
        for fid, desc in s.filters.items():
            merged.filters.setdefault(fid, desc)
        for name in s.samples:
            if name not in merged.samples:
                merged.samples.append(name)
    return merged


def merge_final_sets(finals: Mapping[DatabaseCategory, VariantSet]) -> VariantSet:
    """Concatenate per-database final sets in the given order under one header.

    Records canonical in more than one database appear once per database; the
    ``SOURCE_DB`` tag keeps them apart.
    """
    if not finals:
        raise ValueError("No per-database sets to merge")
    sets = list(finals.values())
    schema = _merge_schemas([s.schema for s in sets])
    records: List[VariantRecord] = []
    for s in sets:
        records.extend(s.records)
    combined = VariantSet(schema=schema, records=tuple(records))
    logger.info(
        "Combined canonical set: %d records (%s)",
        len(combined),
        ", ".join(f"{cat.value}={len(s)}" for cat, s in finals.items()),
    )
    return combined


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, tuple):
        return ",".join(str(v) for v in value)
    return str(value)


def final_table_rows(vs: VariantSet, sample_id: str) -> List[Dict[str, str]]:
    rows: List[Dict[str, str]] = []
    for r in vs.records:
        source = _text(r.info.get(SOURCE_FIELD))
        fields = _CATEGORY_FIELDS.get(source, ())
        annotation = ";".join(f"{f}={_text(r.info[f])}" for f in fields if f in r.info)
        rows.append(
            {
                "sample": sample_id,
                "chrom": r.chrom,
                "pos": str(r.pos),
                "ref": r.ref,
                "alt": r.alt,
                "qual": "" if r.qual is None else f"{r.qual:g}",
                "source_db": source,
                "gene": _text(r.info.get("GENE")),
                "aa": _text(r.info.get("AA")),
                "effect": _text(r.info.get("EFFECT")),
                "annotation": annotation,
            }
        )
    return rows


def write_final_table(vs: VariantSet, sample_id: str, path: str | Path) -> Path:
    """Tab-separated summary of the combined set, one row per record."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=list(FINAL_TABLE_COLUMNS), delimiter="\t")
        writer.writeheader()
        writer.writerows(final_table_rows(vs, sample_id))
    return path
