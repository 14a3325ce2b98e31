"""Post-processing of the codon-annotated call set.

Three fixes, always in this order:

1. the sample column is renamed to the sample id (template sets carry a
   placeholder name);
2. the caller quality fields are declared and present on every record;
3. the header is reconciled with the template so every sample shares one
   layout.

The result is sorted, bgzipped and tabix-indexed.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .models import FieldDecl, SampleCall, VariantRecord, VariantSet, VcfSchema
from .validation import require_resource
from .vcfio import read_schema, read_variant_set, sort_variant_set, write_variant_set

logger = logging.getLogger(__name__)


NOT_COMPUTED = "NA"

QUALITY_FIELDS: Tuple[FieldDecl, ...] = (
    FieldDecl("VDB", "1", "String", "Variant Distance Bias for filtering splice-site artefacts in RNA-seq data"),
    FieldDecl("RPB", "1", "String", "Mann-Whitney U test of Read Position Bias"),
    FieldDecl("MQB", "1", "String", "Mann-Whitney U test of Mapping Quality Bias"),
    FieldDecl("BQB", "1", "String", "Mann-Whitney U test of Base Quality Bias"),
    FieldDecl("MQSB", "1", "String", "Mann-Whitney U test of Mapping Quality vs Strand Bias"),
    FieldDecl("SGB", "1", "String", "Segregation based metric"),
    FieldDecl("MQ0F", "1", "String", "Fraction of MQ0 reads"),
)


def _as_text(value: Any) -> str:
    if isinstance(value, tuple):
        return ",".join(NOT_COMPUTED if v is None else str(v) for v in value)
    return str(value)


def tag_sample_identity(vs: VariantSet, sample_id: str) -> VariantSet:
    """Rename the single sample column to ``sample_id``."""
    samples = vs.schema.samples
    if len(samples) > 1:
        raise ValueError(f"Expected a single-sample VCF, found samples: {', '.join(samples)}")

    schema = vs.schema.copy()
    if not samples:
        schema.samples = [sample_id]
        return vs.replace(schema=schema)

    old = samples[0]
    if old == sample_id:
        return vs
    logger.debug("Renaming sample column %s -> %s", old, sample_id)
    schema.samples = [sample_id]
    records = []
    for r in vs.records:
        calls = {sample_id if name == old else name: call for name, call in r.samples.items()}
        records.append(r.evolve(samples=calls))
    return VariantSet(schema=schema, records=tuple(records))


def repair_quality_fields(vs: VariantSet) -> VariantSet:
    """Declare every quality field as a String and fill absent values with ``NA``."""
    schema = vs.schema.copy()
    for decl in QUALITY_FIELDS:
        if schema.info.get(decl.id) != decl:
            logger.debug("Declaring quality field %s as %s", decl.id, decl.type)
        schema.info[decl.id] = decl

    records: List[VariantRecord] = []
    for r in vs.records:
        updates = {
            decl.id: _as_text(r.info[decl.id]) if decl.id in r.info else NOT_COMPUTED
            for decl in QUALITY_FIELDS
        }
        records.append(r.with_info(updates))
    return VariantSet(schema=schema, records=tuple(records))


def _ordered_fields(fields: Dict[str, Any], order: List[str]) -> Dict[str, Any]:
    out = {k: fields[k] for k in order if k in fields}
    out.update((k, v) for k, v in fields.items() if k not in out)
    return out


def reconcile_with_template(vs: VariantSet, template: VcfSchema) -> VariantSet:
    """Union the template's declarations into the schema and adopt its FORMAT order."""
    schema = vs.schema.copy()
    for name, length in template.contigs.items():
        schema.ensure_contig(name, length)
        if schema.contigs.get(name) is None and length is not None:
            schema.contigs[name] = length
    for decl in template.info.values():
        schema.ensure_info(decl)

    formats: Dict[str, FieldDecl] = {}
    for fid, decl in template.formats.items():
        formats[fid] = schema.formats.get(fid, decl)
    formats.update((fid, decl) for fid, decl in schema.formats.items() if fid not in formats)
    schema.formats = formats
    for fid, desc in template.filters.items():
        schema.filters.setdefault(fid, desc)

    order = list(schema.formats)
    records = []
    for r in vs.records:
        calls = {
            name: SampleCall(fields=_ordered_fields(call.fields, order), phased=call.phased)
            for name, call in r.samples.items()
        }
        records.append(r.evolve(samples=calls))
    return VariantSet(schema=schema, records=tuple(records))


class PostProcessor:
    """Applies the three post-processing fixes and writes the indexed result."""

    def __init__(self, *, template: str | Path) -> None:
        self.template = Path(template)

    def process(self, vs: VariantSet, sample_id: str) -> VariantSet:
        require_resource("template", self.template)
        vs = tag_sample_identity(vs, sample_id)
        vs = repair_quality_fields(vs)
        return reconcile_with_template(vs, read_schema(self.template))

    def run(self, *, codon_vcf: str | Path, sample_id: str, out_vcf: str | Path) -> VariantSet:
        vs = sort_variant_set(self.process(read_variant_set(codon_vcf), sample_id))
        write_variant_set(vs, out_vcf)
        logger.info("Post-processed %d records -> %s", len(vs), out_vcf)
        return vs
