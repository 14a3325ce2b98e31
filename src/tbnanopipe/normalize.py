"""Canonicalise a raw caller VCF into one record per alternate allele.

Equivalent in effect to ``bcftools norm -d exact`` followed by ``-m -any``,
with the INFO header repaired first so that every expected field is declared
whether or not the caller emitted it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .models import FieldDecl, SampleCall, VariantRecord, VariantSet, VcfSchema

logger = logging.getLogger(__name__)


EXPECTED_INFO_FIELDS: Tuple[FieldDecl, ...] = (
    FieldDecl("DP", "1", "Integer", "Total read depth at the locus"),
    FieldDecl("AD", "R", "Integer", "Allelic depths for the ref and alt alleles"),
    FieldDecl("AF", "A", "Float", "Allele frequency of each alt allele"),
)


def repair_info_header(schema: VcfSchema, expected: Sequence[FieldDecl] = EXPECTED_INFO_FIELDS) -> VcfSchema:
    """Return a copy of ``schema`` declaring every expected INFO field."""
    out = schema.copy()
    for decl in expected:
        if out.ensure_info(decl):
            logger.debug("Declared missing INFO field %s", decl.id)
    return out


def _genotype_subset(values: Tuple[Any, ...], n_alts: int, allele: int) -> Any:
    """Pick the Number=G entries relevant to ``allele`` (1-based alt index)."""
    n_alleles = n_alts + 1
    if len(values) == n_alleles:
        # haploid: one likelihood per allele
        return (values[0], values[allele])
    if len(values) == n_alleles * (n_alleles + 1) // 2:
        # diploid: index(j, k) = k * (k + 1) / 2 + j for j <= k
        def idx(j: int, k: int) -> int:
            return k * (k + 1) // 2 + j

        return (values[idx(0, 0)], values[idx(0, allele)], values[idx(allele, allele)])
    return values


def _split_value(value: Any, number: Optional[str], n_alts: int, allele: int) -> Any:
    if not isinstance(value, tuple):
        return value
    if number == "A" and len(value) == n_alts:
        return (value[allele - 1],)
    if number == "R" and len(value) == n_alts + 1:
        return (value[0], value[allele])
    if number == "G":
        return _genotype_subset(value, n_alts, allele)
    return value


def _remap_gt(gt: Tuple[Optional[int], ...], allele: int) -> Tuple[Optional[int], ...]:
    out: List[Optional[int]] = []
    for a in gt:
        if a is None:
            out.append(None)
        elif a == allele:
            out.append(1)
        else:
            # reference and every other alternate collapse to REF
            out.append(0)
    return tuple(out)


def split_multiallelic(rec: VariantRecord, schema: VcfSchema) -> List[VariantRecord]:
    """Split ``rec`` into one record per alternate allele.

    Fields declared Number=A/R/G are scoped to the allele; everything else is
    shared by all the resulting records.
    """
    if not rec.is_multiallelic:
        return [rec]

    n_alts = len(rec.alts)
    out: List[VariantRecord] = []
    for allele, alt in enumerate(rec.alts, start=1):
        info: Dict[str, Any] = {}
        for key, value in rec.info.items():
            decl = schema.info.get(key)
            info[key] = _split_value(value, decl.number if decl else None, n_alts, allele)

        samples: Dict[str, SampleCall] = {}
        for name, call in rec.samples.items():
            fields: Dict[str, Any] = {}
            for key, value in call.fields.items():
                if key == "GT":
                    fields[key] = _remap_gt(value, allele)
                    continue
                decl = schema.formats.get(key)
                fields[key] = _split_value(value, decl.number if decl else None, n_alts, allele)
            samples[name] = SampleCall(fields=fields, phased=call.phased)

        out.append(rec.evolve(alts=(alt,), info=info, samples=samples))
    return out


def _dedupe(records: Sequence[VariantRecord], key) -> List[VariantRecord]:
    seen = set()
    out: List[VariantRecord] = []
    for r in records:
        k = key(r)
        if k in seen:
            continue
        seen.add(k)
        out.append(r)
    return out


def normalize_variants(raw: VariantSet) -> VariantSet:
    """Repair header, remove exact duplicates and split multiallelic records.

    The output has no duplicate ``(chrom, pos, ref, alt)`` keys and every record
    has exactly one alternate allele. An empty input gives an empty set.
    """
    schema = repair_info_header(raw.schema)

    exact = _dedupe(raw.records, key=lambda r: (r.chrom, r.pos, r.ref, r.alts))
    n_exact = len(raw.records) - len(exact)

    split: List[VariantRecord] = []
    n_multi = 0
    for rec in exact:
        if rec.is_multiallelic:
            n_multi += 1
        split.extend(split_multiallelic(rec, schema))

    unique = _dedupe(split, key=lambda r: r.key)

    logger.info(
        "Normalized %d raw records -> %d (exact duplicates=%d, multiallelic split=%d, allele duplicates=%d)",
        len(raw.records),
        len(unique),
        n_exact,
        n_multi,
        len(split) - len(unique),
    )
    return VariantSet(schema=schema, records=tuple(unique))


def select_pass_snps(vs: VariantSet) -> VariantSet:
    """Keep single-base substitutions whose FILTER is exactly PASS."""
    kept = [r for r in vs.records if r.is_snp and r.is_pass]
    logger.info("Selected %d PASS SNPs out of %d normalized records", len(kept), len(vs.records))
    return vs.replace(records=kept)
