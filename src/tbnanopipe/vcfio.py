"""Conversion between VCF files and :class:`~tbnanopipe.models.VariantSet`.

pysam does the parsing and writing. Values read from a file are kept in the
types pysam returns (scalars, tuples for multi-valued fields, ``True`` for
flags); missing values are dropped, so writing a set back and re-reading it
yields the same records.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List

import pysam

from .models import FieldDecl, SampleCall, VariantRecord, VariantSet, VcfSchema

logger = logging.getLogger(__name__)


def _number_text(number: Any) -> str:
    if number is None:
        return "."
    return str(number)


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, tuple) and all(v is None for v in value):
        return True
    return False


def schema_from_header(hdr: pysam.VariantHeader) -> VcfSchema:
    schema = VcfSchema()
    for name, contig in hdr.contigs.items():
        schema.contigs[name] = int(contig.length) if contig.length else None
    for name, meta in hdr.info.items():
        schema.info[name] = FieldDecl(name, _number_text(meta.number), str(meta.type), meta.description or "")
    for name, meta in hdr.formats.items():
        schema.formats[name] = FieldDecl(name, _number_text(meta.number), str(meta.type), meta.description or "")
    for name, meta in hdr.filters.items():
        if name == "PASS":
            continue
        schema.filters[name] = meta.description or ""
    schema.samples = list(hdr.samples)
    for hrec in hdr.records:
        if hrec.type == "GENERIC" and hrec.key != "fileformat":
            schema.meta.append((str(hrec.key), str(hrec.value)))
    return schema


def header_from_schema(schema: VcfSchema) -> pysam.VariantHeader:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    for key, value in schema.meta:
        header.add_meta(key, value)
    for name, length in schema.contigs.items():
        if length:
            header.contigs.add(name, length=length)
        else:
            header.contigs.add(name)
    for fid, desc in schema.filters.items():
        header.filters.add(fid, None, None, desc)
    for d in schema.info.values():
        header.info.add(d.id, number=d.number, type=d.type, description=d.description)
    for d in schema.formats.values():
        header.formats.add(d.id, number=d.number, type=d.type, description=d.description)
    for s in schema.samples:
        header.add_sample(s)
    return header


def record_from_pysam(rec: pysam.VariantRecord) -> VariantRecord:
    info: Dict[str, Any] = {}
    for key, value in rec.info.items():
        if _is_missing(value):
            continue
        info[key] = value

    samples: Dict[str, SampleCall] = {}
    for name in rec.samples:
        s = rec.samples[name]
        fields: Dict[str, Any] = {}
        for key, value in s.items():
            if _is_missing(value):
                continue
            fields[key] = value
        samples[name] = SampleCall(fields=fields, phased=bool(s.phased) if "GT" in fields else False)

    return VariantRecord(
        chrom=rec.chrom,
        pos=int(rec.pos),
        ref=rec.ref,
        alts=tuple(rec.alts or ()),
        id=rec.id,
        qual=None if rec.qual is None else float(rec.qual),
        filters=tuple(rec.filter.keys()),
        info=info,
        samples=samples,
    )


def _new_pysam_record(vf: pysam.VariantFile, rec: VariantRecord, samples: List[str]) -> pysam.VariantRecord:
    alleles = (rec.ref,) + tuple(a for a in rec.alts if a != ".")
    new = vf.new_record(
        contig=rec.chrom,
        start=rec.pos - 1,
        stop=rec.pos - 1 + len(rec.ref),
        alleles=alleles,
        id=rec.id,
        qual=rec.qual,
        filter=list(rec.filters) or None,
    )
    for key, value in rec.info.items():
        if value is False or _is_missing(value):
            continue
        new.info[key] = value

    for name, call in rec.samples.items():
        if name not in samples:
            continue
        out = new.samples[name]
        # GT first so it leads the FORMAT column.
        if "GT" in call.fields:
            out["GT"] = call.fields["GT"]
            out.phased = call.phased
        for key, value in call.fields.items():
            if key == "GT" or _is_missing(value):
                continue
            out[key] = value
    return new


def read_variant_set(path: str | Path) -> VariantSet:
    """Read a VCF/VCF.GZ into memory."""
    with pysam.VariantFile(str(path)) as vf:
        schema = schema_from_header(vf.header)
        records = tuple(record_from_pysam(r) for r in vf)
    logger.debug("Read %d records from %s", len(records), path)
    return VariantSet(schema=schema, records=records)


def read_schema(path: str | Path) -> VcfSchema:
    with pysam.VariantFile(str(path)) as vf:
        return schema_from_header(vf.header)


def sort_variant_set(vs: VariantSet) -> VariantSet:
    """Sort by contig declaration order, then position, REF, ALT (stable)."""
    order = {name: i for i, name in enumerate(vs.schema.contigs)}
    unknown = len(order)

    def _key(r: VariantRecord):
        return (order.get(r.chrom, unknown), r.chrom, r.pos, r.ref, r.alt)

    return vs.replace(records=sorted(vs.records, key=_key))


def write_variant_set(vs: VariantSet, path: str | Path) -> Path:
    """Write a set to ``path``.

    A ``.gz`` path is sorted, bgzip-compressed and tabix-indexed; anything else
    is written as plain VCF in the set's own order. Output is written next to
    the destination first and moved into place, so a partially written file
    never carries the final name.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    compress = path.suffix == ".gz"
    if compress:
        vs = sort_variant_set(vs)

    plain_name = path.name[: -len(".gz")] if compress else path.name
    tmp_plain = path.with_name(f".{plain_name}.tmp")

    # Contigs used by records must be declared before pysam accepts them.
    schema = vs.schema.copy()
    for r in vs.records:
        schema.ensure_contig(r.chrom)

    header = header_from_schema(schema)
    with pysam.VariantFile(str(tmp_plain), "w", header=header) as vf:
        for rec in vs.records:
            vf.write(_new_pysam_record(vf, rec, schema.samples))

    if not compress:
        os.replace(tmp_plain, path)
        return path

    tmp_gz = path.with_name(f".{path.name}.tmp.gz")
    pysam.tabix_compress(str(tmp_plain), str(tmp_gz), force=True)
    pysam.tabix_index(str(tmp_gz), preset="vcf", force=True)
    os.replace(str(tmp_gz) + ".tbi", str(path) + ".tbi")
    os.replace(tmp_gz, path)
    tmp_plain.unlink()
    return path
