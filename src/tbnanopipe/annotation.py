"""Fan-out left join of a sample call set against the annotation databases.

Each database in :data:`DATABASE_TABLE` is joined independently and yields its
own annotated set, so provenance stays distinguishable per database:

    joiner = AnnotationJoiner({DatabaseCategory.WHO: Path("who.vcf.gz"), ...})
    per_db = joiner.annotate_all(calls)   # {category: VariantSet}

A database entry matches a record when chromosome, position and REF agree and
every context field present on both sides carries the same value. Records
without a match keep all their other fields and get no ``ORIGIN`` /
``SOURCE_DB`` tag.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pysam

from .models import FieldDecl, VariantRecord, VariantSet, VcfSchema
from .validation import MissingResourceError, check_vcf_index, require_resource
from .vcfio import record_from_pysam, schema_from_header

logger = logging.getLogger(__name__)


ORIGIN_FIELD = "ORIGIN"
CANONICAL_MARKER = "canonical"
SOURCE_FIELD = "SOURCE_DB"

# INFO fields written by vcf-annotator that database annotation replaces.
SUPERSEDED_CODON_FIELDS: Tuple[str, ...] = (
    "Gene",
    "LocusTag",
    "Product",
    "ProteinID",
    "Note",
    "Inference",
    "Comments",
)


class DatabaseCategory(str, Enum):
    ANTIBIOTICS = "ANTIBIOTICS"
    WHO = "WHO"
    LINEAGES = "LINEAGES"

    @property
    def slug(self) -> str:
        return self.value.lower()

    @classmethod
    def parse(cls, name: str) -> "DatabaseCategory":
        try:
            return cls(str(name).upper())
        except ValueError:
            choices = ", ".join(c.slug for c in cls)
            raise ValueError(f"Unknown database category '{name}' (expected one of: {choices})") from None


@dataclass(frozen=True)
class ContextField:
    """A context column compared between record and database entry.

    ``aliases`` are the names vcf-annotator uses for the same concept and
    ``symbols`` rewrites its spellings (e.g. strand ``-1``) to the database form.
    """

    name: str
    aliases: Tuple[str, ...] = ()
    symbols: Tuple[Tuple[str, str], ...] = ()

    def value_in(self, info: Mapping[str, Any]) -> Optional[Any]:
        for key in (self.name,) + self.aliases:
            if key in info:
                return info[key]
        return None

    def text_in(self, info: Mapping[str, Any]) -> Optional[str]:
        value = self.value_in(info)
        if value is None:
            return None
        text = _as_text(value)
        return dict(self.symbols).get(text, text)


CONTEXT_FIELDS: Tuple[ContextField, ...] = (
    ContextField("GENE", ("Gene",)),
    ContextField("STRAND", ("Strand",), symbols=(("1", "+"), ("-1", "-"))),
    ContextField("AA", ("AminoAcidChange",)),
    ContextField("EFFECT"),
    ContextField("LOCUS", ("LocusTag",)),
    ContextField("PROT"),
    ContextField("NUC"),
)

_CONTEXT_DECLS: Tuple[FieldDecl, ...] = (
    FieldDecl("GENE", "1", "String", "Gene name"),
    FieldDecl("STRAND", "1", "String", "Strand of the gene (+/-)"),
    FieldDecl("AA", "1", "String", "Amino acid change"),
    FieldDecl("EFFECT", "1", "String", "Predicted effect of the variant"),
    FieldDecl("LOCUS", "1", "String", "Locus tag"),
    FieldDecl("PROT", "1", "String", "Protein change (HGVS p.)"),
    FieldDecl("NUC", "1", "String", "Nucleotide change (HGVS c./n.)"),
)

_ORIGIN_DECL = FieldDecl(ORIGIN_FIELD, "1", "String", "Origin of the database entry: canonical or inferred")
_SOURCE_DECL = FieldDecl(SOURCE_FIELD, "1", "String", "Annotation database that matched this record")


@dataclass(frozen=True)
class DatabaseSpec:
    """One row of the database table: category, copied fields and their defaults."""

    category: DatabaseCategory
    description: str
    declarations: Tuple[FieldDecl, ...]

    @property
    def copy_fields(self) -> Tuple[str, ...]:
        return tuple(d.id for d in self.declarations)

    def default_decl(self, field_id: str) -> Optional[FieldDecl]:
        for d in self.declarations:
            if d.id == field_id:
                return d
        return None


DATABASE_TABLE: Tuple[DatabaseSpec, ...] = (
    DatabaseSpec(
        DatabaseCategory.ANTIBIOTICS,
        "Resistance to antibiotics",
        _CONTEXT_DECLS
        + (
            FieldDecl("DRUG", ".", "String", "Antibiotic(s) the variant confers resistance to"),
            _ORIGIN_DECL,
        ),
    ),
    DatabaseSpec(
        DatabaseCategory.WHO,
        "WHO catalogue of canonical resistance mutations",
        _CONTEXT_DECLS
        + (
            FieldDecl("WHO_DRUG", ".", "String", "Drug(s) listed for the mutation in the WHO catalogue"),
            FieldDecl("WHO_GRADE", "1", "String", "WHO catalogue confidence grading"),
            _ORIGIN_DECL,
        ),
    ),
    DatabaseSpec(
        DatabaseCategory.LINEAGES,
        "Lineage-defining variants",
        _CONTEXT_DECLS
        + (
            FieldDecl("LINEAGE", ".", "String", "Lineage(s) defined by the variant"),
            _ORIGIN_DECL,
        ),
    ),
)


def spec_for(category: DatabaseCategory, table: Sequence[DatabaseSpec] = DATABASE_TABLE) -> DatabaseSpec:
    for spec in table:
        if spec.category == category:
            return spec
    raise KeyError(category)


def _as_text(value: Any) -> str:
    if isinstance(value, tuple):
        return ",".join(str(v) for v in value)
    return str(value)


def context_agrees(record_info: Mapping[str, Any], entry_info: Mapping[str, Any]) -> bool:
    """True when no context field present on both sides disagrees."""
    for cf in CONTEXT_FIELDS:
        a = cf.text_in(record_info)
        b = cf.text_in(entry_info)
        if a is not None and b is not None and a != b:
            return False
    return True


def augment_schema(schema: VcfSchema, spec: DatabaseSpec, db_schema: VcfSchema) -> VcfSchema:
    """Declare the copied fields (database header first, defaults second)."""
    out = schema.copy()
    out.drop_info(SUPERSEDED_CODON_FIELDS)
    for fid in spec.copy_fields:
        decl = db_schema.info.get(fid) or spec.default_decl(fid)
        out.info[fid] = decl
    out.ensure_info(_SOURCE_DECL)
    return out


def _check_database(category: DatabaseCategory, path: Optional[Path]) -> Path:
    name = f"{category.slug} database"
    path = require_resource(name, path)
    try:
        check_vcf_index(path)
    except ValueError as exc:
        raise MissingResourceError(f"{name} index", Path(str(path) + ".tbi"), f"{name}: {exc}") from exc
    return path


class AnnotationJoiner:
    """Left-joins call sets against every configured database."""

    def __init__(
        self,
        databases: Mapping[DatabaseCategory, str | Path],
        *,
        table: Sequence[DatabaseSpec] = DATABASE_TABLE,
    ) -> None:
        self.databases = {DatabaseCategory(k): Path(v) for k, v in databases.items()}
        self.table = tuple(table)

    def validate(self) -> None:
        for spec in self.table:
            _check_database(spec.category, self.databases.get(spec.category))

    def annotate_all(self, vs: VariantSet) -> Dict[DatabaseCategory, VariantSet]:
        """One annotated set per database, in table order."""
        self.validate()
        return {spec.category: self.annotate(vs, spec) for spec in self.table}

    def annotate(self, vs: VariantSet, spec: DatabaseSpec) -> VariantSet:
        path = _check_database(spec.category, self.databases.get(spec.category))
        drop_unmatched = SUPERSEDED_CODON_FIELDS + (ORIGIN_FIELD, SOURCE_FIELD)

        records: List[VariantRecord] = []
        matched = 0
        with pysam.VariantFile(str(path)) as db:
            schema = augment_schema(vs.schema, spec, schema_from_header(db.header))
            for rec in vs.records:
                entry = self._first_match(db, rec)
                if entry is None:
                    records.append(rec.with_info(drop=drop_unmatched))
                    continue
                matched += 1
                updates: Dict[str, Any] = {f: entry.info[f] for f in spec.copy_fields if f in entry.info}
                updates[SOURCE_FIELD] = spec.category.value
                records.append(rec.with_info(updates, drop=drop_unmatched))

        logger.info("[%s] %d of %d records matched %s", spec.category.value, matched, len(vs), path.name)
        return VariantSet(schema=schema, records=tuple(records))

    @staticmethod
    def _first_match(db: pysam.VariantFile, rec: VariantRecord) -> Optional[VariantRecord]:
        if db.index is None or rec.chrom not in db.index:
            return None
        for raw in db.fetch(rec.chrom, rec.pos - 1, rec.pos):
            if raw.pos != rec.pos or raw.ref != rec.ref:
                continue
            entry = record_from_pysam(raw)
            if context_agrees(rec.info, entry.info):
                return entry
        return None
