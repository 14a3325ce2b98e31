from __future__ import annotations

import copy
import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

VariantKey = Tuple[str, int, str, str]


@dataclass(frozen=True)
class FieldDecl:
    """An INFO or FORMAT header declaration.

    ``number`` is kept as the VCF text form: ``"1"``, ``"A"``, ``"R"``,
    ``"G"``, ``"."`` or ``"0"`` for flags.
    """

    id: str
    number: str
    type: str
    description: str


@dataclass(frozen=True)
class SampleCall:
    """FORMAT values of one sample on one record."""

    fields: Dict[str, Any] = field(default_factory=dict)
    phased: bool = False


@dataclass(frozen=True)
class VariantRecord:
    """A variant call.

    Coordinates are 1-based (VCF POS). A record straight from a caller may carry
    several alternate alleles; after normalization ``alts`` has length 1.

    Records are never mutated: use :meth:`evolve` or :meth:`with_info` to derive
    a new record.
    """

    chrom: str
    pos: int
    ref: str
    alts: Tuple[str, ...]
    id: Optional[str] = None
    qual: Optional[float] = None
    filters: Tuple[str, ...] = ()
    info: Dict[str, Any] = field(default_factory=dict)
    samples: Dict[str, SampleCall] = field(default_factory=dict)

    @property
    def alt(self) -> str:
        return ",".join(self.alts) if self.alts else "."

    @property
    def key(self) -> VariantKey:
        return (self.chrom, self.pos, self.ref, self.alt)

    @property
    def is_multiallelic(self) -> bool:
        return len(self.alts) > 1

    @property
    def is_snp(self) -> bool:
        return len(self.ref) == 1 and len(self.alts) == 1 and len(self.alts[0]) == 1 and self.alts[0] != "."

    @property
    def is_pass(self) -> bool:
        return self.filters == ("PASS",)

    def evolve(self, **changes: Any) -> "VariantRecord":
        return dataclasses.replace(self, **changes)

    def with_info(
        self,
        updates: Optional[Mapping[str, Any]] = None,
        *,
        drop: Sequence[str] = (),
    ) -> "VariantRecord":
        info = {k: v for k, v in self.info.items() if k not in drop}
        if updates:
            info.update(updates)
        return dataclasses.replace(self, info=info)


@dataclass
class VcfSchema:
    """Header model: contigs, declarations, samples and generic meta lines."""

    contigs: Dict[str, Optional[int]] = field(default_factory=dict)
    info: Dict[str, FieldDecl] = field(default_factory=dict)
    formats: Dict[str, FieldDecl] = field(default_factory=dict)
    filters: Dict[str, str] = field(default_factory=dict)
    samples: List[str] = field(default_factory=list)
    meta: List[Tuple[str, str]] = field(default_factory=list)

    def copy(self) -> "VcfSchema":
        return copy.deepcopy(self)

    def ensure_info(self, decl: FieldDecl) -> bool:
        """Declare an INFO field unless already declared. Returns True if added."""
        if decl.id in self.info:
            return False
        self.info[decl.id] = decl
        return True

    def ensure_format(self, decl: FieldDecl) -> bool:
        if decl.id in self.formats:
            return False
        self.formats[decl.id] = decl
        return True

    def ensure_contig(self, name: str, length: Optional[int] = None) -> None:
        if name not in self.contigs:
            self.contigs[name] = length

    def drop_info(self, ids: Sequence[str]) -> None:
        for i in ids:
            self.info.pop(i, None)


@dataclass(frozen=True)
class VariantSet:
    """An ordered sequence of records together with the header they conform to."""

    schema: VcfSchema
    records: Tuple[VariantRecord, ...] = ()

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[VariantRecord]:
        return iter(self.records)

    def keys(self) -> List[VariantKey]:
        return [r.key for r in self.records]

    def duplicate_keys(self) -> List[VariantKey]:
        seen = set()
        dups: List[VariantKey] = []
        for k in self.keys():
            if k in seen:
                dups.append(k)
            seen.add(k)
        return dups

    def replace(
        self,
        *,
        schema: Optional[VcfSchema] = None,
        records: Optional[Sequence[VariantRecord]] = None,
    ) -> "VariantSet":
        return VariantSet(
            schema=self.schema if schema is None else schema,
            records=self.records if records is None else tuple(records),
        )


@dataclass(frozen=True)
class Sample:
    """One unit of work: identifier plus read files and/or an alignment artifact."""

    sample_id: str
    reads: Tuple[Path, ...] = ()
    bam: Optional[Path] = None


class PhaseState(str, Enum):
    NEEDS_PHASING = "needs_phasing"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class PhaseDecision:
    read_count: int
    state: PhaseState


@dataclass(frozen=True)
class ConsensusSequence:
    """Consensus genome of one sample, one segment per reference contig."""

    sample_id: str
    segments: Tuple[Tuple[str, str], ...]
    substitutions: int
    ambiguous: int

    @property
    def sequence(self) -> str:
        return "".join(seq for _, seq in self.segments)

    def fasta_records(self) -> List[Tuple[str, str]]:
        if len(self.segments) == 1:
            return [(self.sample_id, self.segments[0][1])]
        return [(f"{self.sample_id}|{contig}", seq) for contig, seq in self.segments]
