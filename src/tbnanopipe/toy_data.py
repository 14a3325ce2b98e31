from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Tuple

import pysam
import yaml

from .annotation import ORIGIN_FIELD, DatabaseCategory
from .models import FieldDecl, SampleCall, VariantRecord, VariantSet, VcfSchema
from .utils import ensure_outdir, write_fasta, write_json
from .vcfio import write_variant_set

TOY_CONTIG = "NC_000962.3"
TOY_LENGTH = 600
# 1-based position of the SNP carried by every read of the toy sample.
TOY_SNP_POS = 300
TOY_GENE = "rpoB"


def toy_reference() -> str:
    rng = random.Random(7)
    return "".join(rng.choice("ACGT") for _ in range(TOY_LENGTH))


def _mutate_base(base: str) -> str:
    for alt in ["A", "C", "G", "T"]:
        if alt != base:
            return alt
    return "A"


def toy_snp() -> Tuple[int, str, str]:
    ref_base = toy_reference()[TOY_SNP_POS - 1]
    return TOY_SNP_POS, ref_base, _mutate_base(ref_base)


def _make_read(
    name: str,
    start0: int,
    seq: str,
    read_group: str,
    mapq: int = 60,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = 0
    a.reference_id = 0
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = [(0, len(seq))]
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    a.set_tag("RG", read_group)
    return a


def write_toy_bam(path: str | Path, *, sample_id: str, n_reads: int = 20, read_len: int = 100) -> Path:
    """Sorted, indexed, read-group tagged BAM; every read carries the toy SNP.

    ``n_reads=0`` gives a header-only BAM.
    """
    path = Path(path)
    ref_seq = toy_reference()
    pos, _, alt = toy_snp()
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": TOY_CONTIG, "LN": len(ref_seq)}],
        "RG": [{"ID": sample_id, "SM": sample_id, "PL": "ONT"}],
    }

    reads: List[pysam.AlignedSegment] = []
    for i in range(n_reads):
        start0 = pos - 50 + i
        seq = list(ref_seq[start0 : start0 + read_len])
        seq[pos - 1 - start0] = alt
        reads.append(_make_read(f"{sample_id}_r{i}", start0, "".join(seq), sample_id))

    with pysam.AlignmentFile(str(path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)
    pysam.index(str(path))
    return path


def _base_schema(samples: List[str]) -> VcfSchema:
    return VcfSchema(contigs={TOY_CONTIG: TOY_LENGTH}, samples=list(samples))


def template_set() -> VariantSet:
    """Header-only phased call set used when a sample has no aligned reads."""
    schema = _base_schema(["SAMPLE"])
    schema.info["DP"] = FieldDecl("DP", "1", "Integer", "Total read depth at the locus")
    for decl in (
        FieldDecl("GT", "1", "String", "Genotype"),
        FieldDecl("GQ", "1", "Integer", "Genotype quality"),
        FieldDecl("DP", "1", "Integer", "Read depth"),
        FieldDecl("AD", "R", "Integer", "Allelic depths"),
        FieldDecl("AF", "A", "Float", "Allele frequency"),
        FieldDecl("PS", "1", "Integer", "Phase set identifier"),
    ):
        schema.formats[decl.id] = decl
    return VariantSet(schema=schema)


def raw_calls(sample_id: str) -> VariantSet:
    """A small caller output: one PASS SNP (twice), a filtered multiallelic site and an indel."""
    ref_seq = toy_reference()
    pos, ref_base, alt = toy_snp()
    schema = _base_schema([sample_id])
    schema.info["DP"] = FieldDecl("DP", "1", "Integer", "Total read depth at the locus")
    schema.filters["LowQual"] = "Low quality variant"
    for decl in (
        FieldDecl("GT", "1", "String", "Genotype"),
        FieldDecl("GQ", "1", "Integer", "Genotype quality"),
        FieldDecl("DP", "1", "Integer", "Read depth"),
        FieldDecl("AD", "R", "Integer", "Allelic depths"),
        FieldDecl("AF", "A", "Float", "Allele frequency"),
    ):
        schema.formats[decl.id] = decl

    def call(gt: Tuple[int, ...], **fields) -> Dict[str, SampleCall]:
        return {sample_id: SampleCall(fields=dict(GT=gt, **fields))}

    snp = VariantRecord(
        chrom=TOY_CONTIG,
        pos=pos,
        ref=ref_base,
        alts=(alt,),
        qual=30.0,
        filters=("PASS",),
        info={"DP": 20},
        samples=call((1,), GQ=30, DP=20, AD=(0, 20), AF=(1.0,)),
    )
    multi_ref = ref_seq[399]
    multi_alts = tuple(b for b in "ACGT" if b != multi_ref)[:2]
    multi = VariantRecord(
        chrom=TOY_CONTIG,
        pos=400,
        ref=multi_ref,
        alts=multi_alts,
        qual=8.0,
        filters=("LowQual",),
        info={"DP": 10},
        samples=call((1,), GQ=8, DP=10, AD=(2, 6, 2), AF=(0.5, 0.25)),
    )
    indel = VariantRecord(
        chrom=TOY_CONTIG,
        pos=450,
        ref=ref_seq[449:451],
        alts=(ref_seq[449],),
        qual=25.0,
        filters=("PASS",),
        info={"DP": 12},
        samples=call((1,), GQ=25, DP=12, AD=(2, 10), AF=(0.75,)),
    )
    return VariantSet(schema=schema, records=(snp, snp, multi, indel))


_DB_INFO: Tuple[FieldDecl, ...] = (
    FieldDecl("GENE", "1", "String", "Gene name"),
    FieldDecl("STRAND", "1", "String", "Strand of the gene (+/-)"),
    FieldDecl("AA", "1", "String", "Amino acid change"),
    FieldDecl("EFFECT", "1", "String", "Predicted effect of the variant"),
    FieldDecl(ORIGIN_FIELD, "1", "String", "Origin of the database entry: canonical or inferred"),
)

_DB_EXTRA: Dict[DatabaseCategory, Tuple[FieldDecl, ...]] = {
    DatabaseCategory.ANTIBIOTICS: (FieldDecl("DRUG", ".", "String", "Antibiotic(s) the variant confers resistance to"),),
    DatabaseCategory.WHO: (
        FieldDecl("WHO_DRUG", ".", "String", "Drug(s) listed for the mutation in the WHO catalogue"),
        FieldDecl("WHO_GRADE", "1", "String", "WHO catalogue confidence grading"),
    ),
    DatabaseCategory.LINEAGES: (FieldDecl("LINEAGE", ".", "String", "Lineage(s) defined by the variant"),),
}


def database_set(category: DatabaseCategory) -> VariantSet:
    """Toy annotation database.

    The toy SNP is canonical in WHO only; ANTIBIOTICS lists it as inferred and
    LINEAGES has a canonical entry elsewhere.
    """
    ref_seq = toy_reference()
    pos, ref_base, alt = toy_snp()
    schema = VcfSchema(contigs={TOY_CONTIG: TOY_LENGTH})
    for decl in _DB_INFO + _DB_EXTRA[category]:
        schema.info[decl.id] = decl

    context = {"GENE": TOY_GENE, "STRAND": "+", "EFFECT": "missense_variant"}
    records: List[VariantRecord] = []
    if category == DatabaseCategory.ANTIBIOTICS:
        records.append(
            VariantRecord(TOY_CONTIG, pos, ref_base, (alt,), info=dict(context, DRUG=("RIF",), ORIGIN="inferred"))
        )
    elif category == DatabaseCategory.WHO:
        records.append(
            VariantRecord(
                TOY_CONTIG,
                pos,
                ref_base,
                (alt,),
                info=dict(context, WHO_DRUG=("RIF",), WHO_GRADE="1", ORIGIN="canonical"),
            )
        )
        other = ref_seq[519]
        records.append(
            VariantRecord(
                TOY_CONTIG,
                520,
                other,
                (_mutate_base(other),),
                info=dict(context, WHO_DRUG=("RIF",), WHO_GRADE="2", ORIGIN="canonical"),
            )
        )
    else:
        base = ref_seq[119]
        records.append(
            VariantRecord(
                TOY_CONTIG,
                120,
                base,
                (_mutate_base(base),),
                info={"LINEAGE": ("lineage4",), "ORIGIN": "canonical"},
            )
        )
    return VariantSet(schema=schema, records=tuple(records))


def _write_genbank(path: Path, seq: str) -> None:
    lines = [
        f"LOCUS       {TOY_CONTIG}    {len(seq)} bp    DNA     circular BCT 01-JAN-2024",
        "DEFINITION  Toy Mycobacterium tuberculosis H37Rv fragment.",
        f"ACCESSION   {TOY_CONTIG}",
        "FEATURES             Location/Qualifiers",
        f"     source          1..{len(seq)}",
        "     gene            201..500",
        f'                     /gene="{TOY_GENE}"',
        '                     /locus_tag="Rv0667"',
        "     CDS             201..500",
        f'                     /gene="{TOY_GENE}"',
        '                     /locus_tag="Rv0667"',
        '                     /product="DNA-directed RNA polymerase subunit beta"',
        "ORIGIN",
    ]
    for i in range(0, len(seq), 60):
        chunk = seq[i : i + 60].lower()
        groups = " ".join(chunk[j : j + 10] for j in range(0, len(chunk), 10))
        lines.append(f"{i + 1:>9} {groups}")
    lines.append("//")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def make_toy_data(*, outdir: str | Path) -> Dict[str, str]:
    """Create a tiny reference, BAMs, databases and template for demos/tests.

    The outputs include:
    - reference.fa (+ .fai) and reference.gbk
    - toy.bam (20 reads with one SNP) and empty.bam (no reads), both indexed
    - template.vcf, the header-only phased set
    - databases/{antibiotics,who,lineages}.vcf.gz (+ .tbi)
    - toy.raw.vcf.gz, a caller-like output for ``tbnanopipe normalize``
    - clair3_model/ placeholder and config.yaml for ``tbnanopipe batch``

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)
    ref_seq = toy_reference()

    ref_fa = outdir_p / "reference.fa"
    write_fasta(ref_fa, [(TOY_CONTIG, ref_seq)])
    pysam.faidx(str(ref_fa))
    genbank = outdir_p / "reference.gbk"
    _write_genbank(genbank, ref_seq)

    toy_bam = write_toy_bam(outdir_p / "toy.bam", sample_id="toy")
    empty_bam = write_toy_bam(outdir_p / "empty.bam", sample_id="empty", n_reads=0)

    template = write_variant_set(template_set(), outdir_p / "template.vcf")
    raw = write_variant_set(raw_calls("toy"), outdir_p / "toy.raw.vcf.gz")

    db_dir = ensure_outdir(outdir_p / "databases")
    databases = {
        cat.slug: str(write_variant_set(database_set(cat), db_dir / f"{cat.slug}.vcf.gz")) for cat in DatabaseCategory
    }

    model_dir = ensure_outdir(outdir_p / "clair3_model")

    config = {
        "outdir": "results",
        "jobs": 2,
        "threads": 2,
        "resume": True,
        "resources": {
            "reference": ref_fa.name,
            "genbank": genbank.name,
            "template": template.name,
            "clair3_model": model_dir.name,
            "databases": {k: str(Path(v).relative_to(outdir_p)) for k, v in databases.items()},
        },
        "samples": [
            {"id": "toy", "bam": toy_bam.name},
            {"id": "empty", "bam": empty_bam.name},
        ],
    }
    config_path = outdir_p / "config.yaml"
    config_path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")

    summary = {
        "reference": str(ref_fa),
        "genbank": str(genbank),
        "toy_bam": str(toy_bam),
        "empty_bam": str(empty_bam),
        "template": str(template),
        "raw_vcf": str(raw),
        "databases": databases,
        "clair3_model": str(model_dir),
        "config": str(config_path),
        "outdir": str(outdir_p),
    }
    write_json(outdir_p / "toy_summary.json", summary)
    return summary
