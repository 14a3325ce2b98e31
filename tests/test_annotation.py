from pathlib import Path

import pytest

from tbnanopipe.annotation import (
    DATABASE_TABLE,
    ORIGIN_FIELD,
    SOURCE_FIELD,
    AnnotationJoiner,
    DatabaseCategory,
    context_agrees,
    spec_for,
)
from tbnanopipe.models import FieldDecl, VariantRecord, VariantSet, VcfSchema
from tbnanopipe.toy_data import TOY_CONTIG, TOY_GENE, TOY_LENGTH, toy_snp
from tbnanopipe.validation import MissingResourceError


def _databases(toy: dict):
    return {DatabaseCategory.parse(name): Path(p) for name, p in toy["databases"].items()}


def _calls(gene: str = TOY_GENE) -> VariantSet:
    pos, ref, alt = toy_snp()
    schema = VcfSchema(contigs={TOY_CONTIG: TOY_LENGTH}, samples=[])
    schema.info["Gene"] = FieldDecl("Gene", "1", "String", "Gene name")
    schema.info["Product"] = FieldDecl("Product", "1", "String", "Product")
    snp = VariantRecord(TOY_CONTIG, pos, ref, (alt,), qual=30.0, info={"Gene": gene, "Product": "RpoB"})
    other = VariantRecord(TOY_CONTIG, 10, "A", ("C",), qual=30.0, info={"Gene": gene})
    return VariantSet(schema=schema, records=(snp, other))


def test_category_parse() -> None:
    assert DatabaseCategory.parse("who") == DatabaseCategory.WHO
    assert DatabaseCategory.LINEAGES.slug == "lineages"
    with pytest.raises(ValueError):
        DatabaseCategory.parse("plasmids")


def test_context_agrees_uses_aliases() -> None:
    assert context_agrees({"Gene": "rpoB"}, {"GENE": "rpoB"})
    assert not context_agrees({"Gene": "katG"}, {"GENE": "rpoB"})
    assert context_agrees({"Gene": "katG"}, {"LINEAGE": ("lineage4",)})


def test_context_agrees_maps_annotator_strand() -> None:
    assert context_agrees({"Strand": "-1"}, {"STRAND": "-"})
    assert context_agrees({"Strand": 1}, {"STRAND": "+"})
    assert not context_agrees({"Strand": "1"}, {"STRAND": "-"})


def test_left_join_per_database(toy: dict) -> None:
    joiner = AnnotationJoiner(_databases(toy))
    per_db = joiner.annotate_all(_calls())

    assert list(per_db) == [spec.category for spec in DATABASE_TABLE]
    for vs in per_db.values():
        assert len(vs) == 2

    who = per_db[DatabaseCategory.WHO]
    snp, other = who.records
    assert snp.info[SOURCE_FIELD] == "WHO"
    assert snp.info[ORIGIN_FIELD] == "canonical"
    assert snp.info["GENE"] == TOY_GENE
    assert snp.info["WHO_GRADE"] == "1"
    assert "Gene" not in snp.info
    assert "Product" not in snp.info
    assert "Gene" not in who.schema.info
    assert SOURCE_FIELD not in other.info
    assert ORIGIN_FIELD not in other.info
    assert other.qual == 30.0

    antibiotics = per_db[DatabaseCategory.ANTIBIOTICS].records[0]
    assert antibiotics.info[ORIGIN_FIELD] == "inferred"
    assert antibiotics.info["DRUG"] == ("RIF",)

    lineages = per_db[DatabaseCategory.LINEAGES]
    assert all(SOURCE_FIELD not in r.info for r in lineages)
    assert "LINEAGE" in lineages.schema.info


def test_conflicting_context_does_not_match(toy: dict) -> None:
    per_db = AnnotationJoiner(_databases(toy)).annotate_all(_calls(gene="katG"))
    assert all(SOURCE_FIELD not in r.info for vs in per_db.values() for r in vs)


def test_empty_input_gives_empty_sets(toy: dict) -> None:
    empty = VariantSet(schema=VcfSchema(contigs={TOY_CONTIG: TOY_LENGTH}))
    per_db = AnnotationJoiner(_databases(toy)).annotate_all(empty)
    assert [len(vs) for vs in per_db.values()] == [0, 0, 0]
    for spec in DATABASE_TABLE:
        assert set(spec.copy_fields) <= set(per_db[spec.category].schema.info)


def test_unknown_contig_is_left_unannotated(toy: dict) -> None:
    vs = VariantSet(schema=VcfSchema(), records=(VariantRecord("plasmid", 5, "A", ("G",)),))
    who = AnnotationJoiner(_databases(toy)).annotate(vs, spec_for(DatabaseCategory.WHO))
    assert SOURCE_FIELD not in who.records[0].info


def test_missing_database_index(tmp_path: Path, toy: dict) -> None:
    dbs = _databases(toy)
    Path(str(dbs[DatabaseCategory.WHO]) + ".tbi").unlink()
    with pytest.raises(MissingResourceError, match="who database"):
        AnnotationJoiner(dbs).validate()


def test_missing_database_file(tmp_path: Path, toy: dict) -> None:
    dbs = _databases(toy)
    dbs[DatabaseCategory.LINEAGES] = tmp_path / "missing.vcf.gz"
    with pytest.raises(MissingResourceError):
        AnnotationJoiner(dbs).annotate_all(_calls())
