from pathlib import Path

from tbnanopipe.models import VariantRecord, VariantSet, VcfSchema
from tbnanopipe.toy_data import TOY_CONTIG, TOY_LENGTH, raw_calls
from tbnanopipe.vcfio import read_schema, read_variant_set, sort_variant_set, write_variant_set


def test_gz_write_is_indexed_and_reads_back(tmp_path: Path) -> None:
    vs = raw_calls("S1")
    out = write_variant_set(vs, tmp_path / "calls.vcf.gz")

    assert out.exists()
    assert Path(str(out) + ".tbi").exists()
    assert not list(tmp_path.glob(".*.tmp*"))

    back = read_variant_set(out)
    assert back.schema.samples == ["S1"]
    assert back.schema.contigs == {TOY_CONTIG: TOY_LENGTH}
    assert "LowQual" in back.schema.filters
    assert back.keys() == vs.keys()
    for a, b in zip(vs.records, back.records):
        assert b.qual == a.qual
        assert b.filters == a.filters
        assert b.info == a.info
        assert b.samples["S1"].fields == a.samples["S1"].fields


def test_plain_write_keeps_record_order(tmp_path: Path) -> None:
    schema = VcfSchema(contigs={"c1": 100, "c2": 100})
    records = (
        VariantRecord("c2", 5, "A", ("G",)),
        VariantRecord("c1", 50, "C", ("T",)),
        VariantRecord("c1", 10, "G", ("A",)),
    )
    vs = VariantSet(schema=schema, records=records)

    out = write_variant_set(vs, tmp_path / "calls.vcf")
    assert not Path(str(out) + ".tbi").exists()
    assert [(r.chrom, r.pos) for r in read_variant_set(out)] == [("c2", 5), ("c1", 50), ("c1", 10)]

    gz = write_variant_set(vs, tmp_path / "calls.vcf.gz")
    assert [(r.chrom, r.pos) for r in read_variant_set(gz)] == [("c1", 10), ("c1", 50), ("c2", 5)]


def test_sort_orders_by_contig_declaration() -> None:
    schema = VcfSchema(contigs={"b": None, "a": None})
    vs = VariantSet(
        schema=schema,
        records=(VariantRecord("a", 1, "A", ("C",)), VariantRecord("b", 9, "A", ("C",))),
    )
    assert [r.chrom for r in sort_variant_set(vs)] == ["b", "a"]


def test_undeclared_contig_is_added_on_write(tmp_path: Path) -> None:
    vs = VariantSet(schema=VcfSchema(), records=(VariantRecord("chrX", 3, "A", ("T",)),))
    out = write_variant_set(vs, tmp_path / "x.vcf")
    assert "chrX" in read_schema(out).contigs


def test_empty_set_writes_header_only(tmp_path: Path) -> None:
    vs = VariantSet(schema=VcfSchema(contigs={TOY_CONTIG: TOY_LENGTH}, samples=["S1"]))
    out = write_variant_set(vs, tmp_path / "empty.vcf.gz")
    back = read_variant_set(out)
    assert len(back) == 0
    assert back.schema.samples == ["S1"]
