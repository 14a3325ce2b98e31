from pathlib import Path

import pytest

from tbnanopipe.models import FieldDecl, SampleCall, VariantRecord, VariantSet, VcfSchema
from tbnanopipe.postprocess import (
    NOT_COMPUTED,
    QUALITY_FIELDS,
    PostProcessor,
    reconcile_with_template,
    repair_quality_fields,
    tag_sample_identity,
)
from tbnanopipe.toy_data import TOY_CONTIG, template_set
from tbnanopipe.vcfio import read_variant_set, write_variant_set


def _calls(sample: str = "SAMPLE") -> VariantSet:
    schema = VcfSchema(contigs={TOY_CONTIG: None}, samples=[sample])
    schema.info["VDB"] = FieldDecl("VDB", "1", "Float", "Variant Distance Bias")
    schema.formats["DP"] = FieldDecl("DP", "1", "Integer", "Read depth")
    schema.formats["GT"] = FieldDecl("GT", "1", "String", "Genotype")
    rec = VariantRecord(
        TOY_CONTIG,
        10,
        "A",
        ("G",),
        qual=40.0,
        info={"VDB": 0.5},
        samples={sample: SampleCall(fields={"DP": 7, "GT": (1,)})},
    )
    return VariantSet(schema=schema, records=(rec, rec.evolve(pos=20, info={})))


def test_tag_sample_identity_renames_column() -> None:
    out = tag_sample_identity(_calls(), "S7")
    assert out.schema.samples == ["S7"]
    assert all(list(r.samples) == ["S7"] for r in out)


def test_tag_sample_identity_rejects_multisample() -> None:
    vs = _calls()
    vs.schema.samples.append("OTHER")
    with pytest.raises(ValueError):
        tag_sample_identity(vs, "S7")


def test_repair_quality_fields_declares_and_fills() -> None:
    out = repair_quality_fields(_calls())
    for decl in QUALITY_FIELDS:
        assert out.schema.info[decl.id].type == "String"
        assert all(decl.id in r.info for r in out)
    first, second = out.records
    assert first.info["VDB"] == "0.5"
    assert second.info["VDB"] == NOT_COMPUTED
    assert first.info["MQ0F"] == NOT_COMPUTED


def test_reconcile_adopts_template_format_order() -> None:
    template = template_set().schema
    out = reconcile_with_template(_calls(), template)
    assert list(out.schema.formats)[:6] == ["GT", "GQ", "DP", "AD", "AF", "PS"]
    assert list(out.records[0].samples["SAMPLE"].fields) == ["GT", "DP"]
    assert "DP" in out.schema.info


def test_postprocessor_writes_sorted_indexed_output(tmp_path: Path) -> None:
    template = write_variant_set(template_set(), tmp_path / "template.vcf")
    codon = write_variant_set(_calls(), tmp_path / "codon.vcf")

    vs = PostProcessor(template=template).run(codon_vcf=codon, sample_id="S7", out_vcf=tmp_path / "post.vcf.gz")

    assert len(vs) == 2
    assert Path(str(tmp_path / "post.vcf.gz") + ".tbi").exists()
    back = read_variant_set(tmp_path / "post.vcf.gz")
    assert back.schema.samples == ["S7"]
    assert [r.pos for r in back] == [10, 20]
    assert back.records[1].info["VDB"] == NOT_COMPUTED
    assert back.records[0].samples["S7"].fields["DP"] == 7


def test_postprocessor_handles_empty_template_copy(tmp_path: Path) -> None:
    template = write_variant_set(template_set(), tmp_path / "template.vcf")
    vs = PostProcessor(template=template).run(codon_vcf=template, sample_id="S0", out_vcf=tmp_path / "post.vcf.gz")
    assert len(vs) == 0
    assert read_variant_set(tmp_path / "post.vcf.gz").schema.samples == ["S0"]
