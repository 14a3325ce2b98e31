from tbnanopipe.models import FieldDecl, SampleCall, VariantRecord, VariantSet, VcfSchema
from tbnanopipe.normalize import EXPECTED_INFO_FIELDS, normalize_variants, select_pass_snps, split_multiallelic
from tbnanopipe.toy_data import TOY_SNP_POS, raw_calls


def test_normalize_dedups_and_splits() -> None:
    out = normalize_variants(raw_calls("S1"))

    assert len(out) == 4
    assert out.duplicate_keys() == []
    assert all(len(r.alts) == 1 for r in out)
    assert [r.pos for r in out] == [TOY_SNP_POS, 400, 400, 450]
    for decl in EXPECTED_INFO_FIELDS:
        assert decl.id in out.schema.info


def test_split_scopes_per_allele_fields() -> None:
    vs = raw_calls("S1")
    multi = next(r for r in vs if r.is_multiallelic)

    first, second = split_multiallelic(multi, vs.schema)

    assert first.alts == (multi.alts[0],)
    assert second.alts == (multi.alts[1],)
    assert first.samples["S1"].fields["GT"] == (1,)
    assert second.samples["S1"].fields["GT"] == (0,)
    assert first.samples["S1"].fields["AD"] == (2, 6)
    assert second.samples["S1"].fields["AD"] == (2, 2)
    assert first.samples["S1"].fields["AF"] == (0.5,)
    assert second.samples["S1"].fields["AF"] == (0.25,)
    # Number=1 fields are shared.
    assert first.samples["S1"].fields["DP"] == second.samples["S1"].fields["DP"] == 10
    assert first.filters == second.filters == ("LowQual",)


def test_split_diploid_likelihoods() -> None:
    vs = raw_calls("S1")
    schema = vs.schema.copy()
    schema.formats["PL"] = FieldDecl("PL", "G", "Integer", "Phred-scaled genotype likelihoods")
    rec = VariantRecord(
        "c",
        1,
        "A",
        ("C", "G"),
        samples={"S1": SampleCall(fields={"GT": (1, 2), "PL": (0, 1, 2, 3, 4, 5)})},
    )
    a, b = split_multiallelic(rec, schema)
    assert a.samples["S1"].fields["PL"] == (0, 1, 2)
    assert b.samples["S1"].fields["PL"] == (0, 3, 5)
    assert a.samples["S1"].fields["GT"] == (1, 0)
    assert b.samples["S1"].fields["GT"] == (0, 1)


def test_empty_input_gives_empty_output() -> None:
    out = normalize_variants(VariantSet(schema=VcfSchema()))
    assert len(out) == 0
    assert "DP" in out.schema.info


def test_select_pass_snps() -> None:
    snps = select_pass_snps(normalize_variants(raw_calls("S1")))
    assert [r.pos for r in snps] == [TOY_SNP_POS]
    assert snps.records[0].is_pass
