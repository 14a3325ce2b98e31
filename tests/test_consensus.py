from pathlib import Path

import numpy as np

from tbnanopipe.consensus import ConsensusBuilder, build_consensus, build_consensus_invocations, read_depth
from tbnanopipe.models import SampleCall, VariantRecord, VariantSet, VcfSchema
from tbnanopipe.toy_data import TOY_CONTIG, TOY_LENGTH, TOY_SNP_POS, toy_reference, toy_snp

REF = "ACGTACGTAC"


def _call(pos: int, ref: str, alt: str, qual: float, gt=(1,)) -> VariantRecord:
    return VariantRecord("c", pos, ref, (alt,), qual=qual, samples={"S": SampleCall(fields={"GT": gt})})


def _build(records, depth=None, **kw):
    depth = np.full(len(REF), 10) if depth is None else depth
    return build_consensus(
        sample_id="S",
        reference={"c": REF},
        calls=VariantSet(schema=VcfSchema(samples=["S"]), records=tuple(records)),
        depth={"c": depth},
        **kw,
    )


def test_snp_substituted() -> None:
    cons = _build([_call(2, "C", "T", 50.0)])
    assert cons.sequence == "ATGTACGTAC"
    assert cons.substitutions == 1
    assert cons.ambiguous == 0


def test_low_quality_call_is_masked() -> None:
    cons = _build([_call(3, "G", "A", 5.0)], min_qual=20.0)
    assert cons.sequence == "ACNTACGTAC"
    assert cons.substitutions == 0
    assert cons.ambiguous == 1


def test_reference_genotype_and_indels_keep_reference() -> None:
    cons = _build([_call(2, "C", "T", 50.0, gt=(0,)), _call(5, "AC", "A", 50.0), _call(7, "G", "<*>", 50.0)])
    assert cons.sequence == REF
    assert cons.substitutions == 0


def test_low_depth_is_masked() -> None:
    depth = np.array([10, 10, 10, 10, 10, 10, 10, 10, 1, 0])
    cons = _build([_call(10, "C", "G", 50.0)], depth=depth, min_depth=3)
    assert cons.sequence == "ACGTACGTNN"
    assert cons.substitutions == 0
    assert cons.ambiguous == 2
    assert len(cons.sequence) == len(REF)


def test_fasta_record_naming() -> None:
    cons = _build([])
    assert cons.fasta_records() == [("S", REF)]


def test_consensus_invocations_are_haploid() -> None:
    producer, consumer = build_consensus_invocations(bam=Path("s.bam"), ref_fa=Path("r.fa"), out_vcf=Path("o.vcf.gz"))
    assert producer.argv[:2] == ("bcftools", "mpileup")
    assert "--ploidy" in consumer.argv
    assert consumer.argv[consumer.argv.index("--ploidy") + 1] == "1"
    assert consumer.outputs == (Path("o.vcf.gz"),)


def test_read_depth_from_bam(toy: dict) -> None:
    depth = read_depth(toy["toy_bam"], {TOY_CONTIG: TOY_LENGTH})[TOY_CONTIG]
    assert depth[TOY_SNP_POS - 1] == 20
    assert depth[0] == 0
    assert read_depth(toy["empty_bam"], {TOY_CONTIG: TOY_LENGTH})[TOY_CONTIG].sum() == 0


def test_builder_end_to_end(tmp_path: Path, toy: dict, fake_runner) -> None:
    builder = ConsensusBuilder(runner=fake_runner, ref_fa=toy["reference"])
    out = tmp_path / "S.consensus.fasta"

    cons = builder.run(sample_id="toy", bam=toy["toy_bam"], calls_vcf=tmp_path / "calls.vcf.gz", out_fasta=out)

    pos, _, alt = toy_snp()
    assert cons.sequence[pos - 1] == alt
    assert cons.substitutions == 1
    assert len(cons.sequence) == len(toy_reference())
    text = out.read_text().splitlines()
    assert text[0] == ">toy"
    assert "".join(text[1:]) == cons.sequence
    assert fake_runner.stages() == ["consensus_call"]
