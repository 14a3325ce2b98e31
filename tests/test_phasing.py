from pathlib import Path

import pytest

from tbnanopipe.models import PhaseState
from tbnanopipe.normalize import normalize_variants, select_pass_snps
from tbnanopipe.phasing import PhasingCoordinator, count_aligned_reads, decide_phase
from tbnanopipe.toy_data import raw_calls
from tbnanopipe.validation import MissingResourceError
from tbnanopipe.vcfio import read_variant_set, write_variant_set


def _snps(tmp_path: Path) -> Path:
    return write_variant_set(select_pass_snps(normalize_variants(raw_calls("toy"))), tmp_path / "snps.vcf.gz")


def test_decide_phase() -> None:
    assert decide_phase(0).state == PhaseState.FALLBACK
    assert decide_phase(1).state == PhaseState.NEEDS_PHASING
    assert decide_phase(12).read_count == 12


def test_count_aligned_reads(toy: dict) -> None:
    assert count_aligned_reads(toy["toy_bam"]) == 20
    assert count_aligned_reads(toy["empty_bam"]) == 0


def test_reads_present_invokes_whatshap(tmp_path: Path, toy: dict, fake_runner) -> None:
    coordinator = PhasingCoordinator(runner=fake_runner, ref_fa=toy["reference"], template=toy["template"])
    out = tmp_path / "phased.vcf"

    decision = coordinator.run(snps_vcf=_snps(tmp_path), bam=toy["toy_bam"], out_vcf=out)

    assert decision.state == PhaseState.NEEDS_PHASING
    assert decision.read_count == 20
    stage, argv = fake_runner.calls[0]
    assert stage == "phase"
    assert argv[:2] == ("whatshap", "phase")
    assert "--ignore-read-groups" in argv
    assert argv[-1] == toy["toy_bam"]
    assert len(read_variant_set(out)) == 1


def test_no_reads_substitutes_template(tmp_path: Path, toy: dict, fake_runner) -> None:
    coordinator = PhasingCoordinator(runner=fake_runner, ref_fa=toy["reference"], template=toy["template"])
    out = tmp_path / "phased.vcf"

    decision = coordinator.run(snps_vcf=_snps(tmp_path), bam=toy["empty_bam"], out_vcf=out)

    assert decision.state == PhaseState.FALLBACK
    assert fake_runner.calls == []
    assert out.read_bytes() == Path(toy["template"]).read_bytes()


def test_template_converted_when_suffix_differs(tmp_path: Path, toy: dict, fake_runner) -> None:
    coordinator = PhasingCoordinator(runner=fake_runner, ref_fa=toy["reference"], template=toy["template"])
    out = tmp_path / "phased.vcf.gz"

    coordinator.run(snps_vcf=_snps(tmp_path), bam=toy["empty_bam"], out_vcf=out)

    back = read_variant_set(out)
    assert len(back) == 0
    assert back.schema.samples == ["SAMPLE"]


def test_missing_template_is_reported(tmp_path: Path, toy: dict, fake_runner) -> None:
    coordinator = PhasingCoordinator(runner=fake_runner, ref_fa=toy["reference"], template=tmp_path / "nope.vcf")
    with pytest.raises(MissingResourceError):
        coordinator.run(snps_vcf=_snps(tmp_path), bam=toy["empty_bam"], out_vcf=tmp_path / "phased.vcf")
