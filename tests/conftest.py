import threading
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from tbnanopipe.external import ExternalCommandError, ToolInvocation
from tbnanopipe.models import FieldDecl
from tbnanopipe.toy_data import TOY_GENE, make_toy_data, raw_calls, write_toy_bam
from tbnanopipe.vcfio import read_variant_set, write_variant_set


class FakeRunner:
    """Stands in for minimap2/Clair3/whatshap/vcf-annotator/bcftools.

    Each stage writes the artifact the real tool would, built from the toy data.
    """

    def __init__(self, *, fail_stage: Optional[str] = None, fail_sample: Optional[str] = None) -> None:
        self.calls: List[Tuple[str, Tuple[str, ...]]] = []
        self.fail_stage = fail_stage
        self.fail_sample = fail_sample
        self._lock = threading.Lock()

    def run(self, inv: ToolInvocation) -> None:
        self._record(inv)
        getattr(self, f"_{inv.stage}")(inv)

    def pipe(self, producer: ToolInvocation, consumer: ToolInvocation) -> None:
        self._record(producer)
        getattr(self, f"_{consumer.stage}")(consumer)

    def stages(self) -> List[str]:
        return [stage for stage, _ in self.calls]

    def _record(self, inv: ToolInvocation) -> None:
        with self._lock:
            self.calls.append((inv.stage, inv.argv))
        if inv.stage == self.fail_stage:
            if self.fail_sample is None or any(self.fail_sample in str(a) for a in inv.argv):
                raise ExternalCommandError(f"{inv.binary} failed", cmd=inv.argv, returncode=1)

    def _align(self, inv: ToolInvocation) -> None:
        if inv.argv[1] == "sort":
            write_toy_bam(inv.outputs[0], sample_id="fq")

    def _call(self, inv: ToolInvocation) -> None:
        sample_id = next(a.split("=", 1)[1] for a in inv.argv if a.startswith("--sample_name="))
        write_variant_set(raw_calls(sample_id), inv.outputs[0])

    def _phase(self, inv: ToolInvocation) -> None:
        write_variant_set(read_variant_set(inv.argv[-2]), inv.outputs[0])

    def _codon(self, inv: ToolInvocation) -> None:
        vs = read_variant_set(inv.argv[1])
        schema = vs.schema.copy()
        schema.info["Gene"] = FieldDecl("Gene", "1", "String", "Gene name")
        records = [r.with_info({"Gene": TOY_GENE}) for r in vs.records]
        write_variant_set(vs.replace(schema=schema, records=records), inv.stdout)

    def _consensus_call(self, inv: ToolInvocation) -> None:
        write_variant_set(raw_calls("consensus"), inv.outputs[0])


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def toy(tmp_path: Path) -> dict:
    return make_toy_data(outdir=tmp_path / "toy")
