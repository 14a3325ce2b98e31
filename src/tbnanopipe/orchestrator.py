"""Per-sample stage sequencing and the batch pool.

Every sample gets its own directory tree::

    <outdir>/<sample_id>/
        01_align/ ... 09_consensus/   one directory per stage, each with stage.json
        logs/<stage>.log              records from this sample's worker thread only
        summary.json
        report.html

Stages read their inputs from the previous stages' artifacts on disk, so a
resumed run can skip any stage whose ``stage.json`` and outputs exist.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from tqdm import tqdm

from . import __version__
from .annotation import DATABASE_TABLE, SOURCE_FIELD, AnnotationJoiner, DatabaseCategory
from .canonical import canonical_filter, merge_final_sets, write_final_table
from .codon import build_codon_invocation
from .config import PipelineConfig, check_unique_ids
from .consensus import ConsensusBuilder, build_consensus_invocations
from .external import ToolInvocation, ToolRunner
from .models import Sample, VariantSet
from .nanopore.align import align_reads, build_alignment_invocations
from .nanopore.calling import build_clair3_invocation, call_variants
from .normalize import normalize_variants, select_pass_snps
from .phasing import PhasingCoordinator, build_whatshap_invocation
from .plotting import plot_consensus_composition, plot_database_counts
from .postprocess import PostProcessor
from .report import render_sample_report
from .utils import ensure_outdir, read_json, write_json
from .validation import ensure_faidx, require_resource, require_resources
from .vcfio import read_variant_set, write_variant_set

logger = logging.getLogger(__name__)


_LOG_FMT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Stage(str, Enum):
    ALIGN = "01_align"
    CALL = "02_call"
    NORMALIZE = "03_normalize"
    PHASE = "04_phase"
    CODON = "05_codon"
    POSTPROCESS = "06_postprocess"
    ANNOTATE = "07_annotate"
    CANONICAL = "08_canonical"
    CONSENSUS = "09_consensus"

    @property
    def label(self) -> str:
        return self.name.lower()


class SampleStageError(RuntimeError):
    """A stage of one sample failed; ``cause`` is the original exception."""

    def __init__(self, sample_id: str, stage: str, cause: BaseException) -> None:
        super().__init__(f"Sample '{sample_id}' failed at stage '{stage}': {cause}")
        self.sample_id = sample_id
        self.stage = stage
        self.cause = cause


class _ThreadFilter(logging.Filter):
    def __init__(self, thread_id: int) -> None:
        super().__init__()
        self.thread_id = thread_id

    def filter(self, record: logging.LogRecord) -> bool:
        return record.thread == self.thread_id


@contextmanager
def _step_log(path: Path) -> Iterator[None]:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter(_LOG_FMT))
    handler.addFilter(_ThreadFilter(threading.get_ident()))
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    try:
        yield
    finally:
        root_logger.removeHandler(handler)
        handler.close()


@dataclass(frozen=True)
class SampleLayout:
    """Artifact paths of one sample."""

    outdir: Path
    sample_id: str

    @property
    def root(self) -> Path:
        return self.outdir / self.sample_id

    def stage_dir(self, stage: Stage) -> Path:
        return self.root / stage.value

    def marker(self, stage: Stage) -> Path:
        return self.stage_dir(stage) / "stage.json"

    def log_path(self, stage: Stage) -> Path:
        return self.root / "logs" / f"{stage.label}.log"

    def _artifact(self, stage: Stage, suffix: str) -> Path:
        return self.stage_dir(stage) / f"{self.sample_id}.{suffix}"

    @property
    def aligned_bam(self) -> Path:
        return self._artifact(Stage.ALIGN, "bam")

    @property
    def raw_vcf(self) -> Path:
        return self._artifact(Stage.CALL, "raw.vcf.gz")

    @property
    def clair3_dir(self) -> Path:
        return self.stage_dir(Stage.CALL) / "clair3"

    @property
    def normalized_vcf(self) -> Path:
        return self._artifact(Stage.NORMALIZE, "norm.vcf.gz")

    @property
    def pass_snps_vcf(self) -> Path:
        return self._artifact(Stage.NORMALIZE, "pass_snps.vcf.gz")

    @property
    def phased_vcf(self) -> Path:
        return self._artifact(Stage.PHASE, "phased.vcf")

    @property
    def codon_vcf(self) -> Path:
        return self._artifact(Stage.CODON, "codon.vcf")

    @property
    def post_vcf(self) -> Path:
        return self._artifact(Stage.POSTPROCESS, "post.vcf.gz")

    def annotated_vcf(self, category: DatabaseCategory) -> Path:
        return self._artifact(Stage.ANNOTATE, f"{category.slug}.annotated.vcf.gz")

    def final_vcf(self, category: DatabaseCategory) -> Path:
        return self._artifact(Stage.CANONICAL, f"{category.slug}.final.vcf")

    @property
    def combined_vcf(self) -> Path:
        return self._artifact(Stage.CANONICAL, "final.vcf")

    @property
    def final_table(self) -> Path:
        return self._artifact(Stage.CANONICAL, "final_calls.tsv")

    @property
    def consensus_calls(self) -> Path:
        return self._artifact(Stage.CONSENSUS, "consensus_calls.vcf.gz")

    @property
    def consensus_fasta(self) -> Path:
        return self._artifact(Stage.CONSENSUS, "consensus.fasta")

    @property
    def summary(self) -> Path:
        return self.root / "summary.json"

    @property
    def report(self) -> Path:
        return self.root / "report.html"


StageResult = Tuple[List[Path], Dict[str, Any]]


@dataclass
class _SampleRun:
    sample: Sample
    layout: SampleLayout
    bam: Path
    stages: List[Dict[str, Any]] = field(default_factory=list)


def _load_completed(marker: Path) -> Optional[Dict[str, Any]]:
    if not marker.exists():
        return None
    try:
        done = read_json(marker)
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable stage marker %s (%s)", marker, exc)
        return None
    if not isinstance(done, dict):
        logger.warning("Ignoring malformed stage marker %s", marker)
        return None
    if not all(Path(p).exists() for p in done.get("outputs", [])):
        return None
    return done


class SampleOrchestrator:
    """Runs the stage chain for one sample at a time.

    Parameters
    ----------
    config:
        Resources, tool names, thresholds and the output root.
    runner:
        Executes external tool invocations. Defaults to a real :class:`ToolRunner`.
    """

    def __init__(self, config: PipelineConfig, *, runner: Optional[ToolRunner] = None) -> None:
        self.config = config
        self.runner = runner or ToolRunner()

    def layout(self, sample: Sample) -> SampleLayout:
        return SampleLayout(Path(self.config.outdir), sample.sample_id)

    def stages_for(self, sample: Sample) -> List[Stage]:
        stages = list(Stage)
        if sample.bam is not None:
            stages.remove(Stage.ALIGN)
        return stages

    def validate(self, sample: Sample) -> None:
        res = self.config.resources
        require_resources(res.named())
        AnnotationJoiner(res.databases).validate()
        if res.clair3_model is None:
            require_resource("clair3 model", None)
        if sample.bam is not None:
            require_resource("alignment", sample.bam)
        elif not sample.reads:
            raise ValueError(f"Sample '{sample.sample_id}' has neither reads nor an alignment")
        for i, fq in enumerate(sample.reads if sample.bam is None else ()):
            require_resource(f"reads[{i}]", fq)

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run(self, sample: Sample) -> Dict[str, Any]:
        """Run every stage for ``sample`` and write its summary and report.

        Raises
        ------
        SampleStageError
            Wrapping whatever failed, with the stage it failed in.
        """
        try:
            self.validate(sample)
        except Exception as exc:
            raise SampleStageError(sample.sample_id, "validate", exc) from exc
        try:
            return self._run(sample)
        except SampleStageError:
            raise
        except Exception as exc:
            raise SampleStageError(sample.sample_id, "summary", exc) from exc

    def _run(self, sample: Sample) -> Dict[str, Any]:
        t0 = time.time()
        layout = self.layout(sample)
        ensure_outdir(layout.root)
        ctx = _SampleRun(
            sample=sample,
            layout=layout,
            bam=layout.aligned_bam if sample.bam is None else Path(sample.bam),
        )
        logger.info("[%s] starting (%d stages)", sample.sample_id, len(self.stages_for(sample)))

        if sample.bam is None:
            self._stage(ctx, Stage.ALIGN, lambda: self._align(ctx))
        self._stage(ctx, Stage.CALL, lambda: self._call(ctx))
        normalized = self._stage(ctx, Stage.NORMALIZE, lambda: self._normalize(ctx))
        phase = self._stage(ctx, Stage.PHASE, lambda: self._phase(ctx))
        self._stage(ctx, Stage.CODON, lambda: self._codon(ctx))
        post = self._stage(ctx, Stage.POSTPROCESS, lambda: self._postprocess(ctx))
        annotated = self._stage(ctx, Stage.ANNOTATE, lambda: self._annotate(ctx))
        final = self._stage(ctx, Stage.CANONICAL, lambda: self._canonical(ctx))
        consensus = self._stage(ctx, Stage.CONSENSUS, lambda: self._consensus(ctx))

        databases: Dict[str, Dict[str, int]] = {}
        for spec in DATABASE_TABLE:
            name = spec.category.value
            databases[name] = {
                "annotated": int(annotated["counts"][name]["annotated"]),
                "matched": int(annotated["counts"][name]["matched"]),
                "canonical": int(final["canonical"][name]),
            }

        summary: Dict[str, Any] = {
            "sample_id": sample.sample_id,
            "version": __version__,
            "bam": str(ctx.bam),
            "reference": str(self.config.resources.reference),
            "normalized_records": normalized["normalized"],
            "pass_snps": normalized["pass_snps"],
            "phase": phase,
            "postprocessed_records": post["records"],
            "databases": databases,
            "final_records": final["final_records"],
            "final_vcf": str(layout.combined_vcf),
            "consensus": consensus,
            "stages": ctx.stages,
            "runtime_seconds": float(time.time() - t0),
        }
        write_json(layout.summary, summary)

        try:
            plots = self._plots(layout, summary)
            render_sample_report(outdir=layout.root, version=__version__, summary=summary, plots=plots)
        except Exception as exc:
            raise SampleStageError(sample.sample_id, "report", exc) from exc

        logger.info(
            "[%s] done: %d final records, phase=%s, report %s",
            sample.sample_id,
            summary["final_records"],
            phase["state"],
            layout.report,
        )
        return summary

    def _stage(self, ctx: _SampleRun, stage: Stage, fn: Callable[[], StageResult]) -> Dict[str, Any]:
        sid = ctx.sample.sample_id
        marker = ctx.layout.marker(stage)

        if self.config.resume:
            done = _load_completed(marker)
            if done is not None:
                logger.info("[%s] %s: outputs present, skipping", sid, stage.label)
                ctx.stages.append(dict(done, skipped=True))
                return done.get("extra", {})

        t0 = time.time()
        ensure_outdir(ctx.layout.stage_dir(stage))
        with _step_log(ctx.layout.log_path(stage)):
            logger.info("[%s] %s", sid, stage.label)
            try:
                outputs, extra = fn()
            except Exception as exc:
                logger.error("[%s] %s failed: %s", sid, stage.label, exc)
                raise SampleStageError(sid, stage.label, exc) from exc

        record = {
            "stage": stage.label,
            "dir": str(ctx.layout.stage_dir(stage)),
            "outputs": [str(p) for p in outputs],
            "runtime_seconds": float(time.time() - t0),
            "extra": extra,
            "skipped": False,
        }
        write_json(marker, record)
        ctx.stages.append(record)
        return extra

    def _align(self, ctx: _SampleRun) -> StageResult:
        cfg = self.config
        info = align_reads(
            self.runner,
            fastq=ctx.sample.reads,
            ref_fa=cfg.resources.reference,
            out_bam=ctx.layout.aligned_bam,
            sample_id=ctx.sample.sample_id,
            threads=cfg.threads,
            minimap2_preset=cfg.minimap2_preset,
            minimap2=cfg.tools.minimap2,
            samtools=cfg.tools.samtools,
        )
        bam = ctx.layout.aligned_bam
        return [bam, Path(str(bam) + ".bai")], {"read_group": info["read_group"]}

    def _call(self, ctx: _SampleRun) -> StageResult:
        cfg = self.config
        info = call_variants(
            self.runner,
            bam=ctx.bam,
            ref_fa=cfg.resources.reference,
            workdir=ctx.layout.clair3_dir,
            out_vcf=ctx.layout.raw_vcf,
            model=str(cfg.resources.clair3_model),
            sample_id=ctx.sample.sample_id,
            threads=cfg.threads,
            platform=cfg.platform,
            haploid=cfg.haploid,
            engine=cfg.engine,
            run_clair3=cfg.tools.run_clair3,
            docker=cfg.tools.docker,
            docker_image=cfg.tools.clair3_image,
        )
        return [ctx.layout.raw_vcf], {"engine": info["engine"]}

    def _normalize(self, ctx: _SampleRun) -> StageResult:
        normalized = normalize_variants(read_variant_set(ctx.layout.raw_vcf))
        write_variant_set(normalized, ctx.layout.normalized_vcf)
        snps = select_pass_snps(normalized)
        write_variant_set(snps, ctx.layout.pass_snps_vcf)
        return (
            [ctx.layout.normalized_vcf, ctx.layout.pass_snps_vcf],
            {"normalized": len(normalized), "pass_snps": len(snps)},
        )

    def _phase(self, ctx: _SampleRun) -> StageResult:
        coordinator = PhasingCoordinator(
            runner=self.runner,
            ref_fa=self.config.resources.reference,
            template=self.config.resources.template,
            whatshap=self.config.tools.whatshap,
        )
        decision = coordinator.run(snps_vcf=ctx.layout.pass_snps_vcf, bam=ctx.bam, out_vcf=ctx.layout.phased_vcf)
        return [ctx.layout.phased_vcf], {"state": decision.state.value, "read_count": decision.read_count}

    def _codon(self, ctx: _SampleRun) -> StageResult:
        genbank = require_resource("genbank", self.config.resources.genbank)
        inv = build_codon_invocation(
            phased_vcf=ctx.layout.phased_vcf,
            genbank=genbank,
            out_vcf=ctx.layout.codon_vcf,
            vcf_annotator=self.config.tools.vcf_annotator,
        )
        self.runner.run(inv)
        return [ctx.layout.codon_vcf], {}

    def _postprocess(self, ctx: _SampleRun) -> StageResult:
        vs = PostProcessor(template=self.config.resources.template).run(
            codon_vcf=ctx.layout.codon_vcf,
            sample_id=ctx.sample.sample_id,
            out_vcf=ctx.layout.post_vcf,
        )
        return [ctx.layout.post_vcf], {"records": len(vs)}

    def _annotate(self, ctx: _SampleRun) -> StageResult:
        joiner = AnnotationJoiner(self.config.resources.databases)
        per_db = joiner.annotate_all(read_variant_set(ctx.layout.post_vcf))
        outputs: List[Path] = []
        counts: Dict[str, Dict[str, int]] = {}
        for category, vs in per_db.items():
            path = write_variant_set(vs, ctx.layout.annotated_vcf(category))
            outputs.append(path)
            counts[category.value] = {
                "annotated": len(vs),
                "matched": sum(1 for r in vs.records if SOURCE_FIELD in r.info),
            }
        return outputs, {"counts": counts}

    def _canonical(self, ctx: _SampleRun) -> StageResult:
        finals: Dict[DatabaseCategory, VariantSet] = {}
        outputs: List[Path] = []
        for spec in DATABASE_TABLE:
            final = canonical_filter(read_variant_set(ctx.layout.annotated_vcf(spec.category)))
            outputs.append(write_variant_set(final, ctx.layout.final_vcf(spec.category)))
            finals[spec.category] = final

        combined = merge_final_sets(finals)
        outputs.append(write_variant_set(combined, ctx.layout.combined_vcf))
        outputs.append(write_final_table(combined, ctx.sample.sample_id, ctx.layout.final_table))
        return outputs, {
            "canonical": {cat.value: len(vs) for cat, vs in finals.items()},
            "final_records": len(combined),
        }

    def _consensus(self, ctx: _SampleRun) -> StageResult:
        cfg = self.config
        builder = ConsensusBuilder(
            runner=self.runner,
            ref_fa=cfg.resources.reference,
            min_depth=cfg.min_depth,
            min_qual=cfg.min_qual,
            bcftools=cfg.tools.bcftools,
        )
        cons = builder.run(
            sample_id=ctx.sample.sample_id,
            bam=ctx.bam,
            calls_vcf=ctx.layout.consensus_calls,
            out_fasta=ctx.layout.consensus_fasta,
        )
        return [ctx.layout.consensus_fasta], {
            "length": len(cons.sequence),
            "substitutions": cons.substitutions,
            "ambiguous": cons.ambiguous,
            "fasta": str(ctx.layout.consensus_fasta),
        }

    @staticmethod
    def _plots(layout: SampleLayout, summary: Dict[str, Any]) -> Dict[str, str]:
        plots_dir = ensure_outdir(layout.root / "plots")
        plot_database_counts(counts=summary["databases"], out_png=plots_dir / "database_counts.png")
        cons = summary["consensus"]
        plot_consensus_composition(
            length=cons["length"],
            substitutions=cons["substitutions"],
            ambiguous=cons["ambiguous"],
            out_png=plots_dir / "consensus.png",
        )
        return {"database_counts": "plots/database_counts.png", "consensus": "plots/consensus.png"}

    # ------------------------------------------------------------------
    # Dry run
    # ------------------------------------------------------------------

    def plan(self, sample: Sample) -> List[Dict[str, Any]]:
        """Stage layout and the external commands a run would execute."""
        cfg = self.config
        res = cfg.resources
        layout = self.layout(sample)
        bam = layout.aligned_bam if sample.bam is None else Path(sample.bam)

        def _desc(*invs: ToolInvocation) -> str:
            return " | ".join(i.describe() for i in invs)

        commands: Dict[Stage, List[str]] = {s: [] for s in Stage}
        if sample.bam is None:
            aln = build_alignment_invocations(
                fastq=sample.reads,
                ref_fa=res.reference,
                out_bam=bam,
                sample_id=sample.sample_id,
                threads=cfg.threads,
                minimap2_preset=cfg.minimap2_preset,
                minimap2=cfg.tools.minimap2,
                samtools=cfg.tools.samtools,
            )
            commands[Stage.ALIGN] = [_desc(aln["minimap2"], aln["samtools_sort"]), _desc(aln["samtools_index"])]
        commands[Stage.CALL] = [
            _desc(
                build_clair3_invocation(
                    bam=bam,
                    ref_fa=res.reference,
                    outdir=layout.clair3_dir,
                    model=str(res.clair3_model),
                    sample_id=sample.sample_id,
                    threads=cfg.threads,
                    platform=cfg.platform,
                    haploid=cfg.haploid,
                    engine=cfg.engine,
                    run_clair3=cfg.tools.run_clair3,
                    docker=cfg.tools.docker,
                    docker_image=cfg.tools.clair3_image,
                )
            )
        ]
        commands[Stage.PHASE] = [
            _desc(
                build_whatshap_invocation(
                    vcf=layout.pass_snps_vcf,
                    bam=bam,
                    ref_fa=res.reference,
                    out_vcf=layout.phased_vcf,
                    whatshap=cfg.tools.whatshap,
                )
            )
            + "  # only with aligned reads; otherwise the template is copied"
        ]
        commands[Stage.CODON] = [
            _desc(
                build_codon_invocation(
                    phased_vcf=layout.phased_vcf,
                    genbank=res.genbank,
                    out_vcf=layout.codon_vcf,
                    vcf_annotator=cfg.tools.vcf_annotator,
                )
            )
        ]
        commands[Stage.CONSENSUS] = [
            _desc(
                *build_consensus_invocations(
                    bam=bam,
                    ref_fa=res.reference,
                    out_vcf=layout.consensus_calls,
                    bcftools=cfg.tools.bcftools,
                )
            )
        ]

        return [
            {"stage": s.label, "dir": str(layout.stage_dir(s)), "commands": commands[s]}
            for s in self.stages_for(sample)
        ]


def index_shared_resources(config: PipelineConfig) -> None:
    """Index the shared reference once, before any worker reads it.

    A missing reference is left for per-sample validation to report.
    """
    ref = config.resources.reference
    if ref is not None and Path(ref).exists():
        ensure_faidx(ref)


def run_batch(
    config: PipelineConfig,
    *,
    samples: Optional[Sequence[Sample]] = None,
    runner: Optional[ToolRunner] = None,
    progress: bool = True,
) -> Dict[str, Any]:
    """Run many samples on a thread pool of ``config.jobs`` workers.

    A failing sample is recorded in ``batch_summary.json`` and does not stop the
    others.
    """
    samples = list(config.samples if samples is None else samples)
    check_unique_ids(samples)
    outdir = ensure_outdir(config.outdir)
    index_shared_resources(config)
    orchestrator = SampleOrchestrator(config, runner=runner)

    results: Dict[str, Dict[str, Any]] = {}
    with ThreadPoolExecutor(max_workers=max(1, int(config.jobs))) as ex:
        future_to_sample = {ex.submit(orchestrator.run, s): s for s in samples}
        for fut in tqdm(
            as_completed(future_to_sample),
            total=len(future_to_sample),
            desc="samples",
            unit="sample",
            disable=not progress,
        ):
            sample = future_to_sample[fut]
            try:
                summary = fut.result()
            except SampleStageError as exc:
                logger.error("%s", exc)
                results[sample.sample_id] = {
                    "sample_id": sample.sample_id,
                    "status": "failed",
                    "stage": exc.stage,
                    "error": str(exc.cause),
                }
                continue
            results[sample.sample_id] = {
                "sample_id": sample.sample_id,
                "status": "ok",
                "final_records": summary["final_records"],
                "phase": summary["phase"]["state"],
                "summary": str(orchestrator.layout(sample).summary),
            }

    ordered = [results[s.sample_id] for s in samples]
    batch = {
        "version": __version__,
        "outdir": str(outdir),
        "n_samples": len(ordered),
        "n_ok": sum(1 for r in ordered if r["status"] == "ok"),
        "n_failed": sum(1 for r in ordered if r["status"] != "ok"),
        "samples": ordered,
    }
    write_json(outdir / "batch_summary.json", batch)
    logger.info("Batch finished: %d ok, %d failed", batch["n_ok"], batch["n_failed"])
    return batch
