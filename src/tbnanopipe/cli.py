from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__
from .annotation import DatabaseCategory
from .config import PipelineConfig, Resources, ToolPaths, load_config
from .consensus import DEFAULT_MIN_DEPTH, DEFAULT_MIN_QUAL
from .doctor import collect_checks
from .external import ExternalCommandError
from .models import Sample
from .normalize import normalize_variants, select_pass_snps
from .orchestrator import SampleOrchestrator, SampleStageError, run_batch
from .toy_data import make_toy_data
from .validation import require_resource
from .vcfio import read_variant_set, write_variant_set


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        # Log files (including per-stage logs) always get INFO, whatever the console level.
        root = logging.getLogger()
        for h in root.handlers:
            h.setLevel(level)
        root.setLevel(min(level, logging.INFO))

        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(min(level, logging.INFO))
        fh.setFormatter(logging.Formatter(log_fmt))
        root.addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    if isinstance(err, (ExternalCommandError, SampleStageError)):
        msg = str(err)
        cause = getattr(err, "cause", None)
        if isinstance(cause, ExternalCommandError):
            msg = f"{err.__class__.__name__} in stage '{err.stage}':\n{cause}"
    else:
        msg = f"{err.__class__.__name__}: {err}"

    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--threads", type=int, default=None, help="Threads per sample for alignment/calling.")
    p.add_argument("--dry-run", action="store_true", help="Validate inputs and print the planned stages and commands.")
    p.add_argument("--resume", action="store_true", help="Skip stages whose stage.json and outputs exist.")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="tbnanopipe",
        description=(
            "tbnanopipe: per-sample M. tuberculosis nanopore variant processing. "
            "Calls, normalizes, phases and annotates variants against resistance, WHO and "
            "lineage databases, and builds a consensus genome."
        ),
    )
    p.add_argument("--version", action="version", version=f"tbnanopipe {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser(
        "quickstart",
        help="Print ready-to-run recipes for common scenarios.",
    )

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny reference, BAMs, databases, template and config for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # doctor
    # -----------------
    d = sub.add_parser(
        "doctor",
        help="Check your environment for the external tools (minimap2/Clair3/whatshap/vcf-annotator/bcftools).",
    )
    d.add_argument("--config", type=_path_exists, help="Batch config; checks its configured tool names.")
    d.add_argument("--engine", choices=["native", "docker"], default=None, help="Clair3 execution engine.")
    d.add_argument("--dry-run", action="store_true", help="Print checks without exiting nonzero.")
    d.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # run (single sample)
    # -----------------
    r = sub.add_parser("run", help="Process one sample (FASTQ or BAM) through every stage.")
    r.add_argument("--sample-id", required=True, help="Sample identifier (names the output directory).")
    group = r.add_mutually_exclusive_group(required=True)
    group.add_argument("--bam", type=_path_exists, help="Sorted, indexed BAM (skips alignment).")
    group.add_argument("--fastq", nargs="+", type=_path_exists, help="One or more FASTQ/FASTQ.GZ files.")
    r.add_argument("--ref", required=True, help="Reference FASTA (H37Rv).")
    r.add_argument("--genbank", required=True, help="Reference GenBank for vcf-annotator.")
    r.add_argument("--template", required=True, help="Header-only phased VCF used when no reads align.")
    r.add_argument("--db-antibiotics", required=True, help="Resistance database (.vcf.gz + .tbi).")
    r.add_argument("--db-who", required=True, help="WHO catalogue database (.vcf.gz + .tbi).")
    r.add_argument("--db-lineages", required=True, help="Lineage database (.vcf.gz + .tbi).")
    r.add_argument("--clair3-model", required=True, help="Clair3 model directory (or bundled model name with --engine docker).")
    r.add_argument("--outdir", required=True, help="Output root; the sample writes to <outdir>/<sample-id>/.")
    r.add_argument("--engine", default="native", choices=["native", "docker"], help="Clair3 execution engine.")
    r.add_argument("--platform", default="ont", help="Clair3 platform.")
    r.add_argument(
        "--preset",
        default="map-ont",
        help="Minimap2 preset for alignment (if FASTQ provided).",
    )
    r.add_argument("--min-depth", type=int, default=DEFAULT_MIN_DEPTH, help="Consensus: mask positions below this depth.")
    r.add_argument("--min-qual", type=float, default=DEFAULT_MIN_QUAL, help="Consensus: minimum QUAL to substitute a SNP.")
    _add_common(r)

    # -----------------
    # batch
    # -----------------
    b = sub.add_parser("batch", help="Process every sample of a YAML config on a thread pool.")
    b.add_argument("--config", required=True, type=_path_exists, help="YAML pipeline configuration.")
    b.add_argument("--jobs", type=int, default=None, help="Samples processed concurrently (overrides config).")
    b.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    _add_common(b)

    # -----------------
    # normalize
    # -----------------
    n = sub.add_parser("normalize", help="Normalize a caller VCF (dedup + split multiallelic records).")
    n.add_argument("--vcf", required=True, type=_path_exists, help="Input VCF/VCF.GZ.")
    n.add_argument("--out", required=True, help="Output VCF (.vcf.gz is sorted and indexed).")
    n.add_argument("--pass-snps", default=None, help="Optional second output with PASS SNPs only.")
    n.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


# -----------------
# Command handlers
# -----------------

def cmd_quickstart() -> int:
    lines = [
        "tbnanopipe quickstart (copy/paste):",
        "",
        "0) Try it on toy data (no external tools needed for this step):",
        "   tbnanopipe make-toy-data --outdir toy/",
        "   tbnanopipe batch --config toy/config.yaml --dry-run",
        "",
        "1) One sample from a BAM:",
        "   tbnanopipe run \\",
        "     --sample-id S1 --bam S1.bam \\",
        "     --ref H37Rv.fasta --genbank H37Rv.gbk --template template.vcf \\",
        "     --db-antibiotics db/antibiotics.vcf.gz --db-who db/who.vcf.gz --db-lineages db/lineages.vcf.gz \\",
        "     --clair3-model models/r941_prom_sup_g5014 \\",
        "     --outdir results/",
        "   Outputs: results/S1/report.html, results/S1/08_canonical/S1.final.vcf, results/S1/09_consensus/S1.consensus.fasta",
        "",
        "2) One sample from FASTQ (Clair3 via Docker):",
        "   tbnanopipe run --sample-id S2 --fastq S2.fastq.gz --engine docker --clair3-model r941_prom_sup_g5014 ...",
        "",
        "3) Many samples:",
        "   tbnanopipe batch --config pipeline.yaml --jobs 4 --resume",
        "   Outputs: results/batch_summary.json and one directory per sample",
        "",
        "Tip: use --dry-run to validate inputs and print the exact external commands.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=None)

    tools = ToolPaths()
    engine = args.engine or "native"
    if args.config:
        try:
            cfg = load_config(args.config)
        except Exception as e:
            return _handle_error(e)
        tools = cfg.tools
        engine = args.engine or cfg.engine

    checks = collect_checks(tools, engine=engine)

    lines = []
    ok_all = True
    for name, r in checks.items():
        status = "OK" if r.ok else ("MISSING" if r.required else "optional")
        lines.append(f"{name:14s} : {status:8s}  {r.detail}")
        if not r.ok and r.required:
            ok_all = False

    print("\n".join(lines))

    for name, r in checks.items():
        if not r.ok and r.howto:
            print("\n---")
            print(f"How to install/fix '{name}':")
            print(r.howto)

    if args.dry_run:
        return 0
    return 0 if ok_all else 1


def _print_plan(plan: List[Dict[str, Any]]) -> None:
    for step in plan:
        print(f"{step['stage']:12s} {step['dir']}")
        for cmd in step["commands"]:
            print("  " + cmd)


def cmd_run(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "tbnanopipe.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("tbnanopipe")
    logger.info("tbnanopipe %s", __version__)

    try:
        resources = Resources(
            reference=Path(args.ref),
            genbank=Path(args.genbank),
            template=Path(args.template),
            clair3_model=str(args.clair3_model),
            databases={
                DatabaseCategory.ANTIBIOTICS: Path(args.db_antibiotics),
                DatabaseCategory.WHO: Path(args.db_who),
                DatabaseCategory.LINEAGES: Path(args.db_lineages),
            },
        )
        cfg = PipelineConfig(
            resources=resources,
            outdir=outdir,
            threads=int(args.threads or 4),
            resume=bool(args.resume),
            engine=str(args.engine),
            platform=str(args.platform),
            minimap2_preset=str(args.preset),
            min_depth=int(args.min_depth),
            min_qual=float(args.min_qual),
        )
        sample = Sample(
            sample_id=str(args.sample_id),
            reads=tuple(Path(f) for f in (args.fastq or ())),
            bam=Path(args.bam) if args.bam else None,
        )
        orchestrator = SampleOrchestrator(cfg)

        if args.dry_run:
            orchestrator.validate(sample)
            print(f"Planned stages for sample {sample.sample_id}:")
            _print_plan(orchestrator.plan(sample))
            return 0

        orchestrator.run(sample)
        report = orchestrator.layout(sample).report
        logger.info("Report written: %s", report)
        print(str(report))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=None if args.dry_run else log_path)


def cmd_batch(args: argparse.Namespace) -> int:
    try:
        cfg = load_config(args.config)
    except Exception as e:
        _setup_logging(args.verbose, logfile=None)
        return _handle_error(e)

    overrides: Dict[str, Any] = {}
    if args.jobs is not None:
        overrides["jobs"] = int(args.jobs)
    if args.threads is not None:
        overrides["threads"] = int(args.threads)
    if args.resume:
        overrides["resume"] = True
    if overrides:
        cfg = dataclasses.replace(cfg, **overrides)

    outdir = Path(cfg.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "tbnanopipe.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    try:
        if not cfg.samples:
            raise ValueError(f"No samples configured in {args.config}")

        if args.dry_run:
            orchestrator = SampleOrchestrator(cfg)
            for sample in cfg.samples:
                orchestrator.validate(sample)
                print(f"Planned stages for sample {sample.sample_id}:")
                _print_plan(orchestrator.plan(sample))
            print(f"Planned batch summary: {outdir / 'batch_summary.json'}")
            return 0

        batch = run_batch(cfg, progress=not args.no_progress)
        for row in batch["samples"]:
            if row["status"] == "ok":
                print(f"{row['sample_id']}\tok\t{row['final_records']} final records")
            else:
                print(f"{row['sample_id']}\tFAILED at {row['stage']}: {row['error']}")
        print(str(outdir / "batch_summary.json"))
        return 0 if batch["n_failed"] == 0 else 1
    except Exception as e:
        return _handle_error(e, log_path=None if args.dry_run else log_path)


def cmd_normalize(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=None)
    try:
        require_resource("input VCF", args.vcf)
        normalized = normalize_variants(read_variant_set(args.vcf))
        write_variant_set(normalized, args.out)
        msg = f"{len(normalized)} normalized records -> {args.out}"
        if args.pass_snps:
            snps = select_pass_snps(normalized)
            write_variant_set(snps, args.pass_snps)
            msg += f"; {len(snps)} PASS SNPs -> {args.pass_snps}"
        print(msg)
        return 0
    except Exception as e:
        return _handle_error(e)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "doctor":
        return cmd_doctor(args)
    if args.cmd == "run":
        return cmd_run(args)
    if args.cmd == "batch":
        return cmd_batch(args)
    if args.cmd == "normalize":
        return cmd_normalize(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
