"""Pipeline configuration.

Single-sample runs build a :class:`PipelineConfig` from CLI flags; batch runs
load it from YAML:

.. code-block:: yaml

    outdir: results
    jobs: 2
    threads: 4
    resume: true
    resources:
      reference: ref/H37Rv.fasta
      genbank: ref/H37Rv.gbk
      template: ref/template.vcf
      clair3_model: models/r941_prom_sup_g5014
      databases:
        antibiotics: db/antibiotics.vcf.gz
        who: db/who.vcf.gz
        lineages: db/lineages.vcf.gz
    samples:
      - id: S1
        bam: bams/S1.bam
      - id: S2
        reads: [fastq/S2.fastq.gz]

Relative paths are resolved against the directory holding the YAML file.
``samples`` may also name a TSV file with columns ``sample_id``, ``reads``
(comma-separated) and ``bam``.
"""

from __future__ import annotations

import csv
import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .annotation import DATABASE_TABLE, DatabaseCategory
from .consensus import DEFAULT_MIN_DEPTH, DEFAULT_MIN_QUAL
from .models import Sample
from .nanopore.calling import DEFAULT_CLAIR3_IMAGE

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """The configuration file is malformed."""


@dataclass(frozen=True)
class ToolPaths:
    """Executable names (or paths) of the external tools."""

    minimap2: str = "minimap2"
    samtools: str = "samtools"
    bcftools: str = "bcftools"
    whatshap: str = "whatshap"
    vcf_annotator: str = "vcf-annotator"
    run_clair3: str = "run_clair3.sh"
    docker: str = "docker"
    clair3_image: str = DEFAULT_CLAIR3_IMAGE


@dataclass(frozen=True)
class Resources:
    """Shared, read-only inputs."""

    reference: Optional[Path] = None
    genbank: Optional[Path] = None
    template: Optional[Path] = None
    clair3_model: Optional[str] = None
    databases: Dict[DatabaseCategory, Path] = field(default_factory=dict)

    def named(self) -> Dict[str, Optional[Path]]:
        """Resource name -> path, for validation and reporting."""
        out: Dict[str, Optional[Path]] = {
            "reference": self.reference,
            "genbank": self.genbank,
            "template": self.template,
        }
        for spec in DATABASE_TABLE:
            out[f"{spec.category.slug} database"] = self.databases.get(spec.category)
        return out


@dataclass(frozen=True)
class PipelineConfig:
    resources: Resources
    outdir: Path
    tools: ToolPaths = field(default_factory=ToolPaths)
    samples: Tuple[Sample, ...] = ()
    threads: int = 4
    jobs: int = 1
    resume: bool = False
    engine: str = "native"
    platform: str = "ont"
    haploid: str = "precise"
    minimap2_preset: str = "map-ont"
    min_depth: int = DEFAULT_MIN_DEPTH
    min_qual: float = DEFAULT_MIN_QUAL


def _resolve(base: Path, value: Optional[Any]) -> Optional[Path]:
    if value is None or value == "":
        return None
    p = Path(str(value)).expanduser()
    return p if p.is_absolute() else (base / p)


def _parse_databases(base: Path, raw: Mapping[str, Any]) -> Dict[DatabaseCategory, Path]:
    out: Dict[DatabaseCategory, Path] = {}
    for name, value in (raw or {}).items():
        out[DatabaseCategory.parse(name)] = _resolve(base, value)
    return out


def _parse_resources(base: Path, raw: Mapping[str, Any]) -> Resources:
    raw = raw or {}
    model = raw.get("clair3_model")
    if model is not None:
        # A bare model name refers to a model bundled in the Clair3 image.
        resolved = _resolve(base, model)
        model = str(resolved) if ("/" in str(model) or resolved.exists()) else str(model)
    return Resources(
        reference=_resolve(base, raw.get("reference")),
        genbank=_resolve(base, raw.get("genbank")),
        template=_resolve(base, raw.get("template")),
        clair3_model=model,
        databases=_parse_databases(base, raw.get("databases", {})),
    )


def _parse_tools(raw: Mapping[str, Any]) -> ToolPaths:
    raw = dict(raw or {})
    known = {f.name for f in dataclasses.fields(ToolPaths)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown tool keys: {', '.join(unknown)} (known: {', '.join(sorted(known))})")
    return ToolPaths(**{k: str(v) for k, v in raw.items()})


def _sample_from_mapping(base: Path, raw: Mapping[str, Any]) -> Sample:
    sample_id = raw.get("id") or raw.get("sample_id")
    if not sample_id:
        raise ConfigError(f"Sample entry without an id: {dict(raw)}")
    reads = raw.get("reads") or []
    if isinstance(reads, str):
        reads = [r for r in reads.split(",") if r.strip()]
    bam = _resolve(base, raw.get("bam"))
    if not reads and bam is None:
        raise ConfigError(f"Sample '{sample_id}' needs reads or a bam")
    return Sample(
        sample_id=str(sample_id),
        reads=tuple(_resolve(base, str(r).strip()) for r in reads),
        bam=bam,
    )


def load_samples(path: str | Path) -> List[Sample]:
    """Read a sample sheet (TSV with ``sample_id``, ``reads``, ``bam`` columns)."""
    path = Path(path)
    base = path.parent
    with open(path, "rt", encoding="utf-8", newline="") as fh:
        rows = list(csv.DictReader(fh, delimiter="\t"))
    samples = [_sample_from_mapping(base, {k: v for k, v in row.items() if v}) for row in rows]
    check_unique_ids(samples)
    return samples


def check_unique_ids(samples: List[Sample]) -> None:
    seen = set()
    for s in samples:
        if s.sample_id in seen:
            raise ConfigError(f"Duplicate sample id: {s.sample_id}")
        seen.add(s.sample_id)


def load_config(path: str | Path) -> PipelineConfig:
    """Load a YAML batch configuration."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    with open(path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration must be a mapping: {path}")

    base = path.parent.resolve()
    raw_samples = raw.get("samples") or []
    if isinstance(raw_samples, str):
        samples = load_samples(_resolve(base, raw_samples))
    else:
        samples = [_sample_from_mapping(base, s) for s in raw_samples]
        check_unique_ids(samples)

    cfg = PipelineConfig(
        resources=_parse_resources(base, raw.get("resources", {})),
        outdir=_resolve(base, raw.get("outdir", "tbnanopipe_out")),
        tools=_parse_tools(raw.get("tools", {})),
        samples=tuple(samples),
        threads=int(raw.get("threads", 4)),
        jobs=int(raw.get("jobs", 1)),
        resume=bool(raw.get("resume", False)),
        engine=str(raw.get("engine", "native")),
        platform=str(raw.get("platform", "ont")),
        haploid=str(raw.get("haploid", "precise")),
        minimap2_preset=str(raw.get("minimap2_preset", "map-ont")),
        min_depth=int(raw.get("min_depth", DEFAULT_MIN_DEPTH)),
        min_qual=float(raw.get("min_qual", DEFAULT_MIN_QUAL)),
    )
    logger.debug("Loaded configuration %s with %d sample(s)", path, len(cfg.samples))
    return cfg
