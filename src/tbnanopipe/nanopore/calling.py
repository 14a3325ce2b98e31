from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Dict, List, Optional

import pysam

from ..external import DockerMount, ToolInvocation, ToolRunner, build_docker_mounts, container_path, docker_command
from ..utils import ensure_outdir
from ..validation import ensure_bam_index, ensure_faidx, require_resource

logger = logging.getLogger(__name__)


CLAIR3_OUTPUT = "merge_output.vcf.gz"
DEFAULT_CLAIR3_IMAGE = "hkubal/clair3:latest"

_CONTAINER_OUT = "/mnt/tbnanopipe/out"
_CONTAINER_MODELS = "/opt/models"

_HAPLOID_MODES = {"precise", "sensitive", "off"}


def _clair3_options(
    *,
    threads: int,
    platform: str,
    sample_id: str,
    haploid: str,
    extra_args: Optional[List[str]],
) -> List[str]:
    if haploid not in _HAPLOID_MODES:
        raise ValueError(f"haploid must be one of: {', '.join(sorted(_HAPLOID_MODES))}")
    opts = [
        f"--threads={int(threads)}",
        f"--platform={platform}",
        f"--sample_name={sample_id}",
        # Clair3 restricts calling to human chromosome names unless told otherwise.
        "--include_all_ctgs",
    ]
    if haploid != "off":
        opts.append(f"--haploid_{haploid}")
    return opts + list(map(str, extra_args or []))


def build_clair3_invocation(
    *,
    bam: Path,
    ref_fa: Path,
    outdir: Path,
    model: str,
    sample_id: str,
    threads: int = 4,
    platform: str = "ont",
    haploid: str = "precise",
    engine: str = "native",
    run_clair3: str = "run_clair3.sh",
    docker: str = "docker",
    docker_image: str = DEFAULT_CLAIR3_IMAGE,
    extra_args: Optional[List[str]] = None,
) -> ToolInvocation:
    """Build the Clair3 call, natively or inside the upstream Docker image.

    ``model`` is a model directory on the host. With ``engine="docker"`` it may
    also be the name of a model bundled in the image (``/opt/models/<name>``).
    """
    bam, ref_fa, outdir = Path(bam), Path(ref_fa), Path(outdir)
    opts = _clair3_options(
        threads=threads,
        platform=platform,
        sample_id=sample_id,
        haploid=haploid,
        extra_args=extra_args,
    )
    expected = outdir / CLAIR3_OUTPUT

    if engine == "native":
        argv = [
            run_clair3,
            f"--bam_fn={bam}",
            f"--ref_fn={ref_fa}",
            f"--model_path={model}",
            f"--output={outdir}",
        ] + opts
        return ToolInvocation(stage="call", argv=tuple(argv), inputs=(bam, ref_fa), outputs=(expected,))

    if engine == "docker":
        host_inputs = [bam, ref_fa]
        model_dir = Path(model).expanduser()
        if model_dir.is_dir():
            host_inputs.append(model_dir)
        mounts, dir_map = build_docker_mounts(host_inputs)
        mounts.append(DockerMount(host_dir=outdir.resolve(), container_dir=_CONTAINER_OUT, read_only=False))

        model_in_container = (
            container_path(model_dir, dir_map) if model_dir.is_dir() else f"{_CONTAINER_MODELS}/{model}"
        )
        argv = [
            "/opt/bin/run_clair3.sh",
            f"--bam_fn={container_path(bam, dir_map)}",
            f"--ref_fn={container_path(ref_fa, dir_map)}",
            f"--model_path={model_in_container}",
            f"--output={_CONTAINER_OUT}",
        ] + opts
        cmd = docker_command(image=docker_image, argv=argv, mounts=mounts, docker=docker)
        return ToolInvocation(stage="call", argv=tuple(cmd), inputs=(bam, ref_fa), outputs=(expected,))

    raise ValueError("engine must be one of: docker, native")


def call_variants(
    runner: ToolRunner,
    *,
    bam: str | Path,
    ref_fa: str | Path,
    workdir: str | Path,
    out_vcf: str | Path,
    model: str,
    sample_id: str,
    threads: int = 4,
    platform: str = "ont",
    haploid: str = "precise",
    engine: str = "native",
    run_clair3: str = "run_clair3.sh",
    docker: str = "docker",
    docker_image: str = DEFAULT_CLAIR3_IMAGE,
) -> Dict[str, object]:
    """Run Clair3 on one BAM and publish its merged VCF as ``out_vcf``.

    Returns
    -------
    dict
        Summary including the caller command and runtime.
    """
    t0 = time.time()
    bam = require_resource("alignment", bam)
    ref_fa = require_resource("reference", ref_fa)
    if engine == "native":
        require_resource("clair3 model", model)
    workdir = ensure_outdir(workdir)
    out_vcf = Path(out_vcf)

    ensure_bam_index(bam)
    ensure_faidx(ref_fa)

    inv = build_clair3_invocation(
        bam=bam,
        ref_fa=ref_fa,
        outdir=workdir,
        model=str(model),
        sample_id=sample_id,
        threads=threads,
        platform=platform,
        haploid=haploid,
        engine=engine,
        run_clair3=run_clair3,
        docker=docker,
        docker_image=docker_image,
    )
    logger.info("Calling variants with Clair3 (%s)", engine)
    runner.run(inv)

    merged = workdir / CLAIR3_OUTPUT
    shutil.copyfile(merged, out_vcf)
    tbi = Path(str(merged) + ".tbi")
    if tbi.exists():
        shutil.copyfile(tbi, str(out_vcf) + ".tbi")
    else:
        pysam.tabix_index(str(out_vcf), preset="vcf", force=True)

    return {
        "caller": "clair3",
        "engine": engine,
        "cmd": inv.describe(),
        "out_vcf": str(out_vcf),
        "runtime_seconds": float(time.time() - t0),
    }
