"""Environment self-checks.

This module powers the ``tbnanopipe doctor`` CLI command: the variant
processing itself is Python, but every sample needs minimap2/samtools, Clair3,
whatshap, vcf-annotator and bcftools. One command that pinpoints the missing
ones saves a failed run per tool.
"""

from __future__ import annotations

import logging
import platform
import shutil
from dataclasses import dataclass
from typing import Dict, Optional

from .config import ToolPaths
from .external import INSTALL_HINTS, ExternalCommandError, run_command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    name: str
    ok: bool
    detail: str
    howto: Optional[str] = None
    required: bool = True


def check_python() -> CheckResult:
    v = platform.python_version()
    return CheckResult(name="python", ok=True, detail=f"Python {v}")


def check_executable(name: str, exe: Optional[str] = None, *, required: bool = True) -> CheckResult:
    exe = exe or name
    p = shutil.which(exe)
    if p is None:
        return CheckResult(
            name=name,
            ok=False,
            detail=f"'{exe}' not found in PATH",
            howto=INSTALL_HINTS.get(name),
            required=required,
        )
    return CheckResult(name=name, ok=True, detail=p, required=required)


def check_docker(exe: str = "docker", *, required: bool = False) -> CheckResult:
    found = check_executable("docker", exe, required=required)
    if not found.ok:
        return found
    try:
        run_command([exe, "version"], check=True, capture=True, text=True)
    except (ExternalCommandError, OSError) as e:
        return CheckResult(
            name="docker",
            ok=False,
            detail=f"docker present but not usable: {e}",
            howto=(
                "Ensure the Docker daemon is running and you have permission to access it.\n"
                "On Linux, you may need to add your user to the 'docker' group or use sudo."
            ),
            required=required,
        )
    return CheckResult(name="docker", ok=True, detail="docker OK (client/server reachable)", required=required)


def collect_checks(tools: Optional[ToolPaths] = None, *, engine: str = "native") -> Dict[str, CheckResult]:
    """Run all checks and return a mapping name->result.

    With ``engine="docker"`` Clair3 is expected inside the container, so
    ``run_clair3.sh`` becomes optional and Docker required.
    """
    tools = tools or ToolPaths()
    docker_engine = engine == "docker"

    checks: Dict[str, CheckResult] = {}
    checks["python"] = check_python()
    checks["minimap2"] = check_executable("minimap2", tools.minimap2)
    checks["samtools"] = check_executable("samtools", tools.samtools)
    checks["bcftools"] = check_executable("bcftools", tools.bcftools)
    checks["tabix"] = check_executable("tabix", required=False)
    checks["whatshap"] = check_executable("whatshap", tools.whatshap)
    checks["vcf-annotator"] = check_executable("vcf-annotator", tools.vcf_annotator)
    checks["run_clair3.sh"] = check_executable("run_clair3.sh", tools.run_clair3, required=not docker_engine)
    checks["docker"] = check_docker(tools.docker, required=docker_engine)
    return checks
