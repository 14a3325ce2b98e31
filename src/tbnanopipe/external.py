"""Execution of the external tools (minimap2/Clair3/whatshap/vcf-annotator/bcftools).

Every call is described by a :class:`ToolInvocation`: binary and arguments,
working directory, extra environment, stdout redirect and the files it must
produce. A :class:`ToolRunner` executes invocations; nothing changes shell or
process state between stages, and tests swap in a runner that fabricates the
outputs instead.

Failures raise :class:`ExternalCommandError` carrying the command line, the
exit code and the tail of stderr.

This package intentionally *does not* vendor heavyweight bioinformatics tooling.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


INSTALL_HINTS: Dict[str, str] = {
    "minimap2": "Ubuntu: sudo apt-get install -y minimap2\nConda/mamba: mamba install -c bioconda minimap2",
    "samtools": "Ubuntu: sudo apt-get install -y samtools\nConda/mamba: mamba install -c bioconda samtools",
    "bcftools": "Ubuntu: sudo apt-get install -y bcftools\nConda/mamba: mamba install -c bioconda bcftools",
    "tabix": "Ubuntu: sudo apt-get install -y tabix\nConda/mamba: mamba install -c bioconda tabix",
    "whatshap": "pip install whatshap\nConda/mamba: mamba install -c bioconda whatshap",
    "vcf-annotator": "Conda/mamba: mamba install -c bioconda vcf-annotator",
    "run_clair3.sh": (
        "Install Clair3 (recommended via Docker) or ensure 'run_clair3.sh' is in PATH.\n"
        "Upstream: https://github.com/HKU-BAL/Clair3"
    ),
    "docker": "Install Docker Desktop (Windows/Mac) or docker-ce (Linux), then ensure 'docker' works from your shell.",
}


class ExternalCommandError(RuntimeError):
    """Raised when an external command fails."""

    def __init__(
        self,
        message: str,
        *,
        cmd: Sequence[str],
        returncode: int,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.cmd = list(cmd)
        self.returncode = int(returncode)
        self.stdout = stdout
        self.stderr = stderr


def cmd_to_str(cmd: Sequence[Any]) -> str:
    return " ".join(shlex.quote(str(x)) for x in cmd)


def ensure_executable_in_path(exe: str, *, hint: Optional[str] = None) -> str:
    """Return the resolved path of ``exe``.

    Raises
    ------
    FileNotFoundError
        With the install hint for the tool (from :data:`INSTALL_HINTS` unless
        ``hint`` is given).
    """
    found = shutil.which(exe)
    if found is not None:
        return found
    msg = f"Required executable '{exe}' was not found in your PATH."
    hint = hint or INSTALL_HINTS.get(Path(exe).name)
    if hint:
        msg += "\n\n" + hint
    raise FileNotFoundError(msg)


def _environ(extra: Optional[Mapping[str, str]]) -> Optional[Dict[str, str]]:
    if extra is None:
        return None
    env = dict(os.environ)
    env.update({str(k): str(v) for k, v in extra.items()})
    return env


def _stderr_tail(data: Any, n: int = 3000) -> str:
    if not data:
        return "(empty)"
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else str(data)
    return text if len(text) <= n else "..." + text[-n:]


def _failure_message(title: str, calls: Sequence[Tuple[Sequence[str], int, Any]]) -> str:
    lines = [title, ""]
    for argv, returncode, stderr in calls:
        lines.append(f"Command (exit code {returncode}):")
        lines.append(f"  {cmd_to_str(argv)}")
        lines.append("STDERR (tail):")
        lines.extend(f"  {line}" for line in _stderr_tail(stderr).splitlines())
        lines.append("")
    return "\n".join(lines).rstrip()


def run_command(
    cmd: Sequence[Any],
    *,
    cwd: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
    check: bool = True,
    capture: bool = True,
    text: bool = True,
    stdout_path: Optional[str | Path] = None,
) -> subprocess.CompletedProcess:
    """Run one command and return the CompletedProcess.

    ``stdout_path`` sends stdout to a file (vcf-annotator only writes to
    stdout); stderr is still captured. With ``check`` a non-zero exit raises
    :class:`ExternalCommandError`.
    """
    argv = [str(x) for x in cmd]
    logger.debug("Running command: %s%s", cmd_to_str(argv), f" > {stdout_path}" if stdout_path else "")

    redirect = open(stdout_path, "wb") if stdout_path is not None else None
    try:
        cp = subprocess.run(
            argv,
            cwd=None if cwd is None else str(cwd),
            env=_environ(env),
            check=False,
            stdout=redirect if redirect is not None else (subprocess.PIPE if capture else None),
            stderr=subprocess.PIPE if (capture or redirect is not None) else None,
            text=text,
        )
    finally:
        if redirect is not None:
            redirect.close()

    if check and cp.returncode != 0:
        raise ExternalCommandError(
            _failure_message("External command failed.", [(argv, cp.returncode, cp.stderr)]),
            cmd=argv,
            returncode=cp.returncode,
            stdout=cp.stdout if isinstance(cp.stdout, str) else None,
            stderr=cp.stderr if isinstance(cp.stderr, str) else None,
        )
    return cp


@dataclass(frozen=True)
class ToolInvocation:
    """One external tool call, fully described.

    Attributes
    ----------
    stage:
        Pipeline stage the call belongs to (used for logging and by test runners).
    argv:
        Exact argument vector; ``argv[0]`` is the binary.
    cwd:
        Working directory, or None for the current one.
    env:
        Extra environment variables layered over ``os.environ``.
    stdout:
        File receiving the tool's stdout, for tools that only write there.
    inputs, outputs:
        Files the call reads and is expected to produce.
    """

    stage: str
    argv: Tuple[str, ...]
    cwd: Optional[Path] = None
    env: Optional[Mapping[str, str]] = None
    stdout: Optional[Path] = None
    inputs: Tuple[Path, ...] = ()
    outputs: Tuple[Path, ...] = ()

    @property
    def binary(self) -> str:
        return self.argv[0]

    def describe(self) -> str:
        s = cmd_to_str(self.argv)
        if self.stdout is not None:
            s += f" > {shlex.quote(str(self.stdout))}"
        return s


@dataclass
class ToolRunner:
    """Executes :class:`ToolInvocation` objects.

    ``check_path`` verifies the binary is installed before each call so that a
    missing tool fails with install hints instead of an OSError. ``executed``
    keeps the command lines in execution order.
    """

    check_path: bool = True
    executed: List[str] = field(default_factory=list)

    def _prepare(self, *invs: ToolInvocation) -> str:
        if self.check_path:
            for inv in invs:
                ensure_executable_in_path(inv.binary)
        desc = " | ".join(inv.describe() for inv in invs)
        self.executed.append(desc)
        return desc

    def run(self, inv: ToolInvocation) -> subprocess.CompletedProcess:
        self._prepare(inv)
        logger.info("[%s] %s", inv.stage, inv.describe())
        cp = run_command(inv.argv, cwd=inv.cwd, env=inv.env, stdout_path=inv.stdout)
        self._check_outputs(inv)
        return cp

    def pipe(self, producer: ToolInvocation, consumer: ToolInvocation) -> None:
        """Run ``producer | consumer``; both must exit 0."""
        desc = self._prepare(producer, consumer)
        logger.info("[%s] %s", consumer.stage, desc)

        cwd = None if consumer.cwd is None else str(consumer.cwd)
        # Producer stderr is spooled to a temporary file, consumer stderr is piped.
        with tempfile.TemporaryFile() as producer_err:
            first = subprocess.Popen(
                [str(a) for a in producer.argv],
                cwd=cwd,
                env=_environ(producer.env),
                stdout=subprocess.PIPE,
                stderr=producer_err,
            )
            sink = open(consumer.stdout, "wb") if consumer.stdout is not None else subprocess.DEVNULL
            try:
                second = subprocess.Popen(
                    [str(a) for a in consumer.argv],
                    cwd=cwd,
                    env=_environ(consumer.env),
                    stdin=first.stdout,
                    stdout=sink,
                    stderr=subprocess.PIPE,
                )
                assert first.stdout is not None
                first.stdout.close()  # producer gets SIGPIPE if the consumer exits early
                _, consumer_err = second.communicate()
                first.wait()
            finally:
                if consumer.stdout is not None:
                    sink.close()
            producer_err.seek(0)
            producer_stderr = producer_err.read()

        if first.returncode != 0 or second.returncode != 0:
            raise ExternalCommandError(
                _failure_message(
                    "External pipe failed.",
                    [
                        (producer.argv, first.returncode, producer_stderr),
                        (consumer.argv, second.returncode, consumer_err),
                    ],
                ),
                cmd=consumer.argv,
                returncode=second.returncode or first.returncode,
            )
        self._check_outputs(consumer)

    @staticmethod
    def _check_outputs(inv: ToolInvocation) -> None:
        missing = [str(p) for p in inv.outputs if not Path(p).exists()]
        if missing:
            raise ExternalCommandError(
                f"{inv.binary} exited 0 but did not produce: {', '.join(missing)}",
                cmd=inv.argv,
                returncode=0,
            )


# -----------------
# Docker
# -----------------

@dataclass(frozen=True)
class DockerMount:
    host_dir: Path
    container_dir: str
    read_only: bool = True

    def volume_arg(self) -> str:
        return f"{self.host_dir}:{self.container_dir}" + (":ro" if self.read_only else "")


def build_docker_mounts(
    host_paths: Iterable[str | Path],
    *,
    container_root: str = "/mnt/tbnanopipe",
) -> Tuple[List[DockerMount], Dict[Path, str]]:
    """Read-only mounts for the directories holding ``host_paths``.

    A path that is itself a directory is mounted as is. Returns the mounts and
    the host directory -> container directory mapping used by
    :func:`container_path`.
    """
    mapping: Dict[Path, str] = {}
    for p in host_paths:
        hp = Path(p).expanduser().resolve()
        d = hp if hp.is_dir() else hp.parent
        mapping.setdefault(d, f"{container_root}/in{len(mapping)}")
    return [DockerMount(host_dir=d, container_dir=c) for d, c in mapping.items()], mapping


def container_path(host_path: Path, dir_map: Mapping[Path, str]) -> str:
    """Translate a host file or mounted directory into its in-container path."""
    host_path = Path(host_path).expanduser().resolve()
    if host_path in dir_map:
        return dir_map[host_path]
    d = host_path.parent
    if d not in dir_map:
        raise KeyError(f"Directory {d} was not mounted into the container")
    return f"{dir_map[d]}/{host_path.name}"


def docker_command(
    *,
    image: str,
    argv: Sequence[str],
    mounts: Sequence[DockerMount],
    docker: str = "docker",
    workdir: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> List[str]:
    """``docker run --rm`` argv executing ``argv`` inside ``image``."""
    cmd: List[str] = [docker, "run", "--rm"]
    for m in mounts:
        cmd += ["-v", m.volume_arg()]
    for k, v in (env or {}).items():
        cmd += ["-e", f"{k}={v}"]
    if workdir:
        cmd += ["-w", workdir]
    return cmd + [image] + [str(a) for a in argv]
