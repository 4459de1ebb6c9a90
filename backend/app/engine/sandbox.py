"""
Sandbox Executors

Runs one generated code step in isolation and returns a
:class:`SandboxResult`.  Two backends share the same contract:

* :class:`ProcessSandboxExecutor`   - a supervised child process with
  rlimits (address space, CPU seconds, process count, file size), a
  private scratch directory, a stripped environment and a hard kill on
  timeout.  It runs under bubblewrap (``bwrap``): no network, a
  read-only view of the host filesystem and only the scratch directory
  writable.  Without ``bwrap`` it refuses to run unless
  ``sandbox_isolation`` is ``"none"``.
* :class:`ContainerSandboxExecutor` - ``docker run`` with
  ``--network=none``, memory / CPU / pids caps, a read-only root
  filesystem, a tmpfs ``/tmp`` and read-only dataset mounts.

Datasets are exposed to the code as files in the working directory
(process backend) or under ``/data`` (container backend); a
``datasets.json`` file maps each dataset name to its path.

Both backends accept an optional ``token`` so an in-flight run can be
killed from another thread via :meth:`SandboxExecutor.cancel`.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from backend.app.config import MEGABYTE, PlatformSettings
from backend.app.errors import RuntimeFailureError, ValidationError
from backend.app.schema.analysis_schema import CodeLanguage
from backend.app.schema.sandbox_schema import FileRef, SandboxResult

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n...[output truncated]"

PROGRAM_FILES = {
    CodeLanguage.PYTHON: "main.py",
    CodeLanguage.R: "main.R",
    CodeLanguage.SQL: "query.sql",
}
SQL_RUNNER_FILE = "_sql_runner.py"
DATASETS_FILE = "datasets.json"

# Applies the rlimits in the child and then execs the real command, so
# nothing runs between fork and exec in the (multi-threaded) parent.
LIMITS_BOOTSTRAP = (
    "import os, resource, sys\n"
    "for name, value in zip(('RLIMIT_AS', 'RLIMIT_CPU', 'RLIMIT_NPROC', 'RLIMIT_FSIZE'), sys.argv[1:5]):\n"
    "    resource.setrlimit(getattr(resource, name), (int(value), int(value)))\n"
    "os.execvp(sys.argv[5], sys.argv[5:])\n"
)

# Executes a single read-only query over every CSV dataset loaded into SQLite.
SQL_RUNNER_SOURCE = '''\
import json
import sqlite3
import sys
from pathlib import Path

import pandas as pd

datasets = json.loads(Path("datasets.json").read_text())
query = Path(sys.argv[1]).read_text()
conn = sqlite3.connect(":memory:")
for name, path in datasets.items():
    pd.read_csv(path).to_sql(name, conn, index=False)
rows = pd.read_sql_query(query, conn)
print(rows.to_json(orient="records", date_format="iso"))
'''


def truncate_output(data: bytes, limit: int) -> tuple[str, bool]:
    """Decode *data*, cutting it at *limit* bytes with a visible marker."""
    if len(data) <= limit:
        return data.decode("utf-8", errors="replace"), False
    return data[:limit].decode("utf-8", errors="replace") + TRUNCATION_MARKER, True


def table_name(name: str) -> str:
    """Dataset name → identifier usable as a file stem and SQL table."""
    return re.sub(r"\W+", "_", name).strip("_").lower() or "dataset"


def describe_failure(result: SandboxResult) -> str:
    """Human-readable reason for an unsuccessful run."""
    if result.timed_out:
        return "execution timed out"
    if result.exit_code in (-signal.SIGKILL, 128 + signal.SIGKILL, -signal.SIGXCPU, 137):
        return f"resource limit exceeded (exit code {result.exit_code})"
    tail = result.stderr.strip().splitlines()[-1:] if result.stderr.strip() else []
    detail = f": {tail[0]}" if tail else ""
    return f"exit code {result.exit_code}{detail}"


class SandboxExecutor(ABC):
    """Contract every sandbox backend honours towards the orchestrator."""

    def __init__(self, settings: Optional[PlatformSettings] = None) -> None:
        self.settings = settings or PlatformSettings()

    @abstractmethod
    def run_code(
        self,
        language: CodeLanguage | str,
        code: str,
        datasets: dict[str, str],
        timeout_seconds: float,
        token: str | None = None,
    ) -> SandboxResult:
        """Run *code* and return its result.

        Non-zero exits and timeouts are reported in the result;
        ``SandboxError`` is raised only when the runtime itself cannot
        be started.
        """

    def cancel(self, token: str) -> bool:
        """Kill the in-flight run registered under *token*, if any."""
        return False

    # ── Shared helpers ───────────────────────────────────────────

    @staticmethod
    def check_language(language: CodeLanguage | str) -> CodeLanguage:
        try:
            return CodeLanguage(str(getattr(language, "value", language)).lower())
        except ValueError:
            raise ValidationError(
                f"Language '{language}' is not supported by the sandbox."
            ) from None

    @staticmethod
    def _write_program(workdir: Path, language: CodeLanguage, code: str) -> Path:
        program = workdir / PROGRAM_FILES[language]
        program.write_text(code, encoding="utf-8")
        if language == CodeLanguage.SQL:
            (workdir / SQL_RUNNER_FILE).write_text(SQL_RUNNER_SOURCE, encoding="utf-8")
        return program

    @staticmethod
    def _collect_artifacts(workdir: Path, dest: Path, reserved: set[str]) -> list[FileRef]:
        """Move files the code produced out of *workdir* into *dest*."""
        artifacts: list[FileRef] = []
        for path in sorted(workdir.rglob("*")):
            rel = path.relative_to(workdir)
            if path.is_symlink() or not path.is_file() or rel.parts[0] in reserved:
                continue
            target = dest / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(path), target)
            artifacts.append(FileRef(
                name=str(rel), path=str(target), size_bytes=target.stat().st_size,
            ))
        return artifacts


class ProcessSandboxExecutor(SandboxExecutor):
    """Child-process sandbox with rlimits and a hard wall-clock kill."""

    def __init__(
        self,
        settings: Optional[PlatformSettings] = None,
        artifact_dir: str | Path | None = None,
        python_executable: str | None = None,
        rscript_executable: str = "Rscript",
        bwrap_executable: str = "bwrap",
    ) -> None:
        super().__init__(settings)
        self.artifact_dir = Path(artifact_dir or Path(tempfile.gettempdir()) / "analysis-artifacts")
        self.python_executable = python_executable or sys.executable
        self.rscript_executable = rscript_executable
        self.bwrap_executable = bwrap_executable
        if self.settings.sandbox_isolation == "none":
            logger.warning("Process sandbox runs without filesystem or network isolation.")
        self._running: dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def _command(self, language: CodeLanguage) -> list[str]:
        if language == CodeLanguage.PYTHON:
            return [self.python_executable, "-I", PROGRAM_FILES[language]]
        if language == CodeLanguage.R:
            return [self.rscript_executable, "--vanilla", PROGRAM_FILES[language]]
        return [self.python_executable, "-I", SQL_RUNNER_FILE, PROGRAM_FILES[language]]

    def _environment(self, workdir: Path) -> dict[str, str]:
        # Nothing from the parent environment leaks in, credentials included.
        return {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(workdir),
            "TMPDIR": str(workdir),
            "LANG": "C.UTF-8",
            "MPLBACKEND": "Agg",
            "PYTHONDONTWRITEBYTECODE": "1",
            "OMP_NUM_THREADS": "1",
            "OPENBLAS_NUM_THREADS": "1",
            "MKL_NUM_THREADS": "1",
        }

    def limited(self, command: list[str]) -> list[str]:
        """Prefix *command* with the rlimit bootstrap."""
        s = self.settings
        limits = [
            s.sandbox_memory_mb * MEGABYTE,
            s.sandbox_cpu_seconds,
            s.sandbox_max_processes,
            s.sandbox_max_output_bytes * 10,
        ]
        return [self.python_executable, "-I", "-c", LIMITS_BOOTSTRAP, *map(str, limits), *command]

    def confined(self, workdir: Path, command: list[str]) -> list[str]:
        """Wrap *command* in bubblewrap; only *workdir* stays writable."""
        if self.settings.sandbox_isolation == "none":
            return command
        bwrap = shutil.which(self.bwrap_executable)
        if bwrap is None:
            raise RuntimeFailureError(
                "Process sandbox needs bubblewrap (bwrap) for isolation; install it, "
                "use the container backend or set sandbox_isolation='none'."
            )
        return [
            bwrap,
            "--ro-bind", "/", "/",
            "--dev", "/dev",
            "--proc", "/proc",
            "--bind", str(workdir), str(workdir),
            "--unshare-net",
            "--unshare-pid",
            "--unshare-ipc",
            "--die-with-parent",
            "--chdir", str(workdir),
            "--",
            *command,
        ]

    def _check_runtime(self, language: CodeLanguage, command: list[str]) -> None:
        for executable in (self.python_executable, command[0]):
            if shutil.which(executable) is None:
                raise RuntimeFailureError(
                    f"{language.value} runtime is not installed: {executable}"
                )

    def _link_datasets(self, workdir: Path, datasets: dict[str, str]) -> dict[str, str]:
        mapping: dict[str, str] = {}
        for name, location in datasets.items():
            source = Path(location)
            if not source.is_file():
                logger.warning("Dataset '%s' not found at %s; skipping.", name, location)
                continue
            link = workdir / f"{table_name(name)}{source.suffix}"
            link.symlink_to(source.resolve())
            mapping[table_name(name)] = link.name
        (workdir / DATASETS_FILE).write_text(json.dumps(mapping), encoding="utf-8")
        return mapping

    def run_code(self, language, code, datasets, timeout_seconds, token=None) -> SandboxResult:
        lang = self.check_language(language)
        token = token or uuid.uuid4().hex
        limit = self.settings.sandbox_max_output_bytes
        command = self._command(lang)
        self._check_runtime(lang, command)
        workdir = Path(tempfile.mkdtemp(prefix="sandbox-"))
        try:
            argv = self.confined(workdir, self.limited(command))
            self._write_program(workdir, lang, code)
            links = self._link_datasets(workdir, datasets)
            reserved = {*PROGRAM_FILES.values(), SQL_RUNNER_FILE, DATASETS_FILE, *links.values()}

            with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
                started = time.monotonic()
                try:
                    proc = subprocess.Popen(
                        argv,
                        cwd=workdir,
                        env=self._environment(workdir),
                        stdin=subprocess.DEVNULL,
                        stdout=out,
                        stderr=err,
                        start_new_session=True,
                    )
                except FileNotFoundError as exc:
                    raise RuntimeFailureError(
                        f"{lang.value} runtime is not installed: {exc.filename}"
                    ) from exc

                with self._lock:
                    self._running[token] = proc
                timed_out = False
                try:
                    proc.wait(timeout=timeout_seconds)
                except subprocess.TimeoutExpired:
                    timed_out = True
                    self._kill(proc)
                    proc.wait()
                finally:
                    with self._lock:
                        self._running.pop(token, None)
                wall_ms = int((time.monotonic() - started) * 1000)

                out.seek(0)
                err.seek(0)
                stdout, out_truncated = truncate_output(out.read(limit + 1), limit)
                stderr, err_truncated = truncate_output(err.read(limit + 1), limit)

            artifacts = self._collect_artifacts(workdir, self.artifact_dir / token, reserved)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        exit_code = proc.returncode
        logger.info(
            "Sandbox run %s (%s): exit=%s timed_out=%s wall=%dms artifacts=%d",
            token, lang.value, exit_code, timed_out, wall_ms, len(artifacts),
        )
        return SandboxResult(
            success=exit_code == 0 and not timed_out,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            artifacts=artifacts,
            timed_out=timed_out,
            truncated=out_truncated or err_truncated,
            wall_time_ms=wall_ms,
        )

    def cancel(self, token: str) -> bool:
        with self._lock:
            proc = self._running.get(token)
        if proc is None:
            return False
        logger.info("Killing sandbox run %s.", token)
        self._kill(proc)
        return True

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            proc.kill()


class ContainerSandboxExecutor(SandboxExecutor):
    """Docker-backed sandbox; the container is killed on timeout or cancel."""

    WORKDIR = "/workspace"
    DATA_DIR = "/data"

    def __init__(
        self,
        settings: Optional[PlatformSettings] = None,
        artifact_dir: str | Path | None = None,
        docker_executable: str = "docker",
    ) -> None:
        super().__init__(settings)
        self.artifact_dir = Path(artifact_dir or Path(tempfile.gettempdir()) / "analysis-artifacts")
        self.docker = docker_executable
        self._running: dict[str, str] = {}
        self._lock = threading.Lock()

    def _command(self, language: CodeLanguage) -> list[str]:
        if language == CodeLanguage.PYTHON:
            return ["python", PROGRAM_FILES[language]]
        if language == CodeLanguage.R:
            return ["Rscript", "--vanilla", PROGRAM_FILES[language]]
        return ["python", SQL_RUNNER_FILE, PROGRAM_FILES[language]]

    def build_args(
        self,
        name: str,
        language: CodeLanguage,
        workdir: Path,
        datasets: dict[str, str],
    ) -> list[str]:
        s = self.settings
        args = [
            self.docker, "run", "--rm", "--name", name,
            f"--memory={s.sandbox_memory_mb}m",
            f"--memory-swap={s.sandbox_memory_mb}m",
            "--cpus=1",
            f"--pids-limit={s.sandbox_max_processes}",
            "--network=none",
            "--read-only",
            "--tmpfs", "/tmp:size=100M",
            "--security-opt", "no-new-privileges",
            "-v", f"{workdir}:{self.WORKDIR}:rw",
            "-w", self.WORKDIR,
        ]
        for name_, location in datasets.items():
            source = Path(location).resolve()
            args += ["-v", f"{source}:{self.DATA_DIR}/{table_name(name_)}{source.suffix}:ro"]
        return args + [s.sandbox_image, *self._command(language)]

    def run_code(self, language, code, datasets, timeout_seconds, token=None) -> SandboxResult:
        lang = self.check_language(language)
        token = token or uuid.uuid4().hex
        name = f"analysis-{token}"
        limit = self.settings.sandbox_max_output_bytes
        workdir = Path(tempfile.mkdtemp(prefix="sandbox-"))
        try:
            self._write_program(workdir, lang, code)
            mapping = {
                table_name(n): f"{self.DATA_DIR}/{table_name(n)}{Path(loc).suffix}"
                for n, loc in datasets.items()
            }
            (workdir / DATASETS_FILE).write_text(json.dumps(mapping), encoding="utf-8")
            reserved = {*PROGRAM_FILES.values(), SQL_RUNNER_FILE, DATASETS_FILE}

            started = time.monotonic()
            try:
                proc = subprocess.Popen(
                    self.build_args(name, lang, workdir, datasets),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise RuntimeFailureError("Container runtime (docker) is not installed.") from exc

            with self._lock:
                self._running[token] = name
            timed_out = False
            try:
                out, err = proc.communicate(timeout=timeout_seconds)
            except subprocess.TimeoutExpired:
                timed_out = True
                self._kill_container(name)
                out, err = proc.communicate()
            finally:
                with self._lock:
                    self._running.pop(token, None)
            wall_ms = int((time.monotonic() - started) * 1000)

            artifacts = self._collect_artifacts(workdir, self.artifact_dir / token, reserved)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        stdout, out_truncated = truncate_output(out or b"", limit)
        stderr, err_truncated = truncate_output(err or b"", limit)
        logger.info(
            "Container run %s (%s): exit=%s timed_out=%s wall=%dms",
            name, lang.value, proc.returncode, timed_out, wall_ms,
        )
        return SandboxResult(
            success=proc.returncode == 0 and not timed_out,
            stdout=stdout,
            stderr=stderr,
            exit_code=proc.returncode,
            artifacts=artifacts,
            timed_out=timed_out,
            truncated=out_truncated or err_truncated,
            wall_time_ms=wall_ms,
        )

    def cancel(self, token: str) -> bool:
        with self._lock:
            name = self._running.get(token)
        if name is None:
            return False
        self._kill_container(name)
        return True

    def _kill_container(self, name: str) -> None:
        logger.info("Killing container %s.", name)
        subprocess.run(
            [self.docker, "kill", name],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )


def create_sandbox(settings: PlatformSettings, **kwargs: Any) -> SandboxExecutor:
    """Build the executor selected by ``settings.sandbox_backend``."""
    if settings.sandbox_backend == "container":
        return ContainerSandboxExecutor(settings, **kwargs)
    return ProcessSandboxExecutor(settings, **kwargs)
