"""
Tests for the sandbox executors.

The process backend is exercised with real child processes running the
current interpreter, unconfined unless bubblewrap is usable on the host;
the container backend is only checked for the ``docker run`` arguments
it builds.
"""

from __future__ import annotations

import json
import shutil
import signal
import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from backend.app.config import PlatformSettings
from backend.app.engine.sandbox import (
    LIMITS_BOOTSTRAP,
    TRUNCATION_MARKER,
    ContainerSandboxExecutor,
    ProcessSandboxExecutor,
    SandboxExecutor,
    create_sandbox,
    describe_failure,
    table_name,
    truncate_output,
)
from backend.app.errors import RuntimeFailureError, ValidationError
from backend.app.schema.analysis_schema import CodeLanguage
from backend.app.schema.sandbox_schema import SandboxResult


def _bwrap_usable() -> bool:
    bwrap = shutil.which("bwrap")
    if bwrap is None:
        return False
    check = subprocess.run(
        [bwrap, "--ro-bind", "/", "/", "--unshare-net", "true"],
        capture_output=True,
        check=False,
    )
    return check.returncode == 0


needs_bwrap = pytest.mark.skipif(not _bwrap_usable(), reason="bubblewrap not usable on this host")


@pytest.fixture
def executor(tmp_path) -> ProcessSandboxExecutor:
    settings = PlatformSettings(_env_file=None, sandbox_isolation="none")
    return ProcessSandboxExecutor(settings, artifact_dir=tmp_path / "artifacts")


@pytest.fixture
def confined_executor(tmp_path) -> ProcessSandboxExecutor:
    return ProcessSandboxExecutor(PlatformSettings(_env_file=None), artifact_dir=tmp_path / "artifacts")


# Helpers

class TestHelpers:
    def test_truncate_output_under_limit(self):
        assert truncate_output(b"hello", 10) == ("hello", False)

    def test_truncate_output_over_limit(self):
        text, truncated = truncate_output(b"x" * 20, 10)
        assert truncated is True
        assert text == "x" * 10 + TRUNCATION_MARKER

    def test_truncate_output_replaces_bad_bytes(self):
        text, _ = truncate_output(b"ok\xff", 10)
        assert text.startswith("ok")

    @pytest.mark.parametrize("name,expected", [
        ("orders", "orders"),
        ("Q3 Sales-Report", "q3_sales_report"),
        ("  spaced  ", "spaced"),
        ("***", "dataset"),
    ])
    def test_table_name(self, name, expected):
        assert table_name(name) == expected

    def test_describe_timeout(self):
        result = SandboxResult(success=False, exit_code=-9, timed_out=True)
        assert describe_failure(result) == "execution timed out"

    def test_describe_killed(self):
        result = SandboxResult(success=False, exit_code=-signal.SIGKILL)
        assert describe_failure(result).startswith("resource limit exceeded")

    def test_describe_stderr_tail(self):
        result = SandboxResult(
            success=False, exit_code=1,
            stderr="Traceback (most recent call last):\nKeyError: 'amount'\n",
        )
        assert describe_failure(result) == "exit code 1: KeyError: 'amount'"

    def test_check_language(self):
        assert SandboxExecutor.check_language("PYTHON") == CodeLanguage.PYTHON
        assert SandboxExecutor.check_language(CodeLanguage.SQL) == CodeLanguage.SQL
        with pytest.raises(ValidationError):
            SandboxExecutor.check_language("cobol")


# Process backend

class TestProcessSandbox:
    def test_successful_run(self, executor):
        result = executor.run_code("python", "print('hello from the sandbox')", {}, 30)
        assert result.success is True
        assert result.exit_code == 0
        assert result.stdout.strip() == "hello from the sandbox"
        assert result.timed_out is False
        assert result.wall_time_ms is not None

    def test_non_zero_exit(self, executor):
        result = executor.run_code(CodeLanguage.PYTHON, "raise ValueError('bad column')", {}, 30)
        assert result.success is False
        assert result.exit_code == 1
        assert describe_failure(result) == "exit code 1: ValueError: bad column"

    def test_timeout_kills_the_process(self, executor):
        result = executor.run_code("python", "import time\ntime.sleep(30)", {}, 0.5)
        assert result.timed_out is True
        assert result.success is False
        assert result.wall_time_ms < 10_000

    def test_environment_is_stripped(self, executor, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")
        code = "import os\nprint(os.environ.get('OPENAI_API_KEY', 'missing'))"
        result = executor.run_code("python", code, {}, 30)
        assert result.stdout.strip() == "missing"

    def test_datasets_are_linked(self, executor, tmp_path):
        csv = tmp_path / "orders.csv"
        csv.write_text("region,amount\nnorth,10\n")
        code = (
            "import json\n"
            "paths = json.load(open('datasets.json'))\n"
            "print(json.dumps({name: open(p).readline().strip() for name, p in paths.items()}))\n"
        )
        result = executor.run_code("python", code, {"Orders": str(csv)}, 30)
        assert result.success, result.stderr
        assert json.loads(result.stdout) == {"orders": "region,amount"}

    def test_missing_dataset_is_skipped(self, executor, tmp_path):
        code = "import json\nprint(json.load(open('datasets.json')))"
        result = executor.run_code("python", code, {"ghost": str(tmp_path / "nope.csv")}, 30)
        assert result.stdout.strip() == "{}"

    def test_artifacts_are_collected(self, executor, tmp_path):
        code = "open('summary.txt', 'w').write('done')"
        result = executor.run_code("python", code, {}, 30, token="tok-1")
        assert [a.name for a in result.artifacts] == ["summary.txt"]
        artifact = Path(result.artifacts[0].path)
        assert artifact.parent == tmp_path / "artifacts" / "tok-1"
        assert artifact.read_text() == "done"

    def test_missing_runtime(self, settings):
        executor = ProcessSandboxExecutor(settings, python_executable="/nonexistent/python3")
        with pytest.raises(RuntimeFailureError, match="not installed"):
            executor.run_code("python", "print(1)", {}, 5)

    def test_cancel_unknown_token(self, executor):
        assert executor.cancel("never-started") is False

    def test_command_per_language(self, executor):
        assert executor._command(CodeLanguage.PYTHON) == [sys.executable, "-I", "main.py"]
        assert executor._command(CodeLanguage.R)[0] == "Rscript"
        assert executor._command(CodeLanguage.SQL)[-2:] == ["_sql_runner.py", "query.sql"]

    def test_limits_are_applied_by_the_bootstrap(self, executor):
        argv = executor.limited(["Rscript", "main.R"])
        assert argv[:4] == [sys.executable, "-I", "-c", LIMITS_BOOTSTRAP]
        assert argv[-2:] == ["Rscript", "main.R"]

    def test_child_runs_with_limits(self, executor):
        code = (
            "import json, resource\n"
            "print(json.dumps([resource.getrlimit(resource.RLIMIT_NPROC),\n"
            "                  resource.getrlimit(resource.RLIMIT_AS)]))\n"
        )
        result = executor.run_code("python", code, {}, 30)
        assert result.success, result.stderr
        nproc, address_space = json.loads(result.stdout)
        assert nproc == [50, 50]
        assert address_space == [512 * 1024 * 1024] * 2


# Process backend confinement

class TestProcessConfinement:
    def test_refuses_to_run_without_bwrap(self, tmp_path):
        executor = ProcessSandboxExecutor(
            PlatformSettings(_env_file=None), bwrap_executable="/nonexistent/bwrap",
        )
        with pytest.raises(RuntimeFailureError, match="bubblewrap"):
            executor.run_code("python", "print(1)", {}, 5)

    @patch("backend.app.engine.sandbox.shutil.which", return_value="/usr/bin/bwrap")
    def test_confined_command(self, _which, confined_executor, tmp_path):
        argv = confined_executor.confined(tmp_path, ["python3", "main.py"])
        assert argv[0] == "/usr/bin/bwrap"
        assert argv[1:4] == ["--ro-bind", "/", "/"]
        assert "--unshare-net" in argv
        assert argv[argv.index("--bind") + 1:argv.index("--bind") + 3] == [str(tmp_path)] * 2
        assert argv[-3:] == ["--", "python3", "main.py"]

    def test_unconfined_command_is_unchanged(self, executor, tmp_path):
        assert executor.confined(tmp_path, ["python3", "main.py"]) == ["python3", "main.py"]

    @needs_bwrap
    def test_write_outside_scratch_fails(self, confined_executor, tmp_path):
        target = tmp_path / "escaped.txt"
        code = f"from pathlib import Path\nPath({str(target)!r}).write_text('escaped')\n"
        result = confined_executor.run_code("python", code, {}, 30)
        assert result.success is False
        assert not target.exists()

    @needs_bwrap
    def test_network_is_unreachable(self, confined_executor):
        code = (
            "import socket\n"
            "try:\n"
            "    socket.create_connection(('1.1.1.1', 53), timeout=2)\n"
            "    print('connected')\n"
            "except OSError:\n"
            "    print('blocked')\n"
        )
        result = confined_executor.run_code("python", code, {}, 30)
        assert result.stdout.strip() == "blocked"

    @needs_bwrap
    def test_scratch_directory_stays_writable(self, confined_executor, tmp_path):
        csv = tmp_path / "orders.csv"
        csv.write_text("region,amount\nnorth,10\n")
        code = (
            "import json\n"
            "path = json.load(open('datasets.json'))['orders']\n"
            "open('copy.csv', 'w').write(open(path).read())\n"
        )
        result = confined_executor.run_code("python", code, {"orders": str(csv)}, 30)
        assert result.success, result.stderr
        assert [a.name for a in result.artifacts] == ["copy.csv"]


# Container backend

class TestContainerSandbox:
    def test_build_args_isolation_flags(self, tmp_path):
        settings = PlatformSettings(_env_file=None, sandbox_memory_mb=256, sandbox_max_processes=20)
        executor = ContainerSandboxExecutor(settings)
        csv = tmp_path / "orders.csv"
        csv.write_text("a\n1\n")

        args = executor.build_args("analysis-x", CodeLanguage.PYTHON, tmp_path, {"orders": str(csv)})

        assert args[:5] == ["docker", "run", "--rm", "--name", "analysis-x"]
        for flag in ("--network=none", "--read-only", "--memory=256m", "--pids-limit=20"):
            assert flag in args
        assert f"{csv.resolve()}:/data/orders.csv:ro" in args
        assert args[-3:] == ["analysis-sandbox", "python", "main.py"]

    def test_missing_docker(self, settings):
        executor = ContainerSandboxExecutor(settings, docker_executable="/nonexistent/docker")
        with pytest.raises(RuntimeFailureError, match="docker"):
            executor.run_code("python", "print(1)", {}, 5)

    @patch("backend.app.engine.sandbox.subprocess.run")
    def test_cancel_kills_running_container(self, mock_run, settings):
        executor = ContainerSandboxExecutor(settings)
        executor._running["tok"] = "analysis-tok"
        assert executor.cancel("tok") is True
        assert mock_run.call_args[0][0] == ["docker", "kill", "analysis-tok"]


class TestCreateSandbox:
    def test_default_backend(self, settings):
        assert isinstance(create_sandbox(settings), ContainerSandboxExecutor)

    def test_process_backend(self):
        settings = PlatformSettings(_env_file=None, sandbox_backend="process")
        assert isinstance(create_sandbox(settings), ProcessSandboxExecutor)

    def test_container_backend(self):
        settings = PlatformSettings(_env_file=None, sandbox_backend="container")
        assert isinstance(create_sandbox(settings), ContainerSandboxExecutor)
