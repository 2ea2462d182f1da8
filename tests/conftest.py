"""
Pytest configuration and fixtures
"""
import sys
import threading
import time
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from filevet_core import AnalysisResult, FileVetConfig, InvocationFault  # noqa: E402


class FakeInvoker:
    """
    In-process stand-in for the verifier.

    Args:
        diagnostics: path -> diagnostic text (missing paths are clean)
        hashes: path -> content hash
        faults: paths whose invocation raises InvocationFault
        delays: path -> seconds to sleep before answering
        block_from: tasks with sequence >= this wait on ``gate``
    """

    def __init__(self, diagnostics=None, hashes=None, faults=None, delays=None,
                 block_from=None):
        self.diagnostics = diagnostics or {}
        self.hashes = hashes or {}
        self.faults = set(faults or ())
        self.delays = delays or {}
        self.block_from = block_from
        self.gate = threading.Event()
        self.terminated = False
        self.calls = []
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def invoke(self, task):
        with self._lock:
            self.calls.append(task.path)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.block_from is not None and task.sequence >= self.block_from:
                self.gate.wait(timeout=5)
            time.sleep(self.delays.get(task.path, 0))
            if task.path in self.faults:
                raise InvocationFault(f"Could not start verifier for {task.path}")
            diagnostic = self.diagnostics.get(task.path, "").strip()
            return AnalysisResult(
                path=task.path,
                is_flagged=bool(diagnostic),
                diagnostic=diagnostic,
                content_hash=self.hashes.get(task.path),
            )
        finally:
            with self._lock:
                self.active -= 1

    def terminate_all(self):
        self.terminated = True
        self.gate.set()
        return 0


@pytest.fixture
def fake_invoker_cls():
    return FakeInvoker


@pytest.fixture
def make_config(tmp_path):
    """Config with log, report and quarantine inside tmp_path."""

    def _make(**overrides):
        values = dict(
            command_template="verify {filePath}",
            max_concurrent=2,
            log_file=str(tmp_path / "activity.log"),
            report_file=str(tmp_path / "report.csv"),
            quarantine_dir=str(tmp_path / "quarantine"),
        )
        values.update(overrides)
        return FileVetConfig(**values)

    return _make


@pytest.fixture
def python_verifier():
    """Command template that echoes the file's contents to stderr."""
    code = "import sys; sys.stderr.write(open(sys.argv[1]).read())"
    return f'"{sys.executable}" -c "{code}" "{{filePath}}"'
