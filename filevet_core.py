# filevet_core.py
# FILEVET CORE ENGINE
# Version: 1.0.0

"""
FILEVET CORE ENGINE
===================
A bounded-concurrency file integrity checker.

Every file is handed to an external verification tool (anything that prints
diagnostics for a broken file, e.g. ``ffmpeg -v error``). Files with output are
flagged, identical contents are grouped by hash, and flagged files can be
moved to quarantine or deleted with a per-file outcome trail.

PIPELINE:
- TaskQueue: FIFO backlog of FileTask
- Scheduler: at most N verifier processes in flight, non-blocking polling
- ResultAggregator: single consumer of finished results
- render_progress: pure render of percent + rolling window
- find_duplicate_groups: hash groups with two or more members
- RemediationEngine: confirm -> act -> done state machine
- build_report: uniform {type, status, detail, path} records
"""

import os
import csv
import shlex
import hashlib
import shutil
import threading
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor, Future
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, List, Tuple, Any, Callable, Iterable
from datetime import datetime

# =========================================================
# CONSTANTS
# =========================================================

# Hash read buffer
HASH_BUFFER_SIZE = 65536

# Rolling window of most-recent outcomes shown to the user
ROLLING_WINDOW_SIZE = 10

# Controller loop cadence (seconds)
POLL_INTERVAL = 0.1

# Placeholder substituted with the file path in the command template
FILE_PATH_PLACEHOLDER = "{filePath}"

# Default Configuration
DEFAULT_COMMAND_TEMPLATE = 'ffmpeg -v error -i "{filePath}" -f null -'
DEFAULT_HASH_ALGORITHM = "md5"
DEFAULT_QUARANTINE_DIR = str(Path.cwd() / "quarantine")
DEFAULT_LOG_FILE = "filevet_activity.log"
DEFAULT_REPORT_FILE = "filevet_report.csv"
DEFAULT_EXTENSIONS = [".mp4", ".mkv", ".avi", ".mov", ".mp3", ".flac", ".wav"]

# Activity log retained in memory for UI polling
LOG_BUFFER_SIZE = 50000

REPORT_FIELDS = ["Type", "Status", "Detail", "Path"]


def default_max_concurrent() -> int:
    """Leave one core for the controller and the UI."""
    return clamp_concurrency((os.cpu_count() or 1) - 1)


def clamp_concurrency(value: int) -> int:
    """Concurrency cap is never below 1, so the pipeline always progresses."""
    try:
        value = int(value)
    except (TypeError, ValueError):
        return 1
    return max(1, value)


# =========================================================
# ERRORS
# =========================================================
class FileVetError(Exception):
    """Base class for every filevet failure."""


class InvocationFault(FileVetError):
    """The verifier process could not be started."""


class HashFault(FileVetError):
    """The content hash of a file could not be computed."""


class RemediationFault(FileVetError):
    """A move or delete failed for one file."""


class ConfigFault(FileVetError):
    """Unusable settings. Fatal before the pipeline starts."""


# =========================================================
# DATA MODEL
# =========================================================
class TaskState(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Monotonic lifecycle: no state is revisited
_LEGAL_TRANSITIONS = {
    (None, TaskState.QUEUED),
    (TaskState.QUEUED, TaskState.RUNNING),
    (TaskState.RUNNING, TaskState.COMPLETED),
    (TaskState.RUNNING, TaskState.FAILED),
}


class RemediationMode(Enum):
    MOVE = "move"
    DELETE = "delete"
    NONE = "none"


class RemediationAction(Enum):
    MOVED = "Moved"
    DELETED = "Deleted"
    SKIPPED = "Skipped"
    FAILED = "Failed"


class RemediationState(Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    ACTING = "acting"
    DONE = "done"


@dataclass(frozen=True)
class FileTask:
    """One file to verify. ``sequence`` is its discovery position."""
    path: str
    sequence: int


@dataclass(frozen=True)
class AnalysisResult:
    """Verifier outcome for one file. Flagged iff the diagnostic is non-empty."""
    path: str
    is_flagged: bool
    diagnostic: str = ""
    content_hash: Optional[str] = None
    hash_error: Optional[str] = None


@dataclass(frozen=True)
class FlaggedFile:
    path: str
    diagnostic: str
    sequence: int = 0


@dataclass(frozen=True)
class DuplicateGroup:
    """Two or more files sharing a content hash."""
    content_hash: str
    paths: Tuple[str, ...]

    @property
    def count(self) -> int:
        return len(self.paths)


@dataclass(frozen=True)
class RemediationOutcome:
    path: str
    action: RemediationAction
    detail: str = ""


@dataclass(frozen=True)
class ReportRecord:
    type: str
    status: str
    detail: str
    path: str

    def as_row(self) -> Dict[str, str]:
        return {
            "Type": self.type,
            "Status": self.status,
            "Detail": self.detail,
            "Path": self.path,
        }


@dataclass(frozen=True)
class ProgressLine:
    flagged: bool
    display_path: str


@dataclass(frozen=True)
class ProgressFrame:
    percent: float
    lines: Tuple[ProgressLine, ...] = ()


# =========================================================
# CONFIGURATION
# =========================================================
@dataclass
class FileVetConfig:
    """
    Settings for one run.

    Args:
        command_template: Verifier command line containing ``{filePath}``
        max_concurrent: Maximum verifier processes in flight (clamped to >= 1)
        detect_duplicates: Hash every file and report duplicate groups
        hash_algorithm: Any name accepted by ``hashlib.new``
        mode: What to do with flagged files after a clean drain
        quarantine_dir: Destination for moved files
        extensions: Extension allow-list used by discovery
        log_file: Activity log path (None disables the file log)
        report_file: CSV report path
    """
    command_template: str = DEFAULT_COMMAND_TEMPLATE
    max_concurrent: int = field(default_factory=default_max_concurrent)
    detect_duplicates: bool = False
    hash_algorithm: str = DEFAULT_HASH_ALGORITHM
    mode: RemediationMode = RemediationMode.MOVE
    quarantine_dir: str = DEFAULT_QUARANTINE_DIR
    extensions: List[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    log_file: Optional[str] = DEFAULT_LOG_FILE
    report_file: str = DEFAULT_REPORT_FILE

    def validate(self) -> "FileVetConfig":
        """
        Reject settings the pipeline cannot run with.

        Raises:
            ConfigFault: On the first unusable setting
        """
        if not self.command_template or not self.command_template.strip():
            raise ConfigFault("Command template is empty")
        if FILE_PATH_PLACEHOLDER not in self.command_template:
            raise ConfigFault(f"Command template must contain {FILE_PATH_PLACEHOLDER}")
        try:
            split_command(self.command_template)
        except ValueError as e:
            raise ConfigFault(f"Command template cannot be parsed: {e}") from e

        if isinstance(self.max_concurrent, bool) or not isinstance(self.max_concurrent, int):
            raise ConfigFault(f"max_concurrent must be an integer, got {self.max_concurrent!r}")
        self.max_concurrent = clamp_concurrency(self.max_concurrent)

        if self.detect_duplicates:
            try:
                hashlib.new(self.hash_algorithm)
            except (ValueError, TypeError) as e:
                raise ConfigFault(f"Unknown hash algorithm: {self.hash_algorithm}") from e

        if not isinstance(self.mode, RemediationMode):
            try:
                self.mode = RemediationMode(str(self.mode).lower())
            except ValueError as e:
                raise ConfigFault(f"Unknown remediation action: {self.mode}") from e

        if self.mode is RemediationMode.MOVE:
            if not self.quarantine_dir:
                raise ConfigFault("Quarantine directory is required for move")
            if Path(self.quarantine_dir).is_file():
                raise ConfigFault(f"Quarantine path is a file: {self.quarantine_dir}")

        self.extensions = normalize_extensions(self.extensions)
        return self


def normalize_extensions(extensions: Optional[Iterable[str]]) -> List[str]:
    """Lower-case, dot-prefixed, de-duplicated extension list."""
    result = []
    for ext in extensions or []:
        ext = ext.strip().lower()
        if not ext:
            continue
        if not ext.startswith("."):
            ext = "." + ext
        if ext not in result:
            result.append(ext)
    return result


# =========================================================
# DISCOVERY
# =========================================================
def discover_files(root: str, extensions: Optional[List[str]] = None) -> List[str]:
    """
    Recursively list files under ``root`` matching the extension allow-list.

    Args:
        root: Directory to walk
        extensions: Allowed extensions (empty or None accepts everything)

    Returns:
        Sorted list of paths (discovery order)
    """
    allowed = normalize_extensions(extensions)
    found = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            if allowed and Path(name).suffix.lower() not in allowed:
                continue
            found.append(os.path.join(dirpath, name))
    return found


def load_item_list(path: str) -> List[str]:
    """Load file paths from a TXT (one per line) or CSV (first column) list."""
    p = Path(path)
    items = []
    if p.suffix.lower() == ".csv":
        with open(p, "r", encoding="utf-8", newline="") as f:
            for row in csv.reader(f):
                if row and row[0].strip():
                    items.append(row[0].strip())
    else:
        items = [
            line.strip()
            for line in p.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]
    return items


# =========================================================
# TASK QUEUE
# =========================================================
class TaskQueue:
    """FIFO backlog of tasks not yet dispatched."""

    def __init__(self):
        self._tasks = deque()

    def enqueue(self, tasks: Iterable[FileTask]):
        self._tasks.extend(tasks)

    def dequeue_next(self) -> Optional[FileTask]:
        if not self._tasks:
            return None
        return self._tasks.popleft()

    def remaining(self) -> int:
        return len(self._tasks)

    def clear(self) -> List[FileTask]:
        """Drop the backlog and return what was dropped."""
        dropped = list(self._tasks)
        self._tasks.clear()
        return dropped


# =========================================================
# VERIFIER INVOKER
# =========================================================
def compute_file_hash(file_path: str, algorithm: str = DEFAULT_HASH_ALGORITHM) -> str:
    """
    Calculate the content hash of a file.

    Raises:
        HashFault: File unreadable or algorithm unknown
    """
    try:
        digest = hashlib.new(algorithm)
        with open(file_path, "rb") as f:
            while chunk := f.read(HASH_BUFFER_SIZE):
                digest.update(chunk)
    except (OSError, ValueError) as e:
        raise HashFault(f"{algorithm} hash failed for {file_path}: {e}") from e
    return digest.hexdigest()


def split_command(command_template: str) -> List[str]:
    """Tokenize a command template the way the local shell would."""
    if os.name != "nt":
        return shlex.split(command_template)
    tokens = shlex.split(command_template, posix=False)
    return [t[1:-1] if len(t) >= 2 and t[0] == t[-1] == '"' else t for t in tokens]


class VerifierInvoker:
    """
    Runs the external verifier for one file.

    Called from worker threads. Live processes are tracked so cancellation can
    terminate them; after ``terminate_all`` no new process is launched.
    """

    def __init__(self, command_template: str, hash_algorithm: Optional[str] = None):
        self.command_template = command_template
        self.hash_algorithm = hash_algorithm
        self._tokens = split_command(command_template)
        self._stop_event = threading.Event()
        self._proc_lock = threading.Lock()
        self._processes: Dict[int, subprocess.Popen] = {}

    def build_command(self, file_path: str) -> List[str]:
        """Substitute the path per token so paths with spaces stay one argument."""
        return [token.replace(FILE_PATH_PLACEHOLDER, file_path) for token in self._tokens]

    def invoke(self, task: FileTask) -> AnalysisResult:
        """
        Verify one file.

        Raises:
            InvocationFault: The verifier could not be started
        """
        if self._stop_event.is_set():
            raise InvocationFault("Cancelled before launch")

        argv = self.build_command(task.path)
        try:
            proc = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
            )
        except (OSError, ValueError) as e:
            raise InvocationFault(f"Could not start verifier '{argv[0]}': {e}") from e

        with self._proc_lock:
            self._processes[task.sequence] = proc
            # terminate_all may have run between the launch check and here
            if self._stop_event.is_set():
                try:
                    proc.terminate()
                except OSError:
                    pass
        try:
            stdout, stderr = proc.communicate()
        finally:
            with self._proc_lock:
                self._processes.pop(task.sequence, None)

        diagnostic = "\n".join(part.strip() for part in (stderr, stdout) if part and part.strip())

        content_hash = None
        hash_error = None
        if self.hash_algorithm:
            try:
                content_hash = compute_file_hash(task.path, self.hash_algorithm)
            except HashFault as e:
                hash_error = str(e)

        return AnalysisResult(
            path=task.path,
            is_flagged=bool(diagnostic),
            diagnostic=diagnostic,
            content_hash=content_hash,
            hash_error=hash_error,
        )

    def terminate_all(self) -> int:
        """Stop launching and signal every live verifier. Returns the count signalled."""
        with self._proc_lock:
            self._stop_event.set()
            procs = list(self._processes.values())
        for proc in procs:
            try:
                proc.terminate()
            except OSError:
                # Already exited
                continue
        return len(procs)


class HashOnlyInvoker:
    """Content hashing without a verifier; nothing is ever flagged."""

    def __init__(self, hash_algorithm: str = DEFAULT_HASH_ALGORITHM):
        self.hash_algorithm = hash_algorithm
        self._stop_event = threading.Event()

    def invoke(self, task: FileTask) -> AnalysisResult:
        if self._stop_event.is_set():
            raise InvocationFault("Cancelled before launch")
        try:
            content_hash = compute_file_hash(task.path, self.hash_algorithm)
        except HashFault as e:
            return AnalysisResult(path=task.path, is_flagged=False, hash_error=str(e))
        return AnalysisResult(path=task.path, is_flagged=False, content_hash=content_hash)

    def terminate_all(self) -> int:
        self._stop_event.set()
        return 0


# =========================================================
# SCHEDULER
# =========================================================
class Scheduler:
    """
    Admission-controlled dispatch of verification tasks.

    ARCHITECTURAL GUARANTEES:
    - Never more than ``max_concurrent`` tasks RUNNING
    - ``tick`` and ``poll_completions`` never block
    - Only the controller thread calls into the scheduler; workers touch
      nothing but their own Future
    """

    def __init__(self, invoker, max_concurrent: int, queue: Optional[TaskQueue] = None):
        self.invoker = invoker
        self.max_concurrent = clamp_concurrency(max_concurrent)
        self.queue = queue if queue is not None else TaskQueue()
        self.executor = ThreadPoolExecutor(
            max_workers=self.max_concurrent, thread_name_prefix="filevet-verify"
        )
        self._running: Dict[int, Tuple[FileTask, Future]] = {}
        self._states: Dict[int, TaskState] = {}
        self.cancelled = False
        self.peak_running = 0

    @property
    def running_count(self) -> int:
        return len(self._running)

    def state_of(self, sequence: int) -> Optional[TaskState]:
        return self._states.get(sequence)

    def states(self) -> Dict[int, TaskState]:
        return dict(self._states)

    def _transition(self, task: FileTask, new_state: TaskState):
        current = self._states.get(task.sequence)
        if (current, new_state) not in _LEGAL_TRANSITIONS:
            raise FileVetError(
                f"Illegal transition for {task.path}: {current} -> {new_state}"
            )
        self._states[task.sequence] = new_state

    def load(self, tasks: Iterable[FileTask]):
        tasks = list(tasks)
        for task in tasks:
            self._transition(task, TaskState.QUEUED)
        self.queue.enqueue(tasks)

    def tick(self) -> int:
        """
        Dispatch queued tasks while there is room under the cap.

        Returns:
            Number of tasks dispatched this tick
        """
        if self.cancelled:
            return 0

        dispatched = 0
        while self.running_count < self.max_concurrent:
            task = self.queue.dequeue_next()
            if task is None:
                break
            self._transition(task, TaskState.RUNNING)
            future = self.executor.submit(self.invoker.invoke, task)
            self._running[task.sequence] = (task, future)
            dispatched += 1

        self.peak_running = max(self.peak_running, self.running_count)
        return dispatched

    def poll_completions(self) -> List[Tuple[FileTask, AnalysisResult]]:
        """
        Collect tasks that finished since the last poll.

        Returns:
            (task, result) pairs in discovery order. Invocation faults come back
            as FAILED tasks with a flagged result carrying the fault text.
        """
        if self.cancelled:
            return []

        finished = sorted(
            (seq for seq, (_, future) in self._running.items() if future.done()),
        )
        completions = []
        for seq in finished:
            task, future = self._running.pop(seq)
            try:
                result = future.result()
            except Exception as e:
                self._transition(task, TaskState.FAILED)
                result = AnalysisResult(
                    path=task.path,
                    is_flagged=True,
                    diagnostic=f"{type(e).__name__}: {e}",
                )
            else:
                self._transition(task, TaskState.COMPLETED)
            completions.append((task, result))
        return completions

    def is_drained(self) -> bool:
        return self.queue.remaining() == 0 and self.running_count == 0

    def cancel_all(self) -> int:
        """
        Terminal stop: drop the backlog, signal in-flight verifiers.

        Returns:
            Number of queued tasks dropped without dispatch
        """
        self.cancelled = True
        dropped = self.queue.clear()
        self.invoker.terminate_all()
        for _, future in self._running.values():
            future.cancel()
        self.executor.shutdown(wait=False, cancel_futures=True)
        return len(dropped)

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait, cancel_futures=True)


# =========================================================
# RESULT AGGREGATOR
# =========================================================
class ResultAggregator:
    """
    Single consumer of finished results.

    Applying a result twice is a no-op; ``completed_count`` grows by exactly one
    per distinct task.
    """

    def __init__(self, total_tasks: int, window_size: int = ROLLING_WINDOW_SIZE,
                 log: Optional[Callable[[str, str], None]] = None):
        self.total_tasks = total_tasks
        self.completed_count = 0
        self.recent = deque(maxlen=window_size)
        self._log = log or (lambda message, level="info": None)
        self._applied = set()
        self._flagged: List[FlaggedFile] = []
        self._hashes: Dict[str, List[Tuple[int, str]]] = {}

    def apply(self, task: FileTask, result: AnalysisResult) -> bool:
        """
        Record one finished task.

        Returns:
            False if this task was already aggregated (nothing changes)
        """
        if task.sequence in self._applied:
            return False
        self._applied.add(task.sequence)

        if result.is_flagged:
            self._flagged.append(FlaggedFile(result.path, result.diagnostic, task.sequence))
            first_line = result.diagnostic.splitlines()[0] if result.diagnostic else ""
            self._log(f"✗ Flagged: {result.path} - {first_line}", "error")
        else:
            self._log(f"✓ OK: {result.path}", "success")

        if result.content_hash:
            self._hashes.setdefault(result.content_hash, []).append((task.sequence, result.path))
        elif result.hash_error:
            self._log(f"Hash skipped: {result.hash_error}", "warning")

        self.completed_count += 1
        self.recent.append(result)
        return True

    @property
    def flagged_files(self) -> List[FlaggedFile]:
        """Flagged files in discovery order."""
        return sorted(self._flagged, key=lambda f: f.sequence)

    @property
    def hash_index(self) -> Dict[str, List[str]]:
        """Hash -> paths, both groups and members in discovery order."""
        ordered = sorted(self._hashes.items(), key=lambda item: min(seq for seq, _ in item[1]))
        return {
            content_hash: [path for _, path in sorted(members)]
            for content_hash, members in ordered
        }


# =========================================================
# PROGRESS REPORTER
# =========================================================
def truncate_path(path: str, width: int) -> str:
    """
    Fit a path into ``width`` characters keeping its head and tail.

    ``/very/long/path/to/file.mkv`` at width 20 becomes ``/very/...h/to/file.mkv``.
    """
    if len(path) <= width:
        return path
    if width <= 3:
        return path[-width:] if width > 0 else ""
    head = max(0, (width - 3) // 2 - 2)
    tail = width - 3 - head
    return path[:head] + "..." + path[-tail:]


def render_progress(completed: int, total: int, window: Iterable[AnalysisResult],
                    width: int = 80) -> ProgressFrame:
    """Overall percentage plus the rolling window, most recent last. No side effects."""
    percent = 100.0 if total <= 0 else round(completed / total * 100, 2)
    lines = tuple(
        ProgressLine(flagged=result.is_flagged, display_path=truncate_path(result.path, width))
        for result in list(window)[-ROLLING_WINDOW_SIZE:]
    )
    return ProgressFrame(percent=percent, lines=lines)


# =========================================================
# DUPLICATE GROUPER
# =========================================================
def find_duplicate_groups(hash_index: Dict[str, List[str]]) -> List[DuplicateGroup]:
    """Groups with two or more members, in hash-index order."""
    return [
        DuplicateGroup(content_hash=content_hash, paths=tuple(paths))
        for content_hash, paths in hash_index.items()
        if len(paths) > 1
    ]


# =========================================================
# REMEDIATION ENGINE
# =========================================================
def unique_destination(directory: Path, name: str) -> Path:
    """First non-existing ``name``, ``name (1)``, ``name (2)``... in directory."""
    candidate = directory / name
    stem, suffix = Path(name).stem, Path(name).suffix
    n = 1
    while candidate.exists():
        candidate = directory / f"{stem} ({n}){suffix}"
        n += 1
    return candidate


class RemediationEngine:
    """
    Turns the flagged list into audited per-file actions.

    States: AWAITING_CONFIRMATION -> ACTING -> DONE, or straight to DONE when
    the user declines, the mode is NONE, or nothing is flagged. Each file is
    handled independently: one failure never stops the rest.
    """

    def __init__(self, flagged: List[FlaggedFile], mode: RemediationMode,
                 quarantine_dir: Optional[str] = None,
                 confirm: Optional[Callable[[str], bool]] = None,
                 log: Optional[Callable[[str, str], None]] = None):
        self.flagged = list(flagged)
        self.mode = mode
        self.quarantine_dir = Path(quarantine_dir) if quarantine_dir else None
        self.confirm = confirm
        self._log = log or (lambda message, level="info": None)
        self.state = RemediationState.AWAITING_CONFIRMATION
        self.outcomes: List[RemediationOutcome] = []

    def prompt_text(self) -> str:
        if self.mode is RemediationMode.MOVE:
            return f"Move {len(self.flagged)} flagged file(s) to {self.quarantine_dir}?"
        return f"Delete {len(self.flagged)} flagged file(s)?"

    def run(self) -> List[RemediationOutcome]:
        if self.state is not RemediationState.AWAITING_CONFIRMATION:
            raise FileVetError("Remediation already ran")

        if not self.flagged:
            self._finish()
            return self.outcomes

        if self.mode is RemediationMode.NONE:
            self._skip_all("Remediation disabled")
            return self.outcomes

        if self.confirm is None or not self.confirm(self.prompt_text()):
            self._log("Remediation declined by user", "warning")
            self._skip_all("Declined by user")
            return self.outcomes

        self.state = RemediationState.ACTING
        self._act()
        self._finish()
        return self.outcomes

    def _skip_all(self, reason: str):
        self.outcomes = [
            RemediationOutcome(f.path, RemediationAction.SKIPPED, reason) for f in self.flagged
        ]
        self._finish()

    def _finish(self):
        self.state = RemediationState.DONE

    def _act(self):
        if self.mode is RemediationMode.MOVE:
            try:
                self.quarantine_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                self._log(f"Quarantine directory unavailable: {e}", "error")
                self.outcomes = [
                    RemediationOutcome(f.path, RemediationAction.FAILED,
                                       f"Quarantine directory unavailable: {e}")
                    for f in self.flagged
                ]
                return

        for flagged in self.flagged:
            self.outcomes.append(self._remediate_one(flagged))

    def _remediate_one(self, flagged: FlaggedFile) -> RemediationOutcome:
        try:
            if self.mode is RemediationMode.MOVE:
                source = Path(flagged.path)
                if not source.exists():
                    raise RemediationFault(f"File not found: {flagged.path}")
                destination = unique_destination(self.quarantine_dir, source.name)
                shutil.move(str(source), str(destination))
                self._log(f"Moved: {flagged.path} -> {destination}", "success")
                return RemediationOutcome(flagged.path, RemediationAction.MOVED, str(destination))

            Path(flagged.path).unlink()
            self._log(f"Deleted: {flagged.path}", "success")
            return RemediationOutcome(flagged.path, RemediationAction.DELETED, flagged.diagnostic)
        except (OSError, RemediationFault) as e:
            self._log(f"✗ {self.mode.value} failed: {flagged.path} - {e}", "error")
            return RemediationOutcome(flagged.path, RemediationAction.FAILED, str(e))
        except Exception as e:
            # Malformed paths (e.g. embedded NUL) raise ValueError, not OSError
            detail = f"{type(e).__name__}: {e}"
            self._log(f"✗ {self.mode.value} failed: {flagged.path!r} - {detail}", "error")
            return RemediationOutcome(flagged.path, RemediationAction.FAILED, detail)


# =========================================================
# REPORT BUILDER
# =========================================================
def build_report(groups: List[DuplicateGroup],
                 outcomes: List[RemediationOutcome]) -> List[ReportRecord]:
    records = []
    for n, group in enumerate(groups, 1):
        for path in group.paths:
            records.append(ReportRecord("Duplicate", f"Group {n}", group.content_hash, path))
    for outcome in outcomes:
        records.append(ReportRecord("Corrupted", outcome.action.value, outcome.detail, outcome.path))
    return records


def write_report_csv(records: List[ReportRecord], path: str) -> Path:
    """Persist report records as a Type,Status,Detail,Path table."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, "w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=REPORT_FIELDS)
        writer.writeheader()
        for record in records:
            writer.writerow(record.as_row())
    return out


# =========================================================
# FILEVET CORE ENGINE CLASS
# =========================================================
class FileVetCore:
    """
    The controller for one analysis run.

    ARCHITECTURAL GUARANTEES:
    - One controller thread owns the aggregator, window and log
    - Front ends poll (``step``, ``get_stats``, ``get_logs``); the core never
      calls back into UI code
    - Remediation only after a clean, un-cancelled drain
    """

    def __init__(self, config: FileVetConfig, invoker=None):
        """
        Initialize the core.

        Args:
            config: Validated run settings
            invoker: Verifier collaborator (defaults to the subprocess invoker)

        Raises:
            ConfigFault: Settings are unusable
        """
        self.config = config.validate()
        hash_algorithm = self.config.hash_algorithm if self.config.detect_duplicates else None
        self.invoker = invoker or VerifierInvoker(self.config.command_template, hash_algorithm)

        # ===== UI BRIDGE =====
        self.debug_log = deque(maxlen=LOG_BUFFER_SIZE)
        self.log_file = Path(self.config.log_file) if self.config.log_file else None

        # ===== RUN STATE =====
        self.scheduler: Optional[Scheduler] = None
        self.aggregator: Optional[ResultAggregator] = None
        self.total_tasks = 0
        self.cancelled = False
        self.started_at: Optional[float] = None
        self.duplicate_groups: List[DuplicateGroup] = []
        self.outcomes: List[RemediationOutcome] = []

        self._log("Core Engine Initialized", "info")
        self._log(f"Max concurrent: {self.config.max_concurrent} | "
                  f"Duplicates: {'ON' if self.config.detect_duplicates else 'OFF'} | "
                  f"Action: {self.config.mode.value}", "info")

    def _log(self, message: str, level: str = "info"):
        """
        Append to the in-memory event stream and the activity log file.

        Args:
            message: Log message
            level: info, success, warning or error
        """
        timestamp = datetime.now().strftime("%H:%M:%S")
        formatted = f"[{timestamp}] [{level.upper()}] {message}"

        self.debug_log.append(formatted)

        if self.log_file:
            try:
                with open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(formatted + "\n")
            except OSError as e:
                self.debug_log.append(f"[{timestamp}] [ERROR] Log file write failed: {e}")
                self.log_file = None

    # ----- run -----

    def start(self, paths: List[str]) -> int:
        """
        Queue every path in discovery order.

        Returns:
            Total number of tasks
        """
        if self.scheduler is not None:
            raise FileVetError("Run already started")

        tasks = [FileTask(path=p, sequence=i) for i, p in enumerate(paths)]
        self.total_tasks = len(tasks)
        self.aggregator = ResultAggregator(self.total_tasks, log=self._log)
        self.scheduler = Scheduler(self.invoker, self.config.max_concurrent)
        self.scheduler.load(tasks)
        self.started_at = time.time()

        self._log(f"🚀 Run started: {self.total_tasks} files, "
                  f"{self.scheduler.max_concurrent} concurrent", "success")
        return self.total_tasks

    def step(self) -> bool:
        """
        One controller iteration: dispatch if room, then aggregate completions.

        Returns:
            True once the run is drained
        """
        if self.scheduler is None:
            raise FileVetError("Run not started")
        if self.cancelled:
            return False

        self.scheduler.tick()
        for task, result in self.scheduler.poll_completions():
            self.aggregator.apply(task, result)
        # Completions may have freed slots
        self.scheduler.tick()

        return self.scheduler.is_drained()

    def run(self, should_cancel: Optional[Callable[[], bool]] = None,
            on_frame: Optional[Callable[[ProgressFrame], None]] = None,
            poll_interval: float = POLL_INTERVAL, width: int = 80) -> bool:
        """
        Loop until drained or cancelled.

        Returns:
            True on a clean drain, False if cancelled
        """
        while True:
            if should_cancel and should_cancel():
                self.cancel()
                return False

            drained = self.step()
            if on_frame:
                on_frame(self.progress_frame(width))
            if drained:
                self._log(f"🏁 Run complete: {self.aggregator.completed_count}/"
                          f"{self.total_tasks} files, "
                          f"{len(self.aggregator.flagged_files)} flagged", "success")
                return True
            time.sleep(poll_interval)

    def cancel(self):
        """Stop admitting, signal in-flight verifiers, keep what was aggregated."""
        if self.cancelled or self.scheduler is None:
            self.cancelled = True
            return
        self.cancelled = True
        in_flight = self.scheduler.running_count
        dropped = self.scheduler.cancel_all()
        completed = self.aggregator.completed_count if self.aggregator else 0
        self._log(f"🛑 Cancelled: {completed}/{self.total_tasks} completed, "
                  f"{in_flight} in flight signalled, {dropped} queued dropped", "warning")

    def close(self):
        if self.scheduler and not self.cancelled:
            self.scheduler.shutdown(wait=True)

    @property
    def drained(self) -> bool:
        return (self.scheduler is not None and not self.cancelled
                and self.scheduler.is_drained())

    def _require_drained(self, what: str):
        if not self.drained:
            raise FileVetError(f"{what} requires a clean, un-cancelled drain")

    # ----- post-drain -----

    def find_duplicates(self) -> List[DuplicateGroup]:
        self._require_drained("Duplicate grouping")
        if not self.config.detect_duplicates:
            self.duplicate_groups = []
            return self.duplicate_groups
        self.duplicate_groups = find_duplicate_groups(self.aggregator.hash_index)
        self._log(f"Duplicate groups: {len(self.duplicate_groups)}", "info")
        return self.duplicate_groups

    def remediate(self, confirm: Callable[[str], bool]) -> List[RemediationOutcome]:
        self._require_drained("Remediation")
        engine = RemediationEngine(
            self.aggregator.flagged_files,
            self.config.mode,
            quarantine_dir=self.config.quarantine_dir,
            confirm=confirm,
            log=self._log,
        )
        self.outcomes = engine.run()
        return self.outcomes

    def build_report(self) -> List[ReportRecord]:
        self._require_drained("Report")
        return build_report(self.duplicate_groups, self.outcomes)

    # ----- polling hooks -----

    def progress_frame(self, width: int = 80) -> ProgressFrame:
        if self.aggregator is None:
            return ProgressFrame(percent=0.0)
        return render_progress(self.aggregator.completed_count, self.total_tasks,
                               self.aggregator.recent, width)

    def get_stats(self) -> Dict[str, Any]:
        """Current run statistics for front ends."""
        completed = self.aggregator.completed_count if self.aggregator else 0
        elapsed = time.time() - self.started_at if self.started_at else 0.0
        eta_seconds = 0.0
        if completed and elapsed and self.total_tasks > completed:
            eta_seconds = elapsed / completed * (self.total_tasks - completed)

        return {
            "total_files": self.total_tasks,
            "completed": completed,
            "flagged": len(self.aggregator.flagged_files) if self.aggregator else 0,
            "running": self.scheduler.running_count if self.scheduler else 0,
            "max_concurrent": self.config.max_concurrent,
            "queue_depth": self.scheduler.queue.remaining() if self.scheduler else 0,
            "percent_complete": self.progress_frame().percent,
            "elapsed_seconds": elapsed,
            "eta_seconds": eta_seconds,
            "cancelled": self.cancelled,
            "drained": self.drained,
        }

    def log(self, message: str, level: str = "info"):
        """Front-end entry point into the activity log."""
        self._log(message, level)

    def get_logs(self, from_index: int = 0) -> Tuple[List[str], int]:
        """
        Get log entries from a specific index.

        Returns:
            Tuple of (log_lines, new_index)
        """
        logs = list(self.debug_log)[from_index:]
        return logs, len(self.debug_log)
