#!/usr/bin/env python3
"""
filevet CLI Interface
=====================
Command-line front end for the filevet core.

Features:
- Live progress with a rolling window of recent outcomes
- Press q (or Ctrl+C) to cancel; nothing is remediated after a cancel
- Confirm-then-act remediation of flagged files
- CSV report and timestamped activity log
"""

import argparse
import os
import sys
import time
import signal
from pathlib import Path
from typing import Callable, Dict, List, Optional

from filevet_core import (
    ConfigFault,
    FileVetConfig,
    FileVetCore,
    HashOnlyInvoker,
    ProgressFrame,
    RemediationMode,
    DEFAULT_COMMAND_TEMPLATE,
    DEFAULT_HASH_ALGORITHM,
    DEFAULT_LOG_FILE,
    DEFAULT_QUARANTINE_DIR,
    DEFAULT_REPORT_FILE,
    DEFAULT_EXTENSIONS,
    POLL_INTERVAL,
    default_max_concurrent,
    discover_files,
    load_item_list,
    write_report_csv,
)

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

YES_ANSWERS = {"y", "yes"}
NO_ANSWERS = {"n", "no"}

SETTINGS_KEYS = {
    "command_template", "max_concurrent", "detect_duplicates", "hash_algorithm",
    "action", "quarantine_dir", "extensions", "log_file", "report_file",
}


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigFault(f"{key}: expected a boolean, got {value!r}")


def load_settings(settings_path: str) -> Dict[str, object]:
    """
    Load settings from a key=value file.

    Expects lines like:
        command_template=ffmpeg -v error -i "{filePath}" -f null -
        max_concurrent=4
        detect_duplicates=true
    Blank lines and lines starting with # are ignored.

    Raises:
        ConfigFault: Missing file, malformed line, unknown key or bad value
    """
    p = Path(settings_path)
    if not p.exists():
        raise ConfigFault(f"Settings file not found: {settings_path}")

    settings = {}
    for lineno, line in enumerate(p.read_text(encoding="utf-8").splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            raise ConfigFault(f"{settings_path}:{lineno}: expected key=value")
        key, _, val = line.partition("=")
        key = key.strip().lower()
        val = val.strip()
        if key not in SETTINGS_KEYS:
            raise ConfigFault(f"{settings_path}:{lineno}: unknown setting '{key}'")

        if key == "max_concurrent":
            try:
                settings[key] = int(val)
            except ValueError:
                raise ConfigFault(f"max_concurrent: expected an integer, got {val!r}")
        elif key == "detect_duplicates":
            settings[key] = _parse_bool(key, val)
        elif key == "extensions":
            settings[key] = [e.strip() for e in val.split(",") if e.strip()]
        else:
            settings[key] = val
    return settings


def build_config(args, settings: Optional[Dict[str, object]] = None) -> FileVetConfig:
    """Settings file first, command-line flags override."""
    settings = dict(settings or {})

    def pick(name, key=None, default=None):
        value = getattr(args, name, None)
        if value is not None:
            return value
        return settings.get(key or name, default)

    extensions = pick("extensions", default=list(DEFAULT_EXTENSIONS))
    if isinstance(extensions, str):
        extensions = [e.strip() for e in extensions.split(",") if e.strip()]

    detect = getattr(args, "duplicates", None)
    if detect is None:
        detect = settings.get("detect_duplicates", False)

    return FileVetConfig(
        command_template=pick("command", "command_template", DEFAULT_COMMAND_TEMPLATE),
        max_concurrent=pick("workers", "max_concurrent", default_max_concurrent()),
        detect_duplicates=bool(detect),
        hash_algorithm=pick("hash_algorithm", default=DEFAULT_HASH_ALGORITHM),
        mode=pick("action", default=RemediationMode.MOVE.value),
        quarantine_dir=pick("quarantine", "quarantine_dir", DEFAULT_QUARANTINE_DIR),
        extensions=extensions,
        log_file=pick("log", "log_file", DEFAULT_LOG_FILE),
        report_file=pick("report", "report_file", DEFAULT_REPORT_FILE),
    ).validate()


def ask_yes_no(prompt: str, input_fn: Callable[[str], str] = input,
               output: Callable[[str], None] = print) -> bool:
    """
    Ask until the answer is recognisably yes or no. There is no default.

    Closed input (EOF) counts as no: nothing is touched without an answer.
    """
    while True:
        try:
            answer = input_fn(f"{prompt} [y/n]: ").strip().lower()
        except EOFError:
            output("No input available, treating as 'n'.")
            return False
        if answer in YES_ANSWERS:
            return True
        if answer in NO_ANSWERS:
            return False
        output("Please answer 'y' or 'n'.")


class KeyWatcher:
    """
    Non-blocking single-key reader used to detect the cancel key.

    POSIX terminals are switched to cbreak mode while watching; Windows uses
    msvcrt. When stdin is not a terminal, no key is ever reported.
    """

    def __init__(self, stream=None):
        self.stream = stream or sys.stdin
        self._saved = None
        self._enabled = False

    def __enter__(self):
        try:
            self._enabled = self.stream.isatty()
        except (AttributeError, ValueError):
            self._enabled = False
        if self._enabled and os.name != "nt":
            import termios
            import tty
            fd = self.stream.fileno()
            self._saved = termios.tcgetattr(fd)
            tty.setcbreak(fd)
        return self

    def __exit__(self, *exc):
        if self._saved is not None:
            import termios
            termios.tcsetattr(self.stream.fileno(), termios.TCSADRAIN, self._saved)
            self._saved = None
        self._enabled = False
        return False

    def read_key(self) -> Optional[str]:
        if not self._enabled:
            return None
        if os.name == "nt":
            import msvcrt
            if msvcrt.kbhit():
                return msvcrt.getwch()
            return None
        import select
        ready, _, _ = select.select([self.stream], [], [], 0)
        if ready:
            # Unbuffered, so select keeps seeing every pending key
            data = os.read(self.stream.fileno(), 1)
            return data.decode("utf-8", errors="ignore") or None
        return None


class FileVetCLI:
    """Command-line interface for filevet."""

    def __init__(self, input_fn: Callable[[str], str] = input, install_signals: bool = True):
        self.core = None
        self.cancel_requested = False
        self.input_fn = input_fn
        self._printed_lines = 0
        self._watcher = None

        # Handle Ctrl+C by requesting a cancel; the controller loop acts on it
        if install_signals:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        if not self.cancel_requested:
            print("\n🛑 Cancel requested, stopping...")
        self.cancel_requested = True

    def _should_cancel(self) -> bool:
        if self._watcher is not None:
            key = self._watcher.read_key()
            if key and key.lower() == "q":
                self.cancel_requested = True
        return self.cancel_requested

    def _load_paths(self, args) -> List[str]:
        """Discovery from --root, or an explicit list from --items."""
        if args.items:
            p = Path(args.items)
            if not p.exists():
                print(f"❌ Error: File not found: {args.items}")
                sys.exit(EXIT_USAGE)
            return load_item_list(args.items)

        root = Path(args.root)
        if not root.is_dir():
            print(f"❌ Error: Not a directory: {args.root}")
            sys.exit(EXIT_USAGE)
        return discover_files(str(root), self.core.config.extensions if self.core else None)

    def _print_header(self):
        """Print CLI header."""
        print("=" * 70)
        print("🔎 filevet - File Integrity Checker")
        print("=" * 70)
        print()

    def _print_frame(self, frame: ProgressFrame):
        """Redraw the status block in place (ANSI escape codes)."""
        if self._printed_lines:
            print("\033[F" * self._printed_lines, end="")

        stats = self.core.get_stats()
        lines = [
            f"📊 Progress: {frame.percent:.2f}% "
            f"[{stats['completed']}/{stats['total_files']} files]",
            f"👷 Running: {stats['running']}/{stats['max_concurrent']} | "
            f"📦 Queue: {stats['queue_depth']} | ❌ Flagged: {stats['flagged']}",
        ]
        for line in frame.lines:
            mark = "✗" if line.flagged else "✓"
            lines.append(f"  {mark} {line.display_path}")
        lines.append("   (press q to cancel)")

        for line in lines:
            print(f"\033[K{line}")
        # Clear leftovers when the window was longer last time
        for _ in range(self._printed_lines - len(lines)):
            print("\033[K")
        self._printed_lines = max(self._printed_lines, len(lines))

    def _width(self) -> int:
        try:
            columns = os.get_terminal_size().columns
        except OSError:
            columns = 80
        return max(20, columns - 6)

    def _run_pipeline(self, paths: List[str]) -> bool:
        self.core.start(paths)
        print(f"\n🚀 Checking {len(paths)} files "
              f"({self.core.config.max_concurrent} at a time)...\n")
        with KeyWatcher() as watcher:
            self._watcher = watcher
            try:
                return self.core.run(
                    should_cancel=self._should_cancel,
                    on_frame=self._print_frame,
                    poll_interval=POLL_INTERVAL,
                    width=self._width(),
                )
            finally:
                self._watcher = None

    def _finish_cancelled(self) -> int:
        stats = self.core.get_stats()
        print("\n" + "=" * 70)
        print("🛑 CANCELLED - no files were moved or deleted")
        print("=" * 70)
        print(f"Files checked: {stats['completed']}/{stats['total_files']}")
        print(f"Files flagged so far: {stats['flagged']}")
        if self.core.log_file:
            print(f"Activity log: {self.core.log_file}")
        return EXIT_CANCELLED

    def _write_report(self) -> None:
        records = self.core.build_report()
        out = write_report_csv(records, self.core.config.report_file)
        self.core.log(f"Report written: {out} ({len(records)} records)", "success")
        print(f"📝 Report: {out} ({len(records)} records)")

    def scan(self, args) -> int:
        """Verify files, group duplicates, remediate flagged files."""
        self._print_header()

        settings = load_settings(args.settings) if args.settings else None
        config = build_config(args, settings)

        print("⚙️  Initializing engine...")
        print(f"   Command: {config.command_template}")
        print(f"   Max concurrent: {config.max_concurrent}")
        print(f"   Duplicate detection: {'ON (' + config.hash_algorithm + ')' if config.detect_duplicates else 'OFF'}")
        print(f"   Action: {config.mode.value}")
        if config.mode is RemediationMode.MOVE:
            print(f"   Quarantine: {config.quarantine_dir}")

        self.core = FileVetCore(config)
        paths = self._load_paths(args)
        print(f"✓ Found {len(paths)} files")

        if not self._run_pipeline(paths):
            return self._finish_cancelled()

        stats = self.core.get_stats()
        print("\n" + "=" * 70)
        print("✅ CHECK COMPLETE")
        print("=" * 70)
        print(f"Files checked: {stats['completed']}")
        print(f"Files flagged: {stats['flagged']}")

        groups = self.core.find_duplicates()
        if config.detect_duplicates:
            print(f"Duplicate groups: {len(groups)}")
            for n, group in enumerate(groups, 1):
                print(f"  Group {n} ({group.count} files, {group.content_hash[:12]}...)")
                for path in group.paths:
                    print(f"    • {path}")

        flagged = self.core.aggregator.flagged_files
        for f in flagged:
            first_line = f.diagnostic.splitlines()[0] if f.diagnostic else ""
            print(f"  ✗ {f.path}: {first_line}")

        outcomes = self.core.remediate(
            lambda prompt: ask_yes_no(prompt, input_fn=self.input_fn)
        )
        for outcome in outcomes:
            print(f"  [{outcome.action.value}] {outcome.path}"
                  + (f" - {outcome.detail}" if outcome.detail else ""))

        self._write_report()
        self.core.close()
        print("=" * 70)
        return EXIT_OK

    def hash(self, args) -> int:
        """Duplicate detection only: hash every file, no verifier, no remediation."""
        self._print_header()

        settings = load_settings(args.settings) if args.settings else None
        args.duplicates = True
        args.action = RemediationMode.NONE.value
        config = build_config(args, settings)

        self.core = FileVetCore(config, invoker=HashOnlyInvoker(config.hash_algorithm))
        paths = self._load_paths(args)
        print(f"✓ Found {len(paths)} files")

        if not self._run_pipeline(paths):
            return self._finish_cancelled()

        groups = self.core.find_duplicates()
        print("\n" + "=" * 70)
        print(f"✅ {len(groups)} duplicate group(s)")
        print("=" * 70)
        for n, group in enumerate(groups, 1):
            print(f"Group {n} ({group.count} files, {group.content_hash[:12]}...)")
            for path in group.paths:
                print(f"  • {path}")

        self._write_report()
        self.core.close()
        return EXIT_OK


def _add_common_arguments(p: argparse.ArgumentParser):
    source = p.add_mutually_exclusive_group(required=True)
    source.add_argument('--root', help='Directory to scan recursively')
    source.add_argument('--items', help='Path to file list (TXT/CSV)')
    p.add_argument('--extensions', help='Comma-separated extensions (e.g., mp4,mkv)')
    p.add_argument('--workers', type=int, help='Max concurrent checks (default: CPU count - 1)')
    p.add_argument('--hash-algorithm', dest='hash_algorithm', help='Hash algorithm (default: md5)')
    p.add_argument('--log', help=f'Activity log file (default: {DEFAULT_LOG_FILE})')
    p.add_argument('--report', help=f'CSV report file (default: {DEFAULT_REPORT_FILE})')
    p.add_argument('--settings', help='Path to key=value settings file')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="filevet",
        description="filevet - File Integrity Checker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Check videos with ffmpeg, move broken ones to ./quarantine
  filevet scan --root ./media --extensions mp4,mkv

  # Custom verifier, delete broken files, also report duplicates
  filevet scan --root ./photos --extensions jpg \\
    --command 'magick identify -regard-warnings "{filePath}"' \\
    --action delete --duplicates --workers 4

  # Duplicates only
  filevet hash --root ./media --extensions mp4,mkv
        """
    )

    subparsers = parser.add_subparsers(dest='command_name', help='Command to execute')

    # SCAN command
    scan_parser = subparsers.add_parser('scan', help='Verify files and remediate flagged ones')
    _add_common_arguments(scan_parser)
    scan_parser.add_argument('--command', help='Verifier command template containing {filePath}')
    scan_parser.add_argument('--duplicates', action='store_true', default=None,
                             help='Also detect duplicate files by content hash')
    scan_parser.add_argument('--action', choices=[m.value for m in RemediationMode],
                             help='What to do with flagged files (default: move)')
    scan_parser.add_argument('--quarantine', help='Quarantine directory for --action move')

    # HASH command
    hash_parser = subparsers.add_parser('hash', help='Detect duplicate files only')
    _add_common_arguments(hash_parser)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command_name:
        parser.print_help()
        return EXIT_USAGE

    cli = FileVetCLI()
    try:
        if args.command_name == 'scan':
            return cli.scan(args)
        if args.command_name == 'hash':
            return cli.hash(args)
    except ConfigFault as e:
        print(f"❌ Configuration error: {e}")
        return EXIT_CONFIG
    return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
