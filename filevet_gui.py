#!/usr/bin/env python3
import sys
from collections import deque

from PySide6.QtCore import Qt, QTimer
from PySide6.QtGui import QColor, QTextCursor
from PySide6.QtWidgets import (
    QApplication, QMainWindow, QWidget,
    QFileDialog, QLabel, QPushButton,
    QCheckBox, QLineEdit, QTextEdit,
    QProgressBar, QComboBox, QSpinBox,
    QHBoxLayout, QVBoxLayout, QGridLayout,
    QFrame, QListWidget, QListWidgetItem,
    QMessageBox
)

from filevet_core import (
    FileVetError,
    FileVetConfig,
    FileVetCore,
    RemediationAction,
    RemediationMode,
    DEFAULT_COMMAND_TEMPLATE,
    DEFAULT_EXTENSIONS,
    DEFAULT_QUARANTINE_DIR,
    DEFAULT_REPORT_FILE,
    POLL_INTERVAL,
    default_max_concurrent,
    discover_files,
    write_report_csv,
)


# =========================
# LOG BUFFER (BOUNDED)
# =========================
class LogBuffer:
    def __init__(self, max_lines=8000):
        self.lines = deque(maxlen=max_lines)

    def append(self, line):
        self.lines.append(line)

    def filtered(self, level):
        if level == "ALL":
            return list(self.lines)
        return [l for l in self.lines if f"[{level}]" in l]


# =========================
# MAIN WINDOW
# =========================
class FileVetGUI(QMainWindow):

    DISPLAY_NAMES = {
        "total_files": "Total Files",
        "completed": "Checked",
        "flagged": "Flagged",
        "running": "Running",
        "queue_depth": "Queue",
    }

    def __init__(self):
        super().__init__()
        self.setWindowTitle("filevet   |   File Integrity Checker")
        self.resize(1400, 900)

        self.core = None
        self.log_index = 0
        self.log_buffer = LogBuffer()

        self._build_ui()
        self._apply_theme()

        # The timer is the controller loop: one step per tick
        self.poll_timer = QTimer(self)
        self.poll_timer.timeout.connect(self.poll_core)

    # =========================
    # UI
    # =========================

    def _build_ui(self):
        central = QWidget()
        self.setCentralWidget(central)
        root = QVBoxLayout(central)

        # -------- Header metrics --------
        self.metric_labels = {}
        header = QHBoxLayout()
        for key, title in self.DISPLAY_NAMES.items():
            lbl = QLabel(f"{title}: 0")
            lbl.setFrameStyle(QFrame.Panel | QFrame.Raised)
            lbl.setAlignment(Qt.AlignCenter)
            lbl.setMinimumWidth(140)
            header.addWidget(lbl)
            self.metric_labels[key] = lbl
        root.addLayout(header)

        # -------- Body --------
        body = QHBoxLayout()
        root.addLayout(body, 1)

        # -------- Sidebar --------
        sidebar_widget = QWidget()
        sidebar_widget.setMaximumWidth(420)
        sidebar_widget.setMinimumWidth(380)

        sidebar = QGridLayout(sidebar_widget)
        sidebar.setContentsMargins(6, 6, 6, 6)
        sidebar.setVerticalSpacing(6)

        r = 0

        def add(label, widget):
            nonlocal r
            sidebar.addWidget(QLabel(label), r, 0)
            sidebar.addWidget(widget, r, 1)
            r += 1

        # Folder to scan
        self.scan_dir = QLineEdit()
        self.scan_dir.setToolTip("Folder scanned recursively for matching files.")
        btn_scan = QPushButton("Browse")
        btn_scan.clicked.connect(self.select_scan_dir)
        sidebar.addWidget(QLabel("Folder"), r, 0)
        sidebar.addWidget(self.scan_dir, r, 1)
        sidebar.addWidget(btn_scan, r, 2)
        r += 1

        self.extension_whitelist = QLineEdit(",".join(e.lstrip(".") for e in DEFAULT_EXTENSIONS))
        self.extension_whitelist.setToolTip(
            "Comma-separated list of file extensions to check (e.g. mp4,mkv)."
        )
        add("Extensions", self.extension_whitelist)

        self.command_template = QLineEdit(DEFAULT_COMMAND_TEMPLATE)
        self.command_template.setToolTip(
            "Verifier command. {filePath} is replaced with each file. "
            "Any output marks the file as flagged."
        )
        add("Command", self.command_template)

        self.max_workers = QSpinBox()
        self.max_workers.setRange(1, 64)
        self.max_workers.setValue(default_max_concurrent())
        self.max_workers.setToolTip("Maximum number of verifier processes at once.")
        add("Max concurrent", self.max_workers)

        self.chk_duplicates = QCheckBox("Detect duplicates")
        self.chk_duplicates.setToolTip("Hash every file and report identical contents.")
        sidebar.addWidget(self.chk_duplicates, r, 0, 1, 2); r += 1

        self.action = QComboBox()
        self.action.addItems([m.value for m in RemediationMode])
        self.action.setToolTip("What to do with flagged files once the check finishes.")
        add("Action", self.action)

        self.quarantine_dir = QLineEdit(DEFAULT_QUARANTINE_DIR)
        btn_quarantine = QPushButton("Browse")
        btn_quarantine.clicked.connect(self.select_quarantine_dir)
        sidebar.addWidget(QLabel("Quarantine"), r, 0)
        sidebar.addWidget(self.quarantine_dir, r, 1)
        sidebar.addWidget(btn_quarantine, r, 2)
        r += 1

        self.report_file = QLineEdit(DEFAULT_REPORT_FILE)
        add("Report CSV", self.report_file)

        # Controls
        self.btn_start = QPushButton("START")
        self.btn_cancel = QPushButton("CANCEL")
        self.btn_cancel.setEnabled(False)
        sidebar.addWidget(self.btn_start, r, 0, 1, 3); r += 1
        sidebar.addWidget(self.btn_cancel, r, 0, 1, 3); r += 1
        self.btn_start.clicked.connect(self.start_job)
        self.btn_cancel.clicked.connect(self.cancel_job)

        body.addWidget(sidebar_widget, 0)

        # -------- Recent outcomes + log --------
        right = QVBoxLayout()
        body.addLayout(right, 1)

        self.recent_view = QListWidget()
        self.recent_view.setToolTip("Most recent outcomes, newest last.")
        self.recent_view.setMaximumHeight(240)
        right.addWidget(self.recent_view)

        self.severity_filter = QComboBox()
        self.severity_filter.addItems(["ALL", "ERROR", "WARNING", "INFO", "SUCCESS"])
        self.severity_filter.currentTextChanged.connect(self.refresh_log_view)
        right.addWidget(self.severity_filter)

        self.log_view = QTextEdit()
        self.log_view.setReadOnly(True)
        right.addWidget(self.log_view, 1)

        # -------- Footer --------
        self.progress = QProgressBar()
        self.progress.setRange(0, 10000)
        self.progress.setFormat("%p%")
        root.addWidget(self.progress)

    # =========================
    # CORE CONTROL
    # =========================
    def select_scan_dir(self):
        d = QFileDialog.getExistingDirectory(self, "Select folder to check")
        if d:
            self.scan_dir.setText(d)

    def select_quarantine_dir(self):
        d = QFileDialog.getExistingDirectory(self, "Select quarantine directory")
        if d:
            self.quarantine_dir.setText(d)

    def start_job(self):
        self.log_view.clear()
        self.recent_view.clear()
        self.log_buffer = LogBuffer()
        self.log_index = 0

        config = FileVetConfig(
            command_template=self.command_template.text(),
            max_concurrent=self.max_workers.value(),
            detect_duplicates=self.chk_duplicates.isChecked(),
            mode=RemediationMode(self.action.currentText()),
            quarantine_dir=self.quarantine_dir.text(),
            extensions=[
                e.strip() for e in self.extension_whitelist.text().split(",") if e.strip()
            ],
            report_file=self.report_file.text() or DEFAULT_REPORT_FILE,
        )
        try:
            self.core = FileVetCore(config)
        except FileVetError as e:
            QMessageBox.critical(self, "Configuration error", str(e))
            return

        paths = discover_files(self.scan_dir.text(), self.core.config.extensions)
        self.core.start(paths)

        self.btn_start.setEnabled(False)
        self.btn_cancel.setEnabled(True)
        self.poll_timer.start(int(POLL_INTERVAL * 1000))

    def cancel_job(self):
        if self.core and not self.core.drained:
            self.poll_timer.stop()
            self.core.cancel()
            self.drain_logs()
            self.log_view.append("\n=== CANCELLED: nothing was moved or deleted ===\n")
            self._reset_controls()

    def _reset_controls(self):
        self.btn_start.setEnabled(True)
        self.btn_cancel.setEnabled(False)

    # =========================
    # POLLING
    # =========================
    def poll_core(self):
        if not self.core:
            return

        drained = self.core.step()
        stats = self.core.get_stats()
        for k, lbl in self.metric_labels.items():
            lbl.setText(f"{self.DISPLAY_NAMES[k]}: {stats.get(k, 0)}")

        frame = self.core.progress_frame(width=110)
        self.progress.setValue(int(frame.percent * 100))
        self.recent_view.clear()
        for line in frame.lines:
            item = QListWidgetItem(("✗ " if line.flagged else "✓ ") + line.display_path)
            item.setForeground(QColor("#ff6b6b") if line.flagged else QColor("#8ae234"))
            self.recent_view.addItem(item)

        self.drain_logs()

        if drained:
            self.poll_timer.stop()
            self.finish_job()

    def drain_logs(self):
        logs, self.log_index = self.core.get_logs(self.log_index)
        cursor = self.log_view.textCursor()
        cursor.movePosition(QTextCursor.End)
        level = self.severity_filter.currentText()
        for line in logs:
            self.log_buffer.append(line)
            if level == "ALL" or f"[{level}]" in line:
                cursor.insertText(line + "\n")
        self.log_view.setTextCursor(cursor)

    def confirm(self, prompt):
        answer = QMessageBox.question(
            self, "Confirm remediation", prompt,
            QMessageBox.Yes | QMessageBox.No, QMessageBox.No
        )
        return answer == QMessageBox.Yes

    def finish_job(self):
        self.progress.setValue(10000)
        groups = self.core.find_duplicates()
        outcomes = self.core.remediate(self.confirm)
        records = self.core.build_report()
        try:
            out = write_report_csv(records, self.core.config.report_file)
            self.core.log(f"Report written: {out} ({len(records)} records)", "success")
        except OSError as e:
            self.core.log(f"Report write failed: {e}", "error")
        self.core.close()
        self.drain_logs()

        stats = self.core.get_stats()
        failed = sum(1 for o in outcomes if o.action is RemediationAction.FAILED)
        self.log_view.append(
            "\n=== CHECK FINISHED ===\n"
            f"Files checked: {stats['completed']}\n"
            f"Flagged: {stats['flagged']}\n"
            f"Duplicate groups: {len(groups)}\n"
            f"Remediation failures: {failed}\n"
        )
        self._reset_controls()

    def refresh_log_view(self):
        self.log_view.clear()
        cursor = self.log_view.textCursor()
        cursor.movePosition(QTextCursor.End)

        level = self.severity_filter.currentText()
        for line in self.log_buffer.filtered(level):
            cursor.insertText(line + "\n")

        self.log_view.setTextCursor(cursor)

    def closeEvent(self, event):
        """Stop verifiers when the window closes mid-run."""
        if self.poll_timer.isActive():
            self.poll_timer.stop()
        if self.core and not self.core.drained:
            self.core.cancel()
        self.core = None
        event.accept()

    # =========================
    # THEME
    # =========================
    def _apply_theme(self):
        self.setStyleSheet("""
            QWidget {
                background-color: #2f333b;
                color: #ffffff;
                font-family: Ubuntu;
            }
            QTextEdit, QListWidget {
                background-color: #1f2228;
            }
            QPushButton {
                background-color: #3d7be9;
                padding: 6px;
                border-radius: 4px;
            }
            QProgressBar::chunk {
                background-color: #3d7be9;
            }
        """)


# =========================
# ENTRY
# =========================
def main():
    app = QApplication(sys.argv)
    win = FileVetGUI()
    win.show()
    sys.exit(app.exec())


if __name__ == "__main__":
    main()
